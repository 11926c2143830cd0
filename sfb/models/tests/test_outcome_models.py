"""
Tests for the Outcome Simulator / Fitter.

Validates:
1. The simulator's log-odds (linear, log1p volume, scaled score, breakpoint)
2. Nested models share one sample and report the full coefficient table
3. Degenerate fits surface as ModelFitFailure
"""

import numpy as np
import pandas as pd
import pytest
from scipy.special import expit

from sfb.errors import ModelFitFailure
from sfb.models.outcome import (
    BASELINE_MODEL,
    OutcomeSpec,
    fit_logit,
    fit_nested_models,
    outcome_log_odds,
    simulate_mobility_outcome,
)


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def score_df():
    rng = np.random.default_rng(11)
    n = 2000
    neighbors = rng.integers(1, 40, size=n)
    return pd.DataFrame({
        'device_id': [f"dev_{i:04d}" for i in range(n)],
        'score': rng.uniform(0.25, 1.0, size=n),
        'neighbor_count': neighbors,
        'total_contact_count': neighbors * rng.integers(1, 5, size=n),
    })


@pytest.fixture
def simulated(score_df):
    spec = OutcomeSpec(intercept=-2.5, score_coef=4.0, volume_coef=0.0)
    return simulate_mobility_outcome(score_df, spec, seed=5)


# ============================================================================
# TEST 1: Simulator
# ============================================================================

def test_simulation_is_reproducible(score_df):
    a = simulate_mobility_outcome(score_df, seed=1)
    b = simulate_mobility_outcome(score_df, seed=1)

    pd.testing.assert_frame_equal(a, b)
    assert set(a['mobile'].unique()) <= {0, 1}
    assert a['p_mobile'].between(0, 1).all()
    # Input is not modified
    assert 'mobile' not in score_df.columns


def test_default_log_odds():
    spec = OutcomeSpec()
    log_odds = outcome_log_odds(np.array([0.5]), np.array([100]), spec)
    assert log_odds[0] == pytest.approx(-2.5 + 6.0 * 0.5 + 0.002 * 100)


def test_log1p_volume_and_scaled_score():
    spec = OutcomeSpec(intercept=-0.8, score_coef=3.5, volume_coef=0.015,
                       volume_transform='log1p', scale_score=True)
    score = np.array([0.25, 0.5, 0.75])
    volume = np.array([0, 10, 100])

    log_odds = outcome_log_odds(score, volume, spec)
    expected = -0.8 + 3.5 * (score - 0.5) / 0.5 + 0.015 * np.log1p(volume)
    np.testing.assert_allclose(log_odds, expected)


def test_breakpoint_adds_jump_and_slope_above_threshold():
    spec = OutcomeSpec(intercept=0.0, score_coef=0.0, volume_coef=0.0,
                       breakpoint=0.4, breakpoint_jump=2.0, breakpoint_slope=10.0)
    log_odds = outcome_log_odds(np.array([0.3, 0.4, 0.5]), np.zeros(3), spec)

    np.testing.assert_allclose(log_odds, [0.0, 0.0, 2.0 + 10.0 * 0.1])
    assert spec.has_breakpoint
    assert not OutcomeSpec().has_breakpoint


def test_simulated_probabilities_match_log_odds(score_df):
    sim = simulate_mobility_outcome(score_df, OutcomeSpec(), seed=3)
    np.testing.assert_allclose(sim['p_mobile'], expit(sim['log_odds']))


def test_undefined_scores_cannot_be_simulated(score_df):
    df = score_df.copy()
    df.loc[0, 'score'] = np.nan
    with pytest.raises(ValueError, match="undefined scores"):
        simulate_mobility_outcome(df, seed=0)


def test_unknown_volume_transform_rejected():
    with pytest.raises(ValueError):
        OutcomeSpec(volume_transform='sqrt')


# ============================================================================
# TEST 2: Nested models
# ============================================================================

def test_nested_models_share_one_sample(simulated):
    report = fit_nested_models(simulated, outcome_col='mobile', verbose=False)

    assert set(report.models) == {BASELINE_MODEL, 'volume_only', 'score_only', 'score_volume'}
    assert {m.n_obs for m in report.models.values()} == {len(simulated)}
    assert report.models[BASELINE_MODEL].pseudo_r2 == pytest.approx(0.0)


def test_score_model_beats_volume_model(simulated):
    report = fit_nested_models(simulated, outcome_col='mobile', verbose=False)
    models = report.models

    assert models['score_only'].pseudo_r2 > models['volume_only'].pseudo_r2
    # Nested: adding volume can only raise the likelihood
    assert models['score_volume'].log_likelihood >= models['score_only'].log_likelihood - 1e-6

    score = models['score_volume'].coefficient('score')
    assert score.estimate > 0
    assert score.p_value < 0.001
    assert score.ci_low < score.estimate < score.ci_high
    assert score.std_error > 0


def test_pseudo_r2_is_mcfadden(simulated):
    report = fit_nested_models(simulated, outcome_col='mobile', verbose=False)
    m = report.models['score_only']
    assert m.pseudo_r2 == pytest.approx(1 - m.log_likelihood / report.baseline_log_likelihood)


def test_comparison_table(simulated):
    table = fit_nested_models(simulated, outcome_col='mobile', verbose=False).comparison_table()
    assert table['model'].tolist() == [BASELINE_MODEL, 'volume_only', 'score_only', 'score_volume']
    assert table.loc[table['model'] == 'score_volume', 'predictors'].item() == 'score + total_contact_count'


def test_rows_with_undefined_score_are_excluded(simulated):
    df = simulated.copy()
    df.loc[:9, 'score'] = np.nan

    with pytest.warns(UserWarning, match="Excluding 10 rows"):
        report = fit_nested_models(df, outcome_col='mobile', verbose=False)

    assert report.n_obs == len(df) - 10
    assert report.n_excluded == 10


def test_missing_column_rejected(simulated):
    with pytest.raises(ValueError, match="Missing required columns"):
        fit_nested_models(simulated.drop(columns=['total_contact_count']), outcome_col='mobile', verbose=False)


def test_non_binary_outcome_rejected(simulated):
    df = simulated.assign(mobile=simulated['mobile'] * 2)
    with pytest.raises(ValueError, match="binary"):
        fit_nested_models(df, outcome_col='mobile', verbose=False)


# ============================================================================
# TEST 3: Degenerate fits
# ============================================================================

def test_single_class_outcome_fails(score_df):
    df = score_df.assign(mobile=0)
    with pytest.raises(ModelFitFailure, match="single class"):
        fit_nested_models(df, outcome_col='mobile', verbose=False)


def test_constant_volume_is_singular(simulated):
    df = simulated.assign(total_contact_count=7)
    with pytest.raises(ModelFitFailure) as exc:
        fit_nested_models(df, outcome_col='mobile', verbose=False)

    assert exc.value.model_name == 'volume_only'
    assert "singular" in exc.value.reason


def test_perfect_separation_fails(score_df):
    y = (score_df['score'] > 0.6).astype(float)
    X = np.column_stack([np.ones(len(score_df)), score_df['score']])
    with pytest.raises(ModelFitFailure):
        fit_logit(y, X, 'separated')
