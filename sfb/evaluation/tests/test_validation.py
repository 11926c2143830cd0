"""
Tests for the synthetic validation harness.
"""

import numpy as np
import pandas as pd
import pytest

from data_generation.simulate_gps import SimulationConfig
from sfb.config import Settings
from sfb.evaluation.validation import (
    RECOVERY_OUTCOME_SPEC,
    breakpoint_recovery,
    is_strictly_increasing,
    mean_score_by_stratum,
    run_synthetic_validation,
    simulate_score_outcome,
)


@pytest.mark.parametrize("values, expected", [
    ([0.3, 0.4, 0.5], True),
    ([0.3, 0.3, 0.5], False),
    ([0.5, 0.4, 0.6], False),
    ([0.3, np.nan, 0.5], False),
])
def test_is_strictly_increasing(values, expected):
    assert is_strictly_increasing(values) is expected


def test_mean_score_by_stratum_keeps_order_and_missing_strata():
    df = pd.DataFrame({
        'score': [0.3, 0.5, 0.9, 0.7],
        'mobility_type': ['partial', 'partial', 'diverse', 'diverse'],
    })
    table = mean_score_by_stratum(df)

    assert table['stratum'].tolist() == ['constrained', 'partial', 'diverse']
    assert np.isnan(table['mean_score'].iloc[0])
    assert table['n'].tolist() == [0, 2, 2]
    assert table['mean_score'].iloc[1:].tolist() == pytest.approx([0.4, 0.8])


def test_mean_score_by_stratum_needs_column():
    with pytest.raises(ValueError, match="not found"):
        mean_score_by_stratum(pd.DataFrame({'score': [0.5]}))


def test_simulated_outcome_is_not_determined_by_score():
    sim = simulate_score_outcome(RECOVERY_OUTCOME_SPEC, n_obs=3000, seed=100)
    below = sim.loc[sim['score'] <= 0.40, 'mobile']

    # expit(-2 + 0.5 * s) on [0.25, 0.40] is about 0.14
    assert below.nunique() == 2
    assert 0.07 < below.mean() < 0.22
    assert sim['mobile'].mean() > below.mean()


def test_simulate_score_outcome_is_reproducible():
    a = simulate_score_outcome(RECOVERY_OUTCOME_SPEC, n_obs=200, seed=5)
    b = simulate_score_outcome(RECOVERY_OUTCOME_SPEC, n_obs=200, seed=5)
    pd.testing.assert_frame_equal(a, b)
    assert a['score'].between(0.25, 1.0).all()


def test_breakpoint_recovery_report_shape():
    recovery = breakpoint_recovery(n_draws=2, n_obs=800, grid_step=0.05, seed=3)

    assert recovery['n_draws'] == 2
    assert len(recovery['draws']) == 2
    assert set(recovery['draws'].columns) >= {'estimate', 'error', 'verdict', 'hit'}
    assert 0 <= recovery['hit_rate'] <= 1


def test_breakpoint_recovery_needs_draws():
    with pytest.raises(ValueError):
        breakpoint_recovery(n_draws=0)


@pytest.mark.integration
def test_run_synthetic_validation_small():
    sim_config = SimulationConfig(n_devices=150, n_days=10, n_poi=30, seed=4)
    config = Settings(BREAKPOINT_GRID_STEP=0.02, OUTPUT_DB_PATH=None, OUTPUT_CSV_PATH=None)

    results = run_synthetic_validation(sim_config=sim_config, config=config, verbose=False)

    scores = results['score_table']['score']
    assert len(scores) > 0
    assert scores.between(0.25, 1.0).all()
    assert len(results['strata']['table']) == 3
    assert isinstance(results['strata']['strictly_increasing'], bool)
    assert results['threshold']['verdict'] in ('linear_sufficient', 'breakpoint_detected')
