"""
Outcome Simulator / Fitter

Purpose:
Relate the SFB score to a binary mobility outcome while keeping raw contact
volume as a competing explanation.

Design Contract:
- Input: score table (one row per device with a DEFINED score)
- Models: intercept-only baseline, volume-only, score-only, score + volume
- All four are fitted on the SAME sample, so log-likelihoods are comparable
- Output: estimates, standard errors, z, p-values, 95% CI, log-likelihood,
  AIC and McFadden pseudo-R2 (1 - llf / llf_baseline)

The simulator provides a known data-generating process, including an
optional breakpoint in the log-odds, for validating the threshold detector.
"""

import warnings
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import statsmodels.api as sm
from pydantic import BaseModel, Field, validator
from scipy.special import expit
from statsmodels.tools.sm_exceptions import (
    ConvergenceWarning,
    PerfectSeparationError,
    PerfectSeparationWarning,
)

from sfb.errors import ModelFitFailure


# ============================================================================
# MODEL CONTRACT
# ============================================================================
# Nested model family: name -> predictor roles (resolved to columns at fit time)

NESTED_MODELS = {
    'volume_only': ['volume'],
    'score_only': ['score'],
    'score_volume': ['score', 'volume'],
}

BASELINE_MODEL = 'baseline'
VOLUME_TRANSFORMS = ('linear', 'log1p')


# ============================================================================
# SYNTHETIC OUTCOME
# ============================================================================

class OutcomeSpec(BaseModel):
    """
    Data-generating process for the synthetic mobility outcome.

    log_odds = intercept
             + score_coef * s'                       (s' = s, or centred/range-scaled s)
             + volume_coef * f(volume)                (f = identity or log1p)
             + breakpoint_jump * 1{s > breakpoint}
             + breakpoint_slope * max(0, s - breakpoint)

    Defaults reproduce a purely linear effect of score plus a weak volume term.
    """

    intercept: float = -2.5
    score_coef: float = 6.0
    volume_coef: float = 0.002
    volume_transform: str = 'linear'
    scale_score: bool = False
    breakpoint: Optional[float] = Field(None, gt=0.0, lt=1.0)
    breakpoint_jump: float = 0.0
    breakpoint_slope: float = 0.0

    class Config:
        frozen = True

    @validator('volume_transform')
    def known_transform(cls, v):
        if v not in VOLUME_TRANSFORMS:
            raise ValueError(f"volume_transform must be one of {VOLUME_TRANSFORMS}, got '{v}'")
        return v

    @property
    def has_breakpoint(self) -> bool:
        return self.breakpoint is not None and (self.breakpoint_jump != 0 or self.breakpoint_slope != 0)


def outcome_log_odds(
    score: np.ndarray,
    volume: np.ndarray,
    spec: OutcomeSpec,
) -> np.ndarray:
    score = np.asarray(score, dtype=float)
    volume = np.asarray(volume, dtype=float)

    if np.isnan(score).any():
        raise ValueError("score contains NaN; undefined scores must be excluded before simulation")

    score_term = score
    if spec.scale_score:
        score_range = score.max() - score.min()
        if score_range == 0:
            raise ValueError("scale_score=True needs scores with a non-zero range")
        score_term = (score - score.mean()) / score_range

    volume_term = np.log1p(volume) if spec.volume_transform == 'log1p' else volume

    log_odds = spec.intercept + spec.score_coef * score_term + spec.volume_coef * volume_term

    if spec.breakpoint is not None:
        above = score > spec.breakpoint
        log_odds = (
            log_odds
            + spec.breakpoint_jump * above
            + spec.breakpoint_slope * np.maximum(0.0, score - spec.breakpoint)
        )

    return log_odds


def simulate_mobility_outcome(
    df: pd.DataFrame,
    spec: Optional[OutcomeSpec] = None,
    seed: Optional[Union[int, np.random.SeedSequence]] = None,
    score_col: str = 'score',
    volume_col: str = 'total_contact_count',
    outcome_col: str = 'mobile',
) -> pd.DataFrame:
    """
    Adds log_odds, p_mobile and a Bernoulli outcome column to a copy of df.

    Example:
        >>> spec = OutcomeSpec(intercept=-2.0, score_coef=0.5,
        ...                    breakpoint=0.40, breakpoint_jump=2.5)
        >>> sim = simulate_mobility_outcome(score_df, spec, seed=99)
    """
    if spec is None:
        spec = OutcomeSpec()

    for col in (score_col, volume_col):
        if col not in df.columns:
            raise ValueError(f"Column '{col}' not found in DataFrame")

    rng = np.random.default_rng(seed)

    out = df.copy()
    out['log_odds'] = outcome_log_odds(out[score_col].to_numpy(), out[volume_col].to_numpy(), spec)
    out['p_mobile'] = expit(out['log_odds'].to_numpy())
    out[outcome_col] = rng.binomial(1, out['p_mobile'].to_numpy()).astype(int)

    return out


# ============================================================================
# LOGIT FITTING
# ============================================================================

def fit_logit(
    y: pd.Series,
    X: pd.DataFrame,
    model_name: str,
    maxiter: int = 200,
):
    """
    Fit one logistic regression, turning every degenerate case into ModelFitFailure.

    Args:
        y: Binary outcome (0/1)
        X: Design matrix INCLUDING the constant column
        model_name: Used in the failure message
        maxiter: Newton iterations

    Returns:
        statsmodels LogitResults

    Raises:
        ModelFitFailure: single-class outcome, singular design, perfect
            separation, non-convergence or non-finite standard errors
    """
    y_values = np.asarray(y, dtype=float)

    if len(y_values) == 0:
        raise ModelFitFailure(model_name, "empty sample")

    if np.unique(y_values).size < 2:
        raise ModelFitFailure(model_name, "outcome has a single class")

    if np.linalg.matrix_rank(np.asarray(X, dtype=float)) < X.shape[1]:
        raise ModelFitFailure(model_name, "singular design matrix (collinear or constant predictor)")

    with warnings.catch_warnings():
        warnings.simplefilter('error', PerfectSeparationWarning)
        warnings.simplefilter('ignore', ConvergenceWarning)
        try:
            result = sm.Logit(y_values, X).fit(disp=0, maxiter=maxiter)
        except (PerfectSeparationError, PerfectSeparationWarning) as e:
            raise ModelFitFailure(model_name, f"perfect separation ({e})") from e
        except np.linalg.LinAlgError as e:
            raise ModelFitFailure(model_name, f"singular Hessian ({e})") from e

    if not result.mle_retvals.get('converged', True):
        raise ModelFitFailure(model_name, f"did not converge in {maxiter} iterations")

    if not np.all(np.isfinite(result.bse)):
        raise ModelFitFailure(model_name, "non-finite standard errors")

    return result


# ============================================================================
# NESTED MODEL REPORT
# ============================================================================

class CoefficientEstimate(BaseModel):
    term: str
    estimate: float
    std_error: float
    z_value: float
    p_value: float
    ci_low: float
    ci_high: float


class ModelSummary(BaseModel):
    name: str
    predictors: List[str]
    n_obs: int
    log_likelihood: float
    aic: float
    pseudo_r2: float
    coefficients: List[CoefficientEstimate]

    def coefficient(self, term: str) -> CoefficientEstimate:
        for c in self.coefficients:
            if c.term == term:
                return c
        raise KeyError(f"Model '{self.name}' has no term '{term}'")


class NestedModelReport(BaseModel):
    outcome_col: str
    score_col: str
    volume_col: str
    n_obs: int
    n_excluded: int
    outcome_rate: float
    baseline_log_likelihood: float
    models: Dict[str, ModelSummary]

    def comparison_table(self) -> pd.DataFrame:
        """One row per model: predictors, log-likelihood, AIC, pseudo-R2."""
        return pd.DataFrame([
            {
                'model': m.name,
                'predictors': ' + '.join(m.predictors),
                'n_obs': m.n_obs,
                'log_likelihood': m.log_likelihood,
                'aic': m.aic,
                'pseudo_r2': m.pseudo_r2,
            }
            for m in self.models.values()
        ])


def prepare_model_sample(
    df: pd.DataFrame,
    outcome_col: str,
    score_col: str = 'score',
    volume_col: str = 'total_contact_count',
    verbose: bool = True,
) -> Tuple[pd.DataFrame, int]:
    """
    Restrict to rows usable by EVERY model: defined score, volume and outcome.

    Returns:
        (sample, n_excluded)

    Raises:
        ValueError: If a column is missing or the outcome is not binary
    """
    missing = {outcome_col, score_col, volume_col} - set(df.columns)
    if missing:
        raise ValueError(f"Missing required columns: {sorted(missing)}")

    usable = df[[score_col, volume_col, outcome_col]].notna().all(axis=1)
    n_excluded = int((~usable).sum())
    if n_excluded:
        warnings.warn(
            f"Excluding {n_excluded:,} rows with undefined score, volume or outcome "
            f"so all models share one sample.",
            UserWarning
        )

    sample = df.loc[usable].reset_index(drop=True)

    values = set(pd.unique(sample[outcome_col]))
    if not values <= {0, 1, 0.0, 1.0, True, False}:
        raise ValueError(f"Outcome '{outcome_col}' must be binary (0/1), got values {sorted(values)[:10]}")

    if verbose:
        print(f"\n{'='*70}")
        print(f"OUTCOME MODEL SAMPLE")
        print(f"{'='*70}")
        print(f"Input rows:          {len(df):,}")
        print(f"Usable rows:         {len(sample):,}")
        print(f"Excluded rows:       {n_excluded:,}")
        if len(sample):
            print(f"Outcome rate:        {sample[outcome_col].mean():.2%}")
        print(f"{'='*70}\n")

    return sample, n_excluded


def _summarize(name: str, predictors: List[str], result, baseline_llf: float) -> ModelSummary:
    ci = result.conf_int()
    coefficients = [
        CoefficientEstimate(
            term=term,
            estimate=float(result.params[term]),
            std_error=float(result.bse[term]),
            z_value=float(result.tvalues[term]),
            p_value=float(result.pvalues[term]),
            ci_low=float(ci.loc[term, 0]),
            ci_high=float(ci.loc[term, 1]),
        )
        for term in result.params.index
    ]
    llf = float(result.llf)
    return ModelSummary(
        name=name,
        predictors=predictors,
        n_obs=int(result.nobs),
        log_likelihood=llf,
        aic=float(result.aic),
        pseudo_r2=float(1.0 - llf / baseline_llf) if baseline_llf != 0 else 0.0,
        coefficients=coefficients,
    )


def fit_nested_models(
    df: pd.DataFrame,
    outcome_col: str = 'mobile',
    score_col: str = 'score',
    volume_col: str = 'total_contact_count',
    models: Optional[Dict[str, Sequence[str]]] = None,
    verbose: bool = True,
) -> NestedModelReport:
    """
    Fit baseline, volume-only, score-only and score+volume logits on one sample.

    Args:
        df: Score table with outcome column
        outcome_col: Binary outcome
        score_col: SFB score column
        volume_col: Contact volume column (the competing covariate)
        models: Override of NESTED_MODELS (roles 'score' / 'volume' or raw column names)
        verbose: Print comparison table

    Returns:
        NestedModelReport

    Raises:
        ModelFitFailure: If any model (including the baseline) is degenerate

    Example:
        >>> report = fit_nested_models(score_df, outcome_col='mobile')
        >>> report.models['score_volume'].coefficient('score').estimate
    """
    if models is None:
        models = NESTED_MODELS

    sample, n_excluded = prepare_model_sample(
        df, outcome_col, score_col=score_col, volume_col=volume_col, verbose=verbose
    )
    y = sample[outcome_col].astype(float)
    roles = {'score': score_col, 'volume': volume_col}

    const = pd.DataFrame({'const': np.ones(len(sample))})
    baseline = fit_logit(y, const, BASELINE_MODEL)
    baseline_llf = float(baseline.llf)

    summaries = {BASELINE_MODEL: _summarize(BASELINE_MODEL, [], baseline, baseline_llf)}

    for name, predictors in models.items():
        columns = [roles.get(p, p) for p in predictors]
        X = sm.add_constant(sample[columns].astype(float), has_constant='add')
        result = fit_logit(y, X, name)
        summaries[name] = _summarize(name, columns, result, baseline_llf)

    report = NestedModelReport(
        outcome_col=outcome_col,
        score_col=score_col,
        volume_col=volume_col,
        n_obs=len(sample),
        n_excluded=n_excluded,
        outcome_rate=float(y.mean()),
        baseline_log_likelihood=baseline_llf,
        models=summaries,
    )

    if verbose:
        print(f"{'='*70}")
        print(f"NESTED LOGIT COMPARISON (McFadden pseudo-R2)")
        print(f"{'='*70}")
        for m in report.models.values():
            label = ' + '.join(m.predictors) or '(intercept only)'
            print(f"  {label:40s} llf={m.log_likelihood:10.3f}  pseudo-R2={m.pseudo_r2:.3f}")
        full = report.models.get('score_volume')
        if full is not None and score_col in full.predictors:
            c = full.coefficient(score_col)
            print(f"")
            print(f"Score coefficient (with volume): {c.estimate:.4f} "
                  f"(SE {c.std_error:.4f}, p={c.p_value:.2e}, 95% CI [{c.ci_low:.4f}, {c.ci_high:.4f}])")
        print(f"{'='*70}\n")

    return report
