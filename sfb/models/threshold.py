"""
Threshold Detector

Question: is the effect of the SFB score on the outcome better described by
an activation threshold than by a single linear term in the log-odds?

Two views, both always reported:

1. Descriptive: outcome rate per score quantile bin, and the shape of the
   rate sequence (non_monotonic / step / sigmoidal / gradual).

2. Inferential: a profile-likelihood breakpoint search.
   For each candidate c on a grid between trimmed quantiles of the score:

       logit(p) = b0 + b1*s + b2*1{s > c} + b3*max(0, s - c)

   The candidate with the highest log-likelihood is the breakpoint. Its fit
   is compared with the linear logit b0 + b1*s by the likelihood ratio
   LR = 2 * (llf_breakpoint - llf_linear) on 3 extra parameters (b2, b3, c).

   Because c is searched, the chi2 p-value of LR is only nominal. The
   verdict therefore uses one of:
   - 'bic':       breakpoint_detected iff BIC(breakpoint) < BIC(linear),
                  counting c as an estimated parameter
   - 'bootstrap': parametric bootstrap of the sup-LR statistic under the
                  fitted linear model; breakpoint_detected iff p < alpha
"""

import logging
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from pydantic import BaseModel
from scipy.stats import chi2

from sfb.config import THRESHOLD_CRITERIA
from sfb.errors import ModelFitFailure
from sfb.models.outcome import fit_logit

logger = logging.getLogger(__name__)

LINEAR_SUFFICIENT = 'linear_sufficient'
BREAKPOINT_DETECTED = 'breakpoint_detected'

BREAKPOINT_TERMS = ['const', 'score', 'step', 'hinge']
EXTRA_PARAMETERS = 3  # b2, b3 and the breakpoint itself


# ============================================================================
# DESCRIPTIVE: QUANTILE BINS
# ============================================================================

def outcome_rate_by_quantile(
    df: pd.DataFrame,
    n_bins: int = 5,
    score_col: str = 'score',
    outcome_col: str = 'mobile',
) -> pd.DataFrame:
    """
    Outcome rate per score quantile bin.

    Ties in the score can merge bins, so fewer than n_bins rows may come back.

    Returns:
        DataFrame [bin, n, score_mean, score_min, score_max, outcome_rate]
    """
    if n_bins < 2:
        raise ValueError(f"n_bins must be >= 2, got {n_bins}")

    bins = pd.qcut(df[score_col], q=n_bins, labels=False, duplicates='drop')

    table = (
        df.assign(bin=bins)
        .groupby('bin')
        .agg(
            n=(outcome_col, 'size'),
            score_mean=(score_col, 'mean'),
            score_min=(score_col, 'min'),
            score_max=(score_col, 'max'),
            outcome_rate=(outcome_col, 'mean'),
        )
        .reset_index()
    )
    table['bin'] = table['bin'].astype(int) + 1

    return table


def classify_bin_pattern(rates: Sequence[float], step_share: float = 0.5) -> str:
    """
    Shape of the per-bin outcome rates.

    - non_monotonic: rates do not strictly increase
    - step:          one jump carries at least step_share of the total rise
    - sigmoidal:     increments grow then shrink (convex then concave)
    - gradual:       anything else that strictly increases
    """
    rates = np.asarray(rates, dtype=float)
    if len(rates) < 2:
        return 'gradual'

    diffs = np.diff(rates)
    if not np.all(diffs > 0):
        return 'non_monotonic'

    if len(diffs) >= 2 and diffs.max() >= step_share * diffs.sum():
        return 'step'

    curvature = np.sign(np.diff(diffs))
    curvature = curvature[curvature != 0]
    if len(curvature) >= 2 and curvature[0] > 0 and curvature[-1] < 0:
        # exactly one convex -> concave turn
        if np.count_nonzero(np.diff(curvature)) == 1:
            return 'sigmoidal'

    return 'gradual'


# ============================================================================
# INFERENTIAL: PROFILE LIKELIHOOD
# ============================================================================

def candidate_breakpoints(score: np.ndarray, grid_step: float = 0.01, trim: float = 0.10) -> np.ndarray:
    """Grid multiples of grid_step between the trim and 1 - trim quantiles of the score."""
    lo, hi = np.quantile(score, [trim, 1.0 - trim])
    start = np.ceil(np.round(lo / grid_step, 9)) * grid_step
    grid = np.arange(start, hi + grid_step * 1e-6, grid_step)
    return np.round(grid, 10)


def breakpoint_design(score: np.ndarray, breakpoint: float) -> np.ndarray:
    return np.column_stack([
        np.ones(len(score)),
        score,
        (score > breakpoint).astype(float),
        np.maximum(0.0, score - breakpoint),
    ])


def linear_design(score: np.ndarray) -> np.ndarray:
    return np.column_stack([np.ones(len(score)), score])


def _profile(score: np.ndarray, y: np.ndarray, grid: np.ndarray) -> Tuple[np.ndarray, Dict[int, object]]:
    """Log-likelihood at every candidate (NaN where the fit is degenerate)."""
    llf = np.full(len(grid), np.nan)
    fits = {}
    for k, c in enumerate(grid):
        try:
            result = fit_logit(y, breakpoint_design(score, c), f'breakpoint@{c:.3f}')
        except ModelFitFailure as e:
            logger.debug(f"Skipping candidate {c:.3f}: {e.reason}")
            continue
        llf[k] = result.llf
        fits[k] = result
    return llf, fits


def _sup_lr(score: np.ndarray, y: np.ndarray, grid: np.ndarray) -> float:
    linear = fit_logit(y, linear_design(score), 'linear')
    llf, _ = _profile(score, y, grid)
    if np.all(np.isnan(llf)):
        raise ModelFitFailure('breakpoint', 'no candidate breakpoint could be fitted')
    return max(0.0, 2.0 * (np.nanmax(llf) - linear.llf))


def bootstrap_p_value(
    score: np.ndarray,
    linear_probabilities: np.ndarray,
    observed_lr: float,
    grid: np.ndarray,
    n_bootstrap: int = 199,
    seed: Optional[int] = None,
) -> Tuple[float, int]:
    """
    Parametric bootstrap of sup-LR under the fitted linear model.

    Replicates whose fits are degenerate are dropped.

    Returns:
        (p_value, n_valid_replicates)
    """
    rng = np.random.default_rng(seed)
    exceed = 0
    n_valid = 0

    for _ in range(n_bootstrap):
        y_b = rng.binomial(1, linear_probabilities).astype(float)
        try:
            lr_b = _sup_lr(score, y_b, grid)
        except ModelFitFailure as e:
            logger.debug(f"Bootstrap replicate dropped: {e}")
            continue
        n_valid += 1
        if lr_b >= observed_lr:
            exceed += 1

    if n_valid == 0:
        raise ModelFitFailure('bootstrap', 'every bootstrap replicate was degenerate')

    return (1 + exceed) / (1 + n_valid), n_valid


# ============================================================================
# RESULT
# ============================================================================

class ThresholdResult(BaseModel):
    verdict: str
    criterion: str
    breakpoint: float
    lr_statistic: float
    df: int
    p_value: float
    p_value_method: str
    nominal_p_value: float
    linear_log_likelihood: float
    breakpoint_log_likelihood: float
    linear_bic: float
    breakpoint_bic: float
    breakpoint_coefficients: Dict[str, float]
    n_obs: int
    n_candidates: int
    n_failed_candidates: int
    n_bootstrap_valid: Optional[int] = None
    bin_pattern: str
    bins: pd.DataFrame
    profile: pd.DataFrame

    class Config:
        frozen = True
        arbitrary_types_allowed = True

    @property
    def detected(self) -> bool:
        return self.verdict == BREAKPOINT_DETECTED

    def describe(self) -> str:
        if self.detected:
            return (
                f"breakpoint detected at {self.breakpoint:.3f} "
                f"(LR={self.lr_statistic:.2f}, df={self.df}, {self.p_value_method} p={self.p_value:.3g})"
            )
        return (
            f"linear sufficient (best candidate {self.breakpoint:.3f}, "
            f"LR={self.lr_statistic:.2f}, df={self.df}, {self.p_value_method} p={self.p_value:.3g})"
        )


# ============================================================================
# DETECTOR
# ============================================================================

def detect_threshold(
    score: Sequence[float],
    outcome: Sequence[float],
    n_quantiles: int = 5,
    grid_step: float = 0.01,
    trim: float = 0.10,
    criterion: str = 'bic',
    n_bootstrap: int = 199,
    alpha: float = 0.05,
    seed: Optional[int] = None,
    verbose: bool = False,
) -> ThresholdResult:
    """
    Decide between 'linear_sufficient' and 'breakpoint_detected'.

    Args:
        score: Defined SFB scores
        outcome: Binary outcome aligned with score
        n_quantiles: Bins for the descriptive rate table
        grid_step: Spacing of candidate breakpoints
        trim: Candidates lie between the trim and 1 - trim score quantiles
        criterion: 'bic' or 'bootstrap'
        n_bootstrap: Replicates when criterion='bootstrap'
        alpha: Significance level when criterion='bootstrap'
        seed: Bootstrap RNG seed
        verbose: Print report

    Returns:
        ThresholdResult (breakpoint and statistic are reported either way)

    Raises:
        ValueError: Misaligned/NaN input, unknown criterion, empty grid
        ModelFitFailure: Linear model degenerate, or no candidate fits
    """
    if criterion not in THRESHOLD_CRITERIA:
        raise ValueError(f"criterion must be one of {THRESHOLD_CRITERIA}, got '{criterion}'")

    s = np.asarray(score, dtype=float)
    y = np.asarray(outcome, dtype=float)

    if s.shape != y.shape:
        raise ValueError(f"score and outcome lengths differ: {len(s)} vs {len(y)}")
    if np.isnan(s).any() or np.isnan(y).any():
        raise ValueError("score and outcome must not contain NaN; drop undefined scores first")

    n = len(s)

    bins = outcome_rate_by_quantile(
        pd.DataFrame({'score': s, 'outcome': y}),
        n_bins=n_quantiles,
        outcome_col='outcome',
    )
    pattern = classify_bin_pattern(bins['outcome_rate'].to_numpy())

    grid = candidate_breakpoints(s, grid_step=grid_step, trim=trim)
    if len(grid) == 0:
        raise ValueError(
            f"No candidate breakpoints between the {trim:.0%} and {1 - trim:.0%} score quantiles "
            f"at step {grid_step}"
        )

    linear = fit_logit(y, linear_design(s), 'linear')

    llf, fits = _profile(s, y, grid)
    n_failed = int(np.isnan(llf).sum())
    if n_failed == len(grid):
        raise ModelFitFailure('breakpoint', 'no candidate breakpoint could be fitted')
    if n_failed:
        logger.info(f"{n_failed}/{len(grid)} breakpoint candidates were degenerate and skipped")

    best = int(np.nanargmax(llf))
    best_fit = fits[best]
    breakpoint = float(grid[best])

    lr = max(0.0, 2.0 * (float(best_fit.llf) - float(linear.llf)))
    nominal_p = float(chi2.sf(lr, EXTRA_PARAMETERS))

    linear_bic = -2.0 * float(linear.llf) + 2 * np.log(n)
    breakpoint_bic = -2.0 * float(best_fit.llf) + (len(BREAKPOINT_TERMS) + 1) * np.log(n)

    n_valid = None
    if criterion == 'bic':
        detected = breakpoint_bic < linear_bic
        p_value, p_method = nominal_p, 'chi2'
    else:
        p_value, n_valid = bootstrap_p_value(
            s, linear.predict(linear_design(s)), lr, grid,
            n_bootstrap=n_bootstrap, seed=seed,
        )
        detected = p_value < alpha
        p_method = 'bootstrap'

    result = ThresholdResult(
        verdict=BREAKPOINT_DETECTED if detected else LINEAR_SUFFICIENT,
        criterion=criterion,
        breakpoint=breakpoint,
        lr_statistic=lr,
        df=EXTRA_PARAMETERS,
        p_value=float(p_value),
        p_value_method=p_method,
        nominal_p_value=nominal_p,
        linear_log_likelihood=float(linear.llf),
        breakpoint_log_likelihood=float(best_fit.llf),
        linear_bic=float(linear_bic),
        breakpoint_bic=float(breakpoint_bic),
        breakpoint_coefficients=dict(zip(BREAKPOINT_TERMS, map(float, best_fit.params))),
        n_obs=n,
        n_candidates=len(grid),
        n_failed_candidates=n_failed,
        n_bootstrap_valid=n_valid,
        bin_pattern=pattern,
        bins=bins,
        profile=pd.DataFrame({'breakpoint': grid, 'log_likelihood': llf}),
    )

    logger.info(f"Threshold detector: {result.describe()}")

    if verbose:
        print(f"\n{'='*70}")
        print(f"THRESHOLD DETECTION ({criterion.upper()})")
        print(f"{'='*70}")
        print(f"Outcome rate by score quantile ({len(bins)} bins, pattern: {pattern}):")
        for _, row in bins.iterrows():
            print(f"  Q{int(row['bin'])}: score {row['score_min']:.3f}-{row['score_max']:.3f}  "
                  f"rate={row['outcome_rate']:.3f}  n={int(row['n'])}")
        print(f"")
        print(f"Candidates:          {len(grid)} ({n_failed} skipped)")
        print(f"Best breakpoint:     {breakpoint:.3f}")
        print(f"LR statistic:        {lr:.3f} (df={EXTRA_PARAMETERS})")
        print(f"BIC linear / bp:     {linear_bic:.2f} / {breakpoint_bic:.2f}")
        print(f"p-value ({p_method}):  {p_value:.4g}")
        print(f"")
        print(f"Verdict: {result.verdict.upper()}")
        print(f"{'='*70}\n")

    return result


def detect_threshold_frame(
    df: pd.DataFrame,
    score_col: str = 'score',
    outcome_col: str = 'mobile',
    **kwargs,
) -> ThresholdResult:
    """detect_threshold on two DataFrame columns, dropping rows with an undefined score."""
    usable = df[[score_col, outcome_col]].dropna()
    if len(usable) < len(df):
        logger.info(f"Threshold detector: dropped {len(df) - len(usable)} rows with undefined score/outcome")
    return detect_threshold(usable[score_col].to_numpy(), usable[outcome_col].to_numpy(), **kwargs)
