"""
SFB Scorer

Converts per-dyad shared-layer counts into one bounded diversity score per
low-class device:

    numerator   = sum over neighbors of shared_layer_count / L
    denominator = number of distinct neighbors
    score       = numerator / denominator

Because 1 <= shared_layer_count <= L for every term, 1/L <= score <= 1
whenever the denominator is positive. The division is carried out as
total_contact_count / (L * neighbor_count) on integers, so the two bounds
are reached exactly rather than up to float accumulation error.

A device with no cross-class neighbor has an UNDEFINED score: it is
reported separately and never enters the score table or any model.
"""

import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd
from pydantic import BaseModel

from sfb.ingestion.schema import ClassLabel, Device
from sfb.network.schema import DyadSummary
from sfb.scoring.schema import SFBScore

logger = logging.getLogger(__name__)

SCORE_COLUMNS = ["device_id", "score", "neighbor_count", "total_contact_count"]


class ScoringResult(BaseModel):
    n_layers: int
    scores: List[SFBScore]
    undefined: List[SFBScore] = []

    class Config:
        frozen = True


def compute_sfb_scores(
    dyads: Iterable[DyadSummary],
    n_layers: int,
    devices: Optional[Sequence[Device]] = None,
) -> ScoringResult:
    """
    Score every device_i that has at least one DyadSummary.

    Args:
        dyads: Aggregated dyads (one per ordered low -> high pair)
        n_layers: L, the size of the fixed layer set
        devices: Optional device roster; low-class devices in it without any
            dyad are returned as undefined scores

    Returns:
        ScoringResult with defined scores (sorted by device_id) and undefined ones

    Raises:
        ValueError: If L < 1, a dyad exceeds L, or a pair appears twice
    """
    if n_layers < 1:
        raise ValueError(f"n_layers must be >= 1, got {n_layers}")

    neighbors: Dict[str, set] = defaultdict(set)
    contacts: Dict[str, int] = defaultdict(int)

    for dyad in dyads:
        if dyad.shared_layer_count > n_layers:
            raise ValueError(
                f"Dyad ({dyad.device_i}, {dyad.device_j}) shares {dyad.shared_layer_count} layers, L={n_layers}"
            )
        if dyad.device_j in neighbors[dyad.device_i]:
            raise ValueError(f"Duplicate dyad ({dyad.device_i}, {dyad.device_j}); aggregate layers first")
        neighbors[dyad.device_i].add(dyad.device_j)
        contacts[dyad.device_i] += dyad.shared_layer_count

    scores = []
    for device_id in sorted(neighbors):
        neighbor_count = len(neighbors[device_id])
        total = contacts[device_id]
        scores.append(SFBScore(
            device_id=device_id,
            neighbor_count=neighbor_count,
            total_contact_count=total,
            score=total / (n_layers * neighbor_count),
        ))

    undefined = []
    if devices is not None:
        undefined = [
            SFBScore(device_id=d.device_id, neighbor_count=0, total_contact_count=0, score=None)
            for d in sorted(devices, key=lambda d: d.device_id)
            if d.class_label == ClassLabel.LOW and d.device_id not in neighbors
        ]
        if undefined:
            logger.info(
                f"{len(undefined)} low-class device(s) have no cross-class neighbor; "
                f"their score is undefined and they are excluded from the score table"
            )

    return ScoringResult(n_layers=n_layers, scores=scores, undefined=undefined)


def _device_rows(devices: Sequence[Device]) -> pd.DataFrame:
    rows = []
    for d in devices:
        row = d.model_dump()
        row["class_label"] = d.class_label.value
        rows.append(row)
    return pd.DataFrame(rows)


def score_table(result: ScoringResult, devices: Optional[Sequence[Device]] = None) -> pd.DataFrame:
    """
    The downstream score table: device_id, score, neighbor_count,
    total_contact_count, sfb_numerator, plus joined device covariates.

    Only defined scores appear here.
    """
    df = pd.DataFrame(
        [s.model_dump() for s in result.scores],
        columns=SCORE_COLUMNS,
    )
    df["sfb_numerator"] = df["total_contact_count"] / result.n_layers

    if devices:
        covariates = _device_rows(devices)
        df = df.merge(covariates, on="device_id", how="left", validate="one_to_one")

    return df


def summarize_scores(score_df: pd.DataFrame, n_layers: int, score_col: str = "score") -> Dict:
    """Distribution summary, including how far scores rise above the single-layer baseline 1/L."""
    s = score_df[score_col]
    baseline = 1.0 / n_layers

    if s.empty:
        return {
            'n_devices': 0,
            'baseline': baseline,
            'min': np.nan, 'mean': np.nan, 'median': np.nan, 'max': np.nan,
            'range_above_baseline': np.nan,
        }

    return {
        'n_devices': int(len(s)),
        'baseline': baseline,
        'min': float(s.min()),
        'mean': float(s.mean()),
        'median': float(s.median()),
        'max': float(s.max()),
        'range_above_baseline': float(s.max() - baseline),
    }
