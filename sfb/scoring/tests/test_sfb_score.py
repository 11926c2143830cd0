"""
Tests for the SFB Scorer.

Validates:
1. Bounds: 1/L <= score <= 1 for every defined score
2. Exact endpoints: all-layer neighbors give 1, single-layer neighbors give 1/L
3. The A/B example: one neighbor sharing 2 of 4 layers gives 0.5
4. Devices without neighbors are undefined and absent from the score table
5. Strata of increasing institutional diversity give increasing mean scores
"""

import numpy as np
import pandas as pd
import pytest

from sfb.evaluation.validation import is_strictly_increasing, mean_score_by_stratum
from sfb.ingestion.schema import Device
from sfb.ingestion.visit_store import VisitStore
from sfb.network.aggregation import aggregate_layers
from sfb.network.copresence import build_all_layers
from sfb.network.schema import DyadSummary
from sfb.scoring.sfb_score import compute_sfb_scores, score_table, summarize_scores

L = 4
LAYERS = ["labor", "educational", "cultural", "consumption"]


def dyad(i, j, k):
    return DyadSummary(device_i=i, device_j=j, shared_layer_count=k)


# ============================================================================
# TEST 1: Bounds and exact endpoints
# ============================================================================

def test_random_dyads_stay_within_bounds():
    rng = np.random.default_rng(3)
    dyads = [
        dyad(f"low_{i}", f"high_{j}", int(rng.integers(1, L + 1)))
        for i in range(50)
        for j in range(int(rng.integers(1, 8)))
    ]
    result = compute_sfb_scores(dyads, n_layers=L)

    assert len(result.scores) == 50
    for s in result.scores:
        assert 1 / L <= s.score <= 1


def test_all_layers_shared_gives_exactly_one():
    result = compute_sfb_scores([dyad("A", "B", 4), dyad("A", "C", 4)], n_layers=L)
    assert result.scores[0].score == 1.0


def test_single_layer_contacts_give_exactly_baseline():
    result = compute_sfb_scores([dyad("A", h, 1) for h in "BCDEFG"], n_layers=L)
    assert result.scores[0].score == 1 / L
    assert result.scores[0].neighbor_count == 6
    assert result.scores[0].total_contact_count == 6


def test_mixed_neighbors_average():
    # (4 + 1 + 2) / (4 * 3)
    result = compute_sfb_scores([dyad("A", "B", 4), dyad("A", "C", 1), dyad("A", "D", 2)], n_layers=L)
    assert result.scores[0].score == pytest.approx(7 / 12)


# ============================================================================
# TEST 2: End-to-end example
# ============================================================================

def test_ab_example_scores_one_half():
    visits = pd.DataFrame([
        {"device_id": "A", "location_id": "w", "layer": "labor", "timestamp": "2023-01-02 09:00:00", "class_label": "low"},
        {"device_id": "B", "location_id": "w", "layer": "labor", "timestamp": "2023-01-02 09:15:00", "class_label": "high"},
        {"device_id": "A", "location_id": "m", "layer": "consumption", "timestamp": "2023-01-02 18:00:00", "class_label": "low"},
        {"device_id": "B", "location_id": "m", "layer": "consumption", "timestamp": "2023-01-02 18:20:00", "class_label": "high"},
    ])
    store = VisitStore.from_frame(visits, layers=LAYERS)
    dyads = aggregate_layers(build_all_layers(store, window_minutes=30), LAYERS)

    assert dyads == [dyad("A", "B", 2)]

    result = compute_sfb_scores(dyads, n_layers=L, devices=store.derive_devices())
    assert [(s.device_id, s.score) for s in result.scores] == [("A", 0.5)]
    # High-class devices are never scored
    assert result.undefined == []


# ============================================================================
# TEST 3: Undefined scores
# ============================================================================

def test_isolated_low_device_is_undefined_and_excluded():
    devices = [
        Device(device_id="A", class_label="low"),
        Device(device_id="Z", class_label="low", mobility_type="constrained"),
        Device(device_id="B", class_label="high"),
    ]
    result = compute_sfb_scores([dyad("A", "B", 1)], n_layers=L, devices=devices)

    assert [s.device_id for s in result.undefined] == ["Z"]
    assert result.undefined[0].score is None
    assert result.undefined[0].neighbor_count == 0

    table = score_table(result, devices=devices)
    assert table["device_id"].tolist() == ["A"]
    assert table["score"].notna().all()
    assert (table["score"] > 0).all()


def test_score_table_joins_covariates():
    devices = [
        Device(device_id="A", class_label="low", outcome_label=1.0, visit_volume=12, ses_quintile=1),
        Device(device_id="B", class_label="high"),
    ]
    result = compute_sfb_scores([dyad("A", "B", 2)], n_layers=L, devices=devices)
    table = score_table(result, devices=devices)

    row = table.iloc[0]
    assert row["sfb_numerator"] == 0.5
    assert row["visit_volume"] == 12
    assert row["ses_quintile"] == 1
    assert row["class_label"] == "low"


# ============================================================================
# TEST 4: Contract violations
# ============================================================================

def test_dyad_exceeding_L_rejected():
    with pytest.raises(ValueError, match="L=2"):
        compute_sfb_scores([dyad("A", "B", 3)], n_layers=2)


def test_duplicate_dyad_rejected():
    with pytest.raises(ValueError, match="Duplicate dyad"):
        compute_sfb_scores([dyad("A", "B", 1), dyad("A", "B", 2)], n_layers=L)


def test_summary_reports_range_above_baseline():
    result = compute_sfb_scores([dyad("A", "B", 1), dyad("C", "B", 3)], n_layers=L)
    summary = summarize_scores(score_table(result), n_layers=L)

    assert summary["n_devices"] == 2
    assert summary["baseline"] == 0.25
    assert summary["max"] == 0.75
    assert summary["range_above_baseline"] == pytest.approx(0.5)


# ============================================================================
# TEST 5: Strata monotonicity
# ============================================================================

def test_diversity_strata_give_increasing_scores():
    """
    Each low device meets the same two high devices in every layer it uses.

    constrained: labor only; partial: labor + consumption; diverse: all four.
    """
    strata = {
        "constrained": ["labor"],
        "partial": ["labor", "consumption"],
        "diverse": LAYERS,
    }
    rows = []
    devices = [Device(device_id=h, class_label="high") for h in ("H1", "H2")]
    for stratum, layers in strata.items():
        for k in range(3):
            device_id = f"{stratum}_{k}"
            devices.append(Device(device_id=device_id, class_label="low", mobility_type=stratum))
            for day, layer in enumerate(layers):
                ts = pd.Timestamp("2023-01-02 08:00") + pd.Timedelta(days=day, hours=k)
                rows.append({"device_id": device_id, "location_id": f"{layer}_1", "layer": layer,
                             "timestamp": ts, "class_label": "low"})
                for h in ("H1", "H2"):
                    rows.append({"device_id": h, "location_id": f"{layer}_1", "layer": layer,
                                 "timestamp": ts + pd.Timedelta(minutes=10), "class_label": "high"})

    store = VisitStore.from_frame(pd.DataFrame(rows), layers=LAYERS)
    dyads = aggregate_layers(build_all_layers(store, window_minutes=30), LAYERS)
    table = score_table(compute_sfb_scores(dyads, n_layers=L, devices=devices), devices=devices)

    means = mean_score_by_stratum(table, stratum_col="mobility_type")
    assert means["mean_score"].tolist() == [0.25, 0.5, 1.0]
    assert is_strictly_increasing(means["mean_score"])
