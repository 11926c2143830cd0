"""
Tests for the synthetic GPS generator and its DuckDB loader.
"""

import duckdb
import numpy as np
import pandas as pd
import pytest
from pydantic import ValidationError

from data_generation.save_to_duckdb import save_to_duckdb
from data_generation.simulate_gps import (
    SimulationConfig,
    generate_synthetic_dataset,
    save_synthetic_dataset,
    simulate_pois,
)
from sfb.config import DEFAULT_LAYERS
from sfb.ingestion.batch_loader import validate_and_convert


@pytest.fixture(scope="module")
def dataset():
    return generate_synthetic_dataset(
        SimulationConfig(n_devices=80, n_days=5, n_poi=20, seed=1), verbose=False
    )


def test_same_seed_same_data():
    config = SimulationConfig(n_devices=20, n_days=2, n_poi=8, seed=3)
    a = generate_synthetic_dataset(config, verbose=False)
    b = generate_synthetic_dataset(config, verbose=False)
    for left, right in zip(a, b):
        pd.testing.assert_frame_equal(left, right)


def test_every_layer_has_a_location():
    config = SimulationConfig(n_poi=4, layer_shares=[0.97, 0.01, 0.01, 0.01])
    pois = simulate_pois(config, np.random.default_rng(0))
    assert set(pois["layer"]) == set(DEFAULT_LAYERS)


def test_device_roster(dataset):
    _, devices, _ = dataset

    high = devices[devices["class_label"] == "high"]
    low = devices[devices["class_label"] == "low"]
    assert (high["mobility_type"] == "diverse").all()
    assert high["ses_quintile"].isin([4, 5]).all()
    assert low["ses_quintile"].isin([1, 2]).all()
    assert devices["device_id"].is_unique


def test_visits_pass_validation(dataset):
    visits, devices, pois = dataset

    records, report = validate_and_convert(visits)
    assert report.rows_dropped == 0
    assert len(records) == len(visits)
    assert set(visits["location_id"]) <= set(pois["location_id"])
    assert set(visits["layer"]) <= set(DEFAULT_LAYERS)

    # A device keeps one class label across all its visits
    assert (visits.groupby("device_id")["class_label"].nunique() == 1).all()


def test_constrained_devices_rarely_leave_labor_and_consumption(dataset):
    visits, _, _ = dataset
    share = (
        visits.assign(core=visits["layer"].isin(["labor", "consumption"]))
        .groupby("mobility_type")["core"].mean()
    )
    assert share["constrained"] > share["diverse"]


def test_invalid_shares_rejected():
    with pytest.raises(ValidationError):
        SimulationConfig(layer_shares=[0.5, 0.5])
    with pytest.raises(ValidationError):
        SimulationConfig(mobility_type_shares=[0.5, 0.6, 0.1])


def test_csv_to_duckdb(tmp_path, dataset):
    visits, devices, pois = dataset
    save_synthetic_dataset(visits, devices, pois, output_dir=str(tmp_path))

    db_path = tmp_path / "synthetic_gps.duckdb"
    counts = save_to_duckdb(data_dir=str(tmp_path), db_path=str(db_path))
    assert counts == {"visits": len(visits), "devices": len(devices)}

    con = duckdb.connect(str(db_path), read_only=True)
    layers = con.execute("SELECT DISTINCT layer FROM visits").df()["layer"]
    con.close()
    assert set(layers) <= set(DEFAULT_LAYERS)
