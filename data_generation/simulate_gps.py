"""
Synthetic GPS visit generator.

Reproduces the structure of commercial stop-level GPS panels without real
data: a universe of institutionally typed locations, devices with a home
class, and Poisson visit streams whose layer mix depends on a latent
mobility type.

Low-class devices differ in how many institutional layers they reach:
- constrained: almost only labor + consumption
- partial:     some educational / cultural visits
- diverse:     all four layers (every high-class device is diverse)

That latent type is the variation the SFB score is meant to recover.
"""

import sys
from pathlib import Path
from typing import Dict, List, Tuple

import numpy as np
import pandas as pd
from pydantic import BaseModel, Field, validator
from tqdm import tqdm

sys.path.append(str(Path(__file__).parent.parent))
from sfb.config import DEFAULT_LAYERS


MOBILITY_TYPES = ["constrained", "partial", "diverse"]

# Probability of visiting each layer, by mobility type
LAYER_PROBS = {
    "constrained": {"labor": 0.52, "educational": 0.03, "cultural": 0.02, "consumption": 0.43},
    "partial":     {"labor": 0.38, "educational": 0.12, "cultural": 0.08, "consumption": 0.42},
    "diverse":     {"labor": 0.27, "educational": 0.22, "cultural": 0.19, "consumption": 0.32},
}


class SimulationConfig(BaseModel):
    n_devices: int = Field(600, ge=2)
    n_days: int = Field(45, ge=1)
    n_poi: int = Field(120, ge=1)
    visit_rate: float = Field(5.0, gt=0, description="Expected visits per device per day")
    layers: List[str] = list(DEFAULT_LAYERS)
    layer_shares: List[float] = [0.28, 0.14, 0.13, 0.45]
    low_share: float = Field(0.60, gt=0, lt=1)
    mobility_type_shares: List[float] = [0.45, 0.35, 0.20]
    location_low_share: float = Field(0.55, ge=0, le=1)
    mean_duration_min: float = Field(40.0, gt=0)
    start: str = "2023-01-01"
    seed: int = 42

    class Config:
        frozen = True

    @validator("layer_shares")
    def shares_match_layers(cls, v, values):
        layers = values.get("layers")
        if layers is not None and len(v) != len(layers):
            raise ValueError(f"{len(v)} layer shares for {len(layers)} layers")
        if not np.isclose(sum(v), 1.0):
            raise ValueError(f"layer_shares must sum to 1, got {sum(v)}")
        return v

    @validator("mobility_type_shares")
    def three_mobility_types(cls, v):
        if len(v) != len(MOBILITY_TYPES) or not np.isclose(sum(v), 1.0):
            raise ValueError(f"mobility_type_shares needs {len(MOBILITY_TYPES)} shares summing to 1")
        return v


def simulate_pois(config: SimulationConfig, rng: np.random.Generator) -> pd.DataFrame:
    """
    Location universe. Every layer gets at least one location, so no layer
    is empty by construction (empty layers are still handled downstream).
    """
    if config.n_poi < len(config.layers):
        raise ValueError(f"n_poi={config.n_poi} cannot cover {len(config.layers)} layers")

    layer = rng.choice(config.layers, size=config.n_poi, p=config.layer_shares)
    # Pin the first len(layers) locations to one layer each
    layer[:len(config.layers)] = config.layers

    return pd.DataFrame({
        "location_id": [f"poi_{i:03d}" for i in range(1, config.n_poi + 1)],
        "layer": layer,
        "location_class": rng.choice(
            ["low", "high"], size=config.n_poi,
            p=[config.location_low_share, 1 - config.location_low_share],
        ),
        "lon": rng.uniform(-87.7, -87.5, size=config.n_poi),
        "lat": rng.uniform(41.8, 42.0, size=config.n_poi),
    })


def simulate_devices(config: SimulationConfig, rng: np.random.Generator) -> pd.DataFrame:
    """
    Devices with class label, SES quintile (1-2 low, 4-5 high) and mobility type.
    """
    n = config.n_devices
    class_label = rng.choice(["low", "high"], size=n, p=[config.low_share, 1 - config.low_share])
    is_low = class_label == "low"

    ses_quintile = np.where(
        is_low,
        rng.integers(1, 3, size=n),
        rng.integers(4, 6, size=n),
    )
    mobility_type = np.where(
        is_low,
        rng.choice(MOBILITY_TYPES, size=n, p=config.mobility_type_shares),
        "diverse",
    )

    return pd.DataFrame({
        "device_id": [f"dev_{i:04d}" for i in range(1, n + 1)],
        "class_label": class_label,
        "ses_quintile": ses_quintile,
        "outcome_label": ses_quintile.astype(float),
        "mobility_type": mobility_type,
    })


def _location_weights(pois: pd.DataFrame) -> Dict[str, np.ndarray]:
    weights = {}
    for mobility_type, probs in LAYER_PROBS.items():
        w = pois["layer"].map(lambda layer: probs.get(layer, 0.0)).to_numpy(dtype=float)
        weights[mobility_type] = w / w.sum()
    return weights


def simulate_visits(
    devices: pd.DataFrame,
    pois: pd.DataFrame,
    config: SimulationConfig,
    rng: np.random.Generator,
    verbose: bool = False,
) -> pd.DataFrame:
    """
    Visit events for every device.

    Logic:
    1. Visit count ~ Poisson(visit_rate * n_days).
    2. Each visit picks a location with weight = P(layer | mobility type).
    3. Timestamps uniform over the study period; durations exponential.
    """
    weights = _location_weights(pois)
    start = pd.Timestamp(config.start)
    horizon_s = config.n_days * 86400

    frames = []
    for device in tqdm(
        devices.itertuples(index=False),
        total=len(devices),
        desc="Simulating visits",
        disable=not verbose,
    ):
        n_visits = rng.poisson(config.visit_rate * config.n_days)
        if n_visits == 0:
            continue

        idx = rng.choice(len(pois), size=n_visits, p=weights[device.mobility_type])
        seconds = np.sort(np.round(rng.uniform(0, horizon_s, size=n_visits)))

        frames.append(pd.DataFrame({
            "device_id": device.device_id,
            "location_id": pois["location_id"].to_numpy()[idx],
            "layer": pois["layer"].to_numpy()[idx],
            "location_class": pois["location_class"].to_numpy()[idx],
            "timestamp": start + pd.to_timedelta(seconds, unit="s"),
            "duration_min": np.round(rng.exponential(config.mean_duration_min, size=n_visits)),
            "class_label": device.class_label,
            "ses_quintile": device.ses_quintile,
            "mobility_type": device.mobility_type,
        }))

    if not frames:
        return pd.DataFrame(columns=[
            "device_id", "location_id", "layer", "location_class", "timestamp",
            "duration_min", "class_label", "ses_quintile", "mobility_type",
        ])

    return pd.concat(frames, ignore_index=True)


def generate_synthetic_dataset(
    config: SimulationConfig = None,
    verbose: bool = True,
) -> Tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame]:
    """
    Returns:
        (visits, devices, pois)

    Example:
        >>> visits, devices, pois = generate_synthetic_dataset(SimulationConfig(n_devices=200))
    """
    if config is None:
        config = SimulationConfig()

    rng = np.random.default_rng(config.seed)

    pois = simulate_pois(config, rng)
    devices = simulate_devices(config, rng)
    visits = simulate_visits(devices, pois, config, rng, verbose=verbose)

    if verbose:
        print(f"\n{'='*70}")
        print(f"SYNTHETIC GPS DATA")
        print(f"{'='*70}")
        print(f"Devices:               {len(devices):,}")
        print(f"Locations:             {len(pois):,}")
        print(f"Visit events:          {len(visits):,}")
        print(f"Avg visits per device: {len(visits) / len(devices):.1f}")
        print(f"\nVisits by layer:")
        layer_pct = visits["layer"].value_counts(normalize=True).round(3)
        for layer, pct in layer_pct.items():
            print(f"  {layer:15s} {pct:.3f}")
        print(f"\nLow-class devices by mobility type:")
        low = devices[devices["class_label"] == "low"]
        for mobility_type, pct in low["mobility_type"].value_counts(normalize=True).round(3).items():
            print(f"  {mobility_type:15s} {pct:.3f}")
        print(f"{'='*70}\n")

    return visits, devices, pois


def save_synthetic_dataset(
    visits: pd.DataFrame,
    devices: pd.DataFrame,
    pois: pd.DataFrame,
    output_dir: str = "data",
) -> Dict[str, Path]:
    out = Path(output_dir)
    out.mkdir(parents=True, exist_ok=True)

    paths = {
        "visits": out / "synthetic_visits.csv",
        "devices": out / "synthetic_devices.csv",
        "pois": out / "synthetic_pois.csv",
    }
    visits.to_csv(paths["visits"], index=False)
    devices.to_csv(paths["devices"], index=False)
    pois.to_csv(paths["pois"], index=False)

    print(f"Synthetic data saved to {out}/")
    return paths


if __name__ == "__main__":
    visits, devices, pois = generate_synthetic_dataset(verbose=True)
    save_synthetic_dataset(visits, devices, pois)
