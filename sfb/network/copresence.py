"""
Co-presence Layer Builder.
For one institutional layer, finds every low-class -> high-class device pair
whose visits to the same location fall within the proximity window.

Layers are independent: each build reads only the immutable VisitStore and
returns its own edge set, so build_all_layers fans them out over a thread
pool and the aggregator is the only place results meet.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from multiprocessing import cpu_count
from typing import Dict, FrozenSet, List, Mapping, Optional, Sequence

import pandas as pd
from pydantic import BaseModel, Field
from tqdm import tqdm

from sfb.ingestion.schema import ClassLabel
from sfb.ingestion.visit_store import VisitStore
from sfb.network.schema import CoPresenceEdge
from sfb.network.time_utils import (
    sweep_window_pairs,
    to_microseconds,
    window_to_microseconds,
)

logger = logging.getLogger(__name__)


class LayerEdges(BaseModel):
    """Edge set of one layer plus the bookkeeping needed to report on it."""

    layer: str
    window_minutes: float = Field(..., gt=0)
    edges: FrozenSet[CoPresenceEdge] = frozenset()
    n_visits: int = Field(0, ge=0)
    n_locations: int = Field(0, ge=0)
    n_mixed_locations: int = Field(0, ge=0, description="Locations where both classes were present")
    n_candidate_pairs: int = Field(0, ge=0, description="Qualifying visit pairs before collapsing")

    class Config:
        frozen = True

    def sorted_edges(self) -> List[CoPresenceEdge]:
        return sorted(self.edges, key=lambda e: (e.device_i, e.device_j))

    def __len__(self) -> int:
        return len(self.edges)


def build_copresence_layer(
    store: VisitStore,
    layer: str,
    window_minutes: float,
    verbose: bool = False,
) -> LayerEdges:
    """
    Builds the CoPresenceEdges of one layer.

    Logic:
    1. Take the layer's visits, already partitioned by location_id.
    2. Per location, split into low-class and high-class visits, sorted by time.
    3. Sweep (see time_utils.sweep_window_pairs) to get every visit pair with
       |t_low - t_high| <= W.
    4. Collapse to existence: one edge per (device_i, device_j) in this layer.

    A location with one class present, or an empty layer, yields no edges.
    """
    window_us = window_to_microseconds(window_minutes)
    locations = store.locations(layer)

    pairs = set()
    n_visits = 0
    n_mixed = 0
    n_candidates = 0

    for location_id, visits in tqdm(
        locations.items(),
        desc=f"Sweeping {layer}",
        disable=not verbose,
    ):
        n_visits += len(visits)

        low = sorted(
            (to_microseconds(v.timestamp), v.device_id)
            for v in visits if v.class_label == ClassLabel.LOW
        )
        if not low:
            continue
        high = sorted(
            (to_microseconds(v.timestamp), v.device_id)
            for v in visits if v.class_label == ClassLabel.HIGH
        )
        if not high:
            continue

        n_mixed += 1
        matches = sweep_window_pairs(low, high, window_us)
        n_candidates += len(matches)
        pairs.update(matches)

    if n_visits == 0:
        logger.info(f"Layer '{layer}' has no visits; it contributes zero edges.")

    edges = frozenset(
        CoPresenceEdge(device_i=i, device_j=j, layer=layer) for i, j in pairs
    )

    logger.info(
        f"Layer '{layer}': {len(edges)} edges from {n_candidates} qualifying visit pairs "
        f"({n_mixed}/{len(locations)} mixed-class locations, {n_visits} visits)"
    )

    return LayerEdges(
        layer=layer,
        window_minutes=window_minutes,
        edges=edges,
        n_visits=n_visits,
        n_locations=len(locations),
        n_mixed_locations=n_mixed,
        n_candidate_pairs=n_candidates,
    )


def build_all_layers(
    store: VisitStore,
    window_minutes: float,
    layers: Optional[Sequence[str]] = None,
    max_workers: Optional[int] = None,
    verbose: bool = False,
) -> Dict[str, LayerEdges]:
    """
    Fan-out: one independent build per layer.

    Returns {layer: LayerEdges} in layer order, whatever order the tasks finish in.
    """
    layers = list(layers) if layers is not None else list(store.layers)
    # Validate the window once, before any task starts
    window_to_microseconds(window_minutes)

    if max_workers is None:
        max_workers = max(1, min(len(layers), cpu_count()))

    logger.info(f"Building {len(layers)} co-presence layers with {max_workers} worker(s), W={window_minutes} min")

    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        futures = {
            layer: pool.submit(build_copresence_layer, store, layer, window_minutes, verbose)
            for layer in layers
        }
        return {layer: futures[layer].result() for layer in layers}


def edges_to_frame(layer_edges: Mapping[str, LayerEdges]) -> pd.DataFrame:
    """Long edge table (device_i, device_j, layer), deterministically ordered."""
    rows = [
        edge.model_dump()
        for result in layer_edges.values()
        for edge in result.sorted_edges()
    ]
    df = pd.DataFrame(rows, columns=["device_i", "device_j", "layer"])
    return df.sort_values(["layer", "device_i", "device_j"]).reset_index(drop=True)


def edge_counts_by_layer(layer_edges: Mapping[str, LayerEdges]) -> pd.DataFrame:
    """Edges per layer and their share of all edges (percent)."""
    counts = pd.DataFrame({
        "layer": list(layer_edges.keys()),
        "n_edges": [len(result) for result in layer_edges.values()],
    })
    total = counts["n_edges"].sum()
    counts["pct"] = (counts["n_edges"] / total * 100).round(1) if total else 0.0
    return counts
