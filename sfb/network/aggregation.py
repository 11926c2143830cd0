"""
Multi-Layer Aggregator (fan-in).

Union of the per-layer edge sets, then a count of distinct layers per
ordered pair. Presence in a layer is binary; there are no edge weights.
"""

from collections import defaultdict
from typing import Dict, Iterable, List, Mapping, Sequence, Set, Tuple, Union

import pandas as pd

from sfb.network.copresence import LayerEdges
from sfb.network.schema import CoPresenceEdge, DyadSummary


def aggregate_layers(
    layer_edges: Mapping[str, Union[LayerEdges, Iterable[CoPresenceEdge]]],
    layers: Sequence[str],
) -> List[DyadSummary]:
    """
    Collapse per-layer edges into one DyadSummary per ordered pair.

    Args:
        layer_edges: {layer: LayerEdges or any iterable of CoPresenceEdge}
        layers: The fixed layer set (its size is L)

    Returns:
        DyadSummary list sorted by (device_i, device_j)

    Raises:
        ValueError: If an edge carries a layer outside the layer set, or a
            result is filed under a different layer than its edges claim
    """
    layer_set = set(layers)
    shared: Dict[Tuple[str, str], Set[str]] = defaultdict(set)

    for key, result in layer_edges.items():
        edges = result.edges if isinstance(result, LayerEdges) else result
        for edge in edges:
            if edge.layer not in layer_set:
                raise ValueError(f"Edge layer '{edge.layer}' is not in the layer set {sorted(layer_set)}")
            if edge.layer != key:
                raise ValueError(f"Edge for layer '{edge.layer}' found in the '{key}' edge set")
            shared[(edge.device_i, edge.device_j)].add(edge.layer)

    summaries = []
    for (device_i, device_j), edge_layers in sorted(shared.items()):
        summaries.append(DyadSummary(device_i=device_i, device_j=device_j, shared_layer_count=len(edge_layers)))

    return summaries


def dyads_to_frame(dyads: Iterable[DyadSummary]) -> pd.DataFrame:
    return pd.DataFrame(
        [d.model_dump() for d in dyads],
        columns=["device_i", "device_j", "shared_layer_count"],
    )
