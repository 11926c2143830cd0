"""
Visit Store: the immutable input of every downstream stage.

Visits are indexed by layer, then by location_id, so a layer builder only
touches the partitions it needs. Once built the store is never mutated,
which is what lets layer builders run concurrently without locks.
"""

import logging
from collections import Counter, defaultdict
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import pandas as pd

from sfb.errors import InvalidConfiguration
from sfb.ingestion.batch_loader import IngestionReport, validate_and_convert
from sfb.ingestion.schema import ClassLabel, Device, Visit

logger = logging.getLogger(__name__)


class VisitStore:
    """
    Immutable collection of visits for a fixed layer set.

    Usage:
        store = VisitStore.from_frame(visits_df, layers=["labor", "consumption"])
        for location_id, visits in store.locations("labor").items():
            ...
    """

    def __init__(
        self,
        visits: Iterable[Visit],
        layers: Sequence[str],
        report: Optional[IngestionReport] = None,
    ):
        layers = tuple(str(layer).lower() for layer in layers)
        if not layers:
            raise InvalidConfiguration("A visit store needs at least one layer")
        if len(set(layers)) != len(layers):
            raise InvalidConfiguration(f"Duplicate layers: {layers}")

        self._layers = layers
        layer_set = set(layers)

        index: Dict[str, Dict[str, List[Visit]]] = {layer: defaultdict(list) for layer in layers}
        device_labels: Dict[str, ClassLabel] = {}
        visit_counts: Counter = Counter()
        drops: Counter = Counter()
        kept = 0

        for visit in visits:
            if visit.layer not in layer_set:
                drops["unknown_layer"] += 1
                continue

            # A device has exactly one class label; the first one seen wins
            known = device_labels.setdefault(visit.device_id, visit.class_label)
            if known != visit.class_label:
                drops["class_label_conflict"] += 1
                continue

            index[visit.layer][visit.location_id].append(visit)
            visit_counts[visit.device_id] += 1
            kept += 1

        if drops:
            logger.warning(f"Visit store dropped {sum(drops.values())} visits: {dict(drops)}")

        self._index = MappingProxyType({
            layer: MappingProxyType({loc: tuple(v) for loc, v in sorted(by_loc.items())})
            for layer, by_loc in index.items()
        })
        self._device_labels = MappingProxyType(dict(device_labels))
        self._visit_counts = MappingProxyType(dict(visit_counts))
        self._n_visits = kept

        base = report or IngestionReport(rows_read=kept + sum(drops.values()))
        merged = Counter(base.drops_by_reason)
        merged.update(drops)
        self._report = IngestionReport(
            rows_read=base.rows_read,
            rows_accepted=kept,
            drops_by_reason=dict(merged),
        )

    @classmethod
    def from_frame(cls, df: pd.DataFrame, layers: Sequence[str]) -> "VisitStore":
        """Validate a raw visit table row by row and index what survives."""
        visits, report = validate_and_convert(df)
        return cls(visits, layers=layers, report=report)

    # ------------------------------------------------------------------
    # Read-only accessors
    # ------------------------------------------------------------------

    @property
    def layers(self) -> Tuple[str, ...]:
        return self._layers

    @property
    def n_layers(self) -> int:
        return len(self._layers)

    @property
    def report(self) -> IngestionReport:
        return self._report

    def __len__(self) -> int:
        return self._n_visits

    def locations(self, layer: str) -> Mapping[str, Tuple[Visit, ...]]:
        """Visits of one layer partitioned by location_id (empty mapping for an empty layer)."""
        if layer not in self._index:
            raise KeyError(f"Unknown layer '{layer}'. Store layers: {self._layers}")
        return self._index[layer]

    def layer_size(self, layer: str) -> int:
        return sum(len(v) for v in self.locations(layer).values())

    def class_label(self, device_id: str) -> ClassLabel:
        return self._device_labels[device_id]

    def device_ids(self, class_label: Optional[ClassLabel] = None) -> List[str]:
        return sorted(
            d for d, label in self._device_labels.items()
            if class_label is None or label == class_label
        )

    def check_devices(self, devices: Iterable[Device]) -> None:
        """
        Device table rows must agree with the class label their visits carry.

        Devices with no visits in the store are not checked.

        Raises:
            ValueError: If any device's table label differs from its visit label
        """
        mismatched = {
            d.device_id: (d.class_label.value, self._device_labels[d.device_id].value)
            for d in devices
            if d.device_id in self._device_labels and self._device_labels[d.device_id] != d.class_label
        }
        if mismatched:
            sample = dict(sorted(mismatched.items())[:5])
            raise ValueError(
                f"{len(mismatched)} devices have a class label that differs from their visits "
                f"(device table, visits): {sample}"
            )

    def derive_devices(self) -> List[Device]:
        """One Device per unique device_id, with observed visit volume as covariate."""
        return [
            Device(
                device_id=device_id,
                class_label=label,
                visit_volume=self._visit_counts.get(device_id, 0),
            )
            for device_id, label in sorted(self._device_labels.items())
        ]
