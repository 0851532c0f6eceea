"""Immutable inputs for one aggregation pass.

Everything the aggregator needs is loaded up front into these records and
passed by value; nothing is cached between calls.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, Mapping, Optional, Sequence, Tuple

from progress.choices import MEASURE_LINEAR, MEASURE_POINT


@dataclass(frozen=True)
class IntervalSnapshot:
    start: Decimal
    end: Decimal
    side: str
    id: Optional[int] = None
    spec: Optional[str] = None
    bill_quantity: Optional[Decimal] = None
    layers: Tuple[str, ...] = ()


@dataclass(frozen=True)
class InspectionSnapshot:
    start: Decimal
    end: Decimal
    side: str
    layer_name: Optional[str] = None
    check_name: Optional[str] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class WorkflowMap:
    """Ordered ``layer name -> required check names`` mapping."""

    layers: Tuple[Tuple[str, Tuple[str, ...]], ...] = ()

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Iterable[str]]) -> "WorkflowMap":
        return cls(
            layers=tuple(
                (layer, tuple(dict.fromkeys(checks)))
                for layer, checks in mapping.items()
            )
        )

    @classmethod
    def from_layers_and_checks(cls, layers: Sequence[str], checks: Sequence[str]) -> "WorkflowMap":
        return cls.from_mapping({layer: checks for layer in layers})

    def as_dict(self) -> Dict[str, Tuple[str, ...]]:
        return dict(self.layers)

    def checks_for(self, layer: str) -> Tuple[str, ...]:
        return self.as_dict().get(layer, ())

    def __bool__(self) -> bool:
        return bool(self.layers)


@dataclass(frozen=True)
class PhaseSnapshot:
    id: Optional[int]
    name: str
    measure: str = MEASURE_LINEAR
    intervals: Tuple[IntervalSnapshot, ...] = ()
    inspections: Tuple[InspectionSnapshot, ...] = ()
    layers: Tuple[str, ...] = ()
    workflow: WorkflowMap = field(default_factory=WorkflowMap)
    updated_at: Optional[datetime] = None
    definition_id: Optional[int] = None

    @property
    def is_point(self) -> bool:
        return self.measure == MEASURE_POINT

    @property
    def latest_updated_at(self) -> Optional[datetime]:
        stamps = [stamp for stamp in (self.updated_at, *(i.updated_at for i in self.inspections)) if stamp]
        return max(stamps) if stamps else None


@dataclass(frozen=True)
class RoadSnapshot:
    id: Optional[int]
    name: str
    slug: str = ""
    phases: Tuple[PhaseSnapshot, ...] = ()
