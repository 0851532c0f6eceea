"""Completion of design intervals from approved inspections.

Two measurement models are supported:

* LINEAR phases credit the length of each inspection that overlaps the
  interval, side by side. A zero-width overlap (a point marker matched
  exactly, or two ranges touching) credits one unit.
* POINT phases are complete when every required ``(layer, check)`` pair of
  the structure's applicable layers has been inspected at least once.

All functions are pure: they take snapshots and return new values.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from progress.choices import SIDE_BOTH

from .intervals import (
    ONE,
    ZERO,
    expand_sides,
    linear_quantity,
    normalize_range,
    point_structure_key,
)
from .snapshots import InspectionSnapshot, IntervalSnapshot, PhaseSnapshot, WorkflowMap

# Overlaps closer to zero than this are treated as an exact point match.
ZERO_OVERLAP_TOLERANCE = Decimal("0.000001")

HUNDRED = Decimal(100)

CheckPair = Tuple[str, str]


def completion_percent(completed, total) -> int:
    """``round(min(completed, total) / total * 100)`` clamped to ``[0, 100]``."""

    completed = Decimal(completed)
    total = Decimal(total)
    if total <= ZERO:
        return 0
    ratio = max(min(completed, total), ZERO) / total * HUNDRED
    percent = int(ratio.quantize(ONE, rounding=ROUND_HALF_UP))
    return max(0, min(100, percent))


def linear_overlap_credit(interval: IntervalSnapshot, inspection: InspectionSnapshot) -> Decimal:
    start, end = normalize_range(interval.start, interval.end)
    other_start, other_end = normalize_range(inspection.start, inspection.end)
    overlap = min(end, other_end) - max(start, other_start)
    if overlap > ZERO:
        return overlap
    if abs(overlap) < ZERO_OVERLAP_TOLERANCE:
        return ONE
    return ZERO


def linear_completed_quantity(
    interval: IntervalSnapshot, inspections: Iterable[InspectionSnapshot]
) -> Decimal:
    """Covered units of ``interval``, not capped at its design quantity.

    Each logical side of the interval is credited separately, so an inspection
    on the left never counts towards the right.
    """

    inspections = tuple(inspections)
    completed = ZERO
    for side in expand_sides(interval.side):
        for inspection in inspections:
            if side not in expand_sides(inspection.side):
                continue
            completed += linear_overlap_credit(interval, inspection)
    return completed


def calc_linear_interval_percent(
    interval: IntervalSnapshot, inspections: Iterable[InspectionSnapshot]
) -> int:
    total = linear_quantity(interval)
    if total <= ZERO:
        return 0
    return completion_percent(linear_completed_quantity(interval, inspections), total)


def group_inspections_by_structure(
    inspections: Iterable[InspectionSnapshot],
) -> Dict[str, List[InspectionSnapshot]]:
    grouped: Dict[str, List[InspectionSnapshot]] = defaultdict(list)
    for inspection in inspections:
        grouped[point_structure_key(inspection.start, inspection.end, inspection.side)].append(inspection)
    return dict(grouped)


def applicable_layers(interval: IntervalSnapshot, default_layers: Sequence[str]) -> Tuple[str, ...]:
    layers = interval.layers or tuple(default_layers)
    return tuple(dict.fromkeys(name for name in layers if name))


def required_check_pairs(layers: Sequence[str], workflow: WorkflowMap) -> FrozenSet[CheckPair]:
    checks = workflow.as_dict()
    return frozenset((layer, check) for layer in layers for check in checks.get(layer, ()))


def candidate_structure_keys(interval: IntervalSnapshot) -> Tuple[str, ...]:
    own = point_structure_key(interval.start, interval.end, interval.side)
    both = point_structure_key(interval.start, interval.end, SIDE_BOTH)
    return tuple(dict.fromkeys((own, both)))


def completed_check_pairs(
    interval: IntervalSnapshot,
    grouped: Mapping[str, Sequence[InspectionSnapshot]],
    required: FrozenSet[CheckPair],
) -> Set[CheckPair]:
    completed: Set[CheckPair] = set()
    for key in candidate_structure_keys(interval):
        for inspection in grouped.get(key, ()):
            pair = (inspection.layer_name or "", inspection.check_name or "")
            if pair in required:
                completed.add(pair)
    return completed


def point_completion(
    interval: IntervalSnapshot,
    grouped: Mapping[str, Sequence[InspectionSnapshot]],
    workflow: WorkflowMap,
    default_layers: Sequence[str] = (),
) -> Tuple[int, int]:
    """Return ``(completed pairs, required pairs)`` for one point structure."""

    required = required_check_pairs(applicable_layers(interval, default_layers), workflow)
    if not required:
        return 0, 0
    return len(completed_check_pairs(interval, grouped, required)), len(required)


def calc_point_interval_percent(
    interval: IntervalSnapshot,
    inspections: Iterable[InspectionSnapshot],
    workflow: WorkflowMap,
    default_layers: Sequence[str] = (),
) -> int:
    done, required = point_completion(
        interval, group_inspections_by_structure(inspections), workflow, default_layers
    )
    if not required:
        return 0
    return completion_percent(done, required)


@dataclass(frozen=True)
class IntervalProgress:
    interval_id: Optional[int]
    start: Decimal
    end: Decimal
    side: str
    spec: Optional[str]
    quantity: Decimal
    raw_quantity: Decimal
    quantity_overridden: bool
    completed_quantity: Decimal
    completed_percent: int


@dataclass(frozen=True)
class PhaseProgress:
    phase_id: Optional[int]
    name: str
    measure: str
    design_length: Decimal
    completed_length: Decimal
    completed_percent: int
    updated_at: Optional[datetime]
    intervals: Tuple[IntervalProgress, ...] = ()


def _interval_row(interval: IntervalSnapshot, raw: Decimal, completed: Decimal, percent: int) -> IntervalProgress:
    overridden = interval.bill_quantity is not None
    return IntervalProgress(
        interval_id=interval.id,
        start=interval.start,
        end=interval.end,
        side=interval.side,
        spec=interval.spec,
        quantity=Decimal(interval.bill_quantity) if overridden else raw,
        raw_quantity=raw,
        quantity_overridden=overridden,
        completed_quantity=completed,
        completed_percent=percent,
    )


def compute_interval_progress(phase: PhaseSnapshot) -> Tuple[IntervalProgress, ...]:
    rows: List[IntervalProgress] = []
    if phase.is_point:
        grouped = group_inspections_by_structure(phase.inspections)
        for interval in phase.intervals:
            done, required = point_completion(interval, grouped, phase.workflow, phase.layers)
            completed = Decimal(done) / Decimal(required) if required else ZERO
            percent = completion_percent(done, required) if required else 0
            rows.append(_interval_row(interval, ONE, completed, percent))
        return tuple(rows)

    for interval in phase.intervals:
        total = linear_quantity(interval)
        covered = min(linear_completed_quantity(interval, phase.inspections), total)
        rows.append(_interval_row(interval, total, covered, completion_percent(covered, total)))
    return tuple(rows)


def design_length(phase: PhaseSnapshot) -> Decimal:
    if phase.is_point:
        return Decimal(len(phase.intervals))
    return sum((linear_quantity(interval) for interval in phase.intervals), ZERO)


def compute_phase_progress(phase: PhaseSnapshot) -> PhaseProgress:
    """Design quantity, completed quantity and percentage for one phase.

    Over-covering inspections can push the raw completed figure past the
    design quantity; it is clipped so the phase never reports above 100%.
    """

    rows = compute_interval_progress(phase)
    design = design_length(phase)
    completed = sum((row.completed_quantity for row in rows), ZERO)
    completed = min(completed, design) if design > ZERO else ZERO
    return PhaseProgress(
        phase_id=phase.id,
        name=phase.name,
        measure=phase.measure,
        design_length=design,
        completed_length=completed,
        completed_percent=completion_percent(completed, design),
        updated_at=phase.latest_updated_at,
        intervals=rows,
    )
