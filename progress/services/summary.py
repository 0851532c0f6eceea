"""Cross-road roll-up of phase progress.

Phases of many roads sharing a name and measure are summed into one row.
Phases whose name is listed in ``PROGRESS_SPEC_SPLIT_PHASES`` are further
split by the ``spec`` tag of their intervals; the per-spec figures are
rescaled so they add back up to the phase totals.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from django.conf import settings

from progress.choices import MEASURE_POINT

from .intervals import ONE, ZERO, expand_sides, normalize_range
from .overlap import ZERO_OVERLAP_TOLERANCE, compute_phase_progress, completion_percent
from .snapshots import PhaseSnapshot, RoadSnapshot

CENT = Decimal("0.01")

SpecKey = Optional[str]


@dataclass(frozen=True)
class AggregatedPhaseProgress:
    id: str
    name: str
    measure: str
    spec: Optional[str]
    total_design_length: Decimal
    total_completed_length: Decimal
    completed_percent: int
    latest_updated_at: Optional[datetime]
    road_names: Tuple[str, ...]
    phase_definition_id: Optional[int] = None


@dataclass(frozen=True)
class _Segment:
    start: Decimal
    end: Decimal
    side: str
    spec: SpecKey


def default_split_phases() -> Tuple[str, ...]:
    return tuple(getattr(settings, "PROGRESS_SPEC_SPLIT_PHASES", ()))


def _segments(phase: PhaseSnapshot) -> List[_Segment]:
    segments = []
    for interval in phase.intervals:
        start, end = normalize_range(interval.start, interval.end)
        spec = (interval.spec or "").strip() or None
        for side in expand_sides(interval.side):
            segments.append(_Segment(start, end, side, spec))
    return segments


def _segment_length(measure: str, segment: _Segment) -> Decimal:
    if measure == MEASURE_POINT:
        return ONE
    delta = segment.end - segment.start
    return ONE if delta == ZERO else max(delta, ZERO)


def _design_by_spec(segments: Sequence[_Segment], measure: str) -> Dict[SpecKey, Decimal]:
    totals: Dict[SpecKey, Decimal] = {}
    for segment in segments:
        totals[segment.spec] = totals.get(segment.spec, ZERO) + _segment_length(measure, segment)
    return totals


def _completed_by_spec(segments: Sequence[_Segment], phase: PhaseSnapshot) -> Dict[SpecKey, Decimal]:
    totals: Dict[SpecKey, Decimal] = {}
    for inspection in phase.inspections:
        start, end = normalize_range(inspection.start, inspection.end)
        sides = expand_sides(inspection.side)
        for segment in segments:
            if segment.side not in sides:
                continue
            if phase.is_point:
                if start <= segment.start <= end:
                    totals[segment.spec] = totals.get(segment.spec, ZERO) + ONE
                continue
            overlap = min(end, segment.end) - max(start, segment.start)
            if overlap > ZERO:
                totals[segment.spec] = totals.get(segment.spec, ZERO) + overlap
            elif abs(overlap) < ZERO_OVERLAP_TOLERANCE:
                totals[segment.spec] = totals.get(segment.spec, ZERO) + ONE
    return totals


def _scale(source: Dict[SpecKey, Decimal], target: Decimal) -> Dict[SpecKey, Decimal]:
    total = sum(source.values(), ZERO)
    if target <= ZERO or total <= ZERO:
        return dict(source)
    return {spec: value * target / total for spec, value in source.items()}


def _distribute_by_design(design: Dict[SpecKey, Decimal], target: Decimal) -> Dict[SpecKey, Decimal]:
    if not design or target <= ZERO:
        return {}
    total = sum(design.values(), ZERO)
    if total <= ZERO:
        share = target / len(design)
        return {spec: share for spec in design}
    return {spec: value / total * target for spec, value in design.items()}


def split_phase_by_spec(
    phase: PhaseSnapshot, design_length: Decimal, completed_length: Decimal
) -> List[Tuple[SpecKey, Decimal, Decimal]]:
    """``(spec, design, completed)`` entries of one phase, rescaled to its totals."""

    whole = [(None, design_length, completed_length)]
    segments = _segments(phase)
    if not segments:
        return whole

    design = _scale(_design_by_spec(segments, phase.measure), design_length)
    raw_completed = _completed_by_spec(segments, phase)
    completed = _scale(raw_completed, completed_length) if raw_completed else {}
    if not completed and completed_length > ZERO:
        completed = _distribute_by_design(design, completed_length)

    specs = list(dict.fromkeys([*design.keys(), *completed.keys()]))
    if not specs:
        return whole
    return [(spec, design.get(spec, ZERO), completed.get(spec, ZERO)) for spec in specs]


def _round_cents(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def aggregate_phase_progress(
    roads: Iterable[RoadSnapshot],
    *,
    split_by_spec: bool = True,
    split_phases: Optional[Iterable[str]] = None,
) -> List[AggregatedPhaseProgress]:
    split_names = frozenset(default_split_phases() if split_phases is None else split_phases)
    records: Dict[str, dict] = {}

    for road in roads:
        for phase in road.phases:
            progress = compute_phase_progress(phase)
            if split_by_spec and phase.name in split_names:
                entries = split_phase_by_spec(phase, progress.design_length, progress.completed_length)
            else:
                entries = [(None, progress.design_length, progress.completed_length)]

            for spec, design, completed in entries:
                spec_key = (spec or "") if split_by_spec else ""
                key = f"{phase.name}::{phase.measure}::{spec_key}"
                record = records.get(key)
                if record is None:
                    records[key] = {
                        "name": phase.name,
                        "measure": phase.measure,
                        "spec": spec if split_by_spec else None,
                        "definition_id": phase.definition_id,
                        "design": design,
                        "completed": completed,
                        "updated_at": progress.updated_at,
                        "roads": [road.name],
                    }
                    continue
                record["design"] += design
                record["completed"] += completed
                if progress.updated_at and (record["updated_at"] is None or progress.updated_at > record["updated_at"]):
                    record["updated_at"] = progress.updated_at
                if road.name not in record["roads"]:
                    record["roads"].append(road.name)

    rows = []
    for key, record in records.items():
        design = max(record["design"], ZERO)
        completed = max(record["completed"], ZERO)
        capped = completed if design <= ZERO else min(design, completed)
        rows.append(
            AggregatedPhaseProgress(
                id=key,
                name=record["name"],
                measure=record["measure"],
                spec=record["spec"],
                total_design_length=_round_cents(design),
                total_completed_length=_round_cents(capped),
                completed_percent=completion_percent(capped, design),
                latest_updated_at=record["updated_at"],
                road_names=tuple(record["roads"]),
                phase_definition_id=record["definition_id"],
            )
        )

    # Stable sorts, least significant key first.
    rows.sort(key=lambda row: row.spec or "")
    rows.sort(key=lambda row: row.name)
    rows.sort(key=lambda row: row.latest_updated_at.timestamp() if row.latest_updated_at else 0, reverse=True)
    return rows
