from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from django.db.models import Prefetch

from progress.choices import INSPECTION_APPROVED
from progress.exceptions import NotFoundError
from progress.models import InspectionEntry, PhaseInterval, Road, RoadPhase

from .intervals import ensure_side
from .overlap import IntervalProgress, PhaseProgress, compute_interval_progress, compute_phase_progress, design_length
from .snapshots import InspectionSnapshot, IntervalSnapshot, PhaseSnapshot, RoadSnapshot, WorkflowMap
from .summary import AggregatedPhaseProgress, aggregate_phase_progress
from .workflows import resolve_phase_workflow, workflow_map_for_definition

logger = logging.getLogger(__name__)


def _approved_inspections() -> Prefetch:
    return Prefetch(
        "inspections",
        queryset=InspectionEntry.objects.filter(status=INSPECTION_APPROVED).order_by("updated_at", "id"),
        to_attr="approved_inspections",
    )


def _phase_queryset():
    return (
        RoadPhase.objects.select_related("road", "road__project", "phase_definition")
        .prefetch_related(
            "intervals",
            "layers",
            "checks",
            "phase_definition__default_layers",
            "phase_definition__default_checks",
            _approved_inspections(),
        )
        .order_by("created_at", "id")
    )


def interval_snapshot(interval: PhaseInterval) -> IntervalSnapshot:
    layers = interval.layers if isinstance(interval.layers, list) else []
    return IntervalSnapshot(
        id=interval.pk,
        start=Decimal(interval.start_pk),
        end=Decimal(interval.end_pk),
        side=ensure_side(interval.side),
        spec=interval.spec,
        bill_quantity=interval.bill_quantity,
        layers=tuple(str(name) for name in layers if name),
    )


def inspection_snapshot(entry: InspectionEntry) -> InspectionSnapshot:
    return InspectionSnapshot(
        start=Decimal(entry.start_pk),
        end=Decimal(entry.end_pk),
        side=ensure_side(entry.side),
        layer_name=entry.layer_name or None,
        check_name=entry.check_name or None,
        updated_at=entry.updated_at,
    )


def phase_snapshot(phase: RoadPhase, workflows: dict[int, WorkflowMap] | None = None) -> PhaseSnapshot:
    """Freeze one phase, its intervals and approved inspections for aggregation.

    ``workflows`` caches workflow maps per definition for the duration of a
    single pass only.
    """

    inspections = getattr(phase, "approved_inspections", None)
    if inspections is None:
        inspections = phase.inspections.filter(status=INSPECTION_APPROVED)

    workflow = None
    if phase.is_point:
        if workflows is not None:
            if phase.phase_definition_id not in workflows:
                workflows[phase.phase_definition_id] = workflow_map_for_definition(phase.phase_definition_id)
            workflow = resolve_phase_workflow(phase, workflows[phase.phase_definition_id])
        else:
            workflow = resolve_phase_workflow(phase)

    return PhaseSnapshot(
        id=phase.pk,
        name=phase.name,
        measure=phase.measure,
        intervals=tuple(interval_snapshot(interval) for interval in phase.intervals.all()),
        inspections=tuple(inspection_snapshot(entry) for entry in inspections),
        layers=tuple(phase.resolved_layer_names()),
        workflow=workflow or WorkflowMap(),
        updated_at=phase.updated_at,
        definition_id=phase.phase_definition_id,
    )


def load_phase_snapshot(phase_id: int) -> PhaseSnapshot:
    phase = _phase_queryset().filter(pk=phase_id).first()
    if phase is None:
        raise NotFoundError("Phase", phase_id)
    return phase_snapshot(phase)


def load_road_snapshots(road_ids: Iterable[int] | None = None) -> list[RoadSnapshot]:
    roads = Road.objects.order_by("name", "id").prefetch_related(Prefetch("phases", queryset=_phase_queryset()))
    if road_ids is not None:
        roads = roads.filter(pk__in=list(road_ids))
    workflows: dict[int, WorkflowMap] = {}
    return [
        RoadSnapshot(
            id=road.pk,
            name=road.name,
            slug=road.slug,
            phases=tuple(phase_snapshot(phase, workflows) for phase in road.phases.all()),
        )
        for road in roads
    ]


def road_phase_progress(road_id: int) -> list[PhaseProgress]:
    """Per-phase design/completed figures of one road."""

    snapshots = load_road_snapshots([road_id])
    if not snapshots:
        raise NotFoundError("Road", road_id)
    return [compute_phase_progress(phase) for phase in snapshots[0].phases]


def phase_interval_progress(phase_id: int) -> tuple[IntervalProgress, ...]:
    return compute_interval_progress(load_phase_snapshot(phase_id))


def summarize_progress(
    road_ids: Iterable[int] | None = None, *, split_by_spec: bool = True
) -> list[AggregatedPhaseProgress]:
    return aggregate_phase_progress(load_road_snapshots(road_ids), split_by_spec=split_by_spec)


def refresh_design_length(phase: RoadPhase) -> Decimal:
    """Recompute and store the phase's design quantity from its intervals."""

    intervals = tuple(interval_snapshot(interval) for interval in PhaseInterval.objects.filter(phase=phase))
    value = design_length(PhaseSnapshot(id=phase.pk, name=phase.name, measure=phase.measure, intervals=intervals))
    if phase.design_length != value:
        RoadPhase.objects.filter(pk=phase.pk).update(design_length=value)
        phase.design_length = value
    return value


@dataclass(frozen=True)
class IntervalManagementRow:
    road_id: int
    road_name: str
    road_slug: str
    project_id: int | None
    project_name: str | None
    project_code: str | None
    phase_id: int
    phase_name: str
    measure: str
    progress: IntervalProgress


def list_interval_management_rows(road_ids: Iterable[int] | None = None) -> list[IntervalManagementRow]:
    """One row per designed interval across the selected roads' phases."""

    phases = _phase_queryset().order_by("road__name", "name", "id")
    if road_ids is not None:
        phases = phases.filter(road_id__in=list(road_ids))

    rows: list[IntervalManagementRow] = []
    workflows: dict[int, WorkflowMap] = {}
    for phase in phases:
        road = phase.road
        project = road.project
        for interval in compute_interval_progress(phase_snapshot(phase, workflows)):
            rows.append(
                IntervalManagementRow(
                    road_id=road.pk,
                    road_name=road.name,
                    road_slug=road.slug,
                    project_id=project.pk if project else None,
                    project_name=project.name if project else None,
                    project_code=project.code if project else None,
                    phase_id=phase.pk,
                    phase_name=phase.name,
                    measure=phase.measure,
                    progress=interval,
                )
            )
    return rows
