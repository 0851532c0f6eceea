from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping, Sequence

from django.core.exceptions import ValidationError
from django.db import transaction

from progress.choices import MEASURE_LINEAR, MEASURE_POINT
from progress.exceptions import NotFoundError
from progress.models import CheckDefinition, LayerDefinition, PhaseDefinition, PhaseInterval, Road, RoadPhase

from .intervals import to_decimal, validate_side
from .progress import refresh_design_length

logger = logging.getLogger(__name__)

VALID_MEASURES = (MEASURE_LINEAR, MEASURE_POINT)


def normalize_interval_payload(payload: Mapping[str, Any], measure: str) -> dict:
    """Clean one interval of a phase payload.

    Bounds are swapped when reversed and a POINT interval collapses onto its
    start position.
    """

    start = to_decimal(payload.get("start_pk"), field="start_pk")
    end_value = payload.get("end_pk")
    end = start if measure == MEASURE_POINT or end_value in (None, "") else to_decimal(end_value, field="end_pk")
    if end < start:
        start, end = end, start

    bill_quantity = payload.get("bill_quantity")
    layers = payload.get("layers") or []
    if not isinstance(layers, (list, tuple)):
        raise ValidationError({"layers": "Layers must be a list of layer names."})

    cleaned = {
        "start_pk": start,
        "end_pk": end,
        "side": validate_side(payload.get("side")),
        "spec": (payload.get("spec") or "").strip() or None,
        "bill_quantity": None if bill_quantity in (None, "") else to_decimal(bill_quantity, field="bill_quantity"),
        "layers": [str(name).strip() for name in layers if str(name).strip()],
    }
    # Intervals are bulk created, so the model's digit and precision limits are checked here.
    PhaseInterval(**cleaned).full_clean(exclude=["phase"], validate_unique=False)
    return cleaned


def _validate_payload(name: str, measure: str, intervals: Sequence[Mapping[str, Any]] | None) -> list[dict]:
    errors = {}
    if not (name or "").strip():
        errors["name"] = "Phase name is required."
    if measure not in VALID_MEASURES:
        errors["measure"] = "Measure must be LINEAR or POINT."
    if not intervals:
        errors["intervals"] = "At least one interval is required."
    if errors:
        raise ValidationError(errors)
    return [normalize_interval_payload(interval, measure) for interval in intervals]


def _ensure_unique_name(road: Road, name: str, exclude_id: int | None = None) -> None:
    duplicates = RoadPhase.objects.filter(road=road, name=name)
    if exclude_id is not None:
        duplicates = duplicates.exclude(pk=exclude_id)
    if duplicates.exists():
        raise ValidationError({"name": f"A phase named '{name}' already exists on this road."})


def _resolve_definition(definition_id: int | None, name: str, measure: str) -> PhaseDefinition:
    if definition_id is not None:
        definition = PhaseDefinition.objects.filter(pk=definition_id).first()
        if definition is None:
            raise NotFoundError("Phase definition", definition_id)
        return definition
    definition, _ = PhaseDefinition.objects.get_or_create(name=name, defaults={"measure": measure})
    return definition


def _named(model, ids: Iterable[int] | None, names: Iterable[str] | None) -> list:
    rows = list(model.objects.filter(pk__in=list(ids or [])))
    for name in names or []:
        name = str(name).strip()
        if name:
            rows.append(model.objects.get_or_create(name=name)[0])
    return list({row.pk: row for row in rows}.values())


def _write_intervals(phase: RoadPhase, intervals: Sequence[dict]) -> None:
    PhaseInterval.objects.bulk_create([PhaseInterval(phase=phase, **interval) for interval in intervals])
    refresh_design_length(phase)


def _get_road(road_id: int) -> Road:
    road = Road.objects.filter(pk=road_id).first()
    if road is None:
        raise NotFoundError("Road", road_id)
    return road


def _get_phase(road: Road, phase_id: int) -> RoadPhase:
    phase = RoadPhase.objects.filter(pk=phase_id, road=road).first()
    if phase is None:
        raise NotFoundError("Phase", phase_id)
    return phase


@transaction.atomic
def create_phase(
    road_id: int,
    *,
    name: str,
    measure: str,
    intervals: Sequence[Mapping[str, Any]],
    phase_definition_id: int | None = None,
    layer_ids: Iterable[int] | None = None,
    check_ids: Iterable[int] | None = None,
    new_layers: Iterable[str] | None = None,
    new_checks: Iterable[str] | None = None,
) -> RoadPhase:
    road = _get_road(road_id)
    name = (name or "").strip()
    cleaned = _validate_payload(name, measure, intervals)
    _ensure_unique_name(road, name)

    phase = RoadPhase.objects.create(
        road=road,
        phase_definition=_resolve_definition(phase_definition_id, name, measure),
        name=name,
        measure=measure,
    )
    phase.layers.set(_named(LayerDefinition, layer_ids, new_layers))
    phase.checks.set(_named(CheckDefinition, check_ids, new_checks))
    _write_intervals(phase, cleaned)
    logger.info("Created phase %s (%s) on road %s with %s intervals.", phase.pk, name, road.pk, len(cleaned))
    return phase


@transaction.atomic
def update_phase(
    road_id: int,
    phase_id: int,
    *,
    name: str,
    measure: str,
    intervals: Sequence[Mapping[str, Any]],
    phase_definition_id: int | None = None,
    layer_ids: Iterable[int] | None = None,
    check_ids: Iterable[int] | None = None,
    new_layers: Iterable[str] | None = None,
    new_checks: Iterable[str] | None = None,
) -> RoadPhase:
    """Rename a phase and replace its intervals and layer/check overrides.

    Replacing intervals drops the quantity inputs stored against the old ones.
    """

    road = _get_road(road_id)
    phase = _get_phase(road, phase_id)
    name = (name or "").strip()
    cleaned = _validate_payload(name, measure, intervals)
    _ensure_unique_name(road, name, exclude_id=phase.pk)

    definition_id = phase_definition_id if phase_definition_id is not None else phase.phase_definition_id
    phase.phase_definition = _resolve_definition(definition_id, name, measure)
    phase.name = name
    phase.measure = measure
    phase.save()

    phase.intervals.all().delete()
    phase.layers.set(_named(LayerDefinition, layer_ids, new_layers))
    phase.checks.set(_named(CheckDefinition, check_ids, new_checks))
    _write_intervals(phase, cleaned)
    logger.info("Updated phase %s (%s) with %s intervals.", phase.pk, name, len(cleaned))
    return phase


@transaction.atomic
def delete_phase(road_id: int, phase_id: int) -> int:
    phase = _get_phase(_get_road(road_id), phase_id)
    pk = phase.pk
    phase.delete()
    logger.info("Deleted phase %s of road %s.", pk, road_id)
    return pk
