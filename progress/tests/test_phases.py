from __future__ import annotations

from decimal import Decimal

import pytest
from django.core.exceptions import ValidationError

from progress.choices import MEASURE_LINEAR, MEASURE_POINT, SIDE_BOTH, SIDE_LEFT
from progress.exceptions import NotFoundError
from progress.models import PhaseDefinition, PhaseInterval, PhaseItemInput, RoadPhase
from progress.services import phases, quantities

pytestmark = pytest.mark.django_db


def test_create_linear_phase(road):
    phase = phases.create_phase(
        road.pk,
        name="Base course",
        measure=MEASURE_LINEAR,
        intervals=[
            {"start_pk": "100", "end_pk": "0", "side": "both"},
            {"start_pk": 100, "end_pk": 150, "side": SIDE_LEFT, "spec": " 15 cm ", "bill_quantity": "49.5"},
        ],
        new_layers=["Base course"],
        new_checks=["Compaction", "Compaction"],
    )

    phase.refresh_from_db()
    assert phase.design_length == Decimal("250")
    assert PhaseDefinition.objects.filter(name="Base course").exists()
    intervals = list(phase.intervals.all())
    assert [(i.start_pk, i.end_pk, i.side) for i in intervals] == [
        (Decimal("0"), Decimal("100"), SIDE_BOTH),
        (Decimal("100"), Decimal("150"), SIDE_LEFT),
    ]
    assert intervals[1].spec == "15 cm"
    assert intervals[1].bill_quantity == Decimal("49.5")
    assert phase.resolved_check_names() == ["Compaction"]


def test_create_point_phase_collapses_intervals(road, point_definition):
    phase = phases.create_phase(
        road.pk,
        name="Culvert",
        measure=MEASURE_POINT,
        phase_definition_id=point_definition.pk,
        intervals=[{"start_pk": 120, "end_pk": 135}, {"start_pk": 560}],
    )

    phase.refresh_from_db()
    assert phase.design_length == Decimal("2")
    assert all(i.start_pk == i.end_pk for i in phase.intervals.all())


@pytest.mark.parametrize(
    "payload,field",
    [
        ({"name": "", "measure": MEASURE_LINEAR, "intervals": [{"start_pk": 0, "end_pk": 1}]}, "name"),
        ({"name": "X", "measure": "AREA", "intervals": [{"start_pk": 0, "end_pk": 1}]}, "measure"),
        ({"name": "X", "measure": MEASURE_LINEAR, "intervals": []}, "intervals"),
        ({"name": "X", "measure": MEASURE_LINEAR, "intervals": [{"start_pk": "a", "end_pk": 1}]}, "start_pk"),
        ({"name": "X", "measure": MEASURE_LINEAR, "intervals": [{"start_pk": 0, "end_pk": 1, "side": "UP"}]}, "side"),
    ],
)
def test_invalid_payloads(road, payload, field):
    with pytest.raises(ValidationError) as exc:
        phases.create_phase(road.pk, **payload)
    assert field in exc.value.message_dict
    assert not RoadPhase.objects.exists()


def test_duplicate_name_rejected(road, linear_phase):
    with pytest.raises(ValidationError) as exc:
        phases.create_phase(
            road.pk,
            name=linear_phase.name,
            measure=MEASURE_LINEAR,
            intervals=[{"start_pk": 0, "end_pk": 10}],
        )
    assert "name" in exc.value.message_dict


def test_update_phase_replaces_intervals(road, linear_phase, make_interval, concrete_item):
    old = make_interval(linear_phase, 0, 10)
    quantities.upsert_phase_item_input(concrete_item.pk, old.pk, {}, manual_quantity=3)

    phases.update_phase(
        road.pk,
        linear_phase.pk,
        name="Sub-base (widened)",
        measure=MEASURE_LINEAR,
        intervals=[{"start_pk": 0, "end_pk": 40, "side": SIDE_LEFT}],
    )

    linear_phase.refresh_from_db()
    assert linear_phase.name == "Sub-base (widened)"
    assert linear_phase.design_length == Decimal("40")
    assert not PhaseInterval.objects.filter(pk=old.pk).exists()
    assert not PhaseItemInput.objects.exists()


def test_update_and_delete_check_road_ownership(road, linear_phase, project):
    other = road.__class__.objects.create(project=project, name="Other", slug="other")
    with pytest.raises(NotFoundError):
        phases.update_phase(
            other.pk,
            linear_phase.pk,
            name="X",
            measure=MEASURE_LINEAR,
            intervals=[{"start_pk": 0, "end_pk": 1}],
        )
    with pytest.raises(NotFoundError):
        phases.delete_phase(other.pk, linear_phase.pk)


def test_delete_phase_cascades(road, linear_phase, make_interval, approve):
    make_interval(linear_phase, 0, 10)
    approve(linear_phase, 0, 10)

    assert phases.delete_phase(road.pk, linear_phase.pk) == linear_phase.pk
    assert not PhaseInterval.objects.exists()
    assert not RoadPhase.objects.exists()


@pytest.mark.parametrize(
    "interval,field",
    [
        ({"start_pk": "0.0004", "end_pk": "10"}, "start_pk"),
        ({"start_pk": "0", "end_pk": "10.12345"}, "end_pk"),
        ({"start_pk": "0", "end_pk": "12345678901234"}, "end_pk"),
        ({"start_pk": "0", "end_pk": "10", "bill_quantity": "1.23456"}, "bill_quantity"),
    ],
)
def test_positions_beyond_stored_precision_are_rejected(road, interval, field):
    with pytest.raises(ValidationError) as exc:
        phases.create_phase(road.pk, name="Sub-base", measure=MEASURE_LINEAR, intervals=[interval])

    assert field in exc.value.message_dict
    assert not RoadPhase.objects.exists()
    assert not PhaseInterval.objects.exists()


def test_three_decimal_positions_are_kept(road):
    phase = phases.create_phase(
        road.pk,
        name="Sub-base",
        measure=MEASURE_LINEAR,
        intervals=[{"start_pk": "0.125", "end_pk": "10.375", "side": SIDE_LEFT}],
    )

    interval = phase.intervals.get()
    assert (interval.start_pk, interval.end_pk) == (Decimal("0.125"), Decimal("10.375"))
    phase.refresh_from_db()
    assert phase.design_length == Decimal("10.250")
