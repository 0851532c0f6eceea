from __future__ import annotations

from decimal import Decimal

import pytest
from django.core.exceptions import ObjectDoesNotExist, ValidationError
from django.db import DatabaseError

from progress.choices import BOQ_SHEET_ACTUAL, SIDE_LEFT
from progress.exceptions import NotFoundError
from progress.models import BoqItem, PhaseItemBoqLink, PhaseItemFormula, PhaseItemInput, Project
from progress.services import quantities

pytestmark = pytest.mark.django_db


def _set_formula(item, expression="length * 0.2", fields=None):
    return quantities.upsert_phase_item_formula(item.pk, expression, input_schema=fields)


def test_upsert_input_computes_formula_quantity(concrete_item, subbase_interval):
    _set_formula(concrete_item)

    row = quantities.upsert_phase_item_input(concrete_item.pk, subbase_interval.pk, {})

    assert row.computed_quantity == Decimal("20")
    assert row.computed_error is None
    assert row.effective_quantity == Decimal("20")


def test_upsert_input_keeps_evaluation_error(concrete_item, subbase_interval):
    _set_formula(concrete_item, "qty / rate", [{"key": "qty"}, {"key": "rate"}])

    row = quantities.upsert_phase_item_input(concrete_item.pk, subbase_interval.pk, {"qty": 10, "rate": 0})

    row.refresh_from_db()
    assert row.computed_quantity is None
    assert row.computed_error == "Division by zero"
    assert row.values == {"qty": "10", "rate": "0"}


def test_manual_quantity_required_without_formula(concrete_item, subbase_interval):
    with pytest.raises(ValidationError) as exc:
        quantities.upsert_phase_item_input(concrete_item.pk, subbase_interval.pk, {"width": 2})
    assert "manual_quantity" in exc.value.message_dict
    assert not PhaseItemInput.objects.exists()

    row = quantities.upsert_phase_item_input(concrete_item.pk, subbase_interval.pk, {}, manual_quantity="42.5")
    assert row.manual_quantity == Decimal("42.5")
    assert row.computed_quantity is None
    assert row.effective_quantity == Decimal("42.5")


def test_manual_quantity_wins_over_computed(concrete_item, subbase_interval):
    _set_formula(concrete_item)
    row = quantities.upsert_phase_item_input(concrete_item.pk, subbase_interval.pk, {}, manual_quantity=7)
    assert row.computed_quantity == Decimal("20")
    assert row.effective_quantity == Decimal("7")


def test_upsert_input_updates_existing_row(concrete_item, subbase_interval):
    _set_formula(concrete_item, "length * width", [{"key": "width"}])
    quantities.upsert_phase_item_input(concrete_item.pk, subbase_interval.pk, {"width": 1})
    row = quantities.upsert_phase_item_input(concrete_item.pk, subbase_interval.pk, {"width": "0.5"})

    assert PhaseItemInput.objects.count() == 1
    assert row.computed_quantity == Decimal("50")


def test_invalid_values_are_rejected(concrete_item, subbase_interval):
    _set_formula(concrete_item)
    with pytest.raises(ValidationError) as exc:
        quantities.upsert_phase_item_input(concrete_item.pk, subbase_interval.pk, {"width": "wide"})
    assert "values" in exc.value.message_dict


def test_missing_entities_raise_not_found(concrete_item, subbase_interval):
    with pytest.raises(NotFoundError):
        quantities.upsert_phase_item_input(999999, subbase_interval.pk, {}, manual_quantity=1)
    with pytest.raises(ObjectDoesNotExist):
        quantities.upsert_phase_item_input(concrete_item.pk, 999999, {}, manual_quantity=1)
    with pytest.raises(NotFoundError):
        quantities.upsert_phase_item_formula(999999, "length")
    with pytest.raises(NotFoundError):
        quantities.phase_quantity_detail(999999)


def test_interval_of_another_definition_is_rejected(concrete_item, point_phase, make_interval):
    culvert = make_interval(point_phase, 120, 120)
    with pytest.raises(ValidationError) as exc:
        quantities.upsert_phase_item_input(concrete_item.pk, culvert.pk, {}, manual_quantity=1)
    assert "interval" in exc.value.message_dict


def test_formula_change_recomputes_every_row(concrete_item, linear_phase, make_interval):
    first = make_interval(linear_phase, 0, 50)
    second = make_interval(linear_phase, 50, 60, SIDE_LEFT)
    _set_formula(concrete_item, "length * width", [{"key": "width"}])
    quantities.upsert_phase_item_input(concrete_item.pk, first.pk, {"width": 2})
    quantities.upsert_phase_item_input(concrete_item.pk, second.pk, {})

    update = _set_formula(concrete_item, "length * width / 2")

    outcomes = {outcome.interval_id: outcome for outcome in update.manifest.outcomes}
    assert update.manifest.updated_count == 2
    assert outcomes[first.pk].computed_quantity == Decimal("100")
    assert outcomes[second.pk].computed_quantity is None
    assert outcomes[second.pk].error == "Missing variable: width"
    assert PhaseItemInput.objects.get(interval=first).computed_quantity == Decimal("100")
    assert PhaseItemInput.objects.get(interval=second).computed_error == "Missing variable: width"
    # Declared fields survive when the schema is not resent.
    assert update.formula.input_schema == [{"key": "width", "label": None, "unit": None, "hint": None}]


def test_recompute_is_idempotent(concrete_item, subbase_interval):
    _set_formula(concrete_item, "length / 3")
    quantities.upsert_phase_item_input(concrete_item.pk, subbase_interval.pk, {})

    first = quantities.recompute_phase_item_inputs(concrete_item)
    second = quantities.recompute_phase_item_inputs(concrete_item)

    assert first.outcomes[0].computed_quantity == second.outcomes[0].computed_quantity == Decimal("33.3333")


def test_removing_formula_clears_quantities_and_requires_manual(concrete_item, subbase_interval):
    _set_formula(concrete_item)
    quantities.upsert_phase_item_input(concrete_item.pk, subbase_interval.pk, {})

    update = quantities.upsert_phase_item_formula(concrete_item.pk, "   ")

    assert update.formula is None
    assert update.cleared_count == 1
    assert not PhaseItemFormula.objects.filter(phase_item=concrete_item).exists()
    row = PhaseItemInput.objects.get()
    assert row.computed_quantity is None
    assert row.computed_error is None
    with pytest.raises(ValidationError):
        quantities.upsert_phase_item_input(concrete_item.pk, subbase_interval.pk, {})


@pytest.mark.parametrize(
    "expression,schema,field",
    [
        ("length *", None, "expression"),
        ("length * depth", None, "expression"),
        ("length * width", [{"key": "width"}, {"key": "width"}], "input_schema"),
        ("length", [{"key": "side"}], "input_schema"),
        ("0x10 + length", None, "expression"),
        ("1_000 * length", None, "expression"),
    ],
)
def test_invalid_formula_blocks_write(concrete_item, expression, schema, field):
    with pytest.raises(ValidationError) as exc:
        quantities.upsert_phase_item_formula(concrete_item.pk, expression, input_schema=schema)
    assert field in exc.value.message_dict
    assert not PhaseItemFormula.objects.exists()


def test_write_failure_is_isolated_per_row(concrete_item, linear_phase, make_interval, monkeypatch):
    intervals = [make_interval(linear_phase, start, start + 10) for start in (0, 10, 20)]
    _set_formula(concrete_item)
    for interval in intervals:
        quantities.upsert_phase_item_input(concrete_item.pk, interval.pk, {})
    failing = PhaseItemInput.objects.get(interval=intervals[1])

    original = quantities._persist_computed

    def flaky(row, result):
        if row.pk == failing.pk:
            raise DatabaseError("disk full")
        original(row, result)

    monkeypatch.setattr(quantities, "_persist_computed", flaky)
    _set_formula(concrete_item, "length")

    manifest = quantities.recompute_phase_item_inputs(concrete_item)

    assert len(manifest.outcomes) == 3
    assert [outcome.input_id for outcome in manifest.failed] == [failing.pk]
    assert manifest.failed[0].write_error == "disk full"
    assert manifest.updated_count == 2
    stored = dict(PhaseItemInput.objects.values_list("interval_id", "computed_quantity"))
    assert stored[intervals[0].pk] == Decimal("20")
    assert stored[intervals[1].pk] == Decimal("4")
    assert stored[intervals[2].pk] == Decimal("20")


def test_out_of_range_result_is_an_error(concrete_item, subbase_interval):
    _set_formula(concrete_item, "length * 1e20")
    row = quantities.upsert_phase_item_input(concrete_item.pk, subbase_interval.pk, {})
    assert row.computed_quantity is None
    assert row.computed_error == "Result is out of range"


def test_boq_binding_replaces_previous_line(concrete_item, project, contract_boq_item):
    other = BoqItem.objects.create(project=project, code="4.03", designation="Base course", unit="m3")

    assert quantities.set_phase_item_boq_binding(concrete_item.pk, project.pk, contract_boq_item.pk) == contract_boq_item
    quantities.set_phase_item_boq_binding(concrete_item.pk, project.pk, other.pk)

    assert list(PhaseItemBoqLink.objects.values_list("boq_item_id", flat=True)) == [other.pk]

    assert quantities.set_phase_item_boq_binding(concrete_item.pk, project.pk, None) is None
    assert not PhaseItemBoqLink.objects.exists()


def test_boq_binding_only_accepts_contract_items_of_the_project(concrete_item, project, contract_boq_item):
    foreign = Project.objects.create(name="Other", code="OTH")
    actual = BoqItem.objects.create(project=project, code="9.1", designation="Actual", sheet_type=BOQ_SHEET_ACTUAL)

    with pytest.raises(ValidationError):
        quantities.set_phase_item_boq_binding(concrete_item.pk, foreign.pk, contract_boq_item.pk)
    with pytest.raises(ValidationError):
        quantities.set_phase_item_boq_binding(concrete_item.pk, project.pk, actual.pk)
    with pytest.raises(NotFoundError):
        quantities.set_phase_item_boq_binding(concrete_item.pk, 999999, contract_boq_item.pk)


def test_phase_quantity_detail(concrete_item, linear_phase, subbase_interval, project, contract_boq_item):
    _set_formula(concrete_item)
    quantities.set_phase_item_boq_binding(concrete_item.pk, project.pk, contract_boq_item.pk)
    quantities.upsert_phase_item_input(concrete_item.pk, subbase_interval.pk, {})

    detail = quantities.phase_quantity_detail(linear_phase.pk)

    assert detail.project == project
    assert [interval.pk for interval in detail.intervals] == [subbase_interval.pk]
    (item_detail,) = detail.items
    assert item_detail.item == concrete_item
    assert item_detail.formula.expression == "length * 0.2"
    assert item_detail.boq_item == contract_boq_item
    assert [row.computed_quantity for row in detail.inputs] == [Decimal("20")]
    assert list(detail.boq_items) == [contract_boq_item]


def test_bound_items_for_intervals(concrete_item, subbase_interval, project, contract_boq_item):
    quantities.set_phase_item_boq_binding(concrete_item.pk, project.pk, contract_boq_item.pk)
    quantities.upsert_phase_item_input(concrete_item.pk, subbase_interval.pk, {}, manual_quantity=12)

    (bound,) = quantities.bound_items_for_intervals([subbase_interval.pk])

    assert bound.phase_item_name == concrete_item.name
    assert bound.effective_quantity == Decimal("12")
    assert bound.unit == "m3"
    assert bound.boq_code == "4.02"
    assert quantities.bound_items_for_intervals([]) == []


def test_phase_management_rows(linear_phase, subbase_interval, project):
    (row,) = quantities.list_phase_management_rows()
    assert row.phase_id == linear_phase.pk
    assert row.interval_count == 1
    assert row.project_code == project.code


def test_long_formula_is_stored_and_evaluated(concrete_item, subbase_interval):
    quantities.upsert_phase_item_input(concrete_item.pk, subbase_interval.pk, {}, manual_quantity=1)
    expression = " + ".join(["length"] * 1500)

    update = quantities.upsert_phase_item_formula(concrete_item.pk, expression)

    assert update.formula.expression == expression
    row = PhaseItemInput.objects.get()
    assert row.computed_quantity == Decimal("150000")
    assert row.computed_error is None
