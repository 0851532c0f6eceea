"""Phase item quantities: formulas, per-interval inputs and BOQ bindings.

``PhaseItemInput.computed_quantity`` is derived data. It is refreshed for
every row of an item when the item's formula changes, for a single row when
its values are upserted, and for every row of an interval when the interval's
geometry is edited (see ``progress.signals``).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable

from django.core.exceptions import ValidationError
from django.db import DatabaseError, transaction
from django.db.models import Count, Prefetch
from django.utils import timezone

from progress.choices import BOQ_SHEET_CONTRACT, BOQ_TONE_ITEM
from progress.exceptions import FormulaSyntaxError, NotFoundError
from progress.models import (
    BoqItem,
    PhaseInterval,
    PhaseItem,
    PhaseItemBoqLink,
    PhaseItemFormula,
    PhaseItemInput,
    Project,
    RoadPhase,
)

from .formula import (
    FormulaResult,
    ParsedFormula,
    allowed_variable_names,
    build_formula_variables,
    clean_input_values,
    evaluate_parsed_formula,
    normalize_input_values,
    parse_formula_expression,
    parse_formula_fields,
)
from .intervals import to_decimal
from .progress import interval_snapshot

logger = logging.getLogger(__name__)

QUANTITY_PLACES = Decimal("0.0001")
# computed_quantity is a DecimalField(max_digits=18, decimal_places=4).
QUANTITY_LIMIT = Decimal(10) ** 14


@dataclass(frozen=True)
class RecomputeOutcome:
    input_id: int
    interval_id: int
    phase_item_id: int
    computed_quantity: Decimal | None
    error: str | None
    saved: bool = True
    write_error: str | None = None


@dataclass(frozen=True)
class RecomputeManifest:
    """Per-row result of a batch refresh; a failed row never hides the others."""

    phase_item_id: int | None
    outcomes: tuple[RecomputeOutcome, ...] = ()

    @property
    def updated_count(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.saved)

    @property
    def failed(self) -> tuple[RecomputeOutcome, ...]:
        return tuple(outcome for outcome in self.outcomes if not outcome.saved)

    @property
    def evaluation_errors(self) -> tuple[RecomputeOutcome, ...]:
        return tuple(outcome for outcome in self.outcomes if outcome.error)


@dataclass(frozen=True)
class FormulaUpdate:
    formula: PhaseItemFormula | None
    manifest: RecomputeManifest
    cleared_count: int = 0


def _get_phase_item(phase_item_id: int) -> PhaseItem:
    item = PhaseItem.objects.filter(pk=phase_item_id).first()
    if item is None:
        raise NotFoundError("Phase item", phase_item_id)
    return item


def _get_interval(interval_id: int) -> PhaseInterval:
    interval = PhaseInterval.objects.select_related("phase").filter(pk=interval_id).first()
    if interval is None:
        raise NotFoundError("Interval", interval_id)
    return interval


def _formula_for(phase_item: PhaseItem) -> PhaseItemFormula | None:
    return PhaseItemFormula.objects.filter(phase_item=phase_item).first()


def parse_stored_formula(formula: PhaseItemFormula) -> ParsedFormula:
    fields = parse_formula_fields(formula.input_schema)
    return parse_formula_expression(formula.expression, allowed_variable_names(fields))


def _bounded(result: FormulaResult) -> FormulaResult:
    if result.value is None:
        return result
    try:
        value = result.value.quantize(QUANTITY_PLACES, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        return FormulaResult(value=None, error="Result is out of range")
    if abs(value) >= QUANTITY_LIMIT:
        return FormulaResult(value=None, error="Result is out of range")
    return FormulaResult(value=value)


def evaluate_input(parsed: ParsedFormula, interval: PhaseInterval, values) -> FormulaResult:
    variables = build_formula_variables(interval_snapshot(interval), values)
    return _bounded(evaluate_parsed_formula(parsed, variables))


def _stored_formula_evaluator(formula: PhaseItemFormula | None):
    """Return ``(parsed, error)`` for a stored formula that may no longer validate."""

    if formula is None:
        return None, None
    try:
        return parse_stored_formula(formula), None
    except (FormulaSyntaxError, ValidationError) as exc:
        message = "; ".join(exc.messages) if isinstance(exc, ValidationError) else str(exc)
        logger.warning("Stored formula of phase item %s is invalid: %s", formula.phase_item_id, message)
        return None, message


def _persist_computed(row: PhaseItemInput, result: FormulaResult) -> None:
    PhaseItemInput.objects.filter(pk=row.pk).update(
        computed_quantity=result.value,
        computed_error=result.error,
        updated_at=timezone.now(),
    )


def _refresh_rows(rows: Iterable[PhaseItemInput], formulas: dict[int, PhaseItemFormula | None]) -> list[RecomputeOutcome]:
    evaluators: dict[int, tuple[ParsedFormula | None, str | None]] = {}
    outcomes: list[RecomputeOutcome] = []
    for row in rows:
        if row.phase_item_id not in evaluators:
            evaluators[row.phase_item_id] = _stored_formula_evaluator(formulas.get(row.phase_item_id))
        parsed, parse_error = evaluators[row.phase_item_id]

        if parsed is not None:
            result = evaluate_input(parsed, row.interval, normalize_input_values(row.values))
        else:
            result = FormulaResult(value=None, error=parse_error)

        try:
            with transaction.atomic():
                _persist_computed(row, result)
        except DatabaseError as exc:
            logger.exception("Failed to store computed quantity of input %s", row.pk)
            outcomes.append(
                RecomputeOutcome(
                    input_id=row.pk,
                    interval_id=row.interval_id,
                    phase_item_id=row.phase_item_id,
                    computed_quantity=result.value,
                    error=result.error,
                    saved=False,
                    write_error=str(exc),
                )
            )
            continue
        outcomes.append(
            RecomputeOutcome(
                input_id=row.pk,
                interval_id=row.interval_id,
                phase_item_id=row.phase_item_id,
                computed_quantity=result.value,
                error=result.error,
            )
        )
    return outcomes


def recompute_phase_item_inputs(phase_item: PhaseItem) -> RecomputeManifest:
    """Re-evaluate every stored input row of ``phase_item`` against its formula.

    Without a formula every row's computed quantity is cleared.
    """

    formula = _formula_for(phase_item)
    rows = PhaseItemInput.objects.filter(phase_item=phase_item).select_related("interval").order_by("id")
    outcomes = _refresh_rows(rows, {phase_item.pk: formula})
    manifest = RecomputeManifest(phase_item_id=phase_item.pk, outcomes=tuple(outcomes))
    logger.info(
        "Recomputed phase item %s: %s rows, %s evaluation errors, %s write failures.",
        phase_item.pk,
        len(manifest.outcomes),
        len(manifest.evaluation_errors),
        len(manifest.failed),
    )
    return manifest


def recompute_interval_inputs(interval: PhaseInterval) -> RecomputeManifest:
    """Refresh the rows bound to ``interval`` whose item carries a formula."""

    rows = list(
        PhaseItemInput.objects.filter(interval=interval, phase_item__formula__isnull=False)
        .select_related("interval", "phase_item__formula")
        .order_by("id")
    )
    formulas = {row.phase_item_id: row.phase_item.formula for row in rows}
    outcomes = _refresh_rows(rows, formulas)
    if outcomes:
        logger.debug("Recomputed %s inputs of interval %s.", len(outcomes), interval.pk)
    return RecomputeManifest(phase_item_id=None, outcomes=tuple(outcomes))


def clear_phase_item_quantities(phase_item: PhaseItem) -> int:
    return PhaseItemInput.objects.filter(phase_item=phase_item).update(
        computed_quantity=None,
        computed_error=None,
        updated_at=timezone.now(),
    )


def upsert_phase_item_formula(
    phase_item_id: int,
    expression: str | None,
    input_schema=None,
    unit_string: str | None = None,
) -> FormulaUpdate:
    """Create, replace or (with an empty expression) remove an item's formula.

    ``input_schema=None`` keeps the declared fields of an existing formula.
    Every stored input row is refreshed afterwards.
    """

    phase_item = _get_phase_item(phase_item_id)
    expression = (expression or "").strip()

    if not expression:
        with transaction.atomic():
            PhaseItemFormula.objects.filter(phase_item=phase_item).delete()
            cleared = clear_phase_item_quantities(phase_item)
        logger.info("Removed formula of phase item %s; cleared %s rows.", phase_item.pk, cleared)
        return FormulaUpdate(
            formula=None,
            manifest=RecomputeManifest(phase_item_id=phase_item.pk),
            cleared_count=cleared,
        )

    existing = _formula_for(phase_item)
    if input_schema is None and existing is not None:
        input_schema = existing.input_schema
    fields = parse_formula_fields(input_schema)
    try:
        parse_formula_expression(expression, allowed_variable_names(fields))
    except FormulaSyntaxError as exc:
        raise ValidationError({"expression": str(exc)}) from exc

    unit_string = (unit_string or "").strip() or None
    formula, _ = PhaseItemFormula.objects.update_or_create(
        phase_item=phase_item,
        defaults={
            "expression": expression,
            "input_schema": [field.as_dict() for field in fields],
            "unit_string": unit_string,
        },
    )
    return FormulaUpdate(formula=formula, manifest=recompute_phase_item_inputs(phase_item))


@transaction.atomic
def upsert_phase_item_input(
    phase_item_id: int,
    interval_id: int,
    values=None,
    manual_quantity=None,
) -> PhaseItemInput:
    """Store the values of one (phase item, interval) pair and its quantity.

    With a formula the quantity is computed; without one ``manual_quantity``
    is required.
    """

    phase_item = _get_phase_item(phase_item_id)
    interval = _get_interval(interval_id)
    if interval.phase.phase_definition_id != phase_item.phase_definition_id:
        raise ValidationError({"interval": "Interval does not belong to a phase of this item's definition."})

    cleaned = clean_input_values(values)
    manual = None
    if manual_quantity is not None and manual_quantity != "":
        manual = to_decimal(manual_quantity, field="manual_quantity")

    formula = _formula_for(phase_item)
    if formula is None:
        if manual is None:
            raise ValidationError({"manual_quantity": "A manual quantity is required when the item has no formula."})
        result = FormulaResult(value=None)
    else:
        try:
            parsed = parse_stored_formula(formula)
        except (FormulaSyntaxError, ValidationError) as exc:
            message = "; ".join(exc.messages) if isinstance(exc, ValidationError) else str(exc)
            result = FormulaResult(value=None, error=message)
        else:
            result = evaluate_input(parsed, interval, cleaned)

    row, created = PhaseItemInput.objects.update_or_create(
        phase_item=phase_item,
        interval=interval,
        defaults={
            "values": cleaned,
            "computed_quantity": result.value,
            "computed_error": result.error,
            "manual_quantity": manual,
        },
    )
    logger.debug(
        "%s input %s (item %s, interval %s): computed=%s error=%s",
        "Created" if created else "Updated",
        row.pk,
        phase_item.pk,
        interval.pk,
        result.value,
        result.error,
    )
    return row


@transaction.atomic
def set_phase_item_boq_binding(phase_item_id: int, project_id: int, boq_item_id: int | None) -> BoqItem | None:
    """Bind ``phase_item`` to one contract BOQ line of ``project`` (or unbind)."""

    phase_item = _get_phase_item(phase_item_id)
    if not Project.objects.filter(pk=project_id).exists():
        raise NotFoundError("Project", project_id)

    boq_item = None
    if boq_item_id:
        boq_item = BoqItem.objects.filter(
            pk=boq_item_id,
            project_id=project_id,
            sheet_type=BOQ_SHEET_CONTRACT,
            tone=BOQ_TONE_ITEM,
        ).first()
        if boq_item is None:
            raise ValidationError({"boq_item": "BOQ line is not a contract item of this project."})

    PhaseItemBoqLink.objects.filter(phase_item=phase_item, boq_item__project_id=project_id).delete()
    if boq_item is not None:
        PhaseItemBoqLink.objects.create(phase_item=phase_item, boq_item=boq_item)
    return boq_item


@dataclass(frozen=True)
class PhaseItemDetail:
    item: PhaseItem
    formula: PhaseItemFormula | None
    boq_item: BoqItem | None


@dataclass(frozen=True)
class PhaseQuantityDetail:
    phase: RoadPhase
    intervals: tuple[PhaseInterval, ...]
    items: tuple[PhaseItemDetail, ...]
    inputs: tuple[PhaseItemInput, ...]
    boq_items: tuple[BoqItem, ...] = field(default_factory=tuple)

    @property
    def road(self):
        return self.phase.road

    @property
    def project(self) -> Project | None:
        return self.phase.road.project


def phase_quantity_detail(phase_id: int) -> PhaseQuantityDetail:
    """Everything needed to enter quantities for one phase."""

    phase = (
        RoadPhase.objects.select_related("road", "road__project", "phase_definition")
        .filter(pk=phase_id)
        .first()
    )
    if phase is None:
        raise NotFoundError("Phase", phase_id)

    project_id = phase.road.project_id
    intervals = tuple(phase.intervals.order_by("start_pk", "end_pk", "side", "id"))
    items = list(
        PhaseItem.objects.filter(phase_definition_id=phase.phase_definition_id, is_active=True)
        .select_related("formula")
        .prefetch_related(
            Prefetch(
                "boq_links",
                queryset=PhaseItemBoqLink.objects.filter(is_active=True, boq_item__project_id=project_id)
                .select_related("boq_item")
                .order_by("id"),
                to_attr="project_boq_links",
            )
        )
        .order_by("name", "id")
    )

    details = []
    for item in items:
        try:
            formula = item.formula
        except PhaseItemFormula.DoesNotExist:
            formula = None
        links = item.project_boq_links
        details.append(PhaseItemDetail(item=item, formula=formula, boq_item=links[0].boq_item if links else None))

    inputs = tuple(
        PhaseItemInput.objects.filter(phase_item__in=items, interval__in=intervals).order_by("phase_item_id", "interval_id")
    )
    boq_items: tuple[BoqItem, ...] = ()
    if project_id:
        boq_items = tuple(
            BoqItem.objects.filter(
                project_id=project_id,
                sheet_type=BOQ_SHEET_CONTRACT,
                tone=BOQ_TONE_ITEM,
                is_active=True,
            ).order_by("sort_order", "id")
        )
    return PhaseQuantityDetail(
        phase=phase,
        intervals=intervals,
        items=tuple(details),
        inputs=inputs,
        boq_items=boq_items,
    )


@dataclass(frozen=True)
class IntervalBoundItem:
    input_id: int
    interval_id: int
    interval_spec: str | None
    phase_item_id: int
    phase_item_name: str
    phase_item_spec: str | None
    manual_quantity: Decimal | None
    computed_quantity: Decimal | None
    computed_error: str | None
    effective_quantity: Decimal | None
    unit: str | None
    boq_item_id: int | None
    boq_code: str | None
    updated_at: object


def bound_items_for_intervals(interval_ids: Iterable[int]) -> list[IntervalBoundItem]:
    """Every input row stored against the given intervals, with its BOQ line."""

    ids = [int(pk) for pk in interval_ids]
    if not ids:
        return []
    rows = (
        PhaseItemInput.objects.filter(interval_id__in=ids)
        .select_related("interval", "interval__phase__road", "phase_item", "phase_item__formula")
        .prefetch_related(
            Prefetch(
                "phase_item__boq_links",
                queryset=PhaseItemBoqLink.objects.filter(is_active=True).select_related("boq_item"),
                to_attr="active_boq_links",
            )
        )
        .order_by("interval_id", "phase_item__name", "id")
    )

    bound = []
    for row in rows:
        item = row.phase_item
        project_id = row.interval.phase.road.project_id
        link = next((candidate for candidate in item.active_boq_links if candidate.boq_item.project_id == project_id), None)
        try:
            formula_unit = item.formula.unit_string
        except PhaseItemFormula.DoesNotExist:
            formula_unit = None
        bound.append(
            IntervalBoundItem(
                input_id=row.pk,
                interval_id=row.interval_id,
                interval_spec=row.interval.spec,
                phase_item_id=item.pk,
                phase_item_name=item.name,
                phase_item_spec=item.spec,
                manual_quantity=row.manual_quantity,
                computed_quantity=row.computed_quantity,
                computed_error=row.computed_error,
                effective_quantity=row.effective_quantity,
                unit=formula_unit or item.unit_string or (link.boq_item.unit if link else None),
                boq_item_id=link.boq_item_id if link else None,
                boq_code=link.boq_item.code if link else None,
                updated_at=row.updated_at,
            )
        )
    return bound


@dataclass(frozen=True)
class PhaseManagementRow:
    phase_id: int
    phase_name: str
    definition_name: str
    measure: str
    road_id: int
    road_name: str
    road_slug: str
    project_id: int | None
    project_name: str | None
    project_code: str | None
    interval_count: int
    updated_at: object


def list_phase_management_rows() -> list[PhaseManagementRow]:
    phases = (
        RoadPhase.objects.select_related("road", "road__project", "phase_definition")
        .annotate(interval_count=Count("intervals"))
        .order_by("road_id", "name")
    )
    return [
        PhaseManagementRow(
            phase_id=phase.pk,
            phase_name=phase.name,
            definition_name=phase.phase_definition.name,
            measure=phase.measure,
            road_id=phase.road_id,
            road_name=phase.road.name,
            road_slug=phase.road.slug,
            project_id=phase.road.project_id,
            project_name=phase.road.project.name if phase.road.project else None,
            project_code=phase.road.project.code if phase.road.project else None,
            interval_count=phase.interval_count,
            updated_at=phase.updated_at,
        )
        for phase in phases
    ]
