from __future__ import annotations

from decimal import Decimal, InvalidOperation

from django.core.exceptions import ValidationError
from django.core.serializers.json import DjangoJSONEncoder
from django.db import models

from .choices import (
    BOQ_SHEET_CHOICES,
    BOQ_SHEET_CONTRACT,
    BOQ_TONE_CHOICES,
    BOQ_TONE_ITEM,
    INSPECTION_APPROVED,
    INSPECTION_PENDING,
    INSPECTION_STATUS_CHOICES,
    MEASURE_CHOICES,
    MEASURE_LINEAR,
    MEASURE_POINT,
    SIDE_BOTH,
    SIDE_CHOICES,
)


class Project(models.Model):
    name = models.CharField(max_length=200)
    code = models.CharField(max_length=50, unique=True, null=True, blank=True)

    class Meta:
        db_table = "progress_project"
        verbose_name = "Project"
        verbose_name_plural = "Projects"

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.code or self.name


class Road(models.Model):
    project = models.ForeignKey(
        Project,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="roads",
    )
    name = models.CharField(max_length=150)
    slug = models.SlugField(max_length=150, unique=True)

    class Meta:
        db_table = "progress_road"
        ordering = ("name",)
        verbose_name = "Road"
        verbose_name_plural = "Roads"

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.name


class LayerDefinition(models.Model):
    name = models.CharField(max_length=100, unique=True, help_text="Construction layer, e.g. base course.")
    is_active = models.BooleanField(default=True)

    class Meta:
        db_table = "progress_layer_definition"
        ordering = ("name",)

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.name


class CheckDefinition(models.Model):
    name = models.CharField(max_length=100, unique=True, help_text="Inspection checkpoint, e.g. compaction.")
    is_active = models.BooleanField(default=True)

    class Meta:
        db_table = "progress_check_definition"
        ordering = ("name",)

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.name


class PhaseDefinition(models.Model):
    """Shared template of a construction activity (sub-base, culvert, ...)."""

    name = models.CharField(max_length=100, unique=True)
    measure = models.CharField(max_length=10, choices=MEASURE_CHOICES, default=MEASURE_LINEAR)
    default_layers = models.ManyToManyField(LayerDefinition, blank=True, related_name="phase_definitions")
    default_checks = models.ManyToManyField(CheckDefinition, blank=True, related_name="phase_definitions")
    unit_price = models.DecimalField(max_digits=14, decimal_places=2, null=True, blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "progress_phase_definition"
        ordering = ("name",)
        verbose_name = "Phase definition"
        verbose_name_plural = "Phase definitions"

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.name


class RoadPhase(models.Model):
    road = models.ForeignKey(Road, on_delete=models.CASCADE, related_name="phases")
    phase_definition = models.ForeignKey(
        PhaseDefinition,
        on_delete=models.PROTECT,
        related_name="road_phases",
    )
    name = models.CharField(max_length=100)
    measure = models.CharField(max_length=10, choices=MEASURE_CHOICES, default=MEASURE_LINEAR)
    design_length = models.DecimalField(
        max_digits=14,
        decimal_places=3,
        default=Decimal("0"),
        help_text="Sum of interval quantities (LINEAR) or interval count (POINT).",
    )
    layers = models.ManyToManyField(
        LayerDefinition,
        blank=True,
        related_name="road_phases",
        help_text="Overrides the definition's default layers when set.",
    )
    checks = models.ManyToManyField(
        CheckDefinition,
        blank=True,
        related_name="road_phases",
        help_text="Overrides the definition's default checks when set.",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "progress_road_phase"
        ordering = ("road", "created_at", "id")
        unique_together = ("road", "name")
        verbose_name = "Road phase"
        verbose_name_plural = "Road phases"

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"{self.road} – {self.name}"

    @property
    def is_point(self) -> bool:
        return self.measure == MEASURE_POINT

    def resolved_layer_names(self) -> list[str]:
        instance = [layer.name for layer in self.layers.all()]
        if instance:
            return list(dict.fromkeys(instance))
        return list(dict.fromkeys(layer.name for layer in self.phase_definition.default_layers.all()))

    def resolved_check_names(self) -> list[str]:
        instance = [check.name for check in self.checks.all()]
        if instance:
            return list(dict.fromkeys(instance))
        return list(dict.fromkeys(check.name for check in self.phase_definition.default_checks.all()))


class PhaseInterval(models.Model):
    """Designed stretch of work (or a single structure when ``start_pk == end_pk``)."""

    phase = models.ForeignKey(RoadPhase, on_delete=models.CASCADE, related_name="intervals")
    start_pk = models.DecimalField(max_digits=12, decimal_places=3, help_text="Start position (m).")
    end_pk = models.DecimalField(max_digits=12, decimal_places=3, help_text="End position (m).")
    side = models.CharField(max_length=5, choices=SIDE_CHOICES, default=SIDE_BOTH)
    spec = models.CharField(max_length=100, null=True, blank=True)
    bill_quantity = models.DecimalField(
        max_digits=14,
        decimal_places=3,
        null=True,
        blank=True,
        help_text="Billed quantity overriding the geometric quantity.",
    )
    layers = models.JSONField(
        default=list,
        blank=True,
        help_text="Layer names applicable to this structure (POINT phases).",
    )

    class Meta:
        db_table = "progress_phase_interval"
        ordering = ("start_pk", "end_pk", "side", "id")
        verbose_name = "Phase interval"
        verbose_name_plural = "Phase intervals"

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"{self.phase} [{self.start_pk}–{self.end_pk}] {self.side}"

    def clean(self):
        errors = {}
        for field in ("start_pk", "end_pk"):
            value = getattr(self, field)
            if value is None:
                errors[field] = "Position is required."
                continue
            try:
                if not Decimal(str(value)).is_finite():
                    errors[field] = "Position must be a finite number."
            except (InvalidOperation, ValueError):
                errors[field] = "Position must be a number."
        if self.layers is not None and not isinstance(self.layers, list):
            errors["layers"] = "Layers must be a list of layer names."
        if errors:
            raise ValidationError(errors)

    def save(self, *args, **kwargs):
        self.full_clean(exclude=["phase"])
        start = Decimal(str(self.start_pk))
        end = Decimal(str(self.end_pk))
        if self.phase.is_point:
            end = start
        self.start_pk, self.end_pk = (start, end) if start <= end else (end, start)
        self.spec = (self.spec or "").strip() or None
        super().save(*args, **kwargs)


class InspectionEntry(models.Model):
    """Field inspection record. Only approved entries count towards completion."""

    phase = models.ForeignKey(RoadPhase, on_delete=models.CASCADE, related_name="inspections")
    start_pk = models.DecimalField(max_digits=12, decimal_places=3)
    end_pk = models.DecimalField(max_digits=12, decimal_places=3)
    side = models.CharField(max_length=5, choices=SIDE_CHOICES, default=SIDE_BOTH)
    layer_name = models.CharField(max_length=100, blank=True)
    check_name = models.CharField(max_length=100, blank=True)
    status = models.CharField(max_length=20, choices=INSPECTION_STATUS_CHOICES, default=INSPECTION_PENDING)
    approved_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "progress_inspection_entry"
        indexes = [models.Index(fields=["phase", "status"])]
        verbose_name = "Inspection entry"
        verbose_name_plural = "Inspection entries"

    @property
    def is_approved(self) -> bool:
        return self.status == INSPECTION_APPROVED


class PhaseWorkflow(models.Model):
    phase_definition = models.OneToOneField(
        PhaseDefinition,
        on_delete=models.CASCADE,
        related_name="workflow",
    )
    code = models.CharField(max_length=50, unique=True)
    description = models.TextField(blank=True)
    side_rule = models.TextField(blank=True)
    is_active = models.BooleanField(default=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "progress_phase_workflow"


class WorkflowLayer(models.Model):
    workflow = models.ForeignKey(PhaseWorkflow, on_delete=models.CASCADE, related_name="layers")
    code = models.CharField(max_length=50)
    name = models.CharField(max_length=100)
    stage = models.PositiveSmallIntegerField(default=1)
    sort_order = models.PositiveSmallIntegerField(default=0)
    dependencies = models.JSONField(default=list, blank=True, help_text="Codes of prerequisite layers.")
    description = models.TextField(blank=True)

    class Meta:
        db_table = "progress_workflow_layer"
        ordering = ("workflow", "sort_order", "id")
        unique_together = ("workflow", "code")


class WorkflowCheck(models.Model):
    layer = models.ForeignKey(WorkflowLayer, on_delete=models.CASCADE, related_name="checks")
    name = models.CharField(max_length=100)
    sort_order = models.PositiveSmallIntegerField(default=0)
    inspection_types = models.JSONField(default=list, blank=True)
    notes = models.TextField(blank=True)

    class Meta:
        db_table = "progress_workflow_check"
        ordering = ("layer", "sort_order", "id")
        unique_together = ("layer", "name")


class PhaseItem(models.Model):
    """Priced component of a phase definition (e.g. concrete class B)."""

    phase_definition = models.ForeignKey(
        PhaseDefinition,
        on_delete=models.CASCADE,
        related_name="items",
    )
    name = models.CharField(max_length=150)
    spec = models.CharField(max_length=100, null=True, blank=True)
    measure = models.CharField(max_length=10, choices=MEASURE_CHOICES, default=MEASURE_LINEAR)
    unit_string = models.CharField(max_length=30, null=True, blank=True)
    description = models.TextField(null=True, blank=True)
    unit_price = models.DecimalField(max_digits=14, decimal_places=2, null=True, blank=True)
    is_active = models.BooleanField(default=True)

    class Meta:
        db_table = "progress_phase_item"
        ordering = ("name", "id")
        verbose_name = "Phase item"
        verbose_name_plural = "Phase items"

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.name if not self.spec else f"{self.name} ({self.spec})"


class PhaseItemFormula(models.Model):
    phase_item = models.OneToOneField(PhaseItem, on_delete=models.CASCADE, related_name="formula")
    expression = models.TextField()
    input_schema = models.JSONField(
        default=list,
        blank=True,
        help_text="Declared input fields: [{key, label, unit, hint}].",
    )
    unit_string = models.CharField(max_length=30, null=True, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "progress_phase_item_formula"


class PhaseItemInput(models.Model):
    phase_item = models.ForeignKey(PhaseItem, on_delete=models.CASCADE, related_name="inputs")
    interval = models.ForeignKey(PhaseInterval, on_delete=models.CASCADE, related_name="item_inputs")
    values = models.JSONField(default=dict, blank=True, encoder=DjangoJSONEncoder)
    computed_quantity = models.DecimalField(max_digits=18, decimal_places=4, null=True, blank=True)
    computed_error = models.TextField(null=True, blank=True)
    manual_quantity = models.DecimalField(max_digits=18, decimal_places=4, null=True, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "progress_phase_item_input"
        unique_together = ("phase_item", "interval")
        verbose_name = "Phase item input"
        verbose_name_plural = "Phase item inputs"

    @property
    def effective_quantity(self) -> Decimal | None:
        if self.manual_quantity is not None:
            return self.manual_quantity
        return self.computed_quantity


class BoqItem(models.Model):
    project = models.ForeignKey(Project, on_delete=models.CASCADE, related_name="boq_items")
    code = models.CharField(max_length=50)
    designation = models.CharField(max_length=255)
    unit = models.CharField(max_length=30, null=True, blank=True)
    unit_price = models.DecimalField(max_digits=14, decimal_places=2, null=True, blank=True)
    sheet_type = models.CharField(max_length=10, choices=BOQ_SHEET_CHOICES, default=BOQ_SHEET_CONTRACT)
    tone = models.CharField(max_length=12, choices=BOQ_TONE_CHOICES, default=BOQ_TONE_ITEM)
    sort_order = models.PositiveIntegerField(default=0)
    is_active = models.BooleanField(default=True)

    class Meta:
        db_table = "progress_boq_item"
        ordering = ("project", "sort_order", "id")
        verbose_name = "BOQ item"
        verbose_name_plural = "BOQ items"

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"{self.code} {self.designation}"


class PhaseItemBoqLink(models.Model):
    phase_item = models.ForeignKey(PhaseItem, on_delete=models.CASCADE, related_name="boq_links")
    boq_item = models.ForeignKey(BoqItem, on_delete=models.CASCADE, related_name="phase_item_links")
    is_active = models.BooleanField(default=True)

    class Meta:
        db_table = "progress_phase_item_boq_link"
        unique_together = ("phase_item", "boq_item")
