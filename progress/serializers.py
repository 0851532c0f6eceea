"""Serializers for progress and quantity payloads."""

from django.core.exceptions import ValidationError as DjangoValidationError
from rest_framework import serializers

from . import models
from .exceptions import FormulaSyntaxError
from .services import quantities
from .services.formula import allowed_variable_names, normalize_input_values, parse_formula_expression, parse_formula_fields


def _drf_error(exc: DjangoValidationError) -> serializers.ValidationError:
    if hasattr(exc, "error_dict"):
        return serializers.ValidationError(exc.message_dict)
    return serializers.ValidationError(exc.messages)


def _decimal(**kwargs) -> serializers.DecimalField:
    return serializers.DecimalField(max_digits=None, decimal_places=None, coerce_to_string=False, read_only=True, **kwargs)


class FormulaFieldSerializer(serializers.Serializer):
    key = serializers.CharField(max_length=64)
    label = serializers.CharField(required=False, allow_null=True, allow_blank=True)
    unit = serializers.CharField(required=False, allow_null=True, allow_blank=True)
    hint = serializers.CharField(required=False, allow_null=True, allow_blank=True)


class FormulaWriteSerializer(serializers.Serializer):
    """Create, replace or remove the formula of ``context["phase_item"]``."""

    expression = serializers.CharField(allow_blank=True, allow_null=True, required=False)
    input_schema = FormulaFieldSerializer(many=True, required=False, allow_null=True)
    unit_string = serializers.CharField(max_length=30, allow_blank=True, allow_null=True, required=False)

    def validate(self, attrs):
        expression = (attrs.get("expression") or "").strip()
        attrs["expression"] = expression
        if not expression:
            return attrs

        schema = attrs.get("input_schema")
        if schema is None:
            existing = models.PhaseItemFormula.objects.filter(phase_item=self.context["phase_item"]).first()
            schema = existing.input_schema if existing else []
        try:
            fields = parse_formula_fields([dict(entry) for entry in schema])
        except DjangoValidationError as exc:
            raise _drf_error(exc)
        try:
            parse_formula_expression(expression, allowed_variable_names(fields))
        except FormulaSyntaxError as exc:
            raise serializers.ValidationError({"expression": [str(exc)]})
        return attrs

    def create(self, validated_data):
        schema = validated_data.get("input_schema")
        try:
            return quantities.upsert_phase_item_formula(
                self.context["phase_item"].pk,
                validated_data["expression"],
                input_schema=[dict(entry) for entry in schema] if schema is not None else None,
                unit_string=validated_data.get("unit_string"),
            )
        except DjangoValidationError as exc:
            raise _drf_error(exc)


class PhaseItemInputWriteSerializer(serializers.Serializer):
    phase_item = serializers.IntegerField(min_value=1)
    interval = serializers.IntegerField(min_value=1)
    values = serializers.DictField(required=False, allow_null=True)
    manual_quantity = serializers.DecimalField(max_digits=18, decimal_places=4, required=False, allow_null=True)

    def create(self, validated_data):
        try:
            return quantities.upsert_phase_item_input(
                validated_data["phase_item"],
                validated_data["interval"],
                values=validated_data.get("values"),
                manual_quantity=validated_data.get("manual_quantity"),
            )
        except DjangoValidationError as exc:
            raise _drf_error(exc)


class BoqBindingWriteSerializer(serializers.Serializer):
    project = serializers.IntegerField(min_value=1)
    boq_item = serializers.IntegerField(min_value=1, required=False, allow_null=True)

    def create(self, validated_data):
        try:
            boq_item = quantities.set_phase_item_boq_binding(
                self.context["phase_item"].pk,
                validated_data["project"],
                validated_data.get("boq_item"),
            )
        except DjangoValidationError as exc:
            raise _drf_error(exc)
        return {"boq_item": boq_item}


class PhaseIntervalSerializer(serializers.ModelSerializer):
    class Meta:
        model = models.PhaseInterval
        fields = ["id", "start_pk", "end_pk", "side", "spec", "bill_quantity", "layers"]


class PhaseItemFormulaSerializer(serializers.ModelSerializer):
    class Meta:
        model = models.PhaseItemFormula
        fields = ["expression", "input_schema", "unit_string", "updated_at"]


class BoqItemSerializer(serializers.ModelSerializer):
    class Meta:
        model = models.BoqItem
        fields = ["id", "code", "designation", "unit", "unit_price"]


class PhaseItemInputSerializer(serializers.ModelSerializer):
    values = serializers.SerializerMethodField()
    effective_quantity = _decimal()

    class Meta:
        model = models.PhaseItemInput
        fields = [
            "id",
            "phase_item",
            "interval",
            "values",
            "computed_quantity",
            "manual_quantity",
            "computed_error",
            "effective_quantity",
            "updated_at",
        ]

    def get_values(self, obj):
        return normalize_input_values(obj.values)


class IntervalProgressSerializer(serializers.Serializer):
    interval_id = serializers.IntegerField(read_only=True)
    start = _decimal()
    end = _decimal()
    side = serializers.CharField(read_only=True)
    spec = serializers.CharField(read_only=True, allow_null=True)
    quantity = _decimal()
    raw_quantity = _decimal()
    quantity_overridden = serializers.BooleanField(read_only=True)
    completed_percent = serializers.IntegerField(read_only=True)


class PhaseProgressSerializer(serializers.Serializer):
    phase_id = serializers.IntegerField(read_only=True)
    name = serializers.CharField(read_only=True)
    measure = serializers.CharField(read_only=True)
    design_length = _decimal()
    completed_length = _decimal()
    completed_percent = serializers.IntegerField(read_only=True)
    updated_at = serializers.DateTimeField(read_only=True)
    intervals = IntervalProgressSerializer(many=True, read_only=True)


class IntervalManagementRowSerializer(serializers.Serializer):
    interval_id = serializers.IntegerField(source="progress.interval_id", read_only=True)
    phase_id = serializers.IntegerField(read_only=True)
    phase_name = serializers.CharField(read_only=True)
    measure = serializers.CharField(read_only=True)
    road_id = serializers.IntegerField(read_only=True)
    road_name = serializers.CharField(read_only=True)
    road_slug = serializers.CharField(read_only=True)
    project_id = serializers.IntegerField(read_only=True, allow_null=True)
    project_name = serializers.CharField(read_only=True, allow_null=True)
    project_code = serializers.CharField(read_only=True, allow_null=True)
    spec = serializers.CharField(source="progress.spec", read_only=True, allow_null=True)
    start_pk = _decimal(source="progress.start")
    end_pk = _decimal(source="progress.end")
    side = serializers.CharField(source="progress.side", read_only=True)
    quantity = _decimal(source="progress.quantity")
    raw_quantity = _decimal(source="progress.raw_quantity")
    quantity_overridden = serializers.BooleanField(source="progress.quantity_overridden", read_only=True)
    completed_percent = serializers.IntegerField(source="progress.completed_percent", read_only=True)


class AggregatedPhaseProgressSerializer(serializers.Serializer):
    id = serializers.CharField(read_only=True)
    name = serializers.CharField(read_only=True)
    measure = serializers.CharField(read_only=True)
    spec = serializers.CharField(read_only=True, allow_null=True)
    total_design_length = _decimal()
    total_completed_length = _decimal()
    completed_percent = serializers.IntegerField(read_only=True)
    latest_updated_at = serializers.DateTimeField(read_only=True)
    road_names = serializers.ListField(child=serializers.CharField(), read_only=True)
    phase_definition_id = serializers.IntegerField(read_only=True, allow_null=True)


class PhaseItemDetailSerializer(serializers.Serializer):
    id = serializers.IntegerField(source="item.id", read_only=True)
    name = serializers.CharField(source="item.name", read_only=True)
    spec = serializers.CharField(source="item.spec", read_only=True, allow_null=True)
    measure = serializers.CharField(source="item.measure", read_only=True)
    unit_string = serializers.CharField(source="item.unit_string", read_only=True, allow_null=True)
    description = serializers.CharField(source="item.description", read_only=True, allow_null=True)
    unit_price = _decimal(source="item.unit_price")
    formula = PhaseItemFormulaSerializer(read_only=True, allow_null=True)
    boq_binding = BoqItemSerializer(source="boq_item", read_only=True, allow_null=True)


class PhaseQuantityDetailSerializer(serializers.Serializer):
    phase = serializers.SerializerMethodField()
    road = serializers.SerializerMethodField()
    intervals = PhaseIntervalSerializer(many=True, read_only=True)
    items = PhaseItemDetailSerializer(many=True, read_only=True)
    inputs = PhaseItemInputSerializer(many=True, read_only=True)
    boq_items = BoqItemSerializer(many=True, read_only=True)

    def get_phase(self, obj):
        phase = obj.phase
        return {
            "id": phase.pk,
            "name": phase.name,
            "measure": phase.measure,
            "definition_id": phase.phase_definition_id,
            "definition_name": phase.phase_definition.name,
        }

    def get_road(self, obj):
        road = obj.road
        project = obj.project
        return {
            "id": road.pk,
            "name": road.name,
            "slug": road.slug,
            "project_id": project.pk if project else None,
            "project_name": project.name if project else None,
            "project_code": project.code if project else None,
        }


class IntervalBoundItemSerializer(serializers.Serializer):
    input_id = serializers.IntegerField(read_only=True)
    interval_id = serializers.IntegerField(read_only=True)
    interval_spec = serializers.CharField(read_only=True, allow_null=True)
    phase_item_id = serializers.IntegerField(read_only=True)
    phase_item_name = serializers.CharField(read_only=True)
    phase_item_spec = serializers.CharField(read_only=True, allow_null=True)
    manual_quantity = _decimal()
    computed_quantity = _decimal()
    computed_error = serializers.CharField(read_only=True, allow_null=True)
    effective_quantity = _decimal()
    unit = serializers.CharField(read_only=True, allow_null=True)
    boq_item_id = serializers.IntegerField(read_only=True, allow_null=True)
    boq_code = serializers.CharField(read_only=True, allow_null=True)
    updated_at = serializers.DateTimeField(read_only=True)
