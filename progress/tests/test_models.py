from __future__ import annotations

from decimal import Decimal

from django.core.exceptions import ValidationError
from django.test import TestCase

from progress import models
from progress.choices import MEASURE_LINEAR, MEASURE_POINT, SIDE_BOTH, SIDE_LEFT


class PhaseModelTests(TestCase):
    def setUp(self):
        self.project = models.Project.objects.create(name="Adigrat - Zalambessa", code="AZ")
        self.road = models.Road.objects.create(project=self.project, name="Adigrat - Zalambessa", slug="az")
        self.definition = models.PhaseDefinition.objects.create(name="Base course", measure=MEASURE_LINEAR)
        self.phase = models.RoadPhase.objects.create(
            road=self.road,
            phase_definition=self.definition,
            name="Base course",
            measure=MEASURE_LINEAR,
        )

    def test_interval_rejects_non_numeric_position(self):
        interval = models.PhaseInterval(phase=self.phase, start_pk="abc", end_pk=Decimal("10"))
        with self.assertRaises(ValidationError):
            interval.save()
        self.assertFalse(models.PhaseInterval.objects.exists())

    def test_interval_rejects_non_list_layers(self):
        interval = models.PhaseInterval(phase=self.phase, start_pk=Decimal("0"), end_pk=Decimal("10"), layers="Base")
        with self.assertRaises(ValidationError) as ctx:
            interval.save()
        self.assertIn("layers", ctx.exception.message_dict)

    def test_interval_blank_spec_is_stored_as_null(self):
        interval = models.PhaseInterval.objects.create(
            phase=self.phase,
            start_pk=Decimal("0"),
            end_pk=Decimal("10"),
            side=SIDE_LEFT,
            spec="   ",
        )
        interval.refresh_from_db()
        self.assertIsNone(interval.spec)

    def test_instance_overrides_win_over_definition_defaults(self):
        self.definition.default_layers.set([models.LayerDefinition.objects.create(name="Base course")])
        self.definition.default_checks.set(
            [
                models.CheckDefinition.objects.create(name="Compaction"),
                models.CheckDefinition.objects.create(name="Elevation"),
            ]
        )
        self.assertEqual(self.phase.resolved_layer_names(), ["Base course"])
        self.assertEqual(sorted(self.phase.resolved_check_names()), ["Compaction", "Elevation"])

        self.phase.checks.set([models.CheckDefinition.objects.get(name="Elevation")])
        self.assertEqual(self.phase.resolved_check_names(), ["Elevation"])

    def test_effective_quantity_prefers_manual(self):
        item = models.PhaseItem.objects.create(
            phase_definition=self.definition,
            name="Graded crushed stone",
            measure=MEASURE_LINEAR,
        )
        interval = models.PhaseInterval.objects.create(
            phase=self.phase, start_pk=Decimal("0"), end_pk=Decimal("10"), side=SIDE_BOTH
        )
        row = models.PhaseItemInput(phase_item=item, interval=interval, computed_quantity=Decimal("4"))
        self.assertEqual(row.effective_quantity, Decimal("4"))
        row.manual_quantity = Decimal("5")
        self.assertEqual(row.effective_quantity, Decimal("5"))

    def test_point_interval_is_one_structure(self):
        culvert = models.RoadPhase.objects.create(
            road=self.road,
            phase_definition=models.PhaseDefinition.objects.create(name="Culvert", measure=MEASURE_POINT),
            name="Culvert",
            measure=MEASURE_POINT,
        )
        models.PhaseInterval.objects.create(phase=culvert, start_pk=Decimal("250"), end_pk=Decimal("262"))
        culvert.refresh_from_db()
        self.assertEqual(culvert.design_length, Decimal("1"))
