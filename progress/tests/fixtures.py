from __future__ import annotations

from decimal import Decimal
from typing import Callable

import pytest

from progress.choices import INSPECTION_APPROVED, MEASURE_LINEAR, MEASURE_POINT, SIDE_BOTH
from progress.models import (
    BoqItem,
    InspectionEntry,
    PhaseDefinition,
    PhaseInterval,
    PhaseItem,
    Project,
    Road,
    RoadPhase,
)


@pytest.fixture
def project(db) -> Project:
    return Project.objects.create(name="Mekelle ring road", code="MRR")


@pytest.fixture
def road(project: Project) -> Road:
    return Road.objects.create(project=project, name="RN-7 Mekelle - Wukro", slug="rn-7")


@pytest.fixture
def linear_definition(db) -> PhaseDefinition:
    return PhaseDefinition.objects.create(name="Sub-base", measure=MEASURE_LINEAR)


@pytest.fixture
def point_definition(db) -> PhaseDefinition:
    return PhaseDefinition.objects.create(name="Culvert", measure=MEASURE_POINT)


@pytest.fixture
def linear_phase(road: Road, linear_definition: PhaseDefinition) -> RoadPhase:
    return RoadPhase.objects.create(
        road=road,
        phase_definition=linear_definition,
        name="Sub-base",
        measure=MEASURE_LINEAR,
    )


@pytest.fixture
def point_phase(road: Road, point_definition: PhaseDefinition) -> RoadPhase:
    return RoadPhase.objects.create(
        road=road,
        phase_definition=point_definition,
        name="Culvert",
        measure=MEASURE_POINT,
    )


@pytest.fixture
def make_interval() -> Callable[..., PhaseInterval]:
    def _make_interval(phase: RoadPhase, start, end, side: str = SIDE_BOTH, **extra) -> PhaseInterval:
        return PhaseInterval.objects.create(
            phase=phase,
            start_pk=Decimal(str(start)),
            end_pk=Decimal(str(end)),
            side=side,
            **extra,
        )

    return _make_interval


@pytest.fixture
def approve() -> Callable[..., InspectionEntry]:
    def _approve(phase: RoadPhase, start, end, side: str = SIDE_BOTH, layer: str = "", check: str = "") -> InspectionEntry:
        return InspectionEntry.objects.create(
            phase=phase,
            start_pk=Decimal(str(start)),
            end_pk=Decimal(str(end)),
            side=side,
            layer_name=layer,
            check_name=check,
            status=INSPECTION_APPROVED,
        )

    return _approve


@pytest.fixture
def subbase_interval(linear_phase: RoadPhase, make_interval) -> PhaseInterval:
    return make_interval(linear_phase, 0, 50, SIDE_BOTH)


@pytest.fixture
def concrete_item(linear_definition: PhaseDefinition) -> PhaseItem:
    return PhaseItem.objects.create(
        phase_definition=linear_definition,
        name="Crushed stone sub-base",
        measure=MEASURE_LINEAR,
        unit_string="m3",
        unit_price=Decimal("85.00"),
    )


@pytest.fixture
def contract_boq_item(project: Project) -> BoqItem:
    return BoqItem.objects.create(
        project=project,
        code="4.02",
        designation="Crushed stone sub-base, 20 cm",
        unit="m3",
        unit_price=Decimal("85.00"),
    )
