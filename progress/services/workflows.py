"""Inspection workflows: which checks each construction layer requires.

The default templates describe the usual construction sequence of each phase
(layers with stages and prerequisites, and the checks inspected on each
layer). ``seed_default_workflows`` writes them to the database; the
aggregator only consumes the resulting ``layer -> checks`` map.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from django.db import transaction

from progress import models
from progress.choices import MEASURE_LINEAR, MEASURE_POINT

from .snapshots import WorkflowMap

logger = logging.getLogger(__name__)

SITE_CHECK = "Site inspection"
SURVEY_CHECK = "Survey inspection"
LAB_CHECK = "Laboratory test"
OTHER_CHECK = "Other"

DEFAULT_INSPECTION_TYPES = (SITE_CHECK, SURVEY_CHECK, LAB_CHECK, OTHER_CHECK)


@dataclass(frozen=True)
class CheckTemplate:
    name: str
    types: Tuple[str, ...] = DEFAULT_INSPECTION_TYPES
    notes: str = ""


@dataclass(frozen=True)
class LayerTemplate:
    code: str
    name: str
    stage: int
    checks: Tuple[CheckTemplate, ...]
    dependencies: Tuple[str, ...] = ()
    description: str = ""


@dataclass(frozen=True)
class WorkflowTemplate:
    code: str
    phase_name: str
    measure: str
    layers: Tuple[LayerTemplate, ...]
    description: str = ""
    side_rule: str = ""

    def as_workflow_map(self) -> WorkflowMap:
        return WorkflowMap.from_mapping({layer.name: [c.name for c in layer.checks] for layer in self.layers})


def simple_layer(code: str, name: str, stage: int, checks: Sequence[str], deps: Sequence[str] = ()) -> LayerTemplate:
    return LayerTemplate(
        code=code,
        name=name,
        stage=stage,
        checks=tuple(CheckTemplate(name=check) for check in checks),
        dependencies=tuple(deps),
    )


def _cast_layer(code: str, name: str, stage: int, deps: Sequence[str], description: str = "") -> LayerTemplate:
    return LayerTemplate(
        code=code,
        name=name,
        stage=stage,
        dependencies=tuple(deps),
        description=description,
        checks=(
            CheckTemplate("Reinforcement", (SITE_CHECK, SURVEY_CHECK)),
            CheckTemplate("Formwork", (SITE_CHECK,)),
            CheckTemplate("Concrete pour", (SITE_CHECK, LAB_CHECK)),
        ),
    )


def _pavement_layer(code: str, name: str) -> LayerTemplate:
    return simple_layer(code, name, 1, ["Compaction", "Elevation", "CBR", "Deflection"])


CULVERT = WorkflowTemplate(
    code="culvert",
    phase_name="Culvert",
    measure=MEASURE_POINT,
    description=(
        "Excavation, blinding, base slab and cut-off wall, then walls, wing walls, "
        "deck and coping, finished by rendering."
    ),
    side_rule="Left and right may be inspected separately or together; prerequisites apply per side.",
    layers=(
        LayerTemplate(
            code="excavation",
            name="Excavation",
            stage=1,
            checks=(CheckTemplate("Setting out and excavation", (SITE_CHECK, SURVEY_CHECK)),),
        ),
        LayerTemplate(
            code="blinding",
            name="Blinding",
            stage=2,
            dependencies=("excavation",),
            checks=(CheckTemplate("Concrete pour", (SITE_CHECK, LAB_CHECK)),),
        ),
        _cast_layer("base-slab", "Base slab", 3, ["blinding"]),
        _cast_layer("cutoff", "Cut-off wall", 3, ["blinding"]),
        _cast_layer("wall", "Wall", 4, ["base-slab", "cutoff"]),
        _cast_layer("wing", "Wing wall", 4, ["base-slab", "cutoff"]),
        _cast_layer("deck", "Deck slab", 4, ["base-slab", "cutoff"], "Deck and coping are inspected together."),
        _cast_layer("coping", "Coping", 4, ["base-slab", "cutoff"]),
        LayerTemplate(
            code="rendering",
            name="Rendering",
            stage=5,
            dependencies=("wall", "wing", "deck", "coping"),
            checks=(CheckTemplate("Rendering", (SITE_CHECK, LAB_CHECK)),),
        ),
    ),
)

EARTHWORK = WorkflowTemplate(
    code="earthwork",
    phase_name="Earthwork",
    measure=MEASURE_LINEAR,
    description="Fill layers are accepted one by one after compaction.",
    layers=(
        simple_layer("fill-1", "Fill layer 1", 1, ["Compaction"]),
        simple_layer("fill-2", "Fill layer 2", 2, ["Compaction"], ["fill-1"]),
        simple_layer("fill-3", "Fill layer 3", 3, ["Compaction"], ["fill-2"]),
        simple_layer("fill-4", "Fill layer 4", 4, ["Compaction"], ["fill-3"]),
    ),
)

SUBBASE = WorkflowTemplate(
    code="subbase",
    phase_name="Sub-base",
    measure=MEASURE_LINEAR,
    description="Compaction, elevation, CBR and deflection checks on the sub-base.",
    layers=(_pavement_layer("subbase", "Sub-base"),),
)

BASE_COURSE = WorkflowTemplate(
    code="base-course",
    phase_name="Base course",
    measure=MEASURE_LINEAR,
    description="Compaction, elevation, CBR and deflection checks on the base course.",
    layers=(_pavement_layer("base-course", "Base course"),),
)

_CAST_CHECKS = ["Reinforcement", "Formwork", "Concrete pour"]

WALKWAY_CULVERT = WorkflowTemplate(
    code="walkway-culvert",
    phase_name="Walkway culvert",
    measure=MEASURE_POINT,
    description="Simplified culvert sequence: excavation, base slab, wall, deck.",
    layers=(
        simple_layer("excavation", "Excavation", 1, ["Setting out and excavation"]),
        simple_layer("base-slab", "Base slab", 2, _CAST_CHECKS, ["excavation"]),
        simple_layer("wall", "Wall", 3, _CAST_CHECKS, ["base-slab"]),
        simple_layer("deck", "Deck slab", 4, _CAST_CHECKS, ["wall"]),
    ),
)

SIDE_DITCH = WorkflowTemplate(
    code="side-ditch",
    phase_name="Side ditch",
    measure=MEASURE_LINEAR,
    description="Ditch installation follows excavation; sides may run in parallel.",
    layers=(
        simple_layer("excavation", "Excavation", 1, ["Setting out and excavation"]),
        simple_layer("ditch", "Side ditch", 2, ["Installation"], ["excavation"]),
    ),
)

PIPE_CULVERT = WorkflowTemplate(
    code="pipe-culvert",
    phase_name="Pipe culvert",
    measure=MEASURE_LINEAR,
    layers=(
        simple_layer("excavation", "Excavation", 1, ["Setting out and excavation"]),
        simple_layer("pipe", "Pipe culvert", 2, ["Installation"], ["excavation"]),
    ),
)

CURB = WorkflowTemplate(
    code="curb",
    phase_name="Curb",
    measure=MEASURE_LINEAR,
    layers=(simple_layer("curb", "Curb", 1, ["Installation"]),),
)

SLAB_COVER = WorkflowTemplate(
    code="slab-cover",
    phase_name="Slab cover",
    measure=MEASURE_LINEAR,
    layers=(simple_layer("cover", "Slab cover", 1, ["Installation"]),),
)

OLD_CULVERT_REMOVAL = WorkflowTemplate(
    code="old-culvert-removal",
    phase_name="Old culvert removal",
    measure=MEASURE_POINT,
    layers=(simple_layer("removal", "Existing culvert", 1, ["Dimensions and clearing"]),),
)

OLD_DITCH_REMOVAL = WorkflowTemplate(
    code="old-ditch-removal",
    phase_name="Old ditch removal",
    measure=MEASURE_LINEAR,
    layers=(simple_layer("removal", "Existing ditch", 1, ["Start/end chainage and clearing"]),),
)

DEFAULT_WORKFLOW_TEMPLATES: Tuple[WorkflowTemplate, ...] = (
    CULVERT,
    EARTHWORK,
    SUBBASE,
    BASE_COURSE,
    WALKWAY_CULVERT,
    SIDE_DITCH,
    PIPE_CULVERT,
    CURB,
    SLAB_COVER,
    OLD_CULVERT_REMOVAL,
    OLD_DITCH_REMOVAL,
)


@transaction.atomic
def seed_workflow(template: WorkflowTemplate) -> Tuple[models.PhaseWorkflow, bool]:
    """Create or refresh the definition and workflow rows of one template."""

    definition, _ = models.PhaseDefinition.objects.get_or_create(
        name=template.phase_name,
        defaults={"measure": template.measure},
    )
    workflow, created = models.PhaseWorkflow.objects.update_or_create(
        phase_definition=definition,
        defaults={
            "code": template.code,
            "description": template.description,
            "side_rule": template.side_rule,
            "is_active": True,
        },
    )

    keep_codes = []
    for order, layer in enumerate(template.layers):
        layer_row, _ = models.WorkflowLayer.objects.update_or_create(
            workflow=workflow,
            code=layer.code,
            defaults={
                "name": layer.name,
                "stage": layer.stage,
                "sort_order": order,
                "dependencies": list(layer.dependencies),
                "description": layer.description,
            },
        )
        keep_codes.append(layer.code)
        keep_checks = []
        for check_order, check in enumerate(layer.checks):
            models.WorkflowCheck.objects.update_or_create(
                layer=layer_row,
                name=check.name,
                defaults={
                    "sort_order": check_order,
                    "inspection_types": list(check.types),
                    "notes": check.notes,
                },
            )
            keep_checks.append(check.name)
        layer_row.checks.exclude(name__in=keep_checks).delete()
    workflow.layers.exclude(code__in=keep_codes).delete()

    layer_defs = [models.LayerDefinition.objects.get_or_create(name=layer.name)[0] for layer in template.layers]
    check_names = dict.fromkeys(check.name for layer in template.layers for check in layer.checks)
    check_defs = [models.CheckDefinition.objects.get_or_create(name=name)[0] for name in check_names]
    definition.default_layers.set(layer_defs)
    definition.default_checks.set(check_defs)
    return workflow, created


def seed_default_workflows(templates: Sequence[WorkflowTemplate] = DEFAULT_WORKFLOW_TEMPLATES) -> Tuple[int, int]:
    created = updated = 0
    for template in templates:
        _, was_created = seed_workflow(template)
        if was_created:
            created += 1
        else:
            updated += 1
    logger.info("Seeded progress workflows: %s created, %s updated.", created, updated)
    return created, updated


def workflow_map_for_definition(definition_id: int) -> WorkflowMap:
    """Ordered ``layer name -> check names`` of the definition's active workflow."""

    layers = (
        models.WorkflowLayer.objects.filter(
            workflow__phase_definition_id=definition_id,
            workflow__is_active=True,
        )
        .prefetch_related("checks")
        .order_by("sort_order", "id")
    )
    mapping: Dict[str, List[str]] = {}
    for layer in layers:
        mapping.setdefault(layer.name, []).extend(check.name for check in layer.checks.all())
    return WorkflowMap.from_mapping(mapping)


def resolve_phase_workflow(phase: models.RoadPhase, workflow: Optional[WorkflowMap] = None) -> WorkflowMap:
    """Workflow map used for a phase's point completion.

    Falls back to "every resolved layer requires every resolved check" when the
    definition has no configured workflow.
    """

    if workflow is None:
        workflow = workflow_map_for_definition(phase.phase_definition_id)
    if workflow:
        return workflow
    return WorkflowMap.from_layers_and_checks(phase.resolved_layer_names(), phase.resolved_check_names())
