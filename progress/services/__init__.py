from . import formula, overlap, quantities, summary, workflows
from .formula import (
    FormulaField,
    FormulaResult,
    build_formula_variables,
    evaluate_formula_expression,
    parse_formula_expression,
    parse_formula_fields,
)
from .overlap import (
    calc_linear_interval_percent,
    calc_point_interval_percent,
    compute_interval_progress,
    compute_phase_progress,
)
from .phases import create_phase, delete_phase, update_phase
from .progress import (
    list_interval_management_rows,
    load_phase_snapshot,
    load_road_snapshots,
    phase_interval_progress,
    refresh_design_length,
    road_phase_progress,
    summarize_progress,
)
from .quantities import (
    bound_items_for_intervals,
    list_phase_management_rows,
    phase_quantity_detail,
    recompute_interval_inputs,
    recompute_phase_item_inputs,
    set_phase_item_boq_binding,
    upsert_phase_item_formula,
    upsert_phase_item_input,
)
from .summary import aggregate_phase_progress
from .workflows import seed_default_workflows, workflow_map_for_definition

__all__ = [
    "formula",
    "overlap",
    "quantities",
    "summary",
    "workflows",
    "FormulaField",
    "FormulaResult",
    "build_formula_variables",
    "evaluate_formula_expression",
    "parse_formula_expression",
    "parse_formula_fields",
    "calc_linear_interval_percent",
    "calc_point_interval_percent",
    "compute_interval_progress",
    "compute_phase_progress",
    "create_phase",
    "update_phase",
    "delete_phase",
    "list_interval_management_rows",
    "load_phase_snapshot",
    "load_road_snapshots",
    "phase_interval_progress",
    "refresh_design_length",
    "road_phase_progress",
    "summarize_progress",
    "bound_items_for_intervals",
    "list_phase_management_rows",
    "phase_quantity_detail",
    "recompute_interval_inputs",
    "recompute_phase_item_inputs",
    "set_phase_item_boq_binding",
    "upsert_phase_item_formula",
    "upsert_phase_item_input",
    "aggregate_phase_progress",
    "seed_default_workflows",
    "workflow_map_for_definition",
]
