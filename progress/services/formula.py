"""
Restricted arithmetic formulas for phase item quantities.

A formula is a single expression over named variables, parsed with Python's
own parser and then checked against a fixed node set so nothing but
arithmetic can run.

Allowed:
  - Numbers (integers and decimals, including exponent notation)
  - Variables: interval geometry (start, end, length, side, ...),
    billQuantity and the formula's declared input keys
  - Binary operators: +, -, *, /  (× and ÷ are accepted as * and /)
  - Unary minus and plus, parentheses

Rejected:
  - function calls, attribute access, subscripts, comparisons, boolean
    logic, powers, floor division, modulo, strings and any other construct

Evaluation never raises: a missing variable, a division by zero or a
non-finite result yields ``FormulaResult(value=None, error=...)``.
"""

from __future__ import annotations

import ast
import logging
import re
from dataclasses import dataclass
from decimal import Decimal, DivisionByZero, InvalidOperation, Overflow
from typing import Dict, FrozenSet, Iterable, Mapping, Optional, Tuple

from django.core.exceptions import ValidationError

from progress.exceptions import FormulaError, FormulaEvaluationError, FormulaSyntaxError

from .intervals import ONE, ZERO, side_factor

logger = logging.getLogger(__name__)

# Names always bound by build_formula_variables(); declared inputs may not reuse them.
RESERVED_VARIABLES: FrozenSet[str] = frozenset({
    "start", "end", "startPk", "endPk",
    "length", "rawLength", "side", "sideFactor",
    "pointCount", "billQuantity",
})

IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_OPERATOR_ALIASES = {"×": "*", "÷": "/"}

# Checked after alias substitution. Numbers are plain decimals with an optional
# exponent: no hex/octal/binary prefixes, digit separators or imaginary suffixes.
_ALLOWED_TEXT_RE = re.compile(r"^[0-9.\sA-Za-z_+\-*/()]*$")
_NUMBER_TOKEN_RE = re.compile(r"(?<![A-Za-z0-9_.])\.?[0-9][0-9A-Za-z_.]*")
_DECIMAL_TOKEN_RE = re.compile(r"^(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:[eE][0-9]*)?$")

_BINARY_OPERATORS = (ast.Add, ast.Sub, ast.Mult, ast.Div)
_UNARY_OPERATORS = (ast.USub, ast.UAdd)


@dataclass(frozen=True)
class FormulaField:
    """A declared formula input, used both for form generation and binding."""

    key: str
    label: Optional[str] = None
    unit: Optional[str] = None
    hint: Optional[str] = None

    def as_dict(self) -> Dict[str, Optional[str]]:
        return {"key": self.key, "label": self.label, "unit": self.unit, "hint": self.hint}


@dataclass(frozen=True)
class ParsedFormula:
    expression: str
    tree: ast.Expression
    names: FrozenSet[str]


@dataclass(frozen=True)
class FormulaResult:
    value: Optional[Decimal]
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.value is not None


def _normalize_expression(expression: str) -> str:
    text = (expression or "").strip()
    for alias, operator in _OPERATOR_ALIASES.items():
        text = text.replace(alias, operator)
    return text


def _describe(node: ast.AST) -> str:
    return type(node).__name__


def _check_text(text: str) -> None:
    """Reject Python-only literal syntax before handing the text to ``ast``."""

    if not _ALLOWED_TEXT_RE.match(text):
        raise FormulaSyntaxError("Formula contains characters that are not allowed")
    for token in _NUMBER_TOKEN_RE.findall(text):
        if not _DECIMAL_TOKEN_RE.match(token):
            raise FormulaSyntaxError(f"Invalid number: {token}")


def _check_tree(root: ast.AST, names: set) -> None:
    stack = [root]
    while stack:
        node = stack.pop()
        if isinstance(node, ast.BinOp):
            if not isinstance(node.op, _BINARY_OPERATORS):
                raise FormulaSyntaxError(f"Operator not allowed: {_describe(node.op)}")
            stack.append(node.right)
            stack.append(node.left)

        elif isinstance(node, ast.UnaryOp):
            if not isinstance(node.op, _UNARY_OPERATORS):
                raise FormulaSyntaxError(f"Operator not allowed: {_describe(node.op)}")
            stack.append(node.operand)

        elif isinstance(node, ast.Constant):
            value = node.value
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise FormulaSyntaxError(f"Only numeric literals are allowed, got {value!r}")

        elif isinstance(node, ast.Name):
            names.add(node.id)

        else:
            raise FormulaSyntaxError(f"Construct not allowed in formulas: {_describe(node)}")


def parse_formula_expression(
    expression: str, allowed_names: Optional[Iterable[str]] = None
) -> ParsedFormula:
    """Parse and structurally validate ``expression``.

    When ``allowed_names`` is given, any identifier outside it is rejected.
    Raises :class:`FormulaSyntaxError`.
    """

    text = _normalize_expression(expression)
    if not text:
        raise FormulaSyntaxError("Formula is empty")
    _check_text(text)

    try:
        tree = ast.parse(text, mode="eval")
    except SyntaxError as exc:
        raise FormulaSyntaxError(f"Syntax error: {exc.msg}") from exc
    except (RecursionError, MemoryError) as exc:
        raise FormulaSyntaxError("Expression is too deeply nested") from exc

    names: set = set()
    _check_tree(tree.body, names)

    if allowed_names is not None:
        unknown = sorted(names - set(allowed_names))
        if unknown:
            raise FormulaSyntaxError(f"Unknown variable(s): {', '.join(unknown)}")

    return ParsedFormula(expression=text, tree=tree, names=frozenset(names))


def _leaf_value(node: ast.AST, variables: Mapping[str, Optional[Decimal]]) -> Decimal:
    if isinstance(node, ast.Constant):
        return Decimal(repr(node.value))

    if isinstance(node, ast.Name):
        value = variables.get(node.id)
        if value is None:
            raise FormulaEvaluationError(f"Missing variable: {node.id}")
        return Decimal(value)

    raise FormulaEvaluationError(f"Cannot evaluate {_describe(node)}")


def _apply(op: ast.operator, left: Decimal, right: Decimal) -> Decimal:
    if isinstance(op, ast.Add):
        return left + right
    if isinstance(op, ast.Sub):
        return left - right
    if isinstance(op, ast.Mult):
        return left * right
    if right == ZERO:
        raise FormulaEvaluationError("Division by zero")
    return left / right


def _evaluate(root: ast.AST, variables: Mapping[str, Optional[Decimal]]) -> Decimal:
    # Post-order walk with an explicit stack; operands are evaluated left to right.
    stack = [(root, False)]
    results: list = []
    while stack:
        node, expanded = stack.pop()
        if isinstance(node, ast.BinOp):
            if not expanded:
                stack.append((node, True))
                stack.append((node.right, False))
                stack.append((node.left, False))
                continue
            right = results.pop()
            left = results.pop()
            results.append(_apply(node.op, left, right))
        elif isinstance(node, ast.UnaryOp):
            if not expanded:
                stack.append((node, True))
                stack.append((node.operand, False))
                continue
            operand = results.pop()
            results.append(-operand if isinstance(node.op, ast.USub) else operand)
        else:
            results.append(_leaf_value(node, variables))
    return results[0]


def evaluate_parsed_formula(
    parsed: ParsedFormula, variables: Mapping[str, Optional[Decimal]]
) -> FormulaResult:
    try:
        value = _evaluate(parsed.tree.body, variables)
        if not value.is_finite():
            raise FormulaEvaluationError("Result is not a finite number")
    except FormulaEvaluationError as exc:
        logger.debug("Formula %r not evaluable: %s", parsed.expression, exc)
        return FormulaResult(value=None, error=str(exc))
    except (InvalidOperation, DivisionByZero, Overflow) as exc:
        logger.debug("Formula %r failed arithmetic: %s", parsed.expression, exc)
        return FormulaResult(value=None, error="Result is not a finite number")
    return FormulaResult(value=value)


def evaluate_formula_expression(
    expression: str, variables: Mapping[str, Optional[Decimal]]
) -> FormulaResult:
    """Evaluate ``expression`` against ``variables``; never raises."""

    try:
        parsed = parse_formula_expression(expression)
    except FormulaError as exc:
        return FormulaResult(value=None, error=str(exc))
    return evaluate_parsed_formula(parsed, variables)


def _number_or_none(value) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    if isinstance(value, (int, float, str)):
        text = str(value).strip()
        if not text:
            return None
        try:
            number = Decimal(text)
        except (InvalidOperation, ValueError):
            return None
        return number if number.is_finite() else None
    return None


def normalize_input_values(values) -> Dict[str, Decimal]:
    """Keep the numeric entries of a stored value bag, dropping the rest."""

    if not isinstance(values, Mapping):
        return {}
    normalized: Dict[str, Decimal] = {}
    for key, value in values.items():
        if not key:
            continue
        number = _number_or_none(value)
        if number is not None:
            normalized[str(key)] = number
    return normalized


def clean_input_values(values) -> Dict[str, Decimal]:
    """Validate a value bag submitted for storage.

    Blank entries are dropped (a field not filled yet); anything else that is
    not a finite number is a validation error.
    """

    if values is None:
        return {}
    if not isinstance(values, Mapping):
        raise ValidationError({"values": "Values must be an object of key/number pairs."})
    cleaned: Dict[str, Decimal] = {}
    errors = []
    for key, value in values.items():
        if value is None or (isinstance(value, str) and not value.strip()):
            continue
        number = _number_or_none(value)
        if number is None:
            errors.append(f"{key}: '{value}' is not a number.")
            continue
        cleaned[str(key)] = number
    if errors:
        raise ValidationError({"values": errors})
    return cleaned


def build_formula_variables(interval, values=None) -> Dict[str, Optional[Decimal]]:
    """Variable environment for one (phase item, interval) pair."""

    start = Decimal(interval.start)
    end = Decimal(interval.end)
    raw = abs(end - start)
    base = ONE if raw == ZERO else raw
    factor = Decimal(side_factor(interval.side))
    bill_quantity = getattr(interval, "bill_quantity", None)

    variables: Dict[str, Optional[Decimal]] = {
        "start": start,
        "end": end,
        "startPk": start,
        "endPk": end,
        "rawLength": raw,
        "length": base * factor,
        "side": factor,
        "sideFactor": factor,
        "pointCount": ONE,
        "billQuantity": Decimal(bill_quantity) if bill_quantity is not None else None,
    }
    for key, value in normalize_input_values(values).items():
        if key not in RESERVED_VARIABLES:
            variables[key] = value
    return variables


def _optional_text(entry: Mapping, name: str, index: int, errors: list) -> Optional[str]:
    value = entry.get(name)
    if value is None:
        return None
    if not isinstance(value, str):
        errors.append(f"Field {index + 1}: '{name}' must be text.")
        return None
    return value.strip() or None


def parse_formula_fields(raw) -> Tuple[FormulaField, ...]:
    """Validate a declared input schema into :class:`FormulaField` records.

    Accepts a list of ``{key, label, unit, hint}`` objects or an object with a
    ``fields`` list. Keys must be identifiers, unique and not reserved.
    """

    if raw is None:
        return ()
    if isinstance(raw, Mapping):
        raw = raw.get("fields", [])
    if not isinstance(raw, (list, tuple)):
        raise ValidationError({"input_schema": "Input schema must be a list of fields."})

    errors: list = []
    fields = []
    seen = set()
    for index, entry in enumerate(raw):
        if not isinstance(entry, Mapping):
            errors.append(f"Field {index + 1}: must be an object.")
            continue
        key = entry.get("key")
        key = key.strip() if isinstance(key, str) else ""
        if not key:
            errors.append(f"Field {index + 1}: key is required.")
            continue
        if not IDENTIFIER_RE.match(key):
            errors.append(f"Field {index + 1}: key '{key}' is not a valid identifier.")
            continue
        if key in RESERVED_VARIABLES:
            errors.append(f"Field {index + 1}: key '{key}' is reserved.")
            continue
        if key in seen:
            errors.append(f"Duplicate field key '{key}'.")
            continue
        seen.add(key)
        fields.append(
            FormulaField(
                key=key,
                label=_optional_text(entry, "label", index, errors),
                unit=_optional_text(entry, "unit", index, errors),
                hint=_optional_text(entry, "hint", index, errors),
            )
        )
    if errors:
        raise ValidationError({"input_schema": errors})
    return tuple(fields)


def allowed_variable_names(fields: Iterable[FormulaField]) -> FrozenSet[str]:
    return RESERVED_VARIABLES | frozenset(field.key for field in fields)
