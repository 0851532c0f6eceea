"""Errors raised by the progress and quantity engine.

Validation problems reuse :class:`django.core.exceptions.ValidationError`; the
classes below cover the cases Django has no direct equivalent for.
"""

from __future__ import annotations

from django.core.exceptions import ObjectDoesNotExist


class NotFoundError(ObjectDoesNotExist):
    """A referenced phase, interval, phase item or BOQ line does not exist."""

    def __init__(self, entity: str, identifier) -> None:
        self.entity = entity
        self.identifier = identifier
        super().__init__(f"{entity} {identifier} does not exist.")


class FormulaError(ValueError):
    """Base class for formula problems."""


class FormulaSyntaxError(FormulaError):
    """The expression is malformed or uses a construct outside the formula language."""


class FormulaEvaluationError(FormulaError):
    """The expression cannot be evaluated with the current variables."""
