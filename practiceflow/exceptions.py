"""Exception hierarchy for practiceflow."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional, Sequence


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(v) for v in value]
    return repr(value)


class PracticeflowError(Exception):
    """Base class for all practiceflow errors."""


class DefinitionError(PracticeflowError):
    """A workflow definition is malformed."""


class EvaluationError(PracticeflowError):
    """An expression could not be evaluated against a record.

    Carries the offending expression and operand values so they can be
    recorded in the execution history.
    """

    def __init__(
        self,
        message: str,
        expression: Any = None,
        operands: Optional[Sequence[Any]] = None,
    ) -> None:
        super().__init__(message)
        self.expression = expression
        self.operands = list(operands) if operands is not None else None

    def to_detail(self) -> dict[str, Any]:
        detail: dict[str, Any] = {"error": str(self)}
        if self.expression is not None:
            detail["expression"] = _jsonable(self.expression)
        if self.operands is not None:
            detail["operands"] = _jsonable(self.operands)
        return detail


class StepExecutionError(PracticeflowError):
    """A step executor could not complete its action."""


class RecordNotFoundError(PracticeflowError):
    """The record store has no record with the requested key."""


class ExecutionNotFoundError(PracticeflowError):
    """No workflow execution exists with the given id."""


class WorkflowNotFoundError(PracticeflowError):
    """No workflow definition exists with the given id."""


class WorkflowInactiveError(PracticeflowError):
    """The workflow definition exists but is not active."""
