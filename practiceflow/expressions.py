"""Condition and value expression evaluation.

Expressions are plain JSON-compatible data as stored in workflow
definitions:

* literals: ``"contacted"``, ``3``, ``true``
* record references: ``{"field": "owner.email"}`` (dotted path)
* variable references: ``{"var": "attempts"}``
* templates: ``{"template": "Hi {{ record.first_name }}"}`` or any string
  containing ``{{``
* conditions: ``{"field": "status", "operator": "equals", "value": "new"}``
* groups: ``{"all": [...]}``, ``{"any": [...]}`` or
  ``{"match_type": "all", "conditions": [...]}``

Other mappings and lists are evaluated element by element, which is how
webhook payloads and record data are rendered.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from jinja2 import TemplateError
from jinja2.sandbox import SandboxedEnvironment

from .exceptions import EvaluationError

_REFERENCE_KEYS = ("field", "var", "template", "literal")
_GROUP_KEYS = ("all", "any")

_env = SandboxedEnvironment(autoescape=False)


# ----------------------------------------------------------------------
# Paths and templates


def resolve_path(data: Any, path: str) -> Any:
    """Walk a dotted ``path`` through mappings and lists.

    Missing keys resolve to ``None``.
    """
    current = data
    for part in str(path).split("."):
        if current is None:
            return None
        if isinstance(current, Mapping):
            current = current.get(part)
        elif isinstance(current, (list, tuple)) and part.lstrip("-").isdigit():
            index = int(part)
            current = current[index] if -len(current) <= index < len(current) else None
        else:
            return None
    return current


def render_template(
    template: str, record: Mapping[str, Any], variables: Mapping[str, Any]
) -> str:
    """Render a Jinja2 template with ``record`` and ``vars`` in scope."""
    try:
        return _env.from_string(template).render(record=record, vars=variables)
    except TemplateError as exc:
        raise EvaluationError(
            f"Template could not be rendered: {exc}", expression=template
        ) from exc


# ----------------------------------------------------------------------
# Coercion


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def _is_temporal(value: Any) -> bool:
    return isinstance(value, (datetime, date))


def to_number(value: Any) -> Decimal:
    result: Optional[Decimal] = None
    if _is_number(value):
        result = Decimal(str(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation:
            pass
    # NaN and infinities cannot be ordered or compared meaningfully.
    if result is None or not result.is_finite():
        raise EvaluationError(f"{value!r} is not a number", operands=[value])
    return result


def to_datetime(value: Any) -> datetime:
    """Coerce ``value`` to an aware UTC datetime."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise EvaluationError(
                f"{value!r} is not a date or timestamp", operands=[value]
            ) from None
    else:
        raise EvaluationError(f"{value!r} is not a date or timestamp", operands=[value])
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise EvaluationError(f"{value!r} is not a boolean", operands=[value])


def as_text(value: Any) -> Optional[str]:
    """Text form used when comparing trigger and wait values."""
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def _coerce_pair(left: Any, right: Any) -> Tuple[Any, Any]:
    """Bring two non-null operands to a common comparable type."""
    if isinstance(left, bool) or isinstance(right, bool):
        return to_bool(left), to_bool(right)
    if _is_number(left) or _is_number(right):
        return to_number(left), to_number(right)
    if _is_temporal(left) or _is_temporal(right):
        return to_datetime(left), to_datetime(right)
    if isinstance(left, str) and isinstance(right, str):
        return left, right
    if type(left) is type(right):
        return left, right
    raise EvaluationError(
        f"Cannot compare {type(left).__name__} with {type(right).__name__}",
        operands=[left, right],
    )


def _ordering_pair(left: Any, right: Any) -> Tuple[Any, Any]:
    if left is None or right is None:
        raise EvaluationError("Cannot order a null value", operands=[left, right])
    if isinstance(left, str) and isinstance(right, str):
        for convert in (to_number, to_datetime):
            try:
                return convert(left), convert(right)
            except EvaluationError:
                continue
        raise EvaluationError(
            "Values are neither numbers nor dates", operands=[left, right]
        )
    left, right = _coerce_pair(left, right)
    if isinstance(left, (bool, list, dict)):
        raise EvaluationError(
            f"{type(left).__name__} values cannot be ordered", operands=[left, right]
        )
    return left, right


def _text(value: Any, operator: str) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    raise EvaluationError(
        f"{operator} requires text, got {type(value).__name__}", operands=[value]
    )


def _candidates(value: Any) -> List[Any]:
    if isinstance(value, (list, tuple, set)):
        return list(value)
    if isinstance(value, str):
        return [item.strip() for item in value.split(",")]
    raise EvaluationError(
        f"Expected a list of values, got {type(value).__name__}", operands=[value]
    )


# ----------------------------------------------------------------------
# Operators


def _equals(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return left is None and right is None
    left, right = _coerce_pair(left, right)
    return left == right


def _contains(left: Any, right: Any) -> bool:
    if left is None:
        return False
    if isinstance(left, (list, tuple, set)):
        return any(_equals(item, right) for item in left)
    text = _text(left, "contains")
    return str(right).lower() in text.lower()


def _starts_with(left: Any, right: Any) -> bool:
    text = _text(left, "starts_with")
    return text is not None and text.lower().startswith(str(right).lower())


def _ends_with(left: Any, right: Any) -> bool:
    text = _text(left, "ends_with")
    return text is not None and text.lower().endswith(str(right).lower())


def _is_empty(left: Any, right: Any) -> bool:
    return left is None or (isinstance(left, (str, list, dict, tuple)) and len(left) == 0)


def _in_list(left: Any, right: Any) -> bool:
    for candidate in _candidates(right):
        # Membership skips candidates that cannot be compared with ``left``.
        try:
            if _equals(left, candidate):
                return True
        except EvaluationError:
            continue
    return False


def _compare(left: Any, right: Any, operator: str) -> bool:
    left, right = _ordering_pair(left, right)
    try:
        return left > right if operator == "greater_than" else left < right
    except (InvalidOperation, TypeError) as exc:
        raise EvaluationError(
            f"Values cannot be ordered ({type(exc).__name__})", operands=[left, right]
        ) from None


def _greater(left: Any, right: Any) -> bool:
    return _compare(left, right, "greater_than")


def _less(left: Any, right: Any) -> bool:
    return _compare(left, right, "less_than")


OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "equals": _equals,
    "not_equals": lambda a, b: not _equals(a, b),
    "contains": _contains,
    "not_contains": lambda a, b: not _contains(a, b),
    "starts_with": _starts_with,
    "ends_with": _ends_with,
    "greater_than": _greater,
    "less_than": _less,
    "greater_or_equal": lambda a, b: not _less(a, b),
    "less_or_equal": lambda a, b: not _greater(a, b),
    "is_null": lambda a, b: a is None,
    "is_not_null": lambda a, b: a is not None,
    "is_empty": _is_empty,
    "is_not_empty": lambda a, b: not _is_empty(a, b),
    "in_list": _in_list,
    "not_in_list": lambda a, b: not _in_list(a, b),
}

UNARY_OPERATORS = frozenset({"is_null", "is_not_null", "is_empty", "is_not_empty"})


# ----------------------------------------------------------------------
# Evaluation


def is_condition(expression: Any) -> bool:
    if not isinstance(expression, Mapping):
        return False
    if "operator" in expression:
        return True
    if len(expression) == 1 and next(iter(expression)) in _GROUP_KEYS:
        return True
    return "match_type" in expression and "conditions" in expression


def _is_reference(expression: Mapping[str, Any]) -> bool:
    return len(expression) == 1 and next(iter(expression)) in _REFERENCE_KEYS


def evaluate(
    expression: Any, record: Mapping[str, Any], variables: Mapping[str, Any]
) -> Any:
    """Evaluate a value or condition expression."""
    if isinstance(expression, Mapping):
        if is_condition(expression):
            return _evaluate_condition(expression, record, variables)
        if _is_reference(expression):
            key, target = next(iter(expression.items()))
            if key == "field":
                return resolve_path(record, target)
            if key == "var":
                return resolve_path(variables, target)
            if key == "template":
                return render_template(str(target), record, variables)
            return target
        return {k: evaluate(v, record, variables) for k, v in expression.items()}
    if isinstance(expression, list):
        return [evaluate(item, record, variables) for item in expression]
    if isinstance(expression, str) and ("{{" in expression or "{%" in expression):
        return render_template(expression, record, variables)
    return expression


def evaluate_boolean(
    expression: Any, record: Mapping[str, Any], variables: Mapping[str, Any]
) -> bool:
    """Evaluate ``expression`` and require a boolean outcome."""
    result = evaluate(expression, record, variables)
    try:
        return to_bool(result)
    except EvaluationError:
        raise EvaluationError(
            f"Expression did not produce a boolean (got {result!r})",
            expression=expression,
            operands=[result],
        ) from None


def _group_members(expression: Mapping[str, Any]) -> Tuple[str, Iterable[Any]]:
    if "match_type" in expression:
        return str(expression["match_type"]), expression["conditions"]
    key = next(iter(expression))
    return key, expression[key]


def _evaluate_condition(
    expression: Mapping[str, Any],
    record: Mapping[str, Any],
    variables: Mapping[str, Any],
) -> bool:
    if "operator" not in expression:
        match_type, members = _group_members(expression)
        if not isinstance(members, list):
            raise EvaluationError("Condition group needs a list", expression=expression)
        # Left to right with short-circuit.
        if match_type == "all":
            return all(evaluate_boolean(m, record, variables) for m in members)
        if match_type == "any":
            return any(evaluate_boolean(m, record, variables) for m in members)
        raise EvaluationError(
            f"Unknown match type {match_type!r}", expression=expression
        )

    operator = expression["operator"]
    func = OPERATORS.get(operator)
    if func is None:
        raise EvaluationError(f"Unknown operator {operator!r}", expression=expression)
    if "field" in expression:
        left = resolve_path(record, expression["field"])
    elif "var" in expression:
        left = resolve_path(variables, expression["var"])
    elif "left" in expression:
        left = evaluate(expression["left"], record, variables)
    else:
        raise EvaluationError(
            "Condition needs a field, var or left operand", expression=expression
        )
    right = evaluate(expression.get("value"), record, variables)
    try:
        return func(left, right)
    except EvaluationError as exc:
        raise EvaluationError(
            f"{operator}: {exc}", expression=expression, operands=[left, right]
        ) from exc


def validate_expression(expression: Any, path: str = "expression") -> List[str]:
    """Return structural problems in ``expression`` without evaluating it."""
    problems: List[str] = []
    if isinstance(expression, Mapping):
        if "operator" in expression:
            if expression["operator"] not in OPERATORS:
                problems.append(f"{path}: unknown operator {expression['operator']!r}")
            if not any(k in expression for k in ("field", "var", "left")):
                problems.append(f"{path}: condition needs a field, var or left operand")
            if (
                expression.get("operator") not in UNARY_OPERATORS
                and "value" not in expression
            ):
                problems.append(f"{path}: operator needs a value")
        elif is_condition(expression):
            match_type, members = _group_members(expression)
            if match_type not in _GROUP_KEYS:
                problems.append(f"{path}: unknown match type {match_type!r}")
            if not isinstance(members, list):
                problems.append(f"{path}: condition group needs a list")
            else:
                for index, member in enumerate(members):
                    problems.extend(validate_expression(member, f"{path}[{index}]"))
        elif _is_reference(expression) and "template" in expression:
            problems.extend(_check_template(str(expression["template"]), path))
        else:
            for key, value in expression.items():
                problems.extend(validate_expression(value, f"{path}.{key}"))
    elif isinstance(expression, list):
        for index, item in enumerate(expression):
            problems.extend(validate_expression(item, f"{path}[{index}]"))
    elif isinstance(expression, str) and ("{{" in expression or "{%" in expression):
        problems.extend(_check_template(expression, path))
    return problems


def _check_template(template: str, path: str) -> List[str]:
    try:
        _env.parse(template)
    except TemplateError as exc:
        return [f"{path}: invalid template ({exc})"]
    return []
