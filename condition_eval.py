"""Structured visibility conditions (``visibleIf`` clause lists).

A clause is ``{"left": <field api name>, "op": <operator>, "right": <literal>}``
and a list of clauses is AND-combined. Clauses are rendered into an
expression string and evaluated by :mod:`expression_eval`, so visibility
rules and free-form expressions share one set of operator semantics.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping

import expression_eval


logger = logging.getLogger("crm.conditions")

ALLOWED_OPS = ("==", "!=", ">", "<", ">=", "<=", "IN", "INCLUDES", "CONTAINS", "STARTS_WITH")
OPERATOR_LABELS = {
    "==": "equals",
    "!=": "not equals",
    ">": "greater than",
    "<": "less than",
    ">=": "greater than or equal",
    "<=": "less than or equal",
    "IN": "is in",
    "INCLUDES": "includes",
    "CONTAINS": "contains",
    "STARTS_WITH": "starts with",
}
_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass
class ConditionEvalError(Exception):
    code: str
    message: str
    path: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base


class ConditionSchemaError(ConditionEvalError):
    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__("CONDITION_SCHEMA_ERROR", message, path)


class UnknownOpError(ConditionEvalError):
    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__("CONDITION_UNKNOWN_OP", message, path)


def _quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _scalar_literal(value: Any, path: str) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ConditionSchemaError("Non-finite number", path)
        return format(Decimal(repr(value)), "f")
    if isinstance(value, str):
        return _quote(value)
    raise ConditionSchemaError(f"Unsupported right-hand value: {type(value).__name__}", path)


def _right_literal(value: Any, path: str) -> str:
    if isinstance(value, (list, tuple)):
        items = [_scalar_literal(item, f"{path}[{idx}]") for idx, item in enumerate(value)]
        return "[" + ", ".join(items) + "]"
    return _scalar_literal(value, path)


def clause_to_expression(clause: Any, path: str = "$") -> str:
    if not isinstance(clause, Mapping):
        raise ConditionSchemaError("Condition must be object", path)
    for key in ("left", "op"):
        if key not in clause:
            raise ConditionSchemaError(f"Missing required field: {key}", path)
    left = clause.get("left")
    if not isinstance(left, str) or not _IDENT_RE.match(left):
        raise ConditionSchemaError("left must be a field api name", f"{path}.left")
    if left in expression_eval.RESERVED_WORDS:
        raise ConditionSchemaError(f"left is a reserved word: {left}", f"{path}.left")
    op = clause.get("op")
    if op not in ALLOWED_OPS:
        raise UnknownOpError(f"Unknown op: {op}", f"{path}.op")
    right = _right_literal(clause.get("right"), f"{path}.right")
    return f"{left} {op} {right}"


def conditions_to_expression(conditions: Iterable[Any]) -> str:
    parts = [clause_to_expression(clause, f"$[{idx}]") for idx, clause in enumerate(conditions)]
    return " && ".join(parts)


def eval_conditions(conditions: List[Any] | None, record: Mapping[str, Any]) -> bool:
    """AND-evaluate a clause list against record values; errors propagate."""
    if not conditions:
        return True
    if not isinstance(conditions, (list, tuple)):
        raise ConditionSchemaError("conditions must be list", "$")
    expression = conditions_to_expression(conditions)
    result = expression_eval.engine.evaluate(expression, record if isinstance(record, Mapping) else {})
    return bool(result)


def evaluate_visibility(conditions: List[Any] | None, record: Mapping[str, Any], field: str | None = None) -> bool:
    """Visibility check that fails open: any error makes the field visible."""
    if not conditions:
        return True
    try:
        return eval_conditions(conditions, record)
    except Exception as exc:
        logger.warning("visibility_eval_failed field=%s error=%s", field, exc)
        return True


def build_condition(field_api_name: str, op: str, value: Any) -> dict:
    if op not in ALLOWED_OPS:
        raise UnknownOpError(f"Unknown op: {op}", "$.op")
    return {"left": field_api_name, "op": op, "right": value}


def format_condition(condition: Mapping[str, Any], field_label: str) -> str:
    right = condition.get("right")
    right_display = ", ".join(str(v) for v in right) if isinstance(right, (list, tuple)) else right
    label = OPERATOR_LABELS.get(condition.get("op"), str(condition.get("op")))
    return f"{field_label} {label} {right_display}"


def validate_conditions(conditions: Any, field_names: Iterable[str] | None = None, path: str = "visibleIf") -> List[Dict[str, Any]]:
    """Return issues for malformed clauses or references to unknown fields."""
    issues: List[Dict[str, Any]] = []
    if conditions is None:
        return issues
    if not isinstance(conditions, (list, tuple)):
        return [{"code": "CONDITION_INVALID", "message": "visibleIf must be a list", "path": path, "detail": None}]
    known = set(field_names) if field_names is not None else None
    for idx, clause in enumerate(conditions):
        clause_path = f"{path}[{idx}]"
        try:
            clause_to_expression(clause, clause_path)
        except ConditionEvalError as exc:
            issues.append({"code": exc.code, "message": exc.message, "path": exc.path, "detail": None})
            continue
        if known is not None and clause.get("left") not in known:
            issues.append(
                {
                    "code": "CONDITION_UNKNOWN_FIELD",
                    "message": f"Unknown field in condition: {clause.get('left')}",
                    "path": f"{clause_path}.left",
                    "detail": None,
                }
            )
    return issues
