"""Expression language evaluator for visibility rules, validation rules and formulas.

Expressions are small infix programs over a flat record context, e.g.::

    status == "Active" && amount >= 1000
    IF(probability > 50, "likely", "unlikely")
    CONTAINS(email, "@example.com")

Parsed ASTs are plain dicts and are cached per source string, so a rule that
is applied to many records is tokenized and parsed once.
"""

from __future__ import annotations

import logging
import math
import os
import re
import threading
from collections import OrderedDict
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping


logger = logging.getLogger("crm.expr")

MAX_DEPTH = 64
MAX_TREE_DEPTH = 256
_DEFAULT_CACHE_SIZE = int(os.getenv("CRM_EXPR_CACHE_SIZE", "1024"))


@dataclass
class ExpressionEvalError(Exception):
    code: str
    message: str
    expression: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f'{base} (expression="{self.expression}")' if self.expression is not None else base


class ExpressionParseError(ExpressionEvalError):
    def __init__(self, message: str, expression: str | None = None) -> None:
        super().__init__("EXPR_PARSE_ERROR", message, expression)


class ExpressionEvaluateError(ExpressionEvalError):
    def __init__(self, message: str, expression: str | None = None) -> None:
        super().__init__("EXPR_EVAL_ERROR", message, expression)


RELATIONAL_OPS = (">", "<", ">=", "<=")
MEMBERSHIP_OPS = ("IN", "INCLUDES", "CONTAINS", "STARTS_WITH")

# name -> (min args, max args or None for variadic)
FUNCTION_ARITY: Dict[str, tuple[int, int | None]] = {
    "CONCAT": (0, None),
    "LEN": (1, 1),
    "UPPER": (1, 1),
    "LOWER": (1, 1),
    "TRIM": (1, 1),
    "ABS": (1, 1),
    "ROUND": (1, 2),
    "MAX": (1, None),
    "MIN": (1, None),
    "SUM": (0, None),
    "AVG": (0, None),
    "NOW": (0, 0),
    "TODAY": (0, 0),
    "YEAR": (1, 1),
    "MONTH": (1, 1),
    "DAY": (1, 1),
    "ISNULL": (1, 1),
    "ISBLANK": (1, 1),
    "NOT": (1, 1),
    "IF": (3, 3),
}
for _op in MEMBERSHIP_OPS:
    FUNCTION_ARITY[_op] = (2, 2)

_KEYWORD_LITERALS = {"true": True, "false": False, "null": None}
# Identifiers that never parse as a field reference.
RESERVED_WORDS = frozenset(_KEYWORD_LITERALS) | frozenset(FUNCTION_ARITY)

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
    |(?P<string>"(?:[^"\\]|\\.)*")
    |(?P<number>\d+(?:\.\d+)?|\.\d+)
    |(?P<op>==|!=|>=|<=|&&|\|\||[<>+\-*/%])
    |(?P<ident>[A-Za-z_][A-Za-z0-9_]*)
    |(?P<punct>[()\[\],])
    """,
    re.VERBOSE,
)

_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", '"': '"', "\\": "\\"}


def _unescape(body: str) -> str:
    out = []
    idx = 0
    while idx < len(body):
        ch = body[idx]
        if ch == "\\" and idx + 1 < len(body):
            nxt = body[idx + 1]
            out.append(_ESCAPES.get(nxt, nxt))
            idx += 2
            continue
        out.append(ch)
        idx += 1
    return "".join(out)


def _tree_depth(root: dict) -> int:
    """Depth of an AST, walked without recursion so long operator chains are measured safely."""
    deepest = 0
    stack = [(root, 1)]
    while stack:
        node, depth = stack.pop()
        deepest = max(deepest, depth)
        for key in ("left", "right", "operand"):
            child = node.get(key)
            if isinstance(child, dict):
                stack.append((child, depth + 1))
        for key in ("args", "items"):
            for child in node.get(key) or []:
                stack.append((child, depth + 1))
    return deepest


def tokenize(source: str) -> List[tuple[str, str, int]]:
    tokens: List[tuple[str, str, int]] = []
    pos = 0
    while pos < len(source):
        match = _TOKEN_RE.match(source, pos)
        if not match:
            raise ExpressionParseError(f"Unexpected character {source[pos]!r} at position {pos}", source)
        kind = match.lastgroup or ""
        text = match.group(0)
        if kind != "ws":
            tokens.append((kind, text, pos))
        pos = match.end()
    return tokens


class _Parser:
    def __init__(self, tokens: List[tuple[str, str, int]], source: str) -> None:
        self.tokens = tokens
        self.source = source
        self.pos = 0
        self.depth = 0

    def parse(self) -> dict:
        if not self.tokens:
            raise ExpressionParseError("Empty expression", self.source)
        node = self.parse_or()
        if self.pos < len(self.tokens):
            _, text, at = self.tokens[self.pos]
            raise ExpressionParseError(f"Unexpected token {text!r} at position {at}", self.source)
        if _tree_depth(node) > MAX_TREE_DEPTH:
            raise ExpressionParseError("Expression nesting too deep", self.source)
        return node

    def _peek(self, offset: int = 0) -> tuple[str, str, int] | None:
        idx = self.pos + offset
        return self.tokens[idx] if idx < len(self.tokens) else None

    def _text(self, offset: int = 0) -> str:
        tok = self._peek(offset)
        return tok[1] if tok else ""

    def _advance(self) -> tuple[str, str, int]:
        tok = self.tokens[self.pos]
        self.pos += 1
        return tok

    def _expect(self, text: str) -> None:
        tok = self._peek()
        if tok is None:
            raise ExpressionParseError(f"Expected {text!r}, got end of expression", self.source)
        if tok[1] != text:
            raise ExpressionParseError(f"Expected {text!r}, got {tok[1]!r} at position {tok[2]}", self.source)
        self.pos += 1

    def _enter(self) -> None:
        self.depth += 1
        if self.depth > MAX_DEPTH:
            raise ExpressionParseError("Expression nesting too deep", self.source)

    def _binary(self, op: str, left: dict, right: dict) -> dict:
        return {"type": "op", "op": op, "left": left, "right": right}

    def parse_or(self) -> dict:
        self._enter()
        left = self.parse_and()
        while self._text() == "||":
            self._advance()
            left = self._binary("||", left, self.parse_and())
        self.depth -= 1
        return left

    def parse_and(self) -> dict:
        left = self.parse_equality()
        while self._text() == "&&":
            self._advance()
            left = self._binary("&&", left, self.parse_equality())
        return left

    def parse_equality(self) -> dict:
        left = self.parse_relational()
        while self._text() in ("==", "!="):
            op = self._advance()[1]
            left = self._binary(op, left, self.parse_relational())
        return left

    def parse_relational(self) -> dict:
        left = self.parse_additive()
        while True:
            tok = self._peek()
            if tok is None:
                break
            kind, text, _ = tok
            if (kind == "op" and text in RELATIONAL_OPS) or (kind == "ident" and text in MEMBERSHIP_OPS):
                self._advance()
                left = self._binary(text, left, self.parse_additive())
                continue
            break
        return left

    def parse_additive(self) -> dict:
        left = self.parse_multiplicative()
        while self._text() in ("+", "-") and self._peek()[0] == "op":
            op = self._advance()[1]
            left = self._binary(op, left, self.parse_multiplicative())
        return left

    def parse_multiplicative(self) -> dict:
        left = self.parse_unary()
        while self._text() in ("*", "/", "%") and self._peek()[0] == "op":
            op = self._advance()[1]
            left = self._binary(op, left, self.parse_unary())
        return left

    def parse_unary(self) -> dict:
        tok = self._peek()
        if tok is not None and tok[0] == "ident" and tok[1] == "NOT":
            self._advance()
            self._enter()
            operand = self.parse_unary()
            self.depth -= 1
            return {"type": "call", "name": "NOT", "args": [operand]}
        if tok is not None and tok[0] == "op" and tok[1] == "-":
            self._advance()
            self._enter()
            operand = self.parse_unary()
            self.depth -= 1
            return {"type": "negate", "operand": operand}
        return self.parse_primary()

    def parse_primary(self) -> dict:
        tok = self._peek()
        if tok is None:
            raise ExpressionParseError("Unexpected end of expression", self.source)
        kind, text, at = tok

        if text == "(" and kind == "punct":
            self._advance()
            node = self.parse_or()
            self._expect(")")
            return node

        if text == "[" and kind == "punct":
            self._advance()
            items = self._parse_list("]")
            return {"type": "array", "items": items}

        if kind == "string":
            self._advance()
            return {"type": "literal", "value": _unescape(text[1:-1])}

        if kind == "number":
            self._advance()
            value: Any = float(text) if "." in text else int(text)
            return {"type": "literal", "value": value}

        if kind == "ident":
            if text in _KEYWORD_LITERALS:
                self._advance()
                return {"type": "literal", "value": _KEYWORD_LITERALS[text]}
            if self._text(1) == "(":
                if text not in FUNCTION_ARITY:
                    raise ExpressionParseError(f"Unknown function {text!r} at position {at}", self.source)
                return self._parse_call()
            if text in FUNCTION_ARITY:
                raise ExpressionParseError(f"Expected '(' after {text}", self.source)
            self._advance()
            return {"type": "field", "name": text}

        raise ExpressionParseError(f"Unexpected token {text!r} at position {at}", self.source)

    def _parse_list(self, closing: str) -> List[dict]:
        items: List[dict] = []
        if self._text() == closing:
            self._advance()
            return items
        while True:
            items.append(self.parse_or())
            if self._text() == ",":
                self._advance()
                continue
            self._expect(closing)
            return items

    def _parse_call(self) -> dict:
        name = self._advance()[1]
        self._expect("(")
        args = self._parse_list(")")
        low, high = FUNCTION_ARITY[name]
        if len(args) < low or (high is not None and len(args) > high):
            expected = str(low) if low == high else f"{low}+" if high is None else f"{low}-{high}"
            raise ExpressionParseError(
                f"{name} expects {expected} argument(s), got {len(args)}", self.source
            )
        return {"type": "call", "name": name, "args": args}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _truthy(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, float) and math.isnan(value):
        return False
    if isinstance(value, (list, dict)):
        return True
    return bool(value)


def _to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def _to_number(value: Any) -> float | int:
    """Lenient numeric coercion used by the math functions: unusable values count as 0."""
    if _is_number(value):
        return value if math.isfinite(value) else 0
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, str):
        try:
            parsed = float(value.strip())
        except ValueError:
            return 0
        if not math.isfinite(parsed):
            return 0
        return int(parsed) if parsed.is_integer() and "." not in value else parsed
    return 0


def _numeric_or_none(value: Any) -> float | int | None:
    if _is_number(value):
        return value
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _to_datetime(value: Any) -> date:
    if isinstance(value, (datetime, date)):
        return value
    if isinstance(value, str) and value.strip():
        raw = value.strip().replace("Z", "+00:00")
        try:
            return datetime.fromisoformat(raw)
        except ValueError:
            try:
                return date.fromisoformat(raw[:10])
            except ValueError:
                pass
    raise ExpressionEvaluateError(f"Invalid date value: {value!r}")


def strict_equal(left: Any, right: Any) -> bool:
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    if _is_number(left) and _is_number(right):
        return left == right
    if type(left) is not type(right) and not (left is None or right is None):
        if isinstance(left, (list, dict)) or isinstance(right, (list, dict)):
            return False
        if isinstance(left, str) or isinstance(right, str):
            return False
    return left == right


def _compare(op: str, left: Any, right: Any) -> bool:
    if left is None or right is None:
        return False
    if isinstance(left, (datetime, date)) and isinstance(right, str):
        left = left.isoformat()
    if isinstance(right, (datetime, date)) and isinstance(left, str):
        right = right.isoformat()
    if isinstance(left, str) and isinstance(right, str):
        pass
    elif _is_number(left) or _is_number(right):
        left_num = _numeric_or_none(left)
        right_num = _numeric_or_none(right)
        if left_num is None or right_num is None:
            return False
        left, right = left_num, right_num
    elif isinstance(left, (datetime, date)) and isinstance(right, (datetime, date)):
        if isinstance(left, datetime) != isinstance(right, datetime):
            left = left.date() if isinstance(left, datetime) else left
            right = right.date() if isinstance(right, datetime) else right
    else:
        raise ExpressionEvaluateError(
            f"Cannot compare {type(left).__name__} with {type(right).__name__} using {op}"
        )
    if op == ">":
        return left > right
    if op == "<":
        return left < right
    if op == ">=":
        return left >= right
    return left <= right


def _contains_strict(items: list, value: Any) -> bool:
    return any(strict_equal(item, value) for item in items)


def _membership(op: str, left: Any, right: Any) -> bool:
    if op == "IN":
        return isinstance(right, list) and _contains_strict(right, left)
    if op == "INCLUDES":
        if not isinstance(left, list):
            return False
        if isinstance(right, list):
            return any(_contains_strict(left, item) for item in right)
        return _contains_strict(left, right)
    if op == "CONTAINS":
        if isinstance(left, str) and isinstance(right, str):
            return right in left
        if isinstance(left, list):
            return _contains_strict(left, right)
        return False
    # STARTS_WITH
    return isinstance(left, str) and isinstance(right, str) and left.startswith(right)


def _arith(op: str, left: Any, right: Any) -> Any:
    if op == "+" and (isinstance(left, str) or isinstance(right, str)):
        return _to_text(left) + _to_text(right)
    if not (_is_number(left) and _is_number(right)):
        raise ExpressionEvaluateError(
            f"Operator {op} requires numbers, got {type(left).__name__} and {type(right).__name__}"
        )
    if op == "+":
        return left + right
    if op == "-":
        return left - right
    if op == "*":
        return left * right
    if right == 0:
        raise ExpressionEvaluateError(f"Division by zero in {op}")
    if op == "/":
        return left / right
    result = math.fmod(left, right)
    return int(result) if isinstance(left, int) and isinstance(right, int) else result


def _round(value: Any, digits: Any = 0) -> float | int:
    places = int(_to_number(digits))
    try:
        quantum = Decimal(1).scaleb(-places)
        rounded = Decimal(str(_to_number(value))).quantize(quantum, rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise ExpressionEvaluateError(f"Cannot round {value!r}") from exc
    return int(rounded) if places <= 0 else float(rounded)


def _avg(*args: Any) -> float | int:
    nums = [_to_number(a) for a in args]
    return sum(nums) / len(nums) if nums else 0


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (list, dict)):
        return len(value) == 0
    return _to_text(value).strip() == ""


FUNCTIONS: Dict[str, Any] = {
    "CONCAT": lambda *args: "".join(_to_text(a) for a in args),
    "LEN": lambda s: len(_to_text(s)),
    "UPPER": lambda s: _to_text(s).upper(),
    "LOWER": lambda s: _to_text(s).lower(),
    "TRIM": lambda s: _to_text(s).strip(),
    "ABS": lambda n: abs(_to_number(n)),
    "ROUND": _round,
    "MAX": lambda *args: max(_to_number(a) for a in args),
    "MIN": lambda *args: min(_to_number(a) for a in args),
    "SUM": lambda *args: sum(_to_number(a) for a in args),
    "AVG": _avg,
    "NOW": lambda: datetime.now(timezone.utc),
    "TODAY": lambda: datetime.now(timezone.utc).date().isoformat(),
    "YEAR": lambda d: _to_datetime(d).year,
    "MONTH": lambda d: _to_datetime(d).month,
    "DAY": lambda d: _to_datetime(d).day,
    "ISNULL": lambda v: v is None,
    "ISBLANK": _is_blank,
    "NOT": lambda v: not _truthy(v),
}
for _op in MEMBERSHIP_OPS:
    FUNCTIONS[_op] = (lambda op: lambda left, right: _membership(op, left, right))(_op)


def evaluate_ast(node: dict, context: Mapping[str, Any]) -> Any:
    ntype = node.get("type")
    if ntype == "literal":
        return node.get("value")
    if ntype == "field":
        if not isinstance(context, Mapping):
            return None
        return context.get(node.get("name"))
    if ntype == "array":
        return [evaluate_ast(item, context) for item in node.get("items") or []]
    if ntype == "negate":
        value = evaluate_ast(node["operand"], context)
        if not _is_number(value):
            raise ExpressionEvaluateError(f"Cannot negate {type(value).__name__}")
        return -value
    if ntype == "op":
        op = node["op"]
        if op == "&&":
            return _truthy(evaluate_ast(node["left"], context)) and _truthy(evaluate_ast(node["right"], context))
        if op == "||":
            return _truthy(evaluate_ast(node["left"], context)) or _truthy(evaluate_ast(node["right"], context))
        left = evaluate_ast(node["left"], context)
        right = evaluate_ast(node["right"], context)
        if op == "==":
            return strict_equal(left, right)
        if op == "!=":
            return not strict_equal(left, right)
        if op in RELATIONAL_OPS:
            return _compare(op, left, right)
        if op in MEMBERSHIP_OPS:
            return _membership(op, left, right)
        return _arith(op, left, right)
    if ntype == "call":
        name = node["name"]
        args = node.get("args") or []
        if name == "IF":
            branch = args[1] if _truthy(evaluate_ast(args[0], context)) else args[2]
            return evaluate_ast(branch, context)
        func = FUNCTIONS.get(name)
        if func is None:
            raise ExpressionEvaluateError(f"Unknown function: {name}")
        return func(*[evaluate_ast(arg, context) for arg in args])
    raise ExpressionEvaluateError(f"Unknown expression node: {ntype}")


def _collect_fields(node: dict, found: Dict[str, None]) -> None:
    if node.get("type") == "field":
        found.setdefault(node["name"], None)
    for key in ("left", "right", "operand"):
        child = node.get(key)
        if isinstance(child, dict):
            _collect_fields(child, found)
    for key in ("args", "items"):
        for child in node.get(key) or []:
            _collect_fields(child, found)


class ExpressionEngine:
    """Parses and evaluates expressions with a bounded, lock-guarded AST cache."""

    def __init__(self, cache_size: int | None = None) -> None:
        self._cache_size = _DEFAULT_CACHE_SIZE if cache_size is None else cache_size
        self._cache: "OrderedDict[str, dict]" = OrderedDict()
        self._lock = threading.Lock()

    def parse(self, expression: str) -> dict:
        if not isinstance(expression, str):
            raise ExpressionParseError("Expression must be a string", repr(expression))
        key = expression.strip()
        with self._lock:
            cached = self._cache.get(key)
            if cached is not None:
                self._cache.move_to_end(key)
                return cached
        ast = _Parser(tokenize(key), expression).parse()
        if self._cache_size > 0:
            with self._lock:
                self._cache[key] = ast
                self._cache.move_to_end(key)
                while len(self._cache) > self._cache_size:
                    self._cache.popitem(last=False)
        return ast

    def evaluate(self, expression: str, context: Mapping[str, Any]) -> Any:
        ast = self.parse(expression)
        try:
            return evaluate_ast(ast, context if context is not None else {})
        except ExpressionEvaluateError as exc:
            raise ExpressionEvaluateError(exc.message, expression) from exc
        except (TypeError, ValueError, ArithmeticError) as exc:
            raise ExpressionEvaluateError(str(exc), expression) from exc
        except RecursionError as exc:
            raise ExpressionEvaluateError("Expression nesting too deep", expression) from exc

    def validate(self, expression: str) -> dict:
        try:
            self.parse(expression)
        except ExpressionParseError as exc:
            return {"isValid": False, "error": str(exc)}
        return {"isValid": True}

    def get_field_references(self, expression: str) -> List[str]:
        try:
            ast = self.parse(expression)
        except ExpressionParseError:
            return []
        found: Dict[str, None] = {}
        _collect_fields(ast, found)
        return list(found)

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()

    def cache_info(self) -> dict:
        with self._lock:
            return {"size": len(self._cache), "max_size": self._cache_size}


engine = ExpressionEngine()


def parse(expression: str) -> dict:
    return engine.parse(expression)


def evaluate(expression: str, context: Mapping[str, Any]) -> Any:
    return engine.evaluate(expression, context)


def validate(expression: str) -> dict:
    return engine.validate(expression)


def get_field_references(expression: str) -> List[str]:
    return engine.get_field_references(expression)


def evaluate_validation_rule(condition: str, record: Mapping[str, Any]) -> bool:
    """Return True when the rule condition flags the record as invalid.

    Errors fail open: a rule that cannot be evaluated never blocks a save.
    """
    try:
        return _truthy(engine.evaluate(condition, record))
    except ExpressionEvalError as exc:
        logger.warning("validation_rule_eval_failed condition=%r error=%s", condition, exc)
        return False


def evaluate_formula(formula: str, record: Mapping[str, Any]) -> Any:
    try:
        return engine.evaluate(formula, record)
    except ExpressionEvalError as exc:
        logger.warning("formula_eval_failed formula=%r error=%s", formula, exc)
        return None
