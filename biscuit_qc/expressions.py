"""Formula language used by computed columns, rollups and formatting rules.

Expressions are tokenised, parsed with a small Pratt parser into an immutable
syntax tree and evaluated by walking that tree.  Only the operators and helper
functions listed here are available; nothing is handed to Python's ``eval``.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Mapping


class ExpressionError(ValueError):
    """Raised when an expression cannot be tokenised or parsed."""


class EvaluationError(RuntimeError):
    """Raised while evaluating a syntactically valid expression."""


# ---------------------------------------------------------------------------
# Syntax tree


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Name:
    name: str


@dataclass(frozen=True)
class Member:
    target: Any
    attribute: str


@dataclass(frozen=True)
class Index:
    target: Any
    index: Any


@dataclass(frozen=True)
class Call:
    callee: Any
    args: tuple


@dataclass(frozen=True)
class Unary:
    op: str
    operand: Any


@dataclass(frozen=True)
class Binary:
    op: str
    left: Any
    right: Any


@dataclass(frozen=True)
class Logical:
    op: str
    left: Any
    right: Any


@dataclass(frozen=True)
class Conditional:
    test: Any
    then: Any
    otherwise: Any


# ---------------------------------------------------------------------------
# Tokeniser

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>(?:\d+\.\d*|\.\d+|\d+)(?:[eE][+-]?\d+)?)
  | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
  | (?P<name>[A-Za-z_][A-Za-z0-9_]*)
  | (?P<op>==|!=|<=|>=|&&|\|\||[-+*/%^<>!?:.,()\[\]])
    """,
    re.VERBOSE,
)

_KEYWORD_OPS = {"and": "&&", "or": "||", "not": "!"}
_CONSTANTS = {"true": True, "false": False, "null": None}
_ESCAPES = {"n": "\n", "t": "\t", "r": "\r"}


@dataclass(frozen=True)
class _Token:
    kind: str
    value: Any
    pos: int


def _unescape(body: str) -> str:
    return re.sub(r"\\(.)", lambda m: _ESCAPES.get(m.group(1), m.group(1)), body)


def _tokenize(source: str) -> list[_Token]:
    tokens: list[_Token] = []
    pos = 0
    while pos < len(source):
        match = _TOKEN_RE.match(source, pos)
        if not match:
            raise ExpressionError(f"Unexpected character {source[pos]!r} at {pos}")
        kind = match.lastgroup
        text = match.group()
        if kind == "number":
            tokens.append(_Token("literal", int(text) if text.isdigit() else float(text), pos))
        elif kind == "string":
            tokens.append(_Token("literal", _unescape(text[1:-1]), pos))
        elif kind == "name":
            if text in _KEYWORD_OPS:
                tokens.append(_Token("op", _KEYWORD_OPS[text], pos))
            elif text in _CONSTANTS:
                tokens.append(_Token("literal", _CONSTANTS[text], pos))
            else:
                tokens.append(_Token("name", text, pos))
        elif kind == "op":
            tokens.append(_Token("op", text, pos))
        pos = match.end()
    tokens.append(_Token("end", None, pos))
    return tokens


# ---------------------------------------------------------------------------
# Parser

# Left binding powers for infix and postfix operators.
_BINDING_POWER = {
    "?": 10,
    "||": 20,
    "&&": 30,
    "==": 40,
    "!=": 40,
    "<": 50,
    "<=": 50,
    ">": 50,
    ">=": 50,
    "+": 60,
    "-": 60,
    "*": 70,
    "/": 70,
    "%": 70,
    "^": 80,
    "(": 100,
    ".": 100,
    "[": 100,
}
_PREFIX_POWER = 90


class _Parser:
    def __init__(self, source: str) -> None:
        self.source = source
        self.tokens = _tokenize(source)
        self.index = 0

    @property
    def current(self) -> _Token:
        return self.tokens[self.index]

    def advance(self) -> _Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def expect(self, value: str) -> None:
        token = self.advance()
        if token.kind != "op" or token.value != value:
            found = token.value if token.kind != "end" else "end of expression"
            raise ExpressionError(f"Expected {value!r} at {token.pos}, found {found!r}")

    def parse(self):
        if self.current.kind == "end":
            raise ExpressionError("Empty expression")
        node = self.expression(0)
        if self.current.kind != "end":
            raise ExpressionError(
                f"Unexpected {self.current.value!r} at {self.current.pos}"
            )
        return node

    def expression(self, right_power: int):
        left = self.prefix()
        while True:
            token = self.current
            if token.kind != "op":
                break
            power = _BINDING_POWER.get(token.value)
            if power is None or power <= right_power:
                break
            self.advance()
            left = self.infix(token, left, power)
        return left

    def prefix(self):
        token = self.advance()
        if token.kind == "literal":
            return Literal(token.value)
        if token.kind == "name":
            return Name(token.value)
        if token.kind == "op":
            if token.value == "(":
                node = self.expression(0)
                self.expect(")")
                return node
            if token.value in ("-", "+", "!"):
                return Unary(token.value, self.expression(_PREFIX_POWER))
        found = token.value if token.kind != "end" else "end of expression"
        raise ExpressionError(f"Unexpected {found!r} at {token.pos}")

    def infix(self, token: _Token, left, power: int):
        op = token.value
        if op == "?":
            then = self.expression(0)
            self.expect(":")
            otherwise = self.expression(power - 1)
            return Conditional(left, then, otherwise)
        if op == "(":
            args = []
            if not (self.current.kind == "op" and self.current.value == ")"):
                while True:
                    args.append(self.expression(0))
                    if self.current.kind == "op" and self.current.value == ",":
                        self.advance()
                        continue
                    break
            self.expect(")")
            return Call(left, tuple(args))
        if op == ".":
            name = self.advance()
            if name.kind != "name":
                raise ExpressionError(f"Expected a field name after '.' at {name.pos}")
            return Member(left, name.value)
        if op == "[":
            index = self.expression(0)
            self.expect("]")
            return Index(left, index)
        if op in ("&&", "||"):
            return Logical(op, left, self.expression(power))
        if op == "^":
            # right associative
            return Binary(op, left, self.expression(power - 1))
        return Binary(op, left, self.expression(power))


@lru_cache(maxsize=512)
def parse_expression(source: str):
    """Parse ``source`` and return its syntax tree.

    Raises:
        ExpressionError: When ``source`` is not a valid expression.
    """

    if not isinstance(source, str):
        raise ExpressionError("Expression must be a string")
    return _Parser(source).parse()


# ---------------------------------------------------------------------------
# Helpers exposed to expressions


def _to_number(value: Any) -> float | int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        text = value.strip()
        if text:
            try:
                number = float(text)
            except ValueError:
                pass
            else:
                if math.isfinite(number):
                    return int(number) if text.lstrip("+-").isdigit() else number
    raise EvaluationError(f"Cannot use {value!r} as a number")


def _lenient_number(value: Any) -> float:
    try:
        number = _to_number(value)
    except EvaluationError:
        return 0
    if isinstance(number, float) and math.isnan(number):
        return 0
    return number


def _round(value: Any, digits: Any = 0) -> float | int:
    number = _to_number(value)
    places = int(_to_number(digits))
    factor = 10 ** places
    rounded = math.floor(abs(number) * factor + 0.5) / factor
    rounded = math.copysign(rounded, number)
    return int(rounded) if places <= 0 else rounded


def _sum(*values: Any) -> float | int:
    return sum(_lenient_number(value) for value in values)


def _avg(*values: Any) -> float:
    if not values:
        return 0
    return _sum(*values) / len(values)


def _min(*values: Any):
    if not values:
        raise EvaluationError("min() needs at least one value")
    return min(_to_number(value) for value in values)


def _max(*values: Any):
    if not values:
        raise EvaluationError("max() needs at least one value")
    return max(_to_number(value) for value in values)


HELPERS: dict[str, Callable[..., Any]] = {
    "abs": lambda value: abs(_to_number(value)),
    "min": _min,
    "max": _max,
    "round": _round,
    "floor": lambda value: math.floor(_to_number(value)),
    "ceil": lambda value: math.ceil(_to_number(value)),
    "sum": _sum,
    "avg": _avg,
}

# Names a row field cannot take without being shadowed in formulas.
SCOPE_BINDINGS = ("row", "this", "cols", "table", "data", "ref", "other")
RESERVED_NAMES = frozenset(SCOPE_BINDINGS) | frozenset(HELPERS) | frozenset(_CONSTANTS)


# ---------------------------------------------------------------------------
# Interpreter

_MISSING = object()


def _lookup(name: str, scope: Mapping[str, Any]):
    if name in scope:
        return scope[name]
    row = scope.get("row")
    if isinstance(row, Mapping) and name in row:
        return row[name]
    if name in HELPERS:
        return HELPERS[name]
    return _MISSING


def _is_text(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    try:
        _to_number(value)
    except EvaluationError:
        return True
    return False


def _arithmetic(op: str, left: Any, right: Any):
    if left is None or right is None:
        raise EvaluationError(f"Missing operand for {op!r}")
    if op == "+" and (_is_text(left) or _is_text(right)):
        return f"{_as_text(left)}{_as_text(right)}"
    a = _to_number(left)
    b = _to_number(right)
    if op == "+":
        return a + b
    if op == "-":
        return a - b
    if op == "*":
        return a * b
    if op == "/":
        if b == 0:
            raise EvaluationError("Division by zero")
        return a / b
    if op == "%":
        if b == 0:
            raise EvaluationError("Modulo by zero")
        return math.fmod(a, b)
    if op == "^":
        result = float(a) ** b
        if isinstance(result, complex):
            raise EvaluationError("Power has no real result")
        return result
    raise EvaluationError(f"Unknown operator {op!r}")


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _comparable(value: Any):
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    if isinstance(value, str) and not _is_text(value):
        return _to_number(value)
    return value


def _compare(op: str, left: Any, right: Any) -> bool:
    if op == "==":
        return left == right
    if op == "!=":
        return left != right
    if left is None or right is None:
        raise EvaluationError(f"Cannot compare missing values with {op!r}")
    a = _comparable(left)
    b = _comparable(right)
    try:
        if op == "<":
            return a < b
        if op == "<=":
            return a <= b
        if op == ">":
            return a > b
        if op == ">=":
            return a >= b
    except TypeError as exc:
        raise EvaluationError(str(exc)) from exc
    raise EvaluationError(f"Unknown operator {op!r}")


def _evaluate_node(node, scope: Mapping[str, Any]):
    if isinstance(node, Literal):
        return node.value
    if isinstance(node, Name):
        value = _lookup(node.name, scope)
        if value is _MISSING:
            raise EvaluationError(f"Unknown name {node.name!r}")
        return value
    if isinstance(node, Member):
        target = _evaluate_node(node.target, scope)
        if isinstance(target, Mapping):
            return target.get(node.attribute)
        raise EvaluationError(f"Cannot read {node.attribute!r} of {target!r}")
    if isinstance(node, Index):
        target = _evaluate_node(node.target, scope)
        index = _evaluate_node(node.index, scope)
        try:
            if isinstance(target, (list, tuple)):
                return target[int(_to_number(index))]
            if isinstance(target, Mapping):
                return target.get(index)
        except (IndexError, ValueError) as exc:
            raise EvaluationError(str(exc)) from exc
        raise EvaluationError(f"Cannot index {target!r}")
    if isinstance(node, Call):
        function = _evaluate_node(node.callee, scope)
        if not callable(function):
            raise EvaluationError("Only helper functions can be called")
        args = [_evaluate_node(arg, scope) for arg in node.args]
        try:
            return function(*args)
        except EvaluationError:
            raise
        except (TypeError, ValueError, ArithmeticError) as exc:
            raise EvaluationError(str(exc)) from exc
    if isinstance(node, Unary):
        value = _evaluate_node(node.operand, scope)
        if node.op == "!":
            return not value
        if value is None:
            raise EvaluationError("Missing operand for unary operator")
        number = _to_number(value)
        return -number if node.op == "-" else number
    if isinstance(node, Logical):
        left = _evaluate_node(node.left, scope)
        if node.op == "&&":
            return _evaluate_node(node.right, scope) if left else left
        return left if left else _evaluate_node(node.right, scope)
    if isinstance(node, Conditional):
        test = _evaluate_node(node.test, scope)
        return _evaluate_node(node.then if test else node.otherwise, scope)
    if isinstance(node, Binary):
        left = _evaluate_node(node.left, scope)
        right = _evaluate_node(node.right, scope)
        if node.op in ("==", "!=", "<", "<=", ">", ">="):
            return _compare(node.op, left, right)
        try:
            return _arithmetic(node.op, left, right)
        except OverflowError as exc:
            raise EvaluationError(str(exc)) from exc
    raise EvaluationError(f"Unsupported node {node!r}")


def evaluate(expr: str | None, scope: Mapping[str, Any] | None = None):
    """Evaluate ``expr`` against ``scope``.

    The scope supplies contextual bindings (``row``, ``table``, ``data``,
    ``other``, ``ref``); the fields of ``scope["row"]`` are also reachable
    unqualified.  Any parse or evaluation failure yields ``None``.
    """

    if expr is None or not str(expr).strip():
        return None
    try:
        result = _evaluate_node(parse_expression(str(expr)), scope or {})
    except (ExpressionError, EvaluationError, RecursionError):
        return None
    if isinstance(result, (int, float)) and not isinstance(result, bool):
        try:
            if not math.isfinite(result):
                return None
        except OverflowError:
            return None
    if callable(result):
        return None
    return result


# ---------------------------------------------------------------------------
# Static analysis


def _walk(node):
    yield node
    if isinstance(node, (Member,)):
        yield from _walk(node.target)
    elif isinstance(node, Index):
        yield from _walk(node.target)
        yield from _walk(node.index)
    elif isinstance(node, Call):
        yield from _walk(node.callee)
        for arg in node.args:
            yield from _walk(arg)
    elif isinstance(node, Unary):
        yield from _walk(node.operand)
    elif isinstance(node, (Binary, Logical)):
        yield from _walk(node.left)
        yield from _walk(node.right)
    elif isinstance(node, Conditional):
        yield from _walk(node.test)
        yield from _walk(node.then)
        yield from _walk(node.otherwise)


def referenced_names(expr: str) -> set[str]:
    """Return the free identifiers used by ``expr``.

    Names used only as the callee of a helper call are excluded, as are the
    qualifiers of ``row.field`` style member access (the field is reported
    instead).
    """

    tree = parse_expression(expr)
    callees = {id(node.callee) for node in _walk(tree) if isinstance(node, Call)}
    names: set[str] = set()
    for node in _walk(tree):
        if isinstance(node, Name) and id(node) not in callees:
            names.add(node.name)
        elif isinstance(node, Member) and isinstance(node.target, Name):
            if node.target.name in ("row", "this"):
                names.add(node.attribute)
    return names


def qualified_references(expr: str) -> set[tuple[str, str]]:
    """Return ``(qualifier, field)`` pairs for every ``Name.field`` in ``expr``."""

    tree = parse_expression(expr)
    return {
        (node.target.name, node.attribute)
        for node in _walk(tree)
        if isinstance(node, Member) and isinstance(node.target, Name)
    }


__all__ = [
    "EvaluationError",
    "ExpressionError",
    "HELPERS",
    "evaluate",
    "parse_expression",
    "qualified_references",
    "referenced_names",
]
