"""Restricted boolean expressions for ``condition`` node edges.

The grammar is a single comparison::

    expression := identifier operator literal
    operator   := "==" | "!=" | ">=" | "<=" | ">" | "<"

Expressions are parsed into a :class:`Comparison` and evaluated against the
session variables. Nothing is ever compiled or executed, so values typed by a
contact cannot change what an expression does.
"""

from __future__ import annotations

import enum
import re
from typing import Any, Mapping, Union

from pydantic import BaseModel, ConfigDict

from ..errors import ConditionSyntaxError


class _Undefined:
    """Value of an identifier that is not present in the variables."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNDEFINED"


UNDEFINED = _Undefined()


class Operator(str, enum.Enum):
    EQ = "=="
    NE = "!="
    GE = ">="
    LE = "<="
    GT = ">"
    LT = "<"


class Identifier(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str


class Literal(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    value: Union[bool, int, float, str, _Undefined]


class Comparison(BaseModel):
    model_config = ConfigDict(frozen=True)

    left: Identifier
    op: Operator
    right: Literal


_EXPRESSION = re.compile(
    r"^\s*(?P<left>[^\W\d]\w*(?:\.\w+)*)\s*(?P<op>==|!=|>=|<=|>|<)\s*(?P<right>.*?)\s*$",
    re.UNICODE | re.DOTALL,
)
_NUMBER = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")
_INTEGER = re.compile(r"^[+-]?\d+$")


def _parse_literal(raw: str) -> Literal:
    if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in "'\"":
        return Literal(value=raw[1:-1])
    if _NUMBER.match(raw):
        if _INTEGER.match(raw):
            return Literal(value=int(raw))
        return Literal(value=float(raw))
    lowered = raw.lower()
    if lowered == "true":
        return Literal(value=True)
    if lowered == "false":
        return Literal(value=False)
    if lowered in ("undefined", "null", "none"):
        return Literal(value=UNDEFINED)
    return Literal(value=raw)


def parse(expression: str) -> Comparison:
    """Parse ``expression`` into a :class:`Comparison`.

    Raises:
        ConditionSyntaxError: If the expression does not fit the grammar.
    """
    if not isinstance(expression, str):
        raise ConditionSyntaxError(f"Condition must be a string, got {type(expression).__name__}")
    match = _EXPRESSION.match(expression)
    if match is None:
        raise ConditionSyntaxError(f"Malformed condition: {expression!r}")
    right = match.group("right")
    if not right:
        raise ConditionSyntaxError(f"Missing right operand in condition: {expression!r}")
    if right[0] in "=<>!":
        raise ConditionSyntaxError(f"Unknown operator in condition: {expression!r}")
    return Comparison(
        left=Identifier(name=match.group("left")),
        op=Operator(match.group("op")),
        right=_parse_literal(right),
    )


def _resolve(name: str, variables: Mapping[str, Any]) -> Any:
    if name in variables:
        return variables[name]
    # dotted names reach into nested mappings
    value: Any = variables
    for part in name.split("."):
        if not isinstance(value, Mapping) or part not in value:
            return UNDEFINED
        value = value[part]
    return value


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _coerce(left: Any, right: Any) -> Any:
    """Bring a variable value to the literal's type where that is lossless.

    Contact input is always stored as text, so ``"16"`` must compare as a
    number against ``18`` and ``"true"`` as a boolean against ``true``.
    """
    if isinstance(left, str):
        text = left.strip()
        if _is_number(right) and _NUMBER.match(text):
            return float(text)
        if isinstance(right, bool) and text.lower() in ("true", "false"):
            return text.lower() == "true"
    return left


def apply(comparison: Comparison, variables: Mapping[str, Any]) -> bool:
    left = _resolve(comparison.left.name, variables)
    right = comparison.right.value
    op = comparison.op

    if left is UNDEFINED or right is UNDEFINED or left is None:
        both_missing = (left is UNDEFINED or left is None) and right is UNDEFINED
        if op is Operator.EQ:
            return both_missing
        if op is Operator.NE:
            return not both_missing
        return False

    left = _coerce(left, right)
    if op is Operator.EQ:
        return left == right
    if op is Operator.NE:
        return left != right

    comparable = (_is_number(left) and _is_number(right)) or (
        isinstance(left, str) and isinstance(right, str)
    )
    if not comparable:
        return False
    if op is Operator.GT:
        return left > right
    if op is Operator.LT:
        return left < right
    if op is Operator.GE:
        return left >= right
    return left <= right


def evaluate(expression: str, variables: Mapping[str, Any]) -> bool:
    """Evaluate ``expression`` against ``variables`` without modifying them."""
    return apply(parse(expression), variables)
