"""Guard conditions evaluated against a token's context.

Branch and Loop steps select or repeat children based on a ``Condition``:
a variable name, an operator and an optional operand.  Conditions are plain
data so they survive serialization into the token's ``script`` column.

Example::

    >>> cond = Condition(var="LOOP_INDEX", op=ConditionOp.LT, value=3)
    >>> cond.evaluate({"LOOP_INDEX": 1})
    True
    >>> Condition(var="MODE", op=ConditionOp.EQ, value="full").evaluate({})
    False
"""

from __future__ import annotations

import operator
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any


class ConditionOp(str, Enum):
    EQ = "eq"
    NE = "ne"
    LT = "lt"
    LE = "le"
    GT = "gt"
    GE = "ge"
    IN = "in"
    NOT_IN = "not_in"
    EXISTS = "exists"
    MISSING = "missing"
    TRUTHY = "truthy"
    FALSY = "falsy"


_UNARY = {ConditionOp.EXISTS, ConditionOp.MISSING, ConditionOp.TRUTHY, ConditionOp.FALSY}

_COMPARE: dict[ConditionOp, Callable[[Any, Any], bool]] = {
    ConditionOp.EQ: operator.eq,
    ConditionOp.NE: operator.ne,
    ConditionOp.LT: operator.lt,
    ConditionOp.LE: operator.le,
    ConditionOp.GT: operator.gt,
    ConditionOp.GE: operator.ge,
}


def _coerce(left: Any, right: Any) -> tuple[Any, Any]:
    # Captured command output arrives as text; compare numerically when the
    # operand is a number.
    if isinstance(right, (int, float)) and not isinstance(right, bool) and isinstance(left, str):
        try:
            return float(left), right
        except ValueError:
            return left, right
    return left, right


@dataclass(frozen=True)
class Condition:
    """``<var> <op> <value>`` over a context mapping."""

    var: str
    op: ConditionOp = ConditionOp.TRUTHY
    value: Any = None

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        present = self.var in context
        current = context.get(self.var)

        if self.op is ConditionOp.EXISTS:
            return present
        if self.op is ConditionOp.MISSING:
            return not present
        if self.op is ConditionOp.TRUTHY:
            return bool(current) and current not in ("0", "false", "False")
        if self.op is ConditionOp.FALSY:
            return not (bool(current) and current not in ("0", "false", "False"))
        if not present:
            return self.op is ConditionOp.NE or self.op is ConditionOp.NOT_IN
        if self.op is ConditionOp.IN:
            return current in (self.value or ())
        if self.op is ConditionOp.NOT_IN:
            return current not in (self.value or ())

        left, right = _coerce(current, self.value)
        try:
            return _COMPARE[self.op](left, right)
        except TypeError:
            return False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"var": self.var, "op": self.op.value}
        if self.op not in _UNARY:
            data["value"] = self.value
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Condition:
        value = data.get("value")
        if isinstance(value, list):
            value = tuple(value)
        return cls(var=data["var"], op=ConditionOp(data.get("op", "truthy")), value=value)


__all__ = ["Condition", "ConditionOp"]
