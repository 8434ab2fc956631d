"""
Filter descriptors for selection scoping.

A FilterDescriptor is the immutable, serializable predicate that says which
records are "in scope" for a selection. It is a conjunction of field
constraints; disjunction is not supported.

Invariants:
    - Descriptors are frozen; a changed UI filter produces a new descriptor
    - Evaluation is pure: same descriptor + same snapshot = same matching set
    - A record missing a constrained field never matches that constraint
    - Constraint order is preserved and is part of the fingerprint

How to change safely:
    - New operators must be added to Operator, to matches(), to the schema
      compatibility table and to the SQL compiler in the record store
    - Keep to_dict() output stable, tokens persist it

Example:
    >>> f = FilterDescriptor.of(("status", "eq", "unreplied"))
    >>> f.matches({"status": "unreplied"})
    True
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..errors import InvalidFilterError


class Operator(Enum):
    """Supported constraint operators."""

    EQ = "eq"
    NE = "ne"
    LT = "lt"
    LTE = "lte"
    GT = "gt"
    GTE = "gte"
    IN = "in"
    NOT_IN = "not_in"
    BETWEEN = "between"

    @classmethod
    def from_str(cls, value: str) -> Operator:
        """Convert string representation to Operator.

        Raises:
            InvalidFilterError: If value is not a known operator
        """
        for op in cls:
            if op.value == value:
                return op
        valid = [o.value for o in cls]
        raise InvalidFilterError(f"Invalid operator '{value}'. Valid operators: {valid}", operator=value)

    @property
    def is_range(self) -> bool:
        return self in RANGE_OPERATORS

    @property
    def takes_list(self) -> bool:
        return self in (Operator.IN, Operator.NOT_IN, Operator.BETWEEN)


RANGE_OPERATORS = frozenset({Operator.LT, Operator.LTE, Operator.GT, Operator.GTE, Operator.BETWEEN})


@dataclass(frozen=True)
class FieldConstraint:
    """A single (field, operator, value) constraint.

    List-valued operands (in, not_in, between) are stored as tuples so the
    constraint stays hashable and immutable.
    """

    field: str
    op: Operator
    value: Any

    def matches(self, fields: Mapping[str, Any]) -> bool:
        """Evaluate this constraint against one record's fields."""
        actual = fields.get(self.field)
        if actual is None:
            return False

        op = self.op
        if op is Operator.EQ:
            return actual == self.value
        if op is Operator.NE:
            return actual != self.value
        if op is Operator.IN:
            return actual in self.value
        if op is Operator.NOT_IN:
            return actual not in self.value

        try:
            if op is Operator.LT:
                return actual < self.value
            if op is Operator.LTE:
                return actual <= self.value
            if op is Operator.GT:
                return actual > self.value
            if op is Operator.GTE:
                return actual >= self.value
            if op is Operator.BETWEEN:
                low, high = self.value
                return low <= actual <= high
        except TypeError:
            # Stored value of a different type than the operand
            return False

        raise InvalidFilterError(f"Unhandled operator {op.value}", field_name=self.field, operator=op.value)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        value = list(self.value) if self.op.takes_list else self.value
        return {"field": self.field, "op": self.op.value, "value": value}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> FieldConstraint:
        """Create from dictionary representation.

        Raises:
            InvalidFilterError: If the constraint is missing keys or has a
                malformed operand
        """
        missing = [k for k in ("field", "op", "value") if k not in data]
        if missing:
            raise InvalidFilterError(f"Constraint missing keys: {missing}", field_name=data.get("field"))
        return constraint(data["field"], data["op"], data["value"])


def constraint(field_name: str, op: str | Operator, value: Any) -> FieldConstraint:
    """Build a FieldConstraint, normalizing the operand shape.

    Raises:
        InvalidFilterError: If the operand shape does not fit the operator
    """
    if not isinstance(field_name, str) or not field_name:
        raise InvalidFilterError("Constraint field must be a non-empty string", field_name=field_name)

    operator = op if isinstance(op, Operator) else Operator.from_str(op)

    if operator.takes_list:
        if isinstance(value, (str, bytes)) or not isinstance(value, (list, tuple, set, frozenset)):
            raise InvalidFilterError(
                f"Operator '{operator.value}' requires a list value",
                field_name=field_name,
                operator=operator.value,
            )
        values = tuple(sorted(value, key=repr)) if isinstance(value, (set, frozenset)) else tuple(value)
        if operator is Operator.BETWEEN:
            if len(values) != 2:
                raise InvalidFilterError(
                    "Operator 'between' requires exactly two values",
                    field_name=field_name,
                    operator=operator.value,
                )
        elif not values:
            raise InvalidFilterError(
                f"Operator '{operator.value}' requires at least one value",
                field_name=field_name,
                operator=operator.value,
            )
        return FieldConstraint(field=field_name, op=operator, value=values)

    if isinstance(value, (list, tuple, set, frozenset, dict)):
        raise InvalidFilterError(
            f"Operator '{operator.value}' requires a scalar value",
            field_name=field_name,
            operator=operator.value,
        )
    return FieldConstraint(field=field_name, op=operator, value=value)


@dataclass(frozen=True)
class FilterDescriptor:
    """Immutable conjunction of field constraints.

    An empty descriptor matches every record in the collection.

    Attributes:
        constraints: Ordered constraints, all of which must hold
    """

    constraints: tuple[FieldConstraint, ...] = ()

    @classmethod
    def of(cls, *specs: tuple[str, str, Any]) -> FilterDescriptor:
        """Build a descriptor from (field, op, value) triples."""
        return cls(constraints=tuple(constraint(f, op, v) for f, op, v in specs))

    def matches(self, fields: Mapping[str, Any]) -> bool:
        """Whether a record with these fields is in scope."""
        return all(c.matches(fields) for c in self.constraints)

    @property
    def field_names(self) -> list[str]:
        return [c.field for c in self.constraints]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {"constraints": [c.to_dict() for c in self.constraints]}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> FilterDescriptor:
        """Create from dictionary representation.

        Raises:
            InvalidFilterError: If the payload is not a valid descriptor
        """
        if data is None:
            return cls()
        if not isinstance(data, Mapping):
            raise InvalidFilterError("Filter must be an object")
        raw = data.get("constraints", [])
        if not isinstance(raw, list):
            raise InvalidFilterError("Filter constraints must be a list")
        for item in raw:
            if not isinstance(item, Mapping):
                raise InvalidFilterError("Each constraint must be an object")
        return cls(constraints=tuple(FieldConstraint.from_dict(item) for item in raw))

    def fingerprint(self) -> str:
        """Stable hash of the canonical JSON form."""
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        return "sha256:" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def __str__(self) -> str:
        if not self.constraints:
            return "<all records>"
        return " AND ".join(f"{c.field} {c.op.value} {c.value!r}" for c in self.constraints)
