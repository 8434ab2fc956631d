"""
Record collection schema used to validate filter descriptors.

The schema names every filterable field and its kind. A descriptor is only
accepted when each constraint references a known field with an operator and
operand that make sense for that field's kind.

Example:
    >>> schema = CollectionSchema.from_dict({"fields": {"status": "str", "starred": "bool"}})
    >>> schema.validate(FilterDescriptor.of(("starred", "gt", True)))
    Traceback (most recent call last):
        ...
    InvalidFilterError: Operator 'gt' is not supported on bool field 'starred'
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from ..errors import InvalidFilterError
from .descriptor import FieldConstraint, FilterDescriptor, Operator


class FieldKind(Enum):
    """Filterable field kinds."""

    STRING = "str"
    INTEGER = "int"
    FLOAT = "float"
    BOOLEAN = "bool"
    TIMESTAMP = "timestamp"  # Unix milliseconds

    @classmethod
    def from_str(cls, value: str) -> FieldKind:
        """Convert string representation to FieldKind.

        Raises:
            ValueError: If value is not a valid field kind
        """
        for kind in cls:
            if kind.value == value:
                return kind
        valid = [k.value for k in cls]
        raise ValueError(f"Invalid field kind '{value}'. Valid kinds: {valid}")

    def accepts(self, value: Any) -> bool:
        """Whether a Python value is a valid operand for this kind."""
        if self is FieldKind.STRING:
            return isinstance(value, str)
        if self is FieldKind.BOOLEAN:
            return isinstance(value, bool)
        if isinstance(value, bool):
            return False
        if self is FieldKind.FLOAT:
            return isinstance(value, (int, float))
        return isinstance(value, int)


@dataclass(frozen=True)
class CollectionSchema:
    """Field kinds of the record collection.

    Attributes:
        fields: Mapping of field name to kind
    """

    fields: Mapping[str, FieldKind] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CollectionSchema:
        """Create from {"fields": {name: kind}}.

        Raises:
            ValueError: If a kind is unknown
        """
        raw = data.get("fields", {})
        return cls(fields={name: FieldKind.from_str(kind) for name, kind in raw.items()})

    @classmethod
    def from_json(cls, text: str) -> CollectionSchema:
        return cls.from_dict(json.loads(text))

    @classmethod
    def from_file(cls, path: str | Path) -> CollectionSchema:
        return cls.from_json(Path(path).read_text(encoding="utf-8"))

    def to_dict(self) -> dict[str, Any]:
        return {"fields": {name: kind.value for name, kind in self.fields.items()}}

    def validate(self, descriptor: FilterDescriptor) -> None:
        """Check every constraint of a descriptor against the schema.

        Raises:
            InvalidFilterError: On the first offending constraint
        """
        for c in descriptor.constraints:
            self._validate_constraint(c)

    def _validate_constraint(self, c: FieldConstraint) -> None:
        kind = self.fields.get(c.field)
        if kind is None:
            raise InvalidFilterError(
                f"Unknown field '{c.field}'. Known fields: {sorted(self.fields)}",
                field_name=c.field,
                operator=c.op.value,
            )

        if kind is FieldKind.BOOLEAN and c.op.is_range:
            raise InvalidFilterError(
                f"Operator '{c.op.value}' is not supported on bool field '{c.field}'",
                field_name=c.field,
                operator=c.op.value,
            )

        operands = c.value if c.op.takes_list else (c.value,)
        for operand in operands:
            if not kind.accepts(operand):
                raise InvalidFilterError(
                    f"Value {operand!r} is not a valid {kind.value} for field '{c.field}'",
                    field_name=c.field,
                    operator=c.op.value,
                )

        if c.op is Operator.BETWEEN:
            low, high = c.value
            if low > high:
                raise InvalidFilterError(
                    f"Range for '{c.field}' has low {low!r} above high {high!r}",
                    field_name=c.field,
                    operator=c.op.value,
                )
