"""
Filter descriptors and the collection schema that validates them.

Invariants:
    - Descriptors are immutable and serializable
    - Only schema-valid descriptors are ever bound to a selection token
"""

from .descriptor import FieldConstraint, FilterDescriptor, Operator, constraint
from .schema import CollectionSchema, FieldKind

__all__ = [
    "FieldConstraint",
    "FilterDescriptor",
    "Operator",
    "constraint",
    "CollectionSchema",
    "FieldKind",
]
