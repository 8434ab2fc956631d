"""
Record collection that selections range over.

The selection server only needs filter evaluation in stable order against
live or pinned data; SqliteRecordStore is the bundled implementation.
"""

from .base import Record, RecordStore
from .sqlite_store import SqliteRecordStore, compile_filter

__all__ = [
    "Record",
    "RecordStore",
    "SqliteRecordStore",
    "compile_filter",
]
