"""
Record store protocol consumed by the resolver and the built-in actions.

The record store is the collection a selection ranges over. It must be able
to evaluate a filter descriptor against either live data or a pinned
version, streaming matching IDs in a stable order.

Ordering contract:
    - IDs are returned in ascending record_id order
    - scan() is keyset paginated: pass the last ID of the previous page as
      `after` to get the next page

Snapshot contract:
    - A live snapshot sees the latest value of every live record
    - A pinned snapshot sees field values as of that version, and only
      records that existed (and were not deleted) at that version
    - Records deleted after the pin are never returned, pinned or not
"""

from __future__ import annotations

from abc import abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from ..filters import FilterDescriptor
from ..tokens import SnapshotBasis


@dataclass
class Record:
    """A record as seen through some snapshot.

    Attributes:
        record_id: Stable record identifier (also the sort key)
        fields: Field values
        version: Store version that wrote these values
    """

    record_id: str
    fields: dict[str, Any] = field(default_factory=dict)
    version: int = 0


@runtime_checkable
class RecordStore(Protocol):
    """Protocol for record collections a selection can range over."""

    @abstractmethod
    async def current_version(self) -> int:
        """Latest committed store version (used to pin snapshots)."""
        ...

    @abstractmethod
    async def scan(
        self,
        descriptor: FilterDescriptor,
        snapshot: SnapshotBasis,
        after: str | None = None,
        limit: int = 1000,
    ) -> list[str]:
        """Return the next page of matching IDs after `after`.

        Raises:
            RecordStoreUnavailableError: If the backend fails
        """
        ...

    @abstractmethod
    async def match_ids(
        self,
        descriptor: FilterDescriptor,
        ids: Iterable[str],
        snapshot: SnapshotBasis,
    ) -> list[str]:
        """Return the subset of `ids` that match, in record_id order."""
        ...

    @abstractmethod
    async def count(self, descriptor: FilterDescriptor, snapshot: SnapshotBasis) -> int:
        """Number of records matching the descriptor."""
        ...

    @abstractmethod
    async def get_record(self, record_id: str, snapshot: SnapshotBasis | None = None) -> Record | None:
        """Fetch a single live record, or None if missing or deleted."""
        ...

    @abstractmethod
    async def patch_record(self, record_id: str, patch: dict[str, Any]) -> bool:
        """Merge fields into a live record. Returns False if not found."""
        ...

    @abstractmethod
    async def delete_records(self, record_ids: Iterable[str]) -> int:
        """Delete live records. Returns the number actually deleted."""
        ...
