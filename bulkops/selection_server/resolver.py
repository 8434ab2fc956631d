"""
Resolver: turns a (filter, selection, snapshot) tuple into record IDs.

Resolution is pull based. Resolver.open() returns a ResolutionCursor and the
consumer asks for one batch at a time with next_batch(), so the executor
controls backpressure and can stop between batches.

Algorithm:
    all mode:     page through the filter's matches in record_id order,
                  dropping excluded IDs
    manual mode:  the included IDs (usually a page's worth) are checked
                  against the filter directly, in sorted chunks

Invariants:
    - IDs are emitted in ascending record_id order, each at most once
    - At most one page of candidates is held in memory
    - An empty batch means the cursor is exhausted
    - A cursor is single pass; only a pinned snapshot makes a fresh cursor
      yield the same IDs again

How to change safely:
    - Never materialize a whole all-mode selection
    - Keep store failures wrapped as ResolutionInterruptedError so the
      executor can keep its partial result
"""

from __future__ import annotations

import logging

from .errors import RecordStoreUnavailableError, ResolutionInterruptedError
from .filters import FilterDescriptor
from .records import RecordStore
from .selection import ManualSelection, SelectionState
from .tokens import SelectionToken, SnapshotBasis

logger = logging.getLogger(__name__)


class ResolutionCursor:
    """Single-pass cursor over a resolved selection.

    Attributes:
        emitted: Number of IDs handed out so far
        exhausted: Whether the cursor has reached the end

    Example:
        >>> cursor = resolver.open(descriptor, AllSelection(excluded=frozenset({"a"})), SnapshotBasis.live())
        >>> while batch := await cursor.next_batch():
        ...     process(batch)
    """

    def __init__(
        self,
        store: RecordStore,
        descriptor: FilterDescriptor,
        selection: SelectionState,
        snapshot: SnapshotBasis,
        batch_size: int,
    ) -> None:
        self.store = store
        self.descriptor = descriptor
        self.selection = selection
        self.snapshot = snapshot
        self.batch_size = batch_size

        self.emitted = 0
        self.exhausted = False
        self._after: str | None = None
        self._manual_ids: list[str] | None = None
        self._manual_pos = 0

    async def next_batch(self) -> list[str]:
        """Fetch the next batch of record IDs.

        Returns:
            Up to batch_size IDs; an empty list once exhausted

        Raises:
            ResolutionInterruptedError: If the record store fails
        """
        if self.exhausted:
            return []

        try:
            if isinstance(self.selection, ManualSelection):
                batch = await self._next_manual()
            else:
                batch = await self._next_all()
        except RecordStoreUnavailableError as e:
            self.exhausted = True
            logger.warning(
                "Resolution interrupted",
                extra={"emitted": self.emitted, "snapshot": str(self.snapshot), "error": str(e)},
            )
            raise ResolutionInterruptedError(f"Record store failed during resolution: {e}", emitted=self.emitted) from e

        if not batch:
            self.exhausted = True
        self.emitted += len(batch)
        return batch

    async def _next_all(self) -> list[str]:
        excluded = self.selection.excluded
        while True:
            page = await self.store.scan(
                self.descriptor,
                self.snapshot,
                after=self._after,
                limit=self.batch_size,
            )
            if not page:
                return []
            self._after = page[-1]
            batch = [record_id for record_id in page if record_id not in excluded]
            if batch:
                return batch

    async def _next_manual(self) -> list[str]:
        if self._manual_ids is None:
            self._manual_ids = sorted(self.selection.included)

        while self._manual_pos < len(self._manual_ids):
            chunk = self._manual_ids[self._manual_pos : self._manual_pos + self.batch_size]
            self._manual_pos += len(chunk)
            batch = await self.store.match_ids(self.descriptor, chunk, self.snapshot)
            if batch:
                return batch
        return []

    def __aiter__(self) -> ResolutionCursor:
        return self

    async def __anext__(self) -> list[str]:
        batch = await self.next_batch()
        if not batch:
            raise StopAsyncIteration
        return batch

    async def collect(self) -> list[str]:
        """Drain the cursor into a list. Only for small selections and tests."""
        ids: list[str] = []
        async for batch in self:
            ids.extend(batch)
        return ids


class Resolver:
    """Opens resolution cursors against a record store.

    Attributes:
        store: Record store to evaluate filters against
        batch_size: IDs per batch
    """

    def __init__(self, store: RecordStore, batch_size: int = 1000) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self.store = store
        self.batch_size = batch_size

    def open(
        self,
        descriptor: FilterDescriptor,
        selection: SelectionState,
        snapshot: SnapshotBasis,
    ) -> ResolutionCursor:
        return ResolutionCursor(self.store, descriptor, selection, snapshot, self.batch_size)

    def open_token(self, token: SelectionToken) -> ResolutionCursor:
        return self.open(token.filter, token.selection, token.snapshot)
