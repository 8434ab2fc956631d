"""
Selection service: the operations exposed to the HTTP layer.

Flow:
    1. create_selection()   - validate the filter, store a token
    2. estimate()           - advisory selected-count for the UI
    3. start_bulk_action()  - resolve the token, build the action and run it
                              synchronously or as a background job
    4. get_result()         - poll a background job

Invariants:
    - Token and filter errors surface before any record is touched
    - Estimates are advisory; a result's attempted count is authoritative
    - A single-use token is consumed atomically before its execution
      starts, so at most one run holds it; an aborted run puts it back so
      it can be retried
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from .actions import ActionRegistry, default_registry
from .errors import StoreUnavailableError
from .executor import BulkExecutor
from .filters import CollectionSchema, FilterDescriptor
from .jobs import BulkJobRegistry
from .records import RecordStore
from .resolver import Resolver
from .results import BulkOperationResult, BulkStatus
from .selection import SelectionState, estimated_count
from .tokens import SelectionToken, SnapshotBasis, TokenStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SelectionService:
    """Facade over token store, resolver, executor and job registry.

    Attributes:
        schema: Collection schema filters are validated against
        token_store: Where selections are kept
        record_store: Collection selections range over
        resolver: Opens resolution cursors
        jobs: Runs and tracks executions
        actions: Registered bulk actions
        single_use_tokens: Default single-use policy for new tokens
        sync_threshold: Largest estimate run synchronously by default
        store_retries: Extra attempts on a transient token store failure
        store_retry_delay: Initial delay between attempts (doubles each time)

    Example:
        >>> token = await service.create_selection(f, AllSelection())
        >>> result = await service.start_bulk_action(token.token, "delete", {}, wait=True)
    """

    def __init__(
        self,
        schema: CollectionSchema,
        token_store: TokenStore,
        record_store: RecordStore,
        resolver: Resolver | None = None,
        jobs: BulkJobRegistry | None = None,
        actions: ActionRegistry | None = None,
        single_use_tokens: bool = False,
        sync_threshold: int = 500,
        store_retries: int = 2,
        store_retry_delay: float = 0.1,
    ) -> None:
        self.schema = schema
        self.token_store = token_store
        self.record_store = record_store
        self.resolver = resolver or Resolver(record_store)
        self.jobs = jobs or BulkJobRegistry(BulkExecutor())
        self.actions = actions or default_registry()
        self.single_use_tokens = single_use_tokens
        self.sync_threshold = sync_threshold
        self.store_retries = store_retries
        self.store_retry_delay = store_retry_delay

    async def create_selection(
        self,
        filter: FilterDescriptor,
        selection: SelectionState,
        pin_snapshot: bool = False,
        single_use: bool | None = None,
    ) -> SelectionToken:
        """Validate and store a selection.

        Raises:
            InvalidFilterError: If the filter does not fit the schema
            StoreUnavailableError: If the token store is down
        """
        self.schema.validate(filter)

        if pin_snapshot:
            snapshot = SnapshotBasis.pinned(await self.record_store.current_version())
        else:
            snapshot = SnapshotBasis.live()

        single_use = self.single_use_tokens if single_use is None else single_use
        token = await self._with_retry(
            lambda: self.token_store.create(filter, selection, snapshot, single_use=single_use)
        )
        logger.info(
            "Selection created",
            extra={
                "mode": selection.mode,
                "filter": filter.fingerprint(),
                "snapshot": str(snapshot),
                "single_use": token.single_use,
            },
        )
        return token

    async def estimate(self, token: str) -> int:
        """Advisory number of selected records for a token."""
        tok = await self._with_retry(lambda: self.token_store.resolve(token))
        return await self._estimate(tok)

    async def _estimate(self, tok: SelectionToken) -> int:
        if tok.selection.mode == "manual":
            return estimated_count(tok.selection, 0)
        total = await self.record_store.count(tok.filter, tok.snapshot)
        return estimated_count(tok.selection, total)

    async def discard_selection(self, token: str) -> None:
        await self._with_retry(lambda: self.token_store.invalidate(token))

    async def start_bulk_action(
        self,
        token: str,
        action_kind: str,
        action_params: dict[str, Any] | None = None,
        wait: bool | None = None,
    ) -> BulkOperationResult:
        """Run a bulk action over a stored selection.

        Args:
            token: Selection token
            action_kind: Registered action name
            action_params: Parameters for the action factory
            wait: True to run to completion before returning, False to run
                in the background, None to decide from the estimate

        Returns:
            The final result (sync) or the running result (async)

        Raises:
            TokenNotFoundError, TokenExpiredError: Bad token (including a
                single-use token already claimed by another run)
            UnknownActionError: Unregistered action kind
            StoreUnavailableError: Token store is down
        """
        tok = await self._with_retry(lambda: self.token_store.resolve(token))
        self.schema.validate(tok.filter)
        action = self.actions.build(action_kind, action_params or {}, self.record_store)

        if wait is None:
            wait = await self._estimate(tok) <= self.sync_threshold

        if tok.single_use:
            # Claim before executing; a concurrent start sees TokenNotFoundError
            tok = await self._with_retry(lambda: self.token_store.consume(token))

        async def on_finished(result: BulkOperationResult) -> None:
            if tok.single_use and result.status is BulkStatus.ABORTED:
                await self._with_retry(lambda: self.token_store.restore(tok))
                logger.info(
                    "Single-use selection restored after aborted run",
                    extra={"result_id": result.result_id, "abort_reason": result.abort_reason},
                )

        cursor = self.resolver.open_token(tok)
        if wait:
            return await self.jobs.run(cursor, action, action_kind, on_finished=on_finished)
        return self.jobs.submit(cursor, action, action_kind, on_finished=on_finished)

    def get_result(self, result_id: str) -> BulkOperationResult:
        return self.jobs.get(result_id)

    def cancel(self, result_id: str) -> BulkOperationResult:
        return self.jobs.cancel(result_id)

    async def _with_retry(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run a token store call, retrying transient failures with backoff.

        Raises:
            StoreUnavailableError: If every attempt failed
        """
        delay = self.store_retry_delay
        attempt = 0
        while True:
            try:
                return await operation()
            except StoreUnavailableError as e:
                if attempt >= self.store_retries:
                    raise
                attempt += 1
                logger.warning(
                    f"Token store unavailable, retrying in {delay:.2f}s: {e.message}",
                    extra={"attempt": attempt, "backend": e.backend},
                )
                await asyncio.sleep(delay)
                delay *= 2
