"""
Bulk operation executor.

The executor pulls batches from a ResolutionCursor and applies a
caller-supplied async action to every record, accumulating per-record
outcomes into a BulkOperationResult.

Invariants:
    - One record's failure never stops the others (skip and report)
    - At most `concurrency` actions run at once
    - Each record ID is attempted at most once per execution
    - Deduplication holds at most one batch of IDs; cursors emit IDs in
      ascending order, so an ID at or below the highest seen is a repeat
    - Cancellation and the soft timeout are cooperative: they are checked
      after each batch is fetched and before each action starts, and they
      end the run as ABORTED without undoing applied actions
    - A cursor that runs dry completes the run, even if a stop was
      requested after the last action
    - A resolution failure mid-stream ends the run as ABORTED with the
      partial counts intact

How to change safely:
    - Completion order across records is unspecified; order-sensitive
      actions must run with concurrency=1
    - Keep succeeded + failed == attempted in every code path
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable

from .errors import ActionError, ResolutionInterruptedError
from .resolver import ResolutionCursor
from .results import BulkOperationResult

logger = logging.getLogger(__name__)

BulkAction = Callable[[str], Awaitable[None]]

ABORT_CANCELLED = "cancelled"
ABORT_TIMEOUT = "timeout"
ABORT_RESOLUTION = "resolution_interrupted"
ABORT_ERROR = "error"


class SeenIds:
    """Per-execution duplicate filter over an ascending ID stream.

    Only the current batch and the highest ID seen so far are kept, so
    memory stays bounded by the batch size however long the run is.
    """

    def __init__(self) -> None:
        self.highest: str | None = None
        self._batch: set[str] = set()

    def fresh(self, batch: list[str]) -> list[str]:
        """Return the IDs of `batch` not seen before, in batch order."""
        self._batch = set()
        out = []
        for record_id in batch:
            if record_id in self._batch:
                continue
            if self.highest is not None and record_id <= self.highest:
                continue
            self._batch.add(record_id)
            out.append(record_id)
        if self._batch:
            self.highest = max(self._batch)
        return out

    def __len__(self) -> int:
        return len(self._batch)


class BulkExecutor:
    """Applies an action across a resolved selection.

    Attributes:
        concurrency: Maximum actions in flight
        max_reported_failures: Cap on listed failures per result

    Example:
        >>> executor = BulkExecutor(concurrency=4)
        >>> result = await executor.execute(resolver.open_token(token), archive_message)
        >>> result.status
        <BulkStatus.COMPLETED: 'completed'>
    """

    def __init__(
        self,
        concurrency: int = 8,
        max_reported_failures: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.concurrency = concurrency
        self.max_reported_failures = max_reported_failures
        self._clock = clock

    async def execute(
        self,
        cursor: ResolutionCursor,
        action: BulkAction,
        *,
        result: BulkOperationResult | None = None,
        cancel_event: asyncio.Event | None = None,
        timeout: float | None = None,
    ) -> BulkOperationResult:
        """Run an action over every record the cursor yields.

        Args:
            cursor: Source of record IDs
            action: Async callable raising ActionError on per-record failure
            result: Result object to fill in (created if not given); pass one
                in to let pollers watch progress
            cancel_event: Set to request cooperative cancellation
            timeout: Soft time limit in seconds; expiry behaves like a cancel

        Returns:
            The finalized result
        """
        result = result or BulkOperationResult(result_id=uuid.uuid4().hex)
        deadline = self._clock() + timeout if timeout is not None else None
        semaphore = asyncio.Semaphore(self.concurrency)
        seen = SeenIds()

        def stop_reason() -> str | None:
            if cancel_event is not None and cancel_event.is_set():
                return ABORT_CANCELLED
            if deadline is not None and self._clock() >= deadline:
                return ABORT_TIMEOUT
            return None

        async def run_one(record_id: str) -> bool:
            async with semaphore:
                if stop_reason():
                    return False
                try:
                    await action(record_id)
                except ActionError as e:
                    result.record_failure(record_id, e.kind, e.message, self.max_reported_failures)
                except Exception as e:
                    logger.warning(
                        f"Unexpected action error for {record_id}: {e}",
                        exc_info=True,
                        extra={"result_id": result.result_id, "record_id": record_id},
                    )
                    result.record_failure(record_id, type(e).__name__, str(e), self.max_reported_failures)
                else:
                    result.record_success()
                return True

        logger.info(
            "Bulk execution started",
            extra={
                "result_id": result.result_id,
                "action_kind": result.action_kind,
                "concurrency": self.concurrency,
                "snapshot": str(cursor.snapshot),
            },
        )

        try:
            while True:
                batch = await cursor.next_batch()
                if not batch:
                    break

                reason = stop_reason()
                if reason:
                    result.abort(reason)
                    break

                fresh = seen.fresh(batch)
                started = await asyncio.gather(*(run_one(record_id) for record_id in fresh))

                if not all(started):
                    # Stop requested mid-batch; the rest of the batch was skipped
                    result.abort(stop_reason() or ABORT_CANCELLED)
                    break

        except ResolutionInterruptedError as e:
            result.abort(ABORT_RESOLUTION)
            logger.error(
                f"Bulk execution interrupted: {e}",
                extra={"result_id": result.result_id, "attempted": result.attempted},
            )
        except asyncio.CancelledError:
            result.abort(ABORT_CANCELLED)
            raise
        except Exception:
            result.abort(ABORT_ERROR)
            raise

        result.complete()

        logger.info(
            "Bulk execution finished",
            extra={
                "result_id": result.result_id,
                "status": result.status.value,
                "attempted": result.attempted,
                "succeeded": result.succeeded,
                "failed": result.failed,
            },
        )
        return result
