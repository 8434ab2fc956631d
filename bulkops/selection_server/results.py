"""
Bulk operation result model.

A BulkOperationResult is created when an execution starts, filled in as
records are processed and finalized when the execution ends. While a job is
running, pollers see the partially filled object.

Invariants:
    - succeeded + failed == attempted at every point
    - failures holds at most the configured number of items;
      failures_truncated tells the caller more exist
    - Once finalized, status never changes again
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class BulkStatus(Enum):
    """Lifecycle status of a bulk execution."""

    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    ABORTED = "aborted"

    @property
    def is_final(self) -> bool:
        return self is not BulkStatus.RUNNING


@dataclass(frozen=True)
class FailedItem:
    """One record the action failed on."""

    record_id: str
    error_kind: str
    message: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"record_id": self.record_id, "error_kind": self.error_kind, "message": self.message}


@dataclass
class BulkOperationResult:
    """Aggregate outcome of applying an action to a resolved selection.

    Attributes:
        result_id: Handle for polling
        action_kind: Registered action name
        status: Lifecycle status
        attempted: Records the action was started on
        succeeded: Records the action finished without error
        failed: Records the action raised on
        failures: Bounded list of failed records with reasons
        failures_truncated: Whether more failures happened than are listed
        abort_reason: Why an aborted execution stopped (cancelled, timeout,
            resolution_interrupted)
        started_at: Unix seconds
        finished_at: Unix seconds, None while running
    """

    result_id: str
    action_kind: str = ""
    status: BulkStatus = BulkStatus.RUNNING
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    failures: list[FailedItem] = field(default_factory=list)
    failures_truncated: bool = False
    abort_reason: str | None = None
    started_at: float = field(default_factory=time.time)
    finished_at: float | None = None

    def record_success(self) -> None:
        self.attempted += 1
        self.succeeded += 1

    def record_failure(self, record_id: str, error_kind: str, message: str, max_reported: int) -> None:
        self.attempted += 1
        self.failed += 1
        if len(self.failures) < max_reported:
            self.failures.append(FailedItem(record_id=record_id, error_kind=error_kind, message=message))
        else:
            self.failures_truncated = True

    def abort(self, reason: str) -> None:
        """Finalize as aborted, keeping whatever was processed."""
        if self.status.is_final:
            return
        self.abort_reason = reason
        self._finish(BulkStatus.ABORTED)

    def complete(self) -> None:
        """Finalize after the selection was fully processed."""
        self._finish(BulkStatus.COMPLETED_WITH_ERRORS if self.failed else BulkStatus.COMPLETED)

    def _finish(self, status: BulkStatus) -> None:
        if self.status.is_final:
            return
        self.status = status
        self.finished_at = time.time()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON responses."""
        return {
            "result_id": self.result_id,
            "action_kind": self.action_kind,
            "status": self.status.value,
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "failures": [f.to_dict() for f in self.failures],
            "failures_truncated": self.failures_truncated,
            "abort_reason": self.abort_reason,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }
