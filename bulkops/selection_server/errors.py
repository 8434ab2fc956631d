"""
Error types for the selection server.

All errors inherit from SelectionError and carry a stable code plus a
details mapping so the HTTP layer can render them without string parsing.

Propagation policy:
    - Filter and token errors are fatal to the request (nothing to salvage)
    - StoreUnavailableError is transient; callers may retry with backoff
    - ResolutionInterruptedError ends an execution early but keeps the
      partial result
    - ActionError is per record and is accumulated, never escalated

How to change safely:
    - Never change an existing code string, clients branch on it
    - New errors must subclass SelectionError
"""

from __future__ import annotations

from typing import Any


class SelectionError(Exception):
    """Base exception for all selection server errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "SELECTION_ERROR"
        self.details = details or {}


class InvalidFilterError(SelectionError):
    """Filter descriptor is malformed or incompatible with the record schema.

    Raised when:
    - A constraint references an unknown field
    - An operator does not apply to the field kind (range on bool)
    - A value has the wrong type or shape
    """

    def __init__(
        self,
        message: str,
        field_name: str | None = None,
        operator: str | None = None,
    ) -> None:
        super().__init__(
            message,
            code="INVALID_FILTER",
            details={"field": field_name, "operator": operator},
        )
        self.field_name = field_name
        self.operator = operator


class TokenNotFoundError(SelectionError):
    """Selection token was never issued (or has been purged)."""

    def __init__(self, token: str) -> None:
        super().__init__(
            "Unknown selection token",
            code="TOKEN_NOT_FOUND",
            details={"token": token},
        )
        self.token = token


class TokenExpiredError(SelectionError):
    """Selection token existed but its TTL has passed.

    Clients should ask the user to reselect.
    """

    def __init__(self, token: str, expired_at: float) -> None:
        super().__init__(
            "Selection expired, please reselect",
            code="TOKEN_EXPIRED",
            details={"token": token, "expired_at": expired_at},
        )
        self.token = token
        self.expired_at = expired_at


class StoreUnavailableError(SelectionError):
    """The token store backend could not be reached."""

    def __init__(self, message: str, backend: str | None = None) -> None:
        super().__init__(
            message,
            code="STORE_UNAVAILABLE",
            details={"backend": backend},
        )
        self.backend = backend


class RecordStoreUnavailableError(SelectionError):
    """The record store failed while evaluating a filter."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="RECORD_STORE_UNAVAILABLE")


class ResolutionInterruptedError(SelectionError):
    """The record stream failed part way through a resolution.

    Attributes:
        emitted: Number of record IDs handed out before the failure
    """

    def __init__(self, message: str, emitted: int) -> None:
        super().__init__(
            message,
            code="RESOLUTION_INTERRUPTED",
            details={"emitted": emitted},
        )
        self.emitted = emitted


class ActionError(SelectionError):
    """A bulk action failed for a single record.

    Attributes:
        kind: Short machine-readable failure kind (e.g. "conflict")
    """

    def __init__(self, kind: str, message: str = "") -> None:
        super().__init__(message or kind, code="ACTION_ERROR", details={"kind": kind})
        self.kind = kind


class UnknownActionError(SelectionError):
    """No bulk action is registered under the requested kind."""

    def __init__(self, action_kind: str, available: list[str]) -> None:
        super().__init__(
            f"Unknown action kind '{action_kind}'",
            code="UNKNOWN_ACTION",
            details={"action_kind": action_kind, "available": available},
        )
        self.action_kind = action_kind


class BulkJobNotFoundError(SelectionError):
    """No bulk execution is known under the given result ID."""

    def __init__(self, result_id: str) -> None:
        super().__init__(
            "Unknown bulk action result",
            code="RESULT_NOT_FOUND",
            details={"result_id": result_id},
        )
        self.result_id = result_id
