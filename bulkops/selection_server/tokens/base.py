"""
Base protocol and types for the selection token store.

A selection token is an opaque, time-limited handle for a bound
(filter, selection, snapshot) tuple, so large selections never need to be
enumerated by the client.

Invariants:
    - Token IDs come from a cryptographically random source
    - Tokens are immutable once created; the store only inserts and deletes
    - An expired token stays distinguishable from an unknown one until it
      is purged
    - A live token may resolve to different records over time; only a
      pinned snapshot gives repeatable resolution

How to change safely:
    - Protocol changes require updating every backend
    - Keep the persisted JSON shapes backward compatible
"""

from __future__ import annotations

import secrets
from abc import abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from ..filters import FilterDescriptor
from ..selection import SelectionState

if TYPE_CHECKING:
    from ..config import TokenStoreConfig

TOKEN_BYTES = 32


def generate_token() -> str:
    """Fresh unguessable token ID."""
    return secrets.token_urlsafe(TOKEN_BYTES)


@dataclass(frozen=True)
class SnapshotBasis:
    """Which data version a token resolves against.

    Attributes:
        version: Record store version to pin to, or None for live data
    """

    version: int | None = None

    @classmethod
    def live(cls) -> SnapshotBasis:
        return cls(version=None)

    @classmethod
    def pinned(cls, version: int) -> SnapshotBasis:
        return cls(version=version)

    @property
    def is_pinned(self) -> bool:
        return self.version is not None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        if self.version is None:
            return {"kind": "live"}
        return {"kind": "pinned", "version": self.version}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SnapshotBasis:
        """Create from dictionary."""
        if data.get("kind") == "pinned":
            return cls.pinned(int(data["version"]))
        return cls.live()

    def __str__(self) -> str:
        return f"pinned@v{self.version}" if self.is_pinned else "live"


@dataclass(frozen=True)
class SelectionToken:
    """A stored selection.

    Attributes:
        token: Opaque token ID
        filter: Bound filter descriptor
        selection: Bound selection state
        snapshot: Snapshot basis for resolution
        created_at: Creation time (Unix seconds)
        expires_at: Expiry time (Unix seconds)
        single_use: Whether the token is invalidated after one execution
    """

    token: str
    filter: FilterDescriptor
    selection: SelectionState
    snapshot: SnapshotBasis
    created_at: float
    expires_at: float
    single_use: bool = False

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "token": self.token,
            "filter": self.filter.to_dict(),
            "selection": self.selection.to_dict(),
            "snapshot": self.snapshot.to_dict(),
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "single_use": self.single_use,
        }

    def __str__(self) -> str:
        return f"SelectionToken({self.token[:8]}..., mode={self.selection.mode}, {self.snapshot})"


@runtime_checkable
class TokenStore(Protocol):
    """Protocol for selection token backends.

    Backends must give TTL-bounded storage. Reads are pure; concurrent
    resolves of one token are always safe.

    Example:
        >>> store = InMemoryTokenStore(ttl_seconds=900)
        >>> tok = await store.create(FilterDescriptor(), AllSelection(), SnapshotBasis.live())
        >>> (await store.resolve(tok.token)).selection.mode
        'all'
    """

    @abstractmethod
    async def create(
        self,
        filter: FilterDescriptor,
        selection: SelectionState,
        snapshot: SnapshotBasis,
        single_use: bool = False,
    ) -> SelectionToken:
        """Persist a selection under a fresh token.

        Raises:
            StoreUnavailableError: If the backend cannot be written
        """
        ...

    @abstractmethod
    async def resolve(self, token: str) -> SelectionToken:
        """Look up a token.

        Raises:
            TokenNotFoundError: If the token is unknown
            TokenExpiredError: If the token exists but has expired
            StoreUnavailableError: If the backend cannot be read
        """
        ...

    @abstractmethod
    async def consume(self, token: str) -> SelectionToken:
        """Atomically look up and delete a token.

        Of several concurrent consumers of one token, exactly one succeeds;
        the others see TokenNotFoundError.

        Raises:
            TokenNotFoundError: If the token is unknown or already consumed
            TokenExpiredError: If the token has expired (it is left in place)
            StoreUnavailableError: If the backend fails
        """
        ...

    @abstractmethod
    async def restore(self, tok: SelectionToken) -> None:
        """Put back a consumed token unchanged (same ID and expiry)."""
        ...

    @abstractmethod
    async def invalidate(self, token: str) -> None:
        """Delete a token early. Unknown tokens are ignored."""
        ...

    @abstractmethod
    async def purge_expired(self, retention_seconds: float = 0.0) -> int:
        """Delete tokens expired for longer than retention_seconds.

        Returns:
            Number of tokens removed
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release backend resources."""
        ...


def create_token_store(config: "TokenStoreConfig") -> TokenStore:
    """Factory function to create a token store from configuration.

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import TokenBackend
    from .memory import InMemoryTokenStore
    from .sqlite import SqliteTokenStore

    if config.backend == TokenBackend.MEMORY:
        return InMemoryTokenStore(ttl_seconds=config.ttl_seconds)
    elif config.backend == TokenBackend.SQLITE:
        return SqliteTokenStore(
            db_path=config.db_path,
            ttl_seconds=config.ttl_seconds,
            busy_timeout_ms=config.busy_timeout_ms,
            wal_mode=config.wal_mode,
        )
    else:
        raise ValueError(f"Unsupported token backend: {config.backend}")
