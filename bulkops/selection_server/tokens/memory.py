"""
In-memory token store for tests and single-process development.

Tokens live in a dict owned by this process, so several server instances
cannot share them. Use the SQLite backend for anything shared.

Invariants:
    - All data is lost on process exit
    - Same expiry semantics as the persistent backends
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

from ..errors import StoreUnavailableError, TokenExpiredError, TokenNotFoundError
from ..filters import FilterDescriptor
from ..selection import SelectionState
from .base import SelectionToken, SnapshotBasis, generate_token

logger = logging.getLogger(__name__)


class InMemoryTokenStore:
    """Dict-backed implementation of TokenStore.

    Attributes:
        ttl_seconds: Lifetime of newly created tokens
    """

    def __init__(
        self,
        ttl_seconds: float = 900.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._tokens: dict[str, SelectionToken] = {}
        self._lock = asyncio.Lock()
        self._available = True

    async def create(
        self,
        filter: FilterDescriptor,
        selection: SelectionState,
        snapshot: SnapshotBasis,
        single_use: bool = False,
    ) -> SelectionToken:
        self._check_available()
        now = self._clock()
        tok = SelectionToken(
            token=generate_token(),
            filter=filter,
            selection=selection,
            snapshot=snapshot,
            created_at=now,
            expires_at=now + self.ttl_seconds,
            single_use=single_use,
        )
        async with self._lock:
            self._tokens[tok.token] = tok

        logger.debug(
            "Selection token created",
            extra={"mode": selection.mode, "snapshot": str(snapshot), "ttl": self.ttl_seconds},
        )
        return tok

    async def resolve(self, token: str) -> SelectionToken:
        self._check_available()
        tok = self._tokens.get(token)
        if tok is None:
            raise TokenNotFoundError(token)
        if tok.is_expired(self._clock()):
            raise TokenExpiredError(token, tok.expires_at)
        return tok

    async def consume(self, token: str) -> SelectionToken:
        self._check_available()
        async with self._lock:
            tok = self._tokens.get(token)
            if tok is None:
                raise TokenNotFoundError(token)
            if tok.is_expired(self._clock()):
                raise TokenExpiredError(token, tok.expires_at)
            del self._tokens[token]
        return tok

    async def restore(self, tok: SelectionToken) -> None:
        self._check_available()
        async with self._lock:
            self._tokens[tok.token] = tok

    async def invalidate(self, token: str) -> None:
        self._check_available()
        async with self._lock:
            self._tokens.pop(token, None)

    async def purge_expired(self, retention_seconds: float = 0.0) -> int:
        self._check_available()
        cutoff = self._clock() - retention_seconds
        async with self._lock:
            stale = [key for key, tok in self._tokens.items() if tok.expires_at <= cutoff]
            for key in stale:
                del self._tokens[key]
        return len(stale)

    async def close(self) -> None:
        self._tokens.clear()

    def _check_available(self) -> None:
        if not self._available:
            raise StoreUnavailableError("In-memory token store marked unavailable", backend="memory")

    # Testing helpers

    def set_available(self, available: bool) -> None:
        """Simulate a backend outage (testing helper)."""
        self._available = available

    def __len__(self) -> int:
        return len(self._tokens)
