"""
Selection token store.

Backends:
- SQLite (shared between processes on one host)
- In-memory (tests and local development)

Invariants:
    - Tokens are opaque, random, and TTL-bounded
    - Stored tuples are never mutated in place

How to change safely:
    - New backends must implement the TokenStore protocol
    - Keep TokenNotFoundError and TokenExpiredError distinct
"""

from .base import (
    SelectionToken,
    SnapshotBasis,
    TokenStore,
    create_token_store,
    generate_token,
)
from .memory import InMemoryTokenStore
from .sqlite import SqliteTokenStore

__all__ = [
    # Protocol and types
    "TokenStore",
    "SelectionToken",
    "SnapshotBasis",
    "generate_token",
    # Factory
    "create_token_store",
    # Implementations
    "InMemoryTokenStore",
    "SqliteTokenStore",
]
