"""
SQLite-backed selection token store.

Tokens are rows in a single table keyed by token ID. Several server
processes on one host can share the file; expiry is enforced on read and
expired rows are removed by purge_expired() (run periodically by the
server's TokenPurger).

Invariants:
    - Rows are inserted and deleted, never updated (restore() re-inserts
      a consumed row unchanged)
    - expires_at is indexed so purges stay cheap
    - Any sqlite3 failure surfaces as StoreUnavailableError

Table schema:
    selection_tokens:
        - token TEXT PRIMARY KEY
        - filter_json TEXT
        - selection_json TEXT
        - snapshot_json TEXT
        - single_use INTEGER (0/1)
        - created_at REAL (Unix seconds)
        - expires_at REAL (Unix seconds)
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path

from ..errors import StoreUnavailableError, TokenExpiredError, TokenNotFoundError
from ..filters import FilterDescriptor
from ..selection import SelectionState, selection_from_dict
from .base import SelectionToken, SnapshotBasis, generate_token

logger = logging.getLogger(__name__)


class SqliteTokenStore:
    """SQLite implementation of TokenStore.

    Thread safety:
        A connection is opened per operation. SQLite serializes writers.

    Example:
        >>> store = SqliteTokenStore("/var/lib/bulkops/tokens.db")
        >>> tok = await store.create(FilterDescriptor(), ManualSelection(), SnapshotBasis.live())
    """

    def __init__(
        self,
        db_path: str,
        ttl_seconds: float = 900.0,
        busy_timeout_ms: int = 5000,
        wal_mode: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.db_path = Path(db_path)
        self.ttl_seconds = ttl_seconds
        self.busy_timeout_ms = busy_timeout_ms
        self.wal_mode = wal_mode
        self._clock = clock
        self._schema_ready = False

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection, creating the schema on first use.

        Raises:
            StoreUnavailableError: If the database cannot be opened or used
        """
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,
            )
        except (OSError, sqlite3.Error) as e:
            raise StoreUnavailableError(f"Cannot open token database: {e}", backend="sqlite") from e

        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            if not self._schema_ready:
                self._create_schema(conn)
                self._schema_ready = True
            yield conn
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Token database error: {e}", backend="sqlite") from e
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS selection_tokens (
                token TEXT PRIMARY KEY,
                filter_json TEXT NOT NULL,
                selection_json TEXT NOT NULL,
                snapshot_json TEXT NOT NULL,
                single_use INTEGER NOT NULL DEFAULT 0,
                created_at REAL NOT NULL,
                expires_at REAL NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_tokens_expires ON selection_tokens(expires_at);
        """)

    async def initialize(self) -> None:
        """Create the database file and schema if missing."""
        with self._get_connection():
            logger.info(f"Token store ready: {self.db_path}")

    async def create(
        self,
        filter: FilterDescriptor,
        selection: SelectionState,
        snapshot: SnapshotBasis,
        single_use: bool = False,
    ) -> SelectionToken:
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

        with self._get_connection() as conn:
            self._insert(conn, tok)

        logger.debug(
            "Selection token created",
            extra={"mode": selection.mode, "snapshot": str(snapshot), "ttl": self.ttl_seconds},
        )
        return tok

    async def resolve(self, token: str) -> SelectionToken:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM selection_tokens WHERE token = ?",
                (token,),
            ).fetchone()

        return self._check_row(token, row)

    async def consume(self, token: str) -> SelectionToken:
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    "SELECT * FROM selection_tokens WHERE token = ?",
                    (token,),
                ).fetchone()
                tok = self._check_row(token, row)
                conn.execute("DELETE FROM selection_tokens WHERE token = ?", (token,))
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
        return tok

    async def restore(self, tok: SelectionToken) -> None:
        with self._get_connection() as conn:
            self._insert(conn, tok, replace=True)

    async def invalidate(self, token: str) -> None:
        with self._get_connection() as conn:
            conn.execute("DELETE FROM selection_tokens WHERE token = ?", (token,))

    async def purge_expired(self, retention_seconds: float = 0.0) -> int:
        cutoff = self._clock() - retention_seconds
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM selection_tokens WHERE expires_at <= ?", (cutoff,))
            removed = cursor.rowcount
        if removed:
            logger.info("Purged expired selection tokens", extra={"removed": removed})
        return removed

    async def close(self) -> None:
        """Nothing to release; connections are per operation."""
        return None

    def _insert(self, conn: sqlite3.Connection, tok: SelectionToken, replace: bool = False) -> None:
        verb = "INSERT OR REPLACE" if replace else "INSERT"
        conn.execute(
            f"""
            {verb} INTO selection_tokens (token, filter_json, selection_json, snapshot_json,
                                          single_use, created_at, expires_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                tok.token,
                json.dumps(tok.filter.to_dict()),
                json.dumps(tok.selection.to_dict()),
                json.dumps(tok.snapshot.to_dict()),
                int(tok.single_use),
                tok.created_at,
                tok.expires_at,
            ),
        )

    def _check_row(self, token: str, row: sqlite3.Row | None) -> SelectionToken:
        if row is None:
            raise TokenNotFoundError(token)
        if self._clock() >= row["expires_at"]:
            raise TokenExpiredError(token, row["expires_at"])

        return SelectionToken(
            token=row["token"],
            filter=FilterDescriptor.from_dict(json.loads(row["filter_json"])),
            selection=selection_from_dict(json.loads(row["selection_json"])),
            snapshot=SnapshotBasis.from_dict(json.loads(row["snapshot_json"])),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            single_use=bool(row["single_use"]),
        )
