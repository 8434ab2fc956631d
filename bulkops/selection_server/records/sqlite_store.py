"""
Versioned SQLite record store.

Every write bumps a store-wide version and appends the new field values to
record_versions, so a filter can be evaluated against any past version.
Deletion writes a tombstone version, so a snapshot pinned after the deletion
never sees the record even if it is re-put later. Live deletion also wins:
once deleted, a record disappears from snapshots pinned before the deletion.

Filters are compiled to SQL over json_extract() so evaluation happens in the
database and pages stay small.

Invariants:
    - One write call = one transaction = one version bump
    - record_versions is append-only
    - Pages are ordered by record_id and keyset paginated

Table schema:
    records:
        - record_id TEXT PRIMARY KEY
        - fields_json TEXT (latest values)
        - version INTEGER (version of latest values)
        - deleted_version INTEGER NULL (set when deleted)

    record_versions:
        - record_id TEXT
        - version INTEGER
        - fields_json TEXT
        - deleted INTEGER (1 for a tombstone version)
        - PRIMARY KEY (record_id, version)

    store_meta:
        - key TEXT PRIMARY KEY
        - value INTEGER
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from ..errors import RecordStoreUnavailableError
from ..filters import FieldConstraint, FilterDescriptor, Operator
from ..tokens import SnapshotBasis
from .base import Record

logger = logging.getLogger(__name__)

# Keeps IN (...) lists under SQLite's bound-parameter limit
MAX_IDS_PER_QUERY = 500

_COMPARISONS = {
    Operator.EQ: "=",
    Operator.NE: "!=",
    Operator.LT: "<",
    Operator.LTE: "<=",
    Operator.GT: ">",
    Operator.GTE: ">=",
}


def compile_constraint(c: FieldConstraint, column: str) -> tuple[str, list[Any]]:
    """Translate one constraint into a SQL fragment and its parameters.

    A missing JSON field extracts as NULL, and every comparison against NULL
    is false, which matches FieldConstraint.matches().
    """
    target = f"json_extract({column}, ?)"
    params: list[Any] = [json_path(c.field)]

    if c.op in _COMPARISONS:
        return f"{target} {_COMPARISONS[c.op]} ?", params + [c.value]
    if c.op in (Operator.IN, Operator.NOT_IN):
        placeholders = ", ".join("?" for _ in c.value)
        keyword = "IN" if c.op is Operator.IN else "NOT IN"
        return f"{target} {keyword} ({placeholders})", params + list(c.value)
    if c.op is Operator.BETWEEN:
        low, high = c.value
        return f"{target} BETWEEN ? AND ?", params + [low, high]

    raise ValueError(f"Cannot compile operator {c.op.value}")


def compile_filter(descriptor: FilterDescriptor, column: str) -> tuple[str, list[Any]]:
    """Compile a descriptor into an AND-joined SQL condition."""
    if not descriptor.constraints:
        return "1 = 1", []
    fragments = []
    params: list[Any] = []
    for c in descriptor.constraints:
        sql, p = compile_constraint(c, column)
        fragments.append(sql)
        params.extend(p)
    return " AND ".join(fragments), params


def json_path(field_name: str) -> str:
    escaped = field_name.replace('"', '\\"')
    return f'$."{escaped}"'


class SqliteRecordStore:
    """SQLite implementation of RecordStore.

    Thread safety:
        A connection is opened per operation. SQLite handles concurrent
        readers via WAL mode.

    Example:
        >>> store = SqliteRecordStore("/var/lib/bulkops/records.db")
        >>> await store.put_records({"msg-1": {"status": "unreplied"}})
        1
        >>> await store.scan(FilterDescriptor.of(("status", "eq", "unreplied")), SnapshotBasis.live())
        ['msg-1']
    """

    def __init__(
        self,
        db_path: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        self.db_path = Path(db_path)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._schema_ready = False

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection.

        Raises:
            RecordStoreUnavailableError: If SQLite fails
        """
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,  # Autocommit by default, explicit transactions
            )
        except (OSError, sqlite3.Error) as e:
            raise RecordStoreUnavailableError(f"Cannot open record database: {e}") from e

        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            if not self._schema_ready:
                self._create_schema(conn)
                self._schema_ready = True
            yield conn
        except sqlite3.Error as e:
            raise RecordStoreUnavailableError(f"Record database error: {e}") from e
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS records (
                record_id TEXT PRIMARY KEY,
                fields_json TEXT NOT NULL DEFAULT '{}',
                version INTEGER NOT NULL,
                deleted_version INTEGER
            );

            CREATE TABLE IF NOT EXISTS record_versions (
                record_id TEXT NOT NULL,
                version INTEGER NOT NULL,
                fields_json TEXT NOT NULL,
                deleted INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (record_id, version)
            );

            CREATE TABLE IF NOT EXISTS store_meta (
                key TEXT PRIMARY KEY,
                value INTEGER NOT NULL
            );

            INSERT OR IGNORE INTO store_meta (key, value) VALUES ('version', 0);
        """)

    def _bump_version(self, conn: sqlite3.Connection) -> int:
        conn.execute("UPDATE store_meta SET value = value + 1 WHERE key = 'version'")
        return conn.execute("SELECT value FROM store_meta WHERE key = 'version'").fetchone()[0]

    async def initialize(self) -> None:
        """Create the database file and schema if missing."""
        with self._get_connection():
            logger.info(f"Record store ready: {self.db_path}")

    async def current_version(self) -> int:
        with self._get_connection() as conn:
            return conn.execute("SELECT value FROM store_meta WHERE key = 'version'").fetchone()[0]

    async def put_records(self, records: Mapping[str, Mapping[str, Any]]) -> int:
        """Insert or replace records in one transaction.

        Re-putting a deleted record brings it back.

        Returns:
            The new store version
        """
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                version = self._bump_version(conn)
                rows = [(rid, json.dumps(dict(fields)), version) for rid, fields in records.items()]
                conn.executemany(
                    """
                    INSERT INTO records (record_id, fields_json, version, deleted_version)
                    VALUES (?, ?, ?, NULL)
                    ON CONFLICT(record_id) DO UPDATE SET
                        fields_json = excluded.fields_json,
                        version = excluded.version,
                        deleted_version = NULL
                    """,
                    rows,
                )
                conn.executemany(
                    "INSERT INTO record_versions (record_id, version, fields_json) VALUES (?, ?, ?)",
                    [(rid, version, fields_json) for rid, fields_json, _ in rows],
                )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

        logger.debug("Put records", extra={"count": len(records), "version": version})
        return version

    async def patch_record(self, record_id: str, patch: dict[str, Any]) -> bool:
        """Merge fields into a live record.

        Returns:
            True if patched, False if missing or deleted
        """
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    "SELECT fields_json FROM records WHERE record_id = ? AND deleted_version IS NULL",
                    (record_id,),
                ).fetchone()
                if not row:
                    conn.execute("ROLLBACK")
                    return False

                fields = json.loads(row["fields_json"])
                fields.update(patch)
                fields_json = json.dumps(fields)
                version = self._bump_version(conn)

                conn.execute(
                    "UPDATE records SET fields_json = ?, version = ? WHERE record_id = ?",
                    (fields_json, version, record_id),
                )
                conn.execute(
                    "INSERT INTO record_versions (record_id, version, fields_json) VALUES (?, ?, ?)",
                    (record_id, version, fields_json),
                )
                conn.execute("COMMIT")
                return True

            except Exception:
                conn.execute("ROLLBACK")
                raise

    async def delete_records(self, record_ids: Iterable[str]) -> int:
        """Tombstone live records.

        Returns:
            Number of records that were live and are now deleted
        """
        ids = list(record_ids)
        if not ids:
            return 0

        deleted = 0
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                version = self._bump_version(conn)
                for chunk in _chunks(sorted(set(ids)), MAX_IDS_PER_QUERY):
                    placeholders = ", ".join("?" for _ in chunk)
                    live = [
                        row[0]
                        for row in conn.execute(
                            f"SELECT record_id FROM records "
                            f"WHERE deleted_version IS NULL AND record_id IN ({placeholders})",
                            chunk,
                        )
                    ]
                    if not live:
                        continue
                    placeholders = ", ".join("?" for _ in live)
                    conn.execute(
                        f"UPDATE records SET deleted_version = ? WHERE record_id IN ({placeholders})",
                        [version, *live],
                    )
                    # Tombstone versions keep later pins from seeing older values
                    conn.executemany(
                        "INSERT INTO record_versions (record_id, version, fields_json, deleted) VALUES (?, ?, '{}', 1)",
                        [(rid, version) for rid in live],
                    )
                    deleted += len(live)
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

        logger.debug("Deleted records", extra={"count": deleted, "version": version})
        return deleted

    async def get_record(self, record_id: str, snapshot: SnapshotBasis | None = None) -> Record | None:
        snapshot = snapshot or SnapshotBasis.live()
        source, params = self._source(snapshot)
        with self._get_connection() as conn:
            row = conn.execute(
                f"SELECT r.record_id, {source.column} AS fields_json, {source.version} AS version "
                f"FROM {source.from_clause} WHERE {source.where} AND r.record_id = ?",
                [*params, record_id],
            ).fetchone()
        if row is None:
            return None
        return Record(record_id=row["record_id"], fields=json.loads(row["fields_json"]), version=row["version"])

    async def scan(
        self,
        descriptor: FilterDescriptor,
        snapshot: SnapshotBasis,
        after: str | None = None,
        limit: int = 1000,
    ) -> list[str]:
        source, params = self._source(snapshot)
        condition, filter_params = compile_filter(descriptor, source.column)

        sql = f"SELECT r.record_id FROM {source.from_clause} WHERE {source.where} AND {condition}"
        all_params = [*params, *filter_params]
        if after is not None:
            sql += " AND r.record_id > ?"
            all_params.append(after)
        sql += " ORDER BY r.record_id LIMIT ?"
        all_params.append(limit)

        with self._get_connection() as conn:
            return [row[0] for row in conn.execute(sql, all_params)]

    async def match_ids(
        self,
        descriptor: FilterDescriptor,
        ids: Iterable[str],
        snapshot: SnapshotBasis,
    ) -> list[str]:
        wanted = sorted(set(ids))
        if not wanted:
            return []

        source, params = self._source(snapshot)
        condition, filter_params = compile_filter(descriptor, source.column)
        matched: list[str] = []

        with self._get_connection() as conn:
            for chunk in _chunks(wanted, MAX_IDS_PER_QUERY):
                placeholders = ", ".join("?" for _ in chunk)
                rows = conn.execute(
                    f"SELECT r.record_id FROM {source.from_clause} "
                    f"WHERE {source.where} AND {condition} AND r.record_id IN ({placeholders}) "
                    "ORDER BY r.record_id",
                    [*params, *filter_params, *chunk],
                )
                matched.extend(row[0] for row in rows)
        return matched

    async def count(self, descriptor: FilterDescriptor, snapshot: SnapshotBasis) -> int:
        source, params = self._source(snapshot)
        condition, filter_params = compile_filter(descriptor, source.column)
        with self._get_connection() as conn:
            return conn.execute(
                f"SELECT COUNT(*) FROM {source.from_clause} WHERE {source.where} AND {condition}",
                [*params, *filter_params],
            ).fetchone()[0]

    def _source(self, snapshot: SnapshotBasis) -> tuple[_Source, list[Any]]:
        """Pick the row source for a snapshot.

        Live reads the records table directly. Pinned joins each live record
        to its newest version at or below the pin; records created after the
        pin have no such version and drop out of the join.
        """
        if not snapshot.is_pinned:
            return _LIVE, []
        return _PINNED, [snapshot.version]

    # Testing helpers

    async def put_record(self, record_id: str, **fields: Any) -> int:
        """Put a single record (testing helper)."""
        return await self.put_records({record_id: fields})


class _Source:
    """SQL pieces describing where a snapshot's rows come from."""

    def __init__(self, from_clause: str, where: str, column: str, version: str) -> None:
        self.from_clause = from_clause
        self.where = where
        self.column = column
        self.version = version


_LIVE = _Source(
    from_clause="records r",
    where="r.deleted_version IS NULL",
    column="r.fields_json",
    version="r.version",
)

_PINNED = _Source(
    from_clause="records r JOIN record_versions v ON v.record_id = r.record_id",
    where=(
        "r.deleted_version IS NULL AND v.deleted = 0 AND v.version = ("
        "SELECT MAX(version) FROM record_versions WHERE record_id = r.record_id AND version <= ?)"
    ),
    column="v.fields_json",
    version="v.version",
)


def _chunks(items: list[str], size: int) -> Iterator[list[str]]:
    for i in range(0, len(items), size):
        yield items[i : i + size]
