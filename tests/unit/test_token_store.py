"""
Unit tests for selection token stores.

Tests cover:
- Create/resolve round trip (in-memory and SQLite)
- Expired vs unknown tokens
- Early invalidation and purging
- Atomic consume and restore
- Backend outages
"""

import asyncio
import tempfile
from pathlib import Path

import pytest

from bulkops.selection_server.config import TokenBackend, TokenStoreConfig
from bulkops.selection_server.errors import StoreUnavailableError, TokenExpiredError, TokenNotFoundError
from bulkops.selection_server.filters import FilterDescriptor
from bulkops.selection_server.selection import AllSelection, ManualSelection
from bulkops.selection_server.tokens import (
    InMemoryTokenStore,
    SnapshotBasis,
    SqliteTokenStore,
    TokenStore,
    create_token_store,
    generate_token,
)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


UNREPLIED = FilterDescriptor.of(("status", "eq", "unreplied"))


class TestSnapshotBasis:
    """Tests for SnapshotBasis."""

    def test_live(self):
        s = SnapshotBasis.live()
        assert not s.is_pinned
        assert s.to_dict() == {"kind": "live"}
        assert str(s) == "live"

    def test_pinned_roundtrip(self):
        s = SnapshotBasis.pinned(42)
        assert s.is_pinned
        assert SnapshotBasis.from_dict(s.to_dict()) == s
        assert str(s) == "pinned@v42"


class TestGenerateToken:
    def test_tokens_are_unique_and_urlsafe(self):
        tokens = {generate_token() for _ in range(200)}
        assert len(tokens) == 200
        for tok in tokens:
            assert len(tok) >= 43
            assert all(ch.isalnum() or ch in "-_" for ch in tok)


class TokenStoreContract:
    """Behaviour every TokenStore backend must have.

    Subclasses provide a `store` fixture built on the `clock` fixture.
    """

    @pytest.fixture
    def clock(self):
        return FakeClock()

    def test_implements_protocol(self, store):
        assert isinstance(store, TokenStore)

    @pytest.mark.asyncio
    async def test_create_and_resolve(self, store):
        selection = AllSelection(frozenset({"msg-1", "msg-2", "msg-3"}))
        tok = await store.create(UNREPLIED, selection, SnapshotBasis.live())

        resolved = await store.resolve(tok.token)

        assert resolved.token == tok.token
        assert resolved.filter == UNREPLIED
        assert resolved.selection == selection
        assert resolved.snapshot == SnapshotBasis.live()
        assert resolved.expires_at == tok.expires_at
        assert not resolved.single_use

    @pytest.mark.asyncio
    async def test_pinned_snapshot_and_single_use_persist(self, store):
        tok = await store.create(UNREPLIED, ManualSelection(frozenset({"a"})), SnapshotBasis.pinned(7), single_use=True)

        resolved = await store.resolve(tok.token)

        assert resolved.snapshot == SnapshotBasis.pinned(7)
        assert resolved.single_use

    @pytest.mark.asyncio
    async def test_distinct_tokens_for_identical_selections(self, store):
        a = await store.create(UNREPLIED, AllSelection(), SnapshotBasis.live())
        b = await store.create(UNREPLIED, AllSelection(), SnapshotBasis.live())
        assert a.token != b.token

    @pytest.mark.asyncio
    async def test_unknown_token(self, store):
        with pytest.raises(TokenNotFoundError) as exc_info:
            await store.resolve("never-issued")
        assert exc_info.value.code == "TOKEN_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_expired_token_is_distinct_from_unknown(self, store, clock):
        tok = await store.create(UNREPLIED, AllSelection(), SnapshotBasis.live())
        clock.advance(store.ttl_seconds)

        with pytest.raises(TokenExpiredError) as exc_info:
            await store.resolve(tok.token)
        assert exc_info.value.code == "TOKEN_EXPIRED"
        assert exc_info.value.expired_at == tok.expires_at

    @pytest.mark.asyncio
    async def test_resolve_just_before_expiry(self, store, clock):
        tok = await store.create(UNREPLIED, AllSelection(), SnapshotBasis.live())
        clock.advance(store.ttl_seconds - 1)
        assert (await store.resolve(tok.token)).token == tok.token

    @pytest.mark.asyncio
    async def test_invalidate(self, store):
        tok = await store.create(UNREPLIED, AllSelection(), SnapshotBasis.live())
        await store.invalidate(tok.token)
        with pytest.raises(TokenNotFoundError):
            await store.resolve(tok.token)

        # Unknown tokens are ignored
        await store.invalidate("never-issued")

    @pytest.mark.asyncio
    async def test_purge_respects_retention(self, store, clock):
        old = await store.create(UNREPLIED, AllSelection(), SnapshotBasis.live())
        clock.advance(store.ttl_seconds + 100)
        fresh = await store.create(UNREPLIED, AllSelection(), SnapshotBasis.live())

        # Expired 100s ago, retention 3600s: kept and still reports expired
        assert await store.purge_expired(retention_seconds=3600) == 0
        with pytest.raises(TokenExpiredError):
            await store.resolve(old.token)

        assert await store.purge_expired(retention_seconds=50) == 1
        with pytest.raises(TokenNotFoundError):
            await store.resolve(old.token)
        assert (await store.resolve(fresh.token)).token == fresh.token

    @pytest.mark.asyncio
    async def test_consume_succeeds_once(self, store):
        tok = await store.create(UNREPLIED, AllSelection(), SnapshotBasis.live(), single_use=True)

        consumed = await store.consume(tok.token)

        assert consumed.token == tok.token
        assert consumed.single_use
        with pytest.raises(TokenNotFoundError):
            await store.consume(tok.token)
        with pytest.raises(TokenNotFoundError):
            await store.resolve(tok.token)

    @pytest.mark.asyncio
    async def test_concurrent_consumers_get_one_token(self, store):
        tok = await store.create(UNREPLIED, AllSelection(), SnapshotBasis.live(), single_use=True)

        outcomes = await asyncio.gather(*(store.consume(tok.token) for _ in range(5)), return_exceptions=True)

        assert sum(1 for o in outcomes if not isinstance(o, Exception)) == 1
        assert all(isinstance(o, TokenNotFoundError) for o in outcomes if isinstance(o, Exception))

    @pytest.mark.asyncio
    async def test_consume_expired_token_leaves_it_in_place(self, store, clock):
        tok = await store.create(UNREPLIED, AllSelection(), SnapshotBasis.live())
        clock.advance(store.ttl_seconds)

        with pytest.raises(TokenExpiredError):
            await store.consume(tok.token)
        with pytest.raises(TokenExpiredError):
            await store.resolve(tok.token)

    @pytest.mark.asyncio
    async def test_restore_puts_token_back_unchanged(self, store):
        tok = await store.create(UNREPLIED, ManualSelection(frozenset({"a"})), SnapshotBasis.pinned(3), single_use=True)
        consumed = await store.consume(tok.token)

        await store.restore(consumed)

        resolved = await store.resolve(tok.token)
        assert resolved.expires_at == tok.expires_at
        assert resolved.selection == ManualSelection(frozenset({"a"}))
        assert resolved.snapshot == SnapshotBasis.pinned(3)
        assert resolved.single_use


class TestInMemoryTokenStore(TokenStoreContract):
    """Tests for InMemoryTokenStore."""

    @pytest.fixture
    def store(self, clock):
        return InMemoryTokenStore(ttl_seconds=900, clock=clock)

    @pytest.mark.asyncio
    async def test_unavailable(self, store):
        store.set_available(False)
        with pytest.raises(StoreUnavailableError) as exc_info:
            await store.create(UNREPLIED, AllSelection(), SnapshotBasis.live())
        assert exc_info.value.code == "STORE_UNAVAILABLE"
        with pytest.raises(StoreUnavailableError):
            await store.resolve("anything")

        store.set_available(True)
        await store.create(UNREPLIED, AllSelection(), SnapshotBasis.live())
        assert len(store) == 1


class TestSqliteTokenStore(TokenStoreContract):
    """Tests for SqliteTokenStore."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def store(self, data_dir, clock):
        return SqliteTokenStore(str(Path(data_dir) / "tokens.db"), ttl_seconds=900, wal_mode=False, clock=clock)

    @pytest.mark.asyncio
    async def test_tokens_visible_to_second_instance(self, data_dir, store, clock):
        tok = await store.create(UNREPLIED, AllSelection(frozenset({"x"})), SnapshotBasis.live())

        other = SqliteTokenStore(str(Path(data_dir) / "tokens.db"), wal_mode=False, clock=clock)
        resolved = await other.resolve(tok.token)

        assert resolved.selection == AllSelection(frozenset({"x"}))

    @pytest.mark.asyncio
    async def test_unopenable_database(self, data_dir):
        blocker = Path(data_dir) / "file"
        blocker.write_text("not a directory")
        store = SqliteTokenStore(str(blocker / "tokens.db"), wal_mode=False)

        with pytest.raises(StoreUnavailableError) as exc_info:
            await store.resolve("anything")
        assert exc_info.value.backend == "sqlite"


class TestCreateTokenStore:
    """Tests for the token store factory."""

    def test_memory_backend(self):
        store = create_token_store(TokenStoreConfig(backend=TokenBackend.MEMORY, ttl_seconds=60))
        assert isinstance(store, InMemoryTokenStore)
        assert store.ttl_seconds == 60

    def test_sqlite_backend(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            store = create_token_store(TokenStoreConfig(db_path=f"{tmpdir}/tokens.db"))
        assert isinstance(store, SqliteTokenStore)
