"""
Unit tests for server wiring and background loops.
"""

import asyncio
import json
import logging
import tempfile

import json_log_formatter
import pytest

from bulkops.selection_server.config import (
    ObservabilityConfig,
    RecordStoreConfig,
    ServerConfig,
    TokenBackend,
    TokenStoreConfig,
)
from bulkops.selection_server.filters import FilterDescriptor
from bulkops.selection_server.main import Server, TokenPurger, setup_logging
from bulkops.selection_server.selection import AllSelection
from bulkops.selection_server.service import SelectionService
from bulkops.selection_server.tokens import InMemoryTokenStore, SnapshotBasis


class TestTokenPurger:
    """Tests for TokenPurger."""

    @pytest.mark.asyncio
    async def test_purge_once(self):
        now = [1000.0]
        store = InMemoryTokenStore(ttl_seconds=10, clock=lambda: now[0])
        await store.create(FilterDescriptor(), AllSelection(), SnapshotBasis.live())
        now[0] += 100

        purger = TokenPurger(store, interval_seconds=1, retention_seconds=30)

        assert await purger.purge_once() == 1
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_purge_errors_are_logged_not_raised(self):
        store = InMemoryTokenStore()
        store.set_available(False)
        assert await TokenPurger(store).purge_once() == 0

    @pytest.mark.asyncio
    async def test_loop_stops_on_cancel(self):
        purger = TokenPurger(InMemoryTokenStore(), interval_seconds=0.01)
        task = asyncio.create_task(purger.start())
        await asyncio.sleep(0.03)
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        assert not purger._running


class TestServer:
    """Tests for Server wiring."""

    def test_build_service(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            config = ServerConfig(
                tokens=TokenStoreConfig(backend=TokenBackend.MEMORY),
                records=RecordStoreConfig(
                    db_path=f"{tmpdir}/records.db",
                    schema_json=json.dumps({"fields": {"status": "str"}}),
                ),
            )
            server = Server(config)
            service = server.build_service()

        assert isinstance(service, SelectionService)
        assert isinstance(server.token_store, InMemoryTokenStore)
        assert "status" in service.schema.fields
        assert service.resolver.batch_size == config.resolver.batch_size


class TestSetupLogging:
    """Tests for setup_logging()."""

    def test_json_format(self):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            setup_logging(ServerConfig(observability=ObservabilityConfig(log_level="DEBUG", log_format="json")))
            assert isinstance(root.handlers[0].formatter, json_log_formatter.JSONFormatter)
            assert root.level == logging.DEBUG
        finally:
            root.handlers = saved_handlers
            root.setLevel(saved_level)
