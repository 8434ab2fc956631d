"""
Integration tests for the bulk job registry.
"""

import asyncio

import pytest

from bulkops.selection_server.errors import BulkJobNotFoundError, StoreUnavailableError
from bulkops.selection_server.executor import BulkExecutor
from bulkops.selection_server.jobs import BulkJobRegistry
from bulkops.selection_server.results import BulkStatus
from bulkops.selection_server.tokens import SnapshotBasis


class ListCursor:
    """Cursor stand-in yielding one batch."""

    def __init__(self, ids):
        self._batches = [list(ids)]
        self.snapshot = SnapshotBasis.live()

    async def next_batch(self):
        return self._batches.pop(0) if self._batches else []


async def noop(record_id):
    return None


class TestBulkJobRegistry:
    """Tests for BulkJobRegistry."""

    @pytest.fixture
    def registry(self):
        return BulkJobRegistry(BulkExecutor(concurrency=2), max_retained_jobs=3)

    @pytest.mark.asyncio
    async def test_run_is_registered(self, registry):
        result = await registry.run(ListCursor(["a", "b"]), noop, "noop")
        assert result.status is BulkStatus.COMPLETED
        assert registry.get(result.result_id) is result
        assert result.action_kind == "noop"

    @pytest.mark.asyncio
    async def test_submit_and_wait(self, registry):
        finished = []

        async def hook(result):
            finished.append(result.result_id)

        running = registry.submit(ListCursor(["a"]), noop, "noop", on_finished=hook)
        assert running.status is BulkStatus.RUNNING

        result = await registry.wait(running.result_id, timeout=5)

        assert result.status is BulkStatus.COMPLETED
        assert finished == [running.result_id]

    @pytest.mark.asyncio
    async def test_unknown_ids(self, registry):
        with pytest.raises(BulkJobNotFoundError):
            registry.get("missing")
        with pytest.raises(BulkJobNotFoundError):
            registry.cancel("missing")
        with pytest.raises(BulkJobNotFoundError):
            await registry.wait("missing")

    @pytest.mark.asyncio
    async def test_cancel_finished_job_is_noop(self, registry):
        result = await registry.run(ListCursor(["a"]), noop, "noop")
        assert registry.cancel(result.result_id).status is BulkStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_only_finished_jobs_are_evicted(self, registry):
        gate = asyncio.Event()

        async def blocked(record_id):
            await gate.wait()

        running = registry.submit(ListCursor(["x"]), blocked, "slow")
        done = [await registry.run(ListCursor(["a"]), noop, "noop") for _ in range(4)]

        assert len(registry) == 3
        assert registry.get(running.result_id) is running
        with pytest.raises(BulkJobNotFoundError):
            registry.get(done[0].result_id)
        assert registry.get(done[-1].result_id) is done[-1]

        gate.set()
        await registry.wait(running.result_id, timeout=5)

    @pytest.mark.asyncio
    async def test_shutdown_aborts_running_jobs(self, registry):
        started = asyncio.Event()

        async def slow(record_id):
            started.set()
            await asyncio.sleep(0.01)

        running = registry.submit(ListCursor(["a", "b", "c", "d"]), slow, "slow")
        await started.wait()

        await registry.shutdown()

        assert running.status is BulkStatus.ABORTED
        assert running.abort_reason == "cancelled"
        assert running.attempted == 2

    @pytest.mark.asyncio
    async def test_failing_finish_hook_keeps_result(self, registry):
        async def hook(result):
            raise StoreUnavailableError("connection reset", backend="memory")

        result = await registry.run(ListCursor(["a", "b"]), noop, "noop", on_finished=hook)

        assert result.status is BulkStatus.COMPLETED
        assert result.succeeded == 2
        assert registry.get(result.result_id) is result

    @pytest.mark.asyncio
    async def test_failing_finish_hook_on_background_job(self, registry):
        async def hook(result):
            raise StoreUnavailableError("connection reset", backend="memory")

        running = registry.submit(ListCursor(["a"]), noop, "noop", on_finished=hook)
        result = await registry.wait(running.result_id, timeout=5)

        assert result.status is BulkStatus.COMPLETED
