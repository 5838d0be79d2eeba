import asyncio

import pytest

from core.correlation import CorrelationTable
from core.errors import (
    ConnectionLostError,
    DuplicateRequestIdError,
    RemoteError,
    RequestTimeoutError,
)
from models.models import Outcome


def _register(table, request_id, timeout=5.0, generation=1):
    future = asyncio.get_running_loop().create_future()
    table.register(request_id, future, timeout, generation=generation)
    return future


def test_settle_success_resolves_and_removes_entry():
    async def scenario():
        table = CorrelationTable()
        future = _register(table, "req-1")
        assert "req-1" in table
        assert table.settle("req-1", Outcome.success(2)) is True
        assert await future == 2
        assert table.pending_count == 0

    asyncio.run(scenario())


def test_settle_failure_carries_error():
    async def scenario():
        table = CorrelationTable()
        future = _register(table, "req-1")
        table.settle("req-1", Outcome.failure(RemoteError("node not found")))
        with pytest.raises(RemoteError, match="node not found"):
            await future

    asyncio.run(scenario())


def test_second_settle_is_a_noop():
    async def scenario():
        table = CorrelationTable()
        future = _register(table, "req-1")
        assert table.settle("req-1", Outcome.success("first")) is True
        assert table.settle("req-1", Outcome.success("second")) is False
        assert table.settle("req-1", Outcome.failure(RemoteError("late"))) is False
        assert await future == "first"

    asyncio.run(scenario())


def test_settle_unknown_id_is_ignored():
    async def scenario():
        table = CorrelationTable()
        assert table.settle("never-registered", Outcome.success(1)) is False

    asyncio.run(scenario())


def test_duplicate_registration_raises():
    async def scenario():
        table = CorrelationTable()
        first = _register(table, "req-1")
        with pytest.raises(DuplicateRequestIdError):
            _register(table, "req-1")
        # Original entry untouched
        table.settle("req-1", Outcome.success("ok"))
        assert await first == "ok"

    asyncio.run(scenario())


def test_id_can_be_reused_after_settlement():
    async def scenario():
        table = CorrelationTable()
        _register(table, "req-1")
        table.settle("req-1", Outcome.success(None))
        future = _register(table, "req-1")
        table.settle("req-1", Outcome.success("again"))
        assert await future == "again"

    asyncio.run(scenario())


def test_timeout_settles_with_timeout_error():
    async def scenario():
        table = CorrelationTable()
        loop = asyncio.get_running_loop()
        started = loop.time()
        future = _register(table, "req-1", timeout=0.05)
        with pytest.raises(RequestTimeoutError) as exc_info:
            await future
        elapsed = loop.time() - started
        assert 0.049 <= elapsed < 0.2
        assert exc_info.value.request_id == "req-1"
        assert "req-1" not in table

    asyncio.run(scenario())


def test_reply_after_timeout_has_no_effect():
    async def scenario():
        table = CorrelationTable()
        future = _register(table, "req-1", timeout=0.01)
        with pytest.raises(RequestTimeoutError):
            await future
        assert table.settle("req-1", Outcome.success("too late")) is False

    asyncio.run(scenario())


def test_settle_cancels_timer():
    async def scenario():
        table = CorrelationTable()
        future = asyncio.get_running_loop().create_future()
        timer = table.register("req-1", future, 0.01)
        table.settle("req-1", Outcome.success(1))
        assert timer.cancelled()
        await asyncio.sleep(0.03)
        assert future.result() == 1

    asyncio.run(scenario())


def test_generation_mismatch_leaves_entry_pending():
    async def scenario():
        table = CorrelationTable()
        future = _register(table, "req-1", generation=2)
        assert table.settle("req-1", Outcome.success("stale"), generation=1) is False
        assert "req-1" in table
        assert table.settle("req-1", Outcome.success("fresh"), generation=2) is True
        assert await future == "fresh"

    asyncio.run(scenario())


def test_fail_all_drains_thousand_entries():
    async def scenario():
        table = CorrelationTable()
        futures = [_register(table, f"req-{i}") for i in range(1000)]
        assert table.pending_count == 1000
        assert table.fail_all(ConnectionLostError("shutting down")) == 1000
        assert table.pending_count == 0
        results = await asyncio.gather(*futures, return_exceptions=True)
        assert all(isinstance(r, ConnectionLostError) for r in results)

    asyncio.run(scenario())


def test_fail_all_by_generation_spares_other_sessions():
    async def scenario():
        table = CorrelationTable()
        old = _register(table, "req-old", generation=1)
        new = _register(table, "req-new", generation=2)
        assert table.fail_all(ConnectionLostError("replaced"), generation=1) == 1
        with pytest.raises(ConnectionLostError):
            await old
        assert "req-new" in table
        table.settle("req-new", Outcome.success(7))
        assert await new == 7

    asyncio.run(scenario())


def test_cancelled_caller_entry_reclaimed_by_timeout():
    async def scenario():
        table = CorrelationTable()
        future = _register(table, "req-1", timeout=0.02)
        future.cancel()
        assert "req-1" in table
        await asyncio.sleep(0.05)
        assert "req-1" not in table

    asyncio.run(scenario())
