"""Tests for core helpers: TTL cache, background tasks, correlation ids."""

import asyncio

import pytest

from inbox_triage.core.background import BackgroundTasks
from inbox_triage.core.cache import TTLCache
from inbox_triage.core.errors import BatchCardStateError, ModelResponseError, TriageError
from inbox_triage.core.logging import add_correlation_id, get_correlation_id, set_correlation_id


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class TestTTLCache:
    """Tests for expiry and invalidation."""

    def test_hit_then_expiry(self) -> None:
        clock = FakeClock()
        cache: TTLCache[bool] = TTLCache(ttl_seconds=60, clock=clock)
        cache.put("ollama", False)

        clock.now += 59
        assert cache.get("ollama") is False

        clock.now += 1
        assert cache.get("ollama") is None
        assert len(cache) == 0

    def test_invalidate(self) -> None:
        cache: TTLCache[int] = TTLCache(ttl_seconds=60, clock=FakeClock())
        cache.put("a", 1)
        cache.put("b", 2)

        cache.invalidate("a")
        assert cache.get("a") is None
        assert cache.get("b") == 2

        cache.invalidate()
        assert len(cache) == 0

    def test_zero_ttl_never_hits(self) -> None:
        cache: TTLCache[int] = TTLCache(ttl_seconds=0, clock=FakeClock())
        cache.put("a", 1)
        assert cache.get("a") is None


class TestBackgroundTasks:
    """Tests for fire-and-forget work."""

    @pytest.mark.asyncio
    async def test_drain_waits_for_work(self) -> None:
        done: list[int] = []
        tasks = BackgroundTasks()

        async def work(n: int) -> None:
            await asyncio.sleep(0)
            done.append(n)

        tasks.spawn(work(1), name="one")
        tasks.spawn(work(2), name="two")
        await tasks.drain()

        assert sorted(done) == [1, 2]
        assert tasks.pending == 0
        assert tasks.failures == 0

    @pytest.mark.asyncio
    async def test_failure_is_counted_not_raised(self) -> None:
        tasks = BackgroundTasks()

        async def broken() -> None:
            raise RuntimeError("disk full")

        tasks.spawn(broken(), name="broken")
        await tasks.drain()

        assert tasks.failures == 1

    @pytest.mark.asyncio
    async def test_drain_timeout(self) -> None:
        tasks = BackgroundTasks()
        release = asyncio.Event()

        tasks.spawn(release.wait(), name="stuck")
        await tasks.drain(timeout=0.01)

        assert tasks.pending == 1
        release.set()
        await tasks.drain()
        assert tasks.pending == 0

    @pytest.mark.asyncio
    async def test_drain_with_nothing_pending(self) -> None:
        await BackgroundTasks().drain()


class TestCorrelationId:
    def test_processor_adds_cycle_id(self) -> None:
        set_correlation_id("cycle-1")
        try:
            event = add_correlation_id(None, "info", {"event": "x"})
            assert event["triage_cycle_id"] == "cycle-1"
            assert get_correlation_id() == "cycle-1"
        finally:
            set_correlation_id(None)

        assert "triage_cycle_id" not in add_correlation_id(None, "info", {"event": "x"})


class TestErrors:
    def test_hierarchy(self) -> None:
        assert issubclass(ModelResponseError, TriageError)
        error = BatchCardStateError("already confirmed", card_id="c1", status="confirmed")
        assert error.card_id == "c1"
        assert error.status == "confirmed"

    def test_model_response_keeps_raw(self) -> None:
        assert ModelResponseError("bad", raw_response="xyz").raw_response == "xyz"
