"""Tests for imagerelay.core.result_store — serialised per-job updates."""

from __future__ import annotations

import asyncio

from imagerelay.core.records import JobRecord, JobStatus
from imagerelay.core.result_store import ResultStore


class FakeClock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestUpdate:
    def test_first_update_sees_fresh_processing_record(self):
        store = ResultStore()
        seen: list[JobRecord] = []

        def capture(current: JobRecord) -> JobRecord:
            seen.append(current)
            return current

        asyncio.run(store.update("job-1", capture))

        assert seen[0].id == "job-1"
        assert seen[0].status is JobStatus.PROCESSING
        assert "job-1" in store

    def test_async_update_functions_are_awaited(self):
        store = ResultStore()

        async def complete(current: JobRecord) -> JobRecord:
            await asyncio.sleep(0)
            return current.model_copy(update={"status": JobStatus.COMPLETED})

        record = asyncio.run(store.update("job-1", complete))
        assert record.status is JobStatus.COMPLETED
        assert store.get("job-1").status is JobStatus.COMPLETED

    def test_concurrent_updates_apply_in_issue_order(self):
        """A slow first update must not be overwritten by a fast second one."""
        store = ResultStore()
        order: list[str] = []

        async def slow_a(current: JobRecord) -> JobRecord:
            order.append("A-start")
            await asyncio.sleep(0.05)
            order.append("A-end")
            return current.model_copy(update={"image_urls": [*current.image_urls, "a"]})

        async def fast_b(current: JobRecord) -> JobRecord:
            order.append("B-start")
            return current.model_copy(update={"image_urls": [*current.image_urls, "b"]})

        async def scenario() -> JobRecord:
            await asyncio.gather(store.update("job-1", slow_a), store.update("job-1", fast_b))
            return store.get("job-1")

        record = asyncio.run(scenario())

        assert order == ["A-start", "A-end", "B-start"]
        assert record.image_urls == ["a", "b"]

    def test_updates_for_different_jobs_do_not_block_each_other(self):
        store = ResultStore()
        order: list[str] = []

        async def slow(current: JobRecord) -> JobRecord:
            order.append(f"{current.id}-start")
            await asyncio.sleep(0.05)
            order.append(f"{current.id}-end")
            return current

        async def fast(current: JobRecord) -> JobRecord:
            order.append(f"{current.id}-start")
            return current

        async def scenario() -> None:
            await asyncio.gather(store.update("job-1", slow), store.update("job-2", fast))

        asyncio.run(scenario())
        assert order.index("job-2-start") < order.index("job-1-end")


class TestEviction:
    def test_completed_records_expire_after_retention(self):
        clock = FakeClock()
        store = ResultStore(retention_seconds=3600, clock=clock)

        def complete(current: JobRecord) -> JobRecord:
            return current.model_copy(
                update={"status": JobStatus.COMPLETED, "completed_at": clock.now}
            )

        asyncio.run(store.update("job-1", complete))
        clock.now += 3599
        assert store.get("job-1") is not None

        clock.now += 2
        assert store.get("job-1") is None
        assert len(store) == 0

    def test_queued_update_keeps_expired_record(self):
        """An update waiting on the lock still sees the record it was queued for."""
        clock = FakeClock()
        store = ResultStore(retention_seconds=10, clock=clock)
        seen: list[JobRecord] = []

        def complete(current: JobRecord) -> JobRecord:
            return current.model_copy(
                update={"status": JobStatus.COMPLETED, "completed_at": clock.now}
            )

        async def first(current: JobRecord) -> JobRecord:
            await asyncio.sleep(0)
            clock.now += 100
            return current

        def second(current: JobRecord) -> JobRecord:
            seen.append(current)
            return current

        async def scenario() -> None:
            await store.update("job-1", complete)
            await asyncio.gather(store.update("job-1", first), store.update("job-1", second))

        asyncio.run(scenario())

        assert seen[0].status is JobStatus.COMPLETED
        assert "job-1" not in store

    def test_processing_records_are_kept(self):
        clock = FakeClock()
        store = ResultStore(retention_seconds=10, clock=clock)
        asyncio.run(store.update("job-1", lambda current: current))

        assert store.evict_expired(now=clock.now + 10_000) == 0
        assert "job-1" in store

    def test_evict_returns_count(self):
        clock = FakeClock()
        store = ResultStore(retention_seconds=10, clock=clock)

        def finish(current: JobRecord) -> JobRecord:
            return current.model_copy(
                update={"status": JobStatus.FAILED, "completed_at": clock.now}
            )

        async def scenario() -> None:
            await store.update("a", finish)
            await store.update("b", finish)
            await store.update("c", lambda current: current)

        asyncio.run(scenario())

        assert store.evict_expired(now=clock.now + 11) == 2
        assert "c" in store
        assert len(store) == 1
