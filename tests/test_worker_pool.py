"""
Unit tests for the keyed worker pool
"""
import asyncio

import pytest

from tracking_service.core.worker_pool import AsyncWorkerPool, WorkerPoolFullError


@pytest.mark.asyncio
class TestAsyncWorkerPool:
    """Routing, ordering and error delivery"""

    async def test_same_key_same_worker(self):
        pool = AsyncWorkerPool(num_workers=8)
        assert pool._get_worker_index("vis_1") == pool._get_worker_index("vis_1")

    async def test_results_delivered(self):
        pool = AsyncWorkerPool(num_workers=2, queue_size=10)
        await pool.start()

        async def double(x):
            return x * 2

        try:
            futures = [await pool.submit(f"k{i}", double, i) for i in range(5)]
            results = [await f for f in futures]
        finally:
            await pool.stop()

        assert results == [0, 2, 4, 6, 8]
        assert pool.stats.total_processed == 5

    async def test_per_key_order(self):
        pool = AsyncWorkerPool(num_workers=4, queue_size=10)
        await pool.start()
        seen = []

        async def record(value):
            await asyncio.sleep(0.001)
            seen.append(value)

        try:
            futures = [await pool.submit("vis_1", record, i) for i in range(5)]
            await asyncio.gather(*futures)
        finally:
            await pool.stop()

        assert seen == [0, 1, 2, 3, 4]

    async def test_exception_delivered_to_future(self):
        pool = AsyncWorkerPool(num_workers=1, queue_size=10)
        await pool.start()

        async def fail():
            raise ValueError("boom")

        try:
            future = await pool.submit("k", fail)
            with pytest.raises(ValueError, match="boom"):
                await future
        finally:
            await pool.stop()

        assert pool.stats.total_errors == 1

    async def test_sync_callable(self):
        pool = AsyncWorkerPool(num_workers=1, queue_size=10)
        await pool.start()
        try:
            future = await pool.submit("k", lambda: "done")
            assert await future == "done"
        finally:
            await pool.stop()

    async def test_full_queue_refuses(self):
        pool = AsyncWorkerPool(num_workers=1, queue_size=1)
        await pool.start()
        gate = asyncio.Event()

        try:
            blocker = await pool.submit("k", gate.wait)
            await asyncio.sleep(0.01)
            await pool.submit("k", gate.wait)
            with pytest.raises(WorkerPoolFullError):
                await pool.submit("k", gate.wait, timeout=0.05)
            assert pool.stats.total_rejected == 1
        finally:
            gate.set()
            await blocker
            await pool.stop()

    async def test_submit_requires_running_pool(self):
        pool = AsyncWorkerPool()
        with pytest.raises(RuntimeError):
            await pool.submit("k", asyncio.sleep, 0)

    async def test_stats(self):
        pool = AsyncWorkerPool(num_workers=2, queue_size=5)
        await pool.start()
        try:
            stats = pool.get_stats()
        finally:
            await pool.stop()

        assert stats["queue_depths"] == [0, 0]
        assert stats["total_queue_depth"] == 0
        assert stats["worker_processed"] == {0: 0, 1: 0}
