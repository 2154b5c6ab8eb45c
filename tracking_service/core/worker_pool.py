"""
Visitor-partitioned worker pool for batch ingestion.

A batch may carry a click and the purchase it should be attributed to, so
items for one visitor must run in the order they were submitted. Each key is
hashed onto one partition; a partition is a bounded queue drained by a single
task, which gives per-visitor ordering while unrelated visitors run in
parallel.

Usage:
    pool = AsyncWorkerPool(num_workers=4, queue_size=1000)
    await pool.start()
    future = await pool.submit(visitor_id, pipeline.track, payload)
    outcome = await future
    await pool.stop()
"""

import asyncio
import hashlib
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, NamedTuple, Optional

logger = logging.getLogger(__name__)

_STOP = object()


class WorkerPoolFullError(Exception):
    """A partition queue stayed full for the whole submit timeout"""

    def __init__(self, pool: str, worker_idx: int):
        self.pool = pool
        self.worker_idx = worker_idx
        super().__init__(f"Batch partition {worker_idx} of '{pool}' is saturated")


class _Job(NamedTuple):
    func: Callable
    args: tuple
    kwargs: dict
    future: asyncio.Future


@dataclass
class WorkerPoolStats:
    total_submitted: int = 0
    total_processed: int = 0
    total_errors: int = 0
    total_rejected: int = 0
    started_at: Optional[datetime] = None
    worker_processed: Dict[int, int] = field(default_factory=dict)
    durations_ms: Deque[float] = field(default_factory=lambda: deque(maxlen=1000))

    def to_dict(self) -> Dict[str, Any]:
        durations = list(self.durations_ms)
        uptime = 0.0
        if self.started_at is not None:
            uptime = (datetime.now(timezone.utc) - self.started_at).total_seconds()
        return {
            "total_submitted": self.total_submitted,
            "total_processed": self.total_processed,
            "total_errors": self.total_errors,
            "total_rejected": self.total_rejected,
            "avg_processing_time_ms": round(sum(durations) / len(durations), 3) if durations else 0.0,
            "max_processing_time_ms": round(max(durations), 3) if durations else 0.0,
            "uptime_seconds": uptime,
            "worker_processed": dict(self.worker_processed),
        }


class AsyncWorkerPool:
    """Fixed set of partitions, each a bounded queue with one consumer task."""

    def __init__(self, num_workers: int = 4, queue_size: int = 1000, name: str = "tracking_batch"):
        self.num_workers = num_workers
        self.queue_size = queue_size
        self.name = name
        self.running = False
        self.stats = WorkerPoolStats()
        self._partitions: List[asyncio.Queue] = []
        self._consumers: List[asyncio.Task] = []

    def _get_worker_index(self, key: str) -> int:
        digest = hashlib.md5(key.encode("utf-8")).digest()
        return int.from_bytes(digest[:8], "big") % self.num_workers

    async def start(self):
        if self.running:
            return
        self._partitions = [asyncio.Queue(maxsize=self.queue_size) for _ in range(self.num_workers)]
        self._consumers = [
            asyncio.create_task(self._consume(idx), name=f"{self.name}-{idx}")
            for idx in range(self.num_workers)
        ]
        self.stats.worker_processed = {idx: 0 for idx in range(self.num_workers)}
        self.stats.started_at = datetime.now(timezone.utc)
        self.running = True
        logger.info(f"Batch pool '{self.name}' running {self.num_workers} partitions")

    async def stop(self, timeout: float = 30.0):
        """Let queued jobs finish, cancelling whatever is left after ``timeout``."""
        if not self.running:
            return
        self.running = False

        for partition in self._partitions:
            await partition.put(_STOP)

        done, pending = await asyncio.wait(self._consumers, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(f"Batch pool '{self.name}' cancelled {len(pending)} partitions on shutdown")

        logger.info(
            f"Batch pool '{self.name}' stopped after {self.stats.total_processed} jobs "
            f"({self.stats.total_errors} failed)"
        )

    async def submit(self, key: str, func: Callable, *args, timeout: float = 1.0, **kwargs) -> asyncio.Future:
        """
        Queue ``func(*args, **kwargs)`` on the partition owning ``key``.

        The returned future carries the call's result or its exception.

        Raises:
            RuntimeError: the pool has not been started
            WorkerPoolFullError: the partition stayed full for ``timeout`` seconds
        """
        if not self.running:
            raise RuntimeError(f"Batch pool '{self.name}' is not running")

        idx = self._get_worker_index(key)
        job = _Job(func, args, kwargs, asyncio.get_running_loop().create_future())
        try:
            await asyncio.wait_for(self._partitions[idx].put(job), timeout=timeout)
        except asyncio.TimeoutError:
            self.stats.total_rejected += 1
            logger.warning(f"Batch partition {idx} saturated, refusing visitor {key[:12]}")
            raise WorkerPoolFullError(self.name, idx) from None

        self.stats.total_submitted += 1
        return job.future

    async def _consume(self, idx: int):
        partition = self._partitions[idx]
        while True:
            job = await partition.get()
            try:
                if job is _STOP:
                    return
                await self._run(idx, job)
            finally:
                partition.task_done()

    async def _run(self, idx: int, job: _Job):
        started = time.perf_counter()
        try:
            result = job.func(*job.args, **job.kwargs)
            if asyncio.iscoroutine(result):
                result = await result
        except asyncio.CancelledError:
            job.future.cancel()
            raise
        except Exception as e:
            self.stats.total_errors += 1
            if not job.future.done():
                job.future.set_exception(e)
        else:
            self.stats.total_processed += 1
            self.stats.worker_processed[idx] += 1
            if not job.future.done():
                job.future.set_result(result)
        finally:
            self.stats.durations_ms.append((time.perf_counter() - started) * 1000)

    def get_queue_depths(self) -> List[int]:
        return [partition.qsize() for partition in self._partitions]

    def get_stats(self) -> Dict[str, Any]:
        depths = self.get_queue_depths()
        return {**self.stats.to_dict(), "queue_depths": depths, "total_queue_depth": sum(depths)}
