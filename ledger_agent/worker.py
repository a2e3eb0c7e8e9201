"""Background execution of scheduled tool calls.

``TaskWorker`` owns an in-process ``asyncio.Queue`` and a fixed number of
worker coroutines. Each submitted job runs a tool to completion, and the
worker then writes the owning Task's terminal status exactly once:
COMPLETED for a success result, FAILED for an error result or an exception.
Status writes are best-effort. A failed write is logged and counted and
never propagates.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from ledger_agent.results import ToolCallResult
from ledger_agent.store import TaskStatus, TaskStore

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[ToolCallResult]]


@dataclass
class WorkerStats:
    submitted: int = 0
    completed: int = 0
    failed: int = 0
    retried: int = 0
    status_update_failures: int = 0


class TaskWorker:
    """Queue plus worker pool for scheduled tool executions.

    Args:
        store: Where terminal Task statuses are written.
        concurrency: Number of worker coroutines.
        retries: Extra attempts for a job that raises. Error results are
            final and not retried.
    """

    def __init__(self, store: TaskStore, *, concurrency: int = 4, retries: int = 0) -> None:
        self.store = store
        self.concurrency = max(1, concurrency)
        self.retries = max(0, retries)
        self.stats = WorkerStats()
        self.running = False
        self._queue: asyncio.Queue[tuple[int, Job]] | None = None
        self._workers: list[asyncio.Task[None]] = []

    async def start(self) -> None:
        """Start the worker coroutines."""
        if self.running:
            logger.warning("Task worker already running")
            return
        self._queue = asyncio.Queue()
        self.running = True
        self._workers = [
            asyncio.create_task(self._run(i), name=f"ledger-task-worker-{i}")
            for i in range(self.concurrency)
        ]
        logger.info("Task worker started (%d workers)", self.concurrency)

    async def submit(self, task_id: int, job: Job) -> None:
        """Queue ``job`` for ``task_id``. Starts the pool on first use."""
        if not self.running:
            await self.start()
        assert self._queue is not None
        self.stats.submitted += 1
        self._queue.put_nowait((task_id, job))
        logger.debug("Queued task %d (%d pending)", task_id, self._queue.qsize())

    async def join(self) -> None:
        """Wait until every queued job has settled."""
        if self._queue is not None:
            await self._queue.join()

    async def stop(self, *, drain: bool = True) -> None:
        """Stop the pool, by default after draining queued jobs."""
        if not self.running:
            return
        if drain:
            await self.join()
        self.running = False
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info(
            "Task worker stopped (completed=%d failed=%d status_update_failures=%d)",
            self.stats.completed, self.stats.failed, self.stats.status_update_failures,
        )

    async def _run(self, index: int) -> None:
        assert self._queue is not None
        while True:
            task_id, job = await self._queue.get()
            try:
                await self._process_task(task_id, job)
            except Exception:
                logger.exception("Worker %d crashed on task %d", index, task_id)
            finally:
                self._queue.task_done()

    async def _process_task(self, task_id: int, job: Job) -> None:
        attempt = 0
        while True:
            try:
                result = await job()
                break
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if attempt < self.retries:
                    attempt += 1
                    self.stats.retried += 1
                    logger.warning("Task %d attempt %d failed: %s; retrying", task_id, attempt, e)
                    continue
                logger.error("Task %d failed: %s", task_id, e, exc_info=True)
                self.stats.failed += 1
                await self._set_status(task_id, TaskStatus.FAILED, {"error": str(e), "error_type": type(e).__name__})
                return

        if result.status == "error":
            self.stats.failed += 1
            logger.info("Task %d finished with error: %s", task_id, result.log_message())
            await self._set_status(task_id, TaskStatus.FAILED, result.to_dict())
        else:
            self.stats.completed += 1
            logger.info("Task %d completed: %s", task_id, result.log_message())
            await self._set_status(task_id, TaskStatus.COMPLETED, result.to_dict())

    async def _set_status(self, task_id: int, status: TaskStatus, result: dict | None) -> None:
        """Write the terminal status. Never raises."""
        try:
            await self.store.update_task_status(task_id, status, result)
        except Exception:
            self.stats.status_update_failures += 1
            logger.error("Could not record %s for task %d", status.value, task_id, exc_info=True)
