"""Bounded-concurrency dispatch of runs to the executor."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .execute import RunExecutor
from .persistence import RunStatus, WorkflowRepository

logger = logging.getLogger(__name__)


class ExecutorPool:
    """Queue of run ids drained by a fixed number of asyncio workers.

    A worker only executes a run after winning the repository's
    ``pending|waiting -> running`` compare-and-set; losing submissions are
    dropped, so duplicate submissions of the same run are harmless.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        executor: RunExecutor,
        max_concurrent_runs: int = 50,
    ) -> None:
        self._repository = repository
        self._executor = executor
        self.max_concurrent_runs = max_concurrent_runs
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._workers: list[asyncio.Task] = []
        self._active = 0

    def submit(self, run_id: str) -> None:
        """Enqueue a run id for execution."""
        self._queue.put_nowait(run_id)
        logger.debug(f"Run {run_id} queued ({self._queue.qsize()} waiting)")

    def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"flowpilot-executor-{i}")
            for i in range(self.max_concurrent_runs)
        ]
        logger.info(f"Executor pool started with {self.max_concurrent_runs} slots")

    async def join(self) -> None:
        """Wait until every submitted run has been processed."""
        await self._queue.join()

    async def stop(self) -> None:
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Executor pool stopped")

    def status(self) -> dict[str, int]:
        return {
            "active": self._active,
            "queued": self._queue.qsize(),
            "max": self.max_concurrent_runs,
        }

    async def run_once(self, run_id: str) -> Optional[RunStatus]:
        """Claim and execute ``run_id``; ``None`` if another worker owns it."""
        run = await self._repository.claim_run(run_id)
        if run is None:
            logger.debug(f"Run {run_id} not claimable, dropping submission")
            return None
        return await self._executor.execute(run)

    async def _worker(self, index: int) -> None:
        while True:
            run_id = await self._queue.get()
            self._active += 1
            try:
                status = await self.run_once(run_id)
                if status is not None:
                    logger.info(f"Run {run_id} finished pass with status {status.value}")
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                # The run stays ``running``; stale-run recovery picks it up.
                logger.exception(f"Worker {index} failed executing run {run_id}: {exc}")
            finally:
                self._active -= 1
                self._queue.task_done()
