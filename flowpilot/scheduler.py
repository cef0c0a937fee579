"""Time-driven duties: wait resumption, cron schedules and stale-run recovery."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from croniter import croniter

from .dispatch import TriggerEmitter
from .persistence import ScheduledTrigger, WorkflowRepository
from .persistence.models import utcnow
from .pool import ExecutorPool

logger = logging.getLogger(__name__)

SCHEDULED_TRIGGER = "scheduled"


def next_fire_time(cron_expression: str, after: datetime) -> datetime:
    """Return the first slot of ``cron_expression`` strictly after ``after`` (UTC)."""
    if after.tzinfo is None:
        after = after.replace(tzinfo=timezone.utc)
    return croniter(cron_expression, after).get_next(datetime)


class Scheduler:
    """Poll the repository and hand due work to the executor pool.

    Every claim is a conditional update in the repository, so several
    scheduler instances can poll the same store without firing a
    resumption or a cron slot twice.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        pool: ExecutorPool,
        emitter: TriggerEmitter,
        poll_interval_seconds: float = 5.0,
        batch_size: int = 100,
        stale_run_seconds: float = 600.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._pool = pool
        self._emitter = emitter
        self.poll_interval_seconds = poll_interval_seconds
        self.batch_size = batch_size
        self.stale_run_seconds = stale_run_seconds
        self._clock = clock
        self._running = False

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Run :meth:`tick` every poll interval until stopped."""
        self._running = True
        logger.info(f"Scheduler started (poll every {self.poll_interval_seconds}s)")
        loop = asyncio.get_running_loop()
        started = loop.time()
        while self._running:
            await self.tick()
            if lifespan is not None and loop.time() - started >= lifespan:
                break
            await asyncio.sleep(self.poll_interval_seconds)
        self._running = False
        logger.info("Scheduler stopped")

    def stop(self) -> None:
        self._running = False

    async def tick(self) -> dict[str, int]:
        """Perform one pass of every duty and report how much each did."""
        counts = {"resumed": 0, "fired": 0, "requeued": 0}
        now = self._clock()
        try:
            counts["resumed"] = await self.resume_due_runs(now)
        except Exception as exc:
            logger.error(f"Error resuming waiting runs: {exc}")
        try:
            counts["fired"] = await self.fire_due_schedules(now)
        except Exception as exc:
            logger.error(f"Error firing cron schedules: {exc}")
        try:
            counts["requeued"] = await self.requeue_stale_runs(now)
        except Exception as exc:
            logger.error(f"Error requeueing stale runs: {exc}")
        return counts

    async def resume_due_runs(self, now: datetime) -> int:
        resumptions = await self._repository.claim_due_resumptions(now, limit=self.batch_size)
        for resumption in resumptions:
            logger.info(f"Resuming run {resumption.run_id} (due {resumption.resume_at.isoformat()})")
            self._pool.submit(resumption.run_id)
        return len(resumptions)

    async def fire_due_schedules(self, now: datetime) -> int:
        fired = 0
        for schedule in await self._repository.list_due_schedules(now, limit=self.batch_size):
            try:
                if await self._fire(schedule, now):
                    fired += 1
            except Exception as exc:
                logger.error(f"Error firing schedule {schedule.id}: {exc}")
        return fired

    async def _fire(self, schedule: ScheduledTrigger, now: datetime) -> bool:
        slot = schedule.next_run_at
        # Missed slots collapse into one firing; the next slot is after ``now``.
        upcoming = next_fire_time(schedule.cron_expression, max(slot, now))
        # The slot only advances once its event is in the log; a repeated
        # emission carries the same event_id and is deduplicated on ingest.
        await self._emitter.emit(
            SCHEDULED_TRIGGER,
            schedule.tenant_id,
            {
                "definition_id": schedule.definition_id,
                "schedule_id": schedule.id,
                "cron_expression": schedule.cron_expression,
                "execution_count": schedule.execution_count + 1,
                "event_id": f"schedule:{schedule.id}:{slot.isoformat()}",
            },
            timestamp=now,
        )
        if not await self._repository.advance_schedule(schedule.id, slot, upcoming):
            logger.debug(f"Schedule {schedule.id} already advanced by another scheduler")
            return False
        logger.info(
            f"Fired schedule {schedule.id} for workflow {schedule.definition_id}, "
            f"next run at {upcoming.isoformat()}"
        )
        return True

    async def requeue_stale_runs(self, now: datetime) -> int:
        cutoff = now - timedelta(seconds=self.stale_run_seconds)
        run_ids = await self._repository.requeue_stale_runs(cutoff)
        for run_id in run_ids:
            logger.warning(f"Requeueing stale run {run_id}")
            self._pool.submit(run_id)
        return len(run_ids)
