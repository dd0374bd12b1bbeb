"""
Weekly trigger for the pipeline.

The schedule is a day of week (0 = Sunday), an hour and an IANA timezone.
Missed or overlapping triggers are skipped, never queued.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from waiver_wire.models.config import ScheduleConfig
from waiver_wire.pipeline.orchestrator import PipelineOrchestrator, RunAlreadyActiveError


def next_run_after(now: datetime, schedule: ScheduleConfig) -> datetime:
    """
    First scheduled instant strictly after `now`, in the schedule's timezone.

    Naive datetimes are taken to already be in the schedule's timezone.
    """
    tz = ZoneInfo(schedule.timezone)
    local_now = now.astimezone(tz) if now.tzinfo else now.replace(tzinfo=tz)

    # Python weekday(): Monday = 0; schedule: Sunday = 0
    current_day = (local_now.weekday() + 1) % 7
    days_ahead = (schedule.day_of_week - current_day) % 7

    candidate_date = local_now.date() + timedelta(days=days_ahead)
    candidate = datetime(
        candidate_date.year, candidate_date.month, candidate_date.day, schedule.hour, tzinfo=tz
    )
    if candidate <= local_now:
        next_date = candidate_date + timedelta(days=7)
        candidate = datetime(next_date.year, next_date.month, next_date.day, schedule.hour, tzinfo=tz)
    return candidate


class WeeklyScheduler:
    """Runs the orchestrator once a week on the configured day and hour."""

    def __init__(
        self,
        orchestrator: PipelineOrchestrator,
        schedule: ScheduleConfig,
        history_retention_days: int = 30,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.orchestrator = orchestrator
        self.schedule = schedule
        self.history_retention_days = history_retention_days
        self.tz = ZoneInfo(schedule.timezone)
        self._clock = clock or (lambda: datetime.now(self.tz))
        self._task: Optional[asyncio.Task] = None
        self._next_run: Optional[datetime] = None
        self.logger = logging.getLogger(__name__)

    def next_run_time(self) -> datetime:
        return next_run_after(self._clock(), self.schedule)

    def is_scheduled(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the timer task, replacing any existing one."""
        if self.is_scheduled():
            self._task.cancel()
        self._task = asyncio.create_task(self._loop())
        self.logger.info(
            f"📅 Scheduled weekly run at {self.next_run_time().strftime('%A %H:%M %Z')}"
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        self._next_run = None
        self.logger.info("Scheduler stopped")

    async def _loop(self) -> None:
        last_fired: Optional[datetime] = None
        while True:
            now = self._clock()
            if last_fired is not None and now <= last_fired:
                now = last_fired + timedelta(seconds=1)
            self._next_run = next_run_after(now, self.schedule)
            delay = (self._next_run - self._clock()).total_seconds()
            self.logger.info(f"Next pipeline run at {self._next_run.isoformat()} (in {delay / 3600:.1f}h)")
            if delay > 0:
                await asyncio.sleep(delay)
            last_fired = self._next_run
            await self.trigger()

    async def trigger(self) -> None:
        """Handle one scheduled firing. Never raises."""
        if self.orchestrator.is_running:
            self.logger.warning("Scheduled trigger skipped: a run is already active")
            return
        try:
            run = await self.orchestrator.run_pipeline(trigger="scheduled")
            self.logger.info(f"Scheduled run finished with outcome {run.outcome.value}")
        except RunAlreadyActiveError:
            self.logger.warning("Scheduled trigger skipped: a run is already active")
            return
        except Exception as e:
            self.logger.error(f"Scheduled run crashed: {e}", exc_info=True)

        try:
            removed = await self.orchestrator.history.cleanup(self.history_retention_days)
            if removed:
                self.logger.info(f"Cleaned up {removed} old execution records")
        except Exception as e:
            self.logger.warning(f"Failed to clean up execution history: {e}")
