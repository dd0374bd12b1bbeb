from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from waiver_wire.models.config import ScheduleConfig
from waiver_wire.models.execution import PipelineRun, RunOutcome
from waiver_wire.pipeline.scheduler import WeeklyScheduler, next_run_after
from waiver_wire.services.history_store import InMemoryHistoryStore


NEW_YORK = ZoneInfo("America/New_York")

# Tuesday 10:00 in New York
TUESDAY_TEN = ScheduleConfig(day_of_week=2, hour=10, timezone="America/New_York")


class FakeOrchestrator:
    def __init__(self, error=None, running=False):
        self.error = error
        self.is_running = running
        self.history = InMemoryHistoryStore()
        self.triggers = []

    async def run_pipeline(self, trigger="manual"):
        self.triggers.append(trigger)
        if self.error is not None:
            raise self.error
        run = PipelineRun(started_at=datetime.now(), trigger=trigger)
        run.finalize(RunOutcome.COMPLETED)
        await self.history.record(run)
        return run


def test_next_run_later_the_same_week():
    # Sunday 2024-10-06 08:00
    now = datetime(2024, 10, 6, 8, 0, tzinfo=NEW_YORK)

    assert next_run_after(now, TUESDAY_TEN) == datetime(2024, 10, 8, 10, 0, tzinfo=NEW_YORK)


def test_next_run_is_strictly_after_now():
    now = datetime(2024, 10, 8, 10, 0, tzinfo=NEW_YORK)

    assert next_run_after(now, TUESDAY_TEN) == datetime(2024, 10, 15, 10, 0, tzinfo=NEW_YORK)


def test_next_run_same_day_before_the_hour():
    now = datetime(2024, 10, 8, 9, 59, tzinfo=NEW_YORK)

    assert next_run_after(now, TUESDAY_TEN) == datetime(2024, 10, 8, 10, 0, tzinfo=NEW_YORK)


def test_next_run_converts_from_other_timezones():
    # 13:30 UTC on Tuesday is 09:30 in New York (EDT)
    now = datetime(2024, 10, 8, 13, 30, tzinfo=ZoneInfo("UTC"))

    result = next_run_after(now, TUESDAY_TEN)

    assert result == datetime(2024, 10, 8, 10, 0, tzinfo=NEW_YORK)
    assert result.utcoffset() == timedelta(hours=-4)


def test_naive_times_are_read_in_schedule_timezone():
    now = datetime(2024, 10, 9, 12, 0)

    assert next_run_after(now, TUESDAY_TEN) == datetime(2024, 10, 15, 10, 0, tzinfo=NEW_YORK)


def test_sunday_is_day_zero():
    sunday_noon = ScheduleConfig(day_of_week=0, hour=12, timezone="UTC")
    now = datetime(2024, 10, 10, 0, 0, tzinfo=ZoneInfo("UTC"))  # Thursday

    assert next_run_after(now, sunday_noon).date() == datetime(2024, 10, 13).date()


def test_scheduler_next_run_time_uses_clock():
    clock = lambda: datetime(2024, 10, 6, 8, 0, tzinfo=NEW_YORK)
    scheduler = WeeklyScheduler(FakeOrchestrator(), TUESDAY_TEN, clock=clock)

    assert scheduler.next_run_time() == datetime(2024, 10, 8, 10, 0, tzinfo=NEW_YORK)


@pytest.mark.asyncio
async def test_trigger_runs_pipeline_as_scheduled():
    orchestrator = FakeOrchestrator()
    scheduler = WeeklyScheduler(orchestrator, TUESDAY_TEN)

    await scheduler.trigger()

    assert orchestrator.triggers == ["scheduled"]


@pytest.mark.asyncio
async def test_trigger_skips_while_run_active():
    orchestrator = FakeOrchestrator(running=True)
    scheduler = WeeklyScheduler(orchestrator, TUESDAY_TEN)

    await scheduler.trigger()

    assert orchestrator.triggers == []


@pytest.mark.asyncio
async def test_trigger_swallows_pipeline_crash():
    orchestrator = FakeOrchestrator(error=RuntimeError("boom"))
    scheduler = WeeklyScheduler(orchestrator, TUESDAY_TEN)

    await scheduler.trigger()

    assert orchestrator.triggers == ["scheduled"]


@pytest.mark.asyncio
async def test_trigger_cleans_up_old_history():
    orchestrator = FakeOrchestrator()
    old = PipelineRun(started_at=datetime.now() - timedelta(days=45))
    old.finalize(RunOutcome.COMPLETED)
    await orchestrator.history.record(old)
    scheduler = WeeklyScheduler(orchestrator, TUESDAY_TEN, history_retention_days=30)

    await scheduler.trigger()

    remaining = await orchestrator.history.list()
    assert len(remaining) == 1
    assert remaining[0].run_id != old.run_id


@pytest.mark.asyncio
async def test_start_and_stop():
    scheduler = WeeklyScheduler(FakeOrchestrator(), TUESDAY_TEN)

    scheduler.start()
    assert scheduler.is_scheduled()

    await scheduler.stop()
    assert not scheduler.is_scheduled()
