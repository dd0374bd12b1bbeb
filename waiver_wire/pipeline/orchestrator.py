"""
Pipeline orchestrator.

Drives collect → research → analyze → write → publish, one run at a time.
Every stage goes through the circuit breaker and a bounded retry loop. A stop
request is honoured between stages; the stage in flight finishes its current
attempt first.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from waiver_wire.models.config import StageConfig, SystemConfig
from waiver_wire.models.content import Draft, PlayerAnalysis, PublishResult, ResearchBundle
from waiver_wire.models.execution import (
    STAGE_ORDER,
    STAGE_PROGRESS,
    ExecutionStatus,
    PipelineRun,
    PipelineStage,
    RunOutcome,
)
from waiver_wire.models.player import MergedPlayerRecord, RankedSummary
from waiver_wire.services.history_store import HistoryStore
from waiver_wire.utils.error_monitoring import BreakerOpenError, CircuitBreaker, ErrorHandler
from waiver_wire.utils.logging_config import PerformanceTracker, log_pipeline_metrics


class PipelineError(Exception):
    """Custom exception for pipeline failures"""
    pass


class RunAlreadyActiveError(PipelineError):
    """A run was requested while another one is in progress"""

    retryable = False


class StageFailedError(PipelineError):
    """A stage exhausted its attempts"""

    def __init__(self, stage: PipelineStage, cause: BaseException, attempts: int):
        super().__init__(f"Stage {stage.value} failed after {attempts} attempt(s): {cause}")
        self.stage = stage
        self.cause = cause
        self.attempts = attempts


class PlayerCollector(Protocol):
    async def collect(self) -> List[MergedPlayerRecord]:
        ...


class PlayerRanker(Protocol):
    last_warnings: List[Exception]

    def select_top_n(self, records: List[MergedPlayerRecord], n: Optional[int] = None) -> List[RankedSummary]:
        ...


class ResearchCollaborator(Protocol):
    async def gather_research(self, summaries: List[RankedSummary]) -> List[ResearchBundle]:
        ...


class AnalysisCollaborator(Protocol):
    async def analyze(self, bundle: ResearchBundle) -> PlayerAnalysis:
        ...


class WriterCollaborator(Protocol):
    async def compose(self, analyses: List[PlayerAnalysis]) -> Draft:
        ...


class PublisherCollaborator(Protocol):
    async def publish(self, draft: Draft) -> PublishResult:
        ...


class PipelineOrchestrator:
    """
    Runs the five pipeline stages and reports progress.

    The orchestrator never raises out of run_pipeline for stage failures;
    the returned PipelineRun carries the outcome, completed stages, errors
    and warnings.
    """

    STOP_POLL_INTERVAL = 1.0

    def __init__(
        self,
        config: SystemConfig,
        collector: PlayerCollector,
        ranker: PlayerRanker,
        researcher: ResearchCollaborator,
        analyst: AnalysisCollaborator,
        writer: WriterCollaborator,
        publisher: PublisherCollaborator,
        history: HistoryStore,
        breaker: Optional[CircuitBreaker] = None,
        error_handler: Optional[ErrorHandler] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config
        self.collector = collector
        self.ranker = ranker
        self.researcher = researcher
        self.analyst = analyst
        self.writer = writer
        self.publisher = publisher
        self.history = history
        self.breaker = breaker or CircuitBreaker(
            failure_threshold=config.breaker.failure_threshold,
            failure_window=timedelta(seconds=config.breaker.failure_window_seconds),
        )
        self.error_handler = error_handler or ErrorHandler()
        self._sleep = sleep

        self._running = False
        self._stop_requested = False
        self._current_run: Optional[PipelineRun] = None
        self._status = ExecutionStatus(is_running=False)
        self.stage_timings: Dict[str, float] = {}

        self.logger = logging.getLogger(__name__)

    @property
    def is_running(self) -> bool:
        return self._running

    def get_status(self) -> ExecutionStatus:
        return self._status

    async def get_history(self, limit: int = 10) -> List[PipelineRun]:
        return await self.history.list(limit)

    async def request_stop(self) -> bool:
        """
        Ask the active run to stop and wait for it.

        Returns True if the run stopped on its own within the polling budget,
        False if nothing was running or the orchestrator had to force itself
        back to idle.
        """
        if not self._running:
            self.logger.info("Stop requested but no run is active")
            return False

        self._stop_requested = True
        self.logger.info("🛑 Stop requested; waiting for the current stage to finish")
        for _ in range(self.config.stop_wait_polls):
            if not self._running:
                return True
            await self._sleep(self.STOP_POLL_INTERVAL)

        if self._running:
            self.logger.warning("Run did not stop in time; forcing orchestrator to idle")
            self._running = False
            self._current_run = None
            self._status = ExecutionStatus(is_running=False)
            return False
        return True

    async def run_pipeline(self, trigger: str = "manual") -> PipelineRun:
        """Execute all stages once. Raises RunAlreadyActiveError if a run is active."""
        if self._running:
            raise RunAlreadyActiveError("A pipeline run is already in progress")

        started_at = datetime.now()
        run = PipelineRun(started_at=started_at, trigger=trigger)
        self._running = True
        self._stop_requested = False
        self._current_run = run
        self.stage_timings = {}
        self._status = ExecutionStatus(
            is_running=True,
            progress=0,
            started_at=started_at,
            estimated_completion=started_at + self._estimated_duration(),
        )

        self.logger.info(f"🚀 Starting pipeline run {run.run_id} ({trigger})")
        outcome = RunOutcome.FAILED
        try:
            carry: Any = None
            for stage in STAGE_ORDER:
                if self._stop_requested:
                    self.logger.info(f"Run {run.run_id} stopped before {stage.value}")
                    outcome = RunOutcome.STOPPED_BY_USER
                    break
                self._update_status(stage)
                with PerformanceTracker(f"stage {stage.value}", self.logger) as tracker:
                    carry = await self._execute_stage(stage, carry, run)
                self.stage_timings[stage.value] = tracker.duration_ms
                run.stages_completed.append(stage.value)
            else:
                outcome = RunOutcome.COMPLETED
        except Exception as e:
            run.errors.append(str(e))
            self.logger.error(f"❌ Pipeline run {run.run_id} failed: {e}")
        finally:
            run.finalize(outcome)
            if self._current_run is run:
                self._running = False
                self._current_run = None
                self._status = ExecutionStatus(is_running=False, progress=100 if run.success else 0)
            await self._record(run)

        self.logger.info(
            f"Pipeline run {run.run_id} finished: {run.outcome.value} "
            f"({len(run.stages_completed)}/{len(STAGE_ORDER)} stages, {run.duration_seconds:.1f}s)"
        )
        return run

    async def _execute_stage(self, stage: PipelineStage, carry: Any, run: PipelineRun) -> Any:
        if stage == PipelineStage.COLLECT:
            return await self._run_stage(stage, lambda: self._collect(run))

        if stage == PipelineStage.RESEARCH:
            summaries: List[RankedSummary] = carry
            bundles = await self._run_stage(stage, lambda: self.researcher.gather_research(summaries))
            log_pipeline_metrics(self.logger, stage.value, len(summaries), len(bundles))
            return bundles

        if stage == PipelineStage.ANALYZE:
            analyses: List[PlayerAnalysis] = []
            for bundle in carry:
                analyses.append(await self._run_stage(stage, lambda b=bundle: self.analyst.analyze(b)))
            return analyses

        if stage == PipelineStage.WRITE:
            analyses = carry
            return await self._run_stage(stage, lambda: self.writer.compose(analyses))

        draft: Draft = carry
        result = await self._run_stage(stage, lambda: self._publish(draft))
        run.published_artifact_id = result.artifact_id
        return result

    async def _collect(self, run: PipelineRun) -> List[RankedSummary]:
        merged = await self.collector.collect()
        summaries = self.ranker.select_top_n(merged, self.config.ranking.top_n)
        for warning in getattr(self.ranker, 'last_warnings', []):
            run.warnings.append(f"Dropped invalid player {warning}")
        log_pipeline_metrics(self.logger, "collect", len(merged), len(summaries))
        return summaries

    async def _publish(self, draft: Draft) -> PublishResult:
        result = await self.publisher.publish(draft)
        if not result.success:
            raise PipelineError(f"Publishing failed: {result.error or 'unknown error'}")
        return result

    async def _run_stage(self, stage: PipelineStage, operation: Callable[[], Awaitable[Any]]) -> Any:
        """One breaker-guarded, retried invocation of a stage collaborator."""
        name = f"stage:{stage.value}"
        if self.breaker.is_open(name):
            self.logger.warning(f"Skipping {stage.value}: circuit breaker open")
            raise BreakerOpenError(name)

        stage_config: StageConfig = self.config.stage(stage.value)
        attempts = max(1, stage_config.retry_attempts)
        attempt = 0
        last_error: Optional[BaseException] = None

        while attempt < attempts:
            attempt += 1
            try:
                result = await self._attempt(stage, stage_config, operation)
            except Exception as e:
                last_error = e
                if attempt < attempts and self.error_handler.is_retryable(e):
                    if stage_config.exponential_backoff:
                        delay = self.error_handler.retry_delay(attempt, stage_config.retry_delay)
                    else:
                        delay = stage_config.retry_delay
                    self.logger.warning(
                        f"{stage.value} attempt {attempt}/{attempts} failed: {e}; retrying in {delay:.1f}s"
                    )
                    await self._sleep(delay)
                    continue
                if attempt < attempts:
                    self.logger.warning(f"{stage.value} error is not retryable, skipping remaining attempts")
                break
            else:
                self.breaker.record_success(name)
                return result

        self.breaker.record_failure(name)
        self.error_handler.handle_error(last_error, name, "run_stage", {'attempts': attempt})
        raise StageFailedError(stage, last_error, attempt) from last_error

    async def _attempt(
        self,
        stage: PipelineStage,
        stage_config: StageConfig,
        operation: Callable[[], Awaitable[Any]],
    ) -> Any:
        """
        Await one attempt of a stage.

        The stage timeout is advisory: once it passes a warning is logged and
        the attempt is still awaited to completion, never cancelled.
        """
        task = asyncio.ensure_future(operation())
        done, _ = await asyncio.wait({task}, timeout=stage_config.timeout_seconds)
        if not done:
            self.logger.warning(
                f"{stage.value} exceeded its {stage_config.timeout_seconds}s timeout; "
                f"waiting for the attempt to finish"
            )
        return await task

    def _update_status(self, stage: PipelineStage) -> None:
        self._status = ExecutionStatus(
            is_running=True,
            current_stage=stage.value,
            progress=STAGE_PROGRESS[stage],
            started_at=self._status.started_at,
            estimated_completion=self._status.estimated_completion,
        )

    def _estimated_duration(self) -> timedelta:
        # Typical runs take a fraction of the stage timeouts
        seconds = sum(self.config.stage(s.value).timeout_seconds for s in STAGE_ORDER) / 4
        return timedelta(seconds=seconds)

    async def _record(self, run: PipelineRun) -> None:
        try:
            await self.history.record(run)
        except Exception as e:
            self.logger.error(f"Failed to record run {run.run_id} in history: {e}")
