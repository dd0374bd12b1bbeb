#!/usr/bin/env python3
import argparse
import asyncio
import json
import logging
import signal
import sys
from dataclasses import replace
from datetime import timedelta
from typing import Any, Dict, List, Optional

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()

from waiver_wire.models.config import ConfigError, SourceConfig, SystemConfig, load_config
from waiver_wire.pipeline.content_stages import DraftPublisher, DraftWriter, PlayerAnalyst, PlayerResearcher
from waiver_wire.pipeline.orchestrator import PipelineOrchestrator
from waiver_wire.pipeline.player_aggregator import PlayerAggregator
from waiver_wire.pipeline.ranking_engine import RankingEngine
from waiver_wire.pipeline.scheduler import WeeklyScheduler
from waiver_wire.services.auth import ApiKeyAuth, AuthProvider, BearerTokenAuth, PublicAuth
from waiver_wire.services.cache_service import TTLCache
from waiver_wire.services.espn import ESPNClient
from waiver_wire.services.fantasy_client import BaseFantasyClient
from waiver_wire.services.history_store import SqliteHistoryStore, summarize_runs
from waiver_wire.services.sleeper import SleeperClient
from waiver_wire.services.transport import AiohttpTransport, Transport
from waiver_wire.services.yahoo import YahooClient
from waiver_wire.utils.error_monitoring import CircuitBreaker, ErrorHandler
from waiver_wire.utils.logging_config import setup_logging


CLIENT_TYPES = {
    'espn': ESPNClient,
    'yahoo': YahooClient,
    'sleeper': SleeperClient,
}


def build_client(source: SourceConfig, transport: Transport, config: SystemConfig) -> BaseFantasyClient:
    client_type = CLIENT_TYPES.get(source.name.lower())
    if client_type is None:
        raise ConfigError(f"No client available for source {source.name}")

    cache = TTLCache(
        default_ttl=config.cache.response_ttl_seconds,
        max_size=config.cache.response_max_size,
        name=f"{source.name} responses",
    )
    if client_type is YahooClient:
        return YahooClient(source, transport, cache=cache, response_ttl=config.cache.response_ttl_seconds)

    auth: AuthProvider = PublicAuth()
    if source.auth.api_key:
        if client_type is SleeperClient:
            auth = BearerTokenAuth(source.auth.api_key)
        else:
            auth = ApiKeyAuth(source.auth.api_key, header="X-API-Key")
    return client_type(source, transport, auth=auth, cache=cache, response_ttl=config.cache.response_ttl_seconds)


class WaiverWireApp:
    """
    Wires configuration, services and pipeline together.
    """

    def __init__(self, config: SystemConfig):
        self.config = config
        self.logger = logging.getLogger(__name__)

        self.transport = AiohttpTransport()
        self.error_handler = ErrorHandler()
        self.breaker = CircuitBreaker(
            failure_threshold=config.breaker.failure_threshold,
            failure_window=timedelta(seconds=config.breaker.failure_window_seconds),
        )
        self.clients: List[BaseFantasyClient] = [
            build_client(source, self.transport, config) for source in config.enabled_sources()
        ]
        self.aggregator = PlayerAggregator(
            self.clients,
            config.aggregator,
            cache=TTLCache(
                default_ttl=config.cache.ttl_seconds,
                max_size=config.cache.max_size,
                name="merged players",
            ),
            cache_ttl=config.cache.ttl_seconds if config.cache.enabled else 0.0,
            breaker=self.breaker,
            error_handler=self.error_handler,
        )
        self.ranking = RankingEngine(config.ranking)
        self.history = SqliteHistoryStore(config.history_db_path)
        self.orchestrator = PipelineOrchestrator(
            config,
            collector=self.aggregator,
            ranker=self.ranking,
            researcher=PlayerResearcher(self.clients),
            analyst=PlayerAnalyst(),
            writer=DraftWriter(config.publish, display_timezone=config.schedule.timezone),
            publisher=DraftPublisher(config.publish),
            history=self.history,
            breaker=self.breaker,
            error_handler=self.error_handler,
        )
        self.scheduler = WeeklyScheduler(
            self.orchestrator,
            config.schedule,
            history_retention_days=config.history_retention_days,
        )
        self.shutdown_event = asyncio.Event()

    async def initialize(self) -> None:
        await self.history.initialize_db()
        self.logger.info(
            f"Initialized with sources: {', '.join(c.name for c in self.clients) or 'none'}"
        )

    async def close(self) -> None:
        await self.scheduler.stop()
        await self.transport.close()

    def _handle_shutdown(self) -> None:
        self.logger.info("Shutdown signal received")
        self.shutdown_event.set()

    async def run_once(self) -> bool:
        run = await self.orchestrator.run_pipeline(trigger="manual")
        print(f"Run {run.run_id}: {run.outcome.value} in {run.duration_seconds:.1f}s")
        print(f"Stages completed: {', '.join(run.stages_completed) or 'none'}")
        for warning in run.warnings:
            print(f"  ⚠️ {warning}")
        for error in run.errors:
            print(f"  ❌ {error}")
        if run.published_artifact_id:
            print(f"Published: {run.published_artifact_id}")
        return run.success

    async def run_scheduler(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._handle_shutdown)
            except NotImplementedError:
                pass

        self.scheduler.start()
        print(f"Scheduler running; next run at {self.scheduler.next_run_time().isoformat()}")
        await self.shutdown_event.wait()
        if self.orchestrator.is_running:
            await self.orchestrator.request_stop()

    async def status(self) -> Dict[str, Any]:
        runs = await self.history.list(limit=50)
        status = self.orchestrator.get_status()
        return {
            'is_running': status.is_running,
            'current_stage': status.current_stage,
            'progress': status.progress,
            'next_run': self.scheduler.next_run_time().isoformat(),
            'history': summarize_runs(runs),
            'breakers': self.breaker.snapshot(),
        }

    async def health_check(self) -> Dict[str, bool]:
        return await self.aggregator.test_connections()


async def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    parser = argparse.ArgumentParser(description="Waiver Wire Forecast pipeline")
    parser.add_argument('--config', help='Path to a JSON configuration file')
    parser.add_argument('--once', action='store_true', help='Run the pipeline once immediately')
    parser.add_argument('--schedule', action='store_true', help='Run on the weekly schedule (default)')
    parser.add_argument('--status', action='store_true', help='Show pipeline status and run statistics')
    parser.add_argument('--history', type=int, metavar='N', help='Show the last N runs')
    parser.add_argument('--health', action='store_true', help='Test connections to every source')
    parser.add_argument('--dry-run', action='store_true', help='Do not write drafts')
    parser.add_argument('--log-level', help='Override LOG_LEVEL')
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"❌ Configuration error: {e}")
        return 2

    if args.dry_run:
        config = replace(config, publish=replace(config.publish, dry_run=True))

    setup_logging(log_level=args.log_level or config.log_level, log_dir=config.log_dir)

    try:
        app = WaiverWireApp(config)
    except ConfigError as e:
        print(f"❌ Configuration error: {e}")
        return 2

    try:
        await app.initialize()

        if args.health:
            health = await app.health_check()
            print("Source Health Status:")
            for source, ok in health.items():
                print(f"  {source}: {'✅' if ok else '❌'}")
            return 0 if all(health.values()) else 1

        if args.status:
            print(json.dumps(await app.status(), indent=2, default=str))
            return 0

        if args.history is not None:
            runs = await app.history.list(limit=args.history)
            for run in runs:
                print(json.dumps(run.to_dict(), default=str))
            return 0

        if args.once:
            print("Running pipeline once...")
            return 0 if await app.run_once() else 1

        print(
            f"Starting weekly scheduler (day {config.schedule.day_of_week}, "
            f"{config.schedule.hour}:00 {config.schedule.timezone})"
        )
        await app.run_scheduler()
        return 0
    except KeyboardInterrupt:
        print("\n⚠️ Shutting down gracefully...")
        return 130
    except Exception as e:
        print(f"❌ Fatal error: {e}")
        logging.exception("Fatal error in main")
        return 1
    finally:
        await app.close()


def cli() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
