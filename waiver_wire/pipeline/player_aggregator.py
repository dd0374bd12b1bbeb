"""
Multi-source collection of most-added players.

Sources are fetched concurrently and joined with an all-settled barrier, so
one failing provider never cancels the others. Partial failure is data until
the quorum check; after that the surviving records are normalized and folded
into one record per player.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from waiver_wire.models.config import AggregatorConfig
from waiver_wire.models.player import MergedPlayerRecord, RawAdditionRecord
from waiver_wire.services.cache_service import TTLCache
from waiver_wire.services.fantasy_client import BaseFantasyClient
from waiver_wire.utils.error_monitoring import BreakerOpenError, CircuitBreaker, ErrorHandler
from waiver_wire.utils.logging_config import log_source_fetch


T = TypeVar("T")

MERGED_CACHE_KEY = "most_added_players"

POSITION_ALIASES: Dict[str, str] = {
    "DEF": "DST",
    "D/ST": "DST",
    "DEFENSE": "DST",
    "DST": "DST",
    "PK": "K",
}

TEAM_ALIASES: Dict[str, str] = {
    "JAC": "JAX",
    "WSH": "WAS",
    "LA": "LAR",
    "OAK": "LV",
    "SD": "LAC",
    "STL": "LAR",
}


class AggregationError(Exception):
    """Collection failed as a whole"""
    pass


class QuorumNotMetError(AggregationError):
    """Too few sources succeeded and no stale result was available"""

    def __init__(self, successful: int, required: int, failures: Dict[str, str]):
        detail = ", ".join(f"{name}: {reason}" for name, reason in sorted(failures.items()))
        super().__init__(
            f"Only {successful} of {required} required sources succeeded ({detail or 'no sources'})"
        )
        self.successful = successful
        self.required = required
        self.failures = failures


class NoDataError(AggregationError):
    """Enough sources answered but none of them reported any players"""
    pass


@dataclass
class SourceFetchResult:
    """Outcome of one source's fetch within a collection cycle"""
    source: str
    records: List[RawAdditionRecord] = field(default_factory=list)
    attempts: int = 0
    fetch_time: float = 0.0
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass
class SourceMetrics:
    requests: int = 0
    successes: int = 0
    failures: int = 0
    total_response_ms: float = 0.0

    @property
    def average_response_ms(self) -> float:
        return self.total_response_ms / self.requests if self.requests else 0.0


def normalize_name(name: str) -> str:
    return " ".join(name.split()).upper()


def normalize_position(position: str) -> str:
    cleaned = position.strip().upper()
    return POSITION_ALIASES.get(cleaned, cleaned)


def normalize_team(team: str) -> str:
    cleaned = (team or "").strip().upper()
    if not cleaned:
        return "FA"
    return TEAM_ALIASES.get(cleaned, cleaned)


def canonical_key(name: str, team: str, position: str) -> str:
    return f"{name.lower()}_{team.lower()}_{position}"


def normalize_record(record: RawAdditionRecord) -> RawAdditionRecord:
    return replace(
        record,
        display_name=normalize_name(record.display_name),
        position=normalize_position(record.position),
        team=normalize_team(record.team),
    )


def merge_external_ids(
    current: Tuple[Tuple[str, str], ...], record: RawAdditionRecord
) -> Tuple[Tuple[str, str], ...]:
    """Keep one id per source; the smallest id wins so merge order does not matter."""
    ids = dict(current)
    previous = ids.get(record.source_id)
    if previous is None or record.external_player_id < previous:
        ids[record.source_id] = record.external_player_id
    return tuple(sorted(ids.items()))


def merge_records(records: List[RawAdditionRecord]) -> List[MergedPlayerRecord]:
    """
    Fold normalized records into one entry per canonical key.

    Counts add, sources union, and the latest observation wins, so the result
    does not depend on input order. Output is sorted by canonical key.
    """
    merged: Dict[str, MergedPlayerRecord] = {}
    for record in records:
        key = canonical_key(record.display_name, record.team, record.position)
        existing = merged.get(key)
        if existing is None:
            merged[key] = MergedPlayerRecord(
                canonical_key=key,
                display_name=record.display_name,
                position=record.position,
                team=record.team,
                total_added_count=record.added_count,
                contributing_sources=frozenset([record.source_id]),
                most_recent_observed_at=record.observed_at,
                external_ids=((record.source_id, record.external_player_id),),
            )
            continue

        latest = existing.most_recent_observed_at
        if latest is None or record.observed_at > latest:
            latest = record.observed_at
        merged[key] = replace(
            existing,
            total_added_count=existing.total_added_count + record.added_count,
            contributing_sources=existing.contributing_sources | {record.source_id},
            most_recent_observed_at=latest,
            external_ids=merge_external_ids(existing.external_ids, record),
        )

    return [merged[key] for key in sorted(merged)]


class PlayerAggregator:
    """
    Collects, normalizes and merges most-added players from every client.

    The aggregator owns its result cache. A circuit breaker, when given, is
    consulted per source under the name ``source:<name>``.
    """

    def __init__(
        self,
        clients: List[BaseFantasyClient],
        config: Optional[AggregatorConfig] = None,
        cache: Optional[TTLCache] = None,
        cache_ttl: float = 3600.0,
        breaker: Optional[CircuitBreaker] = None,
        error_handler: Optional[ErrorHandler] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.clients = clients
        self.config = config or AggregatorConfig()
        self.cache: TTLCache = cache if cache is not None else TTLCache(default_ttl=cache_ttl, max_size=100, name="aggregator")
        self.cache_ttl = cache_ttl
        self.breaker = breaker
        self.error_handler = error_handler or ErrorHandler()
        self._sleep = sleep

        self.source_metrics: Dict[str, SourceMetrics] = {c.name: SourceMetrics() for c in clients}
        self.cache_hits = 0
        self.cache_misses = 0
        self.stale_fallbacks = 0
        self.last_collection_at: Optional[datetime] = None
        self.last_report: Dict[str, SourceFetchResult] = {}

        self.logger = logging.getLogger(__name__)

    async def collect(self, timeframe: Optional[str] = None) -> List[MergedPlayerRecord]:
        """
        Return merged most-added players.

        Raises:
            QuorumNotMetError: fewer sources succeeded than required and no
                stale result could be served
            NoDataError: quorum met but every successful source was empty
        """
        cached = self.cache.get(MERGED_CACHE_KEY)
        if cached is not None:
            self.cache_hits += 1
            self.logger.info(f"Serving {len(cached)} merged players from cache")
            return cached
        self.cache_misses += 1

        frame = timeframe or self.config.timeframe
        self.logger.info(f"🔄 Collecting most-added players from {len(self.clients)} sources")

        outcomes = await asyncio.gather(
            *(self._fetch_source(client, frame) for client in self.clients),
            return_exceptions=True,
        )

        report: Dict[str, SourceFetchResult] = {}
        for client, outcome in zip(self.clients, outcomes):
            if isinstance(outcome, BaseException):
                report[client.name] = SourceFetchResult(source=client.name, error=str(outcome))
            else:
                report[client.name] = outcome
        self.last_report = report

        successes = [r for r in report.values() if r.success]
        failures = {r.source: r.error or "unknown error" for r in report.values() if not r.success}
        required = self.config.minimum_successful_sources

        if len(successes) < required:
            self.logger.warning(
                f"Quorum not met: {len(successes)}/{required} sources succeeded; failures: {failures}"
            )
            if self.config.fallback_to_cache:
                stale = self.cache.get_stale(MERGED_CACHE_KEY)
                if stale is not None:
                    self.stale_fallbacks += 1
                    self.logger.warning(f"Falling back to {len(stale)} stale merged players")
                    return stale
            raise QuorumNotMetError(len(successes), required, failures)

        raw = [record for result in successes for record in result.records]
        if not raw:
            raise NoDataError(
                f"{len(successes)} sources succeeded but reported no added players"
            )

        merged = self.merge(self.normalize(raw))
        self.cache.set(MERGED_CACHE_KEY, merged, self.cache_ttl)
        self.last_collection_at = datetime.now()

        self.logger.info(
            f"✅ Merged {len(raw)} records from {len(successes)} sources into {len(merged)} players"
        )
        return merged

    async def _fetch_source(self, client: BaseFantasyClient, timeframe: str) -> SourceFetchResult:
        breaker_name = f"source:{client.name}"
        metrics = self.source_metrics.setdefault(client.name, SourceMetrics())
        result = SourceFetchResult(source=client.name)

        if self.breaker is not None and self.breaker.is_open(breaker_name):
            result.error = str(BreakerOpenError(breaker_name))
            self.logger.warning(f"Skipping {client.name}: circuit breaker open")
            return result

        async def attempt() -> List[RawAdditionRecord]:
            result.attempts += 1
            metrics.requests += 1
            started = time.perf_counter()
            try:
                if not client.is_authenticated():
                    await client.authenticate()
                records = await client.fetch_most_added(timeframe)
            finally:
                metrics.total_response_ms += (time.perf_counter() - started) * 1000
            return records

        started = time.perf_counter()
        try:
            result.records = await self.retry_with_backoff(attempt, client.name)
        except Exception as e:
            result.error = str(e) or type(e).__name__
            metrics.failures += 1
            self.error_handler.handle_error(e, client.name, "fetch_most_added", {'attempts': result.attempts})
            if self.breaker is not None:
                self.breaker.record_failure(breaker_name)
        else:
            metrics.successes += 1
            if self.breaker is not None:
                self.breaker.record_success(breaker_name)
        result.fetch_time = time.perf_counter() - started

        log_source_fetch(
            self.logger,
            client.name,
            len(result.records),
            result.fetch_time * 1000,
            result.success,
            attempts=result.attempts,
        )
        return result

    async def retry_with_backoff(self, operation: Callable[[], Awaitable[T]], source_name: str) -> T:
        """Run operation up to max_retries times, sleeping between attempts."""
        max_attempts = self.config.max_retries if self.config.retry_enabled else 1
        attempt = 1
        while True:
            try:
                return await operation()
            except Exception as e:
                if not self.error_handler.is_retryable(e):
                    self.logger.warning(f"{source_name} failed with non-retryable error: {e}")
                    raise
                if attempt >= max_attempts:
                    self.logger.error(f"{source_name} failed after {attempt} attempts: {e}")
                    raise
                if self.config.exponential_backoff:
                    delay = self.config.retry_delay * (2 ** (attempt - 1))
                else:
                    delay = self.config.retry_delay
                self.logger.warning(
                    f"{source_name} attempt {attempt}/{max_attempts} failed: {e}; retrying in {delay:.1f}s"
                )
                await self._sleep(delay)
                attempt += 1

    def normalize(self, records: List[RawAdditionRecord]) -> List[RawAdditionRecord]:
        return [normalize_record(r) for r in records]

    def merge(self, records: List[RawAdditionRecord]) -> List[MergedPlayerRecord]:
        return merge_records(records)

    def metrics(self) -> Dict[str, Any]:
        total_requests = sum(m.requests for m in self.source_metrics.values())
        successes = sum(m.successes for m in self.source_metrics.values())
        failures = sum(m.failures for m in self.source_metrics.values())
        return {
            'total_requests': total_requests,
            'successful_fetches': successes,
            'failed_fetches': failures,
            'cache_hits': self.cache_hits,
            'cache_misses': self.cache_misses,
            'stale_fallbacks': self.stale_fallbacks,
            'last_collection_at': self.last_collection_at,
            'sources': {
                name: {
                    'requests': m.requests,
                    'successes': m.successes,
                    'failures': m.failures,
                    'average_response_ms': round(m.average_response_ms, 1),
                }
                for name, m in self.source_metrics.items()
            },
        }

    async def test_connections(self) -> Dict[str, bool]:
        """Make one unretried fetch against every client."""

        async def check(client: BaseFantasyClient) -> bool:
            try:
                if not client.is_authenticated():
                    await client.authenticate()
                await client.fetch_most_added(self.config.timeframe)
                return True
            except Exception as e:
                self.logger.warning(f"Connection test failed for {client.name}: {e}")
                return False

        results = await asyncio.gather(*(check(c) for c in self.clients))
        return {client.name: ok for client, ok in zip(self.clients, results)}

    def clear_cache(self) -> None:
        self.cache.clear()
