import asyncio
import itertools
from datetime import datetime, timedelta

import pytest

from conftest import FakeSleep, StubClient, make_record
from waiver_wire.models.config import AggregatorConfig
from waiver_wire.pipeline.player_aggregator import (
    MERGED_CACHE_KEY,
    NoDataError,
    PlayerAggregator,
    QuorumNotMetError,
    canonical_key,
    merge_records,
    normalize_record,
)
from waiver_wire.services.cache_service import TTLCache
from waiver_wire.services.fantasy_client import SourceAuthError, SourceError
from waiver_wire.utils.error_monitoring import CircuitBreaker


def make_aggregator(clients, clock=None, **config):
    config.setdefault('retry_delay', 1.0)
    cache = TTLCache(default_ttl=3600, max_size=10, clock=clock) if clock else None
    return PlayerAggregator(
        clients,
        AggregatorConfig(**config),
        cache=cache,
        sleep=FakeSleep(),
    )


def test_normalization_canonicalizes_name_position_and_team():
    record = normalize_record(make_record("ESPN", "  bucky   irving ", position="d/st", team="jac"))

    assert record.display_name == "BUCKY IRVING"
    assert record.position == "DST"
    assert record.team == "JAX"
    assert normalize_record(make_record("ESPN", "x", position="DEF", team="")).team == "FA"
    assert normalize_record(make_record("ESPN", "x", position="Defense")).position == "DST"


def test_merge_sums_counts_and_unions_sources():
    later = datetime(2024, 10, 2)
    records = [
        normalize_record(make_record("A", "Player X", count=100)),
        normalize_record(make_record("B", "player  x", count=50, observed_at=later)),
        normalize_record(make_record("A", "Someone Else", position="WR", count=7)),
    ]

    merged = merge_records(records)

    assert len(merged) == 2
    player_x = next(m for m in merged if m.canonical_key == canonical_key("PLAYER X", "TB", "RB"))
    assert player_x.total_added_count == 150
    assert player_x.contributing_sources == frozenset({"A", "B"})
    assert player_x.most_recent_observed_at == later


def test_merge_is_independent_of_input_order():
    records = [
        normalize_record(make_record("A", "Player X", count=100)),
        normalize_record(make_record("B", "Player X", count=50, observed_at=datetime(2024, 9, 1))),
        normalize_record(make_record("C", "Player Y", team="NE", count=3)),
        normalize_record(make_record("B", "Player Y", team="NE", count=4)),
    ]

    expected = merge_records(records)
    for permutation in itertools.permutations(records):
        assert merge_records(list(permutation)) == expected


def test_merge_keeps_each_sources_player_id():
    records = [
        normalize_record(make_record("ESPN", "Player X", player_id="101")),
        normalize_record(make_record("Sleeper", "PLAYER X", player_id="4034")),
        normalize_record(make_record("ESPN", "Someone Else", position="WR", player_id="202")),
    ]

    merged = {m.display_name: m for m in merge_records(records)}

    assert merged["PLAYER X"].source_player_ids() == {"ESPN": "101", "Sleeper": "4034"}
    assert merged["SOMEONE ELSE"].source_player_ids() == {"ESPN": "202"}


class HandshakeClient(StubClient):
    """Waits for and/or sets shared events around an ordinary stub fetch"""

    def __init__(self, name, records, wait_for=None, signal=None):
        super().__init__(name, records)
        self.wait_for = wait_for
        self.signal = signal

    async def fetch_most_added(self, timeframe: str = "week"):
        if self.signal is not None:
            self.signal.set()
        if self.wait_for is not None:
            await asyncio.wait_for(self.wait_for.wait(), timeout=1.0)
        return await super().fetch_most_added(timeframe)


@pytest.mark.asyncio
async def test_sources_are_fetched_concurrently():
    # A can only finish once B has started, so a sequential fetch would time out on A.
    b_started = asyncio.Event()
    clients = [
        HandshakeClient("A", [make_record("A", "Player X", count=100)], wait_for=b_started),
        HandshakeClient("B", [make_record("B", "Player Y", count=50)], signal=b_started),
    ]
    aggregator = make_aggregator(clients)

    merged = await aggregator.collect()

    assert sorted(m.display_name for m in merged) == ["PLAYER X", "PLAYER Y"]
    assert aggregator.last_report["A"].success
    assert aggregator.last_report["A"].attempts == 1
    assert aggregator.last_report["B"].success


@pytest.mark.asyncio
async def test_collect_merges_across_sources():
    clients = [
        StubClient("A", [make_record("A", "Player X", count=100)]),
        StubClient("B", [make_record("B", "PLAYER X", count=50), make_record("B", "Other", count=5)]),
    ]
    aggregator = make_aggregator(clients)

    merged = await aggregator.collect()

    assert [m.total_added_count for m in merged] == [5, 150]
    assert aggregator.last_report["A"].success
    assert aggregator.metrics()['successful_fetches'] == 2


@pytest.mark.asyncio
async def test_fresh_cache_hit_skips_sources():
    client = StubClient("A", [make_record("A", "Player X")])
    aggregator = make_aggregator([client])

    first = await aggregator.collect()
    second = await aggregator.collect()

    assert first == second
    assert client.calls == 1
    assert aggregator.metrics()['cache_hits'] == 1


@pytest.mark.asyncio
async def test_failed_source_is_retried_with_backoff():
    flaky = StubClient("A", SourceError("boom", "A"), SourceError("boom", "A"), [make_record("A", "Player X")])
    aggregator = make_aggregator([flaky], max_retries=3, retry_delay=2.0, exponential_backoff=True)

    merged = await aggregator.collect()

    assert len(merged) == 1
    assert flaky.calls == 3
    assert aggregator._sleep.calls == [2.0, 4.0]


@pytest.mark.asyncio
async def test_fixed_delay_when_backoff_disabled():
    flaky = StubClient("A", SourceError("boom", "A"), [make_record("A", "Player X")])
    aggregator = make_aggregator([flaky], retry_delay=3.0, exponential_backoff=False)

    await aggregator.collect()

    assert aggregator._sleep.calls == [3.0]


@pytest.mark.asyncio
async def test_auth_errors_are_not_retried():
    yahoo = StubClient(
        "Yahoo",
        [make_record("Yahoo", "Never")],
        authenticated=False,
        auth_error=SourceAuthError("no refresh token", "Yahoo"),
    )
    espn = StubClient("ESPN", [make_record("ESPN", "Player X")])
    aggregator = make_aggregator([yahoo, espn], max_retries=3)

    merged = await aggregator.collect()

    assert len(merged) == 1
    assert yahoo.auth_calls == 1
    assert yahoo.calls == 0
    assert aggregator.last_report["Yahoo"].attempts == 1
    assert not aggregator.last_report["Yahoo"].success


@pytest.mark.asyncio
async def test_quorum_failure_without_cache_raises():
    clients = [
        StubClient("A", [make_record("A", "Player X")]),
        StubClient("B", SourceError("down", "B")),
        StubClient("C", SourceError("down", "C")),
    ]
    aggregator = make_aggregator(clients, minimum_successful_sources=2, max_retries=1)

    with pytest.raises(QuorumNotMetError) as exc_info:
        await aggregator.collect()

    assert exc_info.value.successful == 1
    assert exc_info.value.required == 2
    assert set(exc_info.value.failures) == {"B", "C"}


@pytest.mark.asyncio
async def test_quorum_failure_falls_back_to_stale_cache(clock):
    a = StubClient("A", [make_record("A", "Player X", count=10)], SourceError("down", "A"))
    b = StubClient("B", [make_record("B", "Player X", count=5)], SourceError("down", "B"))
    c = StubClient("C", [make_record("C", "Player Y", count=1)])
    aggregator = make_aggregator([a, b, c], clock=clock, minimum_successful_sources=2, max_retries=1)

    fresh = await aggregator.collect()
    clock.advance(7200)
    served = await aggregator.collect()

    assert served == fresh
    assert aggregator.metrics()['stale_fallbacks'] == 1


@pytest.mark.asyncio
async def test_stale_fallback_can_be_disabled(clock):
    a = StubClient("A", [make_record("A", "Player X")], SourceError("down", "A"))
    aggregator = make_aggregator([a], clock=clock, max_retries=1, fallback_to_cache=False)

    await aggregator.collect()
    clock.advance(7200)

    with pytest.raises(QuorumNotMetError):
        await aggregator.collect()


@pytest.mark.asyncio
async def test_quorum_met_with_no_records_is_no_data():
    aggregator = make_aggregator([StubClient("A", []), StubClient("B", [])])

    with pytest.raises(NoDataError):
        await aggregator.collect()
    assert aggregator.cache.get(MERGED_CACHE_KEY) is None


@pytest.mark.asyncio
async def test_open_source_breaker_skips_source():
    breaker = CircuitBreaker(failure_threshold=1, failure_window=timedelta(minutes=5))
    breaker.record_failure("source:B")
    a = StubClient("A", [make_record("A", "Player X")])
    b = StubClient("B", [make_record("B", "Player X")])
    aggregator = PlayerAggregator([a, b], AggregatorConfig(), breaker=breaker, sleep=FakeSleep())

    merged = await aggregator.collect()

    assert b.calls == 0
    assert merged[0].contributing_sources == frozenset({"A"})
    assert "breaker" in aggregator.last_report["B"].error.lower()


@pytest.mark.asyncio
async def test_test_connections_reports_each_source():
    aggregator = make_aggregator([
        StubClient("A", [make_record("A", "Player X")]),
        StubClient("B", SourceError("down", "B")),
    ])

    assert await aggregator.test_connections() == {"A": True, "B": False}
