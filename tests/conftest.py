from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union

import pytest

from waiver_wire.models.config import RateLimitConfig, SourceConfig
from waiver_wire.models.player import MergedPlayerRecord, RawAdditionRecord
from waiver_wire.services.transport import TransportResponse


OBSERVED_AT = datetime(2024, 10, 1, 9, 0, 0)


class FakeClock:
    """Manually advanced float clock"""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSleep:
    """Records requested sleeps and advances the clock instead of waiting"""

    def __init__(self, clock: Optional[FakeClock] = None):
        self.clock = clock
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self.clock is not None:
            self.clock.advance(seconds)


Scripted = Union[TransportResponse, Exception]


class FakeTransport:
    """
    Scripted transport keyed by (method, path suffix).

    Each route holds a queue of responses; the last one repeats.
    """

    def __init__(self):
        self.routes: Dict[Tuple[str, str], List[Scripted]] = {}
        self.requests: List[Dict[str, Any]] = []

    def add(self, method: str, path_suffix: str, *responses: Scripted) -> None:
        self.routes[(method, path_suffix)] = list(responses)

    def add_json(self, method: str, path_suffix: str, body: Any, status: int = 200) -> None:
        self.add(method, path_suffix, TransportResponse(status=status, body=body))

    def count(self, path_suffix: str) -> int:
        return sum(1 for r in self.requests if r['url'].endswith(path_suffix))

    async def request(self, method, url, params=None, headers=None, data=None):
        self.requests.append({'method': method, 'url': url, 'params': params, 'headers': headers, 'data': data})
        for (route_method, suffix), queue in self.routes.items():
            if route_method == method and url.endswith(suffix):
                scripted = queue.pop(0) if len(queue) > 1 else queue[0]
                if isinstance(scripted, Exception):
                    raise scripted
                return scripted
        return TransportResponse(status=404, body={'error': f'no route for {method} {url}'})

    async def close(self) -> None:
        return None


class StubClient:
    """Source client double for aggregator tests"""

    def __init__(self, name: str, *outcomes, authenticated: bool = True, auth_error: Optional[Exception] = None):
        self.name = name
        self.outcomes = list(outcomes)
        self.calls = 0
        self.auth_calls = 0
        self._authenticated = authenticated
        self.auth_error = auth_error

    def is_authenticated(self) -> bool:
        return self._authenticated

    async def authenticate(self) -> None:
        self.auth_calls += 1
        if self.auth_error is not None:
            raise self.auth_error
        self._authenticated = True

    async def fetch_most_added(self, timeframe: str = "week"):
        self.calls += 1
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return list(outcome)


def make_record(
    source: str,
    name: str,
    position: str = "RB",
    team: str = "TB",
    count: int = 10,
    observed_at: datetime = OBSERVED_AT,
    player_id: str = "1",
) -> RawAdditionRecord:
    return RawAdditionRecord(
        source_id=source,
        external_player_id=player_id,
        display_name=name,
        position=position,
        team=team,
        added_count=count,
        observed_at=observed_at,
    )


def make_merged(
    name: str,
    count: int,
    sources=("ESPN",),
    position: str = "RB",
    team: str = "TB",
) -> MergedPlayerRecord:
    return MergedPlayerRecord(
        canonical_key=f"{name.lower()}_{team.lower()}_{position}",
        display_name=name,
        position=position,
        team=team,
        total_added_count=count,
        contributing_sources=frozenset(sources),
        most_recent_observed_at=OBSERVED_AT,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_sleep(clock):
    return FakeSleep(clock)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def source_config():
    def build(name: str = "ESPN", base_url: str = "https://example.test", **kwargs) -> SourceConfig:
        kwargs.setdefault('rate_limit', RateLimitConfig(requests_per_minute=1000, requests_per_hour=10000))
        return SourceConfig(name=name, base_url=base_url, **kwargs)
    return build
