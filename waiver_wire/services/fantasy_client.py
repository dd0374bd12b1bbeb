"""
Base client for fantasy football data providers.

Every request passes through the source's rate limiter, picks up auth
headers, and goes out over the injected transport. Successful GET responses
are cached per client so that repeated lookups inside one cycle do not spend
rate-limit budget.
"""

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, TypeVar

from waiver_wire.models.config import SourceConfig
from waiver_wire.models.player import RawAdditionRecord
from waiver_wire.services.auth import AuthError, AuthProvider, PublicAuth, TokenEndpointError
from waiver_wire.services.cache_service import TTLCache
from waiver_wire.services.rate_limiter import RateLimiter
from waiver_wire.services.transport import Transport, TransportError


T = TypeVar("T")

DEFAULT_RESPONSE_TTL = 300.0
RETRYABLE_CLIENT_STATUSES = (408, 425, 429)


def drop_empty(values: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in values.items() if v not in (None, "")}


class SourceError(Exception):
    """A request to a fantasy source failed"""

    def __init__(
        self,
        message: str,
        source_name: str,
        http_status: Optional[int] = None,
        raw_body: Any = None,
    ):
        super().__init__(message)
        self.source_name = source_name
        self.http_status = http_status
        self.raw_body = raw_body

    @property
    def retryable(self) -> bool:
        if self.http_status is None:
            return True
        if self.http_status >= 500:
            return True
        return self.http_status in RETRYABLE_CLIENT_STATUSES


class SourceAuthError(SourceError):
    """Credentials missing or rejected. Retrying will not help."""

    @property
    def retryable(self) -> bool:
        return False


class BaseFantasyClient(ABC):
    """
    Shared request plumbing for ESPN, Yahoo and Sleeper.

    Subclasses implement fetch_most_added and fetch_player_info and convert
    provider payloads into RawAdditionRecord through an explicit mapper.
    """

    def __init__(
        self,
        config: SourceConfig,
        transport: Transport,
        auth: Optional[AuthProvider] = None,
        cache: Optional[TTLCache] = None,
        rate_limiter: Optional[RateLimiter] = None,
        response_ttl: float = DEFAULT_RESPONSE_TTL,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.config = config
        self.transport = transport
        self.auth: AuthProvider = auth or PublicAuth()
        self.cache: TTLCache = cache if cache is not None else TTLCache(
            default_ttl=response_ttl, name=f"{config.name} responses"
        )
        self.rate_limiter = rate_limiter or RateLimiter(config.rate_limit, name=config.name)
        self.response_ttl = response_ttl
        self._now = clock
        self.logger = logging.getLogger(f"{__name__}.{config.name.lower()}")

    @property
    def name(self) -> str:
        return self.config.name

    def is_authenticated(self) -> bool:
        return self.auth.is_authenticated()

    async def authenticate(self) -> None:
        try:
            await self.auth.refresh()
        except AuthError as e:
            raise SourceAuthError(f"{self.name} authentication failed: {e}", self.name) from e
        except TokenEndpointError as e:
            raise SourceError(f"{self.name} authentication unavailable: {e}", self.name, http_status=e.status) from e
        self.logger.debug(f"{self.name} authenticated")

    @abstractmethod
    async def fetch_most_added(self, timeframe: str = "week") -> List[RawAdditionRecord]:
        """Return the provider's current most-added players."""

    @abstractmethod
    async def fetch_player_info(self, player_id: str) -> Optional[Dict[str, Any]]:
        """Return raw provider details for one player, or None if unknown."""

    def describe_player(self, info: Dict[str, Any]) -> Dict[str, Any]:
        """Reduce a fetch_player_info payload to injury status, team and similar fields."""
        return drop_empty({'status': info.get('status')})

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        use_cache: bool = True,
        ttl: Optional[float] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> Any:
        cache_key = f"{method}:{endpoint}:{json.dumps(params or {}, sort_keys=True)}"
        cacheable = use_cache and method.upper() == "GET"

        if cacheable:
            cached = self.cache.get(cache_key)
            if cached is not None:
                self.logger.debug(f"Cache hit for {cache_key}")
                return cached

        await self.rate_limiter.admit()

        url = endpoint if endpoint.startswith("http") else f"{self.config.base_url}{endpoint}"
        headers = {"Accept": "application/json"}
        headers.update(self.auth.get_auth_headers())

        try:
            response = await self.transport.request(method, url, params=params, headers=headers, data=data)
        except TransportError as e:
            raise SourceError(f"{self.name} request to {endpoint} failed: {e}", self.name) from e

        if response.status in (401, 403):
            raise SourceAuthError(
                f"{self.name} rejected credentials (HTTP {response.status})",
                self.name,
                http_status=response.status,
                raw_body=response.body,
            )
        if response.status >= 400:
            raise SourceError(
                f"{self.name} returned HTTP {response.status} for {endpoint}",
                self.name,
                http_status=response.status,
                raw_body=response.body,
            )

        if cacheable:
            self.cache.set(cache_key, response.body, ttl if ttl is not None else self.response_ttl)
        return response.body

    def _map_rows(self, rows: Iterable[Any], mapper: Callable[[Any], Optional[T]]) -> List[T]:
        """Apply a provider mapper, skipping rows it cannot interpret."""
        mapped: List[T] = []
        skipped = 0
        for row in rows:
            try:
                result = mapper(row)
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                skipped += 1
                self.logger.debug(f"Skipping malformed {self.name} row: {e}")
                continue
            if result is not None:
                mapped.append(result)
        if skipped:
            self.logger.warning(f"Skipped {skipped} malformed {self.name} rows")
        return mapped

    def rate_limit_status(self) -> Dict[str, Any]:
        return {
            'remaining': self.rate_limiter.remaining(),
            'reset_times': self.rate_limiter.reset_times(),
        }

    def cache_stats(self) -> Dict[str, Any]:
        return self.cache.stats()

    def clear_cache(self) -> None:
        self.cache.clear()
