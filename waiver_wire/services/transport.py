"""
HTTP transport used by the source clients.

Clients depend on the Transport protocol only, so tests can substitute an
in-memory fake. AiohttpTransport is the production implementation.
"""

import asyncio
import json
import logging
import ssl
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Tuple

import aiohttp
import certifi


logger = logging.getLogger(__name__)


class TransportError(Exception):
    """Network-level failure: connection refused, DNS, timeout, broken body"""
    pass


@dataclass
class TransportResponse:
    status: int
    body: Any
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 400


class Transport(Protocol):
    async def request(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> TransportResponse:
        ...

    async def close(self) -> None:
        ...


def _encode_params(params: Optional[Dict[str, Any]]) -> List[Tuple[str, str]]:
    """Flatten params for aiohttp, repeating keys whose value is a list."""
    query: List[Tuple[str, str]] = []
    for key, value in (params or {}).items():
        values = value if isinstance(value, (list, tuple)) else [value]
        for item in values:
            query.append((key, str(item)))
    return query


class AiohttpTransport:
    """Shared aiohttp session with certifi-backed TLS."""

    def __init__(self, timeout_seconds: float = 30.0, user_agent: str = "waiver-wire/1.0"):
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.user_agent = user_agent
        self.session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            ssl_context = ssl.create_default_context(cafile=certifi.where())
            connector = aiohttp.TCPConnector(ssl=ssl_context)
            self.session = aiohttp.ClientSession(
                headers={"User-Agent": self.user_agent},
                timeout=self.timeout,
                connector=connector,
            )
        return self.session

    async def request(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> TransportResponse:
        session = await self._get_session()
        query = _encode_params(params)
        try:
            async with session.request(method, url, params=query, headers=headers, data=data) as response:
                text = await response.text()
                try:
                    body: Any = json.loads(text) if text else None
                except json.JSONDecodeError:
                    body = text
                return TransportResponse(
                    status=response.status,
                    body=body,
                    headers=dict(response.headers),
                )
        except aiohttp.ClientError as e:
            raise TransportError(f"{method} {url} failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise TransportError(f"{method} {url} timed out") from e

    async def close(self) -> None:
        if self.session and not self.session.closed:
            await self.session.close()
            self.session = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False
