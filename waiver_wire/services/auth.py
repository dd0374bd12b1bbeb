"""
Authentication providers for fantasy data sources.

Each provider turns stored credentials into request headers. None of them
performs an interactive flow; missing credentials are reported as AuthError.
"""

import logging
import time
from typing import Callable, Dict, Optional, Protocol

from waiver_wire.models.config import SourceAuthConfig
from waiver_wire.services.transport import Transport, TransportError


# Token endpoint responses that mean "try again later" rather than "rejected"
UNAVAILABLE_STATUSES = (408, 425, 429)


class AuthError(Exception):
    """Credentials are missing or were rejected"""
    pass


class TokenEndpointError(Exception):
    """The token endpoint could not be reached or failed on its side"""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class AuthProvider(Protocol):
    def is_authenticated(self) -> bool:
        ...

    async def refresh(self) -> None:
        ...

    def get_auth_headers(self) -> Dict[str, str]:
        ...


class PublicAuth:
    """No credentials required."""

    def is_authenticated(self) -> bool:
        return True

    async def refresh(self) -> None:
        return None

    def get_auth_headers(self) -> Dict[str, str]:
        return {}


class ApiKeyAuth:
    def __init__(self, api_key: str, header: str = "x-api-key"):
        self.api_key = api_key
        self.header = header

    def is_authenticated(self) -> bool:
        return bool(self.api_key)

    async def refresh(self) -> None:
        if not self.api_key:
            raise AuthError("API key is not configured")

    def get_auth_headers(self) -> Dict[str, str]:
        return {self.header: self.api_key} if self.api_key else {}


class BearerTokenAuth:
    def __init__(self, access_token: str):
        self.access_token = access_token

    def is_authenticated(self) -> bool:
        return bool(self.access_token)

    async def refresh(self) -> None:
        if not self.access_token:
            raise AuthError("Access token is not configured")

    def get_auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"} if self.access_token else {}


class OAuthRefreshAuth:
    """
    OAuth2 refresh-token grant.

    The access token is exchanged from a stored refresh token and renewed a
    minute before it expires.
    """

    EXPIRY_MARGIN_SECONDS = 60.0

    def __init__(
        self,
        credentials: SourceAuthConfig,
        transport: Transport,
        token_url: str,
        clock: Callable[[], float] = time.time,
    ):
        self.credentials = credentials
        self.transport = transport
        self.token_url = token_url
        self._clock = clock
        self.access_token: Optional[str] = credentials.access_token or None
        self.refresh_token: str = credentials.refresh_token
        self.expires_at: Optional[float] = None
        self.logger = logging.getLogger(__name__)

    def is_authenticated(self) -> bool:
        if not self.access_token:
            return False
        if self.expires_at is None:
            return True
        return self._clock() < self.expires_at - self.EXPIRY_MARGIN_SECONDS

    async def refresh(self) -> None:
        if not self.credentials.client_id or not self.credentials.client_secret:
            raise AuthError("OAuth client id and secret are required")
        if not self.refresh_token:
            raise AuthError("No refresh token available; interactive authorization is not supported")

        try:
            response = await self.transport.request(
                "POST",
                self.token_url,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                data={
                    "client_id": self.credentials.client_id,
                    "client_secret": self.credentials.client_secret,
                    "refresh_token": self.refresh_token,
                    "grant_type": "refresh_token",
                },
            )
        except TransportError as e:
            raise TokenEndpointError(f"Token refresh failed: {e}") from e

        if response.status >= 500 or response.status in UNAVAILABLE_STATUSES:
            raise TokenEndpointError(
                f"Token endpoint unavailable (HTTP {response.status})", status=response.status
            )
        body = response.body if isinstance(response.body, dict) else {}
        if not response.ok or "access_token" not in body:
            raise AuthError(f"Token refresh rejected with status {response.status}")

        self.access_token = body["access_token"]
        self.refresh_token = body.get("refresh_token", self.refresh_token)
        self.expires_at = self._clock() + float(body.get("expires_in", 3600))
        self.logger.info("OAuth access token refreshed")

    def get_auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"} if self.access_token else {}
