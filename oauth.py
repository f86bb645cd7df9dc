"""
OAuth2 refresh-token credential for the CalDAV/CardDAV clients.

Providers such as Google Calendar do not accept passwords over CalDAV.  The
:class:`RefreshTokenAuth` object plugs into the HTTP session used by the
``caldav`` client (it follows the ``requests`` auth protocol: a callable that
receives the outgoing request and returns it) and stamps every request with a
bearer access token obtained from the provider's token endpoint.  Access
tokens are cached until shortly before they expire.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Optional

import httpx

from errors import HandlerExecutionError

log = logging.getLogger("dav-mcp.dav")

# Refresh a little early so a token never expires mid-request.
EXPIRY_MARGIN_SECONDS = 60
DEFAULT_EXPIRES_IN = 3600


class TokenRefreshError(HandlerExecutionError):
    """The token endpoint refused or failed the refresh-token exchange."""


def _expires_in(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_EXPIRES_IN
    if isinstance(value, (int, float)) and value > 0:
        return int(value)
    return DEFAULT_EXPIRES_IN


class RefreshTokenAuth:
    """
    Bearer credential backed by an OAuth2 refresh token.

    Calls arrive from worker threads (the DAV clients are synchronous), so
    the refresh itself is serialized with a lock and uses a synchronous
    ``httpx`` client.
    """

    def __init__(
        self,
        *,
        token_url: str,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self._token_url = token_url
        self._client_id = client_id
        self._client_secret = client_secret
        self._refresh_token = refresh_token
        self._http = http_client or httpx.Client(timeout=30.0)
        self._access_token: Optional[str] = None
        self._expires_at = 0.0
        self._lock = threading.Lock()

    def __call__(self, request: Any) -> Any:
        request.headers["Authorization"] = f"Bearer {self.access_token()}"
        return request

    def access_token(self, force_refresh: bool = False) -> str:
        if not force_refresh and self._is_fresh():
            assert self._access_token is not None
            return self._access_token
        with self._lock:
            if force_refresh or not self._is_fresh():
                self._refresh()
            assert self._access_token is not None
            return self._access_token

    def _is_fresh(self) -> bool:
        return self._access_token is not None and time.monotonic() < self._expires_at

    def _refresh(self) -> None:
        try:
            response = self._http.post(
                self._token_url,
                data={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "refresh_token": self._refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise TokenRefreshError(f"OAuth token refresh request failed: {exc}") from exc

        if not 200 <= response.status_code < 300:
            raise TokenRefreshError(f"OAuth token refresh failed ({response.status_code})")

        try:
            payload = response.json()
        except ValueError as exc:
            raise TokenRefreshError("OAuth token endpoint returned invalid JSON") from exc

        token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(token, str) or not token.strip():
            raise TokenRefreshError("OAuth token response is missing access_token")

        ttl = max(_expires_in(payload.get("expires_in")) - EXPIRY_MARGIN_SECONDS, 30)
        self._access_token = token.strip()
        self._expires_at = time.monotonic() + ttl
        log.debug("OAuth access token refreshed (valid for %ss)", ttl)
