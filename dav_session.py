"""
Process-wide holder for the CalDAV and CardDAV clients.

:class:`DavSessionProvider` is initialized exactly once at startup.  Tool
handlers obtain the live clients through :meth:`get_caldav_client` and
:meth:`get_carddav_client`; both raise a distinguishable error instead of
returning ``None`` when the client is not usable.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any, Callable, Optional

from caldav.davclient import DAVClient

from carddav import CardDavClient
from errors import (
    DavClientNotInitializedError,
    DavClientUnavailableError,
    InitializationError,
)
from oauth import RefreshTokenAuth
from settings import AuthMethod, BasicDavConfig, DavConfig, OAuthDavConfig

log = logging.getLogger("dav-mcp.dav")

ClientFactory = Callable[[DavConfig, str, Any], Any]


class SessionState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"


def _auth_for(config: DavConfig) -> Optional[RefreshTokenAuth]:
    if isinstance(config, OAuthDavConfig):
        return RefreshTokenAuth(
            token_url=config.token_url,
            client_id=config.client_id,
            client_secret=config.client_secret,
            refresh_token=config.refresh_token,
        )
    return None


def default_caldav_factory(config: DavConfig, url: str, auth: Any) -> DAVClient:
    if isinstance(config, BasicDavConfig):
        return DAVClient(url=url, username=config.username, password=config.password)
    return DAVClient(url=url, username=config.username, auth=auth)


def default_carddav_factory(config: DavConfig, url: str, auth: Any) -> CardDavClient:
    return CardDavClient(default_caldav_factory(config, url, auth))


def _login_caldav(client: Any) -> None:
    # principal discovery is the first authenticated round trip
    client.principal()


def _login_carddav(client: Any) -> None:
    client.login()


class DavSessionProvider:
    """
    Holds at most one CalDAV client and one CardDAV client.

    In OAuth mode a CardDAV login failure is tolerated (Google and other
    calendar-only providers have no CardDAV endpoint): it is logged as a
    warning and contact tools fail at call time with
    :class:`~errors.DavClientUnavailableError`.  In Basic mode it is fatal.
    """

    def __init__(
        self,
        caldav_factory: ClientFactory = default_caldav_factory,
        carddav_factory: ClientFactory = default_carddav_factory,
    ) -> None:
        self._caldav_factory = caldav_factory
        self._carddav_factory = carddav_factory
        self._caldav: Any = None
        self._carddav: Any = None
        self._carddav_failure: Optional[str] = None
        self.config: Optional[DavConfig] = None
        self.state = SessionState.UNINITIALIZED

    @property
    def auth_method(self) -> Optional[AuthMethod]:
        return self.config.auth_method if self.config is not None else None

    async def initialize(self, config: DavConfig) -> None:
        if self.state is not SessionState.UNINITIALIZED:
            raise InitializationError(f"DAV session cannot be initialized from state {self.state.value}")
        self.state = SessionState.INITIALIZING
        try:
            config.validate()
            await asyncio.to_thread(self._login_all, config)
        except Exception:
            self.state = SessionState.FAILED
            raise
        self.config = config
        self.state = SessionState.READY
        log.info(
            "DAV clients initialized (server=%s auth=%s carddav=%s)",
            config.server_url,
            config.auth_method.value,
            "unavailable" if self._carddav is None else "ready",
        )

    def _login_all(self, config: DavConfig) -> None:
        auth = _auth_for(config)
        carddav_url = config.carddav_server_url or config.server_url

        caldav_client = self._caldav_factory(config, config.server_url, auth)
        try:
            _login_caldav(caldav_client)
        except Exception as exc:
            log.error("CalDAV login failed for %s: %s", config.server_url, exc)
            raise InitializationError(f"CalDAV login failed: {exc}") from exc
        log.debug("CalDAV client logged in (%s)", config.auth_method.value)

        carddav_client = self._carddav_factory(config, carddav_url, auth)
        try:
            _login_carddav(carddav_client)
        except Exception as exc:
            if config.auth_method is AuthMethod.OAUTH:
                log.warning("CardDAV login failed (expected for calendar-only OAuth providers): %s", exc)
                self._carddav_failure = str(exc)
                carddav_client = None
            else:
                log.error("CardDAV login failed for %s: %s", carddav_url, exc)
                raise InitializationError(f"CardDAV login failed: {exc}") from exc
        else:
            log.debug("CardDAV client logged in (%s)", config.auth_method.value)

        self._caldav = caldav_client
        self._carddav = carddav_client

    def get_caldav_client(self) -> Any:
        if self.state is not SessionState.READY or self._caldav is None:
            raise DavClientNotInitializedError("CalDAV client not initialized. Call initialize() first.")
        return self._caldav

    def get_carddav_client(self) -> Any:
        if self.state is not SessionState.READY:
            raise DavClientNotInitializedError("CardDAV client not initialized. Call initialize() first.")
        if self._carddav is None:
            raise DavClientUnavailableError(
                f"CardDAV is not available for this account: {self._carddav_failure or 'login failed'}"
            )
        return self._carddav
