"""
Process configuration for the DAV MCP server.

Environment variables are loaded from a ``.env`` file located next to this
module (variables already present in the environment win) and folded into an
immutable :class:`Settings` snapshot.  Two credential shapes are supported
for the DAV backend, selected by ``AUTH_METHOD``:

* ``Basic`` - ``CALDAV_SERVER_URL``, ``CALDAV_USERNAME``, ``CALDAV_PASSWORD``
  and an optional ``CARDDAV_SERVER_URL``.
* ``OAuth`` - ``GOOGLE_SERVER_URL``, ``GOOGLE_USER``, ``GOOGLE_CLIENT_ID``,
  ``GOOGLE_CLIENT_SECRET``, ``GOOGLE_REFRESH_TOKEN`` and ``GOOGLE_TOKEN_URL``.
"""

from __future__ import annotations

import enum
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Tuple, Union

from dotenv import load_dotenv

from errors import ConfigurationError

DEFAULT_GOOGLE_SERVER_URL = "https://apidata.googleusercontent.com/caldav/v2/"
DEFAULT_GOOGLE_TOKEN_URL = "https://accounts.google.com/o/oauth2/token"
DEFAULT_CORS_ORIGINS = ("http://localhost:5678", "http://localhost:3000")
DEFAULT_SERVER_NAME = "dav-mcp"
DEFAULT_SERVER_VERSION = "3.0.1"

_TRUTHY = {"1", "true", "yes"}


class AuthMethod(str, enum.Enum):
    BASIC = "Basic"
    OAUTH = "OAuth"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "AuthMethod":
        value = (raw or "Basic").strip()
        if value == "Basic":
            return cls.BASIC
        # "Oauth" spelling appears in older .env files
        if value in {"OAuth", "Oauth"}:
            return cls.OAUTH
        raise ConfigurationError(f"Unsupported AUTH_METHOD: {value!r} (expected 'Basic' or 'OAuth')")


def _missing(config: object, names: Tuple[str, ...]) -> Tuple[str, ...]:
    return tuple(name for name in names if not getattr(config, name))


@dataclass(frozen=True)
class BasicDavConfig:
    server_url: str
    username: str
    password: str = field(repr=False)
    carddav_server_url: Optional[str] = None

    auth_method = AuthMethod.BASIC

    def validate(self) -> None:
        missing = _missing(self, ("server_url", "username", "password"))
        if missing:
            raise ConfigurationError(f"Basic Auth requires {', '.join(missing)}")


@dataclass(frozen=True)
class OAuthDavConfig:
    server_url: str
    username: str
    client_id: str
    client_secret: str = field(repr=False)
    refresh_token: str = field(repr=False)
    token_url: str = DEFAULT_GOOGLE_TOKEN_URL
    carddav_server_url: Optional[str] = None

    auth_method = AuthMethod.OAUTH

    def validate(self) -> None:
        missing = _missing(
            self, ("server_url", "username", "client_id", "client_secret", "refresh_token", "token_url")
        )
        if missing:
            raise ConfigurationError(f"OAuth requires {', '.join(missing)}")


DavConfig = Union[BasicDavConfig, OAuthDavConfig]


@dataclass(frozen=True)
class Settings:
    dav: DavConfig
    bearer_token: Optional[str] = field(default=None, repr=False)
    cors_allowed_origins: Tuple[str, ...] = DEFAULT_CORS_ORIGINS
    host: str = "::"
    port: int = 3000
    server_name: str = DEFAULT_SERVER_NAME
    server_version: str = DEFAULT_SERVER_VERSION
    debug: bool = False
    log_level: str = "INFO"
    default_tzid: str = "UTC"


def _get(env: Mapping[str, str], name: str, default: Optional[str] = None) -> Optional[str]:
    value = env.get(name, default)
    if value is None:
        return None
    value = value.strip()
    return value or default


def _port(raw: Optional[str]) -> int:
    try:
        port = int(raw or "3000")
    except ValueError as exc:
        raise ConfigurationError(f"PORT must be an integer, got {raw!r}") from exc
    if not 0 < port < 65536:
        raise ConfigurationError(f"PORT out of range: {port}")
    return port


def _dav_config(env: Mapping[str, str]) -> DavConfig:
    method = AuthMethod.parse(env.get("AUTH_METHOD"))
    if method is AuthMethod.OAUTH:
        return OAuthDavConfig(
            server_url=_get(env, "GOOGLE_SERVER_URL", DEFAULT_GOOGLE_SERVER_URL) or "",
            username=_get(env, "GOOGLE_USER") or "",
            client_id=_get(env, "GOOGLE_CLIENT_ID") or "",
            client_secret=_get(env, "GOOGLE_CLIENT_SECRET") or "",
            refresh_token=_get(env, "GOOGLE_REFRESH_TOKEN") or "",
            token_url=_get(env, "GOOGLE_TOKEN_URL", DEFAULT_GOOGLE_TOKEN_URL) or "",
            carddav_server_url=_get(env, "CARDDAV_SERVER_URL"),
        )
    return BasicDavConfig(
        server_url=_get(env, "CALDAV_SERVER_URL") or "",
        username=_get(env, "CALDAV_USERNAME") or "",
        password=_get(env, "CALDAV_PASSWORD") or "",
        carddav_server_url=_get(env, "CARDDAV_SERVER_URL"),
    )


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build a :class:`Settings` snapshot.

    When ``env`` is omitted the ``.env`` file next to this module is loaded
    into ``os.environ`` first.  Credential completeness is not checked here;
    the DAV session provider validates its config before any network call.
    """
    if env is None:
        load_dotenv(dotenv_path=Path(__file__).with_name(".env"), override=False)
        env = os.environ

    origins_raw = _get(env, "CORS_ALLOWED_ORIGINS")
    origins = (
        tuple(o.strip() for o in origins_raw.split(",") if o.strip())
        if origins_raw
        else DEFAULT_CORS_ORIGINS
    )

    return Settings(
        dav=_dav_config(env),
        bearer_token=_get(env, "BEARER_TOKEN"),
        cors_allowed_origins=origins,
        host=_get(env, "HOST", "::") or "::",
        port=_port(_get(env, "PORT")),
        server_name=_get(env, "MCP_SERVER_NAME", DEFAULT_SERVER_NAME) or DEFAULT_SERVER_NAME,
        server_version=_get(env, "MCP_SERVER_VERSION", DEFAULT_SERVER_VERSION) or DEFAULT_SERVER_VERSION,
        debug=(_get(env, "MCP_DEBUG") or "").lower() in _TRUTHY,
        log_level=(_get(env, "LOG_LEVEL", "INFO") or "INFO").upper(),
        default_tzid=_get(env, "TZID", "UTC") or "UTC",
    )


def configure_logging(level: str = "INFO") -> None:
    """Configure stderr logging once; stdout stays free for the stdio transport."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
