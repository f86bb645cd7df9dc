"""Shared-secret bearer authentication for the HTTP transport."""

from __future__ import annotations

import secrets
from typing import Optional

from errors import AuthenticationError, DavMcpError, ErrorCode


class ServerMisconfiguredError(DavMcpError):
    code = ErrorCode.INTERNAL_ERROR


class BearerAuthGate:
    """
    Validate ``Authorization: Bearer <token>`` against the configured secret.

    A missing secret rejects every request (HTTP 500) instead of letting
    traffic through.  The comparison is :func:`secrets.compare_digest`, whose
    running time does not depend on where the tokens differ.
    """

    def __init__(self, secret: Optional[str]) -> None:
        self._secret = secret.encode("utf-8") if secret else None

    @property
    def configured(self) -> bool:
        return self._secret is not None

    def check(self, authorization: Optional[str]) -> None:
        if self._secret is None:
            raise ServerMisconfiguredError("Server misconfiguration: BEARER_TOKEN not set")
        if not authorization or not authorization.startswith("Bearer "):
            raise AuthenticationError("Unauthorized: Bearer token required")
        presented = authorization[len("Bearer "):].encode("utf-8")
        if not secrets.compare_digest(presented, self._secret):
            raise AuthenticationError("Unauthorized: Invalid token")
