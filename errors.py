"""
Error taxonomy and protocol error envelopes.

Every failure that can reach a caller is expressed as a :class:`DavMcpError`
subclass carrying a fixed integer ``code``.  The dispatch boundary converts
any exception into an :class:`ErrorEnvelope` with :func:`to_error_envelope`
and renders it either as a JSON-RPC error (unknown tool, HTTP rejections) or
as a tool error result (failures inside a tool handler).
"""

from __future__ import annotations

import json
import traceback
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Dict, Optional

from mcp import types
from pydantic import ValidationError


class ErrorCode(IntEnum):
    """Closed set of protocol error codes."""

    METHOD_NOT_ALLOWED = -32000
    UNAUTHORIZED = -32001
    HANDLER_FAILED = -32002
    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603


class DavMcpError(Exception):
    """Base class for every failure with a protocol code."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, *, code: Optional[ErrorCode] = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class InitializationError(DavMcpError):
    """Startup could not complete (DAV login failure, double initialization)."""


class ConfigurationError(InitializationError):
    """Missing or invalid startup configuration."""


class AuthenticationError(DavMcpError):
    code = ErrorCode.UNAUTHORIZED


class MethodNotFoundError(DavMcpError):
    code = ErrorCode.METHOD_NOT_FOUND


class InvalidParamsError(DavMcpError):
    code = ErrorCode.INVALID_PARAMS


class HandlerExecutionError(DavMcpError):
    code = ErrorCode.HANDLER_FAILED


class DavClientNotInitializedError(HandlerExecutionError):
    """A DAV client was requested before the session provider finished initializing."""


class DavClientUnavailableError(HandlerExecutionError):
    """A DAV client is known to be unusable for this process (failed optional login)."""


class TransportError(DavMcpError):
    code = ErrorCode.INTERNAL_ERROR


@dataclass(frozen=True)
class ErrorEnvelope:
    code: int
    message: str
    detail: Optional[Dict[str, Any]] = None

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.detail is not None:
            payload["detail"] = self.detail
        return payload

    def to_error_data(self) -> types.ErrorData:
        return types.ErrorData(code=self.code, message=self.message, data=self.detail)

    def to_jsonrpc(self, request_id: Any = None) -> Dict[str, Any]:
        """JSON-RPC error body used for HTTP-level rejections."""
        error: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.detail is not None:
            error["data"] = self.detail
        return {"jsonrpc": "2.0", "error": error, "id": request_id}


def _describe(exc: BaseException) -> Dict[str, Any]:
    detail: Dict[str, Any] = {
        "type": type(exc).__name__,
        "stack": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
    }
    cause = exc.__cause__ or exc.__context__
    if cause is not None:
        detail["cause"] = f"{type(cause).__name__}: {cause}"
    return detail


def to_error_envelope(exc: BaseException, verbose: bool = False) -> ErrorEnvelope:
    """
    Translate an exception into an :class:`ErrorEnvelope`.

    The translation has no side effects.  Diagnostic ``detail`` is attached
    only when ``verbose`` is true, so remote callers never see stack traces
    unless the server runs with ``MCP_DEBUG`` enabled.
    """
    if isinstance(exc, DavMcpError):
        code = int(exc.code)
        message = exc.message
    elif isinstance(exc, ValidationError):
        code = int(ErrorCode.INVALID_PARAMS)
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in exc.errors()
        )
        message = f"Invalid arguments: {problems}"
    else:
        code = int(ErrorCode.HANDLER_FAILED)
        message = str(exc) or type(exc).__name__
    return ErrorEnvelope(code=code, message=message, detail=_describe(exc) if verbose else None)


def tool_error_result(envelope: ErrorEnvelope) -> types.CallToolResult:
    """Render an envelope as a tool result flagged with ``isError``."""
    payload = {"error": envelope.as_dict()}
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=json.dumps(payload, indent=2, default=str))],
        structuredContent=payload,
        isError=True,
    )
