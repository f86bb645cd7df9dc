"""
Structured start/success/error events for every tool invocation.

Events are emitted as one JSON object per log record on the
``dav-mcp.tool-calls`` logger.  Recording never raises: a failing sink is
reported on the module logger and the tool call carries on untouched.
"""

from __future__ import annotations

import datetime as dt
import enum
import json
import logging
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Mapping, Optional

log = logging.getLogger("dav-mcp")
events_log = logging.getLogger("dav-mcp.tool-calls")

MAX_STRING_LENGTH = 500
REDACTED = "[REDACTED]"
_SENSITIVE_KEYS = ("password", "token", "secret", "authorization")


class Phase(str, enum.Enum):
    START = "start"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class ToolCallContext:
    transport: str
    request_id: Optional[str] = None


@dataclass(frozen=True)
class ToolCallEvent:
    tool: str
    phase: Phase
    arguments: Dict[str, Any]
    transport: str
    timestamp: str
    request_id: Optional[str] = None
    duration_ms: Optional[float] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None

    def as_dict(self) -> Dict[str, Any]:
        payload = {k: v for k, v in asdict(self).items() if v is not None}
        payload["phase"] = self.phase.value
        return payload


EventSink = Callable[[ToolCallEvent], None]


def _sanitize(value: Any, depth: int = 0) -> Any:
    if depth > 5:
        return "..."
    if isinstance(value, Mapping):
        return {
            str(k): REDACTED if any(s in str(k).lower() for s in _SENSITIVE_KEYS) else _sanitize(v, depth + 1)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_sanitize(v, depth + 1) for v in value]
    if isinstance(value, str) and len(value) > MAX_STRING_LENGTH:
        return value[:MAX_STRING_LENGTH] + f"...(+{len(value) - MAX_STRING_LENGTH} chars)"
    return value


def _summarize_result(result: Any) -> Dict[str, Any]:
    content = getattr(result, "content", None)
    return {
        "isError": bool(getattr(result, "isError", False)),
        "contentBlocks": len(content) if content is not None else 0,
    }


def _log_sink(event: ToolCallEvent) -> None:
    level = logging.ERROR if event.phase is Phase.ERROR else logging.INFO
    events_log.log(level, json.dumps(event.as_dict(), default=str, sort_keys=True))


class ToolCallLogger:
    """
    Process-wide recorder of tool-call events.

    Until :meth:`initialize` has run every ``log_*`` call is a no-op, so
    nothing that fires during startup can crash on a half-built logger.
    """

    def __init__(self, sink: Optional[EventSink] = None) -> None:
        self._sink: EventSink = sink or _log_sink
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> None:
        self._initialized = True

    def _record(
        self, phase: Phase, tool: str, args: Mapping[str, Any], context: ToolCallContext, **extra: Any
    ) -> None:
        if not self._initialized:
            return
        try:
            self._sink(
                ToolCallEvent(
                    tool=tool,
                    phase=phase,
                    arguments=_sanitize(dict(args)),
                    transport=context.transport,
                    request_id=context.request_id,
                    timestamp=dt.datetime.now(dt.timezone.utc).isoformat(),
                    **extra,
                )
            )
        except Exception:  # noqa: BLE001 - a broken sink must not affect the call
            log.warning("Tool-call event for %s/%s could not be recorded", tool, phase.value, exc_info=True)

    def log_start(self, tool: str, args: Mapping[str, Any], context: ToolCallContext) -> None:
        self._record(Phase.START, tool, args, context)

    def log_success(
        self, tool: str, args: Mapping[str, Any], result: Any, context: ToolCallContext, duration_ms: float
    ) -> None:
        self._record(
            Phase.SUCCESS, tool, args, context,
            duration_ms=round(duration_ms, 3),
            result=_summarize_result(result),
        )

    def log_error(
        self, tool: str, args: Mapping[str, Any], error: BaseException, context: ToolCallContext, duration_ms: float
    ) -> None:
        self._record(
            Phase.ERROR, tool, args, context,
            duration_ms=round(duration_ms, 3),
            error={"type": type(error).__name__, "message": str(error)},
        )
