"""
Protocol server factory shared by the stdio and HTTP bindings.

:func:`bootstrap` builds the process-scoped :class:`ServerContext` once
(DAV session, tool-call logger, tool registry).  :func:`create_protocol_server`
then binds that context to a fresh MCP low-level server exposing exactly
``tools/list`` and ``tools/call``.  The stdio binding creates one instance
for the life of the process; the HTTP binding creates one per request.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from mcp import types
from mcp.server.lowlevel import Server
from mcp.shared.exceptions import McpError

from dav_session import DavSessionProvider
from errors import MethodNotFoundError, to_error_envelope, tool_error_result
from settings import Settings
from tool_call_logger import ToolCallContext, ToolCallLogger
from tool_registry import ToolRegistry
from tools import build_registry

log = logging.getLogger("dav-mcp")


@dataclass(frozen=True)
class ServerContext:
    settings: Settings
    registry: ToolRegistry
    dav: DavSessionProvider
    tool_logger: ToolCallLogger


async def bootstrap(
    settings: Settings,
    dav: Optional[DavSessionProvider] = None,
    tool_logger: Optional[ToolCallLogger] = None,
) -> ServerContext:
    """
    Initialize the DAV session and the tool-call logger, then build the
    registry.  Configuration and login failures propagate; callers treat
    them as fatal.
    """
    dav = dav or DavSessionProvider()
    log.info("Initializing DAV session (%s)", settings.dav.auth_method.value)
    await dav.initialize(settings.dav)

    tool_logger = tool_logger or ToolCallLogger()
    tool_logger.initialize()
    log.info("Tool call logger initialized")

    registry = build_registry(dav, default_tzid=settings.default_tzid)
    return ServerContext(settings=settings, registry=registry, dav=dav, tool_logger=tool_logger)


class ToolDispatcher:
    """Registry lookup, timing, logging and error translation for one server instance."""

    def __init__(
        self,
        registry: ToolRegistry,
        tool_logger: ToolCallLogger,
        call_context: ToolCallContext,
        verbose_errors: bool = False,
    ) -> None:
        self.registry = registry
        self.tool_logger = tool_logger
        self.call_context = call_context
        self.verbose_errors = verbose_errors
        self._tag = f" [{call_context.request_id}]" if call_context.request_id else ""

    def list_tools(self) -> List[Dict[str, Any]]:
        log.debug("tools/list request%s (%d tools)", self._tag, len(self.registry))
        return [descriptor.projection() for descriptor in self.registry.list()]

    async def call_tool(self, name: str, arguments: Optional[Mapping[str, Any]]) -> types.CallToolResult:
        log.info("tools/call %s%s", name, self._tag)
        descriptor = self.registry.find(name)
        if descriptor is None:
            log.error("Tool not found: %s%s", name, self._tag)
            raise MethodNotFoundError(f"Unknown tool: {name}")

        args: Dict[str, Any] = dict(arguments or {})
        self.tool_logger.log_start(name, args, self.call_context)
        started = time.perf_counter()
        try:
            result = await descriptor.handler(args)
        except Exception as exc:
            duration_ms = (time.perf_counter() - started) * 1000
            log.error("Tool %s failed after %.1fms%s: %s", name, duration_ms, self._tag, exc)
            self.tool_logger.log_error(name, args, exc, self.call_context, duration_ms)
            return tool_error_result(to_error_envelope(exc, self.verbose_errors))

        duration_ms = (time.perf_counter() - started) * 1000
        log.info("Tool %s executed in %.1fms%s", name, duration_ms, self._tag)
        self.tool_logger.log_success(name, args, result, self.call_context, duration_ms)
        return result


class ProtocolServerInstance:
    """
    One MCP low-level server bound to a dispatcher.

    An instance serves a single connection.  Once closed (or once its one
    run has started) it refuses to run again, so a per-request instance can
    never be reused by a later request.
    """

    def __init__(self, name: str, version: str, dispatcher: ToolDispatcher) -> None:
        self.dispatcher = dispatcher
        self.server: Server[Any, Any] = Server(name, version=version)
        self.server.request_handlers[types.ListToolsRequest] = self._handle_list_tools
        self.server.request_handlers[types.CallToolRequest] = self._handle_call_tool
        self._started = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def _handle_list_tools(self, _: types.ListToolsRequest) -> types.ServerResult:
        tools = [types.Tool(**projection) for projection in self.dispatcher.list_tools()]
        return types.ServerResult(types.ListToolsResult(tools=tools))

    async def _handle_call_tool(self, request: types.CallToolRequest) -> types.ServerResult:
        try:
            result = await self.dispatcher.call_tool(request.params.name, request.params.arguments)
        except MethodNotFoundError as exc:
            envelope = to_error_envelope(exc, self.dispatcher.verbose_errors)
            raise McpError(envelope.to_error_data()) from exc
        return types.ServerResult(result)

    async def run(self, read_stream: Any, write_stream: Any, *, stateless: bool = False) -> None:
        if self._closed:
            raise RuntimeError("Protocol server instance is closed")
        if self._started:
            raise RuntimeError("Protocol server instance already served a connection")
        self._started = True
        await self.server.run(
            read_stream,
            write_stream,
            self.server.create_initialization_options(),
            stateless=stateless,
        )

    def close(self) -> None:
        self._closed = True


def create_protocol_server(context: ServerContext, call_context: ToolCallContext) -> ProtocolServerInstance:
    dispatcher = ToolDispatcher(
        context.registry,
        context.tool_logger,
        call_context,
        verbose_errors=context.settings.debug,
    )
    return ProtocolServerInstance(context.settings.server_name, context.settings.server_version, dispatcher)
