"""
Stdio binding for local clients (Claude Desktop, Cursor, VS Code).

One protocol server instance is attached to the process's stdin/stdout for
the whole lifetime of the process and serves any number of sequential tool
calls over that single session.  Logging goes to stderr.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import signal
from typing import Any, AsyncContextManager, Callable, Dict, Optional, Tuple

from mcp.server.stdio import stdio_server

from dav_session import DavSessionProvider
from errors import DavMcpError
from protocol_server import ProtocolServerInstance, bootstrap, create_protocol_server
from settings import Settings
from tool_call_logger import ToolCallContext, ToolCallLogger

log = logging.getLogger("dav-mcp.stdio")

StreamsFactory = Callable[[], AsyncContextManager[Tuple[Any, Any]]]


class BindingState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


class StdioBinding:
    """
    Uninitialized -> Initializing -> Ready -> ShuttingDown -> Terminated.

    :meth:`run` owns the event loop and returns the process exit code: 0
    after a termination signal or end of input, 1 when startup fails or the
    channel breaks while ready.
    """

    def __init__(
        self,
        settings: Settings,
        dav: Optional[DavSessionProvider] = None,
        tool_logger: Optional[ToolCallLogger] = None,
        streams_factory: StreamsFactory = stdio_server,
    ) -> None:
        self.settings = settings
        self._dav = dav
        self._tool_logger = tool_logger
        self._streams_factory = streams_factory
        self.state = BindingState.UNINITIALIZED
        self.instance: Optional[ProtocolServerInstance] = None

    async def serve(self) -> None:
        if self.state is not BindingState.UNINITIALIZED:
            raise RuntimeError(f"Stdio binding cannot start from state {self.state.value}")
        self.state = BindingState.INITIALIZING
        log.info("Starting %s STDIO server...", self.settings.server_name)
        context = await bootstrap(self.settings, dav=self._dav, tool_logger=self._tool_logger)

        self.instance = create_protocol_server(context, ToolCallContext(transport="stdio"))
        async with self._streams_factory() as (read_stream, write_stream):
            self.state = BindingState.READY
            log.info(
                "%s %s STDIO server ready (%d tools)",
                self.settings.server_name, self.settings.server_version, len(context.registry),
            )
            try:
                await self.instance.run(read_stream, write_stream)
            finally:
                self.instance.close()

    def _on_signal(self, signum: int, task: "asyncio.Task[Any]") -> None:
        log.info("Received %s, shutting down...", signal.Signals(signum).name)
        self.state = BindingState.SHUTTING_DOWN
        task.cancel()

    def _on_loop_exception(self, loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        exc = context.get("exception")
        log.error("Unhandled error in background task: %s", context.get("message"), exc_info=exc)

    async def _main(self) -> int:
        loop = asyncio.get_running_loop()
        loop.set_exception_handler(self._on_loop_exception)
        task = asyncio.current_task()
        assert task is not None
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self._on_signal, signum, task)
            except (NotImplementedError, RuntimeError):
                # no loop signal handlers on this platform; Ctrl+C still raises KeyboardInterrupt
                pass

        try:
            await self.serve()
        except asyncio.CancelledError:
            if self.state is not BindingState.SHUTTING_DOWN:
                raise
            return 0
        except DavMcpError as exc:
            log.error("Fatal error starting server: %s", exc)
            return 1
        except Exception:
            if self.state is BindingState.READY:
                log.exception("Fatal error on the stdio channel")
            else:
                log.exception("Fatal error starting server")
            return 1
        finally:
            self.state = BindingState.TERMINATED
        log.info("Input closed, shutting down")
        return 0

    def run(self) -> int:
        try:
            return asyncio.run(self._main())
        except KeyboardInterrupt:
            self.state = BindingState.TERMINATED
            return 0
