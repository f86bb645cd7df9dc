"""
Stateless Streamable HTTP binding
=================================

Remote clients (n8n, cloud deployments) talk to ``POST /mcp``.  Every request
gets a brand-new MCP server instance and a brand-new Streamable HTTP
transport with no session id; both are torn down when the response is done,
whatever the outcome, including a client that disconnects mid-request.
Nothing survives between requests except the shared, read-only
:class:`~protocol_server.ServerContext`.

Request pipeline: CORS -> rate limit (``/mcp`` only) -> method check ->
bearer authentication -> per-request server.

Other routes:

* ``GET /health`` - unauthenticated liveness probe.
* ``GET /`` - unauthenticated service descriptor listing the tools.
"""

from __future__ import annotations

import contextlib
import datetime as dt
import logging
import time
import uuid
from typing import Any, AsyncIterator, Optional

import anyio
import uvicorn
from mcp.server.streamable_http import StreamableHTTPServerTransport
from starlette.applications import Starlette
from starlette.datastructures import MutableHeaders
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse
from starlette.routing import Route
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from auth import BearerAuthGate, ServerMisconfiguredError
from errors import AuthenticationError, ErrorCode, ErrorEnvelope, TransportError, to_error_envelope
from protocol_server import ProtocolServerInstance, ServerContext, bootstrap, create_protocol_server
from rate_limit import SlidingWindowRateLimiter
from settings import Settings
from tool_call_logger import ToolCallContext

log = logging.getLogger("dav-mcp.http")

TRANSPORT_NAME = "http-stateless"
MCP_PATH = "/mcp"


def _client_address(scope: Scope) -> Optional[str]:
    client = scope.get("client")
    return client[0] if client else None


# ---------------------------------------------------------------------------
#  Rate limiting
# ---------------------------------------------------------------------------

class RateLimitMiddleware:
    """Apply a :class:`SlidingWindowRateLimiter` to requests under ``path``."""

    def __init__(self, app: ASGIApp, limiter: SlidingWindowRateLimiter, path: str = MCP_PATH) -> None:
        self.app = app
        self.limiter = limiter
        self.path = path

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or not scope["path"].startswith(self.path):
            await self.app(scope, receive, send)
            return

        address = _client_address(scope)
        decision = self.limiter.hit(address)
        headers = {
            "RateLimit-Limit": str(decision.limit),
            "RateLimit-Remaining": str(decision.remaining),
            "RateLimit-Reset": str(decision.reset_seconds),
        }
        if not decision.allowed:
            log.warning("Rate limit exceeded for %s", address)
            response = PlainTextResponse(
                "Too many requests from this IP, please try again later.",
                status_code=429,
                headers=headers,
            )
            await response(scope, receive, send)
            return

        async def send_with_headers(message: Message) -> None:
            if message["type"] == "http.response.start":
                MutableHeaders(scope=message).update(headers)
            await send(message)

        await self.app(scope, receive, send_with_headers)


# ---------------------------------------------------------------------------
#  POST /mcp
# ---------------------------------------------------------------------------

@contextlib.asynccontextmanager
async def ephemeral_server(
    instance: ProtocolServerInstance, transport: StreamableHTTPServerTransport
) -> AsyncIterator[None]:
    """
    Run ``instance`` on ``transport`` for the duration of the block.

    On every exit path the transport is terminated, the instance is closed
    (it can never serve again) and the server task is cancelled.
    """
    async with anyio.create_task_group() as tg:

        async def run_server(*, task_status: Any = anyio.TASK_STATUS_IGNORED) -> None:
            async with transport.connect() as (read_stream, write_stream):
                task_status.started()
                try:
                    await instance.run(read_stream, write_stream, stateless=True)
                except Exception:
                    log.exception("Stateless MCP server crashed")

        await tg.start(run_server)
        try:
            yield
        finally:
            with anyio.CancelScope(shield=True):
                await transport.terminate()
            instance.close()
            tg.cancel_scope.cancel()


class StatelessMCPEndpoint:
    """ASGI endpoint for ``/mcp``: only POST is served, one server per request."""

    def __init__(self, context: ServerContext, gate: BearerAuthGate) -> None:
        self.context = context
        self.gate = gate

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        if request.method != "POST":
            # Stateless mode has no standalone SSE stream and no session to delete.
            envelope = ErrorEnvelope(ErrorCode.METHOD_NOT_ALLOWED, "Method not allowed. Use POST for MCP requests.")
            response = JSONResponse(envelope.to_jsonrpc(), status_code=405, headers={"Allow": "POST"})
            await response(scope, receive, send)
            return

        try:
            self.gate.check(request.headers.get("authorization"))
        except ServerMisconfiguredError as exc:
            log.error("Server misconfiguration: BEARER_TOKEN not set")
            await JSONResponse(to_error_envelope(exc).to_jsonrpc(), status_code=500)(scope, receive, send)
            return
        except AuthenticationError as exc:
            log.warning("%s (client=%s)", exc.message, _client_address(scope))
            await JSONResponse(to_error_envelope(exc).to_jsonrpc(), status_code=401)(scope, receive, send)
            return

        await self._serve(str(uuid.uuid4()), scope, receive, send)

    async def _serve(self, request_id: str, scope: Scope, receive: Receive, send: Send) -> None:
        response_started = False
        body_received = anyio.Event()

        async def tracked_send(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        async def tracked_receive() -> Message:
            message = await receive()
            if message["type"] == "http.request" and not message.get("more_body", False):
                body_received.set()
            return message

        instance = create_protocol_server(self.context, ToolCallContext(transport="http", request_id=request_id))
        transport = StreamableHTTPServerTransport(mcp_session_id=None, is_json_response_enabled=True)
        try:
            async with anyio.create_task_group() as tg:

                async def watch_disconnect() -> None:
                    # handle_request never reads again once the body is in
                    await body_received.wait()
                    while (await receive())["type"] != "http.disconnect":
                        pass
                    log.info("Client disconnected, abandoning MCP request [%s]", request_id)
                    tg.cancel_scope.cancel()

                tg.start_soon(watch_disconnect)
                async with ephemeral_server(instance, transport):
                    await transport.handle_request(scope, tracked_receive, tracked_send)
                tg.cancel_scope.cancel()
        except Exception:
            log.exception("Error handling MCP request [%s]", request_id)
            if not response_started:
                envelope = to_error_envelope(TransportError("Internal server error"))
                await JSONResponse(envelope.to_jsonrpc(), status_code=500)(scope, receive, send)


# ---------------------------------------------------------------------------
#  Application
# ---------------------------------------------------------------------------

def create_app(context: ServerContext, limiter: Optional[SlidingWindowRateLimiter] = None) -> Starlette:
    settings = context.settings
    started_at = time.monotonic()

    async def health(_: Request) -> JSONResponse:
        """Liveness probe for infrastructure monitoring."""
        return JSONResponse({
            "status": "healthy",
            "server": settings.server_name,
            "version": settings.server_version,
            "transport": TRANSPORT_NAME,
            "timestamp": dt.datetime.now(dt.timezone.utc).isoformat(),
            "tools": len(context.registry),
            "uptime": round(time.monotonic() - started_at, 3),
        })

    async def info(_: Request) -> JSONResponse:
        return JSONResponse({
            "name": settings.server_name,
            "version": settings.server_version,
            "transport": TRANSPORT_NAME,
            "description": "MCP Streamable HTTP Server for CalDAV/CardDAV integration (stateless)",
            "endpoints": {"mcp": f"{MCP_PATH} (POST only)", "health": "/health (GET)"},
            "tools": [{"name": d.name, "description": d.description} for d in context.registry.list()],
        })

    return Starlette(
        routes=[
            Route(MCP_PATH, endpoint=StatelessMCPEndpoint(context, BearerAuthGate(settings.bearer_token))),
            Route("/health", health, methods=["GET"]),
            Route("/", info, methods=["GET"]),
        ],
        middleware=[
            Middleware(
                CORSMiddleware,
                allow_origins=list(settings.cors_allowed_origins),
                allow_credentials=True,
                allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
                allow_headers=["Authorization", "Content-Type", "Accept", "Mcp-Protocol-Version"],
            ),
            Middleware(RateLimitMiddleware, limiter=limiter or SlidingWindowRateLimiter()),
        ],
    )


async def serve_http(settings: Settings) -> None:
    """Initialize the shared context, then serve until uvicorn receives a shutdown signal."""
    log.info("Starting %s HTTP server (stateless)...", settings.server_name)
    if not settings.bearer_token:
        log.error("BEARER_TOKEN is not set; every /mcp request will be rejected")
    context = await bootstrap(settings)
    app = create_app(context)

    config = uvicorn.Config(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
    server = uvicorn.Server(config)
    log.info(
        "HTTP server running on %s:%d (endpoint %s, %d tools)",
        settings.host, settings.port, MCP_PATH, len(context.registry),
    )
    await server.serve()
    log.info("Shutdown completed")
