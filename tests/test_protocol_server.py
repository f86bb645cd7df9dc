import asyncio
from typing import Any, Dict, List

import pytest
from mcp import types
from mcp.shared.exceptions import McpError
from mcp.shared.memory import create_connected_server_and_client_session

from conftest import FakeCalDavClient, make_provider, make_settings
from errors import ErrorCode, InitializationError, MethodNotFoundError
from protocol_server import ServerContext, ToolDispatcher, bootstrap, create_protocol_server
from tool_call_logger import Phase, ToolCallContext, ToolCallEvent, ToolCallLogger
from tool_registry import ToolDescriptor, ToolRegistry


def _dispatcher(context: ServerContext, verbose: bool = False) -> ToolDispatcher:
    return ToolDispatcher(
        context.registry, context.tool_logger, ToolCallContext(transport="stdio"), verbose_errors=verbose
    )


def test_bootstrap_initializes_everything(context: ServerContext) -> None:
    assert context.tool_logger.initialized
    assert len(context.registry) == 10
    assert context.dav.get_caldav_client() is not None


def test_bootstrap_propagates_login_failure() -> None:
    provider = make_provider(caldav=FakeCalDavClient(fail_login=True))
    tool_logger = ToolCallLogger(sink=lambda event: None)
    with pytest.raises(InitializationError, match="CalDAV login failed"):
        asyncio.run(bootstrap(make_settings(), dav=provider, tool_logger=tool_logger))
    assert not tool_logger.initialized


def test_list_tools_is_stable(context: ServerContext) -> None:
    dispatcher = _dispatcher(context)
    first = dispatcher.list_tools()
    assert first == dispatcher.list_tools()
    assert [t["name"] for t in first] == [d.name for d in context.registry.list()]
    assert all(set(t) == {"name", "description", "inputSchema"} for t in first)


def test_unknown_tool_is_not_logged_and_touches_nothing(
    context: ServerContext, caldav_client: FakeCalDavClient, events: List[ToolCallEvent]
) -> None:
    calls_before = caldav_client.principal_calls
    with pytest.raises(MethodNotFoundError, match="Unknown tool: nope"):
        asyncio.run(_dispatcher(context).call_tool("nope", {}))
    assert events == []
    assert caldav_client.principal_calls == calls_before


def test_successful_call_is_logged_with_duration(
    context: ServerContext, events: List[ToolCallEvent]
) -> None:
    result = asyncio.run(_dispatcher(context).call_tool("list_calendars", None))
    assert not result.isError
    assert [(e.tool, e.phase) for e in events] == [
        ("list_calendars", Phase.START),
        ("list_calendars", Phase.SUCCESS),
    ]
    assert events[1].duration_ms is not None and events[1].duration_ms >= 0
    assert events[0].arguments == {}


def test_failing_handler_returns_error_result(context: ServerContext, events: List[ToolCallEvent]) -> None:
    result = asyncio.run(_dispatcher(context, verbose=True).call_tool("get_event", {"calendar": "Work", "uid": "x"}))
    assert result.isError
    error = result.structuredContent["error"]
    assert error["code"] == ErrorCode.HANDLER_FAILED
    assert error["detail"]["type"] == "HandlerExecutionError"
    assert [e.phase for e in events] == [Phase.START, Phase.ERROR]
    assert events[1].error == {"type": "HandlerExecutionError", "message": "Event not found: x"}


def test_unknown_tool_is_a_protocol_error(context: ServerContext, events: List[ToolCallEvent]) -> None:
    instance = create_protocol_server(context, ToolCallContext(transport="stdio"))

    async def _exercise() -> None:
        async with create_connected_server_and_client_session(instance.server) as client:
            with pytest.raises(McpError) as excinfo:
                await client.call_tool("does_not_exist", {})
            assert excinfo.value.error.code == ErrorCode.METHOD_NOT_FOUND
            assert excinfo.value.error.message == "Unknown tool: does_not_exist"

            listed = await client.list_tools()
            assert [t.name for t in listed.tools] == [d.name for d in context.registry.list()]

    asyncio.run(_exercise())
    assert events == []


def test_interleaved_calls_keep_their_own_events(events: List[ToolCallEvent]) -> None:
    started: List[str] = []
    gate: Dict[str, asyncio.Event] = {}

    async def slow(arguments: Dict[str, Any]) -> types.CallToolResult:
        started.append(arguments["tag"])
        if len(started) == 2:
            gate["both"].set()
        await asyncio.wait_for(gate["both"].wait(), timeout=5)
        return types.CallToolResult(content=[types.TextContent(type="text", text=arguments["tag"])])

    tool_logger = ToolCallLogger(sink=events.append)
    tool_logger.initialize()
    registry = ToolRegistry([ToolDescriptor("slow", "waits for a sibling call", {"type": "object"}, slow)])
    first = ToolDispatcher(registry, tool_logger, ToolCallContext("http", "req-a"))
    second = ToolDispatcher(registry, tool_logger, ToolCallContext("http", "req-b"))

    async def _exercise() -> None:
        gate["both"] = asyncio.Event()
        await asyncio.gather(first.call_tool("slow", {"tag": "a"}), second.call_tool("slow", {"tag": "b"}))

    asyncio.run(_exercise())
    assert [e.phase for e in events[:2]] == [Phase.START, Phase.START]
    for request_id, tag in (("req-a", "a"), ("req-b", "b")):
        own = [e for e in events if e.request_id == request_id]
        assert [e.phase for e in own] == [Phase.START, Phase.SUCCESS]
        assert all(e.arguments == {"tag": tag} for e in own)


def test_instance_serves_one_connection(context: ServerContext) -> None:
    instance = create_protocol_server(context, ToolCallContext(transport="stdio"))
    instance.close()
    assert instance.closed
    with pytest.raises(RuntimeError, match="closed"):
        asyncio.run(instance.run(None, None))
