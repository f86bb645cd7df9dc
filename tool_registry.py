"""Static, ordered registry of the tools exposed over MCP."""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from mcp import types

ToolHandler = Callable[[Dict[str, Any]], Awaitable[types.CallToolResult]]


@dataclass(frozen=True)
class ToolDescriptor:
    name: str
    description: str
    input_schema: Mapping[str, Any]
    handler: ToolHandler

    def projection(self) -> Dict[str, Any]:
        """Public view of the tool; the handler is never exposed."""
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": dict(self.input_schema),
        }


class ToolRegistry:
    """
    Immutable name -> descriptor mapping that remembers registration order.

    Descriptors are validated once at construction: names must be unique and
    non-empty, schemas must describe an object and handlers must be callable.
    Lookup is an exact match on the name.
    """

    def __init__(self, descriptors: Iterable[ToolDescriptor]) -> None:
        ordered: List[ToolDescriptor] = []
        by_name: Dict[str, ToolDescriptor] = {}
        for descriptor in descriptors:
            if not descriptor.name:
                raise ValueError("Tool name must be a non-empty string")
            if descriptor.name in by_name:
                raise ValueError(f"Duplicate tool name: {descriptor.name}")
            if descriptor.input_schema.get("type") != "object":
                raise ValueError(f"Tool {descriptor.name} input schema must describe an object")
            if not callable(descriptor.handler):
                raise ValueError(f"Tool {descriptor.name} handler is not callable")
            ordered.append(descriptor)
            by_name[descriptor.name] = descriptor
        self._ordered: Tuple[ToolDescriptor, ...] = tuple(ordered)
        self._by_name: Mapping[str, ToolDescriptor] = MappingProxyType(by_name)

    def list(self) -> Tuple[ToolDescriptor, ...]:
        return self._ordered

    def find(self, name: str) -> Optional[ToolDescriptor]:
        return self._by_name.get(name)

    def __len__(self) -> int:
        return len(self._ordered)
