"""
Type definitions for MCP capability results and registrations.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True)
class ToolContent:
    """Single content item in tool response."""

    text: str
    type: str = "text"

    def to_dict(self) -> dict[str, Any]:
        """Convert to MCP content format."""
        return {"type": self.type, "text": self.text}


@dataclass(slots=True)
class ToolResult:
    """Result of a tool execution."""

    content: list[ToolContent] = field(default_factory=list)
    is_error: bool = False
    # Raw payload for tests and logging; not part of the MCP wire format.
    data: Any | None = None

    @classmethod
    def text(cls, text: str, *, data: Any | None = None) -> ToolResult:
        return cls(content=[ToolContent(text=text or "")], data=data)

    @classmethod
    def error(cls, message: str, *, data: Any | None = None) -> ToolResult:
        return cls(content=[ToolContent(text=message)], is_error=True, data=data)

    def to_content_list(self) -> list[dict[str, Any]]:
        """Convert to MCP content list format."""
        return [c.to_dict() for c in self.content]

    def to_call_result(self) -> dict[str, Any]:
        return {"content": self.to_content_list(), "isError": self.is_error}


@dataclass(slots=True)
class ResourceContent:
    """One item of a resources/read response."""

    uri: str
    text: str
    mime_type: str = "application/json"

    def to_dict(self) -> dict[str, Any]:
        return {"uri": self.uri, "mimeType": self.mime_type, "text": self.text}


ToolHandler = Callable[[dict[str, Any]], Awaitable[ToolResult]]
ResourceReader = Callable[[str], Awaitable[list[ResourceContent]]]


@dataclass(slots=True, frozen=True)
class ToolSpec:
    """A named, schema-typed tool registered with the gateway."""

    name: str
    handler: ToolHandler
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "description": self.description, "inputSchema": self.input_schema}


@dataclass(slots=True, frozen=True)
class ResourceSpec:
    """A readable resource addressed by URI."""

    uri: str
    name: str
    reader: ResourceReader
    description: str = ""
    mime_type: str = "application/json"

    def to_dict(self) -> dict[str, Any]:
        return {"uri": self.uri, "name": self.name, "description": self.description, "mimeType": self.mime_type}
