"""
Base class for tools backed by a native-channel call.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from ..server.types import ToolResult, ToolSpec

if TYPE_CHECKING:
    from ..messaging import MessageRouter


class ToolArgumentError(ValueError):
    """Invalid arguments passed to a tool by the MCP client."""


class NativeTool:
    """A capability whose invocation is one `rpc_request` to the extension."""

    name: str = ""
    description: str = ""
    input_schema: dict[str, Any] = {"type": "object", "properties": {}}
    timeout: float = 30.0

    def __init__(self, messaging: MessageRouter) -> None:
        self.messaging = messaging
        self.logger = logging.getLogger(f"mcp.host.tools.{self.name}")

    def spec(self) -> ToolSpec:
        return ToolSpec(name=self.name, handler=self.execute, description=self.description, input_schema=self.input_schema)

    async def execute(self, arguments: dict[str, Any]) -> ToolResult:
        raise NotImplementedError


def require_str(arguments: dict[str, Any], key: str) -> str:
    value = arguments.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ToolArgumentError(f"'{key}' is required and must be a non-empty string")
    return value.strip()


def optional_str(arguments: dict[str, Any], key: str, default: str = "") -> str:
    value = arguments.get(key)
    if value is None:
        return default
    if not isinstance(value, str):
        raise ToolArgumentError(f"'{key}' must be a string")
    return value


def optional_number(arguments: dict[str, Any], key: str, default: float) -> float:
    value = arguments.get(key)
    if value is None:
        return float(default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ToolArgumentError(f"'{key}' must be a number")
    if value <= 0:
        raise ToolArgumentError(f"'{key}' must be positive")
    return float(value)
