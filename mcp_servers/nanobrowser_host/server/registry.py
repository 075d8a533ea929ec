"""
Capability registry for the MCP gateway.

Tools and resources keep their registration order (that is the order clients
see in tools/list and resources/list).
"""

from __future__ import annotations

import logging
from typing import Any

from .types import ResourceContent, ResourceReader, ResourceSpec, ToolResult, ToolSpec

logger = logging.getLogger("mcp.host.registry")


class CapabilityRegistry:
    """Registry of tools and resources exposed to MCP clients."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolSpec] = {}
        self._resources: dict[str, ResourceSpec] = {}

    def register_tool(self, spec: ToolSpec) -> None:
        if spec.name in self._tools:
            logger.info("replacing tool registration: %s", spec.name)
        self._tools[spec.name] = spec

    def register_resource(
        self,
        uri: str,
        reader: ResourceReader,
        *,
        name: str | None = None,
        description: str = "",
        mime_type: str = "application/json",
    ) -> None:
        self._resources[uri] = ResourceSpec(
            uri=uri, name=name or uri, reader=reader, description=description, mime_type=mime_type
        )

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    def has_resource(self, uri: str) -> bool:
        return uri in self._resources

    def list_tools(self) -> list[dict[str, Any]]:
        return [spec.to_dict() for spec in self._tools.values()]

    def list_resources(self) -> list[dict[str, Any]]:
        return [spec.to_dict() for spec in self._resources.values()]

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        """Dispatch a tool call. Raises KeyError for unknown tools."""
        spec = self._tools.get(name)
        if spec is None:
            raise KeyError(f"Tool not found: {name}")
        return await spec.handler(arguments)

    async def read_resource(self, uri: str) -> list[ResourceContent]:
        """Read a resource. Raises KeyError for unknown URIs."""
        spec = self._resources.get(uri)
        if spec is None:
            raise KeyError(f"Resource not found: {uri}")
        return await spec.reader(uri)

    @property
    def tool_names(self) -> list[str]:
        return list(self._tools.keys())

    @property
    def resource_uris(self) -> list[str]:
        return list(self._resources.keys())

    def __len__(self) -> int:
        return len(self._tools) + len(self._resources)


__all__ = ["CapabilityRegistry"]
