"""Protocol contract definitions.

This is the single source of truth for:
- supported MCP protocol versions
- server identity
- capabilities advertised by initialize
"""

from __future__ import annotations

from typing import Any

from ..config import HOST_NAME, HOST_VERSION

SERVER_INFO: dict[str, str] = {"name": HOST_NAME, "version": HOST_VERSION}

SUPPORTED_PROTOCOL_VERSIONS = ["2025-06-18", "2025-03-26", "2024-11-05"]
LATEST_PROTOCOL_VERSION = SUPPORTED_PROTOCOL_VERSIONS[0]
DEFAULT_PROTOCOL_VERSION = LATEST_PROTOCOL_VERSION

SESSION_HEADER = "Mcp-Session-Id"

INSTRUCTIONS = (
    "Tools in this server are executed by the Nanobrowser extension inside the user's browser. "
    "Use run_task for multi-step browser work."
)


def select_protocol(requested: Any) -> str:
    if isinstance(requested, str) and requested in SUPPORTED_PROTOCOL_VERSIONS:
        return requested
    return DEFAULT_PROTOCOL_VERSION


def capabilities(*, has_resources: bool) -> dict[str, Any]:
    caps: dict[str, Any] = {"tools": {"listChanged": False}}
    if has_resources:
        caps["resources"] = {"subscribe": False, "listChanged": False}
    return caps


def initialize_result(protocol: str, *, has_resources: bool = False) -> dict[str, Any]:
    return {
        "protocolVersion": protocol,
        "serverInfo": SERVER_INFO,
        "capabilities": capabilities(has_resources=has_resources),
        "instructions": INSTRUCTIONS,
    }
