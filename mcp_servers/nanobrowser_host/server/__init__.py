"""MCP gateway support package (capability registry, contract, result types)."""

from __future__ import annotations

from .registry import CapabilityRegistry
from .types import ResourceContent, ToolContent, ToolResult

__all__ = ["CapabilityRegistry", "ResourceContent", "ToolContent", "ToolResult"]
