from __future__ import annotations

from typing import Any
from urllib.parse import urlsplit

from ..server.types import ToolResult
from .base import NativeTool, ToolArgumentError, require_str


class NavigateToTool(NativeTool):
    name = "navigate_to"
    description = "Navigate the active browser tab to a URL"
    input_schema = {
        "type": "object",
        "properties": {
            "url": {"type": "string", "description": "Absolute http(s) URL to open"},
        },
        "required": ["url"],
    }
    timeout = 30.0

    async def execute(self, arguments: dict[str, Any]) -> ToolResult:
        try:
            url = require_str(arguments, "url")
            if urlsplit(url).scheme not in ("http", "https"):
                raise ToolArgumentError("'url' must be an absolute http(s) URL")
        except ToolArgumentError as exc:
            return ToolResult.error(f"Invalid arguments for navigate_to: {exc}")

        try:
            result = await self.messaging.rpc_request(
                {"method": "navigate_to", "params": {"url": url}}, timeout=self.timeout
            )
        except Exception as exc:
            self.logger.error("navigate_to %s failed: %s", url, exc)
            return ToolResult.error(f"Navigation to {url} failed: {exc}", data={"error": str(exc)})

        message = result.get("message") if isinstance(result, dict) else None
        return ToolResult.text(message or f"Navigated to {url}", data=result)
