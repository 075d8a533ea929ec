"""run_task: ask the extension's agent to complete a task in the browser.

The task is forwarded as-is; the extension does the work. The result (or the
failure) comes back as AI-friendly Markdown so the calling agent can reason
about what happened and what to try next.
"""

from __future__ import annotations

import json
import time
from typing import Any

from ..errors import ConnectionClosedError, RpcTimeoutError
from ..server.types import ToolResult
from .base import NativeTool, ToolArgumentError, optional_number, optional_str, require_str

DEFAULT_TIMEOUT_MS = 300_000

_HANDLED_KEYS = ("success", "message", "data", "actions")


class RunTaskTool(NativeTool):
    name = "run_task"
    description = "Request the agent to complete a task within the browser environment"
    input_schema = {
        "type": "object",
        "properties": {
            "task": {
                "type": "string",
                "description": (
                    'The task description to be completed by the agent (e.g., "Fill out the login form", '
                    '"Extract product information from the current page")'
                ),
            },
            "context": {
                "type": "string",
                "description": "Additional context for the task: instructions, constraints, or required information",
            },
            "timeout": {
                "type": "number",
                "default": DEFAULT_TIMEOUT_MS,
                "description": "Timeout in milliseconds (default: 300000ms/5min) after which the task is abandoned",
            },
        },
        "required": ["task"],
    }
    timeout = DEFAULT_TIMEOUT_MS / 1000.0

    async def execute(self, arguments: dict[str, Any]) -> ToolResult:
        started = time.monotonic()
        try:
            task = require_str(arguments, "task")
            context = optional_str(arguments, "context")
            timeout_ms = optional_number(arguments, "timeout", DEFAULT_TIMEOUT_MS)
        except ToolArgumentError as exc:
            return ToolResult.error(f"Invalid arguments for run_task: {exc}")

        self.logger.info("run_task task=%r timeout_ms=%d", task[:120], int(timeout_ms))
        try:
            result = await self.messaging.rpc_request(
                {"method": "run_task", "params": {"task": task, "context": context}},
                timeout=timeout_ms / 1000.0,
            )
        except Exception as exc:
            elapsed = _elapsed_ms(started)
            self.logger.error("run_task execution failed: %s", exc)
            return ToolResult.error(format_error_result(task, exc, elapsed), data={"error": str(exc)})

        elapsed = _elapsed_ms(started)
        self.logger.info("run_task finished in %dms", elapsed)
        return ToolResult.text(format_success_result(task, result, elapsed), data=result)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _json_block(value: Any) -> list[str]:
    return ["```json", json.dumps(value, ensure_ascii=False, indent=2, default=str), "```"]


def format_success_result(task: str, result: Any, execution_ms: int) -> str:
    lines = [
        "# Task Execution Result",
        "",
        "**Status**: ✅ Success",
        f"**Task**: {task}",
        f"**Execution Time**: {execution_ms}ms",
        "",
        "## Results",
        "",
    ]

    if isinstance(result, dict):
        if "success" in result:
            lines.append(f"**Success**: {'✅ Yes' if result['success'] else '❌ No'}")
        if result.get("message"):
            lines.append(f"**Message**: {result['message']}")
        if result.get("data"):
            lines += ["", "### Data", *_json_block(result["data"])]

        actions = result.get("actions")
        if isinstance(actions, list):
            lines += ["", "### Actions Performed"]
            for index, action in enumerate(actions, start=1):
                if not isinstance(action, dict):
                    lines.append(f"{index}. {action}")
                    continue
                lines.append(f"{index}. {action.get('description') or action.get('type') or 'Unknown action'}")
                if action.get("target"):
                    lines.append(f"   - Target: {action['target']}")
                if action.get("result"):
                    lines.append(f"   - Result: {action['result']}")

        remaining = [k for k in result if k not in _HANDLED_KEYS]
        if remaining:
            lines += ["", "### Additional Information"]
            for key in remaining:
                value = result[key]
                if isinstance(value, (dict, list)):
                    lines += [f"**{key}**:", *_json_block(value)]
                else:
                    lines.append(f"**{key}**: {value}")
    elif result not in (None, "", [], {}):
        lines.append(str(result))
    else:
        lines.append("Task completed successfully with no additional data.")

    return "\n".join(lines)


def format_error_result(task: str, error: BaseException, execution_ms: int) -> str:
    lines = [
        "# Task Execution Result",
        "",
        "**Status**: ❌ Failed",
        f"**Task**: {task}",
        f"**Execution Time**: {execution_ms}ms",
        "",
        "## Error Details",
        "",
    ]

    if isinstance(error, RpcTimeoutError):
        lines += [
            "**Error Type**: Timeout",
            f"**Message**: The task execution timed out after {execution_ms}ms. This may indicate:",
            "- The task is taking longer than expected to complete",
            "- The browser extension is not responding",
            "",
            "**Suggestions**:",
            "- Try breaking the task into smaller, more specific steps",
            "- Increase the timeout value if the task legitimately needs more time",
        ]
    elif isinstance(error, ConnectionClosedError):
        lines += [
            "**Error Type**: Connection Error",
            "**Message**: Unable to communicate with the browser extension. This may indicate:",
            "- The browser extension was closed or reloaded",
            "- The native messaging host is not properly configured",
            "",
            "**Suggestions**:",
            "- Verify the browser extension is installed and enabled",
            "- Restart the browser and try again",
        ]
    else:
        lines += ["**Error Type**: Execution Error", f"**Message**: {error}"]

    lines += [
        "",
        "## Troubleshooting",
        "1. **Check Task Description**: Ensure the task is clearly defined and achievable",
        "2. **Verify Browser State**: Make sure the browser is on the correct page and ready for interaction",
        "3. **Break Down Complex Tasks**: Split complex operations into smaller, sequential steps",
        "4. **Check Logs**: Review the MCP host logs for additional error details",
    ]
    return "\n".join(lines)
