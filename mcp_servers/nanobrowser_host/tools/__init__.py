from __future__ import annotations

from .base import NativeTool, ToolArgumentError
from .navigate_to import NavigateToTool
from .run_task import RunTaskTool

__all__ = ["NativeTool", "NavigateToTool", "RunTaskTool", "ToolArgumentError"]
