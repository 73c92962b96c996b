"""Tools for Skipper."""

from skipper.tools.registry import Tool, ToolContext, ToolOutput, ToolRegistry
from skipper.tools.todo import (
    PhaseReadTool,
    PhaseWriteTool,
    TodoReadTool,
    TodoWriteTool,
    session_tools,
)

__all__ = [
    "Tool",
    "ToolContext",
    "ToolOutput",
    "ToolRegistry",
    "PhaseReadTool",
    "PhaseWriteTool",
    "TodoReadTool",
    "TodoWriteTool",
    "session_tools",
]
