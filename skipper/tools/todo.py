"""Session task list (todos) and future work (phases) tools."""

import json
from typing import Any, Literal

from pydantic import BaseModel, TypeAdapter, ValidationError

from skipper.logging import get_logger
from skipper.tools.registry import Tool, ToolContext, ToolOutput

log = get_logger(__name__)

Status = Literal["pending", "in_progress", "completed", "cancelled"]


class TodoItem(BaseModel):
    id: str
    content: str
    status: Status
    priority: Literal["high", "medium", "low"]


class PhaseItem(BaseModel):
    id: str
    content: str
    status: Status


_TODO_LIST = TypeAdapter(list[TodoItem])
_PHASE_LIST = TypeAdapter(list[PhaseItem])

_STATUS_SCHEMA = {
    "type": "string",
    "enum": ["pending", "in_progress", "completed", "cancelled"],
}


def _status_counts(items: list[dict[str, Any]]) -> dict[str, int]:
    return {
        "count": len(items),
        "pending": sum(1 for item in items if item["status"] == "pending"),
        "in_progress": sum(1 for item in items if item["status"] == "in_progress"),
        "completed": sum(1 for item in items if item["status"] == "completed"),
    }


def _unavailable(kind: str) -> ToolOutput:
    return ToolOutput(
        output=f"{kind} functionality not available in this context.",
        metadata={"error": True},
    )


class TodoWriteTool(Tool):
    """Replace the session's task list."""

    name = "todowrite"
    description = (
        "Create and manage a structured task list for the current coding session. "
        "Use it for work with three or more steps, keep exactly one task in_progress, "
        "and mark tasks completed as soon as they are done. "
        "Tasks are current, specific work; use phasewrite for larger future work."
    )
    parameters = {
        "type": "object",
        "properties": {
            "todos": {
                "type": "array",
                "description": "The updated todo list",
                "items": {
                    "type": "object",
                    "properties": {
                        "id": {"type": "string"},
                        "content": {"type": "string"},
                        "status": _STATUS_SCHEMA,
                        "priority": {"type": "string", "enum": ["high", "medium", "low"]},
                    },
                    "required": ["id", "content", "status", "priority"],
                },
            },
        },
        "required": ["todos"],
    }
    timeout_seconds = 5.0

    async def execute(self, todos: list[dict[str, Any]], **kwargs: Any) -> ToolOutput:
        ctx: ToolContext | None = kwargs.get("_context")
        if ctx is None:
            return _unavailable("Todo")
        try:
            items = [item.model_dump() for item in _TODO_LIST.validate_python(todos)]
        except ValidationError as e:
            return ToolOutput(success=False, error=f"Invalid todo list: {e}")

        ctx.set_todos(items)
        counts = _status_counts(items)
        # Anything not completed counts as outstanding.
        counts["pending"] = counts["count"] - counts["completed"]
        log.debug("Todos updated", session_id=ctx.session_id, **counts)
        return ToolOutput(
            output=json.dumps(items, indent=2),
            metadata={"todos": items, **counts},
        )


class TodoReadTool(Tool):
    """Read the session's task list."""

    name = "todoread"
    description = "Read the current session task list. Use it to check progress before choosing the next step."
    parameters = {"type": "object", "properties": {}}
    timeout_seconds = 5.0

    async def execute(self, **kwargs: Any) -> ToolOutput:
        ctx: ToolContext | None = kwargs.get("_context")
        if ctx is None:
            return _unavailable("Todo")
        items = ctx.get_todos()
        return ToolOutput(
            output=json.dumps(items, indent=2) if items else "No todos.",
            metadata={"todos": items, **_status_counts(items)},
        )


class PhaseWriteTool(Tool):
    """Replace the session's list of future phases."""

    name = "phasewrite"
    description = (
        "Manage future phases of work: larger items that will be broken down into tasks later. "
        "Keep one phase in_progress, break it into todos, and move on when its tasks are done."
    )
    parameters = {
        "type": "object",
        "properties": {
            "phases": {
                "type": "array",
                "description": "The updated phase list",
                "items": {
                    "type": "object",
                    "properties": {
                        "id": {"type": "string"},
                        "content": {"type": "string"},
                        "status": _STATUS_SCHEMA,
                    },
                    "required": ["id", "content", "status"],
                },
            },
        },
        "required": ["phases"],
    }
    timeout_seconds = 5.0

    async def execute(self, phases: list[dict[str, Any]], **kwargs: Any) -> ToolOutput:
        ctx: ToolContext | None = kwargs.get("_context")
        if ctx is None:
            return _unavailable("Phase")
        try:
            items = [item.model_dump() for item in _PHASE_LIST.validate_python(phases)]
        except ValidationError as e:
            return ToolOutput(success=False, error=f"Invalid phase list: {e}")

        ctx.set_phases(items)
        counts = _status_counts(items)
        return ToolOutput(
            output=json.dumps(items, indent=2),
            metadata={"phases": items, **counts},
        )


class PhaseReadTool(Tool):
    """Read the session's list of future phases."""

    name = "phaseread"
    description = "Read the list of planned phases for this session."
    parameters = {"type": "object", "properties": {}}
    timeout_seconds = 5.0

    async def execute(self, **kwargs: Any) -> ToolOutput:
        ctx: ToolContext | None = kwargs.get("_context")
        if ctx is None:
            return _unavailable("Phase")
        items = ctx.get_phases()
        return ToolOutput(
            output=json.dumps(items, indent=2) if items else "No phases.",
            metadata={"phases": items, **_status_counts(items)},
        )


def session_tools() -> list[Tool]:
    """Built-in tools that operate on per-session state."""
    return [TodoWriteTool(), TodoReadTool(), PhaseWriteTool(), PhaseReadTool()]
