import asyncio
import json

import pytest

from skipper.tools import ToolContext, ToolRegistry, session_tools
from skipper.tools.todo import TodoReadTool, TodoWriteTool


class SessionLists:
    def __init__(self):
        self.todos: list[dict] = []
        self.phases: list[dict] = []

    def set_todos(self, items):
        self.todos = list(items)

    def set_phases(self, items):
        self.phases = list(items)


def _context(lists: SessionLists) -> ToolContext:
    async def emit(event):
        return None

    return ToolContext(
        session_id="s1",
        working_directory=".",
        abort_event=asyncio.Event(),
        get_todos=lambda: list(lists.todos),
        set_todos=lists.set_todos,
        get_phases=lambda: list(lists.phases),
        set_phases=lists.set_phases,
        emit_event=emit,
    )


@pytest.mark.asyncio
async def test_todowrite_stores_list_and_reports_counts():
    lists = SessionLists()
    registry = ToolRegistry(session_tools())
    todos = [
        {"id": "1", "content": "write parser", "status": "completed", "priority": "high"},
        {"id": "2", "content": "add tests", "status": "in_progress", "priority": "medium"},
        {"id": "3", "content": "docs", "status": "pending", "priority": "low"},
    ]

    result = await registry.execute("todowrite", {"todos": todos}, _context(lists))

    assert result.success is True
    assert lists.todos == todos
    assert json.loads(result.output) == todos
    assert result.metadata["count"] == 3
    assert result.metadata["completed"] == 1
    assert result.metadata["in_progress"] == 1
    assert result.metadata["pending"] == 2


@pytest.mark.asyncio
async def test_todoread_returns_current_list():
    lists = SessionLists()
    registry = ToolRegistry(session_tools())

    empty = await registry.execute("todoread", {}, _context(lists))
    assert empty.output == "No todos."

    lists.todos = [{"id": "1", "content": "x", "status": "pending", "priority": "low"}]
    result = await registry.execute("todoread", {}, _context(lists))
    assert json.loads(result.output) == lists.todos
    assert result.metadata["pending"] == 1


@pytest.mark.asyncio
async def test_todowrite_rejects_bad_items():
    lists = SessionLists()
    registry = ToolRegistry(session_tools())

    result = await registry.execute(
        "todowrite",
        {"todos": [{"id": "1", "content": "x", "status": "done", "priority": "low"}]},
        _context(lists),
    )

    assert result.success is False
    assert "Invalid todo list" in result.error
    assert lists.todos == []


@pytest.mark.asyncio
async def test_phase_tools_round_trip():
    lists = SessionLists()
    registry = ToolRegistry(session_tools())
    phases = [
        {"id": "p1", "content": "auth", "status": "in_progress"},
        {"id": "p2", "content": "billing", "status": "pending"},
    ]

    written = await registry.execute("phasewrite", {"phases": phases}, _context(lists))
    read = await registry.execute("phaseread", {}, _context(lists))

    assert written.metadata["in_progress"] == 1
    assert written.metadata["pending"] == 1
    assert json.loads(read.output) == phases


@pytest.mark.asyncio
async def test_tools_without_context_report_unavailable():
    result = await TodoWriteTool().execute(todos=[])
    assert result.success is False
    assert result.error == "Todo functionality not available in this context."

    result = await TodoReadTool().execute()
    assert result.success is False
