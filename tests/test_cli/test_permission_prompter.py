import asyncio
import io
import threading

import pytest
from rich.console import Console

import skipper.cli as cli_module
from skipper.cli import EventRenderer, PermissionPrompter
from skipper.events import ToolPermissionDeniedEvent
from skipper.llm import ToolCall, ToolResult
from skipper.permissions import PermissionResponse


def _console() -> Console:
    return Console(file=io.StringIO(), force_terminal=False, width=100)


@pytest.mark.asyncio
async def test_prompter_waits_off_the_event_loop(monkeypatch):
    release = threading.Event()
    asked_on: list[int] = []

    def fake_ask(*args, **kwargs):
        asked_on.append(threading.get_ident())
        release.wait(timeout=5)
        return "a"

    monkeypatch.setattr(cli_module.Prompt, "ask", fake_ask)
    prompter = PermissionPrompter(_console())

    pending = asyncio.create_task(prompter(ToolCall(id="c1", name="bash", arguments={"command": "ls"})))
    # The loop still runs other work while the user has not answered.
    await asyncio.sleep(0.05)
    assert not pending.done()
    release.set()

    assert await pending is PermissionResponse.ALLOW_ALWAYS
    assert asked_on and asked_on[0] != threading.get_ident()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("choice", "expected"),
    [("y", PermissionResponse.ALLOW_ONCE), ("n", PermissionResponse.DENY)],
)
async def test_prompter_maps_choices(monkeypatch, choice, expected):
    monkeypatch.setattr(cli_module.Prompt, "ask", lambda *args, **kwargs: choice)
    console = _console()

    response = await PermissionPrompter(console)(ToolCall(id="c1", name="write", arguments={"path": "a.txt"}))

    assert response is expected
    assert "Allow tool write?" in console.file.getvalue()


def test_renderer_shows_denied_tool():
    console = _console()
    call = ToolCall(id="c1", name="bash", arguments={})
    renderer = EventRenderer(console)

    renderer(ToolPermissionDeniedEvent(
        session_id="s1",
        tool_call=call,
        result=ToolResult(id="c1", name="bash", result='Tool "bash" is not permitted', is_error=True),
    ))

    assert 'bash denied: Tool "bash" is not permitted' in console.file.getvalue()
