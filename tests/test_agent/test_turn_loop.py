import asyncio

import pytest

from skipper.agent import Agent, TurnState
from skipper.config import Config, PermissionConfig
from skipper.exceptions import LLMAPIError, TurnInProgressError
from skipper.llm import LLMProvider, LLMResponse, Message, StreamOptions, StreamResult, ToolCall
from skipper.permissions import PermissionResponse
from skipper.tools.registry import Tool, ToolOutput, ToolRegistry


class ScriptedProvider(LLMProvider):
    """Replays queued responses; exceptions in the queue are raised."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls: list[StreamOptions] = []

    async def stream(self, options: StreamOptions) -> StreamResult:
        self.calls.append(options)
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return StreamResult.from_response(item)


class EchoTool(Tool):
    name = "echo"
    description = "Echo a value"
    parameters = {
        "type": "object",
        "properties": {"value": {"type": "string"}},
        "required": ["value"],
    }

    def __init__(self):
        self.values: list[str] = []
        self.contexts: list[object] = []

    async def execute(self, value: str, **kwargs) -> ToolOutput:
        self.values.append(value)
        self.contexts.append(kwargs.get("_context"))
        return ToolOutput(output=f"echo:{value}")


class BoomTool(Tool):
    name = "boom"
    description = "Always fails"

    async def execute(self, **kwargs) -> ToolOutput:
        raise RuntimeError("kaboom")


class BashTool(Tool):
    name = "bash"
    description = "Pretend shell"
    parameters = {"type": "object", "properties": {"command": {"type": "string"}}}

    def __init__(self):
        self.commands: list[str] = []

    async def execute(self, command: str = "", **kwargs) -> ToolOutput:
        self.commands.append(command)
        return ToolOutput(output="ran")


def _tool_response(*calls: ToolCall, content: str = "") -> LLMResponse:
    return LLMResponse(content=content, tool_calls=list(calls))


def _config(**permissions) -> Config:
    cfg = Config()
    cfg.permissions = PermissionConfig(**permissions)
    return cfg


def _agent(provider, *tools, config=None, **kwargs) -> Agent:
    return Agent(provider, ToolRegistry(list(tools)), config=config or _config(allow_all=True), **kwargs)


def _types(events, prefixes=("tool.", "message.complete")) -> list[str]:
    return [event.type for event in events if event.type.startswith(prefixes)]


@pytest.mark.asyncio
async def test_plain_answer_streams_and_completes():
    provider = ScriptedProvider(LLMResponse(content="hello there", usage={"prompt_tokens": 3, "completion_tokens": 2}))
    agent = _agent(provider)
    events = []

    final = await agent.prompt("s1", "hi", on_event=events.append)

    assert final is not None
    assert final.content == "hello there"
    assert [e.type for e in events] == ["user.message", "message.start", "message.delta", "message.complete"]
    assert events[-1].message == final
    assert [m.role for m in agent.get_messages("s1")] == ["user", "assistant"]
    assert agent.get_usage("s1")["last"]["total_tokens"] == 5
    assert agent.get_turn_state("s1") is TurnState.IDLE


@pytest.mark.asyncio
async def test_provider_receives_history_system_prompt_and_filtered_tools():
    provider = ScriptedProvider(LLMResponse(content="ok"))
    cfg = _config(allow_all=True)
    cfg.agent.tools = ["echo"]
    cfg.agent.system_prompt = "be brief"
    agent = _agent(provider, EchoTool(), BashTool(), config=cfg)

    await agent.prompt("s1", "hi")

    options = provider.calls[0]
    assert [tool["name"] for tool in options.tools] == ["echo"]
    assert options.system == "be brief"
    assert [m.content for m in options.messages] == ["hi"]
    assert options.abort_event is not None


@pytest.mark.asyncio
async def test_throwing_tool_still_reaches_message_complete():
    provider = ScriptedProvider(
        _tool_response(ToolCall(id="c1", name="boom", arguments={})),
        LLMResponse(content="recovered"),
    )
    agent = _agent(provider, BoomTool())
    events = []

    final = await agent.prompt("s1", "go", on_event=events.append)

    assert final is not None and final.content == "recovered"
    assert _types(events) == ["tool.start", "tool.complete", "message.complete"]
    tool_complete = [e for e in events if e.type == "tool.complete"][0]
    assert tool_complete.result.is_error is True
    assert "kaboom" in tool_complete.result.result


@pytest.mark.asyncio
async def test_denied_bash_emits_denial_then_completes():
    bash = BashTool()
    provider = ScriptedProvider(
        _tool_response(ToolCall(id="c1", name="bash", arguments={"command": "rm -rf /"})),
        LLMResponse(content="ok, not running that"),
    )
    agent = _agent(provider, bash, config=_config(always_deny=["bash"]))
    events = []

    await agent.prompt("s1", "clean up", on_event=events.append)

    assert _types(events) == ["tool.permission.denied", "message.complete"]
    assert bash.commands == []
    history = agent.get_messages("s1")
    assert history[1].tool_calls[0].name == "bash"
    denial = history[2].tool_results[0]
    assert denial.id == "c1"
    assert denial.is_error is True
    assert denial.result == 'Tool "bash" is not permitted'


@pytest.mark.asyncio
async def test_two_sequential_calls_where_second_throws():
    echo = EchoTool()
    provider = ScriptedProvider(
        _tool_response(
            ToolCall(id="c1", name="echo", arguments={"value": "a"}),
            ToolCall(id="c2", name="boom", arguments={}),
        ),
        LLMResponse(content="done"),
    )
    agent = _agent(provider, echo, BoomTool())
    events = []

    await agent.prompt("s1", "go", on_event=events.append)

    assert _types(events) == ["tool.start", "tool.complete", "tool.start", "tool.complete", "message.complete"]
    results = agent.get_messages("s1")[2].tool_results
    assert [r.id for r in results] == ["c1", "c2"]
    assert results[0].is_error is False
    assert results[0].result == "echo:a"
    assert results[1].is_error is True
    # The follow-up round sees both results.
    assert provider.calls[1].messages[-1].tool_results == results


@pytest.mark.asyncio
async def test_single_denial_does_not_abort_sibling_calls():
    echo = EchoTool()
    provider = ScriptedProvider(
        _tool_response(
            ToolCall(id="c1", name="bash", arguments={"command": "ls"}),
            ToolCall(id="c2", name="echo", arguments={"value": "b"}),
        ),
        LLMResponse(content="done"),
    )
    agent = _agent(provider, echo, BashTool(), config=_config(always_deny=["bash"], always_allow=["echo"]))
    events = []

    await agent.prompt("s1", "go", on_event=events.append)

    assert _types(events) == ["tool.permission.denied", "tool.start", "tool.complete", "message.complete"]
    assert echo.values == ["b"]


@pytest.mark.asyncio
async def test_ask_flow_emits_request_then_granted_and_remembers_allow_always():
    asked = []

    def callback(call):
        asked.append(call.name)
        return PermissionResponse.ALLOW_ALWAYS

    echo = EchoTool()
    call = ToolCall(id="c1", name="echo", arguments={"value": "x"})
    provider = ScriptedProvider(
        _tool_response(call),
        LLMResponse(content="first"),
        _tool_response(ToolCall(id="c2", name="echo", arguments={"value": "y"})),
        LLMResponse(content="second"),
    )
    agent = _agent(provider, echo, config=_config(), permission_callback=callback)
    events = []

    await agent.prompt("s1", "one", on_event=events.append)
    assert _types(events) == [
        "tool.permission.request",
        "tool.permission.granted",
        "tool.start",
        "tool.complete",
        "message.complete",
    ]
    granted = [e for e in events if e.type == "tool.permission.granted"][0]
    assert granted.allow_always is True

    events.clear()
    await agent.prompt("s1", "two", on_event=events.append)
    assert _types(events) == ["tool.start", "tool.complete", "message.complete"]
    assert asked == ["echo"]
    assert echo.values == ["x", "y"]


@pytest.mark.asyncio
async def test_user_denial_is_reported_as_denied_by_user():
    provider = ScriptedProvider(
        _tool_response(ToolCall(id="c1", name="bash", arguments={})),
        LLMResponse(content="fine"),
    )
    agent = _agent(provider, BashTool(), config=_config(), permission_callback=lambda call: "deny")
    events = []

    await agent.prompt("s1", "go", on_event=events.append)

    assert _types(events) == ["tool.permission.request", "tool.permission.denied", "message.complete"]
    denied = [e for e in events if e.type == "tool.permission.denied"][0]
    assert denied.result.result == 'Tool "bash" execution denied by user'
    assert agent.get_permission_gate("s1").is_denied_for_session("bash") is False


@pytest.mark.asyncio
async def test_permission_callback_failure_fails_only_that_call():
    def callback(call):
        raise RuntimeError("no tty")

    provider = ScriptedProvider(
        _tool_response(ToolCall(id="c1", name="bash", arguments={})),
        LLMResponse(content="carried on"),
    )
    bash = BashTool()
    agent = _agent(provider, bash, config=_config(), permission_callback=callback)
    events = []

    final = await agent.prompt("s1", "go", on_event=events.append)

    assert final is not None and final.content == "carried on"
    assert _types(events) == ["tool.permission.request", "tool.complete", "message.complete"]
    complete = [e for e in events if e.type == "tool.complete"][0]
    assert complete.result.is_error is True
    assert "no tty" in complete.result.result
    assert bash.commands == []


@pytest.mark.asyncio
async def test_unknown_tool_and_invalid_arguments_become_error_results():
    echo = EchoTool()
    provider = ScriptedProvider(
        _tool_response(
            ToolCall(id="c1", name="nope", arguments={}),
            ToolCall(id="c2", name="echo", arguments={}),
        ),
        LLMResponse(content="done"),
    )
    agent = _agent(provider, echo)

    await agent.prompt("s1", "go")

    results = agent.get_messages("s1")[2].tool_results
    assert results[0].result == "Unknown tool: nope"
    assert results[1].result.startswith("Invalid parameters:")
    assert all(r.is_error for r in results)
    assert echo.values == []


@pytest.mark.asyncio
async def test_tool_context_is_shared_within_a_turn():
    echo = EchoTool()
    provider = ScriptedProvider(
        _tool_response(
            ToolCall(id="c1", name="echo", arguments={"value": "a"}),
            ToolCall(id="c2", name="echo", arguments={"value": "b"}),
        ),
        _tool_response(ToolCall(id="c3", name="echo", arguments={"value": "c"})),
        LLMResponse(content="done"),
    )
    agent = _agent(provider, echo)

    await agent.prompt("s1", "go")

    assert len(echo.contexts) == 3
    assert echo.contexts[0] is echo.contexts[1] is echo.contexts[2]
    assert echo.contexts[0].session_id == "s1"


@pytest.mark.asyncio
async def test_provider_error_ends_turn_with_error_event_and_session_survives():
    provider = ScriptedProvider(
        LLMAPIError("Ollama API error 500: Internal Server Error", status_code=500),
        LLMResponse(content="back"),
    )
    agent = _agent(provider)
    events = []
    states_at_error = []

    def record(event):
        events.append(event)
        if event.type == "error":
            states_at_error.append(agent.get_turn_state("s1"))

    final = await agent.prompt("s1", "first", on_event=record)

    assert final is None
    assert events[-1].type == "error"
    assert "500" in events[-1].error
    assert events[-1].error_type == "LLMAPIError"
    assert states_at_error == [TurnState.ERRORED]
    assert agent.get_turn_state("s1") is TurnState.IDLE
    assert agent.is_busy("s1") is False

    final = await agent.prompt("s1", "second")
    assert final is not None and final.content == "back"
    assert agent.get_turn_state("s1") is TurnState.IDLE


@pytest.mark.asyncio
async def test_concurrent_prompt_on_same_session_is_rejected():
    release = asyncio.Event()

    class BlockingProvider(LLMProvider):
        async def stream(self, options):
            await release.wait()
            return StreamResult.from_response(LLMResponse(content="done"))

    agent = _agent(BlockingProvider())
    first = asyncio.create_task(agent.prompt("s1", "one"))
    await asyncio.sleep(0)
    assert agent.is_busy("s1") is True

    with pytest.raises(TurnInProgressError):
        await agent.prompt("s1", "two")

    # Other sessions are unaffected.
    other = asyncio.create_task(agent.prompt("s2", "three"))
    release.set()
    assert (await first).content == "done"
    assert (await other).content == "done"
    assert [m.content for m in agent.get_messages("s1")] == ["one", "done"]


@pytest.mark.asyncio
async def test_loop_detection_stops_repeated_identical_calls():
    echo = EchoTool()

    class RepeatingProvider(LLMProvider):
        async def stream(self, options):
            return StreamResult.from_response(
                _tool_response(ToolCall(id="c", name="echo", arguments={"value": "same"}))
            )

    agent = _agent(RepeatingProvider(), echo)
    events = []

    final = await agent.prompt("s1", "go", on_event=events.append)

    assert final is None
    assert events[-1].type == "error"
    assert "stuck in loop" in events[-1].error
    assert len(echo.values) == 4


@pytest.mark.asyncio
async def test_iteration_limit_ends_turn():
    counter = {"n": 0}

    class CountingProvider(LLMProvider):
        async def stream(self, options):
            counter["n"] += 1
            return StreamResult.from_response(
                _tool_response(ToolCall(id=f"c{counter['n']}", name="echo", arguments={"value": str(counter["n"])}))
            )

    cfg = _config(allow_all=True)
    cfg.agent.max_iterations = 3
    agent = _agent(CountingProvider(), EchoTool(), config=cfg)
    events = []

    assert await agent.prompt("s1", "go", on_event=events.append) is None
    assert events[-1].type == "error"
    assert "maximum iterations (3)" in events[-1].error
    assert counter["n"] == 3


def test_sessions_do_not_share_permissions():
    agent = _agent(ScriptedProvider(), config=_config())

    agent.allow_tool_for_session("a", "bash")

    assert agent.get_permission_gate("a").is_allowed_for_session("bash") is True
    assert agent.get_permission_gate("b").is_allowed_for_session("bash") is False

    agent.deny_tool_for_session("a", "bash")
    assert agent.get_permission_gate("a").is_denied_for_session("bash") is True
    agent.clear_tool_permissions("a")
    assert agent.get_permission_gate("a").session_denied == frozenset()


@pytest.mark.asyncio
async def test_event_bus_subscribers_see_the_same_stream():
    provider = ScriptedProvider(LLMResponse(content="hey"))
    agent = _agent(provider)
    bus_events = []
    call_events = []
    unsubscribe = agent.events.subscribe(bus_events.append)

    await agent.prompt("s1", "hi", on_event=call_events.append)
    unsubscribe()

    assert [e.type for e in bus_events] == [e.type for e in call_events]
    assert all(e.session_id == "s1" for e in bus_events)


@pytest.mark.asyncio
async def test_open_session_seeds_history():
    provider = ScriptedProvider(LLMResponse(content="continuing"))
    agent = _agent(provider)
    earlier = [Message(role="user", content="before"), Message(role="assistant", content="ok")]

    session_id = agent.open_session("resumed", earlier)
    await agent.prompt(session_id, "again")

    assert [m.content for m in provider.calls[0].messages] == ["before", "ok", "again"]
