"""Turn loop: drives provider and tool round-trips for each session."""

import asyncio
import json
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable

import structlog

from skipper.compaction import CompactionEngine, CompactionResult, CompactionStats
from skipper.config import Config
from skipper.events import (
    AgentEvent,
    CompactionCompleteEvent,
    CompactionErrorEvent,
    CompactionPendingEvent,
    CompactionStartEvent,
    ErrorEvent,
    EventBus,
    EventHandler,
    MessageCompleteEvent,
    MessageDeltaEvent,
    MessageStartEvent,
    ToolCompleteEvent,
    ToolPermissionDeniedEvent,
    ToolPermissionGrantedEvent,
    ToolPermissionRequestEvent,
    ToolStartEvent,
    UserMessageEvent,
)
from skipper.exceptions import (
    NothingToCompactError,
    ToolExecutionError,
    ToolNotFoundError,
    ToolValidationError,
    TurnInProgressError,
    TurnLimitError,
)
from skipper.llm import LLMProvider, LLMResponse, Message, StreamOptions, ToolCall, ToolResult, new_id
from skipper.logging import get_logger
from skipper.permissions import PermissionCallback, PermissionDecision, PermissionGate
from skipper.session import MessageStore, SessionStore
from skipper.tools.registry import ToolContext, ToolRegistry

log = get_logger(__name__)

TitleCallback = Callable[[str, list[Message]], Awaitable[Any]]
Emit = Callable[[AgentEvent], Awaitable[None]]


class TurnState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    TOOL_PENDING = "tool_pending"
    PERMISSION_PENDING = "permission_pending"
    TOOL_EXECUTING = "tool_executing"
    COMPACTING = "compacting"
    COMPLETING = "completing"
    ERRORED = "errored"


def _empty_usage() -> dict[str, int]:
    """Create an empty usage bucket."""
    return {
        "prompt_tokens": 0,
        "completion_tokens": 0,
        "total_tokens": 0,
    }


def _accumulate_usage(target: dict[str, int], usage: dict[str, int] | None) -> None:
    """Add usage values into target totals."""
    if not usage:
        return
    prompt = int(usage.get("prompt_tokens", 0))
    completion = int(usage.get("completion_tokens", 0))
    total = int(usage.get("total_tokens", prompt + completion))
    target["prompt_tokens"] += prompt
    target["completion_tokens"] += completion
    target["total_tokens"] += total


def _call_signature(calls: list[ToolCall]) -> str:
    return "|".join(sorted(
        f"{call.name}:{json.dumps(call.arguments, sort_keys=True, default=str)}"
        for call in calls
    ))


def messages_for_provider(messages: list[Message]) -> list[Message]:
    """Drop assistant tool calls whose results are not the next message.

    Compaction can prune the results of a call kept in the inception window;
    providers reject calls that have no matching results.
    """
    shaped: list[Message] = []
    for index, message in enumerate(messages):
        following = messages[index + 1] if index + 1 < len(messages) else None
        if message.role == "assistant" and message.tool_calls and not (following and following.tool_results):
            message = replace(message, tool_calls=None)
        shaped.append(message)
    return shaped


@dataclass
class SessionState:
    """Everything the loop keeps for one session. Never shared across sessions."""

    session_id: str
    gate: PermissionGate
    messages: list[Message] = field(default_factory=list)
    todos: list[dict[str, Any]] = field(default_factory=list)
    phases: list[dict[str, Any]] = field(default_factory=list)
    extensions: dict[str, Any] = field(default_factory=dict)
    state: TurnState = TurnState.IDLE
    busy: bool = False
    abort_event: asyncio.Event | None = None
    titled: bool = False
    last_usage: dict[str, int] = field(default_factory=_empty_usage)
    total_usage: dict[str, int] = field(default_factory=_empty_usage)

    def get_todos(self) -> list[dict[str, Any]]:
        return [dict(item) for item in self.todos]

    def set_todos(self, todos: list[dict[str, Any]]) -> None:
        self.todos = [dict(item) for item in todos]

    def get_phases(self) -> list[dict[str, Any]]:
        return [dict(item) for item in self.phases]

    def set_phases(self, phases: list[dict[str, Any]]) -> None:
        self.phases = [dict(item) for item in phases]


@dataclass
class _Round:
    """One provider round as seen by the loop."""

    message_id: str
    started: bool
    text: str
    response: LLMResponse | None


class Agent:
    """Runs turns for any number of independent sessions."""

    def __init__(
        self,
        provider: LLMProvider,
        tools: ToolRegistry,
        *,
        config: Config | None = None,
        store: MessageStore | None = None,
        title_generator: TitleCallback | None = None,
        permission_callback: PermissionCallback | None = None,
        compaction_engine: CompactionEngine | None = None,
    ):
        """Initialize the agent.

        Args:
            provider: LLM provider used for every round
            tools: Registry of callable tools
            config: Agent configuration (defaults when omitted)
            store: Optional persistence for appended and compacted messages
            title_generator: Optional callback run once after a session's first turn
            permission_callback: Confirmation hook for tools that need asking
            compaction_engine: Optional engine override
        """
        self.provider = provider
        self.tools = tools
        self.config = config or Config()
        self.store = store
        self.title_generator = title_generator
        self.permission_callback = permission_callback
        self.model = self.config.model.model
        self.working_directory = Path(self.config.agent.working_directory).expanduser().resolve()
        self.compaction = compaction_engine or CompactionEngine(provider, self.model, self.config.compaction)
        self.events = EventBus()
        self._sessions: dict[str, SessionState] = {}
        self._background_tasks: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Sessions

    def open_session(self, session_id: str | None = None, messages: list[Message] | None = None) -> str:
        """Register a session, optionally seeded with existing history."""
        key = session_id or new_id("ses")
        if key in self._sessions:
            if messages is not None:
                self.set_messages(key, messages)
            return key
        self._sessions[key] = SessionState(
            session_id=key,
            gate=PermissionGate(self.config.permissions.model_copy(deep=True), self.permission_callback),
            messages=list(messages or []),
            # Resumed sessions already have a title.
            titled=bool(messages),
        )
        log.debug("Session opened", session_id=key, messages=len(messages or []))
        return key

    def close_session(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is not None and session.busy:
            raise TurnInProgressError(session_id)
        self._sessions.pop(session_id, None)

    def _session(self, session_id: str) -> SessionState:
        if session_id not in self._sessions:
            self.open_session(session_id)
        return self._sessions[session_id]

    def get_messages(self, session_id: str) -> list[Message]:
        return list(self._session(session_id).messages)

    def set_messages(self, session_id: str, messages: list[Message]) -> None:
        session = self._session(session_id)
        if session.busy:
            raise TurnInProgressError(session_id)
        session.messages = list(messages)

    def clear_messages(self, session_id: str) -> None:
        self.set_messages(session_id, [])

    def get_todos(self, session_id: str) -> list[dict[str, Any]]:
        return self._session(session_id).get_todos()

    def set_todos(self, session_id: str, todos: list[dict[str, Any]]) -> None:
        self._session(session_id).set_todos(todos)

    def get_phases(self, session_id: str) -> list[dict[str, Any]]:
        return self._session(session_id).get_phases()

    def set_phases(self, session_id: str, phases: list[dict[str, Any]]) -> None:
        self._session(session_id).set_phases(phases)

    def get_turn_state(self, session_id: str) -> TurnState:
        return self._session(session_id).state

    def is_busy(self, session_id: str) -> bool:
        return self._session(session_id).busy

    def get_usage(self, session_id: str) -> dict[str, dict[str, int]]:
        session = self._session(session_id)
        return {"last": dict(session.last_usage), "total": dict(session.total_usage)}

    # ------------------------------------------------------------------
    # Permissions

    def get_permission_gate(self, session_id: str) -> PermissionGate:
        return self._session(session_id).gate

    def set_permission_callback(self, callback: PermissionCallback | None) -> None:
        """Set the confirmation hook for current and future sessions."""
        self.permission_callback = callback
        for session in self._sessions.values():
            session.gate.set_request_callback(callback)

    def allow_tool_for_session(self, session_id: str, tool_name: str) -> None:
        self._session(session_id).gate.allow_for_session(tool_name)

    def deny_tool_for_session(self, session_id: str, tool_name: str) -> None:
        self._session(session_id).gate.deny_for_session(tool_name)

    def clear_tool_permissions(self, session_id: str) -> None:
        self._session(session_id).gate.clear_session_permissions()

    # ------------------------------------------------------------------
    # Turn

    def abort(self, session_id: str) -> bool:
        """Signal the running turn of a session to stop. Returns False when idle."""
        session = self._sessions.get(session_id)
        if session is None or not session.busy or session.abort_event is None:
            return False
        log.info("Abort requested", session_id=session_id)
        session.abort_event.set()
        return True

    async def prompt(
        self,
        session_id: str,
        text: str,
        on_event: EventHandler | None = None,
        abort_event: asyncio.Event | None = None,
    ) -> Message | None:
        """Run one turn and return the final assistant message.

        Provider, persistence and loop-guard failures are reported as an
        ``error`` event and the turn returns None; the session stays usable.

        Raises:
            TurnInProgressError: If the session already has a running turn
        """
        session = self._session(session_id)
        if session.busy:
            raise TurnInProgressError(session_id)

        session.busy = True
        session.abort_event = abort_event or asyncio.Event()
        turn_usage = _empty_usage()

        async def emit(event: AgentEvent) -> None:
            await self.events.emit(event, on_event)

        try:
            with structlog.contextvars.bound_contextvars(session_id=session_id):
                final = await self._run_turn(session, text, emit, turn_usage)
        finally:
            session.last_usage = turn_usage
            _accumulate_usage(session.total_usage, turn_usage)
            session.busy = False
            session.abort_event = None
            session.state = TurnState.IDLE

        if final is not None:
            self._maybe_generate_title(session)
        return final

    async def _run_turn(
        self,
        session: SessionState,
        text: str,
        emit: Emit,
        turn_usage: dict[str, int],
    ) -> Message | None:
        abort_event = session.abort_event
        assert abort_event is not None
        try:
            user_message = Message(role="user", content=text)
            await self._append(session, user_message)
            await emit(UserMessageEvent(session_id=session.session_id, message=user_message))

            ctx = ToolContext(
                session_id=session.session_id,
                working_directory=self.working_directory,
                abort_event=abort_event,
                get_todos=session.get_todos,
                set_todos=session.set_todos,
                get_phases=session.get_phases,
                set_phases=session.set_phases,
                emit_event=emit,
                extensions=session.extensions,
            )

            max_iterations = self.config.agent.max_iterations
            window = self.config.agent.loop_detection_window
            recent_signatures: list[str] = []

            for _ in range(max_iterations):
                session.state = TurnState.STREAMING
                round_ = await self._stream_round(session, emit)

                if round_.response is None:
                    message = Message(id=round_.message_id, role="assistant", content=round_.text)
                    return await self._finish(session, message, round_.started, emit, turn_usage, aborted=True)

                response = round_.response
                _accumulate_usage(turn_usage, response.usage)
                if not response.tool_calls:
                    message = Message(id=round_.message_id, role="assistant", content=response.content)
                    return await self._finish(session, message, round_.started, emit, turn_usage)

                recent_signatures.append(_call_signature(response.tool_calls))
                recent_signatures = recent_signatures[-window:]
                if window > 0 and len(recent_signatures) == window and len(set(recent_signatures)) == 1:
                    raise TurnLimitError(
                        "Agent stuck in loop: repeatedly calling same tools with same arguments"
                    )

                session.state = TurnState.TOOL_PENDING
                results = await self._run_tool_calls(session, response.tool_calls, ctx, emit)

                assistant_message = Message(
                    id=round_.message_id,
                    role="assistant",
                    content=response.content,
                    tool_calls=list(response.tool_calls),
                )
                await self._append(session, assistant_message)
                await self._append(session, Message(role="user", content="", tool_results=results))

                if abort_event.is_set():
                    log.info("Turn aborted during tool execution")
                    return await self._finish(
                        session, assistant_message, round_.started, emit, turn_usage,
                        aborted=True, append=False,
                    )

                await self._maybe_compact(session, emit)

            raise TurnLimitError(f"Agent loop exceeded maximum iterations ({max_iterations})")
        except asyncio.CancelledError:
            session.state = TurnState.ERRORED
            raise
        except Exception as e:
            session.state = TurnState.ERRORED
            log.error("Turn failed", error=str(e), error_type=type(e).__name__)
            await emit(ErrorEvent(
                session_id=session.session_id,
                error=str(e),
                error_type=type(e).__name__,
            ))
            return None

    async def _stream_round(self, session: SessionState, emit: Emit) -> _Round:
        """Stream one provider round. A None response means the round was aborted."""
        abort_event = session.abort_event
        options = StreamOptions(
            model=self.model,
            messages=messages_for_provider(session.messages),
            tools=self.tools.get_definitions(self.config.agent.tools) or None,
            system=self.config.agent.system_prompt,
            temperature=self.config.model.temperature,
            max_tokens=self.config.model.max_tokens,
            abort_event=abort_event,
        )
        message_id = new_id()
        started = False
        parts: list[str] = []

        if abort_event is not None and abort_event.is_set():
            return _Round(message_id, started, "", None)

        result = await self.provider.stream(options)
        async for chunk in result:
            if not started:
                await emit(MessageStartEvent(session_id=session.session_id, message_id=message_id))
                started = True
            parts.append(chunk.text)
            await emit(MessageDeltaEvent(session_id=session.session_id, message_id=message_id, delta=chunk.text))
            if abort_event is not None and abort_event.is_set():
                break

        if abort_event is not None and abort_event.is_set():
            await result.aclose()
            log.info("Turn aborted while streaming", chars=sum(len(part) for part in parts))
            return _Round(message_id, started, "".join(parts), None)

        return _Round(message_id, started, "".join(parts), await result.response())

    async def _finish(
        self,
        session: SessionState,
        message: Message,
        started: bool,
        emit: Emit,
        turn_usage: dict[str, int],
        aborted: bool = False,
        append: bool = True,
    ) -> Message:
        session.state = TurnState.COMPLETING
        if append:
            await self._append(session, message)
        if not started:
            await emit(MessageStartEvent(session_id=session.session_id, message_id=message.id))
        await emit(MessageCompleteEvent(
            session_id=session.session_id,
            message=message,
            usage=dict(turn_usage),
            aborted=aborted,
        ))
        return message

    async def _append(self, session: SessionState, message: Message) -> None:
        """Persist then append, so memory never runs ahead of storage."""
        if self.store is not None:
            await self.store.append_message(session.session_id, message)
        session.messages.append(message)

    # ------------------------------------------------------------------
    # Tools

    async def _run_tool_calls(
        self,
        session: SessionState,
        calls: list[ToolCall],
        ctx: ToolContext,
        emit: Emit,
    ) -> list[ToolResult]:
        """Run calls one after another in model order."""
        results: list[ToolResult] = []
        for index, call in enumerate(calls):
            if ctx.abort_event.is_set():
                results.extend(
                    ToolResult(id=pending.id, name=pending.name, result="Tool execution aborted", is_error=True)
                    for pending in calls[index:]
                )
                break
            results.append(await self._run_tool_call(session, call, ctx, emit))
        return results

    async def _run_tool_call(
        self,
        session: SessionState,
        call: ToolCall,
        ctx: ToolContext,
        emit: Emit,
    ) -> ToolResult:
        gate = session.gate
        decision = gate.get_permission_decision(call.name)
        if decision is PermissionDecision.ASK:
            session.state = TurnState.PERMISSION_PENDING
            await emit(ToolPermissionRequestEvent(session_id=session.session_id, tool_call=call))

        try:
            permitted = await gate.check_permission(call)
        except Exception as e:
            log.error("Permission callback failed", tool=call.name, error=str(e))
            result = ToolResult(
                id=call.id,
                name=call.name,
                result=f"Permission check failed: {e}",
                is_error=True,
            )
            await emit(ToolCompleteEvent(session_id=session.session_id, tool_call=call, result=result))
            return result

        if not permitted:
            reason = (
                f'Tool "{call.name}" execution denied by user'
                if decision is PermissionDecision.ASK
                else f'Tool "{call.name}" is not permitted'
            )
            log.info("Tool call denied", tool=call.name, decision=decision.value)
            result = ToolResult(id=call.id, name=call.name, result=reason, is_error=True)
            await emit(ToolPermissionDeniedEvent(session_id=session.session_id, tool_call=call, result=result))
            return result

        if decision is PermissionDecision.ASK:
            await emit(ToolPermissionGrantedEvent(
                session_id=session.session_id,
                tool_call=call,
                allow_always=gate.is_allowed_for_session(call.name),
            ))

        session.state = TurnState.TOOL_EXECUTING
        await emit(ToolStartEvent(session_id=session.session_id, tool_call=call))
        result = await self._execute_tool(call, ctx)
        await emit(ToolCompleteEvent(session_id=session.session_id, tool_call=call, result=result))
        return result

    async def _execute_tool(self, call: ToolCall, ctx: ToolContext) -> ToolResult:
        """Execute through the registry; every failure becomes an error result."""
        try:
            output = await self.tools.execute(call.name, call.arguments, ctx)
        except (ToolNotFoundError, ToolValidationError) as e:
            return ToolResult(id=call.id, name=call.name, result=str(e), is_error=True)
        except ToolExecutionError as e:
            return ToolResult(id=call.id, name=call.name, result=f"Tool execution error: {e.reason}", is_error=True)
        except Exception as e:
            log.error("Tool raised outside the registry", tool=call.name, error=str(e))
            return ToolResult(id=call.id, name=call.name, result=f"Tool execution error: {e}", is_error=True)

        if output.success:
            return ToolResult(id=call.id, name=call.name, result=output.output)
        return ToolResult(id=call.id, name=call.name, result=output.error or output.output, is_error=True)

    # ------------------------------------------------------------------
    # Compaction

    def should_compact(self, session_id: str) -> CompactionStats | None:
        return self.compaction.should_compact(self._session(session_id).messages)

    async def _maybe_compact(self, session: SessionState, emit: Emit) -> None:
        stats = self.compaction.should_compact(session.messages)
        if stats is None or not self.compaction.get_config().auto_compact:
            return
        await emit(CompactionPendingEvent(
            session_id=session.session_id,
            current_tokens=stats.current_tokens,
            threshold=stats.threshold,
            messages_to_compact=stats.messages_to_compact,
        ))
        await self._compact(session, emit, stats.messages_to_compact)

    async def _compact(self, session: SessionState, emit: Emit, count: int) -> CompactionResult | None:
        """Summarize and swap the history. On failure the history is left as it was."""
        previous_state = session.state
        session.state = TurnState.COMPACTING
        await emit(CompactionStartEvent(session_id=session.session_id, messages_to_compact=count))

        snapshot = session.messages
        try:
            result = await self.compaction.compact(snapshot)
            compacted = self.compaction.build_compacted_messages(snapshot, result.summary)
            if self.store is not None:
                await self.store.replace_messages(session.session_id, compacted)
        except Exception as e:
            log.warning("Compaction failed", error=str(e), error_type=type(e).__name__)
            session.state = previous_state
            await emit(CompactionErrorEvent(session_id=session.session_id, error=str(e)))
            return None

        session.messages = compacted
        session.state = previous_state
        log.info(
            "Conversation compacted",
            messages_pruned=result.messages_pruned,
            original_tokens=result.original_tokens,
            compacted_tokens=result.compacted_tokens,
        )
        if isinstance(self.store, SessionStore):
            try:
                await self.store.record_compaction(
                    session.session_id,
                    result.compaction_id,
                    result.summary,
                    result.original_tokens,
                    result.compacted_tokens,
                    result.messages_pruned,
                )
            except Exception as e:
                log.warning("Failed to record compaction history", error=str(e))
        await emit(CompactionCompleteEvent(
            session_id=session.session_id,
            compaction_id=result.compaction_id,
            messages_pruned=result.messages_pruned,
            original_tokens=result.original_tokens,
            compacted_tokens=result.compacted_tokens,
            compression_ratio=result.compression_ratio,
        ))
        return result

    async def run_compaction(
        self,
        session_id: str,
        on_event: EventHandler | None = None,
    ) -> CompactionResult | None:
        """Compact a session now, regardless of thresholds.

        Returns:
            The compaction result, or None if summarization failed

        Raises:
            TurnInProgressError: If a turn is running for the session
            NothingToCompactError: If the history has no prunable middle
        """
        session = self._session(session_id)
        if session.busy:
            raise TurnInProgressError(session_id)
        count = self.compaction.messages_to_compact(session.messages)
        if count == 0:
            cfg = self.compaction.get_config()
            raise NothingToCompactError(len(session.messages), cfg.inception_count, cfg.working_window_count)

        async def emit(event: AgentEvent) -> None:
            await self.events.emit(event, on_event)

        session.busy = True
        try:
            with structlog.contextvars.bound_contextvars(session_id=session_id):
                return await self._compact(session, emit, count)
        finally:
            session.busy = False
            session.state = TurnState.IDLE

    # ------------------------------------------------------------------
    # Titles

    def _maybe_generate_title(self, session: SessionState) -> None:
        if self.title_generator is None or session.titled:
            return
        session.titled = True
        task = asyncio.create_task(self._generate_title(session.session_id, list(session.messages)))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _generate_title(self, session_id: str, messages: list[Message]) -> None:
        assert self.title_generator is not None
        try:
            await self.title_generator(session_id, messages)
        except Exception as e:
            log.warning("Title generation failed", session_id=session_id, error=str(e))

    async def wait_for_background_tasks(self) -> None:
        """Wait for pending title generation."""
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)
