"""Typed agent events and the per-agent event bus.

Every event is a frozen dataclass with a literal ``type`` tag and the id of
the session that produced it. The turn loop is the only producer for a
session; any number of subscribers may listen.
"""

import inspect
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Literal, Union

from skipper.llm import Message, ToolCall, ToolResult
from skipper.logging import get_logger

log = get_logger(__name__)


@dataclass(frozen=True)
class UserMessageEvent:
    session_id: str
    message: Message
    type: Literal["user.message"] = "user.message"


@dataclass(frozen=True)
class MessageStartEvent:
    session_id: str
    message_id: str
    type: Literal["message.start"] = "message.start"


@dataclass(frozen=True)
class MessageDeltaEvent:
    session_id: str
    message_id: str
    delta: str
    type: Literal["message.delta"] = "message.delta"


@dataclass(frozen=True)
class MessageCompleteEvent:
    session_id: str
    message: Message
    usage: dict[str, int] = field(default_factory=dict)
    aborted: bool = False
    type: Literal["message.complete"] = "message.complete"


@dataclass(frozen=True)
class ToolStartEvent:
    session_id: str
    tool_call: ToolCall
    type: Literal["tool.start"] = "tool.start"


@dataclass(frozen=True)
class ToolCompleteEvent:
    session_id: str
    tool_call: ToolCall
    result: ToolResult
    type: Literal["tool.complete"] = "tool.complete"


@dataclass(frozen=True)
class ToolPermissionRequestEvent:
    session_id: str
    tool_call: ToolCall
    type: Literal["tool.permission.request"] = "tool.permission.request"


@dataclass(frozen=True)
class ToolPermissionGrantedEvent:
    session_id: str
    tool_call: ToolCall
    allow_always: bool = False
    type: Literal["tool.permission.granted"] = "tool.permission.granted"


@dataclass(frozen=True)
class ToolPermissionDeniedEvent:
    session_id: str
    tool_call: ToolCall
    result: ToolResult
    type: Literal["tool.permission.denied"] = "tool.permission.denied"


@dataclass(frozen=True)
class CompactionPendingEvent:
    session_id: str
    current_tokens: int
    threshold: int
    messages_to_compact: int
    type: Literal["compaction.pending"] = "compaction.pending"


@dataclass(frozen=True)
class CompactionStartEvent:
    session_id: str
    messages_to_compact: int
    type: Literal["compaction.start"] = "compaction.start"


@dataclass(frozen=True)
class CompactionCompleteEvent:
    session_id: str
    compaction_id: str
    messages_pruned: int
    original_tokens: int
    compacted_tokens: int
    compression_ratio: float
    type: Literal["compaction.complete"] = "compaction.complete"


@dataclass(frozen=True)
class CompactionErrorEvent:
    session_id: str
    error: str
    type: Literal["compaction.error"] = "compaction.error"


@dataclass(frozen=True)
class ErrorEvent:
    session_id: str
    error: str
    error_type: str = ""
    type: Literal["error"] = "error"


AgentEvent = Union[
    UserMessageEvent,
    MessageStartEvent,
    MessageDeltaEvent,
    MessageCompleteEvent,
    ToolStartEvent,
    ToolCompleteEvent,
    ToolPermissionRequestEvent,
    ToolPermissionGrantedEvent,
    ToolPermissionDeniedEvent,
    CompactionPendingEvent,
    CompactionStartEvent,
    CompactionCompleteEvent,
    CompactionErrorEvent,
    ErrorEvent,
]

EventHandler = Callable[[AgentEvent], Awaitable[None] | None]


def event_to_dict(event: AgentEvent) -> dict[str, Any]:
    """Serialize an event to plain JSON-compatible data."""
    return asdict(event)


class EventBus:
    """Fan-out of agent events to subscribers, in emission order."""

    def __init__(self) -> None:
        self._subscribers: list[EventHandler] = []

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        """Register a handler and return a function that removes it."""
        self._subscribers.append(handler)

        def _unsubscribe() -> None:
            if handler in self._subscribers:
                self._subscribers.remove(handler)

        return _unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def emit(self, event: AgentEvent, *extra: EventHandler | None) -> None:
        """Deliver an event to every subscriber, then to any extra handlers.

        A failing subscriber is logged and skipped.
        """
        for handler in [*self._subscribers, *(h for h in extra if h is not None)]:
            try:
                outcome = handler(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                log.error(
                    "Event handler failed",
                    event_type=event.type,
                    session_id=event.session_id,
                    error=str(e),
                )
