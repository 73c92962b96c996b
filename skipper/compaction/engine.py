"""Context compaction: summarize the middle of a conversation, keep both ends."""

import json
import math
from dataclasses import dataclass
from typing import Any

from skipper.compaction.tokens import (
    estimate_conversation_tokens,
    estimate_tokens,
    get_model_limit,
)
from skipper.config import CompactionConfig
from skipper.exceptions import NothingToCompactError
from skipper.llm import LLMProvider, Message, StreamOptions, new_id
from skipper.logging import get_logger

log = get_logger(__name__)

SUMMARY_MARKER = "[Previous conversation summary]"
SUMMARY_SYSTEM_PROMPT = "You are a helpful assistant that creates structured summaries."
SUMMARY_PROMPT = """You are a conversation summarizer. Summarize the following conversation history into a structured summary that captures all important context.

The summary should include:
## Tasks Completed
- [Bullet list of completed tasks with outcomes]

## Files Modified
- [List of files with brief description of changes]

## Key Decisions
- [Important decisions made and their rationale]

## Problems Encountered
- [Any errors, blockers, or issues]

## Current State
[Where we are - 1-2 sentences]

## Next Steps
- [Unfinished work or pending items]

Be thorough but concise. This summary will replace the original messages to maintain context.

Conversation to summarize:
"""

_RESULT_PREVIEW_CHARS = 200


@dataclass(frozen=True)
class CompactionStats:
    """Why compaction is due."""

    current_tokens: int
    threshold: int
    messages_to_compact: int


@dataclass(frozen=True)
class CompactionResult:
    """Outcome of one summarization pass. The caller builds the new history."""

    compaction_id: str
    summary: str
    original_tokens: int
    compacted_tokens: int
    messages_pruned: int
    compression_ratio: float


def is_summary_message(message: Message) -> bool:
    """Return whether a message is a synthetic compaction summary."""
    return message.role == "assistant" and message.content.startswith(SUMMARY_MARKER)


def _preview(value: Any) -> str:
    text = value if isinstance(value, str) else json.dumps(value, default=str)
    if len(text) > _RESULT_PREVIEW_CHARS:
        return text[:_RESULT_PREVIEW_CHARS] + "..."
    return text


def format_messages_for_summary(messages: list[Message]) -> str:
    """Render messages as a plain transcript for the summarization model."""
    parts: list[str] = []
    for msg in messages:
        role = "User" if msg.role == "user" else "Assistant"
        if msg.content:
            parts.append(f"{role}: {msg.content}")
        for call in msg.tool_calls or []:
            parts.append(f"{role} called tool: {call.name}")
        for result in msg.tool_results or []:
            status = "failed" if result.is_error else "succeeded"
            parts.append(f"Tool {result.name} {status}: {_preview(result.result)}")
    return "\n\n".join(parts)


class CompactionEngine:
    """Decides when history must shrink and produces the summary.

    Holds configuration only; message lists are owned by the caller and are
    never mutated here.
    """

    def __init__(
        self,
        provider: LLMProvider,
        model: str,
        config: CompactionConfig | None = None,
    ):
        self.provider = provider
        self.model = model
        self._config = config.model_copy() if config is not None else CompactionConfig()

    def get_config(self) -> CompactionConfig:
        return self._config.model_copy()

    def update_config(self, **changes: Any) -> None:
        """Apply field updates, re-validating the result."""
        self._config = CompactionConfig.model_validate({**self._config.model_dump(), **changes})

    def _window_bounds(self, count: int) -> tuple[int, int]:
        """Return (end of inception window, start of working window)."""
        inception_end = min(self._config.inception_count, count)
        working_start = max(inception_end, count - self._config.working_window_count)
        return inception_end, working_start

    def messages_to_compact(self, messages: list[Message]) -> int:
        """Number of messages between the inception and working windows."""
        inception_end, working_start = self._window_bounds(len(messages))
        return max(0, working_start - inception_end)

    def should_compact(self, messages: list[Message]) -> CompactionStats | None:
        """Return stats when compaction is due, otherwise None."""
        if not self._config.enabled:
            return None

        current_tokens = estimate_conversation_tokens(messages)
        threshold = math.floor(self._config.token_threshold * get_model_limit(self.model))

        eligible = self.messages_to_compact(messages)
        if eligible == 0:
            return None

        over_tokens = current_tokens >= threshold
        message_threshold = self._config.message_threshold
        over_messages = message_threshold is not None and len(messages) >= message_threshold
        if not (over_tokens or over_messages):
            return None

        return CompactionStats(
            current_tokens=current_tokens,
            threshold=threshold,
            messages_to_compact=eligible,
        )

    async def compact(self, messages: list[Message]) -> CompactionResult:
        """Summarize the middle segment of ``messages``.

        Raises:
            NothingToCompactError: If the windows leave no middle segment
            LLMError: If the summarization call fails
        """
        inception_end, working_start = self._window_bounds(len(messages))
        middle = messages[inception_end:working_start]
        if not middle:
            raise NothingToCompactError(
                len(messages),
                self._config.inception_count,
                self._config.working_window_count,
            )

        original_tokens = estimate_conversation_tokens(middle)
        summary_model = self._config.model or self.model
        log.info(
            "Compacting conversation",
            model=summary_model,
            messages=len(middle),
            original_tokens=original_tokens,
        )

        response = await self.provider.complete(StreamOptions(
            model=summary_model,
            messages=[Message(role="user", content=SUMMARY_PROMPT + format_messages_for_summary(middle))],
            system=SUMMARY_SYSTEM_PROMPT,
            max_tokens=self._config.summary_max_tokens,
        ))
        summary = response.content.strip()

        compacted_tokens = estimate_tokens(summary)
        return CompactionResult(
            compaction_id=new_id("cmp"),
            summary=summary,
            original_tokens=original_tokens,
            compacted_tokens=compacted_tokens,
            messages_pruned=len(middle),
            compression_ratio=compacted_tokens / original_tokens if original_tokens > 0 else 1.0,
        )

    def build_compacted_messages(self, messages: list[Message], summary: str) -> list[Message]:
        """Return ``[inception..., summary message, working...]`` as a new list.

        Overlapping windows keep every original exactly once.
        """
        inception_end, working_start = self._window_bounds(len(messages))
        summary_message = Message(
            role="assistant",
            content=f"{SUMMARY_MARKER}\n\n{summary}",
        )
        return [*messages[:inception_end], summary_message, *messages[working_start:]]
