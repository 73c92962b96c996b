"""Context compaction."""

from skipper.compaction.engine import (
    SUMMARY_MARKER,
    CompactionEngine,
    CompactionResult,
    CompactionStats,
    format_messages_for_summary,
    is_summary_message,
)
from skipper.compaction.tokens import (
    DEFAULT_MODEL_LIMIT,
    MODEL_LIMITS,
    estimate_conversation_tokens,
    estimate_message_tokens,
    estimate_tokens,
    get_model_limit,
)

__all__ = [
    "SUMMARY_MARKER",
    "CompactionEngine",
    "CompactionResult",
    "CompactionStats",
    "format_messages_for_summary",
    "is_summary_message",
    "DEFAULT_MODEL_LIMIT",
    "MODEL_LIMITS",
    "estimate_conversation_tokens",
    "estimate_message_tokens",
    "estimate_tokens",
    "get_model_limit",
]
