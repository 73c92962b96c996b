"""Rough token accounting used for compaction decisions."""

import json
import math

from skipper.llm import Message

DEFAULT_MODEL_LIMIT = 100_000

MODEL_LIMITS: dict[str, int] = {
    "claude-sonnet-4-20250514": 200_000,
    "claude-3-5-sonnet-20241022": 200_000,
    "claude-3-opus-20240229": 200_000,
    "gpt-4o": 128_000,
    "gpt-4-turbo": 128_000,
    "gpt-4": 8_192,
    "gpt-3.5-turbo": 16_385,
}


def get_model_limit(model: str) -> int:
    """Context window size for a model id, with a fixed fallback for unknown ids."""
    return MODEL_LIMITS.get(model, DEFAULT_MODEL_LIMIT)


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


def estimate_message_tokens(message: Message) -> int:
    tokens = estimate_tokens(message.content)
    for call in message.tool_calls or []:
        tokens += estimate_tokens(call.name)
        tokens += estimate_tokens(json.dumps(call.arguments, default=str))
    for result in message.tool_results or []:
        payload = result.result if isinstance(result.result, str) else json.dumps(result.result, default=str)
        tokens += estimate_tokens(payload)
    return tokens


def estimate_conversation_tokens(messages: list[Message]) -> int:
    return sum(estimate_message_tokens(message) for message in messages)
