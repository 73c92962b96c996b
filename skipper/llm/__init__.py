"""Conversation types, the provider interface and the Ollama streaming adapter."""

import asyncio
import json
import math
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, AsyncIterator, Callable, Literal

import httpx

from skipper.exceptions import LLMAPIError, LLMError
from skipper.logging import get_logger

log = get_logger(__name__)


OLLAMA_NATIVE_BASE_URL = "http://127.0.0.1:11434"

Role = Literal["user", "assistant"]


def new_id(prefix: str = "msg") -> str:
    """Return a fresh unique identifier."""
    return f"{prefix}_{uuid.uuid4().hex}"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class ToolCall:
    """A tool call from the LLM."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": dict(self.arguments)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolCall":
        return cls(
            id=str(data.get("id", "")),
            name=str(data.get("name", "")),
            arguments=dict(data.get("arguments") or {}),
        )


@dataclass(frozen=True)
class ToolResult:
    """Outcome of one tool call, paired with the call by id."""

    id: str
    name: str
    result: Any
    is_error: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "result": self.result, "is_error": self.is_error}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolResult":
        return cls(
            id=str(data.get("id", "")),
            name=str(data.get("name", "")),
            result=data.get("result"),
            is_error=bool(data.get("is_error", False)),
        )


@dataclass(frozen=True)
class Message:
    """A message in the conversation. Never mutated after it is appended."""

    role: Role
    content: str
    id: str = field(default_factory=new_id)
    tool_calls: list[ToolCall] | None = None
    tool_results: list[ToolResult] | None = None
    created_at: int = field(default_factory=_now_ms)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "created_at": self.created_at,
        }
        if self.tool_calls:
            data["tool_calls"] = [call.to_dict() for call in self.tool_calls]
        if self.tool_results:
            data["tool_results"] = [result.to_dict() for result in self.tool_results]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        tool_calls = data.get("tool_calls")
        tool_results = data.get("tool_results")
        return cls(
            id=str(data.get("id") or new_id()),
            role=data.get("role", "user"),
            content=str(data.get("content") or ""),
            tool_calls=[ToolCall.from_dict(item) for item in tool_calls] if tool_calls else None,
            tool_results=[ToolResult.from_dict(item) for item in tool_results] if tool_results else None,
            created_at=int(data.get("created_at") or _now_ms()),
        )


@dataclass(frozen=True)
class StreamChunk:
    """A piece of streamed assistant text."""

    text: str


@dataclass
class LLMResponse:
    """Response from the LLM."""

    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)


@dataclass
class StreamOptions:
    """Everything a provider needs for one round."""

    model: str
    messages: list[Message]
    tools: list[dict[str, Any]] | None = None
    system: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    abort_event: asyncio.Event | None = None


class StreamResult:
    """Streamed text chunks plus the full response once the stream is drained."""

    def __init__(
        self,
        chunks: AsyncIterator[str],
        build_response: Callable[[], LLMResponse],
    ):
        self._chunks = chunks
        self._build_response = build_response
        self._exhausted = False
        self._active: AsyncGenerator[StreamChunk, None] | None = None

    def __aiter__(self) -> AsyncIterator[StreamChunk]:
        self._active = self._iterate()
        return self._active

    async def _iterate(self) -> AsyncGenerator[StreamChunk, None]:
        async for text in self._chunks:
            if text:
                yield StreamChunk(text=text)
        self._exhausted = True

    async def response(self) -> LLMResponse:
        """Drain any remaining chunks and return the complete response."""
        if not self._exhausted:
            async for _ in self:
                pass
        return self._build_response()

    async def aclose(self) -> None:
        """Stop the underlying stream early."""
        if self._active is not None:
            await self._active.aclose()
        closer = getattr(self._chunks, "aclose", None)
        if closer is not None:
            await closer()

    @classmethod
    def from_response(cls, response: LLMResponse, chunks: list[str] | None = None) -> "StreamResult":
        """Wrap an already complete response, streaming it as the given chunks."""
        pieces = list(chunks) if chunks is not None else ([response.content] if response.content else [])

        async def _gen() -> AsyncIterator[str]:
            for piece in pieces:
                yield piece

        return cls(_gen(), lambda: response)


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    async def stream(self, options: StreamOptions) -> StreamResult:
        """Start one streamed completion round."""
        pass

    async def complete(self, options: StreamOptions) -> LLMResponse:
        """Run a round to completion without looking at the chunks."""
        result = await self.stream(options)
        return await result.response()

    def count_tokens(self, text: str) -> int:
        """Rough token estimate, about 4 characters per token."""
        return math.ceil(len(text) / 4)

    async def close(self) -> None:
        """Release provider resources."""
        return None


class OllamaProvider(LLMProvider):
    """Direct Ollama API provider."""

    def __init__(
        self,
        model: str = "llama3.2",
        base_url: str = OLLAMA_NATIVE_BASE_URL,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize Ollama provider.

        Args:
            model: Default Ollama model name (e.g., 'llama3.2', 'qwen3:32b')
            base_url: Ollama API base URL
            temperature: Default sampling temperature
            max_tokens: Default max tokens to generate
            api_key: Optional API key (Ollama usually doesn't need one locally)
            client: Optional preconfigured httpx client
        """
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_key = api_key

        self.client = client or httpx.AsyncClient(
            timeout=120.0,
            follow_redirects=True,
        )

    @staticmethod
    def _convert_messages(messages: list[Message], system: str | None) -> list[dict[str, Any]]:
        """Convert messages to Ollama format."""
        result: list[dict[str, Any]] = []
        if system:
            result.append({"role": "system", "content": system})

        for msg in messages:
            if msg.tool_results:
                for tool_result in msg.tool_results:
                    payload = tool_result.result
                    if not isinstance(payload, str):
                        payload = json.dumps(payload, default=str)
                    result.append({"role": "tool", "content": payload, "tool_name": tool_result.name})
                if msg.content:
                    result.append({"role": msg.role, "content": msg.content})
                continue

            entry: dict[str, Any] = {"role": msg.role, "content": msg.content or ""}
            if msg.tool_calls:
                entry["tool_calls"] = [
                    {"function": {"name": call.name, "arguments": call.arguments}}
                    for call in msg.tool_calls
                ]
            result.append(entry)

        return result

    @staticmethod
    def _convert_tools(tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Convert tool definitions to Ollama format."""
        return [
            {
                "type": "function",
                "function": {
                    "name": tool["name"],
                    "description": tool.get("description", "") or "",
                    "parameters": tool.get("parameters") or {},
                },
            }
            for tool in tools
            if tool.get("name")
        ]

    def _build_body(self, options: StreamOptions) -> dict[str, Any]:
        temperature = options.temperature if options.temperature is not None else self.temperature
        body: dict[str, Any] = {
            "model": options.model or self.model,
            "messages": self._convert_messages(options.messages, options.system),
            "stream": True,
            "options": {
                "temperature": temperature,
                "num_predict": options.max_tokens or self.max_tokens,
            },
        }
        if options.tools:
            body["tools"] = self._convert_tools(options.tools)
        return body

    async def stream(self, options: StreamOptions) -> StreamResult:
        """Stream a chat completion from `/api/chat`."""
        url = f"{self.base_url}/api/chat"
        body = self._build_body(options)
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        content_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        usage: dict[str, int] = {}
        abort_event = options.abort_event

        async def _lines() -> AsyncIterator[str]:
            log.debug("Calling Ollama", model=body["model"], url=url, msg_count=len(body["messages"]))
            try:
                async with self.client.stream("POST", url, json=body, headers=headers) as response:
                    if not response.is_success:
                        error_text = (await response.aread()).decode("utf-8", errors="replace")
                        raise LLMAPIError(
                            f"Ollama API error {response.status_code}: {error_text}",
                            status_code=response.status_code,
                        )

                    async for line in response.aiter_lines():
                        if abort_event is not None and abort_event.is_set():
                            log.debug("Ollama stream aborted", model=body["model"])
                            break
                        if not line.strip():
                            continue
                        try:
                            chunk = json.loads(line)
                        except json.JSONDecodeError:
                            log.debug("Skipping malformed Ollama line", line=line[:200])
                            continue

                        message = chunk.get("message") or {}
                        for tc in message.get("tool_calls") or []:
                            function = tc.get("function") or {}
                            arguments = function.get("arguments") or {}
                            if isinstance(arguments, str):
                                arguments = json.loads(arguments or "{}")
                            tool_calls.append(ToolCall(
                                id=str(tc.get("id") or new_id("call")),
                                name=str(function.get("name", "")),
                                arguments=arguments,
                            ))
                        text = message.get("content") or ""
                        if text:
                            content_parts.append(text)
                            yield text

                        if chunk.get("done"):
                            prompt_tokens = int(chunk.get("prompt_eval_count", 0) or 0)
                            completion_tokens = int(chunk.get("eval_count", 0) or 0)
                            usage.update(
                                prompt_tokens=prompt_tokens,
                                completion_tokens=completion_tokens,
                                total_tokens=prompt_tokens + completion_tokens,
                            )
                            break
            except httpx.HTTPError as e:
                raise LLMAPIError(f"Ollama streaming error: {e}") from e
            except json.JSONDecodeError as e:
                raise LLMError(f"Ollama tool call decode error: {e}") from e

        def _response() -> LLMResponse:
            return LLMResponse(
                content="".join(content_parts),
                tool_calls=list(tool_calls),
                model=body["model"],
                usage=dict(usage),
            )

        return StreamResult(_lines(), _response)

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


def create_provider(
    provider: str = "ollama",
    model: str = "llama3.2",
    api_key: str | None = None,
    base_url: str | None = None,
    temperature: float = 0.7,
    max_tokens: int = 4096,
) -> LLMProvider:
    """Create an LLM provider.

    Args:
        provider: Provider name
        model: Model name
        api_key: Optional API key
        base_url: Optional base URL
        temperature: Default temperature
        max_tokens: Default max tokens

    Returns:
        Configured LLMProvider instance

    Raises:
        ValueError: If the provider is not supported
    """
    if provider == "ollama":
        return OllamaProvider(
            model=model,
            base_url=base_url or OLLAMA_NATIVE_BASE_URL,
            temperature=temperature,
            max_tokens=max_tokens,
            api_key=api_key,
        )
    raise ValueError(f"Provider '{provider}' not supported. Use 'ollama' or inject a provider instance.")
