"""Tool registry, base tool class and per-turn tool context."""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, Field, model_validator

from skipper.exceptions import (
    ToolExecutionError,
    ToolNotFoundError,
    ToolValidationError,
)
from skipper.logging import get_logger

log = get_logger(__name__)

_JSON_TYPES: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list, tuple),
    "object": (dict,),
    "null": (type(None),),
}


class ToolOutput(BaseModel):
    """What a tool hands back to the turn loop."""

    success: bool = True
    output: str = ""
    error: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolOutput":
        """Failed outputs always carry an error message."""
        metadata_error = self.metadata.get("error")
        if metadata_error and self.success:
            self.success = False
            if not (self.error or "").strip() and isinstance(metadata_error, str):
                self.error = metadata_error
        if not self.success and not (self.error or "").strip():
            fallback = (self.output or "").strip()
            self.error = fallback or "Tool execution failed"
        return self


@dataclass
class ToolContext:
    """Shared state handed to every tool call of one turn."""

    session_id: str
    working_directory: Path
    abort_event: asyncio.Event
    get_todos: Callable[[], list[dict[str, Any]]]
    set_todos: Callable[[list[dict[str, Any]]], None]
    get_phases: Callable[[], list[dict[str, Any]]]
    set_phases: Callable[[list[dict[str, Any]]], None]
    emit_event: Callable[[Any], Awaitable[None]]
    extensions: dict[str, Any] = field(default_factory=dict)


def _type_matches(value: Any, expected: str | list[str]) -> bool:
    names = expected if isinstance(expected, list) else [expected]
    for name in names:
        python_types = _JSON_TYPES.get(name)
        if python_types is None:
            return True
        # bool is an int subclass; JSON keeps them apart.
        if isinstance(value, bool) and name in ("integer", "number"):
            continue
        if isinstance(value, python_types):
            return True
    return False


class Tool(ABC):
    """Base class for all tools."""

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {"type": "object", "properties": {}}
    timeout_seconds: float = 30.0

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolOutput:
        """Execute the tool.

        Args:
            **kwargs: Validated tool arguments, plus ``_context`` (ToolContext)
                and ``_abort_event`` (set on abort or timeout)

        Returns:
            ToolOutput with output text and optional metadata
        """
        pass

    def get_definition(self) -> dict[str, Any]:
        """Get the tool definition for LLM.

        Returns:
            Function-style definition
        """
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }

    def validate_arguments(self, arguments: dict[str, Any]) -> None:
        """Validate tool arguments against the parameter schema.

        Covers required fields, declared types, enums and
        ``additionalProperties: false``.

        Raises:
            ToolValidationError: If any argument is invalid
        """
        if not isinstance(arguments, dict):
            raise ToolValidationError(self.name, ["arguments must be an object"])

        problems: list[str] = []
        properties: dict[str, Any] = self.parameters.get("properties", {}) or {}

        for required in self.parameters.get("required", []) or []:
            if required not in arguments:
                problems.append(f"missing required argument '{required}'")

        for key, value in arguments.items():
            schema = properties.get(key)
            if schema is None:
                if self.parameters.get("additionalProperties") is False:
                    problems.append(f"unexpected argument '{key}'")
                continue
            expected = schema.get("type")
            if expected and not _type_matches(value, expected):
                problems.append(f"argument '{key}' should be of type {expected}")
                continue
            allowed = schema.get("enum")
            if allowed is not None and value not in allowed:
                problems.append(f"argument '{key}' must be one of {allowed}")

        if problems:
            raise ToolValidationError(self.name, problems)


class ToolRegistry:
    """Registry for managing available tools."""

    def __init__(self, tools: list[Tool] | None = None):
        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        """Register a tool, replacing any tool with the same name."""
        if not tool.name:
            raise ValueError("Tool must have a name")

        log.debug("Registering tool", tool=tool.name)
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def has_tool(self, name: str) -> bool:
        """Return whether a tool name is currently registered."""
        return name in self._tools

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def list_tools(self, allowed: list[str] | None = None) -> list[str]:
        """List registered tool names, optionally restricted to an allow-list."""
        if allowed is None:
            return list(self._tools)
        allowed_names = set(allowed)
        return [name for name in self._tools if name in allowed_names]

    def get_definitions(self, allowed: list[str] | None = None) -> list[dict[str, Any]]:
        """Get tool definitions for the LLM, optionally restricted to an allow-list."""
        return [self._tools[name].get_definition() for name in self.list_tools(allowed)]

    @staticmethod
    async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
        """Cancel task and await it to avoid pending task warnings."""
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            log.debug("Cancelled task raised", error=str(e))

    @staticmethod
    async def _bridge_abort_event(source: asyncio.Event, target: asyncio.Event) -> None:
        """Mirror the turn's abort event to the local tool abort event."""
        await source.wait()
        target.set()

    async def execute(
        self,
        name: str,
        arguments: dict[str, Any],
        context: ToolContext | None = None,
    ) -> ToolOutput:
        """Validate arguments and execute a tool by name.

        Args:
            name: Tool name
            arguments: Tool arguments
            context: Turn context passed to the tool as ``_context``

        Returns:
            ToolOutput from execution

        Raises:
            ToolNotFoundError if tool not found
            ToolValidationError if arguments are invalid
            ToolExecutionError if execution fails, times out or is aborted
        """
        tool = self.get(name)
        tool.validate_arguments(arguments)

        abort_event = context.abort_event if context is not None else None
        if abort_event is not None and abort_event.is_set():
            raise ToolExecutionError(name, "Execution aborted")

        execute_task: asyncio.Task[ToolOutput] | None = None
        abort_wait_task: asyncio.Task[bool] | None = None
        bridge_task: asyncio.Task[None] | None = None
        tool_abort_event = asyncio.Event()
        try:
            log.info("Executing tool", tool=name, args=arguments)
            timeout_seconds = max(1.0, float(getattr(tool, "timeout_seconds", 30.0) or 30.0))

            if abort_event is not None:
                bridge_task = asyncio.create_task(
                    self._bridge_abort_event(abort_event, tool_abort_event)
                )

            execute_task = asyncio.create_task(
                tool.execute(**arguments, _context=context, _abort_event=tool_abort_event)
            )
            abort_wait_task = asyncio.create_task(tool_abort_event.wait())
            done, _ = await asyncio.wait(
                {execute_task, abort_wait_task},
                timeout=timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )

            if execute_task in done:
                result = await execute_task
                if not isinstance(result, ToolOutput):
                    raise ToolExecutionError(name, "Tool returned invalid result payload")
                log.info("Tool executed", tool=name, success=result.success)
                return result

            if abort_wait_task in done:
                await self._cancel_task(execute_task)
                raise ToolExecutionError(name, "Execution aborted")

            tool_abort_event.set()
            await self._cancel_task(execute_task)
            timeout_label = int(timeout_seconds) if timeout_seconds.is_integer() else timeout_seconds
            raise ToolExecutionError(name, f"Execution timed out after {timeout_label}s")
        except asyncio.CancelledError:
            tool_abort_event.set()
            await self._cancel_task(execute_task)
            raise
        except ToolExecutionError:
            raise
        except Exception as e:
            log.error("Tool execution failed", tool=name, error=str(e))
            raise ToolExecutionError(name, str(e)) from e
        finally:
            await self._cancel_task(abort_wait_task)
            await self._cancel_task(bridge_task)
