"""Terminal rendering of agent events and interactive permission prompts."""

import asyncio
import json

from rich.console import Console
from rich.prompt import Prompt

from skipper.events import AgentEvent
from skipper.llm import ToolCall
from skipper.logging import get_logger
from skipper.permissions import PermissionResponse

log = get_logger(__name__)

_PREVIEW_CHARS = 300

_PERMISSION_CHOICES = {
    "y": PermissionResponse.ALLOW_ONCE,
    "a": PermissionResponse.ALLOW_ALWAYS,
    "n": PermissionResponse.DENY,
}


def _preview(value: object) -> str:
    text = value if isinstance(value, str) else json.dumps(value, default=str)
    text = text.strip()
    if len(text) > _PREVIEW_CHARS:
        return text[:_PREVIEW_CHARS] + "..."
    return text


class EventRenderer:
    """Prints the event stream of one turn."""

    def __init__(self, console: Console | None = None, show_tool_output: bool = True):
        self.console = console or Console()
        self.show_tool_output = show_tool_output
        self._streaming = False

    def _end_stream(self) -> None:
        if self._streaming:
            self.console.print()
            self._streaming = False

    def __call__(self, event: AgentEvent) -> None:
        if event.type == "message.delta":
            self.console.print(event.delta, end="", markup=False, highlight=False)
            self._streaming = True
            return

        self._end_stream()
        if event.type == "tool.start":
            args = json.dumps(event.tool_call.arguments, default=str)
            self.console.print(f"[cyan]> {event.tool_call.name}[/cyan] [dim]{_preview(args)}[/dim]")
        elif event.type == "tool.complete":
            if event.result.is_error:
                self.console.print(f"[red]x {event.tool_call.name} failed:[/red] {_preview(event.result.result)}")
            elif self.show_tool_output:
                self.console.print(f"[dim]{_preview(event.result.result)}[/dim]")
        elif event.type == "tool.permission.denied":
            self.console.print(f"[yellow]! {event.tool_call.name} denied:[/yellow] {event.result.result}")
        elif event.type == "tool.permission.granted" and event.allow_always:
            self.console.print(f"[green]{event.tool_call.name} allowed for this session[/green]")
        elif event.type == "compaction.start":
            self.console.print(f"[magenta]Compacting {event.messages_to_compact} messages...[/magenta]")
        elif event.type == "compaction.complete":
            self.console.print(
                f"[magenta]Compacted {event.messages_pruned} messages "
                f"({event.original_tokens} -> {event.compacted_tokens} tokens)[/magenta]"
            )
        elif event.type == "compaction.error":
            self.console.print(f"[red]Compaction failed:[/red] {event.error}")
        elif event.type == "message.complete" and event.aborted:
            self.console.print("[yellow](aborted)[/yellow]")
        elif event.type == "error":
            self.console.print(f"[bold red]Error:[/bold red] {event.error}")


class PermissionPrompter:
    """Asks the user whether a tool call may run."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def _ask(self, tool_call: ToolCall) -> str:
        args = json.dumps(tool_call.arguments, indent=2, default=str)
        self.console.print(f"\n[bold]Allow tool [cyan]{tool_call.name}[/cyan]?[/bold]")
        self.console.print(args, markup=False, highlight=False)
        return Prompt.ask(
            "Allow? y = once, a = always this session, n = deny",
            choices=list(_PERMISSION_CHOICES),
            default="n",
            console=self.console,
        )

    async def __call__(self, tool_call: ToolCall) -> PermissionResponse:
        # Threaded so the loop keeps servicing abort signals while waiting for input.
        choice = await asyncio.to_thread(self._ask, tool_call)
        log.debug("Permission answered", tool=tool_call.name, choice=choice)
        return _PERMISSION_CHOICES[choice]
