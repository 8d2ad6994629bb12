"""Rich console setup and synthesis progress callbacks."""

from __future__ import annotations

import logging
from typing import Protocol

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from .models import EventType, ProgressEvent

console = Console()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


def setup_logging(*, verbose: bool = False, quiet: bool = False) -> None:
    """Configure root logger with Rich handler."""
    level = logging.DEBUG if verbose else (logging.ERROR if quiet else logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=verbose)],
        force=True,
    )


# ---------------------------------------------------------------------------
# Progress callbacks
# ---------------------------------------------------------------------------


class SynthesisCallbacks(Protocol):
    """Receives the ordered stream of progress events of one run."""

    def on_event(self, event: ProgressEvent) -> None: ...


class RichCallbacks:
    """Prints progress events to the Rich console."""

    def __init__(self, show_reasoning: bool = False) -> None:
        self.show_reasoning = show_reasoning

    def on_event(self, event: ProgressEvent) -> None:
        if event.type == EventType.STATUS:
            if event.turn is not None and event.message.startswith("Turn"):
                console.rule(f"[bold blue]{escape(event.message)}[/]")
            else:
                console.print(f"[bold]{escape(event.message)}[/]")
        elif event.type == EventType.TOOL_CALL:
            console.print(f"  [cyan]→ {event.tool}[/] {escape(event.message)}")
        elif event.type == EventType.TOOL_RESULT:
            first_line = event.message.splitlines()[0] if event.message else ""
            console.print(f"  [dim]← {event.tool}:[/] {escape(first_line)}")
        elif event.type == EventType.VERSION:
            refs = f" ({', '.join(event.artifacts)})" if event.artifacts else ""
            console.print(f"  [green]Version {event.version} rendered[/]{refs}")
        elif event.type == EventType.METADATA:
            console.print(f"  [magenta]Metadata:[/] {escape(event.message)}")
        elif event.type == EventType.REASONING and self.show_reasoning:
            console.print(f"  [dim italic]{escape(event.message[:300])}[/]")


class EventRecorder:
    """Collects progress events in memory, in emission order."""

    def __init__(self) -> None:
        self.events: list[ProgressEvent] = []

    def on_event(self, event: ProgressEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: EventType) -> list[ProgressEvent]:
        return [e for e in self.events if e.type == event_type]
