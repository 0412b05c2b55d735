"""Rich console utilities for the Criticality CLI."""

from __future__ import annotations

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from criticality.application.orchestrator import ProtocolStatus

# Shared console instances
console = Console()
error_console = Console(stderr=True)


def print_header(title: str, subtitle: str | None = None) -> None:
    """Print a styled header panel."""
    content = Text(title, style="bold blue")
    if subtitle:
        content.append(f"\n{subtitle}", style="dim")
    console.print(Panel(content, expand=False))


def print_error(message: str, hint: str | None = None) -> None:
    """Print formatted error message to stderr."""
    content = Text(f"ERROR: {message}", style="bold red")
    if hint:
        content.append(f"\n\nHint: {hint}", style="yellow")
    error_console.print(Panel(content, title="Error", border_style="red"))


def print_success(message: str) -> None:
    console.print(Panel(message, title="Success", border_style="green"))


def print_failure(message: str, details: str | None = None) -> None:
    content = Text(message, style="bold red")
    if details:
        content.append(f"\n{details}", style="dim")
    console.print(Panel(content, title="Failed", border_style="red"))


def print_status(status: ProtocolStatus, state_kind: str) -> None:
    """Print a protocol status table."""
    table = Table(show_header=False, box=None)
    table.add_column("Key", style="cyan")
    table.add_column("Value")

    table.add_row("Phase", status.phase.value)
    table.add_row("State", f"{state_kind} ({status.substate})")
    table.add_row(
        "Artifacts",
        ", ".join(a.value for a in status.artifacts) if status.artifacts else "none",
    )

    if status.blocking is not None:
        table.add_row("Query", status.blocking.query)
        table.add_row("Blocked at", status.blocking.blocked_at)
        if status.blocking.options:
            table.add_row("Options", "\n".join(status.blocking.options))
        if status.blocking.timeout_ms is not None:
            table.add_row("Timeout", f"{status.blocking.timeout_ms}ms")

    if status.failed is not None:
        table.add_row("Error", status.failed.error)
        if status.failed.code:
            table.add_row("Code", status.failed.code)
        table.add_row("Recoverable", "yes" if status.failed.recoverable else "no")

    console.print(table)
