# display.py
# All terminal output for the durable agent loop.
#
# This module owns presentation entirely. agent.py and state_cache.py never
# format strings for the operator; they call named functions here. Internal
# diagnostics go through stdlib logging, routed to the same console by
# configure_logging().
#
# Colour language:
#   cyan: loop scaffolding / routing events
#   blue: model calls and responses
#   yellow: snapshot cache events
#   green: success / confirmed
#   red: failures, halts
#   magenta: sandbox tool calls and results

import json
import logging

from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

from netfs_agent.models import ExecutionResult

console = Console()


def configure_logging(level: int | str = logging.WARNING) -> None:
    """Route library loggers through rich, sharing the display console."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: str, max_len: int = 120) -> str:
    """Truncate, then escape so arbitrary text is never parsed as markup."""
    if len(value) > max_len:
        value = value[:max_len] + "…"
    return escape(value)


# ---------------------------------------------------------------------------
# Run entry
# ---------------------------------------------------------------------------


def banner(model: str, task_id: str, strategy: str) -> None:
    console.print()
    console.print(
        Panel.fit(
            "[bold cyan]Network Filesystem Agent[/bold cyan]\n"
            "[dim]Sandboxed Python over an on-demand network filesystem, resumable per step[/dim]\n\n"
            f"[dim]Model    :[/dim] [white]{escape(model)}[/white]\n"
            f"[dim]Task     :[/dim] [white]{escape(task_id)}[/white]\n"
            f"[dim]Strategy :[/dim] [white]{escape(strategy)}[/white]",
            border_style="cyan",
            padding=(1, 4),
        )
    )


def prompt_received(prompt: str) -> None:
    console.print()
    console.print(Rule("[cyan]NEW TASK[/cyan]", style="cyan"))
    console.print(
        Panel(
            f"[white]{escape(prompt)}[/white]",
            title=_label("USER PROMPT", "cyan"),
            border_style="cyan",
            padding=(0, 2),
        )
    )


# ---------------------------------------------------------------------------
# Step loop
# ---------------------------------------------------------------------------


def step_start(step: int) -> None:
    console.print()
    console.print(Rule(f"[cyan]STEP {step}[/cyan]", style="cyan"))


def stop_reason(reason: str) -> None:
    console.print(f"  [blue]Stop reason[/blue]  [white]{escape(reason)}[/white]")


def assistant_text(text: str) -> None:
    if text:
        console.print(f"  [blue]Assistant[/blue]    [dim white]{_mono(text, 200)}[/dim white]")


def tool_call(name: str, arguments: str) -> None:
    try:
        code = json.loads(arguments, strict=False).get("code")
    except (json.JSONDecodeError, AttributeError):
        code = None

    if code is None:
        console.print(f"  [magenta]Tool call[/magenta]    [bold white]{escape(name)}[/bold white]  [dim]{_mono(arguments)}[/dim]")
        return

    console.print(
        Panel(
            Syntax(code, "python", theme="ansi_dark", word_wrap=True),
            title=_label(f"TOOL CALL: {name}", "magenta"),
            border_style="magenta",
            padding=(0, 2),
        )
    )


def tool_result(result: ExecutionResult) -> None:
    status = "[bold green]✓ success[/bold green]" if result.success else "[bold red]✗ failed[/bold red]"
    console.print(f"  [magenta]Tool result[/magenta]  {status}")
    if result.stdout:
        console.print(f"  [dim]stdout[/dim]  [white]{_mono(result.stdout.strip(), 400)}[/white]")
    if result.stderr:
        console.print(f"  [dim]stderr[/dim]  [red]{_mono(result.stderr.strip(), 400)}[/red]")


def final_result(result: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[white]{escape(result)}[/white]",
            title=_label("RESULT", "green"),
            border_style="green",
            padding=(1, 2),
        )
    )


def total_steps(count: int) -> None:
    console.print()
    console.print(Rule(f"[cyan]Total steps: {count}[/cyan]", style="cyan"))


def halt(reason: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold white]{escape(reason)}[/bold white]",
            title=_label("HALT", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )
    console.print()


# ---------------------------------------------------------------------------
# Snapshot cache
# ---------------------------------------------------------------------------


def cache_saved(path: str) -> None:
    console.print(f"  [yellow]↳ Saved state[/yellow]  [dim yellow]{escape(path)}[/dim yellow]")


def cache_loaded(path: str) -> None:
    console.print(f"  [yellow]↳ Loaded state[/yellow]  [dim yellow]{escape(path)}[/dim yellow]")


def cache_hit(step: int) -> None:
    console.print()
    console.print(
        _label("CACHE", "yellow"),
        f"[yellow] Using cached state for step {step}[/yellow]",
    )


def cache_error(path: str, message: str) -> None:
    console.print(
        Panel(
            f"[bold red]Could not load snapshot.[/bold red]\n"
            f"[white]{escape(path)}[/white]\n[dim]{escape(message)}[/dim]\n"
            "[dim]Treating this step as not yet computed.[/dim]",
            title=_label("CACHE ERROR ✗", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )


def cache_cleared(task_id: str, count: int) -> None:
    console.print(
        _label("CACHE", "yellow"),
        f"[yellow] Cleared {count} snapshot(s) for task[/yellow] [white]{escape(task_id)}[/white]",
    )


# ---------------------------------------------------------------------------
# Output artifacts
# ---------------------------------------------------------------------------


def output_file_error(name: str, message: str) -> None:
    console.print(f"  [red]✗ {escape(name)}[/red]  [dim]{escape(message)}[/dim]")


def files_exposed(directory: str, names: list[str]) -> None:
    console.print()
    table = Table(box=box.SIMPLE, show_header=True, header_style="bold green", padding=(0, 1))
    table.add_column("File", style="white")
    for name in names:
        table.add_row(f"[green]✓[/green] {escape(name)}")
    console.print(
        Panel(
            table,
            title=_label(f"{len(names)} FILE(S) IN {directory}", "green"),
            border_style="green",
            padding=(0, 1),
        )
    )


def no_files() -> None:
    console.print()
    console.print("[dim]No files in /output to copy.[/dim]")


def file_expose_failed(name: str, message: str) -> None:
    console.print(f"  [red]✗ {escape(name)}: {escape(message)}[/red]")
