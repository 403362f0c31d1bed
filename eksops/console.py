"""Shared terminal output, prompt styling and logging setup."""

import logging

import questionary
from questionary import Style
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel

console = Console()
# Diagnostics for commands whose stdout is meant to be eval-ed
err_console = Console(stderr=True)

PROMPT_STYLE = Style([
    ('qmark', 'fg:cyan bold'),
    ('question', 'bold'),
    ('answer', 'fg:green'),
    ('pointer', 'fg:cyan bold'),
    ('highlighted', 'fg:cyan'),
    ('selected', 'fg:green'),
])


def setup_logging(verbose: bool = False) -> None:
    """Route eksops loggers through rich; DEBUG when verbose."""
    handler = RichHandler(console=console, show_path=False, rich_tracebacks=True)
    logger = logging.getLogger("eksops")
    logger.handlers = [handler]
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    logger.propagate = False


def section(title: str, style: str = "blue") -> None:
    console.print(Panel(f"[bold]{title}[/bold]", border_style=style))


def success(message: str) -> None:
    console.print(f"[green]✓[/green] {message}")


def warning(message: str) -> None:
    console.print(f"[yellow]⚠ {message}[/yellow]")


def error(message: str, stderr: bool = False) -> None:
    (err_console if stderr else console).print(f"[red]✗ {message}[/red]")


def command(cmd: list[str]) -> None:
    console.print(f"[cyan]→ {' '.join(cmd)}[/cyan]")


def ask_confirm(message: str, default: bool = False) -> bool:
    """Ask a yes/no question. Ctrl-C (a None answer) counts as no."""
    answer = questionary.confirm(message, default=default, style=PROMPT_STYLE).ask()
    return bool(answer)
