"""Rich console utilities for styled controller output.

This module provides a consistent interface for everything the controller
reports while reconciling, using the Rich library.
"""

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.theme import Theme

# Custom theme with consistent colors
_THEME = Theme(
    {
        "info": "cyan",
        "success": "green",
        "warning": "yellow",
        "error": "red bold",
        "highlight": "cyan bold",
        "muted": "dim",
    }
)

# Shared console instance
console = Console(theme=_THEME, log_path=False)


def info(message: str) -> None:
    """Print an informational message.

    Args:
        message: The message to display.

    """
    console.log(f"[info]ℹ[/info] {message}")


def success(message: str) -> None:
    """Print a success message.

    Args:
        message: The message to display.

    """
    console.log(f"[success]✓[/success] {message}")


def warning(message: str) -> None:
    """Print a warning message.

    Args:
        message: The message to display.

    """
    console.log(f"[warning]⚠[/warning] {message}")


def error(message: str) -> None:
    """Print an error message.

    Args:
        message: The message to display.

    """
    console.log(f"[error]✗[/error] {message}")


def action(message: str) -> None:
    """Print an action message for a mutating step (create, update, delete, start, stop).

    Args:
        message: The message to display.

    """
    console.log(f"[info]→[/info] {message}")


def step(message: str) -> None:
    """Print a sub-step message.

    Args:
        message: The message to display.

    """
    console.log(f"[muted]•[/muted] {message}")


def highlight(text: str) -> str:
    """Return text wrapped in highlight markup.

    Args:
        text: The text to highlight.

    Returns:
        Text wrapped in Rich markup for highlighting.

    """
    return f"[highlight]{text}[/highlight]"


def ref(namespace: str, name: str) -> str:
    """Return a highlighted namespace/name reference for an object."""
    return highlight(f"{namespace}/{name}")


def summary_panel(title: str, items: dict[str, str], *, failed: bool = False) -> None:
    """Print a summary panel with key-value pairs.

    Args:
        title: Title for the panel.
        items: Dictionary of label -> value pairs to display.
        failed: Draw the border in the error color instead of green.

    """
    table = Table.grid(padding=(0, 2))
    table.add_column(style="bold")
    table.add_column(style="cyan")

    for label, value in items.items():
        table.add_row(f"{label}:", value)

    border_style = "red" if failed else "green"
    console.print(Panel(table, title=f"[bold]{title}[/bold]", border_style=border_style))


def newline() -> None:
    """Print an empty line."""
    console.print()
