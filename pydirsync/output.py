"""Output formatting for the command line interface."""

import json
from typing import Any, Optional

from rich.console import Console
from rich.table import Table


class OutputFormatter:
    """Routes CLI output to the terminal according to --json and --quiet.

    Informational output is suppressed in quiet and JSON mode. Warnings and
    errors always go to stderr so JSON on stdout stays parseable.
    """

    def __init__(self, json_output: bool = False, quiet: bool = False):
        self.json_output = json_output
        self.quiet = quiet
        self.console = Console(highlight=False, soft_wrap=True)
        self.err_console = Console(stderr=True, highlight=False, soft_wrap=True)

    def _show_info(self) -> bool:
        return not self.quiet and not self.json_output

    def info(self, message: str) -> None:
        """Print an informational message."""
        if self._show_info():
            self.console.print(message, markup=False)

    def success(self, message: str) -> None:
        """Print a success message."""
        if self._show_info():
            self.console.print(message, style="green", markup=False)

    def warning(self, message: str) -> None:
        """Print a warning to stderr."""
        if not self.quiet:
            self.err_console.print(f"Warning: {message}", style="yellow", markup=False)

    def error(self, message: str) -> None:
        """Print an error to stderr (never suppressed)."""
        self.err_console.print(f"Error: {message}", style="red", markup=False)

    def print(self, message: str) -> None:
        """Print essential output (shown unless in JSON mode)."""
        if not self.json_output:
            self.console.print(message, markup=False)

    def print_summary(self, title: str, items: list[tuple[str, Any]]) -> None:
        """Print a two-column summary table.

        Args:
            title: Table title
            items: (label, value) rows
        """
        if self.json_output or self.quiet:
            return
        table = Table(title=title, show_header=False, title_justify="left")
        table.add_column("Item", style="bold")
        table.add_column("Value")
        for label, value in items:
            table.add_row(str(label), str(value))
        self.console.print(table)

    def output_json(self, data: Any, indent: Optional[int] = 2) -> None:
        """Print data as JSON to stdout."""
        self.console.out(json.dumps(data, indent=indent), highlight=False)
