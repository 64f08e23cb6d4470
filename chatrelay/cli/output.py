"""Output formatting utilities for the CLI."""

from __future__ import annotations

import json

from rich.console import Console
from rich.syntax import Syntax
from rich.table import Table

from chatrelay.errors import FallbackFailedError, RelayError
from chatrelay.llm.types import TokenUsage


class OutputFormatter:
    """Rich-based output formatting for the chatrelay CLI."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    def format_config(self, config: dict) -> None:
        json_str = json.dumps(config, indent=2, default=str)
        self.console.print(Syntax(json_str, "json", theme="monokai"))

    def format_usage(self, usage: TokenUsage, metadata: dict | None = None) -> None:
        source = "estimated" if usage.estimated else "reported"
        table = Table(title=f"Token usage ({source})")
        table.add_column("Prompt", justify="right")
        table.add_column("Completion", justify="right")
        table.add_column("Total", justify="right", style="bold")
        table.add_row(
            str(usage.prompt_tokens),
            str(usage.completion_tokens),
            str(usage.total_tokens),
        )
        self.console.print(table)
        if metadata:
            details = ", ".join(f"{k}={v}" for k, v in sorted(metadata.items()))
            self.console.print(f"[dim]{details}[/dim]")

    def format_error(self, error: RelayError) -> None:
        self.console.print(f"[red]Error ({error.code}):[/red] {error}", highlight=False)
        if isinstance(error, FallbackFailedError):
            self.console.print(f"  [dim]stream:[/dim]   {error.original}")
            self.console.print(f"  [dim]fallback:[/dim] {error.fallback}")
