"""
Main CLI application for chatrelay.

Usage:
    chatrelay chat [--provider NAME] [--profile NAME] [--system TEXT]
    chatrelay ask PROMPT [--provider NAME] [--no-stream]
    chatrelay config show|validate
    chatrelay version
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from chatrelay.config import RelayConfig, load_config
from chatrelay.errors import ConfigurationError, GenerationCancelled, RelayError

app = typer.Typer(name="chatrelay", help="Uniform streaming client for chat-completions backends")
config_app = typer.Typer(help="Configuration management")

app.add_typer(config_app, name="config")

console = Console()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _get_config_path() -> Path | None:
    """Find config file in standard locations."""
    candidates = [
        Path.cwd() / "chatrelay.yaml",
        Path.cwd() / "chatrelay.yml",
        Path.home() / ".config" / "chatrelay" / "config.yaml",
    ]
    for p in candidates:
        if p.is_file():
            return p
    return None


def _load(
    config: Path | None,
    profile: str | None,
    cli_overrides: dict | None = None,
) -> RelayConfig:
    try:
        cfg = load_config(config or _get_config_path(), profile=profile, cli_overrides=cli_overrides)
    except ConfigurationError as e:
        console.print(f"[red]Config error:[/red] {e}")
        raise typer.Exit(1)
    return cfg


def _setup_logging(cfg: RelayConfig, verbose: bool) -> None:
    level = logging.DEBUG if verbose else getattr(logging, cfg.logging.level.upper(), logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def chat(
    provider: Optional[str] = typer.Option(None, help="Provider id from the config"),
    profile: Optional[str] = typer.Option(None, help="Config profile name"),
    model: Optional[str] = typer.Option(None, help="Override the model id"),
    system: Optional[str] = typer.Option(None, "--system", help="System prompt"),
    config: Optional[Path] = typer.Option(None, "--config", help="Config file path"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Start an interactive chat session."""
    from chatrelay.cli.chat import ChatHandler
    from chatrelay.llm.adapter import ChatCompletionsAdapter

    cfg = _load(config, profile, {"model.model": model})
    _setup_logging(cfg, verbose)

    async def _run() -> None:
        try:
            adapter = ChatCompletionsAdapter.from_config(cfg, provider)
        except ConfigurationError as e:
            console.print(f"[red]Config error:[/red] {e}")
            raise typer.Exit(1)
        async with adapter:
            handler = ChatHandler(adapter, console, system_prompt=system)
            await handler.run_loop()

    asyncio.run(_run())


@app.command()
def ask(
    prompt: str = typer.Argument(..., help="User message"),
    provider: Optional[str] = typer.Option(None, help="Provider id from the config"),
    profile: Optional[str] = typer.Option(None, help="Config profile name"),
    model: Optional[str] = typer.Option(None, help="Override the model id"),
    system: Optional[str] = typer.Option(None, "--system", help="System prompt"),
    no_stream: bool = typer.Option(False, "--no-stream", help="Wait for the full reply"),
    config: Optional[Path] = typer.Option(None, "--config", help="Config file path"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Send one prompt and print the reply with token usage."""
    from chatrelay.cli.chat import cancel_on_sigint
    from chatrelay.cli.output import OutputFormatter
    from chatrelay.llm.adapter import ChatCompletionsAdapter
    from chatrelay.llm.types import ChatMessage, GenerationChunk

    overrides = {"model.model": model, "model.streaming": False if no_stream else None}
    cfg = _load(config, profile, overrides)
    _setup_logging(cfg, verbose)
    formatter = OutputFormatter(console)

    messages = []
    if system:
        messages.append(ChatMessage(role="system", content=system))
    messages.append(ChatMessage(role="user", content=prompt))

    def show(chunk: GenerationChunk) -> None:
        if chunk.completion_index == 0 and chunk.content:
            console.print(chunk.content, end="", markup=False)

    async def _run() -> int:
        try:
            adapter = ChatCompletionsAdapter.from_config(cfg, provider)
        except ConfigurationError as e:
            formatter.format_error(e)
            return 1
        async with adapter:
            cancel = asyncio.Event()
            try:
                with cancel_on_sigint(cancel):
                    result = await adapter.generate(
                        messages, cancel=cancel, on_chunk=None if no_stream else show
                    )
            except GenerationCancelled:
                console.print("\n[dim](cancelled)[/dim]")
                return 130
            except RelayError as e:
                console.print()
                formatter.format_error(e)
                return 1

        if no_stream:
            console.print(result.text, markup=False)
        else:
            console.print()
        # Reported usage when the backend sent any, estimated otherwise.
        formatter.format_usage(result.usage, result.metadata)
        return 0

    code = asyncio.run(_run())
    if code:
        raise typer.Exit(code)


@config_app.command("show")
def config_show(
    config: Optional[Path] = typer.Option(None, "--config", help="Config file path"),
    profile: Optional[str] = typer.Option(None, help="Config profile name"),
):
    """Show effective config (API keys masked)."""
    from chatrelay.cli.output import OutputFormatter

    cfg = _load(config, profile)
    formatter = OutputFormatter(console)
    formatter.format_config(cfg.to_dict())


@config_app.command("validate")
def config_validate(
    config: Optional[Path] = typer.Option(None, "--config", help="Config file path"),
    profile: Optional[str] = typer.Option(None, help="Config profile name"),
):
    """Validate config and resolve the default provider."""
    config_path = config or _get_config_path()
    cfg = _load(config_path, profile)
    try:
        provider = cfg.get()
    except ConfigurationError as e:
        console.print(f"[red]Config validation failed:[/red] {e}")
        raise typer.Exit(1)
    console.print("[green]Config is valid.[/green]")
    if config_path:
        console.print(f"  Loaded from: {config_path}")
    else:
        console.print("  [dim]No config file found, using defaults.[/dim]")
    console.print(f"  Provider: {provider.base_url}")
    console.print(f"  Model: {cfg.model.model} (streaming={cfg.model.streaming})")
    console.print(f"  Fallback enabled: {cfg.streaming.fallback_enabled}")


@app.command()
def version():
    """Show version."""
    console.print("chatrelay v0.1.0")


def main():
    app()


if __name__ == "__main__":
    main()
