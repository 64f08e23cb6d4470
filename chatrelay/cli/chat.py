"""Interactive chat session handler."""

from __future__ import annotations

import asyncio
import signal
from contextlib import contextmanager
from typing import Iterator

from rich.console import Console

from chatrelay.cli.output import OutputFormatter
from chatrelay.errors import GenerationCancelled, RelayError
from chatrelay.llm.adapter import ChatCompletionsAdapter
from chatrelay.llm.types import ChatMessage, Generation


@contextmanager
def cancel_on_sigint(cancel: asyncio.Event) -> Iterator[None]:
    """Route Ctrl-C to *cancel* while the block runs, then restore the default."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel.set)
        installed = True
    except (NotImplementedError, RuntimeError):
        installed = False  # not supported on this platform
    try:
        yield
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


class ChatHandler:
    """
    Manages the interactive chat loop.

    Keeps the conversation history, streams each reply to the console and
    appends it to the history once complete.
    """

    def __init__(
        self,
        adapter: ChatCompletionsAdapter,
        console: Console | None = None,
        system_prompt: str | None = None,
    ) -> None:
        self.adapter = adapter
        self.console = console or Console()
        self.formatter = OutputFormatter(self.console)
        self.system_prompt = system_prompt
        self.history: list[ChatMessage] = []
        self.cancel = asyncio.Event()
        self._running = True
        self.reset()

    def reset(self) -> None:
        self.history = []
        if self.system_prompt:
            self.history.append(ChatMessage(role="system", content=self.system_prompt))

    def handle_command(self, command: str) -> bool:
        """
        Handle inline commands. Returns True if the command was handled.
        """
        cmd = command.strip().split(None, 1)[0].lower()

        if cmd == "/quit":
            self._running = False
            self.console.print("[dim]Goodbye.[/dim]")
            return True

        if cmd == "/reset":
            self.reset()
            self.console.print("[dim]Conversation cleared.[/dim]")
            return True

        if cmd == "/usage":
            tokens = self.adapter.estimator().count_messages(self.history)
            self.console.print(
                f"  {len(self.history)} messages, ~{tokens} prompt tokens"
            )
            return True

        if cmd == "/help":
            self.console.print(
                "  [bold]Commands:[/bold]\n"
                "  /quit     - Exit the chat\n"
                "  /reset    - Clear the conversation\n"
                "  /usage    - Estimate prompt tokens so far\n"
                "  /help     - Show this help\n"
            )
            return True

        return False

    async def handle_input(self, user_input: str) -> None:
        """Stream the reply to *user_input* and record it in the history."""
        self.history.append(ChatMessage(role="user", content=user_input))
        self.cancel.clear()
        content_parts: list[str] = []

        try:
            with cancel_on_sigint(self.cancel):
                async for chunk in self.adapter.generate_stream(
                    self.history, cancel=self.cancel
                ):
                    if chunk.completion_index != 0:
                        continue
                    if chunk.content:
                        content_parts.append(chunk.content)
                        # Print incrementally
                        self.console.print(chunk.content, end="", markup=False)
        except GenerationCancelled:
            self.console.print("\n[dim](cancelled)[/dim]")
        except RelayError as e:
            self.console.print()
            self.formatter.format_error(e)
            self.history.pop()
            return

        # Newline after streaming
        self.console.print()
        reply = Generation(text="".join(content_parts))
        self.history.append(reply.as_message())

    async def run_loop(self) -> None:
        """Main interactive loop."""
        self.console.print(
            "[bold]chatrelay[/bold]\n"
            "[dim]Type /help for commands, /quit to exit.[/dim]\n"
        )

        while self._running:
            try:
                user_input = await asyncio.get_running_loop().run_in_executor(
                    None, lambda: input("you> ").strip()
                )
            except (EOFError, KeyboardInterrupt):
                self.console.print("\n[dim]Goodbye.[/dim]")
                break

            if not user_input:
                continue

            if user_input.startswith("/") and self.handle_command(user_input):
                continue

            self.console.print("[dim]assistant>[/dim] ", end="")
            await self.handle_input(user_input)
