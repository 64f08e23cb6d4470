"""Tests for the interactive ChatHandler."""

from __future__ import annotations

import asyncio
import io
import signal

import pytest
from rich.console import Console

from chatrelay.cli.chat import ChatHandler, cancel_on_sigint
from chatrelay.config import ModelSettings, ProviderConfig, StreamingConfig
from chatrelay.errors import AuthenticationError
from chatrelay.llm.adapter import ChatCompletionsAdapter
from tests.mock_transports import ScriptedTransport, make_delta_events


class WordTokenizer:
    def count_tokens(self, text: str) -> int:
        return len(text.split())


def _handler(transport, system_prompt=None):
    adapter = ChatCompletionsAdapter(
        ProviderConfig(base_url="http://x"),
        ModelSettings(model="m"),
        streaming=StreamingConfig(chunk_delay_seconds=0),
        tokenizer=WordTokenizer(),
        transport_factory=lambda cfg: transport,
    )
    buf = io.StringIO()
    console = Console(file=buf, force_terminal=False, width=120)
    return ChatHandler(adapter, console, system_prompt), buf


class TestChatHandler:

    @pytest.mark.asyncio
    async def test_reply_streamed_and_recorded(self):
        handler, buf = _handler(
            ScriptedTransport(events=make_delta_events("Hi there")), "Be brief."
        )
        await handler.handle_input("hello")

        assert "Hi there" in buf.getvalue()
        assert [m.role for m in handler.history] == ["system", "user", "assistant"]
        assert handler.history[-1].content == "Hi there"

    @pytest.mark.asyncio
    async def test_error_drops_user_turn(self):
        transport = ScriptedTransport(stream_error=AuthenticationError("HTTP 401"))
        handler, buf = _handler(transport)
        await handler.handle_input("hello")

        assert handler.history == []
        assert "authentication" in buf.getvalue()

    def test_reset_keeps_system_prompt(self):
        handler, _ = _handler(ScriptedTransport(), "Be brief.")
        handler.history.append(handler.history[0])
        assert handler.handle_command("/reset") is True
        assert len(handler.history) == 1

    def test_usage_command(self):
        handler, buf = _handler(ScriptedTransport(), "Be brief.")
        assert handler.handle_command("/usage") is True
        assert "1 messages" in buf.getvalue()

    def test_unknown_command(self):
        handler, _ = _handler(ScriptedTransport())
        assert handler.handle_command("/dance") is False


class TestSigintRouting:

    @pytest.mark.asyncio
    async def test_sigint_sets_cancel_inside_block(self):
        cancel = asyncio.Event()
        with cancel_on_sigint(cancel):
            signal.raise_signal(signal.SIGINT)
            await asyncio.sleep(0.05)
        assert cancel.is_set()

    @pytest.mark.asyncio
    async def test_handler_removed_after_block(self):
        with cancel_on_sigint(asyncio.Event()):
            pass
        # Nothing left to remove: Ctrl-C is back to KeyboardInterrupt.
        assert asyncio.get_running_loop().remove_signal_handler(signal.SIGINT) is False

    @pytest.mark.asyncio
    async def test_handler_removed_after_turn(self):
        handler, _ = _handler(ScriptedTransport(events=make_delta_events("Hi")))
        await handler.handle_input("hello")
        assert asyncio.get_running_loop().remove_signal_handler(signal.SIGINT) is False
        assert signal.getsignal(signal.SIGINT) is signal.default_int_handler
