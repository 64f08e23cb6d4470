"""Tests for chatrelay.llm.fallback.FallbackController."""

from __future__ import annotations

import pytest

from chatrelay.errors import (
    AuthenticationError,
    FallbackFailedError,
    StreamInterruptedError,
    TransientNetworkError,
)
from chatrelay.llm.fallback import FallbackController
from chatrelay.llm.normalizers import CompleteMessageNormalizer
from chatrelay.llm.types import GenerationChunk
from tests.mock_transports import ScriptedTransport, complete_response

FALLBACK_BODY = {"model": "m", "messages": [], "stream": False}


def _primary(chunks=(), error=None):
    async def run():
        for chunk in chunks:
            yield chunk
        if error is not None:
            raise error

    return run


async def _collect(controller, primary):
    return [c async for c in controller.stream(primary, FALLBACK_BODY)]


class TestFallbackController:

    @pytest.mark.asyncio
    async def test_primary_success_passes_through(self):
        transport = ScriptedTransport()
        controller = FallbackController(transport, CompleteMessageNormalizer(0))
        chunks = [GenerationChunk(content="a"), GenerationChunk(content="b")]

        result = await _collect(controller, _primary(chunks))

        assert result == chunks
        assert transport.complete_bodies == []
        assert controller.used_fallback is False

    @pytest.mark.asyncio
    async def test_interruption_triggers_one_non_streaming_call(self):
        transport = ScriptedTransport(response=complete_response("Fallback answer"))
        controller = FallbackController(transport, CompleteMessageNormalizer(0))

        result = await _collect(
            controller, _primary(error=StreamInterruptedError("stream has been closed"))
        )

        assert "".join(c.content for c in result) == "Fallback answer"
        assert result[-1].finish_reason == "stop"
        assert transport.complete_bodies == [FALLBACK_BODY]
        assert controller.used_fallback is True

    @pytest.mark.asyncio
    async def test_fallback_matches_direct_normalization(self):
        response = complete_response("same output either way", finish_reason="length")
        transport = ScriptedTransport(response=response)
        controller = FallbackController(transport, CompleteMessageNormalizer(0))

        via_fallback = await _collect(
            controller, _primary(error=StreamInterruptedError("closed"))
        )
        direct = CompleteMessageNormalizer(0).split(response)

        assert via_fallback == direct

    @pytest.mark.asyncio
    async def test_fallback_failure_wraps_both_errors(self):
        original = StreamInterruptedError("closed")
        second = TransientNetworkError("HTTP 502")
        transport = ScriptedTransport(complete_error=second)
        controller = FallbackController(transport, CompleteMessageNormalizer(0))

        with pytest.raises(FallbackFailedError) as exc_info:
            await _collect(controller, _primary(error=original))

        assert exc_info.value.original is original
        assert exc_info.value.fallback is second
        assert len(transport.complete_bodies) == 1

    @pytest.mark.asyncio
    async def test_non_qualifying_error_bypasses_fallback(self):
        transport = ScriptedTransport(response=complete_response("never"))
        controller = FallbackController(transport, CompleteMessageNormalizer(0))

        with pytest.raises(AuthenticationError):
            await _collect(controller, _primary(error=AuthenticationError("HTTP 401")))

        assert transport.complete_bodies == []

    @pytest.mark.asyncio
    async def test_interruption_after_output_is_reraised(self):
        transport = ScriptedTransport(response=complete_response("dup"))
        controller = FallbackController(transport, CompleteMessageNormalizer(0))
        received = []

        with pytest.raises(StreamInterruptedError):
            async for chunk in controller.stream(
                _primary([GenerationChunk(content="partial")], StreamInterruptedError("x")),
                FALLBACK_BODY,
            ):
                received.append(chunk)

        assert [c.content for c in received] == ["partial"]
        assert transport.complete_bodies == []

    @pytest.mark.asyncio
    async def test_disabled_fallback_propagates(self):
        transport = ScriptedTransport(response=complete_response("never"))
        controller = FallbackController(
            transport, CompleteMessageNormalizer(0), enabled=False
        )

        with pytest.raises(StreamInterruptedError):
            await _collect(controller, _primary(error=StreamInterruptedError("x")))

        assert transport.complete_bodies == []
