"""
One-shot non-streaming fallback for interrupted streams.

Some relays accept ``stream: true`` and then drop the connection.  When the
primary stream raises ``StreamInterruptedError`` before anything reached
the caller, the same request is re-issued once with ``stream: false`` and
the answer is re-emitted through ``CompleteMessageNormalizer``.  The caller
sees the same chunk contract either way.

    STREAM_ATTEMPT --ok--> DONE
    STREAM_ATTEMPT --interrupted, nothing emitted--> FALLBACK_ATTEMPT
    FALLBACK_ATTEMPT --ok--> COMPLETE_EMIT --> DONE
    FALLBACK_ATTEMPT --any error--> FallbackFailedError
    STREAM_ATTEMPT --any other error--> propagated unchanged
"""

from __future__ import annotations

import logging
from contextlib import aclosing
from typing import AsyncIterator, Callable

from chatrelay.errors import FallbackFailedError, RelayError, StreamInterruptedError
from chatrelay.llm.normalizers import CompleteMessageNormalizer
from chatrelay.llm.transports.base import Transport
from chatrelay.llm.types import GenerationChunk

logger = logging.getLogger(__name__)

PrimaryAttempt = Callable[[], AsyncIterator[GenerationChunk]]


class FallbackController:
    """
    Runs the primary streaming attempt and recovers from interruption.

    Parameters
    ----------
    transport:
        Used for the single non-streaming retry.
    normalizer:
        Turns the fallback response into chunks.
    enabled:
        When ``False`` an interruption propagates as-is.
    """

    def __init__(
        self,
        transport: Transport,
        normalizer: CompleteMessageNormalizer,
        enabled: bool = True,
    ) -> None:
        self._transport = transport
        self._normalizer = normalizer
        self._enabled = enabled
        self.used_fallback = False

    async def stream(
        self, primary: PrimaryAttempt, fallback_body: dict
    ) -> AsyncIterator[GenerationChunk]:
        """
        Yield the primary attempt's chunks, or the fallback's.

        *fallback_body* must be the primary request body with ``stream``
        set to ``False``.
        """
        emitted = 0
        try:
            async with aclosing(primary()) as chunks:
                async for chunk in chunks:
                    emitted += 1
                    yield chunk
            return
        except StreamInterruptedError as exc:
            if not self._enabled or emitted:
                # Replaying after partial output would duplicate content.
                raise
            original = exc

        logger.warning(
            "Streaming request interrupted (%s), falling back to non-streaming mode",
            original,
        )
        self.used_fallback = True
        try:
            response = await self._transport.complete(fallback_body)
        except RelayError as exc:
            logger.error("Non-streaming fallback also failed: %s", exc)
            raise FallbackFailedError(original, exc) from exc

        logger.info("Non-streaming fallback succeeded")
        async for chunk in self._normalizer.normalize(response):
            yield chunk
