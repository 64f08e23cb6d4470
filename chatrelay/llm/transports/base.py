"""Abstract base class for chat-completion transports."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import AsyncIterator


class Transport(ABC):
    """
    A transport issues one chat-completion request against one endpoint.

    Implementations must support:
      - Streaming requests (``stream_events``), yielding decoded JSON events
        in arrival order.
      - Non-streaming requests (``complete``), returning the decoded body.

    Failures are reported as ``chatrelay.errors`` types, never as raw
    library exceptions.
    """

    @abstractmethod
    async def stream_events(self, body: dict) -> AsyncIterator[dict]:
        """
        Open a streaming request and yield its events.

        Raises ``StreamInterruptedError`` if the response is cut off before
        it completes.
        """
        ...
        # Make the method an async generator so sub-classes can ``yield``.
        # This line is unreachable but satisfies the type checker.
        if False:  # pragma: no cover
            yield {}

    @abstractmethod
    async def complete(self, body: dict) -> dict:
        """Issue a non-streaming request and return the decoded JSON body."""
        ...

    async def aclose(self) -> None:
        """Release any pooled connections.  Default: nothing to release."""
        return None
