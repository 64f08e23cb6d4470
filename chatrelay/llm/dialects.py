"""
Response-dialect detection for streaming responses.

Backends that claim to stream answer in one of two shapes:

``DELTA_STREAM``
    Standard incremental events: ``{"choices": [{"delta": {...}}]}``.
``COMPLETE_MESSAGE``
    One finished message: ``{"choices": [{"message": {"content": ...}}]}``.

``detect_dialect`` pulls the first event, classifies it through a
``DialectRegistry`` and hands back an iterator that replays that event
before the rest, so nothing is lost or counted twice.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Callable

logger = logging.getLogger(__name__)


class Dialect(str, enum.Enum):
    DELTA_STREAM = "delta-stream"
    COMPLETE_MESSAGE = "complete-message"
    DONE = "done"


DetectorFn = Callable[[dict], bool]


def _first_choice(event: dict) -> dict | None:
    choices = event.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        return choices[0]
    return None


def is_complete_message(event: dict) -> bool:
    """A populated ``message.content`` and no ``delta`` at all."""
    choice = _first_choice(event)
    if choice is None or "delta" in choice:
        return False
    message = choice.get("message")
    if not isinstance(message, dict):
        return False
    content = message.get("content")
    return isinstance(content, str) and content != ""


class DialectRegistry:
    """
    Ordered list of ``(dialect, predicate)`` rules.

    The first predicate that matches decides the dialect; events no rule
    claims fall back to *default*.
    """

    def __init__(self, default: Dialect = Dialect.DELTA_STREAM) -> None:
        self._rules: list[tuple[Dialect, DetectorFn]] = []
        self._default = default

    def register(
        self, dialect: Dialect, predicate: DetectorFn, *, first: bool = False
    ) -> None:
        """Add a rule.  ``first=True`` gives it priority over existing ones."""
        if dialect is Dialect.DONE:
            raise ValueError("DONE is not a detectable dialect")
        if first:
            self._rules.insert(0, (dialect, predicate))
        else:
            self._rules.append((dialect, predicate))

    def classify(self, event: dict) -> Dialect:
        for dialect, predicate in self._rules:
            if predicate(event):
                return dialect
        return self._default


def default_registry() -> DialectRegistry:
    registry = DialectRegistry()
    registry.register(Dialect.COMPLETE_MESSAGE, is_complete_message)
    return registry


@dataclass
class Detection:
    """Result of ``detect_dialect``.

    *events* yields *first_event* again, followed by the untouched rest of
    the source.  For ``Dialect.DONE`` both are empty.
    """

    dialect: Dialect
    first_event: dict | None
    events: AsyncIterator[dict]


async def _replay(first: dict, rest: AsyncIterator[dict]) -> AsyncIterator[dict]:
    yield first
    async for event in rest:
        yield event


async def _empty() -> AsyncIterator[dict]:
    return
    yield  # pragma: no cover


async def detect_dialect(
    source: AsyncIterator[dict],
    registry: DialectRegistry | None = None,
) -> Detection:
    """Pull exactly one event from *source* and classify it."""
    registry = registry or default_registry()
    try:
        first = await source.__anext__()
    except StopAsyncIteration:
        logger.debug("Empty stream, nothing to classify")
        return Detection(Dialect.DONE, None, _empty())

    dialect = registry.classify(first)
    logger.debug("Detected %s response format", dialect.value)
    return Detection(dialect, first, _replay(first, source))
