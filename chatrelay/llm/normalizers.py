"""
Normalizers turning raw backend events into ``GenerationChunk`` objects.

``DeltaNormalizer`` handles standard delta events one at a time, in arrival
order.  ``CompleteMessageNormalizer`` takes one finished response and
re-emits each choice as a word-by-word chunk sequence, so callers see the
same incremental contract either way.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator

from chatrelay.errors import MalformedEventError
from chatrelay.llm.types import GenerationChunk, RawToolDelta, TokenUsage

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_DELAY = 0.05


def _tool_deltas(raw_tcs: Any, *, done: bool) -> list[RawToolDelta] | None:
    """Convert wire ``tool_calls`` entries into ``RawToolDelta`` objects."""
    if not raw_tcs or not isinstance(raw_tcs, list):
        return None
    deltas: list[RawToolDelta] = []
    for pos, raw_tc in enumerate(raw_tcs):
        if not isinstance(raw_tc, dict):
            continue
        func = raw_tc.get("function") or {}
        deltas.append(
            RawToolDelta(
                call_index=raw_tc.get("index", pos),
                id=raw_tc.get("id"),
                name_delta=func.get("name") or "",
                args_delta=func.get("arguments") or "",
                done=done,
            )
        )
    return deltas or None


class DeltaNormalizer:
    """
    Converts delta-dialect events into chunks.

    Parameters
    ----------
    prompt_index:
        Copied onto every chunk.
    include_logprobs:
        Pass ``choice.logprobs`` through only when the caller opted in.

    The role normally appears only on the first delta of a completion, so
    the last role seen is reused for later deltas that omit it.  Usage-only
    events produce no chunks; their counts end up in ``reported_usage``.
    """

    def __init__(self, prompt_index: int = 0, include_logprobs: bool = False) -> None:
        self.prompt_index = prompt_index
        self.include_logprobs = include_logprobs
        self.default_role: str | None = None
        self.reported_usage: TokenUsage | None = None
        self.skipped = 0

    def normalize(self, event: dict) -> list[GenerationChunk]:
        """Return the chunks for one event (possibly none)."""
        usage = TokenUsage.from_response(event.get("usage"))
        if usage is not None:
            self.reported_usage = usage

        choices = event.get("choices")
        if not isinstance(choices, list):
            return []

        chunks: list[GenerationChunk] = []
        for choice in choices:
            try:
                chunk = self._convert_choice(choice)
            except MalformedEventError as exc:
                self.skipped += 1
                logger.warning("Skipping stream event: %s", exc)
                continue
            if chunk is not None:
                chunks.append(chunk)
        return chunks

    async def normalize_stream(
        self, events: AsyncIterator[dict]
    ) -> AsyncIterator[GenerationChunk]:
        async for event in events:
            for chunk in self.normalize(event):
                yield chunk

    def _convert_choice(self, choice: Any) -> GenerationChunk | None:
        if not isinstance(choice, dict):
            raise MalformedEventError(f"choice is not an object: {choice!r}")
        delta = choice.get("delta")
        if delta is None:
            return None
        if not isinstance(delta, dict):
            raise MalformedEventError(f"delta is not an object: {delta!r}")

        role = delta.get("role") or self.default_role or "assistant"
        self.default_role = delta.get("role") or self.default_role

        content = delta.get("content")
        if content is None:
            content = ""
        elif not isinstance(content, str):
            raise MalformedEventError(
                f"non-string content ({type(content).__name__}) is not supported"
            )

        finish_reason = choice.get("finish_reason")
        return GenerationChunk(
            content=content,
            role=role,
            completion_index=choice.get("index") or 0,
            prompt_index=self.prompt_index,
            finish_reason=finish_reason,
            logprobs=choice.get("logprobs") if self.include_logprobs else None,
            function_call=delta.get("function_call") or None,
            tool_call_deltas=_tool_deltas(
                delta.get("tool_calls"), done=finish_reason is not None
            ),
        )


class CompleteMessageNormalizer:
    """
    Re-emits a finished response as a progressive chunk sequence.

    ``message.content`` is split on single spaces and every piece after the
    first gets its leading space back, so joining the chunks reproduces the
    original text exactly.  The last chunk of each choice carries the finish
    reason (``"stop"`` when the backend gave none).

    Parameters
    ----------
    chunk_delay:
        Seconds to sleep between chunks.  Purely cosmetic; ``0`` disables it.
    prompt_index:
        Copied onto every chunk.
    include_logprobs:
        Attach ``choice.logprobs`` to the final chunk of each choice.
    """

    def __init__(
        self,
        chunk_delay: float = DEFAULT_CHUNK_DELAY,
        prompt_index: int = 0,
        include_logprobs: bool = False,
    ) -> None:
        if chunk_delay < 0:
            raise ValueError("chunk_delay must be >= 0")
        self.chunk_delay = chunk_delay
        self.prompt_index = prompt_index
        self.include_logprobs = include_logprobs
        self.reported_usage: TokenUsage | None = None

    def split(self, response: dict) -> list[GenerationChunk]:
        """Return every chunk for *response* without any delay."""
        usage = TokenUsage.from_response(response.get("usage"))
        if usage is not None:
            self.reported_usage = usage

        choices = response.get("choices")
        if not isinstance(choices, list):
            logger.warning("Response has no choices: %s", str(response)[:200])
            return []

        chunks: list[GenerationChunk] = []
        for pos, choice in enumerate(choices):
            if not isinstance(choice, dict):
                logger.warning("Skipping malformed choice: %r", choice)
                continue
            chunks.extend(self._split_choice(choice, pos))
        return chunks

    async def normalize(self, response: dict) -> AsyncIterator[GenerationChunk]:
        chunks = self.split(response)
        for i, chunk in enumerate(chunks):
            if i and self.chunk_delay:
                await asyncio.sleep(self.chunk_delay)
            yield chunk

    def _split_choice(self, choice: dict, pos: int) -> list[GenerationChunk]:
        message = choice.get("message") or {}
        content = message.get("content")
        if content is None:
            content = ""
        elif not isinstance(content, str):
            logger.warning(
                "Non-string content (%s) is not supported", type(content).__name__
            )
            content = ""

        index = choice.get("index")
        if index is None:
            index = pos
        role = message.get("role") or "assistant"
        words = content.split(" ")
        last = len(words) - 1

        chunks: list[GenerationChunk] = []
        for i, word in enumerate(words):
            is_last = i == last
            chunks.append(
                GenerationChunk(
                    content=word if i == 0 else " " + word,
                    role=role,
                    completion_index=index,
                    prompt_index=self.prompt_index,
                    finish_reason=(choice.get("finish_reason") or "stop") if is_last else None,
                    logprobs=(
                        choice.get("logprobs")
                        if is_last and self.include_logprobs
                        else None
                    ),
                    function_call=(message.get("function_call") or None) if is_last else None,
                    tool_call_deltas=(
                        _tool_deltas(message.get("tool_calls"), done=True)
                        if is_last
                        else None
                    ),
                )
            )
        return chunks
