"""
Merges a chunk stream into one ``Generation`` per completion index.

Used by ``ChatCompletionsAdapter.generate`` when the caller wants an
aggregate result rather than the chunks themselves.
"""

from __future__ import annotations

import logging

from chatrelay.llm.tool_call_assembler import ToolCallAssembler
from chatrelay.llm.types import Generation, GenerationChunk

logger = logging.getLogger(__name__)


class StreamAccumulator:
    """
    ``completion_index -> Generation`` map fed one chunk at a time.

    Chunks for one index are merged in the order they are added; there is
    no reordering.  Text is concatenated, generation info is combined
    (later keys win), legacy ``function_call`` name/argument fragments are
    concatenated, and tool-call fragments go through a per-index
    ``ToolCallAssembler``.
    """

    def __init__(self) -> None:
        self._generations: dict[int, Generation] = {}
        self._parts: dict[int, list[str]] = {}
        self._assemblers: dict[int, ToolCallAssembler] = {}

    def __len__(self) -> int:
        return len(self._generations)

    def add(self, chunk: GenerationChunk) -> None:
        idx = chunk.completion_index
        gen = self._generations.get(idx)
        if gen is None:
            gen = Generation(role=chunk.role, completion_index=idx)
            self._generations[idx] = gen
            self._parts[idx] = []

        self._parts[idx].append(chunk.content)
        gen.generation_info.update(chunk.generation_info)
        if chunk.finish_reason is not None:
            gen.finish_reason = chunk.finish_reason

        if chunk.function_call:
            merged = gen.function_call or {"name": "", "arguments": ""}
            merged["name"] += chunk.function_call.get("name") or ""
            merged["arguments"] += chunk.function_call.get("arguments") or ""
            gen.function_call = merged

        if chunk.tool_call_deltas:
            assembler = self._assemblers.setdefault(idx, ToolCallAssembler())
            for td in chunk.tool_call_deltas:
                gen.tool_calls.extend(assembler.feed(td))

    def generations(self) -> list[Generation]:
        """Return the merged generations sorted by completion index."""
        result: list[Generation] = []
        for idx in sorted(self._generations):
            gen = self._generations[idx]
            gen.text = "".join(self._parts[idx])
            assembler = self._assemblers.get(idx)
            if assembler is not None:
                gen.tool_calls.extend(assembler.flush())
                if assembler.errors:
                    logger.warning(
                        "Tool-call assembly errors for completion %d: %s",
                        idx,
                        assembler.errors,
                    )
                    gen.generation_info["tool_call_errors"] = list(assembler.errors)
                    assembler.errors.clear()
            result.append(gen)
        return result
