"""
Joins streamed tool-call fragments into complete ``ToolCall`` objects.

Fragments are buffered per ``call_index``.  A call is finalized when a
fragment arrives with ``done=True`` or when ``flush()`` is called at the end
of the stream (backends usually signal the end only through
``finish_reason="tool_calls"`` on an otherwise empty delta).  Arguments that
do not parse as JSON drop the call and record an error in ``errors``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass

from chatrelay.llm.types import RawToolDelta, ToolCall


@dataclass
class _PendingCall:
    id: str | None = None
    name: str = ""
    args: str = ""


class ToolCallAssembler:
    """Buffers ``RawToolDelta`` fragments and emits finished ``ToolCall`` objects."""

    def __init__(self) -> None:
        self._pending: dict[int, _PendingCall] = {}
        self.errors: list[str] = []

    def feed(self, delta: RawToolDelta) -> list[ToolCall]:
        """
        Add one fragment.  Returns the calls it completed (usually none).
        """
        pending = self._pending.setdefault(delta.call_index, _PendingCall())
        if delta.id and not pending.id:
            pending.id = delta.id
        pending.name += delta.name_delta
        pending.args += delta.args_delta

        if delta.done:
            call = self._finalize(delta.call_index)
            return [call] if call is not None else []
        return []

    def flush(self) -> list[ToolCall]:
        """Finalize every buffered call, in ``call_index`` order."""
        calls: list[ToolCall] = []
        for idx in sorted(self._pending):
            call = self._finalize(idx)
            if call is not None:
                calls.append(call)
        return calls

    def _finalize(self, idx: int) -> ToolCall | None:
        pending = self._pending.pop(idx, None)
        if pending is None:
            return None
        try:
            args = json.loads(pending.args or "{}")
        except ValueError as exc:
            self.errors.append(f"tool_call_json_parse_failed idx={idx} err={exc}")
            return None
        if not isinstance(args, dict):
            self.errors.append(f"tool_call_args_not_object idx={idx}")
            return None
        return ToolCall(
            id=pending.id or f"call_{idx}",
            name=pending.name.strip(),
            arguments=args,
        )
