"""Core types for the chat-completions adapter."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any

logger = logging.getLogger(__name__)

ROLES = ("system", "user", "assistant", "function", "tool")


@dataclass(frozen=True)
class FunctionCall:
    """A legacy ``function_call`` attached to an assistant message."""

    name: str
    arguments: str = ""


@dataclass(frozen=True)
class ChatMessage:
    """A single message in a conversation."""

    role: str  # "system", "user", "assistant", "function", "tool"
    content: str
    name: str | None = None
    function_call: FunctionCall | None = None
    tool_call_id: str | None = None

    def to_wire(self) -> dict:
        if self.role not in ROLES:
            logger.warning("Unknown message role: %s", self.role)
        m: dict = {"role": self.role, "content": self.content}
        if self.name is not None:
            m["name"] = self.name
        if self.function_call is not None:
            m["function_call"] = {
                "name": self.function_call.name,
                "arguments": self.function_call.arguments,
            }
        if self.tool_call_id is not None:
            m["tool_call_id"] = self.tool_call_id
        return m


@dataclass(frozen=True)
class ToolCall:
    """A resolved tool call with parsed arguments."""

    id: str
    name: str
    arguments: dict


@dataclass
class RawToolDelta:
    """
    An incremental fragment of a streamed tool call.

    Backends send these inside ``delta.tool_calls``; the
    ``ToolCallAssembler`` joins them into finished ``ToolCall`` objects.
    """

    call_index: int
    id: str | None = None
    name_delta: str = ""
    args_delta: str = ""
    done: bool = False


@dataclass(frozen=True)
class CallOptions:
    """Per-call overrides layered on top of the adapter's model settings."""

    stop: list[str] | None = None
    functions: list[dict] | None = None
    function_call: str | dict | None = None
    tools: list[dict] | None = None
    tool_choice: str | dict | None = None
    response_format: dict | None = None
    seed: int | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    prompt_index: int = 0


@dataclass(frozen=True)
class RequestParams:
    """
    Everything sent to the backend apart from the messages.

    Built once per call by ``build_request_params`` and never mutated; use
    ``with_stream`` to derive the non-streaming variant for the fallback.
    """

    model: str
    temperature: float | None = None
    top_p: float | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    max_tokens: int | None = None
    n: int = 1
    stop: list[str] | None = None
    stream: bool = True
    logprobs: bool | None = None
    top_logprobs: int | None = None
    logit_bias: dict | None = None
    user: str | None = None
    functions: list[dict] | None = None
    function_call: str | dict | None = None
    tools: list[dict] | None = None
    tool_choice: str | dict | None = None
    response_format: dict | None = None
    seed: int | None = None
    model_kwargs: dict = field(default_factory=dict)

    _BODY_FIELDS = (
        "model",
        "temperature",
        "top_p",
        "frequency_penalty",
        "presence_penalty",
        "max_tokens",
        "n",
        "stop",
        "stream",
        "logprobs",
        "top_logprobs",
        "logit_bias",
        "user",
        "functions",
        "function_call",
        "tools",
        "tool_choice",
        "response_format",
        "seed",
    )

    def with_stream(self, stream: bool) -> RequestParams:
        return replace(self, stream=stream)

    def to_body(self, messages: list[ChatMessage]) -> dict:
        """Render the JSON request body.  Unset fields are omitted."""
        body: dict = {}
        for name in self._BODY_FIELDS:
            value = getattr(self, name)
            if value is not None:
                body[name] = value
        body["messages"] = [m.to_wire() for m in messages]
        body.update(self.model_kwargs)
        return body


@dataclass(frozen=True)
class GenerationChunk:
    """
    One normalized fragment of streamed output.

    *content* is the text fragment; *finish_reason* is only set on the last
    chunk of a completion index.  *logprobs* is only populated when the
    caller asked for it.
    """

    content: str = ""
    role: str = "assistant"
    completion_index: int = 0
    prompt_index: int = 0
    finish_reason: str | None = None
    logprobs: Any = None
    function_call: dict | None = None
    tool_call_deltas: list[RawToolDelta] | None = None

    @property
    def generation_info(self) -> dict:
        info: dict = {"prompt": self.prompt_index, "completion": self.completion_index}
        if self.finish_reason is not None:
            info["finish_reason"] = self.finish_reason
        if self.logprobs is not None:
            info["logprobs"] = self.logprobs
        return info


@dataclass
class Generation:
    """A complete candidate completion, merged from its chunks."""

    text: str = ""
    role: str = "assistant"
    completion_index: int = 0
    finish_reason: str | None = None
    function_call: dict | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    generation_info: dict = field(default_factory=dict)

    def as_message(self) -> ChatMessage:
        fc = None
        if self.function_call:
            fc = FunctionCall(
                name=self.function_call.get("name", ""),
                arguments=self.function_call.get("arguments", ""),
            )
        return ChatMessage(role=self.role, content=self.text, function_call=fc)


@dataclass(frozen=True)
class TokenUsage:
    """Token accounting for one call; *estimated* marks estimator output."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated: bool = False

    @classmethod
    def from_response(cls, usage: dict | None) -> TokenUsage | None:
        """Parse a backend ``usage`` object; ``None`` if nothing usable."""
        if not isinstance(usage, dict):
            return None
        prompt = int(usage.get("prompt_tokens") or 0)
        completion = int(usage.get("completion_tokens") or 0)
        total = int(usage.get("total_tokens") or 0)
        if not (prompt or completion or total):
            return None
        return cls(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=total or prompt + completion,
        )


@dataclass
class GenerationResult:
    """
    The aggregate result of ``ChatCompletionsAdapter.generate``.

    *text* is the content of completion index 0; *generations* holds every
    candidate sorted by index.
    """

    text: str
    generations: list[Generation]
    usage: TokenUsage
    metadata: dict = field(default_factory=dict)
