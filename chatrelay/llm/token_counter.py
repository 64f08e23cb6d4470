"""
Token counting and usage estimation.

Streaming responses rarely report ``usage``.  ``TokenUsageEstimator``
approximates it from the message structure, delegating the per-string
count to a ``Tokenizer``.  The default tokenizer, ``TokenCounter``, uses
``tiktoken``; if the BPE tables cannot be loaded a simple
character-based heuristic is used (~4 characters per token).
"""

from __future__ import annotations

import json
import logging
from typing import Any, Iterable, Protocol

import tiktoken

from chatrelay.llm.types import ChatMessage, Generation, TokenUsage

logger = logging.getLogger(__name__)


class Tokenizer(Protocol):
    def count_tokens(self, text: str) -> int: ...


class TokenCounter:
    """
    Count tokens for a plain string.

    Parameters
    ----------
    model:
        Model name passed to ``tiktoken.encoding_for_model``.  Unknown
        models use the ``cl100k_base`` encoding.
    """

    def __init__(self, model: str | None = None) -> None:
        self.model = model
        self._enc: Any = None
        try:
            try:
                self._enc = tiktoken.encoding_for_model(model or "gpt-4")
            except KeyError:
                self._enc = tiktoken.get_encoding("cl100k_base")
        except Exception as exc:
            # BPE files are fetched on first use; offline hosts cannot.
            logger.warning("tiktoken unavailable (%s), using heuristic counts", exc)
            self._enc = None

    def count_tokens(self, text: str) -> int:
        """Return the token count for a plain string."""
        if not text:
            return 0
        if self._enc is not None:
            return len(self._enc.encode(text, disallowed_special=()))
        # Heuristic: roughly 4 characters per token for English text.
        return max(1, len(text) // 4)


# (tokens_per_message, tokens_per_name) by model family, most specific first.
# From the OpenAI cookbook "How to count tokens with tiktoken".
MODEL_FAMILY_CONSTANTS: list[tuple[str, tuple[int, int]]] = [
    ("gpt-3.5-turbo-0301", (4, -1)),
]
DEFAULT_CONSTANTS = (3, 1)

# Every reply is primed with <|start|>assistant<|message|>.
REPLY_PRIMING_TOKENS = 3


def constants_for_model(model: str | None) -> tuple[int, int]:
    for prefix, constants in MODEL_FAMILY_CONSTANTS:
        if model and model.startswith(prefix):
            return constants
    return DEFAULT_CONSTANTS


class TokenUsageEstimator:
    """
    Approximate prompt and completion token counts.

    The result is deterministic for a given tokenizer and input; it is not
    expected to match any backend's billing exactly.
    """

    def __init__(
        self,
        tokenizer: Tokenizer,
        model: str | None = None,
        *,
        tokens_per_message: int | None = None,
        tokens_per_name: int | None = None,
    ) -> None:
        self.tokenizer = tokenizer
        per_message, per_name = constants_for_model(model)
        self.tokens_per_message = (
            per_message if tokens_per_message is None else tokens_per_message
        )
        self.tokens_per_name = per_name if tokens_per_name is None else tokens_per_name

    def count_message(self, message: ChatMessage) -> int:
        count = (
            self.tokenizer.count_tokens(message.content)
            + self.tokens_per_message
            + self.tokenizer.count_tokens(message.role)
        )
        if message.name is not None:
            count += self.tokens_per_name + self.tokenizer.count_tokens(message.name)
        if message.role == "function":
            count -= 2
        fc = message.function_call
        if fc is not None:
            count += 3
            if fc.name:
                count += self.tokenizer.count_tokens(fc.name)
            if fc.arguments:
                count += self.tokenizer.count_tokens(_compact_json(fc.arguments))
        return count

    def count_messages(self, messages: Iterable[ChatMessage]) -> int:
        """Per-message counts plus the reply priming constant."""
        return sum(self.count_message(m) for m in messages) + REPLY_PRIMING_TOKENS

    def estimate_prompt(
        self,
        messages: list[ChatMessage],
        functions: list[dict] | None = None,
        function_call: str | dict | None = None,
    ) -> int:
        tokens = self.count_messages(messages)
        if functions and any(m.role == "system" for m in messages):
            tokens -= 4
        if function_call == "none":
            tokens += 1
        elif isinstance(function_call, dict):
            tokens += self.tokenizer.count_tokens(function_call.get("name", "")) + 4
        return max(tokens, 0)

    def estimate_completion(self, generations: Iterable[Generation]) -> int:
        return sum(self.count_message(g.as_message()) for g in generations)

    def estimate(
        self,
        messages: list[ChatMessage],
        generations: list[Generation],
        functions: list[dict] | None = None,
        function_call: str | dict | None = None,
    ) -> TokenUsage:
        prompt = self.estimate_prompt(messages, functions, function_call)
        completion = self.estimate_completion(generations)
        return TokenUsage(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=prompt + completion,
            estimated=True,
        )


def _compact_json(arguments: str) -> str:
    """Strip insignificant whitespace from a JSON argument string."""
    try:
        return json.dumps(json.loads(arguments), separators=(",", ":"))
    except ValueError:
        logger.warning("Error parsing function arguments: %s", arguments[:200])
        return arguments
