"""LLM subsystem -- transports, dialect normalization, fallback and usage accounting."""

from chatrelay.llm.types import (
    CallOptions,
    ChatMessage,
    FunctionCall,
    Generation,
    GenerationChunk,
    GenerationResult,
    RawToolDelta,
    RequestParams,
    TokenUsage,
    ToolCall,
)
from chatrelay.llm.adapter import ChatCompletionsAdapter
from chatrelay.llm.accumulator import StreamAccumulator
from chatrelay.llm.dialects import Dialect, DialectRegistry, detect_dialect
from chatrelay.llm.token_counter import TokenCounter, TokenUsageEstimator

__all__ = [
    "CallOptions",
    "ChatCompletionsAdapter",
    "ChatMessage",
    "Dialect",
    "DialectRegistry",
    "FunctionCall",
    "Generation",
    "GenerationChunk",
    "GenerationResult",
    "RawToolDelta",
    "RequestParams",
    "StreamAccumulator",
    "TokenCounter",
    "TokenUsage",
    "TokenUsageEstimator",
    "ToolCall",
    "detect_dialect",
]
