"""
Chat-completions adapter -- the composition root.

Ties the pieces together into two calls:

  1. ``generate_stream`` -- opens a streaming request, detects the response
     dialect from the first event, normalizes events into
     ``GenerationChunk`` objects and falls back to a non-streaming request
     when the stream is cut off before producing anything.
  2. ``generate`` -- drives the same stream into a ``StreamAccumulator``
     and returns a ``GenerationResult`` with token usage.  Usage comes from
     the backend when it reported any, otherwise from the estimator.

The transport (and its HTTP client) is created on first use, once per
adapter, and never reconfigured.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Iterable, Protocol, TypeVar

from chatrelay.config import ModelSettings, ProviderConfig, RelayConfig, StreamingConfig
from chatrelay.errors import GenerationCancelled
from chatrelay.llm.accumulator import StreamAccumulator
from chatrelay.llm.dialects import Dialect, DialectRegistry, default_registry, detect_dialect
from chatrelay.llm.fallback import FallbackController
from chatrelay.llm.normalizers import CompleteMessageNormalizer, DeltaNormalizer
from chatrelay.llm.params import build_request_params
from chatrelay.llm.token_counter import TokenCounter, Tokenizer, TokenUsageEstimator
from chatrelay.llm.transports.base import Transport
from chatrelay.llm.transports.openai_compat import OpenAICompatTransport
from chatrelay.llm.types import (
    CallOptions,
    ChatMessage,
    GenerationChunk,
    GenerationResult,
    RequestParams,
    TokenUsage,
)

logger = logging.getLogger(__name__)

TransportFactory = Callable[[ProviderConfig], Transport]

T = TypeVar("T")


class CancelSignal(Protocol):
    """Anything with ``is_set()``; usually an ``asyncio.Event``."""

    def is_set(self) -> bool: ...


@dataclass
class _CallState:
    dialect: Dialect | None = None
    used_fallback: bool = False
    reported_usage: TokenUsage | None = None


class ChatCompletionsAdapter:
    """
    Uniform streaming client for chat-completions backends.

    Parameters
    ----------
    provider:
        Endpoint and credentials.
    settings:
        Model id and sampling defaults.
    streaming:
        Inter-chunk delay for re-emitted complete messages and the fallback
        switch.
    tokenizer:
        Used for usage estimation.  Defaults to a tiktoken-backed
        ``TokenCounter`` for the configured model, built on first need.
    registry:
        Dialect detectors.  Defaults to ``default_registry()``.
    transport_factory:
        Builds the transport on first use.  Defaults to
        ``OpenAICompatTransport``.
    """

    def __init__(
        self,
        provider: ProviderConfig,
        settings: ModelSettings | None = None,
        *,
        streaming: StreamingConfig | None = None,
        tokenizer: Tokenizer | None = None,
        registry: DialectRegistry | None = None,
        transport_factory: TransportFactory | None = None,
    ) -> None:
        self.provider = provider
        self.settings = settings or ModelSettings()
        self.streaming = streaming or StreamingConfig()
        self._tokenizer = tokenizer
        self._registry = registry or default_registry()
        self._transport_factory = transport_factory or OpenAICompatTransport
        self._transport: Transport | None = None
        self._transport_lock = asyncio.Lock()

    @classmethod
    def from_config(
        cls, config: RelayConfig, provider_id: str | None = None, **kwargs
    ) -> ChatCompletionsAdapter:
        """Build an adapter for *provider_id* (or the default provider)."""
        return cls(
            config.get(provider_id),
            config.model,
            streaming=config.streaming,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _get_transport(self) -> Transport:
        if self._transport is None:
            async with self._transport_lock:
                if self._transport is None:
                    self._transport = self._transport_factory(self.provider)
        return self._transport

    async def aclose(self) -> None:
        if self._transport is not None:
            await self._transport.aclose()
            self._transport = None

    async def __aenter__(self) -> ChatCompletionsAdapter:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Parameters and estimation
    # ------------------------------------------------------------------

    def invocation_params(
        self, options: CallOptions | None = None, *, stream: bool = True
    ) -> RequestParams:
        return build_request_params(self.settings, options, stream=stream)

    def estimator(self) -> TokenUsageEstimator:
        if self._tokenizer is None:
            self._tokenizer = TokenCounter(self.settings.model)
        return TokenUsageEstimator(self._tokenizer, self.settings.model)

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def generate_stream(
        self,
        messages: Iterable[ChatMessage],
        options: CallOptions | None = None,
        cancel: CancelSignal | None = None,
    ) -> AsyncIterator[GenerationChunk]:
        """
        Stream ``GenerationChunk`` objects for *messages*.

        If *cancel* becomes set, no further chunk is handed out and
        ``GenerationCancelled`` is raised; chunks already received stay
        valid.
        """
        params = self.invocation_params(options, stream=True)
        prompt_index = options.prompt_index if options else 0
        async with aclosing(
            self._run_stream(list(messages), params, prompt_index, cancel, _CallState())
        ) as chunks:
            async for chunk in chunks:
                yield chunk

    async def _run_stream(
        self,
        messages: list[ChatMessage],
        params: RequestParams,
        prompt_index: int,
        cancel: CancelSignal | None,
        state: _CallState,
    ) -> AsyncIterator[GenerationChunk]:
        _check_cancel(cancel)
        transport = await self._get_transport()
        body = params.to_body(messages)
        include_logprobs = bool(params.logprobs)

        delta = DeltaNormalizer(prompt_index, include_logprobs)
        complete = CompleteMessageNormalizer(
            self.streaming.chunk_delay_seconds, prompt_index, include_logprobs
        )

        async def primary() -> AsyncIterator[GenerationChunk]:
            async with aclosing(transport.stream_events(body)) as events:
                detection = await detect_dialect(events, self._registry)
                state.dialect = detection.dialect
                if detection.dialect is Dialect.COMPLETE_MESSAGE:
                    logger.info("Complete-message response detected, re-emitting as chunks")
                    async for chunk in complete.normalize(detection.first_event):
                        yield chunk
                elif detection.dialect is Dialect.DELTA_STREAM:
                    async for chunk in delta.normalize_stream(detection.events):
                        yield chunk

        controller = FallbackController(
            transport, complete, enabled=self.streaming.fallback_enabled
        )
        async with aclosing(
            controller.stream(primary, params.with_stream(False).to_body(messages))
        ) as chunks:
            while True:
                _check_cancel(cancel)
                try:
                    chunk = await _until_cancelled(anext(chunks), cancel)
                except StopAsyncIteration:
                    break
                yield chunk

        state.used_fallback = controller.used_fallback
        state.reported_usage = delta.reported_usage or complete.reported_usage
        if delta.skipped:
            logger.warning("Skipped %d malformed stream event(s)", delta.skipped)

    # ------------------------------------------------------------------
    # Aggregate
    # ------------------------------------------------------------------

    async def generate(
        self,
        messages: Iterable[ChatMessage],
        options: CallOptions | None = None,
        cancel: CancelSignal | None = None,
        on_chunk: Callable[[GenerationChunk], None] | None = None,
    ) -> GenerationResult:
        """
        Run a full completion and return the merged result.

        With ``settings.streaming`` disabled a single non-streaming request
        is made instead of consuming a stream.  *on_chunk* sees every chunk
        as it is accumulated, e.g. to print a reply while it streams.
        """
        messages = list(messages)
        prompt_index = options.prompt_index if options else 0
        state = _CallState()
        accumulator = StreamAccumulator()

        if self.settings.streaming:
            params = self.invocation_params(options, stream=True)
            async with aclosing(
                self._run_stream(messages, params, prompt_index, cancel, state)
            ) as chunks:
                async for chunk in chunks:
                    accumulator.add(chunk)
                    if on_chunk is not None:
                        on_chunk(chunk)
        else:
            params = self.invocation_params(options, stream=False)
            _check_cancel(cancel)
            transport = await self._get_transport()
            response = await _until_cancelled(
                transport.complete(params.to_body(messages)), cancel
            )
            normalizer = CompleteMessageNormalizer(
                0, prompt_index, bool(params.logprobs)
            )
            for chunk in normalizer.split(response):
                accumulator.add(chunk)
                if on_chunk is not None:
                    on_chunk(chunk)
            state.reported_usage = normalizer.reported_usage

        generations = accumulator.generations()
        usage = state.reported_usage
        if usage is None:
            usage = self.estimator().estimate(
                messages, generations, params.functions, params.function_call
            )

        metadata: dict = {"model": params.model, "fallback": state.used_fallback}
        if state.dialect is not None:
            metadata["dialect"] = state.dialect.value

        return GenerationResult(
            text=generations[0].text if generations else "",
            generations=generations,
            usage=usage,
            metadata=metadata,
        )


def _check_cancel(cancel: CancelSignal | None) -> None:
    if cancel is not None and cancel.is_set():
        raise GenerationCancelled("generation cancelled by caller")


async def _cancel_task_when_set(event: asyncio.Event, task: asyncio.Task) -> None:
    await event.wait()
    task.cancel()


async def _until_cancelled(awaitable: Awaitable[T], cancel: CancelSignal | None) -> T:
    """
    Await *awaitable*, abandoning it as soon as *cancel* is set.

    Only an ``asyncio.Event`` can interrupt a pending wait; other signals
    are polled between chunks.  The awaitable runs in the caller's task, so
    the interruption unwinds the open stream there.
    """
    if not isinstance(cancel, asyncio.Event):
        return await awaitable

    task = asyncio.current_task()
    watcher = asyncio.ensure_future(_cancel_task_when_set(cancel, task))
    try:
        return await awaitable
    except asyncio.CancelledError:
        if not watcher.done() or watcher.cancelled():
            raise
        task.uncancel()
        raise GenerationCancelled("generation cancelled by caller") from None
    finally:
        watcher.cancel()
