"""Builds the per-call ``RequestParams`` from model settings and call options."""

from __future__ import annotations

from chatrelay.config import ModelSettings
from chatrelay.errors import ConfigurationError
from chatrelay.llm.types import CallOptions, RequestParams


def build_request_params(
    settings: ModelSettings,
    options: CallOptions | None = None,
    *,
    stream: bool = True,
) -> RequestParams:
    """
    Merge adapter-level *settings* with per-call *options*.

    Per-call values win when set.  ``max_tokens == -1`` means "no limit" and
    is dropped from the request.
    """
    if not settings.model:
        raise ConfigurationError("No model configured")
    if settings.n < 1:
        raise ConfigurationError(f"n must be >= 1, got {settings.n}")

    options = options or CallOptions()

    max_tokens = options.max_tokens if options.max_tokens is not None else settings.max_tokens
    if max_tokens == -1:
        max_tokens = None

    temperature = (
        options.temperature if options.temperature is not None else settings.temperature
    )

    return RequestParams(
        model=settings.model,
        temperature=temperature,
        top_p=settings.top_p,
        frequency_penalty=settings.frequency_penalty,
        presence_penalty=settings.presence_penalty,
        max_tokens=max_tokens,
        n=settings.n,
        stop=options.stop if options.stop is not None else settings.stop,
        stream=stream,
        logprobs=settings.logprobs,
        top_logprobs=settings.top_logprobs,
        logit_bias=settings.logit_bias,
        user=settings.user,
        functions=options.functions,
        function_call=options.function_call,
        tools=options.tools,
        tool_choice=options.tool_choice,
        response_format=options.response_format,
        seed=options.seed,
        model_kwargs=dict(settings.model_kwargs),
    )
