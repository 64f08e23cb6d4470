"""
OpenAI-compatible chat-completion transport.

Works with any endpoint that speaks the ``/chat/completions`` wire protocol
-- OpenAI itself, vLLM, LM Studio, LocalAI, Ollama's compat layer, and
relays that answer a streaming request with one complete JSON body.

Dependencies: ``httpx`` (async HTTP client).  No ``openai`` SDK needed.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from contextlib import aclosing
from typing import AsyncIterator

import httpx

from chatrelay.config import ProviderConfig
from chatrelay.errors import (
    AuthenticationError,
    BackendError,
    BadRequestError,
    ConfigurationError,
    MalformedEventError,
    RateLimitError,
    RelayError,
    RequestTimeoutError,
    StreamInterruptedError,
    TransientNetworkError,
)
from chatrelay.llm.transports.base import Transport

logger = logging.getLogger(__name__)

CHAT_PATH = "chat/completions"

# Lines that mark a Server-Sent Events body.
_SSE_PREFIXES = ("data:", "event:", "id:", "retry:", ":")

_MAX_BACKOFF_SECONDS = 30.0


class OpenAICompatTransport(Transport):
    """
    Transport for any OpenAI-API-compatible endpoint.

    Parameters
    ----------
    config:
        Connection settings: base URL, API key, extra headers, timeout and
        retry budget.
    http_transport:
        Optional ``httpx`` transport, e.g. ``httpx.MockTransport`` in tests.

    One ``httpx.AsyncClient`` is created here and reused for every request
    made through this transport.  Its configuration never changes.
    """

    def __init__(
        self,
        config: ProviderConfig,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not config.base_url:
            raise ConfigurationError("Provider base_url is not set")
        if config.max_retries < 0:
            raise ConfigurationError("max_retries must be >= 0")
        self._config = config
        self._api_key = config.resolved_api_key()
        self._client = httpx.AsyncClient(
            base_url=config.base_url.rstrip("/") + "/",
            headers=self._build_headers(),
            timeout=httpx.Timeout(config.timeout_seconds),
            transport=http_transport,
        )

    # ------------------------------------------------------------------
    # Transport interface
    # ------------------------------------------------------------------

    async def stream_events(self, body: dict) -> AsyncIterator[dict]:
        self._log_request(body)
        headers = {"Accept": "text/event-stream"}
        loop = asyncio.get_running_loop()

        for attempt in range(1 + self._config.max_retries):
            started = False
            # One deadline per attempt, covering connect, status and every read.
            deadline = loop.time() + self._config.timeout_seconds
            try:
                request = self._client.build_request(
                    "POST", CHAT_PATH, json=body, headers=headers
                )
                async with asyncio.timeout_at(deadline):
                    response = await self._client.send(request, stream=True)
                try:
                    async with asyncio.timeout_at(deadline):
                        await self._raise_for_status(response)
                    async with aclosing(self._parse_stream(response)) as events:
                        while True:
                            async with asyncio.timeout_at(deadline):
                                try:
                                    event = await anext(events)
                                except StopAsyncIteration:
                                    break
                            started = True
                            yield event
                    return  # success
                finally:
                    await response.aclose()
            except (TimeoutError, httpx.TimeoutException) as exc:
                error: RelayError = RequestTimeoutError(
                    f"request timed out after {self._config.timeout_seconds}s: {exc}"
                )
            except (httpx.RemoteProtocolError, httpx.StreamError) as exc:
                raise StreamInterruptedError(
                    f"stream closed prematurely: {exc}"
                ) from exc
            except httpx.TransportError as exc:
                if started:
                    raise StreamInterruptedError(
                        f"stream interrupted: {exc}"
                    ) from exc
                error = TransientNetworkError(f"network error: {exc}")
            except TransientNetworkError as exc:
                error = exc

            if started or attempt >= self._config.max_retries:
                raise error
            await self._backoff(attempt + 1, error)

    async def complete(self, body: dict) -> dict:
        self._log_request(body)
        headers = {"Accept": "application/json"}

        for attempt in range(1 + self._config.max_retries):
            try:
                async with asyncio.timeout(self._config.timeout_seconds):
                    resp = await self._client.post(CHAT_PATH, json=body, headers=headers)
                    await self._raise_for_status(resp)
            except (TimeoutError, httpx.TimeoutException) as exc:
                error: RelayError = RequestTimeoutError(
                    f"request timed out after {self._config.timeout_seconds}s: {exc}"
                )
            except httpx.TransportError as exc:
                error = TransientNetworkError(f"network error: {exc}")
            except TransientNetworkError as exc:
                error = exc
            else:
                try:
                    data = resp.json()
                except ValueError as exc:
                    raise MalformedEventError(
                        f"non-JSON response body: {resp.text[:200]!r}"
                    ) from exc
                if not isinstance(data, dict):
                    raise MalformedEventError("response body is not a JSON object")
                if _is_error_payload(data):
                    raise BackendError(f"backend returned an error: {data['error']}")
                return data

            if attempt >= self._config.max_retries:
                raise error
            await self._backoff(attempt + 1, error)

        # Should never reach here.
        raise RuntimeError("unreachable")  # pragma: no cover

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def _build_headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        headers.update(self._config.headers)
        return headers

    def _log_request(self, body: dict) -> None:
        logger.info(
            "REQUEST: url=%s model=%s messages=%d stream=%s api_key=%s...",
            self._config.base_url,
            body.get("model"),
            len(body.get("messages", [])),
            body.get("stream", False),
            self._api_key[:6] if self._api_key else "(none)",
        )

    # ------------------------------------------------------------------
    # Status and retry handling
    # ------------------------------------------------------------------

    async def _raise_for_status(self, response: httpx.Response) -> None:
        """Map an error status onto the adapter's error types."""
        status = response.status_code
        if status < 400:
            return

        # Read body so the connection is released.
        await response.aread()
        detail = _error_detail(response)
        message = f"HTTP {status}: {detail}" if detail else f"HTTP {status}"

        if status in (401, 403):
            raise AuthenticationError(message, status_code=status)
        if status == 429:
            raise RateLimitError(
                message, retry_after=_retry_after(response), status_code=status
            )
        if status == 408:
            raise RequestTimeoutError(message, status_code=status)
        if status >= 500:
            raise TransientNetworkError(message, status_code=status)
        raise BadRequestError(message, status_code=status)

    async def _backoff(self, attempt: int, error: RelayError) -> None:
        """Sleep before retry *attempt* (1-based): exponential with jitter."""
        retry_after = getattr(error, "retry_after", None)
        if retry_after is not None:
            delay = min(retry_after, _MAX_BACKOFF_SECONDS)
        else:
            delay = self._config.retry_backoff_seconds * (2 ** (attempt - 1))
            delay = min(delay + random.uniform(0, delay * 0.3), _MAX_BACKOFF_SECONDS)
        logger.warning(
            "Retrying request (attempt %d/%d) in %.2fs after %s",
            attempt,
            self._config.max_retries,
            delay,
            error,
        )
        if delay > 0:
            await asyncio.sleep(delay)

    # ------------------------------------------------------------------
    # Response parsing
    # ------------------------------------------------------------------

    async def _parse_stream(self, response: httpx.Response) -> AsyncIterator[dict]:
        """
        Yield the events of a streaming response.

        Two body shapes are accepted.  Server-Sent Events::

            data: {json}\\n\\n
            data: [DONE]\\n\\n

        or a single JSON document, which is yielded as one event.

        An SSE body that ends without ``[DONE]`` and without any
        ``finish_reason`` was cut off and raises ``StreamInterruptedError``.
        The same applies to a body with no events at all.
        """
        sse = None
        raw_parts: list[str] = []
        finished = False
        count = 0

        async for line in response.aiter_lines():
            line = line.rstrip("\r")
            if sse is None:
                if not line.strip():
                    continue
                sse = line.lstrip().startswith(_SSE_PREFIXES)

            if not sse:
                raw_parts.append(line)
                continue

            if not line.startswith("data:"):
                # Event boundaries, comments, ``event:``/``id:`` fields.
                continue

            data_str = line[len("data:"):].strip()
            if data_str == "[DONE]":
                return

            try:
                data = json.loads(data_str)
            except json.JSONDecodeError:
                logger.warning("Failed to parse SSE data: %s", data_str[:200])
                continue
            if not isinstance(data, dict):
                logger.warning("Ignoring non-object SSE data: %s", data_str[:200])
                continue

            if _is_error_payload(data):
                raise StreamInterruptedError(
                    f"backend reported an error mid-stream: {data['error']}"
                )

            finished = finished or _has_finish_reason(data)
            count += 1
            yield data

        if sse is False:
            text = "\n".join(raw_parts)
            try:
                data = json.loads(text)
            except json.JSONDecodeError:
                logger.warning("Failed to parse response body: %s", text[:200])
                data = None
            if isinstance(data, dict):
                if _is_error_payload(data):
                    raise StreamInterruptedError(
                        f"backend answered with an error body: {data['error']}"
                    )
                yield data
                return

        if not finished:
            raise StreamInterruptedError(
                f"stream closed before completion after {count} event(s)"
            )


def _is_error_payload(data: dict) -> bool:
    return "error" in data and not data.get("choices")


def _has_finish_reason(data: dict) -> bool:
    choices = data.get("choices")
    if not isinstance(choices, list):
        return False
    return any(
        isinstance(c, dict) and c.get("finish_reason") is not None for c in choices
    )


def _error_detail(response: httpx.Response) -> str:
    """Best-effort extraction of the backend's error message."""
    try:
        data = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict):
            return str(err.get("message") or err)
        if err:
            return str(err)
        if data.get("message"):
            return str(data["message"])
    return ""


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("retry-after")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None
