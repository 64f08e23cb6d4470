"""Tests for OpenAICompatTransport against httpx.MockTransport backends."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from chatrelay.config import ProviderConfig
from chatrelay.errors import (
    AuthenticationError,
    BackendError,
    BadRequestError,
    ConfigurationError,
    RateLimitError,
    RequestTimeoutError,
    StreamInterruptedError,
    TransientNetworkError,
)
from chatrelay.llm.transports.openai_compat import OpenAICompatTransport
from tests.mock_transports import (
    BrokenStream,
    DripStream,
    complete_response,
    delta_event,
    make_delta_events,
    sse_body,
)

BODY = {"model": "m", "messages": [{"role": "user", "content": "hi"}], "stream": True}


def _config(**kw) -> ProviderConfig:
    defaults = dict(
        base_url="http://relay.test/v1",
        api_key="sk-test-key",
        max_retries=2,
        retry_backoff_seconds=0,
    )
    defaults.update(kw)
    return ProviderConfig(**defaults)


def _sse(events, done=True, status=200):
    return httpx.Response(
        status,
        content=sse_body(events, done=done),
        headers={"content-type": "text/event-stream"},
    )


class _Backend:
    """Records requests and answers from a list of responses/exceptions."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        if isinstance(item.stream, (BrokenStream, DripStream)):
            return item
        # Fresh response per request; the client binds a response to one request.
        return httpx.Response(item.status_code, headers=item.headers, content=item.content)


def _transport(backend, **kw) -> OpenAICompatTransport:
    return OpenAICompatTransport(_config(**kw), http_transport=httpx.MockTransport(backend))


async def _events(transport, body=BODY):
    return [e async for e in transport.stream_events(body)]


class TestStreaming:

    @pytest.mark.asyncio
    async def test_sse_events_in_order(self):
        events = make_delta_events("Hello big world")
        backend = _Backend(_sse(events))
        transport = _transport(backend)

        assert await _events(transport) == events
        await transport.aclose()

    @pytest.mark.asyncio
    async def test_request_shape(self):
        backend = _Backend(_sse(make_delta_events("ok")))
        transport = _transport(backend, headers={"X-Title": "chatrelay"})
        await _events(transport)

        request = backend.requests[0]
        assert request.method == "POST"
        assert request.url == "http://relay.test/v1/chat/completions"
        assert request.headers["authorization"] == "Bearer sk-test-key"
        assert request.headers["x-title"] == "chatrelay"
        assert json.loads(request.content) == BODY

    @pytest.mark.asyncio
    async def test_no_auth_header_without_key(self):
        backend = _Backend(_sse(make_delta_events("ok")))
        transport = _transport(backend, api_key="")
        await _events(transport)
        assert "authorization" not in backend.requests[0].headers

    @pytest.mark.asyncio
    async def test_json_body_yields_single_event(self):
        response = complete_response("Hi there")
        backend = _Backend(httpx.Response(200, json=response))
        transport = _transport(backend)

        assert await _events(transport) == [response]

    @pytest.mark.asyncio
    async def test_unparseable_sse_line_skipped(self):
        body = b"data: {not json}\n\n" + sse_body(make_delta_events("ok"))
        backend = _Backend(
            httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})
        )
        transport = _transport(backend)
        assert len(await _events(transport)) == 1

    @pytest.mark.asyncio
    async def test_sse_comments_and_event_fields_ignored(self):
        body = b": keep-alive\n\nevent: message\n" + sse_body(make_delta_events("ok"))
        backend = _Backend(
            httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})
        )
        assert len(await _events(_transport(backend))) == 1

    @pytest.mark.asyncio
    async def test_finish_reason_without_done_is_complete(self):
        backend = _Backend(_sse(make_delta_events("all good"), done=False))
        assert len(await _events(_transport(backend))) == 2

    @pytest.mark.asyncio
    async def test_eof_before_completion_is_interruption(self):
        backend = _Backend(_sse([delta_event("partial", role="assistant")], done=False))
        transport = _transport(backend)
        received = []
        with pytest.raises(StreamInterruptedError):
            async for event in transport.stream_events(BODY):
                received.append(event)
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_empty_body_is_interruption(self):
        backend = _Backend(httpx.Response(200, content=b""))
        with pytest.raises(StreamInterruptedError):
            await _events(_transport(backend))

    @pytest.mark.asyncio
    async def test_connection_dropped_mid_stream(self):
        prefix = sse_body([delta_event("Hel", role="assistant")], done=False)
        backend = _Backend(httpx.Response(200, stream=BrokenStream(prefix)))
        transport = _transport(backend)
        with pytest.raises(StreamInterruptedError):
            await _events(transport)
        # Not retried once the stream was open.
        assert len(backend.requests) == 1

    @pytest.mark.asyncio
    async def test_mid_stream_error_event(self):
        body = sse_body([{"error": {"message": "overloaded"}}], done=False)
        backend = _Backend(
            httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})
        )
        with pytest.raises(StreamInterruptedError, match="overloaded"):
            await _events(_transport(backend))


class TestStatusMapping:

    @pytest.mark.asyncio
    async def test_401_is_authentication_error(self):
        backend = _Backend(httpx.Response(401, json={"error": {"message": "bad key"}}))
        with pytest.raises(AuthenticationError, match="bad key") as exc_info:
            await _events(_transport(backend))
        assert exc_info.value.status_code == 401
        assert len(backend.requests) == 1

    @pytest.mark.asyncio
    async def test_400_is_bad_request(self):
        backend = _Backend(httpx.Response(400, json={"error": "unknown model"}))
        with pytest.raises(BadRequestError):
            await _events(_transport(backend))
        assert len(backend.requests) == 1

    @pytest.mark.asyncio
    async def test_429_retried_then_succeeds(self):
        events = make_delta_events("ok")
        backend = _Backend(
            httpx.Response(429, headers={"retry-after": "0"}),
            _sse(events),
        )
        assert await _events(_transport(backend)) == events
        assert len(backend.requests) == 2

    @pytest.mark.asyncio
    async def test_429_exhausts_retries(self):
        backend = _Backend(httpx.Response(429, headers={"retry-after": "0"}))
        with pytest.raises(RateLimitError):
            await _events(_transport(backend, max_retries=1))
        assert len(backend.requests) == 2

    @pytest.mark.asyncio
    async def test_5xx_exhausts_retries(self):
        backend = _Backend(httpx.Response(503))
        with pytest.raises(TransientNetworkError) as exc_info:
            await _events(_transport(backend))
        assert exc_info.value.status_code == 503
        assert len(backend.requests) == 3

    @pytest.mark.asyncio
    async def test_connect_error_retried(self):
        events = make_delta_events("ok")
        backend = _Backend(httpx.ConnectError("connection refused"), _sse(events))
        assert await _events(_transport(backend)) == events
        assert len(backend.requests) == 2

    @pytest.mark.asyncio
    async def test_timeout_is_distinct_from_interruption(self):
        backend = _Backend(httpx.ReadTimeout("timed out"))
        with pytest.raises(RequestTimeoutError):
            await _events(_transport(backend, max_retries=0))


class TestComplete:

    @pytest.mark.asyncio
    async def test_returns_json(self):
        response = complete_response("Fallback answer")
        backend = _Backend(httpx.Response(200, json=response))
        transport = _transport(backend)

        assert await transport.complete({**BODY, "stream": False}) == response
        assert backend.requests[0].headers["accept"] == "application/json"

    @pytest.mark.asyncio
    async def test_retries_5xx(self):
        backend = _Backend(httpx.Response(502), httpx.Response(200, json=complete_response("x")))
        transport = _transport(backend)
        assert (await transport.complete(BODY))["choices"][0]["message"]["content"] == "x"
        assert len(backend.requests) == 2

    @pytest.mark.asyncio
    async def test_auth_error_not_retried(self):
        backend = _Backend(httpx.Response(401))
        with pytest.raises(AuthenticationError):
            await _transport(backend).complete(BODY)
        assert len(backend.requests) == 1


class TestConstruction:

    def test_base_url_required(self):
        with pytest.raises(ConfigurationError):
            OpenAICompatTransport(ProviderConfig(base_url=""))

    def test_api_key_from_env(self, monkeypatch):
        monkeypatch.setenv("RELAY_TEST_KEY", "sk-from-env")
        config = ProviderConfig(base_url="http://x", api_key_env="RELAY_TEST_KEY")
        assert config.resolved_api_key() == "sk-from-env"


class TestErrorBodies:

    @pytest.mark.asyncio
    async def test_json_error_body_on_stream_is_interruption(self):
        backend = _Backend(httpx.Response(200, json={"error": {"message": "model overloaded"}}))
        with pytest.raises(StreamInterruptedError, match="model overloaded"):
            await _events(_transport(backend))

    @pytest.mark.asyncio
    async def test_json_error_body_on_complete(self):
        backend = _Backend(httpx.Response(200, json={"error": {"message": "model overloaded"}}))
        with pytest.raises(BackendError, match="model overloaded"):
            await _transport(backend).complete(BODY)
        assert len(backend.requests) == 1


class TestWholeCallTimeout:

    @pytest.mark.asyncio
    async def test_slow_drip_stream_is_cut_off(self):
        prefix = sse_body([delta_event("Hel", role="assistant")], done=False)
        backend = _Backend(httpx.Response(200, stream=DripStream(prefix)))
        transport = _transport(backend, timeout_seconds=0.2, max_retries=0)

        received = []
        with pytest.raises(RequestTimeoutError):
            async for event in transport.stream_events(BODY):
                received.append(event)
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_slow_complete_is_cut_off(self):
        async def handler(request):
            await asyncio.sleep(5)
            return httpx.Response(200, json=complete_response("late"))

        transport = OpenAICompatTransport(
            _config(timeout_seconds=0.1, max_retries=0),
            http_transport=httpx.MockTransport(handler),
        )
        with pytest.raises(RequestTimeoutError):
            await transport.complete(BODY)

    @pytest.mark.asyncio
    async def test_timeout_before_first_event_is_retried(self):
        backend = _Backend(
            httpx.Response(200, stream=DripStream()),
            _sse(make_delta_events("ok")),
        )
        transport = _transport(backend, timeout_seconds=0.2, max_retries=1)
        assert len(await _events(transport)) == 1
        assert len(backend.requests) == 2
