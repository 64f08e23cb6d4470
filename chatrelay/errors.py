"""
Error hierarchy for the chat-completions adapter.

Every error carries a short machine-readable ``code``.  The transport maps
HTTP statuses and httpx exceptions onto these types, so callers (and the
fallback controller) decide by type, never by message text.
"""

from __future__ import annotations


class RelayError(Exception):
    """Structured error raised by the adapter."""

    code = "relay_error"
    retryable = False

    def __init__(self, message: str, code: str = "", status_code: int | None = None):
        super().__init__(message)
        if code:
            self.code = code
        self.status_code = status_code


class ConfigurationError(RelayError):
    """Missing or invalid provider/model configuration.  Never retried."""

    code = "configuration"


class AuthenticationError(RelayError):
    """The backend rejected the credentials (HTTP 401/403)."""

    code = "authentication"


class BadRequestError(RelayError):
    """The backend rejected the request itself (non-retryable 4xx)."""

    code = "bad_request"


class BackendError(RelayError):
    """The backend answered with an error payload instead of a completion."""

    code = "backend_error"


class TransientNetworkError(RelayError):
    """Connection failures and 5xx responses; retried by the transport."""

    code = "transient_network"
    retryable = True


class RateLimitError(TransientNetworkError):
    """HTTP 429 from the backend."""

    code = "rate_limited"

    def __init__(
        self,
        message: str,
        code: str = "",
        status_code: int | None = 429,
        retry_after: float | None = None,
    ):
        super().__init__(message, code, status_code)
        self.retry_after = retry_after


class RequestTimeoutError(TransientNetworkError):
    """The network call exceeded its configured timeout."""

    code = "timeout"


class MalformedEventError(RelayError):
    """A single stream event had an unsupported shape."""

    code = "malformed_event"


class StreamInterruptedError(RelayError):
    """The response stream was cut off before it completed."""

    code = "stream_interrupted"


class FallbackFailedError(RelayError):
    """The non-streaming fallback failed after the stream was interrupted."""

    code = "fallback_failed"

    def __init__(self, original: BaseException, fallback: BaseException):
        super().__init__(
            f"streaming request interrupted ({original}) and "
            f"non-streaming fallback failed ({fallback})"
        )
        self.original = original
        self.fallback = fallback


class GenerationCancelled(RelayError):
    """The caller signalled cancellation; emitted chunks remain valid."""

    code = "cancelled"
