"""
Error taxonomy shared by every pipeline component.

Provides:
- PipelineError: root of the hierarchy (kind, code, channel)
- TransientError / PermanentError: the retry boundary
- NotFoundError, ConflictError, QuotaError: caller-facing state errors
- Channel transport errors (NetworkError, RateLimitedError, ServerError,
  ClientError, CircuitOpenError, DeliveryExhaustedError,
  WebhookVerificationError)
- classify_http_error: maps httpx failures into the taxonomy
"""
from __future__ import annotations

from typing import Optional

import httpx


class PipelineError(Exception):
    """Base exception for all pipeline operations."""

    kind = "pipeline"

    def __init__(self, message: str, channel: str = "", code: str = ""):
        self.channel = channel
        self.code = code or self.kind
        super().__init__(message)

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "code": self.code, "message": str(self), "channel": self.channel}


# ══════════════════════════════════════════════════════════════
#  RETRY BOUNDARY
# ══════════════════════════════════════════════════════════════

class TransientError(PipelineError):
    """
    Retryable failure. ``terminal`` is set once the retry budget that
    produced the error has been spent, so callers fail fast instead of
    stacking another retry loop on top.
    """

    kind = "transient"

    def __init__(self, message: str, channel: str = "", code: str = "", terminal: bool = False):
        super().__init__(message, channel, code)
        self.terminal = terminal


class PermanentError(PipelineError):
    kind = "permanent"


class NotFoundError(PipelineError):
    kind = "not_found"


class ConflictError(PipelineError):
    kind = "conflict"


class QuotaError(PipelineError):
    kind = "quota"


# ══════════════════════════════════════════════════════════════
#  CHANNEL ERRORS
# ══════════════════════════════════════════════════════════════

class NetworkError(TransientError):
    def __init__(self, message: str, channel: str = ""):
        super().__init__(message, channel, code="network")


class RateLimitedError(TransientError):
    def __init__(self, channel: str = "", retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(f"Rate limit exceeded for {channel}", channel, code="rate_limited")


class ServerError(TransientError):
    def __init__(self, message: str, channel: str = "", status_code: int = 500):
        self.status_code = status_code
        super().__init__(message, channel, code="server_error")


class CircuitOpenError(TransientError):
    def __init__(self, channel: str = ""):
        super().__init__(f"Circuit breaker open for {channel}", channel, code="circuit_open")


class DeliveryExhaustedError(TransientError):
    """All delivery attempts failed; wraps the last underlying error."""

    def __init__(self, channel: str, attempts: int, last_error: BaseException):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Max retries exceeded for {channel} after {attempts} attempts: {last_error}",
            channel,
            code="max_retries_exceeded",
            terminal=True,
        )


class ClientError(PermanentError):
    def __init__(self, message: str, channel: str = "", status_code: int = 400):
        self.status_code = status_code
        super().__init__(message, channel, code="client_error")


class WebhookVerificationError(PermanentError):
    def __init__(self, channel: str = ""):
        super().__init__(f"Webhook signature rejected for {channel}", channel, code="invalid_signature")


class AuthenticationError(PermanentError):
    def __init__(self, message: str = "Invalid or missing credentials"):
        super().__init__(message, code="unauthenticated")


# ══════════════════════════════════════════════════════════════
#  CLASSIFICATION
# ══════════════════════════════════════════════════════════════

def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


def classify_http_error(exc: Exception, channel: str = "") -> PipelineError:
    """Map an httpx exception (or an already classified error) into the taxonomy."""
    if isinstance(exc, PipelineError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        detail = f"HTTP {status} from {channel or exc.request.url.host}"
        if status == 429:
            return RateLimitedError(channel, retry_after=_retry_after(exc.response))
        if status >= 500:
            return ServerError(detail, channel, status_code=status)
        return ClientError(detail, channel, status_code=status)
    if isinstance(exc, httpx.TransportError):
        return NetworkError(f"{type(exc).__name__}: {exc}", channel)
    return PermanentError(str(exc), channel)


def is_retryable(exc: BaseException) -> bool:
    """True for non-terminal transient errors."""
    return isinstance(exc, TransientError) and not exc.terminal
