"""
Channel Adapters — Shared delivery infrastructure for all channels.

Provides:
- TokenBucketRateLimiter: async token bucket with configurable burst
- CircuitBreaker: failure-counting breaker with half-open probe
- ChannelMetrics: per-channel send/fail/latency tracking
- MessageDeduplicator / InputSanitizer: inbound hygiene
- ChannelAdapter: abstract base wrapping every send with rate limiting,
  circuit breaking, classified errors and tenacity-driven retries, plus
  HMAC webhook verification
- ChannelRegistry: adapter lookup, the shared ``deliver`` path, health
"""
from __future__ import annotations

import abc
import asyncio
import base64
import hashlib
import hmac
import json
import time
import structlog
from typing import Any, Awaitable, Callable, Optional, Union

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt

from channels.retry import RetryPolicy
from core.errors import (
    CircuitOpenError, ClientError, DeliveryExhaustedError, PermanentError,
    PipelineError, RateLimitedError, TransientError, WebhookVerificationError,
    classify_http_error,
)
from models.schemas import ChannelType, DeliveryReceipt, InboundMessage

logger = structlog.get_logger()

SleepFn = Callable[[float], Awaitable[None]]


# ══════════════════════════════════════════════════════════════
#  TOKEN BUCKET RATE LIMITER
# ══════════════════════════════════════════════════════════════

class TokenBucketRateLimiter:
    """
    Async token bucket rate limiter.
    Tokens refill at `rate` per second up to `burst` capacity.
    """

    def __init__(self, rate: float = 10.0, burst: int = 10):
        self.rate = rate
        self.burst = burst
        self._tokens: float = float(burst)
        self._last_refill = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self, timeout: float = 5.0) -> bool:
        deadline = time.monotonic() + timeout
        while True:
            async with self._lock:
                self._refill()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(1.0 / max(self.rate, 0.001), remaining))

    def _refill(self):
        now = time.monotonic()
        self._tokens = min(self.burst, self._tokens + (now - self._last_refill) * self.rate)
        self._last_refill = now


# ══════════════════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    closed → open (after threshold failures) → half_open (after timeout) →
    closed (on success) or open (on failure).
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = "closed"
        self._failure_count = 0
        self._opened_at: float = 0.0
        self._total_failures = 0
        self._total_successes = 0

    @property
    def state(self) -> str:
        if self._state == "open" and time.monotonic() - self._opened_at >= self.recovery_timeout:
            return "half_open"
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == "open"

    def record_failure(self):
        self._total_failures += 1
        self._failure_count += 1
        if self.state == "half_open" or self._failure_count >= self.failure_threshold:
            self._open()

    def record_success(self):
        self._total_successes += 1
        self._state = "closed"
        self._failure_count = 0

    def _open(self):
        self._state = "open"
        self._opened_at = time.monotonic()
        logger.warning("circuit_opened", failures=self._failure_count)

    def reset(self):
        self._state = "closed"
        self._failure_count = 0

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "failure_count": self._failure_count,
            "total_failures": self._total_failures,
            "total_successes": self._total_successes,
        }


# ══════════════════════════════════════════════════════════════
#  CHANNEL METRICS
# ══════════════════════════════════════════════════════════════

class ChannelMetrics:
    """Tracks per-channel send, retry, failure and latency metrics."""

    def __init__(self, channel: ChannelType):
        self.channel = channel
        self.messages_sent: int = 0
        self.messages_failed: int = 0
        self.retries: int = 0
        self.webhooks_rejected: int = 0
        self._latencies: list[float] = []
        self._errors: list[str] = []

    def record_send(self, latency_ms: float = 0.0):
        self.messages_sent += 1
        if latency_ms > 0:
            self._latencies.append(latency_ms)
            self._latencies = self._latencies[-500:]

    def record_failure(self, error: str = ""):
        self.messages_failed += 1
        if error:
            self._errors.append(error)
            self._errors = self._errors[-50:]

    def record_retry(self):
        self.retries += 1

    @property
    def avg_latency_ms(self) -> float:
        return sum(self._latencies) / len(self._latencies) if self._latencies else 0.0

    @property
    def failure_rate(self) -> float:
        total = self.messages_sent + self.messages_failed
        return self.messages_failed / total if total > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel.value,
            "sent": self.messages_sent,
            "failed": self.messages_failed,
            "retries": self.retries,
            "webhooks_rejected": self.webhooks_rejected,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "failure_rate": round(self.failure_rate, 4),
            "recent_errors": self._errors[-10:],
        }


# ══════════════════════════════════════════════════════════════
#  MESSAGE DEDUPLICATOR & SANITIZER
# ══════════════════════════════════════════════════════════════

class MessageDeduplicator:
    """TTL-based seen-set for deduplicating inbound webhook deliveries."""

    def __init__(self, ttl_seconds: float = 300.0, max_size: int = 5000):
        self.ttl = ttl_seconds
        self.max_size = max_size
        self._seen: dict[str, float] = {}

    def is_duplicate(self, key: str) -> bool:
        self._prune()
        if key in self._seen:
            return True
        self._seen[key] = time.monotonic()
        return False

    def _prune(self):
        cutoff = time.monotonic() - self.ttl
        for k in [k for k, t in self._seen.items() if t < cutoff]:
            del self._seen[k]
        if len(self._seen) > self.max_size:
            oldest = sorted(self._seen.items(), key=lambda kv: kv[1])[: len(self._seen) - self.max_size]
            for k, _ in oldest:
                del self._seen[k]


class InputSanitizer:
    def __init__(self, max_length: int = 10000):
        self.max_length = max_length

    def sanitize(self, content: str) -> str:
        if not content:
            return ""
        content = "".join(c for c in content if c in ("\n", "\t", "\r") or ord(c) >= 32)
        if len(content) > self.max_length:
            content = content[: self.max_length] + "... [truncated]"
        return content.strip()


# ══════════════════════════════════════════════════════════════
#  CHANNEL ADAPTER — Abstract Base
# ══════════════════════════════════════════════════════════════

class ChannelAdapter(abc.ABC):
    """
    Base class for all channel adapters.

    Subclasses implement ``_do_send``, ``fetch_messages`` and
    ``parse_webhook_payload``. The base class wraps every send with rate
    limiting, the circuit breaker, retry and metrics, and every inbound
    webhook with signature verification and id deduplication.

    Transport failures never leave the adapter unclassified: callers see
    a TransientError (NetworkError, RateLimitedError, ServerError,
    CircuitOpenError, DeliveryExhaustedError) or a PermanentError
    (ClientError).
    """

    channel_type: ChannelType
    base_url: str = ""
    signature_header: str = "X-Hub-Signature-256"
    signature_encoding: str = "hex"           # hex | base64

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Optional[SleepFn] = None,
    ):
        self._initialized = False
        self._config: dict[str, Any] = {}
        self._access_token: str = ""
        self._webhook_secret: str = ""
        self._client = http_client
        self._owns_client = http_client is None
        self._breaker = CircuitBreaker()
        self._rate_limiter: Optional[TokenBucketRateLimiter] = None
        self._metrics = ChannelMetrics(self.channel_type)
        self._deduplicator = MessageDeduplicator()
        self._sanitizer = InputSanitizer()
        self.retry_policy = retry_policy or RetryPolicy()
        self.rate_limit_timeout: float = 5.0
        self._sleep: SleepFn = sleep or asyncio.sleep

    @property
    def name(self) -> str:
        return self.channel_type.value

    # ── Abstract hooks ────────────────────────────────────────

    @abc.abstractmethod
    async def _do_send(
        self, recipient: str, content: str, media: list[str], metadata: dict[str, Any],
    ) -> dict[str, Any]:
        """Perform one send attempt; return the provider response."""
        ...

    @abc.abstractmethod
    async def fetch_messages(self, limit: int = 50, **params) -> list[InboundMessage]:
        ...

    @abc.abstractmethod
    def parse_webhook_payload(self, payload: dict[str, Any]) -> list[InboundMessage]:
        ...

    def _extract_message_id(self, response: dict[str, Any]) -> str:
        return str(response.get("id", "") or response.get("message_id", ""))

    # ── Configuration ─────────────────────────────────────────

    async def initialize(self, config: dict[str, Any]) -> None:
        self._config = config or {}
        self._access_token = self._config.get("access_token", "")
        self._webhook_secret = (
            self._config.get("webhook_secret", "") or self._config.get("app_secret", "")
        )
        self.base_url = self._config.get("base_url", self.base_url)
        rate = self._config.get("rate_per_second", 0)
        if rate and rate > 0:
            self._rate_limiter = TokenBucketRateLimiter(rate=rate, burst=self._config.get("burst", int(rate)))
        self._initialized = True
        logger.info("channel_initialized", channel=self.name, has_webhook_secret=bool(self._webhook_secret))

    # ── HTTP ──────────────────────────────────────────────────

    def _default_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._access_token:
            headers["Authorization"] = f"Bearer {self._access_token}"
        return headers

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=30.0)
            self._owns_client = True
        return self._client

    async def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        """Single HTTP exchange; failures are classified, never retried here."""
        client = await self._get_client()
        url = path if path.startswith("http") else f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"
        headers = {**self._default_headers(), **kwargs.pop("headers", {})}
        try:
            response = await client.request(method, url, headers=headers, **kwargs)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise classify_http_error(e, self.name) from e
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {"raw": response.text}

    # ── Public send ───────────────────────────────────────────

    async def send_message(
        self,
        recipient: str,
        content: str,
        media: Optional[list[str]] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> DeliveryReceipt:
        """
        Deliver one message, retrying transient failures per ``retry_policy``.

        Raises:
            CircuitOpenError: the breaker is open; no attempt was made.
            DeliveryExhaustedError: every attempt failed transiently.
            PermanentError: the provider rejected the request.
        """
        media = list(media or [])
        metadata = metadata or {}
        content = self._sanitizer.sanitize(content)
        if not recipient:
            raise ClientError("Recipient is required", self.name)
        if not content and not media:
            raise ClientError("Message has neither content nor media", self.name)

        if self._breaker.is_open:
            self._metrics.record_failure("circuit_open")
            raise CircuitOpenError(self.name)

        policy = self.retry_policy
        start = time.monotonic()
        attempts = 0
        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.max_attempts),
            wait=policy.wait,
            retry=retry_if_exception(policy.should_retry),
            sleep=self._sleep,
            before_sleep=self._log_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    response = await self._attempt_send(recipient, content, media, metadata)
        except TransientError as e:
            self._metrics.record_failure(e.code)
            if e.terminal or attempts < policy.max_attempts:
                raise
            logger.error("delivery_exhausted", channel=self.name, attempts=attempts, error=str(e))
            raise DeliveryExhaustedError(self.name, attempts, e) from e
        except PipelineError as e:
            self._metrics.record_failure(e.code)
            logger.warning("delivery_rejected", channel=self.name, code=e.code, error=str(e))
            raise

        latency = (time.monotonic() - start) * 1000
        self._metrics.record_send(latency)
        receipt = DeliveryReceipt(
            channel=self.channel_type,
            recipient=recipient,
            channel_message_id=self._extract_message_id(response),
            attempts=attempts,
            latency_ms=round(latency, 1),
        )
        logger.info("message_delivered", channel=self.name, attempts=attempts,
                    channel_message_id=receipt.channel_message_id)
        return receipt

    async def _attempt_send(
        self, recipient: str, content: str, media: list[str], metadata: dict[str, Any],
    ) -> dict[str, Any]:
        if self._rate_limiter and not await self._rate_limiter.acquire(timeout=self.rate_limit_timeout):
            raise RateLimitedError(self.name)
        try:
            response = await self._do_send(recipient, content, media, metadata)
        except httpx.HTTPError as e:
            error = classify_http_error(e, self.name)
            if isinstance(error, TransientError):
                self._breaker.record_failure()
            raise error from e
        except TransientError:
            self._breaker.record_failure()
            raise
        self._breaker.record_success()
        return response

    def _log_retry(self, retry_state) -> None:
        self._metrics.record_retry()
        error = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.info("delivery_retry_scheduled",
                    channel=self.name,
                    attempt=retry_state.attempt_number,
                    delay_s=delay,
                    error=str(error))

    # ── Webhooks ──────────────────────────────────────────────

    @staticmethod
    def _payload_bytes(payload: Union[bytes, str, dict[str, Any]]) -> bytes:
        if isinstance(payload, bytes):
            return payload
        if isinstance(payload, str):
            return payload.encode()
        return json.dumps(payload, separators=(",", ":")).encode()

    def compute_signature(self, payload: Union[bytes, str, dict[str, Any]]) -> str:
        digest = hmac.new(self._webhook_secret.encode(), self._payload_bytes(payload), hashlib.sha256).digest()
        if self.signature_encoding == "base64":
            return base64.b64encode(digest).decode()
        return digest.hex()

    def verify_webhook(self, signature: Optional[str], payload: Union[bytes, str, dict[str, Any]]) -> bool:
        """
        Constant-time HMAC-SHA256 check over the raw payload bytes.
        A missing secret or signature is a rejection, never a pass.
        """
        if not self._webhook_secret or not signature:
            return False
        provided = signature.strip()
        if provided.startswith("sha256="):
            provided = provided[len("sha256="):]
        return hmac.compare_digest(self.compute_signature(payload), provided)

    async def handle_webhook(self, signature: Optional[str], raw_body: bytes) -> list[InboundMessage]:
        """Verify, parse and deduplicate one webhook delivery."""
        if not self.verify_webhook(signature, raw_body):
            self._metrics.webhooks_rejected += 1
            logger.warning("webhook_signature_rejected", channel=self.name)
            raise WebhookVerificationError(self.name)
        try:
            payload = json.loads(raw_body or b"{}")
        except ValueError as e:
            raise PermanentError("Malformed webhook payload", self.name, code="malformed_payload") from e

        fresh: list[InboundMessage] = []
        for message in self.parse_webhook_payload(payload):
            if message.id and self._deduplicator.is_duplicate(f"{self.name}:{message.id}"):
                logger.debug("webhook_message_duplicate", channel=self.name, message_id=message.id)
                continue
            message.text = self._sanitizer.sanitize(message.text)
            fresh.append(message)
        logger.info("webhook_processed", channel=self.name, messages=len(fresh))
        return fresh

    # ── Health ────────────────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        return {
            "channel": self.name,
            "initialized": self._initialized,
            "circuit_breaker": self._breaker.stats,
            "metrics": self._metrics.to_dict(),
        }

    async def shutdown(self) -> None:
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()


# ══════════════════════════════════════════════════════════════
#  CHANNEL REGISTRY
# ══════════════════════════════════════════════════════════════

class ChannelRegistry:
    """Adapter lookup plus the single delivery path used by every sender."""

    def __init__(self):
        self._adapters: dict[ChannelType, ChannelAdapter] = {}

    def register(self, adapter: ChannelAdapter):
        self._adapters[adapter.channel_type] = adapter

    def get(self, channel_type: Union[ChannelType, str]) -> Optional[ChannelAdapter]:
        try:
            return self._adapters.get(ChannelType(channel_type))
        except ValueError:
            return None

    def require(self, channel_type: Union[ChannelType, str]) -> ChannelAdapter:
        adapter = self.get(channel_type)
        if adapter is None:
            raise PermanentError(f"Channel not available: {channel_type}", str(channel_type),
                                 code="channel_unavailable")
        return adapter

    def get_available(self) -> list[ChannelType]:
        return list(self._adapters.keys())

    def get_healthy_channels(self) -> list[ChannelType]:
        return [ch for ch, a in self._adapters.items() if not a._breaker.is_open]

    async def deliver(
        self,
        channel_type: Union[ChannelType, str],
        recipient: str,
        content: str,
        media: Optional[list[str]] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> DeliveryReceipt:
        return await self.require(channel_type).send_message(recipient, content, media, metadata)

    async def health_check_all(self) -> dict[str, Any]:
        return {ch.value: await a.health_check() for ch, a in self._adapters.items()}

    async def initialize_all(self, configs: dict[str, Any]):
        for ch, adapter in self._adapters.items():
            ch_cfg = configs.get(ch.value, {})
            # ChannelConfig dataclass → dict so adapters can call .get()
            if hasattr(ch_cfg, "credentials"):
                ch_cfg = ch_cfg.credentials
            try:
                await adapter.initialize(ch_cfg)
            except Exception as e:
                logger.error("channel_init_failed", channel=ch.value, error=str(e))

    async def shutdown_all(self):
        for ch, adapter in self._adapters.items():
            try:
                await adapter.shutdown()
            except Exception as e:
                logger.warning("channel_shutdown_failed", channel=ch.value, error=str(e))
