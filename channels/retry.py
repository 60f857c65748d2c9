"""
Retry policy — one pure decision function shared by every retry loop.

Channel adapters drive it through tenacity; the job queue, the scheduled
message dispatcher and the offline outbox call ``decide`` directly when
they reschedule work.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from core.errors import PipelineError, RateLimitedError, is_retryable


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay: float = 0.0
    reason: str = ""


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff: attempt n (1-based) that failed waits
    ``base_delay * multiplier ** (n - 1)`` seconds, capped at ``max_delay``.
    ``max_attempts`` counts every attempt, including the first.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    retry_unclassified: bool = False

    def delay_for(self, attempt: int) -> float:
        attempt = max(attempt, 1)
        return min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)

    def should_retry(self, error: BaseException) -> bool:
        """Whether the error kind is retryable at all, ignoring the budget."""
        if isinstance(error, PipelineError):
            return is_retryable(error)
        return self.retry_unclassified and isinstance(error, Exception)

    def decide(self, error: BaseException, attempt: int) -> RetryDecision:
        if not self.should_retry(error):
            terminal = getattr(error, "terminal", False)
            return RetryDecision(False, 0.0, "terminal" if terminal else "permanent")
        if attempt >= self.max_attempts:
            return RetryDecision(False, 0.0, "exhausted")
        delay = self.delay_for(attempt)
        if isinstance(error, RateLimitedError) and error.retry_after:
            delay = max(delay, min(error.retry_after, self.max_delay))
        return RetryDecision(True, delay, "transient")

    def wait(self, retry_state: Any) -> float:
        """tenacity ``wait`` hook."""
        error = retry_state.outcome.exception() if retry_state.outcome else None
        if error is None:
            return self.delay_for(retry_state.attempt_number)
        decision = self.decide(error, retry_state.attempt_number)
        return decision.delay if decision.retry else 0.0

    @classmethod
    def from_config(cls, config: Any, **overrides) -> "RetryPolicy":
        values = {
            "max_attempts": getattr(config, "max_attempts", cls.max_attempts),
            "base_delay": getattr(config, "base_delay", cls.base_delay),
            "max_delay": getattr(config, "max_delay", cls.max_delay),
        }
        values.update(overrides)
        return cls(**values)
