"""
Retry helper for idempotent provider calls.

Backoff is exponential with deterministic doubling (no jitter) so that
delays are reproducible: base_delay, 2 * base_delay, 4 * base_delay, ...
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from functools import wraps
from typing import Any, Callable, TypeVar

from relay.providers.errors import ProviderError, RateLimitError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration for one provider instance."""

    attempts: int = 3
    base_delay: float = 1.0
    max_delay: float | None = 30.0

    @classmethod
    def from_config(cls, config: dict | None) -> "RetryPolicy":
        config = config or {}
        return cls(
            attempts=int(config.get("retry_attempts", cls.attempts)),
            base_delay=float(config.get("retry_base_delay", cls.base_delay)),
            max_delay=config.get("retry_max_delay", cls.max_delay),
        )

    def delay_for(self, attempt: int) -> float:
        """
        Delay before the retry that follows ``attempt``.

        Args:
            attempt: One-based number of the attempt that just failed

        Returns:
            Delay in seconds
        """
        delay = self.base_delay * (2 ** (attempt - 1))
        if self.max_delay is not None:
            delay = min(delay, float(self.max_delay))
        return delay


DEFAULT_POLICY = RetryPolicy()


def retry_call(
    func: Callable[..., T],
    *args: Any,
    policy: RetryPolicy | None = None,
    sleep: Callable[[float], None] = time.sleep,
    **kwargs: Any,
) -> T:
    """
    Call ``func`` and retry retryable provider errors.

    Only errors whose ``retryable`` flag is set are retried; everything else
    propagates immediately. A rate-limit ``retry_after`` hint is honoured when
    it is longer than the computed backoff.
    """
    policy = policy or DEFAULT_POLICY
    attempt = 1

    while True:
        try:
            return func(*args, **kwargs)
        except ProviderError as e:
            if not e.retryable or attempt >= policy.attempts:
                raise

            delay = policy.delay_for(attempt)
            if isinstance(e, RateLimitError) and e.retry_after:
                delay = max(delay, e.retry_after)

            name = getattr(func, "__name__", repr(func))
            logger.warning(
                f"{name} failed on attempt {attempt}/{policy.attempts}: "
                f"{type(e).__name__}: {e}. Retrying in {delay:.2f}s"
            )
            sleep(delay)
            attempt += 1


def retried(method: Callable[..., T]) -> Callable[..., T]:
    """Decorate a provider method so it runs under the instance's retry policy."""

    @wraps(method)
    def wrapper(self, *args: Any, **kwargs: Any) -> T:
        return retry_call(method, self, *args, policy=self.retry_policy, **kwargs)

    return wrapper
