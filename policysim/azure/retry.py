"""Bounded retry with exponential backoff for remote calls.

Every management API fetch goes through ``Retrier.call``. Transient
failures (throttling, server errors, transport errors) are retried with
exponential backoff plus jitter, honouring a server-supplied Retry-After
hint; after the last attempt the failure becomes terminal for that one
call.
"""

import logging
import random
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, TypeVar

from .errors import RetryExhaustedError, TransientArmError


logger = logging.getLogger(__name__)

T = TypeVar('T')

# Upper bound on how long a Retry-After hint may stall one call
MAX_RETRY_AFTER_SECONDS = 300.0


class BackoffReason(Enum):
    """Reasons for applying backoff delays."""
    RATE_LIMIT = "rate_limit"          # 429 Too Many Requests
    SERVER_ERROR = "server_error"      # 5xx server errors
    TRANSPORT = "transport"            # Timeouts and connection errors
    RETRY_AFTER = "retry_after"        # Explicit Retry-After header


@dataclass
class RetryPolicy:
    """Retry settings shared by every remote fetch."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: bool = True


@dataclass
class BackoffState:
    """Backoff state for one retrying call."""
    consecutive_failures: int = 0
    reason: Optional[BackoffReason] = None
    retry_after: Optional[float] = None

    def record_failure(self, error: TransientArmError) -> None:
        self.consecutive_failures += 1
        self.retry_after = error.retry_after
        if error.retry_after is not None:
            self.reason = BackoffReason.RETRY_AFTER
        elif error.status_code == 429:
            self.reason = BackoffReason.RATE_LIMIT
        elif error.status_code is not None:
            self.reason = BackoffReason.SERVER_ERROR
        else:
            self.reason = BackoffReason.TRANSPORT

    def calculate_delay(self, base_delay: float = 1.0, max_delay: float = 30.0, jitter: bool = True) -> float:
        """Calculate the next backoff delay."""
        if self.retry_after is not None:
            return min(max(0.0, self.retry_after), MAX_RETRY_AFTER_SECONDS)

        if self.consecutive_failures == 0:
            return 0.0

        # Exponential backoff: base_delay * 2^(failures-1)
        delay = base_delay * (2 ** (self.consecutive_failures - 1))
        delay = min(delay, max_delay)

        if jitter:
            # Add ±10% jitter so parallel workers do not retry in lockstep
            jitter_range = delay * 0.1
            delay += random.uniform(-jitter_range, jitter_range)

        return max(0.0, delay)


class Retrier:
    """Runs callables under a RetryPolicy."""

    def __init__(self, policy: Optional[RetryPolicy] = None, sleep: Callable[[float], None] = time.sleep):
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._lock = threading.Lock()
        self._stats = {
            "calls": 0,
            "retries": 0,
            "exhausted": 0,
            "rate_limited": 0,
            "retry_after_events": 0,
        }

    def call(self, operation: Callable[[], T], description: str = "request") -> T:
        """Invoke ``operation``, retrying transient failures.

        Non-transient errors propagate immediately. After the final attempt a
        RetryExhaustedError is raised, chained to the last transient error.
        """
        attempts = max(1, self.policy.max_attempts)
        state = BackoffState()
        self._increment("calls")

        for attempt in range(1, attempts + 1):
            try:
                return operation()
            except TransientArmError as e:
                state.record_failure(e)
                if e.status_code == 429:
                    self._increment("rate_limited")
                if e.retry_after is not None:
                    self._increment("retry_after_events")

                if attempt >= attempts:
                    self._increment("exhausted")
                    logger.warning(f"Giving up on {description} after {attempts} attempts: {e}")
                    raise RetryExhaustedError(description, attempts, e) from e

                delay = state.calculate_delay(self.policy.base_delay, self.policy.max_delay, self.policy.jitter)
                self._increment("retries")
                logger.info(
                    f"Transient failure on {description} ({state.reason.value}), "
                    f"attempt {attempt}/{attempts}; retrying in {delay:.2f}s"
                )
                self._sleep(delay)

        # Unreachable: the loop either returns or raises
        raise RetryExhaustedError(description, attempts, None)

    def _increment(self, key: str) -> None:
        with self._lock:
            self._stats[key] += 1

    def get_stats(self) -> Dict[str, Any]:
        """Get retry statistics."""
        with self._lock:
            return dict(self._stats)
