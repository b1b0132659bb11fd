from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

import requests.exceptions

from invoice_compliance.services.exceptions import (
    RetryableHTTPError,
    RetryExhaustedError,
    TransientResultError,
)

T = TypeVar("T")

logger = logging.getLogger(__name__)

TRANSIENT_SIGNATURES = (
    "ECONNREFUSED",
    "ECONNRESET",
    "ETIMEDOUT",
    "ENOTFOUND",
    "EAI_AGAIN",
    "NETWORK_ERROR",
    "HTTP_429",
    "HTTP_502",
    "HTTP_503",
    "HTTP_504",
)

TRANSIENT_SUBSTRINGS = ("NETWORK", "TIMEOUT", "CONNECTION", "UNAVAILABLE", "TEMPORARILY")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    base_delay: float
    max_delay: float
    backoff_factor: float
    jitter: float
    retryable_exceptions: tuple[type[Exception], ...]
    retryable_status_codes: frozenset[int] = field(default_factory=frozenset)
    retryable_signatures: tuple[str, ...] = TRANSIENT_SIGNATURES


PLATFORM_SEND = RetryPolicy(
    max_attempts=3,
    base_delay=1.0,
    max_delay=30.0,
    backoff_factor=2.0,
    jitter=0.25,
    retryable_exceptions=(
        requests.exceptions.ConnectionError,
        requests.exceptions.Timeout,
        RetryableHTTPError,
        TransientResultError,
    ),
    retryable_status_codes=frozenset({429, 502, 503, 504}),
)

STATUS_CHECK = RetryPolicy(
    max_attempts=2,
    base_delay=1.0,
    max_delay=30.0,
    backoff_factor=2.0,
    jitter=0.25,
    retryable_exceptions=PLATFORM_SEND.retryable_exceptions,
    retryable_status_codes=PLATFORM_SEND.retryable_status_codes,
)

VIES_CHECK = RetryPolicy(
    max_attempts=2,
    base_delay=0.5,
    max_delay=5.0,
    backoff_factor=2.0,
    jitter=0.25,
    retryable_exceptions=(requests.exceptions.ConnectionError, requests.exceptions.Timeout),
)


def _calc_delay(attempt: int, policy: RetryPolicy) -> float:
    """Calculate delay with exponential backoff and jitter.

    *attempt* is 0-indexed (0 = delay after first failure). The capped delay
    is stretched by up to ``policy.jitter`` (never shortened).
    """
    delay = policy.base_delay * (policy.backoff_factor**attempt)
    delay = min(delay, policy.max_delay)
    delay += delay * policy.jitter * random.random()
    return max(0.0, delay)


def is_retryable(exc: Exception, policy: RetryPolicy) -> bool:
    """True if *exc* is a transient failure under *policy*.

    Matches on exception type first, then on the error code of a transient
    result, then on known signatures in the message.
    """
    if isinstance(exc, RetryableHTTPError):
        status = getattr(exc.response, "status_code", None)
        if status is None or not policy.retryable_status_codes:
            return True
        return status in policy.retryable_status_codes
    if isinstance(exc, TransientResultError):
        code = (exc.result.error_code or "").upper()
        if "VALIDATION" in code:
            return False
        return isinstance(exc, policy.retryable_exceptions)
    if isinstance(exc, policy.retryable_exceptions):
        return True
    text = f"{getattr(exc, 'code', '') or ''} {exc}".upper()
    if any(sig in text for sig in policy.retryable_signatures):
        return True
    return any(sub in text for sub in TRANSIENT_SUBSTRINGS)


def is_transient_code(error_code: str | None) -> bool:
    """True if a result error code names a transient failure."""
    if not error_code:
        return False
    code = error_code.upper()
    if "VALIDATION" in code:
        return False
    return any(sig in code for sig in TRANSIENT_SIGNATURES) or any(
        sub in code for sub in TRANSIENT_SUBSTRINGS
    )


def retry_call(
    func: Callable[[], T],
    policy: RetryPolicy,
    *,
    sleep_func: Callable[[float], object] = time.sleep,
) -> T:
    """Execute *func()* with retry per *policy*.

    Non-retryable errors propagate immediately. When every attempt fails with
    a retryable error, raises RetryExhaustedError wrapping the last one.
    """
    last_exc: Exception | None = None
    for attempt in range(policy.max_attempts):
        try:
            return func()
        except Exception as exc:
            if not is_retryable(exc, policy):
                raise
            last_exc = exc
            if attempt < policy.max_attempts - 1:
                delay = _calc_delay(attempt, policy)
                logger.warning(
                    "Retry %d/%d after %s (%.1fs delay)",
                    attempt + 1,
                    policy.max_attempts,
                    type(exc).__name__,
                    delay,
                )
                sleep_func(delay)
    raise RetryExhaustedError(policy.max_attempts, last_exc)  # type: ignore[arg-type]


# --- Circuit breaker ---

CLOSED = "CLOSED"
OPEN = "OPEN"
HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """Per-destination breaker. Transitions are serialized by an instance lock.

    OPEN turns into HALF_OPEN lazily, on the first state check after
    *reset_timeout* seconds have elapsed since the last failure.
    """

    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        half_open_max_attempts: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.half_open_max_attempts = half_open_max_attempts
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CLOSED
        self._failure_count = 0
        self._last_failure_time: float | None = None
        self._half_open_successes = 0

    def _refresh(self) -> None:
        # Caller holds the lock
        if self._state == OPEN and self._last_failure_time is not None:
            if self._clock() - self._last_failure_time >= self.reset_timeout:
                self._state = HALF_OPEN
                self._half_open_successes = 0
                logger.info("Circuit %s half-open after %.0fs", self.name, self.reset_timeout)

    @property
    def state(self) -> str:
        with self._lock:
            self._refresh()
            return self._state

    def can_execute(self) -> bool:
        with self._lock:
            self._refresh()
            if self._state == CLOSED:
                return True
            if self._state == HALF_OPEN:
                return self._half_open_successes < self.half_open_max_attempts
            return False

    def record_success(self) -> None:
        with self._lock:
            self._refresh()
            if self._state == HALF_OPEN:
                self._half_open_successes += 1
                if self._half_open_successes >= self.half_open_max_attempts:
                    self._close()
                    logger.info("Circuit %s closed", self.name)
            else:
                self._failure_count = 0

    def record_failure(self) -> None:
        with self._lock:
            self._refresh()
            self._last_failure_time = self._clock()
            if self._state == HALF_OPEN:
                self._state = OPEN
                self._half_open_successes = 0
                logger.info("Circuit %s re-opened after half-open failure", self.name)
                return
            self._failure_count += 1
            if self._state == CLOSED and self._failure_count >= self.failure_threshold:
                self._state = OPEN
                logger.info(
                    "Circuit %s opened after %d consecutive failures", self.name, self._failure_count
                )

    def retry_after(self) -> float:
        """Seconds until an OPEN breaker will allow a trial call (0 otherwise)."""
        with self._lock:
            if self._state != OPEN or self._last_failure_time is None:
                return 0.0
            return max(0.0, self.reset_timeout - (self._clock() - self._last_failure_time))

    def reset(self) -> None:
        with self._lock:
            self._close()

    def _close(self) -> None:
        self._state = CLOSED
        self._failure_count = 0
        self._last_failure_time = None
        self._half_open_successes = 0

    def status(self) -> dict:
        with self._lock:
            self._refresh()
            return {
                "state": self._state,
                "failure_count": self._failure_count,
                "last_failure_time": self._last_failure_time,
                "half_open_success_count": self._half_open_successes,
            }
