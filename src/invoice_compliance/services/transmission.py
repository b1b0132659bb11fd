"""Routing of documents to transmission strategies, with fault isolation.

Each platform gets its own circuit breaker, created on first use. An allowed
call runs under a retry policy; the whole retry sequence counts as one
success or failure for the breaker. Failures come back as TransmissionResult
objects rather than exceptions.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from collections.abc import Callable, Sequence

from invoice_compliance import config as _config
from invoice_compliance.models.transmission import (
    ACCEPTED,
    FAILED,
    PENDING,
    REJECTED,
    TransmissionPayload,
    TransmissionResult,
    failure,
)
from invoice_compliance.services.exceptions import RetryExhaustedError, TransientResultError
from invoice_compliance.services.resilience import (
    CLOSED,
    PLATFORM_SEND,
    STATUS_CHECK,
    CircuitBreaker,
    RetryPolicy,
    is_transient_code,
    retry_call,
)
from invoice_compliance.transmission.base import TransmissionStrategy

logger = logging.getLogger(__name__)

CIRCUIT_BREAKER_OPEN = "CIRCUIT_BREAKER_OPEN"
RETRY_EXHAUSTED = "RETRY_EXHAUSTED"
UNKNOWN_ERROR = "UNKNOWN_ERROR"


class TransmissionRegistry:
    """Ordered platform -> strategy table, assembled once.

    Lookup returns the first strategy whose ``supports()`` accepts the
    platform, or the fallback strategy (email) when none does.
    """

    def __init__(
        self, strategies: Sequence[TransmissionStrategy], fallback: TransmissionStrategy
    ) -> None:
        self._strategies = tuple(strategies)
        self._fallback = fallback

    def resolve(self, platform: str) -> TransmissionStrategy:
        key = (platform or "").lower()
        for strategy in self._strategies:
            if strategy.supports(key):
                return strategy
        if key and key != self._fallback.name:
            logger.warning(
                "No transmission strategy for %r, using %s", platform, self._fallback.name
            )
        return self._fallback

    def is_supported(self, platform: str) -> bool:
        key = (platform or "").lower()
        return any(s.supports(key) for s in self._strategies) or self._fallback.supports(key)

    def strategy_names(self) -> list[str]:
        names = [s.name for s in self._strategies]
        if self._fallback.name not in names:
            names.append(self._fallback.name)
        return names

    def supported_platforms(self, candidates: Sequence[str]) -> list[str]:
        return [p for p in candidates if self.is_supported(p)]


class ResilientDispatcher:
    def __init__(
        self,
        registry: TransmissionRegistry,
        *,
        send_policy: RetryPolicy | None = None,
        status_policy: RetryPolicy = STATUS_CHECK,
        breaker_factory: Callable[[str], CircuitBreaker] | None = None,
        sleep_func: Callable[[float], object] = time.sleep,
    ) -> None:
        self._registry = registry
        self._send_policy = send_policy or dataclasses.replace(
            PLATFORM_SEND, max_attempts=_config.retry_max_attempts()
        )
        self._status_policy = status_policy
        self._breaker_factory = breaker_factory or _default_breaker
        self._sleep = sleep_func
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    @property
    def registry(self) -> TransmissionRegistry:
        return self._registry

    def _breaker(self, platform: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(platform)
            if breaker is None:
                breaker = self._breakers[platform] = self._breaker_factory(platform)
            return breaker

    def _open_result(
        self, platform: str, breaker: CircuitBreaker, attempts: int = 0
    ) -> TransmissionResult:
        return failure(
            CIRCUIT_BREAKER_OPEN,
            f"Service {platform} is temporarily unavailable. "
            f"Retry in {breaker.retry_after():.0f}s.",
            status=REJECTED,
            circuit_breaker_tripped=True,
            retries_attempted=attempts,
        )

    def send(self, platform: str, payload: TransmissionPayload) -> TransmissionResult:
        platform = (platform or "email").lower()
        breaker = self._breaker(platform)
        if not breaker.can_execute():
            logger.warning(
                "Circuit breaker open for %s, rejecting transmission of %s",
                platform,
                payload.invoice_number,
            )
            return self._open_result(platform, breaker)

        strategy = self._registry.resolve(platform)
        payload = dataclasses.replace(payload, metadata={**payload.metadata, "platform": platform})
        attempts = 0

        def _attempt() -> TransmissionResult:
            nonlocal attempts
            attempts += 1
            result = strategy.send(payload)
            if not result.success and is_transient_code(result.error_code):
                raise TransientResultError(result)
            return result

        try:
            result = retry_call(_attempt, self._send_policy, sleep_func=self._sleep)
        except RetryExhaustedError as exc:
            breaker.record_failure()
            logger.error(
                "Transmission of %s to %s failed after %d attempts",
                payload.invoice_number,
                platform,
                exc.attempts,
            )
            return failure(
                RETRY_EXHAUSTED,
                f"Failed after {exc.attempts} attempts: {exc.last_error}",
                status=FAILED,
                retries_attempted=exc.attempts,
            )
        except Exception as exc:
            breaker.record_failure()
            logger.error(
                "Transmission of %s to %s failed", payload.invoice_number, platform, exc_info=True
            )
            return failure(
                UNKNOWN_ERROR,
                str(exc) or type(exc).__name__,
                status=FAILED,
                retries_attempted=attempts,
            )

        breaker.record_success()
        if not result.success and "VALIDATION" in (result.error_code or ""):
            return result.with_attempts(1)
        return result.with_attempts(attempts)

    def check_status(self, platform: str, external_id: str, company_id: str | None = None) -> str:
        """Poll a platform for a document status. Any failure reads as ``pending``."""
        platform = (platform or "email").lower()
        breaker = self._breaker(platform)
        if not breaker.can_execute():
            logger.warning("Circuit breaker open for %s, cannot check status", platform)
            return PENDING
        strategy = self._registry.resolve(platform)
        try:
            status = retry_call(
                lambda: strategy.check_status(external_id, company_id, platform),
                self._status_policy,
                sleep_func=self._sleep,
            )
        except Exception:
            breaker.record_failure()
            logger.error("Status check failed for %s on %s", external_id, platform, exc_info=True)
            return PENDING
        breaker.record_success()
        return status

    def cancel(
        self, platform: str, external_id: str, company_id: str | None = None
    ) -> TransmissionResult:
        """Attempt cancellation exactly once; never retried."""
        platform = (platform or "email").lower()
        breaker = self._breaker(platform)
        if not breaker.can_execute():
            logger.warning("Circuit breaker open for %s, cannot cancel %s", platform, external_id)
            return dataclasses.replace(self._open_result(platform, breaker), status=FAILED)
        strategy = self._registry.resolve(platform)
        try:
            cancelled = strategy.cancel(external_id, company_id)
        except Exception as exc:
            breaker.record_failure()
            logger.error("Cancellation failed for %s on %s", external_id, platform, exc_info=True)
            return failure(
                UNKNOWN_ERROR, str(exc) or type(exc).__name__, status=FAILED, retries_attempted=1
            )
        breaker.record_success()
        if not cancelled:
            return failure(
                "CANCEL_NOT_SUPPORTED",
                f"{platform} did not accept the cancellation",
                status=FAILED,
                external_id=external_id,
                retries_attempted=1,
            )
        return TransmissionResult(
            success=True,
            status=ACCEPTED,
            external_id=external_id,
            message="Cancellation accepted",
            retries_attempted=1,
        )

    def breaker_status(self) -> list[dict]:
        with self._lock:
            breakers = dict(self._breakers)
        out = []
        for platform, breaker in sorted(breakers.items()):
            state = breaker.state
            out.append({"platform": platform, "state": state, "is_healthy": state == CLOSED})
        return out

    def is_platform_healthy(self, platform: str) -> bool:
        with self._lock:
            breaker = self._breakers.get(platform.lower())
        return breaker is None or breaker.state == CLOSED

    def reset_breaker(self, platform: str) -> None:
        with self._lock:
            breaker = self._breakers.get(platform.lower())
            if breaker is not None:
                breaker.reset()
        if breaker is not None:
            logger.info("Circuit breaker reset for %s", platform)


def _default_breaker(platform: str) -> CircuitBreaker:
    return CircuitBreaker(platform, **_config.breaker_settings())
