"""Retry with exponential backoff and a per-provider circuit breaker."""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

import backoff

from kirapilot.config import Settings, get_settings
from kirapilot.errors import KiraError, RecoveryFailedError, ServiceUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")

JITTER_SPREAD = 0.2


@dataclass(slots=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    jitter: bool = True

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> RetryPolicy:
        settings = settings or get_settings()
        return cls(
            max_attempts=max(1, settings.retry_max_attempts),
            initial_delay=settings.retry_initial_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
            backoff_multiplier=settings.retry_backoff_multiplier,
            jitter=bool(settings.retry_jitter),
        )

    def delay_for(self, attempt: int) -> float:
        """Un-jittered delay before retry ``attempt`` (1-based)."""
        raw = self.initial_delay * self.backoff_multiplier ** max(0, attempt - 1)
        return min(self.max_delay, raw)

    def _jitter(self, value: float) -> float:
        spread = random.uniform(1.0 - JITTER_SPREAD, 1.0 + JITTER_SPREAD)
        return min(self.max_delay, value * spread)

    async def run(self, fn: Callable[[], Awaitable[T]], *, label: str = "operation") -> T:
        """Await ``fn`` until it succeeds, a non-retryable error occurs, or attempts run out.

        The last error is re-raised unchanged on exhaustion.
        """
        if self.max_attempts < 1:
            raise RecoveryFailedError(f"{label}: no attempts allowed")

        def _log_backoff(details: dict[str, Any]) -> None:
            exc = details.get("exception")
            logger.warning(
                "%s failed (attempt %s/%s), retrying in %.2fs: %s",
                label,
                details.get("tries"),
                self.max_attempts,
                details.get("wait", 0.0),
                exc,
            )

        def _log_giveup(details: dict[str, Any]) -> None:
            exc = details.get("exception")
            logger.error("%s gave up after %s attempt(s): %s", label, details.get("tries"), exc)

        @backoff.on_exception(
            backoff.expo,
            KiraError,
            max_tries=self.max_attempts,
            giveup=lambda exc: not exc.retryable,
            jitter=self._jitter if self.jitter else None,
            on_backoff=_log_backoff,
            on_giveup=_log_giveup,
            logger=None,
            base=self.backoff_multiplier,
            factor=self.initial_delay,
            max_value=self.max_delay,
        )
        async def _attempt() -> T:
            return await fn()

        return await _attempt()


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Fails fast after repeated failures; admits one probe once the timeout passes."""

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        *,
        name: str = "",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = max(1, failure_threshold)
        self.recovery_timeout = recovery_timeout
        self.name = name
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at: float | None = None
        self._last_failure_at: float | None = None
        self._probe_in_flight = False

    @classmethod
    def from_settings(cls, name: str, settings: Settings | None = None) -> CircuitBreaker:
        settings = settings or get_settings()
        return cls(
            settings.circuit_failure_threshold,
            settings.circuit_recovery_timeout_seconds,
            name=name,
        )

    @property
    def state(self) -> CircuitState:
        if (
            self._state is CircuitState.OPEN
            and self._opened_at is not None
            and self._clock() - self._opened_at >= self.recovery_timeout
        ):
            return CircuitState.HALF_OPEN
        return self._state

    @property
    def failures(self) -> int:
        return self._failures

    def allow_request(self) -> bool:
        state = self.state
        if state is CircuitState.CLOSED:
            return True
        if state is CircuitState.OPEN:
            return False
        if self._probe_in_flight:
            return False
        self._state = CircuitState.HALF_OPEN
        self._probe_in_flight = True
        logger.info("circuit %s half-open, admitting probe", self.name or "-")
        return True

    def record_success(self) -> None:
        if self._state is not CircuitState.CLOSED:
            logger.info("circuit %s closed", self.name or "-")
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = None
        self._probe_in_flight = False

    def record_failure(self) -> None:
        now = self._clock()
        self._failures += 1
        self._last_failure_at = now
        if self._state is CircuitState.HALF_OPEN or self._failures >= self.failure_threshold:
            if self._state is not CircuitState.OPEN:
                logger.warning(
                    "circuit %s opened after %d failure(s)", self.name or "-", self._failures
                )
            self._state = CircuitState.OPEN
            self._opened_at = now
        self._probe_in_flight = False

    def release(self) -> None:
        """Give back a half-open probe slot without recording an outcome."""
        self._probe_in_flight = False

    def ensure_allowed(self) -> None:
        if not self.allow_request():
            raise ServiceUnavailableError(
                f"circuit breaker open for {self.name or 'provider'}",
                details={"circuit": self.name, "state": self.state.value},
            )

    async def call(self, fn: Callable[[], Awaitable[T]]) -> T:
        self.ensure_allowed()
        try:
            result = await fn()
        except BaseException as exc:
            if isinstance(exc, Exception):
                self.record_failure()
            else:
                self.release()
            raise
        self.record_success()
        return result

    def snapshot(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "failures": self._failures,
            "failure_threshold": self.failure_threshold,
            "recovery_timeout": self.recovery_timeout,
        }
