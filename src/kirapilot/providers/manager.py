"""Provider registry with health tracking, selection, and automatic failover."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from typing import Any, TypeVar

from kirapilot.config import Settings, get_settings, split_csv
from kirapilot.errors import (
    KiraError,
    ProviderUnavailableError,
    RequestTimeoutError,
    classify_exception,
)
from kirapilot.providers.base import (
    GenerationOptions,
    LLMProvider,
    ModelInfo,
    ProviderState,
    ProviderStatus,
    is_local,
)
from kirapilot.retry import CircuitBreaker, CircuitState

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_REQUEST_TIMEOUT_MS = 30_000


@dataclass(slots=True)
class ProviderHealth:
    consecutive_failures: int = 0
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    avg_response_time_ms: int | None = None
    last_error: str | None = None
    last_success_at: datetime | None = None
    last_failure_at: datetime | None = None
    status: ProviderStatus = field(default_factory=ProviderStatus.initializing)

    @property
    def failure_count(self) -> int:
        return self.failed_requests

    @property
    def success_rate(self) -> float:
        if self.total_requests == 0:
            return 1.0
        return self.successful_requests / self.total_requests

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.to_dict(),
            "consecutive_failures": self.consecutive_failures,
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "success_rate": round(self.success_rate, 4),
            "avg_response_time_ms": self.avg_response_time_ms,
            "last_error": self.last_error,
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
            "last_failure_at": self.last_failure_at.isoformat() if self.last_failure_at else None,
        }


@dataclass(slots=True)
class SwitchingConfig:
    max_consecutive_failures: int = 3
    enable_auto_failover: bool = True
    health_check_interval: float = 30.0
    response_time_budget_ms: int | None = None
    health_check_timeout: float = 10.0
    retry_cooldown: float = 300.0

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> SwitchingConfig:
        settings = settings or get_settings()
        return cls(
            max_consecutive_failures=max(1, settings.max_consecutive_failures),
            enable_auto_failover=bool(settings.enable_auto_failover),
            health_check_interval=float(settings.health_check_interval_seconds),
            health_check_timeout=float(settings.health_check_timeout_seconds),
            retry_cooldown=float(settings.retry_cooldown_seconds),
        )


@dataclass(slots=True)
class ProviderPreferences:
    primary_provider: str = "local"
    fallback_providers: list[str] = field(default_factory=lambda: ["gemini"])
    allow_auto_switch: bool = True
    prefer_local: bool = True
    max_response_time_ms: int | None = 30_000

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> ProviderPreferences:
        settings = settings or get_settings()
        return cls(
            primary_provider=settings.primary_provider,
            fallback_providers=split_csv(settings.fallback_providers),
            allow_auto_switch=bool(settings.allow_auto_switch),
            prefer_local=bool(settings.prefer_local),
            max_response_time_ms=settings.max_response_time_ms or None,
        )


BreakerFactory = Callable[[str], CircuitBreaker]


class ProviderManager:
    """Owns every registered provider and decides which one serves each request.

    Health counters are updated without suspension points, so concurrent
    chains on the same event loop see them change atomically. Structural
    changes (registration, switching, preference updates) go through one lock.
    """

    def __init__(
        self,
        preferences: ProviderPreferences | None = None,
        config: SwitchingConfig | None = None,
        *,
        breaker_factory: BreakerFactory | None = None,
    ) -> None:
        self._preferences = preferences or ProviderPreferences()
        self._config = config or SwitchingConfig()
        self._breaker_factory = breaker_factory or (lambda name: CircuitBreaker(name=name))
        self._providers: dict[str, LLMProvider] = {}
        self._health: dict[str, ProviderHealth] = {}
        self._breakers: dict[str, CircuitBreaker] = {}
        self._initialized: set[str] = set()
        self._active: str | None = None
        # Set by switch_provider; selection honours it while the provider stays healthy.
        self._pinned: str | None = None
        self._lock = asyncio.Lock()
        self._monitor_task: asyncio.Task[None] | None = None

    @property
    def active_provider(self) -> str | None:
        return self._active

    @property
    def preferences(self) -> ProviderPreferences:
        return replace(
            self._preferences, fallback_providers=list(self._preferences.fallback_providers)
        )

    @property
    def switching_config(self) -> SwitchingConfig:
        return replace(self._config)

    def provider_names(self) -> list[str]:
        return list(self._providers)

    def get_provider(self, name: str) -> LLMProvider | None:
        return self._providers.get(name)

    def circuit_breaker(self, name: str) -> CircuitBreaker | None:
        return self._breakers.get(name)

    async def register_provider(self, name: str, provider: LLMProvider) -> None:
        async with self._lock:
            self._providers[name] = provider
            ready = provider.is_ready()
            status = ProviderStatus.ready() if ready else ProviderStatus.initializing()
            self._health[name] = ProviderHealth(status=status)
            self._breakers[name] = self._breaker_factory(name)
            if self._active is None or name == self._preferences.primary_provider:
                self._active = name
        logger.info("registered provider %s", name)

    # Selection

    def _candidate_order(self) -> list[str]:
        ordered: list[str] = []
        for name in [
            self._preferences.primary_provider,
            *self._preferences.fallback_providers,
            *self._providers,
        ]:
            if name in self._providers and name not in ordered:
                ordered.append(name)
        return ordered

    def _provider_ready(self, name: str) -> bool:
        # Providers are initialized lazily; until then readiness is unknown and assumed.
        return self._providers[name].is_ready() or name not in self._initialized

    def is_healthy(self, name: str) -> bool:
        if name not in self._providers:
            return False
        health = self._health[name]
        if not self._provider_ready(name):
            return False
        if health.consecutive_failures >= self._config.max_consecutive_failures:
            return False
        if self._breakers[name].state is CircuitState.OPEN:
            return False
        budget = self._preferences.max_response_time_ms
        if budget is not None and health.avg_response_time_ms is not None:
            return health.avg_response_time_ms <= budget
        return True

    def find_best_provider(self, exclude: set[str] | frozenset[str] = frozenset()) -> str | None:
        candidates = [name for name in self._candidate_order() if name not in exclude]
        healthy = [name for name in candidates if self.is_healthy(name)]
        if self._pinned is not None and self._pinned in healthy:
            return self._pinned
        if healthy:
            if self._preferences.prefer_local:
                for name in healthy:
                    if is_local(self._providers[name]):
                        return name
            return healthy[0]
        if self._preferences.primary_provider in self._providers:
            return self._preferences.primary_provider
        return self._active

    @property
    def _auto_switch(self) -> bool:
        return self._preferences.allow_auto_switch and self._config.enable_auto_failover

    def _set_active(self, name: str, reason: str) -> None:
        if name != self._active:
            logger.info("active provider %s -> %s (%s)", self._active, name, reason)
            self._active = name

    async def _ensure_initialized(self, name: str) -> None:
        if name in self._initialized:
            return
        provider = self._providers[name]
        try:
            await provider.initialize()
        except KiraError as exc:
            logger.warning("provider %s failed to initialize: %s", name, exc.describe())
            self._health[name].status = ProviderStatus.unavailable(exc.message)
        else:
            self._health[name].status = (
                ProviderStatus.ready() if provider.is_ready() else await provider.status()
            )
        self._initialized.add(name)

    async def _select_for_request(self, exclude: frozenset[str] = frozenset()) -> str:
        if not self._providers or self._active is None:
            raise ProviderUnavailableError("no LLM providers are registered")
        if not self._auto_switch:
            await self._ensure_initialized(self._active)
            return self._active
        allowed = [name for name in self._candidate_order() if name not in exclude]
        if not allowed:
            raise ProviderUnavailableError("no registered provider accepts this request")
        skipped: set[str] = set()
        while True:
            name = self.find_best_provider(exclude=exclude | skipped) or self._active
            if name in exclude:
                name = allowed[0]
            await self._ensure_initialized(name)
            if (
                self._providers[name].is_ready()
                or name in skipped
                or len(skipped) + 1 >= len(allowed)
            ):
                self._set_active(name, "selection")
                return name
            skipped.add(name)

    # Request execution

    def _request_timeout(self) -> float:
        budget = (
            self._preferences.max_response_time_ms
            or self._config.response_time_budget_ms
            or DEFAULT_REQUEST_TIMEOUT_MS
        )
        return budget / 1000

    async def with_active(
        self,
        request_fn: Callable[[LLMProvider], Awaitable[T]],
        *,
        rejected: Mapping[str, KiraError] | None = None,
    ) -> T:
        """Run ``request_fn`` against the selected provider and record the outcome.

        Providers in ``rejected`` are passed over while auto-switch is on; when
        the pinned active provider is one of them its error is raised without
        touching its health. Cancellation propagates unchanged and is not
        counted as a failure.
        """
        rejected = rejected or {}
        name = await self._select_for_request(frozenset(rejected))
        if name in rejected:
            raise rejected[name]
        provider = self._providers[name]
        breaker = self._breakers[name]
        breaker.ensure_allowed()
        timeout = self._request_timeout()
        started = time.monotonic()
        try:
            result = await asyncio.wait_for(request_fn(provider), timeout=timeout)
        except asyncio.CancelledError:
            breaker.release()
            raise
        except TimeoutError as exc:
            error: KiraError = RequestTimeoutError(
                f"{name} did not respond within {timeout:.1f}s"
            )
            breaker.record_failure()
            self.record_failure(name, error.describe())
            raise error from exc
        except Exception as exc:
            error = classify_exception(exc)
            breaker.record_failure()
            self.record_failure(name, error.describe())
            if error is exc:
                raise
            raise error from exc
        breaker.record_success()
        self.record_success(name, int((time.monotonic() - started) * 1000))
        return result

    def record_success(self, name: str, response_time_ms: int) -> None:
        health = self._health.get(name)
        if health is None:
            return
        health.consecutive_failures = 0
        health.total_requests += 1
        health.successful_requests += 1
        health.last_success_at = datetime.now(UTC)
        if health.avg_response_time_ms is None:
            health.avg_response_time_ms = response_time_ms
        else:
            health.avg_response_time_ms = (health.avg_response_time_ms + response_time_ms) // 2
        health.status = ProviderStatus.ready()

    def record_failure(self, name: str, error: str) -> None:
        health = self._health.get(name)
        if health is None:
            return
        health.consecutive_failures += 1
        health.total_requests += 1
        health.failed_requests += 1
        health.last_error = error
        health.last_failure_at = datetime.now(UTC)
        threshold = self._config.max_consecutive_failures
        if health.consecutive_failures >= threshold:
            health.status = ProviderStatus.unavailable(
                f"{health.consecutive_failures} consecutive failures"
            )
        else:
            health.status = ProviderStatus.error(error)
        logger.warning(
            "provider %s failed (%d/%d): %s",
            name,
            health.consecutive_failures,
            threshold,
            error,
        )
        if health.consecutive_failures >= threshold and self._config.enable_auto_failover:
            self.attempt_failover()

    def attempt_failover(self) -> str | None:
        """Move the active pointer to the best healthy provider; returns the new name."""
        if not self._auto_switch:
            return None
        best = self.find_best_provider()
        if best is None or best == self._active:
            return None
        self._set_active(best, "failover")
        return best

    async def switch_provider(self, name: str) -> None:
        """Explicitly activate ``name``; it also becomes the preferred primary."""
        async with self._lock:
            provider = self._providers.get(name)
            if provider is None:
                raise ProviderUnavailableError(
                    f"Provider '{name}' is not registered",
                    provider=name,
                    user_message=_unavailable_message(name, "not registered"),
                )
            await self._ensure_initialized(name)
            if not provider.is_ready():
                status = await provider.status()
                reason = status.detail or status.state.value
                raise ProviderUnavailableError(
                    f"{name}: {reason}",
                    provider=name,
                    user_message=_unavailable_message(name, reason),
                )
            previous = self._preferences.primary_provider
            fallbacks = [p for p in self._preferences.fallback_providers if p != name]
            if previous != name and previous not in fallbacks:
                fallbacks.insert(0, previous)
            self._preferences = replace(
                self._preferences, primary_provider=name, fallback_providers=fallbacks
            )
            self._pinned = name
            self._set_active(name, "user switch")

    async def update_preferences(self, preferences: ProviderPreferences) -> None:
        """Replace the preferences, drop any explicit switch and re-evaluate the active one."""
        async with self._lock:
            self._preferences = replace(
                preferences, fallback_providers=list(preferences.fallback_providers)
            )
            self._pinned = None
            if not self._providers:
                return
            registered = preferences.primary_provider in self._providers
            if not preferences.allow_auto_switch and registered:
                self._set_active(preferences.primary_provider, "preferences")
            elif self._auto_switch or self._active not in self._providers:
                best = self.find_best_provider()
                if best is not None:
                    self._set_active(best, "preferences")

    async def update_switching_config(self, config: SwitchingConfig) -> None:
        async with self._lock:
            self._config = replace(config)

    def get_provider_health(self, name: str) -> ProviderHealth | None:
        health = self._health.get(name)
        return replace(health) if health is not None else None

    def get_all_health_status(self) -> dict[str, ProviderHealth]:
        return {name: replace(health) for name, health in self._health.items()}

    def health_report(self) -> dict[str, dict[str, Any]]:
        report: dict[str, dict[str, Any]] = {}
        for name, health in self._health.items():
            item = health.to_dict()
            item["active"] = name == self._active
            item["ready"] = self._providers[name].is_ready()
            item["circuit"] = self._breakers[name].snapshot()
            report[name] = item
        return report

    # Monitoring

    async def _probe(self, name: str) -> ProviderStatus:
        provider = self._providers[name]
        try:
            return await asyncio.wait_for(
                provider.status(), timeout=self._config.health_check_timeout
            )
        except TimeoutError:
            return ProviderStatus.error("health check timed out")
        except KiraError as exc:
            return ProviderStatus.error(exc.describe())

    async def check_health(self) -> dict[str, ProviderStatus]:
        """One monitoring pass over every provider.

        Providers that report Ready again after the retry cooldown get their
        consecutive failure count cleared so selection can use them again.
        """
        results: dict[str, ProviderStatus] = {}
        cooldown = timedelta(seconds=self._config.retry_cooldown)
        for name in list(self._providers):
            status = await self._probe(name)
            results[name] = status
            health = self._health[name]
            health.status = status
            if (
                status.state is ProviderState.READY
                and health.consecutive_failures > 0
                and (
                    health.last_failure_at is None
                    or datetime.now(UTC) - health.last_failure_at >= cooldown
                )
            ):
                logger.info("provider %s recovered, clearing failure streak", name)
                health.consecutive_failures = 0
        return results

    async def _monitor_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.health_check_interval)
            try:
                await self.check_health()
            except Exception as exc:
                logger.warning("provider health check failed: %s", exc)

    def start_health_monitoring(self) -> None:
        if self._monitor_task is not None and not self._monitor_task.done():
            return
        self._monitor_task = asyncio.get_running_loop().create_task(self._monitor_loop())

    async def stop_health_monitoring(self) -> None:
        task, self._monitor_task = self._monitor_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def provider_statuses(self) -> dict[str, ProviderStatus]:
        return {name: await self._probe(name) for name in list(self._providers)}

    async def shutdown(self) -> None:
        await self.stop_health_monitoring()
        for name, provider in list(self._providers.items()):
            try:
                await provider.cleanup()
            except KiraError as exc:
                logger.warning("provider %s cleanup failed: %s", name, exc.describe())
            self._initialized.discard(name)

    # The manager is itself usable wherever a provider is expected.

    def _rejections(self, prompt: str) -> dict[str, KiraError]:
        rejected: dict[str, KiraError] = {}
        for name, provider in self._providers.items():
            try:
                provider.validate_prompt(prompt)
            except KiraError as exc:
                rejected[name] = exc
        return rejected

    async def generate(self, prompt: str, options: GenerationOptions) -> str:
        rejected = self._rejections(prompt)
        if rejected and len(rejected) == len(self._providers):
            raise rejected.get(self._active or "") or next(iter(rejected.values()))
        return await self.with_active(
            lambda provider: provider.generate(prompt, options), rejected=rejected
        )

    def _active_or_raise(self) -> LLMProvider:
        if self._active is None:
            raise ProviderUnavailableError("no LLM providers are registered")
        return self._providers[self._active]

    def is_ready(self) -> bool:
        return any(self.is_healthy(name) for name in self._providers)

    async def status(self) -> ProviderStatus:
        if self._active is None:
            return ProviderStatus.unavailable("no providers registered")
        return await self._probe(self._active)

    def model_info(self) -> ModelInfo:
        return self._active_or_raise().model_info()

    async def initialize(self) -> None:
        if self._active is not None:
            await self._ensure_initialized(self._active)

    async def cleanup(self) -> None:
        await self.shutdown()

    def capabilities(self) -> set[str]:
        if self._active is None:
            return set()
        return self._providers[self._active].capabilities()

    def validate_prompt(self, prompt: str) -> None:
        """Passes when any registered provider accepts ``prompt``.

        generate() then routes the prompt only to providers that accept it.
        """
        self._active_or_raise()
        rejected = self._rejections(prompt)
        if len(rejected) == len(self._providers):
            raise rejected.get(self._active or "") or next(iter(rejected.values()))


def _unavailable_message(name: str, reason: str) -> str:
    if name == "local":
        return (
            f"Local model is unavailable: {reason}. This typically means the system doesn't "
            "have the required dependencies for local AI processing. Consider using Gemini "
            "instead by providing an API key in Settings."
        )
    if name == "gemini":
        return (
            f"Gemini model is unavailable: {reason}. Please check your API key in Settings "
            "and ensure you have an internet connection."
        )
    return f"{name}: {reason}"
