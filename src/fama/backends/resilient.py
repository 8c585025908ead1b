from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from fama.backends.base import (
    CircuitOpenError,
    ExecutionProvider,
    ProviderError,
    ProviderEvent,
    ProviderRequest,
    ProviderTimeoutError,
)

logger = logging.getLogger(__name__)

ProviderEventHook = Callable[[dict[str, Any]], None]

_TRANSIENT_MARKERS = (
    "429",
    "rate limit",
    "500",
    "502",
    "503",
    "504",
    "internal server error",
    "econnreset",
    "econnrefused",
    "connection reset",
    "connection refused",
    "timeout",
    "timed out",
)


def is_transient_error(exc: BaseException | str) -> bool:
    if isinstance(exc, (ProviderTimeoutError, TimeoutError)):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay_seconds: float = 1.0
    timeout_seconds: float | None = 300.0
    jitter: float = 0.3

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (1-based), with random jitter."""
        delay = self.base_delay_seconds * (2 ** (attempt - 1))
        return delay + random.uniform(0, self.jitter * delay)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(slots=True)
class CircuitStatus:
    name: str
    state: CircuitState
    failures: int
    successes: int
    last_failure_time: float | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failures": self.failures,
            "successes": self.successes,
            "last_failure_time": self.last_failure_time,
        }


class CircuitBreaker:
    """Stops calling a provider after repeated failures until a cool-down elapses."""

    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        reset_timeout_seconds: float = 30.0,
        half_open_success_threshold: int = 2,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout_seconds = reset_timeout_seconds
        self.half_open_success_threshold = half_open_success_threshold
        self._clock = clock
        self.state = CircuitState.CLOSED
        self.failures = 0
        self.successes = 0
        self.last_failure_time: float | None = None

    def _transition(self, state: CircuitState) -> None:
        if state != self.state:
            logger.info("Circuit %s: %s -> %s", self.name, self.state.value, state.value)
            self.state = state

    def can_execute(self) -> bool:
        if self.state == CircuitState.CLOSED:
            return True
        if self.state == CircuitState.OPEN:
            if self.last_failure_time is not None and (
                self._clock() - self.last_failure_time >= self.reset_timeout_seconds
            ):
                self._transition(CircuitState.HALF_OPEN)
                self.successes = 0
                return True
            return False
        return True

    def retry_in_seconds(self) -> float:
        if self.state != CircuitState.OPEN or self.last_failure_time is None:
            return 0.0
        elapsed = self._clock() - self.last_failure_time
        return max(0.0, self.reset_timeout_seconds - elapsed)

    def record_success(self) -> None:
        self.failures = 0
        if self.state == CircuitState.HALF_OPEN:
            self.successes += 1
            if self.successes >= self.half_open_success_threshold:
                self._transition(CircuitState.CLOSED)
                self.successes = 0

    def record_failure(self) -> None:
        self.failures += 1
        self.last_failure_time = self._clock()
        if self.state == CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN)
            return
        if self.failures >= self.failure_threshold:
            self._transition(CircuitState.OPEN)

    def trip(self) -> None:
        self.last_failure_time = self._clock()
        self._transition(CircuitState.OPEN)

    def reset(self) -> None:
        self.state = CircuitState.CLOSED
        self.failures = 0
        self.successes = 0
        self.last_failure_time = None

    def get_status(self) -> CircuitStatus:
        return CircuitStatus(
            name=self.name,
            state=self.state,
            failures=self.failures,
            successes=self.successes,
            last_failure_time=self.last_failure_time,
        )


@dataclass(slots=True)
class CircuitBreakerRegistry:
    failure_threshold: int = 5
    reset_timeout_seconds: float = 30.0
    half_open_success_threshold: int = 2
    clock: Callable[[], float] = time.monotonic
    _breakers: dict[str, CircuitBreaker] = field(default_factory=dict)

    def get(self, name: str) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(
                name,
                failure_threshold=self.failure_threshold,
                reset_timeout_seconds=self.reset_timeout_seconds,
                half_open_success_threshold=self.half_open_success_threshold,
                clock=self.clock,
            )
            self._breakers[name] = breaker
        return breaker

    def all(self) -> dict[str, CircuitStatus]:
        return {name: breaker.get_status() for name, breaker in self._breakers.items()}

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()

    def clear(self) -> None:
        self._breakers.clear()


class ResilientProvider(ExecutionProvider):
    """Wraps a provider with per-attempt deadlines, transient retry and a circuit breaker."""

    def __init__(
        self,
        provider: ExecutionProvider,
        retry_policy: RetryPolicy | None = None,
        breakers: CircuitBreakerRegistry | None = None,
        event_hook: ProviderEventHook | None = None,
    ) -> None:
        self.provider = provider
        self.name = provider.name
        self.retry_policy = retry_policy or RetryPolicy()
        self.breakers = breakers if breakers is not None else CircuitBreakerRegistry()
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def _collect_events(self, request: ProviderRequest) -> list[ProviderEvent]:
        async def _consume() -> list[ProviderEvent]:
            events: list[ProviderEvent] = []
            async for event in self.provider.query(request):
                events.append(event)
                if event.type == "error":
                    message = "; ".join(event.errors) or event.text or "Provider reported an error."
                    raise ProviderError(message, provider=self.name)
            return events

        timeout = self.retry_policy.timeout_seconds
        if timeout is None:
            return await _consume()
        try:
            return await asyncio.wait_for(_consume(), timeout=timeout)
        except TimeoutError as exc:
            raise ProviderTimeoutError(
                f"Provider request timed out after {timeout:.1f}s",
                provider=self.name,
                retriable=True,
            ) from exc

    async def _execute_attempts(self, request: ProviderRequest) -> list[ProviderEvent]:
        breaker = self.breakers.get(self.name)
        last_error: BaseException | None = None
        for attempt in range(self.retry_policy.max_retries + 1):
            if attempt > 0:
                delay = self.retry_policy.delay_for(attempt)
                logger.warning(
                    "Retrying provider %s (attempt %d/%d) in %.2fs",
                    self.name,
                    attempt,
                    self.retry_policy.max_retries,
                    delay,
                )
                self._emit(
                    {
                        "event": "provider_retry",
                        "provider": self.name,
                        "attempt": attempt,
                        "delay_seconds": delay,
                    }
                )
                await asyncio.sleep(delay)

            if not breaker.can_execute():
                self._emit({"event": "circuit_open", "provider": self.name})
                raise CircuitOpenError(self.name, breaker.retry_in_seconds()) from last_error

            try:
                events = await self._collect_events(request)
            except ProviderError as exc:
                breaker.record_failure()
                transient = exc.retriable and is_transient_error(exc)
                self._emit(
                    {
                        "event": "provider_attempt_failed",
                        "provider": self.name,
                        "attempt": attempt,
                        "error": str(exc),
                        "retriable": transient,
                    }
                )
                if not transient:
                    raise
                last_error = exc
                continue
            except Exception as exc:
                breaker.record_failure()
                transient = is_transient_error(exc)
                self._emit(
                    {
                        "event": "provider_attempt_failed",
                        "provider": self.name,
                        "attempt": attempt,
                        "error": str(exc),
                        "retriable": transient,
                    }
                )
                if not transient:
                    raise ProviderError(str(exc), provider=self.name, retriable=False) from exc
                last_error = exc
                continue

            breaker.record_success()
            return events

        raise ProviderError(
            f"Provider {self.name} failed after {self.retry_policy.max_retries + 1} attempts: "
            f"{last_error}",
            provider=self.name,
            retriable=False,
        ) from last_error

    async def query(self, request: ProviderRequest) -> AsyncIterator[ProviderEvent]:
        events = await self._execute_attempts(request)
        for event in events:
            yield event
