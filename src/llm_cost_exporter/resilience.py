import asyncio
import random
import time
from enum import Enum
from typing import Awaitable, Callable, TypeVar

import structlog

from llm_cost_exporter.errors import (
    CircuitOpenError,
    NetworkError,
    RateLimitError,
    RetryAbortedError,
)

logger = structlog.get_logger()

T = TypeVar("T")


class CircuitState(Enum):
    # values are exported as the circuit state gauge
    CLOSED = 0
    HALF_OPEN = 1
    OPEN = 2


class CircuitBreaker:
    """
    CircuitBreaker isolates a failing provider. After failure_threshold
    consecutive failed calls it opens and rejects calls locally. Once
    the cooldown has elapsed a single trial call is let through
    (half-open); success_threshold successful trials close it again,
    any failed trial re-opens it.
    """

    def __init__(
        self,
        name: "str",
        failure_threshold: "int" = 5,
        cooldown_seconds: "float" = 60.0,
        success_threshold: "int" = 1,
        clock: "Callable[[], float]" = time.monotonic,
        on_state_change: "Callable[[str, CircuitState], None] | None" = None,
    ) -> "None":
        if failure_threshold < 1 or success_threshold < 1:
            raise ValueError("thresholds must be at least 1")
        self.name = name
        self._failure_threshold = failure_threshold
        self._cooldown = cooldown_seconds
        self._success_threshold = success_threshold
        self._clock = clock
        self._on_state_change = on_state_change

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._opened_at = 0.0
        self._trial_in_flight = False

    @property
    def state(self) -> "CircuitState":
        return self._state

    def is_rejecting(self) -> "bool":
        """
        True while before_call() would reject a call. Does not change
        the breaker state.
        """
        if self._state is CircuitState.OPEN:
            return self._clock() < self._opened_at + self._cooldown
        if self._state is CircuitState.HALF_OPEN:
            return self._trial_in_flight
        return False

    def before_call(self) -> "None":
        """
        raises CircuitOpenError if the call must not be attempted.
        Moves an open breaker to half-open once the cooldown elapsed.
        """
        if self._state is CircuitState.CLOSED:
            return

        if self._state is CircuitState.OPEN:
            remaining = self._opened_at + self._cooldown - self._clock()
            if remaining > 0:
                raise CircuitOpenError(
                    f"{self.name}: circuit open, retry in {remaining:.1f}s"
                )
            self._transition(CircuitState.HALF_OPEN)

        # half-open: only one trial at a time
        if self._trial_in_flight:
            raise CircuitOpenError(f"{self.name}: trial call already in flight")
        self._trial_in_flight = True

    def record_success(self) -> "None":
        if self._state is CircuitState.HALF_OPEN:
            self._trial_in_flight = False
            self._successes += 1
            if self._successes >= self._success_threshold:
                self._transition(CircuitState.CLOSED)
            return
        self._failures = 0

    def record_failure(self) -> "None":
        if self._state is CircuitState.HALF_OPEN:
            self._trial_in_flight = False
            self._trip()
            return

        self._failures += 1
        if self._failures >= self._failure_threshold:
            self._trip()

    def _trip(self) -> "None":
        self._opened_at = self._clock()
        self._transition(CircuitState.OPEN)

    def _transition(self, state: "CircuitState") -> "None":
        previous = self._state
        self._state = state
        self._failures = 0
        self._successes = 0
        logger.info(
            "circuit_state_changed",
            provider=self.name,
            previous=previous.name.lower(),
            state=state.name.lower(),
        )
        if self._on_state_change is not None:
            self._on_state_change(self.name, state)


class RetryPolicy:
    """
    RetryPolicy runs one provider call through its circuit breaker.

    While closed, network and rate limit failures are retried up to
    max_attempts with exponential backoff and full jitter, capped at
    max_delay. A rate limit hint replaces the computed delay, bounded
    by max_hint_delay. While half-open the call gets exactly one
    attempt. When attempt_timeout is set it bounds a whole attempt,
    which may span several requests; running over it counts as a
    NetworkError. A call that still fails counts as one breaker
    failure. Setting stop_event while waiting to retry abandons the
    call with RetryAbortedError and leaves the breaker untouched.
    """

    def __init__(
        self,
        breaker: "CircuitBreaker",
        max_attempts: "int" = 3,
        base_delay: "float" = 1.0,
        max_delay: "float" = 30.0,
        max_hint_delay: "float" = 300.0,
        attempt_timeout: "float | None" = None,
        sleep: "Callable[[float], Awaitable[None]]" = asyncio.sleep,
        rand: "Callable[[], float]" = random.random,
    ) -> "None":
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.breaker = breaker
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._max_hint_delay = max_hint_delay
        self._attempt_timeout = attempt_timeout
        self._sleep = sleep
        self._rand = rand

    def backoff(self, attempt: "int", error: "Exception | None" = None) -> "float":
        """
        delay before the attempt following the given (1-based) attempt.
        """
        if isinstance(error, RateLimitError) and error.retry_after is not None:
            return min(max(error.retry_after, 0.0), self._max_hint_delay)
        ceiling = min(self._max_delay, self._base_delay * 2 ** (attempt - 1))
        return self._rand() * ceiling

    async def call(
        self,
        fn: "Callable[[], Awaitable[T]]",
        stop_event: "asyncio.Event | None" = None,
    ) -> "T":
        self.breaker.before_call()
        half_open = self.breaker.state is CircuitState.HALF_OPEN
        attempts = 1 if half_open else self._max_attempts

        attempt = 0
        while True:
            attempt += 1
            try:
                result = await self._attempt(fn)
            except (NetworkError, RateLimitError) as exc:
                if attempt >= attempts:
                    self.breaker.record_failure()
                    raise
                delay = self.backoff(attempt, exc)
                logger.warning(
                    "provider_call_retry",
                    provider=self.breaker.name,
                    attempt=attempt,
                    max_attempts=attempts,
                    delay=round(delay, 3),
                    error=str(exc),
                )
                if await self._wait(delay, stop_event):
                    logger.info(
                        "provider_call_retry_aborted", provider=self.breaker.name
                    )
                    raise RetryAbortedError(
                        f"{self.breaker.name}: shutdown requested during backoff"
                    ) from exc
            except Exception:
                self.breaker.record_failure()
                raise
            else:
                self.breaker.record_success()
                return result

    async def _attempt(self, fn: "Callable[[], Awaitable[T]]") -> "T":
        if self._attempt_timeout is None:
            return await fn()
        try:
            return await asyncio.wait_for(fn(), timeout=self._attempt_timeout)
        except TimeoutError as exc:
            raise NetworkError(
                f"{self.breaker.name}: call timed out after {self._attempt_timeout}s"
            ) from exc

    async def _wait(
        self,
        delay: "float",
        stop_event: "asyncio.Event | None",
    ) -> "bool":
        """
        waits out a backoff delay. Returns True when stop_event was
        set before the delay elapsed.
        """
        if stop_event is None:
            await self._sleep(delay)
            return False
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=delay)
        except TimeoutError:
            return False
        return True
