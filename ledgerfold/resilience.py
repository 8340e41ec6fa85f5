"""
Ledgerfold Resilience Primitives

Bounded retry with exponential backoff and jitter, and hard per-call
deadlines. Anchor submission wraps a Timeout inside a RetryPolicy; the
distribution scheduler uses ``backoff_delay`` directly and keeps its own
per-job attempt count.

    from ledgerfold.resilience import RetryPolicy, Timeout

    retry = RetryPolicy(max_attempts=3, base_delay_seconds=0.5)
    timeout = Timeout(seconds=10.0, name="anchor.submit")
    receipt = retry.execute(lambda: timeout.execute(lambda: gateway.submit(proof)))

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import builtins
import functools
import random
import threading
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple, Type, TypeVar

T = TypeVar("T")

RetryHook = Callable[[int, Exception, float], None]


# ════════════════════════════════════════════════════════════════════════════
# BACKOFF
# ════════════════════════════════════════════════════════════════════════════


class BackoffStrategy(Enum):
    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"
    EXPONENTIAL_JITTER = "exponential_jitter"


_GROWTH: Dict[BackoffStrategy, Callable[[float, int], float]] = {
    BackoffStrategy.FIXED: lambda base, n: base,
    BackoffStrategy.LINEAR: lambda base, n: base * n,
    BackoffStrategy.EXPONENTIAL: lambda base, n: base * 2 ** (n - 1),
    BackoffStrategy.EXPONENTIAL_JITTER: lambda base, n: base * 2 ** (n - 1),
}


def backoff_delay(
    attempt: int,
    base_delay_seconds: float,
    max_delay_seconds: float,
    strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL_JITTER,
    jitter_factor: float = 0.5,
    rng: Optional[random.Random] = None,
) -> float:
    """
    Seconds to wait after failed attempt number ``attempt`` (1-based).

    With EXPONENTIAL_JITTER the exponential delay d is stretched by a random
    amount in [0, jitter_factor * d]. The result never exceeds
    ``max_delay_seconds``. Passing a seeded ``rng`` makes the jitter
    reproducible.
    """
    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    delay = _GROWTH[strategy](base_delay_seconds, attempt)
    if strategy is BackoffStrategy.EXPONENTIAL_JITTER and jitter_factor > 0:
        delay += (rng or random).uniform(0, jitter_factor * delay)
    return min(delay, max_delay_seconds)


# ════════════════════════════════════════════════════════════════════════════
# RETRY POLICY
# ════════════════════════════════════════════════════════════════════════════


class RetryExhaustedError(Exception):
    """Every attempt failed with a retryable error."""

    def __init__(self, attempts: int, last_exception: Optional[BaseException]):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Retry exhausted after {attempts} attempts: {last_exception}")


@dataclass
class RetryMetrics:
    total_attempts: int = 0
    successful_attempts: int = 0
    failed_attempts: int = 0
    retries_exhausted: int = 0
    total_retry_delay_seconds: float = 0.0


class RetryPolicy:
    """
    Run a callable until it succeeds or ``max_attempts`` calls have failed.

    An exception matching ``non_retryable_exceptions`` propagates from the
    attempt that raised it. Any other exception matching
    ``retryable_exceptions`` is retried after ``backoff_delay``; when the
    attempts run out the last one is wrapped in RetryExhaustedError.

    ``sleep`` and ``rng`` are injectable so tests and schedulers can drive
    the policy without wall-clock delays.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay_seconds: float = 1.0,
        max_delay_seconds: float = 60.0,
        backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL_JITTER,
        jitter_factor: float = 0.5,
        retryable_exceptions: Tuple[Type[BaseException], ...] = (Exception,),
        non_retryable_exceptions: Tuple[Type[BaseException], ...] = (),
        on_retry: Optional[RetryHook] = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self.backoff_strategy = backoff_strategy
        self.jitter_factor = jitter_factor
        self.retryable_exceptions = retryable_exceptions
        self.non_retryable_exceptions = non_retryable_exceptions
        self._on_retry = on_retry
        self._sleep = sleep
        self._rng = rng
        self._metrics = RetryMetrics()
        self._lock = threading.Lock()

    @property
    def metrics(self) -> RetryMetrics:
        """Snapshot of the counters."""
        with self._lock:
            return replace(self._metrics)

    def _count(self, **deltas: Any) -> None:
        with self._lock:
            for name, delta in deltas.items():
                setattr(self._metrics, name, getattr(self._metrics, name) + delta)

    def _should_retry(self, exc: Exception) -> bool:
        if isinstance(exc, self.non_retryable_exceptions):
            return False
        return isinstance(exc, self.retryable_exceptions)

    def delay_for(self, attempt: int) -> float:
        return backoff_delay(
            attempt,
            self.base_delay_seconds,
            self.max_delay_seconds,
            self.backoff_strategy,
            self.jitter_factor,
            self._rng,
        )

    def execute(self, func: Callable[[], T], on_retry: Optional[RetryHook] = None) -> T:
        """Call ``func`` under this policy.

        ``on_retry(attempt, error, delay)`` runs before each backoff sleep; a
        hook passed here replaces the policy-level one for this call.
        """
        hook = on_retry or self._on_retry
        failure: Optional[Exception] = None
        attempt = 0

        while attempt < self.max_attempts:
            attempt += 1
            self._count(total_attempts=1)
            try:
                result = func()
            except Exception as e:
                self._count(failed_attempts=1)
                if not self._should_retry(e):
                    raise
                failure = e
            else:
                self._count(successful_attempts=1)
                return result

            if attempt == self.max_attempts:
                break
            delay = self.delay_for(attempt)
            self._count(total_retry_delay_seconds=delay)
            if hook is not None:
                hook(attempt, failure, delay)
            self._sleep(delay)

        self._count(retries_exhausted=1)
        raise RetryExhaustedError(attempt, failure)

    def __call__(self, func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            return self.execute(lambda: func(*args, **kwargs))
        return wrapper


# ════════════════════════════════════════════════════════════════════════════
# TIMEOUT
# ════════════════════════════════════════════════════════════════════════════


class DeadlineExceeded(builtins.TimeoutError):
    """
    A call ran past its deadline. Treated as a transient failure.

    ``outcome`` is the abandoned call's result slot; callers that must not
    overlap attempts can wait on ``outcome.done`` before starting another.
    """

    def __init__(
        self,
        operation: str,
        timeout_seconds: float,
        outcome: Optional["CallOutcome"] = None,
    ):
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        self.outcome = outcome
        super().__init__(f"Operation '{operation}' timed out after {timeout_seconds}s")


@dataclass
class TimeoutMetrics:
    total_calls: int = 0
    successful_calls: int = 0
    timed_out_calls: int = 0


class CallOutcome:
    """Result slot filled by the worker thread running a deadline-bound call."""

    __slots__ = ("done", "value", "error")

    def __init__(self):
        self.done = threading.Event()
        self.value: Any = None
        self.error: Optional[BaseException] = None


class Timeout:
    """
    Hard deadline for a blocking call.

    The call runs on a daemon thread and the caller waits at most
    ``seconds`` for it. On expiry the caller gets DeadlineExceeded and the
    thread is abandoned, not interrupted. The exception carries the
    call's CallOutcome so the caller can tell when it has really finished.
    """

    def __init__(
        self,
        seconds: float,
        name: str = "operation",
        on_timeout: Optional[Callable[[], None]] = None,
    ):
        self.seconds = seconds
        self.name = name
        self._on_timeout = on_timeout
        self._metrics = TimeoutMetrics()
        self._lock = threading.Lock()

    @property
    def metrics(self) -> TimeoutMetrics:
        with self._lock:
            return replace(self._metrics)

    def execute(self, func: Callable[[], T]) -> T:
        outcome = CallOutcome()

        def run() -> None:
            try:
                outcome.value = func()
            except BaseException as e:
                outcome.error = e
            finally:
                outcome.done.set()

        with self._lock:
            self._metrics.total_calls += 1
        threading.Thread(target=run, name=f"deadline-{self.name}", daemon=True).start()

        if not outcome.done.wait(self.seconds):
            with self._lock:
                self._metrics.timed_out_calls += 1
            if self._on_timeout is not None:
                self._on_timeout()
            raise DeadlineExceeded(self.name, self.seconds, outcome)

        if outcome.error is not None:
            raise outcome.error
        with self._lock:
            self._metrics.successful_calls += 1
        return outcome.value

    def __call__(self, func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            return self.execute(lambda: func(*args, **kwargs))
        return wrapper
