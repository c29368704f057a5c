"""
Failure classification, jittered backoff and the bounded retry state machine
shared by the endpoint pool, the transaction fetcher and the confirmation poller.
"""

import asyncio
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Iterator, Optional, Tuple, TypeVar

import httpx
import structlog

from memofeed.core.exceptions import (
    AuthDeniedError,
    EndpointDeniedError,
    GatewayError,
    GatewayTimeoutError,
    NoEndpointAvailableError,
    RateLimitedError,
    TransientGatewayError,
)


logger = structlog.get_logger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]

# Seconds, indexed by attempt number
BACKOFF_STEPS: Tuple[float, ...] = (0.5, 1.0, 2.0, 4.0, 6.0)

RATE_LIMIT_MARKERS = ("429", "too many requests", "-32429", "rate limit")
AUTH_MARKERS = ("401", "403", "unauthorized", "forbidden", "origin not allowed", "invalid api key")


class FailureClass(Enum):
    """Why a gateway call failed."""
    AUTH_DENIED = "auth_denied"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    TRANSIENT = "transient"


def _exception_chain(exc: BaseException) -> Iterator[BaseException]:
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def classify_failure(exc: BaseException) -> FailureClass:
    """Map an exception raised by a gateway call to a failure class."""
    for err in _exception_chain(exc):
        if isinstance(err, (AuthDeniedError, EndpointDeniedError)):
            return FailureClass.AUTH_DENIED
        if isinstance(err, RateLimitedError):
            return FailureClass.RATE_LIMITED
        if isinstance(err, (GatewayTimeoutError, asyncio.TimeoutError, httpx.TimeoutException)):
            return FailureClass.TIMEOUT
        if isinstance(err, httpx.HTTPStatusError):
            code = err.response.status_code
            if code == 429:
                return FailureClass.RATE_LIMITED
            if code in (401, 403):
                return FailureClass.AUTH_DENIED

    text = " ".join(str(err) for err in _exception_chain(exc)).lower()
    if any(marker in text for marker in RATE_LIMIT_MARKERS):
        return FailureClass.RATE_LIMITED
    if any(marker in text for marker in AUTH_MARKERS):
        return FailureClass.AUTH_DENIED
    if "timeout" in text or "timed out" in text:
        return FailureClass.TIMEOUT
    return FailureClass.TRANSIENT


def gateway_error_for(failure: FailureClass, url: str, exc: BaseException) -> GatewayError:
    """Build the internal exception matching a failure class."""
    reason = str(exc) or type(exc).__name__
    if failure is FailureClass.AUTH_DENIED:
        return EndpointDeniedError(url, reason)
    if failure is FailureClass.RATE_LIMITED:
        return RateLimitedError(url, reason)
    if failure is FailureClass.TIMEOUT:
        return GatewayTimeoutError(url, reason)
    return TransientGatewayError(url, reason)


def jitter(seconds: float, spread: float = 0.15, rng: Optional[random.Random] = None) -> float:
    """Add up to `spread` seconds of random delay."""
    return seconds + (rng or random).uniform(0.0, spread)


def backoff_delay(attempt: int, rng: Optional[random.Random] = None) -> float:
    """Jittered delay for the given zero-based attempt."""
    return jitter(BACKOFF_STEPS[min(attempt, len(BACKOFF_STEPS) - 1)], rng=rng)


class RetryAction(Enum):
    CALL = "call"
    SLEEP = "sleep"
    DONE = "done"
    GIVE_UP = "give_up"


@dataclass
class RetryState:
    """
    Bounded retry loop as data.

    Callers drive it with `record_success()` / `record_failure()` and act on
    `next_action`; tests can step it without timers.
    """
    max_attempts: int = 3
    attempt: int = 0
    last_failure: Optional[FailureClass] = None
    next_action: RetryAction = RetryAction.CALL
    delay: float = 0.0

    def record_success(self) -> None:
        self.attempt += 1
        self.next_action = RetryAction.DONE
        self.delay = 0.0

    def record_failure(self, failure: FailureClass, rng: Optional[random.Random] = None) -> None:
        self.attempt += 1
        self.last_failure = failure
        if self.attempt >= self.max_attempts:
            self.next_action = RetryAction.GIVE_UP
            self.delay = 0.0
        else:
            self.next_action = RetryAction.SLEEP
            self.delay = backoff_delay(self.attempt - 1, rng)

    def resume(self) -> None:
        """Called after sleeping."""
        if self.next_action is RetryAction.SLEEP:
            self.next_action = RetryAction.CALL

    @property
    def finished(self) -> bool:
        return self.next_action in (RetryAction.DONE, RetryAction.GIVE_UP)


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    sleep: Sleep = asyncio.sleep,
    label: str = "gateway call",
    rng: Optional[random.Random] = None,
) -> T:
    """
    Run `operation` until it succeeds or the attempts are spent.

    Gateway faults and momentary pool exhaustion are retried; the last one is
    re-raised when the state machine gives up. Anything else propagates at once.
    """
    state = RetryState(max_attempts=max_attempts)
    last_error: Optional[Exception] = None

    while not state.finished:
        if state.next_action is RetryAction.SLEEP:
            await sleep(state.delay)
            state.resume()
            continue
        try:
            result = await operation()
        except (GatewayError, NoEndpointAvailableError) as e:
            last_error = e
            state.record_failure(classify_failure(e), rng)
            logger.debug(
                "Retryable failure",
                label=label,
                attempt=state.attempt,
                failure=state.last_failure.value,
                next_action=state.next_action.value,
            )
            continue
        state.record_success()
        return result

    assert last_error is not None
    raise last_error


class CallSpacer:
    """Soft client-side rate limit: keeps a minimum gap between calls."""

    def __init__(
        self,
        min_spacing: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ):
        self.min_spacing = min_spacing
        self._clock = clock
        self._sleep = sleep
        self._last_call: Optional[float] = None
        self._lock = asyncio.Lock()

    async def pause(self) -> None:
        async with self._lock:
            if self._last_call is not None:
                delta = self._clock() - self._last_call
                if delta < self.min_spacing:
                    await self._sleep(self.min_spacing - delta)
            self._last_call = self._clock()
