"""
Tenant Orchestrator - Bounded Waits
Polling and transient-retry helpers shared by every component that suspends.
"""

import time
from typing import Callable, Optional, Protocol, Tuple, Type, TypeVar

import structlog

log = structlog.get_logger(__name__)

T = TypeVar("T")


class Clock(Protocol):
    """Time source; tests substitute one whose sleep advances time."""

    def monotonic(self) -> float:
        ...

    def sleep(self, seconds: float) -> None:
        ...


class SystemClock:
    """Wall clock backed by the time module."""

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)


def poll_until(
    probe: Callable[[], Optional[T]],
    interval: float,
    timeout: float,
    clock: Optional[Clock] = None,
) -> Optional[T]:
    """
    Call probe every interval seconds until it returns a truthy value.

    Returns that value, or None once timeout has elapsed. The probe runs one
    final time at the deadline, so a call never outlives timeout + interval.
    """
    if interval <= 0:
        raise ValueError("interval must be positive")

    clock = clock or SystemClock()
    deadline = clock.monotonic() + timeout

    while True:
        result = probe()
        if result:
            return result

        remaining = deadline - clock.monotonic()
        if remaining <= 0:
            return None
        clock.sleep(min(interval, remaining))


def retry_transient(
    fn: Callable[[], T],
    attempts: int,
    delay: float,
    retry_on: Tuple[Type[BaseException], ...],
    clock: Optional[Clock] = None,
    operation: str = "call",
) -> T:
    """
    Run fn, retrying up to attempts times when it raises one of retry_on.

    The delay doubles after each failed attempt. The last error is re-raised
    once attempts are exhausted.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")

    clock = clock or SystemClock()
    wait = delay

    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except retry_on as e:
            if attempt == attempts:
                raise
            log.warning(
                "transient_error",
                operation=operation,
                attempt=attempt,
                attempts=attempts,
                error=str(e),
            )
            clock.sleep(wait)
            wait *= 2

    # unreachable: the loop either returns or raises
    raise RuntimeError("retry_transient exhausted without result")
