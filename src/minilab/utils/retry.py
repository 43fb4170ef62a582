# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

import functools
import threading
from dataclasses import dataclass
from typing import Callable, Iterator, Optional

from ..errors import RunCancelled


class RetryError(RuntimeError):
    pass


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded exponential backoff.

    max_attempts: total attempts including the first one
    base_delay: delay after the first failed attempt (seconds)
    factor: multiplier applied per further failure
    max_delay: cap for any single delay
    """
    max_attempts: int = 3
    base_delay: float = 2.0
    factor: float = 2.0
    max_delay: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def delay_for(self, failed_attempt: int) -> float:
        """Delay to wait after attempt number `failed_attempt` (1-based) failed."""
        return min(self.base_delay * self.factor ** (failed_attempt - 1), self.max_delay)

    def delays(self) -> Iterator[float]:
        for attempt in range(1, self.max_attempts):
            yield self.delay_for(attempt)


def interruptible_sleep(delay: float, cancel: Optional[threading.Event]) -> None:
    """Sleep for delay seconds, raising RunCancelled as soon as cancel is set."""
    ev = cancel or threading.Event()
    if ev.wait(delay):
        raise RunCancelled("cancelled while waiting")


def retry(
    policy: RetryPolicy,
    *,
    retry_on: tuple[type[Exception], ...] = (Exception,),
    on_retry: Callable[[int, Exception], None] | None = None,
    cancel: Optional[threading.Event] = None,
):
    """
    Retry decorator for idempotent operations.

    on_retry: callback(attempt, exception), called before each backoff.
    It may apply a remediation (e.g. fix daemon config) before the next try.
    """

    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            last_exc = None
            for attempt in range(1, policy.max_attempts + 1):
                try:
                    return fn(*args, **kwargs)
                except retry_on as exc:
                    last_exc = exc
                    if attempt == policy.max_attempts:
                        break
                    if on_retry:
                        on_retry(attempt, exc)
                    interruptible_sleep(policy.delay_for(attempt), cancel)
            raise RetryError(
                f"{fn.__name__} failed after {policy.max_attempts} attempts: {last_exc}"
            ) from last_exc
        return wrapper
    return decorator
