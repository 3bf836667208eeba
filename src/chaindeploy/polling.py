"""Backoff, deadlines and cancellation for polling loops."""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, Optional, TypeVar

from .constants import RECEIPT_POLL_CAP, RECEIPT_POLL_FACTOR, RECEIPT_POLL_INITIAL

T = TypeVar("T")


class PollTimeoutError(Exception):
    """The deadline or attempt budget ran out before the check succeeded."""

    def __init__(self, attempts: int):
        super().__init__(f"Gave up after {attempts} attempts")
        self.attempts = attempts


class PollCancelledError(Exception):
    """The caller cancelled the poll."""

    def __init__(self, attempts: int):
        super().__init__(f"Cancelled after {attempts} attempts")
        self.attempts = attempts


@dataclass(frozen=True)
class Backoff:
    """Bounded exponential backoff schedule."""

    initial: float = RECEIPT_POLL_INITIAL
    factor: float = RECEIPT_POLL_FACTOR
    cap: float = RECEIPT_POLL_CAP

    def delays(self) -> Iterator[float]:
        delay = self.initial
        while True:
            yield min(delay, self.cap)
            delay *= self.factor


class CancelToken:
    """Thread-safe cancellation flag that polling loops can sleep on."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; returns True if cancelled meanwhile."""
        return self._event.wait(seconds)


def poll_until(
    check: Callable[[], Optional[T]],
    delays: Iterable[float],
    *,
    timeout: Optional[float] = None,
    max_attempts: Optional[int] = None,
    cancel: Optional[CancelToken] = None,
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """
    Call ``check`` until it returns something other than None.

    Args:
        check: Zero-argument callable; None means "not yet"
        delays: Sleep durations between attempts (consumed lazily)
        timeout: Overall deadline in seconds, or None for no deadline
        max_attempts: Maximum number of calls to ``check``
        cancel: Token that interrupts the loop, including mid-sleep
        clock: Monotonic clock (injectable for tests)

    Returns:
        First non-None result of ``check``

    Raises:
        PollTimeoutError: If the deadline passes or attempts run out
        PollCancelledError: If the token is cancelled
    """
    cancel = cancel or CancelToken()
    deadline = None if timeout is None else clock() + timeout
    delay_iter = iter(delays)
    attempts = 0

    while True:
        if cancel.cancelled:
            raise PollCancelledError(attempts)

        attempts += 1
        result = check()
        if result is not None:
            return result

        if max_attempts is not None and attempts >= max_attempts:
            raise PollTimeoutError(attempts)

        try:
            delay = next(delay_iter)
        except StopIteration:
            raise PollTimeoutError(attempts) from None

        if deadline is not None:
            remaining = deadline - clock()
            if remaining <= 0:
                raise PollTimeoutError(attempts)
            delay = min(delay, remaining)

        if cancel.wait(delay):
            raise PollCancelledError(attempts)
