"""
Bounded wait-until-predicate polling and the run deadline.

One primitive serves every asynchronous wait in a rotation: an
authorization leaving ``pending``, the order reaching ``ready``/``invalid``
and the certificate URL appearing.  Each retry sleeps for the interval (or
the CA's ``Retry-After`` hint when provided) before the next fetch; the
sleep is clipped to the run deadline and nothing ever busy-spins.
"""
from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional, TypeVar

from acmev2.errors import PollTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PollCancelled(Exception):
    """Raised when a poll's cancel event is set while it is still waiting."""


class Deadline:
    """A single wall-clock budget shared by every stage of one run."""

    def __init__(self, seconds: Optional[float], clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._expires_at = None if seconds is None else clock() + seconds

    def remaining(self) -> Optional[float]:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def check(self, what: str = "run") -> None:
        if self.expired:
            raise PollTimeoutError(f"Deadline expired before {what}")


class PollController:
    def __init__(
        self,
        sleep: Callable[[float], None] = time.sleep,
        deadline: Optional[Deadline] = None,
    ) -> None:
        self._sleep = sleep
        self.deadline = deadline

    def poll_until(
        self,
        fetch: Callable[[], T],
        predicate: Callable[[T], bool],
        interval: float,
        max_attempts: int,
        hint: Optional[Callable[[T], Optional[float]]] = None,
        what: str = "condition",
        cancel: Optional[threading.Event] = None,
    ) -> T:
        """
        Call *fetch* until *predicate* accepts its result and return it.

        Between attempts, sleep for ``hint(result)`` when it yields a value,
        else *interval*.  Raises PollTimeoutError after *max_attempts*
        fetches or when the deadline runs out, and PollCancelled as soon as
        *cancel* is observed set before a fetch or a sleep.
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

        for attempt in range(1, max_attempts + 1):
            _check_cancel(cancel, what)
            if self.deadline is not None:
                self.deadline.check(f"polling {what}")
            result = fetch()
            if predicate(result):
                logger.debug("%s satisfied after %d attempt(s)", what, attempt)
                return result
            if attempt == max_attempts:
                break

            delay = interval
            if hint is not None:
                suggested = hint(result)
                if suggested is not None:
                    delay = suggested
            _check_cancel(cancel, what)
            if self.deadline is not None:
                remaining = self.deadline.remaining()
                if remaining is not None and remaining < delay:
                    self._sleep(remaining)
                    raise PollTimeoutError(f"Deadline expired while waiting for {what}")
            logger.debug("Waiting %.1fs for %s (attempt %d/%d)", delay, what, attempt, max_attempts)
            self._sleep(delay)

        raise PollTimeoutError(f"{what} not reached after {max_attempts} attempt(s)")


def _check_cancel(cancel: Optional[threading.Event], what: str) -> None:
    if cancel is not None and cancel.is_set():
        raise PollCancelled(f"Stopped waiting for {what}")
