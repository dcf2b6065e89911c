"""Bounded-time convergence polling.

The poller repeatedly fetches a fresh snapshot and evaluates a predicate
until the predicate matches, the time budget runs out, or the caller cancels.

- The first attempt runs immediately.
- A fetch error is recorded and treated as "not yet converged".
- A match returns at once, without a trailing wait.
- Waits use a fixed interval, clipped to the remaining budget, so one last
  attempt runs exactly at the deadline.
- On timeout the last snapshot, last mismatch detail and last error are
  kept for the failure report.

Example:
    >>> result = poll(fetch, managed_present_and_healthy("endpoint"),
    ...               timeout=120, interval=1)
    >>> if not result.converged:
    ...     print(result.detail)
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from fleetqa.errors import ConvergenceTimeoutError, ErrorContext
from fleetqa.predicates import Predicate
from fleetqa.state.models import StateSnapshot

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], object]
FetchFn = Callable[[], StateSnapshot]


class Deadline:
    """Absolute wall-clock deadline measured on a monotonic clock.

    Example:
        >>> deadline = Deadline(600)
        >>> timeout = deadline.clip(120)  # never past the scenario deadline
    """

    def __init__(self, seconds: float, clock: Clock = time.monotonic) -> None:
        if seconds < 0:
            raise ValueError("Deadline must not be negative")
        self._clock = clock
        self.seconds = seconds
        self.at = clock() + seconds

    def remaining(self) -> float:
        return max(0.0, self.at - self._clock())

    @property
    def expired(self) -> bool:
        return self._clock() >= self.at

    def clip(self, seconds: float) -> float:
        """Return ``seconds`` or the remaining time, whichever is shorter."""
        return min(seconds, self.remaining())

    def __repr__(self) -> str:
        return f"Deadline(seconds={self.seconds}, remaining={self.remaining():.1f})"


@dataclass
class PollResult:
    """Outcome of a polling run.

    Attributes:
        converged: Whether the predicate matched.
        snapshot: The last snapshot observed (the matching one on success).
        error: The last fetch error, if the last attempts failed to fetch.
        detail: The last mismatch detail reported by the predicate.
        attempts: Number of fetch attempts made.
        elapsed: Seconds from the first attempt to the return.
        cancelled: Whether the run stopped because it was cancelled.
        predicate: Description of the predicate that was polled.
    """

    converged: bool
    snapshot: StateSnapshot | None
    error: BaseException | None
    detail: str | None
    attempts: int
    elapsed: float
    cancelled: bool = False
    predicate: str = ""

    def to_error(self, timeout: float, context: ErrorContext | None = None) -> ConvergenceTimeoutError:
        """Build the failure to raise for a non-converged run."""
        message = None
        if self.cancelled:
            message = f"Polling for '{self.predicate}' was cancelled after {self.attempts} attempt(s)"
        return ConvergenceTimeoutError(
            message=message,
            predicate=self.predicate,
            timeout_seconds=timeout,
            elapsed_seconds=self.elapsed,
            attempts=self.attempts,
            last_snapshot=self.snapshot,
            last_detail=self.detail,
            last_error=self.error,
            context=context,
        )


def poll(
    fetch: FetchFn,
    predicate: Predicate,
    timeout: float,
    interval: float,
    *,
    cancel: threading.Event | None = None,
    clock: Clock = time.monotonic,
    sleep: Sleep | None = None,
) -> PollResult:
    """Poll until ``predicate`` matches a fetched snapshot or time runs out.

    Args:
        fetch: Returns a fresh snapshot; may raise on transient failures.
        predicate: Expected state.
        timeout: Time budget in seconds.
        interval: Fixed wait between attempts in seconds.
        cancel: Optional event; setting it stops the loop at the next check
            and interrupts the current wait when no ``sleep`` is injected.
        clock: Monotonic clock.
        sleep: Wait function. Defaults to ``cancel.wait`` when a cancel
            event is given, else ``time.sleep``.

    Returns:
        PollResult describing the outcome.
    """
    if timeout < 0:
        raise ValueError("timeout must not be negative")
    if interval <= 0:
        raise ValueError("interval must be positive")
    if sleep is None:
        sleep = cancel.wait if cancel is not None else time.sleep

    start = clock()
    deadline = start + timeout
    attempts = 0
    snapshot: StateSnapshot | None = None
    last_error: BaseException | None = None
    detail: str | None = None

    def result(converged: bool, cancelled: bool = False) -> PollResult:
        return PollResult(
            converged=converged,
            snapshot=snapshot,
            error=last_error,
            detail=detail,
            attempts=attempts,
            elapsed=clock() - start,
            cancelled=cancelled,
            predicate=str(predicate),
        )

    while True:
        if cancel is not None and cancel.is_set():
            logger.info("Polling for %s cancelled after %d attempt(s)", predicate.name, attempts)
            return result(False, cancelled=True)

        attempts += 1
        try:
            current = fetch()
        except Exception as e:
            last_error = e
            logger.warning("Attempt %d: error getting agent state: %s", attempts, e)
        else:
            snapshot = current
            last_error = None
            outcome = predicate.evaluate(current)
            if outcome.matched:
                logger.debug("Attempt %d: %s satisfied", attempts, predicate.name)
                return result(True)
            detail = outcome.detail
            logger.debug("Attempt %d: %s (%s)", attempts, detail, current.summary())

        now = clock()
        if now >= deadline:
            logger.info(
                "Polling for %s timed out after %.1fs and %d attempt(s)",
                predicate.name, now - start, attempts,
            )
            return result(False)
        sleep(min(interval, deadline - now))


class ConvergencePoller:
    """Poller with an injected clock, wait function and cancel event.

    Args:
        interval: Default interval between attempts in seconds.
        clock: Monotonic clock.
        sleep: Wait function; see poll().
        cancel: Cancel event shared with the caller.
    """

    def __init__(
        self,
        interval: float = 1.0,
        clock: Clock = time.monotonic,
        sleep: Sleep | None = None,
        cancel: threading.Event | None = None,
    ) -> None:
        self.interval = interval
        self.clock = clock
        self.sleep = sleep
        self.cancel = cancel or threading.Event()

    def poll(
        self,
        fetch: FetchFn,
        predicate: Predicate,
        timeout: float,
        interval: float | None = None,
        deadline: Deadline | None = None,
    ) -> PollResult:
        if deadline is not None:
            timeout = deadline.clip(timeout)
        return poll(
            fetch,
            predicate,
            timeout=timeout,
            interval=self.interval if interval is None else interval,
            cancel=self.cancel,
            clock=self.clock,
            sleep=self.sleep,
        )

    def require(
        self,
        fetch: FetchFn,
        predicate: Predicate,
        timeout: float,
        interval: float | None = None,
        deadline: Deadline | None = None,
        context: ErrorContext | None = None,
    ) -> PollResult:
        """Poll and raise unless the predicate matched.

        Raises:
            ConvergenceTimeoutError: With the last snapshot, detail and error.
        """
        if deadline is not None:
            timeout = deadline.clip(timeout)
        result = self.poll(fetch, predicate, timeout=timeout, interval=interval)
        if not result.converged:
            raise result.to_error(timeout, context=context)
        return result

    def stop(self) -> None:
        """Cancel any running and future polls of this poller."""
        self.cancel.set()


__all__ = ["ConvergencePoller", "Deadline", "PollResult", "poll"]
