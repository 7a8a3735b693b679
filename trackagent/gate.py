"""Dedup/throttle gate deciding whether a normalized error may become a report."""

import logging
import threading
import time
from dataclasses import dataclass

from trackagent.normalizer import CanonicalError

logger = logging.getLogger(__name__)

FINGERPRINT_LENGTH = 10_000


@dataclass
class ThrottleState:
    attempt_count: int = 0
    throttled_count: int = 0
    last_attempt: float = 0.0
    last_fingerprint: str | None = None


@dataclass
class Candidate:
    """A normalized error waiting for admission.

    ``throttled`` is filled in by the gate when this candidate opens a new
    window: the number of reports suppressed in the window before it.
    """

    entry: str
    error: CanonicalError
    throttled: int = 0


class WindowThrottle:
    """Rolling-window counter: more than *max_attempts* within *window_seconds* are refused.

    Every attempt inside the window pushes the window forward, so a continuous
    storm stays throttled until it pauses for a full window.
    """

    def __init__(self, max_attempts: int = 10, window_seconds: float = 1.0, time_func=None):
        self._max_attempts = max_attempts
        self._window_seconds = window_seconds
        self._time_func = time_func or time.monotonic
        self.state = ThrottleState(last_attempt=self._time_func())
        self._lock = threading.Lock()

    def hit(self) -> tuple[bool, int]:
        """Count one attempt. Returns (allowed, throttled count carried over from the last window)."""
        with self._lock:
            state = self.state
            now = self._time_func()
            state.attempt_count += 1
            if now - state.last_attempt <= self._window_seconds:
                state.last_attempt = now
                if state.attempt_count > self._max_attempts:
                    state.throttled_count += 1
                    return False, 0
                return True, 0

            carried = state.throttled_count
            state.attempt_count = 1
            state.throttled_count = 0
            state.last_attempt = now
            return True, carried

    @property
    def throttled_count(self) -> int:
        with self._lock:
            return self.state.throttled_count


def fingerprint(error: CanonicalError) -> str:
    return (error.message + (error.stack or ""))[:FINGERPRINT_LENGTH]


class Gate:
    """Backpressure for the report pipeline.

    Consecutive duplicates (same message+stack fingerprint as the last
    committed report) are dropped when dedupe is on, then the rolling-window
    throttle is applied. A report's fingerprint is only remembered once it is
    committed, after the on_error hook has let it through.
    """

    def __init__(self, dedupe: bool = True, max_attempts: int = 10,
                 window_seconds: float = 1.0, time_func=None):
        self.dedupe = dedupe
        self._throttle = WindowThrottle(max_attempts, window_seconds, time_func)
        self._lock = threading.Lock()

    @property
    def state(self) -> ThrottleState:
        return self._throttle.state

    def admit(self, candidate: Candidate) -> bool:
        """Return True when *candidate* may be assembled."""
        with self._lock:
            if self.dedupe and fingerprint(candidate.error) == self.state.last_fingerprint:
                logger.debug("Dropping duplicate report: %.80s", candidate.error.message)
                return False

            allowed, carried = self._throttle.hit()
            if not allowed:
                logger.debug("Throttled report: %.80s", candidate.error.message)
                return False

            candidate.throttled = carried
            return True

    def commit(self, candidate: Candidate):
        """Remember *candidate* as the last report sent."""
        if not self.dedupe:
            return
        with self._lock:
            self.state.last_fingerprint = fingerprint(candidate.error)
