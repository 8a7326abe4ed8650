"""Per-backend circuit breakers.

A breaker opens after N consecutive failures, half-opens after a cooldown to
let a probe through, and closes again after enough consecutive successes.
Thresholds are small integer counts rather than percentages so that a failing
backend trips quickly at low request rates.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class BreakerOptions:
    """Non-positive values fall back to 5 failures, 2 successes, 10 s cooldown."""

    failure_threshold: int = 0
    success_threshold: int = 0
    cooldown: timedelta = timedelta(0)


@dataclass(frozen=True)
class BreakerStatus:
    state: BreakerState
    consecutive_fail: int
    consecutive_ok: int
    opened_at: datetime | None


class Breaker:
    """A single backend's circuit breaker. Safe for concurrent use."""

    def __init__(
        self,
        options: BreakerOptions | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        opts = options or BreakerOptions()
        self._failure_threshold = opts.failure_threshold if opts.failure_threshold > 0 else 5
        self._success_threshold = opts.success_threshold if opts.success_threshold > 0 else 2
        cooldown = opts.cooldown if opts.cooldown > timedelta(0) else timedelta(seconds=10)
        self._cooldown = cooldown.total_seconds()
        self._clock = clock

        self._lock = threading.Lock()
        self._state = BreakerState.CLOSED
        self._consecutive_fail = 0
        self._consecutive_ok = 0
        self._opened_at_clock = 0.0
        self._opened_at: datetime | None = None

    def allow(self) -> bool:
        """Whether the next request may go out; flips open to half-open after cooldown."""
        with self._lock:
            if self._state is BreakerState.OPEN:
                if self._clock() - self._opened_at_clock >= self._cooldown:
                    self._state = BreakerState.HALF_OPEN
                    self._consecutive_ok = 0
                    return True
                return False
            return True

    def success(self) -> None:
        with self._lock:
            self._consecutive_ok += 1
            self._consecutive_fail = 0
            if (
                self._state is BreakerState.HALF_OPEN
                and self._consecutive_ok >= self._success_threshold
            ):
                self._state = BreakerState.CLOSED
                self._consecutive_ok = 0

    def failure(self) -> None:
        with self._lock:
            self._consecutive_fail += 1
            self._consecutive_ok = 0
            if self._state is BreakerState.CLOSED:
                if self._consecutive_fail >= self._failure_threshold:
                    self._open()
            elif self._state is BreakerState.HALF_OPEN:
                self._open()

    def _open(self) -> None:
        self._state = BreakerState.OPEN
        self._opened_at_clock = self._clock()
        self._opened_at = datetime.now(timezone.utc)

    def snapshot(self) -> BreakerStatus:
        with self._lock:
            return BreakerStatus(
                state=self._state,
                consecutive_fail=self._consecutive_fail,
                consecutive_ok=self._consecutive_ok,
                opened_at=self._opened_at,
            )


class BreakerSet:
    """Process-wide collection of breakers, one per backend name."""

    def __init__(
        self,
        options: BreakerOptions | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._options = options or BreakerOptions()
        self._clock = clock
        self._lock = threading.Lock()
        self._cohort: dict[str, Breaker] = {}

    def for_name(self, name: str) -> Breaker:
        """Return the breaker for ``name``, creating it on first use."""
        with self._lock:
            breaker = self._cohort.get(name)
            if breaker is None:
                breaker = Breaker(self._options, self._clock)
                self._cohort[name] = breaker
            return breaker

    def snapshot(self) -> dict[str, BreakerStatus]:
        with self._lock:
            breakers = dict(self._cohort)
        return {name: b.snapshot() for name, b in breakers.items()}