"""
Circuit Breaker — skip a provider that keeps failing.

closed → open after `failure_threshold` consecutive failures.
open → half_open once `reset_timeout` has elapsed; one trial call is let through.
half_open → closed on success, back to open on failure.
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Optional

from intent_engine.models.limits import CircuitSnapshot, CircuitState
from intent_engine.models.wire import utc_now

logger = logging.getLogger("intent-engine.circuit-breaker")


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        failure_threshold: int = 3,
        reset_timeout_seconds: float = 30.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = timedelta(seconds=reset_timeout_seconds)
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at: Optional[datetime] = None
        self._trial_in_flight = False
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    def allow_request(self) -> bool:
        """True if a call to the provider may be attempted now."""
        with self._lock:
            self._maybe_half_open()
            if self._state == CircuitState.CLOSED:
                return True
            if self._state == CircuitState.HALF_OPEN and not self._trial_in_flight:
                self._trial_in_flight = True
                return True
            return False

    def record_success(self) -> None:
        with self._lock:
            if self._state != CircuitState.CLOSED:
                logger.info("Circuit %s closed after successful trial call", self.name)
            self._state = CircuitState.CLOSED
            self._consecutive_failures = 0
            self._opened_at = None
            self._trial_in_flight = False

    def record_failure(self) -> None:
        with self._lock:
            self._consecutive_failures += 1
            self._trial_in_flight = False
            if (
                self._state == CircuitState.HALF_OPEN
                or self._consecutive_failures >= self.failure_threshold
            ):
                if self._state != CircuitState.OPEN:
                    logger.warning(
                        "Circuit %s opened after %d consecutive failures",
                        self.name, self._consecutive_failures,
                    )
                self._state = CircuitState.OPEN
                self._opened_at = self._clock()

    def release_trial(self) -> None:
        """Hand back a half-open trial slot whose call ended without an outcome."""
        with self._lock:
            self._trial_in_flight = False

    def snapshot(self) -> CircuitSnapshot:
        with self._lock:
            self._maybe_half_open()
            return CircuitSnapshot(
                name=self.name,
                state=self._state,
                consecutive_failures=self._consecutive_failures,
                opened_at=self._opened_at,
                retry_at=(
                    self._opened_at + self.reset_timeout if self._opened_at else None
                ),
            )

    def _maybe_half_open(self) -> None:
        if (
            self._state == CircuitState.OPEN
            and self._opened_at is not None
            and self._clock() - self._opened_at >= self.reset_timeout
        ):
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False
