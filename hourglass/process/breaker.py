from enum import StrEnum

from hourglass import constants
from hourglass.clock import Clock, SystemClock
from hourglass.logging import get_logger

_logger = get_logger(__name__)


class BreakerState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Fails fast after repeated failed invocations.

    A failure is one whole `execute` call (its retries included). Once
    `failure_threshold` consecutive failures are recorded the breaker opens;
    after `cooldown` seconds it admits exactly one trial call.
    """

    def __init__(
        self,
        *,
        failure_threshold: int = constants.CIRCUIT_FAILURE_THRESHOLD,
        cooldown: float = constants.CIRCUIT_COOLDOWN,
        clock: Clock | None = None,
    ):
        self.failure_threshold = failure_threshold
        self.cooldown = cooldown
        self.clock = clock or SystemClock()
        self.state = BreakerState.CLOSED
        self.consecutive_failures = 0
        self.trips = 0
        self._opened_at: float | None = None
        self._trial_in_flight = False

    @property
    def retry_after(self) -> float:
        if self.state is not BreakerState.OPEN or self._opened_at is None:
            return 0.0
        return max(0.0, self._opened_at + self.cooldown - self.clock.monotonic())

    def allow(self) -> bool:
        if self.state is BreakerState.CLOSED:
            return True
        if self.state is BreakerState.OPEN:
            if self.retry_after > 0:
                return False
            self.state = BreakerState.HALF_OPEN
            _logger.info("Circuit breaker half-open, admitting one trial call")
        if self._trial_in_flight:
            return False
        self._trial_in_flight = True
        return True

    def record_success(self) -> None:
        if self.state is not BreakerState.CLOSED:
            _logger.info("Circuit breaker closed after successful call")
        self.state = BreakerState.CLOSED
        self.consecutive_failures = 0
        self._opened_at = None
        self._trial_in_flight = False

    def record_failure(self) -> None:
        self.consecutive_failures += 1
        self._trial_in_flight = False
        if self.state is BreakerState.HALF_OPEN:
            self._open("trial call failed")
        elif self.state is BreakerState.CLOSED and self.consecutive_failures >= self.failure_threshold:
            self._open(f"{self.consecutive_failures} consecutive failures")

    def release_trial(self) -> None:
        """Give back an admitted trial whose call ended without an outcome."""
        if self._trial_in_flight:
            _logger.info("Circuit breaker trial abandoned, next call is the trial")
        self._trial_in_flight = False

    def reset(self) -> None:
        self.state = BreakerState.CLOSED
        self.consecutive_failures = 0
        self._opened_at = None
        self._trial_in_flight = False

    def _open(self, reason: str) -> None:
        self.state = BreakerState.OPEN
        self._opened_at = self.clock.monotonic()
        self.trips += 1
        _logger.warning("Circuit breaker opened (%s), cooling down for %ss", reason, self.cooldown)
