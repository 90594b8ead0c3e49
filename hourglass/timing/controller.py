import math
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum

from hourglass import constants
from hourglass.clock import Clock, SystemClock
from hourglass.logging import get_logger
from hourglass.recovery.models import ErrorKind

_logger = get_logger(__name__)

# Shortest sleep of the tick loop when a deadline is imminent
_MIN_WAKEUP = 0.05


class TimingAccuracy(StrEnum):
    HIGH_PRECISION = "high_precision"
    ACCEPTABLE = "acceptable"
    DEGRADED = "degraded"


class TimingFault(Exception):
    def __init__(self, kind: ErrorKind, message: str, *, drift: float = 0.0):
        super().__init__(message)
        self.kind = kind
        self.drift = drift


@dataclass(frozen=True)
class TickResult:
    elapsed: float
    progress: float
    drift: float
    command_due: bool = False
    completed: bool = False
    recalibrated: bool = False
    sleep_excluded: float = 0.0
    fault: TimingFault | None = None


class TimingController:
    """Wall-clock session timer with drift tracking and sleep exclusion.

    Elapsed time is always derived from the wall clock minus every paused
    interval, so tick cadence affects only how soon a deadline is noticed,
    never how it is measured. Each tick also compares the monotonic interval
    that actually passed with the one that was expected; the running sum is
    the drift, and it is zeroed by recalibrating once it leaves `max_drift`.

    A wall-clock jump ahead of the monotonic clock larger than `max_drift` is
    a suspend the OS did not announce and is excluded like a pause. A jump
    backwards is a clock adjustment: the session start moves with it so
    elapsed time stays continuous.
    """

    def __init__(
        self,
        *,
        clock: Clock | None = None,
        target_duration: float = constants.DEFAULT_TARGET_DURATION,
        command_interval: float = constants.DEFAULT_COMMAND_INTERVAL,
        tick_interval: float = constants.TICK_INTERVAL,
        low_power_interval: float = constants.LOW_POWER_TICK_INTERVAL,
        max_drift: float = constants.MAX_TIMING_DRIFT,
        max_consecutive_recalibrations: int = constants.MAX_CONSECUTIVE_RECALIBRATIONS,
    ):
        self.clock = clock or SystemClock()
        self.target_duration = target_duration
        self.command_interval = command_interval
        self.tick_interval = tick_interval
        self.low_power_interval = low_power_interval
        self.max_drift = max_drift
        self.max_consecutive_recalibrations = max_consecutive_recalibrations

        self.low_power = False
        self.throttled = False

        self.session_start_time: float | None = None
        self.accumulated_paused_duration = 0.0
        self.paused_since: float | None = None

        self.accumulated_drift = 0.0
        self.consecutive_recalibrations = 0
        self.recalibrations = 0
        self._counter_elapsed = 0.0
        self._peak_drift = 0.0
        self._commands_fired = 0
        self._last_wall = 0.0
        self._last_mono = 0.0

    @property
    def armed(self) -> bool:
        return self.session_start_time is not None

    @property
    def paused(self) -> bool:
        return self.paused_since is not None

    @property
    def interval(self) -> float:
        if self.low_power or self.throttled:
            return self.low_power_interval
        return self.tick_interval

    @property
    def accuracy(self) -> TimingAccuracy:
        drift = max(abs(self.accumulated_drift), self._peak_drift)
        if drift <= constants.MAX_TIMING_DRIFT:
            return TimingAccuracy.HIGH_PRECISION
        if drift <= constants.ACCEPTABLE_TIMING_DRIFT:
            return TimingAccuracy.ACCEPTABLE
        return TimingAccuracy.DEGRADED

    def elapsed(self, now: float | None = None) -> float:
        if self.session_start_time is None:
            return 0.0
        now = self.clock.time() if now is None else now
        elapsed = now - self.session_start_time - self.accumulated_paused_duration
        if self.paused_since is not None:
            elapsed -= max(0.0, now - self.paused_since)
        return max(0.0, elapsed)

    def progress(self, now: float | None = None) -> float:
        return min(1.0, self.elapsed(now) / self.target_duration)

    def arm(self, now: float, target_duration: float | None = None) -> None:
        """Begin timing a fresh session at `now`."""
        if target_duration is not None:
            self.target_duration = target_duration
        self.session_start_time = now
        self.accumulated_paused_duration = 0.0
        self.paused_since = None
        self._commands_fired = 0
        self._reset_drift()
        self._anchor()

    def restore(
        self,
        *,
        session_start_time: float,
        accumulated_paused_duration: float,
        paused_since: float | None,
        target_duration: float,
        elapsed_at_snapshot: float,
    ) -> None:
        self.session_start_time = session_start_time
        self.accumulated_paused_duration = accumulated_paused_duration
        self.paused_since = paused_since
        self.target_duration = target_duration
        self._commands_fired = int(elapsed_at_snapshot // self.command_interval)
        self._reset_drift()
        self._anchor()

    def disarm(self) -> None:
        self.session_start_time = None
        self.accumulated_paused_duration = 0.0
        self.paused_since = None
        self._commands_fired = 0
        self._reset_drift()

    def pause(self, now: float) -> None:
        if self.paused_since is None:
            self.paused_since = now

    def resume(self, now: float) -> None:
        if self.paused_since is not None:
            self.accumulated_paused_duration += max(0.0, now - self.paused_since)
            self.paused_since = None
        # The paused interval is now folded; the next tick must not see it as a gap
        self._anchor()

    def recalibrate(self) -> None:
        self._counter_elapsed = self.elapsed()
        self.accumulated_drift = 0.0
        self.consecutive_recalibrations = 0
        self._anchor()
        _logger.info("Timing recalibrated at elapsed=%.1fs", self._counter_elapsed)

    def next_wakeup(self, now: float | None = None) -> float:
        """Seconds the tick loop should sleep before the next check."""
        interval = self.interval
        if not self.armed or self.paused:
            return interval
        elapsed = self.elapsed(now)
        next_boundary = (math.floor(elapsed / self.command_interval) + 1) * self.command_interval
        until_deadline = min(self.target_duration, next_boundary) - elapsed
        return max(_MIN_WAKEUP, min(interval, until_deadline))

    def tick(self, expected: float | None = None) -> TickResult:
        expected = self.interval if expected is None else expected
        wall = self.clock.time()
        mono = self.clock.monotonic()
        wall_delta = wall - self._last_wall
        mono_delta = mono - self._last_mono
        self._last_wall, self._last_mono = wall, mono

        fault: TimingFault | None = None
        excluded = 0.0
        divergence = wall_delta - mono_delta
        if self.paused:
            pass
        elif divergence > self.max_drift:
            excluded = divergence
            self.accumulated_paused_duration += divergence
            _logger.info("Excluded %.1fs of unannounced suspend from session time", divergence)
        elif divergence < -self.max_drift:
            self.session_start_time += divergence
            fault = TimingFault(
                ErrorKind.CLOCK_ADJUSTED,
                f"Wall clock moved back {-divergence:.1f}s",
                drift=divergence,
            )
            _logger.warning("Wall clock adjusted by %.1fs, session start shifted", divergence)

        self.accumulated_drift += mono_delta - expected
        self._counter_elapsed += expected

        recalibrated = False
        if abs(self.accumulated_drift) > self.max_drift:
            self._peak_drift = abs(self.accumulated_drift)
            _logger.debug("Drift %.2fs beyond tolerance, recalibrating", self.accumulated_drift)
            self._counter_elapsed = self.elapsed(wall)
            self.accumulated_drift = 0.0
            self.consecutive_recalibrations += 1
            self.recalibrations += 1
            recalibrated = True
            if self.consecutive_recalibrations > self.max_consecutive_recalibrations:
                fault = TimingFault(
                    ErrorKind.DRIFT_EXCEEDED,
                    f"{self.consecutive_recalibrations} consecutive recalibrations",
                    drift=self._peak_drift,
                )
        else:
            self.consecutive_recalibrations = 0
            self._peak_drift = 0.0

        elapsed = self.elapsed(wall)
        completed = self.armed and elapsed >= self.target_duration
        command_due = False
        if self.armed and not self.paused and not completed:
            boundary = int(elapsed // self.command_interval)
            if boundary > self._commands_fired:
                self._commands_fired = boundary
                command_due = True

        return TickResult(
            elapsed=elapsed,
            progress=min(1.0, elapsed / self.target_duration),
            drift=self.accumulated_drift,
            command_due=command_due,
            completed=completed,
            recalibrated=recalibrated,
            sleep_excluded=excluded,
            fault=fault,
        )

    async def run(self, on_due: Callable[[float], None]) -> None:
        """Sleep to the next check and hand the slept interval to `on_due`."""
        while True:
            interval = self.next_wakeup()
            await self.clock.sleep(interval)
            try:
                on_due(interval)
            except Exception:
                _logger.exception("Tick handler failed")

    def _anchor(self) -> None:
        self._last_wall = self.clock.time()
        self._last_mono = self.clock.monotonic()

    def _reset_drift(self) -> None:
        self.accumulated_drift = 0.0
        self.consecutive_recalibrations = 0
        self._counter_elapsed = self.elapsed()
        self._peak_drift = 0.0
