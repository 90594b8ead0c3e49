import asyncio
import dataclasses
from collections import deque
from collections.abc import Callable, Coroutine, Sequence
from typing import Any

from hourglass import constants
from hourglass.clock import Clock, SystemClock
from hourglass.health.models import (
    DetectionLevel,
    EdgeCaseDetection,
    EdgeCaseKind,
    HealthSnapshot,
    HealthThresholds,
    ThermalState,
)
from hourglass.health.probe import HealthProbe
from hourglass.logging import get_logger

_logger = get_logger(__name__)

type SampleHandler = Callable[[HealthSnapshot, list[EdgeCaseDetection]], Coroutine[Any, Any, None]]


def _tier(value: float, levels: Sequence[tuple[float, DetectionLevel]]) -> DetectionLevel | None:
    """Highest level whose threshold `value` strictly exceeds; levels sorted descending."""
    for threshold, level in levels:
        if value > threshold:
            return level
    return None


class HealthMonitor:
    """Samples host health on a fixed interval, whatever the session is doing."""

    def __init__(
        self,
        probe: HealthProbe,
        *,
        interval: float = constants.HEALTH_INTERVAL,
        history_size: int = constants.HEALTH_HISTORY_SIZE,
        thresholds: HealthThresholds | None = None,
        drift_source: Callable[[], float] | None = None,
        clock: Clock | None = None,
    ):
        self.probe = probe
        self.interval = interval
        self.thresholds = thresholds or HealthThresholds()
        self.drift_source = drift_source
        self.clock = clock or SystemClock()
        self.history: deque[HealthSnapshot] = deque(maxlen=history_size)

    async def sample(self) -> HealthSnapshot:
        snapshot = await self.probe.sample()
        if self.drift_source is not None:
            snapshot = dataclasses.replace(snapshot, clock_drift_estimate=self.drift_source())
        self.history.append(snapshot)
        return snapshot

    def detect_edge_cases(self, history: Sequence[HealthSnapshot] | None = None) -> list[EdgeCaseDetection]:
        samples = list(self.history if history is None else history)
        if not samples:
            return []
        latest = samples[-1]
        t = self.thresholds
        detections: list[EdgeCaseDetection] = []

        def add(kind, level, message, value=None, **metadata):
            detections.append(
                EdgeCaseDetection(
                    kind=kind,
                    level=level,
                    message=message,
                    detected_at=latest.taken_at,
                    value=value,
                    metadata=metadata,
                )
            )

        level = _tier(
            latest.memory_pressure,
            [
                (t.memory_emergency, DetectionLevel.EMERGENCY),
                (t.memory_critical, DetectionLevel.CRITICAL),
                (t.memory_warning, DetectionLevel.WARNING),
            ],
        )
        if level:
            add(EdgeCaseKind.MEMORY_PRESSURE, level, f"Memory pressure at {latest.memory_pressure:.0%}", latest.memory_pressure)

        window = samples[-t.sustained_samples :]
        if len(window) >= t.sustained_samples:
            memory = [s.memory_pressure for s in window]
            growth = memory[-1] - memory[0]
            if all(b > a for a, b in zip(memory, memory[1:], strict=False)) and growth >= t.memory_growth:
                add(
                    EdgeCaseKind.MEMORY_LEAK,
                    DetectionLevel.MONITORING,
                    f"Memory grew {growth:.0%} over {len(window)} samples",
                    growth,
                )
            if all(s.cpu_usage >= t.cpu_saturation for s in window):
                add(
                    EdgeCaseKind.CPU_SATURATION,
                    DetectionLevel.WARNING,
                    f"CPU above {t.cpu_saturation:.0f}% for {len(window)} samples",
                    latest.cpu_usage,
                )

        if latest.on_battery:
            # Lower battery is worse, so compare the deficit
            level = _tier(
                -latest.battery_level,
                [
                    (-t.battery_emergency, DetectionLevel.EMERGENCY),
                    (-t.battery_critical, DetectionLevel.CRITICAL),
                    (-t.battery_warning, DetectionLevel.WARNING),
                ],
            )
            if level:
                add(EdgeCaseKind.BATTERY_LOW, level, f"Battery at {latest.battery_level:.0%} and unplugged", latest.battery_level)

        if latest.network_reachable is False:
            sustained = len(window) >= t.sustained_samples and all(s.network_reachable is False for s in window)
            add(
                EdgeCaseKind.NETWORK_UNREACHABLE,
                DetectionLevel.CRITICAL if sustained else DetectionLevel.WARNING,
                "Command endpoints unreachable",
                sustained=sustained,
            )

        skew = abs(latest.clock_drift_estimate)
        level = _tier(skew, [(t.clock_skew_critical, DetectionLevel.CRITICAL), (t.clock_skew_warning, DetectionLevel.WARNING)])
        if level:
            add(EdgeCaseKind.CLOCK_SKEW, level, f"Clock drift estimate {latest.clock_drift_estimate:+.1f}s", latest.clock_drift_estimate)

        if latest.thermal_state is ThermalState.CRITICAL:
            add(EdgeCaseKind.THERMAL_THROTTLING, DetectionLevel.EMERGENCY, "Thermal state critical")
        elif latest.thermal_state is ThermalState.SERIOUS:
            add(EdgeCaseKind.THERMAL_THROTTLING, DetectionLevel.CRITICAL, "Thermal state serious")

        level = _tier(latest.disk_usage, [(t.disk_critical, DetectionLevel.CRITICAL), (t.disk_warning, DetectionLevel.WARNING)])
        if level:
            add(EdgeCaseKind.DISK_PRESSURE, level, f"Disk {latest.disk_usage:.0%} full", latest.disk_usage)

        if latest.descriptor_usage is not None:
            level = _tier(
                latest.descriptor_usage,
                [(t.descriptor_critical, DetectionLevel.CRITICAL), (t.descriptor_warning, DetectionLevel.WARNING)],
            )
            if level:
                add(
                    EdgeCaseKind.DESCRIPTOR_EXHAUSTION,
                    level,
                    f"File descriptors at {latest.descriptor_usage:.0%} of limit",
                    latest.descriptor_usage,
                )

        return detections

    async def run(self, on_sample: SampleHandler) -> None:
        while True:
            try:
                snapshot = await self.sample()
                await on_sample(snapshot, self.detect_edge_cases())
            except asyncio.CancelledError:
                raise
            except Exception:
                _logger.exception("Health sample failed")
            await self.clock.sleep(self.interval)
