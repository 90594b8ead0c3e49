import asyncio
import contextlib
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Protocol

import psutil

from hourglass import constants
from hourglass.clock import Clock, SystemClock
from hourglass.health.models import HealthSnapshot, ThermalState
from hourglass.logging import get_logger

_logger = get_logger(__name__)

LOW_POWER_BATTERY_LEVEL = 0.20


class HealthProbe(Protocol):
    async def sample(self) -> HealthSnapshot: ...


def _battery() -> tuple[float | None, bool | None]:
    sensors_battery = getattr(psutil, "sensors_battery", None)
    if sensors_battery is None:
        return None, None
    try:
        battery = sensors_battery()
    except (OSError, RuntimeError):
        return None, None
    if battery is None:
        return None, None
    return battery.percent / 100, battery.power_plugged


def _thermal_state() -> ThermalState:
    sensors_temperatures = getattr(psutil, "sensors_temperatures", None)
    if sensors_temperatures is None:
        return ThermalState.NOMINAL
    try:
        readings = sensors_temperatures()
    except (OSError, RuntimeError):
        return ThermalState.NOMINAL

    state = ThermalState.NOMINAL
    rank = list(ThermalState)
    for entries in readings.values():
        for entry in entries:
            if entry.critical and entry.current >= entry.critical:
                current = ThermalState.CRITICAL
            elif entry.high and entry.current >= entry.high:
                current = ThermalState.SERIOUS
            elif entry.high and entry.current >= entry.high - 10:
                current = ThermalState.FAIR
            else:
                continue
            if rank.index(current) > rank.index(state):
                state = current
    return state


def _descriptor_usage() -> float | None:
    if sys.platform == "win32":
        return None
    import resource

    soft, _ = resource.getrlimit(resource.RLIMIT_NOFILE)
    if soft <= 0 or soft == resource.RLIM_INFINITY:
        return None
    try:
        return psutil.Process().num_fds() / soft
    except psutil.Error:
        return None


async def check_reachable(endpoints: Sequence[str], timeout: float) -> bool | None:
    """True if any endpoint accepts a TCP connection, None when none configured."""
    if not endpoints:
        return None
    for endpoint in endpoints:
        host, _, port = endpoint.rpartition(":")
        try:
            _, writer = await asyncio.wait_for(asyncio.open_connection(host, int(port)), timeout=timeout)
        except (OSError, TimeoutError):
            continue
        writer.close()
        with contextlib.suppress(OSError):
            await writer.wait_closed()
        return True
    return False


class SystemProbe:
    """Reads host health through psutil plus a TCP reachability check."""

    def __init__(
        self,
        *,
        endpoints: Sequence[str] = (),
        network_timeout: float = constants.NETWORK_PROBE_TIMEOUT,
        disk_path: Path | None = None,
        clock: Clock | None = None,
    ):
        self.endpoints = list(endpoints)
        self.network_timeout = network_timeout
        self.disk_path = disk_path or Path.home()
        self.clock = clock or SystemClock()

    async def sample(self) -> HealthSnapshot:
        snapshot = await asyncio.to_thread(self._collect_local)
        reachable = await check_reachable(self.endpoints, self.network_timeout)
        return HealthSnapshot(**snapshot, network_reachable=reachable)

    def _collect_local(self) -> dict:
        battery_level, plugged = _battery()
        try:
            disk = psutil.disk_usage(str(self.disk_path)).percent / 100
        except OSError:
            _logger.warning("Disk usage unavailable for %s", self.disk_path)
            disk = 0.0
        return {
            "taken_at": self.clock.time(),
            "memory_pressure": psutil.virtual_memory().percent / 100,
            "cpu_usage": psutil.cpu_percent(interval=None),
            "battery_level": battery_level,
            "power_plugged": plugged,
            "is_low_power": battery_level is not None
            and plugged is False
            and battery_level <= LOW_POWER_BATTERY_LEVEL,
            "thermal_state": _thermal_state(),
            "disk_usage": disk,
            "descriptor_usage": _descriptor_usage(),
        }
