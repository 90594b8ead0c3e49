from dataclasses import dataclass, field
from enum import IntEnum, StrEnum


class ThermalState(StrEnum):
    NOMINAL = "nominal"
    FAIR = "fair"
    SERIOUS = "serious"
    CRITICAL = "critical"


class DetectionLevel(IntEnum):
    MONITORING = 1
    WARNING = 2
    CRITICAL = 3
    EMERGENCY = 4

    def __str__(self) -> str:
        return self.name.lower()


class EdgeCaseKind(StrEnum):
    MEMORY_PRESSURE = "memory_pressure"
    MEMORY_LEAK = "memory_leak"
    BATTERY_LOW = "battery_low"
    NETWORK_UNREACHABLE = "network_unreachable"
    CLOCK_SKEW = "clock_skew"
    THERMAL_THROTTLING = "thermal_throttling"
    DISK_PRESSURE = "disk_pressure"
    DESCRIPTOR_EXHAUSTION = "descriptor_exhaustion"
    CPU_SATURATION = "cpu_saturation"


@dataclass(frozen=True)
class HealthSnapshot:
    taken_at: float
    memory_pressure: float = 0.0
    cpu_usage: float = 0.0
    battery_level: float | None = None
    power_plugged: bool | None = None
    is_low_power: bool = False
    network_reachable: bool | None = None
    clock_drift_estimate: float = 0.0
    thermal_state: ThermalState = ThermalState.NOMINAL
    disk_usage: float = 0.0
    descriptor_usage: float | None = None

    @property
    def on_battery(self) -> bool:
        return self.battery_level is not None and self.power_plugged is False


@dataclass(frozen=True)
class EdgeCaseDetection:
    kind: EdgeCaseKind
    level: DetectionLevel
    message: str
    detected_at: float
    value: float | None = None
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class HealthThresholds:
    memory_warning: float = 0.70
    memory_critical: float = 0.90
    memory_emergency: float = 0.97
    memory_growth: float = 0.10
    battery_warning: float = 0.20
    battery_critical: float = 0.05
    battery_emergency: float = 0.02
    clock_skew_warning: float = 5.0
    clock_skew_critical: float = 30.0
    disk_warning: float = 0.90
    disk_critical: float = 0.95
    descriptor_warning: float = 0.80
    descriptor_critical: float = 0.95
    cpu_saturation: float = 90.0
    sustained_samples: int = 3
