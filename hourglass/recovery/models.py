from dataclasses import dataclass, field
from enum import IntEnum, StrEnum


class ErrorCategory(StrEnum):
    POWER = "power"
    TIMING = "timing"
    RESOURCE = "resource"
    PROCESS = "process"
    PROCESS_TRANSIENT = "process_transient"
    NETWORK = "network"
    STATE = "state"
    UNKNOWN = "unknown"


class ErrorKind(StrEnum):
    # power
    BATTERY_CRITICAL = "battery_critical"
    FORCED_SLEEP = "forced_sleep"
    THERMAL_THROTTLING = "thermal_throttling"
    # timing
    DRIFT_EXCEEDED = "drift_exceeded"
    CLOCK_ADJUSTED = "clock_adjusted"
    # resource
    MEMORY_PRESSURE = "memory_pressure"
    DISK_PRESSURE = "disk_pressure"
    DESCRIPTOR_EXHAUSTION = "descriptor_exhaustion"
    # process
    COMMAND_NOT_FOUND = "command_not_found"
    PERMISSION_DENIED = "permission_denied"
    # process, transient
    COMMAND_FAILED = "command_failed"
    COMMAND_TIMEOUT = "command_timeout"
    CIRCUIT_OPEN = "circuit_open"
    # network
    NETWORK_UNREACHABLE = "network_unreachable"
    DNS_FAILURE = "dns_failure"
    # state
    STATE_DESYNC = "state_desync"
    PERSISTENCE_CORRUPTED = "persistence_corrupted"

    UNKNOWN = "unknown"

    @property
    def category(self) -> ErrorCategory:
        return CATEGORIES[self]


CATEGORIES: dict[ErrorKind, ErrorCategory] = {
    ErrorKind.BATTERY_CRITICAL: ErrorCategory.POWER,
    ErrorKind.FORCED_SLEEP: ErrorCategory.POWER,
    ErrorKind.THERMAL_THROTTLING: ErrorCategory.POWER,
    ErrorKind.DRIFT_EXCEEDED: ErrorCategory.TIMING,
    ErrorKind.CLOCK_ADJUSTED: ErrorCategory.TIMING,
    ErrorKind.MEMORY_PRESSURE: ErrorCategory.RESOURCE,
    ErrorKind.DISK_PRESSURE: ErrorCategory.RESOURCE,
    ErrorKind.DESCRIPTOR_EXHAUSTION: ErrorCategory.RESOURCE,
    ErrorKind.COMMAND_NOT_FOUND: ErrorCategory.PROCESS,
    ErrorKind.PERMISSION_DENIED: ErrorCategory.PROCESS,
    ErrorKind.COMMAND_FAILED: ErrorCategory.PROCESS_TRANSIENT,
    ErrorKind.COMMAND_TIMEOUT: ErrorCategory.PROCESS_TRANSIENT,
    ErrorKind.CIRCUIT_OPEN: ErrorCategory.PROCESS_TRANSIENT,
    ErrorKind.NETWORK_UNREACHABLE: ErrorCategory.NETWORK,
    ErrorKind.DNS_FAILURE: ErrorCategory.NETWORK,
    ErrorKind.STATE_DESYNC: ErrorCategory.STATE,
    ErrorKind.PERSISTENCE_CORRUPTED: ErrorCategory.STATE,
    ErrorKind.UNKNOWN: ErrorCategory.UNKNOWN,
}


class Severity(IntEnum):
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4

    def __str__(self) -> str:
        return self.name.lower()


class RecoveryAction(StrEnum):
    RETRY_COMMAND = "retry_command"
    PAUSE_SESSION = "pause_session"
    RECALIBRATE = "recalibrate"
    CLEANUP = "cleanup"
    THROTTLE = "throttle"
    ESCALATE = "escalate"
    RESET = "reset"


class RecoveryOutcome(StrEnum):
    RETRIED = "retried"
    ESCALATED = "escalated"
    FATAL = "fatal"


@dataclass(frozen=True)
class RecoveryPolicy:
    can_auto_recover: bool
    max_attempts: int
    action: RecoveryAction
    backoff: tuple[float, ...] = ()
    remediation: str | None = None

    def delay_for(self, attempt: int) -> float:
        if not self.backoff:
            return 0.0
        return self.backoff[min(attempt, len(self.backoff)) - 1]


_RETRY_BACKOFF = (1.0, 2.0, 4.0, 8.0, 16.0)

DEFAULT_POLICIES: dict[ErrorKind, RecoveryPolicy] = {
    ErrorKind.BATTERY_CRITICAL: RecoveryPolicy(True, 1, RecoveryAction.PAUSE_SESSION),
    ErrorKind.FORCED_SLEEP: RecoveryPolicy(True, 1, RecoveryAction.PAUSE_SESSION),
    ErrorKind.THERMAL_THROTTLING: RecoveryPolicy(True, 1, RecoveryAction.PAUSE_SESSION),
    ErrorKind.DRIFT_EXCEEDED: RecoveryPolicy(
        True, 3, RecoveryAction.RECALIBRATE, remediation="Check the system clock and NTP configuration"
    ),
    ErrorKind.CLOCK_ADJUSTED: RecoveryPolicy(True, 3, RecoveryAction.RECALIBRATE),
    ErrorKind.MEMORY_PRESSURE: RecoveryPolicy(
        True, 3, RecoveryAction.CLEANUP, remediation="Close memory-heavy applications"
    ),
    ErrorKind.DISK_PRESSURE: RecoveryPolicy(True, 3, RecoveryAction.CLEANUP, remediation="Free up disk space"),
    ErrorKind.DESCRIPTOR_EXHAUSTION: RecoveryPolicy(
        True, 3, RecoveryAction.CLEANUP, remediation="Raise the open file limit (ulimit -n)"
    ),
    ErrorKind.COMMAND_NOT_FOUND: RecoveryPolicy(
        False,
        0,
        RecoveryAction.ESCALATE,
        remediation="Install the command and make sure it is on PATH, or set HOURGLASS_COMMAND",
    ),
    ErrorKind.PERMISSION_DENIED: RecoveryPolicy(
        False, 0, RecoveryAction.ESCALATE, remediation="Make the command executable (chmod +x)"
    ),
    ErrorKind.COMMAND_FAILED: RecoveryPolicy(
        True, 5, RecoveryAction.RETRY_COMMAND, _RETRY_BACKOFF, remediation="Run the command manually to inspect its output"
    ),
    ErrorKind.COMMAND_TIMEOUT: RecoveryPolicy(
        True, 5, RecoveryAction.RETRY_COMMAND, _RETRY_BACKOFF, remediation="Increase HOURGLASS_COMMAND_TIMEOUT"
    ),
    ErrorKind.CIRCUIT_OPEN: RecoveryPolicy(
        False,
        0,
        RecoveryAction.ESCALATE,
        remediation="The command keeps failing; fix it and retry once the cooldown has passed",
    ),
    ErrorKind.NETWORK_UNREACHABLE: RecoveryPolicy(
        True, 5, RecoveryAction.RETRY_COMMAND, _RETRY_BACKOFF, remediation="Check your network connection"
    ),
    ErrorKind.DNS_FAILURE: RecoveryPolicy(
        True, 5, RecoveryAction.RETRY_COMMAND, _RETRY_BACKOFF, remediation="Check DNS settings"
    ),
    ErrorKind.STATE_DESYNC: RecoveryPolicy(False, 0, RecoveryAction.RESET, remediation="Start a new session"),
    ErrorKind.PERSISTENCE_CORRUPTED: RecoveryPolicy(
        False, 0, RecoveryAction.RESET, remediation="Check the state directory is writable"
    ),
    ErrorKind.UNKNOWN: RecoveryPolicy(False, 0, RecoveryAction.ESCALATE, remediation="See the diagnostics history"),
}

DEFAULT_SEVERITY: dict[ErrorCategory, Severity] = {
    ErrorCategory.POWER: Severity.MEDIUM,
    ErrorCategory.TIMING: Severity.LOW,
    ErrorCategory.RESOURCE: Severity.MEDIUM,
    ErrorCategory.PROCESS: Severity.HIGH,
    ErrorCategory.PROCESS_TRANSIENT: Severity.MEDIUM,
    ErrorCategory.NETWORK: Severity.MEDIUM,
    ErrorCategory.STATE: Severity.CRITICAL,
    ErrorCategory.UNKNOWN: Severity.HIGH,
}


@dataclass(frozen=True)
class ErrorContext:
    message: str
    component: str
    severity: Severity | None = None
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class ErrorEvent:
    kind: ErrorKind
    category: ErrorCategory
    severity: Severity
    message: str
    timestamp: float
    component: str
    attempt: int = 0
    metadata: dict = field(default_factory=dict)
    remediation: str | None = None
    outcome: RecoveryOutcome | None = None

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "category": self.category.value,
            "severity": str(self.severity),
            "message": self.message,
            "timestamp": self.timestamp,
            "component": self.component,
            "attempt": self.attempt,
            "metadata": self.metadata,
            "remediation": self.remediation,
            "outcome": self.outcome.value if self.outcome else None,
        }
