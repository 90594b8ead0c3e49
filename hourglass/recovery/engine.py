import dataclasses
import errno
from collections.abc import Sequence
from typing import Protocol

from hourglass import constants
from hourglass.channel import Channel
from hourglass.clock import Clock, SystemClock
from hourglass.events import ErrorRecorded, HealthWarning
from hourglass.health.models import DetectionLevel, EdgeCaseDetection, EdgeCaseKind, HealthSnapshot, HealthThresholds
from hourglass.logging import get_logger
from hourglass.persistence.store import PersistenceError
from hourglass.process.errors import (
    CircuitOpenError,
    CommandError,
    CommandFailedError,
    CommandNotFoundError,
    CommandPermissionError,
    CommandTimeoutError,
    NetworkError,
    ResourceExhaustedError,
)
from hourglass.recovery.history import ErrorHistory
from hourglass.recovery.models import (
    DEFAULT_POLICIES,
    DEFAULT_SEVERITY,
    ErrorCategory,
    ErrorContext,
    ErrorEvent,
    ErrorKind,
    RecoveryAction,
    RecoveryOutcome,
    RecoveryPolicy,
    Severity,
)
from hourglass.session.models import PauseReason
from hourglass.timing.controller import TimingFault

_logger = get_logger(__name__)

_ERRNO_KINDS = {
    errno.ENOENT: ErrorKind.COMMAND_NOT_FOUND,
    errno.EACCES: ErrorKind.PERMISSION_DENIED,
    errno.EPERM: ErrorKind.PERMISSION_DENIED,
    errno.EMFILE: ErrorKind.DESCRIPTOR_EXHAUSTION,
    errno.ENFILE: ErrorKind.DESCRIPTOR_EXHAUSTION,
    errno.ENOMEM: ErrorKind.MEMORY_PRESSURE,
    errno.ENOSPC: ErrorKind.DISK_PRESSURE,
}

_DETECTION_KINDS = {
    EdgeCaseKind.MEMORY_PRESSURE: ErrorKind.MEMORY_PRESSURE,
    EdgeCaseKind.MEMORY_LEAK: ErrorKind.MEMORY_PRESSURE,
    EdgeCaseKind.BATTERY_LOW: ErrorKind.BATTERY_CRITICAL,
    EdgeCaseKind.NETWORK_UNREACHABLE: ErrorKind.NETWORK_UNREACHABLE,
    EdgeCaseKind.CLOCK_SKEW: ErrorKind.CLOCK_ADJUSTED,
    EdgeCaseKind.THERMAL_THROTTLING: ErrorKind.THERMAL_THROTTLING,
    EdgeCaseKind.DISK_PRESSURE: ErrorKind.DISK_PRESSURE,
    EdgeCaseKind.DESCRIPTOR_EXHAUSTION: ErrorKind.DESCRIPTOR_EXHAUSTION,
    EdgeCaseKind.CPU_SATURATION: ErrorKind.THERMAL_THROTTLING,
}

_DETECTION_SEVERITY = {
    DetectionLevel.MONITORING: Severity.LOW,
    DetectionLevel.WARNING: Severity.MEDIUM,
    DetectionLevel.CRITICAL: Severity.HIGH,
    DetectionLevel.EMERGENCY: Severity.CRITICAL,
}

# Handled here only as warnings; the command path owns network retries
_ADVISORY_DETECTIONS = frozenset({EdgeCaseKind.NETWORK_UNREACHABLE, EdgeCaseKind.MEMORY_LEAK})

_POWER_DETECTIONS = frozenset({EdgeCaseKind.BATTERY_LOW, EdgeCaseKind.THERMAL_THROTTLING})


class RecoveryActions(Protocol):
    """What the engine may do to the session. Implemented by the state machine."""

    def retry_command(self, delay: float) -> None: ...

    def pause_session(self, reason: PauseReason) -> None: ...

    def resume_session(self) -> None: ...

    def recalibrate(self) -> None: ...

    def cleanup(self) -> None: ...

    def throttle(self, enabled: bool) -> None: ...

    def set_low_power(self, enabled: bool) -> None: ...

    def escalate(self, message: str, remediation: str | None) -> None: ...

    def reset_session(self, message: str, remediation: str | None) -> None: ...


class ErrorRecoveryEngine:
    def __init__(
        self,
        *,
        channel: Channel | None = None,
        clock: Clock | None = None,
        policies: dict[ErrorKind, RecoveryPolicy] | None = None,
        history_size: int = constants.ERROR_HISTORY_SIZE,
        thresholds: HealthThresholds | None = None,
    ):
        self.channel = channel
        self.clock = clock or SystemClock()
        self.policies = {**DEFAULT_POLICIES, **(policies or {})}
        self.history = ErrorHistory(history_size)
        self.thresholds = thresholds or HealthThresholds()
        self.actions: RecoveryActions | None = None
        self._attempts: dict[ErrorKind, int] = {}
        self._active_conditions: set[EdgeCaseKind] = set()
        self._escalated_conditions: set[EdgeCaseKind] = set()
        self._throttled = False
        self._low_power = False
        self._power_paused = False

    def bind(self, actions: RecoveryActions) -> None:
        self.actions = actions

    def attempts(self, kind: ErrorKind) -> int:
        return self._attempts.get(kind, 0)

    def classify(self, raw: BaseException | EdgeCaseDetection) -> tuple[ErrorKind, Severity]:
        kind = self._kind_for(raw)
        if isinstance(raw, EdgeCaseDetection):
            return kind, _DETECTION_SEVERITY[raw.level]
        return kind, DEFAULT_SEVERITY[kind.category]

    def _kind_for(self, raw: BaseException | EdgeCaseDetection) -> ErrorKind:
        match raw:
            case EdgeCaseDetection(kind=kind):
                return _DETECTION_KINDS[kind]
            case TimingFault(kind=kind):
                return kind
            case CommandNotFoundError():
                return ErrorKind.COMMAND_NOT_FOUND
            case CommandPermissionError():
                return ErrorKind.PERMISSION_DENIED
            case CommandTimeoutError():
                return ErrorKind.COMMAND_TIMEOUT
            case CircuitOpenError():
                return ErrorKind.CIRCUIT_OPEN
            case NetworkError():
                lowered = str(raw).lower()
                if "resolve" in lowered or "dns" in lowered or "name resolution" in lowered:
                    return ErrorKind.DNS_FAILURE
                return ErrorKind.NETWORK_UNREACHABLE
            case ResourceExhaustedError():
                cause = raw.__cause__
                if isinstance(cause, OSError) and cause.errno in _ERRNO_KINDS:
                    return _ERRNO_KINDS[cause.errno]
                return ErrorKind.DESCRIPTOR_EXHAUSTION
            case CommandFailedError() | CommandError():
                return ErrorKind.COMMAND_FAILED
            case PersistenceError():
                cause = raw.__cause__
                if isinstance(cause, OSError) and cause.errno == errno.ENOSPC:
                    return ErrorKind.DISK_PRESSURE
                return ErrorKind.PERSISTENCE_CORRUPTED
            case OSError() if raw.errno in _ERRNO_KINDS:
                return _ERRNO_KINDS[raw.errno]
        return ErrorKind.UNKNOWN

    def handle(self, kind: ErrorKind, context: ErrorContext) -> RecoveryOutcome:
        """Apply the kind's policy and record the error, recovered or not."""
        policy = self.policies[kind]
        attempt = self._attempts.get(kind, 0) + 1
        event = ErrorEvent(
            kind=kind,
            category=kind.category,
            severity=context.severity or DEFAULT_SEVERITY[kind.category],
            message=context.message,
            timestamp=self.clock.time(),
            component=context.component,
            attempt=attempt,
            metadata=dict(context.metadata),
            remediation=policy.remediation,
        )

        if kind.category is ErrorCategory.STATE:
            outcome = RecoveryOutcome.FATAL
            self._attempts.pop(kind, None)
            if self.actions:
                self.actions.reset_session(context.message, policy.remediation)
        elif policy.can_auto_recover and attempt <= policy.max_attempts:
            outcome = RecoveryOutcome.RETRIED
            self._attempts[kind] = attempt
            self._apply(policy, attempt)
        else:
            outcome = RecoveryOutcome.ESCALATED
            self._attempts.pop(kind, None)
            if self.actions:
                self.actions.escalate(context.message, policy.remediation)

        self._record(dataclasses.replace(event, outcome=outcome))
        return outcome

    def handle_exception(self, exc: BaseException, component: str, **metadata) -> RecoveryOutcome:
        return self.handle(*self._context_for(exc, component, metadata))

    def record_escalation(self, exc: BaseException, component: str, **metadata) -> ErrorEvent:
        """Record a failure the caller escalates itself, without running its policy."""
        kind, context = self._context_for(exc, component, metadata)
        event = ErrorEvent(
            kind=kind,
            category=kind.category,
            severity=context.severity,
            message=context.message,
            timestamp=self.clock.time(),
            component=component,
            metadata=dict(metadata),
            remediation=self.policies[kind].remediation,
            outcome=RecoveryOutcome.ESCALATED,
        )
        self._record(event)
        return event

    def _context_for(self, exc: BaseException, component: str, metadata: dict) -> tuple[ErrorKind, ErrorContext]:
        kind, severity = self.classify(exc)
        context = ErrorContext(
            message=str(exc) or type(exc).__name__,
            component=component,
            severity=severity,
            metadata=metadata,
        )
        return kind, context

    def _record(self, event: ErrorEvent) -> None:
        self.history.append(event)
        log = _logger.warning if event.outcome is RecoveryOutcome.RETRIED else _logger.error
        log(
            "%s from %s (attempt %d): %s -> %s",
            event.kind,
            event.component,
            event.attempt,
            event.message,
            event.outcome,
        )
        if self.channel:
            self.channel.publish(ErrorRecorded(error=event))

    def record_success(self, category: ErrorCategory) -> None:
        for kind in [k for k in self._attempts if k.category is category]:
            del self._attempts[kind]

    def reset(self) -> None:
        self._attempts.clear()
        self._active_conditions.clear()
        self._escalated_conditions.clear()
        self._power_paused = False

    def assess(self, history: Sequence[HealthSnapshot], detections: Sequence[EdgeCaseDetection]) -> None:
        """Act on health trends before they turn into command failures."""
        if not history:
            return
        t = self.thresholds

        window = list(history)[-t.sustained_samples :]
        sustained_pressure = len(window) >= t.sustained_samples and all(
            s.memory_pressure >= t.memory_warning for s in window
        )
        if sustained_pressure != self._throttled:
            self._throttled = sustained_pressure
            if self.actions:
                self.actions.throttle(sustained_pressure)
            if sustained_pressure:
                self._warn("memory_pressure", DetectionLevel.WARNING, "Sustained memory pressure, throttling tick cadence")
            else:
                _logger.info("Memory pressure recovered, cadence restored")

        latest = window[-1]
        low_power = latest.is_low_power or any(d.kind is EdgeCaseKind.BATTERY_LOW for d in detections)
        if low_power != self._low_power:
            self._low_power = low_power
            if self.actions:
                self.actions.set_low_power(low_power)

        current: set[EdgeCaseKind] = set()
        for detection in detections:
            if detection.level >= DetectionLevel.WARNING:
                current.add(detection.kind)
                if detection.kind not in self._active_conditions:
                    self._warn(detection.kind.value, detection.level, detection.message, detection.metadata)
            if detection.level < DetectionLevel.CRITICAL or detection.kind in _ADVISORY_DETECTIONS:
                continue
            kind, severity = self.classify(detection)
            if detection.kind in self._escalated_conditions:
                continue
            # Resource pressure that cleanup did not relieve keeps counting until it escalates
            if detection.kind in self._active_conditions and kind.category is not ErrorCategory.RESOURCE:
                continue
            outcome = self.handle(
                kind,
                ErrorContext(
                    message=detection.message,
                    component="health",
                    severity=severity,
                    metadata={"level": str(detection.level), "value": detection.value},
                ),
            )
            if detection.kind in _POWER_DETECTIONS and outcome is RecoveryOutcome.RETRIED:
                self._power_paused = True
            elif outcome is RecoveryOutcome.ESCALATED:
                self._escalated_conditions.add(detection.kind)

        for cleared in self._active_conditions - current:
            kind = _DETECTION_KINDS[cleared]
            self.record_success(kind.category)
            _logger.info("Health condition %s cleared", cleared)
        self._active_conditions = current
        self._escalated_conditions &= current

        if self._power_paused and not current & _POWER_DETECTIONS:
            self._power_paused = False
            _logger.info("Power condition recovered, resuming session")
            if self.actions:
                self.actions.resume_session()

    def _apply(self, policy: RecoveryPolicy, attempt: int) -> None:
        if self.actions is None:
            return
        match policy.action:
            case RecoveryAction.RETRY_COMMAND:
                self.actions.retry_command(policy.delay_for(attempt))
            case RecoveryAction.PAUSE_SESSION:
                self.actions.pause_session(PauseReason.POWER)
            case RecoveryAction.RECALIBRATE:
                self.actions.recalibrate()
            case RecoveryAction.CLEANUP:
                self.actions.cleanup()
            case RecoveryAction.THROTTLE:
                self.actions.throttle(True)
            case RecoveryAction.ESCALATE | RecoveryAction.RESET:
                raise ValueError(f"{policy.action} is not an auto-recovery action")

    def _warn(self, kind: str, level: DetectionLevel, message: str, metadata: dict | None = None) -> None:
        _logger.warning("Health %s (%s): %s", kind, level, message)
        if self.channel:
            self.channel.publish(
                HealthWarning(kind=kind, severity=str(level), message=message, metadata=dict(metadata or {}))
            )
