import errno
from unittest.mock import MagicMock

import pytest

from hourglass.channel import Channel
from hourglass.events import ErrorRecorded, HealthWarning
from hourglass.health.models import DetectionLevel, EdgeCaseDetection, EdgeCaseKind, HealthSnapshot
from hourglass.persistence.store import PersistenceError
from hourglass.process.errors import (
    CircuitOpenError,
    CommandFailedError,
    CommandNotFoundError,
    CommandTimeoutError,
    NetworkError,
    ResourceExhaustedError,
)
from hourglass.recovery.engine import ErrorRecoveryEngine
from hourglass.recovery.models import (
    ErrorCategory,
    ErrorContext,
    ErrorKind,
    RecoveryAction,
    RecoveryOutcome,
    RecoveryPolicy,
    Severity,
)
from hourglass.session.models import PauseReason
from hourglass.timing.controller import TimingFault
from tests.conftest import T0, EventLog, ManualClock


@pytest.fixture
def actions():
    return MagicMock()


@pytest.fixture
def recovery(actions):
    engine = ErrorRecoveryEngine(clock=ManualClock())
    engine.bind(actions)
    return engine


def detection(kind: EdgeCaseKind, level: DetectionLevel, value: float | None = None) -> EdgeCaseDetection:
    return EdgeCaseDetection(kind=kind, level=level, message=f"{kind} {level}", detected_at=T0, value=value)


def context(message: str = "boom") -> ErrorContext:
    return ErrorContext(message=message, component="test")


class TestClassify:
    @pytest.mark.parametrize(
        "raw, kind",
        [
            (CommandNotFoundError("Command not found: claude"), ErrorKind.COMMAND_NOT_FOUND),
            (CommandFailedError("Exit code 1: x", exit_code=1), ErrorKind.COMMAND_FAILED),
            (CommandTimeoutError("Command timed out after 300s"), ErrorKind.COMMAND_TIMEOUT),
            (CircuitOpenError("Circuit breaker open"), ErrorKind.CIRCUIT_OPEN),
            (NetworkError("Network error (exit 6): could not resolve host"), ErrorKind.DNS_FAILURE),
            (NetworkError("Network error (exit 7): connection refused"), ErrorKind.NETWORK_UNREACHABLE),
            (TimingFault(ErrorKind.DRIFT_EXCEEDED, "4 consecutive recalibrations"), ErrorKind.DRIFT_EXCEEDED),
            (OSError(errno.EMFILE, "Too many open files"), ErrorKind.DESCRIPTOR_EXHAUSTION),
            (PersistenceError("cannot write"), ErrorKind.PERSISTENCE_CORRUPTED),
            (ValueError("surprise"), ErrorKind.UNKNOWN),
        ],
    )
    def test_exceptions(self, recovery, raw, kind):
        assert recovery.classify(raw)[0] is kind

    def test_resource_error_uses_underlying_errno(self, recovery):
        try:
            try:
                raise OSError(errno.ENOMEM, "Cannot allocate memory")
            except OSError as e:
                raise ResourceExhaustedError("Cannot spawn claude") from e
        except ResourceExhaustedError as exc:
            assert recovery.classify(exc)[0] is ErrorKind.MEMORY_PRESSURE

    def test_full_disk_persistence_error(self, recovery):
        error = PersistenceError("write failed")
        error.__cause__ = OSError(errno.ENOSPC, "No space left on device")
        assert recovery.classify(error)[0] is ErrorKind.DISK_PRESSURE

    def test_severity_defaults_by_category(self, recovery):
        assert recovery.classify(CommandNotFoundError("x"))[1] is Severity.HIGH
        assert recovery.classify(CommandFailedError("x"))[1] is Severity.MEDIUM

    def test_detection_severity_follows_level(self, recovery):
        kind, severity = recovery.classify(detection(EdgeCaseKind.BATTERY_LOW, DetectionLevel.EMERGENCY))
        assert kind is ErrorKind.BATTERY_CRITICAL
        assert severity is Severity.CRITICAL

    def test_every_kind_has_a_policy_and_category(self):
        engine = ErrorRecoveryEngine()
        for kind in ErrorKind:
            assert kind in engine.policies
            assert isinstance(kind.category, ErrorCategory)


class TestHandle:
    def test_transient_failure_retries_with_backoff(self, recovery, actions):
        delays = []
        actions.retry_command.side_effect = delays.append
        outcomes = [recovery.handle(ErrorKind.COMMAND_FAILED, context()) for _ in range(6)]

        assert outcomes == [RecoveryOutcome.RETRIED] * 5 + [RecoveryOutcome.ESCALATED]
        assert delays == [1.0, 2.0, 4.0, 8.0, 16.0]
        actions.escalate.assert_called_once()

    def test_escalation_resets_attempt_count(self, recovery):
        for _ in range(6):
            recovery.handle(ErrorKind.COMMAND_FAILED, context())
        assert recovery.attempts(ErrorKind.COMMAND_FAILED) == 0

    def test_non_recoverable_escalates_with_remediation(self, recovery, actions):
        outcome = recovery.handle(ErrorKind.PERMISSION_DENIED, context("Permission denied: claude"))
        assert outcome is RecoveryOutcome.ESCALATED
        message, remediation = actions.escalate.call_args.args
        assert message == "Permission denied: claude"
        assert "chmod" in remediation

    def test_state_errors_are_fatal(self, recovery, actions):
        outcome = recovery.handle(ErrorKind.STATE_DESYNC, context("timer not armed"))
        assert outcome is RecoveryOutcome.FATAL
        actions.reset_session.assert_called_once_with("timer not armed", "Start a new session")
        actions.escalate.assert_not_called()

    @pytest.mark.parametrize(
        "kind, action",
        [
            (ErrorKind.DRIFT_EXCEEDED, "recalibrate"),
            (ErrorKind.MEMORY_PRESSURE, "cleanup"),
            (ErrorKind.DISK_PRESSURE, "cleanup"),
        ],
    )
    def test_policy_actions(self, recovery, actions, kind, action):
        recovery.handle(kind, context())
        getattr(actions, action).assert_called_once()

    def test_power_policy_pauses_for_power(self, recovery, actions):
        recovery.handle(ErrorKind.BATTERY_CRITICAL, context())
        actions.pause_session.assert_called_once_with(PauseReason.POWER)

    def test_success_clears_category_attempts(self, recovery):
        recovery.handle(ErrorKind.COMMAND_FAILED, context())
        recovery.handle(ErrorKind.COMMAND_TIMEOUT, context())
        recovery.handle(ErrorKind.DNS_FAILURE, context())

        recovery.record_success(ErrorCategory.PROCESS_TRANSIENT)

        assert recovery.attempts(ErrorKind.COMMAND_FAILED) == 0
        assert recovery.attempts(ErrorKind.COMMAND_TIMEOUT) == 0
        assert recovery.attempts(ErrorKind.DNS_FAILURE) == 1

    def test_custom_policy_overrides_default(self, actions):
        recovery = ErrorRecoveryEngine(
            policies={ErrorKind.COMMAND_FAILED: RecoveryPolicy(True, 1, RecoveryAction.RETRY_COMMAND, (30.0,))}
        )
        recovery.bind(actions)
        assert recovery.handle(ErrorKind.COMMAND_FAILED, context()) is RecoveryOutcome.RETRIED
        actions.retry_command.assert_called_once_with(30.0)
        assert recovery.handle(ErrorKind.COMMAND_FAILED, context()) is RecoveryOutcome.ESCALATED

    def test_unbound_engine_still_records(self):
        recovery = ErrorRecoveryEngine()
        recovery.handle(ErrorKind.COMMAND_NOT_FOUND, context())
        assert len(recovery.history) == 1


class TestHistory:
    def test_every_error_is_recorded(self, recovery):
        recovery.handle_exception(CommandFailedError("Exit code 1: x", exit_code=1), "executor", session_id="abc")
        recovery.handle_exception(CommandNotFoundError("Command not found: claude"), "executor")

        recent = recovery.history.recent()
        assert [e.kind for e in recent] == [ErrorKind.COMMAND_NOT_FOUND, ErrorKind.COMMAND_FAILED]
        assert recent[1].metadata == {"session_id": "abc"}
        assert recent[1].outcome is RecoveryOutcome.RETRIED

    def test_summary_counts_categories_and_recoveries(self, recovery):
        recovery.handle(ErrorKind.COMMAND_FAILED, context())
        recovery.handle(ErrorKind.COMMAND_NOT_FOUND, context())
        summary = recovery.history.summary()
        assert summary["process_transient"] == 1
        assert summary["process"] == 1
        assert summary["recovered"] == 1
        assert [e.kind for e in recovery.history.by_category(ErrorCategory.PROCESS)] == [ErrorKind.COMMAND_NOT_FOUND]

    def test_history_is_bounded(self):
        recovery = ErrorRecoveryEngine(history_size=3)
        for _ in range(5):
            recovery.handle(ErrorKind.CLOCK_ADJUSTED, context())
        assert len(recovery.history) == 3

    def test_record_escalation_skips_policy(self, recovery, actions):
        event = recovery.record_escalation(CommandFailedError("Exit code 1: x", exit_code=1), "executor")
        assert event.outcome is RecoveryOutcome.ESCALATED
        actions.retry_command.assert_not_called()
        actions.escalate.assert_not_called()

    @pytest.mark.asyncio
    async def test_errors_are_published(self):
        channel = Channel()
        log = EventLog(channel, ErrorRecorded)
        recovery = ErrorRecoveryEngine(channel=channel)
        recovery.handle(ErrorKind.COMMAND_TIMEOUT, context())
        await channel.drain()
        assert log.of(ErrorRecorded)[0].error.kind is ErrorKind.COMMAND_TIMEOUT


class TestAssess:
    def snapshots(self, *pressures: float) -> list[HealthSnapshot]:
        return [HealthSnapshot(taken_at=T0 + i, memory_pressure=p) for i, p in enumerate(pressures)]

    def test_sustained_pressure_throttles_then_releases(self, recovery, actions):
        recovery.assess(self.snapshots(0.8, 0.8), [])
        actions.throttle.assert_not_called()

        recovery.assess(self.snapshots(0.8, 0.8, 0.8), [])
        actions.throttle.assert_called_once_with(True)

        recovery.assess(self.snapshots(0.8, 0.8, 0.8, 0.5), [])
        actions.throttle.assert_called_with(False)

    def test_critical_detection_handled_once_while_active(self, recovery, actions):
        skew = detection(EdgeCaseKind.CLOCK_SKEW, DetectionLevel.CRITICAL, 45.0)
        history = self.snapshots(0.1)
        for _ in range(3):
            recovery.assess(history, [skew])
        assert actions.recalibrate.call_count == 1
        assert len(recovery.history) == 1

    def test_sustained_memory_pressure_escalates(self, recovery, actions):
        memory = detection(EdgeCaseKind.MEMORY_PRESSURE, DetectionLevel.CRITICAL, 0.95)
        history = self.snapshots(0.95)
        for _ in range(6):
            recovery.assess(history, [memory])

        assert actions.cleanup.call_count == 3
        actions.escalate.assert_called_once()
        _, remediation = actions.escalate.call_args.args
        assert remediation == "Close memory-heavy applications"
        outcomes = [e.outcome for e in recovery.history]
        assert outcomes == [RecoveryOutcome.RETRIED] * 3 + [RecoveryOutcome.ESCALATED]

    def test_escalated_resource_condition_rearms_after_clearing(self, recovery, actions):
        disk = detection(EdgeCaseKind.DISK_PRESSURE, DetectionLevel.EMERGENCY, 0.99)
        for _ in range(4):
            recovery.assess(self.snapshots(0.1), [disk])
        actions.escalate.assert_called_once()

        recovery.assess(self.snapshots(0.1), [])
        recovery.assess(self.snapshots(0.1), [disk])

        assert actions.cleanup.call_count == 4
        assert recovery.attempts(ErrorKind.DISK_PRESSURE) == 1

    def test_condition_can_fire_again_after_clearing(self, recovery, actions):
        memory = detection(EdgeCaseKind.MEMORY_PRESSURE, DetectionLevel.CRITICAL, 0.93)
        recovery.assess(self.snapshots(0.93), [memory])
        recovery.assess(self.snapshots(0.5), [])
        recovery.assess(self.snapshots(0.93), [memory])
        assert actions.cleanup.call_count == 2
        # Clearing resets the attempt count
        assert recovery.attempts(ErrorKind.MEMORY_PRESSURE) == 1

    def test_warnings_do_not_trigger_recovery(self, recovery, actions):
        disk = detection(EdgeCaseKind.DISK_PRESSURE, DetectionLevel.WARNING, 0.91)
        recovery.assess(self.snapshots(0.1), [disk])
        actions.cleanup.assert_not_called()
        assert len(recovery.history) == 0

    def test_network_detection_is_advisory(self, recovery, actions):
        network = detection(EdgeCaseKind.NETWORK_UNREACHABLE, DetectionLevel.CRITICAL)
        recovery.assess(self.snapshots(0.1), [network])
        assert len(recovery.history) == 0
        actions.retry_command.assert_not_called()

    def test_low_power_follows_snapshot(self, recovery, actions):
        on_battery = HealthSnapshot(taken_at=T0, battery_level=0.15, power_plugged=False, is_low_power=True)
        recovery.assess([on_battery], [])
        actions.set_low_power.assert_called_once_with(True)
        recovery.assess([on_battery], [])
        actions.set_low_power.assert_called_once()

    def test_power_pause_resumes_when_condition_clears(self, recovery, actions):
        battery = detection(EdgeCaseKind.BATTERY_LOW, DetectionLevel.CRITICAL, 0.04)
        snapshot = HealthSnapshot(taken_at=T0, battery_level=0.04, power_plugged=False)
        recovery.assess([snapshot], [battery])
        actions.pause_session.assert_called_once_with(PauseReason.POWER)

        recovery.assess([snapshot], [battery])
        actions.resume_session.assert_not_called()

        plugged = HealthSnapshot(taken_at=T0 + 15, battery_level=0.05, power_plugged=True)
        recovery.assess([plugged], [])
        actions.resume_session.assert_called_once()

    @pytest.mark.asyncio
    async def test_rising_edge_publishes_health_warning(self):
        channel = Channel()
        log = EventLog(channel, HealthWarning)
        recovery = ErrorRecoveryEngine(channel=channel)
        skew = detection(EdgeCaseKind.CLOCK_SKEW, DetectionLevel.WARNING, 7.0)
        history = [HealthSnapshot(taken_at=T0)]
        recovery.assess(history, [skew])
        recovery.assess(history, [skew])
        await channel.drain()
        assert [w.kind for w in log.of(HealthWarning)] == ["clock_skew"]

    def test_empty_history_is_ignored(self, recovery, actions):
        recovery.assess([], [detection(EdgeCaseKind.MEMORY_PRESSURE, DetectionLevel.EMERGENCY)])
        assert actions.method_calls == []
