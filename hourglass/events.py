from dataclasses import dataclass, field

from hourglass.process.executor import AttemptRecord
from hourglass.recovery.models import ErrorEvent
from hourglass.session.models import CommandOutcome, PauseReason, SessionState


@dataclass(frozen=True)
class EngineStatus:
    """Observable state of the engine, published on every change."""

    state: SessionState
    progress: float = 0.0
    time_remaining: float = 0.0
    elapsed: float = 0.0
    session_id: str | None = None
    last_error: str | None = None
    remediation: str | None = None
    retry_attempt: int = 0
    command_count: int = 0
    drift: float = 0.0
    low_power: bool = False


@dataclass(frozen=True)
class StateChanged:
    source: SessionState
    target: SessionState
    reason: str = ""


@dataclass(frozen=True)
class StatusChanged:
    status: EngineStatus


@dataclass(frozen=True)
class OperationRejected:
    operation: str
    state: SessionState
    reason: str


@dataclass(frozen=True)
class SessionStarted:
    session_id: str
    target_duration: float
    restored: bool = False


@dataclass(frozen=True)
class SessionPaused:
    session_id: str
    reason: PauseReason
    elapsed: float


@dataclass(frozen=True)
class SessionCompleted:
    session_id: str
    elapsed: float
    command_count: int


@dataclass(frozen=True)
class SessionFailed:
    session_id: str | None
    message: str
    remediation: str | None = None


@dataclass(frozen=True)
class CommandExecuted:
    session_id: str
    outcome: CommandOutcome
    attempts: int = 1


@dataclass(frozen=True)
class ErrorRecorded:
    error: ErrorEvent


@dataclass(frozen=True)
class HealthWarning:
    kind: str
    severity: str
    message: str
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class CommandAttempted:
    session_id: str | None
    record: AttemptRecord
