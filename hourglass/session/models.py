from dataclasses import asdict, dataclass, field
from enum import StrEnum
from uuid import uuid4


class SessionState(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"
    RECOVERING = "recovering"
    BACKGROUNDED = "backgrounded"  # system asleep mid-session

    @property
    def is_live(self) -> bool:
        """A session exists and a new one may not be started."""
        return self in LIVE_STATES


class AutoRestart(StrEnum):
    """What happens after a session completes."""

    OFF = "off"  # back to idle after the display delay
    AFTER_DELAY = "after_delay"  # new session after the display delay
    IMMEDIATE = "immediate"  # new session right away


class PauseReason(StrEnum):
    USER = "user"
    POWER = "power"
    SLEEP = "sleep"
    ERROR = "error"


TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.IDLE: frozenset({SessionState.RUNNING, SessionState.ERROR}),
    SessionState.RUNNING: frozenset(
        {SessionState.PAUSED, SessionState.COMPLETED, SessionState.ERROR, SessionState.BACKGROUNDED}
    ),
    SessionState.PAUSED: frozenset({SessionState.RUNNING, SessionState.IDLE, SessionState.ERROR}),
    SessionState.COMPLETED: frozenset({SessionState.IDLE, SessionState.RUNNING, SessionState.ERROR}),
    SessionState.ERROR: frozenset({SessionState.IDLE, SessionState.RUNNING, SessionState.RECOVERING}),
    SessionState.RECOVERING: frozenset({SessionState.RUNNING, SessionState.ERROR}),
    SessionState.BACKGROUNDED: frozenset({SessionState.RUNNING, SessionState.PAUSED, SessionState.ERROR}),
}

LIVE_STATES = frozenset(
    {SessionState.RUNNING, SessionState.PAUSED, SessionState.BACKGROUNDED, SessionState.RECOVERING}
)


def is_legal(source: SessionState, target: SessionState) -> bool:
    return target in TRANSITIONS[source]


@dataclass(frozen=True)
class CommandOutcome:
    ok: bool
    exit_code: int | None
    duration: float
    finished_at: float
    output: str = ""
    error: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "CommandOutcome":
        return cls(
            ok=bool(data["ok"]),
            exit_code=data.get("exit_code"),
            duration=float(data["duration"]),
            finished_at=float(data["finished_at"]),
            output=data.get("output", ""),
            error=data.get("error"),
        )


@dataclass
class SessionData:
    session_start_time: float
    target_duration: float
    created_at: float
    updated_at: float
    session_id: str = field(default_factory=lambda: uuid4().hex)
    state: SessionState = SessionState.RUNNING
    accumulated_paused_duration: float = 0.0
    paused_since: float | None = None
    elapsed_seconds: float = 0.0
    progress: float = 0.0
    command_count: int = 0
    last_command_at: float | None = None
    last_command_result: CommandOutcome | None = None

    def __post_init__(self):
        self.state = SessionState(self.state) if isinstance(self.state, str) else self.state
        if isinstance(self.last_command_result, dict):
            self.last_command_result = CommandOutcome.from_dict(self.last_command_result)
        if self.target_duration <= 0:
            raise ValueError(f"target_duration must be positive, got {self.target_duration}")

    @classmethod
    def new(cls, now: float, target_duration: float) -> "SessionData":
        return cls(
            session_start_time=now,
            target_duration=target_duration,
            created_at=now,
            updated_at=now,
        )

    @property
    def time_remaining(self) -> float:
        return max(0.0, self.target_duration - self.elapsed_seconds)

    def update_elapsed(self, elapsed: float) -> None:
        self.elapsed_seconds = max(0.0, elapsed)
        self.progress = min(1.0, self.elapsed_seconds / self.target_duration)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["state"] = self.state.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "SessionData":
        return cls(**data)
