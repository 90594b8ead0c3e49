import asyncio
import gc
from collections.abc import Callable
from dataclasses import dataclass
from functools import partial

from hourglass import constants
from hourglass.channel import Channel, Handler
from hourglass.clock import Clock
from hourglass.config import Config
from hourglass.events import (
    CommandAttempted,
    CommandExecuted,
    EngineStatus,
    OperationRejected,
    SessionCompleted,
    SessionFailed,
    SessionPaused,
    SessionStarted,
    StateChanged,
    StatusChanged,
)
from hourglass.health.models import EdgeCaseDetection, HealthSnapshot
from hourglass.health.monitor import HealthMonitor
from hourglass.logging import bind_session, get_logger
from hourglass.persistence.store import PersistenceError, PersistenceStore
from hourglass.process.errors import CommandError
from hourglass.process.executor import AttemptRecord, CommandResult, ProcessExecutor
from hourglass.recovery.engine import ErrorRecoveryEngine
from hourglass.recovery.models import ErrorCategory, ErrorContext, ErrorKind
from hourglass.session.models import (
    AutoRestart,
    CommandOutcome,
    PauseReason,
    SessionData,
    SessionState,
    is_legal,
)
from hourglass.timing.controller import TimingController

_logger = get_logger(__name__)

type Operation = Callable[[], None]


@dataclass(frozen=True)
class SessionSettings:
    command: str
    command_args: tuple[str, ...] = ()
    command_timeout: float = constants.COMMAND_TIMEOUT
    target_duration: float = constants.DEFAULT_TARGET_DURATION
    auto_restart: AutoRestart = AutoRestart.OFF
    completion_display_delay: float = constants.COMPLETION_DISPLAY_DELAY
    autosave_interval: float = constants.AUTOSAVE_INTERVAL

    @classmethod
    def from_config(cls, config: Config) -> "SessionSettings":
        return cls(
            command=config.command,
            command_args=tuple(config.command_args),
            command_timeout=config.command_timeout,
            target_duration=config.target_duration,
            auto_restart=config.auto_restart,
            completion_display_delay=config.completion_display_delay,
            autosave_interval=config.autosave_interval,
        )


@dataclass(frozen=True)
class MachineDeps:
    clock: Clock
    store: PersistenceStore
    executor: ProcessExecutor
    timing: TimingController
    recovery: ErrorRecoveryEngine
    channel: Channel
    health: HealthMonitor | None = None


@dataclass
class _Tasks:
    consumer: asyncio.Task | None = None
    timing: asyncio.Task | None = None
    autosave: asyncio.Task | None = None
    health: asyncio.Task | None = None
    command: asyncio.Task | None = None
    retry: asyncio.Task | None = None
    followup: asyncio.Task | None = None


class SessionStateMachine:
    """Owns the session and serializes every change to it.

    Public operations return immediately: each one is queued and applied, in
    order, by a single consumer task. Transitions are checked against the
    legal-edge table, persisted before anyone hears about them, then
    published on the channel. Rejections are published as
    `OperationRejected`, never raised.
    """

    def __init__(self, settings: SessionSettings, deps: MachineDeps, *, background_loops: bool = True):
        self.settings = settings
        self.clock = deps.clock
        self.store = deps.store
        self.executor = deps.executor
        self.timing = deps.timing
        self.recovery = deps.recovery
        self.channel = deps.channel
        self.health = deps.health
        self.background_loops = background_loops

        self.state = SessionState.IDLE
        self.session: SessionData | None = None
        self.last_error: str | None = None
        self.remediation: str | None = None
        self.retry_attempt = 0
        self.pause_reason: PauseReason | None = None

        self._queue: asyncio.Queue[tuple[str, Operation]] = asyncio.Queue()
        self._tasks = _Tasks()
        self._persisting_failure = False

        self.recovery.bind(self)
        self.executor.on_attempt = self._on_attempt

    # -- lifecycle -------------------------------------------------------

    async def open(self) -> None:
        if self._tasks.consumer is not None:
            return
        self._tasks.consumer = asyncio.create_task(self._consume())
        self._restore()
        if self.health is not None and self.background_loops:
            self._tasks.health = asyncio.create_task(self.health.run(self._on_health_sample))
        self._publish_status()

    async def close(self) -> None:
        if self.session is not None and self.state.is_live:
            self._sync_session()
            self._persist()
        tasks = [task for task in vars(self._tasks).values() if task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks = _Tasks()

    async def settle(self) -> None:
        """Wait until queued operations and any in-flight command have been applied."""
        while True:
            await self._queue.join()
            command = self._tasks.command
            if command is None or command.done():
                if self._queue.empty():
                    return
                continue
            await asyncio.wait([command])

    def subscribe(self, listener: Handler[StatusChanged]) -> None:
        self.channel.subscribe(StatusChanged, listener)

    def status(self) -> EngineStatus:
        session = self.session
        if session is None:
            return EngineStatus(
                state=self.state,
                last_error=self.last_error,
                remediation=self.remediation,
                retry_attempt=self.retry_attempt,
                low_power=self.timing.low_power,
            )
        return EngineStatus(
            state=self.state,
            progress=session.progress,
            time_remaining=session.time_remaining,
            elapsed=session.elapsed_seconds,
            session_id=session.session_id,
            last_error=self.last_error,
            remediation=self.remediation,
            retry_attempt=self.retry_attempt,
            command_count=session.command_count,
            drift=self.timing.accumulated_drift,
            low_power=self.timing.low_power,
        )

    # -- public operations ----------------------------------------------

    def start(self) -> None:
        self._enqueue("start", self._do_start)

    def pause(self) -> None:
        self._enqueue("pause", self._do_pause)

    def resume(self) -> None:
        self._enqueue("resume", self._do_resume)

    def stop(self) -> None:
        self._enqueue("stop", self._do_stop)

    def reset(self) -> None:
        self._enqueue("reset", self._do_reset)

    def retry(self) -> None:
        self._enqueue("retry", self._do_retry)

    def system_will_sleep(self) -> None:
        self._enqueue("system_will_sleep", self._do_sleep)

    def system_did_wake(self) -> None:
        self._enqueue("system_did_wake", self._do_wake)

    def set_low_power(self, enabled: bool) -> None:
        self._enqueue("set_low_power", partial(self._apply_low_power, enabled))

    def tick(self, expected: float | None = None) -> None:
        self._enqueue("tick", partial(self._do_tick, expected))

    # -- transition core -------------------------------------------------

    def transition(
        self, target: SessionState, *, reason: str = "", restart: bool = False, notify: bool = True
    ) -> bool:
        """Move to `target` if legal. `notify=False` keeps the hop out of the user notifications."""
        source = self.state
        if not is_legal(source, target):
            self._reject(f"transition:{target}", f"illegal transition {source} -> {target}")
            return False

        now = self.clock.time()
        fresh = target is SessionState.RUNNING and (restart or source in (SessionState.IDLE, SessionState.COMPLETED))
        self._leave(source, target, now)
        self.state = target
        self._enter(source, target, now, fresh)

        self._sync_session(now)
        self._persist()
        _logger.info("Session %s -> %s%s", source, target, f" ({reason})" if reason else "")
        self.channel.publish(StateChanged(source=source, target=target, reason=reason))
        if notify:
            self._announce(source, target)
        self._publish_status()
        return True

    def _leave(self, source: SessionState, target: SessionState, now: float) -> None:
        if source is SessionState.RUNNING:
            self._cancel_loops()
            self._cancel_task("retry")
            if target is not SessionState.COMPLETED:
                self.timing.pause(now)
        if source is SessionState.COMPLETED:
            self._cancel_task("followup")
        if target is SessionState.IDLE:
            self._cancel_task("command")
            self._cancel_task("retry")

    def _enter(self, source: SessionState, target: SessionState, now: float, fresh: bool) -> None:
        match target:
            case SessionState.RUNNING if fresh:
                self.session = SessionData.new(now, self.settings.target_duration)
                bind_session(self.session.session_id)
                self.timing.arm(now, self.settings.target_duration)
                self.last_error = None
                self.remediation = None
                self.retry_attempt = 0
                self.pause_reason = None
                self._start_loops()
                self._trigger_command()
            case SessionState.RUNNING:
                self.timing.resume(now)
                self.pause_reason = None
                if source is not SessionState.RECOVERING:
                    self.last_error = None
                    self.remediation = None
                self._start_loops()
                last = self.session.last_command_result if self.session else None
                if source is SessionState.PAUSED and last is not None and not last.ok:
                    self._trigger_command()
            case SessionState.PAUSED | SessionState.BACKGROUNDED:
                self.timing.pause(now)
            case SessionState.ERROR:
                self.timing.pause(now)
            case SessionState.COMPLETED:
                if self.session is not None:
                    self.session.update_elapsed(self.session.target_duration)
                self._schedule_followup()
            case SessionState.IDLE:
                self.timing.disarm()
                self.pause_reason = None

    def _announce(self, source: SessionState, target: SessionState) -> None:
        session = self.session
        session_id = session.session_id if session else None
        match target:
            case SessionState.RUNNING if source in (SessionState.IDLE, SessionState.COMPLETED, SessionState.ERROR) and session:
                self.channel.publish(SessionStarted(session_id=session.session_id, target_duration=session.target_duration))
            case SessionState.PAUSED if session:
                self.channel.publish(
                    SessionPaused(
                        session_id=session.session_id,
                        reason=self.pause_reason or PauseReason.USER,
                        elapsed=session.elapsed_seconds,
                    )
                )
            case SessionState.COMPLETED if session:
                self.channel.publish(
                    SessionCompleted(
                        session_id=session.session_id,
                        elapsed=session.elapsed_seconds,
                        command_count=session.command_count,
                    )
                )
            case SessionState.ERROR:
                self.channel.publish(
                    SessionFailed(
                        session_id=session_id,
                        message=self.last_error or "Session failed",
                        remediation=self.remediation,
                    )
                )
        if target is SessionState.IDLE:
            self.session = None
            bind_session(None)

    # -- operation handlers (run on the consumer task) --------------------

    def _do_start(self) -> None:
        if self.state.is_live:
            self._reject("start", f"a session is already {self.state}")
            return
        self.transition(SessionState.RUNNING, reason="start", restart=True)

    def _do_pause(self) -> None:
        if self.state not in (SessionState.RUNNING, SessionState.BACKGROUNDED):
            self._reject("pause", f"cannot pause while {self.state}")
            return
        self.pause_reason = PauseReason.USER
        self.transition(SessionState.PAUSED, reason="pause")

    def _do_resume(self) -> None:
        if self.state is not SessionState.PAUSED:
            self._reject("resume", f"cannot resume while {self.state}")
            return
        self.transition(SessionState.RUNNING, reason="resume")

    def _do_stop(self) -> None:
        match self.state:
            case SessionState.IDLE:
                self._reject("stop", "no session to stop")
                return
            case SessionState.RUNNING | SessionState.BACKGROUNDED:
                self.pause_reason = PauseReason.USER
                self.transition(SessionState.PAUSED, reason="stop", notify=False)
            case SessionState.RECOVERING:
                self.transition(SessionState.ERROR, reason="stop", notify=False)
        self.transition(SessionState.IDLE, reason="stop")

    def _do_reset(self) -> None:
        if self.state is not SessionState.IDLE:
            self._do_stop()
        self.last_error = None
        self.remediation = None
        self.retry_attempt = 0
        self.recovery.reset()
        self.executor.breaker.reset()
        _logger.info("Engine reset")
        self._publish_status()

    def _do_retry(self) -> None:
        if self.state is not SessionState.ERROR:
            self._reject("retry", f"nothing to retry while {self.state}")
            return
        if self.session is None:
            self._reject("retry", "no session to resume, start a new one")
            return
        if self.transition(SessionState.RECOVERING, reason="retry"):
            self._trigger_command()

    def _do_sleep(self) -> None:
        if self.state is not SessionState.RUNNING:
            _logger.debug("System sleeping while %s, nothing to do", self.state)
            return
        self.pause_reason = PauseReason.SLEEP
        self.transition(SessionState.BACKGROUNDED, reason="system sleep")

    def _do_wake(self) -> None:
        if self.state is not SessionState.BACKGROUNDED:
            _logger.debug("System woke while %s, nothing to do", self.state)
            return
        self.transition(SessionState.RUNNING, reason="system wake")

    def _apply_low_power(self, enabled: bool) -> None:
        if self.timing.low_power == enabled:
            return
        self.timing.low_power = enabled
        _logger.info("Low power mode %s, tick interval %ss", "on" if enabled else "off", self.timing.interval)
        self._publish_status()

    def _do_tick(self, expected: float | None) -> None:
        if self.state is not SessionState.RUNNING:
            return
        if self.session is None or not self.timing.armed:
            self.recovery.handle(
                ErrorKind.STATE_DESYNC,
                ErrorContext(message="Running without an armed session timer", component="session"),
            )
            return

        result = self.timing.tick(expected)
        self.session.update_elapsed(result.elapsed)
        if result.fault is not None:
            self.recovery.handle_exception(result.fault, "timing", drift=result.fault.drift)
            if self.state is not SessionState.RUNNING:
                return
        elif result.recalibrated:
            _logger.debug("Recalibrated, drift back within tolerance")

        if result.completed:
            self.transition(SessionState.COMPLETED, reason="target reached")
            return
        if result.command_due:
            self._trigger_command()
        self._publish_status()

    def _autosave(self) -> None:
        if self.session is not None and self.state.is_live:
            self._sync_session()
            self._persist()

    def _on_command_succeeded(self, session_id: str, result: CommandResult) -> None:
        session = self.session
        if session is None or session.session_id != session_id:
            _logger.info("Dropping command result for finished session %s", session_id)
            return
        now = self.clock.time()
        outcome = CommandOutcome(
            ok=True,
            exit_code=result.exit_code,
            duration=result.duration,
            finished_at=now,
            output=result.stdout,
        )
        session.command_count += 1
        session.last_command_at = now
        session.last_command_result = outcome
        self.retry_attempt = 0
        self.recovery.record_success(ErrorCategory.PROCESS_TRANSIENT)
        self.recovery.record_success(ErrorCategory.NETWORK)
        self.channel.publish(CommandExecuted(session_id=session_id, outcome=outcome, attempts=result.attempts))

        if self.state is not SessionState.ERROR:
            self.last_error = None
            self.remediation = None
        if self.state is SessionState.RECOVERING:
            self.transition(SessionState.RUNNING, reason="retry succeeded")
            return
        self._sync_session(now)
        self._persist()
        self._publish_status()

    def _on_command_failed(self, session_id: str, error: CommandError) -> None:
        session = self.session
        if session is None or session.session_id != session_id:
            _logger.info("Dropping command failure for finished session %s", session_id)
            return
        now = self.clock.time()
        session.last_command_result = CommandOutcome(
            ok=False,
            exit_code=error.exit_code,
            duration=0.0,
            finished_at=now,
            output=error.stderr,
            error=str(error),
        )
        self.last_error = str(error)

        if self.state is SessionState.RECOVERING:
            event = self.recovery.record_escalation(error, "executor")
            self.remediation = event.remediation
            self.transition(SessionState.ERROR, reason="retry failed")
            return

        self.recovery.handle_exception(error, "executor", session_id=session_id)
        self._sync_session(now)
        self._persist()
        self._publish_status()

    def _on_attempt_recorded(self, record: AttemptRecord) -> None:
        self.retry_attempt = 0 if record.ok else record.attempt
        session_id = self.session.session_id if self.session else None
        self.channel.publish(CommandAttempted(session_id=session_id, record=record))
        self._publish_status()

    def _on_health(self, snapshot: HealthSnapshot, detections: list[EdgeCaseDetection]) -> None:
        history = list(self.health.history) if self.health is not None else [snapshot]
        self.recovery.assess(history, detections)

    # -- recovery actions (invoked by the recovery engine on the consumer) --

    def retry_command(self, delay: float) -> None:
        if self.state is not SessionState.RUNNING:
            return
        self._cancel_task("retry")
        self._tasks.retry = asyncio.create_task(self._retry_after(delay))

    def pause_session(self, reason: PauseReason) -> None:
        if self.state in (SessionState.RUNNING, SessionState.BACKGROUNDED):
            self.pause_reason = reason
            self.transition(SessionState.PAUSED, reason=f"{reason} pause")

    def resume_session(self) -> None:
        if self.state is SessionState.PAUSED and self.pause_reason is PauseReason.POWER:
            self.transition(SessionState.RUNNING, reason="power recovered")

    def recalibrate(self) -> None:
        self.timing.recalibrate()

    def cleanup(self) -> None:
        collected = gc.collect()
        self.executor.history.clear()
        _logger.info("Cleanup released %d objects", collected)

    def throttle(self, enabled: bool) -> None:
        self.timing.throttled = enabled
        self._publish_status()

    def escalate(self, message: str, remediation: str | None) -> None:
        self.last_error = message
        self.remediation = remediation
        if self.state is SessionState.ERROR:
            self._publish_status()
            return
        self.transition(SessionState.ERROR, reason=message)

    def reset_session(self, message: str, remediation: str | None) -> None:
        self.last_error = message
        self.remediation = remediation
        if self.state is not SessionState.ERROR:
            self.transition(SessionState.ERROR, reason=message)
        self.transition(SessionState.IDLE, reason="reset after fatal error")

    # -- internals -------------------------------------------------------

    def _restore(self) -> None:
        snapshot = self.store.load()
        if snapshot is None:
            return
        self.session = snapshot
        bind_session(snapshot.session_id)
        self.timing.restore(
            session_start_time=snapshot.session_start_time,
            accumulated_paused_duration=snapshot.accumulated_paused_duration,
            paused_since=snapshot.paused_since,
            target_duration=snapshot.target_duration,
            elapsed_at_snapshot=snapshot.elapsed_seconds,
        )
        self.channel.publish(
            SessionStarted(session_id=snapshot.session_id, target_duration=snapshot.target_duration, restored=True)
        )
        match snapshot.state:
            case SessionState.PAUSED:
                self.state = SessionState.PAUSED
                self.pause_reason = PauseReason.USER
                self.timing.pause(snapshot.paused_since or self.clock.time())
                _logger.info("Restored paused session %s", snapshot.session_id)
            case SessionState.ERROR:
                self.state = SessionState.ERROR
                self.timing.pause(snapshot.paused_since or self.clock.time())
                result = snapshot.last_command_result
                self.last_error = result.error if result and result.error else "Session was in error before restart"
                _logger.info("Restored failed session %s", snapshot.session_id)
            case _:
                self.state = SessionState.RECOVERING
                _logger.info("Recovering session %s after restart", snapshot.session_id)
                self.transition(SessionState.RUNNING, reason="restored after restart")
        self._sync_session()

    def _enqueue(self, name: str, op: Operation) -> None:
        self._queue.put_nowait((name, op))

    async def _consume(self) -> None:
        while True:
            name, op = await self._queue.get()
            try:
                op()
            except Exception:
                _logger.exception("Operation %s failed", name)
            finally:
                self._queue.task_done()

    def _reject(self, operation: str, reason: str) -> None:
        _logger.info("Rejected %s: %s", operation, reason)
        self.channel.publish(OperationRejected(operation=operation, state=self.state, reason=reason))

    def _trigger_command(self) -> None:
        if self.state not in (SessionState.RUNNING, SessionState.RECOVERING) or self.session is None:
            return
        command = self._tasks.command
        if command is not None and not command.done():
            _logger.warning("Previous command still running, skipping this trigger")
            return
        self._tasks.command = asyncio.create_task(self._run_command(self.session.session_id))

    async def _run_command(self, session_id: str) -> None:
        try:
            result = await self.executor.execute(
                self.settings.command,
                self.settings.command_args,
                self.settings.command_timeout,
            )
        except CommandError as e:
            self._enqueue("command_failed", partial(self._on_command_failed, session_id, e))
        else:
            self._enqueue("command_succeeded", partial(self._on_command_succeeded, session_id, result))

    async def _retry_after(self, delay: float) -> None:
        await self.clock.sleep(delay)
        self._enqueue("retry_command", self._trigger_command)

    def _on_attempt(self, record: AttemptRecord) -> None:
        self._enqueue("attempt", partial(self._on_attempt_recorded, record))

    async def _on_health_sample(self, snapshot: HealthSnapshot, detections: list[EdgeCaseDetection]) -> None:
        self._enqueue("health", partial(self._on_health, snapshot, detections))

    def _on_timing_due(self, interval: float) -> None:
        self._enqueue("tick", partial(self._do_tick, interval))

    async def _autosave_loop(self) -> None:
        while True:
            await self.clock.sleep(self.settings.autosave_interval)
            self._enqueue("autosave", self._autosave)

    def _schedule_followup(self) -> None:
        mode = self.settings.auto_restart
        if mode is AutoRestart.IMMEDIATE:
            self._enqueue("auto_restart", self._auto_restart)
            return
        self._cancel_task("followup")
        self._tasks.followup = asyncio.create_task(self._followup_after_delay(mode))

    async def _followup_after_delay(self, mode: AutoRestart) -> None:
        await self.clock.sleep(self.settings.completion_display_delay)
        if mode is AutoRestart.AFTER_DELAY:
            self._enqueue("auto_restart", self._auto_restart)
        else:
            self._enqueue("finish", self._finish_completed)

    def _auto_restart(self) -> None:
        if self.state is SessionState.COMPLETED:
            self.transition(SessionState.RUNNING, reason="auto restart", restart=True)

    def _finish_completed(self) -> None:
        if self.state is SessionState.COMPLETED:
            self.transition(SessionState.IDLE, reason="completion shown")

    def _start_loops(self) -> None:
        if not self.background_loops:
            return
        if self._tasks.timing is None or self._tasks.timing.done():
            self._tasks.timing = asyncio.create_task(self.timing.run(self._on_timing_due))
        if self._tasks.autosave is None or self._tasks.autosave.done():
            self._tasks.autosave = asyncio.create_task(self._autosave_loop())

    def _cancel_loops(self) -> None:
        self._cancel_task("timing")
        self._cancel_task("autosave")

    def _cancel_task(self, name: str) -> None:
        task: asyncio.Task | None = getattr(self._tasks, name)
        if task is not None and not task.done():
            task.cancel()
        setattr(self._tasks, name, None)

    def _sync_session(self, now: float | None = None) -> None:
        session = self.session
        if session is None:
            return
        now = self.clock.time() if now is None else now
        session.state = self.state
        session.updated_at = now
        if self.state is SessionState.COMPLETED:
            session.update_elapsed(session.target_duration)
            return
        if self.timing.armed:
            session.session_start_time = self.timing.session_start_time
            session.accumulated_paused_duration = self.timing.accumulated_paused_duration
            session.paused_since = self.timing.paused_since
            session.update_elapsed(self.timing.elapsed(now))

    def _persist(self) -> None:
        try:
            if self.state is SessionState.IDLE or self.session is None:
                self.store.clear()
            else:
                self.store.save(self.session)
        except (PersistenceError, OSError) as e:
            if self._persisting_failure:
                _logger.error("Persistence still failing: %s", e)
                return
            self._persisting_failure = True
            try:
                self.recovery.handle_exception(e, "persistence")
            finally:
                self._persisting_failure = False

    def _publish_status(self) -> None:
        self.channel.publish(StatusChanged(status=self.status()))
