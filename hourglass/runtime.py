from hourglass.channel import Channel
from hourglass.clock import Clock, SystemClock
from hourglass.config import Config, get_config
from hourglass.database import Database
from hourglass.health.monitor import HealthMonitor
from hourglass.health.probe import HealthProbe, SystemProbe
from hourglass.logging import get_logger
from hourglass.notifiers import Notifier, create_notifier
from hourglass.persistence.store import PersistenceStore
from hourglass.process.breaker import CircuitBreaker
from hourglass.process.executor import ProcessExecutor
from hourglass.recovery.engine import ErrorRecoveryEngine
from hourglass.recovery.store import DiagnosticsStore
from hourglass.services.lifecycle import wire_events
from hourglass.session.machine import MachineDeps, SessionSettings, SessionStateMachine
from hourglass.timing.controller import TimingController

_logger = get_logger(__name__)


class Runtime:
    """Builds and owns every engine component for one process."""

    def __init__(
        self,
        config: Config | None = None,
        *,
        clock: Clock | None = None,
        probe: HealthProbe | None = None,
    ):
        self.config = config or get_config()
        self.clock = clock or SystemClock()
        self.channel = Channel()

        self.store = PersistenceStore(
            self.config.snapshot_path,
            clock=self.clock,
            recovery_window=self.config.crash_recovery_window,
            algorithm=self.config.checksum_algorithm,
        )
        self.breaker = CircuitBreaker(
            failure_threshold=self.config.circuit_failure_threshold,
            cooldown=self.config.circuit_cooldown,
            clock=self.clock,
        )
        self.executor = ProcessExecutor(
            clock=self.clock,
            timeout=self.config.command_timeout,
            max_retries=self.config.max_retry_attempts,
            base_delay=self.config.retry_base_delay,
            max_delay=self.config.retry_max_delay,
            breaker=self.breaker,
        )
        self.timing = TimingController(
            clock=self.clock,
            target_duration=self.config.target_duration,
            command_interval=self.config.command_interval,
            tick_interval=self.config.tick_interval,
            low_power_interval=self.config.low_power_interval,
            max_drift=self.config.max_drift,
        )
        self.recovery = ErrorRecoveryEngine(
            channel=self.channel,
            clock=self.clock,
            history_size=self.config.error_history_size,
        )
        self.health = HealthMonitor(
            probe or SystemProbe(endpoints=self.config.network_endpoints, clock=self.clock),
            interval=self.config.health_interval,
            drift_source=lambda: self.timing.accumulated_drift,
            clock=self.clock,
        )
        self.machine = SessionStateMachine(
            SessionSettings.from_config(self.config),
            MachineDeps(
                clock=self.clock,
                store=self.store,
                executor=self.executor,
                timing=self.timing,
                recovery=self.recovery,
                channel=self.channel,
                health=self.health,
            ),
        )

        self.db = Database(self.config.diagnostics_db_path)
        self.diagnostics: DiagnosticsStore | None = None
        self.notifiers: dict[str, Notifier] = {}
        self._connected = False

    def current_session_id(self) -> str | None:
        session = self.machine.session
        return session.session_id if session else None

    def rebuild_notifiers(self) -> None:
        self.notifiers.clear()
        for cfg in self.config.notifiers:
            try:
                self.notifiers[cfg.name] = create_notifier(cfg, self.config)
            except Exception:
                _logger.exception("Failed to create notifier %r", cfg.name)

    async def connect(self) -> None:
        if self._connected:
            return

        self.config.state_dir.mkdir(parents=True, exist_ok=True)
        await self.db.connect()
        self.diagnostics = DiagnosticsStore(self.db.conn)
        await self.diagnostics.init_schema()

        self.rebuild_notifiers()
        wire_events(self)
        await self.machine.open()
        self._connected = True

    async def close(self) -> None:
        if not self._connected:
            return
        await self.machine.close()
        await self.channel.drain()
        await self.db.close()
        self.diagnostics = None
        self._connected = False
