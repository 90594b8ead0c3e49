import asyncio
from dataclasses import dataclass
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from hourglass.channel import Channel
from hourglass.persistence.store import PersistenceStore
from hourglass.process.breaker import CircuitBreaker
from hourglass.process.executor import CommandResult, ProcessExecutor
from hourglass.recovery.engine import ErrorRecoveryEngine
from hourglass.session.machine import MachineDeps, SessionSettings, SessionStateMachine
from hourglass.session.models import AutoRestart
from hourglass.timing.controller import TimingController

T0 = 1_700_000_000.0


class ManualClock:
    """Deterministic clock.

    `advance` moves wall and monotonic time together (the machine is awake).
    `suspend` moves only wall time, which is what a laptop lid close looks
    like. With `auto_advance`, `sleep` returns at once after advancing;
    otherwise it blocks until a later `advance` passes its deadline.
    """

    def __init__(self, start: float = T0, *, auto_advance: bool = False):
        self.wall = start
        self.mono = 1_000.0
        self.auto_advance = auto_advance
        self.sleeps: list[float] = []
        self._waiters: list[tuple[float, asyncio.Future]] = []

    def time(self) -> float:
        return self.wall

    def monotonic(self) -> float:
        return self.mono

    def advance(self, seconds: float) -> None:
        self.wall += seconds
        self.mono += seconds
        self._wake()

    def suspend(self, seconds: float) -> None:
        self.wall += seconds

    def adjust_wall(self, delta: float) -> None:
        self.wall += delta

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        if self.auto_advance:
            self.advance(seconds)
            await asyncio.sleep(0)
            return
        future = asyncio.get_running_loop().create_future()
        self._waiters.append((self.mono + seconds, future))
        await future

    def _wake(self) -> None:
        remaining = []
        for deadline, future in self._waiters:
            if deadline <= self.mono:
                if not future.done():
                    future.set_result(None)
            else:
                remaining.append((deadline, future))
        self._waiters = remaining


class EventLog:
    def __init__(self, channel: Channel, *event_types: type):
        self.events: list = []
        for event_type in event_types:
            channel.subscribe(event_type, self._record)

    async def _record(self, event) -> None:
        self.events.append(event)

    def of(self, event_type: type) -> list:
        return [e for e in self.events if isinstance(e, event_type)]


def ok_result(stdout: str = "pong") -> CommandResult:
    return CommandResult(exit_code=0, stdout=stdout, stderr="", duration=0.5)


@dataclass
class Engine:
    machine: SessionStateMachine
    clock: ManualClock
    store: PersistenceStore
    executor: ProcessExecutor
    channel: Channel
    run_once: AsyncMock

    async def settle(self) -> None:
        await self.machine.settle()
        await self.channel.drain()


def build_engine(
    state_dir: Path,
    clock: ManualClock,
    *,
    target_duration: float = 18_000,
    command_interval: float = 3_600,
    auto_restart: AutoRestart = AutoRestart.OFF,
    max_retries: int = 5,
    background_loops: bool = False,
) -> Engine:
    channel = Channel()
    store = PersistenceStore(state_dir / "session.json", clock=clock)
    # Retry backoff runs on its own clock so it never blocks the session clock
    executor = ProcessExecutor(
        clock=ManualClock(auto_advance=True),
        max_retries=max_retries,
        breaker=CircuitBreaker(clock=clock),
    )
    run_once = AsyncMock(return_value=ok_result())
    executor._run_once = run_once
    timing = TimingController(clock=clock, target_duration=target_duration, command_interval=command_interval)
    recovery = ErrorRecoveryEngine(channel=channel, clock=clock)
    machine = SessionStateMachine(
        SessionSettings(
            command="claude",
            command_args=("-p", "ping"),
            target_duration=target_duration,
            auto_restart=auto_restart,
        ),
        MachineDeps(
            clock=clock,
            store=store,
            executor=executor,
            timing=timing,
            recovery=recovery,
            channel=channel,
        ),
        background_loops=background_loops,
    )
    return Engine(machine, clock, store, executor, channel, run_once)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def store(tmp_path: Path, clock: ManualClock) -> PersistenceStore:
    return PersistenceStore(tmp_path / "session.json", clock=clock)


@pytest_asyncio.fixture
async def engine(tmp_path: Path, clock: ManualClock):
    built = build_engine(tmp_path, clock)
    await built.machine.open()
    yield built
    await built.machine.close()
