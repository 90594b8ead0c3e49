import asyncio
import json
import os
import signal
import time
from unittest.mock import MagicMock

import pytest
from click.testing import CliRunner
from rich.console import Console

from hourglass import cli
from hourglass import config as config_module
from hourglass.cli import main
from hourglass.database import Database
from hourglass.persistence.store import PersistenceStore
from hourglass.process.executor import AttemptRecord
from hourglass.recovery.models import ErrorEvent, ErrorKind, Severity
from hourglass.recovery.store import DiagnosticsStore
from hourglass.session.models import PauseReason, SessionData, SessionState
from tests.conftest import ManualClock, build_engine


@pytest.fixture
def state_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(config_module, "HOURGLASS_DIR", tmp_path)
    monkeypatch.setattr(config_module, "SETTINGS_PATH", tmp_path / "settings.json")
    state = tmp_path / "state"
    monkeypatch.setenv("HOURGLASS_STATE_DIR", str(state))
    monkeypatch.setattr(cli, "console", Console(width=200))
    return state


@pytest.fixture
def runner():
    return CliRunner()


def saved_settings(state_dir) -> dict:
    return json.loads((state_dir.parent / "settings.json").read_text())


async def seed_diagnostics(path) -> None:
    async with Database(path) as conn:
        store = DiagnosticsStore(conn)
        await store.init_schema()
        for kind in (ErrorKind.COMMAND_NOT_FOUND, ErrorKind.DISK_PRESSURE):
            await store.save_error(
                ErrorEvent(
                    kind=kind,
                    category=kind.category,
                    severity=Severity.HIGH,
                    message=kind.value,
                    timestamp=time.time(),
                    component="executor",
                )
            )
        await store.save_attempt(AttemptRecord(attempt=1, ok=True, duration=0.3, timestamp=time.time()))


class TestStatus:
    def test_without_session(self, runner, state_dir):
        result = runner.invoke(main, ["status"])
        assert result.exit_code == 0
        assert "No recoverable session" in result.output

    def test_with_saved_session(self, runner, state_dir):
        session = SessionData.new(time.time() - 600, 18_000)
        session.state = SessionState.PAUSED
        session.update_elapsed(600)
        session.command_count = 3
        PersistenceStore(state_dir / "session.json").save(session)

        result = runner.invoke(main, ["status"])

        assert result.exit_code == 0
        assert session.session_id[:8] in result.output
        assert "paused" in result.output
        assert "0:10:00" in result.output

    def test_corrupt_snapshot_is_left_for_the_engine(self, runner, state_dir):
        store = PersistenceStore(state_dir / "session.json")
        store.save(SessionData.new(time.time(), 18_000))
        raw = json.loads(store.path.read_text())
        raw["checksum"] = "0" * 64
        store.path.write_text(json.dumps(raw))

        result = runner.invoke(main, ["status"])

        assert result.exit_code == 0
        assert "No recoverable session" in result.output
        assert store.path.exists()
        assert not store.corrupt_path.exists()

    def test_invalid_settings_file_reports_error(self, runner, state_dir):
        (state_dir.parent / "settings.json").write_text(json.dumps({"target_duration": -1}))
        result = runner.invoke(main, ["status"])
        assert result.exit_code == 1
        assert "Error" in result.output


class TestReset:
    def test_nothing_to_reset(self, runner, state_dir):
        result = runner.invoke(main, ["reset", "--yes"])
        assert "Nothing to reset" in result.output

    def test_clears_snapshot(self, runner, state_dir):
        store = PersistenceStore(state_dir / "session.json")
        store.save(SessionData.new(time.time(), 18_000))

        result = runner.invoke(main, ["reset"], input="y\n")

        assert result.exit_code == 0
        assert not store.path.exists()

    def test_declined(self, runner, state_dir):
        store = PersistenceStore(state_dir / "session.json")
        store.save(SessionData.new(time.time(), 18_000))
        runner.invoke(main, ["reset"], input="n\n")
        assert store.path.exists()


class TestConfigCommand:
    def test_set_validates_and_persists(self, runner, state_dir):
        result = runner.invoke(main, ["config", "set", "target_duration", "7200"])
        assert result.exit_code == 0
        assert saved_settings(state_dir) == {"target_duration": 7200.0}

    def test_set_normalizes_value(self, runner, state_dir):
        runner.invoke(main, ["config", "set", "command_args", "exec 'say hi'"])
        assert saved_settings(state_dir) == {"command_args": ["exec", "say hi"]}

    def test_set_rejects_invalid_value(self, runner, state_dir):
        result = runner.invoke(main, ["config", "set", "max_retry_attempts", "50"])
        assert result.exit_code == 1
        assert not (state_dir.parent / "settings.json").exists()

    def test_set_rejects_unknown_key(self, runner, state_dir):
        result = runner.invoke(main, ["config", "set", "tick_interval", "5"])
        assert result.exit_code == 1
        assert "unknown setting" in result.output

    def test_unset(self, runner, state_dir):
        runner.invoke(main, ["config", "set", "command", "codex"])
        runner.invoke(main, ["config", "set", "auto_restart", "immediate"])

        result = runner.invoke(main, ["config", "unset", "command"])

        assert result.exit_code == 0
        assert saved_settings(state_dir) == {"auto_restart": "immediate"}

    def test_unset_missing_key(self, runner, state_dir):
        result = runner.invoke(main, ["config", "unset", "command"])
        assert "is not set" in result.output

    def test_show(self, runner, state_dir):
        result = runner.invoke(main, ["config"])
        assert result.exit_code == 0
        assert "Settings" in result.output


class TestHistory:
    def test_no_diagnostics_yet(self, runner, state_dir):
        result = runner.invoke(main, ["history"])
        assert result.exit_code == 0
        assert "No diagnostics recorded yet" in result.output

    def test_lists_recorded_errors(self, runner, state_dir):
        asyncio.run(seed_diagnostics(state_dir / "diagnostics.db"))

        result = runner.invoke(main, ["history", "--category", "process"])

        assert result.exit_code == 0
        assert "command_not_found" in result.output
        assert "disk_pressure" not in result.output
        assert "1 succeeded, 0 failed" in result.output


class TestNotifyTest:
    def test_sends_through_named_notifier(self, runner, state_dir):
        out = state_dir.parent / "notified.txt"
        notifier = {"name": "log", "type": "bash", "config": {"command": f"cat > '{out}'"}}
        (state_dir.parent / "settings.json").write_text(json.dumps({"notifiers": [notifier]}))

        result = runner.invoke(main, ["notify-test", "log"])

        assert result.exit_code == 0
        assert "notifications work" in out.read_text()

    def test_unknown_notifier(self, runner, state_dir):
        result = runner.invoke(main, ["notify-test", "nope"])
        assert result.exit_code == 1
        assert "no notifier named" in result.output

    def test_delivery_failure(self, runner, state_dir):
        notifier = {"name": "broken", "type": "bash", "config": {"command": "exit 2"}}
        (state_dir.parent / "settings.json").write_text(json.dumps({"notifiers": [notifier]}))
        result = runner.invoke(main, ["notify-test", "broken"])
        assert result.exit_code == 1


async def wait_for_state(engine, state) -> None:
    for _ in range(200):
        await engine.settle()
        if engine.machine.state is state:
            return
        await asyncio.sleep(0.01)


class TestSessionSignals:
    def test_stop_signals_share_one_handler(self):
        machine = MagicMock()
        stop = MagicMock()
        handlers = cli._session_signals(machine, stop)
        assert handlers[signal.SIGINT] is stop
        assert handlers[signal.SIGTERM] is stop

    @pytest.mark.asyncio
    async def test_sleep_hook_signals_background_and_wake_the_session(self, tmp_path):
        engine = build_engine(tmp_path, ManualClock())
        await engine.machine.open()
        loop = asyncio.get_running_loop()
        handlers = cli._session_signals(engine.machine, lambda: None)
        for sig, handler in handlers.items():
            loop.add_signal_handler(sig, handler)
        try:
            engine.machine.start()
            await engine.settle()

            os.kill(os.getpid(), signal.SIGUSR1)
            await wait_for_state(engine, SessionState.BACKGROUNDED)
            assert engine.machine.state is SessionState.BACKGROUNDED
            assert engine.machine.pause_reason is PauseReason.SLEEP

            engine.clock.suspend(600)
            os.kill(os.getpid(), signal.SIGUSR2)
            await wait_for_state(engine, SessionState.RUNNING)
            assert engine.machine.state is SessionState.RUNNING
            assert engine.machine.session.elapsed_seconds == 0.0
        finally:
            for sig in handlers:
                loop.remove_signal_handler(sig)
            await engine.machine.close()
