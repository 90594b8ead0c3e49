import asyncio
import signal
from collections.abc import Callable
from datetime import datetime

import click
from rich.console import Console
from rich.live import Live
from rich.table import Table
from rich.text import Text

from hourglass.config import PERSIST_KEYS, Config, get_config, load_user_settings, save_user_settings
from hourglass.logging import configure_logging

console = Console()

_STATE_STYLES = {
    "idle": "dim",
    "running": "green",
    "paused": "yellow",
    "completed": "bold green",
    "error": "bold red",
    "recovering": "magenta",
    "backgrounded": "cyan",
}


def _fmt_duration(seconds: float) -> str:
    minutes, secs = divmod(int(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    return f"{hours}:{minutes:02d}:{secs:02d}"


def _fmt_time(ts: float) -> str:
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


def _require_config(ctx) -> Config:
    if "config_error" in ctx.obj:
        console.print(f"[red]Error:[/red] {ctx.obj['config_error']}")
        raise SystemExit(1)
    return ctx.obj["config"]


@click.group(invoke_without_command=True)
@click.pass_context
def main(ctx):
    """hourglass - keeps a command running on schedule through a long session"""
    ctx.ensure_object(dict)
    try:
        config = get_config()
        ctx.obj["config"] = config
        configure_logging(config.log_level)
    except ValueError as e:
        # Only fail if we're running a command that needs config
        ctx.obj["config_error"] = str(e)
        configure_logging()

    if ctx.invoked_subcommand is None:
        console.print("[bold]hourglass[/bold] - scheduled command sessions\n")
        console.print("Run [cyan]hourglass run[/cyan] to start a session.")
        console.print("\nUse [cyan]hourglass --help[/cyan] for all commands.")


@main.command()
@click.pass_context
def status(ctx):
    """Show configuration and the persisted session, if any."""
    from hourglass.persistence.store import PersistenceStore

    config = _require_config(ctx)

    console.print("[bold]hourglass status[/bold]")
    console.print()
    console.print(f"State dir: [cyan]{config.state_dir}[/cyan]")
    console.print(f"Command: {config.command} {' '.join(config.command_args)}")
    console.print(f"Session length: {_fmt_duration(config.target_duration)}, every {_fmt_duration(config.command_interval)}")
    console.print(f"Auto restart: {config.auto_restart}")
    console.print()

    store = PersistenceStore(
        config.snapshot_path,
        recovery_window=config.crash_recovery_window,
        algorithm=config.checksum_algorithm,
    )
    session = store.load(quarantine=False)
    if session is None:
        console.print("[dim]No recoverable session.[/dim]")
        return

    style = _STATE_STYLES.get(session.state, "")
    console.print(f"Session [bold]{session.session_id[:8]}[/bold] [{style}]{session.state}[/{style}]")
    console.print(f"  started:   {_fmt_time(session.session_start_time)}")
    console.print(f"  elapsed:   {_fmt_duration(session.elapsed_seconds)} ({session.progress:.1%})")
    console.print(f"  remaining: {_fmt_duration(session.time_remaining)}")
    console.print(f"  commands:  {session.command_count}")
    if session.last_command_result and not session.last_command_result.ok:
        console.print(f"  [red]last error:[/red] {session.last_command_result.error}")


def _render_status(status) -> Text:
    style = _STATE_STYLES.get(status.state, "")
    width = 30
    filled = int(status.progress * width)
    line = Text()
    line.append(f"{status.state:<12}", style=style)
    line.append("█" * filled + "░" * (width - filled))
    line.append(f" {status.progress:6.1%}  {_fmt_duration(status.elapsed)} / -{_fmt_duration(status.time_remaining)}")
    line.append(f"  runs: {status.command_count}")
    if status.retry_attempt:
        line.append(f"  retry #{status.retry_attempt}", style="yellow")
    if status.low_power:
        line.append("  low power", style="cyan")
    if status.last_error:
        line.append(f"\n  {status.last_error}", style="red")
        if status.remediation:
            line.append(f"\n  fix: {status.remediation}", style="dim")
    return line


@main.command()
@click.option("--duration", type=float, help="Session length in seconds")
@click.option("--interval", type=float, help="Seconds between command runs")
@click.pass_context
def run(ctx, duration: float | None, interval: float | None):
    """Start (or recover) a session and show its progress.

    Ctrl+C stops it. SIGUSR1 and SIGUSR2 mark system sleep and wake.
    """
    config = _require_config(ctx)
    if duration is not None:
        config.target_duration = duration
    if interval is not None:
        config.command_interval = interval
    configure_logging(config.log_level, log_file=config.log_path)
    console.print(f"[dim]Logging to {config.log_path}[/dim]")

    asyncio.run(_run_session(config))


def _session_signals(machine, request_stop) -> dict[int, Callable[[], None]]:
    """Signals `run` listens for.

    SIGUSR1 and SIGUSR2 are meant for a system-sleep hook, sent just before
    suspend and just after resume. Without one, suspend is still caught after
    the fact from the wall and monotonic clocks diverging.
    """
    return {
        signal.SIGINT: request_stop,
        signal.SIGTERM: request_stop,
        signal.SIGUSR1: machine.system_will_sleep,
        signal.SIGUSR2: machine.system_did_wake,
    }


async def _run_session(config: Config) -> None:
    from hourglass.events import StatusChanged
    from hourglass.runtime import Runtime
    from hourglass.session.models import SessionState

    runtime = Runtime(config)
    await runtime.connect()
    machine = runtime.machine
    done = asyncio.Event()
    seen_live = False

    async def finish_after_stop() -> None:
        await machine.settle()
        done.set()

    def request_stop() -> None:
        console.print("\n[dim]Stopping...[/dim]")
        if machine.state is SessionState.IDLE:
            done.set()
            return
        machine.stop()
        asyncio.create_task(finish_after_stop())

    loop = asyncio.get_running_loop()
    signals = _session_signals(machine, request_stop)
    for sig, handler in signals.items():
        loop.add_signal_handler(sig, handler)

    try:
        with Live(_render_status(machine.status()), console=console, refresh_per_second=4) as live:

            async def on_status(event: StatusChanged) -> None:
                nonlocal seen_live
                live.update(_render_status(event.status))
                if event.status.state is not SessionState.IDLE:
                    seen_live = True
                elif seen_live:
                    done.set()

            machine.subscribe(on_status)
            if machine.state is SessionState.IDLE:
                machine.start()
            await done.wait()
    finally:
        for sig in signals:
            loop.remove_signal_handler(sig)
        await runtime.close()

    stats = runtime.executor.stats
    if stats.total:
        console.print(
            f"Command runs: {stats.successes}/{stats.total} succeeded, "
            f"avg {stats.average_duration:.1f}s, breaker trips: {stats.breaker_trips}"
        )


@main.command()
@click.option("-n", "--limit", default=20, show_default=True, help="Number of entries")
@click.option("--category", help="Only show this error category")
@click.pass_context
def history(ctx, limit: int, category: str | None):
    """Show recent recorded errors and recoveries."""
    config = _require_config(ctx)
    asyncio.run(_show_history(config, limit, category))


async def _show_history(config: Config, limit: int, category: str | None) -> None:
    from hourglass.database import Database
    from hourglass.recovery.store import DiagnosticsStore

    if not config.diagnostics_db_path.exists():
        console.print("[dim]No diagnostics recorded yet.[/dim]")
        return

    async with Database(config.diagnostics_db_path) as conn:
        store = DiagnosticsStore(conn)
        await store.init_schema()
        entries = await store.recent(limit=limit, category=category)
        stats = await store.attempt_stats()

    table = Table(title="Recent errors")
    table.add_column("When")
    table.add_column("Kind")
    table.add_column("Severity")
    table.add_column("Outcome")
    table.add_column("Message", overflow="fold")
    for entry in entries:
        table.add_row(
            _fmt_time(entry.occurred_at),
            entry.kind,
            entry.severity,
            entry.outcome or "",
            entry.message,
        )
    console.print(table)
    console.print(f"Command attempts: {stats['succeeded']} succeeded, {stats['failed']} failed")


@main.command()
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def reset(ctx, yes: bool):
    """Discard the persisted session snapshot."""
    from hourglass.persistence.store import PersistenceStore

    config = _require_config(ctx)
    store = PersistenceStore(config.snapshot_path)
    if not store.path.exists():
        console.print("[dim]Nothing to reset.[/dim]")
        return
    if not yes and not click.confirm("Discard the saved session?"):
        return
    store.clear()
    console.print("[green]Session snapshot cleared.[/green]")


@main.group(name="config", invoke_without_command=True)
@click.pass_context
def config_group(ctx):
    """Show persisted settings, or change them with `config set`."""
    if ctx.invoked_subcommand is not None:
        return
    config = _require_config(ctx)
    overridden = load_user_settings()

    table = Table(title="Settings")
    table.add_column("Key")
    table.add_column("Value", overflow="fold")
    table.add_column("Source")
    for key in sorted(PERSIST_KEYS - {"notifiers"}):
        table.add_row(key, str(getattr(config, key)), "settings.json" if key in overridden else "env/default")
    console.print(table)
    if config.notifiers:
        names = ", ".join(f"{n.name} ({n.type})" for n in config.notifiers)
        console.print(f"Notifiers: {names}")


@config_group.command(name="set")
@click.argument("key")
@click.argument("value")
def config_set(key: str, value: str):
    """Persist KEY=VALUE to settings.json after validating it."""
    if key not in PERSIST_KEYS or key == "notifiers":
        allowed = ", ".join(sorted(PERSIST_KEYS - {"notifiers"}))
        console.print(f"[red]Error:[/red] unknown setting {key!r}. Choose one of: {allowed}")
        raise SystemExit(1)

    settings = load_user_settings()
    overrides = {k: settings[k] for k in PERSIST_KEYS if k in settings}
    try:
        config = Config(**{**overrides, key: value})
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise SystemExit(1) from None

    settings[key] = getattr(config, key)
    save_user_settings(settings)
    console.print(f"[green]Saved[/green] {key} = {settings[key]}")


@config_group.command(name="unset")
@click.argument("key")
def config_unset(key: str):
    """Drop KEY from settings.json, falling back to env/defaults."""
    settings = load_user_settings()
    if settings.pop(key, None) is None:
        console.print(f"[dim]{key} is not set.[/dim]")
        return
    save_user_settings(settings)
    console.print(f"[green]Removed[/green] {key}")


@main.command(name="notify-test")
@click.argument("name")
@click.pass_context
def notify_test(ctx, name: str):
    """Send a test message through the configured notifier NAME."""
    from hourglass.notifiers import create_notifier

    config = _require_config(ctx)
    cfg = next((n for n in config.notifiers if n.name == name), None)
    if cfg is None:
        console.print(f"[red]Error:[/red] no notifier named {name!r}")
        raise SystemExit(1)

    try:
        notifier = create_notifier(cfg, config)
        asyncio.run(notifier.send_test())
    except Exception as e:
        console.print(f"[red]Error:[/red] {e}")
        raise SystemExit(1) from None
    console.print(f"[green]Sent[/green] test notification via {name} ({cfg.type})")


@main.command()
@click.pass_context
def health(ctx):
    """Take one health sample and list detected edge cases."""
    config = _require_config(ctx)
    asyncio.run(_show_health(config))


async def _show_health(config: Config) -> None:
    from hourglass.health.monitor import HealthMonitor
    from hourglass.health.probe import SystemProbe

    monitor = HealthMonitor(SystemProbe(endpoints=config.network_endpoints, disk_path=config.state_dir.parent))
    snapshot = await monitor.sample()

    table = Table(title="System health", show_header=False)
    table.add_row("Memory pressure", f"{snapshot.memory_pressure:.0%}")
    table.add_row("CPU", f"{snapshot.cpu_usage:.0f}%")
    if snapshot.battery_level is not None:
        plugged = "plugged in" if snapshot.power_plugged else "on battery"
        table.add_row("Battery", f"{snapshot.battery_level:.0%} ({plugged})")
    table.add_row("Network", {True: "reachable", False: "unreachable", None: "not checked"}[snapshot.network_reachable])
    table.add_row("Thermal", str(snapshot.thermal_state))
    table.add_row("Disk", f"{snapshot.disk_usage:.0%}")
    if snapshot.descriptor_usage is not None:
        table.add_row("File descriptors", f"{snapshot.descriptor_usage:.0%}")
    console.print(table)

    detections = monitor.detect_edge_cases()
    if not detections:
        console.print("[green]No edge cases detected.[/green]")
        return
    for detection in detections:
        console.print(f"[yellow]{detection.level}[/yellow] {detection.kind}: {detection.message}")


if __name__ == "__main__":
    main()
