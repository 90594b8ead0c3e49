from collections.abc import Callable

from hourglass.events import SessionCompleted, SessionFailed, SessionPaused
from hourglass.logging import get_logger
from hourglass.notifiers.base import Notifier
from hourglass.notifiers.models import NotifierConfig

_logger = get_logger(__name__)

type SessionEvent = SessionCompleted | SessionFailed | SessionPaused


def format_duration(seconds: float) -> str:
    minutes, secs = divmod(int(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes:02d}m {secs:02d}s"


def render(event: SessionEvent) -> tuple[str, str, str]:
    """Returns (event name, subject, body) for a session event."""
    match event:
        case SessionCompleted():
            return (
                "completed",
                "[hourglass] Session completed",
                f"Session {event.session_id[:8]} finished after {format_duration(event.elapsed)} "
                f"({event.command_count} command runs).",
            )
        case SessionFailed():
            body = event.message
            if event.remediation:
                body += f"\n\nSuggested fix: {event.remediation}"
            return "failed", "[hourglass] Session failed", body
        case SessionPaused():
            return (
                "paused",
                "[hourglass] Session paused",
                f"Session {event.session_id[:8]} paused ({event.reason}) at {format_duration(event.elapsed)}.",
            )
    raise TypeError(f"Unsupported event {type(event).__name__}")


def make_session_dispatcher(
    get_notifiers: Callable[[], dict[str, Notifier]],
    get_configs: Callable[[], list[NotifierConfig]],
) -> Callable[[SessionEvent], object]:
    """Subscribe to SessionCompleted, SessionFailed and SessionPaused on Channel.

    Resolves the notifier registry at dispatch time. Each notifier config
    declares which events it wants (cfg.events); only those are sent.
    """

    async def dispatch(event: SessionEvent) -> None:
        name, subject, body = render(event)
        notifiers = get_notifiers()
        for cfg in get_configs():
            if name not in cfg.events:
                continue
            notifier = notifiers.get(cfg.name)
            if not notifier:
                _logger.warning("No notifier registered for %r", cfg.name)
                continue
            try:
                await notifier.send(subject, body)
            except Exception:
                _logger.exception("Notifier %r failed for %s event", cfg.name, name)

    return dispatch
