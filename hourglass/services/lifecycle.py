from typing import TYPE_CHECKING

from hourglass.events import CommandAttempted, ErrorRecorded, SessionCompleted, SessionFailed, SessionPaused
from hourglass.notifiers import make_session_dispatcher

if TYPE_CHECKING:
    from hourglass.runtime import Runtime


async def _on_error_recorded(runtime: "Runtime", event: ErrorRecorded) -> None:
    if runtime.diagnostics is None:
        return
    await runtime.diagnostics.save_error(event.error, session_id=runtime.current_session_id())


async def _on_command_attempted(runtime: "Runtime", event: CommandAttempted) -> None:
    if runtime.diagnostics is None:
        return
    await runtime.diagnostics.save_attempt(event.record, session_id=event.session_id)


def wire_events(runtime: "Runtime") -> None:
    ch = runtime.channel

    # Diagnostics export
    ch.subscribe(ErrorRecorded, lambda e: _on_error_recorded(runtime, e))
    ch.subscribe(CommandAttempted, lambda e: _on_command_attempted(runtime, e))

    # Session notifications
    dispatch = make_session_dispatcher(lambda: runtime.notifiers, lambda: runtime.config.notifiers)
    ch.subscribe(SessionCompleted, dispatch)
    ch.subscribe(SessionFailed, dispatch)
    ch.subscribe(SessionPaused, dispatch)
