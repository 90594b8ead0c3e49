import asyncio
from collections import defaultdict
from collections.abc import Callable, Coroutine
from typing import Any

from hourglass.logging import get_logger

type Handler[T] = Callable[[T], Coroutine[Any, Any, None]]

_logger = get_logger(__name__)


class Channel:
    """Fire-and-forget pub/sub bus.

    - subscribe(EventType, handler): register an async handler.
    - publish(event): notify all subscribers, returns immediately.
      Handlers run as independent background tasks, scheduled in publish order.
      Errors are logged, never propagated.
    - drain(): wait for every handler task scheduled so far.
    """

    def __init__(self) -> None:
        self._handlers: dict[type, list[Handler]] = defaultdict(list)
        self._pending: set[asyncio.Task] = set()

    def subscribe[T](self, event_type: type[T], handler: Handler[T]) -> None:
        self._handlers[event_type].append(handler)

    def publish[T](self, event: T) -> None:
        for handler in self._handlers.get(type(event), []):
            task = asyncio.create_task(self._run(handler, event))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        while self._pending:
            tasks = set(self._pending)
            await asyncio.wait(tasks)
            self._pending.difference_update(tasks)

    async def _run[T](self, handler: Handler[T], event: T) -> None:
        try:
            await handler(event)
        except Exception:
            _logger.exception(
                "Event handler %s failed for %s",
                getattr(handler, "__qualname__", repr(handler)),
                type(event).__name__,
            )
