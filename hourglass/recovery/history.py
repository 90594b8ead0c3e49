from collections import Counter, deque
from collections.abc import Iterator

from hourglass import constants
from hourglass.recovery.models import ErrorCategory, ErrorEvent, RecoveryOutcome


class ErrorHistory:
    """Most recent error events, oldest dropped first."""

    def __init__(self, maxlen: int = constants.ERROR_HISTORY_SIZE):
        self._events: deque[ErrorEvent] = deque(maxlen=maxlen)

    def append(self, event: ErrorEvent) -> None:
        self._events.append(event)

    def recent(self, limit: int = 20) -> list[ErrorEvent]:
        return list(self._events)[-limit:][::-1]

    def by_category(self, category: ErrorCategory) -> list[ErrorEvent]:
        return [e for e in self._events if e.category is category]

    def summary(self) -> dict[str, int]:
        counts = Counter(e.category.value for e in self._events)
        counts["recovered"] = sum(1 for e in self._events if e.outcome is RecoveryOutcome.RETRIED)
        return dict(counts)

    def clear(self) -> None:
        self._events.clear()

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self) -> Iterator[ErrorEvent]:
        return iter(self._events)
