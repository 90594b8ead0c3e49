import asyncio
import time
from typing import Protocol


class Clock(Protocol):
    """Time source for the engine.

    `time()` is the wall clock (epoch seconds) that session progress is
    measured against. `monotonic()` never jumps and, on the platforms we run
    on, does not advance while the machine is suspended; the gap between the
    two is how sleep and clock adjustments are detected.
    """

    def time(self) -> float: ...

    def monotonic(self) -> float: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    def time(self) -> float:
        return time.time()

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)
