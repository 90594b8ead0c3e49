from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, ClassVar

if TYPE_CHECKING:
    from hourglass.config import Config


class Notifier(ABC):
    """Delivers session notifications (completed, failed, paused) to one destination."""

    channel: ClassVar[str]

    @classmethod
    @abstractmethod
    def from_config(cls, options: dict, config: "Config") -> "Notifier":
        """Build from a notifier's `config` block; `config` supplies shared secrets."""

    @abstractmethod
    async def send(self, subject: str, body: str) -> None: ...

    async def send_test(self) -> None:
        await self.send("[hourglass] Test notification", "If you can read this, notifications work.")
