import asyncio
import os
from typing import TYPE_CHECKING

from hourglass.notifiers.base import Notifier

if TYPE_CHECKING:
    from hourglass.config import Config


class BashNotifier(Notifier):
    """Runs a shell command with the message in its environment and on stdin."""

    channel = "bash"

    @classmethod
    def from_config(cls, options: dict, config: "Config") -> "BashNotifier":
        return cls(command=options["command"], timeout=float(options.get("timeout", 30)))

    def __init__(self, command: str, timeout: float = 30):
        self._command = command
        self._timeout = timeout

    async def send(self, subject: str, body: str) -> None:
        env = {**os.environ, "HOURGLASS_SUBJECT": subject, "HOURGLASS_BODY": body}
        proc = await asyncio.create_subprocess_shell(
            self._command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )
        try:
            _, stderr = await asyncio.wait_for(proc.communicate(input=body.encode()), timeout=self._timeout)
        except TimeoutError:
            proc.kill()
            await proc.wait()
            raise RuntimeError(f"Bash notifier {self._command!r} timed out after {self._timeout}s") from None
        if proc.returncode != 0:
            raise RuntimeError(f"Bash notifier {self._command!r} exited {proc.returncode}: {stderr.decode().strip()}")
