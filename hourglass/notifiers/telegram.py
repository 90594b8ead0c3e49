from typing import TYPE_CHECKING

import aiohttp

from hourglass.notifiers.base import Notifier

if TYPE_CHECKING:
    from hourglass.config import Config

_TIMEOUT = aiohttp.ClientTimeout(total=15)


def _escape_html(text: str) -> str:
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


class TelegramNotifier(Notifier):
    channel = "telegram"

    @classmethod
    def from_config(cls, options: dict, config: "Config") -> "TelegramNotifier":
        token = options.get("token") or config.telegram_bot_token
        if not token:
            raise ValueError("TELEGRAM_BOT_TOKEN not set in environment")
        return cls(token=token, user_id=str(options["user_id"]))

    def __init__(self, token: str, user_id: str):
        self._token = token
        self._user_id = user_id

    async def send(self, subject: str, body: str) -> None:
        url = f"https://api.telegram.org/bot{self._token}/sendMessage"
        text = f"<b>{_escape_html(subject)}</b>\n\n{_escape_html(body)}"
        payload = {"chat_id": self._user_id, "text": text, "parse_mode": "HTML"}

        async with (
            aiohttp.ClientSession(timeout=_TIMEOUT) as session,
            session.post(url, json=payload) as resp,
        ):
            if resp.status != 200:
                detail = await resp.text()
                raise RuntimeError(f"Telegram send failed ({resp.status}): {detail}")
