from typing import TYPE_CHECKING

from hourglass.notifiers.base import Notifier
from hourglass.notifiers.bash import BashNotifier
from hourglass.notifiers.models import NotifierConfig
from hourglass.notifiers.telegram import TelegramNotifier

if TYPE_CHECKING:
    from hourglass.config import Config

_NOTIFIER_CLASSES: list[type[Notifier]] = [TelegramNotifier, BashNotifier]
REGISTRY: dict[str, type[Notifier]] = {cls.channel: cls for cls in _NOTIFIER_CLASSES}


def create_notifier(cfg: NotifierConfig, config: "Config") -> Notifier:
    cls = REGISTRY.get(cfg.type)
    if not cls:
        raise ValueError(f"Unknown notifier type: {cfg.type}")
    return cls.from_config(cfg.config, config)
