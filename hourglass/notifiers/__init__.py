from hourglass.notifiers.base import Notifier
from hourglass.notifiers.bash import BashNotifier
from hourglass.notifiers.dispatcher import make_session_dispatcher
from hourglass.notifiers.factory import REGISTRY, create_notifier
from hourglass.notifiers.models import NotifierConfig
from hourglass.notifiers.telegram import TelegramNotifier

__all__ = [
    "REGISTRY",
    "BashNotifier",
    "Notifier",
    "NotifierConfig",
    "TelegramNotifier",
    "create_notifier",
    "make_session_dispatcher",
]
