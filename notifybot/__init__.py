"""
notifybot — push notification relay for networks that address devices by
rotating ephemeral IDs.

Public API:
    from notifybot import NotificationBot, NotifyBotConfig
"""

__version__ = "0.1.0"

from notifybot.core.config import NotifyBotConfig
from notifybot.core.errors import NotifyBotError
from notifybot.core.events import Event, EventType
from notifybot.bot import AuthContext, NotificationBot
from notifybot.ephemeral.scheme import EpochScheme
from notifybot.ephemeral.rotation import RotationManager
from notifybot.notifications.dispatcher import Dispatcher, DispatchResult
from notifybot.scheduler.poller import PollScheduler

__all__ = [
    "NotifyBotConfig",
    "NotifyBotError",
    "Event",
    "EventType",
    "AuthContext",
    "NotificationBot",
    "EpochScheme",
    "RotationManager",
    "Dispatcher",
    "DispatchResult",
    "PollScheduler",
]
