"""Real-time chat core: presence, room sessions and message reconciliation."""

from .chat.client import ChatClient
from .chat.presence import PresenceTracker
from .chat.session import RoomSessionManager, SessionState
from .config import ChatSettings
from .repositories.contacts import ContactStore
from .repositories.messages import MessageStore

__all__ = [
    "ChatClient",
    "ChatSettings",
    "ContactStore",
    "MessageStore",
    "PresenceTracker",
    "RoomSessionManager",
    "SessionState",
]
