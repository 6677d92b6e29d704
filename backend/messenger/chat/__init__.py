"""Real-time messaging: presence, conversation rooms and message fan-out."""

from .fanout import FanoutEngine, get_fanout, set_fanout
from .manager import ConnectionManager, get_manager, set_manager
from .presence import PresenceRegistry
from .rooms import ConversationRouter

__all__ = [
    "ConnectionManager",
    "ConversationRouter",
    "FanoutEngine",
    "PresenceRegistry",
    "get_fanout",
    "get_manager",
    "set_fanout",
    "set_manager",
]
