"""
Presence Module - who is online, where, and who is typing.
"""

from evforum.modules.presence.tracker import (
    PresenceStatus,
    PresenceTracker,
    get_presence_tracker,
    typing_summary,
)

__all__ = [
    "PresenceStatus",
    "PresenceTracker",
    "get_presence_tracker",
    "typing_summary",
]
