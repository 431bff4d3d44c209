"""
Celebeaty server implementation relaying playback between users.

CelebeatyServer is the realtime hub of celebeaty, responsible for:
- Accepting and identifying connections
- Keeping the directory of live senders
- Delivering sync events to the followers of each sender
"""

__all__ = [
    "CelebeatyEvent",
    "CelebeatyServer",
    "Connection",
    "FollowEdge",
    "FollowGraph",
    "MessageRouter",
    "PresenceDirectory",
    "PresenceEntry",
    "UserConnectedEvent",
    "UserDisconnectedEvent",
    "is_origin_allowed",
]

from .connection import Connection
from .follow import FollowEdge, FollowGraph
from .presence import PresenceDirectory, PresenceEntry
from .router import MessageRouter
from .server import (
    CelebeatyEvent,
    CelebeatyServer,
    UserConnectedEvent,
    UserDisconnectedEvent,
    is_origin_allowed,
)
