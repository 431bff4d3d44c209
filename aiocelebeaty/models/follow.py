"""Follow messages for the celebeaty protocol.

Receivers subscribe to a sender with ``follow`` and leave with ``unfollow``.
``req_snapshot`` asks the followed sender to emit its current state right away.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from mashumaro import field_options

from .types import Message


@dataclass
class FollowMessage(Message):
    """Message sent by a receiver to start following a sender."""

    target_user_id: str = field(metadata=field_options(alias="targetUserId"))
    user: str
    ts: int
    type: Literal["follow"] = "follow"


@dataclass
class UnfollowMessage(Message):
    """Message sent by a receiver to stop following a sender."""

    target_user_id: str = field(metadata=field_options(alias="targetUserId"))
    user: str
    ts: int
    type: Literal["unfollow"] = "unfollow"


@dataclass
class SnapshotRequestMessage(Message):
    """
    Message sent by a receiver that wants the sender's current state.

    The server forwards it unchanged to the connections of the target user.
    """

    target_user_id: str = field(metadata=field_options(alias="targetUserId"))
    user: str
    ts: int
    type: Literal["req_snapshot"] = "req_snapshot"
