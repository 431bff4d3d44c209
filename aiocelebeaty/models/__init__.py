"""Models for the celebeaty realtime protocol."""

from __future__ import annotations

__all__ = [
    "PROTOCOL_VERSION",
    "DirectoryEntry",
    "DirectoryMessage",
    "FollowMessage",
    "HelloMessage",
    "Message",
    "PauseMessage",
    "PresenceAction",
    "PresenceMessage",
    "SnapshotRequestMessage",
    "SyncKind",
    "TrackMessage",
    "TrackSummary",
    "UnfollowMessage",
    "WelcomeMessage",
    "decode_message",
    "parse_message",
]

from aiocelebeaty.errors import MalformedMessage

from .core import HelloMessage, WelcomeMessage
from .follow import FollowMessage, SnapshotRequestMessage, UnfollowMessage
from .presence import DirectoryEntry, DirectoryMessage, PresenceMessage, TrackSummary
from .sync import PauseMessage, TrackMessage
from .types import Message, PresenceAction, SyncKind

PROTOCOL_VERSION = 1


def decode_message(data: str | bytes) -> Message:
    """Parse a raw websocket payload, raising MalformedMessage if it is not a known message."""
    try:
        return Message.from_json(data)
    except Exception as err:
        raise MalformedMessage(str(err)) from err


def parse_message(data: str | bytes) -> Message | None:
    """
    Parse a raw websocket payload into a message.

    Returns None for anything that is not a well-formed message of a known
    type. Malformed payloads are dropped, never reported back to the peer.
    """
    try:
        return decode_message(data)
    except MalformedMessage:
        return None
