"""Presence messages for the celebeaty protocol.

Senders announce that they are live with ``presence`` messages. The server keeps
the directory of live senders and pushes it to every client as ``directory``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from mashumaro import field_options
from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin

from .types import Message, PresenceAction


@dataclass
class PresenceMessage(Message):
    """Message sent by a sender to go live, stop, or keep its entry alive."""

    action: PresenceAction
    user: str
    """User id of the sender."""
    ts: int
    """Sender clock in milliseconds since epoch."""
    name: str | None = None
    """Display name, only relevant for the start action."""
    type: Literal["presence"] = "presence"


@dataclass
class TrackSummary(DataClassORJSONMixin):
    """Last known track of a live sender, shown in the directory."""

    track_id: str = field(metadata=field_options(alias="trackId"))
    name: str
    artists: list[str]
    is_playing: bool = field(metadata=field_options(alias="isPlaying"))
    artwork_url: str | None = field(default=None, metadata=field_options(alias="artworkUrl"))

    class Config(BaseConfig):
        """Config for parsing json messages."""

        serialize_by_alias = True


@dataclass
class DirectoryEntry(DataClassORJSONMixin):
    """A live sender as listed in the directory."""

    user_id: str = field(metadata=field_options(alias="userId"))
    name: str
    since: int
    """Milliseconds since epoch when the sender went live."""
    last_seen: int = field(metadata=field_options(alias="lastSeen"))
    """Milliseconds since epoch of the last sign of life."""
    listeners: int = 0
    """Number of receivers currently following this sender."""
    track: TrackSummary | None = None

    class Config(BaseConfig):
        """Config for parsing json messages."""

        serialize_by_alias = True


@dataclass
class DirectoryMessage(Message):
    """Message sent by the server with the current list of live senders."""

    lives: list[DirectoryEntry]
    """Live senders, most recently seen first."""
    ts: int
    type: Literal["directory"] = "directory"
