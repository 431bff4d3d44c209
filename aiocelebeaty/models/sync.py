"""Sync messages for the celebeaty protocol.

A sender emits ``track`` whenever playback changes in a way a receiver has to
act on, and ``pause`` when playback stops. Every emission is self-contained: a
receiver that only sees the latest one can reconstruct the correct playback.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from mashumaro import field_options

from .types import Message, SyncKind


@dataclass
class TrackMessage(Message):
    """Message sent by a sender describing its current playback."""

    user: str
    """User id of the sender."""
    track_id: str = field(metadata=field_options(alias="trackId"))
    position_ms: int = field(metadata=field_options(alias="positionMs"))
    """Observed playback position at the time of emission."""
    name: str
    artists: list[str]
    is_playing: bool = field(metadata=field_options(alias="isPlaying"))
    ts: int
    """Sender clock in milliseconds since epoch at the time of emission."""
    artwork_url: str | None = field(default=None, metadata=field_options(alias="artworkUrl"))
    is_seek: bool = field(default=False, metadata=field_options(alias="isSeek"))
    """The position jumped further than the drift threshold."""
    is_snapshot: bool = field(default=False, metadata=field_options(alias="isSnapshot"))
    """Out-of-cadence emission (requested snapshot or keep-alive)."""
    type: Literal["track"] = "track"

    @property
    def kind(self) -> SyncKind:
        """Return the kind of this emission."""
        return SyncKind.TRACK


@dataclass
class PauseMessage(TrackMessage):
    """Message sent by a sender when playback was paused, ``is_playing`` is false."""

    type: Literal["pause"] = "pause"  # type: ignore[assignment]

    @property
    def kind(self) -> SyncKind:
        """Return the kind of this emission."""
        return SyncKind.PAUSE
