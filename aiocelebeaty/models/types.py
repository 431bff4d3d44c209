"""Base message type and enums used by the celebeaty protocol."""

from dataclasses import dataclass
from enum import Enum

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin
from mashumaro.types import Discriminator


@dataclass
class Message(DataClassORJSONMixin):
    """
    Base class for every message exchanged over the realtime connection.

    Messages are relayed by the server mostly unchanged, so a single union is
    used for both directions.
    """

    class Config(BaseConfig):
        """Config for parsing json messages."""

        discriminator = Discriminator(field="type", include_subtypes=True)
        serialize_by_alias = True


class PresenceAction(Enum):
    """Actions carried by a presence message."""

    START = "start"
    """The user goes live and starts sharing."""
    STOP = "stop"
    """The user stops sharing."""
    PING = "ping"
    """Keep-alive for an existing presence entry."""


class SyncKind(Enum):
    """Classification of a sync emission."""

    TRACK = "track"
    """Playing state, including track changes and resumes."""
    PAUSE = "pause"
    """Playback was paused."""
