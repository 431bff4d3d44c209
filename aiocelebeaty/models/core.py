"""Core messages for the celebeaty protocol.

These messages establish who is on the other end of a connection. The client
identifies itself with ``hello`` and the server answers with ``welcome``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from mashumaro import field_options

from .types import Message


@dataclass
class HelloMessage(Message):
    """Message sent by the client to identify itself."""

    user_id: str = field(metadata=field_options(alias="userId"))
    """Provider user id of the connecting user."""
    name: str
    """Display name of the connecting user."""
    type: Literal["hello"] = "hello"


@dataclass
class WelcomeMessage(Message):
    """Message sent by the server in response to hello."""

    server_id: str = field(metadata=field_options(alias="serverId"))
    """Identifier of the server."""
    name: str
    """Friendly name of the server."""
    version: int
    """Protocol version spoken by the server."""
    type: Literal["welcome"] = "welcome"
