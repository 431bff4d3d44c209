"""Routes incoming realtime messages to the presence, follow and sync handlers."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from aiocelebeaty.models import (
    PROTOCOL_VERSION,
    FollowMessage,
    HelloMessage,
    Message,
    PresenceAction,
    PresenceMessage,
    SnapshotRequestMessage,
    TrackMessage,
    TrackSummary,
    UnfollowMessage,
    WelcomeMessage,
)
from aiocelebeaty.tokens import SessionIdentity

from .connection import Connection

logger = logging.getLogger(__name__)

# pyright: reportImportCycles=none
if TYPE_CHECKING:
    from .server import CelebeatyServer


class MessageRouter:
    """
    Dispatches each message by its type to exactly one handler.

    Handlers only touch in-memory state and enqueue outgoing messages, they
    never wait on I/O. Every handler therefore runs to completion before the
    next message is looked at, which keeps the directory and the follow graph
    consistent without locks.
    """

    def __init__(self, server: CelebeatyServer) -> None:
        """Create a router for the given server."""
        self._server = server

    def dispatch(self, conn: Connection, message: Message) -> None:
        """Handle a message received on a connection."""
        identity = conn.identity
        if identity is None:
            if isinstance(message, HelloMessage):
                self._on_hello(conn, message)
            else:
                logger.warning(
                    "Dropping %s received before hello", type(message).__name__
                )
            return

        match message:
            case HelloMessage():
                self._on_hello(conn, message)
            case PresenceMessage():
                self._on_presence(identity, message)
            case FollowMessage():
                self._on_follow(identity, message)
            case UnfollowMessage():
                self._on_unfollow(identity, message)
            case SnapshotRequestMessage():
                self._on_snapshot_request(identity, message)
            case TrackMessage():
                # also matches PauseMessage
                self._on_sync(identity, message)
            case _:
                logger.debug("Ignoring %s from %s", type(message).__name__, identity.user_id)

    def _on_hello(self, conn: Connection, message: HelloMessage) -> None:
        if conn.identity is not None:
            if conn.identity.user_id != message.user_id:
                logger.warning(
                    "Ignoring hello as %s on a connection identified as %s",
                    message.user_id,
                    conn.identity.user_id,
                )
            return
        conn.identify(SessionIdentity(user_id=message.user_id, display_name=message.name))
        self._server.register(conn)
        conn.send_message(
            WelcomeMessage(
                server_id=self._server.id, name=self._server.name, version=PROTOCOL_VERSION
            )
        )
        conn.send_message(self._server.build_directory())

    def _on_presence(self, identity: SessionIdentity, message: PresenceMessage) -> None:
        presence = self._server.presence
        match message.action:
            case PresenceAction.START:
                name = message.name or identity.display_name
                presence.go_live(SessionIdentity(identity.user_id, name))
                self._server.broadcast_directory()
            case PresenceAction.STOP:
                if presence.go_offline(identity.user_id):
                    self._server.broadcast_directory()
            case PresenceAction.PING:
                if not presence.ping(identity.user_id):
                    logger.debug("Ping from %s who is not live", identity.user_id)

    def _on_follow(self, identity: SessionIdentity, message: FollowMessage) -> None:
        target = message.target_user_id
        if not self._server.presence.is_live(target):
            logger.debug("%s tried to follow %s who is not live", identity.user_id, target)
            return
        if self._server.follows.follow(identity.user_id, target):
            logger.info("%s follows %s", identity.user_id, target)
            self._server.broadcast_directory()

    def _on_unfollow(self, identity: SessionIdentity, message: UnfollowMessage) -> None:
        if self._server.follows.unfollow(identity.user_id, message.target_user_id):
            logger.info("%s unfollowed %s", identity.user_id, message.target_user_id)
            self._server.broadcast_directory()

    def _on_snapshot_request(
        self, identity: SessionIdentity, message: SnapshotRequestMessage
    ) -> None:
        target = message.target_user_id
        if identity.user_id not in self._server.follows.audience_of(target):
            logger.debug("%s requested a snapshot of %s without following", identity.user_id, target)
            return
        message.user = identity.user_id
        self._server.send_to_user(target, message)

    def _on_sync(self, identity: SessionIdentity, message: TrackMessage) -> None:
        presence = self._server.presence
        message.user = identity.user_id
        summary = TrackSummary(
            track_id=message.track_id,
            name=message.name,
            artists=list(message.artists),
            is_playing=message.is_playing,
            artwork_url=message.artwork_url,
        )
        if not presence.touch(identity.user_id, summary):
            logger.debug("Dropping %s from %s who is not live", message.type, identity.user_id)
            return
        audience = self._server.follows.audience_of(identity.user_id)
        logger.debug(
            "Relaying %s of %s to %d receivers", message.type, identity.user_id, len(audience)
        )
        for follower_id in audience:
            self._server.send_to_user(follower_id, message)
