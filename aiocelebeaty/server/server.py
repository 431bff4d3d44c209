"""Celebeaty server: accepts realtime connections and relays sync events."""

from __future__ import annotations

import asyncio
import fnmatch
import logging
from collections.abc import Callable, Coroutine, Iterable
from contextlib import suppress
from dataclasses import dataclass
from urllib.parse import urlsplit

from aiohttp import web

from aiocelebeaty.clock import Clock, now_ms
from aiocelebeaty.config import ServerConfig
from aiocelebeaty.errors import TransportOriginRejected
from aiocelebeaty.models import DirectoryEntry, DirectoryMessage, Message

from .connection import Connection
from .follow import FollowGraph
from .presence import PresenceDirectory
from .router import MessageRouter

logger = logging.getLogger(__name__)

LOOPBACK_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})


class CelebeatyEvent:
    """Base event type used by CelebeatyServer.add_event_listener()."""


@dataclass
class UserConnectedEvent(CelebeatyEvent):
    """The first connection of a user was identified."""

    user_id: str


@dataclass
class UserDisconnectedEvent(CelebeatyEvent):
    """The last connection of a user was closed."""

    user_id: str


def is_origin_allowed(origin: str | None, host: str | None, allowed: Iterable[str]) -> bool:
    """
    Check a websocket Origin header.

    Requests without an Origin header come from non-browser clients and are
    accepted. Browser requests are accepted when they are same-origin, come
    from a loopback host, or match an entry of the allow-list (``*`` acts as
    a wildcard).
    """
    if not origin:
        return True
    try:
        parts = urlsplit(origin)
        hostname = parts.hostname
    except ValueError:
        return False
    if not parts.scheme or not parts.netloc or hostname is None:
        return False
    if host and parts.netloc.lower() == host.lower():
        return True
    if hostname.lower() in LOOPBACK_HOSTS:
        return True
    normalized = f"{parts.scheme}://{parts.netloc}".lower()
    for entry in allowed:
        entry = entry.strip().rstrip("/").lower()
        if not entry:
            continue
        if "*" in entry:
            if fnmatch.fnmatchcase(normalized, entry):
                return True
        elif normalized == entry:
            return True
    return False


class CelebeatyServer:
    """
    Realtime transport of celebeaty.

    Owns the connection registry and routes messages to the presence
    directory and the follow graph, which are injected so their lifecycle is
    tied to the server instead of the module.
    """

    _connections: set[Connection]
    _event_cbs: list[Callable[[CelebeatyEvent], Coroutine[None, None, None]]]
    _sweep_task: asyncio.Task[None] | None = None

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        config: ServerConfig | None = None,
        *,
        presence: PresenceDirectory | None = None,
        follows: FollowGraph | None = None,
        clock: Clock = now_ms,
    ) -> None:
        """Initialize a new server, creating empty registries when none are given."""
        self.loop = loop
        self._config = config or ServerConfig()
        self._clock = clock
        self._follows = follows if follows is not None else FollowGraph(clock)
        self._presence = (
            presence
            if presence is not None
            else PresenceDirectory(
                self._follows, liveness_window_ms=self._config.liveness_window_ms, clock=clock
            )
        )
        self._router = MessageRouter(self)
        self._connections = set()
        self._event_cbs = []
        logger.debug(
            "CelebeatyServer initialized: id=%s, name=%s",
            self._config.server_id,
            self._config.server_name,
        )

    @property
    def id(self) -> str:
        """Get the unique identifier of this server."""
        return self._config.server_id

    @property
    def name(self) -> str:
        """Get the name of this server."""
        return self._config.server_name

    @property
    def config(self) -> ServerConfig:
        """Settings of this server."""
        return self._config

    @property
    def presence(self) -> PresenceDirectory:
        """The directory of live senders."""
        return self._presence

    @property
    def follows(self) -> FollowGraph:
        """The follow graph."""
        return self._follows

    @property
    def router(self) -> MessageRouter:
        """The message router."""
        return self._router

    @property
    def connections(self) -> set[Connection]:
        """All identified connections."""
        return self._connections

    def create_app(self) -> web.Application:
        """Build the aiohttp application serving the websocket and health routes."""
        app = web.Application()
        app.router.add_get("/health", self._handle_health)
        app.router.add_get(self._config.path, self.on_connect)
        app.on_startup.append(self._on_startup)
        app.on_shutdown.append(self._on_shutdown)
        return app

    async def on_connect(self, request: web.Request) -> web.StreamResponse:
        """Handle an incoming WebSocket connection."""
        origin = request.headers.get("Origin")
        try:
            self.check_origin(origin, request.host)
        except TransportOriginRejected:
            logger.warning("Rejected connection from origin %s", origin)
            return web.Response(status=403)
        logger.debug("Incoming connection from %s", request.remote)
        conn = Connection(self, request, self._config.heartbeat_s)
        return await conn.handle()

    def check_origin(self, origin: str | None, host: str | None) -> None:
        """Raise TransportOriginRejected unless the origin may connect."""
        if not is_origin_allowed(origin, host, self._config.allowed_origins):
            raise TransportOriginRejected(origin)

    def register(self, conn: Connection) -> None:
        """Register an identified connection."""
        user_id = conn.user_id
        assert user_id is not None
        first = not self.connections_of(user_id)
        self._connections.add(conn)
        if first:
            self._signal_event(UserConnectedEvent(user_id))

    def unregister(self, conn: Connection) -> None:
        """
        Forget a closed connection.

        When it was the last connection of its user, the user goes offline and
        leaves everything they followed.
        """
        if conn not in self._connections:
            return
        self._connections.discard(conn)
        user_id = conn.user_id
        assert user_id is not None
        if self.connections_of(user_id):
            return
        went_offline = self._presence.go_offline(user_id)
        left = self._follows.remove_follower(user_id)
        logger.debug("%s disconnected (live=%s, followed=%d)", user_id, went_offline, len(left))
        if went_offline or left:
            self.broadcast_directory()
        self._signal_event(UserDisconnectedEvent(user_id))

    def connections_of(self, user_id: str) -> list[Connection]:
        """Return the open connections of a user."""
        return [conn for conn in self._connections if conn.user_id == user_id]

    def send_to_user(self, user_id: str, message: Message) -> int:
        """Send a message to every connection of a user, returns how many got it."""
        targets = self.connections_of(user_id)
        for conn in targets:
            conn.send_message(message)
        return len(targets)

    def broadcast(self, message: Message) -> None:
        """Send a message to every identified connection."""
        for conn in self._connections:
            conn.send_message(message)

    def build_directory(self) -> DirectoryMessage:
        """Build the directory message from the current presence state."""
        return DirectoryMessage(
            lives=[
                DirectoryEntry(
                    user_id=entry.user_id,
                    name=entry.display_name,
                    since=entry.since,
                    last_seen=entry.last_seen,
                    listeners=self._follows.listener_count_of(entry.user_id),
                    track=entry.last_known_track,
                )
                for entry in self._presence.snapshot()
            ],
            ts=self._clock(),
        )

    def broadcast_directory(self) -> None:
        """Push the current directory to every identified connection."""
        self.broadcast(self.build_directory())

    def sweep(self) -> list[str]:
        """Purge stale presence entries, broadcasting the directory if any expired."""
        expired = self._presence.expire()
        if expired:
            logger.info("Expired presence of %s", ", ".join(expired))
            self.broadcast_directory()
        return expired

    def add_event_listener(
        self, callback: Callable[[CelebeatyEvent], Coroutine[None, None, None]]
    ) -> Callable[[], None]:
        """
        Register a callback to listen for state changes of the server.

        State changes include:
        - A user connected
        - A user disconnected

        Returns a function to remove the listener.
        """
        self._event_cbs.append(callback)
        return lambda: self._event_cbs.remove(callback)

    def _signal_event(self, event: CelebeatyEvent) -> None:
        for cb in self._event_cbs:
            _ = self.loop.create_task(cb(event))

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.sweep_interval_s)
            try:
                self.sweep()
            except Exception:
                logger.exception("Presence sweep failed")

    async def _handle_health(self, _request: web.Request) -> web.Response:
        return web.json_response({"ok": True, "ts": self._clock()})

    async def _on_startup(self, _app: web.Application) -> None:
        self._sweep_task = self.loop.create_task(self._sweep_loop())

    async def _on_shutdown(self, _app: web.Application) -> None:
        if self._sweep_task is not None:
            _ = self._sweep_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._sweep_task
            self._sweep_task = None
        for conn in list(self._connections):
            await conn.disconnect()
