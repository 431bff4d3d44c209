"""Celebeaty client implementation to connect to a celebeaty server."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass
from types import TracebackType
from typing import Any, Self

from aiohttp import ClientSession, ClientWebSocketResponse, WSMessage, WSMsgType

from aiocelebeaty.models import DirectoryMessage, HelloMessage, Message, WelcomeMessage, parse_message

logger = logging.getLogger(__name__)

MessageCallback = Callable[[Message], Awaitable[None] | None]
DirectoryCallback = Callable[[DirectoryMessage], Awaitable[None] | None]
DisconnectCallback = Callable[[], Awaitable[None] | None]

WELCOME_TIMEOUT_S = 10
HEARTBEAT_S = 30


@dataclass(slots=True)
class ServerInfo:
    """Identity of a celebeaty server as announced in welcome."""

    server_id: str
    name: str
    version: int


class CelebeatyClient:
    """Async realtime client used by both senders and receivers."""

    def __init__(
        self,
        user_id: str,
        name: str,
        *,
        session: ClientSession | None = None,
    ) -> None:
        """Create a new client for the given identity."""
        self._user_id = user_id
        self._name = name
        self._session = session
        self._owns_session = session is None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._ws: ClientWebSocketResponse | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._send_lock = asyncio.Lock()
        self._server_info: ServerInfo | None = None
        self._welcome_event: asyncio.Event | None = None
        self._connected = False
        self._directory: DirectoryMessage | None = None
        self._message_callbacks: list[MessageCallback] = []
        self._directory_callbacks: list[DirectoryCallback] = []
        self._disconnect_callbacks: list[DisconnectCallback] = []

    @property
    def user_id(self) -> str:
        """User id announced to the server."""
        return self._user_id

    @property
    def name(self) -> str:
        """Display name announced to the server."""
        return self._name

    @property
    def server_info(self) -> ServerInfo | None:
        """Server that answered the last hello, None while disconnected."""
        return self._server_info

    @property
    def connected(self) -> bool:
        """Whether the websocket is open and the handshake completed."""
        return self._connected and self._ws is not None and not self._ws.closed

    @property
    def directory(self) -> DirectoryMessage | None:
        """Latest directory of live senders pushed by the server."""
        return self._directory

    async def connect(self, url: str) -> None:
        """Connect to a celebeaty server and identify with hello."""
        if self.connected:
            logger.debug("Connect called while connected to %s", url)
            return

        self._loop = asyncio.get_running_loop()
        if self._session is None:
            self._session = ClientSession()
        self._welcome_event = asyncio.Event()

        logger.info("Connecting to celebeaty server at %s", url)
        self._ws = await self._session.ws_connect(url, heartbeat=HEARTBEAT_S)
        self._connected = True
        self._reader_task = self._loop.create_task(self._reader_loop())
        await self.send(HelloMessage(user_id=self._user_id, name=self._name))

        try:
            await asyncio.wait_for(self._welcome_event.wait(), timeout=WELCOME_TIMEOUT_S)
        except TimeoutError as err:
            await self.disconnect()
            raise TimeoutError("Timed out waiting for welcome response") from err
        logger.info("Identified as %s on the server", self._user_id)

    async def disconnect(self) -> None:
        """Close the websocket, and the HTTP session if this client created it."""
        was_connected = self._connected
        self._connected = False
        current_task = asyncio.current_task(loop=self._loop) if self._loop else None

        if self._reader_task is not None:
            if self._reader_task is not current_task:
                _ = self._reader_task.cancel()
                with suppress(asyncio.CancelledError):
                    await self._reader_task
            self._reader_task = None
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
        self._server_info = None
        self._directory = None
        if was_connected:
            for callback in self._disconnect_callbacks:
                await self._call(callback)

    async def send(self, message: Message) -> None:
        """Send a message to the server."""
        if not self._ws or self._ws.closed:
            raise RuntimeError(f"Cannot send {type(message).__name__}, not connected")
        payload = message.to_json()
        async with self._send_lock:
            await self._ws.send_str(payload)

    def add_message_listener(self, callback: MessageCallback) -> Callable[[], None]:
        """
        Register a callback invoked for every message received from the server.

        Returns a function to remove the listener.
        """
        self._message_callbacks.append(callback)
        return lambda: self._message_callbacks.remove(callback)

    def add_directory_listener(self, callback: DirectoryCallback) -> Callable[[], None]:
        """Register a callback invoked on directory messages."""
        self._directory_callbacks.append(callback)
        return lambda: self._directory_callbacks.remove(callback)

    def add_disconnect_listener(self, callback: DisconnectCallback) -> Callable[[], None]:
        """Register a callback invoked once the connection is lost."""
        self._disconnect_callbacks.append(callback)
        return lambda: self._disconnect_callbacks.remove(callback)

    async def _reader_loop(self) -> None:
        assert self._ws is not None
        try:
            async for msg in self._ws:
                await self._handle_ws_message(msg)
        except asyncio.CancelledError:
            logger.debug("Reader task cancelled")
        except Exception:
            logger.exception("Reading from the server failed")
        finally:
            if self._connected:
                await self.disconnect()

    async def _handle_ws_message(self, msg: WSMessage) -> None:
        if msg.type is WSMsgType.TEXT:
            await self._handle_json_message(msg.data)
        elif msg.type is WSMsgType.ERROR:
            logger.error("WebSocket error: %s", self._ws.exception() if self._ws else "unknown")

    async def _handle_json_message(self, data: str) -> None:
        message = parse_message(data)
        if message is None:
            logger.debug("Dropping malformed server message")
            return

        match message:
            case WelcomeMessage():
                self._server_info = ServerInfo(
                    server_id=message.server_id, name=message.name, version=message.version
                )
                if self._welcome_event:
                    self._welcome_event.set()
                logger.info(
                    "Server %s (%s) speaks protocol version %s",
                    message.name,
                    message.server_id,
                    message.version,
                )
            case DirectoryMessage():
                self._directory = message
                for callback in self._directory_callbacks:
                    await self._call(callback, message)

        for callback in self._message_callbacks:
            await self._call(callback, message)

    async def _call(self, callback: Callable[..., Any], *args: Any) -> None:
        try:
            result = callback(*args)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Listener %s raised", callback)

    async def __aenter__(self) -> Self:
        """Return the client, connect separately with connect()."""
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Disconnect on exit."""
        await self.disconnect()
