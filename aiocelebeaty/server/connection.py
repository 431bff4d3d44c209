"""A single realtime connection of a user to the server."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import TYPE_CHECKING

from aiohttp import WSMessage, WSMsgType, web

from aiocelebeaty.models import Message, parse_message
from aiocelebeaty.tokens import SessionIdentity

MAX_PENDING_MSG = 512
PREPARE_TIMEOUT_S = 10

logger = logging.getLogger(__name__)

# The cyclic import is not an issue during runtime, so hide it
# pyright: reportImportCycles=none
if TYPE_CHECKING:
    from .server import CelebeatyServer


class Connection:
    """
    A WebSocket connection accepted by a CelebeatyServer.

    Outgoing messages are queued and written by a dedicated writer task, so
    handlers never wait on the network. Delivery is best-effort: when the
    queue of a slow peer is full, new messages for it are dropped.
    """

    _server: CelebeatyServer
    _request: web.Request
    _wsock: web.WebSocketResponse
    _identity: SessionIdentity | None = None
    _writer_task: asyncio.Task[None] | None = None
    """Task responsible for sending queued messages."""
    _to_write: asyncio.Queue[Message]
    _closing: bool = False
    _logger: logging.Logger

    def __init__(self, server: CelebeatyServer, request: web.Request, heartbeat_s: float) -> None:
        """
        DO NOT CALL THIS CONSTRUCTOR. INTERNAL USE ONLY.

        Use CelebeatyServer.on_connect instead.
        """
        self._server = server
        self._request = request
        self._wsock = web.WebSocketResponse(heartbeat=heartbeat_s)
        self._to_write = asyncio.Queue(maxsize=MAX_PENDING_MSG)
        self._logger = logger.getChild(f"unknown-{request.remote}")

    @property
    def identity(self) -> SessionIdentity | None:
        """Identity announced with hello, None before that."""
        return self._identity

    @property
    def user_id(self) -> str | None:
        """User id of the identity, None before hello."""
        return self._identity.user_id if self._identity else None

    @property
    def closed(self) -> bool:
        """Whether the underlying websocket is closed or closing."""
        return self._closing or self._wsock.closed

    @property
    def websocket(self) -> web.WebSocketResponse:
        """The underlying WebSocket response."""
        return self._wsock

    def identify(self, identity: SessionIdentity) -> None:
        """
        Bind the connection to an identity.

        The identity is immutable for the lifetime of the connection.
        """
        assert self._identity is None
        self._identity = identity
        self._logger = logger.getChild(identity.user_id)
        self._logger.info("Identified as %s", identity.display_name)

    def send_message(self, message: Message) -> None:
        """Enqueue a message to be sent to this connection."""
        if self.closed:
            return
        try:
            self._to_write.put_nowait(message)
        except asyncio.QueueFull:
            self._logger.warning("Send queue full, dropping %s", type(message).__name__)

    async def handle(self) -> web.WebSocketResponse:
        """Handle the complete websocket connection lifecycle."""
        try:
            async with asyncio.timeout(PREPARE_TIMEOUT_S):
                await self._wsock.prepare(self._request)
        except TimeoutError:
            self._logger.warning("Timeout preparing request")
            return self._wsock

        self._logger.info("Connection established")
        self._writer_task = asyncio.get_running_loop().create_task(self._writer())
        try:
            await self._run_message_loop()
        finally:
            await self.disconnect()
        return self._wsock

    async def disconnect(self) -> None:
        """Close the connection and release it from the server."""
        if self._closing:
            return
        self._closing = True
        if self._writer_task and not self._writer_task.done():
            _ = self._writer_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._writer_task
        if not self._wsock.closed:
            try:
                _ = await self._wsock.close()
            except Exception:
                self._logger.exception("Failed to close websocket")
        self._server.unregister(self)
        self._logger.info("Connection closed")

    async def _run_message_loop(self) -> None:
        wsock = self._wsock
        loop = asyncio.get_running_loop()
        receive_task: asyncio.Task[WSMessage] | None = None
        try:
            while not wsock.closed:
                receive_task = loop.create_task(wsock.receive())
                assert self._writer_task is not None
                done, pending = await asyncio.wait(
                    [receive_task, self._writer_task],
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if self._writer_task in done:
                    self._logger.debug("Writer task ended, closing connection")
                    if receive_task in pending:
                        _ = receive_task.cancel()
                    break

                msg = await receive_task
                if msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED):
                    break
                if msg.type == WSMsgType.ERROR:
                    self._logger.debug("Websocket error: %s", wsock.exception())
                    break
                if msg.type != WSMsgType.TEXT:
                    continue

                message = parse_message(msg.data)
                if message is None:
                    self._logger.debug("Dropping malformed message")
                    continue
                try:
                    self._server.router.dispatch(self, message)
                except Exception:
                    self._logger.exception("Error handling %s", type(message).__name__)
        except asyncio.CancelledError:
            self._logger.debug("Connection handler cancelled")
        except (ConnectionError, TimeoutError) as err:
            self._logger.debug("Error receiving message: %s", err)
        finally:
            if receive_task and not receive_task.done():
                _ = receive_task.cancel()

    async def _writer(self) -> None:
        wsock = self._wsock
        try:
            while not wsock.closed:
                message = await self._to_write.get()
                try:
                    await wsock.send_str(message.to_json())
                except ConnectionError:
                    self._logger.debug("Connection error while sending, ending writer task")
                    break
        except asyncio.CancelledError:
            raise
        except Exception:
            self._logger.exception("Error in writer task")
