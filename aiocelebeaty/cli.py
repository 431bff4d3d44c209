"""Command-line interface for running a celebeaty server, sender or receiver."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import socket
import sys
from collections.abc import Awaitable, Callable, Sequence
from typing import TYPE_CHECKING, cast

if TYPE_CHECKING:
    from zeroconf import ServiceListener

import aioconsole
from aiohttp import ClientError, ClientSession, web
from zeroconf.asyncio import AsyncServiceBrowser, AsyncServiceInfo, AsyncZeroconf

from aiocelebeaty.client import CelebeatyClient, ReceiverSyncEngine, SenderSyncEngine
from aiocelebeaty.config import ProviderConfig, ServerConfig, SyncConfig, parse_origins
from aiocelebeaty.errors import CelebeatyError
from aiocelebeaty.models import DirectoryMessage, Message
from aiocelebeaty.provider import ProviderClient
from aiocelebeaty.server import CelebeatyServer
from aiocelebeaty.tokens import SessionIdentity, TokenManager

logger = logging.getLogger(__name__)

SERVICE_TYPE = "_celebeaty._tcp.local."
DEFAULT_PATH = "/ws"
SESSION_KEY = "cli"
MAX_BACKOFF_S = 300.0


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(description="Share what you listen to, or listen along")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level to use",
    )
    commands = parser.add_subparsers(dest="command", required=True)
    server_defaults = ServerConfig()
    sync_defaults = SyncConfig()

    serve = commands.add_parser("serve", help="Run the realtime server")
    serve.add_argument("--host", default=server_defaults.host, help="Address to listen on")
    serve.add_argument(
        "--port",
        type=int,
        default=int(os.environ.get("CELEBEATY_PORT", server_defaults.port)),
        help="Port to listen on",
    )
    serve.add_argument("--name", default=server_defaults.server_name, help="Server name")
    serve.add_argument(
        "--allowed-origins",
        default=os.environ.get("CELEBEATY_ALLOWED_ORIGINS", ""),
        help="Comma separated browser origins allowed to connect, '*' is a wildcard",
    )
    serve.add_argument(
        "--no-advertise",
        action="store_true",
        help="Do not advertise the server via mDNS",
    )

    for name, help_text in (
        ("share", "Share your playback with your followers"),
        ("listen", "Follow someone and mirror their playback"),
    ):
        sub = commands.add_parser(name, help=help_text)
        sub.add_argument(
            "--url",
            default=None,
            help="WebSocket URL of the celebeaty server. If omitted, discover via mDNS.",
        )
        sub.add_argument(
            "--access-token",
            default=os.environ.get("SPOTIFY_ACCESS_TOKEN"),
            help="Provider access token",
        )
        sub.add_argument(
            "--refresh-token",
            default=os.environ.get("SPOTIFY_REFRESH_TOKEN"),
            help="Provider refresh token, used to renew the access token",
        )
        sub.add_argument("--client-id", default=os.environ.get("SPOTIFY_CLIENT_ID", ""))
        sub.add_argument("--client-secret", default=os.environ.get("SPOTIFY_CLIENT_SECRET", ""))
        sub.add_argument(
            "--user-id",
            default=None,
            help="Identify as this user instead of asking the provider",
        )
        sub.add_argument("--name", default=None, help="Display name to use with --user-id")
        sub.add_argument(
            "--poll-interval-ms",
            type=int,
            default=sync_defaults.poll_interval_ms,
            help="How often the provider is polled while sharing",
        )
        sub.add_argument(
            "--drift-threshold-ms",
            type=int,
            default=sync_defaults.drift_threshold_ms,
            help="Position drift that counts as a seek",
        )
        if name == "listen":
            sub.add_argument("--follow", default=None, help="User id to follow right away")
    return parser.parse_args(argv)


def _build_service_url(host: str, port: int, properties: dict[bytes, bytes | None]) -> str:
    """Construct WebSocket URL from mDNS service info."""
    path_raw = properties.get(b"path")
    path = path_raw.decode("utf-8", "ignore") if isinstance(path_raw, bytes) else DEFAULT_PATH
    if not path:
        path = DEFAULT_PATH
    if not path.startswith("/"):
        path = "/" + path
    host_fmt = f"[{host}]" if ":" in host else host
    return f"ws://{host_fmt}:{port}{path}"


class _ServiceDiscoveryListener:
    """Listens for celebeaty server advertisements via mDNS."""

    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        self._current_url: str | None = None
        self._first_result: asyncio.Future[str] = loop.create_future()
        self.tasks: set[asyncio.Task[None]] = set()

    @property
    def current_url(self) -> str | None:
        """Get the current discovered server URL, or None if no servers."""
        return self._current_url

    async def wait_for_first(self) -> str:
        """Wait for the first server to be discovered."""
        return await self._first_result

    async def _process_service_info(
        self, zeroconf: AsyncZeroconf, service_type: str, name: str
    ) -> None:
        info = await zeroconf.async_get_service_info(service_type, name)
        if info is None or info.port is None:
            return
        addresses = info.parsed_addresses()
        if not addresses:
            return
        url = _build_service_url(addresses[0], info.port, info.properties)
        self._current_url = url
        if not self._first_result.done():
            self._first_result.set_result(url)

    def _schedule(self, zeroconf: AsyncZeroconf, service_type: str, name: str) -> None:
        task = self._loop.create_task(self._process_service_info(zeroconf, service_type, name))
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)

    def add_service(self, zeroconf: AsyncZeroconf, service_type: str, name: str) -> None:
        self._schedule(zeroconf, service_type, name)

    def update_service(self, zeroconf: AsyncZeroconf, service_type: str, name: str) -> None:
        self._schedule(zeroconf, service_type, name)

    def remove_service(self, _zeroconf: AsyncZeroconf, _service_type: str, _name: str) -> None:
        """Handle service removal (server offline)."""
        self._current_url = None


class ServiceDiscovery:
    """Manages continuous discovery of celebeaty servers via mDNS."""

    def __init__(self) -> None:
        """Initialize the service discovery manager."""
        self._listener: _ServiceDiscoveryListener | None = None
        self._browser: AsyncServiceBrowser | None = None
        self._zeroconf: AsyncZeroconf | None = None

    async def start(self) -> None:
        """Start continuous discovery (keeps running until stop() is called)."""
        loop = asyncio.get_running_loop()
        self._listener = _ServiceDiscoveryListener(loop)
        self._zeroconf = AsyncZeroconf()
        await self._zeroconf.__aenter__()
        try:
            self._browser = AsyncServiceBrowser(
                self._zeroconf.zeroconf, SERVICE_TYPE, cast("ServiceListener", self._listener)
            )
        except Exception:
            await self.stop()
            raise

    async def wait_for_first_server(self) -> str:
        """Wait indefinitely for the first server to be discovered."""
        if self._listener is None:
            raise RuntimeError("Discovery not started. Call start() first.")
        return await self._listener.wait_for_first()

    def current_url(self) -> str | None:
        """Get the current discovered server URL, or None if no servers."""
        return self._listener.current_url if self._listener else None

    async def stop(self) -> None:
        """Stop discovery and clean up resources."""
        if self._browser:
            await self._browser.async_cancel()
            self._browser = None
        if self._zeroconf:
            await self._zeroconf.__aexit__(None, None, None)
            self._zeroconf = None
        self._listener = None


class ServiceAdvertisement:
    """Advertises a running server via mDNS."""

    def __init__(self, name: str, port: int, path: str) -> None:
        """Prepare the advertisement of a server listening on ``port``."""
        self._zeroconf: AsyncZeroconf | None = None
        self._info = AsyncServiceInfo(
            SERVICE_TYPE,
            f"{name}.{SERVICE_TYPE}",
            addresses=[socket.inet_aton(_local_address())],
            port=port,
            properties={"path": path},
            server=f"{socket.gethostname()}.local.",
        )

    async def start(self) -> None:
        """Register the service."""
        self._zeroconf = AsyncZeroconf()
        await self._zeroconf.async_register_service(self._info)
        logger.info("Advertising %s via mDNS", self._info.name)

    async def stop(self) -> None:
        """Unregister the service."""
        if self._zeroconf is None:
            return
        await self._zeroconf.async_unregister_service(self._info)
        await self._zeroconf.async_close()
        self._zeroconf = None


def _local_address() -> str:
    """Return the address used for outgoing traffic, loopback when offline."""
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        try:
            sock.connect(("10.255.255.255", 1))
            return str(sock.getsockname()[0])
        except OSError:
            return "127.0.0.1"


async def run_server(args: argparse.Namespace) -> int:
    """Run the realtime server until interrupted."""
    config = ServerConfig(
        server_name=args.name,
        allowed_origins=parse_origins(args.allowed_origins),
        host=args.host,
        port=args.port,
    )
    loop = asyncio.get_running_loop()
    server = CelebeatyServer(loop, config)
    runner = web.AppRunner(server.create_app())
    await runner.setup()
    site = web.TCPSite(runner, config.host, config.port)
    await site.start()
    logger.info("Listening on ws://%s:%d%s", config.host, config.port, config.path)
    _print_event(f"Server '{config.server_name}' running on port {config.port}")

    advertisement: ServiceAdvertisement | None = None
    if not args.no_advertise:
        advertisement = ServiceAdvertisement(config.server_name, config.port, config.path)
        try:
            await advertisement.start()
        except OSError as err:
            logger.warning("Could not advertise via mDNS: %s", err)
            advertisement = None

    stop_event = asyncio.Event()
    loop.add_signal_handler(signal.SIGINT, stop_event.set)
    loop.add_signal_handler(signal.SIGTERM, stop_event.set)
    try:
        await stop_event.wait()
    finally:
        loop.remove_signal_handler(signal.SIGINT)
        loop.remove_signal_handler(signal.SIGTERM)
        if advertisement is not None:
            await advertisement.stop()
        await runner.cleanup()
    return 0


async def _sleep_interruptible(duration: float, keyboard_task: asyncio.Task[None]) -> bool:
    """Sleep with keyboard interrupt support. Return True if interrupted."""
    remaining = duration
    while remaining > 0 and not keyboard_task.done():
        await asyncio.sleep(min(0.5, remaining))
        remaining -= 0.5
    return keyboard_task.done()


async def _connection_loop(
    client: CelebeatyClient,
    discovery: ServiceDiscovery,
    initial_url: str,
    keyboard_task: asyncio.Task[None],
    on_connected: Callable[[], Awaitable[None]],
) -> None:
    """
    Run the connection loop with automatic reconnection on disconnect.

    Connects to the server, runs ``on_connected`` to restore sharing or
    following, waits for disconnect, then retries. Uses exponential backoff
    (up to 5 min) for errors.
    """
    url = initial_url
    error_backoff = 1.0

    while not keyboard_task.done():
        try:
            await client.connect(url)
            _print_event(f"Connected to {url}")
            error_backoff = 1.0
            await on_connected()

            while client.connected and not keyboard_task.done():  # noqa: ASYNC110
                await asyncio.sleep(0.5)
            if keyboard_task.done():
                break

            logger.info("Connection lost")
            _print_event("Connection lost")
            if new_url := discovery.current_url():
                url = new_url
            _print_event(f"Reconnecting to {url}...")
        except (TimeoutError, OSError, ClientError) as e:
            logger.debug(
                "Connection error (%s), retrying in %.0fs", type(e).__name__, error_backoff
            )
            _print_event(f"Connection error, retrying in {error_backoff:.0f}s...")
            if await _sleep_interruptible(error_backoff, keyboard_task):
                break
            if (new_url := discovery.current_url()) and new_url != url:
                logger.info("Server URL changed to %s, reconnecting immediately", new_url)
                url = new_url
                error_backoff = 1.0
            else:
                error_backoff = min(error_backoff * 2, MAX_BACKOFF_S)
        except Exception:
            logger.exception("Unexpected error during connection")
            _print_event("Unexpected error occurred")
            await asyncio.sleep(error_backoff)
            error_backoff = min(error_backoff * 2, MAX_BACKOFF_S)


async def _identify(
    args: argparse.Namespace, tokens: TokenManager, provider: ProviderClient
) -> SessionIdentity:
    if args.user_id:
        return SessionIdentity(user_id=args.user_id, display_name=args.name or args.user_id)
    return await tokens.identify(SESSION_KEY, provider)


async def run_peer(args: argparse.Namespace) -> int:
    """Run a sender (share) or receiver (listen) until the user quits."""
    provider_config = ProviderConfig(client_id=args.client_id, client_secret=args.client_secret)
    sync_config = SyncConfig(
        poll_interval_ms=args.poll_interval_ms, drift_threshold_ms=args.drift_threshold_ms
    )

    async with ClientSession() as session:
        tokens = TokenManager(session, provider_config)
        tokens.login(
            SESSION_KEY, access_token=args.access_token, refresh_token=args.refresh_token
        )
        provider = ProviderClient(session, provider_config)
        try:
            identity = await _identify(args, tokens, provider)
        except CelebeatyError as err:
            logger.error("Could not identify with the provider: %s", err)  # noqa: TRY400
            return 1
        _print_event(f"Signed in as {identity.display_name} ({identity.user_id})")

        client = CelebeatyClient(identity.user_id, identity.display_name, session=session)

        async def publish(message: Message) -> None:
            if not client.connected:
                logger.debug("Not connected, dropping %s", message.type)
                return
            await client.send(message)

        engine: SenderSyncEngine | ReceiverSyncEngine
        if args.command == "share":
            engine = SenderSyncEngine(
                identity, provider, tokens, SESSION_KEY, publish, config=sync_config
            )
        else:
            engine = ReceiverSyncEngine(
                identity, provider, tokens, SESSION_KEY, publish, config=sync_config
            )
        client.add_message_listener(engine.handle_message)
        engine.add_hint_listener(lambda hint: _print_event(hint) if hint else None)

        discovery = ServiceDiscovery()
        await discovery.start()
        try:
            url = args.url
            if url is None:
                _print_event("Searching for celebeaty server...")
                try:
                    url = await discovery.wait_for_first_server()
                except Exception:
                    logger.exception("Failed to discover server")
                    return 1
                _print_event(f"Found server at {url}")

            if isinstance(engine, SenderSyncEngine):
                on_connected = _sender_restore(engine)
                keyboard = _sender_keyboard_loop(engine)
            else:
                on_connected = _receiver_restore(engine, args.follow)
                keyboard = _receiver_keyboard_loop(engine, client)
            _print_instructions(args.command)
            keyboard_task = asyncio.create_task(keyboard)

            loop = asyncio.get_running_loop()

            def signal_handler() -> None:
                logger.debug("Received interrupt signal, shutting down...")
                keyboard_task.cancel()

            loop.add_signal_handler(signal.SIGINT, signal_handler)
            try:
                await _connection_loop(client, discovery, url, keyboard_task, on_connected)
            except asyncio.CancelledError:  # pragma: no cover - cancellation path
                logger.debug("Connection loop cancelled")
            finally:
                loop.remove_signal_handler(signal.SIGINT)
                if isinstance(engine, SenderSyncEngine):
                    await engine.stop()
                else:
                    await engine.unfollow()
                await client.disconnect()
        finally:
            await discovery.stop()
    return 0


def _sender_restore(engine: SenderSyncEngine) -> Callable[[], Awaitable[None]]:
    async def restore() -> None:
        # the server forgot our presence with the old connection
        await engine.stop()
        await engine.start()

    return restore


def _receiver_restore(
    engine: ReceiverSyncEngine, initial_target: str | None
) -> Callable[[], Awaitable[None]]:
    pending = [initial_target] if initial_target else []

    async def restore() -> None:
        target = engine.target or (pending.pop() if pending else None)
        if target is None:
            return
        # the follow edge went away with the old connection
        await engine.unfollow()
        await engine.follow(target)

    return restore


async def _sender_keyboard_loop(engine: SenderSyncEngine) -> None:
    try:
        while True:
            try:
                line = await aioconsole.ainput()
            except EOFError:
                break
            command = line.strip().lower()
            if not command:
                continue
            if command in {"quit", "exit", "q"}:
                break
            if command == "start":
                await engine.start()
            elif command == "stop":
                await engine.stop()
            elif command == "status":
                _print_event(_describe_sender(engine))
            else:
                _print_event("Unknown command")
    except asyncio.CancelledError:
        logger.debug("Keyboard loop cancelled, exiting gracefully")
        raise


async def _receiver_keyboard_loop(engine: ReceiverSyncEngine, client: CelebeatyClient) -> None:
    try:
        while True:
            try:
                line = await aioconsole.ainput()
            except EOFError:
                break
            raw_line = line.strip()
            if not raw_line:
                continue
            keyword, _, rest = raw_line.partition(" ")
            keyword = keyword.lower()
            rest = rest.strip()
            if keyword in {"quit", "exit", "q"}:
                break
            try:
                await _handle_receiver_command(engine, client, keyword, rest)
            except CelebeatyError as err:
                _print_event(f"Error: {err}")
    except asyncio.CancelledError:
        logger.debug("Keyboard loop cancelled, exiting gracefully")
        raise


async def _handle_receiver_command(
    engine: ReceiverSyncEngine, client: CelebeatyClient, keyword: str, rest: str
) -> None:
    match keyword:
        case "lives" | "ls":
            _print_event(_describe_directory(client.directory))
        case "follow" | "f":
            if not rest:
                _print_event("Usage: follow <user id>")
                return
            await engine.follow(rest)
        case "unfollow" | "u":
            await engine.unfollow()
        case "sync" | "replay":
            if await engine.replay() is None:
                _print_event("Nothing to sync yet")
        case "devices":
            for device in await engine.list_devices():
                active = " (active)" if device.is_active else ""
                _print_event(f"- {device.name} [{device.type}]{active}")
        case "device":
            if not rest:
                _print_event("Usage: device <name>")
                return
            device = await engine.select_device_and_transfer(rest)
            _print_event(f"Playing on {device.name}")
        case "status":
            _print_event(_describe_receiver(engine))
        case _:
            _print_event("Unknown command")


def _describe_sender(engine: SenderSyncEngine) -> str:
    lines = [f"State: {engine.state.value}"]
    if engine.last_emitted is not None:
        last = engine.last_emitted
        playing = "playing" if last.is_playing else "paused"
        lines.append(f"Last sent: {last.track_id} at {last.position_ms // 1000}s ({playing})")
    if engine.hint:
        lines.append(engine.hint)
    return "\n".join(lines)


def _describe_receiver(engine: ReceiverSyncEngine) -> str:
    if engine.target is None:
        return "Not following anyone"
    lines = [f"Following: {engine.target}"]
    state = engine.reconciliation
    position = engine.displayed_position_ms()
    if state is not None and position is not None:
        playing = "playing" if state.is_playing else "paused"
        lines.append(f"Track: {state.track_id} at {position // 1000}s ({playing})")
    if engine.hint:
        lines.append(engine.hint)
    return "\n".join(lines)


def _describe_directory(directory: DirectoryMessage | None) -> str:
    if directory is None or not directory.lives:
        return "Nobody is live"
    lines = []
    for entry in directory.lives:
        track = f" - {entry.track.name} by {', '.join(entry.track.artists)}" if entry.track else ""
        lines.append(f"{entry.name} ({entry.user_id}), {entry.listeners} listening{track}")
    return "\n".join(lines)


def _print_event(message: str) -> None:
    print(message, flush=True)  # noqa: T201


def _print_instructions(command: str) -> None:
    if command == "share":
        text = "Commands: start, stop, status, quit(q)"
    else:
        text = (
            "Commands: lives(ls), follow(f) <id>, unfollow(u), sync, devices, device <name>, "
            "status, quit(q)"
        )
    print(text, flush=True)  # noqa: T201


async def main_async(argv: Sequence[str] | None = None) -> int:
    """Entry point executing the asynchronous CLI workflow."""
    args = parse_args(list(argv) if argv is not None else None)
    logging.basicConfig(level=getattr(logging, args.log_level))
    if args.command == "serve":
        return await run_server(args)
    if not args.access_token and not args.refresh_token:
        logger.error("An access token or a refresh token is required")
        return 2
    return await run_peer(args)


def main() -> int:
    """Run the CLI."""
    return asyncio.run(main_async(sys.argv[1:]))


if __name__ == "__main__":  # pragma: no cover - CLI entry
    raise SystemExit(main())
