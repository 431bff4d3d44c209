"""Receiver side of the sync engine: mirrors the playback of a followed sender."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from contextlib import suppress
from dataclasses import dataclass
from enum import Enum

from aiocelebeaty.clock import Clock, now_ms
from aiocelebeaty.config import SyncConfig
from aiocelebeaty.errors import AuthError, NoPlaybackDevice, ProviderError, ProviderRateLimited
from aiocelebeaty.models import (
    DirectoryMessage,
    FollowMessage,
    Message,
    SnapshotRequestMessage,
    TrackMessage,
    UnfollowMessage,
)
from aiocelebeaty.provider import Device, ProviderClient, track_uri
from aiocelebeaty.tokens import SessionIdentity, TokenManager

logger = logging.getLogger(__name__)

Publish = Callable[[Message], Awaitable[None]]
HintCallback = Callable[[str], None]

WATCHDOG_CHECK_S = 10


@dataclass(frozen=True, slots=True)
class ReconciliationState:
    """What the followed sender plays, as told by its latest sync event."""

    track_id: str
    base_position_ms: int
    base_timestamp: int
    """Sender clock milliseconds of the event."""
    is_playing: bool

    @classmethod
    def from_event(cls, event: TrackMessage) -> ReconciliationState:
        """Take the fields of an event verbatim."""
        return cls(
            track_id=event.track_id,
            base_position_ms=event.position_ms,
            base_timestamp=event.ts,
            is_playing=event.is_playing,
        )

    def position_at(self, now: int) -> int:
        """Extrapolate the sender position at local time ``now``."""
        if not self.is_playing:
            return self.base_position_ms
        return self.base_position_ms + max(0, now - self.base_timestamp)


class ReceiverState(Enum):
    """States of a receiver."""

    IDLE = "idle"
    FOLLOWING = "following"


class ReconcileAction(Enum):
    """Provider command needed to converge on the sender's playback."""

    NONE = "none"
    PAUSE = "pause"
    RESUME = "resume"
    """Play the same track again at an explicit position after a pause."""
    PLAY = "play"
    SEEK = "seek"


@dataclass(frozen=True, slots=True)
class ReconcilePlan:
    """The command to issue and the position it targets."""

    action: ReconcileAction
    position_ms: int | None = None


def plan_reconciliation(
    event: TrackMessage,
    *,
    local_track_id: str | None,
    pause_pending: bool,
    now: int,
) -> ReconcilePlan:
    """
    Decide which provider command brings local playback in line with an event.

    A paused sender only pauses locally, without touching the position. A
    resume after a pause always carries an explicit position since the
    provider does not keep it across a pause. Other positions are adjusted by
    the transport latency ``now - event.ts``.
    """
    if not event.is_playing:
        return ReconcilePlan(ReconcileAction.PAUSE)
    position = event.position_ms + max(0, now - event.ts)
    if pause_pending and local_track_id == event.track_id:
        return ReconcilePlan(ReconcileAction.RESUME, position)
    if local_track_id is None or local_track_id != event.track_id:
        return ReconcilePlan(ReconcileAction.PLAY, position)
    if event.is_seek:
        return ReconcilePlan(ReconcileAction.SEEK, position)
    return ReconcilePlan(ReconcileAction.NONE)


def select_device(devices: Sequence[Device]) -> Device:
    """
    Pick the device to play on.

    The active device wins, then the first unrestricted one, then the first.
    """
    if not devices:
        raise NoPlaybackDevice
    for device in devices:
        if device.is_active:
            return device
    for device in devices:
        if not device.is_restricted:
            return device
    return devices[0]


class ReceiverSyncEngine:
    """
    Mirrors the playback of one followed sender on the local device.

    Only the latest sync event counts: every event replaces the
    reconciliation state and stale reconciliations abandon their remaining
    side effects once a newer event or another target took over.
    """

    def __init__(
        self,
        identity: SessionIdentity,
        provider: ProviderClient,
        tokens: TokenManager,
        session_key: str,
        publish: Publish,
        *,
        config: SyncConfig | None = None,
        clock: Clock = now_ms,
    ) -> None:
        """
        Initialize the engine.

        Args:
            identity: The listening user.
            provider: Client for the playback provider.
            tokens: Token manager holding the credentials of ``session_key``.
            session_key: Key of the listening user's credentials.
            publish: Coroutine sending a message to the realtime server.
            config: Timing constants.
            clock: Returns milliseconds since epoch.
        """
        self._identity = identity
        self._provider = provider
        self._tokens = tokens
        self._session_key = session_key
        self._publish = publish
        self._config = config or SyncConfig()
        self._clock = clock
        self._target: str | None = None
        self._reconciliation: ReconciliationState | None = None
        self._latest_event: TrackMessage | None = None
        self._local_track_id: str | None = None
        self._pause_pending = False
        self._last_event_at = 0
        self._lock = asyncio.Lock()
        self._watchdog_task: asyncio.Task[None] | None = None
        self._event_tasks: set[asyncio.Task[ReconcilePlan | None]] = set()
        """Reconciliations started from received messages."""
        self._hint = ""
        self._hint_callbacks: list[HintCallback] = []

    @property
    def state(self) -> ReceiverState:
        """Current state of the engine."""
        return ReceiverState.FOLLOWING if self._target else ReceiverState.IDLE

    @property
    def target(self) -> str | None:
        """User id of the followed sender."""
        return self._target

    @property
    def reconciliation(self) -> ReconciliationState | None:
        """State derived from the latest event of the followed sender."""
        return self._reconciliation

    @property
    def local_track_id(self) -> str | None:
        """Track this engine last started locally."""
        return self._local_track_id

    @property
    def pause_pending(self) -> bool:
        """True after a pause until playback is resumed."""
        return self._pause_pending

    @property
    def hint(self) -> str:
        """Latest user-visible hint, empty when all is well."""
        return self._hint

    def add_hint_listener(self, callback: HintCallback) -> Callable[[], None]:
        """Register a callback invoked whenever the hint changes."""
        self._hint_callbacks.append(callback)
        return lambda: self._hint_callbacks.remove(callback)

    def displayed_position_ms(self, now: int | None = None) -> int | None:
        """Position a now-playing display should show, None when nothing is followed."""
        if self._reconciliation is None:
            return None
        return self._reconciliation.position_at(self._clock() if now is None else now)

    async def follow(self, target_user_id: str, *, run_watchdog: bool = True) -> None:
        """
        Follow a sender, leaving the previous one first.

        A snapshot is requested right away so playback starts without waiting
        for the next change on the sender side.
        """
        if target_user_id == self._identity.user_id:
            raise ValueError("Cannot follow yourself")
        if self._target == target_user_id:
            await self.request_snapshot()
            return
        if self._target is not None:
            await self.unfollow()
        self._target = target_user_id
        self._reset()
        self._last_event_at = self._clock()
        now = self._clock()
        await self._publish(
            FollowMessage(target_user_id=target_user_id, user=self._identity.user_id, ts=now)
        )
        await self.request_snapshot()
        logger.info("Following %s", target_user_id)
        if run_watchdog and self._watchdog_task is None:
            self._watchdog_task = asyncio.get_running_loop().create_task(self._watchdog_loop())

    async def unfollow(self) -> None:
        """Stop following the current sender."""
        target = self._target
        if target is None:
            return
        self._target = None
        self._reset()
        await self._stop_watchdog()
        try:
            await self._publish(
                UnfollowMessage(target_user_id=target, user=self._identity.user_id, ts=self._clock())
            )
        except (ConnectionError, RuntimeError) as err:
            logger.debug("Could not announce unfollow: %s", err)
        self._set_hint("")
        logger.info("Unfollowed %s", target)

    async def request_snapshot(self) -> None:
        """Ask the followed sender for its current state."""
        if self._target is None:
            return
        await self._publish(
            SnapshotRequestMessage(
                target_user_id=self._target, user=self._identity.user_id, ts=self._clock()
            )
        )

    async def handle_message(self, message: Message) -> None:
        """
        Entry point for messages received from the server.

        Sync events are reconciled in their own task so the caller can keep
        reading: a newer event must be able to supersede one whose provider
        calls are still in flight.
        """
        match message:
            case TrackMessage():
                task = asyncio.get_running_loop().create_task(self.handle_event(message))
                self._event_tasks.add(task)
                task.add_done_callback(self._event_task_done)
            case DirectoryMessage():
                await self._handle_directory(message)

    async def wait_reconciled(self) -> None:
        """Wait until every reconciliation started by handle_message is done."""
        while self._event_tasks:
            await asyncio.wait(set(self._event_tasks))

    async def handle_event(self, event: TrackMessage) -> ReconcilePlan | None:
        """
        Reconcile local playback with a sync event of the followed sender.

        Returns the plan that was applied, None when the event was ignored or
        superseded while it was being reconciled.
        """
        if self._target is None or event.user != self._target:
            return None
        self._last_event_at = self._clock()
        self._latest_event = event
        self._reconciliation = ReconciliationState.from_event(event)
        async with self._lock:
            if self._latest_event is not event:
                # a newer event already took over
                return None
            return await self._reconcile(event)

    async def replay(self) -> ReconcilePlan | None:
        """Start the followed track again at the extrapolated position."""
        event = self._latest_event
        if event is None or self._target is None:
            return None
        self._local_track_id = None
        async with self._lock:
            if self._latest_event is not event:
                return None
            return await self._reconcile(event)

    async def check_watchdog(self) -> bool:
        """
        Request a snapshot when the sender has been silent for too long.

        Returns True when a snapshot was requested.
        """
        if self._target is None:
            return False
        now = self._clock()
        if now - self._last_event_at < self._config.receiver_watchdog_ms:
            return False
        logger.debug(
            "No event from %s for %dms, requesting snapshot", self._target, now - self._last_event_at
        )
        self._last_event_at = now
        await self.request_snapshot()
        return True

    async def list_devices(self) -> list[Device]:
        """Return the devices of the listening user."""
        return await self._tokens.run_authorized(self._session_key, self._provider.get_devices)

    async def select_device_and_transfer(self, name: str) -> Device:
        """Move playback to the device with the given name, then resynchronize."""
        devices = await self.list_devices()
        wanted = name.strip().casefold()
        matches = [d for d in devices if d.name.casefold() == wanted] or [
            d for d in devices if wanted in d.name.casefold()
        ]
        if not matches:
            raise NoPlaybackDevice(f"No device named {name!r}")
        device = matches[0]

        async def _transfer(token: str) -> None:
            await self._provider.transfer_playback(token, device.id, autoplay=False)

        await self._tokens.run_authorized(self._session_key, _transfer)
        await asyncio.sleep(self._config.device_settle_ms / 1000)
        logger.info("Transferred playback to %s", device.name)
        await self.replay()
        return device

    async def _reconcile(self, event: TrackMessage) -> ReconcilePlan | None:
        plan = plan_reconciliation(
            event,
            local_track_id=self._local_track_id,
            pause_pending=self._pause_pending,
            now=self._clock(),
        )
        try:
            await self._apply(event, plan)
        except NoPlaybackDevice:
            self._set_hint("No playback device found. Open the player on a device.")
            return None
        except ProviderRateLimited as err:
            self._set_hint(f"Rate limited by the provider, retrying in {err.retry_after:g}s.")
            return None
        except (AuthError, ProviderError) as err:
            self._set_hint(f"Could not control playback: {err}")
            return None
        if not self._is_current(event):
            logger.debug("Event on %s was superseded while reconciling", event.track_id)
            return None
        self._set_hint("")
        return plan

    async def _apply(self, event: TrackMessage, plan: ReconcilePlan) -> None:
        logger.debug("Reconciling %s on %s: %s", event.type, event.track_id, plan.action.value)
        match plan.action:
            case ReconcileAction.NONE:
                return
            case ReconcileAction.PAUSE:
                if self._pause_pending:
                    return
                await self._run(self._provider.pause)
                if self._is_current(event):
                    self._pause_pending = True
            case ReconcileAction.SEEK:
                assert plan.position_ms is not None
                position = plan.position_ms

                async def _seek(token: str) -> None:
                    await self._provider.seek(token, position)

                await self._run(_seek)
            case ReconcileAction.PLAY | ReconcileAction.RESUME:
                device_id = await self._ensure_device()
                if not self._is_current(event):
                    return
                # recompute after the transfer settled
                position = event.position_ms + max(0, self._clock() - event.ts)
                uris = [track_uri(event.track_id)]

                async def _play(token: str) -> None:
                    await self._provider.play(
                        token, uris=uris, position_ms=position, device_id=device_id
                    )

                await self._run(_play)
                if self._is_current(event):
                    self._local_track_id = event.track_id
                    self._pause_pending = False

    async def _ensure_device(self) -> str | None:
        """Make sure a device is active, returning the id to play on."""
        device = select_device(await self.list_devices())
        if device.is_active:
            return None

        async def _transfer(token: str) -> None:
            await self._provider.transfer_playback(token, device.id, autoplay=False)

        await self._run(_transfer)
        await asyncio.sleep(self._config.device_settle_ms / 1000)
        return device.id

    async def _run(self, operation: Callable[[str], Awaitable[None]]) -> None:
        await self._tokens.run_authorized(self._session_key, operation)

    def _is_current(self, event: TrackMessage) -> bool:
        return self._target == event.user and self._latest_event is event

    async def _handle_directory(self, message: DirectoryMessage) -> None:
        if self._target is None:
            return
        if any(entry.user_id == self._target for entry in message.lives):
            return
        logger.info("%s stopped sharing", self._target)
        self._target = None
        self._reset()
        self._set_hint("The host stopped sharing.")
        await self._stop_watchdog()

    def _event_task_done(self, task: asyncio.Task[ReconcilePlan | None]) -> None:
        self._event_tasks.discard(task)
        if task.cancelled():
            return
        if (err := task.exception()) is not None:
            logger.error("Reconciliation failed", exc_info=err)

    def _reset(self) -> None:
        self._reconciliation = None
        self._latest_event = None
        self._local_track_id = None
        self._pause_pending = False

    async def _stop_watchdog(self) -> None:
        task = self._watchdog_task
        self._watchdog_task = None
        if task is None or task is asyncio.current_task():
            return
        _ = task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    async def _watchdog_loop(self) -> None:
        while self._target is not None:
            await asyncio.sleep(WATCHDOG_CHECK_S)
            try:
                await self.check_watchdog()
            except (ConnectionError, RuntimeError) as err:
                logger.debug("Watchdog could not request a snapshot: %s", err)

    def _set_hint(self, hint: str) -> None:
        if hint == self._hint:
            return
        self._hint = hint
        if hint:
            logger.info("Hint: %s", hint)
        for callback in self._hint_callbacks:
            callback(hint)
