"""Sender side of the sync engine: polls the provider and emits sync events."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass
from enum import Enum

from aiocelebeaty.clock import Clock, now_ms
from aiocelebeaty.config import SyncConfig
from aiocelebeaty.errors import AuthError, NoActiveItem, ProviderError, ProviderRateLimited
from aiocelebeaty.models import (
    DirectoryMessage,
    Message,
    PauseMessage,
    PresenceAction,
    PresenceMessage,
    SnapshotRequestMessage,
    TrackMessage,
)
from aiocelebeaty.provider import Playback, ProviderClient
from aiocelebeaty.tokens import SessionIdentity, TokenManager

logger = logging.getLogger(__name__)

Publish = Callable[[Message], Awaitable[None]]
HintCallback = Callable[[str], None]

NO_ITEM_HINTS = {
    "ad": "An ad is playing, waiting for the next song.",
    "no_item": "Nothing is playing. Check for a private session and start a song.",
    "no_active_device": "No active device. Open the player and play something.",
}


class SharingState(Enum):
    """States of a sender."""

    IDLE = "idle"
    SHARING = "sharing"


class EmitReason(Enum):
    """Why a sync event was emitted."""

    FIRST = "first"
    """First observation after sharing started."""
    TRACK_CHANGE = "track_change"
    PLAY_STATE = "play_state"
    """Playing switched to paused or back."""
    SEEK = "seek"
    """Observed position drifted beyond the threshold."""
    SNAPSHOT = "snapshot"
    """A receiver asked for the current state."""
    KEEPALIVE = "keepalive"
    """Periodic self-contained emission."""


@dataclass(frozen=True, slots=True)
class EmittedState:
    """The last emission, the only state a sender keeps between polls."""

    track_id: str
    position_ms: int
    is_playing: bool
    sent_at: int
    """Milliseconds since epoch when it was emitted."""


def expected_position(last: EmittedState, now: int) -> int:
    """Extrapolate where playback should be if nothing happened since ``last``."""
    return last.position_ms + (now - last.sent_at if last.is_playing else 0)


def detect_change(
    last: EmittedState | None,
    playback: Playback,
    now: int,
    *,
    drift_threshold_ms: int,
    seek_blocked_until: int = 0,
) -> EmitReason | None:
    """
    Decide whether an observation must be emitted.

    Track changes and play/pause switches always emit. A position that differs
    from the extrapolated one by more than the drift threshold is a seek,
    unless seek detection is blocked right after a pause.
    """
    if last is None:
        return EmitReason.FIRST
    if playback.item.id != last.track_id:
        return EmitReason.TRACK_CHANGE
    if playback.is_playing != last.is_playing:
        return EmitReason.PLAY_STATE
    if now < seek_blocked_until:
        return None
    if abs(playback.position_ms - expected_position(last, now)) > drift_threshold_ms:
        return EmitReason.SEEK
    return None


def build_sync_message(
    user_id: str, playback: Playback, now: int, reason: EmitReason
) -> TrackMessage:
    """Build the track or pause message describing an observation."""
    cls = TrackMessage if playback.is_playing else PauseMessage
    return cls(
        user=user_id,
        track_id=playback.item.id,
        position_ms=playback.position_ms,
        name=playback.item.name,
        artists=list(playback.item.artists),
        is_playing=playback.is_playing,
        ts=now,
        artwork_url=playback.item.artwork_url,
        is_seek=reason is EmitReason.SEEK,
        is_snapshot=reason in (EmitReason.SNAPSHOT, EmitReason.KEEPALIVE),
    )


class SenderSyncEngine:
    """
    Broadcasts the playback of one user while sharing.

    ``Idle -> Sharing -> Idle`` is driven by explicit start and stop. While
    sharing, the provider is polled on a fixed interval and an event is only
    published when the observation is event-worthy. Provider and credential
    failures never stop sharing, they are reported as hints and the next poll
    tries again.
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
            identity: The sharing user.
            provider: Client for the playback provider.
            tokens: Token manager holding the credentials of ``session_key``.
            session_key: Key of the sharing user's credentials.
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
        self._state = SharingState.IDLE
        self._last_emitted: EmittedState | None = None
        self._last_sent_at = 0
        self._seek_blocked_until = 0
        self._poll_task: asyncio.Task[None] | None = None
        self._hint = ""
        self._hint_callbacks: list[HintCallback] = []

    @property
    def state(self) -> SharingState:
        """Current state of the engine."""
        return self._state

    @property
    def last_emitted(self) -> EmittedState | None:
        """The last emission since sharing started."""
        return self._last_emitted

    @property
    def hint(self) -> str:
        """Latest user-visible hint, empty when all is well."""
        return self._hint

    def add_hint_listener(self, callback: HintCallback) -> Callable[[], None]:
        """Register a callback invoked whenever the hint changes."""
        self._hint_callbacks.append(callback)
        return lambda: self._hint_callbacks.remove(callback)

    async def start(self, *, run_loop: bool = True) -> None:
        """
        Go live and start sharing.

        With ``run_loop`` false no poll task is started and the caller drives
        ``poll_once`` itself.
        """
        if self._state is SharingState.SHARING:
            return
        self._state = SharingState.SHARING
        self._last_emitted = None
        self._seek_blocked_until = 0
        await self._announce(PresenceAction.START)
        logger.info("Started sharing as %s", self._identity.user_id)
        if run_loop:
            self._poll_task = asyncio.get_running_loop().create_task(self._poll_loop())

    async def stop(self) -> None:
        """Stop sharing and go offline."""
        if self._state is SharingState.IDLE:
            return
        self._state = SharingState.IDLE
        self._last_emitted = None
        if self._poll_task is not None:
            _ = self._poll_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._poll_task
            self._poll_task = None
        try:
            await self._announce(PresenceAction.STOP)
        except (ConnectionError, RuntimeError) as err:
            logger.debug("Could not announce stop: %s", err)
        self._set_hint("")
        logger.info("Stopped sharing")

    async def poll_once(self) -> TrackMessage | None:
        """Observe the provider once and emit if the observation is event-worthy."""
        if self._state is not SharingState.SHARING:
            return None
        playback = await self._observe()
        if self._state is not SharingState.SHARING:
            # stopped while the provider call was in flight
            return None
        now = self._clock()
        if playback is None:
            await self._maybe_ping(now)
            return None

        reason = detect_change(
            self._last_emitted,
            playback,
            now,
            drift_threshold_ms=self._config.drift_threshold_ms,
            seek_blocked_until=self._seek_blocked_until,
        )
        if reason is None and self._keepalive_due(now):
            reason = EmitReason.KEEPALIVE
        if reason is None:
            await self._maybe_ping(now)
            return None
        if reason is EmitReason.PLAY_STATE and not playback.is_playing:
            self._seek_blocked_until = now + self._config.pause_cooldown_ms
        return await self._emit(playback, now, reason)

    async def handle_snapshot_request(self, message: SnapshotRequestMessage) -> TrackMessage | None:
        """Emit the current state right away for a receiver that just joined."""
        if self._state is not SharingState.SHARING:
            return None
        if message.target_user_id != self._identity.user_id:
            return None
        logger.debug("Snapshot requested by %s", message.user)
        playback = await self._observe()
        if playback is None or self._state is not SharingState.SHARING:
            return None
        return await self._emit(playback, self._clock(), EmitReason.SNAPSHOT)

    async def handle_message(self, message: Message) -> None:
        """Entry point for messages received from the server."""
        match message:
            case SnapshotRequestMessage():
                await self.handle_snapshot_request(message)
            case DirectoryMessage():
                await self._handle_directory(message)

    async def _handle_directory(self, message: DirectoryMessage) -> None:
        if self._state is not SharingState.SHARING:
            return
        if any(entry.user_id == self._identity.user_id for entry in message.lives):
            return
        # our presence expired on the server, announce again
        logger.info("Not listed in the directory anymore, going live again")
        self._last_emitted = None
        await self._announce(PresenceAction.START)

    async def _observe(self) -> Playback | None:
        try:
            playback = await self._tokens.run_authorized(
                self._session_key, self._provider.get_current_playback
            )
        except NoActiveItem as err:
            self._set_hint(NO_ITEM_HINTS.get(err.reason, f"Waiting for a song ({err.reason})."))
            return None
        except ProviderRateLimited as err:
            self._set_hint(f"Rate limited by the provider, retrying in {err.retry_after:g}s.")
            return None
        except (AuthError, ProviderError) as err:
            self._set_hint(f"Could not fetch the current song: {err}")
            return None
        self._set_hint("")
        return playback

    async def _emit(self, playback: Playback, now: int, reason: EmitReason) -> TrackMessage:
        message = build_sync_message(self._identity.user_id, playback, now, reason)
        await self._publish(message)
        self._last_emitted = EmittedState(
            track_id=playback.item.id,
            position_ms=playback.position_ms,
            is_playing=playback.is_playing,
            sent_at=now,
        )
        self._last_sent_at = now
        logger.debug(
            "Emitted %s (%s) %s at %dms",
            message.type,
            reason.value,
            playback.item.id,
            playback.position_ms,
        )
        return message

    def _keepalive_due(self, now: int) -> bool:
        interval = self._config.keepalive_snapshot_ms
        return bool(interval) and self._last_emitted is not None and (
            now - self._last_emitted.sent_at >= interval
        )

    async def _maybe_ping(self, now: int) -> None:
        if now - self._last_sent_at < self._config.ping_interval_ms:
            return
        await self._announce(PresenceAction.PING)

    async def _announce(self, action: PresenceAction) -> None:
        now = self._clock()
        await self._publish(
            PresenceMessage(
                action=action,
                user=self._identity.user_id,
                ts=now,
                name=self._identity.display_name if action is PresenceAction.START else None,
            )
        )
        self._last_sent_at = now

    async def _poll_loop(self) -> None:
        interval = self._config.poll_interval_ms / 1000
        while self._state is SharingState.SHARING:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Sender poll failed")
            await asyncio.sleep(interval)

    def _set_hint(self, hint: str) -> None:
        if hint == self._hint:
            return
        self._hint = hint
        if hint:
            logger.info("Hint: %s", hint)
        for callback in self._hint_callbacks:
            callback(hint)
