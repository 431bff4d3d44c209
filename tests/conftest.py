"""Shared fixtures and fakes for the celebeaty tests."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any

import pytest
from aiohttp import ClientSession
from aiohttp.test_utils import TestServer

from aiocelebeaty.config import SyncConfig
from aiocelebeaty.errors import NoActiveItem, ProviderError
from aiocelebeaty.models import Message
from aiocelebeaty.provider import Device, Playback, Profile, TrackItem
from aiocelebeaty.tokens import SessionIdentity, TokenManager

from .fake_api import FakeProviderApi

SESSION_KEY = "session"
UNREACHABLE_URL = "http://127.0.0.1:9"
"""Nothing listens on the discard port, so connections are refused."""


class FakeClock:
    """Manually advanced millisecond clock."""

    def __init__(self, start: int = 1_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@dataclass
class FakeProvider:
    """Stands in for ProviderClient, recording every player command."""

    playback: Playback | None = None
    no_item_reason: str = "no_item"
    devices: list[Device] = field(default_factory=list)
    profile: Profile = field(default_factory=lambda: Profile(id="alice", display_name="Alice"))
    calls: list[tuple[str, dict[str, Any]]] = field(default_factory=list)
    fail_with: ProviderError | None = None
    devices_gate: asyncio.Event | None = None
    """When set, get_devices blocks until the event is set."""

    async def get_profile(self, token: str) -> Profile:
        return self.profile

    async def get_current_playback(self, token: str) -> Playback:
        self.calls.append(("get_current_playback", {"token": token}))
        if self.fail_with is not None:
            raise self.fail_with
        if self.playback is None:
            raise NoActiveItem(self.no_item_reason)
        return self.playback

    async def get_devices(self, token: str) -> list[Device]:
        self.calls.append(("get_devices", {}))
        if self.devices_gate is not None:
            await self.devices_gate.wait()
        return list(self.devices)

    async def transfer_playback(self, token: str, device_id: str, *, autoplay: bool) -> None:
        self.calls.append(("transfer_playback", {"device_id": device_id, "autoplay": autoplay}))
        for device in self.devices:
            device.is_active = device.id == device_id

    async def play(
        self,
        token: str,
        *,
        uris: list[str] | None = None,
        position_ms: int | None = None,
        device_id: str | None = None,
    ) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.calls.append(
            ("play", {"uris": uris, "position_ms": position_ms, "device_id": device_id})
        )

    async def pause(self, token: str) -> None:
        self.calls.append(("pause", {}))

    async def seek(self, token: str, position_ms: int) -> None:
        self.calls.append(("seek", {"position_ms": position_ms}))

    def names(self) -> list[str]:
        """Return the names of the recorded player commands."""
        return [name for name, _ in self.calls if name != "get_current_playback"]


class Outbox:
    """Collects the messages an engine publishes."""

    def __init__(self) -> None:
        self.messages: list[Message] = []

    async def __call__(self, message: Message) -> None:
        self.messages.append(message)

    def of_type(self, type_: str) -> list[Message]:
        return [m for m in self.messages if getattr(m, "type", None) == type_]


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until the predicate holds."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


def make_playback(
    track_id: str = "A", position_ms: int = 0, *, is_playing: bool = True
) -> Playback:
    """Build a playback observation."""
    return Playback(
        is_playing=is_playing,
        position_ms=position_ms,
        item=TrackItem(id=track_id, name=f"Song {track_id}", artists=["Artist"], duration_ms=200_000),
    )


@pytest.fixture
def clock() -> FakeClock:
    """Return a fake clock."""
    return FakeClock()


@pytest.fixture
def provider() -> FakeProvider:
    """Return a fake provider."""
    return FakeProvider()


@pytest.fixture
def outbox() -> Outbox:
    """Return an outbox collecting published messages."""
    return Outbox()


@pytest.fixture
def sync_config() -> SyncConfig:
    """Sync config without real waits."""
    return SyncConfig(device_settle_ms=0)


@pytest.fixture
async def http_session() -> AsyncIterator[ClientSession]:
    """Return an aiohttp client session closed after the test."""
    async with ClientSession() as session:
        yield session


@pytest.fixture
def tokens(http_session: ClientSession) -> TokenManager:
    """Return a token manager holding a valid access token for SESSION_KEY."""
    manager = TokenManager(http_session)
    manager.login(SESSION_KEY, access_token="access-1")
    return manager


@pytest.fixture
def alice() -> SessionIdentity:
    """The sharing user."""
    return SessionIdentity(user_id="alice", display_name="Alice")


@pytest.fixture
def bob() -> SessionIdentity:
    """The listening user."""
    return SessionIdentity(user_id="bob", display_name="Bob")


@pytest.fixture
async def fake_api() -> AsyncIterator[tuple[FakeProviderApi, TestServer]]:
    """Run the fake provider API for the duration of a test."""
    api = FakeProviderApi()
    async with TestServer(api.create_app()) as server:
        yield api, server
