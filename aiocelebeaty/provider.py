"""Thin typed facade over the playback provider's Web API."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from aiohttp import ClientError, ClientResponse, ClientSession, ClientTimeout

from .config import ProviderConfig
from .errors import NoActiveItem, ProviderError, ProviderRateLimited, ProviderUnreachable

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER_S = 1.0


@dataclass(slots=True)
class TrackItem:
    """The track a user is currently playing."""

    id: str
    name: str
    artists: list[str] = field(default_factory=list)
    duration_ms: int = 0
    artwork_url: str | None = None

    @property
    def uri(self) -> str:
        """Return the provider URI used to start playback of this track."""
        return track_uri(self.id)


@dataclass(slots=True)
class Playback:
    """Current playback state of a user."""

    is_playing: bool
    position_ms: int
    item: TrackItem


@dataclass(slots=True)
class Device:
    """A device that can play audio for a user."""

    id: str
    name: str
    is_active: bool = False
    is_restricted: bool = False
    type: str = ""


@dataclass(slots=True)
class Profile:
    """Profile of the authenticated user."""

    id: str
    display_name: str | None = None
    email: str | None = None
    country: str | None = None
    product: str | None = None


def track_uri(track_id: str) -> str:
    """Build the provider URI of a track id."""
    return f"spotify:track:{track_id}"


def parse_playback(data: dict[str, Any] | None) -> Playback:
    """
    Convert a currently-playing response into a Playback.

    Raises NoActiveItem when the response does not describe a playable track.
    """
    if not data:
        raise NoActiveItem("no_item")
    item = data.get("item")
    if not item or not item.get("id"):
        raise NoActiveItem(str(data.get("currently_playing_type") or "no_item"))
    images = (item.get("album") or {}).get("images") or []
    return Playback(
        is_playing=bool(data.get("is_playing")),
        position_ms=int(data.get("progress_ms") or 0),
        item=TrackItem(
            id=item["id"],
            name=item.get("name") or item["id"],
            artists=[a.get("name", "") for a in item.get("artists") or []],
            duration_ms=int(item.get("duration_ms") or 0),
            artwork_url=images[0].get("url") if images else None,
        ),
    )


def parse_devices(data: dict[str, Any] | None) -> list[Device]:
    """Convert a devices response into a list of Device."""
    return [
        Device(
            id=str(dev.get("id")),
            name=dev.get("name") or "",
            is_active=bool(dev.get("is_active")),
            is_restricted=bool(dev.get("is_restricted")),
            type=dev.get("type") or "",
        )
        for dev in (data or {}).get("devices") or []
    ]


class ProviderClient:
    """
    Async client for the provider calls the sync engines depend on.

    Every call takes the access token explicitly; obtaining a valid one is the
    job of the TokenManager. Failures raise ProviderError, with
    ProviderRateLimited carrying the Retry-After hint for 429 responses.
    No call is retried here.
    """

    def __init__(self, session: ClientSession, config: ProviderConfig | None = None) -> None:
        """Create a provider client on top of an existing aiohttp session."""
        self._session = session
        self._config = config or ProviderConfig()
        self._base_url = self._config.api_base_url.rstrip("/")
        self._timeout = ClientTimeout(total=self._config.timeout_s)

    async def get_profile(self, token: str) -> Profile:
        """Return the profile of the token owner."""
        data = await self._request("GET", "/me", token)
        if not data or not data.get("id"):
            raise ProviderError(502, data)
        return Profile(
            id=data["id"],
            display_name=data.get("display_name"),
            email=data.get("email"),
            country=data.get("country"),
            product=data.get("product"),
        )

    async def get_current_playback(self, token: str) -> Playback:
        """Return the current playback, raising NoActiveItem when nothing plays."""
        data = await self._request("GET", "/me/player/currently-playing", token)
        return parse_playback(data)

    async def get_devices(self, token: str) -> list[Device]:
        """Return the devices available to the user."""
        return parse_devices(await self._request("GET", "/me/player/devices", token))

    async def transfer_playback(self, token: str, device_id: str, *, autoplay: bool) -> None:
        """Move playback to the given device."""
        await self._request(
            "PUT", "/me/player", token, json={"device_ids": [device_id], "play": autoplay}
        )

    async def play(
        self,
        token: str,
        *,
        uris: list[str] | None = None,
        position_ms: int | None = None,
        device_id: str | None = None,
    ) -> None:
        """Start playback, at the given position of the given tracks when provided."""
        body: dict[str, Any] = {}
        if uris:
            body["uris"] = uris
        if position_ms is not None:
            body["position_ms"] = max(0, int(position_ms))
        params = {"device_id": device_id} if device_id else None
        await self._request("PUT", "/me/player/play", token, json=body, params=params)

    async def pause(self, token: str) -> None:
        """Pause playback."""
        await self._request("PUT", "/me/player/pause", token)

    async def seek(self, token: str, position_ms: int) -> None:
        """Seek within the current track."""
        await self._request(
            "PUT",
            "/me/player/seek",
            token,
            params={"position_ms": str(max(0, int(position_ms)))},
        )

    async def _request(
        self,
        method: str,
        path: str,
        token: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> Any:
        url = f"{self._base_url}{path}"
        headers = {"Authorization": f"Bearer {token}"}
        try:
            async with self._session.request(
                method, url, headers=headers, json=json, params=params, timeout=self._timeout
            ) as resp:
                status = resp.status
                retry_header = resp.headers.get("Retry-After")
                body = await _read_body(resp)
        except (ClientError, TimeoutError) as err:
            logger.debug("%s %s failed: %r", method, path, err)
            raise ProviderUnreachable(f"{method} {path}: {type(err).__name__}") from err
        if status == 429:
            retry_after = _parse_retry_after(retry_header)
            logger.warning("%s %s rate limited, retry after %ss", method, path, retry_after)
            raise ProviderRateLimited(retry_after, body)
        if status >= 400:
            logger.debug("%s %s failed with HTTP %d", method, path, status)
            raise ProviderError(status, body)
        return body


async def _read_body(resp: ClientResponse) -> Any:
    if resp.status == 204:
        return None
    if "json" in (resp.content_type or ""):
        return await resp.json()
    text = await resp.text()
    return text or None


def _parse_retry_after(value: str | None) -> float:
    if not value:
        return DEFAULT_RETRY_AFTER_S
    try:
        return max(0.0, float(value))
    except ValueError:
        return DEFAULT_RETRY_AFTER_S
