"""Tunable settings for the celebeaty server and sync engines."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field

DEFAULT_API_BASE_URL = "https://api.spotify.com/v1"
DEFAULT_TOKEN_URL = "https://accounts.spotify.com/api/token"


@dataclass(frozen=True, slots=True)
class SyncConfig:
    """Timing constants of the sender and receiver sync engines (milliseconds)."""

    poll_interval_ms: int = 2_000
    """How often a sharing sender polls the provider."""
    drift_threshold_ms: int = 3_000
    """Drift beyond this is classified as a seek and emitted."""
    ping_interval_ms: int = 12_000
    """A sender that sent nothing for this long sends a presence ping."""
    pause_cooldown_ms: int = 1_500
    """After a pause is detected, drift is not classified as a seek for this long."""
    keepalive_snapshot_ms: int = 45_000
    """Interval of unconditional snapshot emissions while sharing, 0 disables them."""
    receiver_watchdog_ms: int = 25_000
    """A receiver that heard nothing for this long asks for a snapshot again."""
    device_settle_ms: int = 250
    """Wait after transferring playback before issuing a play command."""


@dataclass(frozen=True, slots=True)
class ServerConfig:
    """Settings of the realtime transport."""

    server_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    server_name: str = "celebeaty"
    allowed_origins: tuple[str, ...] = ()
    """Allowed browser origins, ``*`` acts as a wildcard."""
    heartbeat_s: float = 25.0
    """WebSocket ping interval; peers that miss a pong are closed."""
    liveness_window_ms: int = 15_000
    """Presence entries without a sign of life for this long are stale."""
    sweep_interval_s: float = 5.0
    """How often stale presence entries are purged."""
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 3001
    path: str = "/ws"


@dataclass(frozen=True, slots=True)
class ProviderConfig:
    """Settings of the provider client and token lifecycle manager."""

    api_base_url: str = DEFAULT_API_BASE_URL
    token_url: str = DEFAULT_TOKEN_URL
    client_id: str = ""
    client_secret: str = ""
    timeout_s: float = 10.0
    """Total timeout of a single provider HTTP call."""
    refresh_margin_s: int = 30
    """Access tokens this close to expiry are refreshed before use."""


def parse_origins(value: str | None) -> tuple[str, ...]:
    """Split a comma separated origin list, dropping empty entries."""
    if not value:
        return ()
    return tuple(part.strip() for part in value.split(",") if part.strip())
