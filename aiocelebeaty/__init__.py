"""Celebeaty: share what you listen to and let others listen along."""

from __future__ import annotations

# Re-export the client library for easy import
from aiocelebeaty.client import (
    CelebeatyClient,
    ReceiverSyncEngine,
    SenderSyncEngine,
    ServerInfo,
)
from aiocelebeaty.config import ProviderConfig, ServerConfig, SyncConfig
from aiocelebeaty.provider import ProviderClient
from aiocelebeaty.tokens import SessionIdentity, TokenManager

__all__ = [
    "CelebeatyClient",
    "ProviderClient",
    "ProviderConfig",
    "ReceiverSyncEngine",
    "SenderSyncEngine",
    "ServerConfig",
    "ServerInfo",
    "SessionIdentity",
    "SyncConfig",
    "TokenManager",
]
