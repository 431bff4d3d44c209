"""Public interface for the celebeaty client package."""

from .client import (
    CelebeatyClient,
    DirectoryCallback,
    DisconnectCallback,
    MessageCallback,
    ServerInfo,
)
from .receiver import (
    ReceiverState,
    ReceiverSyncEngine,
    ReconcileAction,
    ReconcilePlan,
    ReconciliationState,
    plan_reconciliation,
    select_device,
)
from .sender import (
    EmitReason,
    EmittedState,
    SenderSyncEngine,
    SharingState,
    detect_change,
    expected_position,
)

__all__ = [
    "CelebeatyClient",
    "DirectoryCallback",
    "DisconnectCallback",
    "EmitReason",
    "EmittedState",
    "MessageCallback",
    "ReceiverState",
    "ReceiverSyncEngine",
    "ReconcileAction",
    "ReconcilePlan",
    "ReconciliationState",
    "SenderSyncEngine",
    "ServerInfo",
    "SharingState",
    "detect_change",
    "expected_position",
    "plan_reconciliation",
    "select_device",
]
