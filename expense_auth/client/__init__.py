"""Client side of expense-auth: service client, device trust and session state machine."""

from expense_auth.client.api import AuthServiceClient
from expense_auth.client.device_trust import DeviceTrustStore, RevisionWatermarkStore
from expense_auth.client.listener import RevisionInvalidationListener
from expense_auth.client.orchestrator import (
    AuthState,
    BoundSession,
    OperationResult,
    PinStage,
    SessionTrustOrchestrator,
)
from expense_auth.client.storage import JsonFileStorage, KeyValueStorage, MemoryStorage

__all__ = [
    "AuthServiceClient",
    "DeviceTrustStore",
    "RevisionWatermarkStore",
    "RevisionInvalidationListener",
    "AuthState",
    "BoundSession",
    "OperationResult",
    "PinStage",
    "SessionTrustOrchestrator",
    "JsonFileStorage",
    "KeyValueStorage",
    "MemoryStorage",
]
