"""restosync - Async state synchronization for restaurant orders and bookings."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("restosync")
except PackageNotFoundError:
    __version__ = "0+local"
from restosync.client import RestoSyncClient
from restosync.config import SyncConfig
from restosync.exceptions import (
    BackendTransportError,
    ConfigError,
    EntityNotFoundError,
    InvalidTransition,
    PushChannelLost,
    RemoteCallFailed,
    RestoSyncError,
    StaleUpdate,
)
from restosync.models import Entity, EntityKind, EntityStatus, Override, PushEnvelope
from restosync.state.events import IngestionEvent, IngestionSource
from restosync.state.ledger import JsonFileLedgerBackend, MemoryLedgerBackend, OverrideLedger
from restosync.state.store import EntityStore, StoreDelta
from restosync.state.transitions import TransitionEngine
from restosync.sync import PollState, PushState, SyncCoordinator, SyncHealth

__all__ = [
    "__version__",
    "BackendTransportError",
    "ConfigError",
    "Entity",
    "EntityKind",
    "EntityNotFoundError",
    "EntityStatus",
    "EntityStore",
    "IngestionEvent",
    "IngestionSource",
    "InvalidTransition",
    "JsonFileLedgerBackend",
    "MemoryLedgerBackend",
    "Override",
    "OverrideLedger",
    "PollState",
    "PushChannelLost",
    "PushEnvelope",
    "PushState",
    "RemoteCallFailed",
    "RestoSyncClient",
    "RestoSyncError",
    "StaleUpdate",
    "StoreDelta",
    "SyncConfig",
    "SyncCoordinator",
    "SyncHealth",
    "TransitionEngine",
]
