"""
Offline operation queue and sync engine.
"""

from offline_sync.sync.config import SyncConfig
from offline_sync.sync.conflict_resolver import ConflictResolver
from offline_sync.sync.connectivity import ConnectivityMonitor, SocketProbe, StaticProbe
from offline_sync.sync.engine import EngineState, SyncEngine
from offline_sync.sync.exceptions import (
    CapacityExceeded,
    ConflictUnresolved,
    DependencyNeverResolved,
    InvalidOperationError,
    OfflineModeDisabled,
    OperationNotFound,
    PermanentRemoteError,
    RecordNotFound,
    RemoteError,
    StoreError,
    SyncAbortedError,
    SyncError,
    TransientRemoteError,
)
from offline_sync.sync.operations import (
    Action,
    ConflictResolution,
    ConflictStrategy,
    ExecutionResult,
    Operation,
    OperationType,
    Priority,
    SyncResult,
)
from offline_sync.sync.queue import OperationQueue
from offline_sync.sync.scheduler import PassReport, SyncScheduler, SyncStats

__all__ = [
    "SyncEngine",
    "SyncConfig",
    "EngineState",
    "OperationQueue",
    "SyncScheduler",
    "ConflictResolver",
    "ConnectivityMonitor",
    "StaticProbe",
    "SocketProbe",
    "Operation",
    "Action",
    "Priority",
    "OperationType",
    "ConflictStrategy",
    "ConflictResolution",
    "SyncResult",
    "ExecutionResult",
    "PassReport",
    "SyncStats",
    "RecordNotFound",
    "SyncError",
    "StoreError",
    "RemoteError",
    "TransientRemoteError",
    "PermanentRemoteError",
    "ConflictUnresolved",
    "CapacityExceeded",
    "DependencyNeverResolved",
    "OfflineModeDisabled",
    "InvalidOperationError",
    "OperationNotFound",
    "SyncAbortedError",
]
