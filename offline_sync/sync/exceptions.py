"""
Exceptions for offline sync operations.
"""


class SyncError(Exception):
    """Base exception for sync operations."""

    pass


class RemoteError(SyncError):
    """A remote store call failed."""

    pass


class TransientRemoteError(RemoteError):
    """Network failure or timeout talking to the remote store."""

    pass


class PermanentRemoteError(RemoteError):
    """The remote store rejected the write (e.g. validation failure)."""

    pass


class ConflictUnresolved(SyncError):
    """A conflict is held for manual resolution."""

    def __init__(self, operation_id: str, conflicting_fields: list[str]):
        self.operation_id = operation_id
        self.conflicting_fields = conflicting_fields
        super().__init__(
            f"Operation {operation_id} awaits manual resolution "
            f"(fields: {', '.join(conflicting_fields)})"
        )


class CapacityExceeded(SyncError):
    """The queue is full and nothing could be purged."""

    pass


class DependencyNeverResolved(SyncError):
    """An operation waits on a dependency that cannot clear on its own."""

    def __init__(self, operation_id: str, blocking_ids: list[str]):
        self.operation_id = operation_id
        self.blocking_ids = blocking_ids
        super().__init__(
            f"Operation {operation_id} is starved by {', '.join(blocking_ids)}"
        )


class OfflineModeDisabled(SyncError):
    """Submissions are refused because offline mode is turned off."""

    pass


class InvalidOperationError(SyncError):
    """The submitted operation is malformed."""

    pass


class OperationNotFound(SyncError):
    """No queued operation with the given id."""

    pass


class SyncAbortedError(SyncError):
    """The engine has been shut down."""

    pass


class RecordNotFound(SyncError):
    """Raised by ``RemoteStore.fetch_by_id`` when the row does not exist."""

    pass


class StoreError(SyncError):
    """Raised when a persistent store read or write fails."""

    pass
