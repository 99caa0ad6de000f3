"""
Conflict detection and resolution for queued updates and deletes.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterable

from django.utils.dateparse import parse_datetime

from offline_sync.sync.operations import (
    Action,
    ConflictDetails,
    ConflictResolution,
    ConflictStrategy,
    Operation,
)

logger = logging.getLogger(__name__)

DEFAULT_VOLATILE_FIELDS = ("updated_at", "last_modified")
DEFAULT_TIMESTAMP_FIELDS = ("updated_at", "last_modified")

_MISSING = object()


def to_datetime(value: Any) -> datetime | None:
    """
    Coerce a timestamp field to an aware datetime.

    Accepts datetimes, ISO-8601 strings, and epoch numbers (values above
    1e11 are read as milliseconds).
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        result = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = value / 1000 if value > 1e11 else value
        result = datetime.fromtimestamp(seconds, tz=timezone.utc)
    elif isinstance(value, str):
        try:
            result = parse_datetime(value)
        except ValueError:
            result = None
        if result is None:
            return None
    else:
        return None

    if result.tzinfo is None:
        result = result.replace(tzinfo=timezone.utc)
    return result


class ConflictResolver:
    """
    Compares an operation's baseline with the remote row and settles
    any divergence with one of the ConflictStrategy policies.
    """

    def __init__(
        self,
        strategy: ConflictStrategy = ConflictStrategy.TIMESTAMP,
        volatile_fields: Iterable[str] = DEFAULT_VOLATILE_FIELDS,
        timestamp_fields: Iterable[str] = DEFAULT_TIMESTAMP_FIELDS,
    ):
        self.strategy = ConflictStrategy(strategy)
        self.volatile_fields = frozenset(volatile_fields)
        self.timestamp_fields = tuple(timestamp_fields)

    def detect(self, operation: Operation, remote_snapshot: dict[str, Any]) -> list[str]:
        """
        Fields whose baseline value differs from the remote row.

        A field absent from the remote row counts as changed. Inserts and
        operations without a baseline never conflict.
        """
        if operation.action == Action.INSERT or not operation.baseline:
            return []

        return [
            name
            for name, value in operation.baseline.items()
            if name not in self.volatile_fields
            and remote_snapshot.get(name, _MISSING) != value
        ]

    def resolve(
        self,
        operation: Operation,
        remote_snapshot: dict[str, Any],
        strategy: ConflictStrategy | None = None,
        conflicting_fields: list[str] | None = None,
    ) -> ConflictResolution | None:
        """
        Settle a conflict.

        Returns None for the manual strategy: the caller must hold the
        operation and surface the conflict instead of writing.
        """
        strategy = ConflictStrategy(strategy or self.strategy)
        if conflicting_fields is None:
            conflicting_fields = self.detect(operation, remote_snapshot)

        details = ConflictDetails(
            local_payload=operation.payload,
            remote_snapshot=remote_snapshot,
            conflicting_fields=conflicting_fields,
        )

        if strategy == ConflictStrategy.MANUAL:
            return None

        remote_wins = False
        if strategy == ConflictStrategy.CLIENT_WINS:
            resolved = operation.payload
        elif strategy == ConflictStrategy.SERVER_WINS:
            resolved = remote_snapshot
            remote_wins = True
        elif strategy == ConflictStrategy.TIMESTAMP:
            if self._local_is_newer(operation, remote_snapshot):
                resolved = operation.payload
            else:
                resolved = remote_snapshot
                remote_wins = True
        else:
            resolved = self.merge(operation.payload, remote_snapshot)

        logger.debug(
            f"Resolved conflict on {operation.id} with {strategy.value}: "
            f"fields={conflicting_fields}, remote_wins={remote_wins}"
        )

        return ConflictResolution(
            strategy=strategy,
            resolved_payload=resolved,
            conflict_details=details,
            remote_wins=remote_wins,
        )

    @staticmethod
    def merge(local: dict[str, Any], remote: dict[str, Any]) -> dict[str, Any]:
        """Remote row overlaid with every local field that is not None."""
        merged = dict(remote)
        for name, value in local.items():
            if value is not None:
                merged[name] = value
        return merged

    def _timestamp_of(self, data: dict[str, Any]) -> datetime | None:
        for name in self.timestamp_fields:
            stamp = to_datetime(data.get(name))
            if stamp is not None:
                return stamp
        return None

    def _local_is_newer(self, operation: Operation, remote_snapshot: dict[str, Any]) -> bool:
        local_time = self._timestamp_of(operation.payload) or operation.created_at
        remote_time = self._timestamp_of(remote_snapshot)
        # Without a remote modification time the remote row is kept
        if remote_time is None:
            return False
        return local_time > remote_time
