"""
Data model for queued operations and sync outcomes.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from enum import Enum, IntEnum
from typing import Any

from django.core.serializers.json import DjangoJSONEncoder
from django.utils.dateparse import parse_duration
from django.utils.duration import duration_iso_string


class Action(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class Priority(IntEnum):
    LOW = 1
    NORMAL = 2
    HIGH = 3
    CRITICAL = 4


class OperationType(str, Enum):
    USER_ACTION = "user_action"
    SYSTEM_ACTION = "system_action"
    BACKGROUND_SYNC = "background_sync"
    CONFLICT_RESOLUTION = "conflict_resolution"


class OperationStatus(str, Enum):
    PENDING = "pending"
    BLOCKED_ON_CONFLICT = "blocked_on_conflict"


class ConflictStrategy(str, Enum):
    CLIENT_WINS = "client_wins"
    SERVER_WINS = "server_wins"
    TIMESTAMP = "timestamp"
    MERGE = "merge"
    MANUAL = "manual"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_operation_id() -> str:
    return str(uuid.uuid4())


TYPE_TAG = "__type__"


class TypedJSONEncoder(DjangoJSONEncoder):
    """
    JSON encoder that tags values JSON cannot represent natively.

    Dates, times, durations, decimals and UUIDs are written as
    ``{"__type__": ..., "value": ...}`` and restored by ``decode_tagged``,
    so payloads and baselines reload with their original types.
    """

    def default(self, o):
        if isinstance(o, datetime):
            return {TYPE_TAG: "datetime", "value": o.isoformat()}
        if isinstance(o, date):
            return {TYPE_TAG: "date", "value": o.isoformat()}
        if isinstance(o, time):
            return {TYPE_TAG: "time", "value": o.isoformat()}
        if isinstance(o, timedelta):
            return {TYPE_TAG: "duration", "value": duration_iso_string(o)}
        if isinstance(o, Decimal):
            return {TYPE_TAG: "decimal", "value": str(o)}
        if isinstance(o, uuid.UUID):
            return {TYPE_TAG: "uuid", "value": str(o)}
        return super().default(o)


_DECODERS = {
    "datetime": datetime.fromisoformat,
    "date": date.fromisoformat,
    "time": time.fromisoformat,
    "duration": parse_duration,
    "decimal": Decimal,
    "uuid": uuid.UUID,
}


def decode_tagged(obj: dict[str, Any]) -> Any:
    """``object_hook`` for json.loads reversing TypedJSONEncoder."""
    if len(obj) == 2 and "value" in obj and obj.get(TYPE_TAG) in _DECODERS:
        return _DECODERS[obj[TYPE_TAG]](obj["value"])
    return obj


def record_id_for(payload: dict[str, Any], baseline: dict[str, Any] | None) -> Any:
    """Id of the remote row a write targets: payload ``id``, else baseline ``id``."""
    if "id" in payload:
        return payload["id"]
    if baseline and "id" in baseline:
        return baseline["id"]
    return None


@dataclass
class Operation:
    """
    An intended mutation against the remote store, plus queue metadata.

    ``id``, ``created_at`` and ``priority`` never change after submission.
    ``retry_count`` only grows; the scheduler drops the operation once it
    reaches ``max_retries``.
    """

    id: str
    table: str
    action: Action
    payload: dict[str, Any]
    created_at: datetime
    baseline: dict[str, Any] | None = None
    retry_count: int = 0
    max_retries: int = 3
    priority: Priority = Priority.NORMAL
    dependencies: frozenset[str] = field(default_factory=frozenset)
    metadata: dict[str, Any] = field(default_factory=dict)
    type: OperationType = OperationType.USER_ACTION
    status: OperationStatus = OperationStatus.PENDING
    next_attempt_at: datetime | None = None
    last_error: str = ""
    # Remote state seen when a manual conflict was raised
    conflict_snapshot: dict[str, Any] | None = None

    @property
    def record_id(self) -> Any:
        """Id of the remote row this operation targets."""
        return record_id_for(self.payload, self.baseline)

    @property
    def is_blocked_on_conflict(self) -> bool:
        return self.status == OperationStatus.BLOCKED_ON_CONFLICT

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "table": self.table,
            "action": self.action.value,
            "payload": self.payload,
            "baseline": self.baseline,
            "created_at": self.created_at.isoformat(),
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "priority": int(self.priority),
            "dependencies": sorted(self.dependencies),
            "metadata": self.metadata,
            "type": self.type.value,
            "status": self.status.value,
            "next_attempt_at": self.next_attempt_at.isoformat()
            if self.next_attempt_at
            else None,
            "last_error": self.last_error,
            "conflict_snapshot": self.conflict_snapshot,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Operation":
        next_attempt = data.get("next_attempt_at")
        return cls(
            id=data["id"],
            table=data["table"],
            action=Action(data["action"]),
            payload=data.get("payload") or {},
            baseline=data.get("baseline"),
            created_at=datetime.fromisoformat(data["created_at"]),
            retry_count=data.get("retry_count", 0),
            max_retries=data.get("max_retries", 3),
            priority=Priority(data.get("priority", Priority.NORMAL)),
            dependencies=frozenset(data.get("dependencies", [])),
            metadata=data.get("metadata") or {},
            type=OperationType(data.get("type", OperationType.USER_ACTION.value)),
            status=OperationStatus(data.get("status", OperationStatus.PENDING.value)),
            next_attempt_at=datetime.fromisoformat(next_attempt) if next_attempt else None,
            last_error=data.get("last_error", ""),
            conflict_snapshot=data.get("conflict_snapshot"),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), cls=TypedJSONEncoder)

    @classmethod
    def from_json(cls, raw: str) -> "Operation":
        return cls.from_dict(json.loads(raw, object_hook=decode_tagged))


@dataclass
class ConflictDetails:
    local_payload: dict[str, Any]
    remote_snapshot: dict[str, Any]
    conflicting_fields: list[str]


@dataclass
class ConflictResolution:
    """How a detected conflict was settled."""

    strategy: ConflictStrategy
    resolved_payload: dict[str, Any]
    conflict_details: ConflictDetails
    # Remote state won wholesale; the local write is discarded
    remote_wins: bool = False


@dataclass
class SyncResult:
    """Outcome of one operation's sync attempt."""

    success: bool
    operation_id: str
    error: Exception | None = None
    conflict_resolution: ConflictResolution | None = None
    remote_snapshot: dict[str, Any] | None = None


@dataclass
class ExecutionResult:
    """Outcome of ``SyncEngine.execute``."""

    queued: bool
    operation_id: str | None = None
    snapshot: Any = None
