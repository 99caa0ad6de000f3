"""
Engine configuration, read from the ``OFFLINE_SYNC`` Django setting.
"""

from __future__ import annotations

from dataclasses import dataclass, fields

from django.conf import settings

from offline_sync.sync.conflict_resolver import (
    DEFAULT_TIMESTAMP_FIELDS,
    DEFAULT_VOLATILE_FIELDS,
)
from offline_sync.sync.operations import ConflictStrategy


@dataclass
class SyncConfig:
    enable_offline_mode: bool = True
    max_operations: int = 1000
    retention_days: float = 7
    sync_interval: float = 30.0
    max_retries: int = 3
    retry_delay: float = 0.0
    retry_delay_max: float = 600.0
    conflict_strategy: ConflictStrategy = ConflictStrategy.TIMESTAMP
    enable_conflict_resolution: bool = True
    prioritize_operations: bool = True
    sync_on_submit: bool = True
    request_timeout: float | None = 30.0
    fail_fast_on_permanent: bool = False
    volatile_fields: tuple[str, ...] = DEFAULT_VOLATILE_FIELDS
    timestamp_fields: tuple[str, ...] = DEFAULT_TIMESTAMP_FIELDS
    history_keep_days: int = 30
    # Seconds a sync pass lock stays valid without renewal
    pass_lock_ttl: float = 600.0
    # Dotted paths resolved by offline_sync.conf.build_engine
    remote_store: str | None = None
    connectivity_probe: str | None = None
    conflict_notifier: str | None = None

    def __post_init__(self):
        self.conflict_strategy = ConflictStrategy(self.conflict_strategy)
        self.volatile_fields = tuple(self.volatile_fields)
        self.timestamp_fields = tuple(self.timestamp_fields)

    @classmethod
    def from_settings(cls) -> "SyncConfig":
        """
        Build a config from ``settings.OFFLINE_SYNC``.

        Keys are the upper-cased field names (``SYNC_INTERVAL``,
        ``CONFLICT_STRATEGY``...). Unknown keys raise ValueError.
        """
        raw = getattr(settings, "OFFLINE_SYNC", None) or {}
        known = {f.name for f in fields(cls)}
        values = {}
        for key, value in raw.items():
            name = key.lower()
            if name not in known:
                raise ValueError(f"Unknown OFFLINE_SYNC setting: {key}")
            values[name] = value
        return cls(**values)
