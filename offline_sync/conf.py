"""
Build a SyncEngine from Django settings.

``OFFLINE_SYNC["REMOTE_STORE"]`` must name a callable (usually a class)
returning a RemoteStore. ``CONNECTIVITY_PROBE`` and ``CONFLICT_NOTIFIER``
are optional dotted paths resolved the same way.
"""

from __future__ import annotations

import logging

from django.core.exceptions import ImproperlyConfigured
from django.utils.module_loading import import_string

from offline_sync.history import DatabaseConflictNotifier, DatabasePassRecorder
from offline_sync.stores import DatabaseStore
from offline_sync.sync import SyncConfig, SyncEngine

logger = logging.getLogger(__name__)


def _load(path: str, setting: str):
    try:
        factory = import_string(path)
    except ImportError as e:
        raise ImproperlyConfigured(f"OFFLINE_SYNC[{setting!r}] could not be imported: {e}") from e
    return factory()


def build_engine(
    remote=None,
    store=None,
    probe=None,
    notifier=None,
    config: SyncConfig | None = None,
    recorder=None,
) -> SyncEngine:
    """
    Create an engine wired to the database-backed store and audit trail.

    Any collaborator passed explicitly overrides the configured one.

    Raises:
        ImproperlyConfigured: If no remote store is given or configured
    """
    config = config or SyncConfig.from_settings()

    if remote is None:
        if not config.remote_store:
            raise ImproperlyConfigured("OFFLINE_SYNC['REMOTE_STORE'] is not set")
        remote = _load(config.remote_store, "REMOTE_STORE")

    if probe is None and config.connectivity_probe:
        probe = _load(config.connectivity_probe, "CONNECTIVITY_PROBE")

    if notifier is None:
        if config.conflict_notifier:
            notifier = _load(config.conflict_notifier, "CONFLICT_NOTIFIER")
        else:
            notifier = DatabaseConflictNotifier()

    engine = SyncEngine(
        remote,
        store if store is not None else DatabaseStore(),
        probe=probe,
        notifier=notifier,
        config=config,
        recorder=recorder if recorder is not None else DatabasePassRecorder(),
    )
    logger.debug(f"Built sync engine with {len(engine.queue)} queued operation(s)")
    return engine
