"""
Durable key/value stores for the operation queue.

The queue only needs put/get/delete/list-by-prefix, a conditional
``replace``, and a leased lock so that only one process runs a sync pass
at a time. Three backends:
    MemoryStore   - process-local, for tests and throwaway engines
    FileStore     - one file per key under a directory, atomic writes
    DatabaseStore - rows in the StoredEntry table
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time
from pathlib import Path
from typing import Protocol

from django.conf import settings
from django.db import transaction

from offline_sync.sync.exceptions import StoreError

logger = logging.getLogger(__name__)


class PersistentStore(Protocol):
    def put(self, key: str, value: str) -> None: ...

    def replace(self, key: str, value: str) -> bool: ...

    def get(self, key: str) -> str | None: ...

    def delete(self, key: str) -> None: ...

    def list_by_prefix(self, prefix: str) -> list[str]: ...

    def acquire_lock(self, name: str, owner: str, ttl: float) -> bool: ...

    def release_lock(self, name: str, owner: str) -> None: ...


def _lock_value(owner: str, ttl: float) -> str:
    return json.dumps({"owner": owner, "expires_at": time.time() + ttl})


def _lock_held_by_other(raw: str | None, owner: str) -> bool:
    """True if ``raw`` is a live lock belonging to someone else."""
    if raw is None:
        return False
    try:
        held = json.loads(raw)
        return held["owner"] != owner and held["expires_at"] > time.time()
    except (ValueError, KeyError, TypeError):
        # Unreadable lock entries are treated as expired
        return False


def _lock_owner(raw: str | None) -> str | None:
    try:
        return json.loads(raw)["owner"]
    except (ValueError, KeyError, TypeError):
        return None


class MemoryStore:
    def __init__(self):
        self._data: dict[str, str] = {}
        self._locks: dict[str, str] = {}
        self._lock = threading.Lock()

    def put(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def replace(self, key: str, value: str) -> bool:
        with self._lock:
            if key not in self._data:
                return False
            self._data[key] = value
            return True

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._data.get(key)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def list_by_prefix(self, prefix: str) -> list[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))

    def acquire_lock(self, name: str, owner: str, ttl: float) -> bool:
        with self._lock:
            if _lock_held_by_other(self._locks.get(name), owner):
                return False
            self._locks[name] = _lock_value(owner, ttl)
            return True

    def release_lock(self, name: str, owner: str) -> None:
        with self._lock:
            if _lock_owner(self._locks.get(name)) == owner:
                del self._locks[name]


class FileStore:
    """
    Store each key as a file in ``directory``.

    Writes go to a temp file that is renamed into place, so a crash never
    leaves a half-written entry. Defaults to ``settings.OFFLINE_SYNC_ROOT``.
    Locks are dot-files next to the entries, created with O_EXCL.
    """

    def __init__(self, directory: str | Path | None = None):
        self.directory = Path(directory or settings.OFFLINE_SYNC_ROOT)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        if not key or "/" in key or "\\" in key or key.startswith("."):
            raise StoreError(f"Invalid store key: {key!r}")
        return self.directory / key

    def _lock_path(self, name: str) -> Path:
        return self._path(name).with_name(f".{name}.lock")

    def _write(self, path: Path, value: str) -> None:
        try:
            fd, tmp_path = tempfile.mkstemp(dir=self.directory, prefix=".entry_", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(value)
                os.replace(tmp_path, path)
            except Exception:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
                raise
        except OSError as e:
            logger.error(f"Failed to write store entry {path.name}: {e}")
            raise StoreError(f"Failed to write {path.name}: {e}") from e

    def _read(self, path: Path) -> str | None:
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.error(f"Failed to read store entry {path.name}: {e}")
            raise StoreError(f"Failed to read {path.name}: {e}") from e

    def put(self, key: str, value: str) -> None:
        self._write(self._path(key), value)

    def replace(self, key: str, value: str) -> bool:
        path = self._path(key)
        if not path.exists():
            return False
        self._write(path, value)
        return True

    def get(self, key: str) -> str | None:
        return self._read(self._path(key))

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass

    def list_by_prefix(self, prefix: str) -> list[str]:
        return sorted(
            p.name
            for p in self.directory.iterdir()
            if p.is_file() and p.name.startswith(prefix) and not p.name.startswith(".")
        )

    def acquire_lock(self, name: str, owner: str, ttl: float) -> bool:
        path = self._lock_path(name)
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            if _lock_held_by_other(self._read(path), owner):
                return False
            # Expired, unreadable, or ours: take it over
            self._write(path, _lock_value(owner, ttl))
            return True
        except OSError as e:
            raise StoreError(f"Failed to create lock {name}: {e}") from e

        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(_lock_value(owner, ttl))
        return True

    def release_lock(self, name: str, owner: str) -> None:
        path = self._lock_path(name)
        if _lock_owner(self._read(path)) == owner:
            try:
                path.unlink()
            except FileNotFoundError:
                pass


class DatabaseStore:
    """
    Store entries as StoredEntry rows in the default database.

    Locks are StoredEntry rows too, claimed under ``select_for_update``.
    """

    def put(self, key: str, value: str) -> None:
        from offline_sync.models import StoredEntry

        StoredEntry.objects.update_or_create(key=key, defaults={"value": value})

    def replace(self, key: str, value: str) -> bool:
        from offline_sync.models import StoredEntry

        return StoredEntry.objects.filter(key=key).update(value=value) > 0

    def get(self, key: str) -> str | None:
        from offline_sync.models import StoredEntry

        return StoredEntry.objects.filter(key=key).values_list("value", flat=True).first()

    def delete(self, key: str) -> None:
        from offline_sync.models import StoredEntry

        StoredEntry.objects.filter(key=key).delete()

    def list_by_prefix(self, prefix: str) -> list[str]:
        from offline_sync.models import StoredEntry

        return list(
            StoredEntry.objects.filter(key__startswith=prefix)
            .order_by("key")
            .values_list("key", flat=True)
        )

    def acquire_lock(self, name: str, owner: str, ttl: float) -> bool:
        from offline_sync.models import StoredEntry

        value = _lock_value(owner, ttl)
        with transaction.atomic():
            entry, created = StoredEntry.objects.select_for_update().get_or_create(
                key=name, defaults={"value": value}
            )
            if created:
                return True
            if _lock_held_by_other(entry.value, owner):
                return False

            entry.value = value
            entry.save(update_fields=["value", "updated_at"])
            return True

    def release_lock(self, name: str, owner: str) -> None:
        from offline_sync.models import StoredEntry

        with transaction.atomic():
            entry = StoredEntry.objects.select_for_update().filter(key=name).first()
            if entry is not None and _lock_owner(entry.value) == owner:
                entry.delete()
