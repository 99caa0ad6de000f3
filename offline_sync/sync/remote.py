"""
Collaborator contracts for the remote store and the conflict notifier.

The engine never talks to a backend directly; it is handed an object
satisfying ``RemoteStore`` and wraps it in ``TimeoutRemote`` so each call
is capped individually.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Protocol

from offline_sync.sync.exceptions import TransientRemoteError

logger = logging.getLogger(__name__)


class RemoteStore(Protocol):
    def insert(self, table: str, payload: dict[str, Any]) -> dict[str, Any]: ...

    def update(
        self, table: str, record_id: Any, payload: dict[str, Any]
    ) -> dict[str, Any]: ...

    def delete(self, table: str, record_id: Any) -> None: ...

    def fetch_by_id(self, table: str, record_id: Any) -> dict[str, Any]: ...


class ConflictNotifier(Protocol):
    def notify(
        self,
        operation_id: str,
        conflicting_fields: list[str],
        local_payload: dict[str, Any],
        remote_snapshot: dict[str, Any],
    ) -> None: ...


class TimeoutRemote:
    """
    Wrap a RemoteStore so every call gives up after ``timeout`` seconds.

    Calls run one at a time on a single worker thread. A call that overruns
    raises TransientRemoteError, but the worker cannot be interrupted, so
    the next call first waits (again up to ``timeout``) for the overrunning
    one to finish. If it is still running, the next call fails the same
    way instead of racing it.
    """

    def __init__(self, remote: RemoteStore, timeout: float | None = 30.0):
        self.remote = remote
        self.timeout = timeout
        self._executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="offline-sync-remote"
        )
        self._lock = threading.Lock()
        self._overrun: Future | None = None

    @property
    def busy(self) -> bool:
        """True while a timed-out call is still running in the background."""
        return self._overrun is not None and not self._overrun.done()

    def _wait_for_overrun(self, name: str) -> None:
        if self._overrun is None:
            return

        done, _ = wait([self._overrun], timeout=self.timeout)
        if not done:
            raise TransientRemoteError(
                f"Remote {name} not started: an earlier call is still running "
                f"after {self.timeout}s"
            )

        error = self._overrun.exception()
        if error is not None:
            logger.info(f"Timed-out remote call finished late with: {error}")
        self._overrun = None

    def _call(self, name: str, fn: Callable, *args) -> Any:
        with self._lock:
            self._wait_for_overrun(name)
            if not self.timeout:
                return fn(*args)

            future = self._executor.submit(fn, *args)
            try:
                return future.result(timeout=self.timeout)
            except FutureTimeoutError as e:
                self._overrun = future
                logger.warning(f"Remote {name} timed out after {self.timeout}s")
                raise TransientRemoteError(
                    f"Remote {name} timed out after {self.timeout}s"
                ) from e

    def insert(self, table, payload):
        return self._call("insert", self.remote.insert, table, payload)

    def update(self, table, record_id, payload):
        return self._call("update", self.remote.update, table, record_id, payload)

    def delete(self, table, record_id):
        return self._call("delete", self.remote.delete, table, record_id)

    def fetch_by_id(self, table, record_id):
        return self._call("fetch_by_id", self.remote.fetch_by_id, table, record_id)

    def close(self) -> None:
        self._executor.shutdown(wait=False)
