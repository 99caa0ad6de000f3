"""
Connectivity tracking.

A probe answers "are we online right now?"; the monitor turns probe
readings and pushed runtime events into exactly one notification per
online/offline edge.
"""

from __future__ import annotations

import logging
import socket
import threading
from typing import Callable, Protocol

logger = logging.getLogger(__name__)

ConnectivityListener = Callable[[bool], None]


class ConnectivityProbe(Protocol):
    def is_online(self) -> bool: ...


class StaticProbe:
    """Probe with a fixed answer, flipped by hand."""

    def __init__(self, online: bool = True):
        self.online = online

    def is_online(self) -> bool:
        return self.online


class SocketProbe:
    """Online when a TCP connection to ``host:port`` opens within ``timeout``."""

    def __init__(self, host: str, port: int = 443, timeout: float = 3.0):
        self.host = host
        self.port = port
        self.timeout = timeout

    def is_online(self) -> bool:
        try:
            with socket.create_connection((self.host, self.port), timeout=self.timeout):
                return True
        except OSError as e:
            logger.debug(f"Connectivity check to {self.host}:{self.port} failed: {e}")
            return False


class ConnectivityMonitor:
    """Tracks online state and notifies subscribers on transitions only."""

    def __init__(self, probe: ConnectivityProbe):
        self.probe = probe
        self._online = self._read_probe()
        self._listeners: list[ConnectivityListener] = []
        self._lock = threading.Lock()

    def _read_probe(self) -> bool:
        try:
            return bool(self.probe.is_online())
        except Exception as e:
            logger.warning(f"Connectivity probe raised, assuming offline: {e}")
            return False

    def is_online(self) -> bool:
        return self._online

    def subscribe(self, listener: ConnectivityListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: ConnectivityListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def check(self) -> bool:
        """Re-read the probe and emit if the state changed."""
        return self.set_online(self._read_probe())

    def set_online(self, online: bool) -> bool:
        """
        Record a state reported by the runtime's online/offline event source.

        Listeners are called once per edge; repeating the current state is
        a no-op.
        """
        with self._lock:
            if online == self._online:
                return online
            self._online = online
            listeners = list(self._listeners)

        logger.info(f"Network status changed: {'online' if online else 'offline'}")

        for listener in listeners:
            try:
                listener(online)
            except Exception as e:
                logger.warning(f"Connectivity listener failed: {e}", exc_info=True)

        return online
