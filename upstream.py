"""Upstream connector with a pool of idle origin connections keyed by (host, port)."""

from __future__ import annotations

import logging
import socket
import threading
import time
from collections import deque
from dataclasses import dataclass, field

from config import (
    CONNECT_TIMEOUT_SECS,
    UPSTREAM_POOL_ENABLED,
    UPSTREAM_POOL_MAX_PER_HOST,
    UPSTREAM_POOL_MAX_TOTAL,
    UPSTREAM_STALE_AFTER_SECS,
)
from socket_handler import Connection

logger = logging.getLogger(__name__)

UpstreamKey = tuple[str, int]


class UpstreamError(Exception):
    """Base class for failures to obtain an upstream connection."""

    def __init__(self, message: str, *, status_code: int = 502) -> None:
        super().__init__(message)
        self.status_code = status_code


class UpstreamUnreachableError(UpstreamError):
    """Raised when the origin cannot be connected to (refused, timed out)."""


class UpstreamUnresolvableError(UpstreamError):
    """Raised when the origin host name cannot be resolved."""


@dataclass(slots=True, eq=False)
class UpstreamConnection(Connection):
    host: str = ""
    port: int = 0
    created_at: float = field(default_factory=time.monotonic)
    reused: bool = False

    @property
    def key(self) -> UpstreamKey:
        return (self.host, self.port)


class UpstreamConnector:
    def __init__(
        self,
        *,
        connect_timeout: float = CONNECT_TIMEOUT_SECS,
        pool_enabled: bool = UPSTREAM_POOL_ENABLED,
        max_idle_per_host: int = UPSTREAM_POOL_MAX_PER_HOST,
        max_idle_total: int = UPSTREAM_POOL_MAX_TOTAL,
        stale_after_secs: float = UPSTREAM_STALE_AFTER_SECS,
    ) -> None:
        if connect_timeout <= 0:
            raise ValueError("connect_timeout must be positive")
        self.connect_timeout = connect_timeout
        self.pool_enabled = pool_enabled
        self.max_idle_per_host = max_idle_per_host
        self.max_idle_total = max_idle_total
        self.stale_after_secs = stale_after_secs

        self._lock = threading.Lock()
        self._idle: dict[UpstreamKey, deque[UpstreamConnection]] = {}
        self._idle_total = 0
        self._closed = False
        self._connects = 0
        self._reuses = 0
        self._failures = 0

    def acquire(self, host: str, port: int) -> UpstreamConnection:
        """Reuse a live idle connection to ``(host, port)`` or open a new one."""
        pooled = self._take_idle((host, port))
        if pooled is not None:
            return pooled
        return self.connect(host, port)

    def connect(self, host: str, port: int) -> UpstreamConnection:
        try:
            sock = socket.create_connection((host, port), timeout=self.connect_timeout)
        except socket.gaierror as exc:
            self._record_failure()
            raise UpstreamUnresolvableError(f"Cannot resolve {host}: {exc}") from exc
        except UnicodeError as exc:
            self._record_failure()
            raise UpstreamUnresolvableError(f"Invalid host name {host!r}") from exc
        except socket.timeout as exc:
            self._record_failure()
            raise UpstreamUnreachableError(
                f"Timed out connecting to {host}:{port}",
                status_code=504,
            ) from exc
        except OSError as exc:
            self._record_failure()
            raise UpstreamUnreachableError(f"Cannot connect to {host}:{port}: {exc}") from exc

        try:
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        except OSError:
            pass
        with self._lock:
            self._connects += 1
        logger.debug("Opened upstream connection to %s:%s", host, port)
        return UpstreamConnection(
            sock=sock,
            address=sock.getpeername()[:2],
            host=host,
            port=port,
        )

    def release(self, conn: UpstreamConnection, *, reusable: bool) -> None:
        """Return ``conn`` to the idle pool when reusable, else close it."""
        if not reusable or not self.pool_enabled or conn.state != "open":
            conn.close()
            return

        with self._lock:
            has_room = (
                not self._closed
                and len(self._idle.get(conn.key, ())) < self.max_idle_per_host
                and self._idle_total < self.max_idle_total
            )
            if has_room:
                conn.touch()
                self._idle.setdefault(conn.key, deque()).append(conn)
                self._idle_total += 1
                return
        conn.close()

    def prune_idle(self) -> int:
        """Close idle connections that went stale; returns how many were dropped."""
        cutoff = time.monotonic() - self.stale_after_secs
        stale: list[UpstreamConnection] = []
        with self._lock:
            for key in list(self._idle):
                idle = self._idle[key]
                fresh = deque(conn for conn in idle if conn.last_activity >= cutoff)
                stale.extend(conn for conn in idle if conn.last_activity < cutoff)
                if fresh:
                    self._idle[key] = fresh
                else:
                    del self._idle[key]
            self._idle_total -= len(stale)
        for conn in stale:
            conn.close()
        return len(stale)

    def idle_count(self, host: str | None = None, port: int | None = None) -> int:
        with self._lock:
            if host is None:
                return self._idle_total
            return len(self._idle.get((host, port or 0), ()))

    def close_all(self) -> None:
        with self._lock:
            self._closed = True
            idle = [conn for bucket in self._idle.values() for conn in bucket]
            self._idle.clear()
            self._idle_total = 0
        for conn in idle:
            conn.close()

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "connects": self._connects,
                "reuses": self._reuses,
                "failures": self._failures,
                "idle": self._idle_total,
                "idle_hosts": len(self._idle),
            }

    def _take_idle(self, key: UpstreamKey) -> UpstreamConnection | None:
        if not self.pool_enabled:
            return None

        stale: list[UpstreamConnection] = []
        chosen: UpstreamConnection | None = None
        with self._lock:
            idle = self._idle.get(key)
            while idle:
                conn = idle.pop()
                self._idle_total -= 1
                if self._is_alive(conn):
                    chosen = conn
                    self._reuses += 1
                    break
                stale.append(conn)
            if idle is not None and not idle:
                self._idle.pop(key, None)

        for conn in stale:
            logger.debug("Dropping stale upstream connection to %s:%s", conn.host, conn.port)
            conn.close()
        if chosen is not None:
            chosen.reused = True
        return chosen

    def _is_alive(self, conn: UpstreamConnection) -> bool:
        if time.monotonic() - conn.last_activity > self.stale_after_secs:
            return False
        try:
            conn.sock.setblocking(False)
            try:
                peeked = conn.sock.recv(1, socket.MSG_PEEK)
            finally:
                conn.sock.setblocking(True)
        except BlockingIOError:
            return True
        except OSError:
            return False
        # EOF or unsolicited bytes both make the connection unusable.
        logger.debug("Idle upstream connection readable (%d bytes peeked)", len(peeked))
        return False

    def _record_failure(self) -> None:
        with self._lock:
            self._failures += 1
