"""Low-level socket connection wrapper and read/write utilities."""

from __future__ import annotations

import socket
import time
from dataclasses import dataclass, field

from config import READ_CHUNK_SIZE
from request import MalformedRequestError, ProxyRequest, RequestParser
from response import HTTPResponse


class SocketTimeoutError(Exception):
    """Raised when a peer times out while sending request bytes."""


@dataclass(slots=True, eq=False)
class Connection:
    """A duplex byte channel owned by exactly one handler at a time."""

    sock: socket.socket
    address: tuple[str, int]
    last_activity: float = field(default_factory=time.monotonic)
    read_closed: bool = False
    write_closed: bool = False
    closed: bool = False
    bytes_received: int = 0
    bytes_sent: int = 0

    @property
    def state(self) -> str:
        if self.closed:
            return "closed"
        if self.read_closed or self.write_closed:
            return "half-closed"
        return "open"

    def touch(self) -> None:
        self.last_activity = time.monotonic()

    def settimeout(self, timeout: float | None) -> None:
        self.sock.settimeout(timeout)

    def recv(self, size: int = READ_CHUNK_SIZE) -> bytes:
        data = self.sock.recv(size)
        self.touch()
        self.bytes_received += len(data)
        if not data:
            self.read_closed = True
        return data

    def sendall(self, payload: bytes) -> int:
        self.sock.sendall(payload)
        self.touch()
        self.bytes_sent += len(payload)
        return len(payload)

    def shutdown_write(self) -> None:
        if self.write_closed or self.closed:
            return
        self.write_closed = True
        try:
            self.sock.shutdown(socket.SHUT_WR)
        except OSError:
            pass

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self.sock.close()
        except OSError:
            pass


def read_request(
    conn: Connection,
    parser: RequestParser,
    *,
    read_chunk_size: int = READ_CHUNK_SIZE,
    idle_timeout: float | None = None,
    deadline: float | None = None,
) -> ProxyRequest | None:
    """Read until one request is complete; ``None`` on a clean close between requests.

    Each read waits at most ``idle_timeout``, and never past ``deadline``.
    """
    request = parser.feed()
    while request is None:
        if idle_timeout is not None:
            conn.settimeout(_read_timeout(idle_timeout, deadline))
        try:
            chunk = conn.recv(read_chunk_size)
        except socket.timeout as exc:
            raise SocketTimeoutError("Timed out waiting for request bytes") from exc

        if not chunk:
            if not parser.has_partial:
                return None
            raise MalformedRequestError("Connection closed before request completed")
        request = parser.feed(chunk)
    return request


def write_http_response(conn: Connection, payload: bytes) -> int:
    """Write the complete payload to a connection."""
    return conn.sendall(payload)


def write_http_response_message(conn: Connection, response: HTTPResponse) -> int:
    return conn.sendall(response.to_bytes())


def _read_timeout(idle_timeout: float, deadline: float | None) -> float:
    if deadline is None:
        return idle_timeout
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise SocketTimeoutError("Connection exceeded its total time budget")
    return min(idle_timeout, remaining)
