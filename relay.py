"""Byte relays between a client connection and an upstream connection."""

from __future__ import annotations

import logging
import selectors
import socket
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import NoReturn

from config import IDLE_TIMEOUT_SECS, MAX_CHUNK_LINE_BYTES, MAX_HEADER_BYTES, READ_CHUNK_SIZE
from headers import Headers, parse_chunk_size
from response import InvalidResponseError, ResponseHead
from socket_handler import Connection

logger = logging.getLogger(__name__)


class RelayError(Exception):
    """Base class for failures while bytes are being relayed."""

    status_code = 502


class IdleTimeoutError(RelayError):
    """No bytes flowed in either direction within the idle window."""

    status_code = 504


class TotalTimeoutError(RelayError):
    """The connection exceeded its total time budget."""

    status_code = 504


class RelayIOError(RelayError):
    """A socket error or premature close interrupted the relay."""


@dataclass(slots=True)
class RelayedResponse:
    head: ResponseHead
    framing: str
    keep_alive: bool
    upstream_reusable: bool
    bytes_out: int
    body: bytes | None = None


class ChunkedBodyScanner:
    """Locates the end of a chunked body in a byte stream without decoding it."""

    def __init__(self, *, max_line_bytes: int = MAX_CHUNK_LINE_BYTES) -> None:
        self.max_line_bytes = max_line_bytes
        self.done = False
        self._state = "size"
        self._line = bytearray()
        self._remaining = 0

    def feed(self, data: bytes) -> int | None:
        """Return how many bytes of ``data`` finish the body, or ``None`` if it continues."""
        position = 0
        while position < len(data):
            if self._state == "data":
                taken = min(self._remaining, len(data) - position)
                position += taken
                self._remaining -= taken
                if self._remaining == 0:
                    self._state = "data-crlf"
                continue

            line_end = data.find(b"\n", position)
            if line_end == -1:
                self._line.extend(data[position:])
                if len(self._line) > self.max_line_bytes:
                    raise InvalidResponseError("Chunked framing line too long")
                return None

            self._line.extend(data[position:line_end])
            position = line_end + 1
            line = bytes(self._line).rstrip(b"\r")
            self._line.clear()

            if self._state == "size":
                chunk_size = parse_chunk_size(line)
                if chunk_size is None:
                    raise InvalidResponseError("Malformed chunk size")
                if chunk_size == 0:
                    self._state = "trailer"
                else:
                    self._remaining = chunk_size
                    self._state = "data"
            elif self._state == "data-crlf":
                if line:
                    raise InvalidResponseError("Chunk missing CRLF terminator")
                self._state = "size"
            elif not line:
                self.done = True
                return position
        return None


def tunnel(
    client: Connection,
    upstream: Connection,
    *,
    idle_timeout: float = IDLE_TIMEOUT_SECS,
    deadline: float | None = None,
    chunk_size: int = READ_CHUNK_SIZE,
) -> tuple[int, int]:
    """Copy raw bytes both ways until both directions reach end-of-stream.

    End-of-stream on one side is propagated as a write half-close to the
    other. Returns ``(client_to_upstream, upstream_to_client)`` byte counts.
    """
    peers = {id(client): upstream, id(upstream): client}
    relayed = {id(client): 0, id(upstream): 0}
    client.settimeout(idle_timeout)
    upstream.settimeout(idle_timeout)

    with selectors.DefaultSelector() as selector:
        for conn in (client, upstream):
            if not conn.read_closed:
                selector.register(conn.sock, selectors.EVENT_READ, data=conn)

        while selector.get_map():
            events = selector.select(timeout=_timeout_for(idle_timeout, deadline))
            if not events:
                _raise_timeout(idle_timeout, deadline)

            for key, _mask in events:
                source: Connection = key.data
                target = peers[id(source)]
                try:
                    data = source.recv(chunk_size)
                except socket.timeout:
                    continue
                except OSError as exc:
                    raise RelayIOError(f"Read failed during tunnel: {exc}") from exc

                if not data:
                    selector.unregister(source.sock)
                    target.shutdown_write()
                    continue

                send_all(target, data)
                relayed[id(source)] += len(data)

    return relayed[id(client)], relayed[id(upstream)]


def relay_response(
    upstream: Connection,
    client: Connection,
    *,
    request_method: str,
    client_keep_alive: bool,
    idle_timeout: float = IDLE_TIMEOUT_SECS,
    deadline: float | None = None,
    capture_limit: int = 0,
    max_header_bytes: int = MAX_HEADER_BYTES,
    chunk_size: int = READ_CHUNK_SIZE,
    extra_headers: Headers | None = None,
    pending_client_bytes: Callable[[], bytes] | None = None,
) -> RelayedResponse:
    """Stream one upstream response to the client according to its framing.

    Interim 1xx responses are forwarded as received. When ``capture_limit``
    is positive the body bytes are also returned, unless they exceed it.
    On ``101`` the client bytes already buffered by the caller, obtained from
    ``pending_client_bytes``, go upstream before the tunnel starts.
    """
    buffer = bytearray()
    while True:
        raw_head = _read_head(
            upstream,
            buffer,
            max_header_bytes=max_header_bytes,
            idle_timeout=idle_timeout,
            deadline=deadline,
            chunk_size=chunk_size,
        )
        head = ResponseHead.from_bytes(raw_head[:-4])
        if not head.is_interim:
            break
        send_all(client, raw_head)

    framing, content_length = head.framing(request_method)
    upstream_persistent = head.is_persistent(request_method)
    keep_alive = client_keep_alive and upstream_persistent and head.status_code != 101
    bytes_out = send_all(client, head.for_client(keep_alive=keep_alive, extra=extra_headers))

    if head.status_code == 101:
        if buffer:
            bytes_out += send_all(client, bytes(buffer))
        early_bytes = pending_client_bytes() if pending_client_bytes is not None else b""
        if early_bytes:
            send_all(upstream, early_bytes)
        _client_bytes, upstream_bytes = tunnel(
            client,
            upstream,
            idle_timeout=idle_timeout,
            deadline=deadline,
            chunk_size=chunk_size,
        )
        return RelayedResponse(
            head=head,
            framing="upgrade",
            keep_alive=False,
            upstream_reusable=False,
            bytes_out=bytes_out + upstream_bytes,
        )

    capture = bytearray() if capture_limit > 0 else None
    complete = True
    body_bytes = 0

    def forward(data: bytes) -> None:
        nonlocal capture, body_bytes
        body_bytes += send_all(client, data)
        if capture is not None:
            capture.extend(data)
            if len(capture) > capture_limit:
                capture = None

    if framing == "length":
        remaining = content_length
        leftover = bytes(buffer[:remaining])
        if len(buffer) > remaining:
            complete = False
        if leftover:
            forward(leftover)
            remaining -= len(leftover)
        while remaining > 0:
            data = _recv(upstream, min(chunk_size, remaining), idle_timeout, deadline)
            if not data:
                raise RelayIOError("Upstream closed before Content-Length was satisfied")
            forward(data)
            remaining -= len(data)
    elif framing == "chunked":
        scanner = ChunkedBodyScanner()
        pending = bytes(buffer)
        while True:
            if pending:
                end = scanner.feed(pending)
                if end is not None:
                    forward(pending[:end])
                    if end < len(pending):
                        complete = False
                    break
                forward(pending)
            pending = _recv(upstream, chunk_size, idle_timeout, deadline)
            if not pending:
                raise RelayIOError("Upstream closed inside a chunked body")
    elif framing == "close":
        if buffer:
            forward(bytes(buffer))
        while True:
            data = _recv(upstream, chunk_size, idle_timeout, deadline)
            if not data:
                break
            forward(data)
    elif buffer:
        complete = False

    return RelayedResponse(
        head=head,
        framing=framing,
        keep_alive=keep_alive,
        upstream_reusable=upstream_persistent and complete,
        bytes_out=bytes_out + body_bytes,
        body=bytes(capture) if capture is not None else None,
    )


def _read_head(
    upstream: Connection,
    buffer: bytearray,
    *,
    max_header_bytes: int,
    idle_timeout: float,
    deadline: float | None,
    chunk_size: int,
) -> bytes:
    """Consume one response head (including the blank line) from the stream."""
    scan_from = 0
    while True:
        header_end = buffer.find(b"\r\n\r\n", max(0, scan_from - 3))
        if header_end != -1:
            raw_head = bytes(buffer[: header_end + 4])
            del buffer[: header_end + 4]
            return raw_head
        if len(buffer) > max_header_bytes:
            raise InvalidResponseError("Upstream response head too large")
        scan_from = len(buffer)

        data = _recv(upstream, chunk_size, idle_timeout, deadline)
        if not data:
            raise RelayIOError("Upstream closed before sending a response head")
        buffer.extend(data)


def _recv(conn: Connection, size: int, idle_timeout: float, deadline: float | None) -> bytes:
    conn.settimeout(_timeout_for(idle_timeout, deadline))
    try:
        return conn.recv(size)
    except socket.timeout as exc:
        _raise_timeout(idle_timeout, deadline, exc)
    except OSError as exc:
        raise RelayIOError(f"Read failed: {exc}") from exc


def send_all(conn: Connection, data: bytes) -> int:
    try:
        return conn.sendall(data)
    except socket.timeout as exc:
        raise IdleTimeoutError("Peer stopped reading") from exc
    except OSError as exc:
        raise RelayIOError(f"Write failed: {exc}") from exc


def _timeout_for(idle_timeout: float, deadline: float | None) -> float:
    if deadline is None:
        return idle_timeout
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise TotalTimeoutError("Connection exceeded its total time budget")
    return min(idle_timeout, remaining)


def _raise_timeout(
    idle_timeout: float,
    deadline: float | None,
    cause: BaseException | None = None,
) -> NoReturn:
    if deadline is not None and time.monotonic() >= deadline:
        raise TotalTimeoutError("Connection exceeded its total time budget") from cause
    raise IdleTimeoutError(f"No bytes relayed for {idle_timeout}s") from cause
