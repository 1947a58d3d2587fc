"""Tests for the raw tunnel and the framed response relay over socket pairs."""

from __future__ import annotations

import socket
import threading
import time

import pytest

from relay import (
    ChunkedBodyScanner,
    IdleTimeoutError,
    RelayIOError,
    TotalTimeoutError,
    relay_response,
    tunnel,
)
from response import InvalidResponseError
from socket_handler import Connection


@pytest.fixture
def pairs():
    """``(client_app, client_conn, upstream_conn, upstream_app)`` socket ends."""
    client_app, client_side = socket.socketpair()
    upstream_side, upstream_app = socket.socketpair()
    client_app.settimeout(2)
    upstream_app.settimeout(2)
    yield (
        client_app,
        Connection(sock=client_side, address=("client", 1)),
        Connection(sock=upstream_side, address=("origin", 2)),
        upstream_app,
    )
    for sock in (client_app, client_side, upstream_side, upstream_app):
        sock.close()


def _recv_all(sock: socket.socket) -> bytes:
    data = b""
    while True:
        try:
            chunk = sock.recv(65536)
        except socket.timeout:
            return data
        if not chunk:
            return data
        data += chunk


def test_tunnel_is_byte_transparent_and_propagates_half_close(pairs) -> None:
    client_app, client, upstream, upstream_app = pairs
    result: list[tuple[int, int]] = []
    worker = threading.Thread(
        target=lambda: result.append(tunnel(client, upstream, idle_timeout=2.0)),
        daemon=True,
    )
    worker.start()

    client_app.sendall(b"hello\x00\xff")
    assert upstream_app.recv(64) == b"hello\x00\xff"
    upstream_app.sendall(b"world")
    assert client_app.recv(64) == b"world"

    client_app.shutdown(socket.SHUT_WR)
    assert upstream_app.recv(64) == b""
    upstream_app.sendall(b"late")
    assert client_app.recv(64) == b"late"
    upstream_app.shutdown(socket.SHUT_WR)
    assert client_app.recv(64) == b""

    worker.join(timeout=2)
    assert result == [(7, 9)]


def test_tunnel_idle_timeout(pairs) -> None:
    _client_app, client, upstream, _upstream_app = pairs

    started = time.monotonic()
    with pytest.raises(IdleTimeoutError) as exc_info:
        tunnel(client, upstream, idle_timeout=0.2)

    assert time.monotonic() - started < 1.5
    assert exc_info.value.status_code == 504


def test_tunnel_total_deadline(pairs) -> None:
    _client_app, client, upstream, _upstream_app = pairs

    with pytest.raises(TotalTimeoutError):
        tunnel(client, upstream, idle_timeout=5.0, deadline=time.monotonic() - 1)


def test_chunked_scanner_finds_end_across_splits() -> None:
    body = b"4\r\nWiki\r\n5;x=y\r\npedia\r\n0\r\nTrailer: v\r\n\r\n"
    scanner = ChunkedBodyScanner()

    assert scanner.feed(body[:7]) is None
    assert scanner.feed(body[7:20]) is None
    end = scanner.feed(body[20:] + b"NEXT")

    assert end == len(body) - 20
    assert scanner.done


def test_chunked_scanner_rejects_bad_size() -> None:
    with pytest.raises(InvalidResponseError, match="Malformed chunk size"):
        ChunkedBodyScanner().feed(b"zz\r\n")


def test_relay_content_length_response_with_capture(pairs) -> None:
    client_app, client, upstream, upstream_app = pairs
    upstream_app.sendall(b"HTTP/1.1 200 OK\r\nContent-Length: 5\r\nKeep-Alive: timeout=5\r\n\r\nhello")

    relayed = relay_response(
        upstream,
        client,
        request_method="GET",
        client_keep_alive=True,
        idle_timeout=1.0,
        capture_limit=100,
    )
    client.shutdown_write()
    received = _recv_all(client_app)

    assert relayed.head.status_code == 200
    assert relayed.framing == "length"
    assert relayed.keep_alive is True
    assert relayed.upstream_reusable is True
    assert relayed.body == b"hello"
    assert relayed.bytes_out == len(received)
    assert b"Connection: keep-alive\r\n" in received
    assert b"Keep-Alive" not in received
    assert received.endswith(b"\r\n\r\nhello")


def test_relay_forwards_interim_responses(pairs) -> None:
    client_app, client, upstream, upstream_app = pairs
    upstream_app.sendall(
        b"HTTP/1.1 100 Continue\r\n\r\n"
        b"HTTP/1.1 201 Created\r\nContent-Length: 2\r\n\r\nok"
    )

    relayed = relay_response(
        upstream, client, request_method="POST", client_keep_alive=True, idle_timeout=1.0
    )
    client.shutdown_write()
    received = _recv_all(client_app)

    assert relayed.head.status_code == 201
    assert received.startswith(b"HTTP/1.1 100 Continue\r\n\r\nHTTP/1.1 201 Created\r\n")
    assert relayed.body is None


def test_relay_passes_chunked_body_verbatim(pairs) -> None:
    client_app, client, upstream, upstream_app = pairs
    chunked = b"3\r\nabc\r\n2\r\nde\r\n0\r\n\r\n"
    upstream_app.sendall(b"HTTP/1.1 200 OK\r\nTransfer-Encoding: chunked\r\n\r\n")
    upstream_app.sendall(chunked)

    relayed = relay_response(
        upstream,
        client,
        request_method="GET",
        client_keep_alive=False,
        idle_timeout=1.0,
        capture_limit=1024,
    )
    client.shutdown_write()
    received = _recv_all(client_app)

    assert relayed.framing == "chunked"
    assert relayed.body == chunked
    assert relayed.keep_alive is False
    assert relayed.upstream_reusable is True
    assert b"Transfer-Encoding: chunked\r\n" in received
    assert b"Connection: close\r\n" in received
    assert received.endswith(chunked)


def test_relay_reads_until_close_without_framing(pairs) -> None:
    client_app, client, upstream, upstream_app = pairs
    upstream_app.sendall(b"HTTP/1.0 200 OK\r\n\r\nstream-until-eof")
    upstream_app.shutdown(socket.SHUT_WR)

    relayed = relay_response(
        upstream, client, request_method="GET", client_keep_alive=True, idle_timeout=1.0
    )
    client.shutdown_write()

    assert relayed.framing == "close"
    assert relayed.keep_alive is False
    assert relayed.upstream_reusable is False
    assert _recv_all(client_app).endswith(b"stream-until-eof")


def test_relay_skips_body_for_head_requests(pairs) -> None:
    client_app, client, upstream, upstream_app = pairs
    upstream_app.sendall(b"HTTP/1.1 200 OK\r\nContent-Length: 1000\r\n\r\n")

    relayed = relay_response(
        upstream, client, request_method="HEAD", client_keep_alive=True, idle_timeout=1.0
    )
    client.shutdown_write()

    assert relayed.framing == "none"
    assert relayed.upstream_reusable is True
    assert b"Content-Length: 1000\r\n" in _recv_all(client_app)


def test_capture_overflow_drops_body_but_relays_everything(pairs) -> None:
    client_app, client, upstream, upstream_app = pairs
    upstream_app.sendall(b"HTTP/1.1 200 OK\r\nContent-Length: 10\r\n\r\n0123456789")

    relayed = relay_response(
        upstream,
        client,
        request_method="GET",
        client_keep_alive=True,
        idle_timeout=1.0,
        capture_limit=4,
    )
    client.shutdown_write()

    assert relayed.body is None
    assert _recv_all(client_app).endswith(b"0123456789")


def test_upstream_close_before_head_is_relay_io_error(pairs) -> None:
    _client_app, client, upstream, upstream_app = pairs
    upstream_app.shutdown(socket.SHUT_WR)

    with pytest.raises(RelayIOError):
        relay_response(upstream, client, request_method="GET", client_keep_alive=True, idle_timeout=1.0)


def test_silent_upstream_times_out_waiting_for_head(pairs) -> None:
    _client_app, client, upstream, _upstream_app = pairs

    with pytest.raises(IdleTimeoutError):
        relay_response(upstream, client, request_method="GET", client_keep_alive=True, idle_timeout=0.2)


def test_short_body_is_relay_io_error(pairs) -> None:
    _client_app, client, upstream, upstream_app = pairs
    upstream_app.sendall(b"HTTP/1.1 200 OK\r\nContent-Length: 10\r\n\r\nabc")
    upstream_app.shutdown(socket.SHUT_WR)

    with pytest.raises(RelayIOError, match="Content-Length"):
        relay_response(upstream, client, request_method="GET", client_keep_alive=True, idle_timeout=1.0)


def test_garbage_status_line_is_invalid_response(pairs) -> None:
    _client_app, client, upstream, upstream_app = pairs
    upstream_app.sendall(b"SSH-2.0-OpenSSH\r\n\r\n")

    with pytest.raises(InvalidResponseError) as exc_info:
        relay_response(upstream, client, request_method="GET", client_keep_alive=True, idle_timeout=1.0)

    assert exc_info.value.status_code == 502


def test_switching_protocols_sends_pending_client_bytes_upstream_first(pairs) -> None:
    client_app, client, upstream, upstream_app = pairs
    upstream_app.sendall(
        b"HTTP/1.1 101 Switching Protocols\r\nUpgrade: websocket\r\nConnection: Upgrade\r\n\r\nserver-hello"
    )
    results: list = []

    def run() -> None:
        results.append(
            relay_response(
                upstream,
                client,
                request_method="GET",
                client_keep_alive=True,
                idle_timeout=2.0,
                pending_client_bytes=lambda: b"early-frame",
            )
        )

    thread = threading.Thread(target=run, daemon=True)
    thread.start()

    assert upstream_app.recv(64) == b"early-frame"
    client_app.sendall(b"later-frame")
    assert upstream_app.recv(64) == b"later-frame"
    client_app.shutdown(socket.SHUT_WR)
    upstream_app.shutdown(socket.SHUT_WR)
    received = _recv_all(client_app)
    thread.join(timeout=3)

    (relayed,) = results
    assert relayed.framing == "upgrade"
    assert relayed.upstream_reusable is False
    assert received.startswith(b"HTTP/1.1 101 Switching Protocols\r\n")
    assert received.endswith(b"\r\n\r\nserver-hello")
