"""Shared fixtures: throwaway origin servers and proxy instances on port 0."""

from __future__ import annotations

import socket
import threading
import time
from collections.abc import Callable, Iterator

import pytest

from server import ProxyServer

Responder = Callable[[bytes], bytes]


def http_response(
    body: bytes = b"",
    *,
    status: str = "200 OK",
    headers: dict[str, str] | None = None,
    close: bool = False,
) -> bytes:
    lines = [f"HTTP/1.1 {status}"]
    fields = {"Content-Length": str(len(body))}
    fields.update(headers or {})
    if close:
        fields["Connection"] = "close"
    lines.extend(f"{name}: {value}" for name, value in fields.items())
    return ("\r\n".join(lines) + "\r\n\r\n").encode("iso-8859-1") + body


class OriginServer:
    """Origin that records every request and answers with ``responder(raw_request)``.

    An empty reply makes the origin drop the connection without answering.
    """

    def __init__(self, responder: Responder) -> None:
        self.responder = responder
        self.requests: list[bytes] = []
        self.connections = 0
        self._lock = threading.Lock()
        self._sock = socket.create_server(("127.0.0.1", 0))
        self._sock.settimeout(0.1)
        self.port = self._sock.getsockname()[1]
        self._running = True
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    @property
    def request_count(self) -> int:
        with self._lock:
            return len(self.requests)

    def stop(self) -> None:
        self._running = False
        self._thread.join(timeout=2)
        self._sock.close()

    def _serve(self) -> None:
        while self._running:
            try:
                conn, _address = self._sock.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            with self._lock:
                self.connections += 1
            threading.Thread(target=self._handle, args=(conn,), daemon=True).start()

    def _handle(self, conn: socket.socket) -> None:
        conn.settimeout(5)
        buffer = b""
        with conn:
            while self._running:
                try:
                    while b"\r\n\r\n" not in buffer:
                        chunk = conn.recv(65536)
                        if not chunk:
                            return
                        buffer += chunk
                    head, _, buffer = buffer.partition(b"\r\n\r\n")
                    length = 0
                    for line in head.split(b"\r\n")[1:]:
                        name, _, value = line.partition(b":")
                        if name.strip().lower() == b"content-length":
                            length = int(value.strip())
                    while len(buffer) < length:
                        chunk = conn.recv(65536)
                        if not chunk:
                            return
                        buffer += chunk
                    raw_request = head + b"\r\n\r\n" + buffer[:length]
                    buffer = buffer[length:]

                    with self._lock:
                        self.requests.append(raw_request)
                    reply = self.responder(raw_request)
                    if not reply:
                        return
                    conn.sendall(reply)
                except OSError:
                    return
                if b"\r\nconnection: close" in reply.partition(b"\r\n\r\n")[0].lower():
                    return


@pytest.fixture
def origin_factory() -> Iterator[Callable[[Responder], OriginServer]]:
    servers: list[OriginServer] = []

    def factory(responder: Responder) -> OriginServer:
        server = OriginServer(responder)
        servers.append(server)
        return server

    yield factory
    for server in servers:
        server.stop()


@pytest.fixture
def proxy_factory() -> Iterator[Callable[..., ProxyServer]]:
    started: list[tuple[ProxyServer, threading.Thread]] = []

    def factory(**kwargs: object) -> ProxyServer:
        kwargs.setdefault("drain_timeout", 1.0)
        server = ProxyServer(port=0, **kwargs)
        thread = threading.Thread(target=server.start, daemon=True)
        thread.start()

        deadline = time.time() + 2
        while server.port == 0 and time.time() < deadline:
            time.sleep(0.01)
        if server.port == 0:
            raise RuntimeError("Proxy did not bind to a port")
        started.append((server, thread))
        return server

    yield factory
    for server, thread in started:
        server.stop()
        thread.join(timeout=3)
