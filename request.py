"""Proxy request model and resumable request parser."""

from __future__ import annotations

import re
from dataclasses import dataclass
from urllib.parse import urlsplit

from config import (
    MAX_BODY_BYTES,
    MAX_CHUNK_LINE_BYTES,
    MAX_HEADER_BYTES,
    MAX_HEADER_COUNT,
    MAX_TARGET_LENGTH,
)
from headers import Headers, parse_chunk_size, parse_decimal

ALLOWED_HTTP_VERSIONS = {"HTTP/1.1", "HTTP/1.0"}
DEFAULT_HTTP_PORT = 80
METHOD_TOKEN = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")


class RequestParseError(ValueError):
    """Request parse error carrying the HTTP status code to answer with."""

    def __init__(self, message: str, *, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code


class MalformedRequestError(RequestParseError):
    """Raised when client bytes do not form a valid HTTP request."""


class RequestTooLargeError(RequestParseError):
    """Raised when a request exceeds one of the configured size limits."""

    def __init__(self, message: str, *, status_code: int = 413) -> None:
        super().__init__(message, status_code=status_code)


@dataclass(frozen=True, slots=True)
class RequestTarget:
    scheme: str
    host: str
    port: int
    path: str
    form: str

    @property
    def authority(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        if self.form != "authority" and self.port == DEFAULT_HTTP_PORT:
            return host
        return f"{host}:{self.port}"

    @property
    def url(self) -> str:
        if self.form == "authority":
            return self.authority
        return f"{self.scheme}://{self.authority}{self.path}"


@dataclass(frozen=True, slots=True)
class ProxyRequest:
    method: str
    target: RequestTarget
    http_version: str
    headers: Headers
    body: bytes = b""
    raw_target: str = "/"
    keep_alive: bool = False

    @property
    def is_tunnel(self) -> bool:
        return self.method == "CONNECT"

    @property
    def wants_upgrade(self) -> bool:
        return "upgrade" in self.headers.tokens("connection") and "upgrade" in self.headers

    def to_upstream_bytes(self, *, server_name: str, keep_alive: bool) -> bytes:
        """Serialize in origin-form with hop-by-hop fields rewritten."""
        keep = ("upgrade",) if self.wants_upgrade else ()
        headers = self.headers.without_hop_by_hop(keep=keep)
        headers.set("Host", self.target.authority)
        if self.body or "content-length" in self.headers or "transfer-encoding" in self.headers:
            headers.set("Content-Length", str(len(self.body)))
        headers.add("Via", f"{self.http_version.removeprefix('HTTP/')} {server_name}")
        if self.wants_upgrade:
            headers.set("Connection", "Upgrade")
        else:
            headers.set("Connection", "keep-alive" if keep_alive else "close")

        lines = [f"{self.method} {self.target.path} HTTP/1.1", *headers.to_lines()]
        head = "\r\n".join(lines).encode("iso-8859-1") + b"\r\n\r\n"
        return head + self.body


@dataclass(slots=True)
class _RequestHead:
    method: str
    raw_target: str
    http_version: str
    headers: Headers
    target: RequestTarget
    keep_alive: bool
    content_length: int
    chunked: bool


class RequestParser:
    """Incremental request parser for one client connection.

    Bytes are fed as they arrive; ``feed`` returns a request once the header
    section and the declared body are complete. Bytes past the end of a
    request stay buffered for the next one.
    """

    def __init__(
        self,
        *,
        max_header_bytes: int = MAX_HEADER_BYTES,
        max_header_count: int = MAX_HEADER_COUNT,
        max_target_length: int = MAX_TARGET_LENGTH,
        max_body_bytes: int = MAX_BODY_BYTES,
    ) -> None:
        self.max_header_bytes = max_header_bytes
        self.max_header_count = max_header_count
        self.max_target_length = max_target_length
        self.max_body_bytes = max_body_bytes
        self._buffer = bytearray()
        self._scan_from = 0
        self._head: _RequestHead | None = None
        self._chunked: ChunkedBodyDecoder | None = None

    @property
    def has_partial(self) -> bool:
        return self._head is not None or bool(self._buffer)

    def take_leftover(self) -> bytes:
        """Return and drop buffered bytes that are not part of a parsed head."""
        leftover = bytes(self._buffer)
        self._buffer.clear()
        self._scan_from = 0
        self._head = None
        self._chunked = None
        return leftover

    def feed(self, data: bytes = b"") -> ProxyRequest | None:
        if data:
            self._buffer.extend(data)

        if self._head is None:
            head = self._consume_head()
            if head is None:
                return None
            self._head = head

        body = self._consume_body(self._head)
        if body is None:
            return None

        head = self._head
        self._head = None
        return ProxyRequest(
            method=head.method,
            target=head.target,
            http_version=head.http_version,
            headers=head.headers,
            body=body,
            raw_target=head.raw_target,
            keep_alive=head.keep_alive,
        )

    def _consume_head(self) -> _RequestHead | None:
        while self._buffer.startswith(b"\r\n"):
            del self._buffer[:2]

        header_end = self._buffer.find(b"\r\n\r\n", max(0, self._scan_from - 3))
        if header_end == -1:
            if len(self._buffer) > self.max_header_bytes:
                raise RequestTooLargeError("Header section exceeded max_header_bytes")
            self._scan_from = len(self._buffer)
            return None

        if header_end + 4 > self.max_header_bytes:
            raise RequestTooLargeError("Header section exceeded max_header_bytes")

        head_bytes = bytes(self._buffer[:header_end])
        del self._buffer[: header_end + 4]
        self._scan_from = 0
        return self._parse_head(head_bytes)

    def _parse_head(self, head_bytes: bytes) -> _RequestHead:
        lines = head_bytes.decode("iso-8859-1").split("\r\n")
        request_line_parts = lines[0].split(" ")
        if len(request_line_parts) != 3:
            raise MalformedRequestError("Invalid request line")

        method, raw_target, http_version = request_line_parts
        if not METHOD_TOKEN.match(method) or not raw_target:
            raise MalformedRequestError("Request line contains invalid tokens")
        if http_version not in ALLOWED_HTTP_VERSIONS:
            raise MalformedRequestError("Unsupported HTTP version", status_code=505)
        if len(raw_target) > self.max_target_length:
            raise RequestTooLargeError("Request target too long", status_code=414)

        header_lines = lines[1:]
        if len(header_lines) > self.max_header_count:
            raise RequestTooLargeError("Too many header fields")
        if any(line[:1] in (" ", "\t") for line in header_lines):
            raise MalformedRequestError("Obsolete header line folding")
        try:
            headers = Headers.parse_lines(header_lines)
        except ValueError as exc:
            raise MalformedRequestError(str(exc)) from exc

        target = parse_target(method, raw_target, headers)
        content_length, chunked = self._body_framing(method, headers)
        return _RequestHead(
            method=method,
            raw_target=raw_target,
            http_version=http_version,
            headers=headers,
            target=target,
            keep_alive=_is_keep_alive(http_version, headers),
            content_length=content_length,
            chunked=chunked,
        )

    def _body_framing(self, method: str, headers: Headers) -> tuple[int, bool]:
        transfer_codings = [
            token.strip().lower()
            for value in headers.get_all("transfer-encoding")
            for token in value.split(",")
            if token.strip()
        ]
        length_values = {value.strip() for value in headers.get_all("content-length")}

        if transfer_codings:
            if length_values:
                raise MalformedRequestError(
                    "Content-Length cannot be combined with Transfer-Encoding"
                )
            if transfer_codings[-1] != "chunked":
                raise MalformedRequestError("Unsupported Transfer-Encoding")
            return 0, True

        if not length_values:
            return 0, False
        if len(length_values) > 1:
            raise MalformedRequestError("Conflicting Content-Length values")

        content_length = parse_decimal(length_values.pop())
        if content_length is None:
            raise MalformedRequestError("Invalid Content-Length")
        if content_length > self.max_body_bytes:
            raise RequestTooLargeError("Body exceeded max_body_bytes")
        if method == "CONNECT" and content_length:
            raise MalformedRequestError("CONNECT request cannot carry a body")
        return content_length, False

    def _consume_body(self, head: _RequestHead) -> bytes | None:
        if head.chunked:
            if self._chunked is None:
                self._chunked = ChunkedBodyDecoder(max_body_bytes=self.max_body_bytes)
            consumed = self._chunked.feed(bytes(self._buffer))
            if consumed is None:
                self._buffer.clear()
                return None
            del self._buffer[:consumed]
            body = bytes(self._chunked.body)
            self._chunked = None
            return body

        if len(self._buffer) < head.content_length:
            return None
        body = bytes(self._buffer[: head.content_length])
        del self._buffer[: head.content_length]
        return body


def parse_target(method: str, raw_target: str, headers: Headers) -> RequestTarget:
    """Resolve the destination of a request from its target and Host header."""
    if method == "CONNECT":
        host, port = split_authority(raw_target, default_port=None)
        return RequestTarget(scheme="", host=host, port=port, path="", form="authority")

    if raw_target.startswith("/") or raw_target == "*":
        host_header = headers.get("host")
        if not host_header:
            raise MalformedRequestError("Host header required for origin-form target")
        host, port = split_authority(host_header, default_port=DEFAULT_HTTP_PORT)
        return RequestTarget(scheme="http", host=host, port=port, path=raw_target, form="origin")

    try:
        parts = urlsplit(raw_target)
    except ValueError as exc:
        raise MalformedRequestError("Invalid absolute request target") from exc
    if parts.scheme.lower() != "http" or not parts.netloc:
        raise MalformedRequestError("Only absolute http:// targets can be proxied")

    authority = parts.netloc.rsplit("@", 1)[-1]
    host, port = split_authority(authority, default_port=DEFAULT_HTTP_PORT)
    path = parts.path or "/"
    if parts.query:
        path = f"{path}?{parts.query}"
    return RequestTarget(scheme="http", host=host, port=port, path=path, form="absolute")


def split_authority(authority: str, *, default_port: int | None) -> tuple[str, int]:
    """Split ``host[:port]`` (IPv6 literals bracketed) into host and port."""
    authority = authority.strip()
    if authority.startswith("["):
        closing = authority.find("]")
        if closing == -1:
            raise MalformedRequestError("Unterminated IPv6 literal in authority")
        host = authority[1:closing]
        remainder = authority[closing + 1 :]
        if remainder and not remainder.startswith(":"):
            raise MalformedRequestError("Invalid authority")
        raw_port = remainder[1:] if remainder else ""
    else:
        host, _separator, raw_port = authority.partition(":")

    if not host:
        raise MalformedRequestError("Authority is missing a host")

    if not raw_port:
        if default_port is None:
            raise MalformedRequestError("Authority is missing a port")
        return host.lower(), default_port

    port = parse_decimal(raw_port)
    if port is None:
        raise MalformedRequestError("Invalid port in authority")
    if not 0 < port < 65536:
        raise MalformedRequestError("Port out of range")
    return host.lower(), port


def _is_keep_alive(http_version: str, headers: Headers) -> bool:
    tokens = headers.tokens("connection") | headers.tokens("proxy-connection")
    if "close" in tokens:
        return False
    if http_version == "HTTP/1.1":
        return True
    return "keep-alive" in tokens


class ChunkedBodyDecoder:
    """Incremental decoder for a chunked request body.

    Only the decoded body and a partial framing line are kept between
    feeds; framing lines and the trailer section are bounded by
    ``max_line_bytes``.
    """

    def __init__(
        self,
        *,
        max_body_bytes: int = MAX_BODY_BYTES,
        max_line_bytes: int = MAX_CHUNK_LINE_BYTES,
    ) -> None:
        self.max_body_bytes = max_body_bytes
        self.max_line_bytes = max_line_bytes
        self.body = bytearray()
        self._state = "size"
        self._line = bytearray()
        self._remaining = 0
        self._trailer_bytes = 0

    def feed(self, data: bytes) -> int | None:
        """Return how many bytes of ``data`` finish the body, or ``None`` if it continues."""
        position = 0
        while position < len(data):
            if self._state == "data":
                taken = min(self._remaining, len(data) - position)
                self.body.extend(data[position : position + taken])
                position += taken
                self._remaining -= taken
                if self._remaining == 0:
                    self._state = "data-crlf"
                continue

            line_end = data.find(b"\n", position)
            if line_end == -1:
                self._extend_line(data[position:])
                return None
            self._extend_line(data[position:line_end])
            position = line_end + 1

            if not self._line.endswith(b"\r"):
                raise MalformedRequestError("Chunked framing line must end with CRLF")
            line = bytes(self._line[:-1])
            self._line.clear()

            if self._state == "size":
                self._start_chunk(line)
            elif self._state == "data-crlf":
                if line:
                    raise MalformedRequestError("Chunk missing CRLF terminator")
                self._state = "size"
            elif not line:
                return position
            else:
                if b":" not in line:
                    raise MalformedRequestError("Malformed chunked trailer")
                self._trailer_bytes += len(line) + 2
                if self._trailer_bytes > self.max_line_bytes:
                    raise RequestTooLargeError("Chunked trailer section too long")
        return None

    def _start_chunk(self, line: bytes) -> None:
        chunk_size = parse_chunk_size(line)
        if chunk_size is None:
            raise MalformedRequestError("Malformed chunk size")
        if len(self.body) + chunk_size > self.max_body_bytes:
            raise RequestTooLargeError("Decoded chunked body exceeded max_body_bytes")
        if chunk_size == 0:
            self._state = "trailer"
        else:
            self._remaining = chunk_size
            self._state = "data"

    def _extend_line(self, data: bytes) -> None:
        self._line.extend(data)
        if len(self._line) > self.max_line_bytes:
            raise RequestTooLargeError("Chunked framing line too long")
