"""HTTP response models: proxy-generated responses and upstream response heads."""

from __future__ import annotations

from dataclasses import dataclass, field
from email.utils import formatdate

from config import SERVER_NAME
from headers import Headers, parse_decimal

REASON_PHRASES: dict[int, str] = {
    100: "Continue",
    101: "Switching Protocols",
    200: "OK",
    203: "Non-Authoritative Information",
    204: "No Content",
    304: "Not Modified",
    400: "Bad Request",
    403: "Forbidden",
    404: "Not Found",
    408: "Request Timeout",
    413: "Payload Too Large",
    414: "URI Too Long",
    500: "Internal Server Error",
    501: "Not Implemented",
    502: "Bad Gateway",
    503: "Service Unavailable",
    504: "Gateway Timeout",
    505: "HTTP Version Not Supported",
}

BODYLESS_STATUSES = {204, 304}


class InvalidResponseError(ValueError):
    """Raised when an upstream server sends an unparseable response head."""

    status_code = 502


@dataclass(slots=True)
class HTTPResponse:
    """A response produced by the proxy itself (errors, cache hits)."""

    status_code: int
    reason_phrase: str | None = None
    headers: Headers | dict[str, str] = field(default_factory=Headers)
    body: bytes | str = b""
    include_content_length: bool = True

    def __post_init__(self) -> None:
        if isinstance(self.body, str):
            self.body = self.body.encode("utf-8")
        if isinstance(self.headers, dict):
            self.headers = Headers(self.headers.items())

    def to_bytes(self) -> bytes:
        """Serialize the response into HTTP/1.1 wire format bytes."""
        reason = self.reason_phrase or REASON_PHRASES.get(self.status_code, "Unknown")
        headers = self.headers.copy()
        headers.setdefault("Date", formatdate(timeval=None, localtime=False, usegmt=True))
        headers.setdefault("Server", SERVER_NAME)
        if self.body:
            headers.setdefault("Content-Type", "text/plain; charset=utf-8")
        if self.include_content_length:
            headers.set("Content-Length", str(len(self.body)))
        return serialize_head("HTTP/1.1", self.status_code, reason, headers) + self.body


def error_response(status_code: int, message: str | None = None) -> HTTPResponse:
    reason = REASON_PHRASES.get(status_code, "Error")
    return HTTPResponse(
        status_code=status_code,
        headers={"Connection": "close"},
        body=f"{message or reason}\n",
    )


def connection_established(server_name: str = SERVER_NAME) -> bytes:
    """Reply to CONNECT; a 2xx here must not carry framing headers."""
    return HTTPResponse(
        status_code=200,
        reason_phrase="Connection Established",
        headers={"Proxy-Agent": server_name, "Server": server_name},
        include_content_length=False,
    ).to_bytes()


def serialize_head(http_version: str, status_code: int, reason: str, headers: Headers) -> bytes:
    lines = [f"{http_version} {status_code} {reason}", *headers.to_lines()]
    return "\r\n".join(lines).encode("iso-8859-1") + b"\r\n\r\n"


@dataclass(slots=True)
class ResponseHead:
    """Status line and headers of a response received from an upstream server."""

    http_version: str
    status_code: int
    reason_phrase: str
    headers: Headers

    @classmethod
    def from_bytes(cls, raw: bytes) -> "ResponseHead":
        lines = raw.decode("iso-8859-1").split("\r\n")
        status_parts = lines[0].split(" ", 2)
        if len(status_parts) < 2 or not status_parts[0].startswith("HTTP/1."):
            raise InvalidResponseError("Invalid status line")

        http_version, raw_status = status_parts[0], status_parts[1]
        if len(raw_status) != 3 or parse_decimal(raw_status) is None:
            raise InvalidResponseError("Invalid status code")
        reason = status_parts[2] if len(status_parts) == 3 else ""

        try:
            headers = Headers.parse_lines(line for line in lines[1:] if line)
        except ValueError as exc:
            raise InvalidResponseError(str(exc)) from exc

        return cls(
            http_version=http_version,
            status_code=int(raw_status),
            reason_phrase=reason,
            headers=headers,
        )

    @property
    def is_interim(self) -> bool:
        return 100 <= self.status_code < 200 and self.status_code != 101

    def framing(self, request_method: str) -> tuple[str, int]:
        """Return how the body ends: ``none``, ``length``, ``chunked`` or ``close``."""
        if (
            request_method == "HEAD"
            or 100 <= self.status_code < 200
            or self.status_code in BODYLESS_STATUSES
        ):
            return "none", 0

        transfer_codings = [
            token.strip().lower()
            for value in self.headers.get_all("transfer-encoding")
            for token in value.split(",")
            if token.strip()
        ]
        if transfer_codings:
            if transfer_codings[-1] == "chunked":
                return "chunked", 0
            return "close", 0

        length_values = {value.strip() for value in self.headers.get_all("content-length")}
        if not length_values:
            return "close", 0
        if len(length_values) > 1:
            raise InvalidResponseError("Conflicting Content-Length values")
        content_length = parse_decimal(length_values.pop())
        if content_length is None:
            raise InvalidResponseError("Invalid Content-Length")
        return "length", content_length

    def is_persistent(self, request_method: str) -> bool:
        if self.framing(request_method)[0] == "close":
            return False
        tokens = self.headers.tokens("connection")
        if "close" in tokens:
            return False
        if self.http_version == "HTTP/1.1":
            return True
        return "keep-alive" in tokens

    def for_client(self, *, keep_alive: bool, extra: Headers | None = None) -> bytes:
        """Head bytes for the client with hop-by-hop fields rewritten.

        ``Transfer-Encoding`` is kept because the body is relayed verbatim.
        """
        keep = ["transfer-encoding"]
        if self.status_code == 101:
            keep.append("upgrade")
        headers = self.headers.without_hop_by_hop(keep=keep)
        for name, value in extra or ():
            headers.set(name, value)
        if self.status_code == 101:
            headers.set("Connection", "Upgrade")
        else:
            headers.set("Connection", "keep-alive" if keep_alive else "close")
        return serialize_head(self.http_version, self.status_code, self.reason_phrase, headers)
