"""Per-client connection handler: read, resolve, forward, relay, close."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from cache import ResponseCache, is_request_cacheable
from config import (
    IDLE_TIMEOUT_SECS,
    MAX_BODY_BYTES,
    MAX_HEADER_BYTES,
    MAX_HEADER_COUNT,
    MAX_KEEPALIVE_REQUESTS,
    MAX_TARGET_LENGTH,
    READ_CHUNK_SIZE,
    SERVER_NAME,
    TOTAL_TIMEOUT_SECS,
)
from headers import Headers
from relay import RelayedResponse, RelayError, RelayIOError, relay_response, send_all, tunnel
from request import ProxyRequest, RequestParseError, RequestParser
from response import InvalidResponseError, connection_established, error_response
from socket_handler import (
    Connection,
    SocketTimeoutError,
    read_request,
    write_http_response,
    write_http_response_message,
)
from upstream import UpstreamConnection, UpstreamConnector, UpstreamError

logger = logging.getLogger(__name__)

ExchangeError = (UpstreamError, RelayError, InvalidResponseError)
IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "PUT", "DELETE", "TRACE"})


class HandlerState(Enum):
    READING = "reading"
    RESOLVING = "resolving"
    FORWARDING = "forwarding"
    RELAYING = "relaying"
    CLOSING = "closing"


@dataclass(frozen=True, slots=True)
class HandlerSettings:
    server_name: str = SERVER_NAME
    idle_timeout: float = IDLE_TIMEOUT_SECS
    total_timeout: float = TOTAL_TIMEOUT_SECS
    max_keepalive_requests: int = MAX_KEEPALIVE_REQUESTS
    max_header_bytes: int = MAX_HEADER_BYTES
    max_header_count: int = MAX_HEADER_COUNT
    max_target_length: int = MAX_TARGET_LENGTH
    max_body_bytes: int = MAX_BODY_BYTES
    read_chunk_size: int = READ_CHUNK_SIZE

    def new_parser(self) -> RequestParser:
        return RequestParser(
            max_header_bytes=self.max_header_bytes,
            max_header_count=self.max_header_count,
            max_target_length=self.max_target_length,
            max_body_bytes=self.max_body_bytes,
        )


@dataclass(slots=True)
class AccessRecord:
    """One access-log line worth of facts about an exchange."""

    client: str
    method: str = "-"
    target: str = "-"
    status: int = 0
    cache: str = "-"
    upstream: str = "-"
    bytes_in: int = 0
    bytes_out: int = 0
    duration_ms: float = 0.0
    connection_reused: bool = False
    tunnel: bool = False
    error: str = ""


AccessLog = Callable[[AccessRecord], None]


class ConnectionHandler:
    """Serves every request arriving on one client connection.

    Shared collaborators (upstream connector, cache) are passed in; the
    handler owns only the client connection and closes it when done.
    """

    def __init__(
        self,
        client: Connection,
        *,
        connector: UpstreamConnector,
        cache: ResponseCache | None = None,
        settings: HandlerSettings | None = None,
        access_log: AccessLog | None = None,
    ) -> None:
        self.client = client
        self.connector = connector
        self.cache = cache
        self.settings = settings or HandlerSettings()
        self.access_log = access_log
        self.parser = self.settings.new_parser()
        self.state = HandlerState.READING
        self.history: list[HandlerState] = []
        self.requests_served = 0
        self._deadline = 0.0
        self._received_mark = 0
        self._sent_mark = 0

    @property
    def client_label(self) -> str:
        return f"{self.client.address[0]}:{self.client.address[1]}"

    def handle(self) -> None:
        self._deadline = time.monotonic() + self.settings.total_timeout
        try:
            self._serve()
        except Exception:
            logger.exception("Unexpected failure serving %s", self.client_label)
        finally:
            self._transition(HandlerState.CLOSING)
            self.client.close()

    def _serve(self) -> None:
        while self.requests_served < self.settings.max_keepalive_requests:
            self._transition(HandlerState.READING)
            self._received_mark = self.client.bytes_received
            self._sent_mark = self.client.bytes_sent
            started_at = time.perf_counter()

            request = self._read_next_request(started_at)
            if request is None:
                return
            self.requests_served += 1

            record = AccessRecord(
                client=self.client_label,
                method=request.method,
                target=request.target.url,
                connection_reused=self.requests_served > 1,
                tunnel=request.is_tunnel,
            )
            try:
                keep_alive = self._dispatch(request, record)
            finally:
                self._finish(record, started_at)
            if not keep_alive:
                return

    def _read_next_request(self, started_at: float) -> ProxyRequest | None:
        try:
            return read_request(
                self.client,
                self.parser,
                read_chunk_size=self.settings.read_chunk_size,
                idle_timeout=self.settings.idle_timeout,
                deadline=self._deadline,
            )
        except SocketTimeoutError as exc:
            if self.parser.has_partial:
                self._reject(408, exc, started_at)
            else:
                logger.debug("Client %s idle; closing", self.client_label)
            return None
        except RequestParseError as exc:
            self._reject(exc.status_code, exc, started_at)
            return None
        except OSError as exc:
            logger.debug("Read from %s failed: %s", self.client_label, exc)
            return None

    def _dispatch(self, request: ProxyRequest, record: AccessRecord) -> bool:
        """Serve one request; returns whether the client connection stays open."""
        try:
            if request.is_tunnel:
                self._tunnel(request, record)
                return False
            return self._forward(request, record)
        except ExchangeError as exc:
            record.error = type(exc).__name__
            if self._response_started:
                logger.info("Closing %s mid-response: %s", self.client_label, exc)
            else:
                self._send_error(record, exc.status_code, str(exc))
            return False
        except OSError as exc:
            record.error = type(exc).__name__
            logger.debug("Client %s went away: %s", self.client_label, exc)
            return False

    def _forward(self, request: ProxyRequest, record: AccessRecord) -> bool:
        if self.cache is not None:
            entry = self.cache.get(request)
            if entry is not None:
                keep_alive = self._keep_client_open(request)
                record.cache = "HIT"
                record.status = entry.status_code
                self.client.settimeout(self.settings.idle_timeout)
                write_http_response(self.client, self.cache.render(entry, keep_alive=keep_alive))
                return keep_alive
            if is_request_cacheable(request):
                record.cache = "MISS"

        relayed = self._exchange(request, record)
        record.status = relayed.head.status_code
        if self.cache is not None and record.cache == "MISS" and relayed.body is not None:
            self.cache.store(request, relayed.head, relayed.body)
        return relayed.keep_alive

    def _exchange(self, request: ProxyRequest, record: AccessRecord) -> RelayedResponse:
        host, port = request.target.host, request.target.port
        record.upstream = f"{host}:{port}"
        self._transition(HandlerState.RESOLVING)
        upstream = self.connector.acquire(host, port)
        sent_mark = upstream.bytes_sent
        try:
            return self._round_trip(request, upstream, record)
        except RelayIOError as exc:
            if not upstream.reused or self._response_started:
                raise
            # Only requests the origin cannot have acted on are sent again.
            if request.method not in IDEMPOTENT_METHODS and upstream.bytes_sent > sent_mark:
                raise
            logger.info("Pooled connection to %s:%s failed (%s); retrying", host, port, exc)

        self._transition(HandlerState.RESOLVING)
        return self._round_trip(request, self.connector.connect(host, port), record)

    def _round_trip(
        self,
        request: ProxyRequest,
        upstream: UpstreamConnection,
        record: AccessRecord,
    ) -> RelayedResponse:
        miss = record.cache == "MISS" and self.cache is not None
        try:
            self._transition(HandlerState.FORWARDING)
            upstream.settimeout(self.settings.idle_timeout)
            send_all(
                upstream,
                request.to_upstream_bytes(
                    server_name=self.settings.server_name,
                    keep_alive=self.connector.pool_enabled,
                ),
            )

            self._transition(HandlerState.RELAYING)
            relayed = relay_response(
                upstream,
                self.client,
                request_method=request.method,
                client_keep_alive=self._keep_client_open(request),
                idle_timeout=self.settings.idle_timeout,
                deadline=self._deadline,
                capture_limit=self.cache.max_entry_bytes if miss else 0,
                max_header_bytes=self.settings.max_header_bytes,
                chunk_size=self.settings.read_chunk_size,
                extra_headers=Headers([("X-Cache", "MISS")]) if miss else None,
                pending_client_bytes=self.parser.take_leftover if request.wants_upgrade else None,
            )
        except Exception:
            upstream.close()
            raise

        self.connector.release(upstream, reusable=relayed.upstream_reusable)
        return relayed

    def _tunnel(self, request: ProxyRequest, record: AccessRecord) -> None:
        host, port = request.target.host, request.target.port
        record.upstream = f"{host}:{port}"
        self._transition(HandlerState.RESOLVING)
        upstream = self.connector.connect(host, port)
        try:
            self._transition(HandlerState.FORWARDING)
            record.status = 200
            self.client.settimeout(self.settings.idle_timeout)
            send_all(self.client, connection_established(self.settings.server_name))
            early_bytes = self.parser.take_leftover()
            if early_bytes:
                upstream.settimeout(self.settings.idle_timeout)
                send_all(upstream, early_bytes)

            self._transition(HandlerState.RELAYING)
            tunnel(
                self.client,
                upstream,
                idle_timeout=self.settings.idle_timeout,
                deadline=self._deadline,
                chunk_size=self.settings.read_chunk_size,
            )
        finally:
            upstream.close()

    def _keep_client_open(self, request: ProxyRequest) -> bool:
        # The last request allowed on this connection is answered with close.
        return request.keep_alive and self.requests_served < self.settings.max_keepalive_requests

    @property
    def _response_started(self) -> bool:
        return self.client.bytes_sent > self._sent_mark

    def _reject(self, status_code: int, exc: Exception, started_at: float) -> None:
        record = AccessRecord(client=self.client_label, error=type(exc).__name__)
        logger.debug("Rejecting request from %s with %d: %s", self.client_label, status_code, exc)
        self._send_error(record, status_code, str(exc))
        self._finish(record, started_at)

    def _send_error(self, record: AccessRecord, status_code: int, message: str) -> None:
        record.status = status_code
        if self.client.write_closed or self.client.closed:
            return
        try:
            self.client.settimeout(self.settings.idle_timeout)
            write_http_response_message(self.client, error_response(status_code, message))
        except OSError as exc:
            logger.debug("Could not send %d to %s: %s", status_code, self.client_label, exc)

    def _finish(self, record: AccessRecord, started_at: float) -> None:
        record.duration_ms = (time.perf_counter() - started_at) * 1000
        record.bytes_in = self.client.bytes_received - self._received_mark
        record.bytes_out = self.client.bytes_sent - self._sent_mark
        if self.access_log is not None:
            self.access_log(record)

    def _transition(self, state: HandlerState) -> None:
        self.state = state
        self.history.append(state)
