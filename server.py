"""Proxy server entry point: listener, worker pool wiring and access logging."""

from __future__ import annotations

import argparse
import json
import logging
import socket
import threading

from cache import ResponseCache
from config import (
    ACCEPT_POLL_SECS,
    CACHE_ENABLED,
    CACHE_EVICTION_POLICY,
    CACHE_MAX_BYTES,
    CACHE_MAX_ENTRIES,
    CACHE_SWEEP_INTERVAL_SECS,
    CACHE_TTL_SECS,
    CONNECT_TIMEOUT_SECS,
    DRAIN_TIMEOUT_SECS,
    HOST,
    IDLE_TIMEOUT_SECS,
    LISTEN_BACKLOG,
    LOG_FORMAT,
    MAX_BODY_BYTES,
    MAX_HEADER_BYTES,
    PORT,
    REQUEST_QUEUE_SIZE,
    TOTAL_TIMEOUT_SECS,
    UPSTREAM_POOL_ENABLED,
    WORKER_COUNT,
)
from handler import AccessRecord, ConnectionHandler, HandlerSettings
from metrics import MetricsRegistry
from socket_handler import Connection
from thread_pool import PoolSaturatedError, Task, WorkerPool
from upstream import UpstreamConnector

logger = logging.getLogger(__name__)


class BindError(OSError):
    """Raised when the listening socket cannot be bound."""


class ProxyServer:
    def __init__(
        self,
        host: str = HOST,
        port: int = PORT,
        worker_count: int = WORKER_COUNT,
        request_queue_size: int = REQUEST_QUEUE_SIZE,
        *,
        settings: HandlerSettings | None = None,
        connector: UpstreamConnector | None = None,
        cache: ResponseCache | None = None,
        cache_enabled: bool = CACHE_ENABLED,
        cache_sweep_interval: float = CACHE_SWEEP_INTERVAL_SECS,
        drain_timeout: float = DRAIN_TIMEOUT_SECS,
        log_format: str = LOG_FORMAT,
    ) -> None:
        self.host = host
        self.port = port
        self.worker_count = worker_count
        self.request_queue_size = request_queue_size
        self.settings = settings or HandlerSettings()
        self.connector = connector or UpstreamConnector()
        if cache is None and cache_enabled:
            cache = ResponseCache()
        self.cache = cache
        self.cache_sweep_interval = cache_sweep_interval
        self.drain_timeout = drain_timeout
        self.log_format = log_format
        self.metrics = MetricsRegistry()

        self._server_socket: socket.socket | None = None
        self._pool: WorkerPool | None = None
        self._running = False
        self._stopped = threading.Event()
        self._stop_lock = threading.Lock()

    @property
    def pool(self) -> WorkerPool | None:
        return self._pool

    def start(self) -> None:
        """Bind, then accept and dispatch clients until ``stop`` is called."""
        server_socket = self._bind()
        self._server_socket = server_socket
        self._pool = WorkerPool(
            worker_count=self.worker_count,
            queue_size=self.request_queue_size,
            handler=self._handle_task,
        )
        self._pool.start()
        self._running = True
        self._stopped.clear()
        threading.Thread(target=self._sweep_loop, name="sweeper", daemon=True).start()
        logger.info("Proxy listening on %s:%s", self.host, self.port)

        try:
            while self._running:
                try:
                    client_socket, address = server_socket.accept()
                except socket.timeout:
                    continue
                except OSError as exc:
                    if not self._running:
                        break
                    logger.warning("Accept failed: %s", exc)
                    continue
                self._dispatch(client_socket, address)
        finally:
            self.stop()

    def stop(self) -> None:
        with self._stop_lock:
            self._running = False
            self._stopped.set()
            if self._server_socket is not None:
                self._server_socket.close()
                self._server_socket = None
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(self.drain_timeout)
        self.connector.close_all()

    def _bind(self) -> socket.socket:
        family = socket.AF_INET6 if ":" in self.host else socket.AF_INET
        server_socket = socket.socket(family, socket.SOCK_STREAM)
        try:
            server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            server_socket.bind((self.host, self.port))
            server_socket.listen(LISTEN_BACKLOG)
        except OSError as exc:
            server_socket.close()
            raise BindError(f"Cannot listen on {self.host}:{self.port}: {exc}") from exc
        server_socket.settimeout(ACCEPT_POLL_SECS)
        self.port = server_socket.getsockname()[1]
        return server_socket

    def _dispatch(self, client_socket: socket.socket, address: tuple[str, int]) -> None:
        task = Task(sock=client_socket, address=address)
        try:
            if self._pool is None:
                raise PoolSaturatedError("Server is stopping")
            self._pool.submit(task)
        except PoolSaturatedError as exc:
            self.metrics.connection_rejected()
            logger.warning("Rejected %s:%s: %s", address[0], address[1], exc)
            task.close()

    def _handle_task(self, task: Task) -> None:
        client = Connection(sock=task.sock, address=task.address)
        self.metrics.connection_opened()
        try:
            ConnectionHandler(
                client,
                connector=self.connector,
                cache=self.cache,
                settings=self.settings,
                access_log=self._record_and_log,
            ).handle()
        finally:
            self.metrics.connection_closed()

    def _sweep_loop(self) -> None:
        while not self._stopped.wait(self.cache_sweep_interval):
            pruned = self.connector.prune_idle()
            if pruned:
                logger.debug("Closed %d stale idle upstream connections", pruned)
            if self.cache is None:
                continue
            removed = self.cache.sweep()
            if removed:
                logger.debug("Cache sweep removed %d expired entries", removed)

    def _record_and_log(self, record: AccessRecord) -> None:
        self.metrics.record_request(
            record.status,
            record.duration_ms,
            bytes_in=record.bytes_in,
            bytes_out=record.bytes_out,
            cache=record.cache,
            connection_reused=record.connection_reused,
            tunnel=record.tunnel,
        )
        if record.error:
            self.metrics.record_error(record.error)

        event = {
            "client": record.client,
            "method": record.method,
            "target": record.target,
            "status": record.status,
            "cache": record.cache,
            "upstream": record.upstream,
            "bytes_in": record.bytes_in,
            "bytes_out": record.bytes_out,
            "duration_ms": round(record.duration_ms, 3),
            "connection_reused": record.connection_reused,
        }
        if record.error:
            event["error"] = record.error
        if self.log_format == "json":
            logger.info(json.dumps(event, sort_keys=True))
            return

        logger.info(
            (
                "client=%s method=%s target=%s status=%s cache=%s upstream=%s "
                "bytes_in=%s bytes_out=%s duration_ms=%.2f connection_reused=%s%s"
            ),
            event["client"],
            event["method"],
            event["target"],
            event["status"],
            event["cache"],
            event["upstream"],
            event["bytes_in"],
            event["bytes_out"],
            record.duration_ms,
            event["connection_reused"],
            f" error={record.error}" if record.error else "",
        )


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run multithreaded caching web proxy")
    parser.add_argument("--host", default=HOST)
    parser.add_argument("--port", type=int, default=PORT)
    parser.add_argument("--workers", type=int, default=WORKER_COUNT)
    parser.add_argument("--queue-size", type=int, default=REQUEST_QUEUE_SIZE)
    parser.add_argument("--connect-timeout", type=float, default=CONNECT_TIMEOUT_SECS)
    parser.add_argument("--idle-timeout", type=float, default=IDLE_TIMEOUT_SECS)
    parser.add_argument("--total-timeout", type=float, default=TOTAL_TIMEOUT_SECS)
    parser.add_argument("--drain-timeout", type=float, default=DRAIN_TIMEOUT_SECS)
    parser.add_argument("--max-header-bytes", type=int, default=MAX_HEADER_BYTES)
    parser.add_argument("--max-body-bytes", type=int, default=MAX_BODY_BYTES)
    parser.add_argument(
        "--no-upstream-pool",
        dest="upstream_pool",
        action="store_false",
        default=UPSTREAM_POOL_ENABLED,
    )
    parser.add_argument("--no-cache", dest="cache", action="store_false", default=CACHE_ENABLED)
    parser.add_argument("--cache-ttl", type=float, default=CACHE_TTL_SECS)
    parser.add_argument("--cache-max-entries", type=int, default=CACHE_MAX_ENTRIES)
    parser.add_argument("--cache-max-bytes", type=int, default=CACHE_MAX_BYTES)
    parser.add_argument(
        "--cache-eviction",
        choices=["lru", "score"],
        default=CACHE_EVICTION_POLICY,
    )
    parser.add_argument("--log-format", choices=["plain", "json"], default=LOG_FORMAT)
    parser.add_argument("--log-level", default="INFO")
    return parser.parse_args()


if __name__ == "__main__":
    args = _parse_args()
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(threadName)s %(name)s: %(message)s",
    )
    proxy_cache = None
    if args.cache:
        proxy_cache = ResponseCache(
            ttl_secs=args.cache_ttl,
            max_entries=args.cache_max_entries,
            max_bytes=args.cache_max_bytes,
            eviction_policy=args.cache_eviction,
        )
    server = ProxyServer(
        host=args.host,
        port=args.port,
        worker_count=args.workers,
        request_queue_size=args.queue_size,
        settings=HandlerSettings(
            idle_timeout=args.idle_timeout,
            total_timeout=args.total_timeout,
            max_header_bytes=args.max_header_bytes,
            max_body_bytes=args.max_body_bytes,
        ),
        connector=UpstreamConnector(
            connect_timeout=args.connect_timeout,
            pool_enabled=args.upstream_pool,
        ),
        cache=proxy_cache,
        cache_enabled=args.cache,
        drain_timeout=args.drain_timeout,
        log_format=args.log_format,
    )
    try:
        server.start()
    except BindError as exc:
        logger.error("%s", exc)
        raise SystemExit(1) from exc
    except KeyboardInterrupt:
        server.stop()
