"""Thread-safe in-memory metrics for proxied exchanges."""

from __future__ import annotations

import threading
from collections import Counter

LATENCY_BUCKETS_MS = (5, 10, 25, 50, 100, 250, 500, 1000, 2000, 5000)
LATENCY_SAMPLE_LIMIT = 4096


class MetricsRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._connections_total = 0
        self._active_connections = 0
        self._connections_rejected = 0
        self._total_requests = 0
        self._requests_reused_connection = 0
        self._status_counts: Counter[str] = Counter()
        self._cache_results: Counter[str] = Counter()
        self._latency_buckets: Counter[str] = Counter()
        self._latencies_ms: list[float] = []
        self._errors_by_type: Counter[str] = Counter()
        self._tunnels_total = 0
        self._bytes_in_total = 0
        self._bytes_out_total = 0

    def connection_opened(self) -> None:
        with self._lock:
            self._connections_total += 1
            self._active_connections += 1

    def connection_closed(self) -> None:
        with self._lock:
            self._active_connections = max(0, self._active_connections - 1)

    def connection_rejected(self) -> None:
        with self._lock:
            self._connections_rejected += 1

    def record_request(
        self,
        status_code: int,
        duration_ms: float,
        *,
        bytes_in: int = 0,
        bytes_out: int = 0,
        cache: str = "-",
        connection_reused: bool = False,
        tunnel: bool = False,
    ) -> None:
        with self._lock:
            self._total_requests += 1
            self._status_counts[str(status_code)] += 1
            self._bytes_in_total += bytes_in
            self._bytes_out_total += bytes_out
            self._latency_buckets[self._bucket_label(duration_ms)] += 1
            self._latencies_ms.append(duration_ms)
            if len(self._latencies_ms) > LATENCY_SAMPLE_LIMIT:
                del self._latencies_ms[: len(self._latencies_ms) - LATENCY_SAMPLE_LIMIT]
            if cache != "-":
                self._cache_results[cache] += 1
            if connection_reused:
                self._requests_reused_connection += 1
            if tunnel:
                self._tunnels_total += 1

    def record_error(self, error_type: str) -> None:
        with self._lock:
            self._errors_by_type[error_type] += 1

    def snapshot(self) -> dict[str, object]:
        with self._lock:
            return {
                "connections_total": self._connections_total,
                "active_connections": self._active_connections,
                "connections_rejected": self._connections_rejected,
                "total_requests": self._total_requests,
                "requests_reused_connection": self._requests_reused_connection,
                "status_counts": dict(self._status_counts),
                "cache_hits": self._cache_results["HIT"],
                "cache_misses": self._cache_results["MISS"],
                "tunnels_total": self._tunnels_total,
                "bytes_in_total": self._bytes_in_total,
                "bytes_out_total": self._bytes_out_total,
                "errors_by_type": dict(self._errors_by_type),
                "latency_buckets_ms": dict(self._latency_buckets),
                "latency_p50_ms": round(self._percentile(self._latencies_ms, 50), 3),
                "latency_p99_ms": round(self._percentile(self._latencies_ms, 99), 3),
            }

    def _bucket_label(self, duration_ms: float) -> str:
        for limit in LATENCY_BUCKETS_MS:
            if duration_ms <= limit:
                return f"<= {limit}ms"
        return "> 5000ms"

    def _percentile(self, values: list[float], percentile: int) -> float:
        if not values:
            return 0.0
        ordered = sorted(values)
        rank = (len(ordered) - 1) * (percentile / 100)
        lower = int(rank)
        upper = min(lower + 1, len(ordered) - 1)
        weight = rank - lower
        return ordered[lower] * (1 - weight) + ordered[upper] * weight
