"""Async load generator that drives absolute-form GETs through the proxy."""

from __future__ import annotations

import argparse
import asyncio
import json
import time
from collections import Counter
from dataclasses import dataclass, field
from urllib.parse import urlsplit

CLIENT_ERRORS = (OSError, ValueError, asyncio.TimeoutError, asyncio.IncompleteReadError)


@dataclass(slots=True)
class LoadResult:
    total_requests: int
    errors: int
    status_counts: dict[str, int]
    latencies_ms: list[float] = field(default_factory=list)
    duration_secs: float = 0.0
    cache_hits: int = 0

    def summary(self) -> dict[str, float | int | dict[str, int]]:
        rps = self.total_requests / self.duration_secs if self.duration_secs > 0 else 0.0
        error_rate = self.errors / self.total_requests if self.total_requests > 0 else 0.0
        return {
            "requests": self.total_requests,
            "errors": self.errors,
            "error_rate": round(error_rate, 6),
            "rps": round(rps, 2),
            "p50_ms": round(percentile(self.latencies_ms, 50), 2),
            "p95_ms": round(percentile(self.latencies_ms, 95), 2),
            "cache_hits": self.cache_hits,
            "status_counts": self.status_counts,
        }


@dataclass(slots=True)
class FetchResult:
    status: int
    cache_hit: bool
    persistent: bool


def build_proxy_request(url: str, *, keep_alive: bool) -> bytes:
    """Absolute-form GET for ``url`` as a client would send it to a proxy."""
    parts = urlsplit(url)
    if parts.scheme != "http" or not parts.netloc:
        raise ValueError(f"Expected an absolute http:// URL, got {url!r}")
    connection = "keep-alive" if keep_alive else "close"
    return (
        f"GET {url} HTTP/1.1\r\n"
        f"Host: {parts.netloc}\r\n"
        f"Proxy-Connection: {connection}\r\n"
        f"Connection: {connection}\r\n"
        "\r\n"
    ).encode("ascii")


async def issue_request(
    proxy_host: str,
    proxy_port: int,
    url: str,
    timeout: float,
) -> tuple[int, float, bool, bool]:
    """One request on a fresh connection: ``(status, latency_ms, cache_hit, is_error)``."""
    started = time.perf_counter()
    writer: asyncio.StreamWriter | None = None
    try:
        reader, writer = await _open(proxy_host, proxy_port, timeout)
        writer.write(build_proxy_request(url, keep_alive=False))
        await writer.drain()
        fetched = await read_response(reader, timeout=timeout)
    except CLIENT_ERRORS:
        return 0, _elapsed_ms(started), False, True
    finally:
        if writer is not None:
            await _close(writer)
    return fetched.status, _elapsed_ms(started), fetched.cache_hit, False


async def run_load(
    proxy_host: str,
    proxy_port: int,
    url: str,
    *,
    concurrency: int,
    duration_secs: float,
    timeout_secs: float,
    keepalive: bool = False,
) -> LoadResult:
    status_counts: Counter[str] = Counter()
    latencies_ms: list[float] = []
    totals: Counter[str] = Counter()
    stop_at = time.perf_counter() + duration_secs
    request_bytes = build_proxy_request(url, keep_alive=True)

    def record(status: int, latency_ms: float, cache_hit: bool, is_error: bool) -> None:
        totals["requests"] += 1
        latencies_ms.append(latency_ms)
        if is_error:
            totals["errors"] += 1
            return
        status_counts[str(status)] += 1
        if cache_hit:
            totals["cache_hits"] += 1

    async def fresh_connection_worker() -> None:
        while time.perf_counter() < stop_at:
            record(*await issue_request(proxy_host, proxy_port, url, timeout_secs))

    async def keepalive_worker() -> None:
        reader: asyncio.StreamReader | None = None
        writer: asyncio.StreamWriter | None = None
        try:
            while time.perf_counter() < stop_at:
                if writer is None:
                    try:
                        reader, writer = await _open(proxy_host, proxy_port, timeout_secs)
                    except CLIENT_ERRORS:
                        record(0, 0.0, False, True)
                        continue

                started = time.perf_counter()
                try:
                    writer.write(request_bytes)
                    await writer.drain()
                    fetched = await read_response(reader, timeout=timeout_secs)
                except CLIENT_ERRORS:
                    record(0, _elapsed_ms(started), False, True)
                    fetched = None
                else:
                    record(fetched.status, _elapsed_ms(started), fetched.cache_hit, False)

                if fetched is None or not fetched.persistent:
                    await _close(writer)
                    reader = writer = None
        finally:
            if writer is not None:
                await _close(writer)

    worker = keepalive_worker if keepalive else fresh_connection_worker
    started = time.perf_counter()
    await asyncio.gather(*(worker() for _ in range(concurrency)))

    return LoadResult(
        total_requests=totals["requests"],
        errors=totals["errors"],
        status_counts=dict(status_counts),
        latencies_ms=latencies_ms,
        duration_secs=time.perf_counter() - started,
        cache_hits=totals["cache_hits"],
    )


async def read_response(reader: asyncio.StreamReader, timeout: float) -> FetchResult:
    """Consume one response; the body is read and discarded."""
    status_line = await asyncio.wait_for(reader.readline(), timeout=timeout)
    version, _, rest = status_line.decode("iso-8859-1").strip().partition(" ")
    if not version.startswith("HTTP/") or not (rest[:3].isascii() and rest[:3].isdigit()):
        raise ValueError(f"Invalid status line: {status_line!r}")
    status = int(rest[:3])

    headers: dict[str, str] = {}
    while True:
        line = await asyncio.wait_for(reader.readline(), timeout=timeout)
        if line in {b"\r\n", b"\n", b""}:
            break
        name, sep, value = line.decode("iso-8859-1").partition(":")
        if not sep:
            raise ValueError("Malformed header line")
        headers[name.strip().lower()] = value.strip()

    persistent = headers.get("connection", "").lower() != "close"
    if headers.get("transfer-encoding", "").lower() == "chunked":
        await _skip_chunked_body(reader, timeout=timeout)
    elif "content-length" in headers:
        await asyncio.wait_for(reader.readexactly(int(headers["content-length"])), timeout=timeout)
    else:
        await asyncio.wait_for(reader.read(), timeout=timeout)
        persistent = False

    return FetchResult(
        status=status,
        cache_hit=headers.get("x-cache", "").upper() == "HIT",
        persistent=persistent,
    )


async def _skip_chunked_body(reader: asyncio.StreamReader, timeout: float) -> None:
    while True:
        size_line = await asyncio.wait_for(reader.readline(), timeout=timeout)
        if not size_line:
            raise ValueError("Unexpected EOF in chunked body")
        size = int(size_line.split(b";", 1)[0].strip(), 16)
        if size == 0:
            while await asyncio.wait_for(reader.readline(), timeout=timeout) not in {b"\r\n", b""}:
                pass
            return
        await asyncio.wait_for(reader.readexactly(size + 2), timeout=timeout)


async def _open(
    host: str,
    port: int,
    timeout: float,
) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    return await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)


async def _close(writer: asyncio.StreamWriter) -> None:
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000


def percentile(values: list[float], pct: int) -> float:
    if not values:
        return 0.0
    if pct <= 0:
        return min(values)
    if pct >= 100:
        return max(values)

    ordered = sorted(values)
    rank = (len(ordered) - 1) * (pct / 100)
    lower = int(rank)
    upper = min(lower + 1, len(ordered) - 1)
    weight = rank - lower
    return ordered[lower] * (1 - weight) + ordered[upper] * weight


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Drive GET load through the proxy")
    parser.add_argument("url", help="absolute http:// URL to fetch through the proxy")
    parser.add_argument("--proxy-host", default="127.0.0.1")
    parser.add_argument("--proxy-port", type=int, default=8080)
    parser.add_argument("--concurrency", type=int, default=50)
    parser.add_argument("--duration", type=float, default=10.0)
    parser.add_argument("--timeout", type=float, default=5.0)
    parser.add_argument("--keepalive", action="store_true")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    result = asyncio.run(
        run_load(
            proxy_host=args.proxy_host,
            proxy_port=args.proxy_port,
            url=args.url,
            concurrency=args.concurrency,
            duration_secs=args.duration,
            timeout_secs=args.timeout,
            keepalive=args.keepalive,
        )
    )
    print(json.dumps(result.summary(), indent=2, sort_keys=True))


if __name__ == "__main__":
    main()
