"""In-memory response cache with TTL expiry and bounded, bucketed storage."""

from __future__ import annotations

import itertools
import logging
import math
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field

from config import (
    CACHE_BUCKETS,
    CACHE_EVICTION_POLICY,
    CACHE_MAX_BYTES,
    CACHE_MAX_ENTRIES,
    CACHE_MAX_ENTRY_BYTES,
    CACHE_TTL_SECS,
)
from headers import Headers, parse_decimal
from request import ProxyRequest
from response import ResponseHead, serialize_head

logger = logging.getLogger(__name__)

CACHEABLE_STATUSES = {200, 203, 300, 301, 404, 410}
VARY_HEADERS = ("accept", "accept-encoding", "accept-language")
EVICTION_POLICIES = {"lru", "score"}
UNCACHEABLE_REQUEST_DIRECTIVES = {"no-store", "no-cache"}
UNCACHEABLE_RESPONSE_DIRECTIVES = {"no-store", "no-cache", "private"}


@dataclass(slots=True)
class CacheEntry:
    key: str
    url: str
    http_version: str
    status_code: int
    reason_phrase: str
    headers: Headers
    body: bytes
    stored_at: float
    ttl: float
    hits: int = 0
    last_access: float = 0.0
    access_tick: int = 0
    size: int = field(init=False)

    def __post_init__(self) -> None:
        header_bytes = sum(len(name) + len(value) + 4 for name, value in self.headers)
        self.size = len(self.body) + header_bytes

    def is_fresh(self, now: float) -> bool:
        return now - self.stored_at < self.ttl

    def age(self, now: float) -> float:
        return max(0.0, now - self.stored_at)

    def to_response_bytes(self, *, now: float, keep_alive: bool) -> bytes:
        headers = self.headers.copy()
        headers.set("Age", str(int(self.age(now))))
        headers.set("X-Cache", "HIT")
        if "transfer-encoding" not in headers:
            headers.set("Content-Length", str(len(self.body)))
        headers.set("Connection", "keep-alive" if keep_alive else "close")
        head = serialize_head(self.http_version, self.status_code, self.reason_phrase, headers)
        return head + self.body


@dataclass(slots=True)
class _Bucket:
    lock: threading.Lock = field(default_factory=threading.Lock)
    entries: OrderedDict[str, CacheEntry] = field(default_factory=OrderedDict)
    total_bytes: int = 0
    hits: int = 0
    misses: int = 0
    stores: int = 0
    evictions: int = 0
    expirations: int = 0


def cache_key(request: ProxyRequest) -> str:
    """Normalized signature: method, canonical URL and the varying header subset."""
    varying = "|".join(f"{name}={request.headers.get(name, '')}" for name in VARY_HEADERS)
    return f"{request.method} {request.target.url} {varying}"


def is_request_cacheable(request: ProxyRequest) -> bool:
    if request.method != "GET" or request.body:
        return False
    if request.headers.tokens("cache-control") & UNCACHEABLE_REQUEST_DIRECTIVES:
        return False
    if "no-cache" in request.headers.tokens("pragma"):
        return False
    if "authorization" in request.headers or "range" in request.headers:
        return False
    return not any(name.lower().startswith("if-") for name, _value in request.headers)


def response_ttl(head: ResponseHead, default_ttl: float) -> float | None:
    """TTL to store a response for, or ``None`` when it must not be cached."""
    if head.status_code not in CACHEABLE_STATUSES:
        return None
    directives = head.headers.tokens("cache-control")
    if directives & UNCACHEABLE_RESPONSE_DIRECTIVES:
        return None
    if "set-cookie" in head.headers:
        return None
    if head.headers.tokens("vary") - set(VARY_HEADERS):
        return None

    ttl = default_ttl
    for prefix in ("s-maxage=", "max-age="):
        value = next((d[len(prefix):] for d in directives if d.startswith(prefix)), None)
        if value is None:
            continue
        seconds = parse_decimal(value.strip('"'))
        if seconds is None:
            return None
        ttl = float(seconds)
        break
    return ttl if ttl > 0 else None


class ResponseCache:
    """Thread-safe response cache.

    Entries are spread across ``bucket_count`` buckets by key hash; each
    bucket has its own lock and an equal share of the entry and byte caps.
    With ``eviction_policy="lru"`` the least recently used entry of a full
    bucket is evicted; ``"score"`` evicts the entry with the lowest weighted
    sum of hit count and recency.
    """

    def __init__(
        self,
        *,
        ttl_secs: float = CACHE_TTL_SECS,
        max_entries: int = CACHE_MAX_ENTRIES,
        max_bytes: int = CACHE_MAX_BYTES,
        max_entry_bytes: int = CACHE_MAX_ENTRY_BYTES,
        bucket_count: int = CACHE_BUCKETS,
        eviction_policy: str = CACHE_EVICTION_POLICY,
        frequency_weight: float = 0.5,
        recency_weight: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_secs <= 0:
            raise ValueError("ttl_secs must be positive")
        if max_entries <= 0 or max_bytes <= 0 or bucket_count <= 0:
            raise ValueError("cache capacities must be positive")
        if eviction_policy not in EVICTION_POLICIES:
            raise ValueError(f"Unsupported eviction policy: {eviction_policy}")

        self.ttl_secs = ttl_secs
        self.max_entries = max_entries
        self.max_bytes = max_bytes
        self.eviction_policy = eviction_policy
        self.frequency_weight = frequency_weight
        self.recency_weight = recency_weight
        self._clock = clock
        self._ticks = itertools.count(1)
        self._buckets = [_Bucket() for _ in range(bucket_count)]
        self._bucket_max_entries = max(1, math.ceil(max_entries / bucket_count))
        self._bucket_max_bytes = max(1, math.ceil(max_bytes / bucket_count))
        self.max_entry_bytes = min(max_entry_bytes, self._bucket_max_bytes)

    def __len__(self) -> int:
        total = 0
        for bucket in self._buckets:
            with bucket.lock:
                total += len(bucket.entries)
        return total

    def get(self, request: ProxyRequest) -> CacheEntry | None:
        if not is_request_cacheable(request):
            return None
        return self.lookup(cache_key(request))

    def lookup(self, key: str) -> CacheEntry | None:
        bucket = self._bucket_for(key)
        now = self._clock()
        with bucket.lock:
            entry = bucket.entries.get(key)
            if entry is None:
                bucket.misses += 1
                return None
            if not entry.is_fresh(now):
                self._remove_locked(bucket, key)
                bucket.expirations += 1
                bucket.misses += 1
                return None

            entry.hits += 1
            entry.last_access = now
            entry.access_tick = next(self._ticks)
            bucket.entries.move_to_end(key)
            bucket.hits += 1
            return entry

    def store(self, request: ProxyRequest, head: ResponseHead, body: bytes) -> bool:
        """Cache a complete upstream response if both sides allow it."""
        if not is_request_cacheable(request):
            return False
        ttl = response_ttl(head, self.ttl_secs)
        if ttl is None:
            return False

        now = self._clock()
        entry = CacheEntry(
            key=cache_key(request),
            url=request.target.url,
            http_version=head.http_version,
            status_code=head.status_code,
            reason_phrase=head.reason_phrase,
            headers=head.headers.without_hop_by_hop(keep=("transfer-encoding",)),
            body=body,
            stored_at=now,
            ttl=ttl,
            last_access=now,
            access_tick=next(self._ticks),
        )
        return self.put(entry)

    def render(self, entry: CacheEntry, *, keep_alive: bool) -> bytes:
        """Wire bytes for serving ``entry`` as a hit."""
        return entry.to_response_bytes(now=self._clock(), keep_alive=keep_alive)

    def put(self, entry: CacheEntry) -> bool:
        if entry.size > self.max_entry_bytes:
            return False

        bucket = self._bucket_for(entry.key)
        with bucket.lock:
            if entry.key in bucket.entries:
                self._remove_locked(bucket, entry.key)
            bucket.entries[entry.key] = entry
            bucket.total_bytes += entry.size
            bucket.stores += 1

            evicted: list[CacheEntry] = []
            while (
                len(bucket.entries) > self._bucket_max_entries
                or bucket.total_bytes > self._bucket_max_bytes
            ):
                victim_key = self._victim_locked(bucket, protect=entry.key)
                evicted.append(self._remove_locked(bucket, victim_key))
                bucket.evictions += 1

        for victim in evicted:
            logger.debug("Evicted %s (hits=%d, size=%d)", victim.url, victim.hits, victim.size)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("Cached %s; contents: %s", entry.url, self.snapshot())
        return True

    def sweep(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        now = self._clock()
        removed = 0
        for bucket in self._buckets:
            with bucket.lock:
                expired = [key for key, entry in bucket.entries.items() if not entry.is_fresh(now)]
                for key in expired:
                    self._remove_locked(bucket, key)
                bucket.expirations += len(expired)
                removed += len(expired)
        return removed

    def snapshot(self) -> list[dict[str, object]]:
        now = self._clock()
        rows: list[dict[str, object]] = []
        for bucket in self._buckets:
            with bucket.lock:
                for entry in bucket.entries.values():
                    rows.append(
                        {
                            "url": entry.url,
                            "status": entry.status_code,
                            "size": entry.size,
                            "hits": entry.hits,
                            "age": round(entry.age(now), 3),
                            "ttl_remaining": round(max(0.0, entry.ttl - entry.age(now)), 3),
                        }
                    )
        return rows

    def stats(self) -> dict[str, int]:
        totals = {
            "entries": 0,
            "bytes": 0,
            "hits": 0,
            "misses": 0,
            "stores": 0,
            "evictions": 0,
            "expirations": 0,
        }
        for bucket in self._buckets:
            with bucket.lock:
                totals["entries"] += len(bucket.entries)
                totals["bytes"] += bucket.total_bytes
                totals["hits"] += bucket.hits
                totals["misses"] += bucket.misses
                totals["stores"] += bucket.stores
                totals["evictions"] += bucket.evictions
                totals["expirations"] += bucket.expirations
        return totals

    def _bucket_for(self, key: str) -> _Bucket:
        return self._buckets[hash(key) % len(self._buckets)]

    def _victim_locked(self, bucket: _Bucket, *, protect: str) -> str:
        candidates = [key for key in bucket.entries if key != protect] or [protect]
        if self.eviction_policy == "lru":
            return candidates[0]
        return min(candidates, key=lambda key: self._score(bucket.entries[key]))

    def _score(self, entry: CacheEntry) -> float:
        return self.frequency_weight * entry.hits + self.recency_weight * entry.access_tick

    def _remove_locked(self, bucket: _Bucket, key: str) -> CacheEntry:
        entry = bucket.entries.pop(key)
        bucket.total_bytes -= entry.size
        return entry
