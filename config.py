"""Configuration constants for the caching web proxy."""

HOST: str = "127.0.0.1"
PORT: int = 8080
LISTEN_BACKLOG: int = 128
ACCEPT_POLL_SECS: float = 0.2
SERVER_NAME: str = "PyProxy/1.0"
LOG_FORMAT: str = "plain"

WORKER_COUNT: int = 16
REQUEST_QUEUE_SIZE: int = 64
DRAIN_TIMEOUT_SECS: float = 5.0

READ_CHUNK_SIZE: int = 65_536
MAX_HEADER_BYTES: int = 16_384
MAX_HEADER_COUNT: int = 100
MAX_TARGET_LENGTH: int = 8_192
MAX_BODY_BYTES: int = 10_485_760
MAX_CHUNK_LINE_BYTES: int = 4_096

CONNECT_TIMEOUT_SECS: float = 5.0
IDLE_TIMEOUT_SECS: float = 30.0
TOTAL_TIMEOUT_SECS: float = 300.0
MAX_KEEPALIVE_REQUESTS: int = 100

UPSTREAM_POOL_ENABLED: bool = True
UPSTREAM_POOL_MAX_PER_HOST: int = 8
UPSTREAM_POOL_MAX_TOTAL: int = 128
UPSTREAM_STALE_AFTER_SECS: float = 15.0

CACHE_ENABLED: bool = True
CACHE_TTL_SECS: float = 60.0
CACHE_MAX_ENTRIES: int = 512
CACHE_MAX_BYTES: int = 64 * 1024 * 1024
CACHE_MAX_ENTRY_BYTES: int = 1_048_576
CACHE_BUCKETS: int = 16
CACHE_EVICTION_POLICY: str = "lru"
CACHE_SWEEP_INTERVAL_SECS: float = 30.0
