"""Bounded worker pool for accepted client sockets."""

from __future__ import annotations

import logging
import socket
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field

from config import DRAIN_TIMEOUT_SECS

logger = logging.getLogger(__name__)

ClientAddress = tuple[str, int]


class PoolSaturatedError(RuntimeError):
    """Raised by ``submit`` when every worker is busy and the queue is full."""


@dataclass(slots=True, eq=False)
class Task:
    """One accepted client socket waiting for, or owned by, a worker."""

    sock: socket.socket
    address: ClientAddress
    submitted_at: float = field(default_factory=time.monotonic)
    cancelled: bool = False

    def cancel(self) -> None:
        """Shut the socket down so whoever is blocked on it unwinds."""
        self.cancelled = True
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass

    def close(self) -> None:
        try:
            self.sock.close()
        except OSError:
            pass


TaskHandler = Callable[[Task], None]


class WorkerPool:
    """Fixed-size worker pool with a bounded FIFO queue and fail-fast admission."""

    def __init__(self, worker_count: int, queue_size: int, handler: TaskHandler) -> None:
        if worker_count <= 0:
            raise ValueError("worker_count must be positive")
        if queue_size < 0:
            raise ValueError("queue_size must not be negative")

        self._handler = handler
        self._worker_count = worker_count
        self._queue_size = queue_size
        self._queue: deque[Task] = deque()
        self._in_flight: set[Task] = set()
        self._lock = threading.Lock()
        self._condition = threading.Condition(self._lock)
        self._threads: list[threading.Thread] = []
        self._accepting = False
        self._stopping = False
        self._rejected = 0
        self._completed = 0
        self._failed = 0
        self._cancelled = 0
        self._max_queue_wait = 0.0

    @property
    def worker_count(self) -> int:
        return self._worker_count

    @property
    def queue_size(self) -> int:
        return self._queue_size

    @property
    def threads(self) -> tuple[threading.Thread, ...]:
        return tuple(self._threads)

    @property
    def active(self) -> int:
        with self._lock:
            return len(self._in_flight)

    @property
    def queued(self) -> int:
        with self._lock:
            return len(self._queue)

    def start(self) -> None:
        with self._lock:
            if self._threads:
                return
            self._accepting = True
        for index in range(self._worker_count):
            worker = threading.Thread(
                target=self._worker_loop,
                name=f"proxy-worker-{index}",
                daemon=True,
            )
            self._threads.append(worker)
            worker.start()

    def submit(self, task: Task) -> None:
        """Queue ``task`` or raise ``PoolSaturatedError``; never blocks."""
        with self._condition:
            if not self._accepting:
                self._rejected += 1
                raise PoolSaturatedError("Worker pool is not accepting tasks")
            if len(self._in_flight) + len(self._queue) >= self._worker_count + self._queue_size:
                self._rejected += 1
                raise PoolSaturatedError(
                    f"{len(self._in_flight)} active and {len(self._queue)} queued tasks"
                )
            self._queue.append(task)
            self._condition.notify()

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "workers": self._worker_count,
                "active": len(self._in_flight),
                "queued": len(self._queue),
                "rejected": self._rejected,
                "completed": self._completed,
                "failed": self._failed,
                "cancelled": self._cancelled,
                "max_queue_wait_ms": round(self._max_queue_wait * 1000),
            }

    def wait_for_drain(self, timeout: float | None = None) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._condition:
            while self._queue or self._in_flight:
                if deadline is None:
                    self._condition.wait(timeout=0.1)
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._condition.wait(timeout=min(remaining, 0.1))
            return True

    def shutdown(self, grace_secs: float = DRAIN_TIMEOUT_SECS) -> bool:
        """Stop admitting, drain for up to ``grace_secs``, then force-cancel.

        Returns ``True`` when everything drained without cancellation.
        """
        with self._condition:
            if self._stopping:
                return True
            self._accepting = False

        drained = self.wait_for_drain(timeout=grace_secs)

        with self._condition:
            self._stopping = True
            abandoned = list(self._queue)
            self._queue.clear()
            in_flight = list(self._in_flight)
            self._cancelled += len(abandoned) + len(in_flight)
            self._condition.notify_all()

        if not drained:
            logger.warning(
                "Drain timed out; cancelling %d queued and %d in-flight tasks",
                len(abandoned),
                len(in_flight),
            )
        for task in abandoned:
            task.cancel()
            task.close()
        for task in in_flight:
            task.cancel()

        for thread in self._threads:
            thread.join(timeout=1.0)
        return drained

    def _next_task(self) -> Task | None:
        with self._condition:
            while not self._queue:
                if self._stopping:
                    return None
                self._condition.wait(timeout=0.2)
            task = self._queue.popleft()
            self._max_queue_wait = max(self._max_queue_wait, time.monotonic() - task.submitted_at)
            self._in_flight.add(task)
            return task

    def _worker_loop(self) -> None:
        while True:
            task = self._next_task()
            if task is None:
                return
            failed = False
            try:
                self._handler(task)
            except Exception:
                failed = True
                logger.exception("Unhandled error while serving %s:%s", *task.address[:2])
                task.close()
            finally:
                with self._condition:
                    self._in_flight.discard(task)
                    if failed:
                        self._failed += 1
                    else:
                        self._completed += 1
                    self._condition.notify_all()
