"""Deduplicating work queue with delayed and rate-limited adds.

Semantics:

- A key is queued at most once. Adding a key already queued is a no-op.
- A key handed out by ``get`` is *processing* until ``done``. Adding it
  meanwhile marks it dirty, and ``done`` queues it again, so one key is
  never handled by two workers at once and no change is lost.
- ``add_after`` schedules an add on a timer thread; the earliest pending
  time per key wins.
- ``add_rate_limited`` delays by ``base * 2**failures`` (capped) and
  counts a failure for the key; ``forget`` resets the count.
"""

from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque
from collections.abc import Hashable

from issue_operator.logging import get_logger

logger = get_logger(__name__)

DEFAULT_BACKOFF_BASE = 0.005  # seconds
DEFAULT_BACKOFF_MAX = 1000.0  # seconds

# 2**64 * base is already far past any sane cap
_MAX_BACKOFF_EXPONENT = 64


class WorkQueue:
    """Thread-safe work queue of hashable keys.

    All state is guarded by one condition variable shared by workers
    blocked in ``get`` and by the timer thread serving ``add_after``.
    """

    def __init__(
        self,
        backoff_base: float = DEFAULT_BACKOFF_BASE,
        backoff_max: float = DEFAULT_BACKOFF_MAX,
        name: str = "workqueue",
    ) -> None:
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.name = name

        self._cond = threading.Condition()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._failures: dict[Hashable, int] = {}
        self._shutting_down = False

        # Min-heap of (ready_at, seq, key); _ready_at holds the live entry per key
        self._waiting: list[tuple[float, int, Hashable]] = []
        self._ready_at: dict[Hashable, float] = {}
        self._seq = itertools.count()

        self._timer = threading.Thread(
            target=self._run_timer, name=f"{name}-timer", daemon=True
        )
        self._timer.start()

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def add(self, key: Hashable) -> None:
        """Queue ``key`` unless it is already queued."""
        with self._cond:
            self._add_locked(key)

    def get(self, timeout: float | None = None) -> Hashable | None:
        """Block until a key is available and mark it processing.

        Args:
            timeout: Seconds to wait, or None to wait indefinitely.

        Returns:
            The next key, or None on timeout or once the queue is shut
            down and drained.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while not self._queue and not self._shutting_down:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return None
                self._cond.wait(remaining)

            if not self._queue:
                return None

            key = self._queue.popleft()
            self._processing.add(key)
            self._dirty.discard(key)
            return key

    def done(self, key: Hashable) -> None:
        """Mark ``key`` finished; requeue it if it was added while processing."""
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify_all()

    def add_after(self, key: Hashable, delay: float) -> None:
        """Queue ``key`` after ``delay`` seconds."""
        if delay <= 0:
            self.add(key)
            return

        with self._cond:
            if self._shutting_down:
                return
            ready_at = time.monotonic() + delay
            current = self._ready_at.get(key)
            if current is not None and current <= ready_at:
                return
            self._ready_at[key] = ready_at
            heapq.heappush(self._waiting, (ready_at, next(self._seq), key))
            self._cond.notify_all()

    def add_rate_limited(self, key: Hashable) -> float:
        """Queue ``key`` after its backoff delay and count a failure.

        Returns:
            The delay applied, in seconds.
        """
        with self._cond:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        delay = min(
            self.backoff_base * (2 ** min(failures, _MAX_BACKOFF_EXPONENT)),
            self.backoff_max,
        )
        logger.debug(
            "Backing off %s for %.3fs (failure %s)",
            key,
            delay,
            failures + 1,
            extra={"diagnostic_tag": "queue"},
        )
        self.add_after(key, delay)
        return delay

    def num_requeues(self, key: Hashable) -> int:
        """Number of rate-limited adds since the last ``forget``."""
        with self._cond:
            return self._failures.get(key, 0)

    def forget(self, key: Hashable) -> None:
        """Reset the backoff count for ``key``."""
        with self._cond:
            self._failures.pop(key, None)

    def is_idle(self) -> bool:
        """True if nothing is queued or processing. Delayed adds are not counted."""
        with self._cond:
            return not self._queue and not self._processing

    def shut_down(self) -> None:
        """Stop accepting keys and wake every waiter.

        Keys already queued are still handed out by ``get``.
        """
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    def _add_locked(self, key: Hashable) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._cond.notify_all()

    def _run_timer(self) -> None:
        with self._cond:
            while not self._shutting_down:
                now = time.monotonic()
                while self._waiting and self._waiting[0][0] <= now:
                    ready_at, _, key = heapq.heappop(self._waiting)
                    if self._ready_at.get(key) != ready_at:
                        # superseded by an earlier add_after
                        continue
                    del self._ready_at[key]
                    self._add_locked(key)

                timeout = self._waiting[0][0] - now if self._waiting else None
                self._cond.wait(timeout)
