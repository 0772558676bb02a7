from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque

from reconciler.src.metrics import METRICS

DEFAULT_BASE_DELAY_SECONDS = 0.005
DEFAULT_MAX_DELAY_SECONDS = 1000.0


class ItemExponentialFailureRateLimiter:
    """Per-key exponential backoff: ``base * 2**(n-1)`` for the n-th failure.

    With the 5 ms default the requeue delays run 5ms, 10ms, 20ms ... 82s over
    the first fifteen failures, which is where the retry policy gives up.
    """

    def __init__(
        self,
        base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
        max_delay: float = DEFAULT_MAX_DELAY_SECONDS,
    ) -> None:
        if base_delay <= 0:
            raise ValueError("base_delay must be > 0")
        if max_delay < base_delay:
            raise ValueError("max_delay must be >= base_delay")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: dict[str, int] = {}
        self._lock = threading.Lock()

    def when(self, key: str) -> float:
        """Record one more failure for *key* and return the delay before its retry."""
        with self._lock:
            exponent = self._failures.get(key, 0)
            self._failures[key] = exponent + 1
        # Clamp before exponentiating so very long failure streaks cannot overflow.
        if exponent >= 64:
            return self.max_delay
        return min(self.base_delay * (2**exponent), self.max_delay)

    def num_requeues(self, key: str) -> int:
        with self._lock:
            return self._failures.get(key, 0)

    def forget(self, key: str) -> None:
        with self._lock:
            self._failures.pop(key, None)


class RateLimitingQueue:
    """Deduplicating work queue of reconciliation keys with delayed, rate-limited re-adds.

    Guarantees:

    * A key that is queued but not yet handed out is stored once, however
      many times it is added.
    * A key handed out by :meth:`get` is not handed out again until
      :meth:`done` is called for it.  Adds that arrive meanwhile mark the key
      dirty and it is queued again by ``done``.
    * After :meth:`shut_down`, ``get`` returns ``(None, True)`` straight away
      and further adds are ignored.

    Delayed adds sit in a heap ordered by ready time and are moved into the
    queue by a single daemon thread.
    """

    def __init__(
        self,
        name: str,
        rate_limiter: ItemExponentialFailureRateLimiter | None = None,
    ) -> None:
        self.name = name
        self.rate_limiter = rate_limiter or ItemExponentialFailureRateLimiter()

        self._cond = threading.Condition()
        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._shutting_down = False

        self._waiting: list[tuple[float, int, str]] = []
        self._waiting_ready_at: dict[str, float] = {}
        self._sequence = itertools.count()

        METRICS.queue_depth.labels(name=name).set(0)
        self._waiting_thread = threading.Thread(
            target=self._waiting_loop, name=f"{name}-delay", daemon=True
        )
        self._waiting_thread.start()

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def _update_depth(self) -> None:
        METRICS.queue_depth.labels(name=self.name).set(len(self._queue))

    def _add_locked(self, key: str) -> None:
        if self._shutting_down or key in self._dirty:
            return
        METRICS.queue_adds_total.labels(name=self.name).inc()
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._update_depth()
        self._cond.notify_all()

    def add(self, key: str) -> None:
        with self._cond:
            self._add_locked(key)

    def get(self, timeout: float | None = None) -> tuple[str | None, bool]:
        """Block until a key is available and return ``(key, shutting_down)``.

        Returns ``(None, True)`` once the queue is shut down, and
        ``(None, False)`` if *timeout* elapses with nothing to hand out.
        """
        with self._cond:
            deadline = None if timeout is None else time.monotonic() + timeout
            while not self._queue and not self._shutting_down:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return None, False
                self._cond.wait(timeout=remaining)
            if self._shutting_down:
                return None, True

            key = self._queue.popleft()
            self._processing.add(key)
            self._dirty.discard(key)
            self._update_depth()
            return key, False

    def done(self, key: str) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty and not self._shutting_down:
                self._queue.append(key)
                self._update_depth()
                self._cond.notify_all()

    def add_after(self, key: str, delay: float) -> None:
        """Add *key* once *delay* seconds have passed; non-positive delays add immediately."""
        with self._cond:
            if self._shutting_down:
                return
            if delay <= 0:
                self._add_locked(key)
                return

            ready_at = time.monotonic() + delay
            existing = self._waiting_ready_at.get(key)
            if existing is not None and existing <= ready_at:
                return
            self._waiting_ready_at[key] = ready_at
            heapq.heappush(self._waiting, (ready_at, next(self._sequence), key))
            self._cond.notify_all()

    def add_rate_limited(self, key: str) -> None:
        METRICS.queue_retries_total.labels(name=self.name).inc()
        self.add_after(key, self.rate_limiter.when(key))

    def forget(self, key: str) -> None:
        self.rate_limiter.forget(key)

    def num_requeues(self, key: str) -> int:
        return self.rate_limiter.num_requeues(key)

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    def _waiting_loop(self) -> None:
        with self._cond:
            while not self._shutting_down:
                now = time.monotonic()
                while self._waiting and self._waiting[0][0] <= now:
                    ready_at, _, key = heapq.heappop(self._waiting)
                    # Skip heap entries superseded by an earlier ready time.
                    if self._waiting_ready_at.get(key) != ready_at:
                        continue
                    del self._waiting_ready_at[key]
                    self._add_locked(key)

                if self._waiting:
                    self._cond.wait(timeout=self._waiting[0][0] - now)
                else:
                    self._cond.wait()
