from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque
from collections.abc import Callable, Hashable

from podset.src.metrics import METRICS


class WorkQueue:
    """Deduplicating work queue with delayed and rate-limited re-adds.

    Semantics follow the usual controller queue contract:

    * A key added several times before a worker picks it up is handed out
      once (a burst of events collapses to one pending request).
    * A key handed to a worker is not handed to another worker until
      :meth:`done` is called.  Adds that arrive meanwhile are remembered and
      the key is queued again on ``done``.
    * :meth:`add_rate_limited` re-adds a key after a per-key exponential
      backoff, ``min(max_delay, base_delay * 2 ** (failures - 1))``, until
      :meth:`forget` resets the counter.

    Key internal state:
        ``_queue``
            Keys ready to be handed out, in FIFO order.
        ``_dirty``
            Keys that need processing (queued or re-added while processing).
        ``_processing``
            Keys currently held by a worker.
        ``_waiting``
            Maps keys to the monotonic time at which a delayed add fires.
    """

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if max_delay < base_delay:
            raise ValueError("max_delay must be >= base_delay")

        self.base_delay = base_delay
        self.max_delay = max_delay
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._waiting: dict[Hashable, float] = {}
        self._heap: list[tuple[float, int, Hashable]] = []
        self._counter = itertools.count()
        self._failures: dict[Hashable, int] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def _update_depth(self) -> None:
        METRICS.queue_depth.set(len(self._queue))

    def _add_locked(self, key: Hashable) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._update_depth()
        self._cond.notify()

    def add(self, key: Hashable) -> None:
        with self._cond:
            self._add_locked(key)

    def add_after(self, key: Hashable, delay: float) -> None:
        """Add *key* once *delay* seconds have passed.

        A key already waiting keeps the earlier of the two due times.
        """
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            due_at = self._clock() + delay
            existing = self._waiting.get(key)
            if existing is not None and existing <= due_at:
                return
            self._waiting[key] = due_at
            heapq.heappush(self._heap, (due_at, next(self._counter), key))
            self._cond.notify()

    def when(self, key: Hashable) -> float:
        """Record a failure for *key* and return the backoff delay to use."""
        with self._cond:
            failures = self._failures.get(key, 0) + 1
            self._failures[key] = failures
        return min(self.max_delay, self.base_delay * 2 ** (failures - 1))

    def add_rate_limited(self, key: Hashable) -> float:
        delay = self.when(key)
        METRICS.retry_total.inc()
        self.add_after(key, delay)
        return delay

    def forget(self, key: Hashable) -> None:
        with self._cond:
            self._failures.pop(key, None)

    def num_requeues(self, key: Hashable) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def _promote_due_locked(self) -> float | None:
        """Move due delayed keys into the queue; return seconds until the next one."""
        now = self._clock()
        while self._heap:
            due_at, _, key = self._heap[0]
            if self._waiting.get(key) != due_at:
                heapq.heappop(self._heap)
                continue
            if due_at > now:
                return due_at - now
            heapq.heappop(self._heap)
            del self._waiting[key]
            self._add_locked(key)
        return None

    def get(self, timeout: float | None = None) -> Hashable | None:
        """Block until a key is ready and hand it out.

        Returns ``None`` when the queue is shut down and drained, or when
        *timeout* elapses first.
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                next_due = self._promote_due_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._dirty.discard(key)
                    self._processing.add(key)
                    self._update_depth()
                    return key
                if self._shutting_down:
                    return None

                wait_for = next_due
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(timeout=wait_for)

    def done(self, key: Hashable) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty and not self._shutting_down:
                self._queue.append(key)
                self._update_depth()
                self._cond.notify()

    def shut_down(self) -> None:
        """Stop accepting keys and wake every blocked :meth:`get`."""
        with self._cond:
            self._shutting_down = True
            self._queue.clear()
            self._dirty.clear()
            self._waiting.clear()
            self._heap.clear()
            self._update_depth()
            self._cond.notify_all()
