from __future__ import annotations

import threading
from collections import deque
from collections.abc import Hashable

from registry_operator.src.metrics import METRICS


class ItemExponentialFailureRateLimiter:
    """Per-key exponential backoff: ``base * 2**failures`` capped at ``max_delay``."""

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0) -> None:
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            exponent = self._failures.get(item, 0)
            self._failures[item] = exponent + 1
        # Large exponents overflow float math long before they matter.
        if exponent > 62:
            return self.max_delay
        return min(self.base_delay * (2**exponent), self.max_delay)

    def forget(self, item: Hashable) -> None:
        with self._lock:
            self._failures.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        with self._lock:
            return self._failures.get(item, 0)


class RateLimitingQueue:
    """De-duplicating work queue with delayed and rate-limited adds.

    A key added while it is already waiting is dropped.  A key added while a
    worker holds it is parked in ``_dirty`` and re-queued when the worker calls
    :meth:`done`, so one worker never sees the same key twice at once and a
    burst of notifications collapses into one more pass.

    After :meth:`shut_down` no new keys are accepted; :meth:`get` keeps handing
    out keys that were already queued and reports shutdown once empty.
    """

    def __init__(
        self,
        name: str,
        rate_limiter: ItemExponentialFailureRateLimiter | None = None,
    ) -> None:
        self.name = name
        self.rate_limiter = rate_limiter or ItemExponentialFailureRateLimiter()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._shutting_down = False
        self._cond = threading.Condition()
        self._timers: set[threading.Timer] = set()

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def _update_depth(self) -> None:
        METRICS.queue_depth.labels(queue=self.name).set(len(self._queue))

    def add(self, item: Hashable) -> None:
        with self._cond:
            if self._shutting_down or item in self._dirty:
                return
            self._dirty.add(item)
            if item in self._processing:
                return
            self._queue.append(item)
            self._update_depth()
            self._cond.notify()

    def get(self, timeout: float | None = None) -> tuple[Hashable | None, bool]:
        """Block until a key is available and mark it as processing.

        Returns ``(key, False)`` normally, ``(None, True)`` once the queue is
        shut down and drained, and ``(None, False)`` if ``timeout`` elapsed.
        """
        with self._cond:
            if not self._queue and not self._shutting_down:
                self._cond.wait_for(
                    lambda: bool(self._queue) or self._shutting_down, timeout=timeout
                )
            if not self._queue:
                return None, self._shutting_down
            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            self._update_depth()
            return item, False

    def done(self, item: Hashable) -> None:
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                self._update_depth()
                self._cond.notify()
            elif not self._processing:
                self._cond.notify_all()

    def add_after(self, item: Hashable, delay: float) -> None:
        if delay <= 0:
            self.add(item)
            return
        with self._cond:
            if self._shutting_down:
                return
            timer = threading.Timer(delay, self._fire, args=(item,))
            timer.daemon = True
            self._timers.add(timer)
        timer.start()

    def _fire(self, item: Hashable) -> None:
        with self._cond:
            self._timers.discard(threading.current_thread())  # type: ignore[arg-type]
        self.add(item)

    def add_rate_limited(self, item: Hashable) -> None:
        METRICS.queue_retries_total.labels(queue=self.name).inc()
        self.add_after(item, self.rate_limiter.when(item))

    def forget(self, item: Hashable) -> None:
        self.rate_limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return self.rate_limiter.num_requeues(item)

    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            timers = list(self._timers)
            self._timers.clear()
            self._cond.notify_all()
        for timer in timers:
            timer.cancel()

    def shut_down_with_drain(self, timeout: float | None = None) -> bool:
        """Shut down and wait for in-flight keys to be marked done.

        Returns False if ``timeout`` elapsed with work still in flight.
        """
        self.shut_down()
        with self._cond:
            return self._cond.wait_for(lambda: not self._processing, timeout=timeout)
