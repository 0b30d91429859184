from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Any

from registry_operator.src.errors import OperationCancelled, is_transient
from registry_operator.src.metrics import METRICS
from registry_operator.src.notifier import Informer, Subscription, resource_version, wait_for_cache_sync
from registry_operator.src.workqueue import ItemExponentialFailureRateLimiter, RateLimitingQueue

EventFilter = Callable[[dict[str, Any]], bool]


class Controller:
    """One work queue, one constant key, one worker.

    Every watched informer event just adds ``queue_key``; the queue collapses
    bursts, so :meth:`sync` runs at most once per wake-up and always rebuilds
    the full desired state.  A successful pass resets the key's backoff; a
    failed one requeues it with per-key exponential backoff.

    Subclasses implement :meth:`sync`.
    """

    def __init__(
        self,
        name: str,
        queue_key: str,
        *,
        base_delay: float = 0.005,
        max_delay: float = 1000.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self.name = name
        self.queue_key = queue_key
        self.queue = RateLimitingQueue(
            name, ItemExponentialFailureRateLimiter(base_delay, max_delay)
        )
        self.logger = logger or logging.getLogger(f"{__name__}.{name}")
        self.informers: list[Informer] = []
        self._subscriptions: list[Subscription] = []
        self.stop_event = threading.Event()
        self.started = threading.Event()
        self.finished = threading.Event()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name})"

    def watch(self, informer: Informer, accept: EventFilter | None = None) -> None:
        """Requeue on every change ``accept`` lets through.

        Updates that do not move the resourceVersion (periodic relists) are
        dropped before the filter sees them.
        """

        def matches(obj: dict[str, Any]) -> bool:
            return accept is None or accept(obj)

        def on_add(obj: dict[str, Any]) -> None:
            if matches(obj):
                self.enqueue()

        def on_update(old: dict[str, Any], new: dict[str, Any]) -> None:
            if resource_version(old) == resource_version(new):
                return
            if matches(old) or matches(new):
                self.enqueue()

        def on_delete(obj: dict[str, Any]) -> None:
            if matches(obj):
                self.enqueue()

        self.informers.append(informer)
        self._subscriptions.append(informer.subscribe(on_add, on_update, on_delete))

    def enqueue(self) -> None:
        self.queue.add(self.queue_key)

    def sync(self) -> None:
        raise NotImplementedError

    def process_next(self, timeout: float | None = None) -> bool:
        """Handle one key; False once the queue is shut down and drained."""
        key, shutdown = self.queue.get(timeout)
        if shutdown:
            return False
        if key is None:
            return True

        started = time.monotonic()
        try:
            self.sync()
        except OperationCancelled:
            METRICS.reconcile_total.labels(controller=self.name, result="cancelled").inc()
            self.logger.info("Reconcile cancelled by shutdown")
        except Exception as exc:
            METRICS.reconcile_total.labels(controller=self.name, result="error").inc()
            if is_transient(exc):
                self.logger.warning("Reconcile failed, will retry: %s", exc)
            else:
                self.logger.exception("Reconcile failed, will retry")
            self.queue.add_rate_limited(key)
        else:
            METRICS.reconcile_total.labels(controller=self.name, result="success").inc()
            self.queue.forget(key)
        finally:
            METRICS.reconcile_duration_seconds.labels(controller=self.name).observe(
                time.monotonic() - started
            )
            self.queue.done(key)
        return True

    def run(self, poll_interval: float = 0.5) -> None:
        """Wait for caches, then process keys until :meth:`stop` is called."""
        stop_event = self.stop_event
        try:
            self.logger.info("Waiting for caches to sync")
            if not wait_for_cache_sync(self.informers, stop_event):
                return
            self.logger.info("Caches synced, starting worker")
            self.enqueue()
            self.started.set()
            while not stop_event.is_set():
                if not self.process_next(timeout=poll_interval):
                    break
        finally:
            self.shut_down()
            self.finished.set()
            self.logger.info("Worker stopped")

    def shut_down(self) -> None:
        for subscription in self._subscriptions:
            subscription.cancel()
        self._subscriptions.clear()
        self.queue.shut_down()

    def stop(self) -> None:
        self.stop_event.set()
        self.queue.shut_down()

    def alive(self) -> bool:
        return self.started.is_set() and not self.finished.is_set()

