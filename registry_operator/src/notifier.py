from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable, Iterable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from registry_operator.src.client import ClientSet, ResourceClient
from registry_operator.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

ObjectKey = tuple[str, str]
AddHandler = Callable[[dict[str, Any]], None]
UpdateHandler = Callable[[dict[str, Any], dict[str, Any]], None]
DeleteHandler = Callable[[dict[str, Any]], None]


def object_key(obj: dict[str, Any]) -> ObjectKey:
    metadata = obj.get("metadata") or {}
    return metadata.get("namespace") or "", metadata.get("name") or ""


def resource_version(obj: dict[str, Any] | None) -> str | None:
    if obj is None:
        return None
    return (obj.get("metadata") or {}).get("resourceVersion")


class Subscription:
    """Handle returned by :meth:`Informer.subscribe`; call :meth:`cancel` to stop delivery."""

    def __init__(
        self,
        informer: Informer,
        on_add: AddHandler | None,
        on_update: UpdateHandler | None,
        on_delete: DeleteHandler | None,
    ) -> None:
        self._informer = informer
        self.on_add = on_add
        self.on_update = on_update
        self.on_delete = on_delete

    def cancel(self) -> None:
        self._informer._unsubscribe(self)


class Informer:
    """List-then-watch cache for one kind, optionally scoped to a namespace.

    Reads (:meth:`get`, :meth:`list`) are served from memory and may lag the
    API server.  Subscribers are called on the informer thread for every add,
    update, and delete, including the synthetic ones produced when a ``410
    Gone`` forces a re-list and the fresh snapshot is diffed against the cache.

    ``401`` / ``403`` responses are treated as RBAC misconfiguration and end
    :meth:`run` immediately; everything else is retried with exponential
    backoff and jitter capped at 30 s.
    """

    def __init__(
        self,
        resource_client: ResourceClient,
        namespace: str | None = None,
        *,
        watch_timeout_seconds: int = 300,
        logger: logging.Logger | None = None,
        watch_factory: Callable[[], Any] = watch.Watch,
    ) -> None:
        self.resource_client = resource_client
        self.kind = resource_client.kind.kind
        self.namespace = namespace if resource_client.kind.namespaced else None
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.watch_factory = watch_factory

        self._items: dict[ObjectKey, dict[str, Any]] = {}
        self._items_lock = threading.Lock()
        self._subscriptions: list[Subscription] = []
        self._subscriptions_lock = threading.Lock()
        self._synced = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: Any = None
        self._watcher_lock = threading.Lock()

    def __repr__(self) -> str:
        scope = self.namespace or "<cluster>"
        return f"Informer({self.kind}, {scope})"

    # -- read API -------------------------------------------------------------

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def get(self, name: str, namespace: str | None = None) -> dict[str, Any] | None:
        """Return the cached object or ``None``; callers must not mutate it."""
        key = (namespace or "", name)
        with self._items_lock:
            return self._items.get(key)

    def list(
        self,
        namespace: str | None = None,
        labels: dict[str, str] | None = None,
    ) -> list[dict[str, Any]]:
        with self._items_lock:
            items = list(self._items.values())
        result = []
        for item in items:
            metadata = item.get("metadata") or {}
            if namespace is not None and metadata.get("namespace") != namespace:
                continue
            item_labels = metadata.get("labels") or {}
            if labels and any(item_labels.get(k) != v for k, v in labels.items()):
                continue
            result.append(item)
        return sorted(result, key=object_key)

    # -- subscriptions --------------------------------------------------------

    def subscribe(
        self,
        on_add: AddHandler | None = None,
        on_update: UpdateHandler | None = None,
        on_delete: DeleteHandler | None = None,
    ) -> Subscription:
        subscription = Subscription(self, on_add, on_update, on_delete)
        with self._subscriptions_lock:
            self._subscriptions.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        with self._subscriptions_lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def _dispatch(
        self, event_type: str, obj: dict[str, Any], old: dict[str, Any] | None = None
    ) -> None:
        with self._subscriptions_lock:
            subscriptions = list(self._subscriptions)
        for subscription in subscriptions:
            try:
                if event_type == "ADDED" and subscription.on_add is not None:
                    subscription.on_add(obj)
                elif event_type == "MODIFIED" and subscription.on_update is not None:
                    subscription.on_update(old if old is not None else obj, obj)
                elif event_type == "DELETED" and subscription.on_delete is not None:
                    subscription.on_delete(obj)
            except Exception:
                self.logger.exception("Event handler failed for %s %s", self.kind, event_type)

    # -- cache maintenance ----------------------------------------------------

    def replace(self, items: Iterable[dict[str, Any]]) -> None:
        """Swap in a fresh list snapshot and notify subscribers of the differences."""
        fresh = {object_key(item): item for item in items}
        with self._items_lock:
            previous = self._items
            self._items = fresh
        for key, obj in fresh.items():
            old = previous.get(key)
            if old is None:
                self._dispatch("ADDED", obj)
            elif resource_version(old) != resource_version(obj):
                self._dispatch("MODIFIED", obj, old)
        for key, old in previous.items():
            if key not in fresh:
                self._dispatch("DELETED", old)

    def handle_event(self, event_type: str, obj: dict[str, Any]) -> None:
        key = object_key(obj)
        if event_type in {"ADDED", "MODIFIED"}:
            with self._items_lock:
                old = self._items.get(key)
                self._items[key] = obj
            self._dispatch("ADDED" if old is None else "MODIFIED", obj, old)
        elif event_type == "DELETED":
            with self._items_lock:
                old = self._items.pop(key, None)
            self._dispatch("DELETED", old if old is not None else obj)

    # -- list/watch loop ------------------------------------------------------

    def request_stop(self) -> None:
        """Request a cooperative stop and interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _list(self) -> str | None:
        items, version = self.resource_client.list(namespace=self.namespace)
        for item in items:
            item.setdefault("apiVersion", self.resource_client.kind.api_version)
            item.setdefault("kind", self.kind)
        self.replace(items)
        return version

    @staticmethod
    def _event_object(event: dict[str, Any]) -> dict[str, Any] | None:
        raw = event.get("raw_object")
        if isinstance(raw, dict):
            return raw
        obj = event.get("object")
        return obj if isinstance(obj, dict) else None

    def run(self, stop_event: threading.Event | None = None) -> None:
        """List, then watch from the list's resourceVersion until stopped."""
        stop = stop_event or threading.Event()
        self._external_stop.clear()

        version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                version = self._list()
                self._synced.set()
                self.logger.info(
                    "Cache for %s synced at resourceVersion %s", self.kind, version
                )
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied listing %s (status=%s). "
                        "Check operator RBAC and service account permissions.",
                        self.kind,
                        exc.status,
                    )
                    return
                self.logger.exception("Initial list of %s failed", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial list of %s", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        backoff_seconds = 1
        watch_stream_count = 0
        while not self._should_stop(stop):
            watcher = self.watch_factory()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(kind=self.kind).inc()
                watch_stream_count += 1
                func, kwargs = self.resource_client.watch_source(self.namespace)
                stream = watcher.stream(
                    func,
                    resource_version=version,
                    timeout_seconds=self.watch_timeout_seconds,
                    **kwargs,
                )
                for event in stream:
                    if self._should_stop(stop):
                        break
                    obj = self._event_object(event)
                    if obj is None:
                        continue
                    event_version = resource_version(obj)
                    if event_version:
                        version = event_version
                    event_type = str(event.get("type", ""))
                    if event_type == "BOOKMARK":
                        continue
                    obj.setdefault("apiVersion", self.resource_client.kind.api_version)
                    obj.setdefault("kind", self.kind)
                    self.handle_event(event_type, obj)
                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone: our resourceVersion was compacted away.
                if exc.status == 410:
                    self.logger.warning("Watch of %s expired, re-listing", self.kind)
                    try:
                        version = self._list()
                    except ApiException as relist_exc:
                        if relist_exc.status in {401, 403}:
                            self.logger.error(
                                "Kubernetes API access denied re-listing %s (status=%s).",
                                self.kind,
                                relist_exc.status,
                            )
                            self._synced.clear()
                            return
                        self.logger.exception("Failed to re-list %s after 410", self.kind)
                        METRICS.watch_errors_total.labels(kind=self.kind).inc()
                        version = None
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch of %s denied (status=%s).", self.kind, exc.status
                    )
                    METRICS.watch_errors_total.labels(kind=self.kind).inc()
                    self._synced.clear()
                    return

                self.logger.exception("Kubernetes API watch error for %s", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error for %s", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None


class InformerFactory:
    """Hands out one shared :class:`Informer` per (kind, namespace)."""

    def __init__(self, clients: ClientSet, *, watch_timeout_seconds: int = 300) -> None:
        self.clients = clients
        self.watch_timeout_seconds = watch_timeout_seconds
        self._informers: dict[tuple[str, str | None], Informer] = {}
        self._lock = threading.Lock()

    def informer(self, kind: str, namespace: str | None = None) -> Informer:
        resource_client = self.clients.for_kind(kind)
        if not resource_client.kind.namespaced:
            namespace = None
        key = (kind, namespace)
        with self._lock:
            informer = self._informers.get(key)
            if informer is None:
                informer = Informer(
                    resource_client,
                    namespace,
                    watch_timeout_seconds=self.watch_timeout_seconds,
                )
                self._informers[key] = informer
            return informer

    def informers(self) -> list[Informer]:
        with self._lock:
            return list(self._informers.values())


def wait_for_cache_sync(
    informers: Iterable[Any],
    stop_event: threading.Event,
    poll_interval: float = 0.1,
) -> bool:
    """Block until every informer reports synced; False if stopped first."""
    pending = list(informers)
    while not stop_event.is_set():
        pending = [informer for informer in pending if not informer.has_synced()]
        if not pending:
            return True
        stop_event.wait(timeout=poll_interval)
    return False
