from __future__ import annotations

import threading
from typing import Any
from unittest.mock import MagicMock

from kubernetes.client import ApiException

from registry_operator.src.client import KINDS
from registry_operator.src.notifier import Informer, InformerFactory, wait_for_cache_sync


def cm(name: str, rv: str, labels: dict[str, str] | None = None) -> dict[str, Any]:
    metadata: dict[str, Any] = {"name": name, "namespace": "ns", "resourceVersion": rv}
    if labels:
        metadata["labels"] = labels
    return {"kind": "ConfigMap", "metadata": metadata}


class FakeListClient:
    def __init__(self, items: list[dict[str, Any]], errors: list[Exception] | None = None) -> None:
        self.kind = KINDS["ConfigMap"]
        self.items = items
        self.errors = list(errors or [])
        self.list_calls = 0

    def list(self, namespace: str | None = None, label_selector: str | None = None) -> tuple[list[dict[str, Any]], str]:
        self.list_calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return [dict(item) for item in self.items], "10"

    def watch_source(self, namespace: str | None = None) -> tuple[Any, dict[str, Any]]:
        return MagicMock(), {"namespace": namespace}


class Recorder:
    def __init__(self) -> None:
        self.events: list[tuple[str, str]] = []

    def on_add(self, obj: dict[str, Any]) -> None:
        self.events.append(("add", obj["metadata"]["name"]))

    def on_update(self, old: dict[str, Any], new: dict[str, Any]) -> None:
        self.events.append(("update", new["metadata"]["name"]))

    def on_delete(self, obj: dict[str, Any]) -> None:
        self.events.append(("delete", obj["metadata"]["name"]))


def subscribed(informer: Informer) -> Recorder:
    recorder = Recorder()
    informer.subscribe(recorder.on_add, recorder.on_update, recorder.on_delete)
    return recorder


def test_replace_diffs_snapshot_against_cache() -> None:
    informer = Informer(FakeListClient([]), "ns")  # type: ignore[arg-type]
    informer.replace([cm("a", "1"), cm("b", "1")])
    recorder = subscribed(informer)

    informer.replace([cm("a", "1"), cm("b", "2"), cm("c", "1")])
    informer.replace([cm("b", "2"), cm("c", "1")])

    assert recorder.events == [("update", "b"), ("add", "c"), ("delete", "a")]


def test_get_and_list_filter_by_namespace_and_labels() -> None:
    informer = Informer(FakeListClient([]), "ns")  # type: ignore[arg-type]
    informer.replace([cm("b", "1", {"app": "x"}), cm("a", "1", {"app": "x"}), cm("c", "1")])

    assert informer.get("a", "ns") is not None
    assert informer.get("a", "other") is None
    assert [o["metadata"]["name"] for o in informer.list("ns", labels={"app": "x"})] == ["a", "b"]


def test_handle_event_maps_watch_types() -> None:
    informer = Informer(FakeListClient([]), "ns")  # type: ignore[arg-type]
    recorder = subscribed(informer)

    informer.handle_event("ADDED", cm("a", "1"))
    informer.handle_event("MODIFIED", cm("a", "2"))
    informer.handle_event("DELETED", cm("a", "2"))

    assert recorder.events == [("add", "a"), ("update", "a"), ("delete", "a")]
    assert informer.get("a", "ns") is None


def test_cancelled_subscription_stops_delivery() -> None:
    informer = Informer(FakeListClient([]), "ns")  # type: ignore[arg-type]
    recorder = Recorder()
    subscription = informer.subscribe(recorder.on_add)
    subscription.cancel()

    informer.handle_event("ADDED", cm("a", "1"))
    assert recorder.events == []


def test_failing_handler_does_not_break_other_subscribers() -> None:
    informer = Informer(FakeListClient([]), "ns")  # type: ignore[arg-type]

    def explode(obj: dict[str, Any]) -> None:
        raise RuntimeError("handler bug")

    informer.subscribe(explode)
    recorder = subscribed(informer)
    informer.handle_event("ADDED", cm("a", "1"))

    assert recorder.events == [("add", "a")]


def test_run_lists_then_applies_watch_events() -> None:
    client = FakeListClient([cm("a", "1")])
    stop = threading.Event()
    watcher = MagicMock()

    def stream(func: Any, **kwargs: Any) -> Any:
        assert kwargs["resource_version"] == "10"
        yield {"type": "MODIFIED", "raw_object": cm("a", "11")}
        yield {"type": "BOOKMARK", "raw_object": {"metadata": {"resourceVersion": "12"}}}
        yield {"type": "ADDED", "raw_object": cm("b", "13")}
        stop.set()

    watcher.stream.side_effect = stream
    informer = Informer(client, "ns", watch_factory=lambda: watcher)  # type: ignore[arg-type]
    recorder = subscribed(informer)

    informer.run(stop)

    assert informer.has_synced()
    assert recorder.events == [("add", "a"), ("update", "a"), ("add", "b")]
    assert informer.get("b", "ns")["kind"] == "ConfigMap"  # type: ignore[index]
    watcher.stop.assert_called()


def test_run_relists_after_gone() -> None:
    client = FakeListClient([cm("a", "1")])
    stop = threading.Event()
    watcher = MagicMock()
    calls = {"count": 0}

    def stream(func: Any, **kwargs: Any) -> Any:
        calls["count"] += 1
        if calls["count"] == 1:
            raise ApiException(status=410, reason="Gone")
        stop.set()
        return iter(())

    watcher.stream.side_effect = stream
    informer = Informer(client, "ns", watch_factory=lambda: watcher)  # type: ignore[arg-type]

    informer.run(stop)

    assert client.list_calls == 2


def test_run_gives_up_on_forbidden() -> None:
    client = FakeListClient([], errors=[ApiException(status=403, reason="Forbidden")])
    informer = Informer(client, "ns", watch_factory=MagicMock())  # type: ignore[arg-type]

    informer.run(threading.Event())

    assert not informer.has_synced()


def test_factory_shares_informers_per_kind_and_namespace() -> None:
    clients = MagicMock()
    clients.for_kind.side_effect = lambda kind: MagicMock(kind=KINDS[kind])
    factory = InformerFactory(clients)

    first = factory.informer("Deployment", "ns")
    assert factory.informer("Deployment", "ns") is first
    assert factory.informer("Deployment", "other") is not first
    assert factory.informer("Config", "ignored") is factory.informer("Config")
    assert len(factory.informers()) == 3


def test_wait_for_cache_sync() -> None:
    synced = MagicMock()
    synced.has_synced.return_value = True
    assert wait_for_cache_sync([synced], threading.Event())

    never = MagicMock()
    never.has_synced.return_value = False
    stop = threading.Event()
    stop.set()
    assert not wait_for_cache_sync([never], stop)
