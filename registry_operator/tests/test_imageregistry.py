from __future__ import annotations

import itertools
from typing import Any

import pytest
from kubernetes.client import ApiException

from registry_operator.src.applier import Applier
from registry_operator.src.config import OperatorConfig
from registry_operator.src.imageregistry import ImageRegistryController
from registry_operator.src.resources import VERSION_ANNOTATION
from registry_operator.src.retry import Backoff
from registry_operator.src.status import find_condition
from registry_operator.tests.fakes import (
    FakeClientSet,
    FakeInformerFactory,
    FakeStore,
    api_error,
    infrastructure,
)

NAMESPACE = "openshift-image-registry"
MANAGED_KINDS = (
    ("ClusterRole", "system:registry", None),
    ("ClusterRoleBinding", "registry-registry-role", None),
    ("ServiceAccount", "registry", NAMESPACE),
    ("ConfigMap", "serviceca", NAMESPACE),
    ("ConfigMap", "trusted-ca", NAMESPACE),
    ("Secret", "image-registry-private-configuration", NAMESPACE),
    ("Service", "image-registry", NAMESPACE),
    ("Deployment", "image-registry", NAMESPACE),
)


class Ticker:
    """Hands out strictly increasing RFC 3339 timestamps."""

    def __init__(self) -> None:
        self._seconds = itertools.count()

    def __call__(self) -> str:
        return f"2026-01-01T00:00:{next(self._seconds):02d}Z"


def make_controller(
    store: FakeStore, *, config: OperatorConfig | None = None, clock: Any = None
) -> ImageRegistryController:
    config = config or OperatorConfig(release_version="4.16.0")
    clients = FakeClientSet(store)
    kwargs: dict[str, Any] = {}
    if clock is not None:
        kwargs["clock"] = clock
    return ImageRegistryController(
        config=config,
        clients=clients,  # type: ignore[arg-type]
        informers=FakeInformerFactory(store),  # type: ignore[arg-type]
        applier=Applier(clients, config.checksum_annotation, backoff=Backoff(steps=2), sleep=lambda _: None),  # type: ignore[arg-type]
        now=Ticker(),
        **kwargs,
    )


def cluster(platform: str = "AWS", trust_bundle: bool = True) -> FakeStore:
    store = FakeStore()
    store.seed(infrastructure(platform))
    if trust_bundle:
        store.seed(
            {
                "kind": "ConfigMap",
                "metadata": {"name": "trusted-ca", "namespace": NAMESPACE},
                "data": {"ca-bundle.crt": "PEM"},
            }
        )
    return store


def registry(store: FakeStore) -> dict[str, Any]:
    obj = store.peek("Config", "cluster")
    assert obj is not None
    return obj


def condition(store: FakeStore, type_: str) -> dict[str, Any]:
    found = find_condition(registry(store).get("status", {}).get("conditions"), type_)
    assert found is not None, type_
    return dict(found)


def edit_spec(store: FakeStore, **changes: Any) -> None:
    store.objects[("Config", "", "cluster")]["spec"].update(changes)


def mark_deployment_ready(store: FakeStore, replicas: int = 2) -> None:
    deployment = store.peek("Deployment", "image-registry", NAMESPACE)
    assert deployment is not None
    store.set_status(
        "Deployment",
        "image-registry",
        NAMESPACE,
        {
            "replicas": replicas,
            "updatedReplicas": replicas,
            "availableReplicas": replicas,
            "readyReplicas": replicas,
            "observedGeneration": deployment["metadata"]["generation"],
        },
    )


def bootstrapped(platform: str = "AWS") -> tuple[FakeStore, ImageRegistryController]:
    store = cluster(platform)
    controller = make_controller(store)
    controller.sync()
    return store, controller


def test_first_pass_bootstraps_default_config() -> None:
    store, _ = bootstrapped()

    config = registry(store)
    assert store.writes == [("create", "Config", "cluster")]
    assert config["spec"]["managementState"] == "Managed"
    assert list(config["spec"]["storage"]) == ["s3"]
    assert config["metadata"]["finalizers"] == ["imageregistry.operator.openshift.io/finalizer"]


def test_bare_metal_bootstraps_removed_and_reports_removed() -> None:
    store, controller = bootstrapped("BareMetal")
    assert registry(store)["spec"]["managementState"] == "Removed"

    controller.sync()

    assert condition(store, "Removed")["status"] == "True"
    assert condition(store, "Degraded")["status"] == "False"
    assert store.peek("Deployment", "image-registry", NAMESPACE) is None


def test_managed_pass_creates_every_object_and_reports_progressing() -> None:
    store, controller = bootstrapped()

    controller.sync()

    for kind, name, namespace in MANAGED_KINDS:
        assert store.peek(kind, name, namespace) is not None, (kind, name)
    assert condition(store, "Available")["reason"] == "NoReplicasAvailable"
    assert condition(store, "Progressing")["status"] == "True"
    assert condition(store, "Degraded")["status"] == "False"
    status = registry(store)["status"]
    assert status["observedGeneration"] == registry(store)["metadata"]["generation"]
    assert list(status["storage"]) == ["s3"]


def test_second_pass_without_changes_writes_nothing() -> None:
    store, controller = bootstrapped()
    controller.sync()
    writes = list(store.writes)
    conditions = registry(store)["status"]["conditions"]

    controller.sync()

    assert store.writes == writes
    assert registry(store)["status"]["conditions"] == conditions


def test_ready_deployment_reports_available() -> None:
    store, controller = bootstrapped()
    controller.sync()
    progressing_since = condition(store, "Progressing")["lastTransitionTime"]
    mark_deployment_ready(store)

    controller.sync()

    assert condition(store, "Available")["reason"] == "Ready"
    assert condition(store, "Available")["status"] == "True"
    assert condition(store, "Progressing")["status"] == "False"
    assert condition(store, "Progressing")["lastTransitionTime"] != progressing_since
    assert registry(store)["status"]["readyReplicas"] == 2
    deployment = store.peek("Deployment", "image-registry", NAMESPACE)
    assert deployment["metadata"]["annotations"][VERSION_ANNOTATION] == "4.16.0"  # type: ignore[index]


def test_duplicate_route_is_degraded_without_retry() -> None:
    store, controller = bootstrapped()
    controller.sync()
    edit_spec(store, routes=[{"name": "public"}, {"name": "public"}])

    controller.sync()

    degraded = condition(store, "Degraded")
    assert degraded["status"] == "True"
    assert degraded["reason"] == "duplicate route name"
    assert condition(store, "Progressing")["status"] == "False"
    assert store.peek("Route", "public", NAMESPACE) is None


def test_storage_not_configured_is_reported() -> None:
    store, controller = bootstrapped("BareMetal")
    edit_spec(store, managementState="Managed")

    controller.sync()

    assert condition(store, "Degraded")["reason"] == "StorageNotConfigured"
    assert condition(store, "Available")["status"] == "False"


def test_transient_apply_error_is_reported_and_raised() -> None:
    store, controller = bootstrapped()
    store.fail("create", "Deployment", api_error(500, "boom"))

    with pytest.raises(ApiException):
        controller.sync()

    progressing = condition(store, "Progressing")
    assert progressing["status"] == "True"
    assert progressing["reason"] == "Error"
    assert condition(store, "Degraded")["status"] == "False"


def test_status_conflict_merges_onto_latest() -> None:
    store, controller = bootstrapped()
    original = store.update_status

    def concurrent_writer(descriptor: Any, body: dict[str, Any]) -> dict[str, Any]:
        store.update_status = original  # type: ignore[method-assign]
        foreign = {
            "type": "ImageRegistryCertificatesControllerDegraded",
            "status": "False",
            "reason": "AsExpected",
            "lastTransitionTime": "2025-12-31T00:00:00Z",
        }
        store.set_status("Config", "cluster", None, {"conditions": [foreign]})
        raise api_error(409, "Conflict")

    store.update_status = concurrent_writer  # type: ignore[method-assign]

    controller.sync()

    types = {c["type"] for c in registry(store)["status"]["conditions"]}
    assert types == {
        "ImageRegistryCertificatesControllerDegraded",
        "Available",
        "Progressing",
        "Degraded",
        "Removed",
    }
    assert "storage" in registry(store)["status"]


def test_stale_owned_route_is_removed() -> None:
    store, controller = bootstrapped()
    edit_spec(store, routes=[{"name": "public", "hostname": "registry.example.com"}])
    controller.sync()
    assert store.peek("Route", "public", NAMESPACE) is not None

    edit_spec(store, routes=[])
    controller.sync()

    assert store.peek("Route", "public", NAMESPACE) is None


def test_deleted_object_is_recreated() -> None:
    store, controller = bootstrapped()
    controller.sync()
    store.delete("Service", "image-registry", NAMESPACE)

    controller.sync()

    assert store.peek("Service", "image-registry", NAMESPACE) is not None


def test_deletion_tears_down_and_waits_for_not_found() -> None:
    store, controller = bootstrapped()
    controller.sync()
    store.delete("Config", "cluster", None)

    controller.sync()

    assert store.peek("Config", "cluster") is None
    for kind, name, namespace in MANAGED_KINDS:
        assert store.peek(kind, name, namespace) is None, (kind, name)


def test_deletion_keeps_finalizer_when_teardown_fails() -> None:
    store, controller = bootstrapped()
    controller.sync()
    store.fail("delete", "Deployment", api_error(500, "Internal Server Error"))
    store.delete("Config", "cluster", None)

    with pytest.raises(ApiException):
        controller.sync()

    live = registry(store)
    assert live["metadata"]["deletionTimestamp"]
    assert "imageregistry.operator.openshift.io/finalizer" in live["metadata"]["finalizers"]
    assert store.peek("Deployment", "image-registry", NAMESPACE) is not None

    controller.sync()

    assert store.peek("Config", "cluster") is None
    assert store.peek("Deployment", "image-registry", NAMESPACE) is None


def test_removed_state_tears_down_and_reports_removed() -> None:
    store, controller = bootstrapped()
    controller.sync()
    edit_spec(store, managementState="Removed")

    controller.sync()

    assert store.peek("Deployment", "image-registry", NAMESPACE) is None
    assert condition(store, "Removed")["status"] == "True"
    assert condition(store, "Available")["reason"] == "Removed"
    assert store.peek("Config", "cluster") is not None


def test_unmanaged_leaves_objects_alone() -> None:
    store, controller = bootstrapped()
    edit_spec(store, managementState="Unmanaged")
    writes_before = len(store.writes)

    controller.sync()

    kinds_written = {w[1] for w in store.writes[writes_before:]}
    assert kinds_written == {"Config"}
    assert store.peek("Deployment", "image-registry", NAMESPACE) is None
    assert condition(store, "Available")["reason"] == "Unmanaged"


def test_missing_trust_bundle_degrades_after_grace_period() -> None:
    store = cluster(trust_bundle=False)
    ticks = iter([0.0, 10.0])
    controller = make_controller(
        store,
        config=OperatorConfig(trust_bundle_grace_seconds=5),
        clock=lambda: next(ticks),
    )
    try:
        controller.sync()
        controller.sync()
        assert condition(store, "Degraded")["status"] == "False"

        controller.sync()
        degraded = condition(store, "Degraded")
        assert degraded["status"] == "True"
        assert degraded["reason"] == "TrustedCABundleMissing"
    finally:
        controller.shut_down()


def test_spec_defaults_are_written_back() -> None:
    store, controller = bootstrapped()
    edit_spec(store, httpSecret="")

    controller.sync()

    assert registry(store)["spec"]["httpSecret"]
    assert registry(store)["metadata"]["generation"] == 2
