from __future__ import annotations

from typing import Any

import pytest
from kubernetes.client import ApiException

from registry_operator.src.config import OperatorConfig
from registry_operator.src.imageconfig import (
    CONDITION_TYPE,
    ImageConfigController,
    route_hostnames,
    service_hostname,
)
from registry_operator.src.status import find_condition
from registry_operator.tests.fakes import FakeClientSet, FakeInformerFactory, FakeStore, api_error

NAMESPACE = "openshift-image-registry"
REGISTRY_UID = "registry-uid"


def make_controller(store: FakeStore) -> ImageConfigController:
    return ImageConfigController(
        config=OperatorConfig(),
        clients=FakeClientSet(store),  # type: ignore[arg-type]
        informers=FakeInformerFactory(store),  # type: ignore[arg-type]
        now=lambda: "2026-01-01T00:00:00Z",
    )


def service(port: int = 5000) -> dict[str, Any]:
    return {
        "kind": "Service",
        "metadata": {"name": "image-registry", "namespace": NAMESPACE},
        "spec": {"ports": [{"name": f"{port}-tcp", "port": port}]},
    }


def route(name: str, host: str, owned: bool = True) -> dict[str, Any]:
    metadata: dict[str, Any] = {"name": name, "namespace": NAMESPACE}
    if owned:
        metadata["ownerReferences"] = [{"kind": "Config", "name": "cluster", "uid": REGISTRY_UID}]
    return {"kind": "Route", "metadata": metadata, "status": {"ingress": [{"host": host}]}}


def cluster(with_service: bool = True) -> FakeStore:
    store = FakeStore()
    store.seed(
        {
            "kind": "Config",
            "metadata": {"name": "cluster", "uid": REGISTRY_UID},
            "spec": {"managementState": "Managed"},
        }
    )
    if with_service:
        store.seed(service())
    return store


def image_status(store: FakeStore) -> dict[str, Any]:
    image = store.peek("Image", "cluster")
    assert image is not None
    return image.get("status") or {}


def degraded(store: FakeStore) -> dict[str, Any]:
    config = store.peek("Config", "cluster")
    assert config is not None
    found = find_condition(config.get("status", {}).get("conditions"), CONDITION_TYPE)
    assert found is not None
    return dict(found)


def test_service_hostname_drops_the_https_port() -> None:
    assert service_hostname(None) == ""
    assert service_hostname(service(443)) == f"image-registry.{NAMESPACE}.svc"
    assert service_hostname(service(5000)) == f"image-registry.{NAMESPACE}.svc:5000"


def test_route_hostnames_put_default_route_first() -> None:
    routes = [
        route("b", "b.example.com"),
        route("default-route", f"default-route-{NAMESPACE}.apps.example.com"),
        route("a", "a.example.com"),
        {"metadata": {"name": "pending"}, "status": {"ingress": [{"host": ""}]}},
    ]

    assert route_hostnames(routes, NAMESPACE) == [
        f"default-route-{NAMESPACE}.apps.example.com",
        "a.example.com",
        "b.example.com",
    ]


def test_creates_image_config_with_internal_hostname() -> None:
    store = cluster()

    make_controller(store).sync()

    status = image_status(store)
    assert status["internalRegistryHostname"] == f"image-registry.{NAMESPACE}.svc:5000"
    assert status["externalRegistryHostnames"] == []
    assert degraded(store)["status"] == "False"


def test_publishes_only_routes_owned_by_the_registry() -> None:
    store = cluster()
    store.seed(route("public", "registry.example.com"))
    store.seed(route("foreign", "someone-else.example.com", owned=False))

    make_controller(store).sync()

    assert image_status(store)["externalRegistryHostnames"] == ["registry.example.com"]


def test_second_pass_writes_nothing() -> None:
    store = cluster()
    controller = make_controller(store)
    controller.sync()
    writes = list(store.writes)

    controller.sync()

    assert store.writes == writes


def test_removed_registry_clears_hostnames() -> None:
    store = cluster(with_service=False)
    store.seed(
        {
            "kind": "Image",
            "metadata": {"name": "cluster"},
            "status": {
                "internalRegistryHostname": f"image-registry.{NAMESPACE}.svc:5000",
                "externalRegistryHostnames": ["registry.example.com"],
            },
        }
    )

    make_controller(store).sync()

    status = image_status(store)
    assert status["internalRegistryHostname"] == ""
    assert status["externalRegistryHostnames"] == []


def test_status_conflict_is_retried() -> None:
    store = cluster()
    store.fail("update_status", "Image", api_error(409, "Conflict"))

    make_controller(store).sync()

    assert image_status(store)["internalRegistryHostname"] == f"image-registry.{NAMESPACE}.svc:5000"


def test_failure_is_reported_as_degraded_and_retried() -> None:
    store = cluster()
    store.fail("create", "Image", api_error(500, "boom"))

    with pytest.raises(ApiException):
        make_controller(store).sync()

    condition = degraded(store)
    assert condition["status"] == "True"
    assert condition["reason"] == "Error"


def test_only_the_registry_service_triggers() -> None:
    controller = make_controller(FakeStore())

    controller.services.emit_add({"metadata": {"name": "other", "resourceVersion": "1"}})  # type: ignore[attr-defined]
    assert len(controller.queue) == 0

    controller.services.emit_add({"metadata": {"name": "image-registry", "resourceVersion": "1"}})  # type: ignore[attr-defined]
    assert len(controller.queue) == 1
