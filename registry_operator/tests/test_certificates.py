from __future__ import annotations

from typing import Any

import pytest
from kubernetes.client import ApiException

from registry_operator.src.applier import Applier
from registry_operator.src.certificates import CONDITION_TYPE, CertificatesController, registry_hostnames
from registry_operator.src.config import OperatorConfig
from registry_operator.src.status import find_condition
from registry_operator.tests.fakes import FakeClientSet, FakeInformerFactory, FakeStore, api_error

NAMESPACE = "openshift-image-registry"
CONFIG = OperatorConfig()


def make_controller(store: FakeStore) -> CertificatesController:
    clients = FakeClientSet(store)
    return CertificatesController(
        config=CONFIG,
        clients=clients,  # type: ignore[arg-type]
        informers=FakeInformerFactory(store),  # type: ignore[arg-type]
        applier=Applier(clients, CONFIG.checksum_annotation, sleep=lambda _: None),  # type: ignore[arg-type]
        now=lambda: "2026-01-01T00:00:00Z",
    )


def cluster(service_ca: str | None = "CA-PEM") -> FakeStore:
    store = FakeStore()
    store.seed({"kind": "Config", "metadata": {"name": "cluster"}, "spec": {"managementState": "Managed"}})
    if service_ca is not None:
        store.seed(
            {
                "kind": "ConfigMap",
                "metadata": {"name": "serviceca", "namespace": NAMESPACE},
                "data": {"service-ca.crt": service_ca},
            }
        )
    return store


def certificates_condition(store: FakeStore) -> dict[str, Any]:
    config = store.peek("Config", "cluster")
    assert config is not None
    found = find_condition(config.get("status", {}).get("conditions"), CONDITION_TYPE)
    assert found is not None
    return dict(found)


def test_hostnames_use_double_dot_port_form() -> None:
    assert registry_hostnames("ns") == [
        "image-registry.ns.svc..5000",
        "image-registry.ns.svc.cluster.local..5000",
    ]


def test_publishes_service_ca_per_hostname() -> None:
    store = cluster()

    make_controller(store).sync()

    config_map = store.peek("ConfigMap", "image-registry-certificates", NAMESPACE)
    assert config_map is not None
    assert config_map["data"] == {host: "CA-PEM" for host in registry_hostnames(NAMESPACE)}
    assert config_map["metadata"]["ownerReferences"][0]["kind"] == "Config"
    condition = certificates_condition(store)
    assert condition["status"] == "False"
    assert condition["reason"] == "AsExpected"


def test_second_pass_writes_nothing() -> None:
    store = cluster()
    controller = make_controller(store)
    controller.sync()
    writes = list(store.writes)

    controller.sync()

    assert store.writes == writes


def test_missing_service_ca_publishes_empty_config_map() -> None:
    store = cluster(service_ca=None)

    make_controller(store).sync()

    config_map = store.peek("ConfigMap", "image-registry-certificates", NAMESPACE)
    assert config_map is not None
    assert config_map["data"] == {}


def test_failure_is_reported_as_degraded_and_retried() -> None:
    store = cluster()
    store.fail("create", "ConfigMap", api_error(500, "boom"))

    with pytest.raises(ApiException):
        make_controller(store).sync()

    condition = certificates_condition(store)
    assert condition["status"] == "True"
    assert condition["reason"] == "Error"


def test_deleting_registry_is_left_alone() -> None:
    store = cluster()
    store.objects[("Config", "", "cluster")]["metadata"]["deletionTimestamp"] = "2026-01-01T00:00:00Z"

    make_controller(store).sync()

    assert store.writes == []


def test_only_relevant_config_maps_trigger() -> None:
    store = FakeStore()
    controller = make_controller(store)

    controller.config_maps.emit_add({"metadata": {"name": "trusted-ca", "resourceVersion": "1"}})  # type: ignore[attr-defined]
    assert len(controller.queue) == 0

    controller.config_maps.emit_add({"metadata": {"name": "serviceca", "resourceVersion": "1"}})  # type: ignore[attr-defined]
    assert len(controller.queue) == 1
