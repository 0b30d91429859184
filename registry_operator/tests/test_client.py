from __future__ import annotations

import json
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock

import pytest

from registry_operator.src.client import (
    KINDS,
    ClientSet,
    CustomResourceClient,
    TypedResourceClient,
)


def response(payload: dict[str, Any]) -> SimpleNamespace:
    return SimpleNamespace(data=json.dumps(payload).encode("utf-8"))


def test_typed_get_uses_namespaced_method_and_raw_response() -> None:
    api = MagicMock()
    api.read_namespaced_config_map.return_value = response(
        {"kind": "ConfigMap", "metadata": {"name": "cm"}}
    )
    client = TypedResourceClient(KINDS["ConfigMap"], api)

    obj = client.get("cm", "ns")

    assert obj["metadata"]["name"] == "cm"
    api.read_namespaced_config_map.assert_called_once_with(
        name="cm", namespace="ns", _preload_content=False
    )


def test_typed_cluster_scoped_kinds_omit_namespace() -> None:
    api = MagicMock()
    api.read_cluster_role.return_value = response({"kind": "ClusterRole"})
    client = TypedResourceClient(KINDS["ClusterRole"], api)

    client.get("system:registry")

    api.read_cluster_role.assert_called_once_with(name="system:registry", _preload_content=False)


def test_typed_namespaced_kind_requires_namespace() -> None:
    client = TypedResourceClient(KINDS["Deployment"], MagicMock())
    with pytest.raises(ValueError, match="namespace is required"):
        client.get("image-registry")


def test_typed_list_fills_kind_and_returns_version() -> None:
    api = MagicMock()
    api.list_namespaced_deployment.return_value = response(
        {"metadata": {"resourceVersion": "42"}, "items": [{"metadata": {"name": "d"}}]}
    )
    client = TypedResourceClient(KINDS["Deployment"], api)

    items, version = client.list("ns", label_selector="app=x")

    assert version == "42"
    assert items == [{"apiVersion": "apps/v1", "kind": "Deployment", "metadata": {"name": "d"}}]
    api.list_namespaced_deployment.assert_called_once_with(
        namespace="ns", label_selector="app=x", _preload_content=False
    )


def test_typed_writes_route_to_replace_and_status_methods() -> None:
    api = MagicMock()
    api.replace_namespaced_deployment.return_value = response({})
    api.replace_namespaced_deployment_status.return_value = response({})
    client = TypedResourceClient(KINDS["Deployment"], api)
    body = {"metadata": {"name": "d", "namespace": "ns"}}

    client.update(body)
    client.update_status(body)
    client.delete("d", "ns")

    api.replace_namespaced_deployment.assert_called_once_with(
        name="d", namespace="ns", body=body, _preload_content=False
    )
    api.replace_namespaced_deployment_status.assert_called_once()
    delete_kwargs = api.delete_namespaced_deployment.call_args.kwargs
    assert delete_kwargs["body"]["gracePeriodSeconds"] == 0
    assert delete_kwargs["body"]["propagationPolicy"] == "Foreground"


def test_custom_cluster_scoped_calls() -> None:
    api = MagicMock()
    api.get_cluster_custom_object.return_value = {"kind": "Config"}
    client = CustomResourceClient(KINDS["Config"], api)

    assert client.get("cluster") == {"kind": "Config"}
    api.get_cluster_custom_object.assert_called_once_with(
        group="imageregistry.operator.openshift.io", version="v1", plural="configs", name="cluster"
    )

    body = {"metadata": {"name": "cluster"}}
    client.update_status(body)
    api.replace_cluster_custom_object_status.assert_called_once_with(
        group="imageregistry.operator.openshift.io",
        version="v1",
        plural="configs",
        name="cluster",
        body=body,
    )


def test_custom_namespaced_calls() -> None:
    api = MagicMock()
    api.list_namespaced_custom_object.return_value = {"items": [], "metadata": {"resourceVersion": "9"}}
    client = CustomResourceClient(KINDS["Route"], api)

    assert client.list("ns") == ([], "9")
    func, kwargs = client.watch_source("ns")
    assert func is api.list_namespaced_custom_object
    assert kwargs == {"group": "route.openshift.io", "version": "v1", "namespace": "ns", "plural": "routes"}


def test_client_set_resolves_and_caches() -> None:
    clients = ClientSet(api_client=MagicMock())

    config_client = clients.for_kind("Config")
    assert isinstance(config_client, CustomResourceClient)
    assert clients.for_kind("Config") is config_client
    assert isinstance(clients.for_kind("Secret"), TypedResourceClient)

    with pytest.raises(ValueError, match="unsupported kind"):
        clients.for_kind("Pod")
