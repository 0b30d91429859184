from __future__ import annotations

import json
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes import client

WatchSource = tuple[Callable[..., Any], dict[str, Any]]


@dataclass(frozen=True)
class ResourceKind:
    """Where a kind lives in the API and how to call it.

    Built-in kinds name a typed API class (``api``) and the snake_case method
    suffix the generated client uses.  Kinds without ``api`` go through
    ``CustomObjectsApi`` using ``api_version`` and ``plural``.
    """

    kind: str
    api_version: str
    plural: str
    namespaced: bool
    api: str | None = None
    suffix: str | None = None
    has_status: bool = False

    @property
    def group(self) -> str:
        return self.api_version.rpartition("/")[0]

    @property
    def version(self) -> str:
        return self.api_version.rpartition("/")[2]


KINDS: dict[str, ResourceKind] = {
    kind.kind: kind
    for kind in (
        ResourceKind("ServiceAccount", "v1", "serviceaccounts", True, "CoreV1Api", "service_account"),
        ResourceKind("ConfigMap", "v1", "configmaps", True, "CoreV1Api", "config_map"),
        ResourceKind("Secret", "v1", "secrets", True, "CoreV1Api", "secret"),
        ResourceKind("Service", "v1", "services", True, "CoreV1Api", "service"),
        ResourceKind("Deployment", "apps/v1", "deployments", True, "AppsV1Api", "deployment"),
        ResourceKind("DaemonSet", "apps/v1", "daemonsets", True, "AppsV1Api", "daemon_set"),
        ResourceKind("CronJob", "batch/v1", "cronjobs", True, "BatchV1Api", "cron_job"),
        ResourceKind("Job", "batch/v1", "jobs", True, "BatchV1Api", "job"),
        ResourceKind(
            "ClusterRole",
            "rbac.authorization.k8s.io/v1",
            "clusterroles",
            False,
            "RbacAuthorizationV1Api",
            "cluster_role",
        ),
        ResourceKind(
            "ClusterRoleBinding",
            "rbac.authorization.k8s.io/v1",
            "clusterrolebindings",
            False,
            "RbacAuthorizationV1Api",
            "cluster_role_binding",
        ),
        ResourceKind("Route", "route.openshift.io/v1", "routes", True),
        ResourceKind(
            "Config", "imageregistry.operator.openshift.io/v1", "configs", False, has_status=True
        ),
        ResourceKind(
            "ImagePruner",
            "imageregistry.operator.openshift.io/v1",
            "imagepruners",
            False,
            has_status=True,
        ),
        ResourceKind(
            "ClusterOperator", "config.openshift.io/v1", "clusteroperators", False, has_status=True
        ),
        ResourceKind("Infrastructure", "config.openshift.io/v1", "infrastructures", False),
        ResourceKind("Image", "config.openshift.io/v1", "images", False, has_status=True),
    )
}


def _decode(response: Any) -> dict[str, Any]:
    """Decode a ``_preload_content=False`` response into a wire-format dict."""
    data = response.data
    if isinstance(data, bytes):
        data = data.decode("utf-8")
    return json.loads(data) if data else {}


def _delete_options(grace_period_seconds: int, propagation_policy: str) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "DeleteOptions",
        "gracePeriodSeconds": grace_period_seconds,
        "propagationPolicy": propagation_policy,
    }


class ResourceClient:
    """Authoritative CRUD for one kind, speaking plain wire-format dicts.

    Every call goes to the API server; nothing here is cached.  Writes raise
    ``kubernetes.client.ApiException`` unchanged so callers can classify
    conflicts (409) and missing objects (404) themselves.
    """

    def __init__(self, kind: ResourceKind, api: Any) -> None:
        self.kind = kind
        self.api = api

    def _namespace(self, namespace: str | None) -> str:
        if self.kind.namespaced and not namespace:
            raise ValueError(f"{self.kind.kind} is namespaced; a namespace is required")
        return namespace or ""

    @staticmethod
    def _identity(body: dict[str, Any]) -> tuple[str, str | None]:
        metadata = body.get("metadata") or {}
        return metadata["name"], metadata.get("namespace")

    def get(self, name: str, namespace: str | None = None) -> dict[str, Any]:
        raise NotImplementedError

    def list(
        self, namespace: str | None = None, label_selector: str | None = None
    ) -> tuple[list[dict[str, Any]], str | None]:
        raise NotImplementedError

    def create(self, body: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def update(self, body: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def update_status(self, body: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def delete(
        self,
        name: str,
        namespace: str | None = None,
        *,
        grace_period_seconds: int = 0,
        propagation_policy: str = "Foreground",
    ) -> None:
        raise NotImplementedError

    def watch_source(self, namespace: str | None = None) -> WatchSource:
        """Return the list function and kwargs ``kubernetes.watch.Watch.stream`` expects."""
        raise NotImplementedError


class TypedResourceClient(ResourceClient):
    """Client for built-in kinds backed by a generated ``*Api`` class."""

    def _method(self, verb: str, status: bool = False) -> Callable[..., Any]:
        scope = "namespaced_" if self.kind.namespaced else ""
        name = f"{verb}_{scope}{self.kind.suffix}"
        if status:
            name += "_status"
        return getattr(self.api, name)

    def _scoped(self, namespace: str | None, **kwargs: Any) -> dict[str, Any]:
        if self.kind.namespaced:
            kwargs["namespace"] = self._namespace(namespace)
        return kwargs

    def get(self, name: str, namespace: str | None = None) -> dict[str, Any]:
        response = self._method("read")(
            **self._scoped(namespace, name=name), _preload_content=False
        )
        return _decode(response)

    def list(
        self, namespace: str | None = None, label_selector: str | None = None
    ) -> tuple[list[dict[str, Any]], str | None]:
        kwargs = self._scoped(namespace)
        if label_selector:
            kwargs["label_selector"] = label_selector
        payload = _decode(self._method("list")(**kwargs, _preload_content=False))
        items = payload.get("items") or []
        for item in items:
            item.setdefault("apiVersion", self.kind.api_version)
            item.setdefault("kind", self.kind.kind)
        return items, (payload.get("metadata") or {}).get("resourceVersion")

    def create(self, body: dict[str, Any]) -> dict[str, Any]:
        _, namespace = self._identity(body)
        response = self._method("create")(
            **self._scoped(namespace, body=body), _preload_content=False
        )
        return _decode(response)

    def update(self, body: dict[str, Any]) -> dict[str, Any]:
        name, namespace = self._identity(body)
        response = self._method("replace")(
            **self._scoped(namespace, name=name, body=body), _preload_content=False
        )
        return _decode(response)

    def update_status(self, body: dict[str, Any]) -> dict[str, Any]:
        name, namespace = self._identity(body)
        response = self._method("replace", status=True)(
            **self._scoped(namespace, name=name, body=body), _preload_content=False
        )
        return _decode(response)

    def delete(
        self,
        name: str,
        namespace: str | None = None,
        *,
        grace_period_seconds: int = 0,
        propagation_policy: str = "Foreground",
    ) -> None:
        self._method("delete")(
            **self._scoped(
                namespace,
                name=name,
                body=_delete_options(grace_period_seconds, propagation_policy),
            ),
            _preload_content=False,
        )

    def watch_source(self, namespace: str | None = None) -> WatchSource:
        return self._method("list"), self._scoped(namespace)


class CustomResourceClient(ResourceClient):
    """Client for aggregated and CRD kinds via ``CustomObjectsApi``."""

    def _call(self, verb: str, namespace: str | None, **kwargs: Any) -> Any:
        if self.kind.namespaced:
            method = getattr(self.api, f"{verb}_namespaced_custom_object")
            kwargs["namespace"] = self._namespace(namespace)
        else:
            method = getattr(self.api, f"{verb}_cluster_custom_object")
        return method(
            group=self.kind.group, version=self.kind.version, plural=self.kind.plural, **kwargs
        )

    def get(self, name: str, namespace: str | None = None) -> dict[str, Any]:
        return self._call("get", namespace, name=name)

    def list(
        self, namespace: str | None = None, label_selector: str | None = None
    ) -> tuple[list[dict[str, Any]], str | None]:
        kwargs: dict[str, Any] = {}
        if label_selector:
            kwargs["label_selector"] = label_selector
        payload = self._call("list", namespace, **kwargs)
        items = payload.get("items") or []
        return items, (payload.get("metadata") or {}).get("resourceVersion")

    def create(self, body: dict[str, Any]) -> dict[str, Any]:
        _, namespace = self._identity(body)
        return self._call("create", namespace, body=body)

    def update(self, body: dict[str, Any]) -> dict[str, Any]:
        name, namespace = self._identity(body)
        return self._call("replace", namespace, name=name, body=body)

    def update_status(self, body: dict[str, Any]) -> dict[str, Any]:
        name, namespace = self._identity(body)
        if self.kind.namespaced:
            method = self.api.replace_namespaced_custom_object_status
            return method(
                group=self.kind.group,
                version=self.kind.version,
                namespace=self._namespace(namespace),
                plural=self.kind.plural,
                name=name,
                body=body,
            )
        return self.api.replace_cluster_custom_object_status(
            group=self.kind.group,
            version=self.kind.version,
            plural=self.kind.plural,
            name=name,
            body=body,
        )

    def delete(
        self,
        name: str,
        namespace: str | None = None,
        *,
        grace_period_seconds: int = 0,
        propagation_policy: str = "Foreground",
    ) -> None:
        self._call(
            "delete",
            namespace,
            name=name,
            body=_delete_options(grace_period_seconds, propagation_policy),
        )

    def watch_source(self, namespace: str | None = None) -> WatchSource:
        if self.kind.namespaced:
            return self.api.list_namespaced_custom_object, {
                "group": self.kind.group,
                "version": self.kind.version,
                "namespace": self._namespace(namespace),
                "plural": self.kind.plural,
            }
        return self.api.list_cluster_custom_object, {
            "group": self.kind.group,
            "version": self.kind.version,
            "plural": self.kind.plural,
        }


class ClientSet:
    """Resolves a :class:`ResourceClient` for any kind in :data:`KINDS`.

    Typed API objects are created lazily and shared, so every client talks
    through the same ``ApiClient`` connection pool.
    """

    def __init__(self, api_client: client.ApiClient | None = None) -> None:
        self.api_client = api_client or client.ApiClient()
        self._apis: dict[str, Any] = {}
        self._clients: dict[str, ResourceClient] = {}
        self._lock = threading.Lock()

    def _api(self, name: str) -> Any:
        api = self._apis.get(name)
        if api is None:
            api = getattr(client, name)(self.api_client)
            self._apis[name] = api
        return api

    def for_kind(self, kind: str) -> ResourceClient:
        with self._lock:
            resource_client = self._clients.get(kind)
            if resource_client is not None:
                return resource_client
            try:
                descriptor = KINDS[kind]
            except KeyError:
                raise ValueError(f"unsupported kind: {kind}") from None
            if descriptor.api is None:
                resource_client = CustomResourceClient(descriptor, self._api("CustomObjectsApi"))
            else:
                resource_client = TypedResourceClient(descriptor, self._api(descriptor.api))
            self._clients[kind] = resource_client
            return resource_client
