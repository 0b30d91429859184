from __future__ import annotations

import base64
import copy
import os
from collections.abc import Callable, Iterable
from typing import Any

from registry_operator.src import resources
from registry_operator.src.clusterconfig import ClusterContext
from registry_operator.src.errors import (
    DependencyNotFoundError,
    PermanentError,
    StorageNotConfiguredError,
)
from registry_operator.src.objects import (
    ClusterRoleBindingObject,
    ClusterRoleObject,
    ConfigMapObject,
    CronJobObject,
    DaemonSetObject,
    DeploymentObject,
    InjectedConfigMapObject,
    ManagedObject,
    RouteObject,
    SecretObject,
    ServiceAccountObject,
    ServiceObject,
    hash_data,
    managed_object_for,
    reference,
)
from registry_operator.src.storage import (
    PRIVATE_CONFIGURATION_SECRET,
    configured_backends,
    new_driver,
    platform_storage,
)

Lookup = Callable[[str], "dict[str, Any] | None"]

REASON_DUPLICATE_ROUTE = "duplicate route name"
REASON_NEGATIVE_REPLICAS = "negative replica count"
REASON_INVALID_PRUNER = "invalid pruner configuration"


def _no_lookup(name: str) -> dict[str, Any] | None:
    return None


def random_http_secret() -> str:
    return os.urandom(64).hex()


def verify_registry(resource: dict[str, Any]) -> None:
    """Reject specs no amount of retrying can apply."""
    spec = resource.get("spec") or {}
    replicas = spec.get("replicas")
    if replicas is not None and int(replicas) < 0:
        raise PermanentError(
            REASON_NEGATIVE_REPLICAS, "replicas must be greater than or equal to 0"
        )

    names: set[str] = set()
    if spec.get("defaultRoute"):
        names.add(resources.DEFAULT_ROUTE)
    for route in spec.get("routes") or []:
        name = route.get("name", "")
        if name in names:
            raise PermanentError(
                REASON_DUPLICATE_ROUTE,
                f"duplication of names has been detected in the additional routes: {name!r}",
            )
        names.add(name)


def _object_identity(obj: dict[str, Any]) -> tuple[str, str, str]:
    metadata = obj.get("metadata") or {}
    return obj.get("kind", ""), metadata.get("namespace") or "", metadata.get("name", "")


def stale_objects(
    desired: Iterable[ManagedObject], existing: Iterable[dict[str, Any]]
) -> list[ManagedObject]:
    """Return live objects from ``existing`` that are no longer desired.

    Callers pass only objects the resource owns, so anything missing from
    ``desired`` was produced by an earlier spec and is safe to delete.
    """
    wanted = {obj.identity for obj in desired}
    return [
        managed_object_for(item)
        for item in sorted(existing, key=_object_identity)
        if _object_identity(item) not in wanted
    ]


def owned_by(obj: dict[str, Any], owner: dict[str, Any]) -> bool:
    uid = (owner.get("metadata") or {}).get("uid")
    if not uid:
        return False
    refs = (obj.get("metadata") or {}).get("ownerReferences") or []
    return any(ref.get("uid") == uid for ref in refs)


def _secret_text(secret: dict[str, Any], key: str) -> str:
    raw = (secret.get("data") or {}).get(key)
    if not raw:
        return ""
    return base64.b64decode(raw).decode("utf-8")


class RegistryGenerator:
    """Turns a private copy of the registry Config into its desired objects.

    :meth:`generate` validates the resource spec, settles on exactly one storage
    backend, fills defaults into the copy it was given (storage location,
    HTTP secret, observed storage in status), and returns the objects in the
    order they must be applied: RBAC and the service account before the
    Deployment that runs as it, the Deployment before the Routes exposing it.

    Cached ConfigMaps and Secrets are read through ``config_maps`` and
    ``secrets`` only to fold their contents into checksums and route TLS.
    """

    def __init__(
        self,
        config_maps: Lookup = _no_lookup,
        secrets: Lookup = _no_lookup,
        token_source: Callable[[], str] = random_http_secret,
    ) -> None:
        self.config_maps = config_maps
        self.secrets = secrets
        self.token_source = token_source

    def complete_storage(self, resource: dict[str, Any], context: ClusterContext) -> Any:
        spec = resource.setdefault("spec", {})
        storage = spec.setdefault("storage", {})
        if not configured_backends(storage):
            platform_default, _ = platform_storage(context.platform)
            if not platform_default:
                raise StorageNotConfiguredError()
            storage.update(platform_default)
        driver = new_driver(storage)
        generated = driver.complete_configuration(context)

        status = resource.setdefault("status", {})
        status["storage"] = copy.deepcopy(storage)
        if generated:
            status["storageManaged"] = True
        return driver

    def _apply_defaults(self, resource: dict[str, Any], driver: Any) -> None:
        spec = resource["spec"]
        if not spec.get("httpSecret"):
            spec["httpSecret"] = self.token_source()
        if not spec.get("rolloutStrategy"):
            spec["rolloutStrategy"] = driver.rollout_strategy
        spec.setdefault("replicas", driver.default_replicas)

    def _dependencies_checksum(self, secret: dict[str, Any]) -> str:
        data: dict[str, Any] = {PRIVATE_CONFIGURATION_SECRET: secret.get("data")}
        for name in (resources.TRUSTED_CA_CONFIGMAP, resources.CERTIFICATES_CONFIGMAP):
            config_map = self.config_maps(name)
            data[name] = (config_map or {}).get("data")
        tls = self.secrets(resources.TLS_SECRET)
        data[resources.TLS_SECRET] = (tls or {}).get("data")
        return hash_data(data)

    def _routes(self, resource: dict[str, Any], namespace: str) -> list[ManagedObject]:
        spec = resource["spec"]
        routes: list[ManagedObject] = []
        if spec.get("defaultRoute"):
            routes.append(
                RouteObject(resources.registry_route(resource, namespace, resources.DEFAULT_ROUTE))
            )
        for route in spec.get("routes") or []:
            certificate = None
            secret_name = route.get("secretName")
            if secret_name:
                secret = self.secrets(secret_name)
                if secret is None:
                    raise DependencyNotFoundError(
                        f"secret {namespace}/{secret_name} for route {route['name']} not found"
                    )
                certificate = {
                    "certificate": _secret_text(secret, "tls.crt"),
                    "key": _secret_text(secret, "tls.key"),
                    "caCertificate": _secret_text(secret, "ca.crt"),
                }
            routes.append(
                RouteObject(
                    resources.registry_route(
                        resource, namespace, route["name"], route.get("hostname", ""), certificate
                    )
                )
            )
        return routes

    def generate(self, resource: dict[str, Any], context: ClusterContext) -> list[ManagedObject]:
        verify_registry(resource)
        driver = self.complete_storage(resource, context)
        self._apply_defaults(resource, driver)

        namespace = context.namespace
        secret = resources.private_configuration_secret(
            resource, namespace, resource["spec"]["httpSecret"]
        )
        objects: list[ManagedObject] = [
            ClusterRoleObject(resources.registry_cluster_role(resource)),
            ClusterRoleBindingObject(resources.registry_cluster_role_binding(resource, namespace)),
            ServiceAccountObject(
                resources.service_account(resources.SERVICE_ACCOUNT, resource, namespace)
            ),
            InjectedConfigMapObject(resources.service_ca_config_map(resource, namespace)),
            InjectedConfigMapObject(resources.trusted_ca_config_map(resource, namespace)),
            SecretObject(secret),
            ServiceObject(resources.registry_service(resource, namespace)),
            DeploymentObject(
                resources.registry_deployment(
                    resource, context, driver, self._dependencies_checksum(secret)
                )
            ),
        ]
        objects.extend(self._routes(resource, namespace))
        return objects

    def removal_targets(
        self,
        resource: dict[str, Any],
        namespace: str,
        live_routes: Iterable[dict[str, Any]] = (),
    ) -> list[ManagedObject]:
        """Everything :meth:`generate` could have produced, newest first.

        Needs no storage driver, so teardown still works when the storage
        configuration is what is broken.
        """
        spec = resource.get("spec") or {}
        route_names = {resources.DEFAULT_ROUTE}
        route_names.update(r.get("name", "") for r in spec.get("routes") or [])
        route_names.update(
            (r.get("metadata") or {}).get("name", "")
            for r in live_routes
            if owned_by(r, resource)
        )
        targets = [reference("Route", name, namespace) for name in sorted(route_names) if name]
        targets += [
            reference("Deployment", resources.REGISTRY_NAME, namespace),
            reference("Service", resources.REGISTRY_NAME, namespace),
            reference("Secret", PRIVATE_CONFIGURATION_SECRET, namespace),
            reference("ConfigMap", resources.TRUSTED_CA_CONFIGMAP, namespace),
            reference("ConfigMap", resources.SERVICE_CA_CONFIGMAP, namespace),
            reference("ServiceAccount", resources.SERVICE_ACCOUNT, namespace),
            reference("ClusterRoleBinding", resources.CLUSTER_ROLE_BINDING),
            reference("ClusterRole", resources.CLUSTER_ROLE),
        ]
        return targets


def verify_pruner(pruner: dict[str, Any]) -> None:
    spec = pruner.get("spec") or {}
    for field in ("keepTagRevisions", "successfulJobsHistoryLimit", "failedJobsHistoryLimit"):
        value = spec.get(field)
        if value is not None and int(value) < 0:
            raise PermanentError(REASON_INVALID_PRUNER, f"{field} must be greater than or equal to 0")


class PrunerGenerator:
    """Desired objects for the image pruner CronJob and its RBAC."""

    def generate(
        self, pruner: dict[str, Any], context: ClusterContext, registry_managed: bool = True
    ) -> list[ManagedObject]:
        verify_pruner(pruner)
        namespace = context.namespace
        return [
            ServiceAccountObject(
                resources.service_account(resources.PRUNER_SERVICE_ACCOUNT, pruner, namespace)
            ),
            ClusterRoleObject(resources.pruner_cluster_role(pruner)),
            ClusterRoleBindingObject(resources.pruner_cluster_role_binding(pruner, namespace)),
            CronJobObject(resources.pruner_cron_job(pruner, context, registry_managed)),
        ]


def certificates_objects(
    owner: dict[str, Any], namespace: str, data: dict[str, str]
) -> list[ManagedObject]:
    return [ConfigMapObject(resources.certificates_config_map(owner, namespace, data))]


def node_ca_objects(namespace: str, image: str) -> list[ManagedObject]:
    return [
        ServiceAccountObject(resources.node_ca_service_account(namespace)),
        DaemonSetObject(resources.node_ca_daemon_set(namespace, image)),
    ]
