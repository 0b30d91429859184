from __future__ import annotations

import copy
import json
from hashlib import sha256
from typing import Any, ClassVar

from registry_operator.src.client import ResourceClient

_METADATA_FIELDS = ("labels", "annotations")
_SKIPPED_TOP_LEVEL = frozenset({"apiVersion", "kind", "metadata", "status"})


def hash_data(data: Any) -> str:
    """Return a stable ``sha256:`` digest of JSON-serialisable ``data``.

    Keys are sorted and separators fixed so equal structures always hash
    equal regardless of dict insertion order.
    """
    payload = json.dumps(data, sort_keys=True, separators=(",", ":"))
    return "sha256:" + sha256(payload.encode("utf-8")).hexdigest()


class ManagedObject:
    """A desired subordinate object plus the rules for applying it.

    Subclasses form a closed set, one per kind the operator manages.  Each
    decides which fields of a live object it owns (:meth:`_merge_fields`) so
    fields assigned by the cluster, or written by other controllers, survive
    an update.  The default owns every top-level field except ``metadata`` and
    ``status``.
    """

    kind: ClassVar[str] = ""
    deletable: ClassVar[bool] = True

    def __init__(self, body: dict[str, Any]) -> None:
        if body.get("kind") != self.kind:
            raise ValueError(f"{type(self).__name__} cannot hold a {body.get('kind')!r}")
        self.body = body

    @property
    def name(self) -> str:
        return self.body["metadata"]["name"]

    @property
    def namespace(self) -> str | None:
        return self.body["metadata"].get("namespace")

    @property
    def identity(self) -> tuple[str, str, str]:
        return self.kind, self.namespace or "", self.name

    def __repr__(self) -> str:
        if self.namespace:
            return f"{self.kind} {self.namespace}/{self.name}"
        return f"{self.kind} {self.name}"

    def __eq__(self, other: object) -> bool:
        return isinstance(other, ManagedObject) and (
            type(self) is type(other) and self.body == other.body
        )

    def __hash__(self) -> int:
        return hash(self.identity)

    def checksum(self) -> str:
        return hash_data(self.body)

    def up_to_date(self, current: dict[str, Any], annotation: str, checksum: str) -> bool:
        annotations = (current.get("metadata") or {}).get("annotations") or {}
        return annotations.get(annotation) == checksum

    def create(self, client: ResourceClient, annotation: str, checksum: str) -> dict[str, Any]:
        body = copy.deepcopy(self.body)
        body["metadata"].setdefault("annotations", {})[annotation] = checksum
        return client.create(body)

    def merge_onto(self, current: dict[str, Any]) -> dict[str, Any]:
        """Return a copy of ``current`` carrying every field this object owns."""
        merged = copy.deepcopy(current)
        self._merge_metadata(merged)
        self._merge_fields(merged)
        return merged

    def _merge_metadata(self, merged: dict[str, Any]) -> None:
        desired = self.body.get("metadata") or {}
        metadata = merged.setdefault("metadata", {})
        for field in _METADATA_FIELDS:
            if desired.get(field):
                values = dict(metadata.get(field) or {})
                values.update(desired[field])
                metadata[field] = values
        if "ownerReferences" in desired:
            metadata["ownerReferences"] = copy.deepcopy(desired["ownerReferences"])

    def _merge_fields(self, merged: dict[str, Any]) -> None:
        for key, value in self.body.items():
            if key not in _SKIPPED_TOP_LEVEL:
                merged[key] = copy.deepcopy(value)

    def update(
        self, client: ResourceClient, merged: dict[str, Any], annotation: str, checksum: str
    ) -> dict[str, Any]:
        merged["metadata"].setdefault("annotations", {})[annotation] = checksum
        return client.update(merged)

    def delete(self, client: ResourceClient) -> None:
        client.delete(self.name, self.namespace, grace_period_seconds=0)


class ServiceAccountObject(ManagedObject):
    kind = "ServiceAccount"

    def _merge_fields(self, merged: dict[str, Any]) -> None:
        # secrets and imagePullSecrets belong to the token controller.
        pass


class ClusterRoleObject(ManagedObject):
    kind = "ClusterRole"


class ClusterRoleBindingObject(ManagedObject):
    kind = "ClusterRoleBinding"


class ConfigMapObject(ManagedObject):
    kind = "ConfigMap"


class InjectedConfigMapObject(ConfigMapObject):
    """A ConfigMap whose data another controller fills in.

    The operator owns only its labels and annotations, which ask the injector
    to populate it; any data already present is left alone.
    """

    def _merge_fields(self, merged: dict[str, Any]) -> None:
        pass


class SecretObject(ManagedObject):
    kind = "Secret"

    def _merge_fields(self, merged: dict[str, Any]) -> None:
        merged["data"] = copy.deepcopy(self.body.get("data") or {})
        merged.pop("stringData", None)
        # type is immutable once created.
        merged.setdefault("type", self.body.get("type", "Opaque"))


class ServiceObject(ManagedObject):
    """Service apply that keeps cluster-assigned addressing.

    Only ``selector``, ``type``, and ``ports`` are taken from the desired
    object; ``clusterIP``, ``clusterIPs``, ``ipFamilies`` and friends stay as
    the cluster assigned them.
    """

    kind = "Service"
    owned_spec_fields: ClassVar[tuple[str, ...]] = ("selector", "type", "ports")

    def _merge_fields(self, merged: dict[str, Any]) -> None:
        desired = self.body.get("spec") or {}
        spec = merged.setdefault("spec", {})
        for field in self.owned_spec_fields:
            if field in desired:
                spec[field] = copy.deepcopy(desired[field])
            else:
                spec.pop(field, None)


class DeploymentObject(ManagedObject):
    kind = "Deployment"


class DaemonSetObject(ManagedObject):
    kind = "DaemonSet"


class CronJobObject(ManagedObject):
    kind = "CronJob"


class RouteObject(ManagedObject):
    kind = "Route"

    def _merge_fields(self, merged: dict[str, Any]) -> None:
        assigned_host = (merged.get("spec") or {}).get("host")
        super()._merge_fields(merged)
        spec = merged.setdefault("spec", {})
        if not spec.get("host") and assigned_host:
            spec["host"] = assigned_host


class ClusterOperatorObject(ManagedObject):
    """The operator's ClusterOperator, written through the status subresource.

    Other components may publish their own condition types on the same
    object, so conditions are merged by type rather than replaced.  The object
    is shared cluster state and is never deleted during teardown.
    """

    kind = "ClusterOperator"
    deletable = False

    def up_to_date(self, current: dict[str, Any], annotation: str, checksum: str) -> bool:
        return self.merge_onto(current).get("status") == current.get("status")

    def _merge_fields(self, merged: dict[str, Any]) -> None:
        desired = copy.deepcopy(self.body.get("status") or {})
        status = merged.setdefault("status", {})
        existing = {c.get("type"): c for c in status.get("conditions") or []}
        for condition in desired.get("conditions", []):
            previous = existing.get(condition["type"])
            # Transition time only moves when the status flips.
            if previous is not None and previous.get("status") == condition.get("status"):
                condition["lastTransitionTime"] = previous.get("lastTransitionTime")
        ours = {c["type"] for c in desired.get("conditions", [])}
        others = [c for c in status.get("conditions") or [] if c.get("type") not in ours]
        for key, value in desired.items():
            status[key] = value
        status["conditions"] = sorted(
            others + desired.get("conditions", []), key=lambda c: c.get("type", "")
        )

    def create(self, client: ResourceClient, annotation: str, checksum: str) -> dict[str, Any]:
        created = client.create(copy.deepcopy(self.body))
        # Status is dropped on create when a status subresource exists.
        return client.update_status(self.merge_onto(created))

    def update(
        self, client: ResourceClient, merged: dict[str, Any], annotation: str, checksum: str
    ) -> dict[str, Any]:
        return client.update_status(merged)

    def delete(self, client: ResourceClient) -> None:
        raise TypeError("the ClusterOperator is shared state and is never deleted")


OBJECT_TYPES: dict[str, type[ManagedObject]] = {
    cls.kind: cls
    for cls in (
        ServiceAccountObject,
        ClusterRoleObject,
        ClusterRoleBindingObject,
        ConfigMapObject,
        SecretObject,
        ServiceObject,
        DeploymentObject,
        DaemonSetObject,
        CronJobObject,
        RouteObject,
        ClusterOperatorObject,
    )
}


def managed_object_for(body: dict[str, Any]) -> ManagedObject:
    """Wrap ``body`` in the :class:`ManagedObject` subclass for its kind."""
    kind = body.get("kind")
    try:
        cls = OBJECT_TYPES[kind]  # type: ignore[index]
    except KeyError:
        raise ValueError(f"no managed object type for kind {kind!r}") from None
    return cls(body)


def reference(kind: str, name: str, namespace: str | None = None) -> ManagedObject:
    """Return a bare object carrying only identity, enough to delete it."""
    metadata: dict[str, Any] = {"name": name}
    if namespace:
        metadata["namespace"] = namespace
    return managed_object_for({"kind": kind, "metadata": metadata})
