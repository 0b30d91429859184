from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from registry_operator.src.applier import Applier
from registry_operator.src.client import KINDS
from registry_operator.src.config import OperatorConfig
from registry_operator.src.controller import Controller
from registry_operator.src.notifier import InformerFactory
from registry_operator.src.objects import ClusterOperatorObject
from registry_operator.src.resources import (
    CLUSTER_ROLE,
    CLUSTER_ROLE_BINDING,
    REGISTRY_NAME,
    VERSION_ANNOTATION,
)
from registry_operator.src.status import (
    MANAGED,
    cluster_operator_conditions,
    deployment_available_and_updated,
    utc_now_rfc3339,
)

LOGGER = logging.getLogger(__name__)

CLUSTER_OPERATOR_NAME = "image-registry"


def related_objects(config: OperatorConfig) -> list[dict[str, str]]:
    return [
        {"group": "imageregistry.operator.openshift.io", "resource": "configs", "name": config.resource_name},
        {"group": "imageregistry.operator.openshift.io", "resource": "imagepruners", "name": config.resource_name},
        {"group": "rbac.authorization.k8s.io", "resource": "clusterroles", "name": CLUSTER_ROLE},
        {"group": "rbac.authorization.k8s.io", "resource": "clusterrolebindings", "name": CLUSTER_ROLE_BINDING},
        {"group": "", "resource": "namespaces", "name": config.namespace},
    ]


class ClusterOperatorController(Controller):
    """Publishes the registry's health on the ``image-registry`` ClusterOperator.

    Conditions are the union of the registry Config's conditions and the
    pruner's, the latter prefixed ``ImagePruner``.  The operator version is
    only reported once the registry Deployment has finished rolling out the
    release it was stamped with.
    """

    def __init__(
        self,
        *,
        config: OperatorConfig,
        informers: InformerFactory,
        applier: Applier,
        now: Callable[[], str] = utc_now_rfc3339,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(
            "clusteroperator",
            f"ClusterOperator/{CLUSTER_OPERATOR_NAME}",
            base_delay=config.queue_base_delay_ms / 1000.0,
            max_delay=float(config.queue_max_delay_seconds),
            logger=logger or LOGGER,
        )
        self.config = config
        self.applier = applier
        self.now = now
        self.registry_configs = informers.informer("Config")
        self.pruners = informers.informer("ImagePruner")
        self.cluster_operators = informers.informer("ClusterOperator")
        self.deployments = informers.informer("Deployment", config.namespace)
        self.watch(self.registry_configs)
        self.watch(self.pruners)
        self.watch(self.cluster_operators, self._is_ours)
        self.watch(self.deployments, self._is_registry_deployment)

    @staticmethod
    def _is_ours(obj: dict[str, Any]) -> bool:
        return (obj.get("metadata") or {}).get("name") == CLUSTER_OPERATOR_NAME

    @staticmethod
    def _is_registry_deployment(obj: dict[str, Any]) -> bool:
        return (obj.get("metadata") or {}).get("name") == REGISTRY_NAME

    def operator_version(self, registry: dict[str, Any]) -> str | None:
        """Return the version to report, or None to leave it unchanged."""
        version = self.config.release_version
        if ((registry.get("spec") or {}).get("managementState") or MANAGED) == MANAGED:
            deployment = self.deployments.get(REGISTRY_NAME, self.config.namespace)
            if deployment is None or not deployment_available_and_updated(deployment):
                return None
            annotations = (deployment.get("metadata") or {}).get("annotations") or {}
            version = annotations.get(VERSION_ANNOTATION, "")
        return version or None

    def desired(self, registry: dict[str, Any], pruner: dict[str, Any] | None) -> ClusterOperatorObject:
        status: dict[str, Any] = {
            "conditions": cluster_operator_conditions(
                (registry.get("status") or {}).get("conditions"),
                ((pruner or {}).get("status") or {}).get("conditions"),
                self.now(),
            ),
            "relatedObjects": related_objects(self.config),
        }
        version = self.operator_version(registry)
        if version is not None:
            status["versions"] = [{"name": "operator", "version": version}]
        return ClusterOperatorObject(
            {
                "apiVersion": KINDS["ClusterOperator"].api_version,
                "kind": "ClusterOperator",
                "metadata": {"name": CLUSTER_OPERATOR_NAME},
                "status": status,
            }
        )

    def sync(self) -> None:
        registry = self.registry_configs.get(self.config.resource_name)
        if registry is None:
            # Bootstrap of the Config requeues us through the watch.
            self.logger.debug("No registry Config yet, nothing to report")
            return
        pruner = self.pruners.get(self.config.resource_name)
        self.applier.apply(self.desired(registry, pruner))
