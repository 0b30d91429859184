from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from registry_operator.src.applier import Applier
from registry_operator.src.bootstrap import Bootstrapper, default_registry_config
from registry_operator.src.client import ClientSet
from registry_operator.src.config import OperatorConfig
from registry_operator.src.finalizer import FinalizerCoordinator
from registry_operator.src.generator import RegistryGenerator, owned_by, stale_objects
from registry_operator.src.notifier import InformerFactory
from registry_operator.src.reconciler import INFRASTRUCTURE_NAME, ResourceReconciler
from registry_operator.src.resources import REGISTRY_NAME, TRUSTED_CA_CONFIGMAP, TRUSTED_CA_KEY
from registry_operator.src.status import (
    MANAGED,
    ConditionState,
    registry_conditions,
    utc_now_rfc3339,
)

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegistryObservation:
    deployment: dict[str, Any] | None
    trust_bundle_missing_for: float | None = None


class ImageRegistryController(ResourceReconciler):
    """Reconciles the registry ``Config`` into its Deployment and friends.

    Watches the Config itself plus every namespaced kind the registry is
    built from, so an edited or deleted subordinate object is put back on the
    next pass.  Routes that the Config no longer asks for, but that it still
    owns, are deleted after a successful apply.
    """

    kind = "Config"

    def __init__(
        self,
        *,
        config: OperatorConfig,
        clients: ClientSet,
        informers: InformerFactory,
        applier: Applier,
        generator: RegistryGenerator | None = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], str] = utc_now_rfc3339,
        logger: logging.Logger | None = None,
    ) -> None:
        namespace = config.namespace
        client = clients.for_kind("Config")
        infrastructures = informers.informer("Infrastructure")
        super().__init__(
            "imageregistry",
            config=config,
            client=client,
            informer=informers.informer("Config"),
            applier=applier,
            bootstrapper=Bootstrapper(
                client,
                config.resource_name,
                lambda: default_registry_config(infrastructures.get(INFRASTRUCTURE_NAME), config),
            ),
            infrastructures=infrastructures,
            now=now,
            logger=logger or LOGGER,
        )
        self.finalizer = FinalizerCoordinator(
            client,
            config.finalizer,
            poll_interval=float(config.finalizer_poll_seconds),
            max_wait=config.finalizer_max_wait,
            stop_event=self.stop_event,
        )
        self.namespace = namespace
        self.deployments = informers.informer("Deployment", namespace)
        self.routes = informers.informer("Route", namespace)
        self.config_maps = informers.informer("ConfigMap", namespace)
        self.secrets = informers.informer("Secret", namespace)
        self.services = informers.informer("Service", namespace)
        for informer in (self.deployments, self.routes, self.config_maps, self.secrets, self.services):
            self.watch(informer)

        self.generator = generator or RegistryGenerator(
            config_maps=lambda name: self.config_maps.get(name, namespace),
            secrets=lambda name: self.secrets.get(name, namespace),
        )
        self.clock = clock
        self._trust_bundle_missing_since: float | None = None

    def apply(self, resource: dict[str, Any]) -> None:
        desired = self.generator.generate(resource, self.cluster_context())
        result = self.applier.apply_all(desired)
        if result.error is not None:
            raise result.error
        owned_routes = [r for r in self.routes.list(self.namespace) if owned_by(r, resource)]
        self.applier.delete_all(stale_objects(desired, owned_routes))

    def teardown(self, resource: dict[str, Any]) -> None:
        targets = self.generator.removal_targets(
            resource, self.namespace, self.routes.list(self.namespace)
        )
        removed = self.applier.delete_all(targets)
        if removed:
            self.logger.info("Removed %d registry objects", len(removed))

    def _trust_bundle_missing_for(self) -> float | None:
        config_map = self.config_maps.get(TRUSTED_CA_CONFIGMAP, self.namespace)
        if config_map is not None and (config_map.get("data") or {}).get(TRUSTED_CA_KEY):
            self._trust_bundle_missing_since = None
            return None
        now = self.clock()
        if self._trust_bundle_missing_since is None:
            self._trust_bundle_missing_since = now
        return now - self._trust_bundle_missing_since

    def observe(self, resource: dict[str, Any]) -> RegistryObservation:
        deployment = self.deployments.get(REGISTRY_NAME, self.namespace)
        state = (resource.get("spec") or {}).get("managementState") or MANAGED
        if state != MANAGED:
            self._trust_bundle_missing_since = None
            return RegistryObservation(deployment)

        missing_for = self._trust_bundle_missing_for()
        grace = float(self.config.trust_bundle_grace_seconds)
        if missing_for is not None and missing_for <= grace:
            # No event fires when the grace period runs out.
            self.queue.add_after(self.queue_key, grace - missing_for + 1)
        return RegistryObservation(deployment, missing_for)

    def condition_states(
        self,
        resource: dict[str, Any],
        observed: RegistryObservation,
        apply_error: BaseException | None,
    ) -> dict[str, ConditionState]:
        return registry_conditions(
            (resource.get("spec") or {}).get("managementState") or MANAGED,
            observed.deployment,
            apply_error,
            trust_bundle_missing_for=observed.trust_bundle_missing_for,
            trust_bundle_grace=float(self.config.trust_bundle_grace_seconds),
        )

    def sync_extra_status(self, resource: dict[str, Any], observed: RegistryObservation) -> None:
        deployment_status = (observed.deployment or {}).get("status") or {}
        resource["status"]["readyReplicas"] = int(deployment_status.get("readyReplicas") or 0)
