from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from registry_operator.src.applier import Applier
from registry_operator.src.bootstrap import Bootstrapper, default_image_pruner
from registry_operator.src.client import ClientSet
from registry_operator.src.config import OperatorConfig
from registry_operator.src.generator import PrunerGenerator
from registry_operator.src.notifier import InformerFactory
from registry_operator.src.objects import reference
from registry_operator.src.reconciler import ResourceReconciler
from registry_operator.src.resources import (
    PRUNER_CLUSTER_ROLE,
    PRUNER_CLUSTER_ROLE_BINDING,
    PRUNER_JOB_LABEL,
    PRUNER_NAME,
    PRUNER_SERVICE_ACCOUNT,
)
from registry_operator.src.status import MANAGED, ConditionState, pruner_conditions, utc_now_rfc3339

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class PrunerObservation:
    cronjob: dict[str, Any] | None
    jobs: list[dict[str, Any]] = field(default_factory=list)


class ImagePrunerController(ResourceReconciler):
    """Keeps the image pruner CronJob in line with the ``ImagePruner`` resource.

    Registry pruning is only enabled while the registry Config is Managed,
    so Config changes requeue this controller too.
    """

    kind = "ImagePruner"

    def __init__(
        self,
        *,
        config: OperatorConfig,
        clients: ClientSet,
        informers: InformerFactory,
        applier: Applier,
        now: Callable[[], str] = utc_now_rfc3339,
        logger: logging.Logger | None = None,
    ) -> None:
        client = clients.for_kind("ImagePruner")
        super().__init__(
            "imagepruner",
            config=config,
            client=client,
            informer=informers.informer("ImagePruner"),
            applier=applier,
            bootstrapper=Bootstrapper(
                client, config.resource_name, lambda: default_image_pruner(config)
            ),
            infrastructures=informers.informer("Infrastructure"),
            now=now,
            logger=logger or LOGGER,
        )
        self.namespace = config.namespace
        self.registry_configs = informers.informer("Config")
        self.cronjobs = informers.informer("CronJob", self.namespace)
        self.jobs = informers.informer("Job", self.namespace)
        self.watch(self.registry_configs, self._is_primary)
        self.watch(self.cronjobs)
        self.watch(self.jobs, self._is_pruner_job)
        self.generator = PrunerGenerator()

    @staticmethod
    def _is_pruner_job(obj: dict[str, Any]) -> bool:
        labels = (obj.get("metadata") or {}).get("labels") or {}
        return labels.get(PRUNER_JOB_LABEL) == PRUNER_NAME

    def _registry_managed(self) -> bool:
        registry = self.registry_configs.get(self.resource_name)
        if registry is None:
            return False
        return ((registry.get("spec") or {}).get("managementState") or MANAGED) == MANAGED

    def apply(self, resource: dict[str, Any]) -> None:
        desired = self.generator.generate(
            resource, self.cluster_context(), registry_managed=self._registry_managed()
        )
        result = self.applier.apply_all(desired)
        if result.error is not None:
            raise result.error

    def teardown(self, resource: dict[str, Any]) -> None:
        self.applier.delete_all(
            [
                reference("CronJob", PRUNER_NAME, self.namespace),
                reference("ClusterRoleBinding", PRUNER_CLUSTER_ROLE_BINDING),
                reference("ClusterRole", PRUNER_CLUSTER_ROLE),
                reference("ServiceAccount", PRUNER_SERVICE_ACCOUNT, self.namespace),
            ]
        )

    def observe(self, resource: dict[str, Any]) -> PrunerObservation:
        return PrunerObservation(
            self.cronjobs.get(PRUNER_NAME, self.namespace),
            self.jobs.list(self.namespace, labels={PRUNER_JOB_LABEL: PRUNER_NAME}),
        )

    def condition_states(
        self,
        resource: dict[str, Any],
        observed: PrunerObservation,
        apply_error: BaseException | None,
    ) -> dict[str, ConditionState]:
        suspended = bool((resource.get("spec") or {}).get("suspend", False))
        return pruner_conditions(observed.cronjob, observed.jobs, suspended, apply_error)
