from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from registry_operator.src.applier import Applier
from registry_operator.src.client import ClientSet
from registry_operator.src.config import OperatorConfig
from registry_operator.src.controller import Controller
from registry_operator.src.generator import certificates_objects
from registry_operator.src.notifier import InformerFactory
from registry_operator.src.resources import (
    CERTIFICATES_CONFIGMAP,
    CONTAINER_PORT,
    REGISTRY_NAME,
    SERVICE_CA_CONFIGMAP,
    SERVICE_CA_KEY,
)
from registry_operator.src.status import (
    CONDITION_FALSE,
    CONDITION_TRUE,
    REASON_AS_EXPECTED,
    ConditionState,
    report_conditions,
    utc_now_rfc3339,
)

LOGGER = logging.getLogger(__name__)

CONDITION_TYPE = "ImageRegistryCertificatesControllerDegraded"


def registry_hostnames(namespace: str) -> list[str]:
    service = f"{REGISTRY_NAME}.{namespace}.svc"
    return [f"{service}..{CONTAINER_PORT}", f"{service}.cluster.local..{CONTAINER_PORT}"]


class CertificatesController(Controller):
    """Maintains ``image-registry-certificates`` from the injected service CA.

    Nodes trust the internal registry through this ConfigMap, one key per
    registry hostname.  The outcome of each pass is reported on the registry
    Config as the ``ImageRegistryCertificatesControllerDegraded`` condition.
    """

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
        super().__init__(
            "certificates",
            f"ConfigMap/{CERTIFICATES_CONFIGMAP}",
            base_delay=config.queue_base_delay_ms / 1000.0,
            max_delay=float(config.queue_max_delay_seconds),
            logger=logger or LOGGER,
        )
        self.config = config
        self.namespace = config.namespace
        self.registry_client = clients.for_kind("Config")
        self.applier = applier
        self.now = now
        self.registry_configs = informers.informer("Config")
        self.config_maps = informers.informer("ConfigMap", self.namespace)
        self.watch(self.registry_configs)
        self.watch(self.config_maps, self._is_input)

    @staticmethod
    def _is_input(obj: dict[str, Any]) -> bool:
        name = (obj.get("metadata") or {}).get("name")
        return name in (SERVICE_CA_CONFIGMAP, CERTIFICATES_CONFIGMAP)

    def desired_data(self) -> dict[str, str]:
        service_ca = self.config_maps.get(SERVICE_CA_CONFIGMAP, self.namespace)
        bundle = ((service_ca or {}).get("data") or {}).get(SERVICE_CA_KEY)
        if not bundle:
            return {}
        return {host: bundle for host in registry_hostnames(self.namespace)}

    def sync(self) -> None:
        registry = self.registry_configs.get(self.config.resource_name)
        if registry is None or (registry.get("metadata") or {}).get("deletionTimestamp"):
            return

        result = self.applier.apply_all(
            certificates_objects(registry, self.namespace, self.desired_data())
        )
        self.report(registry, result.error)
        if result.error is not None:
            raise result.error

    def report(self, registry: dict[str, Any], error: BaseException | None) -> None:
        if error is None:
            state = ConditionState(CONDITION_FALSE, REASON_AS_EXPECTED)
        else:
            state = ConditionState(CONDITION_TRUE, "Error", str(error))
        report_conditions(
            self.registry_client,
            self.config.resource_name,
            registry,
            {CONDITION_TYPE: state},
            self.now,
            operation="certificates condition",
        )
