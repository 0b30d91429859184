from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from registry_operator.src.applier import Applier
from registry_operator.src.client import ClientSet
from registry_operator.src.config import OperatorConfig
from registry_operator.src.controller import Controller
from registry_operator.src.generator import node_ca_objects
from registry_operator.src.notifier import InformerFactory
from registry_operator.src.resources import NODE_CA_NAME
from registry_operator.src.status import (
    ConditionState,
    node_ca_conditions,
    report_conditions,
    utc_now_rfc3339,
)

LOGGER = logging.getLogger(__name__)


class NodeCADaemonController(Controller):
    """Runs the ``node-ca`` DaemonSet that installs registry CAs on every node.

    The DaemonSet mounts ``image-registry-certificates`` and is kept in place
    whatever the registry's management state.  Its rollout is reported on the
    registry Config as the ``NodeCADaemon*`` conditions.
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
            "nodecadaemon",
            f"DaemonSet/{NODE_CA_NAME}",
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
        self.daemon_sets = informers.informer("DaemonSet", self.namespace)
        self.watch(self.registry_configs)
        self.watch(self.daemon_sets, self._is_node_ca)

    @staticmethod
    def _is_node_ca(obj: dict[str, Any]) -> bool:
        return (obj.get("metadata") or {}).get("name") == NODE_CA_NAME

    def sync(self) -> None:
        result = self.applier.apply_all(node_ca_objects(self.namespace, self.config.image))
        daemon_set = self.daemon_sets.get(NODE_CA_NAME, self.namespace)
        self.report(node_ca_conditions(daemon_set, result.error))
        if result.error is not None:
            raise result.error

    def report(self, states: dict[str, ConditionState]) -> None:
        registry = self.registry_configs.get(self.config.resource_name)
        if registry is None or (registry.get("metadata") or {}).get("deletionTimestamp"):
            self.logger.debug("No registry Config to report node-ca status on")
            return
        report_conditions(
            self.registry_client,
            self.config.resource_name,
            registry,
            states,
            self.now,
            operation="node-ca conditions",
        )
