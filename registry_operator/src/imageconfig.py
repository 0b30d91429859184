from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from registry_operator.src.client import ClientSet
from registry_operator.src.config import OperatorConfig
from registry_operator.src.controller import Controller
from registry_operator.src.errors import is_not_found
from registry_operator.src.generator import owned_by
from registry_operator.src.notifier import InformerFactory
from registry_operator.src.resources import DEFAULT_ROUTE, REGISTRY_NAME
from registry_operator.src.retry import retry_on_conflict
from registry_operator.src.status import (
    CONDITION_FALSE,
    CONDITION_TRUE,
    REASON_AS_EXPECTED,
    ConditionState,
    report_conditions,
    utc_now_rfc3339,
)

LOGGER = logging.getLogger(__name__)

IMAGE_CONFIG_NAME = "cluster"
CONDITION_TYPE = "ImageConfigControllerDegraded"


def service_hostname(service: dict[str, Any] | None) -> str:
    """In-cluster ``host[:port]`` of the registry Service, or "" without one."""
    if service is None:
        return ""
    metadata = service.get("metadata") or {}
    ports = (service.get("spec") or {}).get("ports") or []
    hostname = f"{metadata.get('name')}.{metadata.get('namespace')}.svc"
    if ports and ports[0].get("port") != 443:
        hostname += f":{ports[0].get('port')}"
    return hostname


def route_hostnames(routes: list[dict[str, Any]], namespace: str) -> list[str]:
    """Admitted hosts of ``routes``, sorted, with the default route's host first.

    Consumers treat the first entry as the registry's public hostname.
    """
    default_prefix = f"{DEFAULT_ROUTE}-{namespace}"
    default_host = ""
    hosts: list[str] = []
    for route in routes:
        for ingress in (route.get("status") or {}).get("ingress") or []:
            host = ingress.get("host")
            if not host:
                continue
            if host.startswith(default_prefix):
                default_host = host
            else:
                hosts.append(host)
    hosts.sort()
    if default_host:
        hosts.insert(0, default_host)
    return hosts


class ImageConfigController(Controller):
    """Publishes where the registry can be reached on ``images.config.openshift.io/cluster``.

    ``internalRegistryHostname`` follows the registry Service and
    ``externalRegistryHostnames`` the admitted hosts of the Routes the
    registry Config owns.  Both empty out once the registry is removed.
    """

    def __init__(
        self,
        *,
        config: OperatorConfig,
        clients: ClientSet,
        informers: InformerFactory,
        now: Callable[[], str] = utc_now_rfc3339,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(
            "imageconfig",
            f"Image/{IMAGE_CONFIG_NAME}",
            base_delay=config.queue_base_delay_ms / 1000.0,
            max_delay=float(config.queue_max_delay_seconds),
            logger=logger or LOGGER,
        )
        self.config = config
        self.namespace = config.namespace
        self.client = clients.for_kind("Image")
        self.registry_client = clients.for_kind("Config")
        self.now = now
        self.registry_configs = informers.informer("Config")
        self.image_configs = informers.informer("Image")
        self.services = informers.informer("Service", self.namespace)
        self.routes = informers.informer("Route", self.namespace)
        self.watch(self.registry_configs)
        self.watch(self.image_configs, lambda obj: _name(obj) == IMAGE_CONFIG_NAME)
        self.watch(self.services, lambda obj: _name(obj) == REGISTRY_NAME)
        self.watch(self.routes)

    def desired_status(self, registry: dict[str, Any] | None) -> dict[str, Any]:
        routes = []
        if registry is not None:
            routes = [r for r in self.routes.list(self.namespace) if owned_by(r, registry)]
        return {
            "internalRegistryHostname": service_hostname(
                self.services.get(REGISTRY_NAME, self.namespace)
            ),
            "externalRegistryHostnames": route_hostnames(routes, self.namespace),
        }

    def sync(self) -> None:
        registry = self.registry_configs.get(self.config.resource_name)
        try:
            self.sync_image_status(registry)
        except Exception as exc:
            self.report(registry, ConditionState(CONDITION_TRUE, "Error", str(exc)))
            raise
        self.report(registry, ConditionState(CONDITION_FALSE, REASON_AS_EXPECTED))

    def sync_image_status(self, registry: dict[str, Any] | None) -> bool:
        """Bring the image config status up to date; True if it was written."""
        desired = self.desired_status(registry)

        def attempt() -> bool:
            try:
                current = self.client.get(IMAGE_CONFIG_NAME)
            except Exception as exc:
                if not is_not_found(exc):
                    raise
                current = self.client.create(
                    {
                        "apiVersion": "config.openshift.io/v1",
                        "kind": "Image",
                        "metadata": {"name": IMAGE_CONFIG_NAME},
                    }
                )
            status = current.setdefault("status", {})
            if (
                status.get("internalRegistryHostname") or "",
                status.get("externalRegistryHostnames") or [],
            ) == (desired["internalRegistryHostname"], desired["externalRegistryHostnames"]):
                return False
            status.update(desired)
            self.client.update_status(current)
            self.logger.info(
                "Published registry hostnames: internal=%r external=%r",
                desired["internalRegistryHostname"],
                desired["externalRegistryHostnames"],
            )
            return True

        return retry_on_conflict(attempt, operation="image config status")

    def report(self, registry: dict[str, Any] | None, state: ConditionState) -> None:
        if registry is None or (registry.get("metadata") or {}).get("deletionTimestamp"):
            return
        report_conditions(
            self.registry_client,
            self.config.resource_name,
            registry,
            {CONDITION_TYPE: state},
            self.now,
            operation="image config condition",
        )


def _name(obj: dict[str, Any]) -> str | None:
    return (obj.get("metadata") or {}).get("name")
