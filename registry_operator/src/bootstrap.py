from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from registry_operator.src.client import KINDS, ResourceClient
from registry_operator.src.clusterconfig import build_cluster_context
from registry_operator.src.config import OperatorConfig
from registry_operator.src.errors import is_already_exists, is_not_found
from registry_operator.src.generator import random_http_secret
from registry_operator.src.resources import (
    DEFAULT_HISTORY_LIMIT,
    DEFAULT_KEEP_TAG_REVISIONS,
)
from registry_operator.src.status import MANAGED, REMOVED_STATE
from registry_operator.src.storage import new_driver, platform_storage

LOGGER = logging.getLogger(__name__)


def default_registry_config(
    infrastructure: dict[str, Any] | None,
    config: OperatorConfig,
    *,
    token_source: Callable[[], str] = random_http_secret,
) -> dict[str, Any]:
    """Build the registry Config created when none exists.

    Storage is inferred from the platform.  On platforms with no usable object
    store the registry starts out Removed, so a fresh cluster does not report
    a broken registry before anyone has configured storage.
    """
    context = build_cluster_context(infrastructure, config)
    storage, replicas = platform_storage(context.platform)
    management_state = MANAGED
    rollout_strategy = "RollingUpdate"
    if storage:
        driver = new_driver(storage)
        driver.complete_configuration(context)
        rollout_strategy = driver.rollout_strategy
    else:
        management_state = REMOVED_STATE

    kind = KINDS["Config"]
    return {
        "apiVersion": kind.api_version,
        "kind": kind.kind,
        "metadata": {"name": config.resource_name, "finalizers": [config.finalizer]},
        "spec": {
            "managementState": management_state,
            "logLevel": "Normal",
            "operatorLogLevel": "Normal",
            "replicas": replicas,
            "httpSecret": token_source(),
            "rolloutStrategy": rollout_strategy,
            "storage": storage,
        },
    }


def default_image_pruner(config: OperatorConfig) -> dict[str, Any]:
    kind = KINDS["ImagePruner"]
    return {
        "apiVersion": kind.api_version,
        "kind": kind.kind,
        "metadata": {"name": config.resource_name},
        "spec": {
            # Empty means the pruner's built-in daily schedule.
            "schedule": "",
            "suspend": False,
            "keepTagRevisions": DEFAULT_KEEP_TAG_REVISIONS,
            "successfulJobsHistoryLimit": DEFAULT_HISTORY_LIMIT,
            "failedJobsHistoryLimit": DEFAULT_HISTORY_LIMIT,
            "ignoreInvalidImageReferences": True,
            "logLevel": "Normal",
        },
    }


class Bootstrapper:
    """Creates a default top-level resource when the cache says it is absent.

    The cache may lag, so the store is asked first; a concurrent creator
    winning the race is not an error.
    """

    def __init__(
        self,
        client: ResourceClient,
        name: str,
        build: Callable[[], dict[str, Any]],
        logger: logging.Logger | None = None,
    ) -> None:
        self.client = client
        self.name = name
        self.build = build
        self.logger = logger or LOGGER

    def ensure(self) -> dict[str, Any]:
        try:
            return self.client.get(self.name)
        except Exception as exc:
            if not is_not_found(exc):
                raise

        body = self.build()
        try:
            created = self.client.create(body)
        except Exception as exc:
            if not is_already_exists(exc):
                raise
            self.logger.info("%s %s was created concurrently", body["kind"], self.name)
            return self.client.get(self.name)

        self.logger.info(
            "Bootstrapped %s %s with managementState=%s",
            body["kind"],
            self.name,
            (body.get("spec") or {}).get("managementState", "-"),
        )
        return created
