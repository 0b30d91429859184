from __future__ import annotations

import copy
import logging
from collections.abc import Callable
from typing import Any

from registry_operator.src.applier import Applier
from registry_operator.src.bootstrap import Bootstrapper
from registry_operator.src.client import ResourceClient
from registry_operator.src.clusterconfig import ClusterContext, build_cluster_context
from registry_operator.src.config import OperatorConfig
from registry_operator.src.controller import Controller
from registry_operator.src.errors import is_conflict, is_permanent
from registry_operator.src.finalizer import FinalizerCoordinator
from registry_operator.src.metrics import METRICS
from registry_operator.src.notifier import Informer
from registry_operator.src.status import (
    MANAGED,
    REMOVED_STATE,
    UNMANAGED,
    ConditionState,
    apply_conditions,
    utc_now_rfc3339,
)

INFRASTRUCTURE_NAME = "cluster"


class ResourceReconciler(Controller):
    """Level-triggered reconcile of one cluster-scoped custom resource.

    Each pass reads the resource from the cache, bootstraps it if missing,
    and otherwise works on a private copy:

    * with a deletion timestamp, hands off to the finalizer coordinator;
    * ``Removed`` tears down every managed object, ``Managed`` generates and
      applies them, ``Unmanaged`` leaves them alone;
    * the resulting conditions are folded into status, a changed spec or
      metadata is written first under the cached resourceVersion, then a
      changed status.

    Permanent errors are reported through conditions and end the pass
    without a requeue; anything else is re-raised for the queue to retry.
    """

    kind: str = ""

    def __init__(
        self,
        name: str,
        *,
        config: OperatorConfig,
        client: ResourceClient,
        informer: Informer,
        applier: Applier,
        bootstrapper: Bootstrapper,
        finalizer: FinalizerCoordinator | None = None,
        infrastructures: Informer | None = None,
        now: Callable[[], str] = utc_now_rfc3339,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(
            name,
            f"{self.kind}/{config.resource_name}",
            base_delay=config.queue_base_delay_ms / 1000.0,
            max_delay=float(config.queue_max_delay_seconds),
            logger=logger,
        )
        self.config = config
        self.resource_name = config.resource_name
        self.client = client
        self.informer = informer
        self.applier = applier
        self.bootstrapper = bootstrapper
        self.finalizer = finalizer
        self.infrastructures = infrastructures
        self.now = now
        self.watch(informer, self._is_primary)
        if infrastructures is not None:
            self.watch(infrastructures)

    def _is_primary(self, obj: dict[str, Any]) -> bool:
        return (obj.get("metadata") or {}).get("name") == self.resource_name

    def cluster_context(self) -> ClusterContext:
        infrastructure = None
        if self.infrastructures is not None:
            infrastructure = self.infrastructures.get(INFRASTRUCTURE_NAME)
        return build_cluster_context(infrastructure, self.config)

    # -- hooks ----------------------------------------------------------------

    def apply(self, resource: dict[str, Any]) -> None:
        """Generate and apply the desired objects; raise the first failure."""
        raise NotImplementedError

    def teardown(self, resource: dict[str, Any]) -> None:
        raise NotImplementedError

    def observe(self, resource: dict[str, Any]) -> Any:
        return None

    def condition_states(
        self, resource: dict[str, Any], observed: Any, apply_error: BaseException | None
    ) -> dict[str, ConditionState]:
        raise NotImplementedError

    def sync_extra_status(self, resource: dict[str, Any], observed: Any) -> None:
        """Fill status fields other than conditions and observedGeneration."""

    # -- reconcile ------------------------------------------------------------

    def sync(self) -> None:
        cached = self.informer.get(self.resource_name)
        if cached is None:
            self.bootstrapper.ensure()
            return

        resource = copy.deepcopy(cached)
        if (resource.get("metadata") or {}).get("deletionTimestamp"):
            if self.finalizer is not None:
                self.finalizer.finalize(resource, lambda: self.teardown(resource))
            return

        apply_error = self._run_management_state(resource)
        observed = self.observe(resource)

        now = self.now()
        states = self.condition_states(resource, observed, apply_error)
        status = resource.setdefault("status", {})
        status["conditions"] = apply_conditions(status.get("conditions"), states, now)
        self.sync_extra_status(resource, observed)

        self._write_spec(cached, resource)
        status["observedGeneration"] = (resource.get("metadata") or {}).get("generation", 0)
        if status != cached.get("status"):
            self._write_status(resource, states, now)

        if apply_error is not None:
            if is_permanent(apply_error):
                self.logger.warning("Not retrying %s: %s", self.queue_key, apply_error)
                return
            raise apply_error

    def _run_management_state(self, resource: dict[str, Any]) -> BaseException | None:
        state = (resource.get("spec") or {}).get("managementState") or MANAGED
        try:
            if state == REMOVED_STATE:
                self.teardown(resource)
            elif state == UNMANAGED:
                self.logger.debug("%s is unmanaged, skipping", self.queue_key)
            elif state == MANAGED:
                if self.finalizer is not None:
                    self.finalizer.ensure(resource)
                self.apply(resource)
            else:
                self.logger.warning("Unknown managementState %r on %s", state, self.queue_key)
        except Exception as exc:
            return exc
        return None

    def _write_spec(self, cached: dict[str, Any], resource: dict[str, Any]) -> None:
        metadata_changed = resource.get("metadata") != cached.get("metadata")
        spec_changed = resource.get("spec") != cached.get("spec")
        if not (metadata_changed or spec_changed):
            return
        self.logger.info(
            "Updating %s (metadata=%s, spec=%s)", self.queue_key, metadata_changed, spec_changed
        )
        body = copy.deepcopy(resource)
        body.pop("status", None)
        # A conflict propagates: the next pass starts over from fresh data.
        updated = self.client.update(body)
        resource["metadata"] = updated["metadata"]

    def _write_status(
        self, resource: dict[str, Any], states: dict[str, ConditionState], now: str
    ) -> None:
        try:
            self.client.update_status(resource)
            return
        except Exception as exc:
            if not is_conflict(exc):
                raise
        METRICS.conflict_retries_total.labels(operation=f"{self.kind} status").inc()
        self.logger.info("Status conflict on %s, merging onto latest", self.queue_key)

        latest = self.client.get(self.resource_name)
        status = latest.setdefault("status", {})
        for key, value in resource["status"].items():
            if key != "conditions":
                status[key] = copy.deepcopy(value)
        status["conditions"] = apply_conditions(status.get("conditions"), states, now)
        self.client.update_status(latest)
