from __future__ import annotations

import copy
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from registry_operator.src.client import ResourceClient
from registry_operator.src.errors import PermanentError
from registry_operator.src.retry import retry_on_conflict

CONDITION_TRUE = "True"
CONDITION_FALSE = "False"
CONDITION_UNKNOWN = "Unknown"

AVAILABLE = "Available"
PROGRESSING = "Progressing"
DEGRADED = "Degraded"
REMOVED = "Removed"

MANAGED = "Managed"
UNMANAGED = "Unmanaged"
REMOVED_STATE = "Removed"

REASON_AS_EXPECTED = "AsExpected"


def utc_now_rfc3339() -> str:
    """Return the current UTC time as a compact RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``)."""
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def parse_rfc3339(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


@dataclass(frozen=True)
class ConditionState:
    """Desired status, reason, and message for one condition type."""

    status: str
    reason: str = ""
    message: str = ""


def find_condition(conditions: Iterable[Mapping[str, Any]] | None, type_: str) -> Mapping[str, Any] | None:
    for condition in conditions or ():
        if condition.get("type") == type_:
            return condition
    return None


def update_condition(
    conditions: list[dict[str, Any]] | None,
    type_: str,
    state: ConditionState,
    now: str,
) -> list[dict[str, Any]]:
    """Return a copy of ``conditions`` with ``type_`` set to ``state``.

    ``lastTransitionTime`` moves to ``now`` only when the status flips (or
    the condition is new); reason and message changes alone keep the old
    timestamp.  Other condition types are carried over untouched and the
    list keeps its order, with new types appended.
    """
    result = [copy.deepcopy(c) for c in conditions or []]
    for condition in result:
        if condition.get("type") != type_:
            continue
        if condition.get("status") != state.status or not condition.get("lastTransitionTime"):
            condition["lastTransitionTime"] = now
        condition["status"] = state.status
        condition["reason"] = state.reason
        condition["message"] = state.message
        return result
    result.append(
        {
            "type": type_,
            "status": state.status,
            "reason": state.reason,
            "message": state.message,
            "lastTransitionTime": now,
        }
    )
    return result


def apply_conditions(
    conditions: list[dict[str, Any]] | None,
    states: Mapping[str, ConditionState],
    now: str,
) -> list[dict[str, Any]]:
    result = list(conditions or [])
    for type_, state in states.items():
        result = update_condition(result, type_, state, now)
    return result


def _shows(condition: Mapping[str, Any] | None, state: ConditionState) -> bool:
    if condition is None:
        return False
    return (condition.get("status"), condition.get("reason"), condition.get("message") or "") == (
        state.status,
        state.reason,
        state.message,
    )


def report_conditions(
    client: ResourceClient,
    name: str,
    cached: Mapping[str, Any],
    states: Mapping[str, ConditionState],
    now: Callable[[], str],
    *,
    operation: str,
) -> bool:
    """Write ``states`` onto the live ``name`` unless ``cached`` already shows them.

    Each attempt re-reads the object and merges by condition type, so
    controllers that share one status can report side by side.  Returns
    True if a write was made.
    """
    existing = (cached.get("status") or {}).get("conditions")
    if all(_shows(find_condition(existing, type_), state) for type_, state in states.items()):
        return False
    stamp = now()

    def attempt() -> None:
        latest = client.get(name)
        status = latest.setdefault("status", {})
        status["conditions"] = apply_conditions(status.get("conditions"), states, stamp)
        client.update_status(latest)

    retry_on_conflict(attempt, operation=operation)
    return True


# -- workload helpers -------------------------------------------------------


def _deployment_status(deployment: Mapping[str, Any]) -> Mapping[str, Any]:
    return deployment.get("status") or {}


def deployment_deleting(deployment: Mapping[str, Any]) -> bool:
    return bool((deployment.get("metadata") or {}).get("deletionTimestamp"))


def deployment_available(deployment: Mapping[str, Any]) -> bool:
    return int(_deployment_status(deployment).get("availableReplicas") or 0) > 0


def deployment_complete(deployment: Mapping[str, Any]) -> bool:
    """True once every replica runs the latest template at the latest generation."""
    spec = deployment.get("spec") or {}
    status = _deployment_status(deployment)
    replicas = spec.get("replicas")
    if replicas is None:
        replicas = 1
    generation = int((deployment.get("metadata") or {}).get("generation") or 0)
    return (
        int(status.get("updatedReplicas") or 0) == replicas
        and int(status.get("replicas") or 0) == replicas
        and int(status.get("availableReplicas") or 0) == replicas
        and int(status.get("observedGeneration") or 0) >= generation
    )


def deployment_available_and_updated(deployment: Mapping[str, Any]) -> bool:
    status = _deployment_status(deployment)
    generation = int((deployment.get("metadata") or {}).get("generation") or 0)
    return (
        deployment_available(deployment)
        and int(status.get("observedGeneration") or 0) >= generation
        and int(status.get("updatedReplicas") or 0) == int(status.get("replicas") or 0)
    )


# -- image registry -----------------------------------------------------------


def registry_conditions(
    management_state: str,
    deployment: Mapping[str, Any] | None,
    apply_error: BaseException | None,
    *,
    trust_bundle_missing_for: float | None = None,
    trust_bundle_grace: float = 300.0,
) -> dict[str, ConditionState]:
    """Derive Available, Progressing, Degraded, and Removed for the registry.

    Each axis is decided by its own priority-ordered rules; the first rule
    that matches wins.  ``trust_bundle_missing_for`` is how long the injected
    CA bundle has been absent; it only degrades the registry once it exceeds
    ``trust_bundle_grace`` because the injector fills it in asynchronously.
    """
    permanent = apply_error if isinstance(apply_error, PermanentError) else None
    removed_state = management_state == REMOVED_STATE
    deleting = deployment is not None and deployment_deleting(deployment)

    # Available
    if management_state == UNMANAGED:
        available = ConditionState(
            CONDITION_TRUE, "Unmanaged", "The registry configuration is set to unmanaged mode"
        )
    elif permanent is not None:
        available = ConditionState(CONDITION_FALSE, permanent.reason, str(permanent))
    elif deployment is None:
        if removed_state:
            available = ConditionState(
                CONDITION_TRUE, "Removed", "The registry is removed"
            )
        else:
            available = ConditionState(
                CONDITION_FALSE, "DeploymentNotFound", "The deployment does not exist"
            )
    elif deleting:
        available = ConditionState(
            CONDITION_FALSE, "DeploymentDeleted", "The deployment is being deleted"
        )
    elif not deployment_available(deployment):
        available = ConditionState(
            CONDITION_FALSE, "NoReplicasAvailable", "The deployment does not have available replicas"
        )
    elif not deployment_complete(deployment):
        available = ConditionState(
            CONDITION_TRUE, "MinimumAvailability", "The registry has minimum availability"
        )
    else:
        available = ConditionState(CONDITION_TRUE, "Ready", "The registry is ready")

    # Progressing
    if management_state == UNMANAGED:
        progressing = ConditionState(
            CONDITION_FALSE, "Unmanaged", "The registry configuration is set to unmanaged mode"
        )
    elif removed_state:
        if apply_error is not None:
            progressing = ConditionState(
                CONDITION_TRUE, "Error", f"Unable to remove resources: {apply_error}"
            )
        elif deployment is not None:
            progressing = ConditionState(
                CONDITION_TRUE, "DeletingDeployment", "The deployment is being removed"
            )
        else:
            progressing = ConditionState(
                CONDITION_FALSE, "Removed", "All registry resources are removed"
            )
    elif apply_error is not None:
        progressing = ConditionState(
            CONDITION_FALSE if permanent is not None else CONDITION_TRUE,
            "Error",
            f"Unable to apply resources: {apply_error}",
        )
    elif deployment is None:
        progressing = ConditionState(
            CONDITION_TRUE, "WaitingForDeployment", "All resources are successfully applied, but the deployment does not exist"
        )
    elif deleting:
        progressing = ConditionState(
            CONDITION_TRUE, "FinalizingDeployment", "The deployment is being deleted"
        )
    elif not deployment_complete(deployment):
        progressing = ConditionState(
            CONDITION_TRUE, "DeploymentNotCompleted", "The deployment has not completed"
        )
    else:
        progressing = ConditionState(CONDITION_FALSE, "Ready", "The registry is ready")

    # Degraded
    if permanent is not None:
        degraded = ConditionState(CONDITION_TRUE, permanent.reason, str(permanent))
    elif (
        management_state == MANAGED
        and trust_bundle_missing_for is not None
        and trust_bundle_missing_for > trust_bundle_grace
    ):
        degraded = ConditionState(
            CONDITION_TRUE,
            "TrustedCABundleMissing",
            "The trusted CA bundle has not been injected for "
            f"{int(trust_bundle_missing_for)}s",
        )
    elif management_state == UNMANAGED:
        degraded = ConditionState(CONDITION_FALSE, "Unmanaged")
    elif removed_state:
        degraded = ConditionState(CONDITION_FALSE, "Removed")
    else:
        degraded = ConditionState(CONDITION_FALSE, REASON_AS_EXPECTED)

    # Removed
    if removed_state and deployment is None and apply_error is None:
        removed = ConditionState(CONDITION_TRUE, "Removed", "The registry is removed")
    elif removed_state:
        removed = ConditionState(CONDITION_FALSE, "Removing", "The registry is being removed")
    else:
        removed = ConditionState(CONDITION_FALSE, REASON_AS_EXPECTED)

    return {
        AVAILABLE: available,
        PROGRESSING: progressing,
        DEGRADED: degraded,
        REMOVED: removed,
    }


# -- image pruner -------------------------------------------------------------


def _job_condition(job: Mapping[str, Any], type_: str) -> Mapping[str, Any] | None:
    condition = find_condition((job.get("status") or {}).get("conditions"), type_)
    if condition is not None and condition.get("status") == CONDITION_TRUE:
        return condition
    return None


def last_finished_job(jobs: Iterable[Mapping[str, Any]]) -> Mapping[str, Any] | None:
    """Return the most recently finished job, judged by its terminal condition time."""
    latest: Mapping[str, Any] | None = None
    latest_time = ""
    for job in jobs:
        condition = _job_condition(job, "Complete") or _job_condition(job, "Failed")
        if condition is None:
            continue
        finished = condition.get("lastTransitionTime") or ""
        if latest is None or finished > latest_time:
            latest, latest_time = job, finished
    return latest


def pruner_conditions(
    cronjob: Mapping[str, Any] | None,
    jobs: Iterable[Mapping[str, Any]],
    suspended: bool,
    apply_error: BaseException | None,
) -> dict[str, ConditionState]:
    if cronjob is not None:
        available = ConditionState(CONDITION_TRUE, REASON_AS_EXPECTED, "Pruner CronJob has been created")
    else:
        available = ConditionState(CONDITION_FALSE, "Error", "Pruner CronJob does not exist")

    if suspended:
        scheduled = ConditionState(CONDITION_FALSE, "Suspended", "The pruner job has been suspended")
    else:
        scheduled = ConditionState(CONDITION_TRUE, "Scheduled", "The pruner job has been scheduled")

    job = last_finished_job(jobs)
    job_failure = _job_condition(job, "Failed") if job is not None else None
    if job_failure is not None:
        failed = ConditionState(
            CONDITION_TRUE,
            job_failure.get("reason") or "JobFailed",
            job_failure.get("message") or "Job has failed",
        )
    else:
        failed = ConditionState(CONDITION_FALSE, "Complete", "Job has completed")

    if apply_error is not None:
        degraded = ConditionState(CONDITION_TRUE, "SyncError", f"Unable to apply resources: {apply_error}")
    elif job_failure is not None:
        degraded = ConditionState(CONDITION_TRUE, "JobFailed", "Job has failed")
    else:
        degraded = ConditionState(CONDITION_FALSE, REASON_AS_EXPECTED)

    return {
        AVAILABLE: available,
        "Scheduled": scheduled,
        "Failed": failed,
        DEGRADED: degraded,
    }


# -- node CA daemon -------------------------------------------------------------


def node_ca_conditions(
    daemon_set: Mapping[str, Any] | None, apply_error: BaseException | None
) -> dict[str, ConditionState]:
    if daemon_set is None:
        missing = "The daemon set node-ca does not exist"
        available = ConditionState(CONDITION_FALSE, "NotFound", missing)
        progressing = ConditionState(CONDITION_TRUE, "NotFound", missing)
    else:
        status = daemon_set.get("status") or {}
        if int(status.get("numberAvailable") or 0) > 0:
            available = ConditionState(
                CONDITION_TRUE, REASON_AS_EXPECTED, "The daemon set node-ca has available replicas"
            )
        else:
            available = ConditionState(
                CONDITION_FALSE,
                "NoAvailableReplicas",
                "The daemon set node-ca does not have available replicas",
            )

        generation = (daemon_set.get("metadata") or {}).get("generation")
        if generation != status.get("observedGeneration"):
            progressing = ConditionState(
                CONDITION_TRUE, "Progressing", "The daemon set node-ca is updating node pods"
            )
        elif int(status.get("numberUnavailable") or 0) > 0:
            progressing = ConditionState(
                CONDITION_TRUE, "Unavailable", "The daemon set node-ca is deploying node pods"
            )
        else:
            progressing = ConditionState(
                CONDITION_FALSE, REASON_AS_EXPECTED, "The daemon set node-ca is deployed"
            )

    if apply_error is not None:
        degraded = ConditionState(CONDITION_TRUE, "Error", str(apply_error))
    else:
        degraded = ConditionState(CONDITION_FALSE, REASON_AS_EXPECTED)

    return {
        "NodeCADaemonAvailable": available,
        "NodeCADaemonProgressing": progressing,
        "NodeCADaemonControllerDegraded": degraded,
    }


# -- cluster operator ----------------------------------------------------------


def prefix_conditions(conditions: Iterable[Mapping[str, Any]] | None, prefix: str) -> list[dict[str, Any]]:
    out = []
    for condition in conditions or ():
        prefixed = dict(condition)
        prefixed["type"] = prefix + str(condition.get("type", ""))
        out.append(prefixed)
    return out


def union_status(normal: str, conditions: Iterable[Mapping[str, Any]]) -> str:
    """First status that is neither ``normal`` nor Unknown wins, then Unknown, then ``normal``."""
    unknown = False
    for condition in conditions:
        status = condition.get("status")
        if status == CONDITION_UNKNOWN:
            unknown = True
        elif status != normal:
            return str(status)
    return CONDITION_UNKNOWN if unknown else normal


def union_reason(union_type: str, conditions: Iterable[Mapping[str, Any]]) -> str:
    reasons = []
    for condition in conditions:
        reason = condition.get("reason") or ""
        if reason in ("", REASON_AS_EXPECTED):
            continue
        prefix = str(condition.get("type", ""))[: -len(union_type)]
        reasons.append(prefix + reason)
    return "::".join(sorted(reasons))


def union_message(conditions: Iterable[Mapping[str, Any]]) -> str:
    messages = []
    for condition in conditions:
        for line in (condition.get("message") or "").split("\n"):
            if line:
                messages.append(f"{condition.get('type')}: {line}")
    return "\n".join(messages)


def latest_transition_time(conditions: Iterable[Mapping[str, Any]]) -> str:
    latest = ""
    for condition in conditions:
        value = condition.get("lastTransitionTime") or ""
        if value > latest:
            latest = value
    return latest


def union_condition(
    union_type: str, normal: str, conditions: Iterable[Mapping[str, Any]], now: str
) -> dict[str, Any]:
    """Fold every condition whose type ends in ``union_type`` into one."""
    interesting = [c for c in conditions if str(c.get("type", "")).endswith(union_type)]
    status = union_status(normal, interesting)
    reason = union_reason(union_type, interesting)
    if status == normal and not reason:
        reason = REASON_AS_EXPECTED
    return {
        "type": union_type,
        "status": status,
        "reason": reason,
        "message": union_message(interesting),
        "lastTransitionTime": latest_transition_time(interesting) or now,
    }


def cluster_operator_conditions(
    registry_conditions_: Iterable[Mapping[str, Any]] | None,
    pruner_conditions_: Iterable[Mapping[str, Any]] | None,
    now: str,
) -> list[dict[str, Any]]:
    conditions = list(registry_conditions_ or [])
    conditions.extend(prefix_conditions(pruner_conditions_, "ImagePruner"))
    return [
        union_condition(AVAILABLE, CONDITION_TRUE, conditions, now),
        union_condition(PROGRESSING, CONDITION_FALSE, conditions, now),
        union_condition(DEGRADED, CONDITION_FALSE, conditions, now),
    ]
