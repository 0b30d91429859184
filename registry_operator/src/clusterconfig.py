from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from registry_operator.src.config import OperatorConfig

_REGION_FIELDS = {
    "AWS": ("aws", "region"),
    "GCP": ("gcp", "region"),
    "IBMCloud": ("ibmcloud", "location"),
    "PowerVS": ("powervs", "region"),
    "AlibabaCloud": ("alibabaCloud", "region"),
}


@dataclass(frozen=True)
class ClusterContext:
    """Read-only cluster facts the generators and bootstrap consume.

    Built fresh for every reconcile from the cached ``Infrastructure`` and the
    operator config, so generators stay pure functions of their inputs.
    """

    namespace: str
    platform: str = ""
    region: str = ""
    infrastructure_name: str = ""
    image: str = ""
    pruner_image: str = ""
    release_version: str = ""


def platform_type(infrastructure: dict[str, Any] | None) -> str:
    if not infrastructure:
        return ""
    status = infrastructure.get("status") or {}
    platform_status = status.get("platformStatus") or {}
    return platform_status.get("type") or status.get("platform") or ""


def platform_region(infrastructure: dict[str, Any] | None) -> str:
    platform = platform_type(infrastructure)
    if not infrastructure or platform not in _REGION_FIELDS:
        return ""
    section, field = _REGION_FIELDS[platform]
    platform_status = (infrastructure.get("status") or {}).get("platformStatus") or {}
    return (platform_status.get(section) or {}).get(field, "")


def build_cluster_context(
    infrastructure: dict[str, Any] | None, config: OperatorConfig
) -> ClusterContext:
    status = (infrastructure or {}).get("status") or {}
    return ClusterContext(
        namespace=config.namespace,
        platform=platform_type(infrastructure),
        region=platform_region(infrastructure),
        infrastructure_name=status.get("infrastructureName", ""),
        image=config.image,
        pruner_image=config.pruner_image,
        release_version=config.release_version,
    )
