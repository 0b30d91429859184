from __future__ import annotations
import os
from collections.abc import Mapping
from dataclasses import dataclass


class ConfigError(RuntimeError):
    """Raised when the operator configuration is invalid."""


@dataclass(frozen=True)
class OperatorConfig:
    """Immutable operator configuration loaded at startup.

    Names that controllers coordinate on (the resource name, finalizer,
    checksum annotation) live here and are handed to each controller's
    constructor rather than read from module globals.
    """

    namespace: str = "openshift-image-registry"
    resource_name: str = "cluster"
    finalizer: str = "imageregistry.operator.openshift.io/finalizer"
    checksum_annotation: str = "imageregistry.operator.openshift.io/checksum"
    image: str = "quay.io/openshift/origin-docker-registry:latest"
    pruner_image: str = "quay.io/openshift/origin-cli:latest"
    release_version: str = "0.0.1-snapshot"
    trust_bundle_grace_seconds: int = 300
    finalizer_poll_seconds: int = 3
    finalizer_max_wait_seconds: int = 0
    queue_base_delay_ms: int = 5
    queue_max_delay_seconds: int = 1000
    health_port: int = 8080
    log_level: str = "INFO"
    shutdown_timeout_seconds: int = 30

    @property
    def finalizer_max_wait(self) -> float | None:
        if self.finalizer_max_wait_seconds <= 0:
            return None
        return float(self.finalizer_max_wait_seconds)


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None or raw == "":
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def _env_str(values: Mapping[str, str], name: str, default: str) -> str:
    value = values.get(name, default).strip()
    if not value:
        raise ConfigError(f"{name} must be a non-empty string")
    return value


def load_config(env: Mapping[str, str] | None = None) -> OperatorConfig:
    """Load operator config from the environment.

    Every setting has a default suitable for an in-cluster deployment.
    Malformed or out-of-range values raise :class:`ConfigError` so the process
    fails at startup instead of reconciling with a half-valid configuration.
    """
    values = env if env is not None else os.environ
    defaults = OperatorConfig()

    log_level = values.get("LOG_LEVEL", defaults.log_level).strip().upper()
    if log_level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        raise ConfigError(f"LOG_LEVEL must be a standard logging level, got: {log_level!r}")

    return OperatorConfig(
        namespace=_env_str(values, "OPERATOR_NAMESPACE", defaults.namespace),
        resource_name=_env_str(values, "REGISTRY_RESOURCE_NAME", defaults.resource_name),
        finalizer=_env_str(values, "REGISTRY_FINALIZER", defaults.finalizer),
        checksum_annotation=_env_str(
            values, "CHECKSUM_ANNOTATION", defaults.checksum_annotation
        ),
        image=_env_str(values, "IMAGE", defaults.image),
        pruner_image=_env_str(values, "IMAGE_PRUNER", defaults.pruner_image),
        release_version=_env_str(values, "RELEASE_VERSION", defaults.release_version),
        trust_bundle_grace_seconds=env_int(
            values, "TRUST_BUNDLE_GRACE_SECONDS", defaults.trust_bundle_grace_seconds, minimum=0
        ),
        finalizer_poll_seconds=env_int(
            values, "FINALIZER_POLL_SECONDS", defaults.finalizer_poll_seconds, minimum=1
        ),
        finalizer_max_wait_seconds=env_int(
            values, "FINALIZER_MAX_WAIT_SECONDS", defaults.finalizer_max_wait_seconds, minimum=0
        ),
        queue_base_delay_ms=env_int(
            values, "WORKQUEUE_BASE_DELAY_MS", defaults.queue_base_delay_ms, minimum=1
        ),
        queue_max_delay_seconds=env_int(
            values, "WORKQUEUE_MAX_DELAY_SECONDS", defaults.queue_max_delay_seconds, minimum=1
        ),
        health_port=env_int(
            values, "HEALTH_PORT", defaults.health_port, minimum=1, maximum=65535
        ),
        log_level=log_level,
        shutdown_timeout_seconds=env_int(
            values, "SHUTDOWN_TIMEOUT_SECONDS", defaults.shutdown_timeout_seconds, minimum=1
        ),
    )
