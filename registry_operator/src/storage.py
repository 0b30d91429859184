from __future__ import annotations

import re
from typing import Any, ClassVar

from registry_operator.src.clusterconfig import ClusterContext
from registry_operator.src.errors import (
    MultipleStoragesError,
    PermanentError,
    StorageNotConfiguredError,
)
from registry_operator.src.objects import hash_data

PRIVATE_CONFIGURATION_SECRET = "image-registry-private-configuration"
CLOUD_CREDENTIALS_PATH = "/var/run/secrets/cloud"
FILESYSTEM_ROOT = "/registry"
DEFAULT_PVC_NAME = "image-registry-storage"

_BUCKET_INVALID = re.compile(r"[^a-z0-9-]+")


def _env(name: str, value: Any) -> dict[str, Any]:
    if isinstance(value, bool):
        value = "true" if value else "false"
    return {"name": name, "value": str(value)}


def _secret_env(name: str, key: str) -> dict[str, Any]:
    return {
        "name": name,
        "valueFrom": {
            "secretKeyRef": {"name": PRIVATE_CONFIGURATION_SECRET, "key": key, "optional": True}
        },
    }


def generated_name(context: ClusterContext, suffix: str, *, max_length: int = 63) -> str:
    """Return a deterministic bucket or container name for this cluster.

    The infrastructure name already carries a per-cluster random id, so a
    short digest of it and the region is enough to keep names unique without
    making repeated reconciles disagree.
    """
    prefix = context.infrastructure_name or "image-registry"
    digest = hash_data([context.infrastructure_name, context.region, suffix])[7:19]
    parts = [prefix, "image-registry"]
    if context.region:
        parts.append(context.region)
    name = _BUCKET_INVALID.sub("-", "-".join(parts).lower()).strip("-")
    name = name[: max_length - len(digest) - 1].rstrip("-")
    return f"{name}-{digest}"


class Driver:
    """One storage backend variant of ``spec.storage``.

    ``config`` is the backend's section of the caller's private copy of the
    resource; :meth:`complete_configuration` fills defaults into it in place.
    """

    name: ClassVar[str] = ""
    rollout_strategy: ClassVar[str] = "RollingUpdate"
    default_replicas: ClassVar[int] = 2

    def __init__(self, config: dict[str, Any]) -> None:
        self.config = config

    def complete_configuration(self, context: ClusterContext) -> bool:
        """Fill in defaults; return True if the operator chose the storage location."""
        return False

    def config_env(self) -> list[dict[str, Any]]:
        raise NotImplementedError

    def volumes(self) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
        return [], []

    def _cloud_credentials(self) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
        volume = {
            "name": "cloud-credentials",
            "secret": {"secretName": PRIVATE_CONFIGURATION_SECRET, "optional": True},
        }
        mount = {"name": "cloud-credentials", "mountPath": CLOUD_CREDENTIALS_PATH}
        return [volume], [mount]


class EmptyDirDriver(Driver):
    name = "emptyDir"
    default_replicas = 1

    def config_env(self) -> list[dict[str, Any]]:
        return [
            _env("REGISTRY_STORAGE", "filesystem"),
            _env("REGISTRY_STORAGE_FILESYSTEM_ROOTDIRECTORY", FILESYSTEM_ROOT),
        ]

    def volumes(self) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
        return (
            [{"name": "registry-storage", "emptyDir": {}}],
            [{"name": "registry-storage", "mountPath": FILESYSTEM_ROOT}],
        )


class PVCDriver(EmptyDirDriver):
    name = "pvc"
    rollout_strategy = "Recreate"

    def complete_configuration(self, context: ClusterContext) -> bool:
        if not self.config.get("claim"):
            self.config["claim"] = DEFAULT_PVC_NAME
            return True
        return False

    def volumes(self) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
        return (
            [
                {
                    "name": "registry-storage",
                    "persistentVolumeClaim": {"claimName": self.config["claim"]},
                }
            ],
            [{"name": "registry-storage", "mountPath": FILESYSTEM_ROOT}],
        )


class S3Driver(Driver):
    name = "s3"

    def complete_configuration(self, context: ClusterContext) -> bool:
        endpoint = self.config.get("regionEndpoint", "")
        if endpoint and not endpoint.startswith(("https://", "http://")):
            raise PermanentError(
                "InvalidStorageConfiguration",
                f"s3 regionEndpoint must be an http or https URL, got {endpoint!r}",
            )
        self.config.setdefault("region", context.region or "us-east-1")
        self.config.setdefault("encrypt", True)
        self.config.setdefault("virtualHostedStyle", False)
        if not self.config.get("bucket"):
            self.config["bucket"] = generated_name(context, "s3")
            return True
        return False

    def config_env(self) -> list[dict[str, Any]]:
        env = [
            _env("REGISTRY_STORAGE", "s3"),
            _env("REGISTRY_STORAGE_S3_BUCKET", self.config["bucket"]),
            _env("REGISTRY_STORAGE_S3_REGION", self.config["region"]),
            _env("REGISTRY_STORAGE_S3_ENCRYPT", self.config["encrypt"]),
            _env("REGISTRY_STORAGE_S3_VIRTUALHOSTEDSTYLE", self.config["virtualHostedStyle"]),
            _env("REGISTRY_STORAGE_S3_CREDENTIALSCONFIGPATH", f"{CLOUD_CREDENTIALS_PATH}/credentials"),
        ]
        if self.config.get("regionEndpoint"):
            env.append(_env("REGISTRY_STORAGE_S3_REGIONENDPOINT", self.config["regionEndpoint"]))
        if self.config.get("keyID"):
            env.append(_env("REGISTRY_STORAGE_S3_KEYID", self.config["keyID"]))
        return env

    def volumes(self) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
        return self._cloud_credentials()


class GCSDriver(Driver):
    name = "gcs"

    def complete_configuration(self, context: ClusterContext) -> bool:
        self.config.setdefault("region", context.region or "us-central1")
        if not self.config.get("bucket"):
            self.config["bucket"] = generated_name(context, "gcs")
            return True
        return False

    def config_env(self) -> list[dict[str, Any]]:
        return [
            _env("REGISTRY_STORAGE", "gcs"),
            _env("REGISTRY_STORAGE_GCS_BUCKET", self.config["bucket"]),
            _env("REGISTRY_STORAGE_GCS_KEYFILE", f"{CLOUD_CREDENTIALS_PATH}/keyfile"),
        ]

    def volumes(self) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
        return self._cloud_credentials()


class AzureDriver(Driver):
    name = "azure"

    def complete_configuration(self, context: ClusterContext) -> bool:
        generated = False
        if not self.config.get("accountName"):
            # 3-24 lowercase alphanumerics, unique per cluster.
            self.config["accountName"] = "imageregistry" + hash_data(
                [context.infrastructure_name, "azure"]
            )[7:18]
            generated = True
        if not self.config.get("container"):
            self.config["container"] = generated_name(context, "azure")
            generated = True
        return generated

    def config_env(self) -> list[dict[str, Any]]:
        return [
            _env("REGISTRY_STORAGE", "azure"),
            _env("REGISTRY_STORAGE_AZURE_CONTAINER", self.config["container"]),
            _env("REGISTRY_STORAGE_AZURE_ACCOUNTNAME", self.config["accountName"]),
            _secret_env("REGISTRY_STORAGE_AZURE_ACCOUNTKEY", "REGISTRY_STORAGE_AZURE_ACCOUNTKEY"),
        ]


class SwiftDriver(Driver):
    name = "swift"

    def complete_configuration(self, context: ClusterContext) -> bool:
        if not self.config.get("container"):
            self.config["container"] = generated_name(context, "swift")
            return True
        return False

    def config_env(self) -> list[dict[str, Any]]:
        env = [
            _env("REGISTRY_STORAGE", "swift"),
            _env("REGISTRY_STORAGE_SWIFT_CONTAINER", self.config["container"]),
            _secret_env("REGISTRY_STORAGE_SWIFT_USERNAME", "REGISTRY_STORAGE_SWIFT_USERNAME"),
            _secret_env("REGISTRY_STORAGE_SWIFT_PASSWORD", "REGISTRY_STORAGE_SWIFT_PASSWORD"),
        ]
        if self.config.get("authURL"):
            env.append(_env("REGISTRY_STORAGE_SWIFT_AUTHURL", self.config["authURL"]))
        if self.config.get("regionName"):
            env.append(_env("REGISTRY_STORAGE_SWIFT_REGION", self.config["regionName"]))
        return env


DRIVERS: dict[str, type[Driver]] = {
    cls.name: cls
    for cls in (EmptyDirDriver, S3Driver, GCSDriver, AzureDriver, SwiftDriver, PVCDriver)
}


def configured_backends(storage: dict[str, Any] | None) -> list[str]:
    storage = storage or {}
    return [name for name in DRIVERS if storage.get(name) is not None]


def new_driver(storage: dict[str, Any] | None) -> Driver:
    """Return the driver for the single backend selected in ``storage``.

    The returned driver edits ``storage[<backend>]`` in place.
    """
    storage = storage or {}
    names = configured_backends(storage)
    if not names:
        raise StorageNotConfiguredError()
    if len(names) > 1:
        raise MultipleStoragesError(names)
    return DRIVERS[names[0]](storage[names[0]])


_NO_STORAGE_PLATFORMS = frozenset({"BareMetal", "oVirt", "Ovirt", "VSphere", "None", "Nutanix"})
_PLATFORM_BACKENDS = {
    "AWS": "s3",
    "Azure": "azure",
    "GCP": "gcs",
    "OpenStack": "swift",
}


def platform_storage(platform: str) -> tuple[dict[str, Any], int]:
    """Return the default ``spec.storage`` and replica count for a platform.

    Platforms without a supported object store get no storage at all and are
    bootstrapped as Removed; unrecognised platforms fall back to emptyDir.
    """
    if platform in _NO_STORAGE_PLATFORMS:
        return {}, 1
    name = _PLATFORM_BACKENDS.get(platform, EmptyDirDriver.name)
    return {name: {}}, DRIVERS[name].default_replicas
