from __future__ import annotations

import pytest

from registry_operator.src.clusterconfig import ClusterContext, build_cluster_context
from registry_operator.src.config import OperatorConfig
from registry_operator.src.errors import MultipleStoragesError, PermanentError, StorageNotConfiguredError
from registry_operator.src.storage import (
    AzureDriver,
    EmptyDirDriver,
    PVCDriver,
    S3Driver,
    generated_name,
    new_driver,
    platform_storage,
)
from registry_operator.tests.fakes import infrastructure

CONTEXT = ClusterContext(namespace="ns", platform="AWS", region="eu-west-1", infrastructure_name="demo-x7k2p")


def test_new_driver_requires_exactly_one_backend() -> None:
    with pytest.raises(StorageNotConfiguredError):
        new_driver({})
    with pytest.raises(StorageNotConfiguredError):
        new_driver(None)
    with pytest.raises(MultipleStoragesError) as excinfo:
        new_driver({"s3": {}, "emptyDir": {}})
    assert sorted(excinfo.value.names) == ["emptyDir", "s3"]

    assert isinstance(new_driver({"pvc": {}}), PVCDriver)


def test_driver_edits_storage_in_place() -> None:
    storage = {"s3": {}}
    driver = new_driver(storage)

    assert driver.complete_configuration(CONTEXT) is True
    assert storage["s3"]["region"] == "eu-west-1"
    assert storage["s3"]["bucket"].startswith("demo-x7k2p-image-registry-eu-west-1-")
    assert storage["s3"]["encrypt"] is True


def test_user_chosen_bucket_is_kept() -> None:
    storage = {"s3": {"bucket": "mine", "region": "us-east-2"}}
    assert new_driver(storage).complete_configuration(CONTEXT) is False
    assert storage["s3"]["bucket"] == "mine"
    assert storage["s3"]["region"] == "us-east-2"


def test_s3_rejects_endpoint_without_scheme() -> None:
    driver = S3Driver({"regionEndpoint": "s3.internal:9000"})
    with pytest.raises(PermanentError) as excinfo:
        driver.complete_configuration(CONTEXT)
    assert excinfo.value.reason == "InvalidStorageConfiguration"


def test_generated_names_are_deterministic_and_bounded() -> None:
    first = generated_name(CONTEXT, "s3")
    assert first == generated_name(CONTEXT, "s3")
    assert first != generated_name(CONTEXT, "gcs")
    assert len(first) <= 63

    long_context = ClusterContext(namespace="ns", infrastructure_name="x" * 80, region="r")
    assert len(generated_name(long_context, "s3")) <= 63


def test_azure_generates_account_and_container() -> None:
    config: dict[str, str] = {}
    assert AzureDriver(config).complete_configuration(CONTEXT) is True
    assert config["accountName"].startswith("imageregistry")
    assert 3 <= len(config["accountName"]) <= 24
    assert config["container"]


def test_empty_dir_and_pvc_volumes() -> None:
    volumes, mounts = EmptyDirDriver({}).volumes()
    assert volumes == [{"name": "registry-storage", "emptyDir": {}}]
    assert mounts[0]["mountPath"] == "/registry"

    pvc = PVCDriver({})
    pvc.complete_configuration(CONTEXT)
    volumes, _ = pvc.volumes()
    assert volumes[0]["persistentVolumeClaim"] == {"claimName": "image-registry-storage"}
    assert pvc.rollout_strategy == "Recreate"


def test_s3_env_mentions_bucket_and_region() -> None:
    driver = S3Driver({})
    driver.complete_configuration(CONTEXT)
    env = {e["name"]: e["value"] for e in driver.config_env()}
    assert env["REGISTRY_STORAGE"] == "s3"
    assert env["REGISTRY_STORAGE_S3_REGION"] == "eu-west-1"
    assert env["REGISTRY_STORAGE_S3_ENCRYPT"] == "true"


@pytest.mark.parametrize(
    ("platform", "expected", "replicas"),
    [
        ("AWS", {"s3": {}}, 2),
        ("GCP", {"gcs": {}}, 2),
        ("Azure", {"azure": {}}, 2),
        ("OpenStack", {"swift": {}}, 2),
        ("BareMetal", {}, 1),
        ("None", {}, 1),
        ("Libvirt", {"emptyDir": {}}, 1),
    ],
)
def test_platform_storage(platform: str, expected: dict[str, dict[str, str]], replicas: int) -> None:
    assert platform_storage(platform) == (expected, replicas)


def test_cluster_context_from_infrastructure() -> None:
    context = build_cluster_context(infrastructure("GCP", "europe-west4"), OperatorConfig(namespace="ns"))
    assert context.platform == "GCP"
    assert context.region == "europe-west4"
    assert context.infrastructure_name == "demo-x7k2p"
    assert context.namespace == "ns"

    empty = build_cluster_context(None, OperatorConfig())
    assert empty.platform == ""
    assert empty.region == ""
