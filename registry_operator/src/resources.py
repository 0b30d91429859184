from __future__ import annotations

import base64
from collections.abc import Mapping
from typing import Any

from registry_operator.src.clusterconfig import ClusterContext
from registry_operator.src.storage import PRIVATE_CONFIGURATION_SECRET, Driver

REGISTRY_NAME = "image-registry"
SERVICE_ACCOUNT = "registry"
CLUSTER_ROLE = "system:registry"
CLUSTER_ROLE_BINDING = "registry-registry-role"
SERVICE_CA_CONFIGMAP = "serviceca"
TRUSTED_CA_CONFIGMAP = "trusted-ca"
CERTIFICATES_CONFIGMAP = "image-registry-certificates"
NODE_CA_NAME = "node-ca"
TLS_SECRET = "image-registry-tls"
DEFAULT_ROUTE = "default-route"
CONTAINER_PORT = 5000
TRUSTED_CA_KEY = "ca-bundle.crt"
SERVICE_CA_KEY = "service-ca.crt"

PRUNER_NAME = "image-pruner"
PRUNER_SERVICE_ACCOUNT = "pruner"
PRUNER_CLUSTER_ROLE = "system:image-pruner"
PRUNER_CLUSTER_ROLE_BINDING = "openshift-image-registry-pruner"
PRUNER_JOB_LABEL = "created-by"

VERSION_ANNOTATION = "release.openshift.io/version"
DEPENDENCIES_ANNOTATION = "imageregistry.operator.openshift.io/dependencies-checksum"
INJECT_CABUNDLE_ANNOTATION = "service.beta.openshift.io/inject-cabundle"
INJECT_TRUSTED_CABUNDLE_LABEL = "config.openshift.io/inject-trusted-cabundle"
SERVING_CERT_ANNOTATION = "service.beta.openshift.io/serving-cert-secret-name"

REGISTRY_SELECTOR = {"docker-registry": "default"}

DEFAULT_PRUNER_SCHEDULE = "0 0 * * *"
DEFAULT_KEEP_TAG_REVISIONS = 3
DEFAULT_HISTORY_LIMIT = 3

_LOG_LEVELS = {"Debug": "debug", "Trace": "debug", "TraceAll": "debug"}
_PRUNER_LOG_LEVELS = {"Normal": 2, "Debug": 4, "Trace": 6, "TraceAll": 8}


def owner_reference(owner: Mapping[str, Any]) -> list[dict[str, Any]]:
    """Return ownerReferences pointing at ``owner``, or none if it has no uid yet."""
    metadata = owner.get("metadata") or {}
    if not metadata.get("uid"):
        return []
    return [
        {
            "apiVersion": owner.get("apiVersion", "imageregistry.operator.openshift.io/v1"),
            "kind": owner.get("kind", "Config"),
            "name": metadata["name"],
            "uid": metadata["uid"],
        }
    ]


def _metadata(
    name: str,
    owner: Mapping[str, Any],
    namespace: str | None = None,
    labels: dict[str, str] | None = None,
    annotations: dict[str, str] | None = None,
) -> dict[str, Any]:
    metadata: dict[str, Any] = {"name": name}
    if namespace:
        metadata["namespace"] = namespace
    if labels:
        metadata["labels"] = labels
    if annotations:
        metadata["annotations"] = annotations
    owners = owner_reference(owner)
    if owners:
        metadata["ownerReferences"] = owners
    return metadata


# -- registry -----------------------------------------------------------------


def registry_cluster_role(owner: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "ClusterRole",
        "metadata": _metadata(CLUSTER_ROLE, owner),
        "rules": [
            {"apiGroups": [""], "resources": ["limitranges", "resourcequotas"], "verbs": ["list"]},
            {
                "apiGroups": ["image.openshift.io"],
                "resources": ["imagestreamimages", "imagestreams/layers", "imagestreams/secrets"],
                "verbs": ["get"],
            },
            {"apiGroups": ["image.openshift.io"], "resources": ["imagestreams"], "verbs": ["list", "get", "update"]},
            {"apiGroups": ["image.openshift.io"], "resources": ["imagestreamtags"], "verbs": ["get", "delete"]},
            {"apiGroups": ["image.openshift.io"], "resources": ["images"], "verbs": ["get", "update", "create"]},
            {"apiGroups": ["image.openshift.io"], "resources": ["imagestreammappings"], "verbs": ["create"]},
            {
                "apiGroups": ["operator.openshift.io"],
                "resources": ["imagecontentsourcepolicies"],
                "verbs": ["list"],
            },
        ],
    }


def registry_cluster_role_binding(owner: Mapping[str, Any], namespace: str) -> dict[str, Any]:
    return {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "ClusterRoleBinding",
        "metadata": _metadata(CLUSTER_ROLE_BINDING, owner),
        "roleRef": {"apiGroup": "rbac.authorization.k8s.io", "kind": "ClusterRole", "name": CLUSTER_ROLE},
        "subjects": [{"kind": "ServiceAccount", "name": SERVICE_ACCOUNT, "namespace": namespace}],
    }


def service_account(name: str, owner: Mapping[str, Any], namespace: str) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "ServiceAccount",
        "metadata": _metadata(name, owner, namespace),
    }


def service_ca_config_map(owner: Mapping[str, Any], namespace: str) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": _metadata(
            SERVICE_CA_CONFIGMAP,
            owner,
            namespace,
            annotations={INJECT_CABUNDLE_ANNOTATION: "true"},
        ),
    }


def trusted_ca_config_map(owner: Mapping[str, Any], namespace: str) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": _metadata(
            TRUSTED_CA_CONFIGMAP,
            owner,
            namespace,
            labels={INJECT_TRUSTED_CABUNDLE_LABEL: "true"},
        ),
    }


def private_configuration_secret(
    owner: Mapping[str, Any], namespace: str, http_secret: str
) -> dict[str, Any]:
    encoded = base64.b64encode(http_secret.encode("utf-8")).decode("ascii")
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "type": "Opaque",
        "metadata": _metadata(PRIVATE_CONFIGURATION_SECRET, owner, namespace),
        "data": {"REGISTRY_HTTP_SECRET": encoded},
    }


def registry_service(owner: Mapping[str, Any], namespace: str) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _metadata(
            REGISTRY_NAME,
            owner,
            namespace,
            labels=dict(REGISTRY_SELECTOR),
            annotations={SERVING_CERT_ANNOTATION: TLS_SECRET},
        ),
        "spec": {
            "type": "ClusterIP",
            "selector": dict(REGISTRY_SELECTOR),
            "ports": [
                {
                    "name": f"{CONTAINER_PORT}-tcp",
                    "port": CONTAINER_PORT,
                    "protocol": "TCP",
                    "targetPort": CONTAINER_PORT,
                }
            ],
        },
    }


def registry_log_level(spec: Mapping[str, Any]) -> str:
    return _LOG_LEVELS.get(spec.get("logLevel", "Normal"), "info")


def _probe(initial_delay: int) -> dict[str, Any]:
    return {
        "httpGet": {"path": "/healthz", "port": CONTAINER_PORT, "scheme": "HTTPS"},
        "initialDelaySeconds": initial_delay,
        "timeoutSeconds": 5,
    }


def registry_deployment(
    owner: Mapping[str, Any],
    context: ClusterContext,
    driver: Driver,
    dependencies_checksum: str,
) -> dict[str, Any]:
    """Build the registry Deployment for ``owner``'s spec.

    ``dependencies_checksum`` lands on the pod template so a change in any
    mounted ConfigMap or Secret rolls the pods.
    """
    spec = owner.get("spec") or {}
    namespace = context.namespace
    env = list(driver.config_env())
    env.extend(
        [
            {"name": "REGISTRY_HTTP_ADDR", "value": f":{CONTAINER_PORT}"},
            {"name": "REGISTRY_HTTP_NET", "value": "tcp"},
            {
                "name": "REGISTRY_HTTP_SECRET",
                "valueFrom": {
                    "secretKeyRef": {"name": PRIVATE_CONFIGURATION_SECRET, "key": "REGISTRY_HTTP_SECRET"}
                },
            },
            {"name": "REGISTRY_LOG_LEVEL", "value": registry_log_level(spec)},
            {"name": "REGISTRY_OPENSHIFT_QUOTA_ENABLED", "value": "true"},
            {"name": "REGISTRY_STORAGE_CACHE_BLOBDESCRIPTOR", "value": "inmemory"},
            {"name": "REGISTRY_STORAGE_DELETE_ENABLED", "value": "true"},
            {"name": "REGISTRY_HEALTH_STORAGEDRIVER_ENABLED", "value": "true"},
            {"name": "REGISTRY_HEALTH_STORAGEDRIVER_INTERVAL", "value": "10s"},
            {"name": "REGISTRY_HEALTH_STORAGEDRIVER_THRESHOLD", "value": "1"},
            {"name": "REGISTRY_OPENSHIFT_METRICS_ENABLED", "value": "true"},
            {
                "name": "REGISTRY_OPENSHIFT_SERVER_ADDR",
                "value": f"{REGISTRY_NAME}.{namespace}.svc:{CONTAINER_PORT}",
            },
            {"name": "REGISTRY_HTTP_TLS_CERTIFICATE", "value": "/etc/secrets/tls.crt"},
            {"name": "REGISTRY_HTTP_TLS_KEY", "value": "/etc/secrets/tls.key"},
        ]
    )
    if spec.get("readOnly"):
        env.append({"name": "REGISTRY_STORAGE_MAINTENANCE_READONLY", "value": "{enabled: true}"})
    if spec.get("disableRedirect"):
        env.append({"name": "REGISTRY_STORAGE_REDIRECT_DISABLE", "value": "true"})
    proxy = spec.get("proxy") or {}
    for field, name in (("http", "HTTP_PROXY"), ("https", "HTTPS_PROXY"), ("noProxy", "NO_PROXY")):
        if proxy.get(field):
            env.append({"name": name, "value": proxy[field]})

    volumes, mounts = driver.volumes()
    volumes = list(volumes) + [
        {"name": "registry-tls", "projected": {"sources": [{"secret": {"name": TLS_SECRET}}]}},
        {
            "name": "ca-trust-extracted",
            "emptyDir": {},
        },
        {
            "name": "registry-certificates",
            "configMap": {"name": CERTIFICATES_CONFIGMAP, "optional": True},
        },
        {
            "name": "trusted-ca",
            "configMap": {
                "name": TRUSTED_CA_CONFIGMAP,
                "optional": True,
                "items": [{"key": TRUSTED_CA_KEY, "path": "tls-ca-bundle.pem"}],
            },
        },
    ]
    mounts = list(mounts) + [
        {"name": "registry-tls", "mountPath": "/etc/secrets"},
        {"name": "ca-trust-extracted", "mountPath": "/etc/pki/ca-trust/extracted"},
        {"name": "registry-certificates", "mountPath": "/etc/pki/ca-trust/source/anchors"},
        {"name": "trusted-ca", "mountPath": "/usr/share/pki/ca-trust-source"},
    ]

    pod_spec: dict[str, Any] = {
        "serviceAccountName": SERVICE_ACCOUNT,
        "priorityClassName": "system-cluster-critical",
        "containers": [
            {
                "name": "registry",
                "image": context.image,
                "ports": [{"containerPort": CONTAINER_PORT, "protocol": "TCP"}],
                "env": env,
                "volumeMounts": mounts,
                "livenessProbe": _probe(5),
                "readinessProbe": _probe(15),
                "resources": spec.get("resources") or {"requests": {"cpu": "100m", "memory": "256Mi"}},
                "terminationMessagePolicy": "FallbackToLogsOnError",
            }
        ],
        "volumes": volumes,
    }
    for field in ("nodeSelector", "tolerations", "affinity", "topologySpreadConstraints"):
        if spec.get(field):
            pod_spec[field] = spec[field]

    labels = dict(REGISTRY_SELECTOR)
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": _metadata(
            REGISTRY_NAME,
            owner,
            namespace,
            labels=labels,
            annotations={VERSION_ANNOTATION: context.release_version},
        ),
        "spec": {
            "replicas": int(spec.get("replicas", 1)),
            "selector": {"matchLabels": labels},
            "strategy": {"type": spec.get("rolloutStrategy") or driver.rollout_strategy},
            "template": {
                "metadata": {
                    "labels": labels,
                    "annotations": {DEPENDENCIES_ANNOTATION: dependencies_checksum},
                },
                "spec": pod_spec,
            },
        },
    }


def registry_route(
    owner: Mapping[str, Any],
    namespace: str,
    name: str,
    hostname: str = "",
    certificate: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    tls: dict[str, Any] = {"termination": "reencrypt"}
    if certificate:
        for key in ("certificate", "key", "caCertificate"):
            if certificate.get(key):
                tls[key] = certificate[key]
    spec: dict[str, Any] = {
        "to": {"kind": "Service", "name": REGISTRY_NAME},
        "port": {"targetPort": f"{CONTAINER_PORT}-tcp"},
        "tls": tls,
    }
    if hostname:
        spec["host"] = hostname
    return {
        "apiVersion": "route.openshift.io/v1",
        "kind": "Route",
        "metadata": _metadata(name, owner, namespace, labels=dict(REGISTRY_SELECTOR)),
        "spec": spec,
    }


def certificates_config_map(
    owner: Mapping[str, Any], namespace: str, data: Mapping[str, str]
) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": _metadata(CERTIFICATES_CONFIGMAP, owner, namespace),
        "data": dict(sorted(data.items())),
    }


# -- node CA daemon -----------------------------------------------------------

# Keys in the certificates ConfigMap spell the port as "..5000"; the
# container runtime expects "host:5000" directories.
_NODE_CA_SCRIPT = """\
trap 'jobs -p | xargs -r kill; echo shutting down node-ca; exit 0' TERM
while true; do
  for f in $(ls /tmp/serviceca); do
    ca_file_path="/tmp/serviceca/${f}"
    f=$(echo $f | sed -r 's/(.*)\\.\\./\\1:/')
    reg_dir_path="/etc/docker/certs.d/${f}"
    if [ -e "${reg_dir_path}" ]; then
      cp -u $ca_file_path $reg_dir_path/ca.crt
    else
      mkdir $reg_dir_path
      cp $ca_file_path $reg_dir_path/ca.crt
    fi
  done
  for d in $(ls /etc/docker/certs.d); do
    dp=$(echo $d | sed -r 's/(.*):/\\1\\.\\./')
    if [ ! -e "/tmp/serviceca/${dp}" ]; then
      rm -rf /etc/docker/certs.d/$d
    fi
  done
  sleep 60 & wait ${!}
done
"""


def node_ca_service_account(namespace: str) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "ServiceAccount",
        "metadata": _metadata(NODE_CA_NAME, {}, namespace),
    }


def node_ca_daemon_set(namespace: str, image: str) -> dict[str, Any]:
    """Build the DaemonSet that copies the registry CAs onto every node.

    It is not owned by the registry Config: nodes keep trusting the registry
    hostnames for as long as the certificates ConfigMap lists them.
    """
    labels = {"name": NODE_CA_NAME}
    return {
        "apiVersion": "apps/v1",
        "kind": "DaemonSet",
        "metadata": _metadata(NODE_CA_NAME, {}, namespace),
        "spec": {
            "selector": {"matchLabels": dict(labels)},
            "updateStrategy": {"type": "RollingUpdate", "rollingUpdate": {"maxUnavailable": "10%"}},
            "template": {
                "metadata": {
                    "labels": dict(labels),
                    "annotations": {
                        "target.workload.openshift.io/management": '{"effect": "PreferredDuringScheduling"}',
                        "openshift.io/required-scc": "privileged",
                    },
                },
                "spec": {
                    "nodeSelector": {"kubernetes.io/os": "linux"},
                    "priorityClassName": "system-cluster-critical",
                    "tolerations": [{"operator": "Exists"}],
                    "hostNetwork": True,
                    "serviceAccountName": NODE_CA_NAME,
                    "containers": [
                        {
                            "name": NODE_CA_NAME,
                            "image": image,
                            "command": ["/bin/sh", "-c", _NODE_CA_SCRIPT],
                            "securityContext": {
                                "readOnlyRootFilesystem": True,
                                "privileged": True,
                                "runAsUser": 1001,
                                "runAsGroup": 0,
                            },
                            "resources": {"requests": {"cpu": "10m", "memory": "10Mi"}},
                            "terminationMessagePolicy": "FallbackToLogsOnError",
                            "volumeMounts": [
                                {"name": "serviceca", "mountPath": "/tmp/serviceca"},
                                {"name": "host", "mountPath": "/etc/docker/certs.d"},
                            ],
                        }
                    ],
                    "volumes": [
                        {"name": "host", "hostPath": {"path": "/etc/docker/certs.d"}},
                        {"name": "serviceca", "configMap": {"name": CERTIFICATES_CONFIGMAP}},
                    ],
                },
            },
        },
    }


# -- pruner -------------------------------------------------------------------


def pruner_cluster_role(owner: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "ClusterRole",
        "metadata": _metadata(PRUNER_CLUSTER_ROLE, owner),
        "rules": [
            {"apiGroups": [""], "resources": ["pods", "replicationcontrollers"], "verbs": ["list"]},
            {"apiGroups": [""], "resources": ["limitranges"], "verbs": ["list"]},
            {"apiGroups": ["build.openshift.io"], "resources": ["buildconfigs", "builds"], "verbs": ["list"]},
            {"apiGroups": ["apps.openshift.io"], "resources": ["deploymentconfigs"], "verbs": ["list"]},
            {"apiGroups": ["batch"], "resources": ["jobs", "cronjobs"], "verbs": ["list"]},
            {
                "apiGroups": ["apps"],
                "resources": ["daemonsets", "deployments", "replicasets", "statefulsets"],
                "verbs": ["list"],
            },
            {"apiGroups": ["image.openshift.io"], "resources": ["images"], "verbs": ["delete", "get", "list"]},
            {"apiGroups": ["image.openshift.io"], "resources": ["imagestreams"], "verbs": ["get", "list"]},
            {"apiGroups": ["image.openshift.io"], "resources": ["imagestreams/status"], "verbs": ["update"]},
        ],
    }


def pruner_cluster_role_binding(owner: Mapping[str, Any], namespace: str) -> dict[str, Any]:
    return {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "ClusterRoleBinding",
        "metadata": _metadata(PRUNER_CLUSTER_ROLE_BINDING, owner),
        "roleRef": {
            "apiGroup": "rbac.authorization.k8s.io",
            "kind": "ClusterRole",
            "name": PRUNER_CLUSTER_ROLE,
        },
        "subjects": [{"kind": "ServiceAccount", "name": PRUNER_SERVICE_ACCOUNT, "namespace": namespace}],
    }


def pruner_cron_job(
    owner: Mapping[str, Any], context: ClusterContext, registry_managed: bool
) -> dict[str, Any]:
    spec = owner.get("spec") or {}
    args = [
        "adm",
        "prune",
        "images",
        "--confirm=true",
        f"--certificate-authority=/var/run/configmaps/{SERVICE_CA_CONFIGMAP}/{SERVICE_CA_KEY}",
        f"--keep-tag-revisions={spec.get('keepTagRevisions', DEFAULT_KEEP_TAG_REVISIONS)}",
        f"--keep-younger-than={spec.get('keepYoungerThanDuration') or '60m'}",
        f"--ignore-invalid-refs={str(bool(spec.get('ignoreInvalidImageReferences', True))).lower()}",
        f"--loglevel={_PRUNER_LOG_LEVELS.get(spec.get('logLevel', 'Normal'), 2)}",
    ]
    if registry_managed:
        args += [
            "--prune-registry=true",
            f"--registry-url=https://{REGISTRY_NAME}.{context.namespace}.svc:{CONTAINER_PORT}",
        ]
    else:
        args.append("--prune-registry=false")

    pod_spec: dict[str, Any] = {
        "restartPolicy": "OnFailure",
        "serviceAccountName": PRUNER_SERVICE_ACCOUNT,
        "volumes": [{"name": SERVICE_CA_CONFIGMAP, "configMap": {"name": SERVICE_CA_CONFIGMAP}}],
        "containers": [
            {
                "name": PRUNER_NAME,
                "image": context.pruner_image,
                "command": ["oc"],
                "args": args,
                "resources": spec.get("resources") or {"requests": {"cpu": "100m", "memory": "256Mi"}},
                "volumeMounts": [
                    {
                        "name": SERVICE_CA_CONFIGMAP,
                        "mountPath": f"/var/run/configmaps/{SERVICE_CA_CONFIGMAP}",
                        "readOnly": True,
                    }
                ],
                "terminationMessagePolicy": "FallbackToLogsOnError",
            }
        ],
    }
    for field in ("nodeSelector", "tolerations", "affinity"):
        if spec.get(field):
            pod_spec[field] = spec[field]

    return {
        "apiVersion": "batch/v1",
        "kind": "CronJob",
        "metadata": _metadata(PRUNER_NAME, owner, context.namespace),
        "spec": {
            "schedule": spec.get("schedule") or DEFAULT_PRUNER_SCHEDULE,
            "suspend": bool(spec.get("suspend", False)),
            "concurrencyPolicy": "Forbid",
            "successfulJobsHistoryLimit": spec.get("successfulJobsHistoryLimit", DEFAULT_HISTORY_LIMIT),
            "failedJobsHistoryLimit": spec.get("failedJobsHistoryLimit", DEFAULT_HISTORY_LIMIT),
            "jobTemplate": {
                "metadata": {"labels": {PRUNER_JOB_LABEL: PRUNER_NAME}},
                "spec": {
                    "template": {
                        "metadata": {"labels": {PRUNER_JOB_LABEL: PRUNER_NAME}},
                        "spec": pod_spec,
                    },
                },
            },
        },
    }
