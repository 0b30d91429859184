from __future__ import annotations

import logging

from kubernetes import client, config
from kubernetes.config.config_exception import ConfigException

from registry_operator.src.client import ClientSet

LOGGER = logging.getLogger(__name__)

USER_AGENT = "cluster-image-registry-operator"


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Prefers the pod's service account and falls back to the local kubeconfig
    when running outside a cluster.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_client_set() -> ClientSet:
    """Return a :class:`ClientSet` sharing one ``ApiClient`` connection pool."""
    api_client = client.ApiClient()
    api_client.user_agent = USER_AGENT
    return ClientSet(api_client)
