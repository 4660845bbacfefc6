from __future__ import annotations

import logging
from typing import Any

from kubernetes import client, config
from kubernetes.client import AppsV1Api, CoreV1Api
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, AppsV1Api]:
    """Return CoreV1 and AppsV1 API clients using the active kube configuration."""
    return client.CoreV1Api(), client.AppsV1Api()


def fingerprint_patch_body(
    annotation_key: str,
    fingerprint: str,
    resource_version: str | None,
) -> dict[str, Any]:
    """Build the minimal merge patch that sets only the fingerprint annotation.

    When ``resource_version`` is given it is sent as ``metadata.resourceVersion``;
    the API server treats it as a precondition and answers ``409 Conflict``
    if the Deployment changed since it was read.
    """
    body: dict[str, Any] = {
        "spec": {
            "template": {
                "metadata": {
                    "annotations": {annotation_key: fingerprint}
                }
            }
        }
    }
    if resource_version:
        body["metadata"] = {"resourceVersion": resource_version}
    return body


def patch_deployment_fingerprint(
    apps_api: AppsV1Api,
    namespace: str,
    deployment_name: str,
    annotation_key: str,
    fingerprint: str,
    resource_version: str | None,
    request_timeout: float | None = None,
) -> None:
    """Patch a Deployment's pod template fingerprint annotation.

    Changing a pod template annotation makes the Deployment controller roll
    new pods, the same mechanism ``kubectl rollout restart`` relies on.
    """
    apps_api.patch_namespaced_deployment(
        name=deployment_name,
        namespace=namespace,
        body=fingerprint_patch_body(annotation_key, fingerprint, resource_version),
        _request_timeout=request_timeout,
    )
