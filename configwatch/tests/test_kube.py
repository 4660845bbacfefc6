from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from kubernetes.config.config_exception import ConfigException

from configwatch.src.kube import (
    build_clients,
    fingerprint_patch_body,
    load_kube_configuration,
    patch_deployment_fingerprint,
)

ANNOTATION = "configwatch.io/configuration-hash"


def test_load_kube_configuration_prefers_in_cluster() -> None:
    with (
        patch("configwatch.src.kube.config.load_incluster_config") as mock_incluster,
        patch("configwatch.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_incluster.assert_called_once()
    mock_kubeconfig.assert_not_called()


def test_load_kube_configuration_falls_back_to_kubeconfig() -> None:
    with (
        patch(
            "configwatch.src.kube.config.load_incluster_config",
            side_effect=ConfigException("not in cluster"),
        ),
        patch("configwatch.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_kubeconfig.assert_called_once()


def test_build_clients_returns_core_and_apps() -> None:
    with patch("configwatch.src.kube.client") as mock_client:
        mock_client.CoreV1Api.return_value = SimpleNamespace(name="core")
        mock_client.AppsV1Api.return_value = SimpleNamespace(name="apps")
        core, apps = build_clients()

    assert core.name == "core"
    assert apps.name == "apps"


def test_patch_body_carries_resource_version_precondition() -> None:
    assert fingerprint_patch_body(ANNOTATION, "abc", "42") == {
        "metadata": {"resourceVersion": "42"},
        "spec": {"template": {"metadata": {"annotations": {ANNOTATION: "abc"}}}},
    }


def test_patch_body_without_resource_version_is_unconditional() -> None:
    body = fingerprint_patch_body(ANNOTATION, "", None)

    assert "metadata" not in body
    assert body["spec"]["template"]["metadata"]["annotations"] == {ANNOTATION: ""}


def test_patch_deployment_fingerprint_sends_merge_patch() -> None:
    mock_apps_api = MagicMock()

    patch_deployment_fingerprint(
        apps_api=mock_apps_api,
        namespace="default",
        deployment_name="web",
        annotation_key=ANNOTATION,
        fingerprint="abc",
        resource_version="7",
        request_timeout=10,
    )

    mock_apps_api.patch_namespaced_deployment.assert_called_once_with(
        name="web",
        namespace="default",
        body=fingerprint_patch_body(ANNOTATION, "abc", "7"),
        _request_timeout=10,
    )
