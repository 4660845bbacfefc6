from __future__ import annotations

import hashlib
import logging
import threading
from unittest.mock import MagicMock

import pytest
from kubernetes.client import ApiException
from urllib3.exceptions import MaxRetryError

from configwatch.src.model import ConfigKind, MarkerConventions, WorkloadRef
from configwatch.src.reconciler import (
    DependencyFetchError,
    DeploymentReconciler,
    PatchConflictError,
    PatchError,
    ReconcileCancelled,
    WorkloadFetchError,
)

ANNOTATION_KEY = "configwatch.io/configuration-hash"
WEB = WorkloadRef("default", "web")


def _sha256(payload: str) -> str:
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _make_reconciler(cluster, **kwargs) -> DeploymentReconciler:
    return DeploymentReconciler(core_api=cluster, apps_api=cluster, **kwargs)


# ---------------------------------------------------------------------------
# Fingerprint resolution
# ---------------------------------------------------------------------------


def test_static_and_dynamic_configmaps_scenario(cluster) -> None:
    cluster.add_config_map("c1")
    c2 = cluster.add_config_map("c2", dynamic=True)
    cluster.add_deployment(
        "web",
        volumes=[
            cluster.config_map_volume("C1-mount", "c1"),
            cluster.config_map_volume("C2-mount", "c2"),
        ],
    )
    reconciler = _make_reconciler(cluster)

    first = reconciler.reconcile(WEB)

    v1 = c2.metadata.resource_version
    assert first.patched is True
    assert cluster.fingerprint_of("web") == _sha256(f"C2-mount={v1};")

    cluster.update_config_map("c2")
    second = reconciler.reconcile(WEB)

    v2 = c2.metadata.resource_version
    assert v2 != v1
    assert second.patched is True
    assert cluster.fingerprint_of("web") == _sha256(f"C2-mount={v2};")


def test_static_configmap_update_does_not_change_fingerprint(cluster) -> None:
    cluster.add_config_map("c1")
    cluster.add_config_map("c2", dynamic=True)
    cluster.add_deployment(
        "web",
        volumes=[
            cluster.config_map_volume("C1-mount", "c1"),
            cluster.config_map_volume("C2-mount", "c2"),
        ],
    )
    reconciler = _make_reconciler(cluster)
    reconciler.reconcile(WEB)
    before = cluster.fingerprint_of("web")

    cluster.update_config_map("c1")
    result = reconciler.reconcile(WEB)

    assert result.patched is False
    assert cluster.fingerprint_of("web") == before
    assert len(cluster.patches) == 1


def test_dynamic_secret_participates_in_fingerprint(cluster) -> None:
    secret = cluster.add_secret("creds", dynamic=True)
    cluster.add_deployment("web", volumes=[cluster.secret_volume("creds-volume", "creds")])

    result = _make_reconciler(cluster).reconcile(WEB)

    expected = _sha256(f"creds-volume={secret.metadata.resource_version};")
    assert result.patched is True
    assert result.fingerprint == expected
    assert cluster.fingerprint_of("web") == expected


def test_mixed_kinds_are_fingerprinted_in_declared_order(cluster) -> None:
    secret = cluster.add_secret("creds", dynamic=True)
    config_map = cluster.add_config_map("settings", dynamic=True)
    cluster.add_deployment(
        "web",
        volumes=[
            cluster.secret_volume("b-creds", "creds"),
            cluster.empty_dir_volume("tmp"),
            cluster.config_map_volume("a-settings", "settings"),
        ],
    )

    result = _make_reconciler(cluster).reconcile(WEB)

    assert result.fingerprint == _sha256(
        f"b-creds={secret.metadata.resource_version};"
        f"a-settings={config_map.metadata.resource_version};"
    )


def test_reordering_volumes_changes_fingerprint(cluster) -> None:
    cluster.add_config_map("one", dynamic=True)
    cluster.add_config_map("two", dynamic=True)
    volumes = [
        cluster.config_map_volume("one-volume", "one"),
        cluster.config_map_volume("two-volume", "two"),
    ]
    cluster.add_deployment("web", volumes=list(volumes))
    reconciler = _make_reconciler(cluster)
    first = reconciler.reconcile(WEB).fingerprint

    cluster.deployments[("default", "web")].spec.template.spec.volumes = list(reversed(volumes))
    second = reconciler.reconcile(WEB)

    assert second.patched is True
    assert second.fingerprint != first


def test_workload_without_dynamic_mounts_gets_empty_annotation(cluster) -> None:
    cluster.add_config_map("static")
    cluster.add_deployment("web", volumes=[cluster.config_map_volume("static", "static")])

    result = _make_reconciler(cluster).reconcile(WEB)

    assert result.patched is True
    assert result.fingerprint == ""
    assert cluster.fingerprint_of("web") == ""


def test_workload_without_volumes_gets_empty_annotation(cluster) -> None:
    cluster.add_deployment("web", volumes=[])

    _make_reconciler(cluster).reconcile(WEB)

    assert cluster.fingerprint_of("web") == ""


def test_non_sentinel_marker_value_is_static(cluster) -> None:
    cluster.add_config_map("almost", dynamic=True, label_value="true")
    cluster.add_deployment("web", volumes=[cluster.config_map_volume("almost", "almost")])

    result = _make_reconciler(cluster).reconcile(WEB)

    assert result.fingerprint == ""


def test_custom_conventions_are_honoured(cluster) -> None:
    config_map = cluster.add_config_map("settings")
    config_map.metadata.labels = {"example.com/reload": "yes"}
    cluster.add_deployment("web", volumes=[cluster.config_map_volume("settings", "settings")])
    conventions = MarkerConventions(
        config_label_key="example.com/reload",
        marker_value="yes",
        annotation_key="example.com/hash",
    )

    result = _make_reconciler(cluster, conventions=conventions).reconcile(WEB)

    annotations = cluster.deployments[("default", "web")].spec.template.metadata.annotations
    assert annotations["example.com/hash"] == result.fingerprint
    assert result.fingerprint == _sha256(f"settings={config_map.metadata.resource_version};")
    assert ANNOTATION_KEY not in annotations


# ---------------------------------------------------------------------------
# Idempotence and patch shape
# ---------------------------------------------------------------------------


def test_second_reconcile_without_changes_is_not_patched(cluster) -> None:
    cluster.add_config_map("settings", dynamic=True)
    cluster.add_deployment("web", volumes=[cluster.config_map_volume("settings", "settings")])
    reconciler = _make_reconciler(cluster)

    first = reconciler.reconcile(WEB)
    second = reconciler.reconcile(WEB)

    assert first.patched is True
    assert second.patched is False
    assert second.fingerprint == first.fingerprint
    assert len(cluster.patches) == 1


def test_patch_only_sets_fingerprint_annotation_with_resource_version(cluster) -> None:
    cluster.add_config_map("settings", dynamic=True)
    deployment = cluster.add_deployment(
        "web",
        volumes=[cluster.config_map_volume("settings", "settings")],
        annotations={"team": "payments"},
    )
    read_version = deployment.metadata.resource_version

    _make_reconciler(cluster).reconcile(WEB)

    _, _, body = cluster.patches[0]
    assert body["metadata"] == {"resourceVersion": read_version}
    assert list(body["spec"]["template"]["metadata"]["annotations"]) == [ANNOTATION_KEY]
    annotations = cluster.deployments[("default", "web")].spec.template.metadata.annotations
    assert annotations["team"] == "payments"


def test_passes_request_timeout_to_every_call() -> None:
    core_api = MagicMock()
    apps_api = MagicMock()
    deployment = MagicMock()
    deployment.metadata.resource_version = "5"
    deployment.spec.template.metadata.annotations = {}
    deployment.spec.template.spec.volumes = [
        MagicMock(config_map=MagicMock(), secret=None),
    ]
    deployment.spec.template.spec.volumes[0].name = "settings"
    deployment.spec.template.spec.volumes[0].config_map.name = "settings"
    apps_api.read_namespaced_deployment.return_value = deployment
    core_api.read_namespaced_config_map.return_value.metadata.labels = {}

    DeploymentReconciler(core_api, apps_api, request_timeout=7).reconcile(WEB)

    assert apps_api.read_namespaced_deployment.call_args.kwargs["_request_timeout"] == 7
    assert core_api.read_namespaced_config_map.call_args.kwargs["_request_timeout"] == 7
    assert apps_api.patch_namespaced_deployment.call_args.kwargs["_request_timeout"] == 7


# ---------------------------------------------------------------------------
# Error taxonomy
# ---------------------------------------------------------------------------


def test_missing_deployment_is_a_noop(cluster) -> None:
    result = _make_reconciler(cluster).reconcile(WorkloadRef("default", "gone"))

    assert result.found is False
    assert result.patched is False
    assert cluster.patches == []


def test_deployment_read_failure_raises(cluster) -> None:
    cluster.add_deployment("web")
    cluster.read_errors[("default", "web")] = ApiException(status=500, reason="boom")

    with pytest.raises(WorkloadFetchError) as excinfo:
        _make_reconciler(cluster).reconcile(WEB)

    assert excinfo.value.workload == WEB
    assert excinfo.value.requeue_immediately is False


def test_deleted_dynamic_dependency_fails_without_patch(cluster) -> None:
    cluster.add_config_map("settings", dynamic=True)
    cluster.add_deployment("web", volumes=[cluster.config_map_volume("settings", "settings")])
    reconciler = _make_reconciler(cluster)
    reconciler.reconcile(WEB)
    before = cluster.fingerprint_of("web")

    del cluster.config_maps[("default", "settings")]
    with pytest.raises(DependencyFetchError) as excinfo:
        reconciler.reconcile(WEB)

    assert excinfo.value.reference.kind is ConfigKind.CONFIG_MAP
    assert excinfo.value.reference.name == "settings"
    assert cluster.fingerprint_of("web") == before
    assert len(cluster.patches) == 1


def test_missing_static_dependency_also_fails_closed(cluster) -> None:
    cluster.add_config_map("dynamic", dynamic=True)
    cluster.add_deployment(
        "web",
        volumes=[
            cluster.config_map_volume("dynamic", "dynamic"),
            cluster.secret_volume("static", "never-created"),
        ],
    )

    with pytest.raises(DependencyFetchError):
        _make_reconciler(cluster).reconcile(WEB)

    assert cluster.patches == []
    assert cluster.fingerprint_of("web") is None


def test_transport_error_on_dependency_is_a_fetch_error(cluster) -> None:
    cluster.add_config_map("settings", dynamic=True)
    cluster.add_deployment("web", volumes=[cluster.config_map_volume("settings", "settings")])
    cluster.read_errors[("default", "settings")] = MaxRetryError(None, "/api", "timed out")

    with pytest.raises(DependencyFetchError):
        _make_reconciler(cluster).reconcile(WEB)


def test_conflicting_patch_surfaces_retryable_error(cluster) -> None:
    cluster.add_config_map("settings", dynamic=True)
    cluster.add_deployment("web", volumes=[cluster.config_map_volume("settings", "settings")])

    def concurrent_edit(namespace: str, name: str) -> None:
        cluster.deployments[(namespace, name)].metadata.resource_version = "999"

    cluster.before_patch = concurrent_edit

    with pytest.raises(PatchConflictError) as excinfo:
        _make_reconciler(cluster).reconcile(WEB)

    assert excinfo.value.requeue_immediately is True
    assert cluster.fingerprint_of("web") is None


def test_conflict_is_not_retried_internally(cluster) -> None:
    cluster.add_deployment("web")
    cluster.patch_error = ApiException(status=409, reason="Conflict")
    calls: list[str] = []
    cluster.before_patch = lambda namespace, name: calls.append(name)

    with pytest.raises(PatchConflictError):
        _make_reconciler(cluster).reconcile(WEB)

    assert calls == ["web"]


def test_other_patch_failures_raise_patch_error(cluster) -> None:
    cluster.add_deployment("web")
    cluster.patch_error = ApiException(status=500, reason="boom")

    with pytest.raises(PatchError) as excinfo:
        _make_reconciler(cluster).reconcile(WEB)

    assert excinfo.value.requeue_immediately is False


def test_deployment_deleted_before_patch_is_a_noop(cluster) -> None:
    cluster.add_deployment("web")
    cluster.before_patch = lambda namespace, name: cluster.deployments.pop((namespace, name))

    result = _make_reconciler(cluster).reconcile(WEB)

    assert result.found is False
    assert result.patched is False


def test_cancelled_reconcile_never_patches(cluster) -> None:
    cluster.add_config_map("settings", dynamic=True)
    cluster.add_deployment("web", volumes=[cluster.config_map_volume("settings", "settings")])
    stop = threading.Event()
    stop.set()

    with pytest.raises(ReconcileCancelled) as excinfo:
        _make_reconciler(cluster).reconcile(WEB, stop=stop)

    assert excinfo.value.requeue_immediately is True
    assert cluster.patches == []


def test_cancellation_between_reads_aborts_before_patch(cluster) -> None:
    cluster.add_config_map("one", dynamic=True)
    cluster.add_config_map("two", dynamic=True)
    cluster.add_deployment(
        "web",
        volumes=[
            cluster.config_map_volume("one", "one"),
            cluster.config_map_volume("two", "two"),
        ],
    )
    stop = threading.Event()
    original_read = cluster.read_namespaced_config_map

    def read_then_cancel(name: str, namespace: str, **kwargs):
        stop.set()
        return original_read(name=name, namespace=namespace, **kwargs)

    cluster.read_namespaced_config_map = read_then_cancel

    with pytest.raises(ReconcileCancelled):
        _make_reconciler(cluster).reconcile(WEB, stop=stop)

    assert cluster.patches == []


def test_logs_carry_workload_context(cluster, caplog: pytest.LogCaptureFixture) -> None:
    cluster.add_deployment("web")

    with caplog.at_level(logging.INFO):
        _make_reconciler(cluster, logger=logging.getLogger("test.reconciler")).reconcile(WEB)

    records = [r for r in caplog.records if r.name == "test.reconciler"]
    assert records
    assert all(r.context["workload"] == "default/web" for r in records)
