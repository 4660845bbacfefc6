from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any

from kubernetes.client import ApiException, AppsV1Api, CoreV1Api
from urllib3.exceptions import HTTPError

from configwatch.src.fingerprint import compute_fingerprint
from configwatch.src.kube import patch_deployment_fingerprint
from configwatch.src.logs import bind_logger
from configwatch.src.metrics import METRICS
from configwatch.src.model import (
    ConfigKind,
    ConfigReference,
    MarkerConventions,
    WorkloadRef,
    template_annotations,
    volume_mounts,
)


class ReconcileError(Exception):
    """Base class for a reconciliation attempt that must be retried by the caller.

    ``requeue_immediately`` tells the scheduling loop whether the workload can
    be re-run right away (a lost optimistic-concurrency race) or should go
    through rate-limited backoff.
    """

    requeue_immediately = False
    reason = "error"

    def __init__(self, workload: WorkloadRef, message: str) -> None:
        super().__init__(f"{workload}: {message}")
        self.workload = workload


class WorkloadFetchError(ReconcileError):
    reason = "workload_fetch"


class DependencyFetchError(ReconcileError):
    """A mounted ConfigMap or Secret could not be read; nothing was patched."""

    reason = "dependency_fetch"

    def __init__(self, workload: WorkloadRef, reference: ConfigReference, message: str) -> None:
        super().__init__(workload, f"{reference.kind.value} {reference.name}: {message}")
        self.reference = reference


class PatchConflictError(ReconcileError):
    requeue_immediately = True
    reason = "conflict"


class PatchError(ReconcileError):
    reason = "patch"


class ReconcileCancelled(ReconcileError):
    requeue_immediately = True
    reason = "cancelled"


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of one successful reconciliation.

    ``found`` is False when the Deployment no longer exists, in which case
    nothing was evaluated.
    """

    workload: WorkloadRef
    patched: bool
    fingerprint: str | None = None
    found: bool = True


def _describe(exc: Exception) -> str:
    if isinstance(exc, ApiException):
        return f"status={exc.status} reason={exc.reason}"
    return str(exc) or type(exc).__name__


class DeploymentReconciler:
    """Keeps a Deployment's configuration fingerprint annotation in sync.

    Each call to :meth:`reconcile` is a fresh, complete evaluation: read the
    Deployment, read every ConfigMap/Secret its volumes reference, fingerprint
    the dynamic ones and patch the pod template if the stored fingerprint
    differs.  No state is kept between calls and no retries are performed;
    failures surface as :class:`ReconcileError` for the work queue to handle.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        apps_api: AppsV1Api,
        conventions: MarkerConventions | None = None,
        request_timeout: float | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.apps_api = apps_api
        self.conventions = conventions or MarkerConventions()
        self.request_timeout = request_timeout
        self.logger = logger or logging.getLogger(__name__)

    def _check_cancelled(self, ref: WorkloadRef, stop: threading.Event | None) -> None:
        if stop is not None and stop.is_set():
            raise ReconcileCancelled(ref, "reconciliation cancelled")

    def _read_deployment(self, ref: WorkloadRef) -> Any | None:
        try:
            return self.apps_api.read_namespaced_deployment(
                name=ref.name,
                namespace=ref.namespace,
                _request_timeout=self.request_timeout,
            )
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise WorkloadFetchError(ref, _describe(exc)) from exc
        except HTTPError as exc:
            raise WorkloadFetchError(ref, _describe(exc)) from exc

    def _read_config(self, ref: WorkloadRef, reference: ConfigReference) -> Any:
        if reference.kind is ConfigKind.CONFIG_MAP:
            read = self.core_api.read_namespaced_config_map
        else:
            read = self.core_api.read_namespaced_secret
        try:
            return read(
                name=reference.name,
                namespace=ref.namespace,
                _request_timeout=self.request_timeout,
            )
        except (ApiException, HTTPError) as exc:
            raise DependencyFetchError(ref, reference, _describe(exc)) from exc

    def desired_fingerprint(
        self,
        ref: WorkloadRef,
        deployment: Any,
        stop: threading.Event | None = None,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ) -> str:
        """Resolve every referenced ConfigMap/Secret and fingerprint the dynamic ones.

        All references are read, static ones included, so a missing dependency
        always fails the reconciliation instead of silently shrinking the
        fingerprint input.
        """
        log = logger or self.logger
        dynamic_versions: list[tuple[str, str]] = []
        for mount in volume_mounts(deployment):
            self._check_cancelled(ref, stop)
            resource = self._read_config(ref, mount.reference)
            if self.conventions.is_dynamic(resource):
                version = getattr(getattr(resource, "metadata", None), "resource_version", None)
                log.info(
                    "Found dynamic %s volume %s",
                    mount.reference.kind.value,
                    mount.volume_name,
                )
                dynamic_versions.append((mount.volume_name, version or ""))
            else:
                log.debug(
                    "Ignoring %s volume %s",
                    mount.reference.kind.value,
                    mount.volume_name,
                )
        return compute_fingerprint(dynamic_versions)

    def reconcile(
        self, ref: WorkloadRef, stop: threading.Event | None = None
    ) -> ReconcileResult:
        """Run one reconciliation for *ref*.

        Raises:
            WorkloadFetchError: the Deployment could not be read (other than 404).
            DependencyFetchError: a referenced ConfigMap/Secret could not be read.
            PatchConflictError: the Deployment changed between read and patch.
            PatchError: the patch failed for any other reason.
            ReconcileCancelled: *stop* was set before the patch was sent.
        """
        log = bind_logger(self.logger, workload=str(ref))
        started = time.monotonic()
        try:
            result = self._reconcile(ref, stop, log)
        except ReconcileError as exc:
            METRICS.reconcile_total.labels(result=exc.reason).inc()
            raise
        finally:
            METRICS.reconcile_duration_seconds.observe(time.monotonic() - started)

        if not result.found:
            METRICS.reconcile_total.labels(result="not_found").inc()
        elif result.patched:
            METRICS.reconcile_total.labels(result="patched").inc()
            METRICS.patches_total.inc()
        else:
            METRICS.reconcile_total.labels(result="unchanged").inc()
        return result

    def _reconcile(
        self,
        ref: WorkloadRef,
        stop: threading.Event | None,
        log: logging.LoggerAdapter,
    ) -> ReconcileResult:
        self._check_cancelled(ref, stop)
        deployment = self._read_deployment(ref)
        if deployment is None:
            log.info("Deployment no longer exists; nothing to reconcile")
            return ReconcileResult(workload=ref, patched=False, found=False)

        fingerprint = self.desired_fingerprint(ref, deployment, stop=stop, logger=log)

        annotations = template_annotations(deployment)
        current = annotations.get(self.conventions.annotation_key)
        if current == fingerprint:
            log.info("Configuration hash is already up-to-date")
            return ReconcileResult(workload=ref, patched=False, fingerprint=fingerprint)

        self._check_cancelled(ref, stop)
        resource_version = getattr(getattr(deployment, "metadata", None), "resource_version", None)
        try:
            patch_deployment_fingerprint(
                apps_api=self.apps_api,
                namespace=ref.namespace,
                deployment_name=ref.name,
                annotation_key=self.conventions.annotation_key,
                fingerprint=fingerprint,
                resource_version=resource_version,
                request_timeout=self.request_timeout,
            )
        except ApiException as exc:
            if exc.status == 409:
                raise PatchConflictError(ref, "deployment changed since it was read") from exc
            if exc.status == 404:
                log.info("Deployment was deleted before the patch was applied")
                return ReconcileResult(workload=ref, patched=False, found=False)
            raise PatchError(ref, _describe(exc)) from exc
        except HTTPError as exc:
            raise PatchError(ref, _describe(exc)) from exc

        log.info("Updated configuration hash to %r", fingerprint)
        return ReconcileResult(workload=ref, patched=True, fingerprint=fingerprint)
