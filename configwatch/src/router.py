from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from typing import Any

from kubernetes.client import ApiException, AppsV1Api
from urllib3.exceptions import HTTPError

from configwatch.src.metrics import METRICS
from configwatch.src.model import (
    ConfigKind,
    MarkerConventions,
    WorkloadRef,
    volume_mounts,
    workload_ref,
)

_INDEX_KEY = tuple[str, ConfigKind, str]


def admit_config_event(event_type: str, obj: Any, conventions: MarkerConventions) -> bool:
    """Decide whether a ConfigMap/Secret watch event should reach the router.

    Only ``ADDED`` and ``MODIFIED`` events for objects that carry the dynamic
    marker in their new state pass.  ``DELETED`` never does: the resource
    cannot be fingerprinted anymore and dependent workloads will surface a
    fetch error on their next reconciliation.
    """
    if event_type not in {"ADDED", "MODIFIED"}:
        return False
    if getattr(obj, "metadata", None) is None:
        return False
    return conventions.is_dynamic(obj)


def admit_workload_event(
    event_type: str,
    previous_generation: int | None,
    deployment: Any,
    conventions: MarkerConventions,
) -> bool:
    """Decide whether a Deployment watch event should schedule a reconciliation.

    The Deployment must carry the watch-enabled marker.  ``ADDED`` always
    passes; ``MODIFIED`` passes only when ``metadata.generation`` moved, so
    status-only updates are ignored.  An unknown previous generation counts
    as a change.
    """
    if event_type not in {"ADDED", "MODIFIED"}:
        return False
    if not conventions.is_watch_enabled(deployment):
        return False
    if event_type == "ADDED" or previous_generation is None:
        return True
    generation = getattr(getattr(deployment, "metadata", None), "generation", None)
    return generation != previous_generation


def _references(deployment: Any) -> set[tuple[ConfigKind, str]]:
    return {(mount.reference.kind, mount.reference.name) for mount in volume_mounts(deployment)}


class WorkloadIndex:
    """In-memory reverse index ``(namespace, kind, name) -> {WorkloadRef}``.

    Maintained incrementally from Deployment watch events so a ConfigMap or
    Secret change resolves its dependents without listing the namespace.
    Only watch-enabled Deployments are indexed.  ``synced`` is set once the
    index has been seeded from a full listing; before that the router does
    not trust it.
    """

    def __init__(self, conventions: MarkerConventions | None = None) -> None:
        self.conventions = conventions or MarkerConventions()
        self._lock = threading.Lock()
        self._by_resource: dict[_INDEX_KEY, set[WorkloadRef]] = {}
        self._by_workload: dict[WorkloadRef, set[_INDEX_KEY]] = {}
        self.synced = threading.Event()

    def _unlink(self, ref: WorkloadRef) -> None:
        for key in self._by_workload.pop(ref, set()):
            dependents = self._by_resource.get(key)
            if dependents is None:
                continue
            dependents.discard(ref)
            if not dependents:
                del self._by_resource[key]

    def _link(self, deployment: Any) -> None:
        ref = workload_ref(deployment)
        if ref is None:
            return
        self._unlink(ref)
        if not self.conventions.is_watch_enabled(deployment):
            return
        keys = {(ref.namespace, kind, name) for kind, name in _references(deployment)}
        self._by_workload[ref] = keys
        for key in keys:
            self._by_resource.setdefault(key, set()).add(ref)

    def upsert(self, deployment: Any) -> None:
        with self._lock:
            self._link(deployment)

    def remove(self, deployment: Any) -> None:
        ref = workload_ref(deployment)
        if ref is None:
            return
        with self._lock:
            self._unlink(ref)

    def replace_all(self, deployments: Iterable[Any]) -> None:
        """Rebuild the index from a full listing and mark it synced."""
        with self._lock:
            self._by_resource.clear()
            self._by_workload.clear()
            for deployment in deployments:
                self._link(deployment)
        self.synced.set()

    def lookup(self, namespace: str, kind: ConfigKind, name: str) -> list[WorkloadRef]:
        with self._lock:
            return sorted(self._by_resource.get((namespace, kind, name), ()))

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_workload)


class ChangeRouter:
    """Maps a changed ConfigMap/Secret to the Deployments that mount it.

    The default lookup lists watch-enabled Deployments in the resource's
    namespace and scans their volumes.  With a synced :class:`WorkloadIndex`
    the lookup is answered from memory instead.
    """

    def __init__(
        self,
        apps_api: AppsV1Api,
        conventions: MarkerConventions | None = None,
        index: WorkloadIndex | None = None,
        request_timeout: float | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.apps_api = apps_api
        self.conventions = conventions or MarkerConventions()
        self.index = index
        self.request_timeout = request_timeout
        self.logger = logger or logging.getLogger(__name__)

    def route_change(self, namespace: str, name: str, kind: ConfigKind) -> list[WorkloadRef]:
        """Return every workload whose volumes reference ``kind``/``name`` in *namespace*.

        A workload is listed once per matching volume.  Listing failures are
        logged and yield an empty list; the periodic resync catches up on
        anything missed.
        """
        if self.index is not None and self.index.synced.is_set():
            requests = self.index.lookup(namespace, kind, name)
        else:
            requests = self._list_and_match(namespace, name, kind)

        if requests:
            METRICS.routed_workloads_total.labels(kind=kind.value).inc(len(requests))
            self.logger.info(
                "%s %s/%s is mounted by %d workload(s)",
                kind.value,
                namespace,
                name,
                len(requests),
            )
        return requests

    def _list_and_match(self, namespace: str, name: str, kind: ConfigKind) -> list[WorkloadRef]:
        try:
            watched = self.apps_api.list_namespaced_deployment(
                namespace=namespace,
                label_selector=self.conventions.workload_selector,
                _request_timeout=self.request_timeout,
            )
        except (ApiException, HTTPError):
            self.logger.exception(
                "Unable to list watched Deployments in namespace %s", namespace
            )
            METRICS.route_list_errors_total.inc()
            return []

        requests: list[WorkloadRef] = []
        for deployment in getattr(watched, "items", None) or []:
            ref = workload_ref(deployment)
            if ref is None:
                continue
            for mount in volume_mounts(deployment):
                if mount.reference.kind is kind and mount.reference.name == name:
                    requests.append(ref)
        return requests
