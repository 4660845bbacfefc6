from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable, Iterable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, AppsV1Api, CoreV1Api
from urllib3.exceptions import HTTPError

from configwatch.src.metrics import METRICS
from configwatch.src.model import ConfigKind, MarkerConventions, WorkloadRef, workload_ref
from configwatch.src.reconciler import DeploymentReconciler, ReconcileError
from configwatch.src.router import (
    ChangeRouter,
    WorkloadIndex,
    admit_config_event,
    admit_workload_event,
)
from configwatch.src.workqueue import ReconcileQueue

DEPLOYMENT_KIND = "Deployment"
_WATCH_TIMEOUT_SECONDS = 30
_WORKER_POLL_SECONDS = 1.0


class DynamicConfigController:
    """Watches Deployments, ConfigMaps and Secrets and keeps fingerprints current.

    One list-then-watch thread runs per kind:

    - Deployment events pass :func:`admit_workload_event` (watch-enabled and
      generation changed) and enqueue the Deployment itself.  They also keep
      the optional :class:`WorkloadIndex` current.
    - ConfigMap/Secret events pass :func:`admit_config_event` (dynamic marker
      in the new state) and are routed through :class:`ChangeRouter` to every
      Deployment mounting them.

    Worker threads drain the :class:`ReconcileQueue` into
    :class:`DeploymentReconciler`.  Conflicts and cancellations are requeued
    at once; other failures go through per-workload exponential backoff
    (1 s doubling to a 30 s cap).  A resync thread periodically re-enqueues
    every watch-enabled Deployment so anything missed by a failed routing
    lookup is eventually reconciled.

    ``ready`` is set once every watch finished its initial list.  ``401`` or
    ``403`` from the API server stops the controller: retrying cannot fix
    missing RBAC.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        apps_api: AppsV1Api,
        reconciler: DeploymentReconciler,
        router: ChangeRouter,
        conventions: MarkerConventions | None = None,
        namespace: str | None = None,
        workers: int = 2,
        resync_seconds: int = 600,
        request_timeout: float | None = None,
        index: WorkloadIndex | None = None,
        queue: ReconcileQueue | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.core_api = core_api
        self.apps_api = apps_api
        self.reconciler = reconciler
        self.router = router
        self.conventions = conventions or MarkerConventions()
        self.namespace = namespace or None
        self.workers = workers
        self.resync_seconds = resync_seconds
        self.request_timeout = request_timeout
        self.index = index
        self.queue = queue or ReconcileQueue()
        self.logger = logger or logging.getLogger(__name__)

        self._observed_generations: dict[WorkloadRef, int | None] = {}
        self._generations_lock = threading.Lock()
        self._synced: dict[str, threading.Event] = {
            kind: threading.Event()
            for kind in (DEPLOYMENT_KIND, ConfigKind.CONFIG_MAP.value, ConfigKind.SECRET.value)
        }

        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._cancel = threading.Event()
        self._fatal = threading.Event()
        self._active_watchers: set[watch.Watch] = set()
        self._watcher_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    def _remember_generation(self, ref: WorkloadRef, deployment: Any) -> int | None:
        generation = getattr(getattr(deployment, "metadata", None), "generation", None)
        with self._generations_lock:
            previous = self._observed_generations.get(ref)
            self._observed_generations[ref] = generation
        return previous

    def _forget_generation(self, ref: WorkloadRef) -> None:
        with self._generations_lock:
            self._observed_generations.pop(ref, None)

    def handle_workload_event(self, event_type: str, deployment: Any) -> bool:
        """Process one Deployment watch event; return True if it was enqueued."""
        ref = workload_ref(deployment)
        if ref is None:
            return False

        if event_type == "DELETED":
            self._forget_generation(ref)
            if self.index is not None:
                self.index.remove(deployment)
            METRICS.events_filtered_total.labels(kind=DEPLOYMENT_KIND).inc()
            return False

        previous = self._remember_generation(ref, deployment)
        if self.index is not None:
            self.index.upsert(deployment)

        if not admit_workload_event(event_type, previous, deployment, self.conventions):
            METRICS.events_filtered_total.labels(kind=DEPLOYMENT_KIND).inc()
            self.logger.debug("Ignoring %s event for Deployment %s", event_type, ref)
            return False

        METRICS.events_admitted_total.labels(kind=DEPLOYMENT_KIND).inc()
        self.queue.add(ref)
        return True

    def handle_config_event(
        self, kind: ConfigKind, event_type: str, obj: Any
    ) -> list[WorkloadRef]:
        """Process one ConfigMap/Secret watch event; return the workloads enqueued."""
        if not admit_config_event(event_type, obj, self.conventions):
            METRICS.events_filtered_total.labels(kind=kind.value).inc()
            self.logger.debug(
                "Ignoring %s event for %s without dynamic marker",
                event_type,
                kind.value,
            )
            return []

        metadata = obj.metadata
        namespace = getattr(metadata, "namespace", None) or self.namespace
        name = getattr(metadata, "name", None)
        if not namespace or not name:
            self.logger.warning("Skipping %s event with incomplete metadata", kind.value)
            return []

        METRICS.events_admitted_total.labels(kind=kind.value).inc()
        requests = self.router.route_change(namespace=namespace, name=name, kind=kind)
        for ref in requests:
            self.queue.add(ref)
        return requests

    def _sync_deployments(self, deployments: Iterable[Any]) -> int:
        """Treat a full Deployment listing as a fresh ADDED event for every item.

        Rebuilds the generation cache and the reverse index, and enqueues every
        watch-enabled Deployment so the startup and post-410 state is fully
        reconciled.  Returns the number of enqueued workloads.
        """
        items = list(deployments)
        with self._generations_lock:
            self._observed_generations.clear()
        if self.index is not None:
            self.index.replace_all(items)

        enqueued = 0
        for deployment in items:
            ref = workload_ref(deployment)
            if ref is None:
                continue
            self._remember_generation(ref, deployment)
            if self.conventions.is_watch_enabled(deployment):
                self.queue.add(ref)
                enqueued += 1
        return enqueued

    def _sync_configs(self, kind: ConfigKind, configs: Iterable[Any]) -> None:
        for config in configs:
            self.handle_config_event(kind, "MODIFIED", config)

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    def process(self, ref: WorkloadRef) -> bool:
        """Reconcile one workload and requeue it on failure. Returns True on success."""
        failure: ReconcileError | None = None
        try:
            result = self.reconciler.reconcile(ref, stop=self._cancel)
        except ReconcileError as exc:
            failure = exc
        except Exception:
            self.logger.exception("Unexpected error reconciling %s", ref)
        else:
            self.queue.forget(ref)
            if not result.found:
                self._forget_generation(ref)
            return True

        self._requeue(ref, failure)
        return False

    def _requeue(self, ref: WorkloadRef, failure: ReconcileError | None) -> None:
        reason = failure.reason if failure is not None else "unexpected"
        METRICS.requeues_total.labels(reason=reason).inc()
        if failure is not None and failure.requeue_immediately:
            self.logger.info("Requeueing %s after %s: %s", ref, reason, failure)
            self.queue.add(ref)
            return
        delay = self.queue.add_rate_limited(ref)
        self.logger.warning(
            "Reconciliation of %s failed (%s); retrying in %.1fs",
            ref,
            failure if failure is not None else reason,
            delay,
        )

    def _worker_loop(self) -> None:
        while not self._cancel.is_set():
            ref = self.queue.get(timeout=_WORKER_POLL_SECONDS)
            if ref is None:
                continue
            try:
                self.process(ref)
            except Exception:
                # Requeue itself failed; the resync will bring the ref back.
                self.logger.exception("Worker failed to process %s", ref)
            finally:
                self.queue.done(ref)

    def resync(self) -> int:
        """Enqueue every watch-enabled Deployment. Returns the number enqueued."""
        try:
            deployments = self._list(DEPLOYMENT_KIND)
        except (ApiException, HTTPError):
            self.logger.exception("Periodic resync listing failed")
            return 0

        enqueued = 0
        for deployment in getattr(deployments, "items", None) or []:
            ref = workload_ref(deployment)
            if ref is not None:
                self.queue.add(ref)
                enqueued += 1
        self.logger.info("Periodic resync enqueued %d workload(s)", enqueued)
        return enqueued

    def _resync_loop(self) -> None:
        while not self._cancel.wait(timeout=self.resync_seconds):
            try:
                self.resync()
            except Exception:
                self.logger.exception("Unexpected error during periodic resync")

    # ------------------------------------------------------------------
    # Watch side
    # ------------------------------------------------------------------

    def _list_function(self, kind: str) -> Callable[..., Any]:
        if kind == DEPLOYMENT_KIND:
            if self.namespace:
                return self.apps_api.list_namespaced_deployment
            return self.apps_api.list_deployment_for_all_namespaces
        if kind == ConfigKind.CONFIG_MAP.value:
            if self.namespace:
                return self.core_api.list_namespaced_config_map
            return self.core_api.list_config_map_for_all_namespaces
        if self.namespace:
            return self.core_api.list_namespaced_secret
        return self.core_api.list_secret_for_all_namespaces

    def _list_kwargs(self, kind: str) -> dict[str, Any]:
        selector = (
            self.conventions.workload_selector
            if kind == DEPLOYMENT_KIND
            else f"{self.conventions.config_label_key}={self.conventions.marker_value}"
        )
        kwargs: dict[str, Any] = {"label_selector": selector}
        if self.namespace:
            kwargs["namespace"] = self.namespace
        return kwargs

    def _list(self, kind: str, **overrides: Any) -> Any:
        kwargs = self._list_kwargs(kind)
        kwargs.update(overrides)
        return self._list_function(kind)(_request_timeout=self.request_timeout, **kwargs)

    def _apply_listing(self, kind: str, listing: Any, *, initial: bool) -> None:
        """Feed a full listing through the event handlers.

        The initial ConfigMap/Secret listings route nothing: the initial
        Deployment listing already enqueues every watch-enabled workload.
        After a ``410 Gone`` re-list every dynamic resource is routed, since
        changes may have been missed while the watch was down.
        """
        items = getattr(listing, "items", None) or []
        if kind == DEPLOYMENT_KIND:
            enqueued = self._sync_deployments(items)
            self.logger.info("Listed %d Deployment(s); %d enqueued", len(items), enqueued)
        elif initial:
            self.logger.info("Listed %d dynamic %s(s)", len(items), kind)
        else:
            self._sync_configs(ConfigKind(kind), items)

    def _dispatch(self, kind: str, event_type: str, obj: Any) -> None:
        if kind == DEPLOYMENT_KIND:
            self.handle_workload_event(event_type, obj)
        else:
            self.handle_config_event(ConfigKind(kind), event_type, obj)

    def _access_denied(self, kind: str, status: int, during: str) -> None:
        self.logger.error(
            "Kubernetes API access denied for %s %s (status=%s). "
            "Check controller RBAC and service account permissions.",
            kind,
            during,
            status,
        )
        METRICS.watch_errors_total.labels(kind=kind).inc()
        self.ready.clear()
        self._fatal.set()
        self._cancel.set()

    def _initial_list(self, kind: str) -> str | None:
        """List *kind* with jittered exponential backoff until it succeeds.

        Returns the list's ``resourceVersion``, or None if the controller was
        stopped first.
        """
        backoff_seconds = 1
        while not self._cancel.is_set():
            try:
                initial = self._list(kind)
                self._apply_listing(kind, initial, initial=True)
                self._synced[kind].set()
                resource_version = getattr(
                    getattr(initial, "metadata", None), "resource_version", None
                )
                self.logger.info(
                    "Starting %s watch from resourceVersion %s", kind, resource_version
                )
                return resource_version
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self._access_denied(kind, exc.status, "initial list")
                    return None
                self.logger.exception("Initial Kubernetes %s list failed", kind)
                METRICS.watch_errors_total.labels(kind=kind).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial %s list", kind)
                METRICS.watch_errors_total.labels(kind=kind).inc()

            jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
            self._cancel.wait(timeout=jittered)
            backoff_seconds = min(backoff_seconds * 2, 30)
        return None

    def _watch_loop(self, kind: str) -> None:
        """List-then-watch loop for one kind.

        1. Retries the initial list with backoff, feeding it through the same
           handlers as watch events.
        2. Streams events from the list's ``resourceVersion``.
        3. On ``410 Gone`` re-lists (treating every item as changed) and resumes.
        4. On transient errors applies jittered exponential backoff capped at 30 s.
        """
        resource_version = self._initial_list(kind)
        if self._cancel.is_set():
            return

        backoff_seconds = 1
        stream_count = 0
        while not self._cancel.is_set():
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watchers.add(watcher)
            try:
                if stream_count > 0:
                    METRICS.watch_reconnects_total.labels(kind=kind).inc()
                stream_count += 1
                stream = watcher.stream(
                    self._list_function(kind),
                    resource_version=resource_version,
                    timeout_seconds=_WATCH_TIMEOUT_SECONDS,
                    **self._list_kwargs(kind),
                )
                for event in stream:
                    if self._cancel.is_set():
                        break
                    obj = event.get("object")
                    if obj is None:
                        continue
                    metadata = getattr(obj, "metadata", None)
                    if metadata is not None and getattr(metadata, "resource_version", None):
                        resource_version = metadata.resource_version
                    self._dispatch(kind, str(event.get("type", "")), obj)
                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone means etcd compacted past our resourceVersion; a
                # fresh snapshot is needed before watching again.
                if exc.status == 410:
                    self.logger.warning("%s watch resource version expired, re-listing", kind)
                    try:
                        fresh = self._list(kind)
                        resource_version = getattr(
                            getattr(fresh, "metadata", None), "resource_version", None
                        )
                        self._apply_listing(kind, fresh, initial=False)
                    except ApiException as relist_exc:
                        if relist_exc.status in {401, 403}:
                            self._access_denied(kind, relist_exc.status, "410 re-list")
                            return
                        self.logger.exception("Failed to re-list %s after 410", kind)
                        METRICS.watch_errors_total.labels(kind=kind).inc()
                        resource_version = None
                    continue

                if exc.status in {401, 403}:
                    self._access_denied(kind, exc.status, "watch")
                    return

                self.logger.exception("Kubernetes API %s watch error", kind)
                METRICS.watch_errors_total.labels(kind=kind).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                self._cancel.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected %s watch error", kind)
                METRICS.watch_errors_total.labels(kind=kind).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                self._cancel.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    self._active_watchers.discard(watcher)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def failed(self) -> bool:
        """True when the last run stopped because the API server denied access."""
        return self._fatal.is_set()

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        self._cancel.set()
        with self._watcher_lock:
            active = list(self._active_watchers)
        for watcher in active:
            watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set() or self._fatal.is_set()

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Start watch, worker and resync threads and block until shutdown."""
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()
        self._cancel.clear()
        self._fatal.clear()
        for synced in self._synced.values():
            synced.clear()
        if self.index is not None:
            # Stale from a previous leadership term until the next full listing.
            self.index.synced.clear()
        if self.queue.shutting_down:
            self.queue = ReconcileQueue(
                base_delay=self.queue.base_delay, max_delay=self.queue.max_delay
            )

        threads = [
            threading.Thread(
                target=self._watch_loop, args=(kind,), name=f"watch-{kind}", daemon=True
            )
            for kind in self._synced
        ]
        threads.extend(
            threading.Thread(target=self._worker_loop, name=f"worker-{i}", daemon=True)
            for i in range(self.workers)
        )
        if self.resync_seconds > 0:
            threads.append(
                threading.Thread(target=self._resync_loop, name="resync", daemon=True)
            )
        for thread in threads:
            thread.start()

        while not self._should_stop(stop):
            if not self.ready.is_set() and all(s.is_set() for s in self._synced.values()):
                self.ready.set()
                self.logger.info("All watches synced; controller ready")
            stop.wait(timeout=0.5)

        self.ready.clear()
        self._cancel.set()
        self.queue.shutdown()
        with self._watcher_lock:
            active = list(self._active_watchers)
        for watcher in active:
            watcher.stop()
        for thread in threads:
            thread.join(timeout=_WATCH_TIMEOUT_SECONDS + 5)
            if thread.is_alive():
                self.logger.warning("Thread %s did not stop in time", thread.name)
        self.logger.info("Controller loop stopped")
