from __future__ import annotations

import logging
import os
import signal
import threading

from kubernetes.client import AppsV1Api, CoordinationV1Api, CoreV1Api

from configwatch.src.controller import DynamicConfigController
from configwatch.src.health import start_health_server
from configwatch.src.kube import build_clients, load_kube_configuration
from configwatch.src.leader import LeaseLeaderElector
from configwatch.src.logs import configure_logging
from configwatch.src.metrics import METRICS
from configwatch.src.reconciler import DeploymentReconciler
from configwatch.src.router import ChangeRouter, WorkloadIndex
from configwatch.src.settings import ControllerSettings, load_settings

RUNTIME_VERSION = "0.1.0"
LOGGER = logging.getLogger(__name__)


def build_controller(
    settings: ControllerSettings, core_api: CoreV1Api, apps_api: AppsV1Api
) -> DynamicConfigController:
    """Wire reconciler, router, optional reverse index and controller from settings."""
    conventions = settings.conventions
    index = WorkloadIndex(conventions) if settings.index_enabled else None
    reconciler = DeploymentReconciler(
        core_api=core_api,
        apps_api=apps_api,
        conventions=conventions,
        request_timeout=settings.request_timeout,
        logger=logging.getLogger("configwatch.reconciler"),
    )
    router = ChangeRouter(
        apps_api=apps_api,
        conventions=conventions,
        index=index,
        request_timeout=settings.request_timeout,
        logger=logging.getLogger("configwatch.router"),
    )
    return DynamicConfigController(
        core_api=core_api,
        apps_api=apps_api,
        reconciler=reconciler,
        router=router,
        conventions=conventions,
        namespace=settings.namespace,
        workers=settings.workers,
        resync_seconds=settings.resync_seconds,
        request_timeout=settings.request_timeout,
        index=index,
        logger=logging.getLogger("configwatch.controller"),
    )


class LeadershipSupervisor:
    """Starts the controller when this replica becomes leader and stops it on loss.

    Any unexpected controller exit, or a controller thread that does not stop
    within ``stop_timeout_seconds`` during a handoff, sets ``shutdown_event``
    so the process terminates instead of risking overlapping watch loops.
    """

    def __init__(
        self,
        controller: DynamicConfigController,
        shutdown_event: threading.Event,
        leader_ready: threading.Event,
        stop_timeout_seconds: int,
    ) -> None:
        self.controller = controller
        self.shutdown_event = shutdown_event
        self.leader_ready = leader_ready
        self.stop_timeout_seconds = stop_timeout_seconds
        self._thread: threading.Thread | None = None
        self._controller_stop = threading.Event()
        self._lock = threading.Lock()

    def _run_controller(self, controller_stop: threading.Event) -> None:
        unexpected_exit = False
        try:
            self.controller.run_forever(shutdown_event=controller_stop)
            unexpected_exit = not controller_stop.is_set() and not self.shutdown_event.is_set()
            if unexpected_exit:
                LOGGER.error("Controller thread exited without a stop signal; terminating process")
        except Exception:
            unexpected_exit = True
            LOGGER.exception("Controller thread crashed")
        finally:
            if unexpected_exit:
                self.shutdown_event.set()

    def on_started_leading(self) -> None:
        with self._lock:
            if self.shutdown_event.is_set():
                return
            if self._thread is not None and self._thread.is_alive():
                LOGGER.error(
                    "Refusing to start a new controller while the previous one is still running"
                )
                self.shutdown_event.set()
                return

            self._controller_stop = threading.Event()
            self.leader_ready.set()
            self._thread = threading.Thread(
                target=self._run_controller,
                args=(self._controller_stop,),
                name="controller",
                daemon=True,
            )
            self._thread.start()

    def on_stopped_leading(self) -> None:
        with self._lock:
            self.leader_ready.clear()
            self.controller.request_stop()
            self._controller_stop.set()
            if self._thread is None:
                return

            self._thread.join(timeout=self.stop_timeout_seconds)
            if self._thread.is_alive():
                LOGGER.error(
                    "Controller thread did not stop within %ss during leadership handoff; "
                    "forcing process shutdown",
                    self.stop_timeout_seconds,
                )
                self.shutdown_event.set()
                return
            self._thread = None


def main() -> None:
    """Controller entrypoint: load settings, configure logging, run under leader election."""
    settings = load_settings()
    configure_logging(settings.log_level)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    core_api, apps_api = build_clients()
    controller = build_controller(settings, core_api=core_api, apps_api=apps_api)

    election = settings.leader_election
    leader_ready = threading.Event() if election.enabled else None
    health_server = start_health_server(
        ready=controller.ready,
        port=settings.health_port,
        leader=leader_ready,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    if leader_ready is not None:
        supervisor = LeadershipSupervisor(
            controller=controller,
            shutdown_event=shutdown_event,
            leader_ready=leader_ready,
            stop_timeout_seconds=election.stop_timeout_seconds,
        )
        elector = LeaseLeaderElector.from_settings(CoordinationV1Api(), election)
        elector.run(
            on_started_leading=supervisor.on_started_leading,
            on_stopped_leading=supervisor.on_stopped_leading,
            stop_event=shutdown_event,
        )
        supervisor.on_stopped_leading()
    else:
        controller.run_forever(shutdown_event=shutdown_event)

    health_server.shutdown()
    if controller.failed:
        LOGGER.error("Controller stopped after the API server denied access")
        raise SystemExit(1)
    LOGGER.info("Controller stopped")


if __name__ == "__main__":
    main()
