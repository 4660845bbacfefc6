from __future__ import annotations

import copy
import itertools
from collections.abc import Callable
from types import SimpleNamespace
from typing import Any

import pytest
from kubernetes.client import ApiException

MARKER_KEY = "configwatch.io/dynamic-configuration"
ANNOTATION_KEY = "configwatch.io/configuration-hash"
NAMESPACE = "default"


def _selector_matches(labels: dict[str, str], selector: str | None) -> bool:
    if not selector:
        return True
    for clause in selector.split(","):
        key, _, value = clause.partition("=")
        if labels.get(key.strip()) != value.strip():
            return False
    return True


class FakeCluster:
    """In-memory stand-in for CoreV1Api and AppsV1Api.

    Reads return deep copies, every write bumps a cluster-wide resourceVersion
    counter, and Deployment patches honour ``metadata.resourceVersion`` as a
    precondition like the API server does.
    """

    def __init__(self) -> None:
        self._versions = itertools.count(1)
        self.config_maps: dict[tuple[str, str], SimpleNamespace] = {}
        self.secrets: dict[tuple[str, str], SimpleNamespace] = {}
        self.deployments: dict[tuple[str, str], SimpleNamespace] = {}
        self.patches: list[tuple[str, str, dict[str, Any]]] = []
        self.list_calls: list[dict[str, Any]] = []
        self.read_errors: dict[tuple[str, str], Exception] = {}
        self.list_error: Exception | None = None
        self.patch_error: Exception | None = None
        self.before_patch: Callable[[str, str], None] | None = None

    def _next_version(self) -> str:
        return str(next(self._versions))

    # -- builders -------------------------------------------------------

    def add_config_map(
        self, name: str, dynamic: bool = False, namespace: str = NAMESPACE, label_value: str = "watch"
    ) -> SimpleNamespace:
        labels = {MARKER_KEY: label_value} if dynamic else {}
        obj = SimpleNamespace(
            metadata=SimpleNamespace(
                name=name,
                namespace=namespace,
                labels=labels,
                resource_version=self._next_version(),
            ),
            data={"key": "value"},
        )
        self.config_maps[(namespace, name)] = obj
        return obj

    def add_secret(
        self, name: str, dynamic: bool = False, namespace: str = NAMESPACE
    ) -> SimpleNamespace:
        labels = {MARKER_KEY: "watch"} if dynamic else {}
        obj = SimpleNamespace(
            metadata=SimpleNamespace(
                name=name,
                namespace=namespace,
                labels=labels,
                resource_version=self._next_version(),
            ),
            data={"password": "c2VjcmV0"},
        )
        self.secrets[(namespace, name)] = obj
        return obj

    def update_config_map(self, name: str, namespace: str = NAMESPACE) -> SimpleNamespace:
        obj = self.config_maps[(namespace, name)]
        obj.data = {"key": f"value-{obj.metadata.resource_version}"}
        obj.metadata.resource_version = self._next_version()
        return obj

    def update_secret(self, name: str, namespace: str = NAMESPACE) -> SimpleNamespace:
        obj = self.secrets[(namespace, name)]
        obj.metadata.resource_version = self._next_version()
        return obj

    def add_deployment(
        self,
        name: str,
        volumes: list[SimpleNamespace] | None = None,
        watch_enabled: bool = True,
        annotations: dict[str, str] | None = None,
        namespace: str = NAMESPACE,
    ) -> SimpleNamespace:
        labels = {"app": name}
        if watch_enabled:
            labels[MARKER_KEY] = "watch"
        obj = SimpleNamespace(
            metadata=SimpleNamespace(
                name=name,
                namespace=namespace,
                labels=labels,
                generation=1,
                resource_version=self._next_version(),
            ),
            spec=SimpleNamespace(
                template=SimpleNamespace(
                    metadata=SimpleNamespace(labels={"app": name}, annotations=annotations),
                    spec=SimpleNamespace(volumes=volumes or []),
                )
            ),
        )
        self.deployments[(namespace, name)] = obj
        return obj

    @staticmethod
    def config_map_volume(volume_name: str, config_map_name: str) -> SimpleNamespace:
        return SimpleNamespace(
            name=volume_name, config_map=SimpleNamespace(name=config_map_name), secret=None
        )

    @staticmethod
    def secret_volume(volume_name: str, secret_name: str) -> SimpleNamespace:
        return SimpleNamespace(
            name=volume_name, config_map=None, secret=SimpleNamespace(secret_name=secret_name)
        )

    @staticmethod
    def empty_dir_volume(volume_name: str) -> SimpleNamespace:
        return SimpleNamespace(
            name=volume_name, config_map=None, secret=None, empty_dir=SimpleNamespace()
        )

    def fingerprint_of(self, name: str, namespace: str = NAMESPACE) -> str | None:
        annotations = self.deployments[(namespace, name)].spec.template.metadata.annotations
        return (annotations or {}).get(ANNOTATION_KEY)

    # -- API surface ----------------------------------------------------

    def _read(self, store: dict[tuple[str, str], Any], name: str, namespace: str) -> Any:
        error = self.read_errors.get((namespace, name))
        if error is not None:
            raise error
        obj = store.get((namespace, name))
        if obj is None:
            raise ApiException(status=404, reason="Not Found")
        return copy.deepcopy(obj)

    def read_namespaced_config_map(self, name: str, namespace: str, **_: Any) -> Any:
        return self._read(self.config_maps, name, namespace)

    def read_namespaced_secret(self, name: str, namespace: str, **_: Any) -> Any:
        return self._read(self.secrets, name, namespace)

    def read_namespaced_deployment(self, name: str, namespace: str, **_: Any) -> Any:
        return self._read(self.deployments, name, namespace)

    def list_namespaced_deployment(
        self, namespace: str, label_selector: str | None = None, **kwargs: Any
    ) -> SimpleNamespace:
        self.list_calls.append({"namespace": namespace, "label_selector": label_selector, **kwargs})
        if self.list_error is not None:
            raise self.list_error
        items = [
            copy.deepcopy(obj)
            for (ns, _), obj in self.deployments.items()
            if ns == namespace and _selector_matches(obj.metadata.labels, label_selector)
        ]
        return SimpleNamespace(
            items=items, metadata=SimpleNamespace(resource_version=self._next_version())
        )

    def list_deployment_for_all_namespaces(
        self, label_selector: str | None = None, **kwargs: Any
    ) -> SimpleNamespace:
        self.list_calls.append({"label_selector": label_selector, **kwargs})
        if self.list_error is not None:
            raise self.list_error
        items = [
            copy.deepcopy(obj)
            for obj in self.deployments.values()
            if _selector_matches(obj.metadata.labels, label_selector)
        ]
        return SimpleNamespace(
            items=items, metadata=SimpleNamespace(resource_version=self._next_version())
        )

    def patch_namespaced_deployment(
        self, name: str, namespace: str, body: dict[str, Any], **_: Any
    ) -> None:
        if self.before_patch is not None:
            self.before_patch(namespace, name)
        if self.patch_error is not None:
            raise self.patch_error
        obj = self.deployments.get((namespace, name))
        if obj is None:
            raise ApiException(status=404, reason="Not Found")

        expected = body.get("metadata", {}).get("resourceVersion")
        if expected is not None and expected != obj.metadata.resource_version:
            raise ApiException(status=409, reason="Conflict")

        template_metadata = obj.spec.template.metadata
        annotations = dict(template_metadata.annotations or {})
        annotations.update(body["spec"]["template"]["metadata"]["annotations"])
        template_metadata.annotations = annotations
        obj.metadata.generation += 1
        obj.metadata.resource_version = self._next_version()
        self.patches.append((namespace, name, body))


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()
