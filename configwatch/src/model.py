from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any

DEFAULT_MARKER_KEY = "configwatch.io/dynamic-configuration"
DEFAULT_MARKER_VALUE = "watch"
DEFAULT_FINGERPRINT_ANNOTATION_KEY = "configwatch.io/configuration-hash"


class ConfigKind(str, enum.Enum):
    """Kinds of configuration resources a Deployment can mount as a volume."""

    CONFIG_MAP = "ConfigMap"
    SECRET = "Secret"


@dataclass(frozen=True, order=True)
class WorkloadRef:
    """Identity of a Deployment: the key every reconciliation is scheduled by."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class ConfigReference:
    kind: ConfigKind
    name: str


@dataclass(frozen=True)
class VolumeMount:
    """A pod template volume that references a ConfigMap or Secret by name."""

    volume_name: str
    reference: ConfigReference


@dataclass(frozen=True)
class MarkerConventions:
    """Label and annotation keys shared by the router and the reconciler.

    Attributes:
        workload_label_key: Label that opts a Deployment in to tracking.
        config_label_key:   Label that marks a ConfigMap/Secret as dynamic.
        marker_value:       The exact sentinel both labels must carry.
        annotation_key:     Pod template annotation holding the fingerprint.
    """

    workload_label_key: str = DEFAULT_MARKER_KEY
    config_label_key: str = DEFAULT_MARKER_KEY
    marker_value: str = DEFAULT_MARKER_VALUE
    annotation_key: str = DEFAULT_FINGERPRINT_ANNOTATION_KEY

    @property
    def workload_selector(self) -> str:
        return f"{self.workload_label_key}={self.marker_value}"

    def is_watch_enabled(self, obj: Any) -> bool:
        return object_labels(obj).get(self.workload_label_key) == self.marker_value

    def is_dynamic(self, obj: Any) -> bool:
        return object_labels(obj).get(self.config_label_key) == self.marker_value


def object_labels(obj: Any) -> dict[str, str]:
    """Return ``metadata.labels`` of a Kubernetes object, or an empty dict."""
    labels = getattr(getattr(obj, "metadata", None), "labels", None)
    if not isinstance(labels, dict):
        return {}
    return labels


def workload_ref(deployment: Any) -> WorkloadRef | None:
    metadata = getattr(deployment, "metadata", None)
    namespace = getattr(metadata, "namespace", None)
    name = getattr(metadata, "name", None)
    if not namespace or not name:
        return None
    return WorkloadRef(namespace=namespace, name=name)


def template_annotations(deployment: Any) -> dict[str, str]:
    """Extract pod template annotations from a deployment object safely."""
    spec = getattr(deployment, "spec", None)
    template = getattr(spec, "template", None)
    metadata = getattr(template, "metadata", None)
    annotations = getattr(metadata, "annotations", None)
    if not isinstance(annotations, dict):
        return {}
    return {
        k: ("" if v is None else str(v))
        for k, v in annotations.items()
        if isinstance(k, str)
    }


def volume_mounts(deployment: Any) -> list[VolumeMount]:
    """Return the ConfigMap/Secret volumes of a Deployment in declared order.

    Volumes of any other type (emptyDir, PVC, projected, ...) reference no
    configuration resource and are skipped.
    """
    spec = getattr(deployment, "spec", None)
    template = getattr(spec, "template", None)
    pod_spec = getattr(template, "spec", None)
    volumes = getattr(pod_spec, "volumes", None) or []

    mounts: list[VolumeMount] = []
    for volume in volumes:
        volume_name = getattr(volume, "name", None)
        if not volume_name:
            continue
        config_map = getattr(volume, "config_map", None)
        secret = getattr(volume, "secret", None)
        if config_map is not None and getattr(config_map, "name", None):
            reference = ConfigReference(kind=ConfigKind.CONFIG_MAP, name=config_map.name)
        elif secret is not None and getattr(secret, "secret_name", None):
            reference = ConfigReference(kind=ConfigKind.SECRET, name=secret.secret_name)
        else:
            continue
        mounts.append(VolumeMount(volume_name=volume_name, reference=reference))
    return mounts
