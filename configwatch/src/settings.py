from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from configwatch.src.model import (
    DEFAULT_FINGERPRINT_ANNOTATION_KEY,
    DEFAULT_MARKER_KEY,
    DEFAULT_MARKER_VALUE,
    MarkerConventions,
)


class ConfigError(ValueError):
    """Raised when the controller configuration is invalid."""


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def _non_empty(values: Mapping[str, str], name: str, default: str) -> str:
    value = values.get(name, default).strip()
    if not value:
        raise ConfigError(f"{name} must be a non-empty string")
    return value


@dataclass(frozen=True)
class LeaderElectionSettings:
    enabled: bool
    namespace: str
    lease_name: str
    identity: str
    lease_duration_seconds: int
    renew_deadline_seconds: int
    retry_period_seconds: int
    stop_timeout_seconds: int


@dataclass(frozen=True)
class ControllerSettings:
    """Immutable controller configuration loaded at startup.

    Attributes:
        namespace:       Namespace to watch, or ``None`` for the whole cluster.
        conventions:     Marker label keys, sentinel value and annotation key.
        workers:         Number of reconciliation worker threads.
        resync_seconds:  Period of the full re-enqueue; ``0`` disables it.
        request_timeout: Per-call Kubernetes API timeout in seconds.
        index_enabled:   Route changes through the in-memory reverse index.
    """

    namespace: str | None
    conventions: MarkerConventions
    workers: int
    resync_seconds: int
    request_timeout: int
    index_enabled: bool
    health_port: int
    log_level: str
    leader_election: LeaderElectionSettings


def default_identity(env: Mapping[str, str] | None = None) -> str:
    """Return a unique identity for this replica, defaulting to the pod name.

    In Kubernetes the ``HOSTNAME`` env var is set to the pod name, giving each
    replica a stable identity for lease ownership.
    """
    values = env if env is not None else os.environ
    return values.get("HOSTNAME") or values.get("POD_NAME") or "unknown"


def load_leader_election(env: Mapping[str, str]) -> LeaderElectionSettings:
    lease_duration = env_int("LEADER_ELECTION_LEASE_DURATION_SECONDS", 15, minimum=1, env=env)
    renew_deadline = env_int("LEADER_ELECTION_RENEW_DEADLINE_SECONDS", 10, minimum=1, env=env)
    retry_period = env_int("LEADER_ELECTION_RETRY_PERIOD_SECONDS", 2, minimum=1, env=env)

    if renew_deadline >= lease_duration:
        raise ConfigError(
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS must be smaller than "
            "LEADER_ELECTION_LEASE_DURATION_SECONDS"
        )
    if retry_period >= renew_deadline:
        raise ConfigError(
            "LEADER_ELECTION_RETRY_PERIOD_SECONDS must be smaller than "
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS"
        )

    return LeaderElectionSettings(
        enabled=parse_bool(env.get("LEADER_ELECTION_ENABLED"), default=True),
        namespace=_non_empty(env, "LEADER_ELECTION_NAMESPACE", "configwatch"),
        lease_name=_non_empty(env, "LEADER_ELECTION_LEASE_NAME", "configwatch-leader"),
        identity=env.get("LEADER_ELECTION_IDENTITY") or default_identity(env),
        lease_duration_seconds=lease_duration,
        renew_deadline_seconds=renew_deadline,
        retry_period_seconds=retry_period,
        # Must exceed the watch timeout so a leadership handoff never leaves
        # two sets of watch loops running.
        stop_timeout_seconds=env_int(
            "LEADER_ELECTION_CONTROLLER_STOP_TIMEOUT_SECONDS", 45, minimum=1, env=env
        ),
    )


def load_settings(env: Mapping[str, str] | None = None) -> ControllerSettings:
    """Load controller settings from the environment.

    Raises :class:`ConfigError` on any invalid value so the process fails at
    startup instead of running with a half-valid configuration.
    """
    values = env if env is not None else os.environ

    conventions = MarkerConventions(
        workload_label_key=_non_empty(values, "WORKLOAD_LABEL_KEY", DEFAULT_MARKER_KEY),
        config_label_key=_non_empty(values, "CONFIG_LABEL_KEY", DEFAULT_MARKER_KEY),
        marker_value=_non_empty(values, "MARKER_VALUE", DEFAULT_MARKER_VALUE),
        annotation_key=_non_empty(
            values, "FINGERPRINT_ANNOTATION_KEY", DEFAULT_FINGERPRINT_ANNOTATION_KEY
        ),
    )

    return ControllerSettings(
        namespace=values.get("WATCH_NAMESPACE", "").strip() or None,
        conventions=conventions,
        workers=env_int("RECONCILE_WORKERS", 2, minimum=1, maximum=64, env=values),
        resync_seconds=env_int("RESYNC_SECONDS", 600, minimum=0, env=values),
        request_timeout=env_int("REQUEST_TIMEOUT_SECONDS", 30, minimum=1, env=values),
        index_enabled=parse_bool(values.get("ROUTER_INDEX_ENABLED")),
        health_port=env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535, env=values),
        log_level=values.get("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        leader_election=load_leader_election(values),
    )
