from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


class ConfigError(ValueError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller settings loaded once at startup.

    Attributes:
        watch_namespace: Namespace to watch, or ``None`` for every namespace.
        field_manager_prefix: Prefix of the ``domain-patcher`` and
            ``tls-patcher`` server-side apply field managers.
        resync_seconds: Requeue delay after a successful reconcile.
        retry_base_seconds: Requeue delay after the first failure.
        retry_max_seconds: Ceiling for the failure requeue delay.
        worker_count: Number of reconcile worker threads.
        watch_timeout_seconds: Server-side timeout of one watch request.
        health_port: Port of the health and metrics server.
        log_level: Root logger level name.
    """

    watch_namespace: str | None = None
    field_manager_prefix: str = "autotls-controller"
    resync_seconds: int = 300
    retry_base_seconds: int = 1
    retry_max_seconds: int = 60
    worker_count: int = 2
    watch_timeout_seconds: int = 30
    health_port: int = 8080
    log_level: str = "INFO"


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None:
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


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Build a :class:`ControllerConfig` from environment variables.

    An empty or unset ``WATCH_NAMESPACE`` watches the whole cluster.
    """
    values = env if env is not None else os.environ

    watch_namespace = values.get("WATCH_NAMESPACE", "").strip() or None

    field_manager_prefix = values.get("FIELD_MANAGER_PREFIX", "autotls-controller").strip()
    if not field_manager_prefix:
        raise ConfigError("FIELD_MANAGER_PREFIX must be a non-empty string")

    retry_base_seconds = env_int(values, "RETRY_BASE_SECONDS", 1, minimum=1)
    retry_max_seconds = env_int(values, "RETRY_MAX_SECONDS", 60, minimum=1)
    if retry_max_seconds < retry_base_seconds:
        raise ConfigError(
            "RETRY_MAX_SECONDS must be greater than or equal to RETRY_BASE_SECONDS"
        )

    return ControllerConfig(
        watch_namespace=watch_namespace,
        field_manager_prefix=field_manager_prefix,
        resync_seconds=env_int(values, "RESYNC_INTERVAL_SECONDS", 300, minimum=1),
        retry_base_seconds=retry_base_seconds,
        retry_max_seconds=retry_max_seconds,
        worker_count=env_int(values, "WORKER_COUNT", 2, minimum=1, maximum=64),
        watch_timeout_seconds=env_int(values, "WATCH_TIMEOUT_SECONDS", 30, minimum=1),
        health_port=env_int(values, "HEALTH_PORT", 8080, minimum=1, maximum=65535),
        log_level=values.get("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )
