from __future__ import annotations

import logging
import random
import threading
from dataclasses import dataclass
from typing import Any

from kubernetes.client import NetworkingV1Api, V1Ingress

from autotls.src.errors import MissingObjectKey, ReconcileError
from autotls.src.kube import apply_ingress_patch
from autotls.src.metrics import METRICS
from autotls.src.patches import (
    DOMAIN_ANNOTATION,
    ISSUER_ANNOTATION,
    compute_domain_patch,
    compute_tls_patch,
    parse_domain,
    parse_issuer,
)

LOGGER = logging.getLogger(__name__)

DOMAIN_PATCHER = "domain-patcher"
TLS_PATCHER = "tls-patcher"

ObjectKey = tuple[str, str]


@dataclass(frozen=True)
class ReconcileContext:
    """Shared, read-only dependencies handed to every reconcile.

    The same instance is used by all workers at once, so it must never hold
    per-object state.
    """

    networking_api: NetworkingV1Api
    field_manager_prefix: str = "autotls-controller"
    resync_seconds: float = 300.0

    def field_manager(self, patcher: str) -> str:
        return f"{self.field_manager_prefix}/{patcher}"


def object_key(ingress: Any) -> ObjectKey:
    """Return ``(namespace, name)`` or raise :class:`MissingObjectKey`."""
    metadata = getattr(ingress, "metadata", None)
    name = getattr(metadata, "name", None)
    if not name:
        raise MissingObjectKey(".metadata.name")
    namespace = getattr(metadata, "namespace", None)
    if not namespace:
        raise MissingObjectKey(".metadata.namespace")
    return namespace, name


def format_key(key: ObjectKey) -> str:
    return f"{key[0]}/{key[1]}"


def reconcile(ingress: V1Ingress, ctx: ReconcileContext) -> float:
    """Converge one Ingress towards the state its annotations ask for.

    Runs the domain pipeline, then the TLS pipeline, each only when its
    annotation is present.  The domain patch is applied with forced
    ownership so host fields can be reclaimed from other managers; the TLS
    patch is not forced so cert-manager's own writes are left alone.

    When the domain patch is applied, the object returned by the API server
    replaces the observed one so the TLS hosts are taken from the qualified
    rules.

    Returns the delay in seconds before the object should be looked at again.
    Any :class:`ReconcileError` aborts the remaining pipeline.
    """
    namespace, name = object_key(ingress)
    ref = f"{namespace}/{name}"
    LOGGER.debug("Reconciling ingress %s", ref, extra={"ingress": ref})
    annotations = ingress.metadata.annotations or {}

    domain = annotations.get(DOMAIN_ANNOTATION)
    if domain is not None:
        patch = compute_domain_patch(ingress, parse_domain(domain))
        if patch is not None:
            LOGGER.info(
                "Patching domain for ingress %s",
                ref,
                extra={"ingress": ref, "patcher": DOMAIN_PATCHER},
            )
            updated = apply_ingress_patch(
                ctx.networking_api,
                namespace,
                patch,
                field_manager=ctx.field_manager(DOMAIN_PATCHER),
                force=True,
            )
            METRICS.patches_total.labels(patcher=DOMAIN_PATCHER).inc()
            if isinstance(updated, V1Ingress):
                ingress = updated

    issuer = annotations.get(ISSUER_ANNOTATION)
    if issuer is not None:
        patch = compute_tls_patch(ingress, parse_issuer(issuer))
        if patch is not None:
            LOGGER.info(
                "Patching tls for ingress %s",
                ref,
                extra={"ingress": ref, "patcher": TLS_PATCHER},
            )
            apply_ingress_patch(
                ctx.networking_api,
                namespace,
                patch,
                field_manager=ctx.field_manager(TLS_PATCHER),
                force=False,
            )
            METRICS.patches_total.labels(patcher=TLS_PATCHER).inc()

    return float(ctx.resync_seconds)


class RequeuePolicy:
    """Decide when an object is reconciled next.

    Success requeues after the fixed resync interval.  Failures requeue with
    exponential backoff per object key: ``base * 2**(n-1)`` seconds for the
    n-th consecutive failure, scaled by a random factor in ``[0.5, 1.5)`` and
    clamped to ``[base, max]``.  The first retry is therefore never later
    than it would be with a fixed ``base`` interval, and a persistently
    failing object settles at ``max`` instead of hammering the API server.
    """

    def __init__(
        self,
        resync_seconds: float = 300.0,
        retry_base_seconds: float = 1.0,
        retry_max_seconds: float = 60.0,
        logger: logging.Logger | None = None,
    ) -> None:
        if retry_base_seconds <= 0:
            raise ValueError("retry_base_seconds must be > 0")
        if retry_max_seconds < retry_base_seconds:
            raise ValueError("retry_max_seconds must be >= retry_base_seconds")
        self.resync_seconds = resync_seconds
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.logger = logger or LOGGER
        self._failures: dict[ObjectKey, int] = {}
        self._lock = threading.Lock()

    def failures(self, key: ObjectKey) -> int:
        with self._lock:
            return self._failures.get(key, 0)

    def forget(self, key: ObjectKey) -> None:
        with self._lock:
            self._failures.pop(key, None)

    def on_success(self, key: ObjectKey, requeue_after: float | None = None) -> float:
        self.forget(key)
        return self.resync_seconds if requeue_after is None else requeue_after

    def on_failure(self, key: ObjectKey, error: BaseException) -> float:
        with self._lock:
            attempt = self._failures.get(key, 0) + 1
            self._failures[key] = attempt

        # Cap the exponent so long failure streaks cannot overflow the float.
        delay = min(self.retry_max_seconds, self.retry_base_seconds * 2 ** min(attempt - 1, 32))
        jittered = delay * (0.5 + random.random())  # noqa: S311
        delay = min(self.retry_max_seconds, max(self.retry_base_seconds, jittered))

        ref = format_key(key)
        if isinstance(error, ReconcileError):
            self.logger.error(
                "Reconcile of ingress %s failed (%s): %s; retry %d in %.1fs",
                ref,
                error.kind,
                error,
                attempt,
                delay,
                extra={"ingress": ref},
            )
        else:
            self.logger.error(
                "Unexpected error reconciling ingress %s; retry %d in %.1fs",
                ref,
                attempt,
                delay,
                exc_info=error,
                extra={"ingress": ref},
            )
        return delay
