from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, NetworkingV1Api, V1Ingress

from autotls.src.config import ControllerConfig
from autotls.src.errors import ReconcileError
from autotls.src.metrics import METRICS
from autotls.src.reconciler import (
    ObjectKey,
    ReconcileContext,
    RequeuePolicy,
    format_key,
    reconcile,
)
from autotls.src.workqueue import WorkQueue

WORKER_JOIN_TIMEOUT_SECONDS = 30


class IngressController:
    """Watches Ingresses and reconciles each one on a pool of worker threads.

    The watch loop (:meth:`run_forever`) only maintains the object cache and
    enqueues keys; reconciles happen on ``worker_count`` threads fed by a
    :class:`WorkQueue`, which guarantees one in-flight reconcile per
    ``(namespace, name)``.  Workers always reconcile the latest cached copy
    of the object, so a burst of events for one Ingress collapses into a
    single reconcile.

    Key internal state:
        ``_cache``
            Maps ``(namespace, name)`` to the last object seen on the watch.
            Objects without a namespace or name are cached under an empty
            string so the reconcile can report them.
        ``queue``
            Keys waiting for a worker, including delayed requeues scheduled
            by the :class:`RequeuePolicy`.
    """

    def __init__(
        self,
        networking_api: NetworkingV1Api,
        context: ReconcileContext,
        policy: RequeuePolicy,
        namespace: str | None = None,
        worker_count: int = 2,
        watch_timeout_seconds: int = 30,
        queue: WorkQueue | None = None,
        logger: logging.Logger | None = None,
        reconcile_fn: Callable[[V1Ingress, ReconcileContext], float] = reconcile,
    ) -> None:
        if worker_count < 1:
            raise ValueError("worker_count must be >= 1")
        self.networking_api = networking_api
        self.context = context
        self.policy = policy
        self.namespace = namespace
        self.worker_count = worker_count
        self.watch_timeout_seconds = watch_timeout_seconds
        self.queue = queue if queue is not None else WorkQueue()
        self.logger = logger or logging.getLogger(__name__)
        self.reconcile_fn = reconcile_fn

        self._cache: dict[ObjectKey, Any] = {}
        self._cache_lock = threading.Lock()
        self._workers: list[threading.Thread] = []

        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def _list_call(self) -> tuple[Callable[..., Any], dict[str, Any]]:
        """Return the list function and kwargs for the configured scope."""
        if self.namespace:
            return self.networking_api.list_namespaced_ingress, {"namespace": self.namespace}
        return self.networking_api.list_ingress_for_all_namespaces, {}

    def _list_ingresses(self) -> Any:
        list_fn, kwargs = self._list_call()
        return list_fn(**kwargs)

    @staticmethod
    def _cache_key(ingress: Any) -> ObjectKey:
        metadata = getattr(ingress, "metadata", None)
        return (
            getattr(metadata, "namespace", None) or "",
            getattr(metadata, "name", None) or "",
        )

    def cached(self, key: ObjectKey) -> Any:
        with self._cache_lock:
            return self._cache.get(key)

    def _enqueue(self, key: ObjectKey) -> None:
        self.queue.add(key)
        METRICS.queue_depth.set(len(self.queue))

    def _drop(self, key: ObjectKey) -> None:
        with self._cache_lock:
            self._cache.pop(key, None)
        self.queue.discard(key)
        self.policy.forget(key)
        METRICS.queue_depth.set(len(self.queue))

    def handle_ingress_event(self, event_type: str, ingress: Any) -> ObjectKey | None:
        """Apply one watch event to the cache and enqueue the affected key.

        Returns the key that was enqueued, or ``None`` for deletions and
        event types that carry no object state.
        """
        if event_type not in {"ADDED", "MODIFIED", "DELETED"}:
            return None
        if getattr(ingress, "metadata", None) is None:
            return None

        key = self._cache_key(ingress)
        if event_type == "DELETED":
            self.logger.debug("Ingress %s deleted; dropping pending work", format_key(key))
            self._drop(key)
            return None

        with self._cache_lock:
            self._cache[key] = ingress
        self._enqueue(key)
        return key

    def _sync_cache_from_list(self, listing: Any) -> None:
        """Replace the cache with a full listing and enqueue every object.

        Keys that disappeared since the previous listing (deleted while the
        watch was disconnected) are dropped.
        """
        items = getattr(listing, "items", None) or []
        fresh: dict[ObjectKey, Any] = {}
        for ingress in items:
            if getattr(ingress, "metadata", None) is None:
                continue
            fresh[self._cache_key(ingress)] = ingress

        with self._cache_lock:
            stale = set(self._cache) - set(fresh)
        for key in stale:
            self._drop(key)

        with self._cache_lock:
            self._cache.update(fresh)
        for key in fresh:
            self._enqueue(key)
        self.logger.info("Synced %d ingress(es) from list", len(fresh))

    def process_next(self, timeout: float | None = None) -> bool:
        """Reconcile the next ready key.

        Returns ``False`` once the queue is shut down or *timeout* expires
        without work, ``True`` otherwise.
        """
        key = self.queue.get(timeout=timeout)
        if key is None:
            return False
        try:
            self._process(key)
        finally:
            self.queue.done(key)
            METRICS.queue_depth.set(len(self.queue))
        return True

    def _process(self, key: ObjectKey) -> None:
        ingress = self.cached(key)
        if ingress is None:
            self.policy.forget(key)
            return

        started = time.monotonic()
        try:
            requeue_after = self.reconcile_fn(ingress, self.context)
        except Exception as exc:
            kind = exc.kind if isinstance(exc, ReconcileError) else "unexpected"
            METRICS.reconciles_total.labels(result="error").inc()
            METRICS.reconcile_errors_total.labels(kind=kind).inc()
            delay = self.policy.on_failure(key, exc)
        else:
            METRICS.reconciles_total.labels(result="success").inc()
            delay = self.policy.on_success(key, requeue_after)
            self.logger.info(
                "Reconciled ingress %s; next check in %.0fs",
                format_key(key),
                delay,
                extra={"ingress": format_key(key)},
            )
        finally:
            METRICS.reconcile_duration_seconds.observe(time.monotonic() - started)

        # The object may have been deleted while it was being reconciled.
        if self.cached(key) is not None:
            self.queue.add_after(key, delay)

    def _worker_loop(self) -> None:
        while self.process_next():
            pass

    def start_workers(self) -> None:
        if self._workers:
            return
        for index in range(self.worker_count):
            worker = threading.Thread(
                target=self._worker_loop,
                name=f"autotls-worker-{index}",
                daemon=True,
            )
            worker.start()
            self._workers.append(worker)
        self.logger.info("Started %d reconcile worker(s)", self.worker_count)

    def _stop_workers(self) -> None:
        self.queue.shut_down()
        for worker in self._workers:
            worker.join(timeout=WORKER_JOIN_TIMEOUT_SECONDS)
            if worker.is_alive():
                self.logger.error("Worker %s did not stop in time", worker.name)
        self._workers = []

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Main control loop: list then watch Ingresses until shutdown.

        1. Retries the initial list with jittered exponential backoff so
           transient API startup failures do not crash-loop the controller.
        2. Seeds the cache from the list, enqueues every Ingress and starts
           the workers.
        3. Opens a streaming watch from the list's ``resourceVersion``.
        4. On ``410 Gone`` re-lists, dropping objects deleted meanwhile.
        5. On other errors backs off with jitter, capped at 30 s.

        ``401`` / ``403`` responses are treated as RBAC misconfiguration and
        end the loop immediately.  Workers are shut down on exit; in-flight
        reconciles finish, queued work is dropped.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()
        list_fn, list_kwargs = self._list_call()

        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                initial = list_fn(**list_kwargs)
                resource_version = getattr(
                    getattr(initial, "metadata", None), "resource_version", None
                )
                self._sync_cache_from_list(initial)
                self.start_workers()
                self.ready.set()
                self.logger.info("Starting watch from resourceVersion %s", resource_version)
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied during initial list (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    self.ready.clear()
                    return
                self.logger.exception("Initial Kubernetes Ingress list failed")
                METRICS.watch_errors_total.inc()
            except Exception:
                self.logger.exception("Unexpected error during initial Ingress list")
                METRICS.watch_errors_total.inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        if self._should_stop(stop):
            self.ready.clear()
            return

        backoff_seconds = 1
        watch_stream_count = 0
        try:
            while not self._should_stop(stop):
                watcher = watch.Watch()
                with self._watcher_lock:
                    self._active_watcher = watcher
                try:
                    if watch_stream_count > 0:
                        METRICS.watch_reconnects_total.inc()
                    watch_stream_count += 1
                    stream = watcher.stream(
                        list_fn,
                        resource_version=resource_version,
                        timeout_seconds=self.watch_timeout_seconds,
                        **list_kwargs,
                    )

                    for event in stream:
                        if self._should_stop(stop):
                            break

                        obj = event.get("object")
                        if obj is None:
                            continue

                        metadata = getattr(obj, "metadata", None)
                        if metadata and metadata.resource_version:
                            resource_version = metadata.resource_version

                        self.handle_ingress_event(
                            event_type=str(event.get("type", "")), ingress=obj
                        )

                    backoff_seconds = 1
                except ApiException as exc:
                    # 410 Gone: the stored resourceVersion was compacted away.
                    if exc.status == 410:
                        self.logger.warning("Watch resource version expired, re-listing")
                        try:
                            fresh = list_fn(**list_kwargs)
                            resource_version = getattr(
                                getattr(fresh, "metadata", None), "resource_version", None
                            )
                            self._sync_cache_from_list(fresh)
                        except ApiException as relist_exc:
                            if relist_exc.status in {401, 403}:
                                self.logger.error(
                                    "Kubernetes API access denied during 410 re-list "
                                    "(status=%s). Check controller RBAC and service "
                                    "account permissions.",
                                    relist_exc.status,
                                )
                                return
                            self.logger.exception("Failed to re-list after 410")
                            METRICS.watch_errors_total.inc()
                            resource_version = None
                        continue

                    if exc.status in {401, 403}:
                        self.logger.error(
                            "Kubernetes API watch denied (status=%s). "
                            "Check controller RBAC and service account permissions.",
                            exc.status,
                        )
                        METRICS.watch_errors_total.inc()
                        return

                    self.logger.exception("Kubernetes API watch error")
                    METRICS.watch_errors_total.inc()
                    jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                    stop.wait(timeout=jittered)
                    backoff_seconds = min(backoff_seconds * 2, 30)
                except Exception:
                    self.logger.exception("Unexpected watch error")
                    METRICS.watch_errors_total.inc()
                    jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                    stop.wait(timeout=jittered)
                    backoff_seconds = min(backoff_seconds * 2, 30)
                finally:
                    watcher.stop()
                    with self._watcher_lock:
                        if self._active_watcher is watcher:
                            self._active_watcher = None
        finally:
            self.ready.clear()
            self._stop_workers()


def build_controller(networking_api: NetworkingV1Api, config: ControllerConfig) -> IngressController:
    """Wire an :class:`IngressController` from loaded configuration."""
    context = ReconcileContext(
        networking_api=networking_api,
        field_manager_prefix=config.field_manager_prefix,
        resync_seconds=float(config.resync_seconds),
    )
    policy = RequeuePolicy(
        resync_seconds=float(config.resync_seconds),
        retry_base_seconds=float(config.retry_base_seconds),
        retry_max_seconds=float(config.retry_max_seconds),
    )
    return IngressController(
        networking_api=networking_api,
        context=context,
        policy=policy,
        namespace=config.watch_namespace,
        worker_count=config.worker_count,
        watch_timeout_seconds=config.watch_timeout_seconds,
    )
