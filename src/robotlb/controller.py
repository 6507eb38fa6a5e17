#!/usr/bin/env python3
# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""Controller process: watches, work queue and reconciliation workers.

Watch threads turn Service, Node and Pod notifications into service keys on
the work queue; a fixed pool of workers takes keys off the queue and runs
one reconciliation pass each.
"""

from __future__ import annotations

import logging
import signal
import sys
import threading
from typing import Callable, Sequence

import httpx
from lightkube.core.exceptions import ApiError
from lightkube.resources.core_v1 import Node, Pod, Service

from robotlb import __version__, consts
from robotlb.cloud import HCloudBalancers
from robotlb.config import OperatorConfig, load_config
from robotlb.errors import ConfigError
from robotlb.kube import ALL_NAMESPACES, KubeCluster, has_finalizer, is_load_balancer
from robotlb.reconciler import Outcome, Reconciler
from robotlb.resolver import ReconcileKey
from robotlb.targets import node_address, pod_is_ready, services_selecting
from robotlb.workqueue import WorkQueue

logger = logging.getLogger(__name__)

WATCH_RETRY_DELAY = 5.0


def _node_fingerprint(node: Node) -> tuple:
    annotations = node.metadata.annotations or {}
    return (
        tuple(sorted((node.metadata.labels or {}).items())),
        annotations.get(consts.NODE_IP_ANN),
        node_address(node, private=True),
        node_address(node, private=False),
    )


def _pod_fingerprint(pod: Pod) -> tuple:
    return (
        tuple(sorted((pod.metadata.labels or {}).items())),
        pod.spec.nodeName if pod.spec else None,
        pod_is_ready(pod),
    )


class Controller:
    """Feed the work queue from watches and drain it with workers."""

    def __init__(
        self,
        config: OperatorConfig,
        cluster: KubeCluster,
        reconciler: Reconciler,
        queue: WorkQueue[ReconcileKey] | None = None,
    ):
        self._config = config
        self._cluster = cluster
        self._reconciler = reconciler
        if queue is None:
            queue = WorkQueue(base_delay=1.0, max_delay=config.max_backoff)
        self.queue = queue
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._services: dict[ReconcileKey, Service] = {}
        self._nodes: dict[str, tuple] = {}
        self._pods: dict[tuple[str, str], tuple] = {}
        self._threads: list[threading.Thread] = []

    # -- event handling ---------------------------------------------------------

    def _interesting(self, service: Service) -> bool:
        return is_load_balancer(service) or has_finalizer(service)

    def on_service_event(self, op: str, service: Service) -> None:
        key = ReconcileKey.for_service(service)
        with self._lock:
            if op == "DELETED":
                known = self._services.pop(key, None) is not None
            else:
                known = key in self._services
                if self._interesting(service):
                    self._services[key] = service
                else:
                    self._services.pop(key, None)
        if not (known or self._interesting(service)):
            return
        self.queue.enqueue_after(key, self._config.debounce)

    def _load_balancer_keys(self, namespace: str | None = None) -> list[ReconcileKey]:
        with self._lock:
            return [
                key
                for key, svc in self._services.items()
                if is_load_balancer(svc) and (namespace is None or key.namespace == namespace)
            ]

    def on_node_event(self, op: str, node: Node) -> None:
        name = node.metadata.name
        with self._lock:
            if op == "DELETED":
                changed = self._nodes.pop(name, None) is not None
            else:
                current = _node_fingerprint(node)
                changed = self._nodes.get(name) != current
                self._nodes[name] = current
        if not changed:
            return
        keys = self._load_balancer_keys()
        logger.debug("node %s %s, requeueing %d service(s)", name, op.lower(), len(keys))
        for key in keys:
            self.queue.enqueue_after(key, self._config.debounce)

    def on_pod_event(self, op: str, pod: Pod) -> None:
        ident = (pod.metadata.namespace or "default", pod.metadata.name)
        with self._lock:
            if op == "DELETED":
                changed = self._pods.pop(ident, None) is not None
            else:
                current = _pod_fingerprint(pod)
                changed = self._pods.get(ident) != current
                self._pods[ident] = current
            candidates = [
                svc
                for key, svc in self._services.items()
                if key.namespace == ident[0] and is_load_balancer(svc)
            ]
        if not changed:
            return
        for service in services_selecting(pod, candidates):
            self.queue.enqueue_after(ReconcileKey.for_service(service), self._config.debounce)

    # -- watches ----------------------------------------------------------------

    def _watch(self, resource, handler: Callable, namespace: str | None = None) -> None:
        client = self._cluster.client
        while not self._stop.is_set():
            try:
                for obj in client.list(resource, namespace=namespace):
                    handler("ADDED", obj)
                for op, obj in client.watch(resource, namespace=namespace):
                    if self._stop.is_set():
                        return
                    handler(op, obj)
            except (ApiError, httpx.HTTPError) as e:
                logger.warning("watch on %s interrupted: %s", resource.__name__, e)
            except Exception:
                logger.exception("watch on %s failed", resource.__name__)
            self._stop.wait(WATCH_RETRY_DELAY)

    # -- workers ----------------------------------------------------------------

    def process_next(self, timeout: float | None = None) -> bool:
        """Run one pass for the next key. Returns False once the queue is shut down."""
        key = self.queue.dequeue(timeout=timeout)
        if key is None:
            return not self.queue.shutting_down
        try:
            outcome = self._reconciler.reconcile(key)
        finally:
            self.queue.done(key)

        if outcome.should_retry:
            delay = self.queue.enqueue_rate_limited(key)
            logger.info(
                "retrying %s in %.0fs (attempt %d)", key, delay, self.queue.num_requeues(key)
            )
            return True
        self.queue.forget(key)
        if outcome.status is Outcome.SYNCED:
            self.queue.enqueue_after(key, self._config.resync_period)
        elif outcome.status is Outcome.DELETED:
            with self._lock:
                self._services.pop(key, None)
        return True

    def _worker(self) -> None:
        while self.process_next():
            pass

    # -- lifecycle --------------------------------------------------------------

    def _spawn(self, name: str, target: Callable, *args) -> None:
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        thread.start()
        self._threads.append(thread)

    def start(self) -> None:
        self._spawn("watch-services", self._watch, Service, self.on_service_event, ALL_NAMESPACES)
        self._spawn("watch-nodes", self._watch, Node, self.on_node_event)
        if self._config.defaults.dynamic_node_selector:
            self._spawn("watch-pods", self._watch, Pod, self.on_pod_event, ALL_NAMESPACES)
        for i in range(self._config.workers):
            self._spawn(f"worker-{i}", self._worker)

    def stop(self) -> None:
        logger.info("stopping")
        self._stop.set()
        self.queue.shutdown()

    def run(self) -> None:
        self.start()
        self._stop.wait()
        for thread in self._threads:
            if thread.name.startswith("worker-"):
                thread.join(timeout=30)


def main(argv: Sequence[str] | None = None) -> int:
    try:
        config = load_config(argv)
    except ConfigError as e:
        print(f"robotlb: {e}", file=sys.stderr)
        return 2

    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s [%(threadName)s] %(message)s",
    )
    logger.info("starting robotlb v%s with %d worker(s)", __version__, config.workers)

    cluster = KubeCluster()
    cloud = HCloudBalancers(config.hcloud_token)
    controller = Controller(config, cluster, Reconciler(cluster, cloud, config.defaults))

    def _on_signal(signum, frame):
        controller.stop()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)
    controller.run()
    return 0


if __name__ == "__main__":  # pragma: nocover
    sys.exit(main())
