# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""One reconciliation pass per service key.

A pass resolves the desired spec and targets, reads the balancer from the
cloud, diffs the two and applies the plan in order, stopping at the first
failure. Nothing is cached between passes: the next pass diffs against
whatever the cloud reports then, so completed steps are not repeated.
"""

from __future__ import annotations

import enum
import hashlib
import json
import logging
import threading
from dataclasses import dataclass

from lightkube.resources.core_v1 import Service

from robotlb import diff as plan_ops
from robotlb.cloud import HCloudBalancers
from robotlb.config import Defaults
from robotlb.errors import RobotLBError
from robotlb.kube import KubeCluster, has_finalizer, ingress_for, is_load_balancer
from robotlb.observed import ObservedLoadBalancer
from robotlb.resolver import ReconcileKey, resolve
from robotlb.targets import resolve_targets, selection_for

logger = logging.getLogger(__name__)


class Outcome(enum.Enum):
    SYNCED = "synced"
    DELETED = "deleted"
    SKIPPED = "skipped"
    RETRY = "retry"
    FAILED = "failed"


@dataclass(frozen=True)
class ReconcileOutcome:
    status: Outcome
    message: str = ""
    applied: int = 0

    @property
    def should_retry(self) -> bool:
        return self.status is Outcome.RETRY


def _balancer_state(observed: ObservedLoadBalancer | None) -> dict | None:
    if observed is None:
        return None
    return {
        "id": observed.id,
        "name": observed.name,
        "algorithm": observed.algorithm,
        "type": observed.balancer_type,
        "location": observed.location,
        "networks": sorted([n.network_name, n.ip or ""] for n in observed.networks),
        "listeners": [repr(o) for o in sorted(observed.listeners, key=lambda o: o.listener)],
        "targets": sorted(observed.target_addresses),
    }


def fingerprint(
    service: Service,
    addresses: tuple[str, ...] | None = None,
    observed: ObservedLoadBalancer | None = None,
) -> str:
    """Hash of the inputs a permanent failure depends on.

    Without `addresses` only the service is covered, which is enough for
    failures raised while resolving it. Once the cloud has been read, the
    resolved target addresses and the observed balancer (or its absence)
    are covered too.
    """
    data: dict = {
        "annotations": service.metadata.annotations or {},
        "spec": service.spec.to_dict() if service.spec else {},
    }
    if addresses is not None:
        data["targets"] = list(addresses)
        data["balancer"] = _balancer_state(observed)
    return hashlib.sha256(json.dumps(data, sort_keys=True, default=str).encode()).hexdigest()


class Reconciler:
    """Drive the cloud load balancer of one service toward its desired state."""

    def __init__(self, cluster: KubeCluster, cloud: HCloudBalancers, defaults: Defaults):
        self._cluster = cluster
        self._cloud = cloud
        self._defaults = defaults
        # key -> fingerprint of the inputs of its last permanent failure
        self._permanent: dict[ReconcileKey, str] = {}
        # key -> fingerprint of the inputs seen so far by the running pass
        self._inputs: dict[ReconcileKey, str] = {}
        self._lock = threading.Lock()

    def _unchanged_since_failure(self, key: ReconcileKey, inputs: str) -> bool:
        with self._lock:
            self._inputs[key] = inputs
            return self._permanent.get(key) == inputs

    def reconcile(self, key: ReconcileKey) -> ReconcileOutcome:
        service = None
        try:
            service = self._cluster.get_service(key)
            if service is None:
                logger.info("service %s is gone, making sure its load balancer is too", key)
                return self.delete(key)
            if service.metadata.deletionTimestamp is not None:
                logger.info("service %s is being deleted, cleaning up", key)
                return self.delete(key, service)
            if not is_load_balancer(service):
                if has_finalizer(service):
                    logger.info("service %s is no longer a LoadBalancer, cleaning up", key)
                    return self.delete(key, service)
                return ReconcileOutcome(Outcome.SKIPPED, "not a LoadBalancer service")

            if self._unchanged_since_failure(key, fingerprint(service)):
                logger.debug("service %s unchanged since its last permanent failure, skipping", key)
                return ReconcileOutcome(Outcome.SKIPPED, "waiting for the service to change")

            outcome = self._sync(key, service)
            if outcome.status is Outcome.SYNCED:
                with self._lock:
                    self._permanent.pop(key, None)
            return outcome
        except RobotLBError as e:
            return self._failed(key, service, e)
        except Exception as e:
            logger.exception("unexpected error while reconciling %s", key)
            return self._failed(key, service, e)
        finally:
            with self._lock:
                self._inputs.pop(key, None)

    def delete(self, key: ReconcileKey, service: Service | None = None) -> ReconcileOutcome:
        """Delete the balancer owned by `key`, then release the service.

        A balancer that does not exist counts as deleted.
        """
        observed = self._cloud.find(key)
        if observed is None:
            logger.info("no load balancer found for %s", key)
        else:
            logger.info("deleting load balancer %s (%s) of %s", observed.name, observed.id, key)
            self._cloud.delete(observed.id)
        if service is not None:
            self._cluster.remove_finalizer(service)
        with self._lock:
            self._permanent.pop(key, None)
        return ReconcileOutcome(Outcome.DELETED, f"load balancer of {key} deleted")

    def _sync(self, key: ReconcileKey, service: Service) -> ReconcileOutcome:
        logger.info("reconciling %s", key)
        desired = resolve(service, self._defaults)
        selection = selection_for(service, desired, self._defaults.dynamic_node_selector)
        snapshot = self._cluster.snapshot(selection)
        resolution = resolve_targets(selection, desired, snapshot)

        self._cluster.add_finalizer(service)
        # a failed lookup depends on cloud state the memo cannot cover
        with self._lock:
            self._inputs.pop(key, None)
        observed = self._cloud.find(key, desired.name)
        if self._unchanged_since_failure(key, fingerprint(service, resolution.addresses, observed)):
            logger.debug("%s and its load balancer unchanged since the last permanent failure, skipping", key)
            return ReconcileOutcome(Outcome.SKIPPED, "waiting for the service or its load balancer to change")

        for warning in resolution.warnings:
            self._cluster.record_event(service, "Warning", warning.reason, str(warning))
        plan = plan_ops.diff(desired, resolution.targets, observed)
        if plan.is_noop:
            logger.debug("load balancer %s of %s is up to date", desired.name, key)
        observed = self._apply(key, service, plan, observed)

        ingress = ingress_for(
            observed.ipv4,
            observed.ipv6,
            desired.ipv6_ingress,
            ipv4_hostname=observed.ipv4_dns_ptr,
            ipv6_hostname=observed.ipv6_dns_ptr,
        )
        if self._cluster.set_ingress(service, ingress):
            logger.info("published %s for %s", ", ".join(i["ip"] for i in ingress) or "no address", key)
        self._cluster.set_condition(
            service, True, "Reconciled", f"load balancer {desired.name} is in sync"
        )
        logger.info(
            "reconciled %s: %d operation(s), %d target(s)", key, len(plan), len(resolution.addresses)
        )
        return ReconcileOutcome(Outcome.SYNCED, f"{len(plan)} operation(s) applied", applied=len(plan))

    def _apply(
        self,
        key: ReconcileKey,
        service: Service,
        plan: plan_ops.Plan,
        observed: ObservedLoadBalancer | None,
    ) -> ObservedLoadBalancer:
        applied = 0
        for op in plan:
            try:
                observed = self._apply_one(key, op, observed)
            except RobotLBError as e:
                if applied:
                    message = f"applied {applied} of {len(plan)} operations before failing: {e}"
                    logger.warning("%s: %s", key, message)
                    self._cluster.record_event(service, "Warning", "PartiallyApplied", message)
                raise
            applied += 1
        return observed

    def _apply_one(
        self, key: ReconcileKey, op: plan_ops.Operation, observed: ObservedLoadBalancer | None
    ) -> ObservedLoadBalancer:
        if isinstance(op, plan_ops.CreateLoadBalancer):
            return self._create(key, op)

        lb_id = observed.id
        if isinstance(op, plan_ops.RenameLoadBalancer):
            logger.info("renaming load balancer %s to %s", observed.name, op.name)
            self._cloud.rename(lb_id, op.name)
        elif isinstance(op, plan_ops.DetachNetwork):
            logger.info("detaching %s from network %s", observed.name, op.network.network_name)
            self._cloud.detach_network(lb_id, op.network.network_id)
        elif isinstance(op, plan_ops.AttachNetwork):
            logger.info("attaching %s to network %s (ip %s)", observed.name, op.network, op.ip or "auto")
            self._cloud.attach_network(lb_id, op.network, op.ip)
        elif isinstance(op, plan_ops.RemoveListener):
            logger.info("removing listener %s from %s", op.listener.listening_port, observed.name)
            self._cloud.remove_listener(lb_id, op.listener)
        elif isinstance(op, plan_ops.AddListener):
            logger.info(
                "adding listener %s -> %s to %s",
                op.listener.listening_port,
                op.listener.target_port,
                observed.name,
            )
            self._cloud.add_listener(lb_id, op.listener, op.health_check, op.proxy_mode)
        elif isinstance(op, plan_ops.ReplaceHealthCheck):
            logger.info("updating health check of listener %s on %s", op.listener.listening_port, observed.name)
            self._cloud.update_listener(lb_id, op.listener, health_check=op.health_check)
        elif isinstance(op, plan_ops.SetProxyMode):
            logger.info(
                "setting proxy mode %s on listener %s of %s",
                op.proxy_mode,
                op.listener.listening_port,
                observed.name,
            )
            self._cloud.update_listener(lb_id, op.listener, proxy_mode=op.proxy_mode)
        elif isinstance(op, plan_ops.RemoveTarget):
            logger.info("removing target %s from %s", op.address, observed.name)
            self._cloud.remove_target(lb_id, op.address)
        elif isinstance(op, plan_ops.AddTarget):
            logger.info("adding target %s to %s", op.address, observed.name)
            self._cloud.add_target(lb_id, op.address)
        else:  # pragma: nocover
            raise TypeError(f"unknown operation {op!r}")
        return observed

    def _create(self, key: ReconcileKey, op: plan_ops.CreateLoadBalancer) -> ObservedLoadBalancer:
        spec = op.spec
        logger.info(
            "creating load balancer %s for %s (%s, %s, %s)",
            spec.name,
            key,
            spec.balancer_type,
            spec.location,
            spec.algorithm,
        )
        observed = self._cloud.create(key, spec)
        if spec.network is not None:
            logger.info("attaching %s to network %s (ip %s)", spec.name, spec.network, spec.private_ip or "auto")
            self._cloud.attach_network(observed.id, spec.network, spec.private_ip)
        for address in op.addresses:
            logger.info("adding target %s to %s", address, spec.name)
            self._cloud.add_target(observed.id, address)
        return observed

    def _failed(self, key: ReconcileKey, service: Service | None, error: Exception) -> ReconcileOutcome:
        transient = getattr(error, "transient", True)
        reason = getattr(error, "reason", "TransientFailure")
        if service is not None:
            try:
                self._cluster.set_condition(service, False, reason, str(error))
            except RobotLBError as e:
                logger.warning("cannot update the condition of %s: %s", key, e)
            self._cluster.record_event(service, "Warning", reason, str(error))

        if transient:
            logger.warning("reconciling %s failed, will retry: %s", key, error)
            return ReconcileOutcome(Outcome.RETRY, str(error))

        logger.error("reconciling %s failed permanently: %s", key, error)
        with self._lock:
            inputs = self._inputs.get(key)
            if inputs is not None:
                self._permanent[key] = inputs
        return ReconcileOutcome(Outcome.FAILED, str(error))
