# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""Backend targets of a load balancer.

Targets are either the nodes matching the service's node selector (static
selection) or the nodes currently running the service's ready pods (dynamic
selection). In both cases a node contributes its routing address: the
``robotlb/node-ip`` annotation when set, else its InternalIP when the
balancer sits on a private network, else its ExternalIP.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Union

from lightkube.resources.core_v1 import Node, Pod, Service

from robotlb import consts
from robotlb.errors import PartialTargets, ResolutionError
from robotlb.label_filter import LabelFilter
from robotlb.resolver import DesiredLoadBalancerSpec

logger = logging.getLogger(__name__)


@dataclass(frozen=True, order=True)
class Target:
    address: str
    port: int


@dataclass(frozen=True)
class StaticSelection:
    rules: LabelFilter


@dataclass(frozen=True)
class DynamicSelection:
    namespace: str
    pod_selector: Mapping[str, str]

    def matches(self, pod: Pod) -> bool:
        if (pod.metadata.namespace or "default") != self.namespace:
            return False
        labels = pod.metadata.labels or {}
        return all(labels.get(k) == v for k, v in self.pod_selector.items())


Selection = Union[StaticSelection, DynamicSelection]


@dataclass(frozen=True)
class ClusterSnapshot:
    """Read-only view of the nodes and pods a pass resolves against."""

    nodes: tuple[Node, ...] = ()
    pods: tuple[Pod, ...] = ()


@dataclass(frozen=True)
class TargetResolution:
    targets: frozenset[Target]
    warnings: tuple[PartialTargets, ...] = field(default=())

    @property
    def addresses(self) -> tuple[str, ...]:
        return tuple(sorted({t.address for t in self.targets}))


def selection_for(service: Service, desired: DesiredLoadBalancerSpec, dynamic: bool) -> Selection:
    if not dynamic:
        return StaticSelection(desired.node_selector)
    selector = service.spec.selector if service.spec else None
    if not selector:
        raise ResolutionError(
            f"service {service.metadata.namespace}/{service.metadata.name} has no pod selector"
        )
    return DynamicSelection(
        namespace=service.metadata.namespace or "default", pod_selector=dict(selector)
    )


def node_address(node: Node, private: bool) -> str | None:
    annotations = node.metadata.annotations or {}
    explicit = annotations.get(consts.NODE_IP_ANN, "").strip()
    if explicit:
        return explicit
    wanted = "InternalIP" if private else "ExternalIP"
    addresses = (node.status.addresses if node.status else None) or []
    for addr in addresses:
        if addr.type == wanted:
            return addr.address
    return None


def pod_is_ready(pod: Pod) -> bool:
    if pod.metadata.deletionTimestamp is not None or pod.status is None:
        return False
    if pod.status.phase != "Running":
        return False
    return any(c.type == "Ready" and c.status == "True" for c in pod.status.conditions or [])


def _selected_nodes(selection: Selection, snapshot: ClusterSnapshot) -> list[Node]:
    if isinstance(selection, StaticSelection):
        selected = [n for n in snapshot.nodes if selection.rules.check(n.metadata.labels)]
        return sorted(selected, key=lambda n: n.metadata.name)

    wanted = {
        pod.spec.nodeName
        for pod in snapshot.pods
        if pod.spec and pod.spec.nodeName and selection.matches(pod) and pod_is_ready(pod)
    }
    by_name = {n.metadata.name: n for n in snapshot.nodes}
    missing = sorted(wanted - by_name.keys())
    if missing:
        logger.debug("pods scheduled on unknown nodes %s", ", ".join(missing))
    return [by_name[name] for name in sorted(wanted) if name in by_name]


def resolve_targets(
    selection: Selection,
    desired: DesiredLoadBalancerSpec,
    snapshot: ClusterSnapshot,
) -> TargetResolution:
    """Compute the deduplicated target set.

    A node without a routing address is excluded and reported as a
    PartialTargets warning. An empty result is valid.
    """
    private = desired.network is not None
    ports = sorted({listener.target_port for listener in desired.listeners})

    targets: set[Target] = set()
    warnings: list[PartialTargets] = []
    for node in _selected_nodes(selection, snapshot):
        address = node_address(node, private)
        if address is None:
            kind = "InternalIP" if private else "ExternalIP"
            warnings.append(
                PartialTargets(node.metadata.name, f"no {consts.NODE_IP_ANN} annotation or {kind} address")
            )
            continue
        targets.update(Target(address, port) for port in ports)

    for warning in warnings:
        logger.warning("%s", warning)
    return TargetResolution(frozenset(targets), tuple(warnings))


def services_selecting(pod: Pod, services: Iterable[Service]) -> list[Service]:
    """Return the services whose pod selector matches the pod."""
    result = []
    for service in services:
        selector = service.spec.selector if service.spec else None
        if not selector:
            continue
        selection = DynamicSelection(service.metadata.namespace or "default", dict(selector))
        if selection.matches(pod):
            result.append(service)
    return result
