# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""Plan the mutations that bring a cloud load balancer to its desired state.

Every operation is an "ensure" step: applying it to a balancer that already
satisfies it is harmless, so a pass interrupted halfway is simply diffed
again against the new cloud state.

Ordering within a plan:

- rename first, so the balancer is findable by its desired name
- stale networks are detached before the desired one is attached
- listeners are removed before new ones are added
- targets are removed before new ones are added, to stay under quotas
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Union

from robotlb.errors import ImmutableFieldChanged
from robotlb.observed import NetworkAttachment, ObservedLoadBalancer
from robotlb.resolver import DesiredLoadBalancerSpec, HealthCheckSpec, ListenerSpec
from robotlb.targets import Target


@dataclass(frozen=True)
class CreateLoadBalancer:
    spec: DesiredLoadBalancerSpec
    addresses: tuple[str, ...]


@dataclass(frozen=True)
class RenameLoadBalancer:
    name: str


@dataclass(frozen=True)
class DetachNetwork:
    network: NetworkAttachment


@dataclass(frozen=True)
class AttachNetwork:
    network: str
    ip: str | None = None


@dataclass(frozen=True)
class RemoveListener:
    listener: ListenerSpec


@dataclass(frozen=True)
class AddListener:
    listener: ListenerSpec
    health_check: HealthCheckSpec
    proxy_mode: bool


@dataclass(frozen=True)
class ReplaceHealthCheck:
    listener: ListenerSpec
    health_check: HealthCheckSpec


@dataclass(frozen=True)
class SetProxyMode:
    listener: ListenerSpec
    proxy_mode: bool


@dataclass(frozen=True)
class RemoveTarget:
    address: str


@dataclass(frozen=True)
class AddTarget:
    address: str


Operation = Union[
    CreateLoadBalancer,
    RenameLoadBalancer,
    DetachNetwork,
    AttachNetwork,
    RemoveListener,
    AddListener,
    ReplaceHealthCheck,
    SetProxyMode,
    RemoveTarget,
    AddTarget,
]


@dataclass(frozen=True)
class Plan:
    operations: tuple[Operation, ...] = ()

    @property
    def is_noop(self) -> bool:
        return not self.operations

    def __len__(self) -> int:
        return len(self.operations)

    def __iter__(self):
        return iter(self.operations)


NOOP = Plan()


def _addresses(targets: Iterable[Target]) -> tuple[str, ...]:
    return tuple(sorted({t.address for t in targets}))


def check_immutable(desired: DesiredLoadBalancerSpec, observed: ObservedLoadBalancer) -> None:
    """Raise ImmutableFieldChanged if a creation-time field differs."""
    for field, current, wanted in (
        ("algorithm", observed.algorithm, desired.algorithm),
        ("balancer type", observed.balancer_type, desired.balancer_type),
        ("location", observed.location, desired.location),
    ):
        if current != wanted:
            raise ImmutableFieldChanged(field, current, wanted)


def _diff_network(desired: DesiredLoadBalancerSpec, observed: ObservedLoadBalancer) -> list[Operation]:
    ops: list[Operation] = []
    satisfied = False
    for attachment in sorted(observed.networks, key=lambda a: a.network_id):
        keep = (
            not satisfied
            and attachment.network_name == desired.network
            and (desired.private_ip is None or attachment.ip == desired.private_ip)
        )
        if keep:
            satisfied = True
            continue
        ops.append(DetachNetwork(attachment))
    if desired.network is not None and not satisfied:
        ops.append(AttachNetwork(desired.network, desired.private_ip))
    return ops


def _diff_listeners(desired: DesiredLoadBalancerSpec, observed: ObservedLoadBalancer) -> list[Operation]:
    wanted = set(desired.listeners)
    removals: list[Operation] = []
    updates: list[Operation] = []
    kept: set[ListenerSpec] = set()

    for current in sorted(observed.listeners, key=lambda o: o.listener):
        if current.listener not in wanted or current.protocol != "tcp":
            removals.append(RemoveListener(current.listener))
            continue
        kept.add(current.listener)
        health_matches = (
            current.health_check == desired.health_check
            and current.health_protocol == "tcp"
            and current.health_port in (None, current.listener.target_port)
        )
        if not health_matches:
            updates.append(ReplaceHealthCheck(current.listener, desired.health_check))
        if current.proxy_mode != desired.proxy_mode:
            updates.append(SetProxyMode(current.listener, desired.proxy_mode))

    additions: list[Operation] = [
        AddListener(listener, desired.health_check, desired.proxy_mode)
        for listener in sorted(wanted - kept)
    ]
    return removals + additions + updates


def _diff_targets(targets: Iterable[Target], observed: ObservedLoadBalancer) -> list[Operation]:
    wanted = set(_addresses(targets))
    current = set(observed.target_addresses)
    ops: list[Operation] = [RemoveTarget(a) for a in sorted(current - wanted)]
    ops.extend(AddTarget(a) for a in sorted(wanted - current))
    return ops


def diff(
    desired: DesiredLoadBalancerSpec,
    targets: Iterable[Target],
    observed: ObservedLoadBalancer | None,
) -> Plan:
    """Compute the ordered plan turning `observed` into `desired`.

    Raises ImmutableFieldChanged, without planning anything, when the
    existing balancer differs in a field that can only be set at creation.
    """
    if observed is None:
        return Plan((CreateLoadBalancer(desired, _addresses(targets)),))

    check_immutable(desired, observed)

    ops: list[Operation] = []
    if observed.name != desired.name:
        ops.append(RenameLoadBalancer(desired.name))
    ops.extend(_diff_network(desired, observed))
    ops.extend(_diff_listeners(desired, observed))
    ops.extend(_diff_targets(targets, observed))
    if not ops:
        return NOOP
    return Plan(tuple(ops))
