# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""Cloud-side state of a load balancer, as read at the start of a pass."""

from __future__ import annotations

from dataclasses import dataclass, field

from robotlb.resolver import HealthCheckSpec, ListenerSpec


@dataclass(frozen=True)
class NetworkAttachment:
    network_id: int
    network_name: str
    ip: str | None = None


@dataclass(frozen=True)
class ObservedListener:
    listener: ListenerSpec
    health_check: HealthCheckSpec
    proxy_mode: bool
    protocol: str = "tcp"
    health_protocol: str = "tcp"
    health_port: int | None = None


@dataclass(frozen=True)
class ObservedLoadBalancer:
    id: int
    name: str
    algorithm: str
    balancer_type: str
    location: str
    labels: dict[str, str] = field(default_factory=dict, hash=False, compare=False)
    networks: tuple[NetworkAttachment, ...] = ()
    listeners: tuple[ObservedListener, ...] = ()
    target_addresses: frozenset[str] = frozenset()
    ipv4: str | None = None
    ipv6: str | None = None
    ipv4_dns_ptr: str | None = None
    ipv6_dns_ptr: str | None = None

    def listener(self, listening_port: int) -> ObservedListener | None:
        for observed in self.listeners:
            if observed.listener.listening_port == listening_port:
                return observed
        return None
