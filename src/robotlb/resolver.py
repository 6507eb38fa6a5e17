# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""Desired load balancer configuration derived from a Service.

Every recognized ``robotlb/*`` annotation overrides the matching process
default. Unknown annotations are ignored.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping

from lightkube.resources.core_v1 import Service

from robotlb import consts
from robotlb.config import (
    Defaults,
    parse_algorithm,
    parse_bool,
    parse_int,
    parse_name,
    parse_optional,
    parse_private_ip,
)
from robotlb.errors import DependentFieldMissing, NoListeners
from robotlb.label_filter import LabelFilter, parse_label_filter

logger = logging.getLogger(__name__)


@dataclass(frozen=True, order=True)
class ReconcileKey:
    """Identity of a service, used as work queue key and cloud correlation."""

    namespace: str
    name: str

    @classmethod
    def for_service(cls, service: Service) -> ReconcileKey:
        return cls(namespace=service.metadata.namespace or "default", name=service.metadata.name)

    @property
    def default_balancer_name(self) -> str:
        return f"{self.namespace}-{self.name}"

    @property
    def labels(self) -> dict[str, str]:
        return {
            consts.OWNER_NAMESPACE_LABEL: self.namespace,
            consts.OWNER_NAME_LABEL: self.name,
        }

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True, order=True)
class ListenerSpec:
    listening_port: int
    target_port: int


@dataclass(frozen=True)
class HealthCheckSpec:
    interval: int
    timeout: int
    retries: int


@dataclass(frozen=True)
class DesiredLoadBalancerSpec:
    name: str
    network: str | None
    private_ip: str | None
    algorithm: str
    location: str
    balancer_type: str
    proxy_mode: bool
    ipv6_ingress: bool
    listeners: tuple[ListenerSpec, ...]
    health_check: HealthCheckSpec
    node_selector: LabelFilter


def _listener_for(port) -> ListenerSpec | None:
    if port.nodePort:
        return ListenerSpec(port.port, port.nodePort)
    if isinstance(port.targetPort, int):
        return ListenerSpec(port.port, port.targetPort)
    return None


def listeners_for(service: Service) -> tuple[ListenerSpec, ...]:
    """Derive one TCP listener per service port.

    Non-TCP ports and ports without a numeric destination are dropped with
    a warning.
    """
    listeners = []
    ports = (service.spec.ports if service.spec else None) or []
    for port in ports:
        protocol = port.protocol or "TCP"
        if protocol != "TCP":
            logger.warning(
                "service %s/%s: protocol %s on port %s is not supported, skipping",
                service.metadata.namespace,
                service.metadata.name,
                protocol,
                port.port,
            )
            continue
        listener = _listener_for(port)
        if listener is None:
            logger.warning(
                "service %s/%s: port %s has neither a node port nor a numeric target port, skipping",
                service.metadata.namespace,
                service.metadata.name,
                port.port,
            )
            continue
        listeners.append(listener)
    return tuple(sorted(set(listeners)))


def resolve(service: Service, defaults: Defaults) -> DesiredLoadBalancerSpec:
    """Merge the service's annotations with the defaults.

    Raises ConfigError on the first invalid annotation; nothing is applied
    for a spec that fails to resolve.
    """
    annotations: Mapping[str, str] = service.metadata.annotations or {}
    key = ReconcileKey.for_service(service)

    for name in annotations:
        if name.startswith(f"{consts.PREFIX}/") and name not in consts.SERVICE_ANNOTATIONS:
            logger.debug("service %s: ignoring unknown annotation %s", key, name)

    def get(name: str) -> str | None:
        return annotations.get(name)

    def number(name: str, default: int, minimum: int) -> int:
        raw = get(name)
        return default if raw is None else parse_int(name, raw, minimum=minimum)

    name = parse_optional(consts.LB_NAME_ANN, get(consts.LB_NAME_ANN)) or key.default_balancer_name

    network = parse_optional(consts.LB_NETWORK_ANN, get(consts.LB_NETWORK_ANN))
    if network is None:
        network = defaults.network
    private_ip = parse_private_ip(consts.LB_PRIVATE_IP_ANN, get(consts.LB_PRIVATE_IP_ANN))
    if private_ip is not None and network is None:
        raise DependentFieldMissing(consts.LB_PRIVATE_IP_ANN, consts.LB_NETWORK_ANN)

    raw_algorithm = get(consts.LB_ALGORITHM_ANN)
    algorithm = (
        defaults.algorithm
        if raw_algorithm is None
        else parse_algorithm(consts.LB_ALGORITHM_ANN, raw_algorithm)
    )
    raw_location = get(consts.LB_LOCATION_ANN)
    location = (
        defaults.location if raw_location is None else parse_name(consts.LB_LOCATION_ANN, raw_location)
    )
    raw_type = get(consts.LB_TYPE_ANN)
    balancer_type = (
        defaults.balancer_type if raw_type is None else parse_name(consts.LB_TYPE_ANN, raw_type)
    )
    raw_proxy = get(consts.LB_PROXY_MODE_ANN)
    proxy_mode = defaults.proxy_mode if raw_proxy is None else parse_bool(consts.LB_PROXY_MODE_ANN, raw_proxy)

    health_check = HealthCheckSpec(
        interval=number(consts.LB_CHECK_INTERVAL_ANN, defaults.check_interval, 1),
        timeout=number(consts.LB_TIMEOUT_ANN, defaults.timeout, 1),
        retries=number(consts.LB_RETRIES_ANN, defaults.retries, 0),
    )
    node_selector = parse_label_filter(get(consts.LB_NODE_SELECTOR_ANN), consts.LB_NODE_SELECTOR_ANN)

    listeners = listeners_for(service)
    if not listeners:
        raise NoListeners(f"service {key} exposes no TCP port with a node port or numeric target port")

    return DesiredLoadBalancerSpec(
        name=name,
        network=network,
        private_ip=private_ip,
        algorithm=algorithm,
        location=location,
        balancer_type=balancer_type,
        proxy_mode=proxy_mode,
        ipv6_ingress=defaults.ipv6_ingress,
        listeners=listeners,
        health_check=health_check,
        node_selector=node_selector,
    )
