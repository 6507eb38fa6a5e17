# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""Hetzner Cloud load balancer operations.

Thin wrapper around the hcloud SDK that speaks in the controller's own
types, waits for every mutating action to finish and translates SDK
failures into CloudAPIError with a transient/permanent classification.
"""

from __future__ import annotations

import contextlib
import logging
from typing import Iterator, Mapping

import requests
from hcloud import APIException, Client
from hcloud.actions import ActionFailedException, ActionTimeoutException
from hcloud.load_balancer_types import LoadBalancerType
from hcloud.load_balancers import (
    LoadBalancer,
    LoadBalancerAlgorithm,
    LoadBalancerHealthCheck,
    LoadBalancerService,
    LoadBalancerTarget,
    LoadBalancerTargetIP,
)
from hcloud.locations import Location
from hcloud.networks import Network

from robotlb import __version__, consts
from robotlb.errors import CloudAPIError, OwnershipConflict
from robotlb.observed import NetworkAttachment, ObservedListener, ObservedLoadBalancer
from robotlb.resolver import DesiredLoadBalancerSpec, HealthCheckSpec, ListenerSpec, ReconcileKey

logger = logging.getLogger(__name__)

TRANSIENT_CODES = frozenset(
    {
        "rate_limit_exceeded",
        "timeout",
        "server_error",
        "unavailable",
        "locked",
        "conflict",
        "service_error",
        "maintenance",
        "robot_unavailable",
    }
)


def _to_cloud_algorithm(algorithm: str) -> str:
    return algorithm.replace("-", "_")


def _from_cloud_algorithm(algorithm: str) -> str:
    return algorithm.replace("_", "-")


def _label_selector(labels: Mapping[str, str]) -> str:
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


@contextlib.contextmanager
def _translate_errors(operation: str, ignore: tuple[str, ...] = ()) -> Iterator[None]:
    """Turn SDK failures into CloudAPIError.

    API errors whose code is in `ignore` are swallowed: they mean the
    operation's goal already holds.
    """
    try:
        yield
    except APIException as e:
        if e.code in ignore:
            logger.debug("%s: %s, nothing to do", operation, e.code)
            return
        raise CloudAPIError(
            str(e.code), f"{operation} failed: {e.message}", transient=e.code in TRANSIENT_CODES
        ) from e
    except ActionFailedException as e:
        error = e.action.error or {}
        raise CloudAPIError(
            error.get("code", "action_failed"),
            f"{operation} failed: {error.get('message', 'action failed')}",
            transient=True,
        ) from e
    except ActionTimeoutException as e:
        raise CloudAPIError("timeout", f"{operation} did not finish in time", transient=True) from e
    except requests.RequestException as e:
        raise CloudAPIError("transport", f"{operation} failed: {e}", transient=True) from e


def _service_payload(
    listener: ListenerSpec,
    health_check: HealthCheckSpec | None = None,
    proxy_mode: bool | None = None,
    full: bool = False,
) -> LoadBalancerService:
    check = None
    if health_check is not None:
        check = LoadBalancerHealthCheck(
            protocol="tcp",
            port=listener.target_port,
            interval=health_check.interval,
            timeout=health_check.timeout,
            retries=health_check.retries,
        )
    return LoadBalancerService(
        protocol="tcp" if full else None,
        listen_port=listener.listening_port,
        destination_port=listener.target_port if full else None,
        proxyprotocol=proxy_mode,
        health_check=check,
    )


def _dns_ptr(address) -> str | None:
    if address is None:
        return None
    ptr = getattr(address, "dns_ptr", None)
    if isinstance(ptr, list):
        # per-address records, as returned for IPv6 networks
        ptr = next((p.get("dns_ptr") for p in ptr if p.get("ip") == address.ip), None)
    return ptr if isinstance(ptr, str) and ptr else None


def observe(balancer) -> ObservedLoadBalancer:
    """Convert a bound hcloud load balancer to an ObservedLoadBalancer."""
    networks = tuple(
        NetworkAttachment(network_id=pn.network.id, network_name=pn.network.name, ip=pn.ip)
        for pn in balancer.private_net or []
    )
    listeners = []
    for svc in balancer.services or []:
        check = svc.health_check
        listeners.append(
            ObservedListener(
                listener=ListenerSpec(svc.listen_port, svc.destination_port),
                health_check=HealthCheckSpec(check.interval, check.timeout, check.retries),
                proxy_mode=bool(svc.proxyprotocol),
                protocol=svc.protocol,
                health_protocol=check.protocol,
                health_port=check.port,
            )
        )
    addresses = frozenset(
        t.ip.ip for t in balancer.targets or [] if t.type == "ip" and t.ip is not None
    )
    public = balancer.public_net
    ipv4 = public.ipv4 if public is not None else None
    ipv6 = public.ipv6 if public is not None else None
    return ObservedLoadBalancer(
        id=balancer.id,
        name=balancer.name,
        algorithm=_from_cloud_algorithm(balancer.algorithm.type),
        balancer_type=balancer.load_balancer_type.name,
        location=balancer.location.name,
        labels=dict(balancer.labels or {}),
        networks=networks,
        listeners=tuple(listeners),
        target_addresses=addresses,
        ipv4=ipv4.ip if ipv4 is not None else None,
        ipv6=ipv6.ip if ipv6 is not None else None,
        ipv4_dns_ptr=_dns_ptr(ipv4),
        ipv6_dns_ptr=_dns_ptr(ipv6),
    )


class HCloudBalancers:
    """Load balancer operations shared by all reconciliation workers."""

    def __init__(self, token: str | None = None, *, client: Client | None = None):
        if client is None:
            client = Client(token=token, application_name=consts.PREFIX, application_version=__version__)
        self._client = client

    def _wait(self, action) -> None:
        if action is not None:
            action.wait_until_finished()

    def _network(self, name: str):
        with _translate_errors(f"look up network {name}"):
            network = self._client.networks.get_by_name(name)
        if network is None:
            # The network may be created later, so this is retried.
            raise CloudAPIError("network_not_found", f"network {name} does not exist", transient=True)
        return network

    def find(self, key: ReconcileKey, name: str | None = None) -> ObservedLoadBalancer | None:
        """Find the balancer owned by `key`.

        Balancers are correlated by owner labels. When `name` is given, an
        unlabeled balancer that already carries that name is adopted.
        """
        with _translate_errors(f"list load balancers for {key}"):
            owned = self._client.load_balancers.get_all(label_selector=_label_selector(key.labels))
        if len(owned) > 1:
            ids = ", ".join(str(b.id) for b in owned)
            raise CloudAPIError(
                "duplicate", f"more than one load balancer is labeled for {key}: {ids}"
            )
        if owned:
            with _translate_errors(f"read load balancer {owned[0].id}"):
                return observe(owned[0])
        if name is None:
            return None

        with _translate_errors(f"get load balancer {name}"):
            named = self._client.load_balancers.get_by_name(name)
        if named is None:
            return None
        labels = dict(named.labels or {})
        if consts.OWNER_NAMESPACE_LABEL in labels or consts.OWNER_NAME_LABEL in labels:
            owner = f"{labels.get(consts.OWNER_NAMESPACE_LABEL)}/{labels.get(consts.OWNER_NAME_LABEL)}"
            raise OwnershipConflict(f"load balancer {name} belongs to service {owner}")
        logger.info("adopting existing load balancer %s (%s) for %s", name, named.id, key)
        labels.update(key.labels)
        with _translate_errors(f"label load balancer {name}"):
            adopted = self._client.load_balancers.update(named, labels=labels)
            return observe(adopted)

    def create(
        self, key: ReconcileKey, spec: DesiredLoadBalancerSpec
    ) -> ObservedLoadBalancer:
        services = [
            _service_payload(listener, spec.health_check, spec.proxy_mode, full=True)
            for listener in spec.listeners
        ]
        with _translate_errors(f"create load balancer {spec.name}"):
            response = self._client.load_balancers.create(
                name=spec.name,
                load_balancer_type=LoadBalancerType(name=spec.balancer_type),
                algorithm=LoadBalancerAlgorithm(type=_to_cloud_algorithm(spec.algorithm)),
                location=Location(name=spec.location),
                services=services,
                targets=[],
                labels=key.labels,
                public_interface=True,
            )
            self._wait(response.action)
            balancer = self._client.load_balancers.get_by_id(response.load_balancer.id)
            return observe(balancer)

    def rename(self, balancer_id: int, name: str) -> None:
        with _translate_errors(f"rename load balancer {balancer_id}"):
            self._client.load_balancers.update(LoadBalancer(id=balancer_id), name=name)

    def attach_network(self, balancer_id: int, network_name: str, ip: str | None = None) -> None:
        network = self._network(network_name)
        with _translate_errors(f"attach load balancer {balancer_id} to {network_name}"):
            self._wait(
                self._client.load_balancers.attach_to_network(LoadBalancer(id=balancer_id), network, ip=ip)
            )

    def detach_network(self, balancer_id: int, network_id: int) -> None:
        with _translate_errors(f"detach load balancer {balancer_id} from {network_id}", ignore=("not_found",)):
            self._wait(
                self._client.load_balancers.detach_from_network(
                    LoadBalancer(id=balancer_id), Network(id=network_id)
                )
            )

    def add_listener(
        self, balancer_id: int, listener: ListenerSpec, health_check: HealthCheckSpec, proxy_mode: bool
    ) -> None:
        service = _service_payload(listener, health_check, proxy_mode, full=True)
        with _translate_errors(f"add listener {listener.listening_port} to {balancer_id}"):
            self._wait(self._client.load_balancers.add_service(LoadBalancer(id=balancer_id), service))

    def update_listener(
        self,
        balancer_id: int,
        listener: ListenerSpec,
        health_check: HealthCheckSpec | None = None,
        proxy_mode: bool | None = None,
    ) -> None:
        service = _service_payload(listener, health_check, proxy_mode)
        with _translate_errors(f"update listener {listener.listening_port} on {balancer_id}"):
            self._wait(self._client.load_balancers.update_service(LoadBalancer(id=balancer_id), service))

    def remove_listener(self, balancer_id: int, listener: ListenerSpec) -> None:
        service = LoadBalancerService(listen_port=listener.listening_port)
        with _translate_errors(f"remove listener {listener.listening_port} from {balancer_id}", ignore=("not_found",)):
            self._wait(self._client.load_balancers.delete_service(LoadBalancer(id=balancer_id), service))

    def add_target(self, balancer_id: int, address: str) -> None:
        target = LoadBalancerTarget(type="ip", ip=LoadBalancerTargetIP(ip=address))
        with _translate_errors(f"add target {address} to {balancer_id}", ignore=("target_already_defined",)):
            self._wait(self._client.load_balancers.add_target(LoadBalancer(id=balancer_id), target))

    def remove_target(self, balancer_id: int, address: str) -> None:
        target = LoadBalancerTarget(type="ip", ip=LoadBalancerTargetIP(ip=address))
        with _translate_errors(f"remove target {address} from {balancer_id}", ignore=("not_found",)):
            self._wait(self._client.load_balancers.remove_target(LoadBalancer(id=balancer_id), target))

    def delete(self, balancer_id: int) -> None:
        with _translate_errors(f"delete load balancer {balancer_id}", ignore=("not_found",)):
            self._client.load_balancers.delete(LoadBalancer(id=balancer_id))
