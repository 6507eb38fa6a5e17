"""Builders and in-memory fakes shared by the unit tests."""

import dataclasses
import datetime

from lightkube.models.core_v1 import (
    Container,
    LoadBalancerIngress,
    LoadBalancerStatus,
    NodeAddress,
    NodeStatus,
    PodCondition,
    PodSpec,
    PodStatus,
    ServicePort,
    ServiceSpec,
    ServiceStatus,
)
from lightkube.models.meta_v1 import ObjectMeta
from lightkube.resources.core_v1 import Node, Pod, Service

from robotlb import consts
from robotlb.errors import CloudAPIError
from robotlb.observed import NetworkAttachment, ObservedListener, ObservedLoadBalancer
from robotlb.targets import ClusterSnapshot, DynamicSelection


def make_service(
    name="web",
    namespace="default",
    annotations=None,
    ports=None,
    selector=None,
    type_="LoadBalancer",
    finalizers=None,
    deleting=False,
    ingress=None,
):
    if ports is None:
        ports = [ServicePort(port=80, targetPort=8080, nodePort=30080, protocol="TCP")]
    status = None
    if ingress:
        status = ServiceStatus(
            loadBalancer=LoadBalancerStatus(
                ingress=[LoadBalancerIngress(ip=ip, ipMode="VIP") for ip in ingress]
            )
        )
    return Service(
        metadata=ObjectMeta(
            name=name,
            namespace=namespace,
            annotations=annotations,
            finalizers=finalizers,
            uid=f"uid-{name}",
            resourceVersion="1",
            deletionTimestamp=datetime.datetime(2026, 1, 1, tzinfo=datetime.timezone.utc)
            if deleting
            else None,
        ),
        spec=ServiceSpec(
            type=type_,
            selector=selector if selector is not None else {"app": name},
            ports=ports,
        ),
        status=status,
    )


def make_node(name, labels=None, internal=None, external=None, annotations=None):
    addresses = []
    if internal:
        addresses.append(NodeAddress(type="InternalIP", address=internal))
    if external:
        addresses.append(NodeAddress(type="ExternalIP", address=external))
    return Node(
        metadata=ObjectMeta(name=name, labels=labels or {}, annotations=annotations),
        status=NodeStatus(addresses=addresses),
    )


def make_pod(name, node, labels=None, namespace="default", phase="Running", ready=True):
    return Pod(
        metadata=ObjectMeta(name=name, namespace=namespace, labels=labels or {"app": "web"}),
        spec=PodSpec(containers=[Container(name="app")], nodeName=node),
        status=PodStatus(
            phase=phase,
            conditions=[PodCondition(type="Ready", status="True" if ready else "False")],
        ),
    )


class FakeCluster:
    """Stands in for robotlb.kube.KubeCluster."""

    def __init__(self, services=(), nodes=(), pods=()):
        self.services = {(s.metadata.namespace, s.metadata.name): s for s in services}
        self.nodes = list(nodes)
        self.pods = list(pods)
        self.ingress = {}
        self.conditions = {}
        self.events = []
        self.fail_with = None

    def get_service(self, key):
        if self.fail_with is not None:
            raise self.fail_with
        return self.services.get((key.namespace, key.name))

    def snapshot(self, selection):
        pods = ()
        if isinstance(selection, DynamicSelection):
            pods = tuple(p for p in self.pods if selection.matches(p))
        return ClusterSnapshot(nodes=tuple(self.nodes), pods=pods)

    def add_finalizer(self, service):
        finalizers = service.metadata.finalizers or []
        if consts.FINALIZER_NAME not in finalizers:
            service.metadata.finalizers = [*finalizers, consts.FINALIZER_NAME]

    def remove_finalizer(self, service):
        service.metadata.finalizers = [
            f for f in service.metadata.finalizers or [] if f != consts.FINALIZER_NAME
        ]

    def set_ingress(self, service, ingress):
        key = (service.metadata.namespace, service.metadata.name)
        if self.ingress.get(key) == ingress:
            return False
        self.ingress[key] = ingress
        return True

    def set_condition(self, service, status, reason, message):
        self.conditions[(service.metadata.namespace, service.metadata.name)] = (status, reason, message)

    def record_event(self, service, event_type, reason, message):
        self.events.append((service.metadata.name, event_type, reason, message))

    def reasons(self):
        return [e[2] for e in self.events]


MUTATIONS = {
    "create",
    "rename",
    "attach_network",
    "detach_network",
    "add_listener",
    "update_listener",
    "remove_listener",
    "add_target",
    "remove_target",
    "delete",
}


class FakeCloud:
    """Stands in for robotlb.cloud.HCloudBalancers, keeping balancers in memory."""

    def __init__(self, networks=None):
        self.balancers = {}
        self.networks = networks or {"net-1": 11, "net-2": 12}
        self.calls = []
        self.fail = {}
        self._next_id = 100

    def _record(self, name, *args):
        self.calls.append((name, *args))
        error = self.fail.pop(name, None)
        if error is not None:
            raise error

    def mutations(self):
        return [c for c in self.calls if c[0] in MUTATIONS]

    def put(self, balancer):
        self.balancers[balancer.id] = balancer
        return balancer

    def _update(self, balancer_id, **changes):
        self.balancers[balancer_id] = dataclasses.replace(self.balancers[balancer_id], **changes)

    def find(self, key, name=None):
        self._record("find", key)
        owned = [b for b in self.balancers.values() if b.labels == key.labels]
        return owned[0] if owned else None

    def create(self, key, spec):
        self._record("create", spec.name)
        self._next_id += 1
        listeners = tuple(
            ObservedListener(
                listener=listener,
                health_check=spec.health_check,
                proxy_mode=spec.proxy_mode,
                health_port=listener.target_port,
            )
            for listener in spec.listeners
        )
        return self.put(
            ObservedLoadBalancer(
                id=self._next_id,
                name=spec.name,
                algorithm=spec.algorithm,
                balancer_type=spec.balancer_type,
                location=spec.location,
                labels=dict(key.labels),
                listeners=listeners,
                ipv4="203.0.113.10",
                ipv6="2001:db8::1",
            )
        )

    def rename(self, balancer_id, name):
        self._record("rename", balancer_id, name)
        self._update(balancer_id, name=name)

    def attach_network(self, balancer_id, network_name, ip=None):
        self._record("attach_network", balancer_id, network_name, ip)
        if network_name not in self.networks:
            raise CloudAPIError("network_not_found", f"network {network_name} does not exist", transient=True)
        attachment = NetworkAttachment(self.networks[network_name], network_name, ip or "10.0.0.2")
        self._update(balancer_id, networks=self.balancers[balancer_id].networks + (attachment,))

    def detach_network(self, balancer_id, network_id):
        self._record("detach_network", balancer_id, network_id)
        networks = tuple(n for n in self.balancers[balancer_id].networks if n.network_id != network_id)
        self._update(balancer_id, networks=networks)

    def add_listener(self, balancer_id, listener, health_check, proxy_mode):
        self._record("add_listener", balancer_id, listener)
        observed = ObservedListener(listener, health_check, proxy_mode, health_port=listener.target_port)
        self._update(balancer_id, listeners=self.balancers[balancer_id].listeners + (observed,))

    def update_listener(self, balancer_id, listener, health_check=None, proxy_mode=None):
        self._record("update_listener", balancer_id, listener, health_check, proxy_mode)
        listeners = []
        for current in self.balancers[balancer_id].listeners:
            if current.listener.listening_port == listener.listening_port:
                changes = {}
                if health_check is not None:
                    changes.update(health_check=health_check, health_port=listener.target_port, health_protocol="tcp")
                if proxy_mode is not None:
                    changes["proxy_mode"] = proxy_mode
                current = dataclasses.replace(current, **changes)
            listeners.append(current)
        self._update(balancer_id, listeners=tuple(listeners))

    def remove_listener(self, balancer_id, listener):
        self._record("remove_listener", balancer_id, listener)
        listeners = tuple(
            current
            for current in self.balancers[balancer_id].listeners
            if current.listener.listening_port != listener.listening_port
        )
        self._update(balancer_id, listeners=listeners)

    def add_target(self, balancer_id, address):
        self._record("add_target", balancer_id, address)
        self._update(balancer_id, target_addresses=self.balancers[balancer_id].target_addresses | {address})

    def remove_target(self, balancer_id, address):
        self._record("remove_target", balancer_id, address)
        self._update(balancer_id, target_addresses=self.balancers[balancer_id].target_addresses - {address})

    def delete(self, balancer_id):
        self._record("delete", balancer_id)
        self.balancers.pop(balancer_id, None)
