# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""Kubernetes reads and writes needed by the reconciler."""

from __future__ import annotations

import contextlib
import datetime
import logging
from typing import Iterator

import httpx
from lightkube import Client
from lightkube.core.exceptions import ApiError
from lightkube.models.core_v1 import EventSource, ObjectReference
from lightkube.models.meta_v1 import ObjectMeta
from lightkube.resources.core_v1 import Event, Node, Pod, Service
from lightkube.types import PatchType

from robotlb import consts
from robotlb.errors import KubeAPIError
from robotlb.resolver import ReconcileKey
from robotlb.targets import ClusterSnapshot, DynamicSelection, Selection

logger = logging.getLogger(__name__)

ALL_NAMESPACES = "*"


def is_transient_status(code: int) -> bool:
    return code in (409, 429) or code >= 500


@contextlib.contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except ApiError as e:
        code = e.status.code or 0
        raise KubeAPIError(f"{operation} failed: {e.status.message}", transient=is_transient_status(code)) from e
    except httpx.HTTPError as e:
        raise KubeAPIError(f"{operation} failed: {e}") from e


def has_finalizer(service: Service) -> bool:
    return consts.FINALIZER_NAME in (service.metadata.finalizers or [])


def is_load_balancer(service: Service) -> bool:
    return service.spec is not None and service.spec.type == "LoadBalancer"


def _entry(ip: str, hostname: str | None, ip_mode: str = "VIP") -> dict:
    entry = {"ip": ip, "ipMode": ip_mode}
    if hostname:
        entry["hostname"] = hostname
    return entry


def ingress_for(
    ipv4: str | None,
    ipv6: str | None,
    ipv6_ingress: bool,
    ipv4_hostname: str | None = None,
    ipv6_hostname: str | None = None,
) -> list[dict]:
    """Ingress entries for the balancer's addresses.

    The reverse DNS name of an address, when set, is published as its hostname.
    """
    ingress = []
    if ipv4:
        ingress.append(_entry(ipv4, ipv4_hostname))
    if ipv6_ingress and ipv6:
        ingress.append(_entry(ipv6, ipv6_hostname))
    return ingress


def current_ingress(service: Service) -> list[dict]:
    status = service.status.loadBalancer if service.status else None
    return [
        _entry(i.ip, i.hostname, i.ipMode or "VIP")
        for i in (status.ingress if status else None) or []
        if i.ip
    ]


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class KubeCluster:
    """Service, node and pod access for the reconciler."""

    def __init__(self, client: Client | None = None):
        self._client = client or Client(field_manager=consts.FIELD_MANAGER)

    @property
    def client(self) -> Client:
        return self._client

    def get_service(self, key: ReconcileKey) -> Service | None:
        try:
            return self._client.get(Service, name=key.name, namespace=key.namespace)
        except ApiError as e:
            if e.status.code == 404:
                return None
            raise KubeAPIError(
                f"get service {key} failed: {e.status.message}",
                transient=is_transient_status(e.status.code or 0),
            ) from e
        except httpx.HTTPError as e:
            raise KubeAPIError(f"get service {key} failed: {e}") from e

    def snapshot(self, selection: Selection) -> ClusterSnapshot:
        """Read the nodes, and the selected pods for dynamic selection."""
        with _translate_errors("list nodes"):
            nodes = tuple(self._client.list(Node))
        pods: tuple[Pod, ...] = ()
        if isinstance(selection, DynamicSelection):
            with _translate_errors(f"list pods in {selection.namespace}"):
                pods = tuple(
                    self._client.list(
                        Pod, namespace=selection.namespace, labels=dict(selection.pod_selector)
                    )
                )
        return ClusterSnapshot(nodes=nodes, pods=pods)

    def _patch_finalizers(self, service: Service, finalizers: list[str]) -> None:
        patch = {
            "metadata": {
                "finalizers": finalizers,
                "resourceVersion": service.metadata.resourceVersion,
            }
        }
        with _translate_errors(f"update finalizers of {ReconcileKey.for_service(service)}"):
            self._client.patch(
                Service,
                service.metadata.name,
                patch,
                namespace=service.metadata.namespace,
                patch_type=PatchType.MERGE,
            )

    def add_finalizer(self, service: Service) -> None:
        if has_finalizer(service):
            return
        self._patch_finalizers(service, [*(service.metadata.finalizers or []), consts.FINALIZER_NAME])

    def remove_finalizer(self, service: Service) -> None:
        if not has_finalizer(service):
            return
        remaining = [f for f in service.metadata.finalizers or [] if f != consts.FINALIZER_NAME]
        self._patch_finalizers(service, remaining)

    def _patch_status(self, service: Service, status: dict) -> None:
        with _translate_errors(f"update status of {ReconcileKey.for_service(service)}"):
            self._client.patch(
                Service.Status,
                service.metadata.name,
                {"status": status},
                namespace=service.metadata.namespace,
                patch_type=PatchType.MERGE,
            )

    def set_ingress(self, service: Service, ingress: list[dict]) -> bool:
        """Publish the balancer addresses. Returns False if nothing changed."""
        if current_ingress(service) == ingress:
            return False
        self._patch_status(service, {"loadBalancer": {"ingress": ingress}})
        return True

    def set_condition(self, service: Service, status: bool, reason: str, message: str) -> None:
        existing = (service.status.conditions if service.status else None) or []
        previous = next((c for c in existing if c.type == consts.CONDITION_TYPE), None)
        wanted = "True" if status else "False"
        if previous is not None and (previous.status, previous.reason, previous.message) == (
            wanted,
            reason,
            message,
        ):
            return
        transition = _now()
        if previous is not None and previous.status == wanted and previous.lastTransitionTime:
            transition = previous.lastTransitionTime
        condition = {
            "type": consts.CONDITION_TYPE,
            "status": wanted,
            "reason": reason,
            "message": message,
            "lastTransitionTime": transition.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "observedGeneration": service.metadata.generation,
        }
        others = [c.to_dict() for c in existing if c.type != consts.CONDITION_TYPE]
        self._patch_status(service, {"conditions": [*others, condition]})

    def record_event(self, service: Service, event_type: str, reason: str, message: str) -> None:
        """Attach an event to the service. Failures are logged and ignored."""
        now = _now()
        event = Event(
            metadata=ObjectMeta(
                generateName=f"{service.metadata.name}.", namespace=service.metadata.namespace
            ),
            involvedObject=ObjectReference(
                apiVersion="v1",
                kind="Service",
                name=service.metadata.name,
                namespace=service.metadata.namespace,
                uid=service.metadata.uid,
                resourceVersion=service.metadata.resourceVersion,
            ),
            reason=reason,
            message=message[:1024],
            type=event_type,
            source=EventSource(component=consts.FIELD_MANAGER),
            firstTimestamp=now,
            lastTimestamp=now,
            count=1,
        )
        try:
            self._client.create(event, namespace=service.metadata.namespace)
        except (ApiError, httpx.HTTPError):
            logger.debug(
                "failed to record event %s for %s", reason, ReconcileKey.for_service(service), exc_info=True
            )
