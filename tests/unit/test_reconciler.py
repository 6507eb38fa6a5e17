"""Unit tests for a reconciliation pass against in-memory cluster and cloud."""

import dataclasses

import pytest

from helpers import FakeCloud, FakeCluster, make_node, make_pod, make_service
from robotlb import consts
from robotlb.config import Defaults
from robotlb.errors import CloudAPIError, KubeAPIError, OwnershipConflict
from robotlb.reconciler import Outcome, Reconciler, fingerprint
from robotlb.resolver import ReconcileKey

KEY = ReconcileKey("default", "web")
PUBLIC_INGRESS = [{"ip": "203.0.113.10", "ipMode": "VIP"}]


@pytest.fixture
def nodes():
    return [
        make_node("n1", {"role": "worker", "arch": "amd64"}, internal="10.0.0.1", external="1.1.1.1"),
        make_node("n2", {"role": "control-plane", "arch": "amd64"}, internal="10.0.0.2", external="2.2.2.2"),
        make_node("n3", {"role": "worker", "arch": "arm64"}, internal="10.0.0.3", external="3.3.3.3"),
    ]


def setup(service, nodes, pods=(), defaults=None):
    cluster = FakeCluster(services=[service], nodes=nodes, pods=pods)
    cloud = FakeCloud()
    return cluster, cloud, Reconciler(cluster, cloud, defaults or Defaults())


def only_balancer(cloud):
    assert len(cloud.balancers) == 1
    return next(iter(cloud.balancers.values()))


def test_new_service_gets_a_balancer(nodes):
    service = make_service()
    cluster, cloud, reconciler = setup(service, nodes)

    outcome = reconciler.reconcile(KEY)

    assert outcome.status is Outcome.SYNCED
    balancer = only_balancer(cloud)
    assert balancer.name == "default-web"
    assert balancer.target_addresses == {"1.1.1.1", "2.2.2.2", "3.3.3.3"}
    assert balancer.labels == KEY.labels
    assert [c[0] for c in cloud.mutations()] == ["create", "add_target", "add_target", "add_target"]
    assert consts.FINALIZER_NAME in service.metadata.finalizers
    assert cluster.ingress[("default", "web")] == PUBLIC_INGRESS
    assert cluster.conditions[("default", "web")][:2] == (True, "Reconciled")


def test_second_pass_is_a_noop(nodes):
    service = make_service()
    cluster, cloud, reconciler = setup(service, nodes)
    reconciler.reconcile(KEY)
    cloud.calls.clear()

    outcome = reconciler.reconcile(KEY)

    assert outcome.status is Outcome.SYNCED
    assert outcome.applied == 0
    assert cloud.mutations() == []


def test_node_selector_change_converges(nodes):
    service = make_service()
    cluster, cloud, reconciler = setup(service, nodes)
    reconciler.reconcile(KEY)

    service.metadata.annotations = {consts.LB_NODE_SELECTOR_ANN: "role!=control-plane,arch=amd64"}
    cloud.calls.clear()
    assert reconciler.reconcile(KEY).status is Outcome.SYNCED

    assert only_balancer(cloud).target_addresses == {"1.1.1.1"}
    assert cloud.mutations() == [("remove_target", 101, "2.2.2.2"), ("remove_target", 101, "3.3.3.3")]

    cloud.calls.clear()
    reconciler.reconcile(KEY)
    assert cloud.mutations() == []


def test_create_attaches_the_network_with_its_ip(nodes):
    service = make_service(
        annotations={consts.LB_NETWORK_ANN: "net-1", consts.LB_PRIVATE_IP_ANN: "10.10.10.5"}
    )
    cluster, cloud, reconciler = setup(service, nodes)

    reconciler.reconcile(KEY)

    balancer = only_balancer(cloud)
    assert [(n.network_name, n.ip) for n in balancer.networks] == [("net-1", "10.10.10.5")]
    assert balancer.target_addresses == {"10.0.0.1", "10.0.0.2", "10.0.0.3"}
    assert [c[0] for c in cloud.mutations()][:2] == ["create", "attach_network"]


def test_network_added_later_is_a_single_attach(nodes):
    service = make_service(annotations={consts.LB_NODE_SELECTOR_ANN: "gpu"})
    cluster, cloud, reconciler = setup(service, nodes)
    reconciler.reconcile(KEY)

    service.metadata.annotations = {
        consts.LB_NODE_SELECTOR_ANN: "gpu",
        consts.LB_NETWORK_ANN: "net-1",
        consts.LB_PRIVATE_IP_ANN: "10.10.10.5",
    }
    cloud.calls.clear()
    reconciler.reconcile(KEY)

    assert cloud.mutations() == [("attach_network", 101, "net-1", "10.10.10.5")]


def test_dynamic_selection_targets_nodes_with_ready_pods(nodes):
    service = make_service()
    pods = [make_pod("a", "n1"), make_pod("b", "n2"), make_pod("c", "n3", phase="Pending", ready=False)]
    cluster, cloud, reconciler = setup(service, nodes, pods, Defaults(dynamic_node_selector=True))

    reconciler.reconcile(KEY)

    assert only_balancer(cloud).target_addresses == {"1.1.1.1", "2.2.2.2"}


def test_immutable_change_fails_permanently_until_the_service_changes(nodes):
    service = make_service(annotations={consts.LB_ALGORITHM_ANN: "round-robin"})
    cluster, cloud, reconciler = setup(service, nodes)
    reconciler.reconcile(KEY)

    service.metadata.annotations = {consts.LB_ALGORITHM_ANN: "least-connections"}
    cloud.calls.clear()
    outcome = reconciler.reconcile(KEY)

    assert outcome.status is Outcome.FAILED
    assert not outcome.should_retry
    assert cloud.mutations() == []
    assert cluster.conditions[("default", "web")][:2] == (False, "ImmutableFieldChanged")
    assert "ImmutableFieldChanged" in cluster.reasons()

    cloud.calls.clear()
    assert reconciler.reconcile(KEY).status is Outcome.SKIPPED
    assert cloud.mutations() == []
    assert cluster.reasons().count("ImmutableFieldChanged") == 1

    service.metadata.annotations = {consts.LB_ALGORITHM_ANN: "round-robin"}
    assert reconciler.reconcile(KEY).status is Outcome.SYNCED


def test_invalid_annotation_touches_nothing(nodes):
    service = make_service(annotations={consts.LB_CHECK_INTERVAL_ANN: "often"})
    cluster, cloud, reconciler = setup(service, nodes)

    outcome = reconciler.reconcile(KEY)

    assert outcome.status is Outcome.FAILED
    assert cloud.calls == []
    assert not service.metadata.finalizers
    assert cluster.conditions[("default", "web")][:2] == (False, "InvalidConfiguration")


def test_transient_failure_is_retried_and_reports_partial_progress(nodes):
    service = make_service()
    cluster, cloud, reconciler = setup(service, nodes)
    reconciler.reconcile(KEY)

    service.metadata.annotations = {consts.LB_NODE_SELECTOR_ANN: "arch=arm64", consts.LB_PROXY_MODE_ANN: "true"}
    cloud.fail["remove_target"] = CloudAPIError("rate_limit_exceeded", "slow down", transient=True)
    outcome = reconciler.reconcile(KEY)

    assert outcome.status is Outcome.RETRY
    assert outcome.should_retry
    assert "PartiallyApplied" in cluster.reasons()
    assert all(listener.proxy_mode for listener in only_balancer(cloud).listeners)

    cloud.calls.clear()
    assert reconciler.reconcile(KEY).status is Outcome.SYNCED
    assert only_balancer(cloud).target_addresses == {"3.3.3.3"}
    assert [c[0] for c in cloud.mutations()] == ["remove_target", "remove_target"]


def test_missing_network_is_retried(nodes):
    service = make_service(annotations={consts.LB_NETWORK_ANN: "net-9"})
    cluster, cloud, reconciler = setup(service, nodes)

    outcome = reconciler.reconcile(KEY)

    assert outcome.status is Outcome.RETRY
    cloud.networks["net-9"] = 19
    assert reconciler.reconcile(KEY).status is Outcome.SYNCED
    assert [n.network_name for n in only_balancer(cloud).networks] == ["net-9"]
    assert len(cloud.balancers) == 1


def test_ownership_conflict_is_permanent(nodes):
    service = make_service()
    cluster, cloud, reconciler = setup(service, nodes)
    cloud.fail["find"] = OwnershipConflict("load balancer default-web belongs to service other/web")

    assert reconciler.reconcile(KEY).status is Outcome.FAILED
    assert cluster.conditions[("default", "web")][:2] == (False, "OwnershipConflict")


def test_kubernetes_errors_are_retried(nodes):
    service = make_service()
    cluster, cloud, reconciler = setup(service, nodes)
    cluster.fail_with = KubeAPIError("apiserver unavailable")

    assert reconciler.reconcile(KEY).status is Outcome.RETRY
    assert cloud.calls == []


def test_unexpected_errors_are_retried(nodes):
    service = make_service()
    cluster, cloud, reconciler = setup(service, nodes)
    cloud.fail["find"] = RuntimeError("boom")

    assert reconciler.reconcile(KEY).status is Outcome.RETRY
    assert cluster.conditions[("default", "web")][0] is False


def test_ipv6_ingress(nodes):
    service = make_service()
    cluster, cloud, reconciler = setup(service, nodes, defaults=Defaults(ipv6_ingress=True))

    reconciler.reconcile(KEY)

    assert cluster.ingress[("default", "web")] == [
        {"ip": "203.0.113.10", "ipMode": "VIP"},
        {"ip": "2001:db8::1", "ipMode": "VIP"},
    ]


def test_deleting_service_removes_the_balancer_and_the_finalizer(nodes):
    service = make_service()
    cluster, cloud, reconciler = setup(service, nodes)
    reconciler.reconcile(KEY)

    service.metadata.deletionTimestamp = "2026-01-01T00:00:00Z"
    assert reconciler.reconcile(KEY).status is Outcome.DELETED
    assert cloud.balancers == {}
    assert consts.FINALIZER_NAME not in service.metadata.finalizers

    cloud.calls.clear()
    assert reconciler.reconcile(KEY).status is Outcome.DELETED
    assert cloud.mutations() == []


def test_missing_service_cleans_up_by_key(nodes):
    service = make_service()
    cluster, cloud, reconciler = setup(service, nodes)
    reconciler.reconcile(KEY)

    del cluster.services[("default", "web")]

    assert reconciler.reconcile(KEY).status is Outcome.DELETED
    assert cloud.balancers == {}


def test_service_no_longer_a_load_balancer(nodes):
    service = make_service()
    cluster, cloud, reconciler = setup(service, nodes)
    reconciler.reconcile(KEY)

    service.spec.type = "ClusterIP"

    assert reconciler.reconcile(KEY).status is Outcome.DELETED
    assert cloud.balancers == {}
    assert consts.FINALIZER_NAME not in service.metadata.finalizers

    cloud.calls.clear()
    assert reconciler.reconcile(KEY).status is Outcome.SKIPPED
    assert cloud.calls == []


def test_other_service_types_are_ignored(nodes):
    service = make_service(type_="NodePort")
    cluster, cloud, reconciler = setup(service, nodes)

    assert reconciler.reconcile(KEY).status is Outcome.SKIPPED
    assert cloud.calls == []
    assert cluster.events == []


def test_rename_is_applied(nodes):
    service = make_service()
    cluster, cloud, reconciler = setup(service, nodes)
    reconciler.reconcile(KEY)

    service.metadata.annotations = {consts.LB_NAME_ANN: "edge"}
    cloud.calls.clear()
    reconciler.reconcile(KEY)

    assert cloud.mutations() == [("rename", 101, "edge")]
    assert only_balancer(cloud).name == "edge"


def test_unreachable_node_is_reported(nodes):
    nodes.append(make_node("n4", {"role": "worker"}, internal="10.0.0.4"))
    service = make_service()
    cluster, cloud, reconciler = setup(service, nodes)

    assert reconciler.reconcile(KEY).status is Outcome.SYNCED
    assert "PartialTargets" in cluster.reasons()
    assert only_balancer(cloud).target_addresses == {"1.1.1.1", "2.2.2.2", "3.3.3.3"}


def test_fingerprint_tracks_annotations_and_spec():
    service = make_service()
    before = fingerprint(service)

    service.metadata.labels = {"team": "a"}
    assert fingerprint(service) == before

    service.metadata.annotations = {consts.LB_TIMEOUT_ANN: "5"}
    changed = fingerprint(service)
    assert changed != before

    service.spec.ports[0].nodePort = 31000
    assert fingerprint(service) != changed


def test_fingerprint_covers_targets_and_balancer_once_read(nodes):
    service = make_service()
    cluster, cloud, reconciler = setup(service, nodes)
    reconciler.reconcile(KEY)
    balancer = only_balancer(cloud)
    addresses = ("1.1.1.1", "2.2.2.2")

    base = fingerprint(service, addresses, balancer)
    assert base != fingerprint(service)
    assert base == fingerprint(service, addresses, cloud.find(KEY))
    assert base != fingerprint(service, addresses, None)
    assert base != fingerprint(service, ("1.1.1.1",), balancer)
    assert base != fingerprint(service, addresses, dataclasses.replace(balancer, name="edge"))


def test_immutable_failure_recovers_once_the_balancer_is_deleted_by_hand(nodes):
    service = make_service(annotations={consts.LB_ALGORITHM_ANN: "round-robin"})
    cluster, cloud, reconciler = setup(service, nodes)
    reconciler.reconcile(KEY)

    service.metadata.annotations = {consts.LB_ALGORITHM_ANN: "least-connections"}
    assert reconciler.reconcile(KEY).status is Outcome.FAILED
    assert reconciler.reconcile(KEY).status is Outcome.SKIPPED

    cloud.balancers.clear()
    cloud.calls.clear()

    assert reconciler.reconcile(KEY).status is Outcome.SYNCED
    balancer = only_balancer(cloud)
    assert balancer.algorithm == "least-connections"
    assert [c[0] for c in cloud.mutations()][0] == "create"
    assert cluster.conditions[("default", "web")][:2] == (True, "Reconciled")


def test_permanent_cloud_error_is_retried_when_the_targets_change(nodes):
    service = make_service()
    cluster, cloud, reconciler = setup(service, nodes)
    reconciler.reconcile(KEY)

    cluster.nodes.append(make_node("n4", {"role": "worker"}, external="4.4.4.4"))
    cloud.fail["add_target"] = CloudAPIError("invalid_input", "target rejected", transient=False)
    assert reconciler.reconcile(KEY).status is Outcome.FAILED

    cloud.calls.clear()
    assert reconciler.reconcile(KEY).status is Outcome.SKIPPED
    assert cloud.mutations() == []

    cluster.nodes.append(make_node("n5", {"role": "worker"}, external="5.5.5.5"))
    assert reconciler.reconcile(KEY).status is Outcome.SYNCED
    assert only_balancer(cloud).target_addresses == {"1.1.1.1", "2.2.2.2", "3.3.3.3", "4.4.4.4", "5.5.5.5"}


def test_ownership_conflict_is_not_remembered(nodes):
    service = make_service()
    cluster, cloud, reconciler = setup(service, nodes)
    cloud.fail["find"] = OwnershipConflict("load balancer default-web belongs to service other/web")
    assert reconciler.reconcile(KEY).status is Outcome.FAILED

    assert reconciler.reconcile(KEY).status is Outcome.SYNCED
    assert len(cloud.balancers) == 1


def test_balancer_hostnames_are_published(nodes):
    service = make_service()
    cluster, cloud, reconciler = setup(service, nodes, defaults=Defaults(ipv6_ingress=True))
    reconciler.reconcile(KEY)
    balancer = only_balancer(cloud)
    cloud.put(dataclasses.replace(balancer, ipv4_dns_ptr="static.10.113.0.203.clients.your-server.de"))

    reconciler.reconcile(KEY)

    assert cluster.ingress[("default", "web")] == [
        {"ip": "203.0.113.10", "ipMode": "VIP", "hostname": "static.10.113.0.203.clients.your-server.de"},
        {"ip": "2001:db8::1", "ipMode": "VIP"},
    ]
