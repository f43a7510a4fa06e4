import pytest

from k3sctl.errors import VerificationTimeout
from k3sctl.modules.k3s.health import verify_cluster, wait_for_node_ready
from k3sctl.modules.k3s.models import Node, NodeRole

from conftest import CONTROL_PLANE, WORKERS

A, B, _ = WORKERS

EXPECTED = [
    Node(CONTROL_PLANE, NodeRole.CONTROL_PLANE, label="mini-1"),
    Node(A, NodeRole.WORKER),
    Node(B, NodeRole.WORKER),
]


def test_healthy_cluster_has_no_issues(cluster, config):
    for node in EXPECTED:
        cluster.add(node.address)

    assert verify_cluster(cluster, EXPECTED, config.verification, sleep=lambda s: None) == []


def test_missing_and_not_ready_nodes(cluster, config):
    cluster.add(CONTROL_PLANE)
    cluster.add(A, ready=False)

    issues = verify_cluster(cluster, EXPECTED, config.verification, sleep=lambda s: None)

    assert issues[0].startswith("Timed out")
    assert "Expected 3 node(s), cluster reports 2" in issues
    assert f"{A} is NotReady" in issues
    assert f"{B} is not a cluster member" in issues


def test_failed_system_pods_are_reported(cluster, config):
    for node in EXPECTED:
        cluster.add(node.address)
    cluster.failed = ["svclb-traefik-x1", "coredns-abc"]

    issues = verify_cluster(cluster, EXPECTED, config.verification, sleep=lambda s: None)

    assert issues == ["Failed system pods: coredns-abc, svclb-traefik-x1"]


def test_wait_for_node_ready(cluster, config):
    cluster.add(CONTROL_PLANE)
    wait_for_node_ready(cluster, EXPECTED[0], config.verification, sleep=lambda s: None)

    with pytest.raises(VerificationTimeout):
        wait_for_node_ready(cluster, EXPECTED[1], config.verification, sleep=lambda s: None)
