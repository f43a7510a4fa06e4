import pytest

from k3sctl.errors import OperationCancelled
from k3sctl.modules.k3s.models import NodeStatus
from k3sctl.modules.k3s.retry import CancelToken
from k3sctl.modules.k3s.smoke import CLAIM, DNS_CLIENT, HTTP_CLIENT, WEB, ClusterSmokeTest

from conftest import CONTROL_PLANE, WORKERS

A, B, _ = WORKERS
NAMESPACE = "k3sctl-smoke"


@pytest.fixture
def healthy(cluster):
    for address in (CONTROL_PLANE, A, B):
        cluster.add(address)
    return cluster


def smoke(config, cluster, sleeps, **kwargs):
    return ClusterSmokeTest(config, cluster, sleep=sleeps.append, **kwargs)


def statuses(summary):
    return {o.target: o.status for o in summary.outcomes}


def test_healthy_cluster_passes_every_check(config, healthy, sleeps):
    summary = smoke(config, healthy, sleeps).run()

    assert summary.exit_code == 0, summary.to_dict()
    assert list(statuses(summary)) == [
        "smoke/workload", "smoke/scheduling", "smoke/service", "smoke/dns", "smoke/storage",
    ]
    assert set(statuses(summary).values()) == {NodeStatus.READY}
    applied = {(d["kind"], d["metadata"]["name"]) for d in healthy.applied}
    assert {("Deployment", WEB), ("Service", WEB), ("Pod", HTTP_CLIENT), ("Pod", DNS_CLIENT),
            ("PersistentVolumeClaim", CLAIM)} <= applied
    assert healthy.deleted_namespaces == [NAMESPACE]


def test_service_check_uses_cluster_ip(config, healthy, sleeps):
    healthy.cluster_ips[f"{NAMESPACE}/{WEB}"] = "10.43.12.7"

    summary = smoke(config, healthy, sleeps).run()

    pod = next(d for d in healthy.applied if d["metadata"]["name"] == HTTP_CLIENT)
    assert pod["spec"]["containers"][0]["command"][-1] == "http://10.43.12.7"
    assert next(o for o in summary.outcomes if o.target == "smoke/service").reason == "reachable at 10.43.12.7"


def test_unavailable_workload_fails_and_still_cleans_up(config, healthy, sleeps):
    healthy.unavailable_deployments.add(f"{NAMESPACE}/{WEB}")

    summary = smoke(config, healthy, sleeps).run()

    assert statuses(summary)["smoke/workload"] == NodeStatus.FAILED
    assert summary.fatal is None
    assert summary.exit_code == 2
    assert healthy.deleted_namespaces == [NAMESPACE]


def test_unscheduled_pods_fail_scheduling(config, healthy, sleeps):
    healthy.placements = ["node-10.0.0.11", None, None]

    summary = smoke(config, healthy, sleeps).run()

    outcome = next(o for o in summary.outcomes if o.target == "smoke/scheduling")
    assert outcome.status == NodeStatus.FAILED
    assert outcome.reason == "2 of 3 pod(s) not scheduled"


def test_pods_on_one_node_only_warn(config, healthy, sleeps, caplog):
    healthy.placements = ["node-10.0.0.11"] * 3

    summary = smoke(config, healthy, sleeps).run()

    assert statuses(summary)["smoke/scheduling"] == NodeStatus.READY
    assert "not spread across nodes" in caplog.text


def test_dns_failure_is_reported(config, healthy, sleeps):
    healthy.pod_phases[f"{NAMESPACE}/{DNS_CLIENT}"] = "Failed"

    summary = smoke(config, healthy, sleeps).run()

    outcome = next(o for o in summary.outcomes if o.target == "smoke/dns")
    assert outcome.status == NodeStatus.FAILED
    assert "kubernetes.default.svc.cluster.local" in outcome.reason
    assert statuses(summary)["smoke/service"] == NodeStatus.READY


def test_storage_check_skipped_without_storage(make_config, healthy, sleeps):
    config = make_config(storage={"enabled": False})

    summary = smoke(config, healthy, sleeps).run()

    assert "smoke/storage" not in statuses(summary)
    assert summary.exit_code == 0


def test_cancellation_still_cleans_up(config, healthy, sleeps):
    cancel = CancelToken()
    cancel.cancel("test")

    with pytest.raises(OperationCancelled):
        smoke(config, healthy, sleeps, cancel=cancel).run()

    assert healthy.deleted_namespaces == [NAMESPACE]
