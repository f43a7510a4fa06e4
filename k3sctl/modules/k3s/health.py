"""K3s cluster health checks."""
import logging
from typing import List, Optional

from k3sctl.config import VerificationConfig
from k3sctl.errors import ConnectivityError, VerificationTimeout
from k3sctl.utils.kube import ClusterClient
from .models import Node
from .retry import CancelToken, poll_until

logger = logging.getLogger("k3sctl.health")


def wait_for_node_ready(
    cluster: ClusterClient,
    node: Node,
    verification: VerificationConfig,
    timeout: Optional[float] = None,
    cancel: Optional[CancelToken] = None,
    sleep=None,
) -> None:
    """Block until ``node`` reports Ready.

    Raises:
        VerificationTimeout: If the node is not Ready in time
    """
    logger.info(f"⏳ Waiting for {node.name} to become Ready...")
    poll_until(
        lambda: cluster.node_ready(node.address),
        interval=verification.interval,
        timeout=timeout or verification.control_plane_timeout,
        description=f"node {node.name} Ready",
        cancel=cancel,
        sleep=sleep,
    )
    logger.info(f"✅ {node.name} is Ready")


def verify_cluster(
    cluster: ClusterClient,
    expected_nodes: List[Node],
    verification: VerificationConfig,
    cancel: Optional[CancelToken] = None,
    sleep=None,
) -> List[str]:
    """Check node count, readiness and system pods.

    Returns:
        Human-readable issues; empty when the cluster is healthy
    """
    issues: List[str] = []

    def all_ready() -> bool:
        nodes = cluster.list_nodes()
        members = [n for n in nodes if any(n.matches(e.address) for e in expected_nodes)]
        return len(members) == len(expected_nodes) and all(n.ready for n in members)

    try:
        poll_until(
            all_ready,
            interval=verification.interval,
            timeout=verification.nodes_ready_timeout,
            description=f"{len(expected_nodes)} node(s) Ready",
            cancel=cancel,
            sleep=sleep,
        )
    except VerificationTimeout as e:
        issues.append(str(e))

    try:
        nodes = cluster.list_nodes()
    except ConnectivityError as e:
        issues.append(str(e))
        return issues

    if len(nodes) != len(expected_nodes):
        issues.append(f"Expected {len(expected_nodes)} node(s), cluster reports {len(nodes)}")
    for expected in expected_nodes:
        member = next((n for n in nodes if n.matches(expected.address)), None)
        if member is None:
            issues.append(f"{expected.name} is not a cluster member")
        elif not member.ready:
            issues.append(f"{expected.name} is NotReady")

    try:
        failed = cluster.failed_pods("kube-system")
        if failed:
            issues.append(f"Failed system pods: {', '.join(sorted(failed))}")
        running = cluster.running_pod_prefixes(verification.critical_pods, "kube-system")
        missing = [name for name, ok in running.items() if not ok]
        if missing:
            issues.append(f"Critical pods not running: {', '.join(missing)}")
    except ConnectivityError as e:
        issues.append(str(e))

    if issues:
        for issue in issues:
            logger.warning(f"⚠️ {issue}")
    else:
        logger.info(f"✅ Cluster healthy: {len(nodes)} node(s) Ready")
    return issues
