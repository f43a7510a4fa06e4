"""End-to-end smoke test of a running cluster.

A throwaway namespace gets a small web deployment, a service in front of
it and a couple of one-shot client pods. The namespace is deleted at the
end whatever the outcome.
"""
import logging
from typing import Any, Callable, Dict, List, Optional

from k3sctl.config import K3sctlConfig
from k3sctl.errors import K3sctlError, SmokeTestFailed
from k3sctl.utils.kube import ClusterClient, resolve_kubeconfig
from .models import NodeOutcome, NodeStatus, RunSummary
from .retry import CancelToken, poll_until

logger = logging.getLogger("k3sctl.smoke")

WEB = "k3sctl-smoke-web"
HTTP_CLIENT = "k3sctl-smoke-http"
DNS_CLIENT = "k3sctl-smoke-dns"
CLAIM = "k3sctl-smoke-claim"
CLUSTER_DNS_NAME = "kubernetes.default.svc.cluster.local"


def web_deployment(namespace: str, image: str, replicas: int) -> Dict[str, Any]:
    labels = {"app": WEB}
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": WEB, "namespace": namespace, "labels": labels},
        "spec": {
            "replicas": replicas,
            "selector": {"matchLabels": labels},
            "template": {
                "metadata": {"labels": labels},
                "spec": {
                    "containers": [{
                        "name": "web",
                        "image": image,
                        "ports": [{"containerPort": 80}],
                    }],
                },
            },
        },
    }


def web_service(namespace: str) -> Dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": WEB, "namespace": namespace},
        "spec": {
            "selector": {"app": WEB},
            "ports": [{"port": 80, "targetPort": 80}],
        },
    }


def client_pod(namespace: str, name: str, image: str, command: List[str]) -> Dict[str, Any]:
    """One-shot pod whose phase tells whether ``command`` succeeded."""
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {"name": name, "namespace": namespace},
        "spec": {
            "restartPolicy": "Never",
            "containers": [{"name": "client", "image": image, "command": command}],
        },
    }


def smoke_claim(namespace: str, storage_class: str) -> Dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "PersistentVolumeClaim",
        "metadata": {"name": CLAIM, "namespace": namespace},
        "spec": {
            "accessModes": ["ReadWriteMany"],
            "storageClassName": storage_class,
            "resources": {"requests": {"storage": "100Mi"}},
        },
    }


class ClusterSmokeTest:
    """Deploy, reach and resolve a throwaway workload, then clean it up."""

    def __init__(
        self,
        config: K3sctlConfig,
        cluster: ClusterClient,
        cancel: Optional[CancelToken] = None,
        sleep=None,
    ):
        self.config = config
        self.settings = config.smoke
        self.namespace = config.smoke.namespace
        self.cluster = cluster
        self.cancel = cancel or CancelToken()
        self.sleep = sleep

    def run(self) -> RunSummary:
        summary = RunSummary(phase="smoke-test")
        resolve_kubeconfig(self.config.cluster.kubeconfig)
        if not self.cluster.api_available():
            summary.fatal = "Cluster API is not reachable"
            return summary.finish()

        checks = [
            ("workload", self.check_workload),
            ("scheduling", self.check_scheduling),
            ("service", self.check_service),
            ("dns", self.check_dns),
        ]
        if self.settings.check_storage and self.config.storage.enabled:
            checks.append(("storage", self.check_storage))

        logger.info(f"🧪 Running cluster smoke test in namespace {self.namespace}")
        try:
            self.cluster.ensure_namespace(
                self.namespace,
                {"app.kubernetes.io/managed-by": "k3sctl", "purpose": "smoke-test"},
            )
            for name, check in checks:
                self.cancel.raise_if_cancelled()
                summary.add(self._run_check(name, check))
        finally:
            self.cleanup()

        if not summary.failed:
            logger.info("✅ Smoke test passed")
        return summary.finish()

    def _run_check(self, name: str, check: Callable[[], str]) -> NodeOutcome:
        target = f"smoke/{name}"
        try:
            reason = check()
        except K3sctlError as e:
            if e.fatal:
                raise
            logger.error(f"❌ Smoke check '{name}' failed: {e}")
            return NodeOutcome(target=target, status=NodeStatus.FAILED, reason=str(e))
        logger.info(f"✅ Smoke check '{name}': {reason}")
        return NodeOutcome(target=target, status=NodeStatus.READY, reason=reason)

    def _poll(self, predicate, description: str, timeout: Optional[float] = None) -> None:
        poll_until(
            predicate,
            interval=self.config.verification.interval,
            timeout=self.settings.timeout if timeout is None else timeout,
            description=description,
            cancel=self.cancel,
            sleep=self.sleep,
        )

    def _run_client(self, name: str, command: List[str]) -> str:
        """Run a one-shot pod and return its final phase."""
        self.cluster.apply(client_pod(self.namespace, name, self.settings.client_image, command))
        phase = {}

        def finished() -> bool:
            phase["value"] = self.cluster.pod_phase(self.namespace, name)
            return phase["value"] in ("Succeeded", "Failed")

        self._poll(finished, f"pod {name} to finish")
        return phase["value"]

    def check_workload(self) -> str:
        replicas = self.settings.replicas
        self.cluster.apply(web_deployment(self.namespace, self.settings.workload_image, replicas))
        self._poll(
            lambda: self.cluster.deployment_available(self.namespace, WEB),
            f"deployment {self.namespace}/{WEB} Available",
        )
        return f"{replicas} replica(s) available"

    def check_scheduling(self) -> str:
        placements = self.cluster.pod_node_names(self.namespace, f"app={WEB}")
        if not placements:
            raise SmokeTestFailed(f"No {WEB} pods found")
        unscheduled = [p for p in placements if not p]
        if unscheduled:
            raise SmokeTestFailed(f"{len(unscheduled)} of {len(placements)} pod(s) not scheduled")
        nodes = sorted(set(placements))
        ready = [n for n in self.cluster.list_nodes() if n.ready]
        if len(nodes) < min(2, len(ready), len(placements)):
            logger.warning(f"⚠️ Pods not spread across nodes (all on {nodes[0]})")
        return f"pods on {len(nodes)} node(s): {', '.join(nodes)}"

    def check_service(self) -> str:
        self.cluster.apply(web_service(self.namespace))
        ip = self.cluster.service_cluster_ip(self.namespace, WEB)
        if not ip:
            raise SmokeTestFailed(f"Service {WEB} has no cluster IP")
        phase = self._run_client(HTTP_CLIENT, ["wget", "-q", "-O", "/dev/null", "-T", "10", f"http://{ip}"])
        if phase != "Succeeded":
            raise SmokeTestFailed(f"Service {WEB} at {ip} not reachable from a pod")
        return f"reachable at {ip}"

    def check_dns(self) -> str:
        phase = self._run_client(DNS_CLIENT, ["nslookup", CLUSTER_DNS_NAME])
        if phase != "Succeeded":
            raise SmokeTestFailed(f"Cannot resolve {CLUSTER_DNS_NAME} from a pod")
        return f"resolved {CLUSTER_DNS_NAME}"

    def check_storage(self) -> str:
        storage_class = self.config.storage.storage_class
        self.cluster.apply(smoke_claim(self.namespace, storage_class))
        self._poll(
            lambda: self.cluster.pvc_phase(self.namespace, CLAIM) == "Bound",
            f"claim {self.namespace}/{CLAIM} Bound",
            timeout=self.config.verification.pvc_timeout,
        )
        return f"claim bound on {storage_class}"

    def cleanup(self) -> None:
        logger.info(f"🧹 Deleting namespace {self.namespace}")
        try:
            self.cluster.delete_namespace(self.namespace)
        except K3sctlError as e:
            logger.warning(f"⚠️ Could not delete smoke test namespace {self.namespace}: {e}")
