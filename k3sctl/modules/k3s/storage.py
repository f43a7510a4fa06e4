"""NFS-backed persistent storage for the cluster.

The NFS server (the control plane unless configured otherwise) exports a
directory to the workers; the in-cluster provisioner turns that export
into a StorageClass.
"""
import logging
import shlex
from typing import List, Optional

from k3sctl.config import K3sctlConfig
from k3sctl.errors import ConfigurationError, ConnectivityError, K3sctlError, RetryExhausted, VerificationTimeout
from k3sctl.utils.kube import ClusterClient
from k3sctl.utils.manifests import load_manifests
from k3sctl.utils.net import is_valid_address
from .models import (
    CONTROL_PLANE_INITIALIZED,
    NFS_PROVISIONER_DEPLOYED,
    NFS_SERVER_CONFIGURED,
    Node,
    NodeOutcome,
    NodeStatus,
    RunSummary,
)
from .registry import NodeRegistry
from .retry import CancelToken, poll_until, with_retry
from .state import StateStore

logger = logging.getLogger("k3sctl.storage")

PROVISIONER_NAME = "nfs.io/nfs"
PROVISIONER_DEPLOYMENT = "nfs-client-provisioner"
TEST_CLAIM = "k3sctl-nfs-test"
EXPORTS = "/etc/exports"
EXPORTS_BACKUP = "/etc/exports.k3sctl.bak"


def export_line(path: str, uid: int, gid: int, clients: List[str]) -> str:
    hosts = " ".join(clients + ["localhost"])
    return f"{path} -alldirs -mapall={uid}:{gid} {hosts}"


class NfsStorage:
    """Configure the NFS server, its clients and the in-cluster provisioner."""

    def __init__(
        self,
        config: K3sctlConfig,
        registry: NodeRegistry,
        executor,
        state: StateStore,
        cluster: ClusterClient,
        cancel: Optional[CancelToken] = None,
        sleep=None,
    ):
        self.config = config
        self.settings = config.storage
        self.registry = registry
        self.executor = executor
        self.state = state
        self.cluster = cluster
        self.cancel = cancel or CancelToken()
        self.sleep = sleep

    def _retry(self, description: str, operation):
        retry = self.config.retry
        return with_retry(
            retry.max_attempts,
            retry.initial_delay,
            operation,
            max_delay=retry.max_delay,
            jitter=retry.jitter,
            cancel=self.cancel,
            sleep=self.sleep,
            description=description,
        )

    def _run(self, node: Node, command: str, check: bool = True):
        return self._retry(
            f"'{command.split()[0]}' on {node.address}",
            lambda: self.executor.execute(node, command, check=check),
        )

    def setup(self, force: bool = False) -> RunSummary:
        summary = RunSummary(phase="storage")
        if not self.settings.enabled:
            logger.info("NFS storage disabled, skipping")
            summary.add(NodeOutcome(target="nfs", status=NodeStatus.SKIPPED, reason="storage disabled"))
            return summary.finish()
        if not self.state.is_satisfied(CONTROL_PLANE_INITIALIZED):
            raise ConfigurationError("Control plane not initialized; run 'k3sctl cluster init' first")

        server = self.registry.get(self.settings.server) if self.settings.server \
            else self.registry.control_plane
        clients = [n for n in self.registry.workers if n.address != server.address]

        outcome = summary.add(self._setup_server(server, clients, force))
        if not outcome.status.succeeded:
            summary.fatal = "NFS server setup failed"
            return summary.finish()

        client_outcomes = [summary.add(self._setup_client(node, server)) for node in clients]
        if clients and not any(o.status.succeeded for o in client_outcomes):
            summary.fatal = "No NFS client could mount the export"
            return summary.finish()

        outcome = summary.add(self._deploy_provisioner(server, force))
        if not outcome.status.succeeded:
            summary.fatal = "NFS provisioner deployment failed"
            return summary.finish()

        issue = self._verify_claim()
        if issue:
            summary.issues.append(issue)
        return summary.finish()

    # -- server ------------------------------------------------------------

    def _setup_server(self, server: Node, clients: List[Node], force: bool) -> NodeOutcome:
        path = self.settings.export_path
        line = export_line(path, self.settings.uid, self.settings.gid, [c.address for c in clients])
        try:
            present = self._run(server, f"grep -q {shlex.quote('^' + path + ' ')} {EXPORTS}", check=False)
            if present.exit_code == 0 and self.state.is_satisfied(NFS_SERVER_CONFIGURED) and not force:
                logger.info(f"✅ NFS export {path} already configured on {server.name}")
                return NodeOutcome.for_node(server, NodeStatus.ALREADY_DONE, "export present")

            logger.info(f"📂 Configuring NFS export {path} on {server.name}")
            quoted = shlex.quote(path)
            self._run(server, f"sudo -n mkdir -p {quoted}")
            self._run(server, f"sudo -n chown {self.settings.uid}:{self.settings.gid} {quoted}")
            self._run(server, f"sudo -n chmod 755 {quoted}")
            self._run(server, f"sudo -n touch {EXPORTS} && sudo -n cp {EXPORTS} {EXPORTS_BACKUP}")
            rewrite = (
                f"{{ grep -v {shlex.quote('^' + path + ' ')} {EXPORTS} || true; "
                f"echo {shlex.quote(line)}; }} > /tmp/k3sctl-exports && "
                f"sudo -n cp /tmp/k3sctl-exports {EXPORTS}"
            )
            self._run(server, rewrite)

            checked = self.executor.execute(server, "sudo -n nfsd checkexports", check=False)
            if checked.exit_code != 0:
                self._run(server, f"sudo -n cp {EXPORTS_BACKUP} {EXPORTS}")
                detail = (checked.stderr or checked.stdout).strip()
                return NodeOutcome.for_node(server, NodeStatus.FAILED, f"invalid exports, restored backup: {detail}")

            self._run(server, "sudo -n nfsd enable", check=False)
            self._run(server, "sudo -n nfsd restart")
        except K3sctlError as e:
            if e.fatal:
                raise
            return NodeOutcome.for_node(server, NodeStatus.FAILED, str(e))

        self.state.record(NFS_SERVER_CONFIGURED, "true")
        logger.info(f"✅ NFS server configured on {server.name}")
        return NodeOutcome.for_node(server, NodeStatus.READY, "export configured")

    # -- clients -----------------------------------------------------------

    def _setup_client(self, node: Node, server: Node) -> NodeOutcome:
        if not is_valid_address(node.address):
            return NodeOutcome.for_node(node, NodeStatus.FAILED, "invalid address")
        try:
            self._retry(f"SSH probe of {node.address}", lambda: self._probe(node))
        except (RetryExhausted, ConnectivityError):
            return NodeOutcome.for_node(node, NodeStatus.FAILED, "unreachable")

        path = self.settings.export_path
        try:
            self._run(node, f"sudo -n mkdir -p {shlex.quote(path)}")
            exports = self._run(node, f"showmount -e {server.address}", check=False)
        except K3sctlError as e:
            if e.fatal:
                raise
            return NodeOutcome.for_node(node, NodeStatus.FAILED, str(e))

        visible = any(line.split()[0] == path for line in exports.stdout.splitlines() if line.strip())
        if not visible:
            return NodeOutcome.for_node(node, NodeStatus.FAILED, f"export {path} not visible from node")
        logger.info(f"✅ {node.name} can see {server.address}:{path}")
        return NodeOutcome.for_node(node, NodeStatus.READY, "export visible")

    def _probe(self, node: Node) -> None:
        if not self.executor.probe(node):
            raise ConnectivityError(f"Remote shell on {node.address} is not usable", address=node.address)

    # -- provisioner -------------------------------------------------------

    def _deploy_provisioner(self, server: Node, force: bool) -> NodeOutcome:
        target = f"provisioner/{self.settings.storage_class}"
        try:
            existing = self.cluster.storage_class_names()
        except K3sctlError as e:
            if e.fatal:
                raise
            return NodeOutcome(target=target, status=NodeStatus.FAILED, reason=f"cluster API unavailable: {e}")

        if (self.state.is_satisfied(NFS_PROVISIONER_DEPLOYED)
                and self.settings.storage_class in existing and not force):
            logger.info(f"✅ StorageClass {self.settings.storage_class} already deployed")
            return NodeOutcome(target=target, status=NodeStatus.ALREADY_DONE)

        docs = load_manifests("nfs-provisioner.yaml", {
            "namespace": self.settings.namespace,
            "server": server.address,
            "path": self.settings.export_path,
            "image": self.settings.provisioner_image,
            "provisioner": PROVISIONER_NAME,
            "storage_class": self.settings.storage_class,
        })
        try:
            self.cluster.apply_all(docs)
            poll_until(
                lambda: self.cluster.deployment_available(self.settings.namespace, PROVISIONER_DEPLOYMENT),
                interval=self.config.verification.interval,
                timeout=self.config.verification.deployment_timeout,
                description=f"deployment {self.settings.namespace}/{PROVISIONER_DEPLOYMENT}",
                cancel=self.cancel,
                sleep=self.sleep,
            )
        except K3sctlError as e:
            if e.fatal:
                raise
            return NodeOutcome(target=target, status=NodeStatus.FAILED, reason=str(e))

        self.state.record(NFS_PROVISIONER_DEPLOYED, "true")
        logger.info(f"✅ NFS provisioner deployed, StorageClass {self.settings.storage_class}")
        return NodeOutcome(target=target, status=NodeStatus.READY)

    def _verify_claim(self) -> Optional[str]:
        """Create a throwaway claim and wait for it to bind."""
        namespace = self.settings.namespace
        docs = load_manifests("nfs-test-pvc.yaml", {
            "name": TEST_CLAIM,
            "namespace": namespace,
            "storage_class": self.settings.storage_class,
        })
        try:
            self.cluster.apply_all(docs)
            poll_until(
                lambda: self.cluster.pvc_phase(namespace, TEST_CLAIM) == "Bound",
                interval=self.config.verification.interval,
                timeout=self.config.verification.pvc_timeout,
                description=f"test claim {TEST_CLAIM} Bound",
                cancel=self.cancel,
                sleep=self.sleep,
            )
            logger.info("✅ Test claim bound")
            return None
        except VerificationTimeout as e:
            return str(e)
        except K3sctlError as e:
            if e.fatal:
                raise
            return f"Test claim failed: {e}"
        finally:
            try:
                self.cluster.delete_pvc(namespace, TEST_CLAIM)
            except Exception as e:
                logger.warning(f"⚠️ Could not delete test claim {TEST_CLAIM}: {e}")
