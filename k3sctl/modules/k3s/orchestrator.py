"""K3s cluster provisioning.

The orchestrator sequences preflight, dependency installation, control
plane initialization, worker joins and storage setup. Every mutating step
is gated on the milestone log and every network operation runs through
the retry engine. Per-node failures end up in that node's outcome; only
configuration, persistence and cancellation errors abort a run.
"""
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Dict, List, Optional

import yaml

from k3sctl.config import K3sctlConfig
from k3sctl.errors import (
    ConfigurationError,
    ConnectivityError,
    K3sctlError,
    PartialFailure,
    PersistenceError,
    PreflightFailed,
    RetryExhausted,
    VerificationTimeout,
)
from k3sctl.modules.shell import LocalRunner
from k3sctl.utils.kube import ClusterClient, resolve_kubeconfig
from k3sctl.utils.net import is_valid_address
from . import k3sup
from .dependencies import DependencyInstaller
from .health import verify_cluster, wait_for_node_ready
from .models import (
    CONTROL_PLANE_INITIALIZED,
    CONTROL_PLANE_IP,
    K3S_VERSION,
    Node,
    NodeOutcome,
    NodeStatus,
    PreflightReport,
    RunSummary,
    utcnow,
    worker_joined_key,
)
from .preflight import PreflightValidator
from .registry import NodeRegistry
from .smoke import ClusterSmokeTest
from .retry import CancelToken, with_retry
from .state import CLUSTER_INFO_FILE, StateStore
from .storage import NfsStorage

logger = logging.getLogger("k3sctl.orchestrator")

SERVER_RUNNING_COMMAND = "pgrep -f 'k3s server'"
AGENT_RUNNING_COMMAND = "pgrep -f 'k3s agent'"


class ProvisioningOrchestrator:
    """Drive a cluster from bare nodes to a verified K3s cluster."""

    def __init__(
        self,
        config: K3sctlConfig,
        registry: NodeRegistry,
        executor,
        state: StateStore,
        cluster: ClusterClient,
        runner: Optional[LocalRunner] = None,
        cancel: Optional[CancelToken] = None,
        sleep=None,
        preflight: Optional[PreflightValidator] = None,
    ):
        self.config = config
        self.registry = registry
        self.executor = executor
        self.state = state
        self.cluster = cluster
        self.cancel = cancel or CancelToken()
        self.runner = runner or LocalRunner(cancel=self.cancel)
        self.sleep = sleep
        self.preflight = preflight or PreflightValidator(
            executor,
            config.preflight,
            ssh_port=config.ssh.port,
            connect_timeout=config.ssh.connect_timeout,
        )

    # -- helpers -----------------------------------------------------------

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

    def _wait(self, seconds: float) -> None:
        (self.sleep or self.cancel.wait)(seconds)

    def _log_journal(self, node: Node, unit: str, lines: int) -> None:
        try:
            result = self.executor.execute(
                node, k3sup.journal_command(unit, lines), timeout=30, check=False
            )
        except K3sctlError as e:
            if e.fatal:
                raise
            logger.debug(f"Could not read {unit} journal on {node.name}: {e}")
            return
        if result.stdout.strip():
            logger.error(f"Last {lines} lines of {unit} on {node.name}:\n{result.stdout.rstrip()}")

    def _process_running(self, node: Node, command: str) -> bool:
        result = self._retry(
            f"process check on {node.address}",
            lambda: self.executor.execute(node, command, timeout=30, check=False),
        )
        return result.exit_code == 0

    def _server_running(self, node: Node) -> bool:
        try:
            return self._process_running(node, SERVER_RUNNING_COMMAND)
        except K3sctlError as e:
            if e.fatal:
                raise
            logger.debug(f"Cannot check for a running server on {node.name}: {e}")
            return False

    # -- preflight and dependencies ----------------------------------------

    def run_preflight(self, skip: bool = False) -> PreflightReport:
        """Run preflight checks.

        Raises:
            PreflightFailed: When checks fail and ``skip`` is not set
        """
        report = self.preflight.run(self.registry)
        if not report.passed:
            if not skip:
                raise PreflightFailed(report)
            logger.warning("⚠️ Preflight failed, continuing because it was overridden")
        return report

    def install_dependencies(self, force: bool = False) -> RunSummary:
        installer = DependencyInstaller(
            self.runner,
            self.state,
            self.config.retry,
            self.config.cluster.kubeconfig,
            cancel=self.cancel,
            sleep=self.sleep,
        )
        return installer.install(force=force)

    # -- control plane -----------------------------------------------------

    def init_control_plane(self, force: bool = False) -> RunSummary:
        """Initialize the control plane, or verify an existing one."""
        summary = RunSummary(phase="init")
        node = self.registry.control_plane
        if not is_valid_address(node.address):
            raise ConfigurationError(f"Invalid control-plane address: {node.address}")

        status, reason = NodeStatus.READY, ""
        fresh_install = False
        if self.state.is_satisfied(CONTROL_PLANE_INITIALIZED) and not force:
            logger.info(f"✅ Control plane {node.name} already initialized, verifying")
            status = NodeStatus.ALREADY_DONE
        elif not force and self._server_running(node):
            logger.info(f"↪️ K3s server already running on {node.name}, adopting it")
            self._record_control_plane(node)
            status, reason = NodeStatus.ALREADY_DONE, "adopted running server"
        else:
            logger.info(f"🚀 Installing K3s server on {node.name}")
            try:
                self._install_server(node)
            except K3sctlError as e:
                if e.fatal:
                    raise
                self._log_journal(node, "k3s", 50)
                summary.add(NodeOutcome.for_node(node, NodeStatus.FAILED, f"install failed: {e}"))
                summary.fatal = "Control plane installation failed"
                return summary.finish()
            self._record_control_plane(node)
            fresh_install = True

        try:
            self.ensure_join_token(refresh=fresh_install)
        except K3sctlError as e:
            if e.fatal:
                raise
            summary.issues.append(f"Join token not available: {e}")

        try:
            wait_for_node_ready(
                self.cluster, node, self.config.verification, cancel=self.cancel, sleep=self.sleep
            )
        except VerificationTimeout as e:
            summary.add(NodeOutcome.for_node(node, NodeStatus.FAILED, str(e)))
            summary.fatal = f"Control plane not Ready: {e}"
            return summary.finish()

        self._write_cluster_info(node)
        summary.add(NodeOutcome.for_node(node, status, reason))
        logger.info(f"✅ Control plane {node.name} is ready")
        return summary.finish()

    def _install_server(self, node: Node) -> None:
        self.runner.require("k3sup")
        cluster = self.config.cluster
        kubeconfig = Path(cluster.kubeconfig)
        merge = kubeconfig.exists()
        if merge:
            self.state.backup_file(kubeconfig)
        cmd = k3sup.install_command(node.address, self.registry.identity(node), cluster, merge=merge)
        self._retry(f"k3sup install on {node.address}", lambda: self.runner.run(cmd))
        self.cluster.reset()

    def _record_control_plane(self, node: Node) -> None:
        self.state.record(CONTROL_PLANE_INITIALIZED, "true")
        self.state.record(CONTROL_PLANE_IP, node.address)
        self.state.record(K3S_VERSION, self.config.cluster.k3s_version)

    def ensure_join_token(self, refresh: bool = False) -> Path:
        """Return the token file, fetching the token from the control plane if needed."""
        if not refresh and self.state.read_join_token():
            return self.state.token_path
        node = self.registry.control_plane
        logger.info(f"🔑 Fetching join token from {node.name}")
        result = self._retry(
            f"join token fetch from {node.address}",
            lambda: self.executor.execute(node, k3sup.read_token_command(), timeout=30, sensitive=True),
        )
        return self.state.write_join_token(result.stdout)

    def _write_cluster_info(self, node: Node) -> None:
        cluster = self.config.cluster
        info = {
            "cluster": cluster.name,
            "endpoint": f"https://{node.address}:6443",
            "control_plane": node.address,
            "kubeconfig": cluster.kubeconfig,
            "context": cluster.context,
            "k3s_version": cluster.k3s_version,
            "pod_cidr": cluster.pod_cidr,
            "service_cidr": cluster.service_cidr,
            "workers": [w.address for w in self.registry.workers],
            "updated_at": utcnow().isoformat(),
        }
        path = self.state.artifact_path(CLUSTER_INFO_FILE)
        try:
            with open(path, "w") as f:
                yaml.safe_dump(info, f, default_flow_style=False, sort_keys=False)
        except OSError as e:
            raise PersistenceError(f"Cannot write {path}: {e}") from e

    # -- workers -----------------------------------------------------------

    def join_workers(self, force: bool = False, parallel: Optional[bool] = None) -> RunSummary:
        """Join every configured worker and verify the cluster."""
        summary = RunSummary(phase="join")
        if not self.state.is_satisfied(CONTROL_PLANE_INITIALIZED):
            raise ConfigurationError("Control plane not initialized; run 'k3sctl cluster init' first")
        resolve_kubeconfig(self.config.cluster.kubeconfig)

        workers = self.registry.workers
        if not workers:
            logger.info("No worker nodes configured")
            return summary.finish()

        token_path = self.ensure_join_token()
        parallel = self.config.join.parallel if parallel is None else parallel
        logger.info(f"🚀 Joining {len(workers)} worker(s) {'in parallel' if parallel else 'sequentially'}")
        if parallel:
            outcomes = self._join_parallel(workers, token_path, force)
        else:
            outcomes = self._join_sequential(workers, token_path, force)
        for outcome in outcomes:
            summary.add(outcome)

        joined = [o for o in outcomes if o.status in (NodeStatus.READY, NodeStatus.ALREADY_DONE)]
        if not joined:
            summary.fatal = "All worker joins failed"
            return summary.finish()
        if len(joined) < len(outcomes):
            logger.warning(f"⚠️ {PartialFailure(len(outcomes) - len(joined), len(outcomes))}")

        expected = [self.registry.control_plane] + [o.node for o in joined]
        summary.issues.extend(verify_cluster(
            self.cluster, expected, self.config.verification, cancel=self.cancel, sleep=self.sleep
        ))
        return summary.finish()

    def _join_sequential(self, workers: List[Node], token_path: Path, force: bool) -> List[NodeOutcome]:
        outcomes = []
        delay = self.config.join.delay
        for index, node in enumerate(workers):
            outcome = self.join_worker(node, token_path, force)
            outcomes.append(outcome)
            if outcome.status == NodeStatus.READY and index < len(workers) - 1 and delay > 0:
                logger.info(f"⏳ Waiting {delay:g}s before the next join")
                self._wait(delay)
        return outcomes

    def _join_parallel(self, workers: List[Node], token_path: Path, force: bool) -> List[NodeOutcome]:
        results: Dict[str, NodeOutcome] = {}
        fatal: Optional[K3sctlError] = None
        max_workers = min(self.config.join.max_parallel, len(workers))
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="join") as pool:
            futures = {pool.submit(self.join_worker, node, token_path, force): node for node in workers}
            for future in as_completed(futures):
                node = futures[future]
                try:
                    results[node.address] = future.result()
                except K3sctlError as e:
                    logger.error(f"❌ Aborting joins: {e}")
                    fatal = fatal or e
                    for pending in futures:
                        pending.cancel()
        if fatal is not None:
            raise fatal
        return [results[node.address] for node in workers]

    def join_worker(self, node: Node, token_path: Path, force: bool = False) -> NodeOutcome:
        """Run the join sequence for one worker; per-node errors become its outcome."""
        try:
            outcome = self._join_worker(node, token_path, force)
        except K3sctlError as e:
            if e.fatal:
                raise
            outcome = NodeOutcome.for_node(node, NodeStatus.FAILED, str(e))
        mark = "✅" if outcome.status.succeeded else "❌"
        detail = f": {outcome.reason}" if outcome.reason else ""
        logger.info(f"{mark} {node.name} {outcome.status.value}{detail}")
        return outcome

    def _join_worker(self, node: Node, token_path: Path, force: bool) -> NodeOutcome:
        if not is_valid_address(node.address):
            return NodeOutcome.for_node(node, NodeStatus.FAILED, "invalid address")

        try:
            self._retry(f"SSH probe of {node.address}", lambda: self._probe(node))
        except (RetryExhausted, ConnectivityError) as e:
            logger.debug(f"{node.address} unreachable: {e}")
            return NodeOutcome.for_node(node, NodeStatus.FAILED, "unreachable")

        key = worker_joined_key(node.address)
        member = self._retry(
            f"membership check for {node.address}", lambda: self.cluster.is_member(node.address)
        )
        if member and not force:
            if not self.state.is_satisfied(key):
                self.state.record(key, "true")
            return NodeOutcome.for_node(node, NodeStatus.ALREADY_DONE, "already a cluster member")

        if member:
            logger.info(f"🔁 {node.name} is a member, re-joining because of --force")
            needs_cleanup, orphaned = True, False
        else:
            orphaned = self._process_running(node, AGENT_RUNNING_COMMAND)
            needs_cleanup = orphaned
            if orphaned:
                logger.warning(f"⚠️ {node.name} runs a K3s agent that is not registered, cleaning up")

        if needs_cleanup:
            try:
                self._retry(
                    f"agent uninstall on {node.address}",
                    lambda: self.executor.execute(node, k3sup.uninstall_agent_command(), timeout=300),
                )
            except K3sctlError as e:
                if e.fatal:
                    raise
                return NodeOutcome.for_node(node, NodeStatus.ORPHANED, f"agent cleanup failed: {e}")

        self.runner.require("k3sup")
        server = self.registry.control_plane
        cmd = k3sup.join_command(
            node.address,
            self.registry.identity(node),
            server.address,
            self.registry.identity(server),
            token_path,
            self.config.cluster,
        )
        try:
            self._retry(f"k3sup join of {node.address}", lambda: self.runner.run(cmd))
        except K3sctlError as e:
            if e.fatal:
                raise
            self._log_journal(node, "k3s-agent", 30)
            return NodeOutcome.for_node(node, NodeStatus.FAILED, f"join failed: {e}")

        self.state.record(key, "true")
        return NodeOutcome.for_node(
            node, NodeStatus.READY, "recovered orphaned agent" if orphaned else "joined"
        )

    def _probe(self, node: Node) -> None:
        if not self.executor.probe(node):
            raise ConnectivityError(f"Remote shell on {node.address} is not usable", address=node.address)

    # -- storage and verification ------------------------------------------

    def setup_storage(self, force: bool = False) -> RunSummary:
        storage = NfsStorage(
            self.config,
            self.registry,
            self.executor,
            self.state,
            self.cluster,
            cancel=self.cancel,
            sleep=self.sleep,
        )
        return storage.setup(force=force)

    def verify(self) -> RunSummary:
        """Cluster-wide health check against the configured topology."""
        summary = RunSummary(phase="verify")
        resolve_kubeconfig(self.config.cluster.kubeconfig)
        summary.issues.extend(verify_cluster(
            self.cluster, self.registry.nodes, self.config.verification,
            cancel=self.cancel, sleep=self.sleep,
        ))
        try:
            members = self.cluster.list_nodes()
        except ConnectivityError as e:
            summary.fatal = str(e)
            return summary.finish()
        for node in self.registry:
            member = next((m for m in members if m.matches(node.address)), None)
            if member is None:
                summary.add(NodeOutcome.for_node(node, NodeStatus.FAILED, "not a cluster member"))
            elif not member.ready:
                summary.add(NodeOutcome.for_node(node, NodeStatus.FAILED, "NotReady"))
            else:
                summary.add(NodeOutcome.for_node(node, NodeStatus.READY))
        return summary.finish()

    def smoke_test(self) -> RunSummary:
        """Run a throwaway workload through scheduling, service and DNS checks."""
        return ClusterSmokeTest(self.config, self.cluster, cancel=self.cancel, sleep=self.sleep).run()

    def provision(
        self,
        force: bool = False,
        parallel: Optional[bool] = None,
        skip_preflight: bool = False,
    ) -> RunSummary:
        """All phases in order, stopping at the first fatal one."""
        summary = RunSummary(phase="up")
        self.run_preflight(skip=skip_preflight)
        steps = (
            lambda: self.install_dependencies(force=force),
            lambda: self.init_control_plane(force=force),
            lambda: self.join_workers(force=force, parallel=parallel),
            lambda: self.setup_storage(force=force),
        )
        for step in steps:
            part = step()
            summary.merge(part)
            if part.fatal:
                break
        return summary.finish()
