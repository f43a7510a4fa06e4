"""Layered deployment of the telemetry stack.

Namespaces and storage claims first, then the configured layers in order
(prerequisites, collector, backend, visualization). A layer is done when
every deployment it waits for reports Available.
"""
import logging
from typing import Any, Dict, List, Optional

from k3sctl.config import ClaimSpec, K3sctlConfig, LayerSpec, NamespaceSpec
from k3sctl.errors import ConfigurationError, K3sctlError, VerificationTimeout
from k3sctl.modules.k3s.models import NodeOutcome, NodeStatus, RunSummary, layer_deployed_key
from k3sctl.modules.k3s.retry import CancelToken, poll_until
from k3sctl.modules.k3s.state import StateStore
from k3sctl.modules.shell import LocalRunner
from k3sctl.utils.kube import ClusterClient, resolve_kubeconfig
from k3sctl.utils.manifests import load_manifests
from .helm import HelmClient

logger = logging.getLogger("k3sctl.observability")

MANAGED_BY = "k3sctl"
WAIT_FOR_CONSUMER = "WaitForFirstConsumer"


def namespace_labels(spec: NamespaceSpec) -> Dict[str, str]:
    return {
        "purpose": spec.purpose,
        "app.kubernetes.io/managed-by": MANAGED_BY,
        "pod-security.kubernetes.io/enforce": spec.pod_security,
    }


def claim_manifest(claim: ClaimSpec, storage_class: str) -> Dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "PersistentVolumeClaim",
        "metadata": {
            "name": claim.name,
            "namespace": claim.namespace,
            "labels": {"app.kubernetes.io/managed-by": MANAGED_BY},
        },
        "spec": {
            "accessModes": ["ReadWriteOnce"],
            "storageClassName": storage_class,
            "resources": {"requests": {"storage": claim.size}},
        },
    }


class ObservabilityDeployer:
    """Apply the observability stack to a running cluster."""

    def __init__(
        self,
        config: K3sctlConfig,
        cluster: ClusterClient,
        runner: LocalRunner,
        state: StateStore,
        cancel: Optional[CancelToken] = None,
        sleep=None,
        helm: Optional[HelmClient] = None,
    ):
        self.config = config
        self.settings = config.observability
        self.cluster = cluster
        self.runner = runner
        self.state = state
        self.cancel = cancel or CancelToken()
        self.sleep = sleep
        self.helm = helm or HelmClient(
            runner,
            config.cluster.kubeconfig,
            context=config.cluster.context,
            timeout=self.settings.helm_timeout,
        )

    def deploy(self, force: bool = False) -> RunSummary:
        summary = RunSummary(phase="observability")
        resolve_kubeconfig(self.config.cluster.kubeconfig)
        if not self.cluster.api_available():
            summary.fatal = "Cluster API is not reachable"
            return summary.finish()

        for spec in self.settings.namespaces:
            self.ensure_namespace(spec)
            summary.add(NodeOutcome(target=f"namespace/{spec.name}", status=NodeStatus.READY))

        storage_class = self.resolve_storage_class()
        self.apply_claims(storage_class)

        pending = {layer.name for layer in self.settings.layers if force or not self.layer_done(layer)}
        if any(layer.releases for layer in self.settings.layers if layer.name in pending):
            self.runner.require("helm")

        for layer in self.settings.layers:
            self.cancel.raise_if_cancelled()
            if layer.name not in pending:
                logger.info(f"✅ Layer '{layer.name}' already deployed")
                summary.add(NodeOutcome(target=f"layer/{layer.name}", status=NodeStatus.ALREADY_DONE))
                continue
            try:
                self.deploy_layer(layer)
            except K3sctlError as e:
                if e.fatal:
                    raise
                summary.add(NodeOutcome(target=f"layer/{layer.name}", status=NodeStatus.FAILED, reason=str(e)))
                summary.fatal = f"Layer '{layer.name}' did not become available: {e}"
                return summary.finish()
            summary.add(NodeOutcome(target=f"layer/{layer.name}", status=NodeStatus.READY))

        logger.info("✅ Observability stack deployed")
        return summary.finish()

    def ensure_namespace(self, spec: NamespaceSpec) -> None:
        logger.info(f"📁 Ensuring namespace {spec.name}")
        self.cluster.ensure_namespace(spec.name, namespace_labels(spec))

    def resolve_storage_class(self) -> str:
        """Preferred class, else the cluster default, else the first one listed."""
        names = self.cluster.storage_class_names()
        preferred = self.settings.storage_class
        if preferred in names:
            return preferred
        if not names:
            raise ConfigurationError("No StorageClass available in the cluster")
        fallback = self.cluster.default_storage_class() or names[0]
        logger.warning(f"⚠️ StorageClass '{preferred}' not found, using '{fallback}'")
        return fallback

    def layer_done(self, layer: LayerSpec) -> bool:
        """Recorded as deployed and every awaited deployment still Available."""
        if not self.state.is_satisfied(layer_deployed_key(layer.name)):
            return False
        for target in layer.wait_for:
            namespace, _, name = target.partition("/")
            if not self.cluster.deployment_available(namespace, name):
                return False
        return True

    def apply_claims(self, storage_class: str) -> List[str]:
        """Apply every claim and wait for it to bind.

        Claims on a WaitForFirstConsumer class bind only once a pod mounts
        them, so they are not waited on. A claim still unbound after
        ``pvc_timeout`` is logged; its consumer may provision it later.

        Returns:
            ``namespace/name`` of claims that are not Bound
        """
        for claim in self.settings.claims:
            self.cluster.apply(claim_manifest(claim, storage_class))

        if self.cluster.storage_class_binding_mode(storage_class) == WAIT_FOR_CONSUMER:
            logger.info(f"ℹ️ StorageClass '{storage_class}' binds on first consumer, not waiting for claims")
            return [f"{c.namespace}/{c.name}" for c in self.settings.claims]

        unbound = []
        for claim in self.settings.claims:
            try:
                poll_until(
                    lambda c=claim: self.cluster.pvc_phase(c.namespace, c.name) == "Bound",
                    interval=self.config.verification.interval,
                    timeout=self.config.verification.pvc_timeout,
                    description=f"claim {claim.namespace}/{claim.name} Bound",
                    cancel=self.cancel,
                    sleep=self.sleep,
                )
            except VerificationTimeout as e:
                logger.warning(f"⚠️ {e} (may bind once a pod uses it)")
                unbound.append(f"{claim.namespace}/{claim.name}")
        return unbound

    def deploy_layer(self, layer: LayerSpec) -> None:
        logger.info(f"🚀 Deploying layer '{layer.name}'")
        repos = {r.repo_name: r.repo_url for r in layer.releases}
        for name, url in repos.items():
            self.helm.add_repo(name, url)
        if repos:
            self.helm.update_repos()
        for release in layer.releases:
            self.helm.install(release)

        for source in layer.manifests:
            self.cluster.apply_all(load_manifests(source))

        for target in layer.wait_for:
            namespace, _, name = target.partition("/")
            poll_until(
                lambda ns=namespace, n=name: self.cluster.deployment_available(ns, n),
                interval=self.config.verification.interval,
                timeout=self.config.verification.deployment_timeout,
                description=f"deployment {target} Available",
                cancel=self.cancel,
                sleep=self.sleep,
            )

        self.state.record(layer_deployed_key(layer.name), "true")
        logger.info(f"✅ Layer '{layer.name}' available")
