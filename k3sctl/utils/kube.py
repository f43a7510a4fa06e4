"""Kubernetes API access for provisioning and deployment."""
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import ResourceNotFoundError
from urllib3.exceptions import HTTPError

from k3sctl.errors import ClusterApiError, ConfigurationError, ConnectivityError

logger = logging.getLogger("k3sctl.kube")

DEFAULT_CLASS_ANNOTATIONS = (
    "storageclass.kubernetes.io/is-default-class",
    "storageclass.beta.kubernetes.io/is-default-class",
)


def resolve_kubeconfig(path: Optional[str]) -> str:
    """Return the absolute kubeconfig path, or raise if it does not exist."""
    if not path:
        raise ConfigurationError("No kubeconfig path configured")
    resolved = Path(os.path.expanduser(path)).resolve()
    if not resolved.exists():
        raise ConfigurationError(f"❌ Kubeconfig not found: {resolved}")
    return str(resolved)


@dataclass
class ClusterNode:
    name: str
    addresses: List[str] = field(default_factory=list)
    ready: bool = False

    def matches(self, address: str) -> bool:
        return address == self.name or address in self.addresses


class ClusterClient:
    """Thin wrapper over the Kubernetes client.

    The API client is built lazily from an explicit kubeconfig so the
    object can be created before the control plane exists.
    """

    def __init__(self, kubeconfig: str, context: Optional[str] = None, request_timeout: float = 10):
        self.kubeconfig = kubeconfig
        self.context = context
        self.request_timeout = request_timeout
        self._api_client = None
        self._dynamic = None

    @property
    def api_client(self) -> client.ApiClient:
        if self._api_client is None:
            path = resolve_kubeconfig(self.kubeconfig)
            try:
                self._api_client = config.new_client_from_config(
                    config_file=path, context=self.context
                )
            except config.ConfigException:
                # Context may be missing when k3sup wrote a fresh file
                self._api_client = config.new_client_from_config(config_file=path)
        return self._api_client

    @property
    def core(self) -> client.CoreV1Api:
        return client.CoreV1Api(self.api_client)

    @property
    def apps(self) -> client.AppsV1Api:
        return client.AppsV1Api(self.api_client)

    @property
    def storage(self) -> client.StorageV1Api:
        return client.StorageV1Api(self.api_client)

    @property
    def dynamic(self) -> DynamicClient:
        if self._dynamic is None:
            self._dynamic = DynamicClient(self.api_client)
        return self._dynamic

    def reset(self) -> None:
        """Forget the cached API client, e.g. after the kubeconfig changed."""
        self._api_client = None
        self._dynamic = None

    # -- nodes -----------------------------------------------------------

    def list_nodes(self) -> List[ClusterNode]:
        try:
            items = self.core.list_node(_request_timeout=self.request_timeout).items
        except (ApiException, HTTPError, OSError) as e:
            raise ConnectivityError(f"Cluster API unavailable: {e}") from e
        nodes = []
        for item in items:
            conditions = item.status.conditions or []
            ready = any(c.type == "Ready" and c.status == "True" for c in conditions)
            addresses = [a.address for a in (item.status.addresses or [])]
            nodes.append(ClusterNode(name=item.metadata.name, addresses=addresses, ready=ready))
        return nodes

    def find_node(self, address: str) -> Optional[ClusterNode]:
        return next((n for n in self.list_nodes() if n.matches(address)), None)

    def is_member(self, address: str) -> bool:
        return self.find_node(address) is not None

    def node_ready(self, address: str) -> bool:
        node = self.find_node(address)
        return bool(node and node.ready)

    def api_available(self) -> bool:
        try:
            self.list_nodes()
            return True
        except (ConnectivityError, ConfigurationError) as e:
            logger.debug(f"API not available: {e}")
            return False

    # -- pods ------------------------------------------------------------

    def pods(self, namespace: str) -> List[client.V1Pod]:
        try:
            return self.core.list_namespaced_pod(
                namespace, _request_timeout=self.request_timeout
            ).items
        except (ApiException, HTTPError, OSError) as e:
            raise ConnectivityError(f"Cannot list pods in {namespace}: {e}") from e

    def failed_pods(self, namespace: str = "kube-system") -> List[str]:
        return [p.metadata.name for p in self.pods(namespace) if p.status.phase == "Failed"]

    def running_pod_prefixes(self, prefixes: List[str], namespace: str = "kube-system") -> Dict[str, bool]:
        """Map each prefix to whether a Running pod name starts with it."""
        running = [p.metadata.name for p in self.pods(namespace) if p.status.phase == "Running"]
        return {prefix: any(name.startswith(prefix) for name in running) for prefix in prefixes}

    # -- namespaces and manifests ----------------------------------------

    def ensure_namespace(self, name: str, labels: Dict[str, str]) -> None:
        body = {
            "apiVersion": "v1",
            "kind": "Namespace",
            "metadata": {"name": name, "labels": labels},
        }
        self.apply(body)

    def namespace_active(self, name: str) -> bool:
        try:
            ns = self.core.read_namespace(name, _request_timeout=self.request_timeout)
        except ApiException as e:
            if e.status == 404:
                return False
            raise
        return ns.status.phase == "Active"

    def apply(self, doc: Dict[str, Any]) -> None:
        """Create a resource, or patch it when it already exists."""
        kind = doc["kind"]
        api_version = doc["apiVersion"]
        metadata = doc.get("metadata", {})
        try:
            resource = self.dynamic.resources.get(api_version=api_version, kind=kind)
        except ResourceNotFoundError as e:
            raise ClusterApiError(f"Unknown resource type {api_version}/{kind}") from e
        namespace = metadata.get("namespace", "default") if resource.namespaced else None
        target = f"{kind}/{metadata.get('name')}"
        try:
            logger.info(f"📄 Applying {target}" + (f" in {namespace}" if namespace else ""))
            resource.create(body=doc, namespace=namespace)
        except ApiException as e:
            if e.status != 409:
                raise ClusterApiError(f"Cannot apply {target}: {e.reason}") from e
            logger.info(f"↪️ {target} exists. Patching...")
            try:
                resource.patch(
                    body=doc,
                    name=metadata.get("name"),
                    namespace=namespace,
                    content_type="application/merge-patch+json",
                )
            except ApiException as patch_error:
                raise ClusterApiError(f"Cannot patch {target}: {patch_error.reason}") from patch_error
        except (HTTPError, OSError) as e:
            raise ConnectivityError(f"Cluster API unavailable while applying {target}: {e}") from e

    def apply_all(self, docs: List[Dict[str, Any]]) -> int:
        applied = 0
        for doc in docs:
            if not doc or not doc.get("kind") or not doc.get("apiVersion"):
                continue
            self.apply(doc)
            applied += 1
        return applied

    # -- storage ---------------------------------------------------------

    def storage_classes(self) -> List[client.V1StorageClass]:
        try:
            return self.storage.list_storage_class(_request_timeout=self.request_timeout).items
        except (ApiException, HTTPError, OSError) as e:
            raise ConnectivityError(f"Cannot list storage classes: {e}") from e

    def storage_class_names(self) -> List[str]:
        return [sc.metadata.name for sc in self.storage_classes()]

    def default_storage_class(self) -> Optional[str]:
        for sc in self.storage_classes():
            annotations = sc.metadata.annotations or {}
            if any(annotations.get(a) == "true" for a in DEFAULT_CLASS_ANNOTATIONS):
                return sc.metadata.name
        return None

    def storage_class_binding_mode(self, name: str) -> Optional[str]:
        for sc in self.storage_classes():
            if sc.metadata.name == name:
                return sc.volume_binding_mode
        return None

    def pvc_phase(self, namespace: str, name: str) -> Optional[str]:
        try:
            pvc = self.core.read_namespaced_persistent_volume_claim(
                name, namespace, _request_timeout=self.request_timeout
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise
        return pvc.status.phase

    def delete_pvc(self, namespace: str, name: str) -> None:
        try:
            self.core.delete_namespaced_persistent_volume_claim(name, namespace)
        except ApiException as e:
            if e.status != 404:
                raise

    # -- deployments -----------------------------------------------------

    def deployment_available(self, namespace: str, name: str) -> bool:
        try:
            deployment = self.apps.read_namespaced_deployment(
                name, namespace, _request_timeout=self.request_timeout
            )
        except ApiException as e:
            if e.status == 404:
                return False
            raise
        conditions = deployment.status.conditions or []
        return any(c.type == "Available" and c.status == "True" for c in conditions)

    # -- smoke test ------------------------------------------------------

    def pod_phase(self, namespace: str, name: str) -> Optional[str]:
        try:
            pod = self.core.read_namespaced_pod(name, namespace, _request_timeout=self.request_timeout)
        except ApiException as e:
            if e.status == 404:
                return None
            raise
        return pod.status.phase

    def pod_node_names(self, namespace: str, label_selector: str) -> List[Optional[str]]:
        """Node each matching pod is scheduled on; None for unscheduled pods."""
        try:
            pods = self.core.list_namespaced_pod(
                namespace, label_selector=label_selector, _request_timeout=self.request_timeout
            ).items
        except (ApiException, HTTPError, OSError) as e:
            raise ConnectivityError(f"Cannot list pods in {namespace}: {e}") from e
        return [p.spec.node_name for p in pods]

    def service_cluster_ip(self, namespace: str, name: str) -> Optional[str]:
        try:
            service = self.core.read_namespaced_service(
                name, namespace, _request_timeout=self.request_timeout
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise
        ip = service.spec.cluster_ip
        return ip if ip and ip != "None" else None

    def delete_namespace(self, name: str) -> None:
        try:
            self.core.delete_namespace(name, _request_timeout=self.request_timeout)
        except ApiException as e:
            if e.status != 404:
                raise ClusterApiError(f"Cannot delete namespace {name}: {e.reason}") from e
        except (HTTPError, OSError) as e:
            raise ConnectivityError(f"Cluster API unavailable while deleting {name}: {e}") from e
