"""Configuration management for k3sctl.

Configuration is loaded with the following precedence:
1. Explicit command line options (applied by the CLI)
2. Environment variables (a ``.env`` file is read first)
3. The cluster YAML file
4. Default values
"""
import ipaddress
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from dotenv import load_dotenv
from jsonschema import ValidationError, validate
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as ModelValidationError

from k3sctl.errors import ConfigurationError

logger = logging.getLogger("k3sctl.config")

DEFAULT_CONFIG_PATHS = [
    Path("cluster.yaml"),
    Path("~/.config/k3sctl/cluster.yaml"),
]

NODE_SCHEMA = {
    "type": "object",
    "required": ["address"],
    "properties": {
        "address": {"type": "string", "minLength": 1},
        "label": {"type": "string"},
        "user": {"type": "string"},
        "key_path": {"type": "string"},
    },
}

CLUSTER_SCHEMA = {
    "type": "object",
    "required": ["nodes"],
    "properties": {
        "cluster": {"type": "object"},
        "nodes": {
            "type": "object",
            "required": ["control_plane"],
            "properties": {
                "control_plane": NODE_SCHEMA,
                "workers": {"type": "array", "items": NODE_SCHEMA},
            },
            "additionalProperties": False,
        },
        "ssh": {"type": "object"},
        "retry": {"type": "object"},
        "join": {"type": "object"},
        "verification": {"type": "object"},
        "preflight": {"type": "object"},
        "storage": {"type": "object"},
        "observability": {"type": "object"},
        "smoke": {"type": "object"},
        "state": {"type": "object"},
        "logging": {"type": "object"},
        "notifications": {"type": "object"},
    },
}

# Environment variable -> (section, field)
ENV_OVERRIDES = {
    "K3SCTL_STATE_DIR": ("state", "dir"),
    "K3SCTL_SSH_USER": ("ssh", "user"),
    "K3SCTL_SSH_KEY_PATH": ("ssh", "key_path"),
    "K3SCTL_K3S_VERSION": ("cluster", "k3s_version"),
    "K3SCTL_PARALLEL_JOIN": ("join", "parallel"),
    "K3SCTL_WEBHOOK_URL": ("notifications", "webhook_url"),
    "K3SCTL_LOG_LEVEL": ("logging", "level"),
}


def _expand(path: Optional[str]) -> Optional[str]:
    return os.path.expanduser(path) if path else path


class _Section(BaseModel):
    model_config = ConfigDict(extra="ignore")


class NodeEntry(_Section):
    """One node as declared in the cluster file."""
    address: str
    label: str = ""
    user: Optional[str] = None
    key_path: Optional[str] = None

    @field_validator("key_path")
    @classmethod
    def expand_key_path(cls, v: Optional[str]) -> Optional[str]:
        return _expand(v)


class NodesConfig(_Section):
    control_plane: NodeEntry
    workers: List[NodeEntry] = Field(default_factory=list)


class IdentityOverride(_Section):
    user: Optional[str] = None
    key_path: Optional[str] = None

    @field_validator("key_path")
    @classmethod
    def expand_key_path(cls, v: Optional[str]) -> Optional[str]:
        return _expand(v)


class SSHConfig(_Section):
    """SSH connection configuration."""
    user: str = Field(default="admin", description="Default SSH username")
    key_path: Optional[str] = Field(default="~/.ssh/id_rsa", description="Default private key")
    port: int = Field(default=22, description="SSH port number")
    connect_timeout: int = Field(default=10, description="Connection timeout in seconds")
    command_timeout: int = Field(default=300, description="Command timeout in seconds")
    host_key_policy: str = Field(default="accept-new", description="accept-new, strict or warn")
    identities: Dict[str, IdentityOverride] = Field(
        default_factory=dict,
        description="Per-address credential overrides",
    )

    @field_validator("key_path")
    @classmethod
    def expand_key_path(cls, v: Optional[str]) -> Optional[str]:
        return _expand(v)

    @field_validator("host_key_policy")
    @classmethod
    def known_policy(cls, v: str) -> str:
        if v not in ("accept-new", "strict", "warn"):
            raise ValueError(f"unknown host key policy '{v}'")
        return v


class ClusterSettings(_Section):
    """Cluster-wide configuration."""
    name: str = "k3s-cluster"
    context: str = "k3s-cluster"
    kubeconfig: str = "~/.kube/config"
    k3s_version: str = "latest"
    pod_cidr: str = "10.42.0.0/16"
    service_cidr: str = "10.43.0.0/16"
    server_extra_args: List[str] = Field(
        default_factory=lambda: ["--disable=traefik", "--write-kubeconfig-mode=644"]
    )
    agent_extra_args: List[str] = Field(default_factory=list)

    @field_validator("kubeconfig")
    @classmethod
    def expand_kubeconfig(cls, v: str) -> str:
        return os.path.expanduser(v)

    @field_validator("pod_cidr", "service_cidr")
    @classmethod
    def valid_cidr(cls, v: str) -> str:
        ipaddress.ip_network(v, strict=True)
        return v

    @property
    def version_pin(self) -> Optional[str]:
        return None if self.k3s_version in ("", "latest") else self.k3s_version


class RetryConfig(_Section):
    max_attempts: int = Field(default=3, ge=1)
    initial_delay: float = Field(default=5.0, ge=0)
    max_delay: float = Field(default=60.0, ge=0)
    jitter: float = Field(default=0.0, ge=0)


class JoinConfig(_Section):
    parallel: bool = False
    delay: float = Field(default=5.0, ge=0)
    max_parallel: int = Field(default=4, ge=1)


class VerificationConfig(_Section):
    interval: float = Field(default=5.0, gt=0)
    control_plane_timeout: float = 300.0
    nodes_ready_timeout: float = 300.0
    pvc_timeout: float = 60.0
    deployment_timeout: float = 300.0
    critical_pods: List[str] = Field(
        default_factory=lambda: ["coredns", "local-path-provisioner", "metrics-server"]
    )


class PreflightConfig(_Section):
    min_disk_gb: float = 20
    min_memory_gb: float = 8
    min_cpu_cores: int = 4
    expected_os: str = "Darwin"
    expected_arch: str = "arm64"
    k3s_ports: List[int] = Field(
        default_factory=lambda: [6443, 10250, 10251, 10252, 2379, 2380]
    )


class StorageConfig(_Section):
    enabled: bool = True
    server: Optional[str] = None
    export_path: str = "/Users/Shared/k3s-nfs"
    uid: int = 501
    gid: int = 20
    storage_class: str = "nfs-storage"
    namespace: str = "nfs-provisioner"
    provisioner_image: str = "registry.k8s.io/sig-storage/nfs-subdir-external-provisioner:v4.0.2"


class NamespaceSpec(_Section):
    name: str
    purpose: str = "observability"
    pod_security: str = "baseline"


class ClaimSpec(_Section):
    name: str
    namespace: str
    size: str


class HelmRelease(_Section):
    name: str
    repo_name: str
    repo_url: str
    chart: str
    namespace: str
    version: Optional[str] = None
    values_file: Optional[str] = None
    set_values: Dict[str, str] = Field(default_factory=dict)


class LayerSpec(_Section):
    """One layer of the telemetry pipeline."""
    name: str
    releases: List[HelmRelease] = Field(default_factory=list)
    manifests: List[str] = Field(default_factory=list)
    wait_for: List[str] = Field(default_factory=list, description="namespace/deployment")


def _default_namespaces() -> List[NamespaceSpec]:
    return [
        NamespaceSpec(name="observability", purpose="otel-collectors"),
        NamespaceSpec(name="monitoring", purpose="metrics-logs-traces"),
        NamespaceSpec(name="grafana", purpose="visualization"),
    ]


def _default_claims() -> List[ClaimSpec]:
    return [
        ClaimSpec(name="prometheus-data", namespace="monitoring", size="50Gi"),
        ClaimSpec(name="loki-data", namespace="monitoring", size="100Gi"),
        ClaimSpec(name="tempo-data", namespace="monitoring", size="50Gi"),
        ClaimSpec(name="grafana-data", namespace="grafana", size="10Gi"),
    ]


def _default_layers() -> List[LayerSpec]:
    return [
        LayerSpec(
            name="prerequisites",
            releases=[HelmRelease(
                name="cert-manager", repo_name="jetstack", repo_url="https://charts.jetstack.io",
                chart="cert-manager", namespace="cert-manager", version="v1.14.2",
                set_values={"installCRDs": "true"},
            )],
            wait_for=["cert-manager/cert-manager", "cert-manager/cert-manager-webhook"],
        ),
        LayerSpec(
            name="collector",
            releases=[HelmRelease(
                name="opentelemetry-operator", repo_name="open-telemetry",
                repo_url="https://open-telemetry.github.io/opentelemetry-helm-charts",
                chart="opentelemetry-operator", namespace="observability", version="0.92.0",
            )],
            wait_for=["observability/opentelemetry-operator"],
        ),
        LayerSpec(
            name="backend",
            releases=[
                HelmRelease(
                    name="prometheus", repo_name="prometheus-community",
                    repo_url="https://prometheus-community.github.io/helm-charts",
                    chart="prometheus", namespace="monitoring",
                    set_values={"server.persistentVolume.existingClaim": "prometheus-data"},
                ),
                HelmRelease(
                    name="loki", repo_name="grafana", repo_url="https://grafana.github.io/helm-charts",
                    chart="loki", namespace="monitoring",
                    set_values={"deploymentMode": "SingleBinary"},
                ),
                HelmRelease(
                    name="tempo", repo_name="grafana", repo_url="https://grafana.github.io/helm-charts",
                    chart="tempo", namespace="monitoring",
                ),
            ],
            wait_for=["monitoring/prometheus-server"],
        ),
        LayerSpec(
            name="visualization",
            releases=[HelmRelease(
                name="grafana", repo_name="grafana", repo_url="https://grafana.github.io/helm-charts",
                chart="grafana", namespace="grafana",
                set_values={"persistence.enabled": "true", "persistence.existingClaim": "grafana-data"},
            )],
            wait_for=["grafana/grafana"],
        ),
    ]


class ObservabilityConfig(_Section):
    storage_class: str = "nfs-storage"
    namespaces: List[NamespaceSpec] = Field(default_factory=_default_namespaces)
    claims: List[ClaimSpec] = Field(default_factory=_default_claims)
    layers: List[LayerSpec] = Field(default_factory=_default_layers)
    helm_timeout: str = "600s"


class SmokeTestConfig(_Section):
    """Throwaway workload used by the cluster smoke test."""
    namespace: str = "k3sctl-smoke"
    replicas: int = Field(default=3, ge=1)
    workload_image: str = "nginx:alpine"
    client_image: str = "busybox:1.36"
    timeout: float = Field(default=120.0, ge=0)
    check_storage: bool = True


class StateConfig(_Section):
    dir: str = "~/.k3sctl"
    log_retention_days: int = Field(default=7, ge=0)

    @field_validator("dir")
    @classmethod
    def expand_dir(cls, v: str) -> str:
        return os.path.expanduser(v)


class LoggingConfig(_Section):
    level: str = "INFO"
    max_size_mb: int = 100
    backup_count: int = 5


class NotificationConfig(_Section):
    webhook_url: Optional[str] = None


class K3sctlConfig(_Section):
    """Complete k3sctl configuration."""
    cluster: ClusterSettings = Field(default_factory=ClusterSettings)
    nodes: NodesConfig
    ssh: SSHConfig = Field(default_factory=SSHConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    join: JoinConfig = Field(default_factory=JoinConfig)
    verification: VerificationConfig = Field(default_factory=VerificationConfig)
    preflight: PreflightConfig = Field(default_factory=PreflightConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)
    smoke: SmokeTestConfig = Field(default_factory=SmokeTestConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    source: Optional[str] = Field(default=None, exclude=True)

    @classmethod
    def load(cls, config_path: Optional[Union[str, Path]] = None) -> 'K3sctlConfig':
        """Load configuration from a YAML file and the environment.

        Raises:
            ConfigurationError: If no file is found or its content is invalid.
        """
        load_dotenv()
        config_path = config_path or os.getenv("K3SCTL_CONFIG")
        path = cls._resolve_path(config_path)
        data = cls._load_config_file(path)
        cls._apply_env_overrides(data)
        try:
            config = cls(**data)
        except ModelValidationError as e:
            raise ConfigurationError(f"Invalid configuration in {path}: {e}") from e
        config.source = str(path)
        logger.debug(f"Loaded configuration from {path}")
        return config

    @staticmethod
    def _resolve_path(config_path: Optional[Union[str, Path]]) -> Path:
        if config_path:
            path = Path(config_path).expanduser().absolute()
            if not path.exists():
                raise ConfigurationError(f"Configuration file not found: {path}")
            return path
        for candidate in DEFAULT_CONFIG_PATHS:
            candidate = candidate.expanduser().absolute()
            if candidate.exists():
                return candidate
        tried = ", ".join(str(p) for p in DEFAULT_CONFIG_PATHS)
        raise ConfigurationError(f"No configuration file found. Tried: {tried}")

    @staticmethod
    def _load_config_file(path: Path) -> Dict[str, Any]:
        try:
            with open(path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to read configuration {path}: {e}") from e
        try:
            validate(instance=data, schema=CLUSTER_SCHEMA)
        except ValidationError as e:
            location = "/".join(str(p) for p in e.absolute_path) or "<root>"
            raise ConfigurationError(f"Invalid configuration at {location}: {e.message}") from e
        return data

    @staticmethod
    def _apply_env_overrides(data: Dict[str, Any]) -> None:
        for var, (section, key) in ENV_OVERRIDES.items():
            value = os.getenv(var)
            if value is None or value == "":
                continue
            if not isinstance(data.get(section), dict):
                data[section] = {}
            data[section][key] = value
            logger.debug(f"Using {var} for {section}.{key}")

    @property
    def state_dir(self) -> Path:
        return Path(self.state.dir)

    @property
    def control_plane_address(self) -> str:
        return self.nodes.control_plane.address
