import os
from typing import Dict, List, Optional

import pytest

from k3sctl.config import K3sctlConfig
from k3sctl.errors import ConfigurationError, ConnectivityError, LocalCommandError, RemoteCommandError
from k3sctl.modules.k3s.models import CommandResult, CONTROL_PLANE_INITIALIZED
from k3sctl.modules.k3s.orchestrator import ProvisioningOrchestrator
from k3sctl.modules.k3s.registry import NodeRegistry
from k3sctl.modules.k3s.state import StateStore
from k3sctl.utils.kube import ClusterNode

CONTROL_PLANE = "10.0.0.1"
WORKERS = ["10.0.0.11", "10.0.0.12", "10.0.0.13"]


class FakeExecutor:
    """Records remote commands; answers from substring-keyed responses."""

    def __init__(self, events: List, responses: Optional[Dict[str, CommandResult]] = None):
        self.events = events
        self.unreachable = set()
        self.responses = {"pgrep": CommandResult(1, "", "")}
        self.responses.update(responses or {})
        self.closed = False

    @property
    def commands(self):
        return [(e[1], e[2]) for e in self.events if e[0] == "ssh"]

    def commands_for(self, address):
        return [cmd for addr, cmd in self.commands if addr == address]

    def probe(self, node):
        self.events.append(("probe", node.address))
        if node.address in self.unreachable:
            raise ConnectivityError(f"{node.address} unreachable", address=node.address)
        return True

    def execute(self, node, command, timeout=None, capture_output=True, check=True, sensitive=False):
        self.events.append(("ssh", node.address, command))
        if node.address in self.unreachable:
            raise ConnectivityError(f"{node.address} unreachable", address=node.address)
        result = CommandResult(0, "", "")
        for needle, response in self.responses.items():
            if needle in command:
                result = response(node) if callable(response) else response
                break
        if check and result.exit_code != 0:
            raise RemoteCommandError(command, result.exit_code, result.stdout, result.stderr,
                                     address=node.address)
        return result

    def close(self):
        self.closed = True


class FakeRunner:
    """Local command double; ``k3sup`` runs mutate the fake cluster."""

    def __init__(self, events: List, cluster=None, tools=("brew", "k3sup", "kubectl", "helm")):
        self.events = events
        self.cluster = cluster
        self.tools = set(tools)
        self.failing = set()
        self.responses: Dict[tuple, CommandResult] = {}

    @property
    def commands(self):
        return [e[1] for e in self.events if e[0] == "local"]

    def which(self, tool):
        return f"/opt/homebrew/bin/{tool}" if tool in self.tools else None

    def require(self, tool):
        path = self.which(tool)
        if not path:
            raise ConfigurationError(f"Required command '{tool}' not found on PATH")
        return path

    def run(self, cmd, *, check=True, timeout=None, env=None, sensitive=False):
        cmd = list(cmd)
        self.events.append(("local", cmd))
        result = CommandResult(0, "", "")
        for prefix, response in self.responses.items():
            if tuple(cmd[:len(prefix)]) == prefix:
                result = response
                break
        ip = cmd[cmd.index("--ip") + 1] if "--ip" in cmd else None
        if ip in self.failing:
            result = CommandResult(1, "", f"error joining {ip}")
        elif cmd[:2] in (["k3sup", "install"], ["k3sup", "join"]) and self.cluster is not None:
            self.cluster.add(ip)
        if check and result.exit_code != 0:
            raise LocalCommandError(" ".join(cmd), result.exit_code, result.stdout, result.stderr)
        return result


class FakeCluster:
    """In-memory stand-in for ClusterClient."""

    def __init__(self):
        self.members: Dict[str, bool] = {}
        self.storage_classes: List[str] = []
        self.default_class: Optional[str] = None
        self.applied: List[dict] = []
        self.namespaces: Dict[str, dict] = {}
        self.pvc_phases: Dict[str, Optional[str]] = {}
        self.deleted_pvcs: List[str] = []
        self.unavailable_deployments = set()
        self.failed = []
        self.resets = 0
        self.binding_modes: Dict[str, str] = {}
        self.pvc_checks: List[str] = []
        self.pod_phases: Dict[str, Optional[str]] = {}
        self.placements: Optional[List[Optional[str]]] = None
        self.cluster_ips: Dict[str, Optional[str]] = {}
        self.deleted_namespaces: List[str] = []

    def add(self, address, ready=True):
        self.members[address] = ready

    def reset(self):
        self.resets += 1

    def list_nodes(self):
        return [ClusterNode(name=f"node-{a}", addresses=[a], ready=r) for a, r in self.members.items()]

    def find_node(self, address):
        return next((n for n in self.list_nodes() if n.matches(address)), None)

    def is_member(self, address):
        return address in self.members

    def node_ready(self, address):
        return self.members.get(address, False)

    def api_available(self):
        return True

    def failed_pods(self, namespace="kube-system"):
        return list(self.failed)

    def running_pod_prefixes(self, prefixes, namespace="kube-system"):
        return {p: True for p in prefixes}

    def ensure_namespace(self, name, labels):
        self.namespaces[name] = labels

    def apply(self, doc):
        self.applied.append(doc)
        if doc["kind"] == "StorageClass":
            self.storage_classes.append(doc["metadata"]["name"])

    def apply_all(self, docs):
        for doc in docs:
            self.apply(doc)
        return len(docs)

    def storage_class_names(self):
        return list(self.storage_classes)

    def default_storage_class(self):
        return self.default_class

    def storage_class_binding_mode(self, name):
        return self.binding_modes.get(name, "Immediate")

    def pvc_phase(self, namespace, name):
        self.pvc_checks.append(f"{namespace}/{name}")
        return self.pvc_phases.get(f"{namespace}/{name}", "Bound")

    def delete_pvc(self, namespace, name):
        self.deleted_pvcs.append(f"{namespace}/{name}")

    def deployment_available(self, namespace, name):
        return f"{namespace}/{name}" not in self.unavailable_deployments

    def pod_phase(self, namespace, name):
        return self.pod_phases.get(f"{namespace}/{name}", "Succeeded")

    def pod_node_names(self, namespace, label_selector):
        if self.placements is not None:
            return list(self.placements)
        return [f"node-{a}" for a in self.members]

    def service_cluster_ip(self, namespace, name):
        return self.cluster_ips.get(f"{namespace}/{name}", "10.43.0.50")

    def delete_namespace(self, name):
        self.deleted_namespaces.append(name)

    def applied_kinds(self):
        return [d["kind"] for d in self.applied]


@pytest.fixture
def events():
    return []


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def executor(events):
    return FakeExecutor(events)


@pytest.fixture
def runner(events, cluster):
    return FakeRunner(events, cluster)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def ssh_key(tmp_path):
    key = tmp_path / "id_ed25519"
    key.write_text("not a real key\n")
    os.chmod(key, 0o600)
    return key


@pytest.fixture
def make_config(tmp_path, ssh_key):
    """Build a config rooted in tmp_path with fast timeouts."""
    def factory(workers=None, **sections):
        kubeconfig = tmp_path / "kube" / "config"
        kubeconfig.parent.mkdir(exist_ok=True)
        kubeconfig.touch()
        data = {
            "cluster": {"kubeconfig": str(kubeconfig)},
            "nodes": {
                "control_plane": {"address": CONTROL_PLANE, "label": "mini-1"},
                "workers": [{"address": a} for a in (WORKERS if workers is None else workers)],
            },
            "ssh": {"user": "admin", "key_path": str(ssh_key)},
            "retry": {"max_attempts": 3, "initial_delay": 5},
            "join": {"delay": 5},
            "verification": {
                "interval": 1,
                "control_plane_timeout": 0,
                "nodes_ready_timeout": 0,
                "pvc_timeout": 0,
                "deployment_timeout": 0,
            },
            "smoke": {"timeout": 0},
            "state": {"dir": str(tmp_path / "state")},
        }
        for section, values in sections.items():
            data.setdefault(section, {}).update(values)
        return K3sctlConfig(**data)
    return factory


@pytest.fixture
def config(make_config):
    return make_config()


@pytest.fixture
def state(config):
    return StateStore(config.state_dir)


@pytest.fixture
def initialized(state, cluster):
    """Control plane already up, token on disk."""
    state.record(CONTROL_PLANE_INITIALIZED, "true")
    state.write_join_token("K10secret::server:abc")
    cluster.add(CONTROL_PLANE)
    return state


@pytest.fixture
def make_orchestrator(executor, runner, cluster, sleeps):
    def factory(config, state=None, **kwargs):
        return ProvisioningOrchestrator(
            config,
            NodeRegistry.from_config(config),
            executor,
            state or StateStore(config.state_dir),
            cluster,
            runner=runner,
            sleep=sleeps.append,
            **kwargs,
        )
    return factory
