"""Command lines for the k3sup install/join tool."""
from pathlib import Path
from typing import List, Optional

from k3sctl.config import ClusterSettings
from .models import SSHIdentity

SERVER_TOKEN_PATH = "/var/lib/rancher/k3s/server/node-token"
SERVER_UNINSTALL = "/usr/local/bin/k3s-uninstall.sh"
AGENT_UNINSTALL = "/usr/local/bin/k3s-agent-uninstall.sh"


def _ssh_args(identity: SSHIdentity) -> List[str]:
    args = ["--user", identity.user]
    if identity.key_path:
        args += ["--ssh-key", identity.key_path]
    if identity.port != 22:
        args += ["--ssh-port", str(identity.port)]
    return args


def server_args(cluster: ClusterSettings) -> str:
    args = [f"--cluster-cidr={cluster.pod_cidr}", f"--service-cidr={cluster.service_cidr}"]
    args += [a for a in cluster.server_extra_args if a not in args]
    return " ".join(args)


def install_command(
    address: str,
    identity: SSHIdentity,
    cluster: ClusterSettings,
    merge: bool = False,
) -> List[str]:
    """``k3sup install`` against the control-plane node."""
    cmd = ["k3sup", "install", "--ip", address] + _ssh_args(identity)
    cmd += ["--local-path", cluster.kubeconfig, "--context", cluster.context]
    if merge:
        cmd.append("--merge")
    if cluster.version_pin:
        cmd += ["--k3s-version", cluster.version_pin]
    cmd += ["--k3s-extra-args", server_args(cluster)]
    return cmd


def join_command(
    address: str,
    identity: SSHIdentity,
    server_address: str,
    server_identity: SSHIdentity,
    token_path: Path,
    cluster: ClusterSettings,
) -> List[str]:
    """``k3sup join`` for a worker.

    The token is passed by file so it never appears on a command line.
    """
    cmd = ["k3sup", "join", "--ip", address] + _ssh_args(identity)
    cmd += ["--server-ip", server_address, "--server-user", server_identity.user]
    cmd += ["--node-token-path", str(token_path)]
    if cluster.version_pin:
        cmd += ["--k3s-version", cluster.version_pin]
    if cluster.agent_extra_args:
        cmd += ["--k3s-extra-args", " ".join(cluster.agent_extra_args)]
    return cmd


def uninstall_agent_command() -> str:
    """Remote command removing a K3s agent; a no-op when none is installed."""
    return f"if [ -x {AGENT_UNINSTALL} ]; then sudo -n {AGENT_UNINSTALL}; fi"


def read_token_command() -> str:
    return f"sudo -n cat {SERVER_TOKEN_PATH}"


def journal_command(unit: str, lines: int = 50) -> str:
    return f"sudo -n journalctl -u {unit} -n {lines} --no-pager"


def version_command(tool: str) -> Optional[List[str]]:
    commands = {
        "k3sup": ["k3sup", "version"],
        "kubectl": ["kubectl", "version", "--client"],
    }
    return commands.get(tool)
