"""Static cluster topology and per-node SSH identities."""
import logging
from typing import Dict, Iterator, List, Optional

from k3sctl.config import K3sctlConfig, NodeEntry, SSHConfig
from k3sctl.errors import ConfigurationError
from k3sctl.utils.net import is_valid_address
from .models import Node, NodeRole, SSHIdentity

logger = logging.getLogger("k3sctl.registry")


class CredentialResolver:
    """Resolve the SSH identity for a node address.

    Lookup order is the node's own entry, then the per-address identity
    map, then the configured default. Resolution never fails for a
    configured node.
    """

    def __init__(
        self,
        default: SSHIdentity,
        overrides: Optional[Dict[str, SSHIdentity]] = None,
    ):
        if not default.user:
            raise ConfigurationError("A default SSH user is required")
        self.default = default
        self.overrides = dict(overrides or {})

    @classmethod
    def from_config(cls, ssh: SSHConfig, nodes: List[NodeEntry]) -> 'CredentialResolver':
        default = SSHIdentity(user=ssh.user, key_path=ssh.key_path, port=ssh.port)
        overrides: Dict[str, SSHIdentity] = {}
        for address, identity in ssh.identities.items():
            overrides[address] = SSHIdentity(
                user=identity.user or default.user,
                key_path=identity.key_path or default.key_path,
                port=ssh.port,
            )
        for entry in nodes:
            if entry.user or entry.key_path:
                base = overrides.get(entry.address, default)
                overrides[entry.address] = SSHIdentity(
                    user=entry.user or base.user,
                    key_path=entry.key_path or base.key_path,
                    port=ssh.port,
                )
        return cls(default, overrides)

    def resolve(self, address: str) -> SSHIdentity:
        return self.overrides.get(address, self.default)

    def identities(self) -> List[SSHIdentity]:
        """Distinct identities in use, default first."""
        seen = [self.default]
        for identity in self.overrides.values():
            if identity not in seen:
                seen.append(identity)
        return seen


class NodeRegistry:
    """One control-plane node plus the workers, with their credentials."""

    def __init__(self, control_plane: Node, workers: List[Node], credentials: CredentialResolver):
        nodes = [control_plane] + list(workers)
        if control_plane.role != NodeRole.CONTROL_PLANE:
            raise ConfigurationError(f"{control_plane.address} is not a control-plane node")
        if any(w.role != NodeRole.WORKER for w in workers):
            raise ConfigurationError("Only one control-plane node is supported")
        seen = set()
        for node in nodes:
            if node.address in seen:
                raise ConfigurationError(f"Duplicate node address: {node.address}")
            seen.add(node.address)
        self.control_plane = control_plane
        self.workers = list(workers)
        self.credentials = credentials

    @classmethod
    def from_config(cls, config: K3sctlConfig) -> 'NodeRegistry':
        entries = [config.nodes.control_plane] + list(config.nodes.workers)
        credentials = CredentialResolver.from_config(config.ssh, entries)

        def to_node(entry: NodeEntry, role: NodeRole) -> Node:
            identity = credentials.resolve(entry.address)
            return Node(
                address=entry.address,
                role=role,
                credential_ref=identity.user,
                label=entry.label,
            )

        control_plane = to_node(config.nodes.control_plane, NodeRole.CONTROL_PLANE)
        workers = [to_node(e, NodeRole.WORKER) for e in config.nodes.workers]
        registry = cls(control_plane, workers, credentials)
        logger.debug(f"Registry: control plane {control_plane.address}, {len(workers)} worker(s)")
        return registry

    def __iter__(self) -> Iterator[Node]:
        yield self.control_plane
        yield from self.workers

    def __len__(self) -> int:
        return 1 + len(self.workers)

    @property
    def nodes(self) -> List[Node]:
        return list(self)

    def get(self, address: str) -> Node:
        for node in self:
            if node.address == address:
                return node
        raise ConfigurationError(f"Unknown node: {address}")

    def identity(self, node: Node) -> SSHIdentity:
        return self.credentials.resolve(node.address)

    def invalid_addresses(self) -> List[str]:
        return [n.address for n in self if not is_valid_address(n.address)]
