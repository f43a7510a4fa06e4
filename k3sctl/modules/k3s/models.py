"""Data models for K3s provisioning."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

# Milestone keys
CONTROL_PLANE_INITIALIZED = "control_plane_initialized"
CONTROL_PLANE_IP = "control_plane_ip"
K3S_VERSION = "k3s_version"
NFS_SERVER_CONFIGURED = "nfs_server_configured"
NFS_PROVISIONER_DEPLOYED = "nfs_provisioner_deployed"


def worker_joined_key(address: str) -> str:
    """Milestone key recording that a worker joined the cluster."""
    return f"worker_{address}_joined"


def tool_installed_key(tool: str) -> str:
    return f"{tool}_installed"


def layer_deployed_key(layer: str) -> str:
    return f"observability_{layer}_deployed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NodeRole(str, Enum):
    """Node roles in the K3s cluster."""
    CONTROL_PLANE = 'control-plane'
    WORKER = 'worker'


class NodeStatus(str, Enum):
    """Final status of one unit of a provisioning run."""
    READY = 'ready'
    ALREADY_DONE = 'already-done'
    SKIPPED = 'skipped'
    FAILED = 'failed'
    ORPHANED = 'orphaned'

    @property
    def succeeded(self) -> bool:
        return self in (NodeStatus.READY, NodeStatus.ALREADY_DONE, NodeStatus.SKIPPED)


@dataclass(frozen=True)
class SSHIdentity:
    """Credentials used to reach a node."""
    user: str
    key_path: Optional[str] = None
    port: int = 22


@dataclass(frozen=True)
class Node:
    """Represents a node in the K3s cluster."""
    address: str
    role: NodeRole
    credential_ref: str = ''
    label: str = ''

    @property
    def name(self) -> str:
        return self.label or self.address

    @property
    def is_control_plane(self) -> bool:
        return self.role == NodeRole.CONTROL_PLANE


@dataclass
class CommandResult:
    """Result of a local or remote command."""
    exit_code: int
    stdout: str = ''
    stderr: str = ''

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class Milestone:
    """One record of the milestone log."""
    key: str
    value: str
    recorded_at: Optional[datetime] = None


@dataclass
class NodeOutcome:
    """Per-unit result of an operation.

    ``target`` is the node address for node work, or a descriptive name
    (``localhost``, ``layer/backend``) for units that are not nodes.
    """
    target: str
    status: NodeStatus
    reason: str = ''
    node: Optional[Node] = None

    @classmethod
    def for_node(cls, node: Node, status: NodeStatus, reason: str = '') -> 'NodeOutcome':
        return cls(target=node.address, status=status, reason=reason, node=node)

    @property
    def role(self) -> str:
        return self.node.role.value if self.node else '-'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'target': self.target,
            'label': self.node.label if self.node else '',
            'role': self.role,
            'status': self.status.value,
            'reason': self.reason,
        }


@dataclass
class PreflightCheck:
    """A single named preflight check."""
    name: str
    passed: bool
    detail: str = ''


@dataclass
class PreflightReport:
    """Aggregate of preflight checks and advisory warnings."""
    checks: List[PreflightCheck] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def add(self, name: str, passed: bool, detail: str = '') -> PreflightCheck:
        check = PreflightCheck(name=name, passed=passed, detail=detail)
        self.checks.append(check)
        return check

    def warn(self, message: str) -> None:
        self.warnings.append(message)

    @property
    def passed(self) -> bool:
        return all(check.passed for check in self.checks)

    @property
    def failed_checks(self) -> List[PreflightCheck]:
        return [check for check in self.checks if not check.passed]

    def get(self, name: str) -> Optional[PreflightCheck]:
        return next((c for c in self.checks if c.name == name), None)


@dataclass
class RunSummary:
    """Outcome of one CLI phase."""
    phase: str
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    outcomes: List[NodeOutcome] = field(default_factory=list)
    issues: List[str] = field(default_factory=list)
    fatal: Optional[str] = None
    cancelled: bool = False

    def add(self, outcome: NodeOutcome) -> NodeOutcome:
        self.outcomes.append(outcome)
        return outcome

    def merge(self, other: 'RunSummary') -> None:
        self.outcomes.extend(other.outcomes)
        self.issues.extend(other.issues)
        if other.fatal and not self.fatal:
            self.fatal = other.fatal
        self.cancelled = self.cancelled or other.cancelled

    def finish(self) -> 'RunSummary':
        self.finished_at = utcnow()
        return self

    @property
    def failed(self) -> List[NodeOutcome]:
        return [o for o in self.outcomes if not o.status.succeeded]

    @property
    def succeeded(self) -> List[NodeOutcome]:
        return [o for o in self.outcomes if o.status.succeeded]

    @property
    def exit_code(self) -> int:
        if self.cancelled:
            return 130
        if self.fatal:
            return 1
        if self.failed or self.issues:
            return 2
        return 0

    def headline(self) -> str:
        if self.cancelled:
            state = 'cancelled'
        elif self.fatal:
            state = f'failed: {self.fatal}'
        elif self.failed:
            state = f'partial failure ({len(self.failed)}/{len(self.outcomes)} failed)'
        elif self.issues:
            state = f'completed with {len(self.issues)} issue(s)'
        else:
            state = 'succeeded'
        return f'{self.phase} {state}'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'phase': self.phase,
            'started_at': self.started_at.isoformat(),
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'exit_code': self.exit_code,
            'fatal': self.fatal,
            'cancelled': self.cancelled,
            'outcomes': [o.to_dict() for o in self.outcomes],
            'issues': list(self.issues),
        }
