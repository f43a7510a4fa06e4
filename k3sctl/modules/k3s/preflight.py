"""Read-only preflight checks for the operator machine and every node.

Each check is recorded independently; a failing check never stops the
remaining ones, so one report lists every problem.
"""
import logging
import os
import platform
import re
import shutil
import stat
from dataclasses import dataclass
from typing import Callable, List, Optional

from k3sctl.config import PreflightConfig
from k3sctl.errors import K3sctlError
from k3sctl.modules.shell import LocalRunner
from k3sctl.utils.net import is_valid_address, tcp_reachable
from .models import Node, PreflightReport
from .registry import NodeRegistry

logger = logging.getLogger("k3sctl.preflight")

GIB = 1024 ** 3
LOCAL = "local"
OPERATOR_TOOLS = ("k3sup", "kubectl", "helm")

REMOTE_FACTS_COMMAND = (
    "uname -s; uname -m; "
    "df -k / | awk 'NR==2 {print $4}'; "
    "sysctl -n hw.memsize 2>/dev/null || awk '/MemTotal/ {print $2*1024}' /proc/meminfo; "
    "sysctl -n hw.ncpu 2>/dev/null || nproc"
)
K3S_RUNNING_COMMAND = "pgrep -f 'k3s (server|agent)'"
LISTENERS_COMMAND = "lsof -nP -iTCP -sTCP:LISTEN"

_PORT_RE = re.compile(r":(\d+)$")


@dataclass
class HostFacts:
    """Operating system and capacity of a host."""
    os: str
    arch: str
    free_disk_gb: float
    memory_gb: float
    cpu_cores: int


def local_facts() -> HostFacts:
    """Facts about the operator machine."""
    try:
        memory = os.sysconf("SC_PAGE_SIZE") * os.sysconf("SC_PHYS_PAGES")
    except (ValueError, OSError, AttributeError):
        result = LocalRunner().run(["sysctl", "-n", "hw.memsize"], check=False, timeout=10)
        memory = int(result.stdout.strip() or 0)
    return HostFacts(
        os=platform.system(),
        arch=platform.machine(),
        free_disk_gb=shutil.disk_usage("/").free / GIB,
        memory_gb=memory / GIB,
        cpu_cores=os.cpu_count() or 0,
    )


def parse_remote_facts(output: str) -> HostFacts:
    """Parse the output of ``REMOTE_FACTS_COMMAND``."""
    lines = [line.strip() for line in output.strip().splitlines() if line.strip()]
    if len(lines) < 5:
        raise ValueError(f"unexpected host facts output: {output!r}")
    os_name, arch, disk_kb, memory, cores = lines[:5]
    return HostFacts(
        os=os_name,
        arch=arch,
        free_disk_gb=int(disk_kb) * 1024 / GIB,
        memory_gb=int(float(memory)) / GIB,
        cpu_cores=int(cores),
    )


def listening_ports(lsof_output: str) -> List[int]:
    ports = set()
    for line in lsof_output.splitlines()[1:]:
        columns = line.split()
        if len(columns) < 9:
            continue
        # NAME column, e.g. "*:6443" or "127.0.0.1:10250"; "(LISTEN)" may follow
        name = columns[8]
        match = _PORT_RE.search(name)
        if match:
            ports.add(int(match.group(1)))
    return sorted(ports)


class PreflightValidator:
    """Run every preflight check and collect a report."""

    def __init__(
        self,
        executor,
        thresholds: PreflightConfig,
        ssh_port: int = 22,
        connect_timeout: float = 5,
        tcp_check: Callable[[str, int, float], bool] = tcp_reachable,
        facts: Callable[[], HostFacts] = local_facts,
        which: Callable[[str], Optional[str]] = shutil.which,
    ):
        self.executor = executor
        self.thresholds = thresholds
        self.ssh_port = ssh_port
        self.connect_timeout = connect_timeout
        self.tcp_check = tcp_check
        self.facts = facts
        self.which = which

    def run(self, registry: NodeRegistry) -> PreflightReport:
        report = PreflightReport()
        logger.info(f"🔍 Running preflight checks for {len(registry)} node(s)")

        self._check_config(registry, report)
        self._check_local(report)
        for node in registry:
            self._check_node(node, report)

        for check in report.checks:
            mark = "✅" if check.passed else "❌"
            logger.info(f"{mark} {check.name}: {check.detail}")
        for warning in report.warnings:
            logger.warning(f"⚠️ {warning}")
        logger.info("✅ Preflight passed" if report.passed
                    else f"❌ Preflight failed ({len(report.failed_checks)} check(s))")
        return report

    # -- configuration -----------------------------------------------------

    def _check_config(self, registry: NodeRegistry, report: PreflightReport) -> None:
        invalid = registry.invalid_addresses()
        report.add(
            "config:addresses",
            not invalid,
            f"invalid: {', '.join(invalid)}" if invalid else "all node addresses valid",
        )

        missing = []
        for identity in registry.credentials.identities():
            if not identity.key_path:
                continue
            if not os.path.isfile(identity.key_path):
                missing.append(identity.key_path)
                continue
            mode = stat.S_IMODE(os.stat(identity.key_path).st_mode)
            if mode & 0o077:
                report.warn(f"SSH key {identity.key_path} has permissions {oct(mode)}, expected 0o600")
        report.add(
            "config:ssh-keys",
            not missing,
            f"missing: {', '.join(missing)}" if missing else "all SSH keys present",
        )

        absent = [tool for tool in OPERATOR_TOOLS if not self.which(tool)]
        if absent:
            report.warn(f"Not installed yet: {', '.join(absent)} (run install-deps)")

    # -- hosts -------------------------------------------------------------

    def _check_facts(self, scope: str, facts: HostFacts, report: PreflightReport) -> None:
        t = self.thresholds
        platform_ok = facts.os == t.expected_os and facts.arch == t.expected_arch
        report.add(f"{scope}:platform", platform_ok,
                   f"{facts.os}/{facts.arch} (expected {t.expected_os}/{t.expected_arch})")
        report.add(f"{scope}:disk", facts.free_disk_gb >= t.min_disk_gb,
                   f"{facts.free_disk_gb:.1f} GB free (minimum {t.min_disk_gb} GB)")
        report.add(f"{scope}:memory", facts.memory_gb >= t.min_memory_gb,
                   f"{facts.memory_gb:.1f} GB (minimum {t.min_memory_gb} GB)")
        report.add(f"{scope}:cpu", facts.cpu_cores >= t.min_cpu_cores,
                   f"{facts.cpu_cores} cores (minimum {t.min_cpu_cores})")

    def _fail_facts(self, scope: str, detail: str, report: PreflightReport) -> None:
        for name in ("platform", "disk", "memory", "cpu"):
            report.add(f"{scope}:{name}", False, detail)

    def _check_local(self, report: PreflightReport) -> None:
        try:
            facts = self.facts()
        except (OSError, ValueError, K3sctlError) as e:
            self._fail_facts(LOCAL, f"cannot inspect operator machine: {e}", report)
            return
        self._check_facts(LOCAL, facts, report)

    def _check_node(self, node: Node, report: PreflightReport) -> None:
        scope = node.address
        if not is_valid_address(node.address):
            for name in ("reachable", "ssh", "platform", "disk", "memory", "cpu", "ports"):
                report.add(f"{scope}:{name}", False, "invalid address")
            return

        reachable = self.tcp_check(node.address, self.ssh_port, self.connect_timeout)
        report.add(f"{scope}:reachable", reachable,
                   f"port {self.ssh_port} {'open' if reachable else 'unreachable'}")

        ssh_ok = False
        if reachable:
            try:
                ssh_ok = self.executor.probe(node)
                ssh_detail = "ok" if ssh_ok else "remote shell returned an error"
            except K3sctlError as e:
                ssh_detail = str(e)
        else:
            ssh_detail = "host unreachable"
        report.add(f"{scope}:ssh", ssh_ok, ssh_detail)

        if not ssh_ok:
            self._fail_facts(scope, "not checked: SSH unavailable", report)
            report.add(f"{scope}:ports", False, "not checked: SSH unavailable")
            return

        try:
            result = self.executor.execute(node, REMOTE_FACTS_COMMAND, timeout=30)
            self._check_facts(scope, parse_remote_facts(result.stdout), report)
        except (K3sctlError, ValueError) as e:
            self._fail_facts(scope, f"cannot inspect host: {e}", report)

        self._check_ports(node, report)

    def _check_ports(self, node: Node, report: PreflightReport) -> None:
        name = f"{node.address}:ports"
        try:
            running = self.executor.execute(node, K3S_RUNNING_COMMAND, timeout=30, check=False)
            if running.exit_code == 0:
                report.add(name, True, "K3s already running, ports owned by K3s")
                return
            listeners = self.executor.execute(node, LISTENERS_COMMAND, timeout=30, check=False)
        except K3sctlError as e:
            report.add(name, False, f"cannot inspect ports: {e}")
            return

        if listeners.exit_code not in (0, 1):
            report.add(name, True, "port listeners could not be inspected")
            report.warn(f"{node.address}: lsof unavailable, port conflicts not checked")
            return
        conflicts = sorted(set(listening_ports(listeners.stdout)) & set(self.thresholds.k3s_ports))
        report.add(
            name,
            not conflicts,
            f"in use: {', '.join(map(str, conflicts))}" if conflicts else "no conflicting listeners",
        )
