"""Operator-side tool installation with Homebrew."""
import logging
import os
from pathlib import Path
from typing import Optional, Sequence

from k3sctl.config import RetryConfig
from k3sctl.errors import K3sctlError, LocalCommandError, PersistenceError
from k3sctl.modules.shell import LocalRunner
from . import k3sup
from .models import NodeOutcome, NodeStatus, RunSummary, tool_installed_key
from .retry import CancelToken, with_retry
from .state import StateStore

logger = logging.getLogger("k3sctl.dependencies")

TOOLS = ("k3sup", "kubectl")
BREW_FORMULAE = {"k3sup": "k3sup", "kubectl": "kubernetes-cli"}


class DependencyInstaller:
    """Install the local tools the provisioning steps call."""

    def __init__(
        self,
        runner: LocalRunner,
        state: StateStore,
        retry: RetryConfig,
        kubeconfig: str,
        cancel: Optional[CancelToken] = None,
        sleep=None,
    ):
        self.runner = runner
        self.state = state
        self.retry = retry
        self.kubeconfig = kubeconfig
        self.cancel = cancel or CancelToken()
        self.sleep = sleep

    def _version(self, tool: str) -> str:
        cmd = k3sup.version_command(tool)
        result = self.runner.run(cmd, check=False, timeout=30)
        lines = [line for line in result.stdout.splitlines() if line.strip()]
        return lines[-1].strip() if lines else "unknown"

    def install(self, force: bool = False, tools: Sequence[str] = TOOLS) -> RunSummary:
        summary = RunSummary(phase="install-deps")
        self.runner.require("brew")

        for tool in tools:
            self.cancel.raise_if_cancelled()
            key = tool_installed_key(tool)
            present = self.runner.which(tool) is not None
            if present and self.state.is_satisfied(key, "true") and not force:
                logger.info(f"✅ {tool} already installed")
                summary.add(NodeOutcome(target=tool, status=NodeStatus.ALREADY_DONE))
                continue

            action = "upgrade" if present else "install"
            formula = BREW_FORMULAE.get(tool, tool)
            logger.info(f"📦 {action.capitalize()}ing {tool} with Homebrew")
            try:
                with_retry(
                    self.retry.max_attempts,
                    self.retry.initial_delay,
                    lambda: self._brew(action, formula),
                    max_delay=self.retry.max_delay,
                    jitter=self.retry.jitter,
                    cancel=self.cancel,
                    sleep=self.sleep,
                    description=f"brew {action} {formula}",
                )
            except K3sctlError as e:
                if e.fatal:
                    raise
                summary.add(NodeOutcome(target=tool, status=NodeStatus.FAILED, reason=str(e)))
                continue

            version = self._version(tool)
            self.state.record(key, "true")
            self.state.record(f"{tool}_version", version)
            logger.info(f"✅ {tool} ready ({version})")
            summary.add(NodeOutcome(target=tool, status=NodeStatus.READY, reason=version))

        self._ensure_kube_dir()
        if summary.failed:
            summary.fatal = "Required tools could not be installed"
        return summary.finish()

    def _brew(self, action: str, formula: str) -> None:
        cmd = ["brew", action, formula]
        result = self.runner.run(cmd, check=False, timeout=900)
        output = result.stdout + result.stderr
        # "already installed" and "already up-to-date" are both fine
        if result.exit_code != 0 and "already" not in output:
            raise LocalCommandError(" ".join(cmd), result.exit_code, result.stdout, result.stderr)

    def _ensure_kube_dir(self) -> Path:
        kube_dir = Path(self.kubeconfig).parent
        try:
            kube_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(kube_dir, 0o700)
        except OSError as e:
            raise PersistenceError(f"Cannot prepare kubeconfig directory {kube_dir}: {e}") from e
        return kube_dir
