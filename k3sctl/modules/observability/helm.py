"""Helm release management."""
import logging
from pathlib import Path
from typing import Set

from k3sctl.config import HelmRelease
from k3sctl.errors import ConfigurationError
from k3sctl.modules.shell import LocalRunner

logger = logging.getLogger("k3sctl.helm")


class HelmClient:
    """Idempotent ``helm upgrade --install`` against one kubeconfig."""

    def __init__(self, runner: LocalRunner, kubeconfig: str, context: str = None, timeout: str = "600s"):
        self.runner = runner
        self.kubeconfig = kubeconfig
        self.context = context
        self.timeout = timeout
        self._repos: Set[str] = set()

    def _base(self):
        cmd = ["helm", "--kubeconfig", self.kubeconfig]
        if self.context:
            cmd += ["--kube-context", self.context]
        return cmd

    def add_repo(self, name: str, url: str) -> None:
        if name in self._repos:
            return
        self.runner.run(["helm", "repo", "add", name, url, "--force-update"])
        self._repos.add(name)

    def update_repos(self) -> None:
        self.runner.run(["helm", "repo", "update"])

    def install(self, release: HelmRelease) -> None:
        if release.values_file and not Path(release.values_file).expanduser().exists():
            raise ConfigurationError(f"Missing Helm values file: {release.values_file}")

        logger.info(f"🚀 Installing Helm release '{release.name}' in namespace '{release.namespace}'")
        cmd = self._base() + [
            "upgrade", "--install", release.name, f"{release.repo_name}/{release.chart}",
            "--namespace", release.namespace, "--create-namespace",
            "--wait", "--timeout", self.timeout,
        ]
        if release.version:
            cmd += ["--version", release.version]
        if release.values_file:
            cmd += ["--values", str(Path(release.values_file).expanduser())]
        for key, value in sorted(release.set_values.items()):
            cmd += ["--set", f"{key}={value}"]

        self.runner.run(cmd)
        logger.info(f"✅ Helm release '{release.name}' installed successfully.")
