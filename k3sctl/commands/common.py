"""Shared plumbing for CLI commands.

Builds the runtime objects from the loaded config, wires signals to the
cancel token, and turns a phase result into console output, a summary
artifact, an optional webhook and an exit code.
"""
import logging
import signal
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator

import typer

from k3sctl.config import K3sctlConfig
from k3sctl.errors import ConfigurationError, K3sctlError, OperationCancelled, PreflightFailed
from k3sctl.logging import setup_logging
from k3sctl.modules.k3s.models import PreflightReport, RunSummary
from k3sctl.modules.k3s.orchestrator import ProvisioningOrchestrator
from k3sctl.modules.k3s.registry import NodeRegistry
from k3sctl.modules.k3s.retry import CancelToken
from k3sctl.modules.k3s.state import StateStore
from k3sctl.modules.observability.deployer import ObservabilityDeployer
from k3sctl.modules.shell import LocalRunner
from k3sctl.modules.ssh import RemoteExecutor
from k3sctl.utils.kube import ClusterClient
from k3sctl.utils.notify import send_webhook

logger = logging.getLogger("k3sctl.cli")


@dataclass
class Runtime:
    """Everything one command run needs."""
    config: K3sctlConfig
    registry: NodeRegistry
    state: StateStore
    cancel: CancelToken
    executor: RemoteExecutor
    cluster: ClusterClient
    runner: LocalRunner

    @classmethod
    def from_config(cls, config: K3sctlConfig) -> 'Runtime':
        cancel = CancelToken()
        registry = NodeRegistry.from_config(config)
        return cls(
            config=config,
            registry=registry,
            state=StateStore(config.state_dir),
            cancel=cancel,
            executor=RemoteExecutor(
                registry.credentials,
                connect_timeout=config.ssh.connect_timeout,
                command_timeout=config.ssh.command_timeout,
                host_key_policy=config.ssh.host_key_policy,
                cancel=cancel,
            ),
            cluster=ClusterClient(config.cluster.kubeconfig, context=config.cluster.context),
            runner=LocalRunner(cancel=cancel),
        )

    def orchestrator(self) -> ProvisioningOrchestrator:
        return ProvisioningOrchestrator(
            self.config,
            self.registry,
            self.executor,
            self.state,
            self.cluster,
            runner=self.runner,
            cancel=self.cancel,
        )

    def observability(self) -> ObservabilityDeployer:
        return ObservabilityDeployer(
            self.config, self.cluster, self.runner, self.state, cancel=self.cancel
        )

    def close(self) -> None:
        self.executor.close()


def load_config(ctx: typer.Context) -> K3sctlConfig:
    """Load the config named by the global options, exiting 1 when it is invalid."""
    obj = ctx.obj or {}
    try:
        config = K3sctlConfig.load(obj.get("config_path"))
    except ConfigurationError as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(1)
    setup_logging(
        debug_mode=obj.get("debug", False),
        log_dir=config.state_dir / "logs",
        level=config.logging.level,
        retention_days=config.state.log_retention_days,
        max_size_mb=config.logging.max_size_mb,
        backup_count=config.logging.backup_count,
    )
    return config


@contextmanager
def cancel_on_signals(cancel: CancelToken) -> Iterator[None]:
    """Turn SIGINT/SIGTERM into a cancellation request for the duration of a run."""
    def handler(signum, frame):
        name = signal.Signals(signum).name
        logger.warning(f"⚠️ Received {name}, cancelling...")
        cancel.cancel(f"interrupted by {name}")

    previous = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            previous[sig] = signal.signal(sig, handler)
        except ValueError:
            # Not the main thread
            pass
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


def print_report(report: PreflightReport) -> None:
    typer.echo("\nPreflight checks:")
    for check in report.checks:
        mark = "✅" if check.passed else "❌"
        detail = f" ({check.detail})" if check.detail else ""
        typer.echo(f"  {mark} {check.name}{detail}")
    for warning in report.warnings:
        typer.echo(f"  ⚠️ {warning}")


def print_summary(summary: RunSummary) -> None:
    if summary.outcomes:
        width = max(len(o.target) for o in summary.outcomes)
        typer.echo(f"\n{'TARGET'.ljust(width)}  {'ROLE'.ljust(13)}  {'STATUS'.ljust(12)}  REASON")
        for o in summary.outcomes:
            typer.echo(f"{o.target.ljust(width)}  {o.role.ljust(13)}  {o.status.value.ljust(12)}  {o.reason}")
    for issue in summary.issues:
        typer.echo(f"⚠️ {issue}")
    mark = "✅" if summary.exit_code == 0 else "❌"
    typer.echo(f"\n{mark} {summary.headline()}")


def finish(runtime: Runtime, summary: RunSummary) -> None:
    """Report the summary everywhere it goes, then exit with its code."""
    summary.finish()
    print_summary(summary)
    try:
        path = runtime.state.write_summary(summary)
        logger.info(f"📄 Summary written to {path}")
    except K3sctlError as e:
        logger.error(f"❌ {e}")
        summary.fatal = summary.fatal or str(e)
    if runtime.config.notifications.webhook_url:
        send_webhook(runtime.config.notifications.webhook_url, summary)
    raise typer.Exit(summary.exit_code)


def run_phase(
    ctx: typer.Context,
    phase: str,
    action: Callable[[Runtime], RunSummary],
) -> None:
    """Run one phase under the state lock and exit with its summary's code."""
    config = load_config(ctx)
    try:
        runtime = Runtime.from_config(config)
    except K3sctlError as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(1)

    summary = RunSummary(phase=phase)
    try:
        with cancel_on_signals(runtime.cancel), runtime.state.run_lock():
            summary = action(runtime)
    except OperationCancelled as e:
        logger.warning(f"⚠️ {e}")
        summary.cancelled = True
    except PreflightFailed as e:
        print_report(e.report)
        summary.fatal = str(e)
    except K3sctlError as e:
        logger.error(f"❌ {e}")
        summary.fatal = str(e)
    finally:
        runtime.close()
    finish(runtime, summary)
