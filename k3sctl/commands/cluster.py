"""Cluster provisioning commands.

Each phase can be run on its own; ``up`` runs all of them in order.
Re-running any phase is safe: completed work is detected and skipped.
"""
import typer

from k3sctl.modules.k3s.models import RunSummary

from .common import Runtime, print_report, run_phase

app = typer.Typer(help="Provision and verify the K3s cluster")

FORCE_HELP = "Redo work even when it is recorded as complete"
PARALLEL_HELP = "Join workers concurrently instead of one at a time"
SKIP_PREFLIGHT_HELP = "Continue even when preflight checks fail"


@app.command("preflight")
def preflight(ctx: typer.Context):
    """Check the operator machine and every node without changing anything."""
    def action(runtime: Runtime) -> RunSummary:
        report = runtime.orchestrator().run_preflight()
        print_report(report)
        return RunSummary(phase="preflight")

    run_phase(ctx, "preflight", action)


@app.command("install-deps")
def install_deps(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", help="Upgrade tools even when installed"),
):
    """Install k3sup and kubectl on the operator machine."""
    run_phase(ctx, "install-deps", lambda rt: rt.orchestrator().install_dependencies(force=force))


@app.command("init")
def init(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", help=FORCE_HELP),
    skip_preflight: bool = typer.Option(False, "--skip-preflight", help=SKIP_PREFLIGHT_HELP),
):
    """Initialize the control plane."""
    def action(runtime: Runtime) -> RunSummary:
        orchestrator = runtime.orchestrator()
        orchestrator.run_preflight(skip=skip_preflight)
        return orchestrator.init_control_plane(force=force)

    run_phase(ctx, "init", action)


@app.command("join")
def join(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", help=FORCE_HELP),
    parallel_join: bool = typer.Option(None, "--parallel-join/--sequential-join", help=PARALLEL_HELP),
    skip_preflight: bool = typer.Option(False, "--skip-preflight", help=SKIP_PREFLIGHT_HELP),
):
    """Join every configured worker to the cluster."""
    def action(runtime: Runtime) -> RunSummary:
        orchestrator = runtime.orchestrator()
        orchestrator.run_preflight(skip=skip_preflight)
        return orchestrator.join_workers(force=force, parallel=parallel_join)

    run_phase(ctx, "join", action)


@app.command("storage")
def storage(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", help=FORCE_HELP),
):
    """Configure NFS storage and the in-cluster provisioner."""
    run_phase(ctx, "storage", lambda rt: rt.orchestrator().setup_storage(force=force))


@app.command("verify")
def verify(ctx: typer.Context):
    """Check that every configured node is a Ready cluster member."""
    run_phase(ctx, "verify", lambda rt: rt.orchestrator().verify())


@app.command("smoke-test")
def smoke_test(ctx: typer.Context):
    """Deploy a throwaway workload and check scheduling, service traffic, DNS and storage."""
    run_phase(ctx, "smoke-test", lambda rt: rt.orchestrator().smoke_test())


@app.command("up")
def up(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", help=FORCE_HELP),
    parallel_join: bool = typer.Option(None, "--parallel-join/--sequential-join", help=PARALLEL_HELP),
    skip_preflight: bool = typer.Option(False, "--skip-preflight", help=SKIP_PREFLIGHT_HELP),
):
    """Run every provisioning phase in order."""
    run_phase(
        ctx,
        "up",
        lambda rt: rt.orchestrator().provision(
            force=force, parallel=parallel_join, skip_preflight=skip_preflight
        ),
    )
