import typer

from .common import run_phase

app = typer.Typer(help="Deploy the observability stack")


@app.command("deploy")
def deploy(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", help="Redeploy layers already recorded as deployed"),
):
    """Deploy namespaces, storage claims and the telemetry layers."""
    run_phase(ctx, "observability", lambda rt: rt.observability().deploy(force=force))
