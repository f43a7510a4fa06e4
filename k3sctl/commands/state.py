"""Inspect and repair the milestone log."""
import typer

from k3sctl.errors import K3sctlError
from k3sctl.modules.k3s.state import StateStore

from .common import load_config

app = typer.Typer(help="Inspect or edit recorded progress")


def _store(ctx: typer.Context) -> StateStore:
    return StateStore(load_config(ctx).state_dir)


@app.command("show")
def show(ctx: typer.Context):
    """Print the current value of every milestone."""
    store = _store(ctx)
    snapshot = store.snapshot()
    if not snapshot:
        typer.echo(f"No milestones recorded in {store.state_dir}")
        return
    width = max(len(key) for key in snapshot)
    for key, milestone in sorted(snapshot.items()):
        recorded = milestone.recorded_at.isoformat() if milestone.recorded_at else "-"
        typer.echo(f"{key.ljust(width)}  {milestone.value}  ({recorded})")


@app.command("get")
def get(ctx: typer.Context, key: str = typer.Argument(..., help="Milestone key")):
    """Print one milestone value; exits 1 when it is not recorded."""
    value = _store(ctx).current(key)
    if value is None:
        typer.echo(f"❌ {key} is not recorded", err=True)
        raise typer.Exit(1)
    typer.echo(value)


@app.command("set")
def set_(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Milestone key"),
    value: str = typer.Argument(..., help="New value"),
):
    """Record a milestone by hand, e.g. to redo a step with value 'false'."""
    store = _store(ctx)
    try:
        with store.run_lock():
            store.record(key, value)
    except K3sctlError as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(1)
    typer.echo(f"✅ {key}={value}")
