import typer
import logging
import sys
from typing import Optional

from k3sctl.commands import cluster, observability, state
from k3sctl.logging import setup_logging

app = typer.Typer(help="Idempotent K3s cluster provisioning")

# Add all command groups
app.add_typer(cluster.app, name="cluster")
app.add_typer(observability.app, name="observability")
app.add_typer(state.app, name="state")


# Global options callback
@app.callback()
def main(
    ctx: typer.Context,
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging"),
    config: Optional[str] = typer.Option(
        None, "--config", "-c", help="Cluster config file (default: cluster.yaml)"
    ),
):
    """k3sctl - K3s cluster provisioning CLI."""
    ctx.obj = {"debug": debug, "config_path": config}
    setup_logging(debug)
    if debug:
        logging.debug("Debug mode enabled")


if __name__ == "__main__":
    try:
        app()
    except Exception as e:
        logging.error(f"Error: {e}", exc_info=logging.getLogger().isEnabledFor(logging.DEBUG))
        sys.exit(1)
