import logging
import sys
import traceback

import typer

from doksctl.commands import cluster, deploy, monitoring
from doksctl.logging import setup_logging

app = typer.Typer(
    help="doksctl - GPU cluster automation for DigitalOcean Kubernetes and LLM-D.",
    context_settings={"help_option_names": ["-h", "--help"]},
)

debug_mode = False

# Add all command groups
app.add_typer(cluster.app, name="cluster")
app.add_typer(monitoring.app, name="monitoring")
app.add_typer(deploy.app, name="deploy")


# Global options callback
@app.callback()
def main(
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging"),
):
    """doksctl - GPU cluster automation for DigitalOcean Kubernetes and LLM-D."""
    global debug_mode
    debug_mode = debug
    setup_logging(debug)
    if debug:
        logging.getLogger("doksctl").debug("Debug mode enabled")


def run() -> None:
    try:
        app()
    except Exception as e:
        if debug_mode:
            logging.getLogger("doksctl").error(f"Unhandled exception: {e}\n{traceback.format_exc()}")
        else:
            logging.getLogger("doksctl").error(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    run()
