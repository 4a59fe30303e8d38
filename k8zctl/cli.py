import logging
import sys

import typer

from . import __version__
from .commands import apply, upgrade
from .logging import setup_logging

app = typer.Typer(help="k8zctl - Talos Kubernetes clusters on Hetzner Cloud")

app.command(name="apply")(apply.apply)
app.command(name="upgrade")(upgrade.upgrade)

debug_mode = False


def version_callback(value: bool):
    if value:
        typer.echo(f"k8zctl {__version__}")
        raise typer.Exit()


# Global options callback
@app.callback()
def main(
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging"),
    log_file: str = typer.Option(None, "--log-file", help="Also write logs to this file"),
    version: bool = typer.Option(False, "--version", callback=version_callback, is_eager=True,
                                 help="Show the version and exit"),
):
    """k8zctl - provision and upgrade Talos clusters."""
    global debug_mode
    debug_mode = debug
    setup_logging(debug, log_file)
    if debug:
        logging.debug("Debug mode enabled")


if __name__ == "__main__":
    try:
        app()
    except Exception as e:
        if debug_mode:
            import traceback
            logging.error(f"Unhandled exception: {e}\n{traceback.format_exc()}")
        else:
            logging.error(f"Error: {e}")
        sys.exit(1)
