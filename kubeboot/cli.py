import logging
import sys

import typer

from kubeboot import __version__
from kubeboot.commands import init, install, join, network, options, rendezvous, serve, state, verify

app = typer.Typer(help="Bootstrap a kubeadm cluster from independently provisioned nodes.")

# Component commands, in the order they are run
app.command("install")(install.install_cmd)
app.command("init")(init.init_cmd)
app.command("join")(join.join_cmd)
app.command("network")(network.network_cmd)
app.command("verify")(verify.verify_cmd)

# Inspection
app.add_typer(rendezvous.app, name="rendezvous")
app.add_typer(state.app, name="state")
app.command("serve")(serve.serve_cmd)


def _print_version(value: bool):
    if value:
        typer.echo(f"kubeboot {__version__}")
        raise typer.Exit()


# Global options callback
@app.callback()
def main(
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging"),
    config: str = typer.Option(None, "--config", "-c", help="Path to a kubeboot YAML config file"),
    version: bool = typer.Option(None, "--version", callback=_print_version, is_eager=True,
                                 help="Show the version and exit"),
):
    """kubeboot - Kubernetes cluster bootstrap CLI."""
    options["debug"] = debug
    options["config"] = config


if __name__ == "__main__":
    try:
        app()
    except Exception as e:
        if options.get("debug"):
            import traceback
            logging.error(f"Unhandled exception: {e}\n{traceback.format_exc()}")
        else:
            logging.error(f"Error: {e}")
        sys.exit(1)
