import typer

from . import load_context, run_component
from ..modules import joiner


def join_cmd(
    mount: str = typer.Option(None, help="Shared storage mount holding the join command"),
    timeout: float = typer.Option(None, help="Seconds to wait for the join command (default 600)"),
    poll_interval: float = typer.Option(None, help="Seconds between checks (default 10)"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would be done without making changes"),
):
    """Wait for the leader's join command and join this node as a worker."""
    ctx = load_context(
        rendezvous={"mount_path": mount},
        timeouts={"join_timeout": timeout, "join_poll_interval": poll_interval},
        dry_run=dry_run or None,
    )
    run_component(joiner.COMPONENT, ctx, lambda: joiner.join(ctx))
