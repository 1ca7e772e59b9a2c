import typer

from . import load_context, run_component
from ..modules import control_plane


def init_cmd(
    pod_cidr: str = typer.Option(None, help="Pod network CIDR (default 192.168.0.0/16)"),
    service_cidr: str = typer.Option(None, help="Service network CIDR (default 10.96.0.0/12)"),
    advertise_address: str = typer.Option(None, help="API server advertise address (auto-detected if unset)"),
    mount: str = typer.Option(None, help="Shared storage mount used to publish the join command"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would be done without making changes"),
):
    """Initialize the control plane on the leader and publish the join command."""
    ctx = load_context(
        network={"pod_cidr": pod_cidr, "service_cidr": service_cidr, "advertise_address": advertise_address},
        rendezvous={"mount_path": mount},
        dry_run=dry_run or None,
    )
    result = run_component(control_plane.COMPONENT, ctx, lambda: control_plane.initialize(ctx))

    join_command = result.details.get("join_command")
    if join_command:
        typer.echo("")
        typer.echo("Join command (run on each worker node as root):")
        typer.echo(f"  {join_command}")
    typer.echo(f"🔑 Admin credentials: {result.details.get('credentials')}")
