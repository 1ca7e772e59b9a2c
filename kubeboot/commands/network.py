import typer

from . import load_context, run_component
from ..modules import fabric


def network_cmd(
    fabric_version: str = typer.Option(None, "--calico-version", help="Calico release (default v3.27.0)"),
    pod_cidr: str = typer.Option(None, help="Pod network CIDR; must match the one given to init"),
    mtu: int = typer.Option(None, help="Overlay MTU (default 1440)"),
    encapsulation: str = typer.Option(None, help="IP pool encapsulation (default VXLANCrossSubnet)"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would be done without making changes"),
):
    """Install the Calico overlay network from the leader."""
    ctx = load_context(
        versions={"fabric": fabric_version},
        network={"pod_cidr": pod_cidr},
        fabric={"mtu": mtu, "encapsulation": encapsulation},
        dry_run=dry_run or None,
    )
    run_component(fabric.COMPONENT, ctx, lambda: fabric.install_fabric(ctx))
