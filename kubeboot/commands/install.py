import typer

from . import load_context, run_component
from ..modules import installer


def install_cmd(
    version: str = typer.Option(None, "--version", "-v", help="Kubernetes minor version (e.g. 1.30)"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would be done without making changes"),
):
    """Install containerd, kubelet, kubeadm and kubectl on this node."""
    ctx = load_context(versions={"kubernetes": version}, dry_run=dry_run or None)
    run_component(installer.COMPONENT, ctx, lambda: installer.ensure_installed(ctx, version))
