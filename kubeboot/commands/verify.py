import json

import typer

from . import load_context, run_component
from ..modules import verify


def verify_cmd(
    kubeconfig: str = typer.Option(None, help="Kubeconfig to use (searched on the node if unset)"),
    output: str = typer.Option("text", "--output", "-o", help="Output format: text or json"),
    strict: bool = typer.Option(False, "--strict", help="Exit 1 when the cluster status is WARN"),
):
    """Report cluster health. Exits 0 on PASS or WARN unless --strict is given."""
    ctx = load_context(kubeconfig=kubeconfig)
    report = run_component(verify.COMPONENT, ctx, lambda: verify.verify_cluster(ctx))

    if output == "json":
        typer.echo(json.dumps(report.to_dict(), indent=2))
    else:
        typer.echo(f"Nodes: {report.node_ratio} Ready")
        typer.echo(f"Pods: {report.pod_ratio} Running")
        for issue in report.issues:
            typer.echo(f"  - {issue}")
        icon = "✅" if report.status == "PASS" else "⚠️ "
        typer.echo(f"{icon} Status: {report.status}")

    if strict and report.status != "PASS":
        raise typer.Exit(code=1)
