import json

import typer

from . import load_context
from ..state import NodeStateStore

app = typer.Typer(help="Inspect the local node lifecycle record")


@app.command("show")
def show(
    history: bool = typer.Option(False, "--history", help="Include every recorded transition"),
):
    """Print the lifecycle record of this node."""
    ctx = load_context()
    record = NodeStateStore(ctx.paths.state_file).load()
    if not history:
        record = {k: v for k, v in record.items() if k != "history"}
    typer.echo(json.dumps(record, indent=2))
