import typer

from . import load_context
from ..errors import MalformedHandoffError
from ..models import JoinCredential
from ..rendezvous import FileRendezvousChannel

app = typer.Typer(help="Inspect the shared join command mailbox")


@app.command("show")
def show(
    mount: str = typer.Option(None, help="Shared storage mount"),
    cluster_info: bool = typer.Option(False, "--cluster-info", help="Also print the published cluster-info snapshot"),
):
    """Show what the mailbox currently holds (the token is never printed)."""
    ctx = load_context(rendezvous={"mount_path": mount})
    channel = FileRendezvousChannel(ctx.rendezvous.mount_path, ctx.rendezvous.directory)

    if not channel.available():
        typer.echo(f"❌ Shared storage not mounted at {ctx.mount_path}")
        raise typer.Exit(code=1)

    publication = channel.try_read()
    if publication is None:
        typer.echo(f"📭 No join command published in {channel.directory}")
        return

    typer.echo(f"📬 Join command published (epoch {publication.epoch}, at {publication.published_at or 'unknown'})")
    try:
        credential = JoinCredential.parse(publication.command)
    except MalformedHandoffError as e:
        typer.echo(f"❌ Published join command is invalid: {e.message}")
        raise typer.Exit(code=1)
    typer.echo(f"  {credential.redacted()}")

    if cluster_info:
        typer.echo(channel.read_cluster_info() or "(no cluster info)")
