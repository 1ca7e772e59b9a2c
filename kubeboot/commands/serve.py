import os

import typer
import uvicorn
from dotenv import load_dotenv


def serve_cmd(
    host: str = typer.Option("127.0.0.1", help="Address to bind"),
    port: int = typer.Option(8000, help="Port to listen on"),
):
    """Run the read-only HTTP API."""
    load_dotenv()
    if not os.getenv("KUBEBOOT_API_KEY"):
        typer.echo("❌ KUBEBOOT_API_KEY is not set; refusing to serve without an API key", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"🚀 Serving kubeboot API on http://{host}:{port}")
    uvicorn.run("kubeboot.api.main:app", host=host, port=port)
