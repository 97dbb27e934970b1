import typer
import uvicorn

from botforge.cli.commands import catalog, deployments
from botforge.config import get_settings

app = typer.Typer()


@app.callback()
def callback():
    """
    Botforge CLI
    """


@app.command()
def serve(
    host: str = typer.Option(None, "--host", help="Bind address (default: API_HOST)"),
    port: int = typer.Option(None, "--port", help="Bind port (default: API_PORT)"),
):
    """Run the HTTP API."""
    settings = get_settings()
    uvicorn.run(
        "botforge.api.main:app",
        host=host or settings.api_host,
        port=port or settings.api_port,
    )


app.add_typer(catalog.app, name="catalog")
app.add_typer(deployments.app, name="deployments")
