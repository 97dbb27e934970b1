import asyncio
import json

from rich.console import Console
from rich.table import Table
import typer

from botforge.cli.client import error_message, get_api_client


async def list_bots_command() -> list[dict]:
    api_client = get_api_client()
    try:
        response = await api_client.get("/api/bots")
    finally:
        await api_client.aclose()
    if response.is_error:
        raise RuntimeError(error_message(response))
    return response.json()


app = typer.Typer()


@app.command("list")
def list_bots(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List deployable bots"""
    console = Console()

    try:
        bots = asyncio.run(list_bots_command())
    except Exception as e:
        console.print(f"[bold red]Error:[/bold red] {str(e)}")
        raise typer.Exit(code=1) from None

    if json_output:
        typer.echo(json.dumps(bots, indent=2))
        return

    table = Table(title="Bot catalog")
    table.add_column("ID", style="cyan")
    table.add_column("Name", style="magenta")
    table.add_column("Category")
    table.add_column("Stars", justify="right")
    for bot in bots:
        table.add_row(bot["id"], bot["name"], bot.get("category", ""), str(bot.get("stars", 0)))
    console.print(table)
