import asyncio
import json

from rich.console import Console
from rich.markup import escape
from rich.table import Table
import typer

from botforge.cli.client import error_message, get_api_client

LEVEL_STYLES = {
    "info": "white",
    "warn": "yellow",
    "error": "bold red",
    "success": "bold green",
}

STATUS_STYLES = {
    "queued": "dim",
    "deploying": "yellow",
    "running": "green",
    "stopped": "blue",
    "failed": "red",
}


async def _call(method: str, path: str, **kwargs):
    """Call the API and return the decoded body; raise RuntimeError on error statuses."""
    api_client = get_api_client()
    try:
        response = await api_client.request(method, path, **kwargs)
    finally:
        await api_client.aclose()
    if response.is_error:
        raise RuntimeError(error_message(response))
    return response.json()


async def deploy_command(bot_id: str, env_vars: dict[str, str], alias: str | None) -> dict:
    payload = {"bot_id": bot_id, "env_vars": env_vars, "alias": alias}
    return await _call("POST", "/api/deployments", json=payload)


async def list_deployments_command() -> list[dict]:
    return await _call("GET", "/api/deployments")


async def show_deployment_command(deployment_id: str) -> dict:
    return await _call("GET", f"/api/deployments/{deployment_id}")


async def deployment_logs_command(deployment_id: str, limit: int | None) -> list[dict]:
    params = {"limit": limit} if limit else None
    return await _call("GET", f"/api/deployments/{deployment_id}/logs", params=params)


async def stop_deployment_command(deployment_id: str) -> dict:
    return await _call("POST", f"/api/deployments/{deployment_id}/stop")


async def remove_deployment_command(deployment_id: str) -> dict:
    return await _call("DELETE", f"/api/deployments/{deployment_id}")


def parse_env_pairs(pairs: list[str]) -> dict[str, str]:
    """Turn KEY=VALUE strings into a dict."""
    env = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise typer.BadParameter(f"Expected KEY=VALUE, got '{pair}'")
        env[key.strip()] = value
    return env


def _run(coro, console: Console):
    try:
        return asyncio.run(coro)
    except Exception as e:
        console.print(f"[bold red]Error:[/bold red] {str(e)}")
        raise typer.Exit(code=1) from None


def _print_deployment(console: Console, deployment: dict) -> None:
    status = deployment["status"]
    console.print(f"ID: [cyan]{deployment['id']}[/cyan]")
    console.print(f"Name: [magenta]{deployment['name']}[/magenta] ({deployment['bot_id']})")
    console.print(f"Status: [{STATUS_STYLES.get(status, 'white')}]{status}[/]")
    if deployment.get("url"):
        console.print(f"URL: {deployment['url']}")
    metrics = deployment.get("metrics")
    if metrics:
        console.print(
            f"CPU: {metrics['cpu']:.1f}%  Memory: {metrics['memory']:.1f} MB  "
            f"Uptime: {int(metrics['uptime'])}s"
        )


# Typer command wrappers
app = typer.Typer()


@app.command()
def deploy(
    bot_id: str = typer.Argument(..., help="Catalog bot id"),
    env: list[str] = typer.Option([], "--env", "-e", help="KEY=VALUE, repeatable"),
    alias: str = typer.Option(None, "--alias", "-a", help="Display name"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Deploy a bot from the catalog"""
    console = Console()
    deployment = _run(deploy_command(bot_id, parse_env_pairs(env), alias), console)

    if json_output:
        typer.echo(json.dumps(deployment, indent=2))
        return

    console.print("[bold green]✓ Deployment queued![/bold green]")
    _print_deployment(console, deployment)


@app.command("list")
def list_deployments(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List deployments"""
    console = Console()
    deployments = _run(list_deployments_command(), console)

    if json_output:
        typer.echo(json.dumps(deployments, indent=2))
        return

    table = Table(title="Deployments")
    table.add_column("ID", style="cyan")
    table.add_column("Name", style="magenta")
    table.add_column("Bot")
    table.add_column("Status")
    table.add_column("URL")
    for d in deployments:
        style = STATUS_STYLES.get(d["status"], "white")
        table.add_row(d["id"], d["name"], d["bot_id"], f"[{style}]{d['status']}[/]", d.get("url") or "")
    console.print(table)


@app.command()
def show(
    deployment_id: str = typer.Argument(...),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show one deployment"""
    console = Console()
    deployment = _run(show_deployment_command(deployment_id), console)

    if json_output:
        typer.echo(json.dumps(deployment, indent=2))
        return
    _print_deployment(console, deployment)


@app.command()
def logs(
    deployment_id: str = typer.Argument(...),
    limit: int = typer.Option(None, "--limit", "-n", help="Only the last N entries"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Print a deployment's log"""
    console = Console()
    entries = _run(deployment_logs_command(deployment_id, limit), console)

    if json_output:
        typer.echo(json.dumps(entries, indent=2))
        return

    for entry in entries:
        style = LEVEL_STYLES.get(entry["level"], "white")
        console.print(f"[dim]{entry['timestamp']}[/dim] [{style}]{escape(entry['message'])}[/]")


@app.command()
def stop(
    deployment_id: str = typer.Argument(...),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Stop a deployment"""
    console = Console()
    deployment = _run(stop_deployment_command(deployment_id), console)

    if json_output:
        typer.echo(json.dumps(deployment, indent=2))
        return
    console.print(f"[bold green]✓ Deployment {deployment['id']} stopped[/bold green]")


@app.command("rm")
def remove(
    deployment_id: str = typer.Argument(...),
):
    """Delete a deployment and release its resources"""
    console = Console()
    _run(remove_deployment_command(deployment_id), console)
    console.print(f"[bold green]✓ Deployment {deployment_id} removed[/bold green]")
