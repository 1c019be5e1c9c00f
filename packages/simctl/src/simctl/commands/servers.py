import asyncio
import json
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.table import Table
import typer

from simctl.client import ApiError, get_api_client, raise_for_error

console = Console()


async def _call(method: str, path: str, **kwargs: Any) -> Any:
    api_client = get_api_client()
    try:
        response = await getattr(api_client, method)(path, **kwargs)
    finally:
        await api_client.aclose()
    raise_for_error(response)
    return response.json()


async def list_servers_command() -> list[dict]:
    return await _call("get", "/servers")


async def get_server_command(name: str) -> dict:
    return await _call("get", f"/servers/{name}")


async def create_server_command(protocol: str, payload: dict, wait: bool = True) -> dict:
    return await _call(
        "post", f"/servers/{protocol}", json=payload, params={"wait": str(wait).lower()}
    )


async def delete_server_command(name: str) -> dict:
    return await _call("delete", f"/servers/{name}")


async def server_action_command(name: str, action: str) -> dict:
    return await _call("post", f"/servers/{name}/{action}")


async def discovery_command() -> dict:
    return await _call("get", "/discovery")


async def export_configuration_command(description: str | None = None) -> dict:
    params = {"description": description} if description else None
    return await _call("get", "/configuration/preview", params=params)


async def import_configuration_command(
    configuration: dict, strategy: str = "Skip", dry_run: bool = False, wait: bool = True
) -> dict:
    body = {"configuration": configuration, "strategy": strategy}
    if dry_run:
        return await _call("post", "/configuration/validate", json=body)
    return await _call(
        "post", "/configuration/import", json=body, params={"wait": str(wait).lower()}
    )


def _run(coro) -> Any:
    """Run a command coroutine, turning API errors into a clean exit."""
    try:
        return asyncio.run(coro)
    except ApiError as e:
        console.print(f"[bold red]{e.error}:[/bold red] {e.message}")
        raise typer.Exit(code=1) from None
    except Exception as e:
        console.print(f"[bold red]Error:[/bold red] {str(e)}")
        raise typer.Exit(code=1) from None


def _print_server(server: dict, json_output: bool) -> None:
    if json_output:
        typer.echo(json.dumps(server, indent=2))
        return
    console.print(f"Name: [cyan]{server['name']}[/cyan] ({server['protocol']}, {server['source']})")
    console.print(f"Status: [magenta]{server['status']}[/magenta]")
    console.print(f"Endpoint: {server['host']}:{server.get('port')}")
    if server.get("error"):
        console.print(f"Error: [red]{server['error']}[/red]")


def list_servers(json_output: bool = typer.Option(False, "--json", help="Output as JSON")):
    """List all servers"""
    servers = _run(list_servers_command())
    if json_output:
        typer.echo(json.dumps(servers, indent=2))
        return

    table = Table(title="Servers")
    table.add_column("Name", style="cyan")
    table.add_column("Protocol")
    table.add_column("Source")
    table.add_column("Status", style="magenta")
    table.add_column("Endpoint")
    for server in servers:
        table.add_row(
            server["name"],
            server["protocol"],
            server["source"],
            server["status"],
            f"{server['host']}:{server.get('port')}",
        )
    console.print(table)


def get_server(
    name: str = typer.Argument(...),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show a single server"""
    _print_server(_run(get_server_command(name)), json_output)


def delete_server(name: str = typer.Argument(...)):
    """Delete a dynamic server"""
    result = _run(delete_server_command(name))
    console.print(f"[bold green]✓[/bold green] {result['message']}")


def stop_server(name: str = typer.Argument(...)):
    """Scale a server down without deleting it"""
    server = _run(server_action_command(name, "stop"))
    console.print(f"[bold green]✓ Server {server['name']} is {server['status']}[/bold green]")


def start_server(name: str = typer.Argument(...)):
    """Start a stopped server"""
    server = _run(server_action_command(name, "start"))
    console.print(f"[bold green]✓ Server {server['name']} is {server['status']}[/bold green]")


def restart_server(name: str = typer.Argument(...)):
    """Restart a running server's pods"""
    server = _run(server_action_command(name, "restart"))
    console.print(f"[bold green]✓ Server {server['name']} restarted[/bold green]")


def show_discovery(json_output: bool = typer.Option(False, "--json", help="Output as JSON")):
    """Show the discovery document"""
    document = _run(discovery_command())
    if json_output:
        typer.echo(json.dumps(document, indent=2))
        return
    table = Table(title="Discovery")
    table.add_column("Name", style="cyan")
    table.add_column("Protocol")
    table.add_column("Endpoint")
    table.add_column("In-cluster")
    for name, entry in sorted(document.items()):
        table.add_row(
            name,
            entry["protocol"],
            f"{entry['host']}:{entry['port']}",
            entry.get("serviceAddress") or "",
        )
    console.print(table)


def export_configuration(
    output: Path | None = typer.Option(None, "--output", "-o", help="Write to file instead of stdout"),
    description: str | None = typer.Option(None, "--description", "-d"),
):
    """Export server definitions as JSON"""
    configuration = _run(export_configuration_command(description))
    text = json.dumps(configuration, indent=2)
    if output is None:
        typer.echo(text)
        return
    output.write_text(text + "\n")
    console.print(
        f"[bold green]✓[/bold green] Exported {len(configuration['servers'])} servers to {output}"
    )


STRATEGIES = {"skip": "Skip", "replace": "Replace", "rename": "Rename"}


def import_configuration(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True),
    strategy: str = typer.Option("skip", "--strategy", "-s", help="On name conflict: skip, replace or rename"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Only report what would happen"),
    wait: bool = typer.Option(True, "--wait/--no-wait"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Create servers from an exported configuration file"""
    if strategy.lower() not in STRATEGIES:
        console.print(f"[bold red]Error:[/bold red] Unknown strategy '{strategy}'")
        raise typer.Exit(code=1)
    try:
        configuration = json.loads(path.read_text())
    except ValueError as e:
        console.print(f"[bold red]Error:[/bold red] {path} is not valid JSON: {e}")
        raise typer.Exit(code=1) from None

    result = _run(
        import_configuration_command(configuration, STRATEGIES[strategy.lower()], dry_run, wait)
    )
    if json_output:
        typer.echo(json.dumps(result, indent=2))
    else:
        verb = "Would create" if dry_run else "Created"
        console.print(f"{verb}: {', '.join(result['created']) or '-'}")
        console.print(f"Skipped: {', '.join(result['skipped']) or '-'}")
        for name, message in result["failed"].items():
            console.print(f"[red]Failed {name}:[/red] {message}")
    if result["failed"]:
        raise typer.Exit(code=1)


# Typer command wrappers for `simctl create <protocol>`
create_app = typer.Typer(help="Create a dynamic server")


def _created(server: dict, json_output: bool) -> None:
    if json_output:
        typer.echo(json.dumps(server, indent=2))
        return
    console.print("[bold green]✓ Server created successfully![/bold green]")
    _print_server(server, json_output=False)


@create_app.command("ftp")
def create_ftp(
    name: str = typer.Argument(...),
    username: str = typer.Option(..., "--username", "-u"),
    password: str = typer.Option(..., "--password", "-p"),
    path: str | None = typer.Option(None, "--path", help="Backing directory"),
    wait: bool = typer.Option(True, "--wait/--no-wait"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Create an FTP server"""
    payload = {
        "name": name,
        "credentials": {"username": username, "password": password},
        "backingPath": path,
    }
    _created(_run(create_server_command("ftp", payload, wait)), json_output)


@create_app.command("sftp")
def create_sftp(
    name: str = typer.Argument(...),
    username: str = typer.Option(..., "--username", "-u"),
    password: str = typer.Option(..., "--password", "-p"),
    path: str | None = typer.Option(None, "--path", help="Backing directory"),
    uid: int = typer.Option(1000, "--uid"),
    gid: int = typer.Option(1000, "--gid"),
    wait: bool = typer.Option(True, "--wait/--no-wait"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Create an SFTP server"""
    payload = {
        "name": name,
        "credentials": {"username": username, "password": password},
        "backingPath": path,
        "uid": uid,
        "gid": gid,
    }
    _created(_run(create_server_command("sftp", payload, wait)), json_output)


@create_app.command("nas")
def create_nas(
    name: str = typer.Argument(...),
    path: str = typer.Option(..., "--path", help="Backing directory or preset (input, output, backup)"),
    export_options: str | None = typer.Option(None, "--export-options"),
    read_only: bool = typer.Option(False, "--read-only"),
    wait: bool = typer.Option(True, "--wait/--no-wait"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Create a NAS (NFS) server"""
    payload: dict[str, Any] = {"name": name, "backingPath": path, "readOnly": read_only}
    if export_options:
        payload["exportOptions"] = export_options
    _created(_run(create_server_command("nas", payload, wait)), json_output)
