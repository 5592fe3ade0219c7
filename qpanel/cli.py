"""CLI entry point for the Q panel.

Commands:
- qpanel init: Write a default panel.yaml
- qpanel serve: Run the web panel
- qpanel chat: Run one Q CLI command in the terminal
- qpanel projects: List discovered projects
- qpanel sessions: List stored sessions of a project
- qpanel mcp: Manage MCP servers (list, add, remove, toggle)
- qpanel version: Show version information
"""

from __future__ import annotations

import asyncio
import base64
import logging
import mimetypes
import sys
from datetime import datetime
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from qpanel.core.config import (
    ConfigError,
    PanelConfig,
    default_config_path,
    load_config,
    write_default_config,
)
from qpanel.core.mcp import McpConfigError, McpConfigStore
from qpanel.core.models import EventType, ImageAttachment, McpServer, RunOptions, StreamEvent
from qpanel.core.projects import ProjectRegistry
from qpanel.process.sinks import CallbackSink
from qpanel.process.supervisor import (
    LaunchError,
    QProcessSupervisor,
    RunFailedError,
    SupervisorError,
)

console = Console()
err_console = Console(stderr=True)


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def _get_config(ctx: click.Context) -> PanelConfig:
    return ctx.obj["config"]


def _parse_pairs(pairs: tuple[str, ...], option: str) -> dict[str, str]:
    result: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"Expected KEY=VALUE, got '{pair}'", param_hint=option)
        result[key] = value
    return result


def _image_from_file(path: Path) -> ImageAttachment:
    mime_type = mimetypes.guess_type(path.name)[0] or "image/png"
    payload = base64.b64encode(path.read_bytes()).decode("ascii")
    return ImageAttachment(
        data=f"data:{mime_type};base64,{payload}", mime_type=mime_type, name=path.name
    )


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Config file (default: $QPANEL_CONFIG or ~/.q-developer/panel.yaml)",
)
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def main(ctx: click.Context, config_path: Path | None, verbose: bool) -> None:
    """Q Panel - web control panel for the Q Developer CLI.

    Runs `q chat` per command and streams its output to a browser.
    """
    _setup_logging(verbose)
    ctx.ensure_object(dict)
    # init writes the file; everything else needs it loaded
    if ctx.invoked_subcommand == "init":
        ctx.obj["config_path"] = config_path
        return
    try:
        ctx.obj["config"] = load_config(config_path)
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)


@main.command()
@click.pass_context
def init(ctx: click.Context) -> None:
    """Write a default panel.yaml (existing files are kept)."""
    path = ctx.obj.get("config_path") or default_config_path()
    existed = path.exists()
    write_default_config(path)

    if existed:
        console.print(f"[yellow]Config already exists:[/yellow] {path}")
        return
    console.print(
        Panel(
            "[green]Config written![/green]\n\n"
            f"Created: {path}\n"
            "- cli_binary: Q CLI executable\n"
            "- abort_grace_period: seconds before an aborted run is force killed\n"
            "- project_roots: directories scanned for projects",
            title="Q Panel Initialized",
        )
    )


@main.command()
@click.option("--host", default=None, help="Bind address (default from config)")
@click.option("--port", type=int, default=None, help="Port (default from config)")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None) -> None:
    """Run the web panel."""
    import uvicorn

    config = _get_config(ctx)
    if host:
        config.host = host
    if port:
        config.port = port

    from qpanel.server import app as server

    server.configure(config)
    console.print(f"[bold]Q Panel[/bold] on http://{config.host}:{config.port}")
    uvicorn.run(server.app, host=config.host, port=config.port, log_level="info")


@main.command()
@click.argument("prompt", required=False, default="")
@click.option(
    "--cwd",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Project directory (default: current directory)",
)
@click.option("--session-id", "-s", help="Session ID (generated if not provided)")
@click.option(
    "--image",
    "-i",
    "images",
    multiple=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Image file to attach (repeatable)",
)
@click.pass_context
def chat(
    ctx: click.Context,
    prompt: str,
    cwd: Path | None,
    session_id: str | None,
    images: tuple[Path, ...],
) -> None:
    """Run one Q CLI command, streaming its output.

    Example:
        qpanel chat "list files" --cwd ~/projects/app
    """
    config = _get_config(ctx)
    options = RunOptions(
        session_id=session_id,
        cwd=str(cwd or Path.cwd()),
        images=[_image_from_file(p) for p in images],
    )

    def print_event(event: StreamEvent) -> None:
        if event.type is EventType.SESSION_CREATED:
            err_console.print(f"[dim]Session: {event.session_id}[/dim]")
        elif event.type is EventType.OUTPUT:
            console.out(event.data or "", end="", highlight=False)
        elif event.type is EventType.ERROR and event.data is not None:
            err_console.out(event.data, end="", highlight=False, style="dim")
        elif event.type is EventType.COMPLETE:
            err_console.print(f"\n[dim]Exit code: {event.exit_code}[/dim]")

    supervisor = QProcessSupervisor(config)
    try:
        asyncio.run(supervisor.start(prompt, options, CallbackSink(print_event)))
    except LaunchError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    except RunFailedError as e:
        sys.exit(e.exit_code if e.exit_code > 0 else 1)
    except SupervisorError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        err_console.print("[yellow]Interrupted[/yellow]")
        sys.exit(130)


@main.command()
@click.pass_context
def projects(ctx: click.Context) -> None:
    """List discovered projects."""
    found = ProjectRegistry(_get_config(ctx)).get_projects()
    if not found:
        console.print("[yellow]No projects found[/yellow]")
        return

    table = Table(title="Projects")
    table.add_column("Name", style="cyan")
    table.add_column("Display Name", style="white")
    table.add_column("Path", style="dim")
    table.add_column("Sessions", style="green", justify="right")
    table.add_column("Last Activity", style="yellow")

    for project in found:
        last = project.session_meta.last_activity
        table.add_row(
            project.name,
            project.display_name,
            project.full_path,
            str(project.session_meta.total),
            datetime.fromtimestamp(last / 1000).strftime("%Y-%m-%d %H:%M") if last else "-",
        )
    console.print(table)


@main.command()
@click.argument("project_name")
@click.pass_context
def sessions(ctx: click.Context, project_name: str) -> None:
    """List stored sessions of a project."""
    registry = ProjectRegistry(_get_config(ctx))
    project_dir = registry.extract_project_directory(project_name)
    if project_dir is None:
        console.print(f"[red]Error:[/red] Project '{project_name}' not found")
        sys.exit(1)

    table = Table(title=f"Sessions: {project_name}")
    table.add_column("ID", style="cyan")
    table.add_column("Title", style="white")
    table.add_column("Messages", style="green", justify="right")
    table.add_column("Updated", style="yellow")
    for session in registry.get_sessions_for_project(project_dir):
        table.add_row(session.id, session.title, str(session.message_count), session.updated_at)
    console.print(table)


@main.group()
def mcp() -> None:
    """Manage MCP servers in the Q CLI configuration."""
    pass


def _mcp_store(ctx: click.Context) -> McpConfigStore:
    return McpConfigStore(_get_config(ctx).mcp_config_path)


@mcp.command("list")
@click.pass_context
def mcp_list(ctx: click.Context) -> None:
    """List configured MCP servers."""
    try:
        servers = _mcp_store(ctx).list_servers()
    except McpConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    table = Table(title="MCP Servers")
    table.add_column("Name", style="cyan")
    table.add_column("Type", style="white")
    table.add_column("Target", style="dim")
    table.add_column("Enabled", style="green")
    for server in servers:
        if server.type == "sse":
            target = server.url or ""
        else:
            target = " ".join([server.command or "", *server.args])
        enabled = "yes" if server.enabled else "[red]no[/red]"
        table.add_row(server.name, server.type, target, enabled)
    console.print(table)


@mcp.command("add")
@click.argument("name")
@click.option("--command", "command_", help="Executable for a stdio server")
@click.option("--arg", "args", multiple=True, help="Argument for the command (repeatable)")
@click.option("--env", "env", multiple=True, help="KEY=VALUE environment entry (repeatable)")
@click.option("--url", help="Endpoint of an SSE server")
@click.option("--header", "headers", multiple=True, help="KEY=VALUE HTTP header (repeatable)")
@click.option("--disabled", is_flag=True, help="Add the server disabled")
@click.pass_context
def mcp_add(
    ctx: click.Context,
    name: str,
    command_: str | None,
    args: tuple[str, ...],
    env: tuple[str, ...],
    url: str | None,
    headers: tuple[str, ...],
    disabled: bool,
) -> None:
    """Add an MCP server.

    Example:
        qpanel mcp add fetch --command uvx --arg mcp-server-fetch
    """
    server = McpServer(
        name=name,
        type="sse" if url and not command_ else "stdio",
        command=command_,
        args=list(args),
        env=_parse_pairs(env, "--env"),
        url=url,
        headers=_parse_pairs(headers, "--header"),
        enabled=not disabled,
    )
    try:
        _mcp_store(ctx).add_server(server)
    except McpConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    console.print(f"[green]MCP server \"{name}\" added[/green]")


@mcp.command("remove")
@click.argument("name")
@click.pass_context
def mcp_remove(ctx: click.Context, name: str) -> None:
    """Remove an MCP server."""
    try:
        _mcp_store(ctx).remove_server(name)
    except McpConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    console.print(f"[green]MCP server \"{name}\" removed[/green]")


@mcp.command("toggle")
@click.argument("name")
@click.option("--enable/--disable", default=True, help="Target state")
@click.pass_context
def mcp_toggle(ctx: click.Context, name: str, enable: bool) -> None:
    """Enable or disable an MCP server."""
    try:
        _mcp_store(ctx).toggle_server(name, enable)
    except McpConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    console.print(f"MCP server \"{name}\" {'enabled' if enable else 'disabled'}")


@main.command()
def version() -> None:
    """Show version information."""
    from qpanel import __version__

    console.print(f"Q Panel v{__version__}")
    console.print("Web control panel for the Q Developer CLI")


if __name__ == "__main__":
    main()
