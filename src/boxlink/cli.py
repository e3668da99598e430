"""boxlink command line interface.

Commands:
    resolve   Start or attach to the server in a container and print its endpoint
    status    Show platform, paths and controller status of a container
    stop      Stop a container's server session (manual recovery)
    platform  Detect a container's platform
    config    Show or change configuration
"""

import asyncio
import json
import logging
import sys
from typing import Any

import click
from rich.console import Console
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TextColumn,
    TransferSpeedColumn,
)
from rich.table import Table

from boxlink import __version__
from boxlink.command_executor import CommandExecutionError, ContainerCommand
from boxlink.config_manager import BoxlinkConfig, ConfigError, ConfigManager
from boxlink.errors import BoxlinkError, ServerUnavailableError
from boxlink.resolver import ServerResolver, TargetRegistry

logger = logging.getLogger(__name__)

console = Console()

# EX_TEMPFAIL: the caller may retry
EXIT_RETRYABLE = 75


def build_resolver(config: BoxlinkConfig, progress: Any = None) -> ServerResolver:
    if config.container_command:
        container = ContainerCommand(config.container_command)
    else:
        container = ContainerCommand.auto()
    registry = TargetRegistry(
        lambda name: container.executor_for(name, timeout=config.command_timeout)
    )
    return ServerResolver(config, registry, progress=progress)


class DownloadProgress:
    """Render download progress reported from the download thread."""

    def __init__(self, progress: Progress):
        self.progress = progress
        self.task_id: Any = None

    def __call__(self, received: int, total: int | None) -> None:
        if self.task_id is None:
            self.task_id = self.progress.add_task("downloading server", total=total)
        self.progress.update(self.task_id, completed=received)


def _run(ctx: click.Context, coroutine: Any) -> Any:
    """Run ``coroutine``, mapping boxlink errors to exit codes."""
    try:
        return asyncio.run(coroutine)
    except ServerUnavailableError as e:
        console.print(f"[yellow]{e} (retry later)[/yellow]")
        ctx.exit(EXIT_RETRYABLE)
    except (BoxlinkError, CommandExecutionError, ConfigError) as e:
        console.print(f"[red]Error: {e}[/red]")
        ctx.exit(1)


def _load_config(ctx: click.Context) -> BoxlinkConfig:
    try:
        return ConfigManager.load_config(ctx.obj["config_path"])
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
@click.option("--config", "config_path", type=click.Path(), help="Config file path")
@click.version_option(__version__, prog_name="boxlink")
@click.pass_context
def main(ctx: click.Context, verbose: bool, config_path: str | None) -> None:
    """Attach to a remote server running inside a container.

    \b
    CONFIGURATION:
        Config file: ~/.boxlink/config.toml
    """
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format="%(message)s")
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@main.command()
@click.argument("name")
@click.option("--hold/--no-hold", default=True, help="Keep the session until interrupted")
@click.pass_context
def resolve(ctx: click.Context, name: str, hold: bool) -> None:
    """Start or attach to the server in container NAME and print its endpoint."""
    config = _load_config(ctx)

    async def run() -> None:
        with Progress(
            TextColumn("{task.description}"),
            BarColumn(),
            DownloadColumn(),
            TransferSpeedColumn(),
            console=console,
            transient=True,
        ) as progress:
            resolver = build_resolver(config, progress=DownloadProgress(progress))
            lease = await resolver.resolve(name)
        click.echo(f"{lease.host}:{lease.port}")
        if not hold:
            return
        console.print("[dim]Holding session, press Ctrl-C to release[/dim]")
        try:
            await asyncio.Event().wait()
        finally:
            await resolver.close()

    _run(ctx, run())


@main.command()
@click.argument("name")
@click.pass_context
def status(ctx: click.Context, name: str) -> None:
    """Show platform, paths and server status of container NAME."""
    config = _load_config(ctx)

    async def run() -> Any:
        return await build_resolver(config).describe(name)

    info = _run(ctx, run())

    table = Table(title=f"Server in {info.target}", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("os", info.os_family)
    table.add_row("architecture", info.architecture)
    table.add_row("session directory", info.session_dir)
    table.add_row("server path", info.server_path)
    console.print(table)
    console.print(info.status, markup=False)


@main.command()
@click.argument("name")
@click.pass_context
def stop(ctx: click.Context, name: str) -> None:
    """Stop the server session of container NAME, whatever its client count."""
    config = _load_config(ctx)

    async def run() -> str:
        return await build_resolver(config).cleanup(name)

    reply = _run(ctx, run())
    console.print(f"[green]{name}: {reply}[/green]")


@main.command()
@click.argument("name")
@click.pass_context
def platform(ctx: click.Context, name: str) -> None:
    """Detect the platform of container NAME."""
    config = _load_config(ctx)

    async def run() -> Any:
        return await build_resolver(config).registry.get(name)

    target = _run(ctx, run())
    click.echo(str(target.platform))


@main.group(name="config")
def config_group() -> None:
    """Show or change configuration."""


@config_group.command(name="show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Print the effective configuration."""
    config = _load_config(ctx)
    table = Table(show_header=True)
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    for key, value in config.to_dict().items():
        table.add_row(key, json.dumps(value) if not isinstance(value, str) else value)
    console.print(table)


@config_group.command(name="set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set(ctx: click.Context, key: str, value: str) -> None:
    """Set KEY to VALUE (JSON values are parsed, anything else is a string)."""
    try:
        parsed: Any = json.loads(value)
    except ValueError:
        parsed = value
    try:
        ConfigManager.update_config(ctx.obj["config_path"], **{key: parsed})
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    console.print(f"[green]{key} updated[/green]")


if __name__ == "__main__":
    main()
