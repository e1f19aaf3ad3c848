"""
CLI commands for code-link.

Provides the `code-link` command-line interface: run a sync session and
inspect a project's identity, persisted sync state and detected imports.
"""

import asyncio
import logging
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import click
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from config.loader import ConfigurationLoader
from core.errors import PortInUseError
from core.models.config import FILES_DIR_NAME, GlobalSettings, SyncConfig
from core.sync.engine import SyncEngine
from core.sync.hashing import hash_file_content, shorten_id
from core.sync.ports import port_for
from core.sync.state import load_persisted_state, state_file_path
from core.workspace.imports import scan_directory_imports
from core.workspace.project import find_project_dir, get_project_hash_from_cwd

console = Console()

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


@click.group()
@click.version_option(version="1.0.0", prog_name="code-link")
def main():
    """
    Code Link CLI.

    Sync a local project directory with a remote runtime.
    """
    pass


@main.command()
@click.argument('project_hash', required=False)
@click.option('--name', '-n', help='Project name, used when creating the project directory')
@click.option(
    '--dir', '-d', 'project_dir',
    type=click.Path(file_okay=False, path_type=Path),
    help='Project directory (default: found or created in the current directory)'
)
@click.option('--host', help='Interface to listen on (default: 127.0.0.1)')
@click.option('--port', type=int, help='Port to listen on (default: derived from the project hash)')
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
@click.option('--log-level', type=click.Choice(LOG_LEVELS, case_sensitive=False), help='Log level')
@click.option('--log-file', type=click.Path(dir_okay=False, path_type=Path), help='Also write logs to this file')
@click.option(
    '--dangerously-auto-delete',
    is_flag=True,
    help='Delete remote files without asking for confirmation'
)
@click.option('--delete-timeout', type=float, help='Seconds to wait for a delete confirmation')
def sync(
    project_hash: Optional[str],
    name: Optional[str],
    project_dir: Optional[Path],
    host: Optional[str],
    port: Optional[int],
    verbose: bool,
    log_level: Optional[str],
    log_file: Optional[Path],
    dangerously_auto_delete: bool,
    delete_timeout: Optional[float]
):
    """Sync PROJECT_HASH with the remote runtime until interrupted."""
    settings = GlobalSettings()
    level = "DEBUG" if verbose else (log_level or settings.log_level)
    _configure_logging(level, log_file or settings.get_log_file())

    project_hash = project_hash or get_project_hash_from_cwd()
    if not project_hash:
        console.print("[red]❌ No project hash given and no package.json with one in this directory[/red]")
        sys.exit(1)

    try:
        config = ConfigurationLoader(settings).load_sync_config(
            project_hash,
            project_dir,
            project_name=name,
            host=host,
            port=port,
            delete_timeout_s=delete_timeout,
            dangerously_auto_delete=True if dangerously_auto_delete else None,
        )
    except ValidationError as e:
        console.print(f"[red]❌ Invalid configuration: {e}[/red]")
        sys.exit(1)

    if config.dangerously_auto_delete:
        console.print("[yellow]⚠️  Remote deletes will not ask for confirmation[/yellow]")

    try:
        asyncio.run(_run_sync(config))
    except PortInUseError as e:
        console.print(f"[red]❌ {e}[/red]")
        console.print("[yellow]💡 Another sync for this project may already be running.[/yellow]")
        console.print("   Stop it, or pass [bold]--port[/bold] to use a different port.")
        sys.exit(1)
    except KeyboardInterrupt:
        pass

    console.print("[blue]Sync stopped[/blue]")


@main.command()
@click.argument('project_hash')
@click.option(
    '--dir', '-d', 'base_dir',
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help='Where to look for the project directory (default: current directory)'
)
def info(project_hash: str, base_dir: Optional[Path]):
    """Show the short id, port and directory of PROJECT_HASH."""
    project_dir = find_project_dir(project_hash, base_dir)

    table = Table(title="Code Link Project")
    table.add_column("Property", style="cyan", no_wrap=True)
    table.add_column("Value", style="white")

    table.add_row("Project Hash", project_hash)
    table.add_row("Short ID", shorten_id(project_hash))
    table.add_row("Port", str(port_for(project_hash)))
    if project_dir is not None:
        table.add_row("Project Directory", str(project_dir))
        table.add_row("Files Directory", str(project_dir / FILES_DIR_NAME))
    else:
        table.add_row("Project Directory", "[yellow]Not created yet[/yellow]")

    console.print(table)


@main.command()
@click.option(
    '--dir', '-d', 'project_dir',
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=Path('.'),
    help='Project directory (default: current directory)'
)
def status(project_dir: Path):
    """Show the persisted sync state of a project directory."""
    if not state_file_path(project_dir).exists():
        console.print("[yellow]⚠️  No sync state found. Run 'code-link sync' first.[/yellow]")
        return

    state = asyncio.run(load_persisted_state(project_dir))
    files_dir = project_dir / FILES_DIR_NAME

    table = Table(title="Code Link Sync State")
    table.add_column("File", style="cyan", no_wrap=True)
    table.add_column("Last Synced", style="white")
    table.add_column("Local", style="white")
    table.add_column("Hash", style="dim")

    for name, entry in sorted(state.items()):
        synced_at = datetime.fromtimestamp(entry.timestamp / 1000).strftime('%Y-%m-%d %H:%M:%S')
        table.add_row(name, synced_at, _local_status(files_dir / name, entry.content_hash), entry.content_hash[:12])

    console.print(table)
    console.print(f"[dim]{len(state)} synced files in {project_dir.resolve()}[/dim]")


@main.command()
@click.option(
    '--dir', '-d', 'project_dir',
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=Path('.'),
    help='Project directory (default: current directory)'
)
def imports(project_dir: Path):
    """List the packages imported by the synced files."""
    files_dir = project_dir / FILES_DIR_NAME
    if not files_dir.is_dir():
        files_dir = project_dir

    results = scan_directory_imports(files_dir)
    if not results:
        console.print("[yellow]No imports found[/yellow]")
        return

    table = Table(title="Detected Imports")
    table.add_column("File", style="cyan", no_wrap=True)
    table.add_column("Package", style="white")
    table.add_column("Type", style="dim")

    for file_name, found in sorted(results.items()):
        for item in found:
            table.add_row(file_name, item.name, item.type)

    console.print(table)


async def _run_sync(config: SyncConfig) -> None:
    """Run the engine until SIGINT or SIGTERM"""
    engine = SyncEngine(config, status_callback=lambda message: console.print(f"[green]✅ {message}[/green]"))

    async with engine:
        console.print(f"[blue]🔗 Waiting for project {config.short_id} on ws://{config.connection.host}:{config.port}[/blue]")

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:
                # Windows event loops: Ctrl+C surfaces as KeyboardInterrupt instead
                pass

        await stop.wait()


def _local_status(path: Path, content_hash: str) -> str:
    try:
        content = path.read_text(encoding='utf-8')
    except FileNotFoundError:
        return "[red]missing[/red]"
    except (OSError, UnicodeDecodeError):
        return "[red]unreadable[/red]"
    if hash_file_content(content) == content_hash:
        return "[green]in sync[/green]"
    return "[yellow]modified[/yellow]"


def _configure_logging(level: str, log_file: Optional[Path] = None) -> None:
    handlers = [logging.StreamHandler()]
    if log_file is not None:
        handlers.append(logging.FileHandler(log_file, encoding='utf-8'))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True
    )


if __name__ == "__main__":
    main()
