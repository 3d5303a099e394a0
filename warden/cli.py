"""CLI entry point for the warden supervisor.

Commands:
- warden run: Run the supervisor daemon in the foreground
- warden tick: Run a single heartbeat tick
- warden status: Show persisted supervisor state
- warden check-convoys: Check convoys tracking an item now
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from warden import __version__
from warden.core.config import ConfigError, DaemonConfig, load_config
from warden.core.daemon import DaemonAlreadyRunningError, Supervisor
from warden.core.state import StatePersistenceError
from warden.core.tickets import TicketStoreError
from warden.core.utils import format_duration

console = Console()

root_option = click.option(
    "--root",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path.cwd,
    show_default="current directory",
    help="Workspace root",
)


def setup_logging(config: DaemonConfig, verbose: bool = False) -> None:
    """Log to the console with rich and to daemon/daemon.log."""
    config.daemon_dir.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
    file_handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False), file_handler],
        force=True,
    )


def _load(root: Path) -> DaemonConfig:
    try:
        return load_config(root)
    except ConfigError as e:
        console.print(f"[red]Config error:[/red] {e}")
        sys.exit(1)


@click.group()
@click.version_option(version=__version__)
def main() -> None:
    """Warden - lifecycle and health supervisor for agent fleets."""
    pass


@main.command()
@root_option
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def run(root: Path, verbose: bool) -> None:
    """Run the supervisor daemon in the foreground."""
    config = _load(root)
    setup_logging(config, verbose)
    supervisor = Supervisor.from_config(config)
    try:
        asyncio.run(supervisor.run())
    except DaemonAlreadyRunningError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    except StatePersistenceError as e:
        console.print(f"[red]Fatal: {e}[/red]")
        sys.exit(2)


@main.command()
@root_option
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def tick(root: Path, verbose: bool) -> None:
    """Run exactly one heartbeat tick."""
    config = _load(root)
    setup_logging(config, verbose)
    supervisor = Supervisor.from_config(config)
    try:
        lock = supervisor.acquire_lock()
    except DaemonAlreadyRunningError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    try:
        supervisor.load_state()
        report = supervisor.tick()
    except StatePersistenceError as e:
        console.print(f"[red]Fatal: {e}[/red]")
        sys.exit(2)
    finally:
        lock.release()

    table = Table(title="Agent Health")
    table.add_column("Agent", style="cyan")
    table.add_column("Status", style="white")
    table.add_column("Detail", style="dim")
    for address, result in report.health.items():
        table.add_row(address, result.status.value, result.message)
    console.print(table)

    for processed in report.lifecycle:
        request = processed.request
        console.print(f"Lifecycle {request.action.value} from {request.sender}: {processed.outcome.value}")
    sweeps = report.sweeps
    console.print(
        f"Sweeps: {len(sweeps.marked_dead)} marked dead, "
        f"{len(sweeps.stalled)} stalled, {len(sweeps.orphaned)} orphaned"
    )


@main.command()
@root_option
def status(root: Path) -> None:
    """Show persisted supervisor state."""
    config = _load(root)
    supervisor = Supervisor.from_config(config)
    try:
        info = supervisor.status()
    except StatePersistenceError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    state = info["state"]
    running = "[green]running[/green]" if state.running else "[yellow]stopped[/yellow]"
    console.print(f"Supervisor: {running} (pid {state.pid or '-'})")
    console.print(f"Heartbeats: {state.heartbeat_count}, last: {state.last_heartbeat or 'never'}")

    now = supervisor.clock.now()
    table = Table(title="Agents")
    table.add_column("Agent", style="cyan")
    table.add_column("Session", style="white")
    table.add_column("Last Patrol", style="green")
    table.add_column("Exit Reason", style="yellow")
    table.add_column("Respawn", style="magenta")
    for key, agent in sorted(state.agents.items()):
        patrol = "-"
        if agent.last_patrol_completed:
            patrol = f"{format_duration((now - agent.last_patrol_completed).total_seconds())} ago"
        respawn = "-"
        if agent.respawn_scheduled_at:
            respawn = f"due in {format_duration((agent.respawn_scheduled_at - now).total_seconds())}"
        table.add_row(key, agent.session or "-", patrol, agent.exit_reason or "-", respawn)
    console.print(table)

    if info["stuck_flags"]:
        console.print("[yellow]Agents with leftover lifecycle flags:[/yellow]")
        for address, flags in info["stuck_flags"].items():
            console.print(f"  {address}: {', '.join(flags)}")


@main.command("check-convoys")
@click.argument("item_id")
@root_option
def check_convoys(item_id: str, root: Path) -> None:
    """Check every open convoy tracking ITEM_ID."""
    config = _load(root)
    supervisor = Supervisor.from_config(config)
    try:
        checked = supervisor.check_convoys(item_id)
    except TicketStoreError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    if not checked:
        console.print(f"No open convoys track {item_id}")
        return
    for convoy_id in checked:
        console.print(f"Checked convoy [cyan]{convoy_id}[/cyan]")


if __name__ == "__main__":
    main()
