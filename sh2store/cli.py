"""
Maintenance CLI for the sh2 store.

Bootstraps the store and prints what it holds. The server itself wires
the store up on its own; this is for inspecting a store file by hand.
"""

import logging
import sys
from datetime import datetime
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from sh2store.bootstrap import bootstrap_store
from sh2store.database import Database, get_db
from sh2store.errors import StoreError
from sh2store.store import get_all_remotes, get_all_sessions, get_history_items

console = Console()
logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False):
    """Configure logging based on verbosity."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _open_db(db_path: Optional[str]) -> Database:
    try:
        if db_path:
            return Database(db_path)
        return get_db()
    except (StoreError, ValueError) as e:
        console.print(f"[red]Cannot open store:[/red] {e}")
        sys.exit(1)


def _format_ts(ts: int) -> str:
    if not ts:
        return "-"
    return datetime.fromtimestamp(ts / 1000).strftime("%Y-%m-%d %H:%M:%S")


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.option("--db", "db_path", type=click.Path(dir_okay=False), help="Store file (defaults to $SH2_HOME/sh2.db)")
@click.pass_context
def main(ctx: click.Context, verbose: bool, db_path: Optional[str]):
    """sh2store - inspect and bootstrap the sh2 session store."""
    setup_logging(verbose)
    ctx.obj = {"db_path": db_path}


@main.command()
@click.pass_context
def init(ctx: click.Context):
    """Create the client identity, local remote and default session."""
    db = _open_db(ctx.obj["db_path"])
    try:
        result = bootstrap_store(db)
    except StoreError as e:
        console.print(f"[red]Bootstrap failed:[/red] {e}")
        sys.exit(1)

    console.print(f"[green]Store ready[/green] ({db.db_path})")
    console.print(f"  userid:   {result.user_data.user_id}")
    console.print(f"  remote:   {result.local_remote.get_name()} ({result.local_remote.remote_canonical_name})")
    console.print(f"  session:  {result.default_session.name} ({result.default_session.session_id})")


@main.command()
@click.pass_context
def sessions(ctx: click.Context):
    """List sessions and their screens."""
    db = _open_db(ctx.obj["db_path"])
    all_sessions = get_all_sessions(db)
    if not all_sessions:
        console.print("[yellow]No sessions. Run 'sh2store init' first.[/yellow]")
        return

    table = Table(title="Sessions")
    table.add_column("Idx", justify="right")
    table.add_column("Name", style="cyan")
    table.add_column("Session ID")
    table.add_column("Screens", justify="right")
    table.add_column("Share Mode")

    for session in all_sessions:
        table.add_row(
            str(session.session_idx),
            session.name,
            session.session_id,
            str(len(session.screens)),
            session.share_mode,
        )
    console.print(table)


@main.command()
@click.pass_context
def remotes(ctx: click.Context):
    """List known remotes."""
    db = _open_db(ctx.obj["db_path"])
    all_remotes = get_all_remotes(db)
    if not all_remotes:
        console.print("[yellow]No remotes.[/yellow]")
        return

    table = Table(title="Remotes")
    table.add_column("Name", style="cyan")
    table.add_column("Canonical Name")
    table.add_column("Remote ID")
    table.add_column("Auto Connect")
    table.add_column("Last Connect")

    for remote in all_remotes:
        table.add_row(
            remote.get_name(),
            remote.remote_canonical_name,
            remote.remote_id,
            "yes" if remote.auto_connect else "no",
            _format_ts(remote.last_connect_ts),
        )
    console.print(table)


@main.command()
@click.option("--session", "-s", "session_id", help="Only this session id")
@click.option("--limit", "-n", default=20, show_default=True, help="Max items")
@click.pass_context
def history(ctx: click.Context, session_id: Optional[str], limit: int):
    """Show recent command history."""
    db = _open_db(ctx.obj["db_path"])
    items = get_history_items(db, session_id=session_id, limit=limit)
    if not items:
        console.print("[yellow]No history.[/yellow]")
        return

    table = Table(title="History")
    table.add_column("Time")
    table.add_column("Command", style="cyan")
    table.add_column("Error")

    for item in items:
        table.add_row(_format_ts(item.ts), item.cmd_str, "yes" if item.had_error else "")
    console.print(table)


if __name__ == "__main__":
    main()
