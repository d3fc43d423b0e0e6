"""Tollgate CLI: store setup, identities, audit trail and the daemon."""

import os
from pathlib import Path

import typer
from rich.console import Console

from .. import __version__
from ..daemon.db import get_db_path, init_db
from ..daemon.utils.config_loader import DEFAULT_CATALOG_YAML

# ── Shared state ────────────────────────────────────────────────────────────

app = typer.Typer(help="Tollgate - metered operation gateway")
console = Console()

# Sub-command groups
daemon_app = typer.Typer()
identity_app = typer.Typer()
audit_app = typer.Typer()

app.add_typer(daemon_app, name="daemon", help="Manage the Tollgate daemon process")
app.add_typer(identity_app, name="identity", help="Manage identities, API keys and balances")
app.add_typer(audit_app, name="audit", help="Inspect the audit trail")


# ── Path helpers (read at call time so env overrides apply) ─────────────────

def tollgate_dir() -> Path:
    return Path(os.getenv("TOLLGATE_HOME", str(Path.home() / ".tollgate")))


def config_dir() -> Path:
    return Path(os.getenv("TOLLGATE_CONFIG_DIR", str(tollgate_dir() / "config")))


def log_dir() -> Path:
    return Path(os.getenv("TOLLGATE_LOG_DIR", str(tollgate_dir() / "logs")))


def pid_file() -> Path:
    return tollgate_dir() / "tollgate.pid"


def get_daemon_pid():
    path = pid_file()
    if path.exists():
        try:
            return int(path.read_text().strip())
        except ValueError:
            return None
    return None


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", help="Show version and exit"),
):
    if version:
        console.print(f"tollgate {__version__}")
        raise typer.Exit()
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


# ── Init command (lives at top level, so defined here) ──────────────────────

@app.command("init")
def init_tollgate():
    """Initialize the Tollgate store and the default operation catalog."""
    console.print(f"[bold]Initializing Tollgate in {tollgate_dir()}...[/bold]")

    for path in (tollgate_dir(), log_dir(), config_dir()):
        path.mkdir(parents=True, exist_ok=True)

    catalog_file = config_dir() / "operations.yaml"
    if not catalog_file.exists():
        console.print("Creating default operations.yaml...")
        catalog_file.write_text(DEFAULT_CATALOG_YAML)

    try:
        init_db()
        console.print(f"[green]Database initialized at {get_db_path()}.[/green]")
    except Exception as e:
        console.print(f"[red]Failed to initialize database: {e}[/red]")
        raise typer.Exit(1)

    console.print("[green]Tollgate initialized successfully.[/green]")


# ── Register submodule commands (import triggers decorator registration) ────

from . import daemon_cmds    # noqa: E402, F401
from . import identity_cmds  # noqa: E402, F401
from . import audit_cmds     # noqa: E402, F401
