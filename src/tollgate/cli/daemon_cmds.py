"""Daemon lifecycle commands: serve, start, stop, status."""

import os
import signal
import subprocess
import sys

import typer

from . import config_dir, console, daemon_app, get_daemon_pid, log_dir, pid_file, tollgate_dir
from ..daemon.db import get_db_path, init_db


def _prepare() -> None:
    for path in (tollgate_dir(), log_dir(), config_dir()):
        path.mkdir(parents=True, exist_ok=True)
    try:
        init_db()
    except Exception as exc:
        console.print(f"[red]Database init failed, daemon not started: {exc}[/red]")
        raise typer.Exit(1)


@daemon_app.command("serve")
def serve_daemon(host: str = "127.0.0.1", port: int = 9100):
    """Run the daemon in the foreground."""
    import uvicorn

    _prepare()
    os.environ.setdefault("TOLLGATE_CONFIG_DIR", str(config_dir()))
    console.print(f"[green]Serving Tollgate on {host}:{port}[/green]")
    uvicorn.run("tollgate.daemon.app:app", host=host, port=port)


@daemon_app.command("start")
def start_daemon(port: int = 9100, reload: bool = False):
    """Start the Tollgate daemon in the background."""
    _prepare()

    pid = get_daemon_pid()
    if pid:
        try:
            os.kill(pid, 0)
            console.print(f"[red]Daemon already running (PID {pid})[/red]")
            return
        except ProcessLookupError:
            console.print("[yellow]Stale PID file found, removing...[/yellow]")
            pid_file().unlink()

    console.print(f"[green]Starting Tollgate daemon on port {port}...[/green]")

    env = os.environ.copy()
    env["TOLLGATE_LOG_DIR"] = str(log_dir())
    env["TOLLGATE_CONFIG_DIR"] = str(config_dir())

    cmd = [
        sys.executable, "-m", "uvicorn",
        "tollgate.daemon.app:app",
        "--host", "127.0.0.1",
        "--port", str(port),
    ]
    if reload:
        cmd.append("--reload")

    log_file = open(log_dir() / "daemon.out", "a")
    proc = subprocess.Popen(cmd, env=env, stdout=log_file, stderr=subprocess.STDOUT)

    pid_file().write_text(str(proc.pid))

    console.print(f"Daemon started with PID {proc.pid}")
    console.print(f"Logs: {log_dir()}/daemon.out")


@daemon_app.command("stop")
def stop_daemon():
    """Stop the Tollgate daemon."""
    pid = get_daemon_pid()
    if not pid:
        console.print("[red]Daemon not running (PID file not found)[/red]")
        return

    try:
        os.kill(pid, signal.SIGTERM)
        console.print(f"[green]Stopped daemon (PID {pid})[/green]")
    except ProcessLookupError:
        console.print("[yellow]Daemon process not found, cleaning up PID file[/yellow]")
    if pid_file().exists():
        pid_file().unlink()


@daemon_app.command("status")
def status_daemon():
    """Check daemon status."""
    pid = get_daemon_pid()
    if pid:
        try:
            os.kill(pid, 0)
            console.print(f"[green]Daemon is running (PID {pid})[/green]")
            console.print(f"Configuration: {config_dir()}")
            console.print(f"Database: {get_db_path()}")
            return
        except ProcessLookupError:
            pass

    console.print("[red]Daemon is NOT running[/red]")
