"""Identity commands: create, top up, deactivate, show, rotate keys."""

from __future__ import annotations

import typer
from rich.table import Table

from . import console, identity_app
from ..daemon.auth.identities import (
    create_identity,
    deactivate_identity,
    get_identity,
    rotate_api_key,
    top_up,
)
from ..daemon.errors import GatewayError
from ..daemon.ledger.balance import get_balance
from ..daemon.ledger.idempotency import list_records


@identity_app.command("create")
def create(
    email: str = typer.Option(None, "--email", help="Contact email for the identity"),
    balance: int = typer.Option(0, "--balance", min=0, help="Initial token balance"),
    identity_id: str = typer.Option(None, "--id", help="Explicit identity id"),
):
    """Create an identity and print its API key (shown only once)."""
    identity, api_key = create_identity(email, initial_balance=balance, identity_id=identity_id)
    console.print(f"[green]Identity '{identity.identity_id}' created with {balance} tokens.[/green]")
    console.print(f"API key: [bold]{api_key}[/bold]")
    console.print("[yellow]Store this key now; it cannot be shown again.[/yellow]")


@identity_app.command("topup")
def topup(
    identity_id: str,
    amount: int = typer.Argument(..., min=1, help="Tokens to credit"),
    reason: str = typer.Option("manual", "--reason", help="Reason recorded in the audit log"),
):
    """Credit tokens to an identity."""
    try:
        new_balance = top_up(identity_id, amount, reason=reason)
    except GatewayError as exc:
        console.print(f"[red]{exc.message}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]Credited {amount} tokens. Balance: {new_balance}[/green]")


@identity_app.command("deactivate")
def deactivate(identity_id: str):
    """Deactivate an identity; its balance and history are kept."""
    if not deactivate_identity(identity_id):
        console.print(f"[red]Identity '{identity_id}' not found[/red]")
        raise typer.Exit(1)
    console.print(f"[yellow]Identity '{identity_id}' deactivated.[/yellow]")


@identity_app.command("rotate-key")
def rotate_key(identity_id: str):
    """Issue a new API key; the previous key stops working immediately."""
    try:
        api_key = rotate_api_key(identity_id)
    except GatewayError as exc:
        console.print(f"[red]{exc.message}[/red]")
        raise typer.Exit(1)
    console.print(f"New API key: [bold]{api_key}[/bold]")


@identity_app.command("show")
def show(
    identity_id: str,
    limit: int = typer.Option(10, "--limit", min=1, help="Recent actions to list"),
):
    """Show an identity, its balance and recent actions."""
    identity = get_identity(identity_id)
    if identity is None:
        console.print(f"[red]Identity '{identity_id}' not found[/red]")
        raise typer.Exit(1)

    status = "[red]deactivated[/red]" if identity.deactivated else "[green]active[/green]"
    console.print(f"[bold]{identity.identity_id}[/bold] ({identity.email or '-'}) {status}")
    console.print(f"Balance: {get_balance(identity_id)}")

    records = list_records(identity_id, limit=limit)
    if not records:
        return
    table = Table(title="Recent actions")
    table.add_column("Action ID")
    table.add_column("Operation")
    table.add_column("Debited", justify="right")
    table.add_column("Balance after", justify="right")
    table.add_column("Outcome")
    table.add_column("Created")
    for r in records:
        if r.success is None:
            outcome = "pending"
        else:
            outcome = "success" if r.success else "failed"
        table.add_row(r.action_id, r.operation_name, str(r.amount_debited), str(r.balance_after), outcome, r.created_at)
    console.print(table)
