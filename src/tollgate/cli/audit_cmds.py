"""Audit trail inspection."""

from __future__ import annotations

import json

import typer
from rich.table import Table

from . import audit_app, console
from ..daemon.ledger.audit import list_audit_records


@audit_app.command("list")
def list_audit(
    identity_id: str = typer.Option(None, "--identity", help="Only records for this identity"),
    limit: int = typer.Option(50, "--limit", min=1, help="Maximum records to show"),
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON lines"),
):
    """List recent audit records, newest first."""
    records = list_audit_records(identity_id, limit=limit)

    if as_json:
        for r in records:
            typer.echo(json.dumps({
                "timestamp": r.timestamp,
                "identity_id": r.identity_id,
                "operation_name": r.operation_name,
                "action_id": r.action_id,
                "tokens_consumed": r.tokens_consumed,
                "success": r.success,
                "error_code": r.error_code,
            }))
        return

    table = Table(title="Tollgate Audit Log")
    table.add_column("Timestamp")
    table.add_column("Identity")
    table.add_column("Operation")
    table.add_column("Action ID")
    table.add_column("Tokens", justify="right")
    table.add_column("Outcome")
    for r in records:
        outcome = "[green]success[/green]" if r.success else f"[red]{r.error_code or 'failed'}[/red]"
        table.add_row(
            r.timestamp,
            r.identity_id or "-",
            r.operation_name or "-",
            r.action_id,
            str(r.tokens_consumed),
            outcome,
        )
    console.print(table)
