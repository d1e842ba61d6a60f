"""Audit log command."""

from __future__ import annotations

import click
from rich.table import Table

from ._common import console, home_and_config, home_option
from ..audit import read_audit_log


def register_audit_commands(main: click.Group) -> None:
    """Register the audit command."""

    @main.command("audit")
    @home_option
    @click.option("--limit", default=20, help="Most recent entries to show (0 = all).")
    def audit(home, limit):
        """Show the security audit log."""
        home_path, _ = home_and_config(home)
        entries = read_audit_log(home_path, limit=limit)
        if not entries:
            console.print("\n  [dim]Audit log is empty.[/]\n")
            return

        table = Table(title="Audit Log", show_lines=False)
        table.add_column("When", style="dim")
        table.add_column("Event", style="bold")
        table.add_column("Detail")
        for e in entries:
            table.add_row(e.timestamp[:19], e.event_type, e.detail)

        console.print()
        console.print(table)
        console.print()
