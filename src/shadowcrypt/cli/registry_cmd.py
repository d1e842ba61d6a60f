"""Key registry commands: register, rotate, revoke, active, history."""

from __future__ import annotations

import click
from rich.table import Table

from ._common import console, home_and_config, home_option, open_registry, reports_errors


def register_registry_commands(main: click.Group) -> None:
    """Register the registry command group."""

    @main.group()
    def registry():
        """Manage registered public keys.

        One active key per address. Every change lands in the key
        history and the audit log.
        """

    @registry.command("register")
    @click.argument("address")
    @click.argument("public_key")
    @home_option
    @click.option("--signature", default=None, help="Hex ownership signature.")
    @click.option("--device", "device_id", default=None, help="Device the key lives on.")
    @click.option("--label", default=None, help="Human-readable label.")
    @reports_errors
    def registry_register(address, public_key, home, signature, device_id, label):
        """Register PUBLIC_KEY as the active key for ADDRESS."""
        home_path, config = home_and_config(home)
        reg = open_registry(home_path, config)
        try:
            row = reg.register(address, public_key, signature, device_id=device_id, label=label)
        finally:
            reg.close()
        console.print(f"  [green]Registered[/] key #{row.id} for {address}")

    @registry.command("rotate")
    @click.argument("address")
    @click.argument("public_key")
    @home_option
    @click.option("--signature", default=None, help="Hex ownership signature.")
    @click.option("--reason", default=None, help="Why the key is being rotated.")
    @reports_errors
    def registry_rotate(address, public_key, home, signature, reason):
        """Replace ADDRESS's active key with PUBLIC_KEY."""
        home_path, config = home_and_config(home)
        reg = open_registry(home_path, config)
        try:
            row = reg.rotate(address, public_key, signature, reason=reason)
        finally:
            reg.close()
        console.print(f"  [green]Rotated[/] {address} to key #{row.id}")

    @registry.command("revoke")
    @click.argument("address")
    @home_option
    @click.option("--reason", default=None, help="Why the key is being revoked.")
    @reports_errors
    def registry_revoke(address, home, reason):
        """Revoke ADDRESS's active key with no replacement."""
        home_path, config = home_and_config(home)
        reg = open_registry(home_path, config)
        try:
            row = reg.revoke(address, reason=reason)
        finally:
            reg.close()
        console.print(f"  [red]Revoked[/] key #{row.id} for {address}")

    @registry.command("active")
    @click.argument("address")
    @home_option
    @reports_errors
    def registry_active(address, home):
        """Print ADDRESS's active public key."""
        home_path, config = home_and_config(home)
        reg = open_registry(home_path, config)
        try:
            active = reg.get_active(address)
        finally:
            reg.close()
        if active is None:
            console.print(f"  [dim]No active key for {address}.[/]")
            return
        click.echo(active.public_key)

    @registry.command("history")
    @click.argument("address")
    @home_option
    @reports_errors
    def registry_history(address, home):
        """Show ADDRESS's key lifecycle, oldest first."""
        home_path, config = home_and_config(home)
        reg = open_registry(home_path, config)
        try:
            entries = reg.history(address)
        finally:
            reg.close()
        if not entries:
            console.print(f"\n  [dim]No key history for {address}.[/]\n")
            return

        table = Table(title=f"Key History: {address[:16]}", show_lines=True)
        table.add_column("When", style="dim")
        table.add_column("Action", style="bold")
        table.add_column("Key", style="cyan")
        table.add_column("Previous")
        table.add_column("Reason")
        for e in entries:
            table.add_row(
                e.timestamp.strftime("%m/%d %H:%M"),
                e.action.value,
                e.public_key[:12],
                e.previous_public_key[:12] if e.previous_public_key else "",
                e.reason or "",
            )

        console.print()
        console.print(table)
        console.print()
