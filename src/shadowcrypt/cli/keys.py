"""Key vault commands: generate, status, unlock, export, import, change-password, clear, prove."""

from __future__ import annotations

import sys
from pathlib import Path

import click
from rich.table import Table

from ._common import console, home_and_config, home_option, open_vault, reports_errors
from ..audit import audit_event
from ..derivation import SEED_BYTES
from ..errors import InvalidSeedLength


def _parse_seed(seed_hex: str) -> bytes:
    text = seed_hex[2:] if seed_hex.startswith(("0x", "0X")) else seed_hex
    try:
        seed = bytes.fromhex(text)
    except ValueError:
        console.print("[red]Seed must be hex.[/]")
        sys.exit(1)
    if len(seed) != SEED_BYTES:
        raise InvalidSeedLength(f"Seed must be {SEED_BYTES} bytes, got {len(seed)}")
    return seed


def register_keys_commands(main: click.Group) -> None:
    """Register the keys command group."""

    @main.group()
    def keys():
        """Manage your encryption keypair.

        The private key is sealed under your password and never leaves
        this machine unencrypted.
        """

    @keys.command("generate")
    @home_option
    @click.option("--seed", default=None, help="Hex 32-byte signing seed to derive from.")
    @click.option("--password", prompt=True, hide_input=True, confirmation_prompt=True)
    @click.option("--force", is_flag=True, help="Replace an existing stored keypair.")
    @reports_errors
    def keys_generate(home, seed, password, force):
        """Generate (or derive) a keypair and seal it under a password."""
        home_path, config = home_and_config(home)
        vault = open_vault(home_path, config)
        if vault.has_stored_keypair() and not force:
            console.print("[yellow]A keypair is already stored.[/] Use --force to replace it.")
            sys.exit(1)

        keypair = vault.generate(password, seed=_parse_seed(seed) if seed else None)
        audit_event(home_path, "VAULT_GENERATE", f"Keypair {keypair.public_key_hex[:16]} generated")
        console.print(f"\n  [green]Keypair stored.[/] Public key: [cyan]{keypair.public_key_hex}[/]\n")

    @keys.command("status")
    @home_option
    @reports_errors
    def keys_status(home):
        """Show what the vault holds."""
        home_path, config = home_and_config(home)
        vault = open_vault(home_path, config)
        stored = vault.storage.load()

        table = Table(title="Encryption Keys", show_lines=True)
        table.add_column("Field", style="bold")
        table.add_column("Value")
        table.add_row("State", vault.state.value)
        table.add_row("Public key", stored.public_key if stored else "[dim]none[/]")
        table.add_row("KDF", stored.kdf.algorithm.value if stored else "[dim]-[/]")
        table.add_row("Vault file", str(vault.storage.path))

        console.print()
        console.print(table)
        console.print()

    @keys.command("unlock")
    @home_option
    @click.option("--password", prompt=True, hide_input=True)
    @reports_errors
    def keys_unlock(home, password):
        """Check that a password opens the stored key."""
        home_path, config = home_and_config(home)
        keypair = open_vault(home_path, config).unlock(password)
        console.print(f"  [green]Unlocked[/] {keypair.public_key_hex[:16]}...")

    @keys.command("export")
    @home_option
    @click.option("--password", prompt=True, hide_input=True)
    @click.option("--output", "-o", required=True, type=click.Path(), help="Backup file.")
    @reports_errors
    def keys_export(home, password, output):
        """Write an encrypted, portable backup of the keypair."""
        home_path, config = home_and_config(home)
        vault = open_vault(home_path, config)
        vault.unlock(password)
        out = Path(output).expanduser()
        out.write_text(vault.export_keypair(password), encoding="utf-8")
        audit_event(home_path, "VAULT_EXPORT", f"Keypair exported to {out}")
        console.print(f"  [green]Exported[/] to {out}")

    @keys.command("import")
    @click.argument("backup", type=click.Path(exists=True))
    @home_option
    @click.option("--password", prompt=True, hide_input=True)
    @click.option("--force", is_flag=True, help="Replace an existing stored keypair.")
    @reports_errors
    def keys_import(backup, home, password, force):
        """Restore a keypair from an exported backup."""
        home_path, config = home_and_config(home)
        vault = open_vault(home_path, config)
        if vault.has_stored_keypair() and not force:
            console.print("[yellow]A keypair is already stored.[/] Use --force to replace it.")
            sys.exit(1)
        keypair = vault.import_keypair(Path(backup).read_text(encoding="utf-8"), password)
        audit_event(home_path, "VAULT_IMPORT", f"Keypair {keypair.public_key_hex[:16]} imported")
        console.print(f"  [green]Imported[/] {keypair.public_key_hex}")

    @keys.command("change-password")
    @home_option
    @click.option("--old-password", prompt=True, hide_input=True)
    @click.option("--new-password", prompt=True, hide_input=True, confirmation_prompt=True)
    @reports_errors
    def keys_change_password(home, old_password, new_password):
        """Re-seal the stored key under a new password."""
        home_path, config = home_and_config(home)
        open_vault(home_path, config).change_password(old_password, new_password)
        audit_event(home_path, "VAULT_PASSWORD", "Vault password changed")
        console.print("  [green]Password changed.[/]")

    @keys.command("clear")
    @home_option
    @click.option("--yes", is_flag=True, help="Do not ask for confirmation.")
    @reports_errors
    def keys_clear(home, yes):
        """Delete the stored keypair from this machine."""
        home_path, config = home_and_config(home)
        if not yes:
            click.confirm("Delete the stored keypair? Content sealed to it becomes unreadable", abort=True)
        open_vault(home_path, config).clear_stored_keypair()
        audit_event(home_path, "VAULT_CLEAR", "Stored keypair deleted")
        console.print("  [green]Cleared.[/]")

    @keys.command("prove")
    @home_option
    @click.option("--seed", required=True, help="Hex 32-byte account signing seed.")
    @reports_errors
    def keys_prove(home, seed):
        """Sign the ownership message for the stored public key."""
        from ..derivation import ownership_message
        from ..signing import address_from_seed, sign_ownership

        home_path, config = home_and_config(home)
        public_key = open_vault(home_path, config).public_key
        if public_key is None:
            console.print("[bold red]No stored keypair.[/] Run shadowcrypt keys generate first.")
            sys.exit(1)

        raw_seed = _parse_seed(seed)
        address = address_from_seed(raw_seed)
        click.echo(f"address: {address}")
        click.echo(f"public_key: {public_key}")
        click.echo(f"message: {ownership_message(address, public_key)}")
        click.echo(f"signature: {sign_ownership(raw_seed, address, public_key)}")
