"""Content commands: seal and open."""

from __future__ import annotations

import json
from pathlib import Path

import click

from ._common import console, home_and_config, home_option, open_vault, reports_errors
from ..config import content_dir
from ..derivation import validate_public_key
from ..errors import MalformedPayload
from ..models import ContentSource, ShadowItemRef
from ..pipeline import DecryptionPipeline, seal
from ..store import DirectoryContentStore


def register_content_commands(main: click.Group) -> None:
    """Register the content command group."""

    @main.group()
    def content():
        """Seal and open content.

        Bundles go to the local content store; the printed ref is what
        gets recorded on the ledger.
        """

    @content.command("seal")
    @click.argument("source_file", type=click.Path(exists=True))
    @home_option
    @click.option("--recipient", default=None, help="Hex public key (defaults to your own).")
    @click.option(
        "--source",
        type=click.Choice([s.value for s in ContentSource]),
        default=ContentSource.GITHUB.value,
    )
    @reports_errors
    def content_seal(source_file, home, recipient, source):
        """Encrypt SOURCE_FILE and print its item ref as JSON."""
        home_path, config = home_and_config(home)
        if recipient is None:
            recipient = open_vault(home_path, config).public_key
            if recipient is None:
                raise MalformedPayload("No recipient given and no stored keypair")

        ref = seal(
            Path(source_file).read_bytes(),
            validate_public_key(recipient),
            DirectoryContentStore(content_dir(home_path)),
            source=ContentSource(source),
        )
        click.echo(json.dumps(ref.to_wire()))

    @content.command("open")
    @click.argument("ref_file", type=click.Path(exists=True))
    @home_option
    @click.option("--password", prompt=True, hide_input=True)
    @reports_errors
    def content_open(ref_file, home, password):
        """Decrypt the item described by the ref JSON in REF_FILE."""
        home_path, config = home_and_config(home)
        try:
            wire = json.loads(Path(ref_file).read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise MalformedPayload(f"Ref file is not JSON: {exc}") from exc
        ref = ShadowItemRef.from_wire(wire)

        vault = open_vault(home_path, config)
        vault.unlock(password)
        try:
            with DecryptionPipeline(DirectoryContentStore(content_dir(home_path)), vault) as pipeline:
                item = pipeline.decrypt_item(ref)
        finally:
            vault.lock()
        click.echo(item.display_text)
