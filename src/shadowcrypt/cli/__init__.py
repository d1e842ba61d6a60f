"""
shadowcrypt CLI: keys, registry and content from the command line.

Each command group lives in its own module and is registered on the
main Click group through a register function.

Entry point: shadowcrypt.cli:main
"""

from __future__ import annotations

import click

from .. import __version__
from ._common import setup_logging


@click.group()
@click.version_option(version=__version__, prog_name="shadowcrypt")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging to stderr.")
def main(verbose):
    """shadowcrypt: end-to-end encryption for Shadowchain content.

    Only you hold the key that opens what you shadow.
    """
    setup_logging("DEBUG" if verbose else "WARNING")


# ---------------------------------------------------------------------------
# Register all command groups/commands from modular files
# ---------------------------------------------------------------------------

from .keys import register_keys_commands
from .registry_cmd import register_registry_commands
from .content import register_content_commands
from .audit_cmd import register_audit_commands

register_keys_commands(main)
register_registry_commands(main)
register_content_commands(main)
register_audit_commands(main)
