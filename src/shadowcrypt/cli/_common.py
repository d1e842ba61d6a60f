"""Shared utilities for all CLI command modules.

Provides the Rich console instance, home and config resolution, logging
setup, and the error reporting every command shares.
"""

from __future__ import annotations

import functools
import logging
import sys
from pathlib import Path
from typing import Callable, Optional

import click
from rich.console import Console

from .. import SHADOWCRYPT_HOME
from ..audit import AuditTrail
from ..config import ShadowConfig, load_config, resolve_home, vault_path
from ..errors import InvalidPassword, KeyNotLoaded, ShadowCryptError
from ..registry import KeyRegistry, build_registry
from ..vault import FileVaultStorage, LocalKeyVault, kdf_from_params

console = Console()

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"

home_option = click.option(
    "--home",
    default=SHADOWCRYPT_HOME,
    type=click.Path(),
    help="shadowcrypt home directory.",
)


def setup_logging(level: str) -> None:
    """Route shadowcrypt loggers to stderr at the given level."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root = logging.getLogger("shadowcrypt")
    root.handlers = [handler]
    root.setLevel(getattr(logging, level.upper(), logging.INFO))


def reports_errors(func: Callable) -> Callable:
    """Turn shadowcrypt errors into a red one-liner and exit status 1."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except InvalidPassword:
            console.print("[bold red]Invalid password.[/]")
            sys.exit(1)
        except KeyNotLoaded as exc:
            console.print(f"[bold yellow]Locked:[/] {exc}")
            sys.exit(1)
        except ShadowCryptError as exc:
            console.print(f"[bold red]{type(exc).__name__}:[/] {exc}")
            sys.exit(1)

    return wrapper


def home_and_config(home: Optional[str]) -> tuple[Path, ShadowConfig]:
    home_path = resolve_home(Path(home) if home else None)
    return home_path, load_config(home_path)


def open_vault(home_path: Path, config: ShadowConfig) -> LocalKeyVault:
    return LocalKeyVault(FileVaultStorage(vault_path(home_path)), kdf=kdf_from_params(config.kdf))


def open_registry(home_path: Path, config: ShadowConfig) -> KeyRegistry:
    return build_registry(config, home_path, audit=AuditTrail(home_path))
