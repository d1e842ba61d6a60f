"""
Configuration for a shadowcrypt home directory.

Layout:
    ~/.shadowcrypt/
        config/config.yaml      # ShadowConfig
        keys/encryption_key.json
        registry/keys.db
        content/<id>.json
        security/audit.log

A missing or unreadable config never stops the client; defaults apply and
a warning is logged.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field

from . import SHADOWCRYPT_HOME
from .models import KdfParams

logger = logging.getLogger("shadowcrypt.config")

CONFIG_FILE = Path("config") / "config.yaml"


class ShadowConfig(BaseModel):
    """Runtime settings. Every field has a safe default."""

    kdf: KdfParams = Field(default_factory=KdfParams)
    require_ownership_proof: bool = Field(
        default=True,
        description="Reject key registrations without a valid ownership signature",
    )
    registry_backend: Literal["sqlite", "memory"] = "sqlite"
    batch_workers: int = Field(default=4, ge=1)
    log_level: str = "INFO"


def resolve_home(home: Optional[Path] = None) -> Path:
    """The home directory, expanded."""
    return Path(home or SHADOWCRYPT_HOME).expanduser()


def load_config(home: Optional[Path] = None) -> ShadowConfig:
    """Load config.yaml from the home directory, or defaults.

    Args:
        home: Override home directory. Defaults to ~/.shadowcrypt/.

    Returns:
        ShadowConfig loaded from disk, or defaults.
    """
    config_file = resolve_home(home) / CONFIG_FILE
    if config_file.exists():
        try:
            data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
            return ShadowConfig(**data)
        except (yaml.YAMLError, ValueError, TypeError) as exc:
            logger.warning("Failed to load config: %s; using defaults", exc)
    return ShadowConfig()


def save_config(config: ShadowConfig, home: Optional[Path] = None) -> Path:
    """Write config.yaml, creating the directory if needed."""
    config_file = resolve_home(home) / CONFIG_FILE
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(
        yaml.dump(config.model_dump(mode="json"), default_flow_style=False),
        encoding="utf-8",
    )
    return config_file


def vault_path(home: Optional[Path] = None) -> Path:
    return resolve_home(home) / "keys" / "encryption_key.json"


def registry_path(home: Optional[Path] = None) -> Path:
    return resolve_home(home) / "registry" / "keys.db"


def content_dir(home: Optional[Path] = None) -> Path:
    return resolve_home(home) / "content"
