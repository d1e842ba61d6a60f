"""Tests for configuration loading."""

from __future__ import annotations

from pathlib import Path

import yaml

from shadowcrypt.config import (
    ShadowConfig,
    content_dir,
    load_config,
    registry_path,
    save_config,
    vault_path,
)
from shadowcrypt.models import KdfAlgorithm


class TestLoadConfig:
    """config.yaml with safe fallbacks."""

    def test_defaults_when_missing(self, tmp_path: Path) -> None:
        config = load_config(tmp_path)
        assert config == ShadowConfig()
        assert config.require_ownership_proof is True
        assert config.registry_backend == "sqlite"
        assert config.kdf.algorithm == KdfAlgorithm.ARGON2ID

    def test_reads_yaml(self, home: Path) -> None:
        config = load_config(home)
        assert config.kdf.opslimit == 1

    def test_save_then_load(self, tmp_path: Path) -> None:
        original = ShadowConfig(require_ownership_proof=False, batch_workers=8, log_level="DEBUG")
        path = save_config(original, tmp_path)
        assert path == tmp_path / "config" / "config.yaml"
        assert load_config(tmp_path) == original

    def test_invalid_yaml_falls_back(self, tmp_path: Path) -> None:
        (tmp_path / "config").mkdir()
        (tmp_path / "config" / "config.yaml").write_text("kdf: [unclosed")
        assert load_config(tmp_path) == ShadowConfig()

    def test_invalid_values_fall_back(self, tmp_path: Path) -> None:
        (tmp_path / "config").mkdir()
        (tmp_path / "config" / "config.yaml").write_text(
            yaml.dump({"registry_backend": "postgres"})
        )
        assert load_config(tmp_path) == ShadowConfig()

    def test_empty_file(self, tmp_path: Path) -> None:
        (tmp_path / "config").mkdir()
        (tmp_path / "config" / "config.yaml").write_text("")
        assert load_config(tmp_path) == ShadowConfig()


class TestPaths:
    """Layout under the home directory."""

    def test_paths(self, tmp_path: Path) -> None:
        assert vault_path(tmp_path) == tmp_path / "keys" / "encryption_key.json"
        assert registry_path(tmp_path) == tmp_path / "registry" / "keys.db"
        assert content_dir(tmp_path) == tmp_path / "content"
