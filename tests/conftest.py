"""Shared test fixtures for shadowcrypt."""

from __future__ import annotations

from pathlib import Path

import pytest
from nacl.pwhash import argon2id

from shadowcrypt.derivation import generate_keypair
from shadowcrypt.models import EncryptionKeyPair, KdfParams
from shadowcrypt.vault import Argon2idKDF, LocalKeyVault, MemoryVaultStorage


@pytest.fixture
def fast_kdf_params() -> KdfParams:
    """Cheapest Argon2id limits libsodium accepts, so tests stay quick."""
    return KdfParams(opslimit=argon2id.OPSLIMIT_MIN, memlimit=argon2id.MEMLIMIT_MIN)


@pytest.fixture
def fast_kdf(fast_kdf_params: KdfParams) -> Argon2idKDF:
    return Argon2idKDF(opslimit=fast_kdf_params.opslimit, memlimit=fast_kdf_params.memlimit)


@pytest.fixture
def keypair() -> EncryptionKeyPair:
    return generate_keypair()


@pytest.fixture
def vault(fast_kdf: Argon2idKDF) -> LocalKeyVault:
    """An in-memory vault with nothing stored."""
    return LocalKeyVault(MemoryVaultStorage(), kdf=fast_kdf)


@pytest.fixture
def home(tmp_path: Path) -> Path:
    """A shadowcrypt home with a fast-KDF config."""
    import yaml

    home_dir = tmp_path / ".shadowcrypt"
    (home_dir / "config").mkdir(parents=True)
    config = {
        "kdf": {
            "algorithm": "argon2id",
            "opslimit": argon2id.OPSLIMIT_MIN,
            "memlimit": argon2id.MEMLIMIT_MIN,
        },
    }
    (home_dir / "config" / "config.yaml").write_text(
        yaml.dump(config, default_flow_style=False)
    )
    return home_dir
