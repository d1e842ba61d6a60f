"""Tests for the password-protected local key vault."""

from __future__ import annotations

import asyncio
import json
import os
import stat
from pathlib import Path

import pytest

from shadowcrypt.derivation import derive_keypair, generate_keypair
from shadowcrypt.errors import InvalidPassword, KeyNotLoaded, MalformedPayload, NoStoredKey
from shadowcrypt.models import EncryptionKeyPair, KdfAlgorithm, KdfParams, VaultState
from shadowcrypt.vault import (
    Argon2idKDF,
    FileVaultStorage,
    IteratedHashKDF,
    LocalKeyVault,
    MemoryVaultStorage,
    decrypt_private_key,
    derive_key_from_password,
    encrypt_private_key,
    kdf_from_params,
    password_hint,
)

SALT = bytes(range(16))


# ---------------------------------------------------------------------------
# KDFs
# ---------------------------------------------------------------------------


class TestPasswordKDF:
    """Password stretching."""

    def test_argon2id_deterministic(self, fast_kdf_params: KdfParams) -> None:
        a = derive_key_from_password("pw", SALT, fast_kdf_params)
        b = derive_key_from_password("pw", SALT, fast_kdf_params)
        assert a == b
        assert len(a) == 32

    def test_salt_changes_key(self, fast_kdf_params: KdfParams) -> None:
        a = derive_key_from_password("pw", SALT, fast_kdf_params)
        b = derive_key_from_password("pw", bytes(16), fast_kdf_params)
        assert a != b

    def test_password_changes_key(self, fast_kdf_params: KdfParams) -> None:
        a = derive_key_from_password("pw", SALT, fast_kdf_params)
        b = derive_key_from_password("pW", SALT, fast_kdf_params)
        assert a != b

    def test_bad_salt_length(self, fast_kdf_params: KdfParams) -> None:
        with pytest.raises(MalformedPayload):
            derive_key_from_password("pw", b"short", fast_kdf_params)

    def test_legacy_iterated_hash(self) -> None:
        """SHA-512(password || salt), re-hashed 1000 times, first 32 bytes."""
        import hashlib

        digest = hashlib.sha512(b"pw" + SALT).digest()
        for _ in range(1000):
            digest = hashlib.sha512(digest).digest()
        params = KdfParams(algorithm=KdfAlgorithm.ITERATED_SHA512)
        assert bytes(derive_key_from_password("pw", SALT, params)) == digest[:32]

    def test_kdf_from_params(self, fast_kdf_params: KdfParams) -> None:
        kdf = kdf_from_params(fast_kdf_params)
        assert isinstance(kdf, Argon2idKDF)
        assert kdf.params == fast_kdf_params
        legacy = kdf_from_params(KdfParams(algorithm=KdfAlgorithm.ITERATED_SHA512, iterations=5))
        assert isinstance(legacy, IteratedHashKDF)
        assert legacy.iterations == 5


class TestPrivateKeySealing:
    """encrypt_private_key / decrypt_private_key."""

    def test_round_trip(self, fast_kdf: Argon2idKDF) -> None:
        kp = generate_keypair()
        sealed = encrypt_private_key(kp.private_key, "hunter2", fast_kdf)
        opened = decrypt_private_key(
            sealed["encrypted_key"], "hunter2", sealed["salt"], sealed["nonce"], sealed["kdf"]
        )
        assert opened == kp.private_key

    def test_fresh_salt_and_nonce(self, fast_kdf: Argon2idKDF) -> None:
        kp = generate_keypair()
        a = encrypt_private_key(kp.private_key, "pw", fast_kdf)
        b = encrypt_private_key(kp.private_key, "pw", fast_kdf)
        assert a["salt"] != b["salt"]
        assert a["nonce"] != b["nonce"]
        assert a["encrypted_key"] != b["encrypted_key"]

    def test_wrong_password(self, fast_kdf: Argon2idKDF) -> None:
        sealed = encrypt_private_key(b"\x01" * 32, "right", fast_kdf)
        with pytest.raises(InvalidPassword):
            decrypt_private_key(
                sealed["encrypted_key"], "wrong", sealed["salt"], sealed["nonce"], sealed["kdf"]
            )

    def test_garbage_base64(self, fast_kdf_params: KdfParams) -> None:
        with pytest.raises(MalformedPayload):
            decrypt_private_key("!!!", "pw", "AAAA", "AAAA", fast_kdf_params)

    def test_non_string_fields(self, fast_kdf_params: KdfParams) -> None:
        with pytest.raises(MalformedPayload):
            decrypt_private_key(5, "pw", "AAAA", "AAAA", fast_kdf_params)
        with pytest.raises(MalformedPayload):
            decrypt_private_key("AAAA", "pw", None, "AAAA", fast_kdf_params)

    def test_password_hint(self) -> None:
        assert password_hint("correcthorse") == "cor******rse"
        assert password_hint("short") == "*****"
        assert password_hint("sixsix") == "******"


# ---------------------------------------------------------------------------
# LocalKeyVault
# ---------------------------------------------------------------------------


class TestVaultLifecycle:
    """NO_KEY -> UNLOCKED -> LOCKED -> UNLOCKED."""

    def test_starts_empty(self, vault: LocalKeyVault) -> None:
        assert vault.state == VaultState.NO_KEY
        assert vault.has_stored_keypair() is False
        assert vault.public_key is None

    def test_generate_unlocks(self, vault: LocalKeyVault) -> None:
        kp = vault.generate("pw")
        assert vault.state == VaultState.UNLOCKED
        assert vault.current_keypair == kp
        assert vault.public_key == kp.public_key_hex

    def test_generate_from_seed(self, vault: LocalKeyVault) -> None:
        seed = os.urandom(32)
        assert vault.generate("pw", seed=seed) == derive_keypair(seed)

    def test_lock_and_unlock(self, vault: LocalKeyVault) -> None:
        kp = vault.generate("pw")
        vault.lock()
        assert vault.state == VaultState.LOCKED
        with pytest.raises(KeyNotLoaded):
            vault.current_keypair
        assert vault.unlock("pw") == kp
        assert vault.state == VaultState.UNLOCKED

    def test_password_round_trip(self, vault: LocalKeyVault, keypair: EncryptionKeyPair) -> None:
        vault.store_keypair(keypair, "pw")
        vault.lock()
        assert vault.load_keypair("pw") == keypair

    def test_wrong_password_keeps_vault_locked(
        self, vault: LocalKeyVault, keypair: EncryptionKeyPair
    ) -> None:
        vault.store_keypair(keypair, "pw")
        vault.lock()
        with pytest.raises(InvalidPassword):
            vault.load_keypair("nope")
        assert vault.state == VaultState.LOCKED

    def test_load_without_stored_key(self, vault: LocalKeyVault) -> None:
        with pytest.raises(NoStoredKey):
            vault.load_keypair("pw")

    def test_change_password(self, vault: LocalKeyVault, keypair: EncryptionKeyPair) -> None:
        vault.store_keypair(keypair, "old")
        vault.change_password("old", "new")
        vault.lock()
        with pytest.raises(InvalidPassword):
            vault.unlock("old")
        assert vault.unlock("new") == keypair

    def test_clear(self, vault: LocalKeyVault) -> None:
        vault.generate("pw")
        vault.clear_stored_keypair()
        assert vault.state == VaultState.NO_KEY

    def test_mismatched_record_rejected(self, vault: LocalKeyVault) -> None:
        """A record whose private half does not match its public half never unlocks."""
        stored = vault.seal(generate_keypair(), "pw")
        forged = stored.model_copy(update={"public_key": generate_keypair().public_key_hex})
        vault.storage.save(forged)
        with pytest.raises(MalformedPayload):
            vault.unlock("pw")

    def test_legacy_record_still_opens(self, keypair: EncryptionKeyPair) -> None:
        """Records sealed with the iterated hash open even when Argon2id is the default."""
        storage = MemoryVaultStorage()
        LocalKeyVault(storage, kdf=IteratedHashKDF()).store_keypair(keypair, "pw")
        assert storage.load().kdf.algorithm == KdfAlgorithm.ITERATED_SHA512
        assert LocalKeyVault(storage).unlock("pw") == keypair

    @pytest.mark.asyncio
    async def test_unlock_async(self, vault: LocalKeyVault, keypair: EncryptionKeyPair) -> None:
        vault.store_keypair(keypair, "pw")
        vault.lock()
        assert await vault.unlock_async("pw") == keypair
        assert vault.is_unlocked

    @pytest.mark.asyncio
    async def test_unlock_async_wrong_password(
        self, vault: LocalKeyVault, keypair: EncryptionKeyPair
    ) -> None:
        vault.store_keypair(keypair, "pw")
        vault.lock()
        with pytest.raises(InvalidPassword):
            await vault.unlock_async("bad")


class TestFileVaultStorage:
    """Sealed record on disk."""

    def test_persists_across_instances(
        self, tmp_path: Path, fast_kdf: Argon2idKDF, keypair: EncryptionKeyPair
    ) -> None:
        path = tmp_path / "keys" / "encryption_key.json"
        LocalKeyVault(FileVaultStorage(path), kdf=fast_kdf).store_keypair(keypair, "pw")
        fresh = LocalKeyVault(FileVaultStorage(path), kdf=fast_kdf)
        assert fresh.state == VaultState.LOCKED
        assert fresh.unlock("pw") == keypair

    def test_owner_only_permissions(
        self, tmp_path: Path, fast_kdf: Argon2idKDF, keypair: EncryptionKeyPair
    ) -> None:
        path = tmp_path / "encryption_key.json"
        LocalKeyVault(FileVaultStorage(path), kdf=fast_kdf).store_keypair(keypair, "pw")
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_private_key_not_on_disk(
        self, tmp_path: Path, fast_kdf: Argon2idKDF, keypair: EncryptionKeyPair
    ) -> None:
        path = tmp_path / "encryption_key.json"
        LocalKeyVault(FileVaultStorage(path), kdf=fast_kdf).store_keypair(keypair, "pw")
        assert keypair.private_key.hex() not in path.read_text()

    def test_corrupt_file(self, tmp_path: Path) -> None:
        path = tmp_path / "encryption_key.json"
        path.write_text("{not json")
        with pytest.raises(MalformedPayload):
            FileVaultStorage(path).load()


class TestExportImport:
    """Encrypted portable backups."""

    def test_round_trip_into_fresh_vault(
        self, vault: LocalKeyVault, fast_kdf: Argon2idKDF, keypair: EncryptionKeyPair
    ) -> None:
        vault.store_keypair(keypair, "pw")
        exported = vault.export_keypair("pw")
        assert json.loads(exported)["type"] == "shadowchain_keypair_export"

        other = LocalKeyVault(MemoryVaultStorage(), kdf=fast_kdf)
        assert other.import_keypair(exported, "pw") == keypair
        assert other.state == VaultState.UNLOCKED

    def test_backup_does_not_contain_key(
        self, vault: LocalKeyVault, keypair: EncryptionKeyPair
    ) -> None:
        vault.store_keypair(keypair, "pw")
        exported = vault.export_keypair("pw")
        assert keypair.private_key.hex() not in exported
        assert keypair.public_key_hex not in exported

    def test_wrong_password_leaves_vault_untouched(
        self, vault: LocalKeyVault, fast_kdf: Argon2idKDF, keypair: EncryptionKeyPair
    ) -> None:
        vault.store_keypair(keypair, "pw")
        exported = vault.export_keypair("pw")
        other = LocalKeyVault(MemoryVaultStorage(), kdf=fast_kdf)
        with pytest.raises(InvalidPassword):
            other.import_keypair(exported, "wrong")
        assert other.state == VaultState.NO_KEY

    def test_not_an_export(self, vault: LocalKeyVault) -> None:
        with pytest.raises(MalformedPayload):
            vault.import_keypair(json.dumps({"type": "something_else"}), "pw")
        with pytest.raises(MalformedPayload):
            vault.import_keypair("not json", "pw")

    @pytest.mark.parametrize("field", ["encrypted", "salt", "nonce"])
    def test_export_fields_of_wrong_type(self, vault: LocalKeyVault, field: str) -> None:
        document = {
            "type": "shadowchain_keypair_export",
            "encrypted": "AAAA",
            "salt": "AAAA",
            "nonce": "AAAA",
        }
        document[field] = 5
        with pytest.raises(MalformedPayload):
            vault.import_keypair(json.dumps(document), "pw")
        assert vault.state == VaultState.NO_KEY

    def test_export_without_key(self, vault: LocalKeyVault) -> None:
        with pytest.raises(NoStoredKey):
            vault.export_keypair("pw")

    def test_raw_keys_round_trip(
        self, vault: LocalKeyVault, fast_kdf: Argon2idKDF, keypair: EncryptionKeyPair
    ) -> None:
        vault.store_keypair(keypair, "pw")
        raw = vault.export_keys()
        other = LocalKeyVault(MemoryVaultStorage(), kdf=fast_kdf)
        other.import_keys(raw)
        assert other.state == VaultState.LOCKED
        assert other.unlock("pw") == keypair

    def test_import_keys_accepts_camel_case(
        self, vault: LocalKeyVault, fast_kdf: Argon2idKDF, keypair: EncryptionKeyPair
    ) -> None:
        stored = vault.seal(keypair, "pw")
        camel = {
            "publicKey": stored.public_key,
            "encryptedPrivateKey": stored.encrypted_private_key,
            "salt": stored.salt,
            "nonce": stored.nonce,
            "kdf": stored.kdf.model_dump(mode="json"),
        }
        vault.import_keys(camel)
        assert vault.unlock("pw") == keypair

    def test_import_keys_requires_salt_and_nonce(
        self, vault: LocalKeyVault, keypair: EncryptionKeyPair
    ) -> None:
        stored = vault.seal(keypair, "pw").model_dump(mode="json")
        del stored["nonce"]
        with pytest.raises(MalformedPayload):
            vault.import_keys(stored)
