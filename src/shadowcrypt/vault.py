"""
Local key vault: the user's private key, sealed under a password.

The private key never rests in the clear. It is sealed with a secretbox
whose key is stretched from the user's password, and only the sealed form
is written to storage:

    password + salt ──KDF──▶ 32-byte key ──secretbox(nonce)──▶ encrypted private key

Storage layout (FileVaultStorage):
    ~/.shadowcrypt/keys/encryption_key.json   # StoredKeyPair, mode 0600

KDFs:
    argon2id         Default. Memory-hard, libsodium via PyNaCl.
    iterated-sha512  Legacy. SHA-512(password || salt), re-hashed 1000
                     times. Kept only so records written by older
                     clients still open; never chosen for new records
                     unless configured explicitly.

Vault state machine:
    NO_KEY ──generate/store──▶ UNLOCKED ──lock──▶ LOCKED ──unlock──▶ UNLOCKED

Unlocking is slow on purpose. Interactive callers use ``unlock_async``
so the derivation runs in an executor.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

import nacl.utils
from nacl.exceptions import CryptoError
from nacl.pwhash import argon2id
from nacl.secret import SecretBox

from .cipher import public_key_for, secure_clear
from .derivation import derive_keypair, generate_keypair
from .errors import InvalidPassword, KeyNotLoaded, MalformedPayload, NoStoredKey
from .models import (
    NONCE_BYTES,
    SALT_BYTES,
    EncryptionKeyPair,
    KdfAlgorithm,
    KdfParams,
    StoredKeyPair,
    VaultState,
)

logger = logging.getLogger("shadowcrypt.vault")

EXPORT_TYPE = "shadowchain_keypair_export"
EXPORT_VERSION = 1
EXPORT_PASSWORD_PREFIX = "shadowchain_export_"
DERIVED_KEY_BYTES = 32


def _b64e(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64d(text: str) -> bytes:
    return base64.b64decode(text.encode("ascii"), validate=True)


# ---------------------------------------------------------------------------
# Password KDFs
# ---------------------------------------------------------------------------


class PasswordKDF(ABC):
    """Stretches a password and salt into a 32-byte secretbox key."""

    @abstractmethod
    def derive(self, password: str, salt: bytes) -> bytearray:
        """Derive the key. Returns a clearable buffer."""

    @property
    @abstractmethod
    def params(self) -> KdfParams:
        """Parameters to record next to the sealed key."""


class Argon2idKDF(PasswordKDF):
    """Argon2id via libsodium. Memory-hard; the default for new records."""

    def __init__(self, opslimit: int = argon2id.OPSLIMIT_INTERACTIVE,
                 memlimit: int = argon2id.MEMLIMIT_INTERACTIVE):
        self.opslimit = opslimit
        self.memlimit = memlimit

    def derive(self, password: str, salt: bytes) -> bytearray:
        return bytearray(
            argon2id.kdf(
                DERIVED_KEY_BYTES,
                password.encode("utf-8"),
                salt,
                opslimit=self.opslimit,
                memlimit=self.memlimit,
            )
        )

    @property
    def params(self) -> KdfParams:
        return KdfParams(
            algorithm=KdfAlgorithm.ARGON2ID,
            opslimit=self.opslimit,
            memlimit=self.memlimit,
        )


class IteratedHashKDF(PasswordKDF):
    """Legacy fixed-count iterated SHA-512. Not memory-hard."""

    def __init__(self, iterations: int = 1000):
        self.iterations = iterations

    def derive(self, password: str, salt: bytes) -> bytearray:
        digest = hashlib.sha512(password.encode("utf-8") + salt).digest()
        for _ in range(self.iterations):
            digest = hashlib.sha512(digest).digest()
        return bytearray(digest[:DERIVED_KEY_BYTES])

    @property
    def params(self) -> KdfParams:
        return KdfParams(algorithm=KdfAlgorithm.ITERATED_SHA512, iterations=self.iterations)


def kdf_from_params(params: KdfParams) -> PasswordKDF:
    """Rebuild the KDF a record was sealed with."""
    if params.algorithm == KdfAlgorithm.ITERATED_SHA512:
        return IteratedHashKDF(iterations=params.iterations)
    return Argon2idKDF(opslimit=params.opslimit, memlimit=params.memlimit)


def derive_key_from_password(
    password: str,
    salt: bytes,
    params: Optional[KdfParams] = None,
) -> bytearray:
    """Stretch a password into a 32-byte key.

    Args:
        password: The user's password.
        salt: 16-byte salt, fresh per sealed record.
        params: KDF selection; defaults to Argon2id interactive limits.

    Returns:
        The derived key as a clearable buffer.
    """
    if len(salt) != SALT_BYTES:
        raise MalformedPayload(f"Salt must be {SALT_BYTES} bytes, got {len(salt)}")
    return kdf_from_params(params or KdfParams()).derive(password, salt)


# ---------------------------------------------------------------------------
# Private key sealing
# ---------------------------------------------------------------------------


def encrypt_private_key(
    private_key: bytes,
    password: str,
    kdf: Optional[PasswordKDF] = None,
) -> dict[str, Any]:
    """Seal a private key under a password with a fresh salt and nonce.

    Returns:
        Dict with base64 ``encrypted_key``, ``salt``, ``nonce`` and the
        ``kdf`` parameters used.
    """
    kdf = kdf or Argon2idKDF()
    salt = nacl.utils.random(SALT_BYTES)
    nonce = nacl.utils.random(NONCE_BYTES)
    key = kdf.derive(password, salt)
    try:
        sealed = SecretBox(bytes(key)).encrypt(bytes(private_key), nonce)
    finally:
        secure_clear(key)
    return {
        "encrypted_key": _b64e(sealed.ciphertext),
        "salt": _b64e(salt),
        "nonce": _b64e(nonce),
        "kdf": kdf.params,
    }


def decrypt_private_key(
    encrypted_key: str,
    password: str,
    salt: str,
    nonce: str,
    kdf: Optional[KdfParams] = None,
) -> bytes:
    """Open a sealed private key.

    Raises:
        InvalidPassword: If the password (or the record) is wrong. No
            partial key bytes are ever returned.
        MalformedPayload: If the record fields are not base64 strings.
    """
    for name, value in (("encrypted key", encrypted_key), ("salt", salt), ("nonce", nonce)):
        if not isinstance(value, str):
            raise MalformedPayload(f"Stored {name} must be a base64 string, got {type(value).__name__}")
    try:
        sealed = _b64d(encrypted_key)
        salt_bytes = _b64d(salt)
        nonce_bytes = _b64d(nonce)
    except ValueError as exc:
        raise MalformedPayload(f"Stored key is not valid base64: {exc}") from exc
    if len(nonce_bytes) != NONCE_BYTES:
        raise MalformedPayload(f"Nonce must be {NONCE_BYTES} bytes, got {len(nonce_bytes)}")

    key = derive_key_from_password(password, salt_bytes, kdf)
    try:
        return SecretBox(bytes(key)).decrypt(sealed, nonce_bytes)
    except CryptoError as exc:
        raise InvalidPassword("Failed to decrypt - invalid password") from exc
    finally:
        secure_clear(key)


def password_hint(password: str) -> str:
    """First and last three characters, the rest masked."""
    if len(password) <= 6:
        return "*" * len(password)
    return password[:3] + "*" * (len(password) - 6) + password[-3:]


# ---------------------------------------------------------------------------
# Storage strategies
# ---------------------------------------------------------------------------


class VaultStorage(ABC):
    """Where the sealed keypair rests between sessions."""

    @abstractmethod
    def load(self) -> Optional[StoredKeyPair]:
        """Return the stored record, or None if nothing is stored."""

    @abstractmethod
    def save(self, stored: StoredKeyPair) -> None:
        """Persist the record, replacing any previous one."""

    @abstractmethod
    def clear(self) -> None:
        """Delete the stored record."""


class MemoryVaultStorage(VaultStorage):
    """Keeps the sealed record in memory. For tests and ephemeral sessions."""

    def __init__(self) -> None:
        self._stored: Optional[StoredKeyPair] = None

    def load(self) -> Optional[StoredKeyPair]:
        return self._stored

    def save(self, stored: StoredKeyPair) -> None:
        self._stored = stored

    def clear(self) -> None:
        self._stored = None


class FileVaultStorage(VaultStorage):
    """Sealed record as a JSON file readable only by its owner."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path).expanduser()

    def load(self) -> Optional[StoredKeyPair]:
        if not self.path.exists():
            return None
        try:
            return StoredKeyPair.model_validate_json(self.path.read_text(encoding="utf-8"))
        except ValueError as exc:
            raise MalformedPayload(f"Stored keypair at {self.path} is corrupt: {exc}") from exc

    def save(self, stored: StoredKeyPair) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(stored.model_dump_json(indent=2), encoding="utf-8")
        os.chmod(self.path, 0o600)

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()


# ---------------------------------------------------------------------------
# LocalKeyVault
# ---------------------------------------------------------------------------


def _coerce_stored(data: dict[str, Any]) -> StoredKeyPair:
    """Accept both our field names and the camelCase browser export."""
    renames = {
        "publicKey": "public_key",
        "encryptedPrivateKey": "encrypted_private_key",
    }
    normalized = {renames.get(k, k): v for k, v in data.items()}
    if not normalized.get("salt") or not normalized.get("nonce"):
        raise MalformedPayload("Invalid key format - missing salt or nonce")
    try:
        return StoredKeyPair.model_validate(normalized)
    except ValueError as exc:
        raise MalformedPayload(f"Invalid stored keypair: {exc}") from exc


class LocalKeyVault:
    """Password-protected home of the user's encryption keypair.

    Holds at most one unlocked keypair in memory. The vault is injected
    wherever it is needed; there is no module-level instance.

    Args:
        storage: Where the sealed record lives.
        kdf: KDF used when sealing new records. Records always open with
            the KDF they were sealed with.
    """

    def __init__(self, storage: VaultStorage, kdf: Optional[PasswordKDF] = None) -> None:
        self.storage = storage
        self.kdf = kdf or Argon2idKDF()
        self._lock = threading.Lock()
        self._keypair: Optional[EncryptionKeyPair] = None

    # -- state ---------------------------------------------------------------

    @property
    def state(self) -> VaultState:
        with self._lock:
            if self._keypair is not None:
                return VaultState.UNLOCKED
        if self.storage.load() is None:
            return VaultState.NO_KEY
        return VaultState.LOCKED

    @property
    def is_unlocked(self) -> bool:
        with self._lock:
            return self._keypair is not None

    def has_stored_keypair(self) -> bool:
        return self.storage.load() is not None

    @property
    def current_keypair(self) -> EncryptionKeyPair:
        """The unlocked keypair.

        Raises:
            KeyNotLoaded: If the vault is locked.
        """
        with self._lock:
            if self._keypair is None:
                raise KeyNotLoaded("No keypair loaded. Please unlock your encryption keys.")
            return self._keypair

    @property
    def public_key(self) -> Optional[str]:
        """Hex public key of the stored record, readable while locked."""
        stored = self.storage.load()
        return stored.public_key if stored else None

    def _set_keypair(self, keypair: Optional[EncryptionKeyPair]) -> None:
        with self._lock:
            self._keypair = keypair

    # -- create / persist ----------------------------------------------------

    def generate(self, password: str, seed: Optional[bytes] = None) -> EncryptionKeyPair:
        """Create a keypair (random, or derived from a signing seed), store it, unlock.

        Args:
            password: Password to seal the private key with.
            seed: Optional 32-byte signing-key seed for a recoverable key.

        Returns:
            The new keypair.
        """
        keypair = derive_keypair(seed) if seed is not None else generate_keypair()
        self.store_keypair(keypair, password)
        logger.info("Generated encryption keypair %s", keypair.public_key_hex[:16])
        return keypair

    def seal(self, keypair: EncryptionKeyPair, password: str) -> StoredKeyPair:
        """Seal a keypair into a StoredKeyPair without persisting it."""
        sealed = encrypt_private_key(keypair.private_key, password, self.kdf)
        return StoredKeyPair(
            public_key=keypair.public_key_hex,
            encrypted_private_key=sealed["encrypted_key"],
            salt=sealed["salt"],
            nonce=sealed["nonce"],
            kdf=sealed["kdf"],
        )

    def store_keypair(self, keypair: EncryptionKeyPair, password: str) -> StoredKeyPair:
        """Seal and persist a keypair, and make it the unlocked key."""
        stored = self.seal(keypair, password)
        self.storage.save(stored)
        self._set_keypair(keypair)
        return stored

    @staticmethod
    def open(stored: StoredKeyPair, password: str) -> EncryptionKeyPair:
        """Open a StoredKeyPair with its password.

        Raises:
            InvalidPassword: Wrong password.
            MalformedPayload: The private key does not match the public key.
        """
        private_key = decrypt_private_key(
            stored.encrypted_private_key,
            password,
            stored.salt,
            stored.nonce,
            stored.kdf,
        )
        if public_key_for(private_key).hex() != stored.public_key.lower():
            raise MalformedPayload("Stored private key does not match its public key")
        return EncryptionKeyPair(public_key=stored.public_key, private_key=private_key)

    def load_keypair(self, password: str) -> EncryptionKeyPair:
        """Open the stored keypair and make it the unlocked key.

        Raises:
            NoStoredKey: Nothing has been stored.
            InvalidPassword: Wrong password; the caller may re-prompt.
        """
        stored = self.storage.load()
        if stored is None:
            raise NoStoredKey("No stored keypair")
        try:
            keypair = self.open(stored, password)
        except InvalidPassword:
            logger.warning("Vault unlock failed: invalid password")
            raise
        self._set_keypair(keypair)
        return keypair

    def unlock(self, password: str) -> EncryptionKeyPair:
        """Alias of ``load_keypair`` named for the state machine."""
        return self.load_keypair(password)

    async def unlock_async(self, password: str) -> EncryptionKeyPair:
        """Run the (deliberately slow) unlock in an executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.load_keypair, password)

    def lock(self) -> None:
        """Forget the unlocked keypair. The sealed record stays in storage."""
        self._set_keypair(None)
        logger.debug("Vault locked")

    def clear_stored_keypair(self) -> None:
        """Delete the sealed record and forget any unlocked key."""
        self.storage.clear()
        self._set_keypair(None)
        logger.info("Stored keypair cleared")

    def change_password(self, old_password: str, new_password: str) -> StoredKeyPair:
        """Re-seal the stored key under a new password (fresh salt and nonce)."""
        keypair = self.load_keypair(old_password)
        return self.store_keypair(keypair, new_password)

    # -- export / import -----------------------------------------------------

    def export_keypair(self, password: str) -> str:
        """Portable encrypted backup of the stored record.

        The stored record is wrapped in a second secretbox keyed from
        ``"shadowchain_export_" + password`` with its own salt and nonce.

        Raises:
            NoStoredKey: Nothing to export.
        """
        stored = self.storage.load()
        if stored is None:
            raise NoStoredKey("No keypair to export")

        export_data = {
            "version": EXPORT_VERSION,
            "timestamp": int(time.time() * 1000),
            "data": stored.model_dump(mode="json"),
        }
        sealed = encrypt_private_key(
            json.dumps(export_data).encode("utf-8"),
            EXPORT_PASSWORD_PREFIX + password,
            self.kdf,
        )
        logger.info("Exported keypair %s", stored.public_key[:16])
        return json.dumps({
            "type": EXPORT_TYPE,
            "encrypted": sealed["encrypted_key"],
            "salt": sealed["salt"],
            "nonce": sealed["nonce"],
            "kdf": sealed["kdf"].model_dump(mode="json"),
        })

    def import_keypair(self, exported: str, password: str) -> EncryptionKeyPair:
        """Restore an ``export_keypair`` backup and unlock it.

        The inner record is opened before anything is written, so a wrong
        password leaves the current vault untouched.

        Raises:
            MalformedPayload: Not an export document.
            InvalidPassword: Wrong password for the export or the key inside.
        """
        try:
            parsed = json.loads(exported)
        except json.JSONDecodeError as exc:
            raise MalformedPayload(f"Export is not JSON: {exc}") from exc
        if not isinstance(parsed, dict) or parsed.get("type") != EXPORT_TYPE:
            raise MalformedPayload("Invalid export format")

        try:
            kdf = KdfParams.model_validate(parsed.get("kdf") or {})
        except ValueError as exc:
            raise MalformedPayload(f"Export has invalid KDF parameters: {exc}") from exc

        try:
            inner = decrypt_private_key(
                parsed["encrypted"],
                EXPORT_PASSWORD_PREFIX + password,
                parsed["salt"],
                parsed["nonce"],
                kdf,
            )
        except KeyError as exc:
            raise MalformedPayload(f"Export is missing {exc}") from exc

        try:
            export_data = json.loads(inner.decode("utf-8"))
            stored = _coerce_stored(export_data["data"])
        except (UnicodeDecodeError, json.JSONDecodeError, KeyError, TypeError, AttributeError) as exc:
            raise MalformedPayload(f"Export payload is corrupt: {exc}") from exc

        keypair = self.open(stored, password)
        self.storage.save(stored)
        self._set_keypair(keypair)
        logger.info("Imported keypair %s", stored.public_key[:16])
        return keypair

    def export_keys(self) -> Optional[dict[str, Any]]:
        """The stored record as a plain dict (still password-sealed)."""
        stored = self.storage.load()
        return stored.model_dump(mode="json") if stored else None

    def import_keys(self, keys: dict[str, Any]) -> StoredKeyPair:
        """Store a raw sealed record. The vault is left locked.

        Raises:
            MalformedPayload: Salt or nonce missing, or fields invalid.
        """
        stored = _coerce_stored(keys)
        self.storage.save(stored)
        self._set_keypair(None)
        return stored
