"""
Error taxonomy for the shadowcrypt core.

Every failure the core reports is a ShadowCryptError subclass so callers
can catch the family in one place and still branch on the exact cause.

Terminal errors (retrying with the same inputs cannot succeed):
    DecryptionFailed, SignatureInvalid, MalformedPayload

Recoverable errors (the caller can fix the input and try again):
    InvalidPassword, KeyNotLoaded

Collaborator errors (the caller owns retry and back-off):
    StorageUnavailable, ContentNotFound, UnsupportedSchema
"""

from __future__ import annotations


class ShadowCryptError(Exception):
    """Base class for every error raised by shadowcrypt."""


class InvalidSeedLength(ShadowCryptError, ValueError):
    """A key-derivation seed was not exactly 32 bytes."""


class InvalidKeyLength(ShadowCryptError, ValueError):
    """A public or private key did not decode to exactly 32 bytes."""


class SignatureInvalid(ShadowCryptError):
    """An ownership proof did not verify against the claimed address."""


class DecryptionFailed(ShadowCryptError):
    """Authenticated decryption failed.

    Wrong key and tampered ciphertext are indistinguishable by design.
    """


class InvalidPassword(ShadowCryptError):
    """The vault password did not open the stored private key."""


class KeyNotLoaded(ShadowCryptError):
    """The local vault is locked; the caller must prompt for the password."""


class NoStoredKey(ShadowCryptError):
    """No keypair has been stored in the local vault yet."""


class MalformedPayload(ShadowCryptError, ValueError):
    """A ciphertext bundle or payload did not parse."""


class StorageUnavailable(ShadowCryptError):
    """An external storage collaborator could not be reached."""


class ContentNotFound(ShadowCryptError, LookupError):
    """The content store has no object under the requested id."""


class KeyNotFound(ShadowCryptError, LookupError):
    """The registry has no active key for the address."""


class KeyRevoked(ShadowCryptError):
    """The public key was revoked and cannot be registered again."""


class UnsupportedSchema(ShadowCryptError):
    """The ledger advertised a submission schema this client cannot speak."""
