"""
Hybrid cipher: the cryptographic heart of shadowcrypt.

Content is sealed in two layers:

    plaintext ──secretbox(K, n1)──▶ content payload   {ciphertext, nonce}
    K ──box(eph_sk → recipient_pk, n2)──▶ wrapped key {ciphertext, nonce, ephemeralPublicKey}

K is a fresh 256-bit key per item, n1/n2 are fresh 24-byte nonces, and
eph is a single-use X25519 keypair, so compromising one wrapped key says
nothing about any other. Both layers are XSalsa20-Poly1305: a flipped bit
anywhere fails the MAC and nothing is ever returned.

Key buffers are bytearrays and are zeroed as soon as they are consumed.
Python cannot guarantee no other copy exists; clearing is best effort.
"""

from __future__ import annotations

import logging
from typing import Union

import nacl.utils
from nacl.bindings import crypto_scalarmult_base
from nacl.exceptions import CryptoError
from nacl.public import Box, PrivateKey, PublicKey
from nacl.secret import SecretBox

from .errors import DecryptionFailed, InvalidKeyLength, MalformedPayload
from .models import (
    NONCE_BYTES,
    PRIVATE_KEY_BYTES,
    PUBLIC_KEY_BYTES,
    EncryptedContentResult,
    EncryptedPayload,
    ShadowContent,
)

logger = logging.getLogger("shadowcrypt.cipher")

SYMMETRIC_KEY_BYTES = SecretBox.KEY_SIZE
ALGORITHM = "xsalsa20poly1305"

# Field prime for Curve25519; valid u-coordinates are strictly below it.
_CURVE_P = 2**255 - 19

Plaintext = Union[bytes, bytearray, str, ShadowContent]


def secure_clear(*buffers: bytearray) -> None:
    """Overwrite mutable buffers with zeros in place."""
    for buf in buffers:
        if buf:
            buf[:] = bytes(len(buf))


def generate_symmetric_key() -> bytearray:
    """A fresh random 256-bit content key, as a clearable buffer."""
    return bytearray(nacl.utils.random(SYMMETRIC_KEY_BYTES))


def generate_nonce() -> bytes:
    """A fresh random 24-byte nonce (secretbox and box share the size)."""
    return nacl.utils.random(NONCE_BYTES)


def _to_bytes(content: Plaintext) -> bytes:
    if isinstance(content, ShadowContent):
        return content.to_bytes()
    if isinstance(content, str):
        return content.encode("utf-8")
    return bytes(content)


def _is_canonical_point(public_key: bytes) -> bool:
    """Reject encodings X25519 would silently reduce (e.g. a set top bit)."""
    return int.from_bytes(public_key, "little") < _CURVE_P


def _require_private_key(private_key: Union[bytes, bytearray]) -> bytes:
    if len(private_key) != PRIVATE_KEY_BYTES:
        raise InvalidKeyLength(
            f"Private key must be {PRIVATE_KEY_BYTES} bytes, got {len(private_key)}"
        )
    return bytes(private_key)


def _require_public_key(public_key: Union[bytes, bytearray]) -> bytes:
    if len(public_key) != PUBLIC_KEY_BYTES:
        raise InvalidKeyLength(
            f"Public key must be {PUBLIC_KEY_BYTES} bytes, got {len(public_key)}"
        )
    return bytes(public_key)


# ---------------------------------------------------------------------------
# Symmetric layer (content)
# ---------------------------------------------------------------------------


def encrypt_symmetric(content: Plaintext, key: Union[bytes, bytearray]) -> EncryptedPayload:
    """Seal content under a symmetric key with a fresh nonce.

    Returns:
        Content payload (no ephemeral key); ciphertext is plaintext + 16-byte MAC.
    """
    if len(key) != SYMMETRIC_KEY_BYTES:
        raise InvalidKeyLength(
            f"Symmetric key must be {SYMMETRIC_KEY_BYTES} bytes, got {len(key)}"
        )
    nonce = generate_nonce()
    sealed = SecretBox(bytes(key)).encrypt(_to_bytes(content), nonce)
    return EncryptedPayload(ciphertext=sealed.ciphertext, nonce=nonce)


def decrypt_symmetric(payload: EncryptedPayload, key: Union[bytes, bytearray]) -> bytes:
    """Open a content payload.

    Raises:
        DecryptionFailed: On wrong key or any tampering.
    """
    if len(key) != SYMMETRIC_KEY_BYTES:
        raise DecryptionFailed("Decryption failed: invalid key or corrupted data")
    try:
        return SecretBox(bytes(key)).decrypt(payload.ciphertext, payload.nonce)
    except CryptoError as exc:
        raise DecryptionFailed("Decryption failed: invalid key or corrupted data") from exc


# ---------------------------------------------------------------------------
# Asymmetric layer (key-wrap)
# ---------------------------------------------------------------------------


def encrypt_asymmetric(
    data: Union[bytes, bytearray],
    recipient_public_key: Union[bytes, bytearray],
) -> EncryptedPayload:
    """Box ``data`` to a recipient from a fresh single-use ephemeral keypair."""
    recipient = PublicKey(_require_public_key(recipient_public_key))
    ephemeral = PrivateKey.generate()
    nonce = generate_nonce()
    sealed = Box(ephemeral, recipient).encrypt(bytes(data), nonce)
    return EncryptedPayload(
        ciphertext=sealed.ciphertext,
        nonce=nonce,
        ephemeral_public_key=bytes(ephemeral.public_key),
    )


def decrypt_asymmetric(
    payload: EncryptedPayload,
    recipient_private_key: Union[bytes, bytearray],
) -> bytearray:
    """Open a wrapped-key payload with the recipient's private key.

    Returns:
        The recovered bytes as a clearable buffer.

    Raises:
        MalformedPayload: If the payload has no ephemeral public key.
        DecryptionFailed: On wrong key or any tampering.
    """
    if payload.ephemeral_public_key is None:
        raise MalformedPayload("Missing ephemeral public key for decryption")
    secret = _require_private_key(recipient_private_key)
    if not _is_canonical_point(payload.ephemeral_public_key):
        raise DecryptionFailed("Asymmetric decryption failed: invalid key or corrupted data")
    try:
        box = Box(PrivateKey(secret), PublicKey(payload.ephemeral_public_key))
        return bytearray(box.decrypt(payload.ciphertext, payload.nonce))
    except CryptoError as exc:
        raise DecryptionFailed(
            "Asymmetric decryption failed: invalid key or corrupted data"
        ) from exc


def compute_shared_secret(
    public_key: Union[bytes, bytearray],
    private_key: Union[bytes, bytearray],
) -> bytes:
    """Precomputed box key between a public and a private key."""
    box = Box(PrivateKey(_require_private_key(private_key)), PublicKey(_require_public_key(public_key)))
    return box.shared_key()


# ---------------------------------------------------------------------------
# Hybrid flow
# ---------------------------------------------------------------------------


def encrypt_content(
    content: Plaintext,
    recipient_public_key: Union[bytes, bytearray],
    return_key: bool = False,
) -> EncryptedContentResult:
    """Encrypt content so only the holder of the recipient's private key can read it.

    Args:
        content: Bytes, text, or a ShadowContent (serialized as JSON).
        recipient_public_key: 32-byte X25519 public key.
        return_key: Hand the caller a copy of the content key. The caller
            owns that buffer and must ``secure_clear`` it.

    Returns:
        EncryptedContentResult with the content payload and the wrapped key.
    """
    recipient = _require_public_key(recipient_public_key)
    plaintext = _to_bytes(content)
    symmetric_key = generate_symmetric_key()
    try:
        encrypted = encrypt_symmetric(plaintext, symmetric_key)
        wrapped = encrypt_asymmetric(symmetric_key, recipient)
        handed_out = bytearray(symmetric_key) if return_key else None
    finally:
        secure_clear(symmetric_key)

    logger.debug(
        "Content encrypted: %d bytes -> %d ciphertext, %d wrapped key",
        len(plaintext),
        len(encrypted.ciphertext),
        len(wrapped.ciphertext),
    )
    return EncryptedContentResult(
        content=encrypted, wrapped_key=wrapped, symmetric_key=handed_out
    )


def decrypt_content(
    content: EncryptedPayload,
    wrapped_key: EncryptedPayload,
    recipient_private_key: Union[bytes, bytearray],
) -> bytes:
    """Recover plaintext from a content payload and its wrapped key.

    Raises:
        DecryptionFailed: Wrong key or tampering in either payload.
        MalformedPayload: The wrapped key carries no ephemeral public key.
    """
    symmetric_key = decrypt_asymmetric(wrapped_key, recipient_private_key)
    try:
        if len(symmetric_key) != SYMMETRIC_KEY_BYTES:
            raise DecryptionFailed("Recovered content key has the wrong length")
        return decrypt_symmetric(content, symmetric_key)
    finally:
        secure_clear(symmetric_key)


def decrypt_text(
    content: EncryptedPayload,
    wrapped_key: EncryptedPayload,
    recipient_private_key: Union[bytes, bytearray],
) -> str:
    """``decrypt_content`` decoded as UTF-8."""
    plaintext = decrypt_content(content, wrapped_key, recipient_private_key)
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise MalformedPayload("Decrypted content is not UTF-8 text") from exc


# ---------------------------------------------------------------------------
# Compact sealed-key form
# ---------------------------------------------------------------------------


def pack_sealed_key(wrapped_key: EncryptedPayload) -> bytes:
    """Flatten a wrapped key to ``ephemeral_pk || nonce || ciphertext``."""
    if wrapped_key.ephemeral_public_key is None:
        raise MalformedPayload("Only key-wrap payloads can be packed")
    return wrapped_key.ephemeral_public_key + wrapped_key.nonce + wrapped_key.ciphertext


def unpack_sealed_key(sealed: bytes) -> EncryptedPayload:
    """Inverse of ``pack_sealed_key``.

    Raises:
        MalformedPayload: If the blob is too short to hold key, nonce and MAC.
    """
    header = PUBLIC_KEY_BYTES + NONCE_BYTES
    if len(sealed) <= header + SecretBox.MACBYTES:
        raise MalformedPayload(f"Sealed key too short: {len(sealed)} bytes")
    return EncryptedPayload(
        ephemeral_public_key=sealed[:PUBLIC_KEY_BYTES],
        nonce=sealed[PUBLIC_KEY_BYTES:header],
        ciphertext=sealed[header:],
    )


def public_key_for(private_key: Union[bytes, bytearray]) -> bytes:
    """X25519 public key for a private scalar."""
    return crypto_scalarmult_base(_require_private_key(private_key))
