"""
Key derivation: turning seeds into X25519 encryption keypairs.

The user's account holds a signing key. Its 32-byte seed is the root of
the encryption keypair: the Ed25519 seed is hashed into an X25519 scalar
and the public key is the scalar multiple of the curve base point. The
same seed always yields the same pair, so a lost device can recover its
encryption key from the account seed alone.

Nothing here touches the network or disk.
"""

from __future__ import annotations

import logging
from typing import Union

from nacl.bindings import crypto_scalarmult_base
from nacl.public import PrivateKey
from nacl.signing import SigningKey

from .errors import InvalidKeyLength, InvalidSeedLength
from .models import PRIVATE_KEY_BYTES, PUBLIC_KEY_BYTES, EncryptionKeyPair

logger = logging.getLogger("shadowcrypt.derivation")

SEED_BYTES = 32

OWNERSHIP_TEMPLATE = (
    "I authorize Shadowchain to use encryption key {public_key} for my account {address}"
)


def derive_keypair(seed: bytes) -> EncryptionKeyPair:
    """Derive the encryption keypair for a signing-key seed.

    Args:
        seed: 32-byte signing-key seed.

    Returns:
        EncryptionKeyPair whose private half is the X25519 scalar derived
        from the seed and whose public half is ``scalarmult_base(scalar)``.

    Raises:
        InvalidSeedLength: If the seed is not exactly 32 bytes.
    """
    if not isinstance(seed, (bytes, bytearray)) or len(seed) != SEED_BYTES:
        size = len(seed) if isinstance(seed, (bytes, bytearray)) else "non-bytes"
        raise InvalidSeedLength(f"Seed must be {SEED_BYTES} bytes, got {size}")

    scalar = bytes(SigningKey(bytes(seed)).to_curve25519_private_key())
    return EncryptionKeyPair(
        public_key=crypto_scalarmult_base(scalar),
        private_key=scalar,
    )


def keypair_from_private_key(private_key: bytes) -> EncryptionKeyPair:
    """Rebuild a keypair from a raw 32-byte X25519 scalar.

    Raises:
        InvalidKeyLength: If the private key is not exactly 32 bytes.
    """
    if len(private_key) != PRIVATE_KEY_BYTES:
        raise InvalidKeyLength(
            f"Private key must be {PRIVATE_KEY_BYTES} bytes, got {len(private_key)}"
        )
    return EncryptionKeyPair(
        public_key=crypto_scalarmult_base(bytes(private_key)),
        private_key=bytes(private_key),
    )


def generate_keypair() -> EncryptionKeyPair:
    """Generate a fresh random X25519 keypair."""
    sk = PrivateKey.generate()
    return EncryptionKeyPair(public_key=bytes(sk.public_key), private_key=bytes(sk))


def validate_public_key(value: Union[str, bytes]) -> bytes:
    """Decode and strictly length-check a public key.

    Args:
        value: Raw bytes, or hex text with an optional ``0x`` prefix.

    Returns:
        The 32 raw key bytes.

    Raises:
        InvalidKeyLength: If the value is not valid hex or not 32 bytes.
    """
    if isinstance(value, str):
        text = value[2:] if value.startswith(("0x", "0X")) else value
        try:
            raw = bytes.fromhex(text)
        except ValueError as exc:
            raise InvalidKeyLength(f"Public key is not valid hex: {exc}") from exc
    else:
        raw = bytes(value)

    if len(raw) != PUBLIC_KEY_BYTES:
        raise InvalidKeyLength(
            f"Public key must be {PUBLIC_KEY_BYTES} bytes, got {len(raw)}"
        )
    return raw


def ownership_message(address: str, public_key: Union[str, bytes]) -> str:
    """Build the message an account signs to endorse an encryption key.

    The message is deterministic in ``address`` and the hex public key, so
    the registry can rebuild it byte-for-byte when verifying.
    """
    public_key_hex = validate_public_key(public_key).hex()
    return OWNERSHIP_TEMPLATE.format(public_key=public_key_hex, address=address)
