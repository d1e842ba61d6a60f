"""
Ownership proofs: an account signing off on an encryption key.

The registry never trusts a public key on its own. The account that will
receive encrypted content signs the ownership message (see
``derivation.ownership_message``) and the registry checks that signature
against the address before the key goes live.

Verification is a strategy chosen at construction. The shipped verifier
treats an address as a hex-encoded Ed25519 verify key.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric import ed25519

from .derivation import ownership_message

logger = logging.getLogger("shadowcrypt.signing")


def _unhex(value: str) -> bytes:
    text = value[2:] if value.startswith(("0x", "0X")) else value
    return bytes.fromhex(text)


class SignatureVerifier(ABC):
    """Checks that an address endorsed a message."""

    @abstractmethod
    def verify(self, address: str, message: bytes, signature: bytes) -> bool:
        """Return True if ``signature`` over ``message`` verifies for ``address``."""

    def verify_ownership(
        self,
        address: str,
        public_key: Union[str, bytes],
        signature_hex: str,
    ) -> bool:
        """Verify a hex signature over the ownership message for this key."""
        try:
            signature = _unhex(signature_hex)
        except ValueError:
            logger.debug("Ownership signature for %s is not hex", address)
            return False
        message = ownership_message(address, public_key).encode("utf-8")
        return self.verify(address, message, signature)


class Ed25519AddressVerifier(SignatureVerifier):
    """Addresses are hex Ed25519 verify keys (optional ``0x`` prefix)."""

    def verify(self, address: str, message: bytes, signature: bytes) -> bool:
        try:
            pub = ed25519.Ed25519PublicKey.from_public_bytes(_unhex(address))
        except ValueError:
            logger.debug("Address %s is not an Ed25519 verify key", address)
            return False
        try:
            pub.verify(signature, message)
            return True
        except InvalidSignature:
            return False


def address_from_seed(seed: bytes) -> str:
    """The address (hex verify key) belonging to an Ed25519 signing seed."""
    sk = ed25519.Ed25519PrivateKey.from_private_bytes(seed)
    return sk.public_key().public_bytes_raw().hex()


def sign_ownership(seed: bytes, address: str, public_key: Union[str, bytes]) -> str:
    """Sign the ownership message with the account's signing seed.

    This is the client half of the proof; the registry only ever verifies.

    Returns:
        Hex-encoded Ed25519 signature.
    """
    sk = ed25519.Ed25519PrivateKey.from_private_bytes(seed)
    message = ownership_message(address, public_key).encode("utf-8")
    return sk.sign(message).hex()
