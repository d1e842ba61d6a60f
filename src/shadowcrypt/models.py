"""
Pydantic models for keys, ciphertext payloads, and registry rows.

Binary fields travel as lowercase hex on the wire. Private key material
is never part of a model's repr.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_serializer, field_validator

from .errors import MalformedPayload

PUBLIC_KEY_BYTES = 32
PRIVATE_KEY_BYTES = 32
NONCE_BYTES = 24
SALT_BYTES = 16
MAC_BYTES = 16


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _hex_to_bytes(value: Any) -> Any:
    """Accept hex strings (optionally 0x-prefixed) wherever bytes are expected."""
    if isinstance(value, str):
        text = value[2:] if value.startswith(("0x", "0X")) else value
        return bytes.fromhex(text)
    return value


class EncryptionKeyPair(BaseModel):
    """An X25519 keypair. Both halves are always produced together."""

    public_key: bytes
    private_key: bytes = Field(repr=False)

    @field_validator("public_key", "private_key", mode="before")
    @classmethod
    def _decode_hex(cls, v: Any) -> Any:
        return _hex_to_bytes(v)

    @field_validator("public_key", "private_key")
    @classmethod
    def _check_length(cls, v: bytes) -> bytes:
        if len(v) != PUBLIC_KEY_BYTES:
            raise ValueError(f"key must be {PUBLIC_KEY_BYTES} bytes, got {len(v)}")
        return v

    @property
    def public_key_hex(self) -> str:
        """Hex encoding used for transport and registry storage."""
        return self.public_key.hex()


class EncryptedPayload(BaseModel):
    """Ciphertext plus the nonce (and, for key-wrap, the ephemeral key) to open it.

    A payload carrying ``ephemeral_public_key`` is an asymmetric key-wrap;
    one without it is symmetric content.
    """

    ciphertext: bytes
    nonce: bytes
    ephemeral_public_key: Optional[bytes] = None

    @field_validator("ciphertext", "nonce", "ephemeral_public_key", mode="before")
    @classmethod
    def _decode_hex(cls, v: Any) -> Any:
        return _hex_to_bytes(v)

    @field_validator("nonce")
    @classmethod
    def _check_nonce(cls, v: bytes) -> bytes:
        if len(v) != NONCE_BYTES:
            raise ValueError(f"nonce must be {NONCE_BYTES} bytes, got {len(v)}")
        return v

    @field_validator("ephemeral_public_key")
    @classmethod
    def _check_ephemeral(cls, v: Optional[bytes]) -> Optional[bytes]:
        if v is not None and len(v) != PUBLIC_KEY_BYTES:
            raise ValueError(
                f"ephemeral public key must be {PUBLIC_KEY_BYTES} bytes, got {len(v)}"
            )
        return v

    @field_serializer("ciphertext", "nonce", "ephemeral_public_key", when_used="json")
    def _encode_hex(self, v: Optional[bytes]) -> Optional[str]:
        return v.hex() if v is not None else None

    @property
    def is_key_wrap(self) -> bool:
        """True for asymmetric (wrapped-key) payloads."""
        return self.ephemeral_public_key is not None

    def to_wire(self) -> dict[str, str]:
        """Wire form: ``{ciphertext, nonce, ephemeralPublicKey?}`` as hex."""
        wire = {"ciphertext": self.ciphertext.hex(), "nonce": self.nonce.hex()}
        if self.ephemeral_public_key is not None:
            wire["ephemeralPublicKey"] = self.ephemeral_public_key.hex()
        return wire

    def to_json(self) -> str:
        return json.dumps(self.to_wire(), separators=(",", ":"))

    @classmethod
    def from_wire(cls, data: Any) -> "EncryptedPayload":
        """Parse the wire form.

        Raises:
            MalformedPayload: If fields are missing, not hex, or the wrong length.
        """
        if not isinstance(data, dict):
            raise MalformedPayload("encrypted payload must be a JSON object")
        try:
            return cls(
                ciphertext=data["ciphertext"],
                nonce=data["nonce"],
                ephemeral_public_key=data.get(
                    "ephemeralPublicKey", data.get("ephemeral_public_key")
                ),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedPayload(f"invalid encrypted payload: {exc}") from exc

    @classmethod
    def from_json(cls, text: str | bytes) -> "EncryptedPayload":
        try:
            data = json.loads(text)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise MalformedPayload(f"encrypted payload is not JSON: {exc}") from exc
        return cls.from_wire(data)


@dataclass
class EncryptedContentResult:
    """Output of hybrid encryption: the content payload and its wrapped key.

    ``symmetric_key`` is only populated when the caller asks for it; the
    caller then owns the buffer and must clear it.
    """

    content: EncryptedPayload
    wrapped_key: EncryptedPayload
    symmetric_key: Optional[bytearray] = field(default=None, repr=False)


class KdfAlgorithm(str, Enum):
    """Password key-derivation schemes the vault can open."""

    ARGON2ID = "argon2id"
    ITERATED_SHA512 = "iterated-sha512"


class KdfParams(BaseModel):
    """Algorithm and cost parameters recorded next to every encrypted key."""

    algorithm: KdfAlgorithm = KdfAlgorithm.ARGON2ID
    opslimit: int = Field(default=2, description="Argon2id passes")
    memlimit: int = Field(default=64 * 1024 * 1024, description="Argon2id memory in bytes")
    iterations: int = Field(default=1000, description="Re-hash rounds for iterated-sha512")


class StoredKeyPair(BaseModel):
    """A keypair as persisted on the client: public half clear, private half sealed."""

    public_key: str = Field(description="Hex-encoded X25519 public key")
    encrypted_private_key: str = Field(description="Base64 secretbox of the private key")
    salt: str = Field(description="Base64 16-byte KDF salt")
    nonce: str = Field(description="Base64 24-byte secretbox nonce")
    kdf: KdfParams = Field(default_factory=KdfParams)


class VaultState(str, Enum):
    """Client key lifecycle as seen by the local vault."""

    NO_KEY = "no_key"
    LOCKED = "locked"
    UNLOCKED = "unlocked"


class KeyAction(str, Enum):
    """Lifecycle transitions recorded in key history."""

    CREATED = "created"
    ROTATED = "rotated"
    REVOKED = "revoked"


class UserEncryptionKey(BaseModel):
    """A registered public encryption key (server side)."""

    id: int
    address: str
    public_key: str = Field(description="Hex-encoded X25519 public key")
    signed_message: Optional[str] = Field(
        default=None, description="Hex signature proving the address endorses this key"
    )
    device_id: Optional[str] = None
    label: Optional[str] = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)


class KeyHistoryEntry(BaseModel):
    """Append-only audit record for one key lifecycle transition."""

    id: Optional[int] = None
    address: str
    public_key: str
    action: KeyAction
    reason: Optional[str] = None
    previous_public_key: Optional[str] = None
    device_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)


class ContentSource(str, Enum):
    """Where a piece of shadowed content came from."""

    GITHUB = "github"
    TWITTER = "twitter"


class ShadowContent(BaseModel):
    """Plaintext shape of a shadowed item before encryption."""

    source: ContentSource
    url: str
    body: str
    timestamp: int = Field(description="Milliseconds since the epoch")
    raw_meta: dict[str, Any] = Field(default_factory=dict)

    def to_bytes(self) -> bytes:
        return self.model_dump_json().encode("utf-8")


class ShadowItemRef(BaseModel):
    """What the ledger records per item: where the bundle lives and its wrapped key."""

    content_id: str
    wrapped_key: EncryptedPayload
    source: ContentSource = ContentSource.GITHUB
    metadata: dict[str, Any] = Field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        return {
            "contentId": self.content_id,
            "encryptedKey": self.wrapped_key.to_wire(),
            "source": self.source.value,
            "metadata": self.metadata,
        }

    @classmethod
    def from_wire(cls, data: Any) -> "ShadowItemRef":
        """Parse a ref from its wire form.

        Raises:
            MalformedPayload: If the ref or its wrapped key does not parse.
        """
        if not isinstance(data, dict):
            raise MalformedPayload("item ref must be a JSON object")
        wrapped = EncryptedPayload.from_wire(data.get("encryptedKey"))
        try:
            return cls(
                content_id=data["contentId"],
                wrapped_key=wrapped,
                source=data.get("source", ContentSource.GITHUB.value),
                metadata=data.get("metadata") or {},
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedPayload(f"invalid item ref: {exc}") from exc
