"""Tests for payload and ref models."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from shadowcrypt.errors import MalformedPayload
from shadowcrypt.models import (
    ContentSource,
    EncryptedPayload,
    EncryptionKeyPair,
    ShadowContent,
    ShadowItemRef,
)

NONCE = bytes(range(24))
EPH = bytes(range(32))


class TestEncryptedPayload:
    """Wire form and validation."""

    def test_content_payload_wire(self) -> None:
        p = EncryptedPayload(ciphertext=b"\x01\x02", nonce=NONCE)
        assert p.to_wire() == {"ciphertext": "0102", "nonce": NONCE.hex()}
        assert not p.is_key_wrap

    def test_key_wrap_wire(self) -> None:
        p = EncryptedPayload(ciphertext=b"\x01", nonce=NONCE, ephemeral_public_key=EPH)
        assert p.to_wire()["ephemeralPublicKey"] == EPH.hex()
        assert p.is_key_wrap

    def test_from_wire_snake_case(self) -> None:
        p = EncryptedPayload.from_wire(
            {"ciphertext": "01", "nonce": NONCE.hex(), "ephemeral_public_key": EPH.hex()}
        )
        assert p.ephemeral_public_key == EPH

    def test_from_hex_with_prefix(self) -> None:
        p = EncryptedPayload(ciphertext="0x01", nonce="0x" + NONCE.hex())
        assert p.ciphertext == b"\x01"

    def test_json_dump_is_hex(self) -> None:
        p = EncryptedPayload(ciphertext=b"\xff", nonce=NONCE)
        assert '"ff"' in p.model_dump_json()

    @pytest.mark.parametrize(
        "wire",
        [
            None,
            "string",
            {"nonce": NONCE.hex()},
            {"ciphertext": "01", "nonce": "00"},
            {"ciphertext": "01", "nonce": NONCE.hex(), "ephemeralPublicKey": "00"},
            {"ciphertext": "nothex", "nonce": NONCE.hex()},
        ],
    )
    def test_from_wire_malformed(self, wire) -> None:
        with pytest.raises(MalformedPayload):
            EncryptedPayload.from_wire(wire)

    def test_from_json_not_json(self) -> None:
        with pytest.raises(MalformedPayload):
            EncryptedPayload.from_json("{")


class TestKeyPairModel:
    def test_rejects_wrong_lengths(self) -> None:
        with pytest.raises(ValidationError):
            EncryptionKeyPair(public_key=b"\x00" * 31, private_key=b"\x00" * 32)


class TestShadowItemRef:
    """Ledger-facing ref."""

    def test_round_trip(self) -> None:
        ref = ShadowItemRef(
            content_id="ab" * 32,
            wrapped_key=EncryptedPayload(ciphertext=b"\x01", nonce=NONCE, ephemeral_public_key=EPH),
            source=ContentSource.TWITTER,
            metadata={"a": 1},
        )
        wire = ref.to_wire()
        assert wire["contentId"] == "ab" * 32
        assert wire["source"] == "twitter"
        assert ShadowItemRef.from_wire(wire) == ref

    def test_missing_key(self) -> None:
        with pytest.raises(MalformedPayload):
            ShadowItemRef.from_wire({"contentId": "ab"})

    def test_bad_source(self) -> None:
        wire = {
            "contentId": "ab",
            "encryptedKey": {"ciphertext": "01", "nonce": NONCE.hex(), "ephemeralPublicKey": EPH.hex()},
            "source": "myspace",
        }
        with pytest.raises(MalformedPayload):
            ShadowItemRef.from_wire(wire)


class TestShadowContent:
    def test_to_bytes_is_json(self) -> None:
        item = ShadowContent(source="github", url="u", body="b", timestamp=5)
        assert ShadowContent.model_validate_json(item.to_bytes()) == item
