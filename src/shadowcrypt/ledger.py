"""
Ledger submissions: recording a shadowed item on chain.

The ledger stores, per item, the content id of the encrypted bundle and
the wrapped content key. Two submission schemas exist in the wild:

    V1  submit_shadow_item(content_id, sealed_key, source, metadata)
        sealed_key is the packed ``ephemeral_pk || nonce || ciphertext``.
    V2  submit_shadow_item(content_id, source, metadata)
        the wrapped key travels inside the metadata JSON as ``encryptedKey``.

The schema is negotiated once, when a ShadowLedger is built, and every
call after that uses it. Nothing inspects the remote method per call.
"""

from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Optional

from .cipher import pack_sealed_key, unpack_sealed_key
from .errors import MalformedPayload, UnsupportedSchema
from .models import ContentSource, EncryptedPayload, ShadowItemRef

logger = logging.getLogger("shadowcrypt.ledger")

SUBMIT_METHOD = "submit_shadow_item"

# On-chain enum order.
SOURCE_INDEX = {ContentSource.GITHUB: 0, ContentSource.TWITTER: 1}
INDEX_SOURCE = {v: k for k, v in SOURCE_INDEX.items()}


class SubmissionSchema(IntEnum):
    """Versions of the submit call a ledger may expose."""

    V1_SEALED_KEY = 1
    V2_KEY_IN_METADATA = 2


@dataclass(frozen=True)
class SubmissionCall:
    """A fully-formed ledger call, ready for a client to sign and send."""

    schema: SubmissionSchema
    method: str
    args: tuple


@dataclass
class LedgerItem:
    """One recorded item: the decoded ref, or why it could not be decoded."""

    content_id: str
    ref: Optional[ShadowItemRef] = None
    error: Optional[MalformedPayload] = None


class LedgerClient(ABC):
    """Transport to the ledger. Signing and sending live behind this."""

    @abstractmethod
    def schema_version(self) -> int:
        """The submission schema the ledger speaks."""

    @abstractmethod
    def submit(self, address: str, call: SubmissionCall) -> str:
        """Sign and send a call on behalf of ``address``. Returns a receipt id."""

    @abstractmethod
    def items(self, address: str) -> list[tuple]:
        """Raw argument tuples of every item submitted by ``address``."""


class MemoryLedger(LedgerClient):
    """In-process ledger for tests and offline runs."""

    def __init__(self, schema: SubmissionSchema = SubmissionSchema.V2_KEY_IN_METADATA) -> None:
        self.schema = schema
        self._lock = threading.Lock()
        self._items: dict[str, list[tuple]] = {}
        self._count = 0

    def schema_version(self) -> int:
        return int(self.schema)

    def submit(self, address: str, call: SubmissionCall) -> str:
        if call.schema != self.schema:
            raise UnsupportedSchema(
                f"Ledger speaks schema {int(self.schema)}, call uses {int(call.schema)}"
            )
        with self._lock:
            self._items.setdefault(address, []).append(call.args)
            self._count += 1
            return f"0x{self._count:064x}"

    def items(self, address: str) -> list[tuple]:
        with self._lock:
            return list(self._items.get(address, []))


def _metadata_bytes(metadata: dict[str, Any]) -> bytes:
    return json.dumps(metadata, separators=(",", ":"), sort_keys=True).encode("utf-8")


def _metadata_dict(raw: Any) -> dict[str, Any]:
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    if not raw:
        return {}
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        raise ValueError("metadata must be a JSON object")
    return parsed


def build_call(schema: SubmissionSchema, ref: ShadowItemRef) -> SubmissionCall:
    """Shape an item ref into the call for a schema."""
    source = SOURCE_INDEX[ref.source]
    if schema == SubmissionSchema.V1_SEALED_KEY:
        args: tuple = (
            ref.content_id,
            pack_sealed_key(ref.wrapped_key),
            source,
            _metadata_bytes(ref.metadata),
        )
    else:
        metadata = dict(ref.metadata)
        metadata["encryptedKey"] = ref.wrapped_key.to_wire()
        args = (ref.content_id, source, _metadata_bytes(metadata))
    return SubmissionCall(schema=schema, method=SUBMIT_METHOD, args=args)


def parse_call(schema: SubmissionSchema, args: tuple) -> ShadowItemRef:
    """Inverse of ``build_call``.

    Raises:
        MalformedPayload: If the arguments do not fit the schema.
    """
    try:
        if schema == SubmissionSchema.V1_SEALED_KEY:
            content_id, sealed_key, source, raw_meta = args
            wrapped = unpack_sealed_key(bytes(sealed_key))
            metadata = _metadata_dict(raw_meta)
        else:
            content_id, source, raw_meta = args
            metadata = _metadata_dict(raw_meta)
            wrapped = EncryptedPayload.from_wire(metadata.pop("encryptedKey", None))
        return ShadowItemRef(
            content_id=content_id,
            wrapped_key=wrapped,
            source=INDEX_SOURCE[source],
            metadata=metadata,
        )
    except MalformedPayload:
        raise
    except (TypeError, ValueError, KeyError) as exc:
        raise MalformedPayload(f"Ledger item does not match schema {int(schema)}: {exc}") from exc


class ShadowLedger:
    """Submits and reads shadow items with a schema fixed at construction.

    Args:
        client: Ledger transport.

    Raises:
        UnsupportedSchema: If the ledger's schema is unknown to this client.
    """

    def __init__(self, client: LedgerClient) -> None:
        self.client = client
        version = client.schema_version()
        try:
            self.schema = SubmissionSchema(version)
        except ValueError as exc:
            raise UnsupportedSchema(f"Unknown ledger submission schema {version}") from exc
        logger.info("Ledger submission schema negotiated: v%d", int(self.schema))

    def submit_item(self, address: str, ref: ShadowItemRef) -> str:
        """Record an item for ``address``. Returns the client's receipt."""
        call = build_call(self.schema, ref)
        receipt = self.client.submit(address, call)
        logger.debug("Submitted item %s for %s: %s", ref.content_id[:16], address, receipt)
        return receipt

    def read_items(self, address: str) -> list[LedgerItem]:
        """Every item ``address`` has submitted, each decoded on its own.

        An item that does not parse comes back with ``error`` set; the
        rest are unaffected. Order is submission order.
        """
        items: list[LedgerItem] = []
        for args in self.client.items(address):
            content_id = args[0] if args and isinstance(args[0], str) else ""
            try:
                items.append(LedgerItem(content_id, ref=parse_call(self.schema, args)))
            except MalformedPayload as exc:
                logger.warning("Unreadable ledger item %s for %s: %s", content_id[:16], address, exc)
                items.append(LedgerItem(content_id, error=exc))
        return items

    def item_refs(self, address: str) -> list[ShadowItemRef]:
        """Every item ``address`` has submitted, decoded.

        Raises:
            MalformedPayload: If any item does not parse.
        """
        return [parse_call(self.schema, args) for args in self.client.items(address)]
