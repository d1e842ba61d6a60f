"""
Content store: where encrypted bundles live, addressed by their hash.

The crypto core only ever sees ``put(bytes) -> id`` and ``get(id) -> bytes``.
Ids are the SHA-256 hex of the stored bytes, so the same bundle always
lands under the same id and a fetched object can be checked against it.

Bundle format (JSON, one per item):
    {"ciphertext": hex, "nonce": hex, "version": 1,
     "algorithm": "xsalsa20poly1305", "timestamp": ms}
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

from .cipher import ALGORITHM
from .errors import ContentNotFound, MalformedPayload, StorageUnavailable
from .models import EncryptedPayload

logger = logging.getLogger("shadowcrypt.store")

BUNDLE_VERSION = 1


def content_id_for(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def encode_bundle(payload: EncryptedPayload, timestamp: Optional[int] = None) -> bytes:
    """Serialize a content payload into a storable bundle."""
    if payload.is_key_wrap:
        raise MalformedPayload("Bundles hold content payloads, not wrapped keys")
    bundle = {
        "ciphertext": payload.ciphertext.hex(),
        "nonce": payload.nonce.hex(),
        "version": BUNDLE_VERSION,
        "algorithm": ALGORITHM,
        "timestamp": timestamp if timestamp is not None else int(time.time() * 1000),
    }
    return json.dumps(bundle).encode("utf-8")


def decode_bundle(data: bytes) -> EncryptedPayload:
    """Parse a stored bundle back into a content payload.

    Raises:
        MalformedPayload: Not JSON, missing fields, wrong version or algorithm.
    """
    try:
        bundle: Any = json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise MalformedPayload(f"Bundle is not JSON: {exc}") from exc
    if not isinstance(bundle, dict):
        raise MalformedPayload("Bundle must be a JSON object")

    missing = [f for f in ("ciphertext", "nonce", "version", "algorithm") if not bundle.get(f)]
    if missing:
        raise MalformedPayload(f"Invalid encrypted content format: missing {', '.join(missing)}")
    if bundle["version"] != BUNDLE_VERSION:
        raise MalformedPayload(f"Unsupported bundle version {bundle['version']!r}")
    if bundle["algorithm"] != ALGORITHM:
        raise MalformedPayload(f"Unsupported bundle algorithm {bundle['algorithm']!r}")

    return EncryptedPayload.from_wire(
        {"ciphertext": bundle["ciphertext"], "nonce": bundle["nonce"]}
    )


class ContentStore(ABC):
    """Opaque content-addressed storage."""

    @abstractmethod
    def put(self, data: bytes) -> str:
        """Store bytes and return their id."""

    @abstractmethod
    def get(self, content_id: str) -> bytes:
        """Fetch bytes by id.

        Raises:
            ContentNotFound: Nothing is stored under the id.
            StorageUnavailable: The store cannot be reached.
        """

    @abstractmethod
    def exists(self, content_id: str) -> bool:
        """True if the id is stored."""


class MemoryContentStore(ContentStore):
    """Content kept in a dict. Test double and single-process cache."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._objects: dict[str, bytes] = {}

    def put(self, data: bytes) -> str:
        cid = content_id_for(data)
        with self._lock:
            self._objects[cid] = bytes(data)
        return cid

    def get(self, content_id: str) -> bytes:
        with self._lock:
            try:
                return self._objects[content_id]
            except KeyError:
                raise ContentNotFound(f"No content stored under {content_id}") from None

    def exists(self, content_id: str) -> bool:
        with self._lock:
            return content_id in self._objects


class DirectoryContentStore(ContentStore):
    """One file per object under a directory, named by id."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root).expanduser()

    def _path(self, content_id: str) -> Path:
        if not content_id or not all(c in "0123456789abcdef" for c in content_id):
            raise MalformedPayload(f"Invalid content id {content_id!r}")
        return self.root / f"{content_id}.json"

    def put(self, data: bytes) -> str:
        cid = content_id_for(data)
        path = self._path(cid)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as exc:
            raise StorageUnavailable(f"Cannot write {path}: {exc}") from exc
        logger.debug("Stored %d bytes as %s", len(data), cid[:16])
        return cid

    def get(self, content_id: str) -> bytes:
        path = self._path(content_id)
        if not path.exists():
            raise ContentNotFound(f"No content stored under {content_id}")
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise StorageUnavailable(f"Cannot read {path}: {exc}") from exc
        if content_id_for(data) != content_id:
            raise MalformedPayload(f"Stored object {content_id[:16]} does not match its id")
        return data

    def exists(self, content_id: str) -> bool:
        return self._path(content_id).exists()
