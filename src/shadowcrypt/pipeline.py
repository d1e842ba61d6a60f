"""
Decryption pipeline: from a content id back to plaintext.

    ref ──store.get──▶ bundle ──decode──▶ content payload ─┐
    vault.current_keypair ─────────────────────────────────┼─▶ decrypt_content ──▶ plaintext
    ref.wrapped_key ───────────────────────────────────────┘

Failures are kept apart so a caller can react to each:
    KeyNotLoaded        vault is locked; prompt for the password
    ContentNotFound     nothing stored under the id
    StorageUnavailable  store unreachable; caller retries
    MalformedPayload    bundle or ref does not parse
    DecryptionFailed    wrong key or tampering; do not retry

Batches run item by item on a worker pool. One item failing, or being
cancelled, never touches its siblings.
"""

from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Optional, Union

from .cipher import Plaintext, decrypt_content, encrypt_content
from .errors import (
    ContentNotFound,
    DecryptionFailed,
    KeyNotLoaded,
    MalformedPayload,
    ShadowCryptError,
    StorageUnavailable,
)
from .ledger import ShadowLedger
from .models import ContentSource, EncryptedPayload, ShadowContent, ShadowItemRef
from .store import ContentStore, decode_bundle, encode_bundle
from .vault import LocalKeyVault

logger = logging.getLogger("shadowcrypt.pipeline")


def seal(
    content: Plaintext,
    recipient_public_key: bytes,
    store: ContentStore,
    source: Optional[ContentSource] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> ShadowItemRef:
    """Encrypt content, store the bundle, and return the ref to record.

    Args:
        content: Plaintext; a ShadowContent also supplies the source.
        recipient_public_key: 32-byte X25519 public key.
        store: Where the bundle goes.
        source: Overrides the source taken from a ShadowContent.
        metadata: Extra metadata carried on the ref.
    """
    if source is None:
        source = content.source if isinstance(content, ShadowContent) else ContentSource.GITHUB
    result = encrypt_content(content, recipient_public_key)
    content_id = store.put(encode_bundle(result.content))
    return ShadowItemRef(
        content_id=content_id,
        wrapped_key=result.wrapped_key,
        source=source,
        metadata=metadata or {},
    )


@dataclass
class DecryptedItem:
    """Plaintext of one item plus where it came from."""

    content_id: str
    plaintext: bytes = field(repr=False)
    source: ContentSource = ContentSource.GITHUB
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str:
        return self.plaintext.decode("utf-8", errors="replace")

    @property
    def display_text(self) -> str:
        """The body of a JSON item (``body``, else ``content``), or the raw text."""
        try:
            parsed = json.loads(self.plaintext)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return self.text
        if isinstance(parsed, dict):
            for key in ("body", "content"):
                if isinstance(parsed.get(key), str):
                    return parsed[key]
        return self.text

    def as_shadow_content(self) -> ShadowContent:
        """Parse the plaintext as a ShadowContent.

        Raises:
            MalformedPayload: If it is not one.
        """
        try:
            return ShadowContent.model_validate_json(self.plaintext)
        except ValueError as exc:
            raise MalformedPayload(f"Item {self.content_id[:16]} is not shadow content") from exc


class ItemStatus(str, Enum):
    """Outcome of one batch item."""

    DECRYPTED = "decrypted"
    LOCKED = "locked"
    NOT_FOUND = "not_found"
    UNAVAILABLE = "unavailable"
    MALFORMED = "malformed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ERROR = "error"


_STATUS_FOR_ERROR = (
    (KeyNotLoaded, ItemStatus.LOCKED),
    (ContentNotFound, ItemStatus.NOT_FOUND),
    (StorageUnavailable, ItemStatus.UNAVAILABLE),
    (MalformedPayload, ItemStatus.MALFORMED),
    (DecryptionFailed, ItemStatus.FAILED),
)


def status_for(error: BaseException) -> ItemStatus:
    for error_type, status in _STATUS_FOR_ERROR:
        if isinstance(error, error_type):
            return status
    return ItemStatus.ERROR


@dataclass
class ItemResult:
    """What happened to one item in a batch."""

    content_id: str
    status: ItemStatus
    item: Optional[DecryptedItem] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.status == ItemStatus.DECRYPTED


class ItemCancelled(ShadowCryptError):
    """A batch item was cancelled before it finished."""


class DecryptionPipeline:
    """Fetches, parses and decrypts stored items with the vault's key.

    Args:
        store: Content store holding the bundles.
        vault: Local vault; must be unlocked for anything to decrypt.
        max_workers: Worker threads for batches.
    """

    def __init__(self, store: ContentStore, vault: LocalKeyVault, max_workers: int = 4) -> None:
        self.store = store
        self.vault = vault
        self.max_workers = max_workers
        self._executor: Optional[ThreadPoolExecutor] = None
        self._executor_lock = threading.Lock()

    def _pool(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.max_workers, thread_name_prefix="shadowcrypt-decrypt"
                )
            return self._executor

    def close(self) -> None:
        with self._executor_lock:
            if self._executor is not None:
                self._executor.shutdown(wait=True, cancel_futures=True)
                self._executor = None

    def __enter__(self) -> "DecryptionPipeline":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def decrypt_item(
        self,
        ref: Union[ShadowItemRef, str],
        wrapped_key: Optional[EncryptedPayload] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> DecryptedItem:
        """Decrypt one stored item.

        Args:
            ref: Item ref, or a bare content id together with ``wrapped_key``.
            wrapped_key: Wrapped content key when ``ref`` is a content id.
            cancel_event: Checked between stages; once set the item stops.

        Raises:
            KeyNotLoaded, ContentNotFound, StorageUnavailable,
            MalformedPayload, DecryptionFailed, ItemCancelled
        """
        if isinstance(ref, str):
            if wrapped_key is None:
                raise MalformedPayload(f"No wrapped key supplied for {ref}")
            ref = ShadowItemRef(content_id=ref, wrapped_key=wrapped_key)

        def checkpoint() -> None:
            if cancel_event is not None and cancel_event.is_set():
                raise ItemCancelled(f"Decryption of {ref.content_id[:16]} cancelled")

        keypair = self.vault.current_keypair
        checkpoint()
        bundle = self.store.get(ref.content_id)
        checkpoint()
        payload = decode_bundle(bundle)
        checkpoint()
        plaintext = decrypt_content(payload, ref.wrapped_key, keypair.private_key)
        return DecryptedItem(
            content_id=ref.content_id,
            plaintext=plaintext,
            source=ref.source,
            metadata=dict(ref.metadata),
        )

    def decrypt_batch(self, refs: Iterable[ShadowItemRef]) -> "DecryptionBatch":
        """Start decrypting every ref on the worker pool.

        The pool lives until ``close()`` (or the end of a ``with`` block).
        """
        return DecryptionBatch(self, list(refs), self._pool())

    def decrypt_all(self, refs: Iterable[ShadowItemRef]) -> list[ItemResult]:
        """Decrypt every ref and wait for all of them.

        Uses the shared pool when one is running, else a pool that is shut
        down before returning.
        """
        with self._executor_lock:
            pool = self._executor
        if pool is not None:
            return DecryptionBatch(self, list(refs), pool).results()
        with ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="shadowcrypt-decrypt"
        ) as own_pool:
            return DecryptionBatch(self, list(refs), own_pool).results()

    def decrypt_ledger_items(self, ledger: ShadowLedger, address: str) -> list[ItemResult]:
        """Decrypt everything ``address`` has recorded on the ledger.

        Items the ledger holds in an unreadable form come back as
        ``MALFORMED`` results in their place; the others still decrypt.
        """
        items = ledger.read_items(address)
        decrypted = iter(self.decrypt_all(item.ref for item in items if item.ref is not None))
        return [
            next(decrypted)
            if item.ref is not None
            else ItemResult(item.content_id, ItemStatus.MALFORMED, error=item.error)
            for item in items
        ]


class DecryptionBatch:
    """A running batch. Items can be cancelled one by one or all at once."""

    def __init__(
        self, pipeline: DecryptionPipeline, refs: list[ShadowItemRef], pool: ThreadPoolExecutor
    ) -> None:
        self.refs = refs
        self._events = [threading.Event() for _ in refs]
        self._futures: list[Future] = [
            pool.submit(pipeline.decrypt_item, ref, None, event)
            for ref, event in zip(refs, self._events)
        ]
        logger.debug("Batch started: %d items", len(refs))

    def cancel(self, content_id: str) -> bool:
        """Cancel every item with this content id. True if any was found."""
        found = False
        for ref, event, future in zip(self.refs, self._events, self._futures):
            if ref.content_id == content_id:
                event.set()
                future.cancel()
                found = True
        return found

    def cancel_all(self) -> None:
        for event, future in zip(self._events, self._futures):
            event.set()
            future.cancel()

    def done(self) -> bool:
        return all(f.done() for f in self._futures)

    def results(self, timeout: Optional[float] = None) -> list[ItemResult]:
        """Wait for every item; results come back in submission order."""
        out: list[ItemResult] = []
        for ref, future in zip(self.refs, self._futures):
            try:
                item = future.result(timeout=timeout)
            except CancelledError as exc:
                out.append(ItemResult(ref.content_id, ItemStatus.CANCELLED, error=exc))
                continue
            except ItemCancelled as exc:
                out.append(ItemResult(ref.content_id, ItemStatus.CANCELLED, error=exc))
                continue
            except Exception as exc:
                status = status_for(exc)
                if status == ItemStatus.ERROR:
                    logger.error("Item %s failed unexpectedly: %s", ref.content_id[:16], exc)
                else:
                    logger.debug("Item %s: %s", ref.content_id[:16], status.value)
                out.append(ItemResult(ref.content_id, status, error=exc))
                continue
            out.append(ItemResult(ref.content_id, ItemStatus.DECRYPTED, item=item))
        return out
