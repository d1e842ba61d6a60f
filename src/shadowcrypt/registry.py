"""
Key registry: which public encryption key is live for each address.

The registry is the server half of the key lifecycle:

    register ──▶ ACTIVE ──rotate──▶ ACTIVE (new row) ──revoke──▶ no active key
                   │                    │
                   └── history: created └── history: rotated (previous key)

Every transition is one atomic backend call: deactivate the old row,
insert the new one, append the history entry. A backend either commits
all three or none. On top of that the registry serializes calls per
address, so two concurrent rotations for the same address can never both
leave a row active. Calls for different addresses never share a lock.

Backends:
    MemoryRegistryBackend   In-process lists. Tests and single-process tools.
    SQLiteRegistryBackend   user_encryption_keys + user_encryption_key_history
                            tables, with a partial unique index that lets the
                            database itself refuse a second active row.

Usage:
    registry = KeyRegistry(SQLiteRegistryBackend(path), Ed25519AddressVerifier())
    registry.register(address, public_key_hex, signature_hex)
    registry.rotate(address, new_public_key_hex, new_signature_hex, reason="lost device")
    registry.revoke(address, reason="offboarding")
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional, Union

from .audit import AuditTrail
from .config import ShadowConfig, registry_path
from .derivation import validate_public_key
from .errors import KeyNotFound, KeyRevoked, SignatureInvalid, StorageUnavailable
from .models import KeyAction, KeyHistoryEntry, UserEncryptionKey
from .signing import Ed25519AddressVerifier, SignatureVerifier

logger = logging.getLogger("shadowcrypt.registry")


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


class RegistryBackend(ABC):
    """Persistence for registered keys and their history.

    ``activate`` and ``deactivate`` are the only writes, and each must be
    atomic: either every row change and the history entry land, or none do.
    """

    @abstractmethod
    def get_active(self, address: str) -> Optional[UserEncryptionKey]:
        """The active key row for an address, if any."""

    @abstractmethod
    def list_keys(self, address: str) -> list[UserEncryptionKey]:
        """Every key row ever registered for an address, oldest first."""

    @abstractmethod
    def history(self, address: str) -> list[KeyHistoryEntry]:
        """History entries for an address, oldest first."""

    @abstractmethod
    def is_revoked(self, address: str, public_key: str) -> bool:
        """True if this key was ever revoked for this address."""

    @abstractmethod
    def activate(self, key: UserEncryptionKey, entry: KeyHistoryEntry) -> UserEncryptionKey:
        """Deactivate the address's active row, insert ``key`` active, append ``entry``.

        Returns:
            The inserted row with its assigned id.
        """

    @abstractmethod
    def deactivate(self, address: str, entry: KeyHistoryEntry) -> Optional[UserEncryptionKey]:
        """Deactivate the address's active row and append ``entry``.

        Returns:
            The row as it was deactivated, or None if nothing was active
            (in which case nothing is written).
        """

    def close(self) -> None:
        """Release any held resources."""


class MemoryRegistryBackend(RegistryBackend):
    """Registry rows kept in process memory.

    Each write builds its changes first and then applies them under one
    lock, so readers never observe a half-applied transition.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._keys: list[UserEncryptionKey] = []
        self._history: list[KeyHistoryEntry] = []
        self._next_key_id = 1
        self._next_history_id = 1

    def get_active(self, address: str) -> Optional[UserEncryptionKey]:
        with self._lock:
            for key in self._keys:
                if key.address == address and key.is_active:
                    return key.model_copy()
        return None

    def list_keys(self, address: str) -> list[UserEncryptionKey]:
        with self._lock:
            return [k.model_copy() for k in self._keys if k.address == address]

    def history(self, address: str) -> list[KeyHistoryEntry]:
        with self._lock:
            return [h.model_copy() for h in self._history if h.address == address]

    def is_revoked(self, address: str, public_key: str) -> bool:
        with self._lock:
            return any(
                h.address == address
                and h.public_key == public_key
                and h.action == KeyAction.REVOKED
                for h in self._history
            )

    def _active_index(self, address: str) -> Optional[int]:
        for i, key in enumerate(self._keys):
            if key.address == address and key.is_active:
                return i
        return None

    def activate(self, key: UserEncryptionKey, entry: KeyHistoryEntry) -> UserEncryptionKey:
        now = _now()
        with self._lock:
            idx = self._active_index(key.address)
            retired = None
            if idx is not None:
                retired = self._keys[idx].model_copy(update={"is_active": False, "updated_at": now})

            inserted = key.model_copy(update={"id": self._next_key_id, "is_active": True})
            recorded = entry.model_copy(update={"id": self._next_history_id})

            if retired is not None:
                self._keys[idx] = retired
            self._keys.append(inserted)
            self._history.append(recorded)
            self._next_key_id += 1
            self._next_history_id += 1
            return inserted.model_copy()

    def deactivate(self, address: str, entry: KeyHistoryEntry) -> Optional[UserEncryptionKey]:
        with self._lock:
            idx = self._active_index(address)
            if idx is None:
                return None
            retired = self._keys[idx].model_copy(update={"is_active": False, "updated_at": _now()})
            recorded = entry.model_copy(update={"id": self._next_history_id})
            self._keys[idx] = retired
            self._history.append(recorded)
            self._next_history_id += 1
            return retired.model_copy()


_SCHEMA = (
    """CREATE TABLE IF NOT EXISTS user_encryption_keys(
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        address TEXT NOT NULL,
        public_key TEXT NOT NULL,
        signed_message TEXT,
        device_id TEXT,
        label TEXT,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        metadata TEXT NOT NULL DEFAULT '{}'
    )""",
    """CREATE UNIQUE INDEX IF NOT EXISTS idx_user_encryption_keys_one_active
        ON user_encryption_keys(address) WHERE is_active = 1""",
    """CREATE INDEX IF NOT EXISTS idx_user_encryption_keys_address
        ON user_encryption_keys(address)""",
    """CREATE TABLE IF NOT EXISTS user_encryption_key_history(
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        address TEXT NOT NULL,
        public_key TEXT NOT NULL,
        action TEXT NOT NULL,
        reason TEXT,
        previous_public_key TEXT,
        device_id TEXT,
        timestamp TEXT NOT NULL
    )""",
    """CREATE INDEX IF NOT EXISTS idx_user_encryption_key_history_address
        ON user_encryption_key_history(address)""",
)


class SQLiteRegistryBackend(RegistryBackend):
    """Registry rows in SQLite.

    One connection shared across threads behind a lock; every write runs in
    a ``BEGIN IMMEDIATE`` transaction and rolls back on any error. The
    partial unique index on ``(address) WHERE is_active = 1`` makes a
    second active row a constraint violation rather than a silent race.

    Args:
        path: Database file, or ``":memory:"``.
    """

    def __init__(self, path: Union[str, Path] = ":memory:") -> None:
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).expanduser().parent.mkdir(parents=True, exist_ok=True)
        try:
            self.db = sqlite3.connect(
                self.path, check_same_thread=False, isolation_level=None
            )
        except sqlite3.Error as exc:
            raise StorageUnavailable(f"Cannot open registry database {self.path}: {exc}") from exc
        self.db.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._init()

    def _init(self) -> None:
        with self._lock:
            for statement in _SCHEMA:
                self.db.execute(statement)

    # -- row mapping ---------------------------------------------------------

    @staticmethod
    def _key_from_row(row: sqlite3.Row) -> UserEncryptionKey:
        return UserEncryptionKey(
            id=row["id"],
            address=row["address"],
            public_key=row["public_key"],
            signed_message=row["signed_message"],
            device_id=row["device_id"],
            label=row["label"],
            is_active=bool(row["is_active"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            metadata=json.loads(row["metadata"] or "{}"),
        )

    @staticmethod
    def _entry_from_row(row: sqlite3.Row) -> KeyHistoryEntry:
        return KeyHistoryEntry(
            id=row["id"],
            address=row["address"],
            public_key=row["public_key"],
            action=KeyAction(row["action"]),
            reason=row["reason"],
            previous_public_key=row["previous_public_key"],
            device_id=row["device_id"],
            timestamp=datetime.fromisoformat(row["timestamp"]),
        )

    def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self.db.execute(sql, params).fetchall()
            except sqlite3.Error as exc:
                raise StorageUnavailable(f"Registry query failed: {exc}") from exc

    # -- reads ---------------------------------------------------------------

    def get_active(self, address: str) -> Optional[UserEncryptionKey]:
        rows = self._query(
            "SELECT * FROM user_encryption_keys WHERE address = ? AND is_active = 1",
            (address,),
        )
        return self._key_from_row(rows[0]) if rows else None

    def list_keys(self, address: str) -> list[UserEncryptionKey]:
        rows = self._query(
            "SELECT * FROM user_encryption_keys WHERE address = ? ORDER BY id",
            (address,),
        )
        return [self._key_from_row(r) for r in rows]

    def history(self, address: str) -> list[KeyHistoryEntry]:
        rows = self._query(
            "SELECT * FROM user_encryption_key_history WHERE address = ? ORDER BY id",
            (address,),
        )
        return [self._entry_from_row(r) for r in rows]

    def is_revoked(self, address: str, public_key: str) -> bool:
        rows = self._query(
            "SELECT 1 FROM user_encryption_key_history "
            "WHERE address = ? AND public_key = ? AND action = ? LIMIT 1",
            (address, public_key, KeyAction.REVOKED.value),
        )
        return bool(rows)

    # -- writes --------------------------------------------------------------

    def _insert_history(self, entry: KeyHistoryEntry) -> None:
        self.db.execute(
            "INSERT INTO user_encryption_key_history"
            "(address, public_key, action, reason, previous_public_key, device_id, timestamp) "
            "VALUES(?,?,?,?,?,?,?)",
            (
                entry.address,
                entry.public_key,
                entry.action.value,
                entry.reason,
                entry.previous_public_key,
                entry.device_id,
                entry.timestamp.isoformat(),
            ),
        )

    def _deactivate_active(self, address: str, now: datetime) -> Optional[sqlite3.Row]:
        row = self.db.execute(
            "SELECT * FROM user_encryption_keys WHERE address = ? AND is_active = 1",
            (address,),
        ).fetchone()
        if row is not None:
            self.db.execute(
                "UPDATE user_encryption_keys SET is_active = 0, updated_at = ? WHERE id = ?",
                (now.isoformat(), row["id"]),
            )
        return row

    def activate(self, key: UserEncryptionKey, entry: KeyHistoryEntry) -> UserEncryptionKey:
        now = _now()
        with self._lock:
            try:
                self.db.execute("BEGIN IMMEDIATE")
                try:
                    self._deactivate_active(key.address, now)
                    cur = self.db.execute(
                        "INSERT INTO user_encryption_keys"
                        "(address, public_key, signed_message, device_id, label, is_active, "
                        "created_at, updated_at, metadata) VALUES(?,?,?,?,?,1,?,?,?)",
                        (
                            key.address,
                            key.public_key,
                            key.signed_message,
                            key.device_id,
                            key.label,
                            key.created_at.isoformat(),
                            key.updated_at.isoformat(),
                            json.dumps(key.metadata),
                        ),
                    )
                    self._insert_history(entry)
                    key_id = cur.lastrowid
                except BaseException:
                    self.db.execute("ROLLBACK")
                    raise
                self.db.execute("COMMIT")
            except sqlite3.Error as exc:
                raise StorageUnavailable(f"Registry write failed: {exc}") from exc
        return key.model_copy(update={"id": key_id, "is_active": True})

    def deactivate(self, address: str, entry: KeyHistoryEntry) -> Optional[UserEncryptionKey]:
        now = _now()
        with self._lock:
            try:
                self.db.execute("BEGIN IMMEDIATE")
                try:
                    row = self._deactivate_active(address, now)
                    if row is not None:
                        self._insert_history(entry)
                except BaseException:
                    self.db.execute("ROLLBACK")
                    raise
                self.db.execute("COMMIT")
            except sqlite3.Error as exc:
                raise StorageUnavailable(f"Registry write failed: {exc}") from exc
        if row is None:
            return None
        return self._key_from_row(row).model_copy(update={"is_active": False, "updated_at": now})

    def close(self) -> None:
        with self._lock:
            self.db.close()


# ---------------------------------------------------------------------------
# KeyRegistry
# ---------------------------------------------------------------------------


class _AddressLock:
    """A per-address lock and how many callers hold or wait on it."""

    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class KeyRegistry:
    """Ownership-checked, audited registry of public encryption keys.

    Args:
        backend: Where rows and history live.
        verifier: Checks ownership signatures against addresses.
        require_ownership_proof: When False, registrations without a
            signature are accepted (with a warning). A signature that is
            supplied is always verified.
        audit: Optional audit trail that mirrors every transition.
    """

    def __init__(
        self,
        backend: RegistryBackend,
        verifier: Optional[SignatureVerifier] = None,
        require_ownership_proof: bool = True,
        audit: Optional[AuditTrail] = None,
    ) -> None:
        self.backend = backend
        self.verifier = verifier or Ed25519AddressVerifier()
        self.require_ownership_proof = require_ownership_proof
        self.audit = audit
        self._locks_guard = threading.Lock()
        self._locks: dict[str, _AddressLock] = {}

    @contextmanager
    def _address_lock(self, address: str) -> Iterator[None]:
        """Hold the address's lock. The entry is dropped once nobody uses it."""
        with self._locks_guard:
            entry = self._locks.get(address)
            if entry is None:
                entry = self._locks[address] = _AddressLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._locks[address]

    def _check_proof(self, address: str, public_key_hex: str, signature: Optional[str]) -> None:
        if not signature:
            if self.require_ownership_proof:
                raise SignatureInvalid(f"Ownership signature required for {address}")
            logger.warning(
                "Registering key %s for %s without ownership proof",
                public_key_hex[:16],
                address,
            )
            return
        if not self.verifier.verify_ownership(address, public_key_hex, signature):
            raise SignatureInvalid(f"Invalid ownership signature for {address}")

    def _audit(self, event_type: str, detail: str, address: str, metadata: dict[str, Any]) -> None:
        if self.audit is not None:
            self.audit.record(event_type, detail, actor=address, metadata=metadata)

    def register(
        self,
        address: str,
        public_key: Union[str, bytes],
        signature: Optional[str] = None,
        device_id: Optional[str] = None,
        label: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> UserEncryptionKey:
        """Register a public key as the address's active key.

        If another key is active it is retired in the same transaction and
        the history records a rotation. Registering the key that is already
        active is a no-op.

        Args:
            address: Account the key belongs to.
            public_key: 32-byte key, raw or hex.
            signature: Hex signature over the ownership message.
            device_id: Optional device the key lives on.
            label: Optional human-readable label.
            metadata: Optional extra data stored with the row.

        Returns:
            The active UserEncryptionKey row.

        Raises:
            InvalidKeyLength: If the key is not 32 bytes.
            SignatureInvalid: If the proof is missing (when required) or wrong.
            KeyRevoked: If this key was revoked for this address before.
        """
        public_key_hex = validate_public_key(public_key).hex()
        self._check_proof(address, public_key_hex, signature)

        with self._address_lock(address):
            current = self.backend.get_active(address)
            if current is not None and current.public_key == public_key_hex:
                logger.debug("Key %s already active for %s", public_key_hex[:16], address)
                return current
            if self.backend.is_revoked(address, public_key_hex):
                raise KeyRevoked(f"Key {public_key_hex[:16]}... was revoked for {address}")

            action = KeyAction.ROTATED if current is not None else KeyAction.CREATED
            row = self.backend.activate(
                UserEncryptionKey(
                    id=0,
                    address=address,
                    public_key=public_key_hex,
                    signed_message=signature,
                    device_id=device_id,
                    label=label,
                    metadata=metadata or {},
                ),
                KeyHistoryEntry(
                    address=address,
                    public_key=public_key_hex,
                    action=action,
                    previous_public_key=current.public_key if current else None,
                    device_id=device_id,
                ),
            )

        logger.info("Registered key %s for %s (%s)", public_key_hex[:16], address, action.value)
        self._audit(
            "KEY_REGISTER",
            f"Registered encryption key {public_key_hex[:16]} ({action.value})",
            address,
            {"key_id": row.id, "public_key": public_key_hex, "action": action.value},
        )
        return row

    def rotate(
        self,
        address: str,
        new_public_key: Union[str, bytes],
        signature: Optional[str] = None,
        reason: Optional[str] = None,
        device_id: Optional[str] = None,
        label: Optional[str] = None,
    ) -> UserEncryptionKey:
        """Replace the address's active key with a new one.

        Raises:
            InvalidKeyLength: If the key is not 32 bytes.
            SignatureInvalid: If the proof is missing (when required) or wrong.
            KeyNotFound: If the address has no active key to rotate.
            KeyRevoked: If the new key was revoked for this address before.
        """
        public_key_hex = validate_public_key(new_public_key).hex()
        self._check_proof(address, public_key_hex, signature)

        with self._address_lock(address):
            current = self.backend.get_active(address)
            if current is None:
                raise KeyNotFound(f"No active encryption key for {address}")
            if self.backend.is_revoked(address, public_key_hex):
                raise KeyRevoked(f"Key {public_key_hex[:16]}... was revoked for {address}")

            if device_id is None:
                device_id = current.device_id
            row = self.backend.activate(
                UserEncryptionKey(
                    id=0,
                    address=address,
                    public_key=public_key_hex,
                    signed_message=signature,
                    device_id=device_id,
                    label=label if label is not None else current.label,
                ),
                KeyHistoryEntry(
                    address=address,
                    public_key=public_key_hex,
                    action=KeyAction.ROTATED,
                    reason=reason,
                    previous_public_key=current.public_key,
                    device_id=device_id,
                ),
            )

        logger.info(
            "Rotated key for %s: %s -> %s", address, current.public_key[:16], public_key_hex[:16]
        )
        self._audit(
            "KEY_ROTATE",
            f"Rotated encryption key {current.public_key[:16]} -> {public_key_hex[:16]}",
            address,
            {
                "key_id": row.id,
                "public_key": public_key_hex,
                "previous_public_key": current.public_key,
                "reason": reason,
            },
        )
        return row

    def revoke(self, address: str, reason: Optional[str] = None) -> UserEncryptionKey:
        """Deactivate the address's key with no replacement.

        Returns:
            The revoked row.

        Raises:
            KeyNotFound: If the address has no active key.
        """
        with self._address_lock(address):
            current = self.backend.get_active(address)
            if current is None:
                raise KeyNotFound(f"No active encryption key for {address}")
            row = self.backend.deactivate(
                address,
                KeyHistoryEntry(
                    address=address,
                    public_key=current.public_key,
                    action=KeyAction.REVOKED,
                    reason=reason,
                    device_id=current.device_id,
                ),
            )
        if row is None:
            raise KeyNotFound(f"No active encryption key for {address}")

        logger.info("Revoked key %s for %s", row.public_key[:16], address)
        self._audit(
            "KEY_REVOKE",
            f"Revoked encryption key {row.public_key[:16]}",
            address,
            {"key_id": row.id, "public_key": row.public_key, "reason": reason},
        )
        return row

    def get_active(self, address: str) -> Optional[UserEncryptionKey]:
        """The address's active key, or None."""
        return self.backend.get_active(address)

    def get_public_key(self, address: str) -> Optional[str]:
        """Hex public key of the active key, or None."""
        active = self.backend.get_active(address)
        return active.public_key if active else None

    def has_active_key(self, address: str) -> bool:
        return self.backend.get_active(address) is not None

    def history(self, address: str) -> list[KeyHistoryEntry]:
        """Lifecycle entries for the address, oldest first."""
        return self.backend.history(address)

    def list_keys(self, address: str) -> list[UserEncryptionKey]:
        return self.backend.list_keys(address)

    def close(self) -> None:
        self.backend.close()


def build_registry(
    config: ShadowConfig,
    home: Optional[Path] = None,
    verifier: Optional[SignatureVerifier] = None,
    audit: Optional[AuditTrail] = None,
) -> KeyRegistry:
    """Construct a registry from config. The backend is chosen here, once."""
    if config.registry_backend == "memory":
        backend: RegistryBackend = MemoryRegistryBackend()
    else:
        backend = SQLiteRegistryBackend(registry_path(home))
    return KeyRegistry(
        backend,
        verifier=verifier,
        require_ownership_proof=config.require_ownership_proof,
        audit=audit,
    )
