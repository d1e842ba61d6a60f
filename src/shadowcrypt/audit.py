"""
Security audit trail: an append-only JSONL log of key lifecycle events.

    ~/.shadowcrypt/security/audit.log

One JSON object per line. Registry and vault events land here in
addition to the registry's own history table, so an operator can see
what happened on this host without opening the database.
"""

from __future__ import annotations

import json
import logging
import socket
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

logger = logging.getLogger("shadowcrypt.audit")

AUDIT_LOG_NAME = "audit.log"


class AuditEntry(BaseModel):
    """A single structured audit log entry."""

    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    event_type: str
    detail: str
    host: str = Field(default_factory=socket.gethostname)
    actor: Optional[str] = None
    metadata: Optional[dict] = None


def audit_log_path(home: Path) -> Path:
    return Path(home).expanduser() / "security" / AUDIT_LOG_NAME


def audit_event(
    home: Path,
    event_type: str,
    detail: str,
    actor: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> AuditEntry:
    """Append a structured event to the audit log.

    Args:
        home: shadowcrypt home directory.
        event_type: Event category (KEY_REGISTER, KEY_ROTATE, KEY_REVOKE,
            VAULT_EXPORT, ...).
        detail: Human-readable event description.
        actor: Address or component that triggered the event.
        metadata: Optional dict of extra structured data.

    Returns:
        AuditEntry: The entry that was written.
    """
    audit_log = audit_log_path(home)
    audit_log.parent.mkdir(parents=True, exist_ok=True)

    entry = AuditEntry(
        event_type=event_type,
        detail=detail,
        actor=actor,
        metadata=metadata,
    )

    with audit_log.open("a", encoding="utf-8") as f:
        f.write(entry.model_dump_json() + "\n")

    return entry


def read_audit_log(home: Path, limit: int = 0) -> list[AuditEntry]:
    """Read and parse the audit log.

    Lines that do not parse are kept as ``UNPARSED`` entries rather than
    dropped.

    Args:
        home: shadowcrypt home directory.
        limit: Maximum entries to return (0 = all, most recent last).

    Returns:
        list[AuditEntry]: Parsed audit entries.
    """
    audit_log = audit_log_path(home)
    if not audit_log.exists():
        return []

    entries: list[AuditEntry] = []
    for line in audit_log.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            entries.append(AuditEntry.model_validate(json.loads(line)))
        except ValueError:
            entries.append(AuditEntry(event_type="UNPARSED", detail=line))

    if limit > 0:
        entries = entries[-limit:]

    return entries


class AuditTrail:
    """Audit sink bound to one home directory. Safe to share between threads."""

    def __init__(self, home: Path) -> None:
        self.home = Path(home).expanduser()
        self._lock = threading.Lock()

    def record(
        self,
        event_type: str,
        detail: str,
        actor: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> AuditEntry:
        with self._lock:
            entry = audit_event(self.home, event_type, detail, actor=actor, metadata=metadata)
        logger.debug("audit %s: %s", event_type, detail)
        return entry

    def read(self, limit: int = 0) -> list[AuditEntry]:
        with self._lock:
            return read_audit_log(self.home, limit=limit)
