"""Tests for the JSONL audit trail."""

from __future__ import annotations

import json
from pathlib import Path

from shadowcrypt.audit import AuditTrail, audit_event, audit_log_path, read_audit_log


class TestAuditLog:
    """Append-only structured events."""

    def test_event_written_as_json_line(self, tmp_path: Path) -> None:
        entry = audit_event(tmp_path, "KEY_REGISTER", "registered", actor="alice", metadata={"id": 1})
        lines = audit_log_path(tmp_path).read_text().splitlines()
        assert len(lines) == 1
        data = json.loads(lines[0])
        assert data["event_type"] == "KEY_REGISTER"
        assert data["actor"] == "alice"
        assert data["metadata"] == {"id": 1}
        assert entry.host

    def test_read_back_in_order(self, tmp_path: Path) -> None:
        for i in range(5):
            audit_event(tmp_path, "E", f"event {i}")
        assert [e.detail for e in read_audit_log(tmp_path)] == [f"event {i}" for i in range(5)]
        assert [e.detail for e in read_audit_log(tmp_path, limit=2)] == ["event 3", "event 4"]

    def test_missing_log(self, tmp_path: Path) -> None:
        assert read_audit_log(tmp_path) == []

    def test_unparsed_lines_kept(self, tmp_path: Path) -> None:
        audit_event(tmp_path, "E", "ok")
        with audit_log_path(tmp_path).open("a") as f:
            f.write("plain text line\n")
        entries = read_audit_log(tmp_path)
        assert [e.event_type for e in entries] == ["E", "UNPARSED"]
        assert entries[1].detail == "plain text line"

    def test_trail(self, tmp_path: Path) -> None:
        trail = AuditTrail(tmp_path)
        trail.record("KEY_REVOKE", "revoked", actor="bob")
        [entry] = trail.read()
        assert entry.actor == "bob"
