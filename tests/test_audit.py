"""Tests for the daily audit log."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

from plan_cascade.audit import (
    AuditEventType,
    append_audit_entry,
    daily_log_path,
    read_audit_entries,
    write_queue_apply_entry,
    write_queue_proposal_entry,
)
from plan_cascade.models import QueueProposal, RemoveOperation


class TestAuditLog:
    """Test audit log writing and reading."""

    def test_daily_path_uses_utc_date(self, tmp_path: Path):
        """Test the log file is named after the UTC date."""
        now = datetime(2026, 3, 4, 23, 30, tzinfo=timezone.utc)
        assert daily_log_path(tmp_path, now) == tmp_path / "logs" / "2026-03-04.jsonl"

    def test_append_is_one_line_per_entry(self, tmp_path: Path):
        """Test each entry is a separate JSON line with type and milestone."""
        append_audit_entry(tmp_path, AuditEventType.VALIDATION, subtaskId="SUB-001")
        path = append_audit_entry(tmp_path, AuditEventType.CALIBRATION, source="calibration:intention")
        lines = path.read_text(encoding="utf-8").splitlines()
        assert len(lines) == 2
        first = json.loads(lines[0])
        assert first["type"] == "validation"
        assert first["milestone"] == tmp_path.name
        assert "timestamp" in first

    def test_none_fields_dropped(self, tmp_path: Path):
        """Test optional None fields are omitted."""
        write_queue_apply_entry(tmp_path, applied=False, source="x", operation_count=0, summary="s")
        entry = read_audit_entries(tmp_path)[0]
        assert "beforeFingerprint" not in entry
        assert entry["applied"] is False

    def test_filter_by_type(self, tmp_path: Path):
        """Test reading entries of one type."""
        proposal = QueueProposal("abc", (RemoveOperation("SUB-001"),), "validation", "2026-01-01T00:00:00Z")
        write_queue_proposal_entry(tmp_path, proposal, "1 operation")
        write_queue_apply_entry(tmp_path, applied=True, source="validation", operation_count=1, summary="ok")
        proposals = read_audit_entries(tmp_path, event_type=AuditEventType.QUEUE_PROPOSAL)
        assert len(proposals) == 1
        assert proposals[0]["operationCount"] == 1
        assert proposals[0]["proposal"]["fingerprint"] == {"hash": "abc"}

    def test_missing_log_reads_empty(self, tmp_path: Path):
        """Test a day with no log returns no entries."""
        assert read_audit_entries(tmp_path) == []
