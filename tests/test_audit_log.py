"""Tests for the JSONL audit log."""

import json
from datetime import UTC, datetime, timedelta

from emailcat.audit.logger import EMAIL_CLASSIFIED, EMAIL_REVIEWED, AuditLog


class TestRecord:
    def test_record_returns_entry(self, tmp_path):
        audit = AuditLog(tmp_path / "audit.jsonl")

        entry = audit.record(
            EMAIL_CLASSIFIED, "message", "42", {"category": "INVOICE"}, user_id="u1"
        )

        assert entry.action == EMAIL_CLASSIFIED
        assert entry.entity_type == "message"
        assert entry.entity_id == "42"
        assert entry.user_id == "u1"
        assert entry.details == {"category": "INVOICE"}
        assert entry.timestamp.tzinfo is not None

    def test_one_json_object_per_line(self, tmp_path):
        path = tmp_path / "audit.jsonl"
        audit = AuditLog(path)

        audit.record(EMAIL_CLASSIFIED, "message", "1")
        audit.record(EMAIL_REVIEWED, "message", "1")

        lines = path.read_text().strip().splitlines()
        assert len(lines) == 2
        assert json.loads(lines[1])["action"] == EMAIL_REVIEWED

    def test_creates_parent_directory(self, tmp_path):
        audit = AuditLog(tmp_path / "nested" / "dir" / "audit.jsonl")
        audit.record(EMAIL_CLASSIFIED, "message", "1")
        assert (tmp_path / "nested" / "dir" / "audit.jsonl").exists()

    def test_unwritable_sink_does_not_raise(self, tmp_path):
        path = tmp_path / "audit.jsonl"
        path.mkdir()
        audit = AuditLog(path)

        assert audit.record(EMAIL_CLASSIFIED, "message", "1") is None


class TestReadEntries:
    def test_missing_file(self, tmp_path):
        assert AuditLog(tmp_path / "audit.jsonl").read_entries() == []

    def test_filter_by_action(self, tmp_path):
        audit = AuditLog(tmp_path / "audit.jsonl")
        audit.record(EMAIL_CLASSIFIED, "message", "1")
        audit.record(EMAIL_REVIEWED, "message", "1")
        audit.record(EMAIL_CLASSIFIED, "message", "2")

        entries = audit.read_entries(action=EMAIL_CLASSIFIED)

        assert [e.entity_id for e in entries] == ["1", "2"]

    def test_filter_by_since(self, tmp_path):
        audit = AuditLog(tmp_path / "audit.jsonl")
        audit.record(EMAIL_CLASSIFIED, "message", "1")

        future = datetime.now(UTC) + timedelta(hours=1)
        past = datetime.now(UTC) - timedelta(hours=1)

        assert audit.read_entries(since=future) == []
        assert len(audit.read_entries(since=past)) == 1

    def test_limit_keeps_newest(self, tmp_path):
        audit = AuditLog(tmp_path / "audit.jsonl")
        for i in range(5):
            audit.record(EMAIL_CLASSIFIED, "message", str(i))

        assert [e.entity_id for e in audit.read_entries(limit=2)] == ["3", "4"]

    def test_blank_lines_ignored(self, tmp_path):
        path = tmp_path / "audit.jsonl"
        audit = AuditLog(path)
        audit.record(EMAIL_CLASSIFIED, "message", "1")
        with path.open("a") as f:
            f.write("\n\n")

        assert len(audit.read_entries()) == 1
