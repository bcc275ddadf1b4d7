"""
Tests for the audit logger.
"""

import json
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from program_engine.audit import AuditLogger
from program_engine.models import AuditRecord


class TestInMemoryAuditLogger:
    """Test cases for AuditLogger without a directory."""

    @pytest.fixture
    def audit_logger(self):
        return AuditLogger()

    def test_record_returns_id(self, audit_logger):
        record_id = audit_logger.record("u1", "program.create", "programs", "p1", metadata={"slug": "x"})

        events = audit_logger.get_events()
        assert [e.id for e in events] == [record_id]
        assert events[0].metadata == {"slug": "x"}
        assert events[0].changes is None

    def test_most_recent_first_and_filters(self, audit_logger):
        audit_logger.record("u1", "program.create", "programs", "p1")
        audit_logger.record("u2", "stage.create", "stages", "s1")
        audit_logger.record("u1", "program.update", "programs", "p1")

        assert [e.action for e in audit_logger.get_events()] == [
            "program.update", "stage.create", "program.create"
        ]
        assert [e.action for e in audit_logger.get_events(user_id="u2")] == ["stage.create"]
        assert [e.action for e in audit_logger.get_events(action="program.create")] == ["program.create"]
        assert len(audit_logger.get_events(limit=2)) == 2

    def test_entity_trail_is_chronological(self, audit_logger):
        audit_logger.record("u1", "process.create", "processes", "x1")
        audit_logger.record("u1", "process.advance", "processes", "x1")
        audit_logger.record("u1", "process.create", "processes", "x2")

        trail = audit_logger.get_entity_trail("x1")
        assert [e.action for e in trail] == ["process.create", "process.advance"]

    def test_date_filters(self, audit_logger):
        audit_logger.record("u1", "program.create", "programs", "p1")
        future = datetime.now(timezone.utc) + timedelta(days=1)

        assert audit_logger.get_events(start_date=future) == []
        assert len(audit_logger.get_events(end_date=future)) == 1

    def test_write_failure_is_swallowed(self, audit_logger, mocker):
        mocker.patch.object(audit_logger, "log_event", side_effect=OSError("disk full"))

        assert audit_logger.record("u1", "program.create", "programs", "p1") is None


@pytest.mark.integration
class TestFileAuditLogger:
    """Test cases for JSONL persistence."""

    @pytest.fixture
    def temp_audit_dir(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            yield Path(temp_dir) / "audit"

    def test_daily_jsonl_file(self, temp_audit_dir):
        audit_logger = AuditLogger(str(temp_audit_dir))
        audit_logger.record("u1", "process.advance", "processes", "x1",
                            changes={"before": {"current_stage_id": "s1"}, "after": {"current_stage_id": "s2"}})

        date_str = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        log_file = temp_audit_dir / f"audit_{date_str}.jsonl"
        assert log_file.exists()

        data = json.loads(log_file.read_text().strip())
        assert data["action"] == "process.advance"
        assert data["changes"]["after"] == {"current_stage_id": "s2"}

    def test_events_read_back_across_instances(self, temp_audit_dir):
        AuditLogger(str(temp_audit_dir)).record("u1", "program.create", "programs", "p1")
        AuditLogger(str(temp_audit_dir)).record("u1", "program.activate", "programs", "p1")

        events = AuditLogger(str(temp_audit_dir)).get_events(entity_id="p1")
        assert [e.action for e in events] == ["program.activate", "program.create"]

    def test_corrupt_lines_skipped(self, temp_audit_dir):
        audit_logger = AuditLogger(str(temp_audit_dir))
        audit_logger.log_event(AuditRecord(action="block.create", entity_type="block_instances", entity_id="b1"))
        with open(next(temp_audit_dir.glob("audit_*.jsonl")), "a") as f:
            f.write("not json\n")

        assert [e.entity_id for e in audit_logger.get_events()] == ["b1"]
