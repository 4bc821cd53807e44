"""Unit tests for the audit trail."""

import re

import pytest

from guardmon.service.audit import AuditAction, AuditLogger
from guardmon.service.errors import AuditWriteFailure
from guardmon.storage.errors import StoreUnavailable
from guardmon.storage.memory import MemoryStore


class UnwritableStore(MemoryStore):
    def append_audit_event(self, event):
        raise StoreUnavailable("disk full")

    def list_audit_rows(self):
        raise StoreUnavailable("disk full")


class TestRecord:
    """Tests for appending events."""

    def test_record_builds_time_derived_id(self, audit, store, clock):
        event = audit.record("admin", AuditAction.ADD, "Guard", "G-100", "Added guard")

        assert re.fullmatch(r"AUD20250314093000[0-9A-F]{6}", event.audit_id)
        assert event.timestamp == clock()
        assert store.list_audit_rows()[0]["audit_id"] == event.audit_id

    def test_ids_unique_within_one_second(self, audit):
        ids = {audit.record("admin", AuditAction.UPDATE, "Guard", "G-1").audit_id for _ in range(20)}
        assert len(ids) == 20

    @pytest.mark.parametrize("actor", [None, "", "   "])
    def test_missing_actor_is_system(self, audit, actor):
        event = audit.record(actor, AuditAction.VIOLATION, "Guard", "G-7")
        assert event.actor == "System"

    def test_store_failure_is_swallowed(self, clock):
        logger = AuditLogger(UnwritableStore(), clock=clock)

        assert logger.record("admin", AuditAction.DELETE, "Guard", "G-9") is None

    def test_write_raises_audit_write_failure(self, clock):
        logger = AuditLogger(UnwritableStore(), clock=clock)

        with pytest.raises(AuditWriteFailure) as exc_info:
            logger.write("admin", AuditAction.DELETE, "Guard", "G-9")
        assert exc_info.value.error_code == "audit_write_failed"


class TestRecent:
    """Tests for reading the newest events."""

    def test_returns_most_recent_first(self, audit, clock):
        for i in range(5):
            audit.record("admin", AuditAction.UPDATE, "Guard", f"G-{i}")
            clock.advance(seconds=1)

        events = audit.recent(3)

        assert [e.target_name for e in events] == ["G-4", "G-3", "G-2"]

    @pytest.mark.parametrize("limit", [None, 0, -5])
    def test_non_positive_limit_defaults_to_ten(self, audit, clock, limit):
        for i in range(12):
            audit.record("admin", AuditAction.UPDATE, "Guard", f"G-{i}")
            clock.advance(seconds=1)

        assert len(audit.recent(limit)) == 10

    def test_skips_malformed_rows(self, audit, store, clock):
        audit.record("admin", AuditAction.ADD, "Guard", "G-1")
        store.audit_rows.append({})
        store.audit_rows.append({"audit_id": "AUDX", "timestamp": "not a date"})
        store.audit_rows.append({"audit_id": "", "timestamp": clock().isoformat()})
        store.audit_rows.append({"audit_id": "AUDY", "timestamp": 12345})

        events = audit.recent()

        assert [e.target_name for e in events] == ["G-1"]

    def test_storage_failure_returns_empty(self, clock):
        assert AuditLogger(UnwritableStore(), clock=clock).recent() == []


class TestArchive:
    """Tests for moving old events into the dated archive."""

    def test_moves_events_past_retention(self, store, clock):
        audit = AuditLogger(store, clock=clock, retention_days=365)
        audit.record("admin", AuditAction.ADD, "Guard", "old")
        clock.advance(days=400)
        audit.record("admin", AuditAction.ADD, "Guard", "new")

        moved = audit.archive()

        assert moved == 1
        assert [e.target_name for e in audit.recent()] == ["new"]
        archived = store.list_archived_audit_rows("audit_archive_2026_04")
        assert [row["target_name"] for row in archived] == ["old"]

    def test_retention_override(self, audit, clock):
        audit.record("admin", AuditAction.ADD, "Guard", "a")
        clock.advance(days=2)

        assert audit.archive(retention_days=1) == 1
        assert audit.recent() == []

    def test_nothing_to_archive(self, audit):
        audit.record("admin", AuditAction.ADD, "Guard", "a")
        assert audit.archive() == 0

    def test_malformed_rows_stay_in_place(self, audit, store, clock):
        store.audit_rows.append({"audit_id": "AUDX"})
        clock.advance(days=400)

        audit.archive()

        assert store.list_audit_rows() == [{"audit_id": "AUDX"}]

    def test_negative_retention_rejected(self, audit):
        with pytest.raises(ValueError):
            audit.archive(retention_days=-1)

    def test_retention_default(self, audit):
        assert audit.retention_days == 365
