"""Tests for the compliance audit log."""

from signup_pilot.audit import AuditEvent, AuditEventType, AuditLog, JsonlAuditLog, MemoryAuditLog


class FailingAuditLog(AuditLog):
    async def _write(self, event: AuditEvent) -> None:
        raise OSError("disk full")


class TestAuditLog:
    """Recording audit events."""

    async def test_jsonl_appends_lines(self, tmp_path):
        log = JsonlAuditLog(tmp_path / "audit" / "audit.jsonl")

        await log.record(AuditEventType.COMPLIANCE_RED, {"host": "facebook.com"})
        await log.record(AuditEventType.SESSION_OPENED, {"session_id": "sess-1"})

        events = log.read_events()
        assert [e["event_type"] for e in events] == ["COMPLIANCE_RED", "SESSION_OPENED"]
        assert events[0]["payload"] == {"host": "facebook.com"}
        assert "timestamp" in events[0]

    async def test_unreadable_lines_are_skipped(self, tmp_path):
        path = tmp_path / "audit.jsonl"
        log = JsonlAuditLog(path)
        await log.record(AuditEventType.STAGE_FAILED, {"stage": "login"})
        with open(path, "a") as f:
            f.write("{truncated\n")

        assert len(log.read_events()) == 1

    def test_missing_file_has_no_events(self, tmp_path):
        assert JsonlAuditLog(tmp_path / "none.jsonl").read_events() == []

    async def test_write_failure_does_not_raise(self):
        await FailingAuditLog().record(AuditEventType.SESSION_CLOSED, {"session_id": "sess-1"})

    async def test_memory_log_filters_by_type(self):
        log = MemoryAuditLog()
        await log.record(AuditEventType.COMPLIANCE_YELLOW, {"host": "a.org"})
        await log.record(AuditEventType.COMPLIANCE_RED, {"host": "b.org"})

        assert [e.payload["host"] for e in log.of_type(AuditEventType.COMPLIANCE_RED)] == ["b.org"]
