"""Tests for the audit recorder: entry stamping, atomicity with the paired mutation."""
import pytest
from unittest.mock import MagicMock

from conftest import SUPERVISOR, make_report
from intelreview.errors import PersistenceError
from intelreview.models.audit_entry import AuditEntry
from intelreview.modules import audit_recorder
from intelreview.modules.report_store import get_report, unit_of_work


class TestRecord:
    def test_entry_fields(self, db):
        with unit_of_work(db):
            entry = audit_recorder.record(
                db, SUPERVISOR, "VIEW_SENSITIVE", "intel_reports", 42,
                ip_address="192.168.1.9", details={"body": {"reason": "case review"}},
            )
        assert entry.audit_id is not None
        assert entry.timestamp is not None
        assert entry.resource_id == "42"
        assert entry.username == SUPERVISOR.username
        assert entry.details == {"body": {"reason": "case review"}}

    def test_system_actor(self, db):
        with unit_of_work(db):
            entry = audit_recorder.record(db, None, "PURGE_EXPIRED")
        assert entry.actor_id is None
        assert entry.username is None

    def test_ids_follow_submission_order(self, db):
        with unit_of_work(db):
            first = audit_recorder.record(db, SUPERVISOR, "A")
            second = audit_recorder.record(db, SUPERVISOR, "A")
        assert second.audit_id > first.audit_id

    def test_failed_write_rolls_back_mutation(self, db):
        report = make_report(db, summary="original")
        report_id = report.report_id
        with pytest.raises(PersistenceError):
            with unit_of_work(db):
                r = get_report(db, report_id, lock=True)
                r.summary = "changed"
                # NOT NULL violation on action
                audit_recorder.record(db, SUPERVISOR, None, "intel_reports", report_id)
        db.expire_all()
        assert get_report(db, report_id).summary == "original"
        assert db.query(AuditEntry).count() == 0


class TestRequestHelpers:
    def _request(self, headers=None, host="10.1.1.1"):
        request = MagicMock()
        request.headers = headers or {}
        request.client.host = host
        request.method = "POST"
        request.url.path = "/api/v1/intel-reports/1/status"
        request.state = MagicMock(spec=[])
        return request

    def test_client_ip_prefers_forwarded_for(self):
        request = self._request({"x-forwarded-for": "203.0.113.7, 10.0.0.1"})
        assert audit_recorder.client_ip(request) == "203.0.113.7"

    def test_client_ip_falls_back_to_peer(self):
        assert audit_recorder.client_ip(self._request()) == "10.1.1.1"
        assert audit_recorder.client_ip(None) is None

    def test_request_details_shape(self):
        details = audit_recorder.request_details(self._request(), body={"status": "approved"}, status=200, note="x")
        assert details["meta"]["method"] == "POST"
        assert details["meta"]["path"] == "/api/v1/intel-reports/1/status"
        assert details["meta"]["status"] == 200
        assert details["meta"]["note"] == "x"
        assert "durationMs" not in details["meta"]
        assert details["body"] == {"status": "approved"}

    def test_duration_from_timing_stamp(self):
        import time
        request = self._request()
        request.state = MagicMock()
        request.state.started_at = time.perf_counter()
        details = audit_recorder.request_details(request)
        assert details["meta"]["durationMs"] >= 0
        assert "body" not in details
