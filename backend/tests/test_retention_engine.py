"""Tests for retention: expiry math, urgency buckets, extensions, purge sweeps."""
import threading
from datetime import datetime, timedelta

import pytest
from unittest.mock import patch

from conftest import ADMIN, SUPERVISOR, make_post, make_report
from intelreview.errors import ConflictError, NotFoundError, PersistenceError, ValidationError
from intelreview.models.audit_entry import AuditEntry
from intelreview.models.base import ReportStatusEnum, RetainedRecordMixin, RetentionBucketEnum, utcnow
from intelreview.models.intel_report import IntelReport
from intelreview.models.post import Post
from intelreview.models.review_record import ReviewRecord
from intelreview.modules import approval, audit_recorder, retention
from intelreview.modules.retention import RetentionPolicy

NOW = datetime(2025, 6, 1, 12, 0, 0)
POLICY = RetentionPolicy()


def _post_expiring_in(days: float, retention_days: int = 1825) -> Post:
    """Unsaved post whose expiry is ``days`` days after NOW."""
    return Post(
        title="t",
        published_at=NOW - timedelta(days=retention_days) + timedelta(days=days),
        retention_days=retention_days,
    )


class _ChangeBeforeFirstRecord:
    """Stands in for the cancel event; commits a change from another session at the first check."""

    def __init__(self, session_factory, change):
        self.session_factory = session_factory
        self.change = change

    def is_set(self) -> bool:
        if self.change is not None:
            other = self.session_factory()
            try:
                self.change(other)
            finally:
                other.close()
            self.change = None
        return False


# ---------------------------------------------------------------------------
# Pure policy functions
# ---------------------------------------------------------------------------


class TestExpiryMath:
    def test_compute_expiry_from_anchor_date(self):
        post = Post(title="t", published_at=datetime(2020, 1, 1), retention_days=1825)
        assert retention.compute_expiry(post) == datetime(2020, 1, 1) + timedelta(days=1825)

    def test_extension_anchor_wins(self):
        post = Post(
            title="t", published_at=datetime(2020, 1, 1), retention_days=30,
            retention_anchor_at=datetime(2024, 1, 1),
        )
        assert retention.compute_expiry(post) == datetime(2024, 1, 31)

    def test_no_anchor_is_invalid(self):
        with pytest.raises(ValidationError):
            retention.compute_expiry(Post(title="t", retention_days=10))

    def test_mixin_requires_anchor_date(self):
        class Unanchored(RetainedRecordMixin):
            pass

        with pytest.raises(NotImplementedError, match="Unanchored must define anchor_date"):
            Unanchored().anchor_date

    def test_days_truncate_toward_zero(self):
        assert retention.days_until_expiration(_post_expiring_in(7.9), NOW) == 7
        assert retention.days_until_expiration(_post_expiring_in(-0.5), NOW) == 0
        assert retention.days_until_expiration(_post_expiring_in(-1.2), NOW) == -1

    def test_timezone_aware_now_is_normalized(self):
        from datetime import timezone
        aware = NOW.replace(tzinfo=timezone.utc)
        assert retention.days_until_expiration(_post_expiring_in(3.5), aware) == 3


class TestClassify:
    @pytest.mark.parametrize("days,bucket", [
        (-1, RetentionBucketEnum.EXPIRED),
        (0, RetentionBucketEnum.CRITICAL),
        (7, RetentionBucketEnum.CRITICAL),
        (8, RetentionBucketEnum.WARNING),
        (30, RetentionBucketEnum.WARNING),
        (31, RetentionBucketEnum.NORMAL),
    ])
    def test_bucket_for_days(self, days, bucket):
        assert retention.bucket_for_days(days, POLICY) == bucket

    @pytest.mark.parametrize("offset,bucket", [
        (-1.1, RetentionBucketEnum.EXPIRED),
        (-0.5, RetentionBucketEnum.CRITICAL),
        (7.5, RetentionBucketEnum.CRITICAL),
        (8.5, RetentionBucketEnum.WARNING),
        (31.5, RetentionBucketEnum.NORMAL),
    ])
    def test_classify_record(self, offset, bucket):
        assert retention.classify(_post_expiring_in(offset), NOW, POLICY) == bucket

    def test_custom_thresholds(self):
        policy = RetentionPolicy(critical_days=2, warning_days=5)
        assert retention.bucket_for_days(3, policy) == RetentionBucketEnum.WARNING
        assert retention.bucket_for_days(6, policy) == RetentionBucketEnum.NORMAL


class TestPolicyConfig:
    def test_yaml_overrides(self):
        policy = RetentionPolicy.from_config({
            "default_retention_days": 90,
            "audit_retention_days": 365,
            "thresholds": {"critical_days": 3, "warning_days": 14},
        })
        assert (policy.default_retention_days, policy.audit_retention_days) == (90, 365)
        assert (policy.critical_days, policy.warning_days) == (3, 14)

    def test_empty_config_uses_defaults(self):
        policy = RetentionPolicy.from_config({})
        assert policy.critical_days == 7
        assert policy.warning_days == 30

    def test_inverted_thresholds_rejected(self):
        with pytest.raises(ValueError):
            RetentionPolicy.from_config({"thresholds": {"critical_days": 30, "warning_days": 7}})

    def test_repo_config_loads(self):
        policy = RetentionPolicy.from_config()
        assert policy.default_retention_days == 1825
        assert policy.audit_retention_days == 2555


# ---------------------------------------------------------------------------
# Store-backed operations
# ---------------------------------------------------------------------------


class TestExtend:
    def test_extend_one_resets_clock(self, db):
        report = make_report(db, submitted_days_ago=1900, retention_days=1825)
        now = utcnow()
        assert retention.classify(report, now, POLICY) == RetentionBucketEnum.EXPIRED

        retention.extend_one(db, "intel_reports", report.report_id, 30, ADMIN, now=now)
        report = db.get(IntelReport, report.report_id)
        assert report.retention_anchor_at == now
        assert report.retention_days == 30
        assert report.expires_at == now + timedelta(days=30)
        assert retention.classify(report, now, POLICY) == RetentionBucketEnum.WARNING

        entry = db.query(AuditEntry).one()
        assert entry.action == "EXTEND_RETENTION"
        assert entry.details["meta"]["retention_days"] == 30

    def test_extend_validates_input(self, db):
        report = make_report(db)
        with pytest.raises(ValidationError):
            retention.extend_one(db, "intel_reports", report.report_id, 0, ADMIN)
        with pytest.raises(ValidationError):
            retention.extend_one(db, "audit_log", 1, 30, ADMIN)
        with pytest.raises(NotFoundError):
            retention.extend_one(db, "posts", 12345, 30, ADMIN)

    def test_bulk_reports_failures(self, db):
        post = make_post(db, published_at=utcnow() - timedelta(days=10))
        result = retention.extend(db, "posts", [post.post_id, 9999, post.post_id], 60, ADMIN)
        assert result.updated_ids == [post.post_id]
        assert result.failed_ids == [9999]
        assert "9999" in result.errors[9999]
        assert result.processed == 2
        assert db.query(AuditEntry).filter_by(action="EXTEND_RETENTION").count() == 1

    def test_bulk_cancelled(self, db):
        post = make_post(db, published_at=utcnow())
        cancel = threading.Event()
        cancel.set()
        result = retention.extend(db, "posts", [post.post_id], 60, ADMIN, cancel_event=cancel)
        assert result.cancelled is True
        assert result.updated_ids == []


class TestViews:
    def test_expiring_lists_soonest_first(self, db):
        soon = make_report(db, submitted_days_ago=1819.5)
        later = make_report(db, submitted_days_ago=1804.5)
        make_report(db)  # normal
        make_report(db, submitted_days_ago=1900)  # expired
        rows = retention.expiring(db, within_days=30, policy=POLICY)
        assert [r["id"] for r in rows] == [soon.report_id, later.report_id]
        assert rows[0]["bucket"] == "critical"
        assert rows[1]["bucket"] == "warning"

    def test_summary_counts(self, db):
        make_report(db, submitted_days_ago=1819.5)
        make_report(db, submitted_days_ago=1804.5)
        make_report(db)
        make_report(db, submitted_days_ago=1900)
        make_post(db, published_at=utcnow() - timedelta(days=1900))
        counts = retention.summary(db, policy=POLICY)
        assert counts["intel_reports"] == {"expired": 1, "critical": 1, "warning": 1, "normal": 1}
        assert counts["posts"] == {"expired": 1, "critical": 0, "warning": 0, "normal": 0}

    def test_recompute_repairs_drift(self, db):
        report = make_report(db)
        derived = report.derived_expiry()
        report.expires_at = datetime(2000, 1, 1)
        db.commit()
        assert retention.recompute_expirations(db) == 1
        assert db.get(IntelReport, report.report_id).expires_at == derived
        assert db.query(AuditEntry).filter_by(action="RECOMPUTE_EXPIRATIONS").count() == 1
        assert retention.recompute_expirations(db) == 0


class TestPurge:
    def test_purges_only_expired_and_is_idempotent(self, db):
        expired_id = make_report(db, submitted_days_ago=1900).report_id
        kept_id = make_report(db).report_id
        grace_id = make_report(db, submitted_days_ago=1825.5).report_id  # expired half a day ago
        post_id = make_post(db, published_at=utcnow() - timedelta(days=2000)).post_id

        first = retention.purge(db, actor=ADMIN, policy=POLICY)
        assert first.purged_count == 2
        assert first.failed_ids == []
        assert db.get(IntelReport, expired_id) is None
        assert db.get(Post, post_id) is None
        assert db.get(IntelReport, kept_id) is not None
        assert db.get(IntelReport, grace_id) is not None

        second = retention.purge(db, actor=ADMIN, policy=POLICY)
        assert second.purged_count == 0

    def test_one_audit_entry_per_purged_record(self, db):
        ids = [make_report(db, submitted_days_ago=d).report_id for d in (1900, 1950)]
        retention.purge(db, policy=POLICY)
        entries = db.query(AuditEntry).filter_by(action="PURGE_EXPIRED").order_by(AuditEntry.audit_id).all()
        assert [e.resource_id for e in entries] == [str(i) for i in ids]
        assert all(e.actor_id is None for e in entries)
        assert entries[0].details["meta"]["intel_number"]

    def test_purge_removes_review_trail(self, db):
        report = make_report(db, submitted_days_ago=1900)
        approval.reject(db, report.report_id, SUPERVISOR, "stale")
        retention.purge(db, policy=POLICY)
        assert db.query(ReviewRecord).count() == 0

    def test_cancelled_before_start(self, db):
        make_report(db, submitted_days_ago=1900)
        cancel = threading.Event()
        cancel.set()
        result = retention.purge(db, policy=POLICY, cancel_event=cancel)
        assert result.cancelled is True
        assert result.purged_count == 0
        assert db.query(IntelReport).count() == 1

    def test_single_flight(self, db):
        assert retention._purge_lock.acquire(blocking=False)
        try:
            with pytest.raises(ConflictError):
                retention.purge(db, policy=POLICY)
        finally:
            retention._purge_lock.release()

    def test_failures_collected(self, db):
        r1 = make_report(db, submitted_days_ago=1900).report_id
        r2 = make_report(db, submitted_days_ago=1900).report_id
        real_record = audit_recorder.record
        calls = []

        def flaky_record(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                raise PersistenceError("disk full")
            return real_record(*args, **kwargs)

        with patch("intelreview.modules.retention.audit_recorder.record", side_effect=flaky_record):
            result = retention.purge(db, policy=POLICY)
        assert result.failed_ids == [f"intel_reports:{r1}"]
        assert result.purged_count == 1
        # The failed record's deletion rolled back with its audit write
        assert db.get(IntelReport, r1) is not None
        assert db.get(IntelReport, r2) is None

    def test_transition_between_selection_and_delete_skips_record(self, session_factory):
        setup = session_factory()
        report_id = make_report(setup, submitted_days_ago=1900).report_id
        setup.close()

        db = session_factory()
        try:
            hook = _ChangeBeforeFirstRecord(
                session_factory, lambda other: approval.approve(other, report_id, SUPERVISOR),
            )
            result = retention.purge(db, policy=POLICY, cancel_event=hook)
            assert result.skipped_count == 1
            assert result.purged_count == 0
            assert result.failed_ids == []
            assert db.query(AuditEntry).filter_by(action="PURGE_EXPIRED").count() == 0
        finally:
            db.close()

        check = session_factory()
        try:
            report = check.get(IntelReport, report_id)
            assert report is not None
            assert report.status == ReportStatusEnum.APPROVED
        finally:
            check.close()

    def test_skipped_record_purged_on_next_pass(self, session_factory):
        """Rejection leaves the report expired; only this pass passes over it."""
        setup = session_factory()
        report_id = make_report(setup, submitted_days_ago=1900).report_id
        setup.close()

        db = session_factory()
        try:
            hook = _ChangeBeforeFirstRecord(
                session_factory, lambda other: approval.reject(other, report_id, SUPERVISOR, "stale"),
            )
            first = retention.purge(db, policy=POLICY, cancel_event=hook)
            assert (first.purged_count, first.skipped_count) == (0, 1)

            second = retention.purge(db, policy=POLICY)
            assert (second.purged_count, second.skipped_count) == (1, 0)
            assert db.get(IntelReport, report_id) is None
        finally:
            db.close()

    def test_extension_between_selection_and_delete_skips_post(self, session_factory):
        setup = session_factory()
        post_id = make_post(setup, published_at=utcnow() - timedelta(days=2000)).post_id
        setup.close()

        db = session_factory()
        try:
            hook = _ChangeBeforeFirstRecord(
                session_factory, lambda other: retention.extend_one(other, "posts", post_id, 30, ADMIN),
            )
            result = retention.purge(db, policy=POLICY, cancel_event=hook)
            assert result.skipped_count == 1
            assert db.get(Post, post_id) is not None
        finally:
            db.close()


class TestPurgeAuditLog:
    def test_drops_entries_past_window(self, db):
        now = utcnow()
        db.add(AuditEntry(timestamp=now - timedelta(days=3000), action="OLD"))
        db.add(AuditEntry(timestamp=now - timedelta(days=10), action="RECENT"))
        db.commit()

        purged = retention.purge_audit_log(db, now=now, actor=ADMIN, policy=POLICY)
        assert purged == 1
        actions = sorted(e.action for e in db.query(AuditEntry).all())
        assert actions == ["PURGE_AUDIT_LOG", "RECENT"]
        summary_entry = db.query(AuditEntry).filter_by(action="PURGE_AUDIT_LOG").one()
        assert summary_entry.details["meta"]["purged"] == 1
