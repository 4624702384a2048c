"""Retention policy: expiry computation, urgency buckets, extensions and purge sweeps.

Expiry is always derived: ``(retention_anchor_at or anchor_date) + retention_days``
where the anchor date is ``submitted_at`` for reports and ``published_at`` for
posts. Only an extension moves the anchor, and every extension is audited.

Days until expiration are whole days truncated toward zero, so a record
becomes ``expired`` (days < 0) one full day after its expiry instant. That
day is the purge grace period.

Batch operations (bulk extension, purge) commit one record at a time. A
failure or cancellation mid-batch never leaves a record half-applied; the
result reports what was done and what failed.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from functools import lru_cache
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional, Type

from sqlalchemy import func
from sqlalchemy.orm import Session

from intelreview.config import settings, load_retention_config
from intelreview.errors import ConflictError, IntelReviewError, NotFoundError, ValidationError
from intelreview.models.audit_entry import AuditEntry
from intelreview.models.base import RetainedRecordMixin, RetentionBucketEnum, utcnow
from intelreview.models.intel_report import IntelReport
from intelreview.models.post import Post
from intelreview.modules import audit_recorder
from intelreview.modules.report_store import unit_of_work
from intelreview.schemas.actor import Actor

logger = logging.getLogger(__name__)

# table name -> (model, primary key attribute)
RETAINED_MODELS: dict[str, tuple[Type[RetainedRecordMixin], str]] = {
    "intel_reports": (IntelReport, "report_id"),
    "posts": (Post, "post_id"),
}

# Single-flight guards: one sweep of each kind per process at a time
_purge_lock = threading.Lock()
_audit_purge_lock = threading.Lock()


@dataclass
class RetentionPolicy:
    default_retention_days: int = 1825
    audit_retention_days: int = 2555
    critical_days: int = 7
    warning_days: int = 30

    @classmethod
    def from_config(cls, config: Optional[dict] = None) -> "RetentionPolicy":
        """Settings provide the day counts; retention.yaml may override them and the thresholds."""
        if config is None:
            config = load_retention_config()
        thresholds = config.get("thresholds", {}) or {}
        policy = cls(
            default_retention_days=int(config.get("default_retention_days", settings.DEFAULT_RETENTION_DAYS)),
            audit_retention_days=int(config.get("audit_retention_days", settings.AUDIT_RETENTION_DAYS)),
            critical_days=int(thresholds.get("critical_days", 7)),
            warning_days=int(thresholds.get("warning_days", 30)),
        )
        if not 0 <= policy.critical_days < policy.warning_days:
            raise ValueError(
                f"Retention thresholds must satisfy 0 <= critical_days < warning_days "
                f"(got {policy.critical_days}, {policy.warning_days})"
            )
        return policy


@lru_cache(maxsize=1)
def default_policy() -> RetentionPolicy:
    """Policy from settings + retention.yaml, read once per process."""
    return RetentionPolicy.from_config()


@dataclass
class ExtensionResult:
    updated_ids: list[int] = field(default_factory=list)
    failed_ids: list[int] = field(default_factory=list)
    errors: dict[int, str] = field(default_factory=dict)
    processed: int = 0
    cancelled: bool = False


@dataclass
class PurgeResult:
    purged_count: int = 0
    # "<table>:<id>" for every record whose deletion failed
    failed_ids: list[str] = field(default_factory=list)
    skipped_count: int = 0
    processed: int = 0
    cancelled: bool = False


def _naive_utc(now: Optional[datetime]) -> datetime:
    if now is None:
        return utcnow()
    if now.tzinfo is not None:
        return now.astimezone(timezone.utc).replace(tzinfo=None)
    return now


def _model_for(table: str) -> tuple[Type[RetainedRecordMixin], str]:
    try:
        return RETAINED_MODELS[table]
    except KeyError:
        raise ValidationError(
            f"'{table}' is not subject to retention; must be one of {sorted(RETAINED_MODELS)}"
        ) from None


# ---------------------------------------------------------------------------
# Pure policy functions
# ---------------------------------------------------------------------------

def compute_expiry(record: RetainedRecordMixin) -> datetime:
    expiry = record.derived_expiry()
    if expiry is None:
        raise ValidationError("Record has no submission/publication date to anchor retention")
    return expiry


def stamp_expiry(record: RetainedRecordMixin) -> datetime:
    """Write the derived expiry onto the record."""
    record.expires_at = compute_expiry(record)
    return record.expires_at


def days_until_expiration(record: RetainedRecordMixin, now: Optional[datetime] = None) -> int:
    delta = compute_expiry(record) - _naive_utc(now)
    # int() truncates toward zero, matching whole-day differences
    return int(delta.total_seconds() / 86400)


def bucket_for_days(days: int, policy: Optional[RetentionPolicy] = None) -> RetentionBucketEnum:
    policy = policy or default_policy()
    if days < 0:
        return RetentionBucketEnum.EXPIRED
    if days <= policy.critical_days:
        return RetentionBucketEnum.CRITICAL
    if days <= policy.warning_days:
        return RetentionBucketEnum.WARNING
    return RetentionBucketEnum.NORMAL


def classify(
    record: RetainedRecordMixin,
    now: Optional[datetime] = None,
    policy: Optional[RetentionPolicy] = None,
) -> RetentionBucketEnum:
    return bucket_for_days(days_until_expiration(record, now), policy)


def _bucket_bounds(now: datetime, policy: RetentionPolicy) -> dict[str, datetime]:
    """expires_at cut-offs equivalent to the truncated-day buckets."""
    return {
        "expired_before": now - timedelta(days=1),
        "critical_before": now + timedelta(days=policy.critical_days + 1),
        "warning_before": now + timedelta(days=policy.warning_days + 1),
    }


EXPIRATION_FILTERS = ("all", "active", "expired", "expiring_soon")


def expiration_criteria(
    model: Type[RetainedRecordMixin],
    expiration: str,
    now: Optional[datetime] = None,
    policy: Optional[RetentionPolicy] = None,
) -> list:
    """SQL filters on ``expires_at`` for an expiration filter name.

    ``expiring_soon`` is the critical bucket; ``active`` is anything not yet expired.
    """
    if expiration not in EXPIRATION_FILTERS:
        raise ValidationError(f"Invalid expiration filter '{expiration}'; must be one of {list(EXPIRATION_FILTERS)}")
    policy = policy or default_policy()
    bounds = _bucket_bounds(_naive_utc(now), policy)
    if expiration == "expired":
        return [model.expires_at <= bounds["expired_before"]]
    if expiration == "active":
        return [model.expires_at > bounds["expired_before"]]
    if expiration == "expiring_soon":
        return [model.expires_at > bounds["expired_before"], model.expires_at < bounds["critical_before"]]
    return []


# ---------------------------------------------------------------------------
# Extensions
# ---------------------------------------------------------------------------

def extend_one(
    db: Session,
    table: str,
    record_id: int,
    days: int,
    actor: Actor,
    now: Optional[datetime] = None,
    ip_address: Optional[str] = None,
    details: Optional[dict] = None,
) -> RetainedRecordMixin:
    """Reset one record's retention clock: expires_at = now + days. Atomic with its audit entry."""
    if days < 1:
        raise ValidationError("Retention extension must be at least 1 day")
    model, pk = _model_for(table)
    now = _naive_utc(now)

    with unit_of_work(db):
        record = db.query(model).filter(getattr(model, pk) == record_id).with_for_update().first()
        if record is None:
            raise NotFoundError(f"{table} record {record_id} not found")
        old_expiry = record.expires_at
        record.retention_anchor_at = now
        record.retention_days = days
        new_expiry = stamp_expiry(record)

        payload = dict(details or {})
        payload["meta"] = {
            **payload.get("meta", {}),
            "retention_days": days,
            "old_expires_at": old_expiry.isoformat() if old_expiry else None,
            "new_expires_at": new_expiry.isoformat(),
        }
        audit_recorder.record(
            db, actor, "EXTEND_RETENTION", table, record_id,
            ip_address=ip_address, details=payload,
        )

    logger.info("Extended %s %s retention to %d days (expires %s)", table, record_id, days, new_expiry)
    return record


def extend(
    db: Session,
    table: str,
    record_ids: Iterable[int],
    days: int,
    actor: Actor,
    now: Optional[datetime] = None,
    cancel_event: Optional[threading.Event] = None,
    ip_address: Optional[str] = None,
    details: Optional[dict] = None,
) -> ExtensionResult:
    """Bulk extension. Each id is its own unit of work; failures are reported, never skipped silently."""
    if days < 1:
        raise ValidationError("Retention extension must be at least 1 day")
    _model_for(table)
    now = _naive_utc(now)
    result = ExtensionResult()

    for record_id in sorted(set(record_ids)):
        if cancel_event is not None and cancel_event.is_set():
            result.cancelled = True
            logger.warning("Bulk extension cancelled after %d of the requested records", result.processed)
            break
        result.processed += 1
        try:
            extend_one(db, table, record_id, days, actor, now=now, ip_address=ip_address, details=details)
        except IntelReviewError as exc:
            result.failed_ids.append(record_id)
            result.errors[record_id] = str(exc)
            continue
        result.updated_ids.append(record_id)

    if result.failed_ids:
        logger.warning("Bulk extension on %s: %d failed (%s)", table, len(result.failed_ids), result.failed_ids)
    return result


# ---------------------------------------------------------------------------
# Read-side views
# ---------------------------------------------------------------------------

def expiring(
    db: Session,
    now: Optional[datetime] = None,
    within_days: int = 30,
    policy: Optional[RetentionPolicy] = None,
) -> list[dict]:
    """Not-yet-expired records whose days until expiration <= within_days, soonest first."""
    policy = policy or default_policy()
    now = _naive_utc(now)
    bounds = _bucket_bounds(now, policy)
    upper = now + timedelta(days=within_days + 1)
    rows: list[dict] = []
    for table, (model, pk) in RETAINED_MODELS.items():
        records = (
            db.query(model)
            .filter(model.expires_at > bounds["expired_before"], model.expires_at < upper)
            .all()
        )
        for record in records:
            days = days_until_expiration(record, now)
            rows.append({
                "table": table,
                "id": getattr(record, pk),
                "expires_at": record.expires_at,
                "days_until_expiration": days,
                "bucket": bucket_for_days(days, policy).value,
                "record": record,
            })
    rows.sort(key=lambda r: r["expires_at"])
    return rows


def summary(
    db: Session,
    now: Optional[datetime] = None,
    policy: Optional[RetentionPolicy] = None,
) -> dict[str, dict[str, int]]:
    """Bucket counts per retained table."""
    policy = policy or default_policy()
    now = _naive_utc(now)
    bounds = _bucket_bounds(now, policy)
    out: dict[str, dict[str, int]] = {}
    for table, (model, pk) in RETAINED_MODELS.items():
        pk_col = getattr(model, pk)

        def _count(*criteria) -> int:
            return db.query(func.count(pk_col)).filter(*criteria).scalar() or 0

        out[table] = {
            RetentionBucketEnum.EXPIRED.value: _count(model.expires_at <= bounds["expired_before"]),
            RetentionBucketEnum.CRITICAL.value: _count(
                model.expires_at > bounds["expired_before"], model.expires_at < bounds["critical_before"]
            ),
            RetentionBucketEnum.WARNING.value: _count(
                model.expires_at >= bounds["critical_before"], model.expires_at < bounds["warning_before"]
            ),
            RetentionBucketEnum.NORMAL.value: _count(model.expires_at >= bounds["warning_before"]),
        }
    return out


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------

def recompute_expirations(db: Session, actor: Optional[Actor] = None) -> int:
    """Repair stored expires_at values that drifted from the derived expiry. Returns rows fixed."""
    fixed = 0
    with unit_of_work(db):
        for table, (model, pk) in RETAINED_MODELS.items():
            for record in db.query(model).all():
                derived = record.derived_expiry()
                if derived is not None and record.expires_at != derived:
                    record.expires_at = derived
                    fixed += 1
        audit_recorder.record(
            db, actor, "RECOMPUTE_EXPIRATIONS", None, None,
            details={"meta": {"fixed": fixed}},
        )
    logger.info("Recomputed expirations: %d record(s) corrected", fixed)
    return fixed


def purge(
    db: Session,
    now: Optional[datetime] = None,
    actor: Optional[Actor] = None,
    policy: Optional[RetentionPolicy] = None,
    cancel_event: Optional[threading.Event] = None,
    ip_address: Optional[str] = None,
    details: Optional[dict] = None,
) -> PurgeResult:
    """Delete every retained record classified ``expired``.

    Writes one PURGE_EXPIRED audit entry per deleted record, in the same
    commit as the deletion. Each candidate is re-read under a row lock and
    re-classified first; a record that changed since selection is skipped
    on this pass. Idempotent: a second run over an unchanged store purges 0.
    """
    if not _purge_lock.acquire(blocking=False):
        raise ConflictError("A purge sweep is already running")
    try:
        policy = policy or default_policy()
        now = _naive_utc(now)
        result = PurgeResult()

        # (table, id, version seen at selection)
        candidates: list[tuple[str, int, int]] = []
        cutoff = _bucket_bounds(now, policy)["expired_before"]
        for table, (model, pk) in RETAINED_MODELS.items():
            pk_col = getattr(model, pk)
            rows = (
                db.query(pk_col, model.version)
                .filter(model.expires_at <= cutoff)
                .order_by(pk_col)
                .all()
            )
            candidates.extend((table, record_id, version) for record_id, version in rows)

        for table, record_id, seen_version in candidates:
            if cancel_event is not None and cancel_event.is_set():
                result.cancelled = True
                logger.warning("Purge cancelled after %d of %d candidates", result.processed, len(candidates))
                break
            result.processed += 1
            try:
                deleted = _purge_one(
                    db, table, record_id, seen_version, now, actor, policy, ip_address, details,
                )
            except ConflictError:
                logger.info("Skipped %s %s: changed during purge", table, record_id)
                result.skipped_count += 1
                continue
            except IntelReviewError as exc:
                logger.error("Failed to purge %s %s: %s", table, record_id, exc)
                result.failed_ids.append(f"{table}:{record_id}")
                continue
            if deleted:
                result.purged_count += 1
            else:
                result.skipped_count += 1

        logger.info(
            "Purge complete: %d purged, %d skipped, %d failed%s",
            result.purged_count, result.skipped_count, len(result.failed_ids),
            " (cancelled)" if result.cancelled else "",
        )
        return result
    finally:
        _purge_lock.release()


def _purge_one(
    db: Session,
    table: str,
    record_id: int,
    seen_version: int,
    now: datetime,
    actor: Optional[Actor],
    policy: RetentionPolicy,
    ip_address: Optional[str],
    details: Optional[dict],
) -> bool:
    model, pk = RETAINED_MODELS[table]
    with unit_of_work(db):
        record = (
            db.query(model)
            .filter(getattr(model, pk) == record_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if record is None:
            return False
        if record.version != seen_version:
            logger.info(
                "Skipped %s %s: version %s is newer than the selected %s",
                table, record_id, record.version, seen_version,
            )
            return False
        days = days_until_expiration(record, now)
        if bucket_for_days(days, policy) != RetentionBucketEnum.EXPIRED:
            return False
        payload = dict(details or {})
        payload["meta"] = {
            **payload.get("meta", {}),
            "expires_at": record.expires_at.isoformat() if record.expires_at else None,
            "days_until_expiration": days,
        }
        if isinstance(record, IntelReport):
            payload["meta"]["intel_number"] = record.intel_number
        else:
            payload["meta"]["title"] = record.title
        db.delete(record)
        audit_recorder.record(
            db, actor, "PURGE_EXPIRED", table, record_id,
            ip_address=ip_address, details=payload,
        )
    return True


def purge_audit_log(
    db: Session,
    now: Optional[datetime] = None,
    actor: Optional[Actor] = None,
    policy: Optional[RetentionPolicy] = None,
    ip_address: Optional[str] = None,
    details: Optional[dict] = None,
) -> int:
    """Delete audit entries older than the audit retention window.

    Records a single PURGE_AUDIT_LOG summary entry (written after the
    delete, so it is never itself eligible).
    """
    if not _audit_purge_lock.acquire(blocking=False):
        raise ConflictError("An audit log purge is already running")
    try:
        policy = policy or default_policy()
        now = _naive_utc(now)
        cutoff = now - timedelta(days=policy.audit_retention_days)
        with unit_of_work(db):
            purged = (
                db.query(AuditEntry)
                .filter(AuditEntry.timestamp < cutoff)
                .delete(synchronize_session=False)
            )
            payload = dict(details or {})
            payload["meta"] = {
                **payload.get("meta", {}),
                "purged": purged,
                "cutoff": cutoff.isoformat(),
                "audit_retention_days": policy.audit_retention_days,
            }
            audit_recorder.record(
                db, actor, "PURGE_AUDIT_LOG", "audit_log", None,
                ip_address=ip_address, details=payload,
            )
        logger.info("Audit log purge: %d entries older than %s removed", purged, cutoff.date())
        return purged
    finally:
        _audit_purge_lock.release()
