"""Persistence and identity for intel reports, their child rows, and posts.

No business rules live here: status changes go through ``approval`` and
expiry through ``retention``. Functions stage changes on the caller's
session; ``unit_of_work`` is the single place a business mutation and its
audit entry are committed (or rolled back) together.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional, Sequence

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from intelreview.errors import ConflictError, IntelReviewError, NotFoundError, PersistenceError, ValidationError
from intelreview.models.base import ClassificationEnum, ReportStatusEnum, utcnow
from intelreview.models.intel_report import (
    IntelReport, ReportSubject, ReportOrganization, ReportSource,
)
from intelreview.models.post import Post
from intelreview.models.review_record import ReviewRecord
from intelreview.schemas.actor import Actor
from intelreview.schemas.intel_report import IntelReportCreate, IntelReportUpdate

logger = logging.getLogger(__name__)


@contextmanager
def unit_of_work(db: Session) -> Iterator[Session]:
    """Commit everything staged inside the block atomically, or nothing.

    StaleDataError (version check lost) -> ConflictError
    IntegrityError (e.g. duplicate intel_number) -> ConflictError
    any other SQLAlchemyError -> PersistenceError
    """
    try:
        yield db
        db.commit()
    except StaleDataError as exc:
        db.rollback()
        raise ConflictError(
            "Record was modified by another request; re-read it and retry the decision"
        ) from exc
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError(str(exc.orig) if exc.orig else str(exc)) from exc
    except IntelReviewError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Store write failed, transaction rolled back: %s", exc, exc_info=True)
        raise PersistenceError("Store unavailable; no changes were applied") from exc


def get_report(db: Session, report_id: int, lock: bool = False) -> IntelReport:
    """Load one report or raise NotFoundError. ``lock`` takes a row lock (FOR UPDATE)."""
    q = db.query(IntelReport).filter(IntelReport.report_id == report_id)
    if lock:
        # Locked reads always reflect the committed row, not the identity map
        q = q.with_for_update().populate_existing()
    report = q.first()
    if report is None:
        raise NotFoundError(f"Intel report {report_id} not found")
    return report


SEARCHABLE_COLUMNS = (
    IntelReport.subject,
    IntelReport.intel_number,
    IntelReport.summary,
    IntelReport.criminal_activity,
)


def _like_pattern(text: str) -> str:
    escaped = text.strip().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _page(q, page: Optional[int], limit: Optional[int]) -> tuple[list[IntelReport], int]:
    total = q.count()
    q = q.order_by(IntelReport.submitted_at.desc(), IntelReport.report_id.desc())
    if limit is not None:
        q = q.offset(((page or 1) - 1) * limit).limit(limit)
    return q.all(), total


def list_reports(
    db: Session,
    status: Optional[str] = None,
    classification: Optional[str] = None,
    agent_id: Optional[int] = None,
    search: Optional[str] = None,
    criteria: Sequence = (),
    page: Optional[int] = None,
    limit: Optional[int] = None,
) -> tuple[list[IntelReport], int]:
    """Newest-first page of reports plus the filtered total.

    ``search`` is a case-insensitive substring match on subject and intel
    number. ``criteria`` carries extra SQL filters (the expiration window).
    """
    q = db.query(IntelReport)
    if status and status != "all":
        q = q.filter(IntelReport.status == ReportStatusEnum(status))
    if classification:
        try:
            q = q.filter(IntelReport.classification == ClassificationEnum(classification))
        except ValueError:
            raise ValidationError(
                f"Invalid classification '{classification}'. "
                f"Must be one of: {[c.value for c in ClassificationEnum]}"
            ) from None
    if agent_id is not None:
        q = q.filter(IntelReport.agent_id == agent_id)
    if search and search.strip():
        pattern = _like_pattern(search)
        q = q.filter(or_(
            IntelReport.subject.ilike(pattern, escape="\\"),
            IntelReport.intel_number.ilike(pattern, escape="\\"),
        ))
    if criteria:
        q = q.filter(*criteria)
    return _page(q, page, limit)


def search_reports(
    db: Session,
    text: Optional[str],
    page: int = 1,
    limit: int = 10,
) -> tuple[list[IntelReport], int]:
    """System-wide search over approved reports: subject, intel number, summary, criminal activity."""
    if not text or not text.strip():
        return [], 0
    pattern = _like_pattern(text)
    q = db.query(IntelReport).filter(
        IntelReport.status == ReportStatusEnum.APPROVED,
        or_(*(column.ilike(pattern, escape="\\") for column in SEARCHABLE_COLUMNS)),
    )
    return _page(q, page, limit)


def next_intel_number(db: Session, year: Optional[int] = None) -> str:
    """Next ``YYYY-NNN`` number for the year; uniqueness is enforced by the column."""
    year = year or utcnow().year
    prefix = f"{year}-"
    existing = db.query(IntelReport.intel_number).filter(
        IntelReport.intel_number.like(f"{prefix}%")
    ).all()
    highest = 0
    for (number,) in existing:
        suffix = number[len(prefix):]
        if suffix.isdigit():
            highest = max(highest, int(suffix))
    return f"{prefix}{highest + 1:03d}"


def create_report(
    db: Session,
    data: IntelReportCreate,
    author: Actor,
    default_retention_days: int,
) -> IntelReport:
    """Stage a new report. New reports are always pending regardless of input."""
    report = IntelReport(
        intel_number=data.intel_number or next_intel_number(db),
        classification=data.classification,
        status=ReportStatusEnum.PENDING,
        agent_id=author.user_id,
        agent_name=author.username,
        case_number=data.case_number,
        subject=data.subject,
        criminal_activity=data.criminal_activity,
        summary=data.summary,
        submitted_at=_naive_utc(data.submitted_at) if data.submitted_at else utcnow(),
        retention_days=data.retention_days or default_retention_days,
        corrected=False,
    )
    _replace_children(report, data.subjects, data.organizations, data.sources)
    report.expires_at = report.derived_expiry()
    db.add(report)
    db.flush()
    return report


def update_report(db: Session, report: IntelReport, data: IntelReportUpdate) -> dict:
    """Apply content edits; returns the changed field names -> new values for the audit payload."""
    changes: dict = {}
    for field in ("classification", "case_number", "subject", "criminal_activity", "summary"):
        value = getattr(data, field)
        if value is not None and value != getattr(report, field):
            setattr(report, field, value)
            changes[field] = value.value if hasattr(value, "value") else value
    if data.subjects is not None or data.organizations is not None or data.sources is not None:
        _replace_children(report, data.subjects, data.organizations, data.sources)
        changes["children"] = True
    db.flush()
    return changes


def delete_report(db: Session, report: IntelReport) -> None:
    """Stage deletion of the report; child rows and its review trail cascade."""
    db.delete(report)
    db.flush()


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _replace_children(report: IntelReport, subjects, organizations, sources) -> None:
    if subjects is not None:
        report.subjects = [ReportSubject(**s.model_dump()) for s in subjects]
    if organizations is not None:
        report.organizations = [ReportOrganization(**o.model_dump()) for o in organizations]
    if sources is not None:
        report.sources = [ReportSource(**s.model_dump()) for s in sources]


def review_trail(db: Session, report_id: int) -> list[ReviewRecord]:
    """Corrections trail, oldest first."""
    get_report(db, report_id)
    return (
        db.query(ReviewRecord)
        .filter(ReviewRecord.report_id == report_id)
        .order_by(ReviewRecord.review_id.asc())
        .all()
    )


def status_counts(db: Session) -> dict[str, int]:
    rows = db.query(IntelReport.status, func.count(IntelReport.report_id)).group_by(IntelReport.status).all()
    counts = {s.value: 0 for s in ReportStatusEnum}
    for status, count in rows:
        key = status.value if hasattr(status, "value") else status
        counts[key] = count
    return counts


def get_post(db: Session, post_id: int, lock: bool = False) -> Post:
    q = db.query(Post).filter(Post.post_id == post_id)
    if lock:
        q = q.with_for_update()
    post = q.first()
    if post is None:
        raise NotFoundError(f"Post {post_id} not found")
    return post


def create_post(
    db: Session,
    title: str,
    content: Optional[str],
    author: Actor,
    retention_days: int,
    published_at: Optional[datetime] = None,
) -> Post:
    post = Post(
        title=title,
        content=content,
        author_name=author.username,
        published_at=published_at or utcnow(),
        retention_days=retention_days,
    )
    post.expires_at = post.derived_expiry()
    db.add(post)
    db.flush()
    return post
