from __future__ import annotations

import logging
import math
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import Response
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.orm import Session

from intelreview.config import settings
from intelreview.database import get_db
from intelreview.errors import AuthorizationError, ValidationError
from intelreview.modules import audit_recorder
from intelreview.modules.audit_recorder import client_ip, request_details
from intelreview.modules.report_store import unit_of_work
from intelreview.schemas.actor import Actor
from intelreview.schemas.intel_report import IntelReportCreate, IntelReportUpdate, StatusChangeRequest
from intelreview.schemas.retention import BulkRetentionRequest, PostCreate, RetentionExtendRequest

logger = logging.getLogger(__name__)

router = APIRouter()

# Shared with main.py (app.state.limiter); only purge endpoints carry an explicit limit
limiter = Limiter(key_func=get_remote_address)


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------

def get_actor(
    x_user_id: Optional[str] = Header(None),
    x_username: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> Actor:
    """Actor identity as forwarded by the auth gateway. No headers -> anonymous agent."""
    user_id = None
    if x_user_id:
        try:
            user_id = int(x_user_id)
        except ValueError:
            raise ValidationError(f"X-User-Id must be an integer, got '{x_user_id}'")
    return Actor(
        user_id=user_id,
        username=x_username,
        role=(x_user_role or "agent").strip().lower(),
    )


def _require_user(actor: Actor) -> None:
    if actor.user_id is None:
        raise AuthorizationError("Request carries no user identity")


def _require_admin(actor: Actor) -> None:
    _require_user(actor)
    if not actor.is_admin:
        raise AuthorizationError("Admin role required")


# ---------------------------------------------------------------------------
# Serializers
# ---------------------------------------------------------------------------

def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _report_dict(report) -> dict:
    from intelreview.modules.retention import bucket_for_days, days_until_expiration

    days = days_until_expiration(report)
    return {
        "id": report.report_id,
        "intel_number": report.intel_number,
        "classification": report.classification.value if hasattr(report.classification, "value") else report.classification,
        "status": report.status.value if hasattr(report.status, "value") else report.status,
        "agent_id": report.agent_id,
        "agent_name": report.agent_name,
        "case_number": report.case_number,
        "subject": report.subject,
        "criminal_activity": report.criminal_activity,
        "summary": report.summary,
        "submitted_at": _iso(report.submitted_at),
        "reviewed_at": _iso(report.reviewed_at),
        "reviewed_by": report.reviewed_by,
        "corrected": report.corrected,
        "version": report.version,
        "retention_days": report.retention_days,
        "expires_at": _iso(report.expires_at),
        "days_until_expiration": days,
        "retention_bucket": bucket_for_days(days).value,
    }


def _row_dict(row, exclude: tuple[str, ...]) -> dict:
    out = {}
    for column in row.__table__.columns:
        if column.name in exclude:
            continue
        value = getattr(row, column.name)
        out[column.name] = value.isoformat() if hasattr(value, "isoformat") else value
    return out


def _post_dict(post) -> dict:
    from intelreview.modules.retention import bucket_for_days, days_until_expiration

    days = days_until_expiration(post)
    return {
        "id": post.post_id,
        "title": post.title,
        "content": post.content,
        "author_name": post.author_name,
        "published_at": _iso(post.published_at),
        "retention_days": post.retention_days,
        "expires_at": _iso(post.expires_at),
        "days_until_expiration": days,
        "retention_bucket": bucket_for_days(days).value,
        "version": post.version,
    }


# ---------------------------------------------------------------------------
# Intel reports
# ---------------------------------------------------------------------------

@router.get("/intel-reports", tags=["intel-reports"])
def list_intel_reports(
    status: Optional[str] = Query(None, pattern="^(pending|approved|rejected|all)$"),
    classification: Optional[str] = None,
    expiration: str = Query("all", pattern="^(all|active|expired|expiring_soon)$"),
    search: Optional[str] = None,
    agent_id: Optional[int] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=settings.MAX_QUERY_LIMIT),
    db: Session = Depends(get_db),
):
    """Newest-first report listing. ``search`` matches subject or intel number."""
    from intelreview.models.intel_report import IntelReport
    from intelreview.modules.report_store import list_reports
    from intelreview.modules.retention import expiration_criteria

    reports, total = list_reports(
        db,
        status=status,
        classification=classification,
        agent_id=agent_id,
        search=search,
        criteria=expiration_criteria(IntelReport, expiration),
        page=page,
        limit=limit,
    )
    return {
        "reports": [_report_dict(r) for r in reports],
        "total": total,
        "page": page,
        "pages": math.ceil(total / limit),
    }


@router.get("/intel-reports/search", tags=["intel-reports"])
def search_intel_reports(
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=settings.MAX_QUERY_LIMIT),
    db: Session = Depends(get_db),
):
    """System-wide search of approved reports by subject, number, summary or criminal activity."""
    from intelreview.modules.report_store import search_reports

    reports, total = search_reports(db, search, page=page, limit=limit)
    return {
        "reports": [{**_report_dict(r), "result_type": "intel_report"} for r in reports],
        "total": total,
    }


@router.post("/intel-reports", status_code=201, tags=["intel-reports"])
def create_intel_report(
    body: IntelReportCreate,
    request: Request,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    """Submit a new report. It always starts pending; intel_number is assigned when omitted."""
    from intelreview.modules.report_store import create_report
    from intelreview.modules.retention import default_policy

    _require_user(actor)
    with unit_of_work(db):
        report = create_report(db, body, actor, default_policy().default_retention_days)
        audit_recorder.record(
            db, actor, "CREATE_INTEL_REPORT", "intel_reports", report.report_id,
            ip_address=client_ip(request),
            details=request_details(
                request,
                body=body.model_dump(mode="json", exclude={"subjects", "organizations", "sources"}, exclude_none=True),
                status=201,
                intel_number=report.intel_number,
            ),
        )
    logger.info("Intel report %s created by user %s", report.intel_number, actor.user_id)
    return {"report": _report_dict(report)}


@router.get("/intel-reports/stats/overview", tags=["intel-reports"])
def intel_report_stats(db: Session = Depends(get_db)):
    """Status counts plus retention bucket counts per retained table."""
    from intelreview.modules.report_store import status_counts
    from intelreview.modules.retention import summary

    counts = status_counts(db)
    return {
        "total": sum(counts.values()),
        "status": counts,
        "retention": summary(db),
    }


@router.get("/intel-reports/expiring", tags=["retention"])
def list_expiring(
    days: int = Query(30, ge=0, le=3650),
    db: Session = Depends(get_db),
):
    """Reports and posts expiring within ``days``, soonest first."""
    from intelreview.modules.retention import expiring

    rows = expiring(db, within_days=days)
    return {
        "records": [
            {
                "table": row["table"],
                "id": row["id"],
                "label": getattr(row["record"], "intel_number", None) or getattr(row["record"], "title", None),
                "expires_at": _iso(row["expires_at"]),
                "days_until_expiration": row["days_until_expiration"],
                "bucket": row["bucket"],
            }
            for row in rows
        ],
        "total": len(rows),
    }


@router.get("/intel-reports/{report_id}", tags=["intel-reports"])
def get_intel_report(report_id: int, db: Session = Depends(get_db)):
    from intelreview.modules.report_store import get_report

    report = get_report(db, report_id)
    return {
        "report": _report_dict(report),
        "subjects": [_row_dict(s, ("report_id",)) for s in report.subjects],
        "organizations": [_row_dict(o, ("report_id",)) for o in report.organizations],
        "sources": [_row_dict(s, ("report_id",)) for s in report.sources],
    }


@router.put("/intel-reports/{report_id}", tags=["intel-reports"])
def update_intel_report(
    report_id: int,
    body: IntelReportUpdate,
    request: Request,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    """Edit report content. Status is untouched; use the status endpoint for that."""
    from intelreview.modules.report_store import get_report, update_report

    _require_user(actor)
    with unit_of_work(db):
        report = get_report(db, report_id, lock=True)
        if not (actor.is_admin or actor.user_id == report.agent_id):
            raise AuthorizationError("Only the report author or an admin can edit a report")
        changes = update_report(db, report, body)
        audit_recorder.record(
            db, actor, "UPDATE_INTEL_REPORT", "intel_reports", report_id,
            ip_address=client_ip(request),
            details=request_details(request, body=changes),
        )
    return {"report": _report_dict(report)}


@router.delete("/intel-reports/{report_id}", tags=["intel-reports"])
def delete_intel_report(
    report_id: int,
    request: Request,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    """Admin delete. Child rows and the review trail go with the report."""
    from intelreview.modules.report_store import delete_report, get_report

    _require_admin(actor)
    with unit_of_work(db):
        report = get_report(db, report_id, lock=True)
        intel_number = report.intel_number
        delete_report(db, report)
        audit_recorder.record(
            db, actor, "DELETE_INTEL_REPORT", "intel_reports", report_id,
            ip_address=client_ip(request),
            details=request_details(request, intel_number=intel_number),
        )
    logger.info("Intel report %s deleted by admin %s", intel_number, actor.user_id)
    return {"status": "ok", "deleted": report_id}


@router.get("/intel-reports/{report_id}/reviews", tags=["intel-reports"])
def list_reviews(report_id: int, db: Session = Depends(get_db)):
    from intelreview.modules.report_store import review_trail

    return {
        "reviews": [
            {
                "id": r.review_id,
                "reviewer_id": r.reviewer_id,
                "reviewer_name": r.reviewer_name,
                "action": r.action.value if hasattr(r.action, "value") else r.action,
                "comments": r.comments,
                "is_override": r.is_override,
                "created_at": _iso(r.created_at),
            }
            for r in review_trail(db, report_id)
        ]
    }


@router.post("/intel-reports/{report_id}/status", tags=["intel-reports"])
def change_report_status(
    report_id: int,
    body: StatusChangeRequest,
    request: Request,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    """Approve, reject, resubmit or (admins, with override=true) force a status.

    Body: {status, comments?, version?, override?}. Passing the version last
    read turns a stale decision into a 409 instead of silently applying it.
    """
    from intelreview.modules.approval import apply_status_change

    report = apply_status_change(
        db,
        report_id,
        actor,
        body.status,
        comments=body.comments,
        expected_version=body.version,
        override=body.override,
        ip_address=client_ip(request),
        details=request_details(request, body=body.model_dump(mode="json", exclude_none=True)),
    )
    return {"report": _report_dict(report)}


@router.post("/intel-reports/{report_id}/retention", tags=["retention"])
def extend_report_retention(
    report_id: int,
    body: RetentionExtendRequest,
    request: Request,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    from intelreview.modules.retention import extend_one

    _require_admin(actor)
    report = extend_one(
        db, "intel_reports", report_id, body.days, actor,
        ip_address=client_ip(request),
        details=request_details(request, body=body.model_dump()),
    )
    return {"report": _report_dict(report)}


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

@router.get("/audit-log", tags=["audit"])
def list_audit_log(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=settings.MAX_QUERY_LIMIT),
    search: Optional[str] = None,
    action: Optional[str] = None,
    username: Optional[str] = None,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    """Filtered, paginated audit trail, newest first. Admin only."""
    from intelreview.modules import audit_query

    _require_admin(actor)
    entries, total = audit_query.query(
        db, page=page, page_size=limit, search_text=search, action=action, username=username,
    )
    return {
        "auditEntries": [audit_query.entry_to_dict(e) for e in entries],
        "total": total,
        "page": page,
        "pages": audit_query.page_count(total, limit),
    }


@router.get("/audit-log/export", tags=["audit"])
def export_audit_log(
    search: Optional[str] = None,
    action: Optional[str] = None,
    username: Optional[str] = None,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    """CSV download of the filtered trail (same filters as the listing, no paging)."""
    from intelreview.modules import audit_query

    _require_admin(actor)
    entries, truncated = audit_query.export_entries(
        db, settings.AUDIT_EXPORT_MAX_ROWS, search_text=search, action=action, username=username,
    )
    filename = audit_query.csv_filename()
    headers = {"Content-Disposition": f"attachment; filename={filename}"}
    if truncated:
        # Only the newest AUDIT_EXPORT_MAX_ROWS matching entries are in the file
        headers["X-Export-Truncated"] = str(settings.AUDIT_EXPORT_MAX_ROWS)
    return Response(
        content=audit_query.export_csv(entries),
        media_type="text/csv; charset=utf-8",
        headers=headers,
    )


# ---------------------------------------------------------------------------
# Posts
# ---------------------------------------------------------------------------

@router.post("/posts", status_code=201, tags=["posts"])
def create_post(
    body: PostCreate,
    request: Request,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    from intelreview.modules import report_store
    from intelreview.modules.retention import default_policy

    _require_user(actor)
    with unit_of_work(db):
        post = report_store.create_post(
            db, body.title, body.content, actor,
            body.retention_days or default_policy().default_retention_days,
        )
        audit_recorder.record(
            db, actor, "CREATE_POST", "posts", post.post_id,
            ip_address=client_ip(request),
            details=request_details(request, body={"title": body.title}, status=201),
        )
    return {"post": _post_dict(post)}


@router.post("/posts/retention/bulk", tags=["retention"])
def bulk_extend_post_retention(
    body: BulkRetentionRequest,
    request: Request,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    """Extend many posts at once. Each post is applied independently; failures are listed."""
    from intelreview.modules.retention import extend

    _require_admin(actor)
    result = extend(
        db, "posts", body.ids, body.days, actor,
        ip_address=client_ip(request),
        details=request_details(request, body={"days": body.days, "count": len(body.ids)}),
    )
    return {
        "updatedIds": result.updated_ids,
        "failedIds": result.failed_ids,
        "errors": result.errors,
        "cancelled": result.cancelled,
    }


@router.post("/posts/{post_id}/retention", tags=["retention"])
def extend_post_retention(
    post_id: int,
    body: RetentionExtendRequest,
    request: Request,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    from intelreview.modules.retention import extend_one

    _require_admin(actor)
    post = extend_one(
        db, "posts", post_id, body.days, actor,
        ip_address=client_ip(request),
        details=request_details(request, body=body.model_dump()),
    )
    return {"post": _post_dict(post)}


# ---------------------------------------------------------------------------
# Data maintenance
# ---------------------------------------------------------------------------

@router.post("/data/purge-expired", tags=["retention"])
@limiter.limit(settings.PURGE_RATE_LIMIT)
def purge_expired(
    request: Request,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    """Delete every expired report and post. Safe to repeat; a second run purges nothing."""
    from intelreview.modules.retention import purge

    _require_admin(actor)
    result = purge(db, actor=actor, ip_address=client_ip(request), details=request_details(request))
    return {
        "purgedCount": result.purged_count,
        "failedIds": result.failed_ids,
        "skippedCount": result.skipped_count,
        "cancelled": result.cancelled,
    }


@router.post("/data/purge-audit-log", tags=["audit"])
@limiter.limit(settings.PURGE_RATE_LIMIT)
def purge_audit_entries(
    request: Request,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    from intelreview.modules.retention import purge_audit_log

    _require_admin(actor)
    purged = purge_audit_log(db, actor=actor, ip_address=client_ip(request), details=request_details(request))
    return {"purgedCount": purged}
