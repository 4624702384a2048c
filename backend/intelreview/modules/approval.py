"""Approval state machine for intel reports.

States: pending, approved, rejected.

    pending  --approve-->   approved
    pending  --reject-->    rejected     (comments required)
    rejected --resubmit-->  pending      (author or admin; sets corrected)
    any      --override-->  any          (admin only)

Each transition writes exactly one ReviewRecord and one AuditEntry and bumps
the report version, all in a single commit. Transitions on the same report
are serialized by a row lock plus the ``version`` column: a request acting on
a stale read gets ConflictError and must re-read before deciding again. An
approve or reject that finds the report already decided is a lost race and
also gets ConflictError; a resubmit from the wrong state is a ValidationError.
"""
from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.orm import Session

from intelreview.errors import AuthorizationError, ConflictError, ValidationError
from intelreview.models.base import ReportStatusEnum, ReviewActionEnum, utcnow
from intelreview.models.intel_report import IntelReport
from intelreview.models.review_record import ReviewRecord
from intelreview.modules import audit_recorder
from intelreview.modules.report_store import get_report, unit_of_work
from intelreview.schemas.actor import Actor

logger = logging.getLogger(__name__)

# Resulting status for each review action
_ACTION_STATUS: dict[ReviewActionEnum, ReportStatusEnum] = {
    ReviewActionEnum.APPROVED: ReportStatusEnum.APPROVED,
    ReviewActionEnum.REJECTED: ReportStatusEnum.REJECTED,
    ReviewActionEnum.RESUBMITTED: ReportStatusEnum.PENDING,
}

# Source status each non-privileged action requires
_REQUIRED_SOURCE: dict[ReviewActionEnum, ReportStatusEnum] = {
    ReviewActionEnum.APPROVED: ReportStatusEnum.PENDING,
    ReviewActionEnum.REJECTED: ReportStatusEnum.PENDING,
    ReviewActionEnum.RESUBMITTED: ReportStatusEnum.REJECTED,
}

_AUDIT_ACTIONS: dict[ReviewActionEnum, str] = {
    ReviewActionEnum.APPROVED: "APPROVE_INTEL_REPORT",
    ReviewActionEnum.REJECTED: "REJECT_INTEL_REPORT",
    ReviewActionEnum.RESUBMITTED: "RESUBMIT_INTEL_REPORT",
}


def approve(
    db: Session,
    report_id: int,
    reviewer: Actor,
    comments: Optional[str] = None,
    expected_version: Optional[int] = None,
    ip_address: Optional[str] = None,
    details: Optional[dict] = None,
) -> IntelReport:
    """pending -> approved. Comments optional."""
    if not reviewer.can_review:
        raise AuthorizationError("Only supervisors and admins can approve reports")
    return _transition(
        db, report_id, reviewer, ReviewActionEnum.APPROVED, comments,
        expected_version=expected_version, ip_address=ip_address, details=details,
    )


def reject(
    db: Session,
    report_id: int,
    reviewer: Actor,
    comments: Optional[str],
    expected_version: Optional[int] = None,
    ip_address: Optional[str] = None,
    details: Optional[dict] = None,
) -> IntelReport:
    """pending -> rejected. Comments are required."""
    if not reviewer.can_review:
        raise AuthorizationError("Only supervisors and admins can reject reports")
    return _transition(
        db, report_id, reviewer, ReviewActionEnum.REJECTED, comments,
        expected_version=expected_version, ip_address=ip_address, details=details,
    )


def resubmit(
    db: Session,
    report_id: int,
    author: Actor,
    comments: Optional[str] = None,
    expected_version: Optional[int] = None,
    ip_address: Optional[str] = None,
    details: Optional[dict] = None,
) -> IntelReport:
    """rejected -> pending, marks the report corrected. Owning author or admin only."""
    return _transition(
        db, report_id, author, ReviewActionEnum.RESUBMITTED,
        comments or "Resubmitted with corrections",
        expected_version=expected_version, ip_address=ip_address, details=details,
    )


def admin_override(
    db: Session,
    report_id: int,
    admin: Actor,
    new_status: ReportStatusEnum | str,
    comments: Optional[str] = None,
    expected_version: Optional[int] = None,
    ip_address: Optional[str] = None,
    details: Optional[dict] = None,
) -> IntelReport:
    """Any state -> any state, bypassing the transition graph. Admin only."""
    if not admin.is_admin:
        raise AuthorizationError("Only admins can override report status")
    try:
        target = ReportStatusEnum(new_status)
    except ValueError:
        raise ValidationError(
            f"Invalid status '{new_status}'. Must be one of: {[s.value for s in ReportStatusEnum]}"
        )
    action = next(a for a, s in _ACTION_STATUS.items() if s == target)
    return _transition(
        db, report_id, admin, action, comments, override=True,
        expected_version=expected_version, ip_address=ip_address, details=details,
    )


def apply_status_change(
    db: Session,
    report_id: int,
    actor: Actor,
    status: ReportStatusEnum | str,
    comments: Optional[str] = None,
    expected_version: Optional[int] = None,
    override: bool = False,
    ip_address: Optional[str] = None,
    details: Optional[dict] = None,
) -> IntelReport:
    """Route a requested target status to the matching transition.

    Without ``override`` the normal graph applies to every role, admins
    included; ``override`` must be asked for explicitly.
    """
    kwargs = dict(expected_version=expected_version, ip_address=ip_address, details=details)
    if override:
        return admin_override(db, report_id, actor, status, comments, **kwargs)
    target = ReportStatusEnum(status)
    if target == ReportStatusEnum.APPROVED:
        return approve(db, report_id, actor, comments, **kwargs)
    if target == ReportStatusEnum.REJECTED:
        return reject(db, report_id, actor, comments, **kwargs)
    return resubmit(db, report_id, actor, comments, **kwargs)


def _transition(
    db: Session,
    report_id: int,
    actor: Actor,
    action: ReviewActionEnum,
    comments: Optional[str],
    override: bool = False,
    expected_version: Optional[int] = None,
    ip_address: Optional[str] = None,
    details: Optional[dict] = None,
) -> IntelReport:
    if actor.user_id is None:
        raise AuthorizationError("Status changes require an identified actor")
    comments = comments.strip() if comments else None
    if action == ReviewActionEnum.REJECTED and not comments:
        raise ValidationError("Comments are required when rejecting a report")

    with unit_of_work(db):
        report = get_report(db, report_id, lock=True)
        if expected_version is not None and report.version != expected_version:
            raise ConflictError(
                f"Report {report_id} is at version {report.version}, not {expected_version}; "
                f"re-read it before deciding"
            )

        old_status = ReportStatusEnum(report.status)
        if not override:
            required = _REQUIRED_SOURCE[action]
            if required == ReportStatusEnum.PENDING and old_status != required:
                # Another decision landed first
                raise ConflictError(
                    f"Report {report_id} must be '{required.value}' to be {action.value}; "
                    f"it was already {old_status.value} by another review. Re-read it before deciding"
                )
            if old_status != required:
                raise ValidationError(
                    f"Report {report_id} must be '{required.value}' to be {action.value}; "
                    f"it is '{old_status.value}'"
                )
            if action == ReviewActionEnum.RESUBMITTED and not (
                actor.is_admin or (actor.user_id is not None and actor.user_id == report.agent_id)
            ):
                raise AuthorizationError("Only the report author or an admin can resubmit")

        new_status = _ACTION_STATUS[action]
        now = utcnow()
        report.status = new_status
        if action == ReviewActionEnum.RESUBMITTED:
            # Back in the queue: awaiting a fresh decision
            report.reviewed_at = None
            report.reviewed_by = None
            if not override:
                report.corrected = True
        else:
            report.reviewed_at = now
            report.reviewed_by = actor.user_id

        db.add(ReviewRecord(
            report_id=report.report_id,
            reviewer_id=actor.user_id,
            reviewer_name=actor.username,
            action=action,
            comments=comments,
            is_override=override,
            created_at=now,
        ))

        audit_details = dict(details or {})
        audit_details.setdefault("meta", {})
        audit_details["meta"] = {
            **audit_details["meta"],
            "old_status": old_status.value,
            "new_status": new_status.value,
            "override": override,
        }
        audit_recorder.record(
            db,
            actor,
            "OVERRIDE_INTEL_REPORT_STATUS" if override else _AUDIT_ACTIONS[action],
            "intel_reports",
            report.report_id,
            ip_address=ip_address,
            details=audit_details,
        )

    logger.info(
        "Report %s: %s -> %s by user %s%s",
        report_id, old_status.value, new_status.value, actor.user_id,
        " (override)" if override else "",
    )
    return report
