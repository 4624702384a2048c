"""Append-only audit recorder.

Every mutating action in the system calls ``record`` on the same session as
the business change, before ``unit_of_work`` commits. The entry and the
mutation therefore land or roll back together: there is never a mutation
without its entry, nor an entry without its mutation.

``details`` is stored verbatim and never inspected here.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Optional

from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from intelreview.errors import PersistenceError
from intelreview.models.audit_entry import AuditEntry
from intelreview.models.base import utcnow
from intelreview.schemas.actor import Actor

logger = logging.getLogger(__name__)


def record(
    db: Session,
    actor: Optional[Actor],
    action: str,
    resource_table: Optional[str] = None,
    resource_id: Any = None,
    ip_address: Optional[str] = None,
    details: Optional[dict] = None,
) -> AuditEntry:
    """Stage one audit entry; timestamp and id are assigned server-side.

    Flushes so the entry gets its id. A failed write raises PersistenceError,
    which aborts the caller's unit of work.
    """
    entry = AuditEntry(
        timestamp=utcnow(),
        actor_id=actor.user_id if actor else None,
        username=actor.username if actor else None,
        action=action,
        resource_table=resource_table,
        resource_id=str(resource_id) if resource_id is not None else None,
        ip_address=ip_address,
        details=details,
    )
    db.add(entry)
    try:
        db.flush()
    except StaleDataError:
        # The paired business row lost its version check; not an audit failure
        raise
    except SQLAlchemyError as exc:
        logger.error("Audit write failed for %s on %s/%s", action, resource_table, resource_id)
        raise PersistenceError(f"Audit write failed for {action}; change aborted") from exc
    return entry


def client_ip(request: Optional[Request]) -> Optional[str]:
    """First hop of X-Forwarded-For, else the socket peer."""
    if request is None:
        return None
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def request_details(
    request: Optional[Request],
    body: Optional[dict] = None,
    status: int = 200,
    **meta: Any,
) -> dict:
    """Build the ``{meta: {method, path, status, durationMs, ...}, body}`` payload."""
    payload_meta: dict[str, Any] = {}
    if request is not None:
        payload_meta["method"] = request.method
        payload_meta["path"] = request.url.path
        started = getattr(request.state, "started_at", None)
        if started is not None:
            payload_meta["durationMs"] = int((time.perf_counter() - started) * 1000)
    payload_meta["status"] = status
    payload_meta.update(meta)
    details: dict[str, Any] = {"meta": payload_meta}
    if body:
        details["body"] = body
    return details
