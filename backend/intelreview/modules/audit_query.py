"""Read side of the audit trail: filtering, pagination and CSV export.

This is the only reader of the audit store. Entries come back newest first
(timestamp desc, then id desc so same-instant entries keep submission order
reversed consistently). Filtering and pagination never reorder.
"""
from __future__ import annotations

import csv
import io
import json
import logging
import math
from datetime import datetime
from typing import Any, Iterable, Optional, Sequence

from sqlalchemy.orm import Session

from intelreview.errors import ValidationError
from intelreview.models.audit_entry import AuditEntry
from intelreview.models.base import utcnow

logger = logging.getLogger(__name__)

CSV_HEADERS = ["Timestamp", "User", "Action", "Table", "Record ID", "IP Address", "Details"]


def serialize_details(details: Any) -> str:
    """Raw JSON text of a details payload, as served in ``new_values``."""
    if details is None:
        return ""
    if isinstance(details, str):
        return details
    # Keep non-ASCII text literal so searches match what users typed
    return json.dumps(details, default=str, ensure_ascii=False)


def parse_details(raw: Any) -> Optional[dict]:
    """Defensive parse: anything that is not a JSON object yields None."""
    if raw is None:
        return None
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, (str, bytes)):
        try:
            parsed = json.loads(raw)
        except (ValueError, TypeError):
            return None
        return parsed if isinstance(parsed, dict) else None
    return None


def _base_query(db: Session, action: Optional[str] = None, username: Optional[str] = None):
    q = db.query(AuditEntry)
    if action:
        q = q.filter(AuditEntry.action == action)
    if username:
        q = q.filter(AuditEntry.username == username)
    return q


def load_entries(
    db: Session,
    limit: Optional[int] = None,
    action: Optional[str] = None,
    username: Optional[str] = None,
) -> list[AuditEntry]:
    """Entries newest first, with the exact-match filters applied in SQL."""
    q = _base_query(db, action, username).order_by(AuditEntry.timestamp.desc(), AuditEntry.audit_id.desc())
    if limit is not None:
        q = q.limit(limit)
    return q.all()


def _has_search(search_text: Optional[str]) -> bool:
    return bool(search_text and search_text.strip())


def _matches_search(entry: AuditEntry, needle: str) -> bool:
    haystacks = (
        entry.username,
        entry.action,
        entry.resource_table,
        entry.ip_address,
        serialize_details(entry.details),
    )
    return any(h and needle in h.lower() for h in haystacks)


def filter_entries(
    entries: Iterable[AuditEntry],
    search_text: Optional[str] = None,
    action: Optional[str] = None,
    username: Optional[str] = None,
) -> list[AuditEntry]:
    """Ordered subsequence matching every provided filter.

    ``search_text`` is a case-insensitive substring match over username,
    action, table, IP address and the serialized details; ``action`` and
    ``username`` are exact matches.
    """
    needle = search_text.strip().lower() if _has_search(search_text) else None
    out = []
    for entry in entries:
        if needle and not _matches_search(entry, needle):
            continue
        if action and entry.action != action:
            continue
        if username and entry.username != username:
            continue
        out.append(entry)
    return out


def paginate(entries: Sequence[AuditEntry], page: int, page_size: int) -> list[AuditEntry]:
    """1-indexed page slice. A page past the end is empty."""
    if page < 1:
        raise ValidationError("page must be >= 1")
    if page_size < 1:
        raise ValidationError("page size must be >= 1")
    start = (page - 1) * page_size
    return list(entries[start:start + page_size])


def page_count(total: int, page_size: int) -> int:
    return math.ceil(total / page_size) if page_size > 0 else 0


def summarize_details(details: Any) -> str:
    """One-line Details column: ``METHOD path • status • NNms | payload: k1, k2``."""
    parsed = parse_details(details)
    if not parsed:
        return ""
    parts: list[str] = []
    meta = parsed.get("meta")
    if isinstance(meta, dict):
        request_line = " ".join(str(meta[k]) for k in ("method", "path") if meta.get(k))
        if request_line:
            parts.append(request_line)
        if meta.get("status") is not None:
            parts.append(str(meta["status"]))
        if meta.get("durationMs") is not None:
            parts.append(f"{meta['durationMs']}ms")
    summary = " • ".join(parts)
    body = parsed.get("body")
    if isinstance(body, dict) and body:
        payload = f"payload: {', '.join(str(k) for k in body.keys())}"
        summary = f"{summary} | {payload}" if summary else payload
    return summary


def _format_timestamp(ts: Optional[datetime]) -> str:
    return ts.strftime("%Y-%m-%d %H:%M:%S") if ts else ""


def export_csv(entries: Iterable[AuditEntry]) -> bytes:
    """UTF-8 CSV, one row per entry in input order, every field quoted (RFC 4180)."""
    output = io.StringIO()
    writer = csv.writer(output, quoting=csv.QUOTE_ALL)
    writer.writerow(CSV_HEADERS)
    rows = 0
    for entry in entries:
        writer.writerow([
            _format_timestamp(entry.timestamp),
            entry.username or "",
            entry.action or "",
            entry.resource_table or "",
            entry.resource_id or "",
            entry.ip_address or "",
            summarize_details(entry.details),
        ])
        rows += 1
    logger.debug("Exported %d audit entries to CSV", rows)
    return output.getvalue().encode("utf-8")


def csv_filename(now: Optional[datetime] = None) -> str:
    """``audit_log_<YYYY-MM-DD>_<HH-MM-SS>.csv``"""
    now = now or utcnow()
    return f"audit_log_{now.strftime('%Y-%m-%d_%H-%M-%S')}.csv"


def entry_to_dict(entry: AuditEntry) -> dict:
    """Wire shape of one entry; ``new_values`` carries the details as a JSON string."""
    return {
        "id": entry.audit_id,
        "timestamp": entry.timestamp.isoformat() if entry.timestamp else None,
        "user_id": entry.actor_id,
        "username": entry.username,
        "action": entry.action,
        "table_name": entry.resource_table,
        "record_id": entry.resource_id,
        "ip_address": entry.ip_address,
        "new_values": serialize_details(entry.details) or None,
    }


def query(
    db: Session,
    page: int = 1,
    page_size: int = 50,
    search_text: Optional[str] = None,
    action: Optional[str] = None,
    username: Optional[str] = None,
) -> tuple[list[AuditEntry], int]:
    """Filtered page plus the filtered total: the one server-side path every view uses.

    Exact filters, ordering and (without a search) paging run in SQL; the
    substring search over serialized details runs here.
    """
    if page < 1:
        raise ValidationError("page must be >= 1")
    if page_size < 1:
        raise ValidationError("page size must be >= 1")
    if not _has_search(search_text):
        total = _base_query(db, action, username).count()
        rows = (
            _base_query(db, action, username)
            .order_by(AuditEntry.timestamp.desc(), AuditEntry.audit_id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )
        return rows, total
    filtered = filter_entries(load_entries(db, action=action, username=username), search_text=search_text)
    return paginate(filtered, page, page_size), len(filtered)


def export_entries(
    db: Session,
    max_rows: int,
    search_text: Optional[str] = None,
    action: Optional[str] = None,
    username: Optional[str] = None,
) -> tuple[list[AuditEntry], bool]:
    """Entries for a CSV export: filters first, then the row cap.

    Returns ``(entries, truncated)``; ``truncated`` is True when more than
    ``max_rows`` entries matched and only the newest ``max_rows`` are kept.
    """
    if _has_search(search_text):
        matched = filter_entries(load_entries(db, action=action, username=username), search_text=search_text)
    else:
        matched = load_entries(db, limit=max_rows + 1, action=action, username=username)
    truncated = len(matched) > max_rows
    if truncated:
        logger.warning("Audit export capped at %d rows; older matching entries omitted", max_rows)
    return matched[:max_rows], truncated
