"""Shared declarative base, enums and retention columns for all models."""
from __future__ import annotations

import enum
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import DateTime, Integer
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    """Naive UTC timestamp; every DateTime column in the schema is naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ClassificationEnum(str, enum.Enum):
    SENSITIVE = "Sensitive"
    NARCOTICS_ONLY = "Narcotics Only"
    CLASSIFIED = "Classified"
    LAW_ENFORCEMENT_ONLY = "Law Enforcement Only"


class ReportStatusEnum(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ReviewActionEnum(str, enum.Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    RESUBMITTED = "resubmitted"


class RetentionBucketEnum(str, enum.Enum):
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"
    EXPIRED = "expired"


class RoleEnum(str, enum.Enum):
    ADMIN = "admin"
    SUPERVISOR = "supervisor"
    AGENT = "agent"


class RetainedRecordMixin:
    """Columns shared by every record subject to the retention policy.

    ``expires_at`` is stored for indexing but is always
    ``(retention_anchor_at or anchor_date) + retention_days``; only the
    store (on create) and the retention engine write it.

    Subclasses must override ``anchor_date`` to name the column retention
    counts from (``submitted_at`` for reports, ``published_at`` for posts).
    """

    retention_days: Mapped[int] = mapped_column(Integer, nullable=False, default=1825)
    # Set only when an extension resets the retention clock
    retention_anchor_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, index=True)

    @property
    def anchor_date(self) -> Optional[datetime]:
        raise NotImplementedError(f"{type(self).__name__} must define anchor_date")

    @property
    def retention_basis(self) -> Optional[datetime]:
        return self.retention_anchor_at or self.anchor_date

    def derived_expiry(self) -> Optional[datetime]:
        basis = self.retention_basis
        if basis is None:
            return None
        return basis + timedelta(days=self.retention_days)
