"""Import all models to register them with SQLAlchemy metadata."""
from intelreview.models.base import Base
from intelreview.models.intel_report import (
    IntelReport, ReportSubject, ReportOrganization, ReportSource,
)
from intelreview.models.review_record import ReviewRecord
from intelreview.models.audit_entry import AuditEntry
from intelreview.models.post import Post

__all__ = [
    "Base",
    "IntelReport",
    "ReportSubject",
    "ReportOrganization",
    "ReportSource",
    "ReviewRecord",
    "AuditEntry",
    "Post",
]
