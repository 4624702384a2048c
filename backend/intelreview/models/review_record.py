"""ReviewRecord entity — one immutable decision in a report's corrections trail."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import Integer, String, Boolean, DateTime, Text, ForeignKey, Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship
from intelreview.models.base import Base, ReviewActionEnum, utcnow


class ReviewRecord(Base):
    __tablename__ = "intel_report_reviews"

    review_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    report_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("intel_reports.report_id", ondelete="CASCADE"), nullable=False, index=True
    )
    reviewer_id: Mapped[int] = mapped_column(Integer, nullable=False)
    reviewer_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    action: Mapped[str] = mapped_column(
        SAEnum(ReviewActionEnum, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    comments: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Admin overrides bypass the normal transition graph; flagged for the trail
    is_override: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    report: Mapped["IntelReport"] = relationship("IntelReport", back_populates="reviews")
