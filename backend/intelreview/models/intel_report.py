"""IntelReport aggregate — the report plus its subject, organization and source rows."""
from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from sqlalchemy import (
    Integer, String, Boolean, Date, DateTime, Text, ForeignKey,
    Enum as SAEnum,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from intelreview.models.base import (
    Base, ClassificationEnum, ReportStatusEnum, RetainedRecordMixin, utcnow,
)


class IntelReport(RetainedRecordMixin, Base):
    __tablename__ = "intel_reports"

    report_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    intel_number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    classification: Mapped[str] = mapped_column(
        SAEnum(ClassificationEnum, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        index=True,
    )
    status: Mapped[str] = mapped_column(
        SAEnum(ReportStatusEnum, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=ReportStatusEnum.PENDING,
        index=True,
    )
    agent_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    agent_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    case_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    subject: Mapped[str] = mapped_column(Text, nullable=False)
    criminal_activity: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    submitted_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    reviewed_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    corrected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
    # Optimistic concurrency: every UPDATE is guarded by WHERE version = <loaded>
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    subjects: Mapped[list["ReportSubject"]] = relationship(
        "ReportSubject", back_populates="report", cascade="all, delete-orphan",
    )
    organizations: Mapped[list["ReportOrganization"]] = relationship(
        "ReportOrganization", back_populates="report", cascade="all, delete-orphan",
    )
    sources: Mapped[list["ReportSource"]] = relationship(
        "ReportSource", back_populates="report", cascade="all, delete-orphan",
    )
    reviews: Mapped[list["ReviewRecord"]] = relationship(
        "ReviewRecord",
        back_populates="report",
        cascade="all, delete-orphan",
        order_by="ReviewRecord.review_id",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def anchor_date(self) -> Optional[datetime]:
        return self.submitted_at


class ReportSubject(Base):
    __tablename__ = "intel_report_subjects"

    subject_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    report_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("intel_reports.report_id", ondelete="CASCADE"), nullable=False, index=True
    )
    first_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    middle_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    date_of_birth: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    race: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    # M, F or O
    sex: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    social_security_number: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    license_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    report: Mapped["IntelReport"] = relationship("IntelReport", back_populates="subjects")


class ReportOrganization(Base):
    __tablename__ = "intel_report_organizations"

    organization_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    report_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("intel_reports.report_id", ondelete="CASCADE"), nullable=False, index=True
    )
    business_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True, index=True)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    report: Mapped["IntelReport"] = relationship("IntelReport", back_populates="organizations")


class ReportSource(Base):
    __tablename__ = "intel_report_sources"

    source_row_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    report_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("intel_reports.report_id", ondelete="CASCADE"), nullable=False, index=True
    )
    source_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    rating: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    source: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    information_reliable: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    unknown_caller: Mapped[bool] = mapped_column(Boolean, default=False)
    ci_cs: Mapped[bool] = mapped_column(Boolean, default=False)
    first_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    middle_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    report: Mapped["IntelReport"] = relationship("IntelReport", back_populates="sources")
