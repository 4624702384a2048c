"""Pydantic schemas for intel report operations."""
from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, Field

from intelreview.models.base import ClassificationEnum, ReportStatusEnum


class SubjectIn(BaseModel):
    first_name: Optional[str] = None
    middle_name: Optional[str] = None
    last_name: Optional[str] = None
    address: Optional[str] = None
    date_of_birth: Optional[date] = None
    race: Optional[str] = None
    sex: Optional[str] = Field(None, pattern="^[MFO]$")
    phone: Optional[str] = None
    social_security_number: Optional[str] = None
    license_number: Optional[str] = None


class OrganizationIn(BaseModel):
    business_name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None


class SourceIn(BaseModel):
    source_id: Optional[str] = None
    rating: Optional[str] = None
    source: Optional[str] = None
    information_reliable: Optional[str] = None
    unknown_caller: bool = False
    ci_cs: bool = False
    first_name: Optional[str] = None
    middle_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None


class IntelReportCreate(BaseModel):
    intel_number: Optional[str] = Field(None, max_length=50)
    classification: ClassificationEnum
    case_number: Optional[str] = None
    subject: str = Field(..., min_length=1)
    criminal_activity: Optional[str] = None
    summary: Optional[str] = None
    submitted_at: Optional[datetime] = None
    retention_days: Optional[int] = Field(None, ge=1)
    subjects: list[SubjectIn] = Field(default_factory=list)
    organizations: list[OrganizationIn] = Field(default_factory=list)
    sources: list[SourceIn] = Field(default_factory=list)


class IntelReportUpdate(BaseModel):
    classification: Optional[ClassificationEnum] = None
    case_number: Optional[str] = None
    subject: Optional[str] = Field(None, min_length=1)
    criminal_activity: Optional[str] = None
    summary: Optional[str] = None
    subjects: Optional[list[SubjectIn]] = None
    organizations: Optional[list[OrganizationIn]] = None
    sources: Optional[list[SourceIn]] = None


class StatusChangeRequest(BaseModel):
    status: ReportStatusEnum
    comments: Optional[str] = None
    # Optimistic check: the version the caller last read
    version: Optional[int] = None
    # Admin-only: bypass the normal transition graph
    override: bool = False
