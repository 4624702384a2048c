"""Pydantic schemas for retention operations."""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


class RetentionExtendRequest(BaseModel):
    days: int = Field(..., ge=1, le=36500)


class BulkRetentionRequest(BaseModel):
    ids: list[int] = Field(..., min_length=1)
    days: int = Field(..., ge=1, le=36500)


class PostCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=500)
    content: Optional[str] = None
    retention_days: Optional[int] = Field(None, ge=1)
