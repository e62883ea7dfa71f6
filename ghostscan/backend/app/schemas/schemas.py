"""
GhostScan API Schemas — Pydantic v2 models for request/response validation.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.core.clock import as_utc
from app.models.models import FollowerStatus, ScanStatus


class _Timestamps(BaseModel):
    """Normalizes every datetime field to aware UTC on the way out."""

    @field_validator("*", mode="after")
    @classmethod
    def _aware(cls, value):
        if isinstance(value, datetime):
            return as_utc(value)
        return value


# ═══════════════════════════════════════════════════════════════════════
# Errors
# ═══════════════════════════════════════════════════════════════════════

class ErrorResponse(BaseModel):
    ok: bool = False
    error: str
    message: str
    resource: Optional[str] = None


# ═══════════════════════════════════════════════════════════════════════
# Uploads
# ═══════════════════════════════════════════════════════════════════════

class UploadResponse(BaseModel):
    upload_ref: str
    size_bytes: int
    filename: Optional[str] = None


# ═══════════════════════════════════════════════════════════════════════
# Profiles
# ═══════════════════════════════════════════════════════════════════════

class ProfileSchema(_Timestamps):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    owner: str
    subscription_plan: Optional[str] = None
    scans_this_month: int = 0
    total_followers: int = 0
    ghost_followers: int = 0
    engagement_rate: float = 0.0
    last_scan_date: Optional[datetime] = None
    created_at: Optional[datetime] = None


# ═══════════════════════════════════════════════════════════════════════
# Scans
# ═══════════════════════════════════════════════════════════════════════

class ScanSubmitRequest(BaseModel):
    upload_ref: str = Field(..., min_length=1, max_length=1024)


class ScanJobSchema(_Timestamps):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_profile_id: uuid.UUID
    status: ScanStatus
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    total_followers: int = 0
    ghost_count: int = 0
    malformed_count: int = 0
    last_error: Optional[str] = None
    attempts: int = 0
    classifier_version: Optional[str] = None
    score_histogram: Optional[List[int]] = None
    created_at: Optional[datetime] = None


class ScanListResponse(BaseModel):
    scans: List[ScanJobSchema]


# ═══════════════════════════════════════════════════════════════════════
# Followers
# ═══════════════════════════════════════════════════════════════════════

class FollowerSchema(_Timestamps):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    scan_result_id: uuid.UUID
    handle: str
    display_name: Optional[str] = None
    is_verified: bool = False
    is_private: bool = False
    follower_since: Optional[datetime] = None
    total_likes: int = 0
    total_comments: int = 0
    last_seen_interaction_at: Optional[datetime] = None
    ghost_score: float
    status: FollowerStatus


class FollowerPageResponse(BaseModel):
    items: List[FollowerSchema]
    total: int
    page: int
    page_size: int
    total_pages: int
    scan_id: Optional[uuid.UUID] = None


class FollowerStatusRequest(BaseModel):
    ids: List[str] = Field(..., min_length=1, max_length=1000)
    status: FollowerStatus


class FollowerStatusResponse(BaseModel):
    updated: List[str]
    unchanged: List[str]
    not_found: List[str]
