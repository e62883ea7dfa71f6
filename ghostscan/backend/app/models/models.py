"""
GhostScan ORM Models — profiles, scan jobs and classified followers.
"""
from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy import (
    JSON, Boolean, DateTime, Enum, Float, ForeignKey, Index,
    Integer, String, Text, Uuid, func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.clock import utcnow
from app.core.database import Base


# Scores at or above this are "ghosts" for filters, badges and counters.
GHOST_THRESHOLD = 0.75


# ═══════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════

class SubscriptionPlan(str, enum.Enum):
    FREE = "free"
    STARTER = "starter"
    PRO = "pro"


class ScanStatus(str, enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"


class FollowerStatus(str, enum.Enum):
    IDENTIFIED = "identified"
    KEPT = "kept"
    REMOVED = "removed"


# ═══════════════════════════════════════════════════════════════════════
# Core Models
# ═══════════════════════════════════════════════════════════════════════

class Profile(Base):
    __tablename__ = "profiles"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner: Mapped[str] = mapped_column(String(320), unique=True, index=True)
    # NULL / unknown plan names are treated as free by the plan limiter
    subscription_plan: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, default=SubscriptionPlan.FREE.value)
    scans_this_month: Mapped[int] = mapped_column(Integer, default=0)

    # Aggregates of the most recent complete scan
    total_followers: Mapped[int] = mapped_column(Integer, default=0)
    ghost_followers: Mapped[int] = mapped_column(Integer, default=0)
    engagement_rate: Mapped[float] = mapped_column(Float, default=0.0)
    last_scan_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now())

    scans: Mapped[List["ScanJob"]] = relationship("ScanJob", back_populates="profile", lazy="raise")


class ScanJob(Base):
    """One run of the ingestion pipeline over a single uploaded export."""
    __tablename__ = "scan_jobs"
    __table_args__ = (
        Index("ix_scan_jobs_profile_created", "user_profile_id", "created_at"),
        Index("ix_scan_jobs_status", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_profile_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("profiles.id", ondelete="CASCADE"))
    upload_path: Mapped[str] = mapped_column(String(1024))
    status: Mapped[ScanStatus] = mapped_column(Enum(ScanStatus), default=ScanStatus.QUEUED)

    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    total_followers: Mapped[int] = mapped_column(Integer, default=0)
    ghost_count: Mapped[int] = mapped_column(Integer, default=0)
    malformed_count: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    attempts: Mapped[int] = mapped_column(Integer, default=0)
    classifier_version: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    score_histogram: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now())

    profile: Mapped["Profile"] = relationship("Profile", back_populates="scans", lazy="raise")


class FollowerRecord(Base):
    """A classified follower. Only ``status`` changes after insert."""
    __tablename__ = "follower_records"
    __table_args__ = (
        Index("ix_followers_profile_scan", "user_profile_id", "scan_result_id"),
        Index("ix_followers_scan_score", "scan_result_id", "ghost_score"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_profile_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("profiles.id", ondelete="CASCADE"))
    scan_result_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("scan_jobs.id", ondelete="CASCADE"))

    handle: Mapped[str] = mapped_column(String(256))
    display_name: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    is_private: Mapped[bool] = mapped_column(Boolean, default=False)
    follower_since: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    total_likes: Mapped[int] = mapped_column(Integer, default=0)
    total_comments: Mapped[int] = mapped_column(Integer, default=0)
    last_seen_interaction_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    ghost_score: Mapped[float] = mapped_column(Float)
    status: Mapped[FollowerStatus] = mapped_column(Enum(FollowerStatus), default=FollowerStatus.IDENTIFIED)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
