"""
GhostScan Profile Service — lazy profile creation and dashboard aggregates.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ProfileNotFoundError
from app.models.models import Profile, SubscriptionPlan

logger = logging.getLogger(__name__)

# Window used for the "engaged recently" share on the dashboard
ENGAGEMENT_WINDOW_DAYS = 30


def parse_uuid(value, error_cls=ProfileNotFoundError) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError, AttributeError):
        raise error_cls(f"invalid id {value!r}")


def engagement_rate(last_interactions: Iterable[Optional[datetime]], as_of: datetime) -> float:
    """Percent of followers with an interaction in the 30 days before ``as_of``."""
    cutoff = as_of - timedelta(days=ENGAGEMENT_WINDOW_DAYS)
    total = 0
    engaged = 0
    for at in last_interactions:
        total += 1
        if at is not None and cutoff <= at <= as_of:
            engaged += 1
    if total == 0:
        return 0.0
    return round(100.0 * engaged / total, 2)


class ProfileService:

    async def get(self, db: AsyncSession, profile_id) -> Profile:
        profile = await db.get(Profile, parse_uuid(profile_id), populate_existing=True)
        if profile is None:
            raise ProfileNotFoundError(f"profile {profile_id} not found")
        return profile

    async def get_or_create(self, db: AsyncSession, owner: str) -> Profile:
        """One profile per owner, created on first access on the free plan."""
        owner = owner.strip().lower()
        profile = await db.scalar(select(Profile).where(Profile.owner == owner))
        if profile:
            return profile

        profile = Profile(
            owner=owner,
            subscription_plan=SubscriptionPlan.FREE.value,
            scans_this_month=0,
        )
        db.add(profile)
        try:
            await db.commit()
        except IntegrityError:
            # Lost a creation race to another request
            await db.rollback()
            return await db.scalar(select(Profile).where(Profile.owner == owner))

        logger.info(f"Created profile {profile.id} for {owner}")
        return profile

    @staticmethod
    def apply_scan_aggregates(
        profile: Profile,
        total_followers: int,
        ghost_followers: int,
        rate: float,
        scanned_at: datetime,
    ):
        profile.total_followers = total_followers
        profile.ghost_followers = ghost_followers
        profile.engagement_rate = rate
        profile.last_scan_date = scanned_at


profile_service = ProfileService()
