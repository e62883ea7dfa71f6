"""
GhostScan Plan Limiter — subscription quota gate for new scans.

Quota semantics: ``scans > 0`` caps monthly usage at ``scans``;
``scans == 0`` means no scans at all (never "unlimited").
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Dict, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import (
    FollowerLimitExceededError,
    GhostScanError,
    ProfileNotFoundError,
    ScanLimitExceededError,
)
from app.models.models import Profile, SubscriptionPlan

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlanLimits:
    scans: int
    followers: int


PLAN_LIMITS: Dict[str, PlanLimits] = {
    SubscriptionPlan.FREE.value: PlanLimits(scans=0, followers=1_000),
    SubscriptionPlan.STARTER.value: PlanLimits(scans=1, followers=10_000),
    SubscriptionPlan.PRO.value: PlanLimits(scans=4, followers=50_000),
}


@dataclass(frozen=True)
class Admission:
    accepted: bool
    reason: Optional[str] = None
    resource: Optional[str] = None

    def raise_for_reason(self):
        if self.accepted:
            return
        if self.reason == ScanLimitExceededError.code:
            raise ScanLimitExceededError()
        if self.reason == FollowerLimitExceededError.code:
            raise FollowerLimitExceededError()
        if self.reason == ProfileNotFoundError.code:
            raise ProfileNotFoundError()
        raise GhostScanError(self.reason)


ACCEPT = Admission(accepted=True)


def resolve_plan(plan: Optional[str]) -> str:
    if plan in PLAN_LIMITS:
        return plan
    return SubscriptionPlan.FREE.value


def limits_for(plan: Optional[str]) -> PlanLimits:
    return PLAN_LIMITS[resolve_plan(plan)]


def scan_quota_allows(quota: int, usage: int) -> bool:
    if quota <= 0:
        return False
    return usage < quota


def evaluate(profile: Optional[Profile], estimated_followers: int = 0) -> Admission:
    """Pure admission decision for a prospective upload."""
    if profile is None:
        return Admission(False, ProfileNotFoundError.code)

    limits = limits_for(profile.subscription_plan)
    if not scan_quota_allows(limits.scans, profile.scans_this_month or 0):
        return Admission(False, ScanLimitExceededError.code, "scans")
    if estimated_followers > limits.followers:
        return Admission(False, FollowerLimitExceededError.code, "followers")
    return ACCEPT


def check_follower_count(plan: Optional[str], count: int):
    """Post-parse re-validation of the true follower count."""
    ceiling = limits_for(plan).followers
    if count > ceiling:
        raise FollowerLimitExceededError(
            f"export has more than {ceiling} followers, the {resolve_plan(plan)} plan limit"
        )


async def consume_scan_slot(db: AsyncSession, profile_id: uuid.UUID, plan: Optional[str]):
    """
    Atomically bump ``scans_this_month`` iff a slot is still free.

    Run after the ScanJob row is flushed and inside the same transaction,
    so usage is only charged together with a created job.
    """
    quota = limits_for(plan).scans
    result = await db.execute(
        update(Profile)
        .where(Profile.id == profile_id, Profile.scans_this_month < quota)
        .values(scans_this_month=Profile.scans_this_month + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ScanLimitExceededError("monthly scan quota used by a concurrent submission")
