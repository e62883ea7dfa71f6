"""Plan limiter: quota semantics and the atomic usage counter."""
import pytest

from app.core.exceptions import (
    FollowerLimitExceededError,
    ProfileNotFoundError,
    ScanLimitExceededError,
)
from app.models.models import Profile
from app.services.plans.plan_limiter import (
    PLAN_LIMITS,
    check_follower_count,
    consume_scan_slot,
    evaluate,
    limits_for,
    scan_quota_allows,
)


@pytest.mark.parametrize(
    "quota,usage,allowed",
    [
        (0, 0, False),
        (0, 5, False),
        (1, 0, True),
        (1, 1, False),
        (4, 3, True),
        (4, 4, False),
        (4, 9, False),
    ],
)
def test_quota_admits_only_below_a_positive_quota(quota, usage, allowed):
    assert scan_quota_allows(quota, usage) is allowed


def test_plan_table():
    assert PLAN_LIMITS["free"].scans == 0
    assert PLAN_LIMITS["free"].followers == 1_000
    assert PLAN_LIMITS["starter"].scans == 1
    assert PLAN_LIMITS["starter"].followers == 10_000
    assert PLAN_LIMITS["pro"].scans == 4
    assert PLAN_LIMITS["pro"].followers == 50_000


@pytest.mark.parametrize("plan", [None, "", "enterprise", "FREE"])
def test_unknown_or_missing_plan_is_treated_as_free(plan):
    assert limits_for(plan) == PLAN_LIMITS["free"]


def test_free_plan_is_always_rejected():
    admission = evaluate(Profile(subscription_plan="free", scans_this_month=0))
    assert not admission.accepted
    assert admission.reason == "scan-limit-exceeded"
    assert admission.resource == "scans"
    with pytest.raises(ScanLimitExceededError):
        admission.raise_for_reason()


def test_missing_profile_is_rejected():
    admission = evaluate(None)
    assert admission.reason == "profile-not-found"
    with pytest.raises(ProfileNotFoundError):
        admission.raise_for_reason()


def test_starter_with_slot_is_accepted():
    admission = evaluate(Profile(subscription_plan="starter", scans_this_month=0), estimated_followers=120)
    assert admission.accepted
    admission.raise_for_reason()


def test_estimate_over_follower_ceiling_is_rejected():
    admission = evaluate(Profile(subscription_plan="starter", scans_this_month=0), estimated_followers=10_001)
    assert admission.reason == "follower-limit-exceeded"
    assert admission.resource == "followers"


def test_scan_quota_is_checked_before_follower_ceiling():
    admission = evaluate(Profile(subscription_plan="pro", scans_this_month=4), estimated_followers=10**9)
    assert admission.reason == "scan-limit-exceeded"


def test_post_parse_follower_check():
    check_follower_count("free", 1_000)
    with pytest.raises(FollowerLimitExceededError) as exc:
        check_follower_count("free", 1_001)
    assert exc.value.resource == "followers"


async def test_consume_scan_slot_increments_once(db, make_profile, reload):
    profile = await make_profile(plan="starter", used=0)
    profile_id = profile.id

    await consume_scan_slot(db, profile_id, "starter")
    await db.commit()
    assert (await reload(Profile, profile_id)).scans_this_month == 1

    with pytest.raises(ScanLimitExceededError):
        await consume_scan_slot(db, profile_id, "starter")
    await db.rollback()
    assert (await reload(Profile, profile_id)).scans_this_month == 1


async def test_consume_scan_slot_never_charges_free_plan(db, make_profile, reload):
    profile = await make_profile(plan="free", used=0)
    profile_id = profile.id
    with pytest.raises(ScanLimitExceededError):
        await consume_scan_slot(db, profile_id, "free")
    await db.rollback()
    assert (await reload(Profile, profile_id)).scans_this_month == 0
