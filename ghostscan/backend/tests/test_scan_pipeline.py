"""End-to-end scan processing: admission, pipeline outcomes and recovery."""
import asyncio
import os
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import BackgroundTasks
from sqlalchemy import func, select
from sqlalchemy.exc import InvalidRequestError, OperationalError

from app.core.clock import as_utc
from app.core.exceptions import (
    FollowerLimitExceededError,
    InvalidStateForRetryError,
    NotFoundError,
    ProfileNotFoundError,
    ScanLimitExceededError,
    ScanTimeoutError,
)
from app.ml.ghost.classifier import ghost_classifier
from app.models.models import GHOST_THRESHOLD, Profile, ScanJob, ScanStatus
from app.services.followers.follower_store import FollowerStore, follower_store
from app.services.ingest.export_parser import ExportParser, FollowerEntry
from app.services.scans import dispatcher, scan_service
from app.services.scans.scan_pipeline import ScanPipeline
from app.services.scans.scan_service import ScanService
from app.workers import tasks
from conftest import epoch, follower

service = ScanService()


def realistic_export(make_export, count=120, padding_bytes=0):
    """``count`` followers; every third never interacted, the rest liked recently."""
    now = datetime.now(timezone.utc)
    followers, interactions = [], []
    for i in range(count):
        handle = f"follower_{i:03d}"
        followers.append(follower(handle, full_name=f"Follower {i}", followed_at=epoch(now - timedelta(days=400))))
        if i % 3:
            for _ in range(5):
                interactions.append({"username": handle, "type": "like", "timestamp": epoch(now - timedelta(days=1))})
    members = {"media/video_1.bin": os.urandom(padding_bytes)} if padding_bytes else None
    return make_export(followers=followers, interactions=interactions, members=members)


async def submit_and_run(db, profile, upload_ref):
    background = BackgroundTasks()
    job = await service.submit(db, profile.id, upload_ref, background)
    await background()
    return job


async def record_count(session_factory, scan_id, ghosts_only=False):
    async with session_factory() as session:
        return await follower_store.count_for_scan(session, scan_id, ghosts_only=ghosts_only)


async def job_count(session_factory):
    async with session_factory() as session:
        return await session.scalar(select(func.count(ScanJob.id)))


# ── Admission ────────────────────────────────────────────────────────────

async def test_free_plan_is_rejected_without_creating_a_job(db, make_profile, make_export, session_factory, reload):
    profile = await make_profile(plan="free")
    upload = realistic_export(make_export, count=5)
    profile_id = profile.id

    with pytest.raises(ScanLimitExceededError):
        await service.submit(db, profile_id, upload)

    assert await job_count(session_factory) == 0
    assert (await reload(Profile, profile_id)).scans_this_month == 0


async def test_used_quota_is_rejected(db, make_profile, make_export, session_factory):
    profile = await make_profile(plan="starter", used=1)
    with pytest.raises(ScanLimitExceededError):
        await service.submit(db, profile.id, realistic_export(make_export, count=5))
    assert await job_count(session_factory) == 0


async def test_oversized_follower_estimate_is_rejected(db, make_profile, make_export, session_factory, reload):
    profile = await make_profile(plan="starter")
    upload = make_export(members={"followers_1.json": "x" * (10_001 * 250)})
    profile_id = profile.id

    with pytest.raises(FollowerLimitExceededError) as exc:
        await service.submit(db, profile_id, upload)

    assert exc.value.resource == "followers"
    assert await job_count(session_factory) == 0
    assert (await reload(Profile, profile_id)).scans_this_month == 0


async def test_unknown_profile_and_upload(db, make_profile, make_export):
    with pytest.raises(ProfileNotFoundError):
        await service.submit(db, "00000000-0000-0000-0000-000000000000", realistic_export(make_export, count=1))

    profile = await make_profile()
    with pytest.raises(NotFoundError):
        await service.submit(db, profile.id, "/etc/passwd")


async def test_follower_estimate_runs_off_the_event_loop_thread(db, make_profile, make_export, monkeypatch):
    threads = []

    def estimate(path):
        threads.append(threading.current_thread())
        return 0

    monkeypatch.setattr(scan_service, "estimate_follower_count", estimate)
    profile = await make_profile(plan="pro")
    await submit_and_run(db, profile, realistic_export(make_export, count=2))

    assert len(threads) == 1
    assert threads[0] is not threading.main_thread()


# ── Pipeline outcomes ────────────────────────────────────────────────────

async def test_starter_scan_completes_with_deterministic_ghost_count(
    db, make_profile, make_export, session_factory, reload,
):
    profile = await make_profile(plan="starter", used=0)
    upload = realistic_export(make_export, count=120, padding_bytes=10 * 1024 * 1024)

    queued = await submit_and_run(db, profile, upload)
    assert queued.status == ScanStatus.QUEUED

    job = await reload(ScanJob, queued.id)
    assert job.status == ScanStatus.COMPLETE
    assert job.total_followers == 120
    assert job.attempts == 1
    assert job.classifier_version == "ghost-v1"
    assert sum(job.score_histogram) == 120

    as_of = as_utc(job.started_at)
    expected = sum(
        1 for e in ExportParser(upload).iter_entries()
        if isinstance(e, FollowerEntry) and ghost_classifier.score(e, as_of) >= GHOST_THRESHOLD
    )
    assert expected == 40
    assert job.ghost_count == expected
    assert await record_count(session_factory, job.id) == job.total_followers
    assert await record_count(session_factory, job.id, ghosts_only=True) == job.ghost_count

    refreshed = await reload(Profile, profile.id)
    assert refreshed.scans_this_month == 1
    assert refreshed.total_followers == 120
    assert refreshed.ghost_followers == 40
    assert refreshed.engagement_rate == pytest.approx(66.67)
    assert refreshed.last_scan_date is not None


async def test_archive_without_follower_data_fails(db, make_profile, make_export, session_factory, reload):
    profile = await make_profile(plan="starter")
    upload = make_export(members={"README.txt": "nothing here", "likes_1.json": []})

    queued = await submit_and_run(db, profile, upload)

    job = await reload(ScanJob, queued.id)
    assert job.status == ScanStatus.FAILED
    assert "missing-follower-data" in job.last_error
    assert await record_count(session_factory, job.id) == 0
    assert (await reload(Profile, profile.id)).total_followers == 0


async def test_mostly_malformed_export_fails_as_corrupt(make_profile, make_job, make_export, reload):
    profile = await make_profile()
    upload = make_export(followers=[follower("ok"), {"full_name": "?"}, "junk"])
    job = await make_job(profile, upload)

    assert await ScanPipeline().run_scan(job.id) == ScanStatus.FAILED
    assert (await reload(ScanJob, job.id)).last_error.startswith("corrupt-data")


async def test_a_few_malformed_entries_are_skipped(make_profile, make_job, make_export, reload):
    profile = await make_profile()
    upload = make_export(followers=[follower("a"), follower("b"), follower("c"), "junk"])
    job = await make_job(profile, upload)

    assert await ScanPipeline().run_scan(job.id) == ScanStatus.COMPLETE
    done = await reload(ScanJob, job.id)
    assert done.total_followers == 3
    assert done.malformed_count == 1


async def test_true_follower_count_is_revalidated(make_profile, make_job, make_export, session_factory, reload):
    profile = await make_profile(plan="free")
    upload = make_export(followers=[follower(f"u{i}") for i in range(1_001)])
    job = await make_job(profile, upload)

    assert await ScanPipeline().run_scan(job.id) == ScanStatus.FAILED
    assert (await reload(ScanJob, job.id)).last_error.startswith("follower-limit-exceeded")
    assert await record_count(session_factory, job.id) == 0


class BrokenStore(FollowerStore):
    async def bulk_insert(self, db, job, followers, chunk_size=None):
        await super().bulk_insert(db, job, followers[:1])
        raise OperationalError("INSERT INTO follower_records", {}, Exception("disk full"))


async def test_store_failure_leaves_no_partial_results(make_profile, make_job, make_export, session_factory, reload):
    profile = await make_profile()
    job = await make_job(profile, make_export(followers=[follower("a"), follower("b")]))

    assert await ScanPipeline(store=BrokenStore()).run_scan(job.id) == ScanStatus.FAILED

    failed = await reload(ScanJob, job.id)
    assert failed.last_error.startswith("persistence-failed")
    assert failed.total_followers == 0
    assert await record_count(session_factory, job.id) == 0
    assert (await reload(Profile, profile.id)).total_followers == 0


class SlowPipeline(ScanPipeline):
    def collect(self, *args):
        time.sleep(0.3)
        return super().collect(*args)


async def test_timeout_fails_the_job(make_profile, make_job, make_export, session_factory, reload):
    profile = await make_profile()
    job = await make_job(profile, make_export(followers=[follower("a")]))

    assert await SlowPipeline(timeout_seconds=0.05).run_scan(job.id) == ScanStatus.FAILED
    assert (await reload(ScanJob, job.id)).last_error.startswith("timeout")
    assert await record_count(session_factory, job.id) == 0


class StalledPipeline(ScanPipeline):
    """Holds the parse thread until the timeout fires, then lets it continue."""

    def __init__(self):
        super().__init__(timeout_seconds=0.05)
        self.finished = threading.Event()
        self.abandoned = False

    def collect(self, upload_path, plan, as_of, cancelled=None):
        try:
            cancelled.wait(5)
            return super().collect(upload_path, plan, as_of, cancelled)
        except ScanTimeoutError:
            self.abandoned = True
            raise
        finally:
            self.finished.set()


async def test_timed_out_parse_stops_in_its_thread(make_profile, make_job, make_export):
    profile = await make_profile()
    job = await make_job(profile, make_export(followers=[follower("a"), follower("b")]))
    pipeline = StalledPipeline()

    assert await pipeline.run_scan(job.id) == ScanStatus.FAILED
    loop = asyncio.get_running_loop()
    assert await loop.run_in_executor(None, pipeline.finished.wait, 5)
    assert pipeline.abandoned


async def test_duplicate_delivery_is_a_no_op(make_profile, make_job, make_export, session_factory):
    profile = await make_profile()
    job = await make_job(profile, make_export(followers=[follower("a"), follower("b")]))
    pipeline = ScanPipeline()

    assert await pipeline.run_scan(job.id) == ScanStatus.COMPLETE
    assert await pipeline.run_scan(job.id) == ScanStatus.COMPLETE
    assert await record_count(session_factory, job.id) == 2


async def test_missing_job_is_ignored(engine):
    assert await ScanPipeline().run_scan("6f1c1b7e-0000-4000-8000-000000000000") is None


async def test_stale_running_jobs_are_reaped(make_profile, make_job, reload):
    profile = await make_profile()
    now = datetime.now(timezone.utc)
    stale = await make_job(profile, "/uploads/a.zip", status=ScanStatus.RUNNING, started_at=now - timedelta(hours=2))
    fresh = await make_job(profile, "/uploads/b.zip", status=ScanStatus.RUNNING, started_at=now)

    assert await ScanPipeline().fail_stale_scans(now=now) == 1
    assert (await reload(ScanJob, stale.id)).status == ScanStatus.FAILED
    assert (await reload(ScanJob, stale.id)).last_error.startswith("timeout")
    assert (await reload(ScanJob, fresh.id)).status == ScanStatus.RUNNING


# ── Retry ────────────────────────────────────────────────────────────────

async def test_retry_rules(db, make_profile, make_export, reload):
    profile = await make_profile(plan="pro")

    complete = await submit_and_run(db, profile, realistic_export(make_export, count=3))
    with pytest.raises(InvalidStateForRetryError):
        await service.retry(db, profile.id, complete.id)

    failed = await submit_and_run(db, profile, make_export(members={"notes.txt": "no followers"}))
    assert (await reload(ScanJob, failed.id)).status == ScanStatus.FAILED

    requeued = await service.retry(db, profile.id, failed.id, BackgroundTasks())
    assert requeued.status == ScanStatus.QUEUED
    assert requeued.last_error is None

    stored = await reload(ScanJob, failed.id)
    assert stored.status == ScanStatus.QUEUED
    assert stored.last_error is None
    assert (await reload(Profile, profile.id)).scans_this_month == 2


async def test_retry_runs_again_and_can_complete(db, make_profile, make_export, upload_dir, reload):
    profile = await make_profile(plan="pro")
    upload = make_export(members={"notes.txt": "no followers yet"})
    failed = await submit_and_run(db, profile, upload)
    assert (await reload(ScanJob, failed.id)).status == ScanStatus.FAILED

    # Same reference, now holding a usable export
    make_export(followers=[follower("late")], name=os.path.basename(upload))
    background = BackgroundTasks()
    await service.retry(db, profile.id, failed.id, background)
    await background()

    done = await reload(ScanJob, failed.id)
    assert done.status == ScanStatus.COMPLETE
    assert done.total_followers == 1
    assert done.attempts == 2


async def test_status_is_scoped_to_the_owning_profile(db, make_profile, make_export):
    owner = await make_profile(plan="pro")
    stranger = await make_profile(plan="pro")
    job = await submit_and_run(db, owner, realistic_export(make_export, count=2))

    assert (await service.get_status(db, owner.id, job.id)).id == job.id
    with pytest.raises(NotFoundError):
        await service.get_status(db, stranger.id, job.id)
    with pytest.raises(NotFoundError):
        await service.get_status(db, owner.id, "not-a-scan-id")

    assert [s.id for s in await service.list_scans(db, owner.id)] == [job.id]
    assert await service.list_scans(db, stranger.id) == []


async def test_job_relationships_are_never_loaded_implicitly(make_profile, make_job, reload):
    profile = await make_profile()
    job = await make_job(profile, "/uploads/a.zip")

    with pytest.raises(InvalidRequestError):
        (await reload(Profile, profile.id)).scans
    with pytest.raises(InvalidRequestError):
        (await reload(ScanJob, job.id)).profile


# ── Dispatch ─────────────────────────────────────────────────────────────

class FlakyBroker:
    """Stands in for ``process_scan_task``; refuses messages while ``down``."""

    def __init__(self):
        self.down = True
        self.sent = []

    def delay(self, scan_id):
        if self.down:
            raise ConnectionError("broker unreachable")
        self.sent.append(scan_id)


@pytest.fixture
def broker(monkeypatch):
    fake = FlakyBroker()
    monkeypatch.setattr(dispatcher.settings, "scan_executor", "celery")
    monkeypatch.setattr(tasks, "process_scan_task", fake)
    return fake


async def test_lost_hand_off_is_recovered_by_the_sweep(db, make_profile, make_export, reload, broker):
    profile = await make_profile(plan="pro")
    profile_id = profile.id

    job = await service.submit(db, profile_id, realistic_export(make_export, count=3))
    assert (await reload(ScanJob, job.id)).status == ScanStatus.QUEUED
    assert (await reload(Profile, profile_id)).scans_this_month == 1

    pipeline = ScanPipeline()
    assert await pipeline.redispatch_queued_scans() == 0

    broker.down = False
    later = datetime.now(timezone.utc) + timedelta(hours=1)
    assert await pipeline.redispatch_queued_scans(now=later) == 1
    assert broker.sent == [str(job.id)]
    # Re-sent jobs wait a full interval before the next attempt
    assert await pipeline.redispatch_queued_scans(now=later) == 0


async def test_inline_dispatch_without_background_tasks_keeps_the_task(db, make_profile, make_export, reload):
    profile = await make_profile(plan="pro")
    job = await service.submit(db, profile.id, realistic_export(make_export, count=3))

    pending = set(dispatcher._inline_tasks)
    assert len(pending) == 1
    await asyncio.gather(*pending)

    assert not dispatcher._inline_tasks
    assert (await reload(ScanJob, job.id)).status == ScanStatus.COMPLETE
