"""
GhostScan Scan Pipeline — one job, one logical worker.

Stages for a queued ScanJob:
  1. queued → running (committed on its own so pollers see progress)
  2. Parse the export and score each follower as it streams out
     (thread executor; the event loop stays free)
  3. Re-validate the true follower count against the plan ceiling
  4. Under the per-profile lock, in ONE transaction: insert all records,
     mark the job complete, refresh profile aggregates, commit
  5. Anything raised along the way is caught here and becomes
     running → failed with a descriptive ``last_error``

The whole run is bounded by ``scan_timeout_seconds``.
"""
from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError

from app.core import database
from app.core.clock import as_utc, utcnow
from app.core.config import get_settings
from app.core.exceptions import (
    CorruptDataError,
    GhostScanError,
    PersistenceFailedError,
    ScanTimeoutError,
)
from app.core.locks import profile_locks
from app.core.metrics import followers_classified, scan_duration, scans_finished, scans_redispatched
from app.ml.ghost.classifier import (
    GhostClassifier, ghost_classifier, score_histogram, score_summary,
)
from app.models.models import FollowerRecord, Profile, ScanJob, ScanStatus
from app.services.followers.follower_store import FollowerStore, ScoredFollower, follower_store
from app.services.ingest.export_parser import ExportParser, MalformedEntry
from app.services.plans.plan_limiter import check_follower_count, limits_for
from app.services.profiles.profile_service import engagement_rate, profile_service
from app.services.scans.dispatcher import dispatch_scan
from app.services.scans.state_machine import mark_complete, mark_failed, mark_running

logger = logging.getLogger(__name__)
settings = get_settings()

# Individual malformed entries logged per scan before going quiet
MAX_MALFORMED_WARNINGS = 20


@dataclass
class ScanOutcome:
    followers: List[ScoredFollower] = field(default_factory=list)
    malformed: int = 0

    @property
    def ghost_count(self) -> int:
        return sum(1 for f in self.followers if f.is_ghost)


class ScanPipeline:

    def __init__(
        self,
        classifier: Optional[GhostClassifier] = None,
        store: Optional[FollowerStore] = None,
        timeout_seconds: Optional[float] = None,
        max_malformed_ratio: Optional[float] = None,
    ):
        self.classifier = classifier or ghost_classifier
        self.store = store or follower_store
        self.timeout_seconds = timeout_seconds or settings.scan_timeout_seconds
        self.max_malformed_ratio = (
            max_malformed_ratio if max_malformed_ratio is not None else settings.max_malformed_ratio
        )

    # ── Main Entry Point ─────────────────────────────────────────────────

    async def run_scan(self, scan_id: str) -> Optional[ScanStatus]:
        """
        Process one queued scan to a terminal state.

        Never raises for pipeline failures: they end as ``failed`` jobs.
        Returns the final status, or None when the job does not exist.
        """
        started = time.monotonic()
        scan_uuid = uuid.UUID(str(scan_id))

        async with database.async_session_factory() as db:
            job = await db.get(ScanJob, scan_uuid)
            if job is None:
                logger.warning(f"Scan {scan_id} not found; nothing to run")
                return None
            if job.status != ScanStatus.QUEUED:
                logger.info(f"Scan {scan_id} is {job.status.value}; skipping duplicate delivery")
                return job.status

            mark_running(job)
            await db.commit()

            profile = await db.get(Profile, job.user_profile_id)
            plan = profile.subscription_plan if profile else None
            upload_path = job.upload_path
            as_of = as_utc(job.started_at)

        logger.info(f"Scan {scan_id} running (plan={plan}, attempt={job.attempts})")

        error: Optional[GhostScanError] = None
        status = ScanStatus.FAILED
        try:
            status = await asyncio.wait_for(
                self._execute(scan_uuid, upload_path, plan, as_of),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            error = ScanTimeoutError(f"scan exceeded {self.timeout_seconds}s")
        except GhostScanError as e:
            error = e
        except Exception as e:
            logger.exception(f"Scan {scan_id} crashed")
            error = GhostScanError(f"unexpected error: {e}")

        if error is not None:
            status = await self._fail(scan_uuid, error)

        scan_duration.observe(time.monotonic() - started)
        scans_finished.labels(status=status.value).inc()
        return status

    async def _execute(self, scan_id: uuid.UUID, upload_path: str, plan: Optional[str], as_of: datetime) -> ScanStatus:
        loop = asyncio.get_running_loop()
        cancelled = threading.Event()
        try:
            outcome = await loop.run_in_executor(None, self.collect, upload_path, plan, as_of, cancelled)
        except asyncio.CancelledError:
            # wait_for gave up; stop the worker thread at the next entry
            cancelled.set()
            raise
        return await self._commit(scan_id, outcome, as_of)

    # ── Parse + classify ─────────────────────────────────────────────────

    def collect(
        self,
        upload_path: str,
        plan: Optional[str],
        as_of: datetime,
        cancelled: Optional[threading.Event] = None,
    ) -> ScanOutcome:
        """Stream the export, scoring each entry as it is produced. Stops early once ``cancelled`` is set."""
        ceiling = limits_for(plan).followers
        outcome = ScanOutcome()

        for item in ExportParser(upload_path).iter_entries():
            if cancelled is not None and cancelled.is_set():
                raise ScanTimeoutError("parsing abandoned after timeout")
            if isinstance(item, MalformedEntry):
                outcome.malformed += 1
                if outcome.malformed <= MAX_MALFORMED_WARNINGS:
                    logger.warning(f"Skipping malformed follower in {item.member}: {item.reason}")
                continue

            outcome.followers.append(ScoredFollower(item, self.classifier.score(item, as_of)))
            if len(outcome.followers) > ceiling:
                check_follower_count(plan, len(outcome.followers))

        total = len(outcome.followers) + outcome.malformed
        if outcome.malformed and outcome.malformed / total > self.max_malformed_ratio:
            raise CorruptDataError(
                f"{outcome.malformed} of {total} follower entries could not be parsed"
            )

        followers_classified.inc(len(outcome.followers))
        return outcome

    # ── Commit ───────────────────────────────────────────────────────────

    async def _commit(self, scan_id: uuid.UUID, outcome: ScanOutcome, as_of: datetime) -> ScanStatus:
        async with database.async_session_factory() as db:
            job = await db.get(ScanJob, scan_id)
            if job is None or job.status != ScanStatus.RUNNING:
                state = job.status.value if job else "deleted"
                logger.warning(f"Scan {scan_id} is {state}; discarding results")
                return job.status if job else ScanStatus.FAILED

            scores = [f.ghost_score for f in outcome.followers]
            try:
                async with profile_locks.hold(job.user_profile_id, db):
                    await db.execute(delete(FollowerRecord).where(FollowerRecord.scan_result_id == scan_id))
                    inserted = await self.store.bulk_insert(db, job, outcome.followers)
                    ghosts = outcome.ghost_count

                    mark_complete(
                        job,
                        total_followers=inserted,
                        ghost_count=ghosts,
                        malformed_count=outcome.malformed,
                        histogram=score_histogram(scores),
                        classifier_version=self.classifier.version,
                    )

                    profile = await db.get(Profile, job.user_profile_id)
                    if profile is not None:
                        profile_service.apply_scan_aggregates(
                            profile,
                            total_followers=inserted,
                            ghost_followers=ghosts,
                            rate=engagement_rate((f.entry.last_interaction_at for f in outcome.followers), as_of),
                            scanned_at=job.finished_at,
                        )
                    await db.commit()
            except SQLAlchemyError as e:
                await db.rollback()
                raise PersistenceFailedError(f"could not store followers ({e.__class__.__name__}: {e})")

        logger.info(
            f"Scan {scan_id} complete: followers={inserted}, ghosts={ghosts}, "
            f"malformed={outcome.malformed}, scores={score_summary(scores)}"
        )
        return ScanStatus.COMPLETE

    async def _fail(self, scan_id: uuid.UUID, error: GhostScanError) -> ScanStatus:
        message = error.describe()
        async with database.async_session_factory() as db:
            job = await db.get(ScanJob, scan_id)
            if job is None:
                return ScanStatus.FAILED
            if job.status != ScanStatus.RUNNING:
                logger.warning(f"Scan {scan_id} already {job.status.value}; not recording {message}")
                return job.status
            mark_failed(job, message)
            await db.commit()

        logger.warning(f"Scan {scan_id} failed: {message}")
        return ScanStatus.FAILED

    # ── Recovery ─────────────────────────────────────────────────────────

    async def fail_stale_scans(self, now: Optional[datetime] = None) -> int:
        """Fail jobs stuck in ``running`` past the timeout (e.g. a dead worker)."""
        cutoff = (now or utcnow()) - timedelta(seconds=self.timeout_seconds)
        async with database.async_session_factory() as db:
            rows = await db.execute(
                select(ScanJob).where(
                    ScanJob.status == ScanStatus.RUNNING,
                    ScanJob.started_at < cutoff,
                )
            )
            stale = rows.scalars().all()
            for job in stale:
                mark_failed(job, ScanTimeoutError(f"no result after {self.timeout_seconds}s").describe())
            await db.commit()

        for job in stale:
            scans_finished.labels(status=ScanStatus.FAILED.value).inc()
            logger.warning(f"Scan {job.id} timed out while running")
        return len(stale)

    async def redispatch_queued_scans(self, now: Optional[datetime] = None) -> int:
        """Hand out again jobs left in ``queued`` because their first hand-off was lost."""
        now = now or utcnow()
        cutoff = now - timedelta(seconds=settings.queued_redispatch_seconds)
        async with database.async_session_factory() as db:
            rows = await db.execute(
                select(ScanJob).where(
                    ScanJob.status == ScanStatus.QUEUED,
                    ScanJob.updated_at < cutoff,
                )
            )
            stranded = rows.scalars().all()
            # Restart the clock so the next sweep does not pile up duplicates
            for job in stranded:
                job.updated_at = now
            await db.commit()

        sent = 0
        for job in stranded:
            if dispatch_scan(job.id) is not None:
                sent += 1
                scans_redispatched.inc()
                logger.warning(f"Scan {job.id} was still queued; dispatched again")
        return sent


scan_pipeline = ScanPipeline()
