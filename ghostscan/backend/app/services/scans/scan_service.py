"""
GhostScan Scan Service — admission, status and retry for scan jobs.

Submission is synchronous and all-or-nothing: either the caller gets a
``queued`` job and one unit of monthly quota is charged, or they get an
admission error and nothing is written.
"""
from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from fastapi import BackgroundTasks
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import GhostScanError, NotFoundError
from app.core.metrics import scans_admitted, scans_rejected
from app.models.models import ScanJob, ScanStatus
from app.services.ingest.export_parser import estimate_follower_count
from app.services.plans.plan_limiter import consume_scan_slot, evaluate
from app.services.profiles.profile_service import parse_uuid, profile_service
from app.services.scans.dispatcher import dispatch_scan
from app.services.scans.state_machine import requeue_for_retry
from app.services.storage.upload_store import UploadStore, upload_store

logger = logging.getLogger(__name__)


class ScanService:

    def __init__(self, uploads: Optional[UploadStore] = None):
        self.uploads = uploads or upload_store

    async def submit(
        self,
        db: AsyncSession,
        profile_id,
        upload_ref: str,
        background_tasks: Optional[BackgroundTasks] = None,
    ) -> ScanJob:
        try:
            profile = await profile_service.get(db, profile_id)
            path = self.uploads.resolve(upload_ref)

            loop = asyncio.get_running_loop()
            estimate = await loop.run_in_executor(None, estimate_follower_count, path)
            evaluate(profile, estimate).raise_for_reason()

            job = ScanJob(
                user_profile_id=profile.id,
                upload_path=path,
                status=ScanStatus.QUEUED,
                attempts=0,
            )
            db.add(job)
            await db.flush()
            await consume_scan_slot(db, profile.id, profile.subscription_plan)
            await db.commit()
        except GhostScanError as e:
            await db.rollback()
            scans_rejected.labels(reason=e.code).inc()
            logger.info(f"Rejected scan for profile {profile_id}: {e.describe()}")
            raise

        scans_admitted.inc()
        logger.info(f"Queued scan {job.id} for profile {profile.id} (~{estimate} followers)")
        if dispatch_scan(job.id, background_tasks) is None:
            logger.warning(f"Scan {job.id} stays queued until the stale scan sweep re-dispatches it")
        return job

    async def get_status(self, db: AsyncSession, profile_id, scan_id) -> ScanJob:
        profile_uuid = parse_uuid(profile_id)
        scan_uuid = parse_uuid(scan_id, NotFoundError)
        job = await db.get(ScanJob, scan_uuid, populate_existing=True)
        if job is None or job.user_profile_id != profile_uuid:
            raise NotFoundError(f"scan {scan_id} not found")
        return job

    async def list_scans(self, db: AsyncSession, profile_id, limit: int = 20) -> List[ScanJob]:
        profile = await profile_service.get(db, profile_id)
        rows = await db.execute(
            select(ScanJob)
            .where(ScanJob.user_profile_id == profile.id)
            .order_by(ScanJob.created_at.desc(), ScanJob.id)
            .limit(max(1, min(limit, 100)))
        )
        return list(rows.scalars().all())

    async def retry(
        self,
        db: AsyncSession,
        profile_id,
        scan_id,
        background_tasks: Optional[BackgroundTasks] = None,
    ) -> ScanJob:
        """Re-queue a failed scan. Quota was charged at submission and is not charged again."""
        job = await self.get_status(db, profile_id, scan_id)
        requeue_for_retry(job)
        await db.commit()

        logger.info(f"Retrying scan {job.id} (previous attempts: {job.attempts})")
        if dispatch_scan(job.id, background_tasks) is None:
            logger.warning(f"Scan {job.id} stays queued until the stale scan sweep re-dispatches it")
        return job


scan_service = ScanService()
