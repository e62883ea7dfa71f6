"""
GhostScan Celery Worker Tasks

Asynchronous task definitions for:
- Scan processing (parse → classify → store)
- Stale scan recovery
- Worker health
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from celery import Celery

from app.core.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)

# ── Celery App ───────────────────────────────────────────────────────────

celery_app = Celery(
    "ghostscan",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    # The pipeline enforces its own timeout; these only catch a wedged worker
    task_soft_time_limit=settings.scan_timeout_seconds + 60,
    task_time_limit=settings.scan_timeout_seconds + 300,
    task_default_queue="default",
    task_routes={
        "app.workers.tasks.process_scan_task": {"queue": "scans"},
        "app.workers.tasks.reap_stale_scans_task": {"queue": "default"},
    },
)

# ── Periodic Tasks ───────────────────────────────────────────────────────

celery_app.conf.beat_schedule = {
    "reap-stale-scans": {
        "task": "app.workers.tasks.reap_stale_scans_task",
        "schedule": float(settings.stale_scan_check_seconds),
    },
    "health-check-every-minute": {
        "task": "app.workers.tasks.health_check_task",
        "schedule": 60.0,
    },
}


# ── Helpers ──────────────────────────────────────────────────────────────

def run_async(coro):
    """Run an async coroutine from sync Celery task."""
    from app.core.database import engine

    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        # Pooled connections are bound to this loop
        loop.run_until_complete(engine.dispose())
        loop.close()


# ── Tasks ────────────────────────────────────────────────────────────────

@celery_app.task(
    name="app.workers.tasks.process_scan_task",
    bind=True,
    max_retries=3,
    default_retry_delay=30,
    acks_late=True,
)
def process_scan_task(self, scan_id: str):
    """
    Run one scan to a terminal state.

    Pipeline failures end as ``failed`` jobs and are not retried here; a
    retry only happens when the job could not even be loaded or recorded
    (database unreachable). Redelivery of a job that already left
    ``queued`` is a no-op.
    """
    try:
        logger.info(f"Processing scan: {scan_id}")
        from app.services.scans.scan_pipeline import scan_pipeline
        status = run_async(scan_pipeline.run_scan(scan_id))
        logger.info(f"Scan {scan_id} finished: {status.value if status else 'missing'}")
        return {"scan_id": scan_id, "status": status.value if status else None}
    except Exception as exc:
        logger.error(f"Task failed for scan {scan_id}: {exc}")
        raise self.retry(exc=exc, countdown=30 * (2 ** self.request.retries))


@celery_app.task(name="app.workers.tasks.reap_stale_scans_task")
def reap_stale_scans_task():
    """Fail scans whose worker died mid-run and re-send scans that never left the queue."""
    try:
        from app.services.scans.scan_pipeline import scan_pipeline
        reaped = run_async(scan_pipeline.fail_stale_scans())
        redispatched = run_async(scan_pipeline.redispatch_queued_scans())
        if reaped or redispatched:
            logger.warning(f"Reaped {reaped} stale scans, re-dispatched {redispatched} queued scans")
        return {"reaped": reaped, "redispatched": redispatched}
    except Exception as e:
        logger.error(f"Stale scan sweep failed: {e}")


@celery_app.task(name="app.workers.tasks.health_check_task")
def health_check_task():
    """Periodic health check — ensures workers are alive."""
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}
