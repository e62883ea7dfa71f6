"""
Hands queued scans to whatever executes them.

``celery``  — the worker fleet picks the job up from the broker (production)
``inline``  — the API process runs it after the response is sent

A hand-off that fails (broker unreachable) is logged and left to the stale
scan sweep, which re-dispatches jobs that sat in ``queued`` too long.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Optional, Set

from fastapi import BackgroundTasks

from app.core.config import get_settings
from app.core.metrics import scan_dispatch_failures

logger = logging.getLogger(__name__)
settings = get_settings()

# Inline runs started without BackgroundTasks; the loop only keeps weak references
_inline_tasks: Set[asyncio.Task] = set()


def _inline_task_done(task: asyncio.Task):
    _inline_tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"Inline scan task crashed: {exc!r}")


def dispatch_scan(scan_id, background_tasks: Optional[BackgroundTasks] = None) -> Optional[str]:
    """Returns the executor that accepted the scan, or None if the hand-off failed."""
    scan_id = str(scan_id)

    if settings.scan_executor == "inline":
        from app.services.scans.scan_pipeline import scan_pipeline

        if background_tasks is not None:
            background_tasks.add_task(scan_pipeline.run_scan, scan_id)
        else:
            task = asyncio.get_running_loop().create_task(scan_pipeline.run_scan(scan_id))
            _inline_tasks.add(task)
            task.add_done_callback(_inline_task_done)
        logger.debug(f"Scan {scan_id} scheduled inline")
        return "inline"

    from app.workers.tasks import process_scan_task

    try:
        process_scan_task.delay(scan_id)
    except Exception as e:
        scan_dispatch_failures.inc()
        logger.error(f"Could not hand scan {scan_id} to the worker queue: {e}")
        return None
    logger.debug(f"Scan {scan_id} sent to the worker queue")
    return "celery"
