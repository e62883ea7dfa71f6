"""
Scan job state machine.

    queued → running → complete
                     → failed → queued   (explicit retry only)

Transitions mutate the ORM object in place; callers own the transaction.
"""
from __future__ import annotations

from datetime import datetime
from typing import Dict, FrozenSet, List, Optional

from app.core.clock import utcnow
from app.core.exceptions import InvalidStateForRetryError, InvalidTransitionError
from app.models.models import ScanJob, ScanStatus

ALLOWED_TRANSITIONS: Dict[ScanStatus, FrozenSet[ScanStatus]] = {
    ScanStatus.QUEUED: frozenset({ScanStatus.RUNNING}),
    ScanStatus.RUNNING: frozenset({ScanStatus.COMPLETE, ScanStatus.FAILED}),
    ScanStatus.COMPLETE: frozenset(),
    ScanStatus.FAILED: frozenset({ScanStatus.QUEUED}),
}

TERMINAL_STATES = frozenset({ScanStatus.COMPLETE, ScanStatus.FAILED})
ACTIVE_STATES = frozenset({ScanStatus.QUEUED, ScanStatus.RUNNING})


def can_transition(current: ScanStatus, target: ScanStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def _move(job: ScanJob, target: ScanStatus):
    current = ScanStatus(job.status)
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"scan {job.id}: {current.value} → {target.value} is not allowed"
        )
    job.status = target


def mark_running(job: ScanJob, now: Optional[datetime] = None):
    _move(job, ScanStatus.RUNNING)
    job.started_at = now or utcnow()
    job.attempts = (job.attempts or 0) + 1


def mark_complete(
    job: ScanJob,
    total_followers: int,
    ghost_count: int,
    malformed_count: int = 0,
    histogram: Optional[List[int]] = None,
    classifier_version: Optional[str] = None,
    now: Optional[datetime] = None,
):
    _move(job, ScanStatus.COMPLETE)
    job.finished_at = now or utcnow()
    job.total_followers = total_followers
    job.ghost_count = ghost_count
    job.malformed_count = malformed_count
    job.score_histogram = histogram
    job.classifier_version = classifier_version
    job.last_error = None


def mark_failed(job: ScanJob, error: str, now: Optional[datetime] = None):
    _move(job, ScanStatus.FAILED)
    job.finished_at = now or utcnow()
    job.last_error = error
    job.total_followers = 0
    job.ghost_count = 0
    job.score_histogram = None


def requeue_for_retry(job: ScanJob):
    """User-triggered retry: failed → queued, error cleared."""
    if ScanStatus(job.status) != ScanStatus.FAILED:
        raise InvalidStateForRetryError(
            f"scan {job.id} is {ScanStatus(job.status).value}; only failed scans can be retried"
        )
    _move(job, ScanStatus.QUEUED)
    job.last_error = None
    job.started_at = None
    job.finished_at = None
    job.total_followers = 0
    job.ghost_count = 0
    job.malformed_count = 0
    job.score_histogram = None
