"""
GhostScan Follower Store

Responsibilities:
  - All-or-nothing bulk insert of classified followers for one scan
    (inside the caller's transaction)
  - Composable filters (scan scope, search, ghost / inactivity window,
    record status) evaluated in SQL over the full set before pagination
  - Stable ordering: every sort ends with the record id as tiebreaker
  - Idempotent keep / remove status updates scoped to the owning profile
  - Batched iteration over the complete filtered set for CSV export
"""
from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import AsyncIterator, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import Select, func, insert, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow
from app.core.config import get_settings
from app.core.exceptions import GhostScanError, NotFoundError
from app.models.models import (
    GHOST_THRESHOLD, FollowerRecord, FollowerStatus, ScanJob, ScanStatus,
)
from app.services.ingest.export_parser import FollowerEntry

logger = logging.getLogger(__name__)
settings = get_settings()


class FollowerFilter(str, Enum):
    ALL = "all"
    GHOSTS = "ghosts"
    INACTIVE_30 = "inactive_30"
    INACTIVE_60 = "inactive_60"
    INACTIVE_90 = "inactive_90"


INACTIVE_DAYS = {
    FollowerFilter.INACTIVE_30: 30,
    FollowerFilter.INACTIVE_60: 60,
    FollowerFilter.INACTIVE_90: 90,
}

SORTS = {
    "ghost_score": (FollowerRecord.ghost_score.desc(),),
    "handle": (FollowerRecord.handle.asc(),),
    "follower_since": (FollowerRecord.follower_since.desc().nulls_last(),),
    "last_seen": (FollowerRecord.last_seen_interaction_at.asc().nulls_first(),),
}

MUTABLE_STATUSES = (FollowerStatus.KEPT, FollowerStatus.REMOVED)


class InvalidFollowerStatusError(GhostScanError):
    code = "invalid-status"
    status_code = 422


@dataclass
class ScoredFollower:
    entry: FollowerEntry
    ghost_score: float

    @property
    def is_ghost(self) -> bool:
        return self.ghost_score >= GHOST_THRESHOLD


@dataclass
class FollowerQuery:
    search: Optional[str] = None
    type: FollowerFilter = FollowerFilter.ALL
    status: Optional[FollowerStatus] = None
    scan_id: Optional[uuid.UUID] = None
    sort: str = "ghost_score"


@dataclass
class FollowerPage:
    items: List[FollowerRecord]
    total: int
    page: int
    page_size: int
    scan_id: Optional[uuid.UUID] = None

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.page_size) if self.page_size else 0


@dataclass
class StatusUpdateResult:
    updated: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    not_found: List[str] = field(default_factory=list)


def escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class FollowerStore:

    # ── Writes ───────────────────────────────────────────────────────────

    async def bulk_insert(
        self,
        db: AsyncSession,
        job: ScanJob,
        followers: Sequence[ScoredFollower],
        chunk_size: int = None,
    ) -> int:
        """
        Stage every record for ``job`` in the current transaction.

        Nothing is visible to other sessions until the caller commits, and
        the caller commits the records together with the ``complete``
        transition.
        """
        chunk_size = chunk_size or settings.bulk_insert_chunk_size
        inserted = 0
        for start in range(0, len(followers), chunk_size):
            chunk = followers[start:start + chunk_size]
            await db.execute(
                insert(FollowerRecord),
                [self._row(job, f) for f in chunk],
            )
            inserted += len(chunk)
        return inserted

    @staticmethod
    def _row(job: ScanJob, follower: ScoredFollower) -> Dict:
        e = follower.entry
        return {
            "id": uuid.uuid4(),
            "user_profile_id": job.user_profile_id,
            "scan_result_id": job.id,
            "handle": e.handle,
            "display_name": e.display_name,
            "is_verified": e.is_verified,
            "is_private": e.is_private,
            "follower_since": e.follower_since,
            "total_likes": e.total_likes,
            "total_comments": e.total_comments,
            "last_seen_interaction_at": e.last_interaction_at,
            "ghost_score": follower.ghost_score,
            "status": FollowerStatus.IDENTIFIED,
        }

    async def update_status(
        self,
        db: AsyncSession,
        profile_id: uuid.UUID,
        ids: Iterable,
        status: FollowerStatus,
    ) -> StatusUpdateResult:
        """Apply keep / remove. Re-applying the current status is a no-op."""
        status = FollowerStatus(status)
        if status not in MUTABLE_STATUSES:
            raise InvalidFollowerStatusError(f"status must be one of kept, removed (got {status.value})")

        result = StatusUpdateResult()
        wanted: Dict[uuid.UUID, str] = {}
        for raw in ids:
            try:
                wanted[uuid.UUID(str(raw))] = str(raw)
            except ValueError:
                result.not_found.append(str(raw))

        if wanted:
            rows = await db.execute(
                select(FollowerRecord).where(
                    FollowerRecord.user_profile_id == profile_id,
                    FollowerRecord.id.in_(list(wanted)),
                )
            )
            found = {r.id: r for r in rows.scalars().all()}
            for rid, raw in wanted.items():
                record = found.get(rid)
                if record is None:
                    result.not_found.append(raw)
                elif record.status == status:
                    result.unchanged.append(raw)
                else:
                    record.status = status
                    result.updated.append(raw)
            await db.commit()

        if result.updated:
            logger.info(f"Profile {profile_id}: marked {len(result.updated)} followers {status.value}")
        return result

    # ── Reads ────────────────────────────────────────────────────────────

    async def latest_complete_scan_id(self, db: AsyncSession, profile_id: uuid.UUID) -> Optional[uuid.UUID]:
        return await db.scalar(
            select(ScanJob.id)
            .where(ScanJob.user_profile_id == profile_id, ScanJob.status == ScanStatus.COMPLETE)
            .order_by(ScanJob.finished_at.desc(), ScanJob.created_at.desc())
            .limit(1)
        )

    async def resolve_scan(self, db: AsyncSession, profile_id: uuid.UUID, scan_id: Optional[uuid.UUID]) -> Optional[uuid.UUID]:
        if scan_id is None:
            return await self.latest_complete_scan_id(db, profile_id)
        owner = await db.scalar(select(ScanJob.user_profile_id).where(ScanJob.id == scan_id))
        if owner != profile_id:
            raise NotFoundError(f"scan {scan_id} not found")
        return scan_id

    def filtered(self, profile_id: uuid.UUID, scan_id: uuid.UUID, q: FollowerQuery, now: datetime) -> Select:
        stmt = select(FollowerRecord).where(
            FollowerRecord.user_profile_id == profile_id,
            FollowerRecord.scan_result_id == scan_id,
        )

        if q.search and q.search.strip():
            term = q.search.strip()
            if term.startswith("@"):
                term = term[1:]
            pattern = f"%{escape_like(term)}%"
            stmt = stmt.where(or_(
                FollowerRecord.handle.ilike(pattern, escape="\\"),
                FollowerRecord.display_name.ilike(pattern, escape="\\"),
            ))

        kind = FollowerFilter(q.type)
        if kind == FollowerFilter.GHOSTS:
            stmt = stmt.where(FollowerRecord.ghost_score >= GHOST_THRESHOLD)
        elif kind in INACTIVE_DAYS:
            cutoff = now - timedelta(days=INACTIVE_DAYS[kind])
            stmt = stmt.where(or_(
                FollowerRecord.last_seen_interaction_at.is_(None),
                FollowerRecord.last_seen_interaction_at < cutoff,
            ))

        if q.status is not None:
            stmt = stmt.where(FollowerRecord.status == FollowerStatus(q.status))

        return stmt

    @staticmethod
    def ordered(stmt: Select, sort: str) -> Select:
        order = SORTS.get(sort, SORTS["ghost_score"])
        return stmt.order_by(*order, FollowerRecord.id.asc())

    async def query(
        self,
        db: AsyncSession,
        profile_id: uuid.UUID,
        q: FollowerQuery,
        page: int = 1,
        page_size: int = None,
        now: Optional[datetime] = None,
    ) -> FollowerPage:
        page = max(page, 1)
        page_size = min(max(page_size or settings.default_page_size, 1), settings.max_page_size)
        now = now or utcnow()

        scan_id = await self.resolve_scan(db, profile_id, q.scan_id)
        if scan_id is None:
            return FollowerPage(items=[], total=0, page=page, page_size=page_size)

        base = self.filtered(profile_id, scan_id, q, now)
        total = await db.scalar(select(func.count()).select_from(base.subquery())) or 0

        rows = await db.execute(
            self.ordered(base, q.sort)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return FollowerPage(
            items=list(rows.scalars().all()),
            total=total,
            page=page,
            page_size=page_size,
            scan_id=scan_id,
        )

    async def iter_filtered(
        self,
        db: AsyncSession,
        profile_id: uuid.UUID,
        q: FollowerQuery,
        now: Optional[datetime] = None,
        batch_size: int = None,
    ) -> AsyncIterator[FollowerRecord]:
        """Every record of the filtered set, in sort order, fetched in batches."""
        batch_size = batch_size or settings.export_batch_size
        now = now or utcnow()

        scan_id = await self.resolve_scan(db, profile_id, q.scan_id)
        if scan_id is None:
            return

        stmt = self.ordered(self.filtered(profile_id, scan_id, q, now), q.sort)
        offset = 0
        while True:
            rows = await db.execute(stmt.offset(offset).limit(batch_size))
            batch = rows.scalars().all()
            for record in batch:
                yield record
            if len(batch) < batch_size:
                break
            offset += batch_size

    # ── Invariant helpers ────────────────────────────────────────────────

    async def count_for_scan(self, db: AsyncSession, scan_id: uuid.UUID, ghosts_only: bool = False) -> int:
        stmt = select(func.count(FollowerRecord.id)).where(FollowerRecord.scan_result_id == scan_id)
        if ghosts_only:
            stmt = stmt.where(FollowerRecord.ghost_score >= GHOST_THRESHOLD)
        return await db.scalar(stmt) or 0


follower_store = FollowerStore()
