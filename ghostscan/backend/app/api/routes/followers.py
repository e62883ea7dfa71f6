"""
GhostScan API — Follower Routes.

  - GET  /profiles/{id}/followers            — Filtered, sorted, paginated list
  - POST /profiles/{id}/followers/status     — Mark followers kept / removed
  - GET  /profiles/{id}/followers/export.csv — Full filtered set as CSV
"""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import database
from app.core.clock import utcnow
from app.core.config import get_settings
from app.core.database import get_db
from app.core.exceptions import NotFoundError
from app.models.models import FollowerStatus
from app.schemas.schemas import (
    FollowerPageResponse,
    FollowerSchema,
    FollowerStatusRequest,
    FollowerStatusResponse,
)
from app.services.followers.csv_export import export_filename, render_csv_async
from app.services.followers.follower_store import FollowerFilter, FollowerQuery, SORTS, follower_store
from app.services.profiles.profile_service import parse_uuid, profile_service

logger = logging.getLogger(__name__)
settings = get_settings()
router = APIRouter(prefix="/profiles/{profile_id}/followers", tags=["Followers"])

SORT_PATTERN = "^(" + "|".join(SORTS) + ")$"


def follower_query(
    search: Optional[str] = Query(None, max_length=256, description="Substring of handle or display name"),
    type: FollowerFilter = Query(FollowerFilter.ALL, description="all, ghosts, inactive_30/60/90"),
    status: Optional[FollowerStatus] = Query(None),
    scan_id: Optional[str] = Query(None, description="Defaults to the most recent complete scan"),
    sort: str = Query("ghost_score", pattern=SORT_PATTERN),
) -> FollowerQuery:
    return FollowerQuery(
        search=search,
        type=type,
        status=status,
        scan_id=parse_uuid(scan_id, NotFoundError) if scan_id else None,
        sort=sort,
    )


@router.get("", response_model=FollowerPageResponse)
async def list_followers(
    profile_id: str,
    q: FollowerQuery = Depends(follower_query),
    page: int = Query(1, ge=1),
    page_size: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    db: AsyncSession = Depends(get_db),
):
    """Filters apply to the whole scan before pagination, so ``total`` is exact."""
    profile = await profile_service.get(db, profile_id)
    result = await follower_store.query(db, profile.id, q, page=page, page_size=page_size)
    return FollowerPageResponse(
        items=[FollowerSchema.model_validate(r) for r in result.items],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
        total_pages=result.total_pages,
        scan_id=result.scan_id,
    )


@router.post("/status", response_model=FollowerStatusResponse)
async def update_follower_status(
    profile_id: str,
    req: FollowerStatusRequest,
    db: AsyncSession = Depends(get_db),
):
    """Idempotent: ids already in the requested status come back as ``unchanged``."""
    profile = await profile_service.get(db, profile_id)
    result = await follower_store.update_status(db, profile.id, req.ids, req.status)
    return FollowerStatusResponse(
        updated=result.updated,
        unchanged=result.unchanged,
        not_found=result.not_found,
    )


@router.get("/export.csv")
async def export_followers(
    profile_id: str,
    q: FollowerQuery = Depends(follower_query),
    db: AsyncSession = Depends(get_db),
):
    """Stream every record matching the filters, not just one page."""
    profile = await profile_service.get(db, profile_id)
    q.scan_id = await follower_store.resolve_scan(db, profile.id, q.scan_id)
    now = utcnow()

    async def rows():
        async with database.async_session_factory() as session:
            records = follower_store.iter_filtered(session, profile.id, q, now=now)
            async for line in render_csv_async(records):
                yield line

    logger.info(f"Exporting followers for profile {profile.id} (type={q.type.value}, scan={q.scan_id})")
    return StreamingResponse(
        rows(),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{export_filename()}"'},
    )
