"""
GhostScan API — Scan Routes.

Drives the scan job lifecycle:
  - POST /profiles/{id}/scans                 — Admit an upload, queue a scan
  - GET  /profiles/{id}/scans                 — Recent scans
  - GET  /profiles/{id}/scans/{scan_id}       — Poll one scan
  - POST /profiles/{id}/scans/{scan_id}/retry — Re-queue a failed scan
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.schemas.schemas import ErrorResponse, ScanJobSchema, ScanListResponse, ScanSubmitRequest
from app.services.scans.scan_service import scan_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/profiles/{profile_id}/scans", tags=["Scans"])


@router.post(
    "",
    response_model=ScanJobSchema,
    status_code=201,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def submit_scan(
    profile_id: str,
    req: ScanSubmitRequest,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
):
    """
    Admit an uploaded export for scanning.

    Admission is checked before anything is written: a rejected upload
    creates no job and uses no quota. An accepted one comes back
    ``queued`` and is processed in the background; poll it by id.
    """
    return await scan_service.submit(db, profile_id, req.upload_ref, background_tasks)


@router.get("", response_model=ScanListResponse)
async def list_scans(
    profile_id: str,
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    scans = await scan_service.list_scans(db, profile_id, limit=limit)
    return ScanListResponse(scans=[ScanJobSchema.model_validate(s) for s in scans])


@router.get("/{scan_id}", response_model=ScanJobSchema, responses={404: {"model": ErrorResponse}})
async def get_scan(profile_id: str, scan_id: str, db: AsyncSession = Depends(get_db)):
    """Counts are meaningful once ``complete``; ``last_error`` is set once ``failed``."""
    return await scan_service.get_status(db, profile_id, scan_id)


@router.post("/{scan_id}/retry", response_model=ScanJobSchema, responses={409: {"model": ErrorResponse}})
async def retry_scan(
    profile_id: str,
    scan_id: str,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
):
    return await scan_service.retry(db, profile_id, scan_id, background_tasks)
