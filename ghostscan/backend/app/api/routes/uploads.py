"""
GhostScan API — Upload Routes.

  - POST /uploads — Stream a platform export (.zip) to storage
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, File, UploadFile

from app.schemas.schemas import UploadResponse
from app.services.storage.upload_store import upload_store

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/uploads", tags=["Uploads"])


@router.post("", response_model=UploadResponse, status_code=201)
async def upload_export(file: UploadFile = File(...)):
    """
    Store an export archive and return the reference to submit a scan with.

    The archive is not opened here; format problems surface on the scan.
    """
    stored = await upload_store.save(file)
    return UploadResponse(
        upload_ref=stored.upload_ref,
        size_bytes=stored.size_bytes,
        filename=stored.filename,
    )
