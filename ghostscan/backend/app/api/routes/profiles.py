"""
GhostScan API — Profile Routes.

  - GET /profiles/by-owner/{owner} — Fetch (or lazily create) a profile
  - GET /profiles/{id}             — Profile with dashboard aggregates
"""
from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.schemas.schemas import ProfileSchema
from app.services.profiles.profile_service import profile_service

router = APIRouter(prefix="/profiles", tags=["Profiles"])


@router.get("/by-owner/{owner}", response_model=ProfileSchema)
async def get_profile_by_owner(owner: str, db: AsyncSession = Depends(get_db)):
    return await profile_service.get_or_create(db, owner)


@router.get("/{profile_id}", response_model=ProfileSchema)
async def get_profile(profile_id: str, db: AsyncSession = Depends(get_db)):
    return await profile_service.get(db, profile_id)
