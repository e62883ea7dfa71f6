"""
Shared fixtures for the GhostScan test suite.

Provides:
- An isolated SQLite database per test (file-backed, so pipeline sessions
  and request sessions use separate connections like they would on PostgreSQL)
- Export archive builders
- Profile / scan factories
- An HTTP client bound to the ASGI app
"""
import json
import os
import tempfile
import zipfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

# Settings are read once at import time; point them at test resources first.
os.environ.setdefault("GHOSTSCAN_DB_URL", "sqlite+aiosqlite://")
os.environ.setdefault("GHOSTSCAN_SCAN_EXECUTOR", "inline")
os.environ.setdefault("GHOSTSCAN_UPLOAD_DIR", tempfile.mkdtemp(prefix="ghostscan-uploads-"))

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.core import database
from app.core.config import get_settings
from app.models.models import Profile, ScanJob, ScanStatus

AS_OF = datetime(2024, 6, 1, tzinfo=timezone.utc)


def epoch(dt: datetime) -> int:
    return int(dt.timestamp())


def follower(handle: str, **fields) -> Dict[str, Any]:
    """Follower entry in the flat export shape."""
    return {"username": handle, **fields}


def instagram_follower(handle: str, followed_at: Optional[datetime] = None) -> Dict[str, Any]:
    """Follower entry in the string_list_data export shape."""
    data = {"value": handle, "href": f"https://www.instagram.com/{handle}"}
    if followed_at is not None:
        data["timestamp"] = epoch(followed_at)
    return {"title": "", "media_list_data": [], "string_list_data": [data]}


# ── Database ─────────────────────────────────────────────────────────────

@pytest.fixture
async def engine(tmp_path: Path, monkeypatch):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ghostscan.db'}")
    await database.init_db(eng)

    factory = async_sessionmaker(eng, class_=AsyncSession, expire_on_commit=False)
    monkeypatch.setattr(database, "async_session_factory", factory)

    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return database.async_session_factory


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_profile(db):
    async def _make(plan: Optional[str] = "starter", used: int = 0, owner: Optional[str] = None) -> Profile:
        profile = Profile(
            owner=owner or f"owner-{os.urandom(4).hex()}@example.com",
            subscription_plan=plan,
            scans_this_month=used,
        )
        db.add(profile)
        await db.commit()
        return profile

    return _make


@pytest.fixture
def make_job(db):
    async def _make(profile: Profile, upload_path: str, status: ScanStatus = ScanStatus.QUEUED, **fields) -> ScanJob:
        job = ScanJob(
            user_profile_id=profile.id,
            upload_path=upload_path,
            status=status,
            attempts=0,
            **fields,
        )
        db.add(job)
        await db.commit()
        return job

    return _make


@pytest.fixture
def reload(session_factory):
    """Fetch a row through a fresh session so no identity-map state leaks in."""
    async def _reload(model, pk):
        async with session_factory() as session:
            return await session.get(model, pk)

    return _reload


# ── Export archives ──────────────────────────────────────────────────────

@pytest.fixture
def upload_dir() -> Path:
    path = Path(get_settings().upload_dir)
    path.mkdir(parents=True, exist_ok=True)
    return path


@pytest.fixture
def make_export(upload_dir: Path):
    """
    Build a .zip export inside the upload directory.

    ``followers`` is written as ``followers_1.json``; ``members`` adds raw
    extra members (name → str / bytes / JSON-able object).
    """
    def _make(
        followers: Optional[List[Any]] = None,
        interactions: Optional[List[Dict[str, Any]]] = None,
        members: Optional[Dict[str, Any]] = None,
        name: Optional[str] = None,
    ) -> str:
        path = upload_dir / (name or f"export-{os.urandom(6).hex()}.zip")
        with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            if followers is not None:
                zf.writestr("connections/followers_and_following/followers_1.json", json.dumps(followers))
            if interactions is not None:
                zf.writestr("interactions.json", json.dumps(interactions))
            for member, content in (members or {}).items():
                if isinstance(content, (dict, list)):
                    content = json.dumps(content)
                zf.writestr(member, content)
        return str(path)

    return _make


# ── HTTP ─────────────────────────────────────────────────────────────────

@pytest.fixture
async def client(engine):
    from app.main import app

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
