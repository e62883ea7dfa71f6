"""
Per-profile commit lock.

Serializes "commit scan results + update profile aggregates" for one
profile. In-process an ``asyncio.Lock`` per profile id is taken; on
PostgreSQL a transaction-scoped advisory lock additionally covers other
worker processes.
"""
from __future__ import annotations

import asyncio
import hashlib
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


def advisory_key(profile_id: str) -> int:
    """Stable signed 64-bit key for ``pg_advisory_xact_lock``."""
    digest = hashlib.blake2b(str(profile_id).encode(), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


class ProfileLocks:
    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @asynccontextmanager
    async def hold(self, profile_id: str, db: AsyncSession) -> AsyncIterator[None]:
        async with self._locks[str(profile_id)]:
            if db.bind is not None and db.bind.dialect.name == "postgresql":
                await db.execute(
                    text("SELECT pg_advisory_xact_lock(:key)"),
                    {"key": advisory_key(profile_id)},
                )
            yield


profile_locks = ProfileLocks()
