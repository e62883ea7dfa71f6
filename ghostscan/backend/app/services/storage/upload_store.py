"""
Local upload storage. Streams an uploaded export to disk in chunks and
hands back the opaque reference scan jobs carry around.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from fastapi import UploadFile

from app.core.config import get_settings
from app.core.exceptions import ArchiveTooLargeError, InvalidArchiveError, NotFoundError

logger = logging.getLogger(__name__)
settings = get_settings()


@dataclass
class StoredUpload:
    upload_ref: str
    size_bytes: int
    filename: Optional[str] = None


class UploadStore:
    def __init__(self, root: Optional[str] = None, max_bytes: Optional[int] = None):
        self._root = root
        self._max_bytes = max_bytes

    @property
    def root(self) -> Path:
        return Path(self._root or settings.upload_dir)

    @property
    def max_bytes(self) -> int:
        return self._max_bytes or settings.max_upload_bytes

    async def save(self, upload: UploadFile) -> StoredUpload:
        name = upload.filename or ""
        if not name.lower().endswith(".zip"):
            raise InvalidArchiveError("upload a .zip file containing your follower data")

        self.root.mkdir(parents=True, exist_ok=True)
        target = self.root / f"{uuid.uuid4().hex}.zip"
        written = 0
        try:
            with open(target, "wb") as out:
                while True:
                    chunk = await upload.read(settings.upload_chunk_bytes)
                    if not chunk:
                        break
                    written += len(chunk)
                    if written > self.max_bytes:
                        raise ArchiveTooLargeError(
                            f"file size must be under {self.max_bytes // (1024 * 1024)}MB"
                        )
                    out.write(chunk)
        except BaseException:
            target.unlink(missing_ok=True)
            raise

        logger.info(f"Stored upload {name} → {target.name} ({written} bytes)")
        return StoredUpload(upload_ref=str(target), size_bytes=written, filename=name)

    def resolve(self, upload_ref: str) -> str:
        """Map a reference back to a readable path inside the upload root."""
        path = Path(upload_ref)
        if not path.is_absolute():
            path = self.root / path
        try:
            path.resolve().relative_to(self.root.resolve())
        except ValueError:
            raise NotFoundError("unknown upload reference")
        if not path.is_file():
            raise NotFoundError("unknown upload reference")
        return str(path)


upload_store = UploadStore()
