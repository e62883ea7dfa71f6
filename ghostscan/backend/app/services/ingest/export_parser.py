"""
GhostScan Export Parser

Responsibilities:
  - Enforce archive size limits before any member is decompressed
  - Locate follower-data and interaction members inside the .zip
  - Aggregate interaction records into per-handle like/comment totals
  - Stream follower members one at a time into normalized entries
  - Deduplicate handles within one archive (first occurrence wins)
  - Report structural failures as typed ExportParseError subclasses and
    individual unusable entries as MalformedEntry markers

Accepted follower shapes (JSON list, or object with
``relationships_followers``):
  {"string_list_data": [{"value": "handle", "href": "...", "timestamp": 1700000000}]}
  {"username": "handle", "full_name": "...", "followed_at": "2024-01-01T00:00:00Z",
   "is_verified": false, "is_private": true, "account_created_at": 1600000000}
CSV members need a ``username`` (or ``handle``) column; other columns as above.

Interaction members (JSON list, or object with ``interactions``):
  {"username": "handle", "type": "like" | "comment", "timestamp": 1700000000}
"""
from __future__ import annotations

import csv
import io
import json
import logging
import os
import re
import zipfile
import zlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from app.core.config import get_settings
from app.core.exceptions import (
    ArchiveTooLargeError,
    InvalidArchiveError,
    MissingFollowerDataError,
)

logger = logging.getLogger(__name__)
settings = get_settings()

FOLLOWER_MEMBER = re.compile(r"^followers[^/]*\.(json|csv)$", re.IGNORECASE)
INTERACTION_MEMBER = re.compile(r"^(interactions|likes|comments)[^/]*\.json$", re.IGNORECASE)

_TRUE = {"1", "true", "yes", "y", "t"}
_FALSE = {"0", "false", "no", "n", "f", ""}


# ── Parsed values ────────────────────────────────────────────────────────

@dataclass(frozen=True)
class FollowerEntry:
    handle: str
    display_name: Optional[str] = None
    follower_since: Optional[datetime] = None
    is_verified: bool = False
    is_private: bool = False
    total_likes: int = 0
    total_comments: int = 0
    last_interaction_at: Optional[datetime] = None
    account_created_at: Optional[datetime] = None


@dataclass(frozen=True)
class MalformedEntry:
    member: str
    reason: str


ParsedEntry = Union[FollowerEntry, MalformedEntry]


@dataclass
class InteractionTally:
    likes: int = 0
    comments: int = 0
    last_at: Optional[datetime] = None

    def add(self, kind: str, at: Optional[datetime]):
        if kind == "comment":
            self.comments += 1
        else:
            self.likes += 1
        if at is not None and (self.last_at is None or at > self.last_at):
            self.last_at = at


@dataclass
class ArchiveManifest:
    path: str
    size_bytes: int
    follower_members: List[zipfile.ZipInfo] = field(default_factory=list)
    interaction_members: List[zipfile.ZipInfo] = field(default_factory=list)

    @property
    def follower_bytes(self) -> int:
        return sum(m.file_size for m in self.follower_members)


# ── Value normalization ──────────────────────────────────────────────────

class _BadValue(ValueError):
    pass


def normalize_handle(raw: Any) -> Optional[str]:
    if raw is None:
        return None
    handle = str(raw).strip().lstrip("@").strip().lower()
    return handle or None


def parse_timestamp(raw: Any) -> Optional[datetime]:
    """Epoch seconds / milliseconds or ISO-8601 → aware UTC datetime."""
    if raw is None or raw == "":
        return None
    if isinstance(raw, bool):
        raise _BadValue(f"bad timestamp {raw!r}")
    if isinstance(raw, (int, float)):
        seconds = float(raw)
    else:
        text = str(raw).strip()
        if not text:
            return None
        try:
            seconds = float(text)
        except ValueError:
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                raise _BadValue(f"bad timestamp {raw!r}")
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed.astimezone(timezone.utc)
    if seconds > 1e11:  # milliseconds
        seconds /= 1000.0
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        raise _BadValue(f"bad timestamp {raw!r}")


def parse_flag(raw: Any) -> bool:
    if raw is None:
        return False
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, (int, float)):
        return bool(raw)
    text = str(raw).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise _BadValue(f"bad flag {raw!r}")


def _first(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def _handle_from_href(href: Any) -> Optional[str]:
    if not href:
        return None
    tail = str(href).rstrip("/").rsplit("/", 1)[-1]
    return normalize_handle(tail)


# ── Parser ───────────────────────────────────────────────────────────────

class ExportParser:
    """
    Single-pass reader over one uploaded export archive.

    ``inspect()`` only reads the zip central directory; ``iter_entries()``
    decompresses members lazily and can be consumed exactly once.
    """

    def __init__(
        self,
        path: str,
        max_upload_bytes: int = None,
        max_uncompressed_bytes: int = None,
        max_interaction_member_bytes: int = None,
    ):
        self.path = path
        self.max_upload_bytes = max_upload_bytes or settings.max_upload_bytes
        self.max_uncompressed_bytes = max_uncompressed_bytes or settings.max_uncompressed_bytes
        self.max_interaction_member_bytes = max_interaction_member_bytes or settings.max_interaction_member_bytes
        self._consumed = False

    # ── Central directory ────────────────────────────────────────────────

    def inspect(self) -> ArchiveManifest:
        try:
            size = os.path.getsize(self.path)
        except OSError:
            raise InvalidArchiveError(f"upload not found: {os.path.basename(self.path)}")

        if size > self.max_upload_bytes:
            raise ArchiveTooLargeError(
                f"archive is {size} bytes, limit is {self.max_upload_bytes}"
            )

        try:
            with zipfile.ZipFile(self.path) as zf:
                infos = zf.infolist()
        except (zipfile.BadZipFile, zipfile.LargeZipFile, OSError) as e:
            raise InvalidArchiveError(f"not a readable zip archive ({e})")

        declared = sum(i.file_size for i in infos)
        if declared > self.max_uncompressed_bytes:
            raise ArchiveTooLargeError(
                f"archive expands to {declared} bytes, limit is {self.max_uncompressed_bytes}"
            )

        manifest = ArchiveManifest(path=self.path, size_bytes=size)
        for info in sorted(infos, key=lambda i: i.filename):
            if info.is_dir():
                continue
            basename = info.filename.rsplit("/", 1)[-1]
            if FOLLOWER_MEMBER.match(basename):
                manifest.follower_members.append(info)
            elif INTERACTION_MEMBER.match(basename):
                if info.file_size > self.max_interaction_member_bytes:
                    raise ArchiveTooLargeError(
                        f"{info.filename} expands to {info.file_size} bytes, "
                        f"limit per interaction file is {self.max_interaction_member_bytes}"
                    )
                manifest.interaction_members.append(info)
        return manifest

    # ── Streaming ────────────────────────────────────────────────────────

    def iter_entries(self) -> Iterator[ParsedEntry]:
        """Yield normalized follower entries (or malformed markers)."""
        if self._consumed:
            raise RuntimeError("export stream already consumed")
        self._consumed = True

        manifest = self.inspect()
        if not manifest.follower_members:
            raise MissingFollowerDataError("archive contains no followers*.json or followers*.csv")

        with zipfile.ZipFile(self.path) as zf:
            tallies = self._tally_interactions(zf, manifest.interaction_members)
            logger.info(
                f"Parsing export {os.path.basename(self.path)}: "
                f"{len(manifest.follower_members)} follower files, "
                f"{len(manifest.interaction_members)} interaction files, "
                f"{len(tallies)} interacting accounts"
            )

            seen = set()
            produced = 0
            for info in manifest.follower_members:
                for raw, member in self._iter_follower_rows(zf, info):
                    entry = self._normalize(raw, member, tallies)
                    if isinstance(entry, FollowerEntry):
                        if entry.handle in seen:
                            continue
                        seen.add(entry.handle)
                    produced += 1
                    yield entry

        if produced == 0:
            raise MissingFollowerDataError("follower files contain no entries")

    # ── Members ──────────────────────────────────────────────────────────

    def _read_json(self, zf: zipfile.ZipFile, info: zipfile.ZipInfo) -> Any:
        try:
            raw = zf.read(info)
        except (zipfile.BadZipFile, zlib.error, OSError, NotImplementedError) as e:
            raise InvalidArchiveError(f"{info.filename}: cannot decompress ({e})")
        try:
            text = raw.decode("utf-8-sig")
        except UnicodeDecodeError:
            raise InvalidArchiveError(f"{info.filename}: not valid UTF-8")
        try:
            return json.loads(text)
        except ValueError as e:
            raise InvalidArchiveError(f"{info.filename}: invalid JSON ({e})")

    def _iter_follower_rows(self, zf: zipfile.ZipFile, info: zipfile.ZipInfo) -> Iterator[Tuple[Any, str]]:
        if info.filename.lower().endswith(".csv"):
            yield from self._iter_csv_rows(zf, info)
            return

        data = self._read_json(zf, info)
        if isinstance(data, dict):
            data = data.get("relationships_followers", data.get("followers"))
        if not isinstance(data, list):
            raise InvalidArchiveError(f"{info.filename}: expected a list of followers")
        for item in data:
            yield item, info.filename

    def _iter_csv_rows(self, zf: zipfile.ZipFile, info: zipfile.ZipInfo) -> Iterator[Tuple[Any, str]]:
        try:
            with zf.open(info) as fh:
                reader = csv.DictReader(io.TextIOWrapper(fh, encoding="utf-8-sig", newline=""))
                fields = {f.strip().lower() for f in (reader.fieldnames or [])}
                if not fields & {"username", "handle"}:
                    raise InvalidArchiveError(f"{info.filename}: missing username column")
                for row in reader:
                    yield {k.strip().lower(): v for k, v in row.items() if k}, info.filename
        except UnicodeDecodeError:
            raise InvalidArchiveError(f"{info.filename}: not valid UTF-8")
        except csv.Error as e:
            raise InvalidArchiveError(f"{info.filename}: invalid CSV ({e})")
        except (zipfile.BadZipFile, zlib.error) as e:
            raise InvalidArchiveError(f"{info.filename}: cannot decompress ({e})")

    def _tally_interactions(self, zf: zipfile.ZipFile, members: List[zipfile.ZipInfo]) -> Dict[str, InteractionTally]:
        tallies: Dict[str, InteractionTally] = {}
        skipped = 0
        for info in members:
            data = self._read_json(zf, info)
            if isinstance(data, dict):
                data = data.get("interactions")
            if not isinstance(data, list):
                raise InvalidArchiveError(f"{info.filename}: expected a list of interactions")

            basename = info.filename.rsplit("/", 1)[-1].lower()
            implied = "like" if basename.startswith("likes") else "comment" if basename.startswith("comments") else None

            for item in data:
                if not isinstance(item, dict):
                    skipped += 1
                    continue
                handle = normalize_handle(_first(item, "username", "handle"))
                kind = str(item.get("type") or implied or "").lower()
                if not handle or kind not in ("like", "comment"):
                    skipped += 1
                    continue
                try:
                    at = parse_timestamp(_first(item, "timestamp", "created_at"))
                except _BadValue:
                    skipped += 1
                    continue
                tallies.setdefault(handle, InteractionTally()).add(kind, at)

        if skipped:
            logger.warning(f"Skipped {skipped} unusable interaction records")
        return tallies

    # ── Entries ──────────────────────────────────────────────────────────

    @staticmethod
    def _normalize(raw: Any, member: str, tallies: Dict[str, InteractionTally]) -> ParsedEntry:
        if not isinstance(raw, dict):
            return MalformedEntry(member, "entry is not an object")

        string_list = raw.get("string_list_data")
        try:
            if isinstance(string_list, list) and string_list:
                first = string_list[0] if isinstance(string_list[0], dict) else {}
                handle = (
                    normalize_handle(first.get("value"))
                    or normalize_handle(raw.get("title"))
                    or _handle_from_href(first.get("href"))
                )
                followed_at = parse_timestamp(first.get("timestamp"))
            else:
                handle = normalize_handle(_first(raw, "username", "handle"))
                followed_at = parse_timestamp(_first(raw, "followed_at", "follower_since", "timestamp"))

            if not handle:
                return MalformedEntry(member, "missing handle")

            display_name = _first(raw, "full_name", "display_name", "name")
            tally = tallies.get(handle)
            return FollowerEntry(
                handle=handle,
                display_name=str(display_name).strip() if display_name is not None else None,
                follower_since=followed_at,
                is_verified=parse_flag(raw.get("is_verified")),
                is_private=parse_flag(raw.get("is_private")),
                total_likes=tally.likes if tally else 0,
                total_comments=tally.comments if tally else 0,
                last_interaction_at=tally.last_at if tally else None,
                account_created_at=parse_timestamp(raw.get("account_created_at")),
            )
        except _BadValue as e:
            return MalformedEntry(member, str(e))


def estimate_follower_count(path: str, bytes_per_follower: int = None) -> int:
    """
    Cheap pre-parse estimate from the central directory only.

    Unreadable archives estimate 0; the parser reports them properly once
    the job runs.
    """
    bytes_per_follower = bytes_per_follower or settings.follower_estimate_bytes
    try:
        manifest = ExportParser(path).inspect()
    except (InvalidArchiveError, ArchiveTooLargeError):
        return 0
    return manifest.follower_bytes // max(bytes_per_follower, 1)
