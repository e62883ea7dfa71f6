"""
CSV rendering for follower exports.

One row per record, every field quoted (embedded quotes doubled),
``\\n`` line endings. Pure functions of the records handed in.
"""
from __future__ import annotations

import csv
import io
from datetime import date, datetime
from typing import AsyncIterator, Iterable, Iterator, List, Optional

from app.core.clock import as_utc
from app.models.models import FollowerRecord

CSV_COLUMNS = [
    "handle",
    "display_name",
    "ghost_score",
    "total_likes",
    "total_comments",
    "follower_since",
    "last_seen_interaction_at",
]


def _date(value: Optional[datetime]) -> str:
    return as_utc(value).strftime("%Y-%m-%d") if value else ""


def format_row(record: FollowerRecord) -> List[str]:
    return [
        f"@{record.handle}" if record.handle else "(unknown)",
        record.display_name or "",
        f"{(record.ghost_score or 0) * 100:.1f}%",
        str(record.total_likes or 0),
        str(record.total_comments or 0),
        _date(record.follower_since),
        _date(record.last_seen_interaction_at),
    ]


def _line(values: List[str]) -> str:
    buf = io.StringIO()
    csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n").writerow(values)
    return buf.getvalue()


def render_csv(records: Iterable[FollowerRecord]) -> Iterator[str]:
    yield _line(CSV_COLUMNS)
    for record in records:
        yield _line(format_row(record))


async def render_csv_async(records: AsyncIterator[FollowerRecord]) -> AsyncIterator[str]:
    yield _line(CSV_COLUMNS)
    async for record in records:
        yield _line(format_row(record))


def export_filename(today: Optional[date] = None) -> str:
    today = today or date.today()
    return f"ghost_followers_{today.isoformat()}.csv"
