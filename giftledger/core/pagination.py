"""
Keyset pagination over (created_at, id), newest first.

Cursors are opaque to callers: URL-safe base64 of the last row's
timestamp and id.
"""
import base64
import binascii
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Generic, List, Optional, TypeVar

from sqlalchemy import Select, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

from giftledger.core.constants import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from giftledger.core.errors import ValidationError

T = TypeVar("T")


@dataclass
class Page(Generic[T]):
    items: List[T]
    cursor: Optional[str]
    has_more: bool

    def meta(self) -> dict:
        return {"cursor": self.cursor, "hasMore": self.has_more}


def clamp_limit(limit: Optional[int]) -> int:
    if limit is None:
        return DEFAULT_PAGE_SIZE
    return max(1, min(int(limit), MAX_PAGE_SIZE))


def encode_cursor(created_at: datetime, row_id: uuid.UUID) -> str:
    raw = f"{created_at.isoformat()}|{row_id}".encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def decode_cursor(cursor: str) -> tuple[datetime, uuid.UUID]:
    try:
        raw = base64.urlsafe_b64decode(cursor.encode("ascii")).decode("utf-8")
        created_at, row_id = raw.split("|", 1)
        return datetime.fromisoformat(created_at), uuid.UUID(row_id)
    except (binascii.Error, UnicodeError, ValueError):
        raise ValidationError("Invalid pagination cursor")


async def paginate(
    db: AsyncSession,
    stmt: Select,
    model: Any,
    limit: Optional[int] = None,
    cursor: Optional[str] = None,
) -> Page:
    """
    Run a select of ``model`` one page at a time.

    Args:
        db: Database session
        stmt: Select with the caller's filters applied
        model: Mapped class with ``created_at`` and ``id`` columns
        limit: Page size (default 25, max 100)
        cursor: Cursor returned by the previous page

    Returns:
        Page: Rows plus the cursor for the next page
    """
    size = clamp_limit(limit)
    if cursor:
        created_at, row_id = decode_cursor(cursor)
        stmt = stmt.where(
            or_(
                model.created_at < created_at,
                and_(model.created_at == created_at, model.id < row_id),
            )
        )
    stmt = stmt.order_by(model.created_at.desc(), model.id.desc()).limit(size + 1)
    rows = list((await db.execute(stmt)).scalars().all())

    has_more = len(rows) > size
    rows = rows[:size]
    next_cursor = encode_cursor(rows[-1].created_at, rows[-1].id) if has_more else None
    return Page(items=rows, cursor=next_cursor, has_more=has_more)
