from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime

from itsdangerous import BadData, URLSafeSerializer
from sqlalchemy import and_, or_

from linkbook.errors import ValidationError
from linkbook.models import Bookmark

SORT_FIELDS = {
    "created_at": Bookmark.created_at,
    "updated_at": Bookmark.updated_at,
    "title": Bookmark.title,
    "url": Bookmark.url,
    "visit_count": Bookmark.visit_count,
}
SORT_DIRECTIONS = ("asc", "desc")


@dataclass
class BookmarkQuery:
    folder: str | None = None
    tags: list[str] = field(default_factory=list)
    search: str = ""
    sort_by: str = "created_at"
    sort_direction: str = "desc"
    page_size: int = 20
    cursor: str | None = None

    def validate(self) -> None:
        if self.sort_by not in SORT_FIELDS:
            raise ValidationError(f"Unsupported sort field: {self.sort_by}")
        if self.sort_direction not in SORT_DIRECTIONS:
            raise ValidationError(
                f"Unsupported sort direction: {self.sort_direction}"
            )
        if self.page_size < 1:
            raise ValidationError("Page size must be at least 1")

    def fingerprint(self) -> str:
        payload = {
            "folder": self.folder or None,
            "tags": sorted(set(self.tags or [])),
            "search": (self.search or "").strip().lower(),
            "sort_by": self.sort_by,
            "sort_direction": self.sort_direction,
        }
        raw = json.dumps(payload, sort_keys=True)
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


@dataclass
class BookmarkPage:
    items: list[Bookmark]
    cursor: str | None
    has_more: bool


def filter_bookmarks(bookmarks, folder=None, tags=None, search=None) -> list:
    """Apply the filters the store query cannot express.

    Folder equality, then tag intersection, then a case-insensitive substring
    match against title, description, url or any tag. All filters are optional
    and combine with AND.
    """
    rows = list(bookmarks)

    if folder:
        rows = [row for row in rows if row.folder == folder]

    wanted_tags = set(tags or [])
    if wanted_tags:
        rows = [row for row in rows if wanted_tags.intersection(row.tags or [])]

    needle = (search or "").strip().lower()
    if needle:
        rows = [row for row in rows if _matches_search(row, needle)]

    return rows


def _matches_search(bookmark, needle: str) -> bool:
    for value in (bookmark.title, bookmark.description, bookmark.url):
        if value and needle in value.lower():
            return True
    return any(needle in (tag or "").lower() for tag in bookmark.tags or [])


def _serializer(secret_key: str) -> URLSafeSerializer:
    return URLSafeSerializer(secret_key=secret_key, salt="bookmark-page-cursor")


def _encode_value(value):
    if isinstance(value, datetime):
        return {"dt": value.isoformat()}
    return value


def _decode_value(value):
    if isinstance(value, dict) and "dt" in value:
        return datetime.fromisoformat(value["dt"])
    return value


def encode_cursor(secret_key: str, bookmark: Bookmark, query: BookmarkQuery) -> str:
    return _serializer(secret_key).dumps(
        {
            "id": bookmark.id,
            "value": _encode_value(getattr(bookmark, query.sort_by)),
            "fingerprint": query.fingerprint(),
        }
    )


def decode_cursor(secret_key: str, token: str, query: BookmarkQuery) -> dict | None:
    """Return the cursor position, or ``None`` when it belongs to other filters."""
    try:
        payload = _serializer(secret_key).loads(token)
    except BadData as exc:
        raise ValidationError("Invalid pagination cursor") from exc

    if not isinstance(payload, dict) or payload.get("fingerprint") != query.fingerprint():
        return None
    try:
        return {"id": int(payload["id"]), "value": _decode_value(payload["value"])}
    except (KeyError, TypeError, ValueError) as exc:
        raise ValidationError("Invalid pagination cursor") from exc


def fetch_bookmark_page(
    user_id: int, query: BookmarkQuery, secret_key: str
) -> BookmarkPage:
    query.validate()
    column = SORT_FIELDS[query.sort_by]
    descending = query.sort_direction == "desc"

    statement = Bookmark.query.filter_by(user_id=user_id)
    if query.folder:
        statement = statement.filter(Bookmark.folder == query.folder)

    position = decode_cursor(secret_key, query.cursor, query) if query.cursor else None
    if position is not None:
        value, last_id = position["value"], position["id"]
        if descending:
            statement = statement.filter(
                or_(column < value, and_(column == value, Bookmark.id < last_id))
            )
        else:
            statement = statement.filter(
                or_(column > value, and_(column == value, Bookmark.id > last_id))
            )

    if descending:
        statement = statement.order_by(column.desc(), Bookmark.id.desc())
    else:
        statement = statement.order_by(column.asc(), Bookmark.id.asc())

    rows = statement.limit(query.page_size).all()
    next_cursor = encode_cursor(secret_key, rows[-1], query) if rows else None
    return BookmarkPage(
        items=filter_bookmarks(rows, query.folder, query.tags, query.search),
        cursor=next_cursor,
        has_more=len(rows) == query.page_size,
    )
