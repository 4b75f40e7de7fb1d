from __future__ import annotations

from collections import Counter

from linkbook.errors import NotFoundError, PermissionDeniedError, ValidationError
from linkbook.extensions import db
from linkbook.models import Bookmark, utcnow
from linkbook.services.batch import (
    BATCH_WRITE_LIMIT,
    batch_add_bookmarks,
    batch_delete_bookmarks,
)
from linkbook.services.bookmark_formats import BookmarkRecord
from linkbook.services.cache import TTLCache
from linkbook.services.common import ensure_scheme, extract_domain, parse_tags
from linkbook.services.metadata import DEFAULT_MAX_BYTES, extract_metadata


def _require(value, message: str) -> None:
    if not value:
        raise ValidationError(message)


def _text(data: dict, field: str, label: str) -> str:
    value = data.get(field)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValidationError(f"{label} must be a string")
    return value


def _clean_folder(value) -> str | None:
    if not isinstance(value, str):
        return None
    return value.strip() or None


def get_bookmark(user_id: int, bookmark_id: int) -> Bookmark:
    _require(user_id, "User ID is required")
    _require(bookmark_id, "Bookmark ID is required")

    bookmark = db.session.get(Bookmark, bookmark_id)
    if bookmark is None:
        raise NotFoundError("Bookmark not found")
    if bookmark.user_id != user_id:
        raise PermissionDeniedError(
            "You do not have permission to access this bookmark"
        )
    return bookmark


def add_bookmark(
    user_id: int,
    data: dict,
    metadata_cache: TTLCache | None = None,
    fetch_metadata: bool = True,
    timeout: float = 5.0,
    max_bytes: int = DEFAULT_MAX_BYTES,
) -> Bookmark:
    _require(user_id, "User ID is required")
    url = ensure_scheme(_text(data, "url", "URL"))
    _require(url, "URL is required")

    title = _text(data, "title", "Bookmark title").strip()
    description = _text(data, "description", "Description")
    favicon = _text(data, "favicon", "Favicon") or None
    page_metadata = data.get("metadata") or None

    needs_enrichment = not title or not description or not favicon
    if fetch_metadata and metadata_cache is not None and needs_enrichment:
        metadata = extract_metadata(
            url, metadata_cache, timeout=timeout, max_bytes=max_bytes
        )
        title = title or metadata.title
        description = description or metadata.description
        favicon = favicon or metadata.favicon or None
        page_metadata = metadata.as_bookmark_metadata()

    now = utcnow()
    bookmark = Bookmark(
        user_id=user_id,
        url=url,
        title=title or "Untitled",
        description=description,
        tags=parse_tags(data.get("tags")),
        folder=_clean_folder(data.get("folder")),
        favicon=favicon,
        page_metadata=page_metadata,
        visit_count=0,
        created_at=now,
        updated_at=now,
    )
    db.session.add(bookmark)
    db.session.commit()
    return bookmark


def update_bookmark(user_id: int, bookmark_id: int, data: dict) -> Bookmark:
    bookmark = get_bookmark(user_id, bookmark_id)

    if "url" in data:
        url = ensure_scheme(_text(data, "url", "URL"))
        _require(url, "URL is required")
        bookmark.url = url
    if "title" in data:
        title = _text(data, "title", "Bookmark title").strip()
        _require(title, "Bookmark title is required")
        bookmark.title = title
    if "description" in data:
        bookmark.description = _text(data, "description", "Description")
    if "tags" in data:
        bookmark.tags = parse_tags(data.get("tags"))
    if "folder" in data:
        bookmark.folder = _clean_folder(data.get("folder"))
    if "favicon" in data:
        bookmark.favicon = _text(data, "favicon", "Favicon") or None
    if "metadata" in data:
        bookmark.page_metadata = data.get("metadata") or None

    bookmark.updated_at = utcnow()
    db.session.commit()
    return bookmark


def delete_bookmark(user_id: int, bookmark_id: int) -> None:
    bookmark = get_bookmark(user_id, bookmark_id)
    db.session.delete(bookmark)
    db.session.commit()


def record_visit(user_id: int, bookmark_id: int) -> Bookmark:
    bookmark = get_bookmark(user_id, bookmark_id)
    bookmark.visit_count = Bookmark.visit_count + 1
    bookmark.last_visited = utcnow()
    db.session.commit()
    return bookmark


def batch_add_for_user(
    user_id: int, items: list, chunk_size: int = BATCH_WRITE_LIMIT
) -> list[Bookmark]:
    _require(user_id, "User ID is required")
    if not isinstance(items, list) or not items:
        raise ValidationError("No bookmarks provided")

    prepared = []
    for item in items:
        if not isinstance(item, dict):
            continue
        row = {key: value for key, value in item.items() if key != "created_at"}
        row["user_id"] = user_id
        prepared.append(row)
    return batch_add_bookmarks(prepared, chunk_size=chunk_size)


def batch_delete_for_user(
    user_id: int, ids: list, chunk_size: int = BATCH_WRITE_LIMIT
) -> bool:
    _require(user_id, "User ID is required")
    if not isinstance(ids, list) or not ids:
        raise ValidationError("No bookmark IDs provided")
    if not all(isinstance(value, int) and not isinstance(value, bool) for value in ids):
        raise ValidationError("Bookmark IDs must be integers")

    for bookmark_id in ids:
        get_bookmark(user_id, bookmark_id)
    return batch_delete_bookmarks(ids, chunk_size=chunk_size)


def _distinct_values(user_id: int, kind: str) -> list[str]:
    values: dict[str, None] = {}
    if kind == "tags":
        for (tags,) in Bookmark.query.with_entities(Bookmark.tags).filter_by(
            user_id=user_id
        ):
            for tag in tags or []:
                if tag:
                    values.setdefault(tag)
    else:
        rows = (
            Bookmark.query.with_entities(Bookmark.folder)
            .filter_by(user_id=user_id)
            .filter(Bookmark.folder.is_not(None))
        )
        for (folder,) in rows:
            if folder:
                values.setdefault(folder)
    return list(values)


def _cached_distinct(user_id: int, kind: str, cache: TTLCache) -> list[str]:
    _require(user_id, "User ID is required")
    key = (user_id, kind)
    cached = cache.get(key)
    if cached is not None:
        return cached
    values = _distinct_values(user_id, kind)
    cache.set(key, values)
    return values


def list_user_tags(user_id: int, cache: TTLCache) -> list[str]:
    return _cached_distinct(user_id, "tags", cache)


def list_user_folders(user_id: int, cache: TTLCache) -> list[str]:
    return _cached_distinct(user_id, "folders", cache)


def clear_tags_folders_cache(cache: TTLCache) -> int:
    cleared = len(cache)
    cache.clear()
    return cleared


def import_bookmarks(
    user_id: int,
    records: list[BookmarkRecord],
    chunk_size: int = BATCH_WRITE_LIMIT,
) -> list[Bookmark]:
    _require(user_id, "User ID is required")
    if not records:
        raise ValidationError("No bookmarks provided for import")

    items = [
        {
            "user_id": user_id,
            "url": record.url,
            "title": record.title or record.url,
            "description": record.description or "",
            "tags": record.tags or [],
            "folder": record.folder or None,
            "favicon": record.favicon or None,
            "metadata": record.metadata or None,
            "created_at": record.created_at,
        }
        for record in records
    ]
    return batch_add_bookmarks(items, chunk_size=chunk_size)


def record_from_bookmark(bookmark: Bookmark) -> BookmarkRecord:
    return BookmarkRecord(
        url=bookmark.url,
        title=bookmark.title,
        description=bookmark.description or "",
        created_at=bookmark.created_at,
        tags=list(bookmark.tags or []),
        folder=bookmark.folder,
        favicon=bookmark.favicon,
        metadata=bookmark.page_metadata,
    )


def export_records(user_id: int, limit: int = 1000) -> list[BookmarkRecord]:
    _require(user_id, "User ID is required")
    rows = (
        Bookmark.query.filter_by(user_id=user_id)
        .order_by(Bookmark.created_at.desc(), Bookmark.id.desc())
        .limit(limit)
        .all()
    )
    return [record_from_bookmark(row) for row in rows]


def _usage(counter: Counter, total: int, label: str) -> list[dict]:
    return [
        {label: name, "count": count, "percentage": round(count / total * 100)}
        for name, count in counter.most_common()
    ]


def bookmark_stats(user_id: int) -> dict:
    _require(user_id, "User ID is required")
    rows = (
        Bookmark.query.filter_by(user_id=user_id)
        .order_by(Bookmark.created_at.desc(), Bookmark.id.desc())
        .all()
    )
    total = len(rows)
    if not total:
        return {
            "total_bookmarks": 0,
            "tag_stats": [],
            "folder_stats": [],
            "domain_stats": [],
            "recent_bookmarks": [],
        }

    tags = Counter(tag for row in rows for tag in dict.fromkeys(row.tags or []) if tag)
    folders = Counter(row.folder for row in rows if row.folder)
    domains = Counter(
        domain for domain in (extract_domain(row.url) for row in rows) if domain
    )
    return {
        "total_bookmarks": total,
        "tag_stats": _usage(tags, total, "name"),
        "folder_stats": _usage(folders, total, "name"),
        "domain_stats": _usage(domains, total, "domain"),
        "recent_bookmarks": [row.as_dict() for row in rows[:5]],
    }
