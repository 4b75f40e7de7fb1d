from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from linkbook.errors import ValidationError
from linkbook.extensions import db
from linkbook.models import Bookmark, utcnow
from linkbook.services.common import chunked, ensure_scheme, parse_tags

logger = logging.getLogger(__name__)

BATCH_WRITE_LIMIT = 500


def _commit_chunk(apply: Callable[[], object]) -> None:
    """Run ``apply`` and commit it as a single transaction."""
    try:
        apply()
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        raise


def _as_text(value) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _build_bookmark(item: dict, now: datetime) -> Bookmark | None:
    url = ensure_scheme(_as_text(item.get("url")))
    user_id = item.get("user_id")
    if not url or not user_id:
        return None

    tags = item.get("tags")
    metadata = item.get("metadata")
    return Bookmark(
        user_id=user_id,
        url=url,
        title=_as_text(item.get("title")).strip() or "Untitled",
        description=_as_text(item.get("description")),
        tags=parse_tags(tags) if isinstance(tags, (list, tuple, str)) else [],
        folder=_as_text(item.get("folder")).strip() or None,
        favicon=_as_text(item.get("favicon")) or None,
        page_metadata=metadata if isinstance(metadata, dict) and metadata else None,
        visit_count=0,
        created_at=item.get("created_at") or now,
        updated_at=now,
    )


def batch_add_bookmarks(
    items: Sequence[dict], chunk_size: int = BATCH_WRITE_LIMIT
) -> list[Bookmark]:
    """Create bookmarks in transactions of at most ``chunk_size`` rows.

    Items without a url or user id are skipped. A failing chunk is rolled back
    and the error propagates; chunks committed before it stay committed.
    """
    if not items:
        raise ValidationError("No bookmarks provided for batch operation")

    created: list[Bookmark] = []
    for index, chunk in enumerate(chunked(list(items), chunk_size)):
        now = utcnow()
        rows = [row for row in (_build_bookmark(item, now) for item in chunk) if row]
        if not rows:
            continue
        _commit_chunk(lambda: db.session.add_all(rows))
        logger.debug("Committed batch chunk %s with %s bookmarks", index, len(rows))
        created.extend(rows)
    return created


def batch_delete_bookmarks(
    ids: Sequence[int], chunk_size: int = BATCH_WRITE_LIMIT
) -> bool:
    if not ids:
        raise ValidationError("No bookmark IDs provided for batch deletion")

    for chunk in chunked(list(ids), chunk_size):
        _commit_chunk(
            lambda: Bookmark.query.filter(Bookmark.id.in_(list(chunk))).delete(
                synchronize_session=False
            )
        )
    return True
