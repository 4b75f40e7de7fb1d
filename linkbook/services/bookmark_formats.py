from __future__ import annotations

import html as html_lib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import cast

from bs4 import BeautifulSoup, Tag
from dateutil import parser as dt_parser

from linkbook.errors import ExportError, FormatError
from linkbook.models import isoformat, utcnow
from linkbook.services.common import ensure_scheme, parse_tags

UNCATEGORIZED_FOLDER = "Uncategorized"
EXPORT_FORMAT_VERSION = "1.0"

# Accepted JSON field names per record attribute, first non-empty wins.
FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "url": ("url", "uri", "link"),
    "title": ("title", "name"),
    "description": ("description", "desc", "note"),
    "created_at": ("createdAt", "created_at", "created", "date"),
    "tags": ("tags", "categories", "labels"),
    "folder": ("folder", "collection", "category"),
    "favicon": ("favicon", "icon"),
    "metadata": ("metadata",),
}

JSON_COLLECTION_KEYS = ("bookmarks", "items")


@dataclass
class BookmarkRecord:
    url: str
    title: str
    description: str = ""
    created_at: datetime | None = None
    tags: list[str] = field(default_factory=list)
    folder: str | None = None
    favicon: str | None = None
    metadata: dict | None = None


def _escape(value: str | None) -> str:
    return html_lib.escape(value or "", quote=True)


def _unix_seconds(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


def _from_unix_seconds(raw, now: datetime) -> datetime:
    if raw is None or str(raw).strip() == "":
        return now
    try:
        return datetime.fromtimestamp(int(str(raw).strip()), tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        return now


# HTML (Netscape bookmark file)


def _iter_dt_entries(dl: Tag) -> list[Tag]:
    entries: list[Tag] = []
    for dt in dl.find_all("dt"):
        if not isinstance(dt, Tag):
            continue
        parent_dl = dt.find_parent("dl")
        if parent_dl is dl:
            entries.append(cast(Tag, dt))
    return entries


def _find_nested_dl(dt: Tag) -> Tag | None:
    nested = dt.find("dl")
    if isinstance(nested, Tag):
        return nested

    sibling = dt.next_sibling
    while sibling is not None:
        if isinstance(sibling, Tag):
            name = (sibling.name or "").lower()
            if name == "dl":
                return sibling
            if name == "dd":
                # A folder description DD swallows the folder's DL.
                nested = sibling.find("dl")
                if isinstance(nested, Tag):
                    return nested
            if name == "dt":
                return None
        sibling = sibling.next_sibling
    return None


def _find_anchor_in_dt(dt: Tag) -> Tag | None:
    for anchor in dt.find_all("a"):
        if isinstance(anchor, Tag) and anchor.find_parent("dt") is dt:
            return anchor
    return None


def _find_folder_in_dt(dt: Tag) -> Tag | None:
    for folder in dt.find_all(["h3", "h2", "h1"]):
        if isinstance(folder, Tag) and folder.find_parent("dt") is dt:
            return folder
    return None


def _dd_text(dd: Tag) -> str:
    return "".join(dd.find_all(string=True, recursive=False)).strip()


def _find_description(dt: Tag) -> str:
    for dd in dt.find_all("dd"):
        if isinstance(dd, Tag) and dd.find_parent("dt") is dt:
            return _dd_text(dd)

    sibling = dt.next_sibling
    while sibling is not None:
        if isinstance(sibling, Tag):
            name = (sibling.name or "").lower()
            if name == "dd":
                return _dd_text(sibling)
            if name in {"dt", "dl"}:
                return ""
        sibling = sibling.next_sibling
    return ""


def _record_from_anchor(
    anchor: Tag, folder: str | None, description: str, now: datetime
) -> BookmarkRecord | None:
    href_value = anchor.get("href")
    href = href_value.strip() if isinstance(href_value, str) else ""
    if not href or href.lower().startswith("javascript:"):
        return None

    icon = anchor.get("icon")
    url = ensure_scheme(href)
    return BookmarkRecord(
        url=url,
        title=anchor.get_text(strip=True) or url,
        description=description,
        created_at=_from_unix_seconds(anchor.get("add_date"), now),
        tags=parse_tags(anchor.get("tags")),
        folder=folder,
        favicon=icon.strip() if isinstance(icon, str) and icon.strip() else None,
    )


def _parse_dl(
    dl: Tag,
    folder_path: list[str],
    found: dict[int, BookmarkRecord | None],
    folders: dict[int, str | None],
    now: datetime,
) -> None:
    folder = folder_path[-1] if folder_path else None
    folders[id(dl)] = folder
    for dt in _iter_dt_entries(dl):
        anchor = _find_anchor_in_dt(dt)
        if isinstance(anchor, Tag):
            found[id(anchor)] = _record_from_anchor(
                anchor, folder, _find_description(dt), now
            )

        nested_dl = _find_nested_dl(dt)
        heading = _find_folder_in_dt(dt)
        if heading and nested_dl:
            name = heading.get_text(strip=True)
            _parse_dl(nested_dl, folder_path + [name], found, folders, now)


def _enclosing_folder(anchor: Tag, folders: dict[int, str | None]) -> str | None:
    for parent in anchor.parents:
        if parent.name == "dl" and id(parent) in folders:
            return folders[id(parent)]
    return None


def parse_bookmark_html(html: str, now: datetime | None = None) -> list[BookmarkRecord]:
    """Read a Netscape bookmark file into records, in document order.

    Folders come from the ``<DL>`` tree. Anchors the tree walk does not reach
    (loose anchors in a list, or files without any ``<DL>``) are still
    imported, under the folder of the nearest list the walk did reach.
    """
    now = now or utcnow()
    soup = BeautifulSoup(html, "lxml")
    found: dict[int, BookmarkRecord | None] = {}
    folders: dict[int, str | None] = {}

    root = soup.find("dl")
    if isinstance(root, Tag):
        _parse_dl(root, [], found, folders, now)

    records: list[BookmarkRecord] = []
    for anchor in soup.find_all("a"):
        if not isinstance(anchor, Tag):
            continue
        if id(anchor) in found:
            record = found[id(anchor)]
        else:
            record = _record_from_anchor(
                anchor, _enclosing_folder(anchor, folders), "", now
            )
        if record is not None:
            records.append(record)
    return records


# JSON


def _first_value(entry: dict, attribute: str):
    for key in FIELD_ALIASES[attribute]:
        value = entry.get(key)
        if value not in (None, "", [], {}):
            return value
    return None


def _parse_datetime(raw, now: datetime) -> datetime:
    if isinstance(raw, datetime):
        value = raw
    elif isinstance(raw, bool) or raw is None:
        return now
    elif isinstance(raw, (int, float)):
        seconds = raw / 1000 if raw > 1e11 else raw
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (ValueError, OverflowError, OSError):
            return now
    else:
        try:
            value = dt_parser.parse(str(raw))
        except (ValueError, OverflowError):
            return now
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def normalize_json_entry(entry: dict, now: datetime | None = None) -> BookmarkRecord:
    now = now or utcnow()
    raw_url = _first_value(entry, "url")
    url = ensure_scheme(str(raw_url)) if raw_url is not None else ""

    title = _first_value(entry, "title")
    description = _first_value(entry, "description")
    folder = _first_value(entry, "folder")
    favicon = _first_value(entry, "favicon")
    metadata = _first_value(entry, "metadata")

    return BookmarkRecord(
        url=url,
        title=str(title).strip() if title is not None else url,
        description=str(description) if description is not None else "",
        created_at=_parse_datetime(_first_value(entry, "created_at"), now),
        tags=parse_tags(_first_value(entry, "tags")),
        folder=(folder.strip() or None) if isinstance(folder, str) else None,
        favicon=favicon if isinstance(favicon, str) else None,
        metadata=metadata if isinstance(metadata, dict) else None,
    )


def parse_bookmark_json(text: str, now: datetime | None = None) -> list[BookmarkRecord]:
    try:
        data = json.loads(text)
    except (TypeError, ValueError) as exc:
        raise FormatError(f"Failed to parse JSON bookmarks file: {exc}") from exc

    entries = None
    if isinstance(data, list):
        entries = data
    elif isinstance(data, dict):
        for key in JSON_COLLECTION_KEYS:
            if isinstance(data.get(key), list):
                entries = data[key]
                break
    if entries is None:
        raise FormatError("Unsupported JSON format")

    now = now or utcnow()
    return [normalize_json_entry(entry, now) for entry in entries if isinstance(entry, dict)]


# Export


def _require_records(records: list[BookmarkRecord]) -> None:
    if not records:
        raise ExportError("No bookmarks to export")


def group_by_folder(records: list[BookmarkRecord]) -> dict[str, list[BookmarkRecord]]:
    groups: dict[str, list[BookmarkRecord]] = {}
    for record in records:
        groups.setdefault(record.folder or UNCATEGORIZED_FOLDER, []).append(record)
    return groups


def export_bookmarks_html(
    records: list[BookmarkRecord],
    generator: str = "LinkBook",
    now: datetime | None = None,
) -> str:
    _require_records(records)
    now = now or utcnow()
    stamp = _unix_seconds(now)
    heading_attrs = f'ADD_DATE="{stamp}" LAST_MODIFIED="{stamp}"'

    lines = [
        "<!DOCTYPE NETSCAPE-Bookmark-file-1>",
        "<!-- This is an automatically generated file.",
        "     It will be read and overwritten.",
        "     DO NOT EDIT! -->",
        '<META HTTP-EQUIV="Content-Type" CONTENT="text/html; charset=UTF-8">',
        "<TITLE>Bookmarks</TITLE>",
        "<H1>Bookmarks</H1>",
        "<DL><p>",
        f"    <DT><H3 {heading_attrs}>{_escape(generator)} Export</H3>",
        "    <DL><p>",
    ]

    for folder_name, rows in group_by_folder(records).items():
        lines.append(f"        <DT><H3 {heading_attrs}>{_escape(folder_name)}</H3>")
        lines.append("        <DL><p>")
        for record in rows:
            add_date = _unix_seconds(record.created_at) if record.created_at else stamp
            attrs = [f'HREF="{_escape(record.url)}"', f'ADD_DATE="{add_date}"']
            if record.favicon:
                attrs.append(f'ICON="{_escape(record.favicon)}"')
            if record.tags:
                attrs.append(f'TAGS="{_escape(",".join(record.tags))}"')
            title = record.title or record.url
            lines.append(f"            <DT><A {' '.join(attrs)}>{_escape(title)}</A>")
            if record.description:
                lines.append(f"            <DD>{_escape(record.description)}")
        lines.append("        </DL><p>")

    lines.append("    </DL><p>")
    lines.append("</DL><p>")
    return "\n".join(lines) + "\n"


def export_bookmarks_json(
    records: list[BookmarkRecord],
    generator: str = "LinkBook",
    now: datetime | None = None,
) -> str:
    _require_records(records)
    now = now or utcnow()
    exported_at = isoformat(now)
    rows = [
        {
            "url": record.url,
            "title": record.title,
            "description": record.description or "",
            "createdAt": isoformat(record.created_at) or exported_at,
            "tags": list(record.tags or []),
            "folder": record.folder or None,
            "favicon": record.favicon or None,
            "metadata": record.metadata or None,
        }
        for record in records
    ]
    return json.dumps(
        {
            "version": EXPORT_FORMAT_VERSION,
            "generator": generator,
            "exportDate": exported_at,
            "count": len(rows),
            "bookmarks": rows,
        },
        indent=2,
        ensure_ascii=False,
    )


def detect_format(content: str, fmt: str | None = None, filename: str | None = None) -> str:
    if fmt:
        fmt = fmt.strip().lower()
        if fmt not in {"html", "json"}:
            raise FormatError(f"Unsupported import format: {fmt}")
        return fmt
    name = (filename or "").lower()
    if name.endswith(".json"):
        return "json"
    if name.endswith((".html", ".htm")):
        return "html"
    return "json" if content.lstrip()[:1] in {"{", "["} else "html"


def parse_bookmark_file(
    content: str, fmt: str | None = None, filename: str | None = None
) -> list[BookmarkRecord]:
    if detect_format(content, fmt, filename) == "json":
        return parse_bookmark_json(content)
    return parse_bookmark_html(content)
