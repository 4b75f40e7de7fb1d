from __future__ import annotations

from flask import Response, current_app, g, jsonify, request

from linkbook.api import api_bp
from linkbook.errors import LinkBookError, ValidationError
from linkbook.extensions import db
from linkbook.models import ApiToken, Bookmark, User, utcnow
from linkbook.services.bookmark_formats import (
    export_bookmarks_html,
    export_bookmarks_json,
    parse_bookmark_file,
)
from linkbook.services.bookmarks import (
    add_bookmark,
    batch_add_for_user,
    batch_delete_for_user,
    bookmark_stats,
    clear_tags_folders_cache,
    delete_bookmark,
    export_records,
    get_bookmark,
    import_bookmarks,
    list_user_folders,
    list_user_tags,
    record_visit,
    update_bookmark,
)
from linkbook.services.metadata import (
    clear_metadata_cache,
    extract_metadata,
    get_metadata_cache,
    start_metadata_preload,
)
from linkbook.services.queries import BookmarkQuery, fetch_bookmark_page
from linkbook.services.search import search_bookmarks
from linkbook.services.security import api_auth_required, hash_token
from linkbook.services.settings import get_user_settings, update_user_settings


def _to_bool(value, default=False):
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _json_object() -> dict:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    return payload


def _tags_folders_cache():
    return current_app.extensions["tags_folders_cache"]


def _fetch_timeout() -> float:
    return float(current_app.config["METADATA_FETCH_TIMEOUT"])


def _max_bytes() -> int:
    return int(current_app.config["METADATA_MAX_BYTES"])


def _batch_limit() -> int:
    return int(current_app.config["BATCH_WRITE_LIMIT"])


def _page_size() -> int:
    requested = request.args.get("limit", type=int)
    default = int(current_app.config["DEFAULT_PAGE_SIZE"])
    maximum = int(current_app.config["MAX_PAGE_SIZE"])
    return max(1, min(requested or default, maximum))


def _needs_metadata(bookmark: Bookmark) -> bool:
    og = (bookmark.page_metadata or {}).get("og") or {}
    return not og.get("image")


@api_bp.errorhandler(LinkBookError)
def handle_linkbook_error(exc: LinkBookError):
    current_app.logger.info(
        "%s on %s: %s", exc.__class__.__name__, request.path, exc.message
    )
    return jsonify({"error": exc.message}), exc.status_code


@api_bp.route("/health")
def health():
    return jsonify({"status": "ok", "service": current_app.config["APP_NAME"]})


@api_bp.route("/auth/token", methods=["POST"])
def create_token_with_credentials():
    payload = _json_object()
    username = str(payload.get("username") or "").strip()
    password = str(payload.get("password") or "")
    token_name = str(payload.get("token_name") or "LinkBook API Token").strip()

    user = User.query.filter_by(username=username).first()
    if not user or not user.is_active or not user.check_password(password):
        return jsonify({"error": "invalid credentials"}), 401

    token, token_hash = ApiToken.issue_token()
    row = ApiToken(user_id=user.id, name=token_name, token_hash=token_hash)
    db.session.add(row)
    db.session.commit()
    return jsonify({"token": token, "token_name": token_name, "user_id": user.id})


@api_bp.route("/auth/token", methods=["DELETE"])
@api_auth_required(token_only=True)
def revoke_current_token():
    token = request.headers.get("Authorization", "").removeprefix("Bearer ").strip()
    row = ApiToken.query.filter_by(token_hash=hash_token(token)).first()
    row.revoked_at = utcnow()
    db.session.commit()
    return jsonify({"status": "revoked"})


@api_bp.route("/bookmarks", methods=["GET"])
@api_auth_required()
def bookmarks_list_api():
    user = g.api_user
    query = BookmarkQuery(
        folder=(request.args.get("folder") or "").strip() or None,
        tags=[
            tag.strip()
            for tag in (request.args.get("tags") or "").split(",")
            if tag.strip()
        ],
        search=(request.args.get("q") or "").strip(),
        sort_by=(request.args.get("sort_by") or "created_at").strip(),
        sort_direction=(request.args.get("sort_direction") or "desc").strip().lower(),
        page_size=_page_size(),
        cursor=request.args.get("cursor") or None,
    )
    page = fetch_bookmark_page(user.id, query, current_app.config["SECRET_KEY"])

    preload_limit = int(current_app.config["METADATA_PRELOAD_LIMIT"])
    urls = [item.url for item in page.items if _needs_metadata(item)][:preload_limit]
    start_metadata_preload(current_app._get_current_object(), urls)

    return jsonify(
        {
            "items": [item.as_dict() for item in page.items],
            "pagination": {"cursor": page.cursor, "has_more": page.has_more},
        }
    )


@api_bp.route("/bookmarks", methods=["POST"])
@api_auth_required()
def bookmarks_create_api():
    user = g.api_user
    payload = _json_object()
    bookmark = add_bookmark(
        user.id,
        payload,
        metadata_cache=get_metadata_cache(),
        fetch_metadata=_to_bool(payload.get("fetch_metadata"), default=True),
        timeout=_fetch_timeout(),
        max_bytes=_max_bytes(),
    )
    return jsonify(bookmark.as_dict()), 201


@api_bp.route("/bookmarks/<int:bookmark_id>", methods=["GET"])
@api_auth_required()
def bookmarks_get_api(bookmark_id: int):
    bookmark = get_bookmark(g.api_user.id, bookmark_id)
    return jsonify(bookmark.as_dict())


@api_bp.route("/bookmarks/<int:bookmark_id>", methods=["PATCH"])
@api_auth_required()
def bookmarks_update_api(bookmark_id: int):
    payload = _json_object()
    for field in ("id", "user_id", "created_at"):
        payload.pop(field, None)
    bookmark = update_bookmark(g.api_user.id, bookmark_id, payload)
    return jsonify(bookmark.as_dict())


@api_bp.route("/bookmarks/<int:bookmark_id>", methods=["DELETE"])
@api_auth_required()
def bookmarks_delete_api(bookmark_id: int):
    delete_bookmark(g.api_user.id, bookmark_id)
    return jsonify({"status": "deleted"})


@api_bp.route("/bookmarks/<int:bookmark_id>/visit", methods=["POST"])
@api_auth_required()
def bookmarks_visit_api(bookmark_id: int):
    bookmark = record_visit(g.api_user.id, bookmark_id)
    return jsonify(bookmark.as_dict())


@api_bp.route("/bookmarks/batch", methods=["POST"])
@api_auth_required()
def bookmarks_batch_create_api():
    payload = _json_object()
    created = batch_add_for_user(
        g.api_user.id, payload.get("bookmarks"), chunk_size=_batch_limit()
    )
    return (
        jsonify({"count": len(created), "items": [row.as_dict() for row in created]}),
        201,
    )


@api_bp.route("/bookmarks/batch-delete", methods=["POST"])
@api_auth_required()
def bookmarks_batch_delete_api():
    payload = _json_object()
    ids = payload.get("ids")
    batch_delete_for_user(g.api_user.id, ids, chunk_size=_batch_limit())
    return jsonify({"status": "deleted", "count": len(ids)})


@api_bp.route("/tags", methods=["GET"])
@api_auth_required()
def tags_list():
    return jsonify({"items": list_user_tags(g.api_user.id, _tags_folders_cache())})


@api_bp.route("/folders", methods=["GET"])
@api_auth_required()
def folders_list():
    return jsonify({"items": list_user_folders(g.api_user.id, _tags_folders_cache())})


@api_bp.route("/stats", methods=["GET"])
@api_auth_required()
def stats_api():
    return jsonify(bookmark_stats(g.api_user.id))


@api_bp.route("/search", methods=["GET"])
@api_auth_required()
def search_api():
    user = g.api_user
    query = (request.args.get("q") or "").strip()
    if not query:
        return jsonify({"items": []})

    source = (
        Bookmark.query.filter_by(user_id=user.id)
        .order_by(Bookmark.updated_at.desc())
        .all()
    )
    ranked = search_bookmarks(
        source, query, limit=request.args.get("limit", type=int) or 50
    )
    return jsonify(
        {
            "items": [
                {
                    **item["bookmark"].as_dict(),
                    "score": item["score"],
                    "match_reasons": item["reasons"],
                }
                for item in ranked
            ]
        }
    )


@api_bp.route("/metadata", methods=["GET"])
@api_auth_required()
def metadata_api():
    url = (request.args.get("url") or "").strip()
    if not url:
        raise ValidationError("URL is required")
    metadata = extract_metadata(
        url,
        get_metadata_cache(),
        force_refresh=_to_bool(request.args.get("refresh")),
        timeout=_fetch_timeout(),
        max_bytes=_max_bytes(),
    )
    return jsonify(metadata.as_dict())


@api_bp.route("/cache", methods=["DELETE"])
@api_auth_required()
def cache_clear_api():
    scope = (request.args.get("scope") or "all").strip().lower()
    if scope not in {"all", "metadata", "lists"}:
        raise ValidationError(f"Unsupported cache scope: {scope}")

    cleared = {}
    if scope in {"all", "metadata"}:
        cleared["metadata"] = clear_metadata_cache(get_metadata_cache())
    if scope in {"all", "lists"}:
        cleared["lists"] = clear_tags_folders_cache(_tags_folders_cache())
    current_app.logger.info("User %s cleared caches: %s", g.api_user.id, cleared)
    return jsonify({"cleared": cleared})


@api_bp.route("/import", methods=["POST"])
@api_auth_required()
def import_api():
    user = g.api_user
    upload = request.files.get("file")
    if upload is not None:
        content = upload.read().decode("utf-8", errors="ignore")
        filename = upload.filename
    else:
        content = request.get_data(as_text=True)
        filename = None
    if not content.strip():
        raise ValidationError("Please choose a bookmarks file to import.")

    fmt = request.args.get("format") or request.form.get("format")
    records = parse_bookmark_file(content, fmt=fmt, filename=filename)
    created = import_bookmarks(user.id, records, chunk_size=_batch_limit())
    current_app.logger.info(
        "Imported %s of %s bookmarks for user %s", len(created), len(records), user.id
    )
    return jsonify({"count": len(created)}), 201


@api_bp.route("/export", methods=["GET"])
@api_auth_required()
def export_api():
    user = g.api_user
    fmt = (request.args.get("format") or "json").strip().lower()
    if fmt not in {"html", "json"}:
        raise ValidationError(f"Unsupported export format: {fmt}")

    records = export_records(user.id, limit=int(current_app.config["EXPORT_LIMIT"]))
    generator = current_app.config["APP_NAME"]
    if fmt == "html":
        payload = export_bookmarks_html(records, generator=generator)
        content_type = "text/html; charset=utf-8"
    else:
        payload = export_bookmarks_json(records, generator=generator)
        content_type = "application/json; charset=utf-8"

    timestamp = utcnow().strftime("%Y%m%d-%H%M%S")
    filename = f"linkbook-bookmarks-{timestamp}.{fmt}"
    return Response(
        payload,
        content_type=content_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@api_bp.route("/settings", methods=["GET"])
@api_auth_required()
def settings_get_api():
    return jsonify(get_user_settings(g.api_user.id).as_dict())


@api_bp.route("/settings", methods=["PATCH"])
@api_auth_required()
def settings_update_api():
    payload = request.get_json(silent=True)
    settings = update_user_settings(g.api_user.id, payload)
    return jsonify(settings.as_dict())
