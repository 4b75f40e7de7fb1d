import io
import json

from linkbook.extensions import db
from linkbook.models import Bookmark, User
from linkbook.services import metadata as metadata_service

PAGE = """
<html><head>
<title>Fetched Title</title>
<meta name="description" content="Fetched description">
<meta property="og:image" content="https://example.com/cover.png">
<link rel="icon" sizes="32x32" href="/icon.png">
</head></html>
"""


def _create_user(username: str, password: str = "secret"):
    user = User(username=username, is_active=True)
    user.set_password(password)
    db.session.add(user)
    db.session.commit()
    return user


def _token(client, username: str, password: str = "secret"):
    response = client.post(
        "/api/v1/auth/token",
        json={"username": username, "password": password, "token_name": "pytest"},
    )
    assert response.status_code == 200
    return response.get_json()["token"]


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


def _stub_fetch(monkeypatch, calls=None):
    def fetch_page(url, timeout, max_bytes):
        if calls is not None:
            calls.append(url)
        return PAGE, url

    monkeypatch.setattr(metadata_service, "fetch_page", fetch_page)


def _add(client, token, **payload):
    payload.setdefault("fetch_metadata", False)
    response = client.post("/api/v1/bookmarks", headers=_auth(token), json=payload)
    assert response.status_code == 201
    return response.get_json()


def test_health_and_auth_required(client):
    response = client.get("/api/v1/health")
    assert response.get_json() == {"status": "ok", "service": "LinkBook"}

    response = client.get("/api/v1/bookmarks")
    assert response.status_code == 401

    response = client.get("/api/v1/bookmarks", headers=_auth("lb_bogus"))
    assert response.status_code == 401


def test_register_login_and_session_access(client):
    response = client.post("/auth/register", json={"username": "ada", "password": "pw"})
    assert response.status_code == 201
    response = client.post("/auth/register", json={"username": "ada", "password": "pw"})
    assert response.status_code == 409

    response = client.post("/auth/login", json={"username": "ada", "password": "nope"})
    assert response.status_code == 401
    response = client.post("/auth/login", json={"username": "ada", "password": "pw"})
    assert response.status_code == 200

    response = client.get("/api/v1/bookmarks")
    assert response.status_code == 200

    client.post("/auth/logout")
    assert client.get("/api/v1/bookmarks").status_code == 401


def test_revoked_token_is_rejected(client, app):
    with app.app_context():
        _create_user("reader")
    token = _token(client, "reader")

    response = client.delete("/api/v1/auth/token", headers=_auth(token))
    assert response.status_code == 200
    assert client.get("/api/v1/tags", headers=_auth(token)).status_code == 401


def test_add_bookmark_enriches_missing_fields(client, app, monkeypatch):
    calls = []
    _stub_fetch(monkeypatch, calls)
    with app.app_context():
        _create_user("reader")
    token = _token(client, "reader")

    response = client.post(
        "/api/v1/bookmarks",
        headers=_auth(token),
        json={"url": "example.com/post", "tags": "python, web", "folder": "Reading"},
    )

    assert response.status_code == 201
    body = response.get_json()
    assert body["url"] == "https://example.com/post"
    assert body["title"] == "Fetched Title"
    assert body["description"] == "Fetched description"
    assert body["favicon"] == "https://example.com/icon.png"
    assert body["metadata"]["og"]["image"] == "https://example.com/cover.png"
    assert body["metadata"]["domain"] == "example.com"
    assert body["tags"] == ["python", "web"]
    assert body["folder"] == "Reading"
    assert body["visit_count"] == 0
    assert calls == ["https://example.com/post"]


def test_add_bookmark_without_fetch_defaults_title(client, app):
    with app.app_context():
        _create_user("reader")
    token = _token(client, "reader")

    body = _add(client, token, url="https://example.com")
    assert body["title"] == "Untitled"
    assert body["tags"] == []
    assert body["folder"] is None

    response = client.post("/api/v1/bookmarks", headers=_auth(token), json={"title": "x"})
    assert response.status_code == 400
    assert response.get_json()["error"] == "URL is required"


def test_bookmark_ownership_is_enforced(client, app):
    with app.app_context():
        _create_user("owner")
        _create_user("intruder")
    owner_token = _token(client, "owner")
    intruder_token = _token(client, "intruder")
    bookmark = _add(client, owner_token, url="https://example.com", title="Mine")

    url = f"/api/v1/bookmarks/{bookmark['id']}"
    assert client.get(url, headers=_auth(intruder_token)).status_code == 403
    assert client.patch(url, headers=_auth(intruder_token), json={"title": "x"}).status_code == 403
    assert client.delete(url, headers=_auth(intruder_token)).status_code == 403
    assert client.get("/api/v1/bookmarks/9999", headers=_auth(owner_token)).status_code == 404

    response = client.get(url, headers=_auth(owner_token))
    assert response.status_code == 200
    assert response.get_json()["title"] == "Mine"


def test_update_and_delete_bookmark(client, app):
    with app.app_context():
        _create_user("reader")
    token = _token(client, "reader")
    bookmark = _add(client, token, url="https://example.com", title="Old", tags=["a"])
    url = f"/api/v1/bookmarks/{bookmark['id']}"

    response = client.patch(url, headers=_auth(token), json={"title": "  "})
    assert response.status_code == 400
    assert response.get_json()["error"] == "Bookmark title is required"

    response = client.patch(
        url, headers=_auth(token), json={"title": "New", "tags": "b, c", "folder": ""}
    )
    body = response.get_json()
    assert body["title"] == "New"
    assert body["tags"] == ["b", "c"]
    assert body["folder"] is None
    assert body["created_at"] == bookmark["created_at"]

    assert client.delete(url, headers=_auth(token)).status_code == 200
    assert client.get(url, headers=_auth(token)).status_code == 404


def test_visit_increments_count_without_touching_updated_at(client, app):
    with app.app_context():
        _create_user("reader")
    token = _token(client, "reader")
    bookmark = _add(client, token, url="https://example.com")
    url = f"/api/v1/bookmarks/{bookmark['id']}/visit"

    client.post(url, headers=_auth(token))
    body = client.post(url, headers=_auth(token)).get_json()

    assert body["visit_count"] == 2
    assert body["last_visited"] is not None
    assert body["updated_at"] == bookmark["updated_at"]


def test_list_bookmarks_paginates_with_cursor(client, app):
    with app.app_context():
        _create_user("reader")
    token = _token(client, "reader")
    for index in range(5):
        _add(client, token, url=f"https://example.com/{index}", title=f"B{index}")

    first = client.get("/api/v1/bookmarks?limit=2", headers=_auth(token)).get_json()
    assert [item["title"] for item in first["items"]] == ["B4", "B3"]
    assert first["pagination"]["has_more"] is True

    second = client.get(
        f"/api/v1/bookmarks?limit=2&cursor={first['pagination']['cursor']}",
        headers=_auth(token),
    ).get_json()
    assert [item["title"] for item in second["items"]] == ["B2", "B1"]

    response = client.get("/api/v1/bookmarks?cursor=garbage", headers=_auth(token))
    assert response.status_code == 400

    response = client.get("/api/v1/bookmarks?sort_by=rating", headers=_auth(token))
    assert response.status_code == 400


def test_list_bookmarks_filters_by_folder_and_tags(client, app):
    with app.app_context():
        _create_user("reader")
    token = _token(client, "reader")
    _add(client, token, url="https://a.com", title="A", folder="Work", tags=["python"])
    _add(client, token, url="https://b.com", title="B", folder="Work", tags=["rust"])
    _add(client, token, url="https://c.com", title="C", tags=["python"])

    body = client.get("/api/v1/bookmarks?folder=Work", headers=_auth(token)).get_json()
    assert sorted(item["title"] for item in body["items"]) == ["A", "B"]

    body = client.get(
        "/api/v1/bookmarks?tags=python&sort_by=title&sort_direction=asc",
        headers=_auth(token),
    ).get_json()
    assert [item["title"] for item in body["items"]] == ["A", "C"]


def test_batch_create_and_delete(client, app):
    with app.app_context():
        _create_user("reader")
        _create_user("other")
    token = _token(client, "reader")
    other_token = _token(client, "other")

    response = client.post(
        "/api/v1/bookmarks/batch",
        headers=_auth(token),
        json={
            "bookmarks": [
                {"url": "a.com", "title": "A", "created_at": "1999-01-01T00:00:00Z"},
                {"url": "b.com", "tags": ["x"]},
                {"title": "no url"},
            ]
        },
    )
    assert response.status_code == 201
    body = response.get_json()
    assert body["count"] == 2
    assert body["items"][0]["url"] == "https://a.com"
    assert not body["items"][0]["created_at"].startswith("1999")
    ids = [item["id"] for item in body["items"]]

    response = client.post(
        "/api/v1/bookmarks/batch-delete", headers=_auth(other_token), json={"ids": ids}
    )
    assert response.status_code == 403

    response = client.post(
        "/api/v1/bookmarks/batch-delete", headers=_auth(token), json={"ids": ids}
    )
    assert response.status_code == 200
    with app.app_context():
        assert Bookmark.query.count() == 0

    response = client.post("/api/v1/bookmarks/batch", headers=_auth(token), json={})
    assert response.status_code == 400


def test_tags_and_folders_are_cached_per_user(client, app):
    with app.app_context():
        _create_user("reader")
    token = _token(client, "reader")
    _add(client, token, url="https://a.com", tags=["python", "web"], folder="Work")

    response = client.get("/api/v1/tags", headers=_auth(token))
    assert response.get_json() == {"items": ["python", "web"]}
    assert client.get("/api/v1/folders", headers=_auth(token)).get_json() == {
        "items": ["Work"]
    }

    _add(client, token, url="https://b.com", tags=["rust"], folder="Home")
    assert client.get("/api/v1/tags", headers=_auth(token)).get_json() == {
        "items": ["python", "web"]
    }

    app.extensions["tags_folders_cache"].clear()
    assert client.get("/api/v1/tags", headers=_auth(token)).get_json() == {
        "items": ["python", "web", "rust"]
    }


def test_stats_reports_usage_percentages(client, app):
    with app.app_context():
        _create_user("reader")
    token = _token(client, "reader")

    empty = client.get("/api/v1/stats", headers=_auth(token)).get_json()
    assert empty["total_bookmarks"] == 0

    _add(client, token, url="https://a.com/1", tags=["python"], folder="Work")
    _add(client, token, url="https://a.com/2", tags=["python", "web"])
    _add(client, token, url="https://b.com", tags=["web"], folder="Work")
    _add(client, token, url="https://c.com")

    stats = client.get("/api/v1/stats", headers=_auth(token)).get_json()
    assert stats["total_bookmarks"] == 4
    assert {"name": "python", "count": 2, "percentage": 50} in stats["tag_stats"]
    assert stats["folder_stats"] == [{"name": "Work", "count": 2, "percentage": 50}]
    assert stats["domain_stats"][0] == {"domain": "a.com", "count": 2, "percentage": 50}
    assert len(stats["recent_bookmarks"]) == 4


def test_search_endpoint_ranks_results(client, app):
    with app.app_context():
        _create_user("reader")
    token = _token(client, "reader")
    _add(client, token, url="https://a.com", title="Flask")
    _add(client, token, url="https://b.com", title="Gardening")

    body = client.get("/api/v1/search?q=flask", headers=_auth(token)).get_json()
    assert [item["title"] for item in body["items"]] == ["Flask"]
    assert "exact_title" in body["items"][0]["match_reasons"]

    assert client.get("/api/v1/search?q=", headers=_auth(token)).get_json() == {"items": []}


def test_metadata_endpoint_uses_cache_and_refresh(client, app, monkeypatch):
    calls = []
    _stub_fetch(monkeypatch, calls)
    with app.app_context():
        _create_user("reader")
    token = _token(client, "reader")

    body = client.get("/api/v1/metadata?url=example.com", headers=_auth(token)).get_json()
    assert body["title"] == "Fetched Title"
    client.get("/api/v1/metadata?url=https://example.com/", headers=_auth(token))
    assert len(calls) == 1

    client.get("/api/v1/metadata?url=example.com&refresh=1", headers=_auth(token))
    assert len(calls) == 2

    response = client.get("/api/v1/metadata", headers=_auth(token))
    assert response.status_code == 400


def test_import_html_upload_and_json_body(client, app):
    with app.app_context():
        _create_user("reader")
    token = _token(client, "reader")
    html = b"""<!DOCTYPE NETSCAPE-Bookmark-file-1>
<DL><p>
  <DT><H3>Reading</H3>
  <DL><p>
    <DT><A HREF="https://example.com/a" ADD_DATE="1700000000">A</A>
  </DL><p>
</DL><p>
"""
    response = client.post(
        "/api/v1/import",
        headers=_auth(token),
        data={"file": (io.BytesIO(html), "bookmarks.html")},
        content_type="multipart/form-data",
    )
    assert response.status_code == 201
    assert response.get_json() == {"count": 1}

    response = client.post(
        "/api/v1/import",
        headers=_auth(token),
        data=json.dumps({"bookmarks": [{"url": "example.org", "title": "Org"}]}),
        content_type="application/json",
    )
    assert response.get_json() == {"count": 1}

    with app.app_context():
        rows = {row.url: row for row in Bookmark.query.all()}
        assert rows["https://example.com/a"].folder == "Reading"
        assert rows["https://example.com/a"].created_at.year == 2023
        assert rows["https://example.org"].title == "Org"

    response = client.post(
        "/api/v1/import?format=json", headers=_auth(token), data="<html></html>"
    )
    assert response.status_code == 400


def test_export_formats(client, app):
    with app.app_context():
        _create_user("reader")
    token = _token(client, "reader")

    response = client.get("/api/v1/export?format=html", headers=_auth(token))
    assert response.status_code == 400
    assert response.get_json()["error"] == "No bookmarks to export"

    _add(client, token, url="https://example.com", title="Example", folder="Reading")

    response = client.get("/api/v1/export?format=html", headers=_auth(token))
    assert response.status_code == 200
    assert response.content_type.startswith("text/html")
    assert "attachment;" in response.headers["Content-Disposition"]
    assert response.headers["Content-Disposition"].endswith('.html"')
    assert b'HREF="https://example.com"' in response.data

    response = client.get("/api/v1/export?format=json", headers=_auth(token))
    payload = json.loads(response.data)
    assert payload["count"] == 1
    assert payload["bookmarks"][0]["folder"] == "Reading"

    response = client.get("/api/v1/export?format=csv", headers=_auth(token))
    assert response.status_code == 400


def test_settings_defaults_and_partial_merge(client, app):
    with app.app_context():
        _create_user("reader")
    token = _token(client, "reader")

    defaults = client.get("/api/v1/settings", headers=_auth(token)).get_json()
    assert defaults["theme"] == "system"
    assert defaults["default_view"] == "grid"
    assert defaults["sidebar"] == {"expanded": True, "favorites": []}
    assert defaults["sync"]["auto_sync"] is True

    response = client.patch(
        "/api/v1/settings",
        headers=_auth(token),
        json={"theme": "dark", "sidebar": {"favorites": ["Work"]}},
    )
    body = response.get_json()
    assert body["theme"] == "dark"
    assert body["sidebar"] == {"expanded": True, "favorites": ["Work"]}
    assert body["notifications"] == defaults["notifications"]

    response = client.patch(
        "/api/v1/settings",
        headers=_auth(token),
        json={"sync": {"autoSync": False, "lastSynced": "2024-03-01T10:00:00Z"}},
    )
    body = response.get_json()
    assert body["theme"] == "dark"
    assert body["sync"]["auto_sync"] is False
    assert body["sync"]["last_synced"].startswith("2024-03-01T10:00:00")

    response = client.patch("/api/v1/settings", headers=_auth(token), json={"theme": "neon"})
    assert response.status_code == 400
    response = client.patch(
        "/api/v1/settings", headers=_auth(token), json={"sidebar": {"expanded": "yes"}}
    )
    assert response.status_code == 400


def test_malformed_bodies_are_rejected_with_validation_errors(client, app):
    with app.app_context():
        _create_user("reader")
    token = _token(client, "reader")
    bookmark = _add(client, token, url="https://example.com", title="Kept")

    cases = [
        ("post", "/api/v1/bookmarks", [{"url": "https://example.com"}]),
        ("post", "/api/v1/bookmarks", {"url": "https://example.com", "title": 42}),
        ("post", "/api/v1/bookmarks", {"url": 7, "fetch_metadata": False}),
        ("patch", f"/api/v1/bookmarks/{bookmark['id']}", {"description": ["x"]}),
        ("post", "/api/v1/bookmarks/batch", [{"url": "https://example.com"}]),
        ("post", "/api/v1/bookmarks/batch-delete", {"ids": [{"id": bookmark["id"]}]}),
        ("post", "/api/v1/bookmarks/batch-delete", {"ids": ["1"]}),
        ("patch", "/api/v1/settings", ["dark"]),
    ]
    for method, url, body in cases:
        response = getattr(client, method)(url, headers=_auth(token), json=body)
        assert response.status_code == 400, (method, url, body)
        assert "error" in response.get_json()

    response = client.get(f"/api/v1/bookmarks/{bookmark['id']}", headers=_auth(token))
    assert response.get_json()["title"] == "Kept"


def test_batch_create_coerces_non_string_titles(client, app):
    with app.app_context():
        _create_user("reader")
    token = _token(client, "reader")

    response = client.post(
        "/api/v1/bookmarks/batch",
        headers=_auth(token),
        json={"bookmarks": [{"url": "https://example.com", "title": 42, "folder": 3}]},
    )

    assert response.status_code == 201
    item = response.get_json()["items"][0]
    assert item["title"] == "42"
    assert item["folder"] == "3"


def test_cache_endpoint_clears_metadata_and_lists(client, app, monkeypatch):
    calls = []
    _stub_fetch(monkeypatch, calls)
    with app.app_context():
        _create_user("reader")
    token = _token(client, "reader")
    _add(client, token, url="https://a.com", tags=["python"])

    client.get("/api/v1/metadata?url=example.com", headers=_auth(token))
    client.get("/api/v1/tags", headers=_auth(token))
    _add(client, token, url="https://b.com", tags=["rust"])

    response = client.delete("/api/v1/cache?scope=lists", headers=_auth(token))
    assert response.get_json() == {"cleared": {"lists": 1}}
    assert client.get("/api/v1/tags", headers=_auth(token)).get_json() == {
        "items": ["python", "rust"]
    }

    response = client.delete("/api/v1/cache", headers=_auth(token))
    assert response.get_json() == {"cleared": {"metadata": 1, "lists": 1}}
    client.get("/api/v1/metadata?url=example.com", headers=_auth(token))
    assert len(calls) == 2

    response = client.delete("/api/v1/cache?scope=everything", headers=_auth(token))
    assert response.status_code == 400
