import pytest
from sqlalchemy.exc import SQLAlchemyError

from linkbook.errors import ValidationError
from linkbook.extensions import db
from linkbook.models import Bookmark, User
from linkbook.services import batch as batch_service
from linkbook.services.batch import batch_add_bookmarks, batch_delete_bookmarks


def _create_user(username="reader"):
    user = User(username=username, is_active=True)
    user.set_password("secret")
    db.session.add(user)
    db.session.commit()
    return user


def _count_commits(monkeypatch):
    calls = []
    original = batch_service._commit_chunk

    def counting(apply):
        calls.append(apply)
        return original(apply)

    monkeypatch.setattr(batch_service, "_commit_chunk", counting)
    return calls


def test_batch_add_commits_in_chunks_of_500(app, monkeypatch):
    with app.app_context():
        user = _create_user()
        calls = _count_commits(monkeypatch)
        items = [
            {"user_id": user.id, "url": f"example.com/{index}", "title": f"Item {index}"}
            for index in range(1200)
        ]

        created = batch_add_bookmarks(items)

        assert len(calls) == 3
        assert len(created) == 1200
        assert Bookmark.query.count() == 1200
        assert created[0].url == "https://example.com/0"


def test_batch_add_skips_items_without_url_or_user(app):
    with app.app_context():
        user = _create_user()
        created = batch_add_bookmarks(
            [
                {"user_id": user.id, "url": "https://example.com"},
                {"user_id": user.id, "url": ""},
                {"url": "https://example.org"},
            ]
        )

        assert len(created) == 1
        assert created[0].title == "Untitled"
        assert created[0].tags == []
        assert created[0].visit_count == 0


def test_batch_add_rejects_empty_input(app):
    with app.app_context():
        with pytest.raises(ValidationError):
            batch_add_bookmarks([])


def test_failed_chunk_rolls_back_and_keeps_earlier_chunks(app, monkeypatch):
    with app.app_context():
        user = _create_user()
        original = batch_service._commit_chunk
        calls = []

        def fail_second(apply):
            calls.append(apply)
            if len(calls) == 2:
                def broken():
                    raise SQLAlchemyError("disk full")

                return original(broken)
            return original(apply)

        monkeypatch.setattr(batch_service, "_commit_chunk", fail_second)
        items = [{"user_id": user.id, "url": f"https://e.com/{i}"} for i in range(4)]

        with pytest.raises(SQLAlchemyError):
            batch_add_bookmarks(items, chunk_size=2)

        assert Bookmark.query.count() == 2


def test_batch_delete_removes_ids_in_chunks(app, monkeypatch):
    with app.app_context():
        user = _create_user()
        created = batch_add_bookmarks(
            [{"user_id": user.id, "url": f"https://e.com/{i}"} for i in range(5)]
        )
        ids = [row.id for row in created[:4]]
        calls = _count_commits(monkeypatch)

        assert batch_delete_bookmarks(ids, chunk_size=3) is True

        assert len(calls) == 2
        assert [row.url for row in Bookmark.query.all()] == ["https://e.com/4"]

        with pytest.raises(ValidationError):
            batch_delete_bookmarks([])
