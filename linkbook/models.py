import hashlib
import secrets
from datetime import datetime, timezone

from flask_login import UserMixin
from werkzeug.security import check_password_hash, generate_password_hash

from linkbook.extensions import db, login_manager


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


class User(UserMixin, db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(120), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    bookmarks = db.relationship("Bookmark", backref="user", lazy=True)

    def set_password(self, password: str) -> None:
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)


@login_manager.user_loader
def load_user(user_id: str):
    return db.session.get(User, int(user_id))


class Bookmark(db.Model):
    __tablename__ = "bookmarks"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id"), nullable=False, index=True
    )

    url = db.Column(db.Text, nullable=False)
    title = db.Column(db.String(512), nullable=False, default="Untitled")
    description = db.Column(db.Text, nullable=False, default="")
    tags = db.Column(db.JSON, nullable=False, default=list)
    folder = db.Column(db.String(255), nullable=True, index=True)
    favicon = db.Column(db.Text, nullable=True)
    # "metadata" is reserved on declarative models.
    page_metadata = db.Column("metadata", db.JSON, nullable=True)

    visit_count = db.Column(db.Integer, nullable=False, default=0)
    last_visited = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        db.Index("ix_bookmark_user_created", "user_id", "created_at"),
        db.Index("ix_bookmark_user_updated", "user_id", "updated_at"),
    )

    def as_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "url": self.url,
            "title": self.title,
            "description": self.description or "",
            "tags": list(self.tags or []),
            "folder": self.folder,
            "favicon": self.favicon,
            "metadata": self.page_metadata,
            "visit_count": self.visit_count or 0,
            "last_visited": isoformat(self.last_visited),
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }


THEMES = ("light", "dark", "system")
DEFAULT_VIEWS = ("grid", "list")


class UserSettings(db.Model):
    __tablename__ = "user_settings"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id"), nullable=False, unique=True
    )
    theme = db.Column(db.String(16), nullable=False, default="system")
    default_view = db.Column(db.String(16), nullable=False, default="grid")
    sidebar_expanded = db.Column(db.Boolean, nullable=False, default=True)
    sidebar_favorites = db.Column(db.JSON, nullable=False, default=list)
    notifications_enabled = db.Column(db.Boolean, nullable=False, default=True)
    notifications_email = db.Column(db.Boolean, nullable=False, default=False)
    auto_sync = db.Column(db.Boolean, nullable=False, default=True)
    last_synced = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    def as_dict(self):
        return {
            "theme": self.theme,
            "default_view": self.default_view,
            "sidebar": {
                "expanded": self.sidebar_expanded,
                "favorites": list(self.sidebar_favorites or []),
            },
            "notifications": {
                "enabled": self.notifications_enabled,
                "email": self.notifications_email,
            },
            "sync": {
                "auto_sync": self.auto_sync,
                "last_synced": isoformat(self.last_synced),
            },
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }


class ApiToken(db.Model):
    __tablename__ = "api_tokens"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id"), nullable=False, index=True
    )
    name = db.Column(db.String(120), nullable=False)
    token_hash = db.Column(db.String(128), nullable=False, unique=True)
    last_used_at = db.Column(db.DateTime(timezone=True), nullable=True)
    revoked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    user = db.relationship("User", backref="api_tokens")

    @staticmethod
    def issue_token(prefix="lb"):
        token = f"{prefix}_{secrets.token_urlsafe(32)}"
        token_hash = hashlib.sha256(token.encode("utf-8")).hexdigest()
        return token, token_hash
