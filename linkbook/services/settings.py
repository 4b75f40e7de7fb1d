from __future__ import annotations

from dateutil import parser as dt_parser

from linkbook.errors import ValidationError
from linkbook.extensions import db
from linkbook.models import DEFAULT_VIEWS, THEMES, UserSettings

# Nested settings groups: payload key -> column name.
SETTINGS_GROUPS = {
    "sidebar": {"expanded": "sidebar_expanded", "favorites": "sidebar_favorites"},
    "notifications": {
        "enabled": "notifications_enabled",
        "email": "notifications_email",
    },
    "sync": {
        "auto_sync": "auto_sync",
        "autoSync": "auto_sync",
        "last_synced": "last_synced",
        "lastSynced": "last_synced",
    },
}

BOOLEAN_COLUMNS = {
    "sidebar_expanded",
    "notifications_enabled",
    "notifications_email",
    "auto_sync",
}


def get_user_settings(user_id: int) -> UserSettings:
    if not user_id:
        raise ValidationError("User ID is required")

    settings = UserSettings.query.filter_by(user_id=user_id).first()
    if settings is None:
        settings = UserSettings(user_id=user_id)
        db.session.add(settings)
        db.session.commit()
    return settings


def _coerce(column: str, value):
    if column in BOOLEAN_COLUMNS:
        if not isinstance(value, bool):
            raise ValidationError(f"{column} must be a boolean")
        return value
    if column == "sidebar_favorites":
        if not isinstance(value, list):
            raise ValidationError("sidebar favorites must be a list")
        return [str(item) for item in value if item is not None]
    if column == "last_synced":
        if value in (None, ""):
            return None
        try:
            return dt_parser.isoparse(str(value))
        except ValueError as exc:
            raise ValidationError("last_synced must be an ISO-8601 timestamp") from exc
    return value


def update_user_settings(user_id: int, data: dict) -> UserSettings:
    """Merge ``data`` into the user's settings; keys that are absent keep their value."""
    if not isinstance(data, dict):
        raise ValidationError("Settings payload must be an object")
    settings = get_user_settings(user_id)

    theme = data.get("theme")
    if "theme" in data:
        if theme not in THEMES:
            raise ValidationError(f"theme must be one of: {', '.join(THEMES)}")
        settings.theme = theme

    view_key = "default_view" if "default_view" in data else "defaultView"
    if view_key in data:
        view = data[view_key]
        if view not in DEFAULT_VIEWS:
            raise ValidationError(
                f"default_view must be one of: {', '.join(DEFAULT_VIEWS)}"
            )
        settings.default_view = view

    for group, columns in SETTINGS_GROUPS.items():
        if group not in data:
            continue
        values = data[group]
        if not isinstance(values, dict):
            raise ValidationError(f"{group} must be an object")
        for key, value in values.items():
            column = columns.get(key)
            if column is not None:
                setattr(settings, column, _coerce(column, value))

    db.session.commit()
    return settings
