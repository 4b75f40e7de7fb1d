import os
from pathlib import Path


BASE_DIR = Path(__file__).resolve().parent.parent


class Config:
    APP_NAME = os.environ.get("APP_NAME", "LinkBook")
    SECRET_KEY = os.environ.get("SECRET_KEY", "default-secret-key")
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", f"sqlite:///{BASE_DIR / 'linkbook.db'}"
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    METADATA_FETCH_TIMEOUT = float(os.environ.get("METADATA_FETCH_TIMEOUT", "5"))
    METADATA_MAX_BYTES = int(os.environ.get("METADATA_MAX_BYTES", "2500000"))
    METADATA_CACHE_TTL_SECONDS = int(
        os.environ.get("METADATA_CACHE_TTL_SECONDS", str(24 * 60 * 60))
    )
    TAGS_CACHE_TTL_SECONDS = int(os.environ.get("TAGS_CACHE_TTL_SECONDS", "300"))
    METADATA_PRELOAD_ENABLED = os.environ.get("METADATA_PRELOAD_ENABLED", "1") == "1"
    METADATA_PRELOAD_BATCH_SIZE = int(
        os.environ.get("METADATA_PRELOAD_BATCH_SIZE", "5")
    )
    METADATA_PRELOAD_PAUSE_SECONDS = float(
        os.environ.get("METADATA_PRELOAD_PAUSE_SECONDS", "0.5")
    )
    METADATA_PRELOAD_LIMIT = int(os.environ.get("METADATA_PRELOAD_LIMIT", "10"))

    BATCH_WRITE_LIMIT = int(os.environ.get("BATCH_WRITE_LIMIT", "500"))
    DEFAULT_PAGE_SIZE = int(os.environ.get("DEFAULT_PAGE_SIZE", "20"))
    MAX_PAGE_SIZE = int(os.environ.get("MAX_PAGE_SIZE", "100"))
    EXPORT_LIMIT = int(os.environ.get("EXPORT_LIMIT", "1000"))


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    METADATA_PRELOAD_ENABLED = False
