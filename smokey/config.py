"""
Smokey Planning Engine
Settings per environment, selected by ``APP_ENV`` in ``create_app``.

Everything deployment-specific comes from the environment:

    DATABASE_URL            PostgreSQL in production, SQLite file otherwise
    SECRET_KEY              signs operator JWTs
    API_AUTH_ENABLED        "true" / "false"
    API_KEYS                "key:role,key:role" (read per request by smokey.auth)
    TOOL_ENDPOINT_<TOOL>    HTTP endpoint for audit / burnt / crimson / midnight
    TOOL_TIMEOUT_SECONDS    per-invocation tool timeout
    REDIS_URL               rate-limit storage

A tool with neither an endpoint nor an in-process handler fails its tasks
with a captured ToolExecutionError.
"""

import os
import secrets

PROJECT_ROOT = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

REMOTE_TOOLS = ("audit", "burnt", "crimson", "midnight")


def _database_url(fallback):
    """DATABASE_URL with the legacy ``postgres://`` scheme SQLAlchemy 2 rejects rewritten."""
    url = os.getenv("DATABASE_URL", "")
    if not url:
        return fallback
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return url


def _tool_endpoints():
    found = {}
    for tool in REMOTE_TOOLS:
        url = os.getenv(f"TOOL_ENDPOINT_{tool.upper()}", "").strip()
        if url:
            found[tool] = url
    return found


class Config:
    # a throwaway key per process unless SECRET_KEY is set
    SECRET_KEY = os.getenv("SECRET_KEY") or secrets.token_hex(32)
    DEBUG = False
    TESTING = False

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    REDIS_URL = os.getenv("REDIS_URL", "memory://")
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    API_AUTH_ENABLED = os.getenv("API_AUTH_ENABLED", "true")
    JWT_ACCESS_EXPIRES = int(os.getenv("JWT_ACCESS_EXPIRES", "900"))
    CAPABILITY_CACHE_TTL = int(os.getenv("CAPABILITY_CACHE_TTL", "300"))

    TOOL_ENDPOINTS = _tool_endpoints()
    TOOL_TIMEOUT_SECONDS = float(os.getenv("TOOL_TIMEOUT_SECONDS", "30"))

    RATELIMIT_ENABLED = True
    API_RATE_LIMIT = os.getenv("API_RATE_LIMIT", "300/minute")

    @classmethod
    def check(cls):
        """Raise RuntimeError when a required setting is missing."""


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url(
        "sqlite:///" + os.path.join(PROJECT_ROOT, "instance", "smokey_dev.db"))
    API_AUTH_ENABLED = os.getenv("API_AUTH_ENABLED", "false")


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", "sqlite:///:memory:")
    SQLALCHEMY_ENGINE_OPTIONS = {}
    API_AUTH_ENABLED = "false"
    RATELIMIT_ENABLED = False
    TOOL_ENDPOINTS = {}
    TOOL_TIMEOUT_SECONDS = 2.0


class ProductionConfig(Config):
    SQLALCHEMY_DATABASE_URI = _database_url(None)
    # no wildcard default; origins must be listed
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        # tool-heavy requests hold no long queries; 30s statement cap
        "connect_args": {"options": "-c statement_timeout=30000"},
    }

    @classmethod
    def check(cls):
        missing = [name for name, ok in (
            ("DATABASE_URL", cls.SQLALCHEMY_DATABASE_URI),
            ("SECRET_KEY", os.getenv("SECRET_KEY")),
        ) if not ok]
        if missing:
            raise RuntimeError("Production requires: " + ", ".join(missing))


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
