from pathlib import Path

import yaml
from pydantic_settings import BaseSettings, SettingsConfigDict

# config/ lives at the repo root, one level above backend/
_REPO_ROOT = Path(__file__).resolve().parents[2]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    DATABASE_URL: str = "sqlite:///./intelreview.db"
    LOG_LEVEL: str = "INFO"
    # Connection pool (ignored for SQLite)
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    # SQLite only: how long a writer waits on the database lock
    DB_BUSY_TIMEOUT_MS: int = 5000
    # Retention: 1825 days = 5 years from submission/publication
    DEFAULT_RETENTION_DAYS: int = 1825
    # Audit trail has its own window; 2555 days = 7 years
    AUDIT_RETENTION_DAYS: int = 2555
    RETENTION_CONFIG: str = str(_REPO_ROOT / "config" / "retention.yaml")
    # Query limits
    MAX_QUERY_LIMIT: int = 500
    AUDIT_EXPORT_MAX_ROWS: int = 50000
    # Shared secret with the auth gateway (if unset, all requests pass — local dev)
    INTELREVIEW_API_KEY: str | None = None
    # CORS origins (comma-separated string for env var support)
    CORS_ORIGINS: str = "http://localhost:5173"
    # Rate limit applied to purge endpoints
    PURGE_RATE_LIMIT: str = "5/minute"


settings = Settings()


def load_retention_config(path: str | None = None) -> dict:
    """Read retention thresholds from YAML. Missing file -> empty dict (defaults apply)."""
    config_path = Path(path or settings.RETENTION_CONFIG)
    if not config_path.exists():
        return {}
    with open(config_path) as f:
        return yaml.safe_load(f) or {}
