from __future__ import annotations

import os
from dataclasses import dataclass
from typing import List, Optional


@dataclass(frozen=True)
class Settings:
    """
    Application settings loaded from environment variables.

    Env vars:
    - PERSISTENCE_BACKEND: 'memory' (default) or 'sqlite'
    - SQLITE_DB_PATH: path to sqlite db file. Default './data/wellness.db'
    - CORS_ALLOW_ORIGINS: comma-separated list of allowed origins; '*' by default
    - WELLNESS_INTERNAL_API_KEY: key required on /api/int/* routes and sent to the notifications service
    - WELLNESS_NOTIFICATIONS_HOST: base URL of the notifications service
    - WELLNESS_CORE_BB_HOST: base URL of the core identity service
    - WELLNESS_SERVICE_ID: service id used when asking core for deleted memberships
    - WELLNESS_MULTI_TENANCY_APP_ID / WELLNESS_MULTI_TENANCY_ORG_ID: default tenant scope
    - WELLNESS_HTTP_TIMEOUT_SECONDS: timeout for outbound calls (default 10)
    - WELLNESS_RETENTION_TIMEZONE: zone of the daily retention sweep (default America/Chicago)
    - WELLNESS_RETENTION_HOUR: local hour of the daily retention sweep (default 4)
    - WELLNESS_ENABLE_RETENTION: 'false' to disable the retention scheduler
    - WELLNESS_RUN_MIGRATION: 'false' to skip the notification backfill at startup
    - LOG_LEVEL: root log level (default INFO)
    - VERSION: reported by GET /api/version
    """

    persistence_backend: str
    sqlite_db_path: str
    cors_allow_origins: List[str]
    internal_api_key: Optional[str]
    notifications_host: str
    core_host: str
    service_id: str
    multi_tenancy_app_id: str
    multi_tenancy_org_id: str
    http_timeout_seconds: float
    retention_timezone: str
    retention_target_seconds: int
    enable_retention: bool
    run_migration: bool
    log_level: str
    version: str


def _get_env(name: str, default: str) -> str:
    value = os.getenv(name, default)
    if value is None or value == "":
        return default
    return value


def _parse_bool(value: str, default: bool = False) -> bool:
    v = value.strip().lower()
    if v in {"1", "true", "yes", "on"}:
        return True
    if v in {"0", "false", "no", "off"}:
        return False
    return default


def _parse_float(value: str, default: float) -> float:
    try:
        return float(value)
    except ValueError:
        return default


def _parse_hour(value: str, default: int) -> int:
    try:
        hour = int(value)
    except ValueError:
        return default
    if not 0 <= hour <= 23:
        return default
    return hour


def _parse_origins(origins_value: str) -> List[str]:
    """
    Parse CORS origins from env. Supports:
    - '*' to allow all origins
    - Comma-separated list of origins
    """
    value = origins_value.strip()
    if value == "*":
        return ["*"]
    return [o.strip() for o in value.split(",") if o.strip()]


# PUBLIC_INTERFACE
def get_settings() -> Settings:
    """Return application settings loaded from environment variables."""
    backend = _get_env("PERSISTENCE_BACKEND", "memory").strip().lower()
    if backend not in {"memory", "sqlite"}:
        # Fallback to memory if unsupported
        backend = "memory"

    sqlite_path = _get_env("SQLITE_DB_PATH", "./data/wellness.db").strip()
    origins = _parse_origins(_get_env("CORS_ALLOW_ORIGINS", "*"))

    retention_hour = _parse_hour(_get_env("WELLNESS_RETENTION_HOUR", "4"), 4)

    return Settings(
        persistence_backend=backend,
        sqlite_db_path=sqlite_path,
        cors_allow_origins=origins,
        internal_api_key=os.getenv("WELLNESS_INTERNAL_API_KEY") or None,
        notifications_host=_get_env("WELLNESS_NOTIFICATIONS_HOST", "http://localhost:8081/notifications").rstrip("/"),
        core_host=_get_env("WELLNESS_CORE_BB_HOST", "http://localhost:8082/core").rstrip("/"),
        service_id=_get_env("WELLNESS_SERVICE_ID", "wellness"),
        multi_tenancy_app_id=_get_env("WELLNESS_MULTI_TENANCY_APP_ID", "default-app"),
        multi_tenancy_org_id=_get_env("WELLNESS_MULTI_TENANCY_ORG_ID", "default-org"),
        http_timeout_seconds=_parse_float(_get_env("WELLNESS_HTTP_TIMEOUT_SECONDS", "10"), 10.0),
        retention_timezone=_get_env("WELLNESS_RETENTION_TIMEZONE", "America/Chicago").strip(),
        retention_target_seconds=retention_hour * 3600,
        enable_retention=_parse_bool(_get_env("WELLNESS_ENABLE_RETENTION", "true"), True),
        run_migration=_parse_bool(_get_env("WELLNESS_RUN_MIGRATION", "true"), True),
        log_level=_get_env("LOG_LEVEL", "INFO").strip().upper(),
        version=_get_env("VERSION", "dev"),
    )
