from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import List, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

_SCHEDULE_TIME_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


def _env_bool(name: str, default: str = "0") -> bool:
    value = os.getenv(name, default)
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def parse_schedule_time(value: str) -> Tuple[int, int]:
    """Parse ``HH:MM`` into ``(hour, minute)``."""
    match = _SCHEDULE_TIME_RE.match(str(value or "").strip())
    if not match:
        raise ValueError(f"SWEEP_SCHEDULE_TIME must be HH:MM, got {value!r}")
    return int(match.group(1)), int(match.group(2))


@dataclass(frozen=True)
class Settings:
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # ── Credentials ──────────────────────────────────────────
    encryption_key: str = os.getenv("ENCRYPTION_KEY", "")
    oauth_client_id: str = os.getenv(
        "OAUTH_CLIENT_ID", os.getenv("GOOGLE_CLIENT_ID", "")
    )
    oauth_client_secret: str = os.getenv(
        "OAUTH_CLIENT_SECRET", os.getenv("GOOGLE_CLIENT_SECRET", "")
    )
    oauth_token_url: str = os.getenv(
        "OAUTH_TOKEN_URL", "https://oauth2.googleapis.com/token"
    )
    token_expiry_skew_seconds: int = int(os.getenv("TOKEN_EXPIRY_SKEW_SECONDS", "60"))
    provider_timeout_seconds: float = float(
        os.getenv("PROVIDER_TIMEOUT_SECONDS", "30")
    )

    # ── Reporting sources ────────────────────────────────────
    analytics_api_base_url: str = os.getenv(
        "ANALYTICS_API_BASE_URL", "https://analyticsdata.googleapis.com/v1beta"
    )
    analytics_dimensions: str = os.getenv("ANALYTICS_DIMENSIONS", "date")
    analytics_metrics: str = os.getenv(
        "ANALYTICS_METRICS",
        "sessions,totalUsers,newUsers,screenPageViews,engagementRate",
    )
    search_api_base_url: str = os.getenv(
        "SEARCH_API_BASE_URL", "https://searchconsole.googleapis.com/webmasters/v3"
    )
    search_dimensions: str = os.getenv("SEARCH_DIMENSIONS", "date")
    search_row_limit: int = int(os.getenv("SEARCH_ROW_LIMIT", "25000"))
    search_data_lag_days: int = int(os.getenv("SEARCH_DATA_LAG_DAYS", "3"))

    # ── Document store ───────────────────────────────────────
    elastic_hosts: str = os.getenv("ELASTICSEARCH_HOST", "http://127.0.0.1:9200")
    elastic_user: str = os.getenv("ELASTICSEARCH_USER", "")
    elastic_password: str = os.getenv("ELASTICSEARCH_PASSWORD", "")
    elastic_index_prefix: str = os.getenv("ELASTICSEARCH_INDEX_PREFIX", "reportsync")
    elastic_verify_certs: bool = _env_bool("ELASTICSEARCH_VERIFY_CERTS", "1")

    # ── Ingestion ────────────────────────────────────────────
    ingest_concurrency: int = int(os.getenv("INGEST_CONCURRENCY", "8"))
    ingest_max_attempts: int = int(os.getenv("INGEST_MAX_ATTEMPTS", "3"))
    ingest_retry_base_seconds: float = float(
        os.getenv("INGEST_RETRY_BASE_SECONDS", "1.0")
    )
    sweep_deadline_seconds: float = float(os.getenv("SWEEP_DEADLINE_SECONDS", "480"))
    manual_deadline_seconds: float = float(os.getenv("MANUAL_DEADLINE_SECONDS", "60"))
    sweep_lookback_days: int = int(os.getenv("SWEEP_LOOKBACK_DAYS", "30"))
    backfill_months: int = int(os.getenv("BACKFILL_MONTHS", "3"))

    # Scheduled sweep worker
    sweep_schedule_time: str = os.getenv("SWEEP_SCHEDULE_TIME", "03:00")
    sweep_timezone: str = os.getenv("SWEEP_TIMEZONE", "Asia/Tokyo")
    worker_heartbeat_dir: str = os.getenv(
        "WORKER_HEARTBEAT_DIR", "/tmp/reportsync-heartbeats"
    )

    # ── API ──────────────────────────────────────────────────
    api_token: str = os.getenv("REPORTSYNC_API_TOKEN", os.getenv("API_TOKEN", ""))
    auth_disabled: bool = _env_bool("AUTH_DISABLED", "0")
    allow_localhost_without_token: bool = _env_bool(
        "ALLOW_LOCALHOST_WITHOUT_TOKEN", "0"
    )
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8080"))

    @property
    def elastic_hosts_list(self) -> List[str]:
        return [host.strip() for host in self.elastic_hosts.split(",") if host.strip()]

    @property
    def analytics_dimensions_list(self) -> List[str]:
        return [d.strip() for d in self.analytics_dimensions.split(",") if d.strip()]

    @property
    def analytics_metrics_list(self) -> List[str]:
        return [m.strip() for m in self.analytics_metrics.split(",") if m.strip()]

    @property
    def search_dimensions_list(self) -> List[str]:
        return [d.strip() for d in self.search_dimensions.split(",") if d.strip()]

    @property
    def sweep_schedule_hour_minute(self) -> Tuple[int, int]:
        return parse_schedule_time(self.sweep_schedule_time)

    @property
    def sweep_zone(self) -> ZoneInfo:
        return ZoneInfo(self.sweep_timezone)


def get_settings() -> Settings:
    return Settings()


def validate_settings(settings: Settings) -> None:
    """Raise ``ValueError`` naming the first misconfigured variable."""
    if not settings.encryption_key:
        raise ValueError("ENCRYPTION_KEY environment variable is not set")
    if settings.token_expiry_skew_seconds < 0:
        raise ValueError("TOKEN_EXPIRY_SKEW_SECONDS must be >= 0")
    if settings.ingest_concurrency < 1:
        raise ValueError("INGEST_CONCURRENCY must be >= 1")
    if settings.ingest_max_attempts < 1:
        raise ValueError("INGEST_MAX_ATTEMPTS must be >= 1")
    if settings.backfill_months < 1:
        raise ValueError("BACKFILL_MONTHS must be >= 1")
    if settings.sweep_deadline_seconds <= 0 or settings.manual_deadline_seconds <= 0:
        raise ValueError("SWEEP_DEADLINE_SECONDS and MANUAL_DEADLINE_SECONDS must be > 0")
    parse_schedule_time(settings.sweep_schedule_time)
    try:
        settings.sweep_zone
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"SWEEP_TIMEZONE is not a known time zone: {exc}") from exc
