# urgent_dispatch/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal
from urllib.parse import quote


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    log_level: str = "INFO"
    log_json: bool = False

    # Database
    database_url: str | None = None
    pghost: str = "localhost"
    pgport: int = 5432
    pguser: str = "postgres"
    pgpassword: str = ""
    pgdatabase: str = "postgres"
    pg_pool_min: int = 2
    pg_pool_max: int = 20
    pg_connect_timeout: int = 5
    pg_command_timeout: int = 60

    # Geo lookups
    geo_cache_ttl_seconds: int = 600          # 10 minutes
    geo_cache_coord_precision: int = 4        # decimals kept in cache keys

    # Matching
    matching_max_distance_km: float = 50.0    # distance score reaches 0 here
    matching_max_candidates: int = 10
    matching_min_rating: float = 0.0
    matching_prioritize_distance: bool = True
    matching_retry_penalty: float = 0.8

    # Urgent requests
    urgent_min_radius_km: float = 1.0
    urgent_max_radius_km: float = 50.0
    urgent_rate_limit_count: int = 5          # requests per client per window
    urgent_rate_limit_window_seconds: int = 3600
    urgent_default_multiplier: float = 1.5
    urgent_radius_price_step_km: float = 5.0

    # Lifecycle
    candidate_response_timeout_seconds: int = 600  # 0 disables the expiry sweep
    allow_cancel_after_assignment: bool = False

    # Notifications
    notifications_enabled: bool = True        # master switch for in-app notifications
    realtime_webhook_url: str | None = None   # relay that fans events out to sockets
    realtime_webhook_token: str | None = None

    # Dispatch scheduling
    # "queue"  - durable DB job queue, executed by the worker process
    # "inline" - asyncio task in the calling process (single-process deployments)
    dispatch_mode: Literal["queue", "inline"] = "queue"
    dispatch_job_max_attempts: int = 5

    # Job Worker (DB-backed queue)
    job_worker_enabled: bool = False          # Master switch, enable explicitly in worker service
    job_worker_poll_interval: float = 1.0     # Seconds between polls when idle
    job_worker_batch_size: int = 5            # Jobs claimed per poll cycle
    job_worker_base_retry_delay: float = 5.0  # Base delay for exponential backoff (seconds)
    job_worker_stale_timeout: int = 300       # Reset jobs stuck 'running' for this long (seconds)
    candidate_sweep_every_loops: int = 30     # Expiry sweep cadence in worker loops
    job_cleanup_completed_ttl_days: int = 7
    job_cleanup_failed_ttl_days: int = 30

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def database_dsn(self) -> str:
        if self.database_url:
            return self.database_url

        return (
            f"postgresql://{quote(self.pguser, safe='')}:{quote(self.pgpassword, safe='')}"
            f"@{self.pghost}:{self.pgport}/{self.pgdatabase}"
        )

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        missing = []
        if not self.database_url and not self.pgpassword:
            missing.append("database_url or pgpassword")
        if self.dispatch_mode == "queue" and self.dispatch_job_max_attempts < 1:
            missing.append("dispatch_job_max_attempts >= 1")
        return missing


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    if s.urgent_min_radius_km > s.urgent_max_radius_km:
        warnings.append("urgent_min_radius_km is greater than urgent_max_radius_km (no radius is valid).")

    if s.urgent_max_radius_km > s.matching_max_distance_km:
        warnings.append(
            "urgent_max_radius_km exceeds matching_max_distance_km: "
            "far candidates will all get a zero distance score."
        )

    if not 0 < s.matching_retry_penalty <= 1:
        warnings.append("matching_retry_penalty should be in (0, 1].")

    if s.candidate_response_timeout_seconds == 0:
        warnings.append(
            "candidate_response_timeout_seconds=0: requests whose candidates never answer stay pending."
        )

    if s.dispatch_mode == "inline" and s.is_production:
        warnings.append("prod: dispatch_mode=inline loses scheduled dispatches on restart.")

    if s.realtime_webhook_url and not s.realtime_webhook_token:
        warnings.append("realtime_webhook_url is set but realtime_webhook_token is empty.")

    return warnings


def validate_or_warn(s: "Settings") -> None:
    """
    In prod: enforce required settings (hard fail).
    In non-prod: warn only.
    """
    missing = s.validate_required_for_production()

    if missing:
        raise RuntimeError(f"Missing required settings for production: {', '.join(missing)}")

    for msg in warn_on_risky_config(s):
        print(f"[WARN][config] {msg}")


settings = Settings()
validate_or_warn(settings)
