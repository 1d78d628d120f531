"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "SyncGuard"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Shared state ---
    database_url: str = "postgresql://localhost:5432/syncguard"
    database_pool_min: int = 2
    database_pool_max: int = 20
    redis_url: str = "redis://localhost:6379/0"
    state_backend: str = "postgres"  # postgres | memory

    # --- Dispatch ---
    dispatch_backend: str = "worker"  # worker | push
    queue_prefix: str = "syncguard"
    worker_poll_interval_seconds: float = 1.0
    queue_overrides_path: str | None = None  # optional YAML of per-queue overrides

    # --- Push dispatcher (managed HTTP task queue) ---
    push_project_id: str = ""
    push_location: str = "us-central1"
    push_service_url: str = "http://localhost:8000"  # base URL the dispatcher calls back
    push_service_account_email: str = ""  # the only identity allowed to invoke /api/jobs
    push_audience: str = ""  # OIDC audience; defaults to push_service_url when empty
    push_dedup_window_seconds: int = 24 * 60 * 60
    push_jwks_url: str = "https://www.googleapis.com/oauth2/v3/certs"

    # --- Idempotency ---
    idempotency_ttl_seconds: int = 24 * 60 * 60  # must match push_dedup_window_seconds

    # --- Circuit breaker ---
    breaker_failure_threshold: int = 5
    breaker_cooldown_seconds: int = 60 * 60

    # --- Token health ---
    token_refresh_lookahead_hours: int = 48
    token_expiring_soon_hours: int = 24
    token_refresh_buffer_seconds: int = 300
    token_refresh_alert_rate: float = 0.10
    token_reminder_after_hours: int = 48

    # --- Webhooks ---
    calendar_webhook_url: str = "http://localhost:8000/api/webhooks/calendar"
    webhook_silence_hours: int = 48
    webhook_expiry_hours: int = 24
    webhook_reregistration_alert_rate: float = 0.20
    webhook_sync_lock_seconds: int = 10 * 60  # caps how long a lost sync blocks new triggers

    # --- Monitoring ---
    slow_job_threshold_seconds: int = 5 * 60
    queue_backlog_threshold: int = 1000
    queue_failure_rate_threshold: float = 0.10
    admin_api_key: str = ""

    # --- Google OAuth (token refresh) ---
    google_client_id: str = ""
    google_client_secret: str = ""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def oidc_audience(self) -> str:
        return self.push_audience or self.push_service_url


@lru_cache
def get_settings() -> Settings:
    return Settings()
