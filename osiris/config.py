# osiris/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    run_mode: Literal["all", "web", "worker"] = "all"
    log_level: str = "INFO"
    business_name: str = "Osiris Cleaning"
    public_base_url: str | None = None  # e.g. https://ops.example.com (QStash subject check, tip links)
    review_link: str = ""
    timezone: str = "America/Chicago"

    # Database
    expected_schema_version: str = "003_delivery_markers.sql"  # Update on deploy when new migrations are added
    database_url: str | None = None
    pghost: str = "localhost"
    pgport: int = 5432
    pguser: str = "postgres"
    pgpassword: str = ""
    pgdatabase: str = "postgres"
    pg_pool_min: int = 2
    pg_pool_max: int = 20
    pg_connect_timeout: int = 5
    pg_statement_timeout_ms: int = 30000
    pg_idle_in_tx_timeout_ms: int = 30000

    # Security
    admin_token: str | None = None  # Dashboard API (Authorization: Bearer <token>)
    cron_secret: str | None = None  # Cron endpoints (Authorization: Bearer <secret>)
    allowed_origins: list[str] = ["*"]
    rate_limit_per_minute: int = 60
    telegram_rate_limit_per_minute: int = 20  # Per Telegram user (anti-spam)

    # Monitoring & Metrics
    enable_metrics: bool = True
    metrics_token: str | None = None  # Optional token for /metrics, /health/detailed (if not set, uses internal network check)

    # Internal Network Access (for metrics/health endpoints when no token)
    internal_networks: str = "10.0.0.0/8,172.16.0.0/12,192.168.0.0/16,127.0.0.0/8,::1/128"
    # SECURITY: Only set to true if behind a trusted reverse proxy (nginx, cloudflared, etc.)
    trust_proxy_headers: bool = False

    # Telegram
    # Team bot: job offers, briefings, tip/upsell reports from team leads.
    # Control bot: escalations to the operator chat. Falls back to the team bot.
    telegram_bot_token: str | None = None
    telegram_control_bot_token: str | None = None
    telegram_control_chat_id: str | None = None
    telegram_webhook_secret: str | None = None  # X-Telegram-Bot-Api-Secret-Token

    # OpenPhone (customer SMS)
    openphone_api_key: str | None = None
    openphone_phone_number_id: str | None = None  # "PN..." id or E.164 sender number

    # VAPI (outbound lead calls)
    vapi_api_key: str | None = None
    vapi_assistant_id: str | None = None
    vapi_phone_number_id: str | None = None

    # Stripe
    stripe_secret_key: str | None = None
    stripe_webhook_secret: str | None = None
    tip_amounts: list[int] = [5, 10, 15, 20, 25]

    # QStash (signed automation callbacks)
    qstash_current_signing_key: str | None = None
    qstash_next_signing_key: str | None = None

    # Housecall Pro
    hcp_webhook_secret: str | None = None
    hcp_auto_broadcast: bool = False  # Offer new HCP jobs to team leads immediately

    # Business hours (calls are only placed inside this window)
    business_hours_start: int = 8   # Local hour, inclusive
    business_hours_end: int = 18    # Local hour, exclusive
    business_days: str = "0,1,2,3,4,5"  # Monday=0

    # Job broadcast
    broadcast_auto_escalation: bool = True      # Schedule urgent/escalate phases after initial offer
    broadcast_urgent_delay_seconds: int = 900   # 15 min after initial offer
    broadcast_escalate_delay_seconds: int = 1800  # 30 min after initial offer

    # Lead follow-up sequence
    lead_followup_enabled: bool = True
    lead_followup_call_delay_seconds: int = 300          # stage 2: call
    lead_followup_double_call_delay_seconds: int = 1800  # stage 3: double call
    lead_followup_second_text_delay_seconds: int = 86400  # stage 4: second text
    double_call_gap_seconds: float = 2.0

    # Post-job automations
    review_request_delay_seconds: int = 7200

    # Monthly re-engagement
    reengagement_days: int = 30
    reengagement_discount: str = "15%"
    reengagement_batch_size: int = 30

    # Task Worker (DB-backed queue)
    task_worker_enabled: bool = True          # Master switch
    task_worker_poll_interval: float = 1.0    # Seconds between polls when idle
    task_worker_batch_size: int = 5           # Tasks claimed per poll cycle
    task_worker_base_retry_delay: float = 5.0  # Base delay for exponential backoff (seconds)
    task_worker_stale_timeout: int = 300      # Reset tasks stuck 'running' for this long (seconds)
    task_cleanup_completed_ttl_days: int = 7
    task_cleanup_failed_ttl_days: int = 30

    # Feature Flags
    require_webhook_validation: bool = True
    enable_request_logging: bool = True

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def is_staging(self) -> bool:
        return self.app_env == "staging"

    @property
    def database_dsn(self) -> str:
        if self.database_url:
            return self.database_url

        return (
            f"postgresql://{self.pguser}:{self.pgpassword}@{self.pghost}:{self.pgport}/{self.pgdatabase}"
        )

    @property
    def control_bot_token(self) -> str | None:
        """Effective token for operator escalations (falls back to the team bot)"""
        return self.telegram_control_bot_token or self.telegram_bot_token

    @property
    def openphone_enabled(self) -> bool:
        return bool(self.openphone_api_key and self.openphone_phone_number_id)

    @property
    def vapi_enabled(self) -> bool:
        return bool(self.vapi_api_key and self.vapi_assistant_id and self.vapi_phone_number_id)

    @property
    def qstash_signing_keys(self) -> list[str]:
        return [k for k in (self.qstash_current_signing_key, self.qstash_next_signing_key) if k]

    @property
    def business_day_numbers(self) -> set[int]:
        return {int(d) for d in self.business_days.split(",") if d.strip()}

    def validate_required_for_production(self) -> list[str]:
        """Names of settings a prod process cannot run without; empty outside prod."""
        if not self.is_production:
            return []
        return [name for name in PRODUCTION_REQUIRED if not getattr(self, name)]


PRODUCTION_REQUIRED = (
    "admin_token",
    "cron_secret",
    "telegram_bot_token",
    "telegram_control_chat_id",
    "openphone_api_key",
    "openphone_phone_number_id",
    "stripe_webhook_secret",
)


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    # Exposure
    if s.is_production and s.allowed_origins == ["*"]:
        warnings.append("prod: allowed_origins=['*'] (CORS is wide open).")
    if not s.cron_secret:
        warnings.append("cron_secret is not set (cron endpoints will refuse every request).")
    if s.trust_proxy_headers:
        warnings.append("trust_proxy_headers=True: X-Forwarded-For is trusted, so a proxy must strip client copies.")
    if s.enable_metrics and not s.metrics_token:
        warnings.append("metrics_token is not set: /metrics and /health/detailed rely on internal_networks.")

    # Webhook signatures
    if s.require_webhook_validation:
        if not s.qstash_signing_keys:
            warnings.append("QStash signing keys are not set: automation endpoints accept unsigned requests.")
        if not s.hcp_webhook_secret:
            warnings.append("hcp_webhook_secret is not set: Housecall Pro webhooks are not verified.")
        if not s.telegram_webhook_secret:
            warnings.append("telegram_webhook_secret is not set: Telegram updates are not verified.")

    # Providers
    if not s.telegram_bot_token:
        warnings.append("telegram_bot_token is missing (job broadcasts cannot be delivered).")
    if not s.telegram_control_chat_id:
        warnings.append("telegram_control_chat_id is missing (escalations go nowhere).")
    if not s.openphone_enabled:
        warnings.append("OpenPhone is not configured (customer SMS will fail).")
    if not s.vapi_enabled:
        warnings.append("VAPI is not configured (lead follow-up calls will fail).")
    if not s.review_link:
        warnings.append("review_link is empty (review requests will carry no link).")

    if s.business_hours_start >= s.business_hours_end:
        warnings.append("business_hours_start >= business_hours_end: no call will ever be placed.")

    return warnings


def validate_or_warn(s: "Settings") -> None:
    """Hard-fail on missing prod settings, otherwise print warnings (logging is not configured yet)."""
    missing = s.validate_required_for_production()
    if missing:
        raise RuntimeError(f"Missing required settings for production: {', '.join(missing)}")

    for msg in warn_on_risky_config(s):
        print(f"[WARN][config] {msg}")


settings = Settings()
validate_or_warn(settings)
