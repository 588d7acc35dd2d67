# bulksend/config.py
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
    log_level: str = "INFO"
    app_base_url: str = "http://localhost:3000"  # RSVP links are built from this (e.g., https://app.example.com)
    default_country: Literal["IL", "US", "UK"] = "IL"  # Country used to normalize local phone numbers

    # Storage backend
    # "postgres" - asyncpg pool (production)
    # "memory"   - in-process store, for local dev and demos only
    store_backend: Literal["postgres", "memory"] = "postgres"
    memory_seed_path: str | None = None  # JSON file with events and guests for the memory backend

    # Database
    expected_schema_version: str = "001_bulk_jobs.sql"  # Update on deploy when new migrations are added
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
    cron_secret: str | None = None  # Shared secret for the scheduler sweep (Authorization: Bearer <secret>)
    allowed_origins: list[str] = ["*"]
    rate_limit_per_minute: int = 60
    bulk_create_rate_limit_per_minute: int = 5  # Job creation is expensive, keep it tight

    # Bulk jobs
    bulk_chunk_size: int = 10               # Recipients per "continue" invocation
    claim_lease_seconds: int = 300          # CLAIMED rows older than this are reclaimable
    sweep_chunk_size: int = 10              # Recipients per job per scheduler sweep
    sweep_time_budget_seconds: float = 50.0  # Stop starting new jobs after this much sweep time
    sweep_max_jobs: int = 100               # Non-terminal jobs listed per sweep

    # Channel Provider Selection
    # "twilio" - Twilio WhatsApp (default)
    # "meta"   - Meta WhatsApp Cloud API directly
    channel_provider: Literal["twilio", "meta"] = "twilio"
    channel_timeout_seconds: float = 25.0   # Worst-case latency of one provider call

    # Twilio
    twilio_account_sid: str | None = None
    twilio_auth_token: str | None = None
    twilio_phone_number: str | None = None
    twilio_sms_number: str | None = None  # SMS sender; WhatsApp uses twilio_phone_number
    twilio_messaging_service_sid: str | None = None  # Used for SMS instead of twilio_sms_number when set

    # Meta WhatsApp Cloud API
    meta_access_token: str | None = None  # Long-lived access token for Graph API
    meta_phone_number_id: str | None = None  # Phone Number ID from Meta Business Suite
    meta_graph_api_version: str = "v20.0"  # Graph API version

    # Approved WhatsApp templates per message type
    # Twilio: Content SID (HX...), Meta: template name.
    # Without one a free-form text is sent, which providers only deliver
    # inside the 24h customer-service window.
    whatsapp_invite_template: str | None = None
    whatsapp_reminder_template: str | None = None
    whatsapp_event_day_template: str | None = None
    whatsapp_thank_you_template: str | None = None

    # Monitoring & Metrics
    enable_metrics: bool = True

    # Feature Flags
    enable_request_logging: bool = True

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def is_staging(self) -> bool:
        return self.app_env == "staging"

    @property
    def meta_enabled(self) -> bool:
        """Check if Meta Cloud API is configured"""
        return bool(self.meta_access_token and self.meta_phone_number_id)

    @property
    def twilio_enabled(self) -> bool:
        """Check if Twilio is configured"""
        return bool(
            self.twilio_account_sid
            and self.twilio_auth_token
            and self.twilio_phone_number
        )

    @property
    def sms_enabled(self) -> bool:
        """Check if Twilio SMS is configured"""
        return bool(
            self.twilio_account_sid
            and self.twilio_auth_token
            and (self.twilio_sms_number or self.twilio_messaging_service_sid)
        )

    @property
    def whatsapp_enabled(self) -> bool:
        """Check if the selected WhatsApp provider is configured"""
        return self.meta_enabled if self.channel_provider == "meta" else self.twilio_enabled

    def whatsapp_template_for(self, message_type: str) -> str | None:
        """Approved template for a message type (INVITE, REMINDER, ...), if any"""
        return getattr(self, f"whatsapp_{message_type.lower()}_template", None)

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        missing = []

        # Always required
        required_fields = [
            ("cron_secret", self.cron_secret),
            ("database_url", self.database_url),
        ]

        # Provider-specific requirements
        if self.channel_provider == "twilio":
            required_fields.extend([
                ("twilio_auth_token", self.twilio_auth_token),
                ("twilio_account_sid", self.twilio_account_sid),
                ("twilio_phone_number", self.twilio_phone_number),
            ])
        elif self.channel_provider == "meta":
            required_fields.extend([
                ("meta_access_token", self.meta_access_token),
                ("meta_phone_number_id", self.meta_phone_number_id),
            ])

        for field_name, value in required_fields:
            if not value:
                missing.append(field_name)

        return missing


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    # --- Scheduler ---
    if not s.cron_secret:
        warnings.append("cron_secret is not set (scheduler sweep endpoint is unauthenticated).")

    if s.is_production and s.allowed_origins == ["*"]:
        warnings.append("prod: allowed_origins=['*'] (CORS is wide open).")

    # --- Bulk job tuning ---
    worst_chunk_seconds = max(s.bulk_chunk_size, s.sweep_chunk_size) * s.channel_timeout_seconds
    if s.claim_lease_seconds <= worst_chunk_seconds:
        warnings.append(
            f"claim_lease_seconds={s.claim_lease_seconds} does not exceed the worst-case chunk duration "
            f"({worst_chunk_seconds:.0f}s); in-flight claims may be reclaimed and re-sent."
        )

    if s.store_backend == "memory" and s.is_production:
        warnings.append("prod: store_backend=memory (job state is lost on restart and not shared across instances).")

    # --- Provider configuration ---
    if s.channel_provider == "twilio" and not s.twilio_enabled:
        warnings.append("channel_provider=twilio but Twilio credentials are incomplete.")
    elif s.channel_provider == "meta" and not s.meta_enabled:
        warnings.append("channel_provider=meta but Meta credentials are incomplete.")

    if s.whatsapp_enabled and not any(
        s.whatsapp_template_for(t) for t in ("INVITE", "REMINDER", "EVENT_DAY", "THANK_YOU")
    ):
        warnings.append(
            "No WhatsApp templates configured; free-form messages are rejected "
            "outside the 24h window (set WHATSAPP_<TYPE>_TEMPLATE)."
        )

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
