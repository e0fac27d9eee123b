"""
Call Escalation Relay - Configuration Management

Centralized configuration using Pydantic Settings.
All secrets and environment-specific values are loaded from environment variables.
"""

from functools import lru_cache
from typing import Dict, List

from pydantic_settings import BaseSettings, SettingsConfigDict

from callrelay.core.exceptions import ConfigurationError


def _split_csv(value: str) -> List[str]:
    """Split a comma-separated setting into trimmed, non-empty items."""
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Hierarchy (highest to lowest priority):
    1. Environment variables
    2. .env file
    3. Default values

    List-valued settings (recipients, keywords, prefixes) are stored as
    comma-separated strings and exposed through ``*_list`` properties.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Application ---
    app_env: str = "development"
    app_debug: bool = True
    app_log_level: str = "INFO"
    log_json: bool = False

    # --- Webhook Security ---
    # Required: the service refuses to start without a shared secret
    webhook_secret: str = ""
    webhook_signature_header: str = "x-vapi-signature"

    # --- Rate Limiting ---
    rate_limit_requests: int = 100
    rate_limit_window_seconds: int = 60

    # --- SMS Gateway (Twilio) ---
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_from_number: str = ""
    twilio_api_base_url: str = "https://api.twilio.com"
    twilio_timeout_seconds: float = 10.0
    sms_circuit_failure_threshold: int = 5
    sms_circuit_cooldown_seconds: float = 30.0

    # --- Recipients per role (comma-separated E.164 numbers) ---
    recipients_lead: str = ""
    recipients_manager: str = ""
    recipients_on_call: str = ""

    # --- Priority Classification ---
    # Keyword matching is case-insensitive substring matching
    p1_keywords: str = (
        "flooding,flood,sewage backup,burst pipe,urgent,emergency,"
        "inondation,refoulement,urgence,débordement,eau dans le sous-sol"
    )
    p2_keywords: str = "municipalit,ville de,municipal,city of"
    p2_phone_prefixes: str = ""
    p3_keywords: str = (
        "restaurant,office,commerce,commercial,business,"
        "gainage,relining,drain français"
    )
    # Estimated job value (from extracted fields) that also counts as P3
    p3_value_threshold: float = 3000.0
    transcript_min_chars: int = 20

    # --- Escalation ---
    # Tiers that escalate as soon as they are reached; others wait for call end
    urgent_tiers: str = "P1,P2"
    dispatch_response_timeout_seconds: float = 2.5

    # --- Retry policy per tier ---
    p1_max_attempts: int = 3
    p1_backoff_seconds: float = 1.0
    p2_max_attempts: int = 2
    p2_backoff_seconds: float = 5.0
    p3_max_attempts: int = 1
    p3_backoff_seconds: float = 10.0
    p4_max_attempts: int = 1
    p4_backoff_seconds: float = 10.0

    # --- Persistence ---
    # "memory" = in-process store (default, no external dependencies)
    # "supabase" = PostgREST upserts against a Supabase project
    persistence_backend: str = "memory"
    supabase_url: str = ""
    supabase_service_key: str = ""
    supabase_timeout_seconds: float = 10.0

    # --- Session Store ---
    max_sessions: int = 1000
    session_ttl_minutes: int = 120
    ended_session_grace_minutes: int = 5
    session_cleanup_interval_seconds: int = 60

    # --- Audit ---
    audit_max_entries: int = 10000

    @property
    def lead_recipients(self) -> List[str]:
        return _split_csv(self.recipients_lead)

    @property
    def manager_recipients(self) -> List[str]:
        return _split_csv(self.recipients_manager)

    @property
    def on_call_recipients(self) -> List[str]:
        return _split_csv(self.recipients_on_call)

    @property
    def p1_keyword_list(self) -> List[str]:
        return _split_csv(self.p1_keywords)

    @property
    def p2_keyword_list(self) -> List[str]:
        return _split_csv(self.p2_keywords)

    @property
    def p2_prefix_list(self) -> List[str]:
        return _split_csv(self.p2_phone_prefixes)

    @property
    def p3_keyword_list(self) -> List[str]:
        return _split_csv(self.p3_keywords)

    @property
    def urgent_tier_list(self) -> List[str]:
        return [tier.upper() for tier in _split_csv(self.urgent_tiers)]

    @property
    def retry_policies(self) -> Dict[str, tuple]:
        """Map tier name to (max_attempts, backoff_seconds)."""
        return {
            "P1": (self.p1_max_attempts, self.p1_backoff_seconds),
            "P2": (self.p2_max_attempts, self.p2_backoff_seconds),
            "P3": (self.p3_max_attempts, self.p3_backoff_seconds),
            "P4": (self.p4_max_attempts, self.p4_backoff_seconds),
        }

    @property
    def twilio_configured(self) -> bool:
        return bool(
            self.twilio_account_sid and self.twilio_auth_token and self.twilio_from_number
        )

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env.lower() == "production"


def validate_startup(settings: Settings) -> None:
    """
    Fail fast on configuration the pipeline cannot run without.

    Only the webhook secret is fatal: without it every inbound event would be
    rejected. Missing optional pieces are logged by the components using them.

    Raises:
        ConfigurationError: If WEBHOOK_SECRET is empty
    """
    if not settings.webhook_secret:
        raise ConfigurationError(
            "WEBHOOK_SECRET is not configured; refusing to accept webhooks",
            details={"missing": ["WEBHOOK_SECRET"]},
        )
    if settings.persistence_backend.lower() == "supabase" and not (
        settings.supabase_url and settings.supabase_service_key
    ):
        raise ConfigurationError(
            "PERSISTENCE_BACKEND=supabase requires SUPABASE_URL and SUPABASE_SERVICE_KEY",
            details={"missing": ["SUPABASE_URL", "SUPABASE_SERVICE_KEY"]},
        )


@lru_cache
def get_settings() -> Settings:
    """
    Cached settings instance.

    Use dependency injection in routes:
        settings: Settings = Depends(get_settings)
    """
    return Settings()


# Convenience export
settings = get_settings()
