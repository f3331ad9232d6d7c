"""Application settings loaded from environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application configuration.

    Values are read from environment variables (or a `.env` file).
    """

    # Supabase
    supabase_url: str
    supabase_anon_key: str
    supabase_service_key: str
    supabase_http_max_connections: int = 100
    supabase_http_max_keepalive_connections: int = 50
    supabase_postgrest_timeout_seconds: int = 30

    # App
    app_name: str = "SSG Ballot API"
    app_version: str = "1.0.0"
    environment: str = "development"
    log_level: str = "INFO"
    allowed_origins: str = "http://localhost:3000"
    enable_scheduler: bool = True

    # Election days and HH:MM ballot times are local to this zone
    timezone: str = "Asia/Manila"

    # Ballots
    ballot_issue_max_retries: int = 2
    ballot_issue_retry_delay_ms: int = 100
    expired_ballot_cleanup_minutes: int = 15
    max_timer_extension_minutes: int = 60

    # Auth
    auth_token_cache_ttl_seconds: int = 15
    auth_token_cache_max_entries: int = 1024
    staff_roles: str = "election_committee,admin"

    # Performance tuning
    slow_request_log_threshold_ms: int = 0
    slow_query_log_threshold_ms: int = 0

    @property
    def origins_list(self) -> list[str]:
        """Parse comma-separated ALLOWED_ORIGINS into a list."""
        return [o.strip() for o in self.allowed_origins.split(",") if o.strip()]

    @property
    def staff_roles_set(self) -> set[str]:
        """Parse comma-separated STAFF_ROLES into a set."""
        return {r.strip() for r in self.staff_roles.split(",") if r.strip()}

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


settings = Settings()  # type: ignore[call-arg]
