"""
Configuration settings for the Provider Acceptance Verification API.
"""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Settings
    app_name: str = "Provider Acceptance Verification API"
    app_version: str = "0.1.0"
    debug: bool = False
    environment: str = "production"  # "test" and "development" bypass the bot check

    # Database
    database_url: str = "sqlite:///./acceptance.db"

    # Verification ledger
    observation_ttl_days: int = 180        # 6 months, matches annual turnover research
    duplicate_window_days: int = 30        # Sybil prevention window per provider/plan/fingerprint
    min_verifications_for_consensus: int = 3
    min_confidence_for_status_change: int = 60
    recent_observations_limit: int = 100
    pair_observations_limit: int = 50

    # Read cache
    cache_ttl_seconds: int = 300

    # Rate limiting
    rate_limit_backend: str = "memory"     # "memory" or "redis"
    redis_url: Optional[str] = None
    redis_socket_timeout: float = 1.0
    rate_limit_window_seconds: int = 3600
    rate_limit_default_max: int = 200
    rate_limit_search_max: int = 100
    rate_limit_submission_max: int = 10
    rate_limit_vote_max: int = 10
    rate_limit_fallback_max: int = 3       # Stricter budget while degraded
    rate_limit_sweep_seconds: int = 60
    rate_limit_expiry_grace_seconds: int = 60

    # Bot check (reCAPTCHA v3)
    recaptcha_secret_key: Optional[str] = None
    recaptcha_verify_url: str = "https://www.google.com/recaptcha/api/siteverify"
    captcha_min_score: float = 0.5
    captcha_timeout_seconds: float = 5.0
    captcha_fail_mode: str = "open"        # "open" or "closed"

    # Scheduled jobs
    decay_interval_minutes: int = 24 * 60
    decay_batch_size: int = 100
    cleanup_interval_minutes: int = 24 * 60
    cleanup_batch_size: int = 1000
    enable_scheduler: bool = False

    # API Security
    admin_secret: Optional[str] = None
    allowed_origins: str = "http://localhost:8000,http://localhost:3000"

    # Logging
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_prefix = "PV_"

    @property
    def bot_check_bypassed(self) -> bool:
        """True when the bot check should not run at all."""
        return self.environment in ("test", "development") or not self.recaptcha_secret_key


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
