"""Application configuration via environment variables."""

from functools import lru_cache
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Supabase
    supabase_url: str = ""
    supabase_service_role: str = ""
    supabase_project_ref: Optional[str] = None
    supabase_anon_key: str = ""
    supabase_jwt_secret: str = ""

    # Stripe
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_currency: str = "gbp"

    # Gateway calls
    gateway_timeout_s: float = 20.0
    gateway_max_attempts: int = 3
    gateway_backoff_s: float = 0.5

    # "block" re-raises when a payee's status can't be fetched; "allow" lets the job start anyway
    payee_check_failure_policy: Literal["block", "allow"] = "block"

    # Connect onboarding redirects
    connect_refresh_url: str = "https://neighbrs.app/stripe-connect-refresh"
    connect_return_url: str = "https://neighbrs.app/stripe-connect-complete"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
