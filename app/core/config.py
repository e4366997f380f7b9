import logging
import os
from functools import lru_cache

from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


def _load_doppler_secrets():
    """Load secrets from Doppler API into environment variables.

    Must run BEFORE Settings is instantiated so pydantic can read the env vars.
    """
    token = os.getenv("DOPPLER_TOKEN")
    if not token:
        return

    try:
        import requests
        response = requests.get(
            "https://api.doppler.com/v3/configs/config/secrets/download",
            params={"format": "json"},
            auth=(token, ""),
            timeout=30,
        )
        response.raise_for_status()
        secrets = response.json()

        for key, value in secrets.items():
            if key not in os.environ:  # Don't override existing env vars
                os.environ[key] = value

        logger.info(f"Loaded {len(secrets)} secrets from Doppler")
    except Exception as e:
        logger.warning(f"Failed to load Doppler secrets: {e}")


# Load Doppler secrets into environment BEFORE Settings is instantiated
_load_doppler_secrets()


class Settings(BaseSettings):
    # Environment
    environment: str = "development"

    # Supabase
    supabase_url: str = ""
    supabase_publishable_key: str = ""
    supabase_secret_key: str = ""
    supabase_jwt_secret: str = ""  # JWT secret for HS256 token verification
    db_timeout_seconds: int = 10

    # Stripe
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_monthly_price_id: str = ""
    stripe_annual_price_id: str = ""
    stripe_timeout_seconds: int = 20
    stripe_read_retries: int = 2

    # Redis (access snapshot cache)
    redis_url: str = "redis://localhost:6379/0"
    access_cache_ttl: int = 60  # seconds

    # Email (Resend)
    resend_api_key: str = ""
    email_from: str = "Writelikeyou <billing@writelikeyou.ai>"
    web_app_url: str = "http://localhost:3000"

    # Beta access codes: code -> ISO date the beta window closes
    beta_codes: dict[str, str] = {}

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    @property
    def price_plans(self) -> dict[str, str]:
        """Map each sellable price id to its plan type."""
        plans = {}
        if self.stripe_monthly_price_id:
            plans[self.stripe_monthly_price_id] = "monthly"
        if self.stripe_annual_price_id:
            plans[self.stripe_annual_price_id] = "annual"
        return plans


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
