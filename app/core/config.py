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
    # Supabase
    supabase_url: str = ""
    supabase_publishable_key: str = ""  # anon key, safe to expose
    supabase_secret_key: str = ""       # service role, bypasses RLS

    # Stripe
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_api_base: str = "https://api.stripe.com"

    # Stripe prices (one-time activation fees)
    stripe_price_basic_activation: str = "price_1SEAd8JBeBAzL7Rp3mcoV0B7"
    stripe_price_premium_activation: str = "price_1SEAdXJBeBAzL7Rpgd1Np2jF"

    # Stripe prices (recurring)
    stripe_price_basic_monthly: str = "price_1SEAhZJBeBAzL7Rp3bhblPJG"
    stripe_price_basic_metered: str = "price_1SIn0XJBeBAzL7Rp40cecUXX"
    stripe_price_premium_monthly: str = "price_1SEAhJJBeBAzL7RplovGzWXL"
    stripe_price_premium_metered: str = "price_1SImzyJBeBAzL7RphdP9FhQP"

    # Dashboard (checkout redirects, billing portal return)
    web_app_url: str = "http://localhost:3000"

    # Server
    environment: str = "development"
    cors_allowed_origins: str = "*"  # comma separated, "*" for any

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()


def get_allowed_origins() -> list[str]:
    """Parse the configured CORS origins into a list."""
    return [o.strip() for o in settings.cors_allowed_origins.split(",") if o.strip()]
