"""
Service configuration
Reads environment variables (with .env support in local development)
"""
import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel


# Only load .env file in development environment (local)
# In production, read from system environment variables
if os.getenv("ENVIRONMENT") != "production":
    env_path = Path(__file__).parent.parent.resolve() / ".env"
    if env_path.exists():
        load_dotenv(dotenv_path=str(env_path), override=False)


class Settings(BaseModel):
    """Billing lifecycle settings"""
    environment: str = "development"
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""

    # Stripe Price IDs per tier/interval (basic is free, no price)
    price_premium_monthly: Optional[str] = None
    price_premium_yearly: Optional[str] = None
    price_elite_monthly: Optional[str] = None
    price_elite_yearly: Optional[str] = None

    frontend_url: str = "http://localhost:3000"

    # Gateway call policy
    gateway_timeout_seconds: float = 10.0
    read_retry_attempts: int = 3
    retry_wait_multiplier: float = 0.5
    retry_wait_max: float = 4.0

    # Optimistic write retries per record mutation
    record_mutation_attempts: int = 5

    store_backend: str = "memory"  # memory | supabase
    supabase_url: str = ""
    supabase_service_role_key: str = ""

    log_level: str = "INFO"

    @property
    def checkout_success_url(self) -> str:
        return f"{self.frontend_url}/subscription/success?session_id={{CHECKOUT_SESSION_ID}}"

    @property
    def checkout_cancel_url(self) -> str:
        return f"{self.frontend_url}/subscription/cancel"


def load_settings() -> Settings:
    """Build settings from the current environment"""
    env = os.getenv
    return Settings(
        environment=env("ENVIRONMENT", "development"),
        stripe_secret_key=env("STRIPE_SECRET_KEY", ""),
        stripe_webhook_secret=env("STRIPE_WEBHOOK_SECRET", ""),
        price_premium_monthly=env("STRIPE_PRICE_PREMIUM_MONTHLY"),
        price_premium_yearly=env("STRIPE_PRICE_PREMIUM_YEARLY"),
        price_elite_monthly=env("STRIPE_PRICE_ELITE_MONTHLY"),
        price_elite_yearly=env("STRIPE_PRICE_ELITE_YEARLY"),
        frontend_url=env("FRONTEND_URL", "http://localhost:3000").rstrip("/"),
        gateway_timeout_seconds=float(env("BILLING_GATEWAY_TIMEOUT_SECONDS", "10")),
        read_retry_attempts=int(env("BILLING_READ_RETRY_ATTEMPTS", "3")),
        retry_wait_multiplier=float(env("BILLING_RETRY_WAIT_MULTIPLIER", "0.5")),
        retry_wait_max=float(env("BILLING_RETRY_WAIT_MAX", "4")),
        record_mutation_attempts=int(env("RECORD_MUTATION_ATTEMPTS", "5")),
        store_backend=env("MEMBERSHIP_STORE", "memory"),
        supabase_url=env("SUPABASE_URL", ""),
        supabase_service_role_key=env("SUPABASE_SERVICE_ROLE_KEY", ""),
        log_level=env("LOG_LEVEL", "INFO"),
    )


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance"""
    return load_settings()
