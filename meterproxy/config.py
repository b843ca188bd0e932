"""
meterproxy Application Configuration
=====================================

PURPOSE:
    Pydantic-Settings based configuration for the meterproxy backend.
    All settings can be overridden via environment variables (METERPROXY_ prefix)
    or a local .env file.

    A Settings instance is built once at startup and handed to the
    components that need it; nothing reads configuration implicitly.
"""

import logging
import secrets
from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Runtime configuration for the proxy, billing mirror and storage."""

    model_config = SettingsConfigDict(env_file=".env", env_prefix="METERPROXY_")

    app_name: str = "meterproxy"
    debug: bool = False

    # Storage
    database_url: str = "sqlite:///data/meterproxy.db"
    run_migrations: bool = True  # False → create tables from SQLModel metadata
    # Attempts for a versioned (compare-and-swap) subscription update
    cas_max_attempts: int = 5

    # Logging
    log_level: str = "INFO"
    log_dir: Optional[str] = None  # None → stderr only

    # Completion provider
    ai_provider: str = "venice"  # "venice" | "openai"
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-3.5-turbo"
    venice_api_key: Optional[str] = None
    venice_model: str = "llama-3.3-70b"
    completion_timeout_s: float = 30.0
    default_max_tokens: int = 1000
    max_tokens_limit: int = 32_000

    # Stripe billing
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    # Price ids for each tier; replace with the ids from the Stripe dashboard
    stripe_price_basic: str = "price_basic"
    stripe_price_pro: str = "price_pro"
    stripe_price_premium: str = "price_premium"

    # API key hashing (HMAC-SHA256 pepper)
    api_key_hmac_secret: Optional[str] = None
    auth_cache_ttl: int = 60  # seconds a validated key is cached

    # CORS
    cors_origins: List[str] = ["http://localhost:3000"]

    def get_api_key_secret(self) -> str:
        """Return the API key HMAC secret, auto-generating if not set.

        Auto-generated secrets are ephemeral: every issued API key stops
        validating on restart. Set METERPROXY_API_KEY_HMAC_SECRET in production.
        """
        if self.api_key_hmac_secret:
            return self.api_key_hmac_secret

        logger.warning(
            "API_KEY_HMAC_SECRET not set; auto-generating an ephemeral secret. "
            "Issued API keys will stop working on restart. "
            "Set METERPROXY_API_KEY_HMAC_SECRET in production."
        )
        self.api_key_hmac_secret = secrets.token_hex(32)
        return self.api_key_hmac_secret


@lru_cache
def get_settings() -> Settings:
    """Process-wide settings, read from the environment on first call."""
    return Settings()
