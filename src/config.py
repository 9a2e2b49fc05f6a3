"""Application configuration using Pydantic Settings."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings

# ===========================================
# Product Branding
# ===========================================
PRODUCT_NAME = "Trade Ledger Sync"
PRODUCT_TAGLINE = "Every broker, one trade journal."
PRODUCT_VERSION = "1.0.0"
PRODUCT_DESCRIPTION = "Connect your brokerage accounts. Trade Ledger Sync keeps the journal current."


@dataclass(frozen=True)
class PlatformAppConfig:
    """Application credentials registered with a broker's developer console."""

    client_id: str
    client_secret: str
    redirect_uri: str


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_url: str = "sqlite:///./trade_ledger.db"

    # Logging
    log_level: str = "INFO"

    # Public URL of the web app (OAuth redirects land here)
    app_base_url: str = "http://localhost:3000"

    # Default user (for single-user mode)
    default_user_email: str = "user@localhost"

    # API Security
    api_key: str = ""  # Set in .env for production

    # Broker HTTP calls
    request_timeout_seconds: float = 10.0

    # Sync
    sync_max_concurrency: int = 3
    sync_default_days: int = 90
    background_sync_interval_minutes: int = 30
    background_sync_lookback_hours: int = 24

    # Dhan
    dhan_client_id: str = ""
    dhan_client_secret: str = ""
    dhan_redirect_uri: str = ""

    # Upstox
    upstox_client_id: str = ""
    upstox_client_secret: str = ""
    upstox_redirect_uri: str = ""

    # Zerodha (Kite Connect api_key / api_secret)
    zerodha_client_id: str = ""
    zerodha_client_secret: str = ""
    zerodha_redirect_uri: str = ""

    # Angel One (SmartAPI key)
    angel_one_client_id: str = ""
    angel_one_client_secret: str = ""
    angel_one_redirect_uri: str = ""

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"

    def platform_app(self, platform: str) -> Optional[PlatformAppConfig]:
        """Build the application config for a platform.

        Args:
            platform: Platform identifier (e.g. 'DHAN', 'ANGEL_ONE')

        Returns:
            PlatformAppConfig, or None if the client id or secret is missing
        """
        prefix = _prefix(platform)
        client_id = getattr(self, f"{prefix}_client_id", "")
        client_secret = getattr(self, f"{prefix}_client_secret", "")
        if not client_id or not client_secret:
            return None

        return PlatformAppConfig(
            client_id=client_id,
            client_secret=client_secret,
            redirect_uri=self.redirect_uri(platform),
        )

    def redirect_uri(self, platform: str) -> str:
        """OAuth callback URL registered for a platform."""
        prefix = _prefix(platform)
        return getattr(self, f"{prefix}_redirect_uri", "") or (
            f"{self.app_base_url.rstrip('/')}/api/auth/{prefix.replace('_', '-')}/callback"
        )


def _prefix(platform) -> str:
    return str(getattr(platform, "value", platform)).lower()


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
