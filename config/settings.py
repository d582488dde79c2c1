"""
Kimland Stock Sync - Configuration Settings
Pydantic Settings for type-safe configuration from .env
"""

from pathlib import Path
from typing import Optional
from pydantic_settings import BaseSettings
from pydantic import Field

from src.models import Credentials, PlatformContext


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Kimland back-office
    kimland_base_url: str = Field(default="https://kimland.dz")
    kimland_email: str = Field(default="")
    kimland_username: str = Field(default="")
    kimland_password: str = Field(default="")
    kimland_timeout: float = Field(default=50.0)
    kimland_public_timeout: float = Field(default=30.0)

    # Shopify Admin API
    shopify_shop: str = Field(default="")
    shopify_access_token: str = Field(default="")
    shopify_api_version: str = Field(default="2024-10")
    shopify_timeout: float = Field(default=30.0)

    # Pipeline pacing (the remote site bans bursts)
    batch_delay_seconds: float = Field(default=2.0, gt=0)
    alternate_query_delay_seconds: float = Field(default=1.0, ge=0)
    max_alternate_queries: int = Field(default=3, ge=0)
    zero_missing_sizes: bool = Field(default=True)

    # Paths
    db_path: Path = Field(default=Path("./sync.db"))
    log_dir: Path = Field(default=Path("./logs"))

    # Logging
    log_level: str = Field(default="INFO")
    log_rotation_mb: int = Field(default=10)
    log_json_format: bool = Field(default=False)  # Enable JSON logs for production

    # Notifications
    discord_webhook_url: Optional[str] = Field(default=None)

    # Dashboard Authentication
    dashboard_username: str = Field(default="admin")
    dashboard_password: str = Field(default="")  # Empty = no auth required
    dashboard_auth_enabled: bool = Field(default=False)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"

    @property
    def kimland_configured(self) -> bool:
        """Check if Kimland credentials are configured."""
        return bool(self.kimland_email and self.kimland_password)

    @property
    def shopify_configured(self) -> bool:
        """Check if Shopify shop and token are configured."""
        return bool(self.shopify_shop and self.shopify_access_token)

    @property
    def discord_webhook_configured(self) -> bool:
        """Check if Discord webhook is configured."""
        return bool(self.discord_webhook_url)

    @property
    def kimland_credentials(self) -> Credentials:
        return Credentials(
            login_id=self.kimland_email,
            username=self.kimland_username,
            secret=self.kimland_password,
        )

    @property
    def platform_context(self) -> PlatformContext:
        return PlatformContext(shop=self.shopify_shop, access_token=self.shopify_access_token)


# Singleton instance
settings = Settings()
