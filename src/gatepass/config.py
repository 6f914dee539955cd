"""Configuration management with pydantic-settings."""

from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from gatepass.exceptions import ConfigError

DEFAULT_LOGIN_URL = "https://www.epicgames.com/id/login/epic"


class AccountConfig(BaseModel):
    """Credentials for one identity.

    Attributes:
        email: Login identity.
        password: Account password.
        totp: Base32 TOTP secret, required only if the account has MFA enabled.
    """

    email: str
    password: SecretStr
    totp: SecretStr | None = None


class GatepassSettings(BaseSettings):
    """gatepass application settings loaded from environment variables.

    All settings use the GATEPASS_ prefix for environment variables. Accounts
    are read from ``GATEPASS_ACCOUNTS`` as a JSON list of
    ``{"email": ..., "password": ..., "totp": ...}`` objects.
    """

    config_dir: Path = Field(
        default=Path.home() / ".config" / "gatepass",
        description="Configuration directory for gatepass data",
    )

    # Logging configuration
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="console", description="Log format: console or json")

    # hCaptcha accessibility bypass
    hcaptcha_accessibility_url: str | None = Field(
        default=None,
        description="Personal hCaptcha accessibility signup link used to mint bypass cookies",
    )

    # Login flow
    login_url: str = Field(default=DEFAULT_LOGIN_URL, description="Login page URL")
    headless: bool = Field(default=True, description="Run the browser headless")
    element_timeout_seconds: float = Field(
        default=30.0,
        description="Seconds to wait for login form elements",
    )
    navigation_timeout_seconds: float = Field(
        default=60.0,
        description="Seconds to wait for a page load to settle",
    )
    mfa_timeout_seconds: float = Field(
        default=24 * 60 * 60,
        description="Seconds to wait for a human to clear a CAPTCHA or MFA step",
    )
    screenshot_dir: Path | None = Field(
        default=None,
        description="Where diagnostic screenshots are written (default: <config_dir>/screenshots)",
    )

    # Human-in-the-loop
    portal_base_url: str | None = Field(
        default=None,
        description="Externally reachable base URL proxied to the browser's DevTools port",
    )
    notification_webhook_url: str | None = Field(
        default=None,
        description="Webhook that receives a JSON payload when a human must act",
    )

    accounts: list[AccountConfig] = Field(default_factory=list)

    model_config = SettingsConfigDict(
        env_prefix="GATEPASS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def __init__(self, **kwargs: Any) -> None:
        """Initialize settings and create config directory."""
        super().__init__(**kwargs)
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.cookies_dir.mkdir(parents=True, exist_ok=True)

    @property
    def cookies_dir(self) -> Path:
        """Get the per-identity cookie repository directory."""
        return self.config_dir / "cookies"

    @property
    def bypass_cache_file(self) -> Path:
        """Get the hCaptcha accessibility cookie cache file."""
        return self.config_dir / "hcaptcha-accessibility-cache.json"

    @property
    def screenshots_dir(self) -> Path:
        """Get the diagnostic screenshot directory."""
        return self.screenshot_dir or self.config_dir / "screenshots"

    def account(self, email: str) -> AccountConfig:
        """Look up a configured account by email.

        Args:
            email: Account identity (case-insensitive).

        Returns:
            Matching AccountConfig.

        Raises:
            ConfigError: If no account with that email is configured.
        """
        for account in self.accounts:
            if account.email.lower() == email.lower():
                return account
        raise ConfigError(
            f"No account configured for '{email}'. Add it to GATEPASS_ACCOUNTS."
        )


# Global settings instance
_settings: GatepassSettings | None = None


def get_settings() -> GatepassSettings:
    """Get or create the global settings instance."""
    global _settings
    if _settings is None:
        _settings = GatepassSettings()
    return _settings


def reset_settings() -> None:
    """Reset the global settings instance (useful for testing)."""
    global _settings
    _settings = None
