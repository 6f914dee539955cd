"""gatepass - keep challenge-guarded web logins alive.

Log in through a real browser, get past hCaptcha with cached accessibility
cookies (or a human, via a portal onto the live browser), answer TOTP
prompts automatically, and keep the resulting cookies in an encrypted
per-account store.

Example:
    >>> import asyncio
    >>> from gatepass import AccountLogin, LoginContext, get_settings
    >>> settings = get_settings()
    >>> account = settings.account("me@example.com")
    >>> result = asyncio.run(AccountLogin(LoginContext.from_account(account), settings).login())
    >>> result.outcome
    <ChallengeKind.NONE: 'no_challenge'>
"""

from gatepass.config import AccountConfig, GatepassSettings, get_settings
from gatepass.cookies import Cookie, merge_cookies, to_cookiejar
from gatepass.exceptions import (
    BrowserError,
    BrowserTimeoutError,
    ConfigError,
    CookieStoreError,
    EncryptionError,
    GatepassError,
    LoginCancelledError,
    LoginError,
    NotificationError,
    TOTPRequiredError,
)
from gatepass.hcaptcha import BypassCookieCache, BypassResult, acquire_bypass_cookies
from gatepass.login import (
    AccountLogin,
    ChallengeKind,
    LoginContext,
    LoginResult,
    LoginState,
    login_all,
)
from gatepass.notify import PortalNotification, build_notifier
from gatepass.repository import CookieRepository, LocalCookieRepository

__version__ = "0.1.0"

__all__ = [
    # Version
    "__version__",
    # Login
    "AccountLogin",
    "ChallengeKind",
    "LoginContext",
    "LoginResult",
    "LoginState",
    "login_all",
    # Bypass cookies
    "BypassCookieCache",
    "BypassResult",
    "acquire_bypass_cookies",
    # Cookie storage
    "Cookie",
    "CookieRepository",
    "LocalCookieRepository",
    "merge_cookies",
    "to_cookiejar",
    # Notifications
    "PortalNotification",
    "build_notifier",
    # Configuration
    "AccountConfig",
    "GatepassSettings",
    "get_settings",
    # Exceptions
    "GatepassError",
    "BrowserError",
    "BrowserTimeoutError",
    "ConfigError",
    "CookieStoreError",
    "EncryptionError",
    "LoginError",
    "LoginCancelledError",
    "NotificationError",
    "TOTPRequiredError",
]
