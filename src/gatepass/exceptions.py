"""Custom exceptions for gatepass package."""

import asyncio


class GatepassError(Exception):
    """Base exception class for all gatepass errors."""


class ConfigError(GatepassError):
    """Raised when required configuration is missing or invalid."""


class BrowserError(GatepassError):
    """Raised when browser automation or interaction fails."""


class BrowserTimeoutError(BrowserError, asyncio.TimeoutError):
    """Raised when a selector or navigation wait exceeds its timeout."""


class EncryptionError(GatepassError):
    """Raised when encryption or decryption operations fail."""


class CookieStoreError(GatepassError):
    """Raised when the cookie repository cannot be read or written."""


class NotificationError(GatepassError):
    """Raised when a notification channel fails to deliver a message."""


class LoginError(GatepassError):
    """Raised when a login attempt fails and cannot continue.

    Attributes:
        email: Identity the attempt was made for, if known.
    """

    def __init__(self, message: str, email: str | None = None) -> None:
        super().__init__(message)
        self.email = email


class TOTPRequiredError(LoginError):
    """Multi-factor authentication was requested but no TOTP secret is configured.

    This is a configuration problem, not a transient failure. Retrying the
    login without adding a TOTP secret for the account will fail the same way.
    """

    def __init__(self, email: str | None = None) -> None:
        super().__init__("TOTP secret required for MFA login", email=email)


class LoginCancelledError(LoginError):
    """Raised when an operator cancels a login attempt that is waiting on a human."""
