"""TOTP (Time-based One-Time Password) utilities.

This module provides TOTP generation and verification using pyotp.
Codes are never logged, only their length.
"""

import time

import pyotp

from gatepass.logging import get_logger

LOG = get_logger(__name__)

TOTP_PERIOD_SECONDS = 30


def _get_totp(secret: str) -> pyotp.TOTP:
    """Get a TOTP object from the secret.

    Args:
        secret: Base32-encoded TOTP secret. Spaces are ignored and case is
            normalized, since authenticator setup pages often show the secret
            in lowercase groups of four.

    Returns:
        pyotp.TOTP instance.

    Raises:
        ValueError: If secret is invalid.
    """
    normalized = secret.replace(" ", "").upper()
    try:
        totp = pyotp.TOTP(normalized)
        # pyotp decodes lazily; force it so bad secrets fail here
        totp.byte_secret()
    except Exception as exc:
        raise ValueError(f"Invalid TOTP secret: {exc}") from exc
    return totp


def generate_totp(secret: str) -> str:
    """Generate a TOTP code from a secret.

    Args:
        secret: Base32-encoded TOTP secret (from authenticator setup).

    Returns:
        6-digit TOTP code as a string.

    Raises:
        ValueError: If secret is invalid.

    Example:
        >>> code = generate_totp("JBSWY3DPEHPK3PXP")
        >>> len(code)
        6
    """
    code = _get_totp(secret).now()
    LOG.debug("totp_generated", code_length=len(code))
    return code


def get_totp_remaining_seconds() -> int:
    """Get seconds remaining until the current TOTP period expires.

    Returns:
        Seconds remaining (1-30).
    """
    return TOTP_PERIOD_SECONDS - int(time.time() % TOTP_PERIOD_SECONDS)
