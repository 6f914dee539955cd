"""MFA (Multi-Factor Authentication) helpers.

Only TOTP is automated. CAPTCHA challenges are handed to a human through the
portal flow in ``gatepass.login``.
"""

from gatepass.mfa.totp import (
    generate_totp,
    get_totp_remaining_seconds,
)

__all__ = [
    "generate_totp",
    "get_totp_remaining_seconds",
]
