"""hCaptcha accessibility bypass cookies.

hCaptcha hands out an ``hc_accessibility`` cookie to users who sign up for its
accessibility programme. Browsers presenting it are challenged far less
often. The cookie is minted by visiting a personal signup link and pressing
"Set Cookie", which is slow (a full browser launch), so the resulting cookie
set is cached on disk until shortly before the marker cookie expires.

Everything here is best-effort: a missing link, a stale cache or a broken
signup page all degrade to "no bypass cookies" and the login continues.
"""

from __future__ import annotations

import json
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from gatepass.browser import BrowserLauncher, Page, launch_browser
from gatepass.cookies import Cookie, expires_at_least, is_cookie_record
from gatepass.fileio import atomic_write_bytes
from gatepass.logging import get_logger
from gatepass.race import gather_or_cancel

if TYPE_CHECKING:
    from gatepass.config import GatepassSettings

LOG = get_logger(__name__)

MARKER_COOKIE = "hc_accessibility"
CACHE_BUFFER_SECONDS = 5 * 60
SET_COOKIE_BUTTON = "button[data-cy='setAccessibilityCookie']:not([disabled])"
FETCH_STATUS = "span[data-cy='fetchStatus']"
SUCCESS_MESSAGE = "Cookie set."
SETUP_HINT = (
    "Sign up at https://www.hcaptcha.com/accessibility and set the emailed link "
    "as GATEPASS_HCAPTCHA_ACCESSIBILITY_URL"
)

# Serializes cache writers across every BypassCookieCache in the process
_CACHE_WRITE_LOCK = threading.Lock()


@dataclass(frozen=True)
class BypassResult:
    """Outcome of a bypass cookie acquisition.

    Attributes:
        cookies: Cookies to inject into the login browser (may be empty).
        degraded: True when the login will run without bypass cookies because
            the link isn't configured or acquisition failed.
        reason: Why the result is degraded (``not_configured`` or the error).
        from_cache: True when the cookies came from the on-disk cache.
    """

    cookies: list[Cookie] = field(default_factory=list)
    degraded: bool = False
    reason: str | None = None
    from_cache: bool = False

    @classmethod
    def failed(cls, reason: str) -> BypassResult:
        return cls(cookies=[], degraded=True, reason=reason)


class BypassCookieCache:
    """On-disk cache for the bypass cookie set.

    The cache file is a JSON array of cookie records. Reads never raise: any
    problem reading the file is treated as a cache miss.
    """

    def __init__(
        self,
        path: Path,
        *,
        buffer_seconds: float = CACHE_BUFFER_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the cache.

        Args:
            path: Cache file location.
            buffer_seconds: Minimum remaining marker lifetime for a hit.
            clock: Returns the current Unix time (injectable for tests).
        """
        self.path = path
        self.buffer_seconds = buffer_seconds
        self._clock = clock

    def load_cached(self) -> list[Cookie] | None:
        """Return the cached cookie set if it is still fresh.

        Returns:
            Cached cookies, or None if the file is missing, unreadable,
            malformed, lacks the marker cookie, or the marker expires within
            the buffer.
        """
        try:
            data = json.loads(self.path.read_text())
        except FileNotFoundError:
            LOG.debug("bypass_cache_missing", path=str(self.path))
            return None
        except (OSError, ValueError) as exc:
            LOG.debug("bypass_cache_unreadable", path=str(self.path), error=str(exc))
            return None

        if not isinstance(data, list) or not all(is_cookie_record(c) for c in data):
            LOG.debug("bypass_cache_malformed", path=str(self.path))
            return None

        if not expires_at_least(data, MARKER_COOKIE, self.buffer_seconds, now=self._clock()):
            LOG.debug("bypass_cache_stale", path=str(self.path))
            return None

        LOG.debug("bypass_cache_hit", count=len(data))
        return data

    def save(self, cookies: list[Cookie]) -> None:
        """Replace the cached cookie set atomically.

        Args:
            cookies: Cookie records to cache.
        """
        payload = json.dumps(cookies).encode()
        with _CACHE_WRITE_LOCK:
            atomic_write_bytes(self.path, payload)
        LOG.debug("bypass_cache_saved", path=str(self.path), count=len(cookies))

    def clear(self) -> bool:
        """Delete the cache file.

        Returns:
            True if a file was removed.
        """
        with _CACHE_WRITE_LOCK:
            if not self.path.exists():
                return False
            self.path.unlink()
        return True


async def _mint_bypass_cookies(page: Page, url: str, settings: GatepassSettings) -> list[Cookie]:
    """Drive the accessibility signup page and return every cookie it leaves."""
    LOG.debug("navigating_to_accessibility_page")
    await page.goto(url, timeout=settings.navigation_timeout_seconds)

    LOG.debug("waiting_for_set_cookie_button")
    button = await page.wait_for_selector(
        SET_COOKIE_BUTTON, timeout=settings.element_timeout_seconds
    )

    LOG.debug("clicking_set_cookie_button")
    status, _ = await gather_or_cancel(
        page.wait_for_selector(FETCH_STATUS, timeout=settings.element_timeout_seconds),
        page.click(button),
    )
    message = (await page.element_text(status)).strip()
    LOG.debug("hcaptcha_set_cookie_response", set_cookie_message=message)
    if message != SUCCESS_MESSAGE:
        LOG.warning("unexpected_set_cookie_response", set_cookie_message=message)

    return await page.get_all_cookies()


async def acquire_bypass_cookies(
    settings: GatepassSettings,
    *,
    cache: BypassCookieCache | None = None,
    launcher: BrowserLauncher = launch_browser,
) -> BypassResult:
    """Return hCaptcha accessibility cookies, minting new ones on a cache miss.

    Never raises for browser or network problems; those produce a degraded
    result so the caller's login can proceed without bypass cookies.

    Args:
        settings: Explicit configuration (bypass URL, timeouts, paths).
        cache: Cache to consult and update. Defaults to the settings' cache file.
        launcher: Browser factory (async context manager yielding a ``Page``).

    Returns:
        BypassResult describing the cookies and whether the result is degraded.
    """
    url = settings.hcaptcha_accessibility_url
    if not url:
        LOG.warning("hcaptcha_accessibility_url_not_configured", hint=SETUP_HINT)
        return BypassResult.failed("not_configured")

    if cache is None:
        cache = BypassCookieCache(settings.bypass_cache_file)

    cached = cache.load_cached()
    if cached is not None:
        return BypassResult(cookies=cached, from_cache=True)

    LOG.debug("setting_hcaptcha_accessibility_cookies")
    try:
        async with launcher(headless=True) as page:
            cookies = await _mint_bypass_cookies(page, url, settings)
        cache.save(cookies)
    except Exception as exc:  # noqa: BLE001
        LOG.warning(
            "hcaptcha_accessibility_cookies_failed",
            error=str(exc),
            exc_type=type(exc).__name__,
            hint="Continuing without hCaptcha accessibility cookies",
        )
        return BypassResult.failed(str(exc) or type(exc).__name__)

    LOG.info("hcaptcha_accessibility_cookies_refreshed", count=len(cookies))
    return BypassResult(cookies=cookies)
