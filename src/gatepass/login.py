"""Browser login with CAPTCHA hand-off and TOTP multi-factor support.

One ``AccountLogin`` drives one login attempt for one identity:

1. fetch hCaptcha accessibility cookies (cached, best-effort)
2. open a browser with those and the identity's stored cookies
3. fill in and submit the login form
4. branch on what the site does next::

       INIT -> SUBMITTED -> NO_CHALLENGE --------------------------> DONE
                         -> CAPTCHA -> AWAITING_HUMAN -> MFA? -----> DONE
                         -> MFA ------------------------------------> DONE

5. merge the login site's cookies into the identity's stored cookies

Any error after the browser opens is fatal for the attempt: a screenshot is
saved, the browser is closed, stored cookies are left untouched and the error
propagates. Nothing is retried here.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

from pydantic import SecretStr

from gatepass.browser import BrowserLauncher, Page, launch_browser
from gatepass.cookies import Cookie, cookies_for_host
from gatepass.exceptions import LoginCancelledError, TOTPRequiredError
from gatepass.hcaptcha import BypassCookieCache, BypassResult, acquire_bypass_cookies
from gatepass.logging import get_logger
from gatepass.mfa.totp import generate_totp, get_totp_remaining_seconds
from gatepass.notify import Notifier, PortalNotification, build_notifier
from gatepass.race import first_completed, gather_or_cancel
from gatepass.repository import CookieRepository, LocalCookieRepository, identity_slug

if TYPE_CHECKING:
    from gatepass.config import AccountConfig, GatepassSettings

LOG = get_logger(__name__)

EMAIL_INPUT = "#email"
PASSWORD_INPUT = "#password"
SIGN_IN_BUTTON = "#sign-in:not([disabled])"
CAPTCHA_FRAME = "iframe[src*='hcaptcha']"
MFA_INPUT = 'input[name="code-input-0"]'
CONTINUE_BUTTON = "button#continue:not([disabled])"

# A code this close to rollover may expire before the site checks it.
MIN_TOTP_REMAINING_SECONDS = 3


class LoginState(StrEnum):
    """Where a login attempt currently is."""

    INIT = "init"
    SUBMITTED = "submitted"
    NO_CHALLENGE = "no_challenge"
    CAPTCHA = "captcha"
    AWAITING_HUMAN = "awaiting_human"
    MFA = "mfa"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ChallengeKind(StrEnum):
    """What the site asked for after the credentials were submitted."""

    NONE = "no_challenge"
    CAPTCHA = "captcha"
    MFA = "mfa"


@dataclass(frozen=True)
class LoginContext:
    """Credentials for one login attempt. Never persisted.

    Attributes:
        email: Login identity.
        password: Account password.
        totp_secret: Base32 TOTP secret, if the account uses MFA.
    """

    email: str
    password: SecretStr
    totp_secret: SecretStr | None = None

    @classmethod
    def from_account(cls, account: AccountConfig) -> LoginContext:
        return cls(email=account.email, password=account.password, totp_secret=account.totp)


@dataclass(frozen=True)
class ChallengeOutcome:
    """Result of the post-submit race.

    Attributes:
        kind: Which observation won.
        element: The element that appeared (MFA input or CAPTCHA frame), if any.
    """

    kind: ChallengeKind
    element: Any = None


@dataclass(frozen=True)
class LoginResult:
    """Summary of a successful login.

    Attributes:
        email: Identity that logged in.
        outcome: Challenge the site presented after submit.
        mfa_used: Whether a TOTP code was entered.
        cookie_count: Cookies stored for the identity after the merge.
        bypass: How the bypass cookie acquisition went.
        portal_url: Portal handed to the operator, if a CAPTCHA was shown.
    """

    email: str
    outcome: ChallengeKind
    mfa_used: bool
    cookie_count: int
    bypass: BypassResult
    portal_url: str | None = None


class AccountLogin:
    """Drive a browser through the login form for one identity.

    Example:
        >>> attempt = AccountLogin(LoginContext.from_account(account), settings)
        >>> result = await attempt.login()
        >>> result.outcome
        <ChallengeKind.NONE: 'no_challenge'>

    While ``state`` is ``awaiting_human`` another task (or thread) may call
    ``cancel()`` to abort the attempt.
    """

    def __init__(
        self,
        context: LoginContext,
        settings: GatepassSettings,
        *,
        repository: CookieRepository | None = None,
        notifier: Notifier | None = None,
        launcher: BrowserLauncher = launch_browser,
        bypass_cache: BypassCookieCache | None = None,
    ) -> None:
        """Initialize a login attempt.

        Args:
            context: Identity and secrets for this attempt.
            settings: Explicit configuration (URLs, timeouts, paths).
            repository: Durable cookie storage. Defaults to the local
                encrypted repository under ``settings.cookies_dir``.
            notifier: Operator notification channel. Defaults to
                ``build_notifier(settings)``.
            launcher: Browser factory (async context manager yielding a Page).
            bypass_cache: hCaptcha bypass cache. Defaults to the settings'
                cache file.
        """
        self.context = context
        self.settings = settings
        self.repository = repository or LocalCookieRepository(
            settings.cookies_dir, settings.config_dir
        )
        self.notifier = notifier or build_notifier(settings)
        self._launcher = launcher
        self._bypass_cache = bypass_cache or BypassCookieCache(settings.bypass_cache_file)
        self._state = LoginState.INIT
        self._cancel_event = asyncio.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._portal_url: str | None = None
        self.L = LOG.bind(user=context.email)

    @property
    def state(self) -> LoginState:
        """Current position in the login state machine."""
        return self._state

    def _set_state(self, state: LoginState) -> None:
        self.L.debug("login_state_changed", previous=str(self._state), state=str(state))
        self._state = state

    def cancel(self) -> None:
        """Abort the attempt if it is waiting on a human.

        Safe to call from any thread. Has no effect once the attempt finished.
        """
        self.L.info("login_cancel_requested", state=str(self._state))
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._cancel_event.set)
        else:
            self._cancel_event.set()

    async def login(self) -> LoginResult:
        """Run the login attempt.

        Returns:
            LoginResult describing what happened.

        Raises:
            TOTPRequiredError: MFA was requested and no TOTP secret is configured.
            LoginCancelledError: ``cancel()`` was called while waiting on a human.
            BrowserError: A page element or navigation didn't show up in time,
                or the browser failed.
            CookieStoreError: Stored cookies couldn't be read or written.
        """
        self._loop = asyncio.get_running_loop()
        self._set_state(LoginState.INIT)

        bypass = await acquire_bypass_cookies(
            self.settings, cache=self._bypass_cache, launcher=self._launcher
        )
        if bypass.degraded:
            self.L.debug("login_without_bypass_cookies", reason=bypass.reason)

        site_host = urlparse(self.settings.login_url).hostname or ""
        user_cookies = cookies_for_host(self.repository.get_cookies(self.context.email), site_host)

        self.L.debug("logging_in_with_browser")
        try:
            async with self._launcher(
                headless=self.settings.headless,
                portal_base_url=self.settings.portal_base_url,
            ) as page:
                try:
                    outcome, mfa_used = await self._run(page, [*bypass.cookies, *user_cookies])
                    self.L.debug("saving_new_cookies")
                    cookies = await page.get_all_cookies()
                except LoginCancelledError:
                    raise
                except Exception:
                    await self._save_screenshot(page)
                    raise
        except LoginCancelledError:
            self._set_state(LoginState.CANCELLED)
            self.L.warning("login_cancelled")
            raise
        except Exception as exc:
            self._set_state(LoginState.FAILED)
            self.L.error("login_failed", error=str(exc), exc_type=type(exc).__name__)
            raise

        # The browser jar also holds the bypass cookies and anything third-party
        session_cookies = cookies_for_host(cookies, site_host)
        self.L.debug(
            "session_cookies_scoped",
            host=site_host,
            kept=len(session_cookies),
            dropped=len(cookies) - len(session_cookies),
        )
        stored = self.repository.merge_cookies(self.context.email, session_cookies)
        self._set_state(LoginState.DONE)
        self.L.info("login_succeeded", outcome=str(outcome.kind), mfa_used=mfa_used)
        return LoginResult(
            email=self.context.email,
            outcome=outcome.kind,
            mfa_used=mfa_used,
            cookie_count=len(stored),
            bypass=bypass,
            portal_url=self._portal_url,
        )

    async def _run(self, page: Page, cookies: list[Cookie]) -> tuple[ChallengeOutcome, bool]:
        """Fill in the form, submit it, and handle whatever challenge follows."""
        element_timeout = self.settings.element_timeout_seconds

        await page.set_cookies(cookies)
        self.L.debug("navigating_to_login_page")
        await page.goto(self.settings.login_url, timeout=self.settings.navigation_timeout_seconds)

        self.L.debug("waiting_for_email_field")
        email_elem = await page.wait_for_selector(EMAIL_INPUT, timeout=element_timeout)
        self.L.debug("filling_email_field")
        await page.type_text(email_elem, self.context.email)

        self.L.debug("waiting_for_password_field")
        pass_elem = await page.wait_for_selector(PASSWORD_INPUT, timeout=element_timeout)
        self.L.debug("filling_password_field")
        await page.type_text(pass_elem, self.context.password.get_secret_value())

        self.L.debug("waiting_for_sign_in_button")
        sign_in = await page.wait_for_selector(SIGN_IN_BUTTON, timeout=element_timeout)
        # Remember me is checked by default
        self.L.debug("clicking_sign_in_button")
        self._set_state(LoginState.SUBMITTED)
        outcome, _ = await gather_or_cancel(self._detect_challenge(page), page.click(sign_in))

        if outcome.kind is ChallengeKind.NONE:
            self._set_state(LoginState.NO_CHALLENGE)
            return outcome, False
        if outcome.kind is ChallengeKind.MFA:
            return outcome, await self._enter_mfa_code(page, outcome.element)
        return outcome, await self._handle_captcha(page)

    async def _detect_challenge(self, page: Page) -> ChallengeOutcome:
        """Race the post-submit observations and classify the winner."""
        self.L.debug("waiting_for_sign_in_result")
        timeout = self.settings.navigation_timeout_seconds
        result = await first_completed(
            captcha=page.wait_for_selector(CAPTCHA_FRAME, timeout=timeout),
            mfa=page.wait_for_selector(MFA_INPUT, timeout=timeout),
            navigation=page.wait_for_navigation(timeout=timeout),
        )
        if result.label == "navigation":
            return ChallengeOutcome(ChallengeKind.NONE)
        if result.label == "mfa":
            self.L.debug("mfa_detected")
            return ChallengeOutcome(ChallengeKind.MFA, result.value)
        self.L.debug("captcha_detected")
        return ChallengeOutcome(ChallengeKind.CAPTCHA, result.value)

    async def _handle_captcha(self, page: Page) -> bool:
        """Hand the browser to a human, then pick up any MFA step that follows."""
        self._set_state(LoginState.CAPTCHA)
        portal_url = await page.open_portal()
        self._portal_url = portal_url
        try:
            await self.notifier.notify(
                PortalNotification(portal_url=portal_url, identity=self.context.email)
            )
            self._set_state(LoginState.AWAITING_HUMAN)
            return await self._handle_mfa(page)
        finally:
            if page.portal_open:
                await page.close_portal()

    async def _handle_mfa(self, page: Page) -> bool:
        """Wait (up to the human timeout) for either an MFA prompt or a finished login.

        Returns:
            True if a TOTP code was entered.
        """
        self.L.debug("waiting_for_mfa_possibility")
        timeout = self.settings.mfa_timeout_seconds
        result = await self._await_human(
            first_completed(
                mfa=page.wait_for_selector(MFA_INPUT, timeout=timeout),
                navigation=page.wait_for_navigation(timeout=timeout),
            )
        )
        if result.label == "navigation":
            return False
        self.L.debug("mfa_detected")
        return await self._enter_mfa_code(page, result.value)

    async def _enter_mfa_code(self, page: Page, code_input: Any) -> bool:
        self._set_state(LoginState.MFA)
        if self.context.totp_secret is None:
            raise TOTPRequiredError(self.context.email)
        remaining = get_totp_remaining_seconds()
        if remaining < MIN_TOTP_REMAINING_SECONDS:
            self.L.debug("waiting_for_next_totp_period", seconds=remaining)
            await asyncio.sleep(remaining)
        mfa_code = generate_totp(self.context.totp_secret.get_secret_value())
        self.L.debug("filling_mfa_field")
        await page.type_text(code_input, mfa_code)

        self.L.debug("waiting_for_continue_button")
        continue_button = await page.wait_for_selector(
            CONTINUE_BUTTON, timeout=self.settings.element_timeout_seconds
        )
        self.L.debug("clicking_continue_button")
        await gather_or_cancel(
            page.wait_for_navigation(timeout=self.settings.navigation_timeout_seconds),
            page.click(continue_button),
        )
        return True

    async def _await_human(self, observation: Awaitable[Any]) -> Any:
        """Await ``observation`` unless ``cancel()`` is called first."""
        result = await first_completed(
            observed=observation,
            cancelled=self._cancel_event.wait(),
        )
        if result.label == "cancelled":
            raise LoginCancelledError(
                f"Login for {self.context.email} was cancelled", email=self.context.email
            )
        return result.value

    async def _save_screenshot(self, page: Page) -> Path | None:
        """Best-effort diagnostic screenshot; never masks the original error."""
        path = self.settings.screenshots_dir / (
            f"{identity_slug(self.context.email)}-{time.strftime('%Y%m%d-%H%M%S')}.png"
        )
        try:
            saved = await page.screenshot(path)
        except Exception as exc:  # noqa: BLE001
            self.L.warning("login_screenshot_failed", error=str(exc))
            return None
        self.L.info("login_screenshot_saved", path=str(saved))
        return saved


async def login_all(
    settings: GatepassSettings,
    *,
    repository: CookieRepository | None = None,
    notifier: Notifier | None = None,
    launcher: BrowserLauncher = launch_browser,
) -> dict[str, LoginResult | Exception]:
    """Log in every configured account, one after another.

    A failure for one account is recorded and the next account still runs.

    Returns:
        Mapping of email to its LoginResult or the exception it failed with.
    """
    results: dict[str, LoginResult | Exception] = {}
    repository = repository or LocalCookieRepository(settings.cookies_dir, settings.config_dir)
    notifier = notifier or build_notifier(settings)
    for account in settings.accounts:
        attempt = AccountLogin(
            LoginContext.from_account(account),
            settings,
            repository=repository,
            notifier=notifier,
            launcher=launcher,
        )
        try:
            results[account.email] = await attempt.login()
        except Exception as exc:  # noqa: BLE001
            results[account.email] = exc
    return results
