"""Browser session adapter over nodriver (CDP-direct Chrome automation).

The login flow and the bypass acquirer only talk to the ``Page`` protocol
below. ``NodriverPage`` implements it on a nodriver tab; tests substitute
fakes.

Logging:
    - **ERROR**: Browser launch failures
    - **WARNING**: Best-effort operations that failed (portal close, stop)
    - **DEBUG**: Element waits, navigation milestones, retries
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import urlparse

from gatepass.cookies import Cookie
from gatepass.exceptions import BrowserError, BrowserTimeoutError
from gatepass.logging import get_logger

LOG = get_logger(__name__)

DEFAULT_ELEMENT_TIMEOUT = 30.0  # seconds
DEFAULT_NAVIGATION_TIMEOUT = 60.0  # seconds
NETWORK_IDLE_TIME = 0.5  # seconds with zero in-flight requests
CLICK_DELAY = 0.1  # seconds between mouse press and release
_SELECT_ATTEMPT_TIMEOUT = 5.0  # cap per tab.select() call
_SELECT_RETRY_INTERVAL = 0.5  # seconds between select attempts


class Page(Protocol):
    """Operations the login flow needs from a browser tab.

    Element handles are opaque to callers; they are only passed back into
    ``type_text``, ``click`` and ``element_text``.
    """

    async def goto(self, url: str, *, timeout: float = DEFAULT_NAVIGATION_TIMEOUT) -> str:
        """Navigate to ``url`` and wait for network idle. Returns the final URL."""
        ...

    async def wait_for_selector(
        self, selector: str, *, timeout: float = DEFAULT_ELEMENT_TIMEOUT
    ) -> Any:
        """Wait for an element matching ``selector``.

        Raises:
            BrowserTimeoutError: If nothing matches within ``timeout``.
        """
        ...

    async def wait_for_navigation(
        self,
        *,
        timeout: float = DEFAULT_NAVIGATION_TIMEOUT,
        idle_time: float = NETWORK_IDLE_TIME,
    ) -> str:
        """Wait for the next main-frame navigation to finish loading and go idle.

        Raises:
            BrowserTimeoutError: If navigation doesn't settle within ``timeout``.
        """
        ...

    async def type_text(self, element: Any, text: str) -> None:
        """Type ``text`` into ``element``."""
        ...

    async def click(self, element: Any, *, delay: float = CLICK_DELAY) -> None:
        """Click ``element``, holding the button down for ``delay`` seconds."""
        ...

    async def element_text(self, element: Any) -> str:
        """Return the rendered text of ``element``."""
        ...

    async def set_cookies(self, cookies: list[Cookie]) -> int:
        """Inject cookies into the browser. Returns how many were set."""
        ...

    async def get_all_cookies(self) -> list[Cookie]:
        """Return every cookie the browser session holds, for all domains."""
        ...

    async def screenshot(self, path: Path) -> Path:
        """Save a PNG screenshot of the current viewport."""
        ...

    async def open_portal(self) -> str:
        """Expose the live tab to a human and return the URL to reach it."""
        ...

    async def close_portal(self) -> None:
        """Stop exposing the tab."""
        ...

    @property
    def portal_open(self) -> bool:
        """Whether a portal URL has been handed out and not closed."""
        ...


BrowserLauncher = Callable[..., AbstractAsyncContextManager[Page]]


def cookie_to_param(cookie: Cookie) -> Any:
    """Convert a cookie record to a CDP ``CookieParam``.

    Session cookies (``expires`` missing or ``-1``) are set without an expiry.
    """
    from nodriver import cdp

    expires = cookie.get("expires")
    same_site = cookie.get("sameSite")
    return cdp.network.CookieParam(
        name=cookie["name"],
        value=cookie["value"],
        domain=cookie.get("domain"),
        path=cookie.get("path"),
        secure=cookie.get("secure"),
        http_only=cookie.get("httpOnly"),
        same_site=cdp.network.CookieSameSite.from_json(same_site) if same_site else None,
        expires=(
            cdp.network.TimeSinceEpoch(float(expires))
            if isinstance(expires, int | float) and expires > 0
            else None
        ),
    )


def cookie_from_cdp(cookie: Any) -> Cookie:
    """Convert a CDP ``Cookie`` object to a cookie record.

    Keeps every attribute CDP reports (size, priority, partition key, ...).
    """
    return cookie.to_json()


def build_portal_url(host: str, port: int, target_id: str, base_url: str | None = None) -> str:
    """Build a DevTools inspector URL that remote-controls one tab.

    Args:
        host: Host the browser's remote debugging port listens on.
        port: Remote debugging port.
        target_id: CDP target id of the tab.
        base_url: Externally reachable URL that proxies to ``host:port``. When
            set, it replaces the local address in both the page URL and the
            websocket parameter.

    Returns:
        URL a human can open to see and drive the tab.

    Example:
        >>> build_portal_url("127.0.0.1", 9222, "ABC")
        'http://127.0.0.1:9222/devtools/inspector.html?ws=127.0.0.1:9222/devtools/page/ABC'
    """
    if base_url:
        parsed = urlparse(base_url)
        origin = f"{parsed.scheme}://{parsed.netloc}"
        ws_param = "wss" if parsed.scheme == "https" else "ws"
        prefix = parsed.path.rstrip("/")
        socket = f"{parsed.netloc}{prefix}/devtools/page/{target_id}"
        return f"{origin}{prefix}/devtools/inspector.html?{ws_param}={socket}"
    return f"http://{host}:{port}/devtools/inspector.html?ws={host}:{port}/devtools/page/{target_id}"


class _NavigationWatcher:
    """Tracks one navigation: main-frame load, then network idle.

    Handlers are registered synchronously in ``attach`` so that a navigation
    triggered right after attaching can't be missed.
    """

    def __init__(self, tab: Any, idle_time: float) -> None:
        self._tab = tab
        # CDP gives a page target's main frame the target's own id
        self._main_frame_id = str(tab.target.target_id)
        self._idle_time = idle_time
        self._loaded = asyncio.Event()
        self._inflight: set[str] = set()
        self._last_activity = asyncio.get_running_loop().time()
        self._handlers: list[tuple[Any, Callable[[Any], None]]] = []

    def _touch(self) -> None:
        self._last_activity = asyncio.get_running_loop().time()

    def _on_load(self, event: Any) -> None:
        self._touch()
        self._loaded.set()

    def _on_same_document(self, event: Any) -> None:
        if str(event.frame_id) != self._main_frame_id:
            return
        self._on_load(event)

    def _on_request(self, event: Any) -> None:
        self._inflight.add(str(event.request_id))
        self._touch()

    def _on_request_done(self, event: Any) -> None:
        self._inflight.discard(str(event.request_id))
        self._touch()

    def attach(self) -> None:
        from nodriver import cdp

        self._handlers = [
            (cdp.page.LoadEventFired, self._on_load),
            (cdp.page.NavigatedWithinDocument, self._on_same_document),
            (cdp.network.RequestWillBeSent, self._on_request),
            (cdp.network.LoadingFinished, self._on_request_done),
            (cdp.network.LoadingFailed, self._on_request_done),
        ]
        for event_type, handler in self._handlers:
            self._tab.add_handler(event_type, handler)

    def detach(self) -> None:
        for event_type, handler in self._handlers:
            try:
                self._tab.remove_handler(event_type, handler)
            except (KeyError, ValueError):
                LOG.debug("navigation_handler_already_removed", event=event_type.__name__)
        self._handlers = []

    async def wait(self) -> None:
        await self._loaded.wait()
        loop = asyncio.get_running_loop()
        while True:
            quiet_for = loop.time() - self._last_activity
            if not self._inflight and quiet_for >= self._idle_time:
                return
            await asyncio.sleep(min(self._idle_time, 0.1))


class NodriverPage:
    """``Page`` implementation backed by a nodriver browser and tab.

    Attributes:
        browser: The nodriver Browser instance.
        tab: The nodriver Tab all operations act on.
    """

    def __init__(self, browser: Any, tab: Any, portal_base_url: str | None = None) -> None:
        self.browser = browser
        self.tab = tab
        self._portal_base_url = portal_base_url
        self._portal_open = False

    async def _enable_domains(self) -> None:
        from nodriver import cdp

        await self.tab.send(cdp.page.enable())
        await self.tab.send(cdp.network.enable())

    async def goto(self, url: str, *, timeout: float = DEFAULT_NAVIGATION_TIMEOUT) -> str:
        from nodriver import cdp

        LOG.debug("navigating", url=url)
        watcher = _NavigationWatcher(self.tab, NETWORK_IDLE_TIME)
        watcher.attach()
        try:
            await self._enable_domains()
            await self.tab.send(cdp.page.navigate(url=url))
            async with asyncio.timeout(timeout):
                await watcher.wait()
        except TimeoutError as exc:
            raise BrowserTimeoutError(f"Timed out after {timeout}s loading {url}") from exc
        finally:
            watcher.detach()
        final_url = await self._current_url()
        LOG.debug("navigation_settled", url=final_url)
        return final_url

    async def _current_url(self) -> str:
        result = await self.tab.evaluate("window.location.href")
        return str(result) if result else ""

    async def wait_for_selector(
        self, selector: str, *, timeout: float = DEFAULT_ELEMENT_TIMEOUT
    ) -> Any:
        """Wait for a CSS selector, retrying through page transitions.

        nodriver's ``tab.select()`` retries internally while the element is
        missing, but during redirects the document node itself goes stale and
        ``select()`` raises ProtocolException instead. Those are retried here
        until the deadline.
        """
        if timeout <= 0:
            raise ValueError(f"timeout must be positive, got {timeout}")
        from nodriver.core.connection import ProtocolException

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            try:
                element = await self.tab.select(
                    selector, timeout=min(_SELECT_ATTEMPT_TIMEOUT, remaining)
                )
            except ProtocolException as exc:
                LOG.debug("select_retry", selector=selector, error=str(exc))
                element = None
            except TimeoutError:
                element = None
            if element is not None:
                LOG.debug("element_found", selector=selector)
                return element
            await asyncio.sleep(min(_SELECT_RETRY_INTERVAL, max(deadline - loop.time(), 0)))

        raise BrowserTimeoutError(f"Timed out after {timeout}s waiting for '{selector}'")

    async def wait_for_navigation(
        self,
        *,
        timeout: float = DEFAULT_NAVIGATION_TIMEOUT,
        idle_time: float = NETWORK_IDLE_TIME,
    ) -> str:
        watcher = _NavigationWatcher(self.tab, idle_time)
        watcher.attach()
        try:
            await self._enable_domains()
            async with asyncio.timeout(timeout):
                await watcher.wait()
        except TimeoutError as exc:
            raise BrowserTimeoutError(f"Timed out after {timeout}s waiting for navigation") from exc
        finally:
            watcher.detach()
        return await self._current_url()

    async def type_text(self, element: Any, text: str) -> None:
        # Click first so keystrokes land in the field
        await element.click()
        await element.send_keys(text)

    async def click(self, element: Any, *, delay: float = CLICK_DELAY) -> None:
        from nodriver import cdp

        await element.scroll_into_view()
        box = await self.tab.send(cdp.dom.get_box_model(backend_node_id=element.backend_node_id))
        quad = box.content
        x = sum(quad[0::2]) / 4
        y = sum(quad[1::2]) / 4
        await self.tab.send(
            cdp.input_.dispatch_mouse_event(
                "mousePressed", x=x, y=y, button=cdp.input_.MouseButton.LEFT, click_count=1
            )
        )
        await asyncio.sleep(delay)
        await self.tab.send(
            cdp.input_.dispatch_mouse_event(
                "mouseReleased", x=x, y=y, button=cdp.input_.MouseButton.LEFT, click_count=1
            )
        )

    async def element_text(self, element: Any) -> str:
        result = await element.apply("(el) => el.innerText")
        return str(result) if result is not None else ""

    async def set_cookies(self, cookies: list[Cookie]) -> int:
        from nodriver import cdp

        if not cookies:
            return 0
        params = [cookie_to_param(c) for c in cookies]
        await self.tab.send(cdp.network.set_cookies(cookies=params))
        LOG.debug("cookies_injected", count=len(params))
        return len(params)

    async def get_all_cookies(self) -> list[Cookie]:
        cookies = await self.browser.cookies.get_all()
        return [cookie_from_cdp(c) for c in cookies]

    async def screenshot(self, path: Path) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        await self.tab.save_screenshot(str(path))
        return path

    async def open_portal(self) -> str:
        config = self.browser.config
        url = build_portal_url(
            config.host, config.port, self.tab.target.target_id, self._portal_base_url
        )
        self._portal_open = True
        LOG.debug("portal_opened")
        return url

    async def close_portal(self) -> None:
        # The inspector URL stops working once the browser is stopped, which
        # the login flow does right after this; nothing to revoke here.
        if self._portal_open:
            self._portal_open = False
            LOG.debug("portal_closed")

    @property
    def portal_open(self) -> bool:
        """Whether a portal URL has been handed out and not closed."""
        return self._portal_open


async def _stop_browser(browser: Any) -> None:
    """Stop a nodriver browser; ``stop()`` is sync in some releases, async in others."""
    try:
        result = browser.stop()
        if inspect.isawaitable(result):
            await result
    except (RuntimeError, OSError) as exc:
        LOG.warning("browser_stop_failed", error=str(exc))


@asynccontextmanager
async def launch_browser(
    *,
    headless: bool = True,
    browser_args: list[str] | None = None,
    portal_base_url: str | None = None,
    **options: Any,
) -> AsyncIterator[NodriverPage]:
    """Launch an isolated Chrome and yield a page on a blank tab.

    The browser uses a throwaway profile and is stopped on every exit path.

    Args:
        headless: Run without a visible window.
        browser_args: Extra Chrome command line switches.
        portal_base_url: Public URL proxied to the DevTools port, used when
            building portal URLs.
        **options: Passed through to ``nodriver.start()``
            (``browser_executable_path``, ``lang``, ...).

    Raises:
        BrowserError: If Chrome cannot be started.
    """
    try:
        import nodriver as uc
    except ImportError as exc:
        raise BrowserError("nodriver package not installed. Install with: pip install nodriver") from exc

    # --test-type suppresses Chrome's "unsupported flag" warning banner
    args = ["--test-type", *(browser_args or [])]
    LOG.debug("browser_launching", headless=headless)
    try:
        browser = await uc.start(
            headless=headless,
            sandbox=options.pop("sandbox", False),
            browser_args=args,
            **options,
        )
        tab = await browser.get("about:blank")
    except (RuntimeError, ConnectionError, TimeoutError, OSError) as exc:
        LOG.error("browser_launch_failed", error=str(exc), headless=headless)
        raise BrowserError(f"Failed to start browser: {exc}") from exc

    try:
        yield NodriverPage(browser, tab, portal_base_url=portal_base_url)
    finally:
        await _stop_browser(browser)
        LOG.debug("browser_stopped")
