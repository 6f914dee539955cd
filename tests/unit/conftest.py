"""Shared fakes for unit tests that drive the login and bypass flows."""

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import pytest

from gatepass.exceptions import BrowserTimeoutError


class FakeElement:
    """Stand-in for a DOM element handle."""

    def __init__(self, selector: str, text: str = "") -> None:
        self.selector = selector
        self.text = text

    def __repr__(self) -> str:
        return f"FakeElement({self.selector!r})"


class FakePage:
    """Scripted ``Page``.

    Args:
        appear: Selector -> seconds after creation at which it shows up.
            Selectors not listed never appear; waiting for them times out.
        navigations: One entry per ``wait_for_navigation`` call, in order.
            A number is how long that navigation takes to settle; None means
            it never settles. Calls past the end of the list never settle.
        cookies: What ``get_all_cookies`` returns.
        texts: Selector -> text returned by ``element_text``.
        portal_url: What ``open_portal`` returns.
    """

    def __init__(
        self,
        *,
        appear: dict[str, float] | None = None,
        navigations: list[float | None] | None = None,
        cookies: list[dict] | None = None,
        texts: dict[str, str] | None = None,
        portal_url: str = "http://127.0.0.1:9222/devtools/inspector.html?ws=x",
        screenshot_error: Exception | None = None,
    ) -> None:
        self.appear = appear or {}
        self.navigations = list(navigations or [])
        self.cookies = cookies or []
        self.texts = texts or {}
        self.portal_url = portal_url
        self.screenshot_error = screenshot_error
        self.calls: list[tuple[Any, ...]] = []
        self.injected: list[dict] = []
        self.typed: dict[str, str] = {}
        self.clicked: list[str] = []
        self.screenshots: list[Path] = []
        self.portal_open = False
        self._created = asyncio.get_running_loop().time()

    async def goto(self, url: str, *, timeout: float = 60) -> str:
        self.calls.append(("goto", url))
        return url

    async def wait_for_selector(self, selector: str, *, timeout: float = 30) -> Any:
        self.calls.append(("wait_for_selector", selector))
        if selector not in self.appear:
            await asyncio.sleep(timeout)
            raise BrowserTimeoutError(f"Timed out after {timeout}s waiting for '{selector}'")
        elapsed = asyncio.get_running_loop().time() - self._created
        remaining = self.appear[selector] - elapsed
        if remaining > timeout:
            await asyncio.sleep(timeout)
            raise BrowserTimeoutError(f"Timed out after {timeout}s waiting for '{selector}'")
        await asyncio.sleep(max(remaining, 0))
        return FakeElement(selector, self.texts.get(selector, ""))

    async def wait_for_navigation(self, *, timeout: float = 60, idle_time: float = 0.5) -> str:
        self.calls.append(("wait_for_navigation",))
        delay = self.navigations.pop(0) if self.navigations else None
        if delay is None or delay > timeout:
            await asyncio.sleep(timeout)
            raise BrowserTimeoutError(f"Timed out after {timeout}s waiting for navigation")
        await asyncio.sleep(delay)
        return "https://www.epicgames.com/account/personal"

    async def type_text(self, element: FakeElement, text: str) -> None:
        self.typed[element.selector] = text

    async def click(self, element: FakeElement, *, delay: float = 0.1) -> None:
        self.clicked.append(element.selector)

    async def element_text(self, element: FakeElement) -> str:
        return element.text

    async def set_cookies(self, cookies: list[dict]) -> int:
        self.injected.extend(cookies)
        return len(cookies)

    async def get_all_cookies(self) -> list[dict]:
        return list(self.cookies)

    async def screenshot(self, path: Path) -> Path:
        if self.screenshot_error is not None:
            raise self.screenshot_error
        self.screenshots.append(path)
        return path

    async def open_portal(self) -> str:
        self.portal_open = True
        return self.portal_url

    async def close_portal(self) -> None:
        self.portal_open = False


class FakeLauncher:
    """Browser launcher that yields prepared pages and records lifecycle."""

    def __init__(self, *pages: FakePage) -> None:
        self.pages = list(pages)
        self.launches: list[dict[str, Any]] = []
        self.closed = 0

    @asynccontextmanager
    async def __call__(self, **kwargs: Any):
        self.launches.append(kwargs)
        page = self.pages.pop(0)
        try:
            yield page
        finally:
            self.closed += 1


@pytest.fixture
def fake_page_factory():
    """Build FakePage instances (must be called inside a running loop)."""
    return FakePage


@pytest.fixture
def fake_launcher_factory():
    return FakeLauncher
