"""Tests for hCaptcha accessibility bypass cookies."""

import json
import time

import pytest

from gatepass.config import GatepassSettings
from gatepass.exceptions import BrowserError
from gatepass.hcaptcha import (
    FETCH_STATUS,
    MARKER_COOKIE,
    SET_COOKIE_BUTTON,
    SUCCESS_MESSAGE,
    BypassCookieCache,
    acquire_bypass_cookies,
)

NOW = 1_700_000_000.0
URL = "https://accounts.hcaptcha.com/verify_email/abc123"


def _marker(expires: float) -> dict:
    return {
        "name": MARKER_COOKIE,
        "value": "token",
        "domain": ".hcaptcha.com",
        "path": "/",
        "expires": expires,
    }


@pytest.fixture
def settings(isolated_config):
    return GatepassSettings(
        hcaptcha_accessibility_url=URL,
        element_timeout_seconds=0.2,
        navigation_timeout_seconds=0.2,
    )


@pytest.fixture
def cache(settings):
    return BypassCookieCache(settings.bypass_cache_file, clock=lambda: NOW)


class TestBypassCookieCache:
    """Tests for BypassCookieCache."""

    def test_missing_file_is_a_miss(self, cache):
        assert cache.load_cached() is None

    def test_fresh_marker_is_a_hit(self, cache):
        cookies = [_marker(NOW + 3600), {"name": "other", "value": "x"}]
        cache.save(cookies)

        assert cache.load_cached() == cookies

    def test_marker_expiring_within_buffer_is_a_miss(self, cache):
        cache.save([_marker(NOW + 4 * 60)])
        assert cache.load_cached() is None

    def test_marker_expiring_at_buffer_is_a_hit(self, cache):
        cache.save([_marker(NOW + 5 * 60)])
        assert cache.load_cached() is not None

    def test_missing_marker_is_a_miss(self, cache):
        cache.save([{"name": "other", "value": "x", "expires": NOW + 3600}])
        assert cache.load_cached() is None

    def test_corrupt_file_is_a_miss(self, cache):
        cache.path.write_text("{not json")
        assert cache.load_cached() is None

    def test_wrong_shape_is_a_miss(self, cache):
        cache.path.write_text(json.dumps({"name": MARKER_COOKIE}))
        assert cache.load_cached() is None

    def test_save_replaces_file(self, cache):
        cache.save([_marker(NOW + 3600)])
        cache.save([_marker(NOW + 7200)])

        assert json.loads(cache.path.read_text()) == [_marker(NOW + 7200)]
        assert not list(cache.path.parent.glob(f".{cache.path.name}.*.tmp"))

    def test_clear(self, cache):
        cache.save([_marker(NOW + 3600)])

        assert cache.clear() is True
        assert cache.clear() is False
        assert not cache.path.exists()


class TestAcquireBypassCookies:
    """Tests for acquire_bypass_cookies."""

    @pytest.mark.asyncio
    async def test_not_configured_skips_browser(self, isolated_config, fake_launcher_factory):
        launcher = fake_launcher_factory()

        result = await acquire_bypass_cookies(GatepassSettings(), launcher=launcher)

        assert result.degraded is True
        assert result.reason == "not_configured"
        assert result.cookies == []
        assert launcher.launches == []

    @pytest.mark.asyncio
    async def test_cache_hit_skips_browser(self, settings, cache, fake_launcher_factory):
        cookies = [_marker(NOW + 3600)]
        cache.save(cookies)
        launcher = fake_launcher_factory()

        result = await acquire_bypass_cookies(settings, cache=cache, launcher=launcher)

        assert result.cookies == cookies
        assert result.from_cache is True
        assert result.degraded is False
        assert launcher.launches == []

    @pytest.mark.asyncio
    async def test_cache_miss_mints_and_saves(
        self, settings, cache, fake_page_factory, fake_launcher_factory
    ):
        minted = [_marker(NOW + 86400), {"name": "session", "value": "s"}]
        page = fake_page_factory(
            appear={SET_COOKIE_BUTTON: 0, FETCH_STATUS: 0},
            texts={FETCH_STATUS: SUCCESS_MESSAGE},
            cookies=minted,
        )
        launcher = fake_launcher_factory(page)

        result = await acquire_bypass_cookies(settings, cache=cache, launcher=launcher)

        assert result.cookies == minted
        assert result.from_cache is False
        assert result.degraded is False
        assert ("goto", URL) in page.calls
        assert page.clicked == [SET_COOKIE_BUTTON]
        assert launcher.launches == [{"headless": True}]
        assert launcher.closed == 1
        assert cache.load_cached() == minted

    @pytest.mark.asyncio
    async def test_stale_cache_is_refreshed(
        self, settings, cache, fake_page_factory, fake_launcher_factory
    ):
        cache.save([_marker(NOW + 60)])
        minted = [_marker(NOW + 86400)]
        page = fake_page_factory(
            appear={SET_COOKIE_BUTTON: 0, FETCH_STATUS: 0},
            texts={FETCH_STATUS: SUCCESS_MESSAGE},
            cookies=minted,
        )

        result = await acquire_bypass_cookies(
            settings, cache=cache, launcher=fake_launcher_factory(page)
        )

        assert result.cookies == minted
        assert cache.load_cached() == minted

    @pytest.mark.asyncio
    async def test_unexpected_status_still_returns_cookies(
        self, settings, cache, fake_page_factory, fake_launcher_factory
    ):
        page = fake_page_factory(
            appear={SET_COOKIE_BUTTON: 0, FETCH_STATUS: 0},
            texts={FETCH_STATUS: "Something went wrong"},
            cookies=[_marker(NOW + 86400)],
        )

        result = await acquire_bypass_cookies(
            settings, cache=cache, launcher=fake_launcher_factory(page)
        )

        assert result.degraded is False
        assert len(result.cookies) == 1

    @pytest.mark.asyncio
    async def test_missing_button_degrades(
        self, settings, cache, fake_page_factory, fake_launcher_factory
    ):
        launcher = fake_launcher_factory(fake_page_factory())

        result = await acquire_bypass_cookies(settings, cache=cache, launcher=launcher)

        assert result.degraded is True
        assert "setAccessibilityCookie" in result.reason
        assert result.cookies == []
        assert launcher.closed == 1
        assert not cache.path.exists()

    @pytest.mark.asyncio
    async def test_launch_failure_degrades(self, settings, cache):
        def broken_launcher(**kwargs):
            raise BrowserError("Failed to start browser: no chrome")

        result = await acquire_bypass_cookies(settings, cache=cache, launcher=broken_launcher)

        assert result.degraded is True
        assert "no chrome" in result.reason

    @pytest.mark.asyncio
    async def test_default_cache_uses_settings_path(
        self, settings, fake_page_factory, fake_launcher_factory
    ):
        minted = [_marker(time.time() + 86400)]
        page = fake_page_factory(
            appear={SET_COOKIE_BUTTON: 0, FETCH_STATUS: 0},
            texts={FETCH_STATUS: SUCCESS_MESSAGE},
            cookies=minted,
        )

        await acquire_bypass_cookies(settings, launcher=fake_launcher_factory(page))

        assert json.loads(settings.bypass_cache_file.read_text()) == minted
