"""Tests for cookie record helpers."""

from gatepass.cookies import (
    cookie_key,
    cookies_for_host,
    domain_matches,
    expires_at_least,
    find_cookie,
    is_cookie_record,
    merge_cookies,
    to_cookiejar,
)


class TestMergeCookies:
    """Tests for merge_cookies."""

    def test_upserts_by_name_and_domain(self):
        existing = [
            {"name": "A", "value": "1", "domain": ".example.com"},
            {"name": "B", "value": "1", "domain": ".example.com"},
        ]
        incoming = [
            {"name": "B", "value": "2", "domain": ".example.com"},
            {"name": "C", "value": "1", "domain": ".example.com"},
        ]

        merged = merge_cookies(existing, incoming)

        assert [(c["name"], c["value"]) for c in merged] == [("A", "1"), ("B", "2"), ("C", "1")]

    def test_same_name_different_domain_kept_separately(self):
        existing = [{"name": "sid", "value": "old", "domain": "a.example.com"}]
        incoming = [{"name": "sid", "value": "new", "domain": "b.example.com"}]

        merged = merge_cookies(existing, incoming)

        assert len(merged) == 2

    def test_does_not_mutate_inputs(self):
        existing = [{"name": "A", "value": "1"}]
        incoming = [{"name": "A", "value": "2"}]

        merge_cookies(existing, incoming)

        assert existing == [{"name": "A", "value": "1"}]

    def test_unknown_fields_survive(self):
        merged = merge_cookies([], [{"name": "A", "value": "1", "partitionKey": "x"}])
        assert merged[0]["partitionKey"] == "x"


class TestCookiesForHost:
    """Tests for domain_matches and cookies_for_host."""

    def test_domain_cookie_matches_subdomains(self):
        cookie = {"name": "S", "value": "1", "domain": ".epicgames.com"}
        assert domain_matches(cookie, "www.epicgames.com")
        assert domain_matches(cookie, "epicgames.com")
        assert domain_matches(cookie, "WWW.EpicGames.com")

    def test_host_only_cookie_matches_its_host(self):
        cookie = {"name": "S", "value": "1", "domain": "www.epicgames.com"}
        assert domain_matches(cookie, "www.epicgames.com")
        assert not domain_matches(cookie, "store.epicgames.com")

    def test_suffix_without_dot_boundary_does_not_match(self):
        cookie = {"name": "S", "value": "1", "domain": "games.com"}
        assert not domain_matches(cookie, "epicgames.com")

    def test_missing_domain_matches_nothing(self):
        assert not domain_matches({"name": "S", "value": "1"}, "www.epicgames.com")

    def test_drops_bypass_and_third_party_cookies(self):
        session = {"name": "EPIC_SESSION_AP", "value": "s", "domain": ".epicgames.com"}
        cookies = [
            {"name": "hc_accessibility", "value": "b", "domain": ".hcaptcha.com"},
            session,
            {"name": "_ga", "value": "x", "domain": ".google-analytics.com"},
        ]
        assert cookies_for_host(cookies, "www.epicgames.com") == [session]


class TestExpiresAtLeast:
    """Tests for the freshness check."""

    NOW = 1_700_000_000

    def test_fresh_when_beyond_buffer(self):
        cookies = [{"name": "m", "value": "v", "expires": self.NOW + 3600}]
        assert expires_at_least(cookies, "m", 300, now=self.NOW) is True

    def test_exact_buffer_boundary_is_fresh(self):
        cookies = [{"name": "m", "value": "v", "expires": self.NOW + 300}]
        assert expires_at_least(cookies, "m", 300, now=self.NOW) is True

    def test_inside_buffer_is_stale(self):
        cookies = [{"name": "m", "value": "v", "expires": self.NOW + 240}]
        assert expires_at_least(cookies, "m", 300, now=self.NOW) is False

    def test_missing_cookie(self):
        assert expires_at_least([{"name": "x", "value": "v"}], "m", 300, now=self.NOW) is False

    def test_session_cookie_never_fresh(self):
        cookies = [{"name": "m", "value": "v", "expires": -1}]
        assert expires_at_least(cookies, "m", 0, now=self.NOW) is False


def test_cookie_key_defaults_domain():
    assert cookie_key({"name": "A", "value": "1"}) == ("A", "")


def test_find_cookie_returns_first_match():
    cookies = [{"name": "A", "value": "1"}, {"name": "A", "value": "2"}]
    assert find_cookie(cookies, "A")["value"] == "1"
    assert find_cookie(cookies, "Z") is None


def test_is_cookie_record():
    assert is_cookie_record({"name": "A", "value": "1"})
    assert not is_cookie_record({"name": "A"})
    assert not is_cookie_record(["A", "1"])


def test_to_cookiejar():
    jar = to_cookiejar(
        [
            {"name": "sid", "value": "abc", "domain": ".example.com", "path": "/", "expires": -1},
            {"name": "pref", "value": "x", "domain": ".example.com", "secure": True},
        ]
    )

    assert jar.get("sid", domain=".example.com") == "abc"
    assert jar.get("pref", domain=".example.com") == "x"
    assert len(jar) == 2
