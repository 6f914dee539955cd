"""Tests for the encrypted local cookie repository."""

import pytest

from gatepass.encryption import reset_encryption_key_cache
from gatepass.exceptions import CookieStoreError
from gatepass.repository import (
    FILE_SUFFIX,
    CookieRepository,
    LocalCookieRepository,
    identity_slug,
)

EMAIL = "player@example.com"


def _cookie(name: str, value: str, domain: str = ".epicgames.com") -> dict:
    return {"name": name, "value": value, "domain": domain, "path": "/"}


class TestLocalCookieRepository:
    """Tests for LocalCookieRepository."""

    @pytest.fixture
    def repo(self, isolated_config):
        return LocalCookieRepository(isolated_config / "cookies", isolated_config)

    def test_implements_protocol(self, repo):
        assert isinstance(repo, CookieRepository)

    def test_get_cookies_empty_when_nothing_stored(self, repo):
        assert repo.get_cookies(EMAIL) == []

    def test_merge_preserves_existing_and_upserts(self, repo):
        repo.merge_cookies(EMAIL, [_cookie("A", "1"), _cookie("B", "1")])

        stored = repo.merge_cookies(EMAIL, [_cookie("B", "2"), _cookie("C", "1")])

        assert {(c["name"], c["value"]) for c in stored} == {("A", "1"), ("B", "2"), ("C", "1")}
        assert repo.get_cookies(EMAIL) == stored

    def test_files_are_encrypted_at_rest(self, repo):
        repo.merge_cookies(EMAIL, [_cookie("session", "super-secret-value")])

        files = list(repo.base_dir.glob(f"*{FILE_SUFFIX}"))
        assert len(files) == 1
        raw = files[0].read_bytes()
        assert b"super-secret-value" not in raw
        assert EMAIL.encode() not in raw
        assert files[0].stat().st_mode & 0o777 == 0o600

    def test_survives_reload(self, repo, isolated_config):
        repo.merge_cookies(EMAIL, [_cookie("A", "1")])
        reset_encryption_key_cache()

        reloaded = LocalCookieRepository(isolated_config / "cookies", isolated_config)

        assert reloaded.get_cookies(EMAIL) == [_cookie("A", "1")]

    def test_corrupt_file_raises(self, repo):
        repo.merge_cookies(EMAIL, [_cookie("A", "1")])
        path = next(repo.base_dir.glob(f"*{FILE_SUFFIX}"))
        path.write_bytes(b"not a fernet token")

        with pytest.raises(CookieStoreError):
            repo.get_cookies(EMAIL)
        with pytest.raises(CookieStoreError):
            repo.merge_cookies(EMAIL, [_cookie("B", "1")])

    def test_identities_are_isolated(self, repo):
        repo.merge_cookies(EMAIL, [_cookie("A", "1")])
        repo.merge_cookies("other@example.com", [_cookie("A", "2")])

        assert repo.get_cookies(EMAIL)[0]["value"] == "1"
        assert repo.get_cookies("other@example.com")[0]["value"] == "2"

    def test_list_identities_skips_unreadable(self, repo):
        repo.merge_cookies("b@example.com", [_cookie("A", "1")])
        repo.merge_cookies("a@example.com", [_cookie("A", "1")])
        (repo.base_dir / f"junk{FILE_SUFFIX}").write_bytes(b"garbage")

        assert repo.list_identities() == ["a@example.com", "b@example.com"]

    def test_delete(self, repo):
        repo.merge_cookies(EMAIL, [_cookie("A", "1")])

        assert repo.delete(EMAIL) is True
        assert repo.delete(EMAIL) is False
        assert repo.get_cookies(EMAIL) == []

    def test_cookiejar_for(self, repo):
        repo.merge_cookies(EMAIL, [_cookie("sid", "abc")])

        jar = repo.cookiejar_for(EMAIL)

        assert jar.get("sid", domain=".epicgames.com") == "abc"


class TestIdentitySlug:
    """Tests for identity_slug."""

    def test_is_case_insensitive(self):
        assert identity_slug("User@Example.com") == identity_slug(" user@example.com ")

    def test_similar_identities_do_not_collide(self):
        assert identity_slug("a.b@example.com") != identity_slug("a-b@example.com")

    def test_unusable_identity_raises(self):
        with pytest.raises(ValueError):
            identity_slug("@@@")
