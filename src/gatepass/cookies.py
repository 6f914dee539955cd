"""Cookie record type and helpers shared by the cache, repository and browser.

Cookie records use the Chrome DevTools Protocol field names (``expires`` as
Unix seconds, ``httpOnly``, ``sameSite``). Fields this module doesn't know
about are carried through untouched, so provider-specific attributes survive
a round trip through the cache file or the repository.
"""

import time
from collections.abc import Iterable
from typing import Any, NotRequired, Required, TypedDict

import requests.cookies


class Cookie(TypedDict, total=False):
    """Cookie dictionary type for browser cookies.

    The 'name' and 'value' fields are required; everything else is optional.
    Session cookies carry ``expires == -1`` (CDP convention) or omit it.
    """

    name: Required[str]
    value: Required[str]
    domain: NotRequired[str]
    path: NotRequired[str]
    expires: NotRequired[float | int]
    secure: NotRequired[bool]
    httpOnly: NotRequired[bool]
    sameSite: NotRequired[str]


def cookie_key(cookie: Cookie) -> tuple[str, str]:
    """Identity of a cookie for merge purposes: (name, domain)."""
    return cookie["name"], cookie.get("domain", "")


def merge_cookies(existing: Iterable[Cookie], incoming: Iterable[Cookie]) -> list[Cookie]:
    """Upsert ``incoming`` into ``existing`` keyed on (name, domain).

    Existing entries keep their position and are replaced in place when an
    incoming cookie has the same key. Cookies with new keys are appended in
    the order they arrive. Entries in ``existing`` with no incoming match are
    preserved.

    Args:
        existing: Previously stored cookies.
        incoming: Cookies produced by a new browser session.

    Returns:
        New merged list. Neither input is modified.

    Example:
        >>> old = [{"name": "A", "value": "1"}, {"name": "B", "value": "1"}]
        >>> new = [{"name": "B", "value": "2"}, {"name": "C", "value": "1"}]
        >>> [c["name"] + c["value"] for c in merge_cookies(old, new)]
        ['A1', 'B2', 'C1']
    """
    merged: dict[tuple[str, str], Cookie] = {}
    for cookie in existing:
        merged[cookie_key(cookie)] = dict(cookie)  # type: ignore[assignment]
    for cookie in incoming:
        merged[cookie_key(cookie)] = dict(cookie)  # type: ignore[assignment]
    return list(merged.values())


def find_cookie(cookies: Iterable[Cookie], name: str) -> Cookie | None:
    """Return the first cookie named ``name``, or None."""
    for cookie in cookies:
        if cookie.get("name") == name:
            return cookie
    return None


def domain_matches(cookie: Cookie, host: str) -> bool:
    """Check whether a browser would send ``cookie`` to ``host``.

    A cookie domain matches its own host and, with or without a leading dot,
    every subdomain of it. Cookies without a domain match nothing.
    """
    domain = cookie.get("domain", "").lstrip(".").lower()
    host = host.lower()
    return bool(domain) and (host == domain or host.endswith("." + domain))


def cookies_for_host(cookies: Iterable[Cookie], host: str) -> list[Cookie]:
    """Keep only the cookies a browser would send to ``host``.

    Example:
        >>> jar = [
        ...     {"name": "S", "value": "1", "domain": ".example.com"},
        ...     {"name": "hc", "value": "1", "domain": ".hcaptcha.com"},
        ... ]
        >>> [c["name"] for c in cookies_for_host(jar, "www.example.com")]
        ['S']
    """
    return [cookie for cookie in cookies if domain_matches(cookie, host)]


def expires_at_least(
    cookies: Iterable[Cookie],
    name: str,
    buffer_seconds: float,
    now: float | None = None,
) -> bool:
    """Check that cookie ``name`` exists and expires no sooner than ``now + buffer_seconds``.

    Session cookies (no expiry, or the CDP ``-1`` marker) never satisfy this.
    """
    cookie = find_cookie(cookies, name)
    if cookie is None:
        return False
    expires = cookie.get("expires")
    if not isinstance(expires, int | float) or isinstance(expires, bool) or expires <= 0:
        return False
    if now is None:
        now = time.time()
    return expires >= now + buffer_seconds


def is_cookie_record(value: Any) -> bool:
    """Check that a deserialized value looks like a cookie record."""
    return (
        isinstance(value, dict)
        and isinstance(value.get("name"), str)
        and isinstance(value.get("value"), str)
    )


def to_cookiejar(cookies: Iterable[Cookie]) -> requests.cookies.RequestsCookieJar:
    """Build a requests cookie jar from cookie records.

    Lets cookies captured by a browser login back plain HTTP clients.

    Args:
        cookies: Cookie records.

    Returns:
        RequestsCookieJar containing every cookie.
    """
    jar = requests.cookies.RequestsCookieJar()
    for cookie in cookies:
        expires = cookie.get("expires")
        rest: dict[str, Any] = {}
        if cookie.get("httpOnly"):
            rest["HttpOnly"] = None
        jar.set(
            cookie["name"],
            cookie["value"],
            domain=cookie.get("domain", ""),
            path=cookie.get("path", "/"),
            secure=bool(cookie.get("secure", False)),
            expires=int(expires) if isinstance(expires, int | float) and expires > 0 else None,
            rest=rest,
        )
    return jar
