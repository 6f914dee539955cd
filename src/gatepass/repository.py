"""Per-identity durable cookie storage.

Each identity gets one Fernet-encrypted JSON document under
``<config_dir>/cookies/``. The file name is a slug of the identity; the real
identity is stored inside the payload so listings can show it.

Document layout (before encryption)::

    {"identity": "user@example.com", "updated_at": "...", "cookies": [...]}
"""

import hashlib
import json
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import requests.cookies
import slugify as slugify_lib

from gatepass.cookies import Cookie, is_cookie_record, merge_cookies, to_cookiejar
from gatepass.encryption import decrypt_data, encrypt_data
from gatepass.exceptions import CookieStoreError, EncryptionError
from gatepass.fileio import atomic_write_bytes
from gatepass.logging import get_logger

LOG = get_logger(__name__)

FILE_SUFFIX = ".json.enc"


@runtime_checkable
class CookieRepository(Protocol):
    """Protocol for durable per-identity cookie storage.

    Implementations own the storage format; callers only see cookie records.
    """

    def get_cookies(self, identity: str) -> list[Cookie]:
        """Return stored cookies for ``identity`` ([] if none)."""
        ...

    def merge_cookies(self, identity: str, cookies: list[Cookie]) -> list[Cookie]:
        """Upsert ``cookies`` for ``identity`` keyed on (name, domain).

        Returns:
            The stored cookies after the merge.
        """
        ...

    def delete(self, identity: str) -> bool:
        """Delete all stored cookies for ``identity``.

        Returns:
            True if something was deleted, False if nothing was stored.
        """
        ...

    def list_identities(self) -> list[str]:
        """Return the identities that have stored cookies, sorted."""
        ...


def identity_slug(identity: str) -> str:
    """Filesystem-safe name for an identity.

    A short digest is appended because slugs are lossy ("a.b@x" and "a-b@x"
    would otherwise collide).
    """
    normalized = identity.strip().lower()
    slug = slugify_lib.slugify(normalized, separator="-", max_length=64)
    if not slug:
        raise ValueError(f"Identity {identity!r} does not produce a usable file name")
    digest = hashlib.sha256(normalized.encode()).hexdigest()[:8]
    return f"{slug}-{digest}"


class LocalCookieRepository:
    """Encrypted local filesystem cookie repository.

    Features:
    - Atomic writes with secure permissions (0o600)
    - Merge-on-write keyed on (name, domain)
    - Per-identity write lock so concurrent merges for one identity don't
      lose updates within a process
    """

    def __init__(self, base_dir: Path, config_dir: Path | None = None) -> None:
        """Initialize local cookie repository.

        Args:
            base_dir: Directory holding one file per identity.
            config_dir: Directory holding the encryption key. Defaults to
                ``base_dir``'s parent.
        """
        self.base_dir = base_dir
        self.config_dir = config_dir or base_dir.parent
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        LOG.debug("local_cookie_repository_initialized", base_dir=str(base_dir))

    def _path_for(self, identity: str) -> Path:
        return self.base_dir / f"{identity_slug(identity)}{FILE_SUFFIX}"

    def _lock_for(self, identity: str) -> threading.Lock:
        slug = identity_slug(identity)
        with self._locks_guard:
            return self._locks.setdefault(slug, threading.Lock())

    def _read_document(self, path: Path) -> dict[str, Any] | None:
        """Read and decrypt one repository file.

        Raises:
            CookieStoreError: If the file cannot be decrypted or parsed.
        """
        if not path.exists():
            return None
        try:
            raw = decrypt_data(path.read_bytes(), self.config_dir)
            document = json.loads(raw)
        except EncryptionError as exc:
            LOG.error("cookie_file_decryption_failed", path=str(path))
            raise CookieStoreError(
                f"Cookie file {path} cannot be decrypted. "
                "Run 'gatepass cookies clear' for this account and log in again."
            ) from exc
        except (OSError, ValueError) as exc:
            LOG.error("cookie_file_unreadable", path=str(path), error=str(exc))
            raise CookieStoreError(f"Cookie file {path} is unreadable: {exc}") from exc

        if not isinstance(document, dict) or not isinstance(document.get("cookies"), list):
            raise CookieStoreError(f"Cookie file {path} has an invalid structure")
        return document

    def _write_document(self, path: Path, identity: str, cookies: list[Cookie]) -> None:
        document = {
            "identity": identity,
            "updated_at": datetime.now(UTC).isoformat(),
            "cookies": cookies,
        }
        payload = json.dumps(document).encode()
        atomic_write_bytes(path, encrypt_data(payload, self.config_dir))

    def get_cookies(self, identity: str) -> list[Cookie]:
        """Return stored cookies for ``identity``.

        Args:
            identity: Account identity (email).

        Returns:
            List of cookie records, empty if nothing is stored.

        Raises:
            CookieStoreError: If the stored file is corrupt.
        """
        document = self._read_document(self._path_for(identity))
        if document is None:
            LOG.debug("no_stored_cookies", user=identity)
            return []
        cookies = [c for c in document["cookies"] if is_cookie_record(c)]
        LOG.debug("loaded_stored_cookies", user=identity, count=len(cookies))
        return cookies

    def merge_cookies(self, identity: str, cookies: list[Cookie]) -> list[Cookie]:
        """Merge new cookies into the stored set for ``identity``.

        Args:
            identity: Account identity (email).
            cookies: Cookies to upsert.

        Returns:
            The stored cookie list after the merge.

        Raises:
            CookieStoreError: If the existing file is corrupt.
        """
        path = self._path_for(identity)
        with self._lock_for(identity):
            document = self._read_document(path)
            existing = document["cookies"] if document else []
            merged = merge_cookies(existing, cookies)
            self._write_document(path, identity, merged)
        LOG.info(
            "merged_cookies",
            user=identity,
            incoming=len(cookies),
            stored=len(merged),
        )
        return merged

    def delete(self, identity: str) -> bool:
        path = self._path_for(identity)
        with self._lock_for(identity):
            if not path.exists():
                return False
            path.unlink()
        LOG.info("deleted_stored_cookies", user=identity)
        return True

    def list_identities(self) -> list[str]:
        identities = []
        for path in self.base_dir.glob(f"*{FILE_SUFFIX}"):
            try:
                document = self._read_document(path)
            except CookieStoreError as exc:
                LOG.warning("skipping_unreadable_cookie_file", path=str(path), error=str(exc))
                continue
            if document is not None:
                identities.append(str(document.get("identity") or path.name))
        return sorted(identities)

    def cookiejar_for(self, identity: str) -> requests.cookies.RequestsCookieJar:
        """Load stored cookies for ``identity`` as a requests cookie jar.

        Example:
            >>> session = requests.Session()
            >>> session.cookies = repo.cookiejar_for("user@example.com")
        """
        return to_cookiejar(self.get_cookies(identity))
