"""Cookie repository encryption using Fernet symmetric encryption.

Stored session cookies are as good as a password, so the repository keeps
them encrypted at rest with Fernet (AES-128-CBC with HMAC authentication).
The key lives in ``<config_dir>/.cookie_key`` and is generated on first use.

Thread Safety:
    Keys are cached per key file. Concurrent first use from several threads
    may read the file more than once, which is harmless because the key is
    created with O_EXCL and re-read on collision.
"""

import os
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken

from gatepass.exceptions import EncryptionError
from gatepass.logging import get_logger

LOG = get_logger(__name__)

KEY_FILE_NAME = ".cookie_key"

# Cache keys in memory to avoid re-reading the key file on every operation
_encryption_key_cache: dict[Path, bytes] = {}


def get_encryption_key(config_dir: Path) -> bytes:
    """Get or create the encryption key for a config directory.

    Args:
        config_dir: gatepass configuration directory.

    Returns:
        Fernet-compatible 32-byte key (base64 encoded).

    Raises:
        EncryptionError: If the key file exists but is not a valid Fernet key.
    """
    key_file = config_dir / KEY_FILE_NAME
    cached = _encryption_key_cache.get(key_file)
    if cached is not None:
        return cached

    key = _get_key_from_file(key_file)
    try:
        Fernet(key)
    except ValueError as exc:
        raise EncryptionError(
            f"Invalid encryption key in {key_file}: {exc}. "
            "Delete the file to generate a new key (stored cookies will be lost)."
        ) from exc
    _encryption_key_cache[key_file] = key
    return key


def _get_key_from_file(key_file: Path) -> bytes:
    """Read the key file, creating it with secure permissions if absent."""
    if key_file.exists():
        LOG.debug("using_encryption_key_from_file")
        return key_file.read_bytes().strip()

    key_file.parent.mkdir(parents=True, exist_ok=True)
    key = Fernet.generate_key()
    try:
        fd = os.open(key_file, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    except FileExistsError:
        # Another writer won the race
        return key_file.read_bytes().strip()
    with os.fdopen(fd, "wb") as f:
        f.write(key)
    LOG.info("generated_new_cookie_encryption_key", path=str(key_file))
    return key


def reset_encryption_key_cache() -> None:
    """Reset the encryption key cache.

    Useful for testing or when rotating keys.
    """
    _encryption_key_cache.clear()


def encrypt_data(data: bytes, config_dir: Path) -> bytes:
    """Encrypt data using Fernet symmetric encryption.

    Args:
        data: Raw bytes to encrypt.
        config_dir: Config directory holding the key.

    Returns:
        Encrypted bytes.
    """
    return Fernet(get_encryption_key(config_dir)).encrypt(data)


def decrypt_data(data: bytes, config_dir: Path) -> bytes:
    """Decrypt data using Fernet symmetric encryption.

    Args:
        data: Encrypted bytes.
        config_dir: Config directory holding the key.

    Returns:
        Decrypted raw bytes.

    Raises:
        EncryptionError: If decryption fails (wrong key or corrupted data).
    """
    try:
        return Fernet(get_encryption_key(config_dir)).decrypt(data)
    except InvalidToken as exc:
        raise EncryptionError(
            "Decryption failed. The cookie file may be corrupted "
            "or the encryption key has changed."
        ) from exc
