"""Pytest configuration for gatepass tests."""

import os
import sys
from pathlib import Path

import pytest
import structlog
from structlog._config import BoundLoggerLazyProxy

# Add src directory to sys.path for test imports
src_dir = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_dir))


@pytest.fixture(autouse=True)
def isolated_config(tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Give each test its own config directory and fresh global state.

    Sets GATEPASS_CONFIG_DIR to a temp directory, drops any GATEPASS_ variables
    from the developer's environment and resets the cached settings and
    encryption keys.
    """
    config_dir = tmp_path_factory.mktemp("gatepass")
    config_dir.mkdir(parents=True, exist_ok=True)

    for name in [n for n in os.environ if n.startswith("GATEPASS_")]:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("GATEPASS_CONFIG_DIR", str(config_dir))

    from gatepass.config import reset_settings
    from gatepass.encryption import reset_encryption_key_cache

    reset_settings()
    reset_encryption_key_cache()

    return config_dir


@pytest.fixture(autouse=True)
def _reset_structlog():
    """Reset structlog after each test to prevent closed file handle errors.

    CliRunner captures stderr with a temporary file. When configure_logging()
    runs inside CliRunner, structlog binds loggers to that temp file, which is
    closed once the test ends. Logging starts at WARNING so debug events
    don't end up in captured command output.
    """
    from gatepass.logging import configure_logging

    configure_logging(level="WARNING")
    yield
    structlog.reset_defaults()
    for module in list(sys.modules.values()):
        for attr in getattr(module, "__dict__", {}).values():
            if isinstance(attr, BoundLoggerLazyProxy):
                attr.__dict__.pop("bind", None)
