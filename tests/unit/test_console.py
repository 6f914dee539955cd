"""Tests for the console output module."""

import io

from rich.console import Console

from gatepass.console import error, success, warn


class TestConsoleHelpers:
    """Tests for console helper functions."""

    def _console(self) -> tuple[Console, io.StringIO]:
        buf = io.StringIO()
        return Console(file=buf, stderr=True, no_color=True, width=120), buf

    def test_success_outputs_check_mark(self) -> None:
        console, buf = self._console()
        success("Done", console=console)
        assert "\u2713 Done" in buf.getvalue()

    def test_error_outputs_cross(self) -> None:
        console, buf = self._console()
        error("Failed", console=console)
        assert "\u2717 Failed" in buf.getvalue()

    def test_warn_outputs_warning_sign(self) -> None:
        console, buf = self._console()
        warn("Careful", console=console)
        assert "\u26a0 Careful" in buf.getvalue()
