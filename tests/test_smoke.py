"""Smoke tests for the cotog-rtc package.

These tests verify that the installed package is structurally sound: all
subpackages importable and the CLI entry point reachable. They are
intentionally lightweight and fast.
"""

from click.testing import CliRunner

from cotog_rtc.cli import cli


# ── Subpackage imports ────────────────────────────────────────────────────────


class TestSubpackageImports:
    """Each cotog_rtc subpackage must be importable without error."""

    def test_import_session(self):
        from cotog_rtc.session.manager import SessionConnectionManager  # noqa: F401

    def test_import_voice(self):
        from cotog_rtc.voice.controller import VoiceController  # noqa: F401
        from cotog_rtc.voice.peer import AiortcPeerConnection  # noqa: F401

    def test_import_auth(self):
        import cotog_rtc.auth  # noqa: F401

    def test_import_relay(self):
        from cotog_rtc.relay import RelayServer  # noqa: F401


# ── CLI entry point ───────────────────────────────────────────────────────────


class TestCLIEntryPoint:
    """The CLI entry point must be reachable and respond to --help."""

    def test_main_help(self):
        runner = CliRunner()
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        for command in ("join", "relay", "login", "logout"):
            assert command in result.output

    def test_join_help(self):
        runner = CliRunner()
        result = runner.invoke(cli, ["join", "--help"])
        assert result.exit_code == 0
        assert "--voice" in result.output

    def test_relay_help(self):
        runner = CliRunner()
        result = runner.invoke(cli, ["relay", "--help"])
        assert result.exit_code == 0
