"""
Tests for the hc-backdrop command line and logging setup.
"""

import logging

import pytest

from backdrop import cli
from backdrop.core.errors import ConfigurationError
from backdrop.logging_config import configure_logging, get_verbosity_env, python_log_level, rust_log_level


@pytest.fixture(autouse=True)
def restore_backdrop_logger():
    """configure_logging binds a handler to the captured stderr; drop it afterwards."""
    backdrop_logger = logging.getLogger("backdrop")
    level = backdrop_logger.level
    yield
    for handler in list(backdrop_logger.handlers):
        if getattr(handler, "_backdrop_console", False):
            backdrop_logger.removeHandler(handler)
    backdrop_logger.setLevel(level)


@pytest.mark.unit
class TestParser:

    def test_defaults(self):
        args = cli.build_parser().parse_args([])
        assert args.verbose is None
        assert args.quiet is False
        assert args.admin_port is None
        assert args.config is None
        assert args.timeout is None

    def test_flags(self):
        args = cli.build_parser().parse_args(["-vvv", "-p", "45678", "-c", "conductor.yaml", "-t", "12.5"])
        assert args.verbose == 3
        assert args.admin_port == 45678
        assert args.config == "conductor.yaml"
        assert args.timeout == 12.5


@pytest.mark.unit
class TestVerbosity:

    def test_rust_levels(self):
        assert rust_log_level(0) == "error"
        assert rust_log_level(2) == "warn"
        assert rust_log_level(6) == "trace"
        assert rust_log_level(99) == "trace"

    def test_get_verbosity_env_prefers_explicit_value(self):
        assert get_verbosity_env(5, current="holochain=debug") == "holochain=debug"
        assert get_verbosity_env(5, quiet=True) == "error"

    def test_configure_logging_replaces_its_handler(self):
        configure_logging(3)
        level = configure_logging(5)

        backdrop_logger = logging.getLogger("backdrop")
        ours = [h for h in backdrop_logger.handlers if getattr(h, "_backdrop_console", False)]
        assert len(ours) == 1
        assert level == python_log_level(5)

    def test_log_level_env_override(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "error")
        assert configure_logging(6) == logging.ERROR

    def test_reporter_filters_by_rank(self):
        reporter = cli.ConsoleReporter(verbosity=2, quiet=False)
        assert reporter.should_log("warn")
        assert not reporter.should_log("info")


@pytest.mark.integration
class TestMain:

    @pytest.mark.asyncio
    async def test_callback_runs_against_ready_holochain(self, fake_daemons, capsys):
        seen = {}

        async def callback(holochain):
            seen["ports"] = holochain.admin_ports()
            seen["basedir"] = holochain.basedir
            seen["running"] = holochain.conductor.running

        assert await cli.main([], callback) == 0

        assert seen["running"]
        assert not seen["basedir"].exists()
        out = capsys.readouterr().out
        assert f'Starting Holochain in "{seen["basedir"]}"...' in out
        assert "Holochain is ready" in out
        assert "Running cleanup..." in out
        assert "Stopping Holochain..." in out

    @pytest.mark.asyncio
    async def test_pinned_port_and_sync_callback(self, fake_daemons):
        seen = []
        await cli.main(["-q", "-p", "45917"], lambda holochain: seen.append(holochain.admin_ports()))
        assert seen == [[45917]]

    @pytest.mark.asyncio
    async def test_quiet_prints_nothing(self, fake_daemons, capsys):
        await cli.main(["-q"], lambda holochain: None)
        assert capsys.readouterr().out == ""

    @pytest.mark.asyncio
    async def test_config_path_is_kept(self, fake_daemons, tmp_path):
        path = tmp_path / "conductor.yaml"
        await cli.main(["-q", "-c", str(path)], lambda holochain: None)
        assert path.exists()

    @pytest.mark.asyncio
    async def test_admin_port_mismatch_is_reported(self, fake_daemons, tmp_path):
        path = tmp_path / "conductor.yaml"
        await cli.main(["-q", "-c", str(path), "-p", "45918"], lambda holochain: None)

        with pytest.raises(ConfigurationError, match="does not match"):
            await cli.main(["-q", "-c", str(path), "-p", "45919"], lambda holochain: None)

    @pytest.mark.asyncio
    async def test_callback_must_be_callable(self):
        with pytest.raises(TypeError, match="Callback must be callable"):
            await cli.main([], callback="not callable")
