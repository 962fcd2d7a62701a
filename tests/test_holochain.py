"""
Tests for the Holochain lifecycle controller.

Setup-only tests need no daemons. Start/stop tests run the fake
lair-keystore and conductor from tests/fixtures.
"""

import asyncio
import shutil
from pathlib import Path

import pytest
import yaml

from backdrop.config import conductor_config
from backdrop.core import port_allocator
from backdrop.core.errors import (
    ConfigurationError,
    ControllerStateError,
    ProcessStartError,
    StartupTimeoutError,
)
from backdrop.core.holochain import ConfigOptions, Holochain, HolochainOptions, LifecycleState


# =============================================================================
# Options
# =============================================================================

@pytest.mark.unit
class TestOptions:

    def test_defaults(self, monkeypatch):
        monkeypatch.setenv("RUST_LOG", "warn")
        monkeypatch.setenv("LAIR_LOG", "trace")
        options = HolochainOptions()

        assert len(options.name) == 8
        assert options.lair_log == "trace"
        assert options.conductor_log == "warn"
        assert options.lair_command == ["lair-keystore"]
        assert options.holochain_command == ["holochain"]
        assert options.cleanup is True
        assert options.config == ConfigOptions()

    def test_binaries_and_cleanup_from_env(self, monkeypatch):
        monkeypatch.setenv("BACKDROP_HOLOCHAIN_BIN", "/opt/hc/bin/holochain --structured")
        monkeypatch.setenv("BACKDROP_CLEANUP", "false")
        options = HolochainOptions()
        assert options.holochain_command == ["/opt/hc/bin/holochain", "--structured"]
        assert options.cleanup is False

    def test_default_loggers_enables_both(self):
        options = HolochainOptions(default_loggers=True)
        assert options.default_stdout_loggers and options.default_stderr_loggers

    def test_unknown_config_option(self):
        with pytest.raises(ConfigurationError, match="admin_prot"):
            ConfigOptions.coerce({"admin_prot": 1})

    def test_overrides_apply_over_options(self):
        holochain = Holochain(HolochainOptions(name="basename1"), name="override")
        try:
            assert holochain.id == "override"
        finally:
            holochain._hooks.unregister()


# =============================================================================
# Setup
# =============================================================================

@pytest.mark.unit
class TestSetup:

    @pytest.mark.asyncio
    async def test_fresh_temp_dirs_are_distinct(self):
        first, second = Holochain(), Holochain()
        try:
            dir1 = await first.setup()
            dir2 = await second.setup()

            assert dir1 != dir2
            assert dir1.name.startswith("conductor-")
            assert first.config_file == dir1 / "config.yaml"
            assert first.keystore_path == dir1 / "lair-keystore"
            assert first.keystore_path.is_dir()
            assert first.state == LifecycleState.CONFIGURED
            assert first.admin_ports() != second.admin_ports()
        finally:
            await first.destroy()
            await second.destroy()

        assert not dir1.exists()
        assert not dir2.exists()

    @pytest.mark.asyncio
    async def test_setup_is_memoized(self):
        holochain = Holochain()
        try:
            results = await asyncio.gather(holochain.setup(), holochain.setup())
            assert results[0] == results[1]
        finally:
            await holochain.destroy()

    @pytest.mark.asyncio
    async def test_pinned_admin_port(self):
        holochain = Holochain(config={"admin_port": 45999})
        try:
            await holochain.setup()
            assert holochain.admin_ports() == [45999]
            assert holochain.config["admin_interfaces"][0]["driver"]["port"] == 45999
        finally:
            await holochain.destroy()

    @pytest.mark.asyncio
    async def test_existing_config_is_loaded(self, tmp_path):
        path = tmp_path / "conductor.yaml"
        conductor_config.write_config(path, conductor_config.build_config(tmp_path, 41234))

        holochain = Holochain(config={"path": str(path), "admin_port": 41234})
        try:
            basedir = await holochain.setup()
            assert basedir == tmp_path
            assert holochain.admin_ports() == [41234]
        finally:
            await holochain.destroy()
        # Caller-owned config survives cleanup
        assert path.exists()

    @pytest.mark.asyncio
    async def test_admin_port_mismatch(self, tmp_path):
        path = tmp_path / "conductor.yaml"
        conductor_config.write_config(path, conductor_config.build_config(tmp_path, 41235))

        holochain = Holochain(config={"path": str(path), "admin_port": 9999})
        try:
            with pytest.raises(ConfigurationError) as excinfo:
                await holochain.setup()
            assert str(excinfo.value) == (
                "The given admin port (9999) does not match any from the config file: 41235"
            )
        finally:
            await holochain.destroy()

    @pytest.mark.asyncio
    async def test_missing_path_config_is_generated_there(self, tmp_path):
        path = tmp_path / "nested" / "config.yaml"
        holochain = Holochain(config={"path": str(path)})
        try:
            basedir = await holochain.setup()
            assert basedir == tmp_path / "nested"
            assert holochain.config_file == path
            assert holochain.config["data_root_path"] == str(basedir / "databases")
        finally:
            await holochain.destroy()
        assert (tmp_path / "nested").is_dir()

    @pytest.mark.asyncio
    async def test_constructor_requires_path(self):
        holochain = Holochain(config={"construct": lambda h: {}})
        try:
            with pytest.raises(ConfigurationError, match="must specify the config path"):
                await holochain.setup()
        finally:
            await holochain.destroy()

    @pytest.mark.asyncio
    async def test_async_constructor(self, tmp_path):
        seen = []

        async def construct(holochain):
            seen.append(holochain)
            return conductor_config.build_config(tmp_path, 42424)

        holochain = Holochain(config={"path": str(tmp_path / "c.yaml"), "construct": construct})
        try:
            await holochain.setup()
            assert seen == [holochain]
            assert holochain.admin_ports() == [42424]
        finally:
            await holochain.destroy()

    @pytest.mark.asyncio
    async def test_config_without_admin_interface(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({"data_root_path": str(tmp_path)}))

        holochain = Holochain(config={"path": str(path)})
        try:
            with pytest.raises(ConfigurationError, match="admin interface"):
                await holochain.setup()
        finally:
            await holochain.destroy()

    def test_accessors_before_setup(self):
        holochain = Holochain()
        try:
            with pytest.raises(ConfigurationError, match="Not setup"):
                holochain.admin_ports()
            with pytest.raises(ConfigurationError, match="Not setup"):
                holochain.app_ports()
        finally:
            holochain._hooks.unregister()


# =============================================================================
# Stop / destroy without start
# =============================================================================

@pytest.mark.unit
class TestTeardownWithoutStart:

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        holochain = Holochain()
        try:
            assert await holochain.stop() == (None, None)
        finally:
            await holochain.destroy()

    @pytest.mark.asyncio
    async def test_destroy_is_idempotent(self):
        holochain = Holochain()
        basedir = await holochain.setup()

        await holochain.destroy("first")
        await holochain.destroy("second")

        assert holochain.destroyed
        assert holochain.state == LifecycleState.DESTROYED
        assert not basedir.exists()
        assert not holochain._hooks.registered

    @pytest.mark.asyncio
    async def test_cleanup_disabled_keeps_files(self):
        holochain = Holochain(cleanup=False)
        basedir = await holochain.setup()
        await holochain.destroy()
        try:
            assert basedir.exists()
        finally:
            shutil.rmtree(basedir)

    @pytest.mark.asyncio
    async def test_ready_after_destroy_raises(self):
        holochain = Holochain()
        await holochain.destroy()
        with pytest.raises(ControllerStateError, match="destroyed"):
            await asyncio.wait_for(holochain.ready(), timeout=5)

    @pytest.mark.asyncio
    async def test_destroy_releases_generated_admin_port(self):
        holochain = Holochain()
        await holochain.setup()
        port = holochain.admin_ports()[0]
        assert port in port_allocator._handed_out

        await holochain.destroy()
        assert port not in port_allocator._handed_out

    @pytest.mark.asyncio
    async def test_pinned_admin_port_is_left_alone(self):
        port_allocator._handed_out.add(45920)
        holochain = Holochain(config={"admin_port": 45920})
        try:
            await holochain.setup()
            await holochain.destroy()
            assert 45920 in port_allocator._handed_out
        finally:
            port_allocator.release_port(45920)

    @pytest.mark.asyncio
    async def test_start_after_destroy(self):
        holochain = Holochain()
        await holochain.destroy()
        with pytest.raises(ControllerStateError):
            await holochain.start()

    def test_exit_hook_removes_generated_files(self):
        holochain = Holochain()
        basedir = asyncio.run(holochain.setup())
        assert basedir.exists()

        holochain._hooks.fire()
        assert not basedir.exists()
        assert holochain.destroyed
        holochain._hooks.unregister()

    @pytest.mark.asyncio
    async def test_ensure_app_port_before_ready(self):
        holochain = Holochain()
        try:
            with pytest.raises(ControllerStateError):
                await holochain.ensure_app_port()
        finally:
            await holochain.destroy()


# =============================================================================
# Start / stop against fake daemons
# =============================================================================

@pytest.mark.integration
class TestStartStop:

    @pytest.mark.asyncio
    async def test_start_then_stop(self, fake_daemons):
        holochain = Holochain()
        try:
            await holochain.start(20)
            await holochain.ready()

            assert holochain.state == LifecycleState.READY
            assert holochain.lair.running
            assert holochain.conductor.running
            assert holochain.admin is not None
            assert holochain.admin.port == holochain.admin_ports()[0]

            # The keystore URL replaced the placeholder before the conductor started
            written = yaml.safe_load(Path(holochain.config_file).read_text())
            assert written["keystore"]["connection_url"].startswith("unix://")
            assert written["keystore"]["connection_url"].endswith("?k=fake-key")

            lair_status, conductor_status = await holochain.stop()
            assert lair_status.signal == "SIGTERM"
            assert conductor_status.signal == "SIGTERM"
            assert holochain.state == LifecycleState.STOPPED
        finally:
            await holochain.destroy()

    @pytest.mark.asyncio
    async def test_start_twice(self, fake_daemons):
        holochain = Holochain()
        try:
            await holochain.start(20)
            with pytest.raises(ControllerStateError, match="already started"):
                await holochain.start(20)
        finally:
            await holochain.destroy()

    @pytest.mark.asyncio
    async def test_output_channels_see_daemon_output(self, fake_daemons):
        holochain = Holochain()
        lair_lines, conductor_lines = [], []
        holochain.lair_output.stdout.subscribe(lambda r: lair_lines.append(r.message))
        holochain.conductor_output.stdout.subscribe(lambda r: conductor_lines.append(r.message))
        try:
            await holochain.start(20)
        finally:
            await holochain.destroy()

        assert "# lair-keystore running #" in lair_lines
        assert "Conductor ready." in conductor_lines
        assert any("admin interface bound" in line for line in conductor_lines)

    @pytest.mark.asyncio
    async def test_existing_keystore_is_not_reinitialised(self, fake_daemons, tmp_path):
        path = tmp_path / "config.yaml"
        keystore = tmp_path / "lair-keystore"
        keystore.mkdir()
        (keystore / "lair-keystore-config.yaml").write_text("connectionUrl: unix:///preexisting?k=1\n")

        holochain = Holochain(config={"path": str(path)})
        try:
            await holochain.start(20)
            assert holochain.config["keystore"]["connection_url"] == "unix:///preexisting?k=1"
        finally:
            await holochain.destroy()

    @pytest.mark.asyncio
    async def test_fatal_report_short_circuits_start(self, fake_daemons, monkeypatch):
        monkeypatch.setenv("FAKE_HOLOCHAIN_MODE", "fatal")
        holochain = Holochain()
        try:
            with pytest.raises(ProcessStartError) as excinfo:
                await holochain.start(20)

            message = str(excinfo.value)
            assert message.startswith("Conductor reported a fatal error:")
            assert "FATAL PANIC PanicInfo {" in message
            assert "keystore connection refused" in message
            # The daemons were stopped as part of the failed start
            assert not holochain.conductor.running
            assert not holochain.lair.running

            with pytest.raises(ProcessStartError):
                await holochain.ready()
        finally:
            await holochain.destroy()

    @pytest.mark.asyncio
    async def test_conductor_exit_before_ready(self, fake_daemons, monkeypatch):
        monkeypatch.setenv("FAKE_HOLOCHAIN_MODE", "exit")
        holochain = Holochain()
        try:
            with pytest.raises(ProcessStartError) as excinfo:
                await holochain.start(20)
            assert excinfo.value.code == 2
            assert "could not open database" in excinfo.value.output
        finally:
            await holochain.destroy()

    @pytest.mark.asyncio
    async def test_lair_crash(self, fake_daemons, monkeypatch):
        monkeypatch.setenv("FAKE_LAIR_MODE", "crash")
        holochain = Holochain()
        try:
            with pytest.raises(ProcessStartError) as excinfo:
                await holochain.start(20)
            assert excinfo.value.name == "lair"
            assert excinfo.value.code == 3
            assert holochain.conductor is None
        finally:
            await holochain.destroy()

    @pytest.mark.asyncio
    async def test_keystore_init_failure(self, fake_daemons, monkeypatch):
        monkeypatch.setenv("FAKE_LAIR_MODE", "fail-init")
        holochain = Holochain()
        try:
            with pytest.raises(ProcessStartError, match="lair-keystore init failed"):
                await holochain.start(20)
            assert holochain.lair is None
        finally:
            await holochain.destroy()

    @pytest.mark.asyncio
    async def test_start_timeout(self, fake_daemons, monkeypatch):
        monkeypatch.setenv("FAKE_HOLOCHAIN_MODE", "silent")
        holochain = Holochain()
        try:
            with pytest.raises(StartupTimeoutError) as excinfo:
                await holochain.start(2)
            assert str(excinfo.value) == "Failed to start Holochain within 2s"
            assert not holochain.conductor.running
        finally:
            await holochain.destroy()

    @pytest.mark.asyncio
    async def test_missing_binary(self, monkeypatch, tmp_path):
        monkeypatch.setenv("BACKDROP_LAIR_BIN", str(tmp_path / "no-such-lair"))
        holochain = Holochain()
        try:
            with pytest.raises(ProcessStartError, match="no-such-lair"):
                await holochain.start(10)
        finally:
            await holochain.destroy()

    @pytest.mark.asyncio
    async def test_ensure_app_port(self, fake_daemons):
        holochain = Holochain()
        try:
            await holochain.start(20)
            port = await holochain.ensure_app_port()
            pinned = await holochain.ensure_app_port(port + 1)

            assert pinned == port + 1
            assert holochain.app_ports() == [port, port + 1]
            assert port not in holochain.admin_ports()
        finally:
            await holochain.destroy()

    @pytest.mark.asyncio
    async def test_destroy_while_running_removes_everything(self, fake_daemons):
        holochain = Holochain()
        await holochain.start(20)
        basedir = holochain.basedir
        lair, conductor = holochain.lair, holochain.conductor

        await holochain.destroy("test")

        assert not basedir.exists()
        assert not lair.running
        assert not conductor.running
        assert len(holochain.conductor_output.stdout) == 0

    @pytest.mark.asyncio
    async def test_destroy_releases_app_ports(self, fake_daemons):
        holochain = Holochain()
        await holochain.start(20)
        port = await holochain.ensure_app_port()
        assert port in port_allocator._handed_out

        await holochain.destroy()
        assert port not in port_allocator._handed_out

    @pytest.mark.asyncio
    async def test_destroy_on_first_tick_of_start(self, fake_daemons):
        holochain = Holochain()
        start_task = asyncio.ensure_future(holochain.start(20))
        await asyncio.sleep(0)

        await holochain.destroy()
        with pytest.raises(ControllerStateError, match="destroyed"):
            await start_task

        assert holochain.state == LifecycleState.DESTROYED
        assert holochain.lair is None or not holochain.lair.running
        assert holochain.conductor is None or not holochain.conductor.running
        with pytest.raises(ControllerStateError):
            await holochain.ready()

    @pytest.mark.asyncio
    async def test_destroy_after_lair_spawned(self, fake_daemons):
        holochain = Holochain()
        start_task = asyncio.ensure_future(holochain.start(20))
        while holochain.lair is None and not start_task.done():
            await asyncio.sleep(0.005)
        lair = holochain.lair

        await holochain.destroy()
        with pytest.raises(ControllerStateError, match="destroyed"):
            await start_task

        assert lair is not None
        assert not lair.running
        assert holochain.conductor is None or not holochain.conductor.running
        assert not holochain._hooks.registered
        # Nothing is spawned once destroy has returned
        await asyncio.sleep(0.2)
        assert holochain.conductor is None or not holochain.conductor.running
        assert holochain.state == LifecycleState.DESTROYED
