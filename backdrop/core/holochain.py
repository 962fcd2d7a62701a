"""
Holochain Lifecycle Controller
==============================

Orchestrates the keystore (``lair-keystore``) and conductor (``holochain``)
daemons for local development and tests:

    constructed -> configuring -> configured -> starting -> ready
                -> stopping -> stopped -> destroyed

``destroyed`` is reachable from every state and ``destroy`` is idempotent.

Startup ordering:
    1. setup(): resolve the conductor config (constructor / existing file /
       freshly generated in a temp dir) and create the base directories
    2. initialise the keystore when its config file is missing
    3. write the conductor config (keystore connection URL filled in)
    4. spawn lair, wait for "running" on stdout
    5. spawn the conductor, wait for "Conductor ready" (or a FATAL report)
    6. connect the admin client

All steps share one deadline counted from the ``start`` call.

Usage:
    holochain = Holochain(default_loggers=True)
    try:
        await holochain.start()
        installs = await holochain.backdrop({"my_app": "/path/to/app.happ"})
    finally:
        await holochain.destroy()
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import shlex
import shutil
import tempfile
import uuid
from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from colorama import Fore, Style

from backdrop.clients.admin_client import AdminClient
from backdrop.config import conductor_config
from backdrop.config.startup_timeouts import get_timeouts
from backdrop.core.errors import (
    ConfigurationError,
    ControllerStateError,
    ProcessStartError,
    StartupTimeoutError,
)
from backdrop.core.installer import AppInstaller, InstallationRecord
from backdrop.core.log_classifier import LogRecord, RecordType
from backdrop.core.one_shot import OneShot
from backdrop.core.output_channels import OutputChannels
from backdrop.core.port_allocator import get_available_port, release_port
from backdrop.core.process_supervisor import ExitStatus, SupervisedProcess
from backdrop.core.shutdown_hooks import ShutdownHooks
from backdrop.utils.env_config import get_env_bool, get_env_str

logger = logging.getLogger(__name__)

LAIR_READY_MARKER = "running"
CONDUCTOR_READY_MARKER = "Conductor ready"
FATAL_MARKER = "FATAL"
FATAL_TERMINATOR = "Thank you kindly!"


def _default_log_level(specific: str) -> str:
    return get_env_str(specific) or get_env_str("RUST_LOG") or "info"


# =============================================================================
# Options
# =============================================================================

@dataclass
class ConfigOptions:
    """
    Where the conductor config comes from.

    construct: callable(holochain) returning the config dict (may be async);
               requires ``path``
    path: config file location; loaded when it exists
    admin_port: pin the admin port (checked against a loaded file)
    """
    path: Optional[str] = None
    admin_port: Optional[int] = None
    construct: Optional[Callable[["Holochain"], Any]] = None

    @classmethod
    def coerce(cls, value: Union["ConfigOptions", Mapping[str, Any], None]) -> "ConfigOptions":
        if value is None:
            return cls()
        if isinstance(value, ConfigOptions):
            return value
        if isinstance(value, Mapping):
            known = {f.name for f in fields(cls)}
            unknown = set(value) - known
            if unknown:
                raise ConfigurationError(f"Unknown config option(s): {', '.join(sorted(unknown))}")
            return cls(**value)
        raise ConfigurationError(f"Unsupported config options type '{type(value).__name__}'")


@dataclass
class HolochainOptions:
    """Controller options; every field has a working default."""

    name: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    config: Optional[ConfigOptions] = None
    timeout: Optional[float] = None
    """Per-request admin RPC timeout (seconds)."""

    lair_log: str = field(default_factory=lambda: _default_log_level("LAIR_LOG"))
    conductor_log: str = field(default_factory=lambda: _default_log_level("CONDUCTOR_LOG"))

    lair_command: Sequence[str] = field(default_factory=lambda: shlex.split(
        get_env_str("BACKDROP_LAIR_BIN", "lair-keystore")
    ))
    holochain_command: Sequence[str] = field(default_factory=lambda: shlex.split(
        get_env_str("BACKDROP_HOLOCHAIN_BIN", "holochain")
    ))

    default_loggers: bool = False
    default_stdout_loggers: bool = False
    default_stderr_loggers: bool = False
    cleanup: bool = field(default_factory=lambda: get_env_bool("BACKDROP_CLEANUP", True))

    def __post_init__(self) -> None:
        self.name = self.name[:8]
        self.config = ConfigOptions.coerce(self.config)
        self.lair_command = list(self.lair_command)
        self.holochain_command = list(self.holochain_command)
        if self.default_loggers:
            self.default_stdout_loggers = True
            self.default_stderr_loggers = True


class LifecycleState(str, Enum):
    CONSTRUCTED = "constructed"
    CONFIGURING = "configuring"
    CONFIGURED = "configured"
    STARTING = "starting"
    READY = "ready"
    STOPPING = "stopping"
    STOPPED = "stopped"
    DESTROYED = "destroyed"


# =============================================================================
# Controller
# =============================================================================

class Holochain:
    """
    Owns one keystore + conductor pair and every file generated for them.

    Args:
        options: ``HolochainOptions`` or a mapping of its fields
        **overrides: individual option fields, applied over ``options``
    """

    def __init__(
        self,
        options: Union[HolochainOptions, Mapping[str, Any], None] = None,
        **overrides: Any,
    ):
        if isinstance(options, HolochainOptions):
            values = {f.name: getattr(options, f.name) for f in fields(HolochainOptions)}
        else:
            values = dict(options or {})
        values.update(overrides)
        self.options = HolochainOptions(**values)

        self.state = LifecycleState.CONSTRUCTED
        self.config: Optional[Dict[str, Any]] = None
        self.config_file: Optional[Path] = None
        self.basedir: Optional[Path] = None
        self.keystore_path: Optional[Path] = None

        self.lair: Optional[SupervisedProcess] = None
        self.conductor: Optional[SupervisedProcess] = None
        self.admin: Optional[AdminClient] = None

        self.lair_output = OutputChannels("lair")
        self.conductor_output = OutputChannels("conductor")

        self._cleanup_config = False
        self._cleanup_basedir = False
        self._app_ports: List[int] = []
        self._allocated_ports: List[int] = []
        self._setup_task: Optional[asyncio.Future] = None
        self._start_task: Optional[asyncio.Future] = None
        self._start_called = False
        self._destroyed = False
        self._ready: OneShot[None] = OneShot(f"{self.id}:ready")
        self._installer = AppInstaller(self)

        self._hooks = ShutdownHooks(self.id)
        self._hooks.add("remove generated files", self._exit_cleanup)
        self._hooks.add("kill daemons", self._kill_daemons)
        self._hooks.register()

        self._attach_default_loggers()

    @property
    def id(self) -> str:
        return self.options.name

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def __repr__(self) -> str:
        return f"<Holochain {self.id} state={self.state.value} basedir={self.basedir}>"

    # =========================================================================
    # Setup
    # =========================================================================

    async def setup(self) -> Path:
        """
        Resolve the configuration once; every call awaits the same result.

        Raises:
            ConfigurationError: constructor without path, admin port mismatch,
                unreadable config
        """
        if self._setup_task is None:
            self.state = LifecycleState.CONFIGURING
            self._setup_task = asyncio.ensure_future(self._setup())
        return await asyncio.shield(self._setup_task)

    async def _setup(self) -> Path:
        opts = self.options.config
        logger.debug(f"[Holochain:{self.id}] Setup using {opts}")

        config: Optional[Dict[str, Any]] = None
        if opts.construct is not None:
            logger.info(f"[Holochain:{self.id}] Using constructor to build config content")
            # Storage paths inside a constructed config must not be orphaned at cleanup
            if not opts.path:
                raise ConfigurationError("You must specify the config path if you use a config constructor")

            config = opts.construct(self)
            if inspect.isawaitable(config):
                config = await config
            if not isinstance(config, dict):
                raise ConfigurationError(
                    f"Config constructor must return a mapping; not type '{type(config).__name__}'"
                )
            self._cleanup_config = True

        elif opts.path and Path(opts.path).exists():
            config = conductor_config.load_config(opts.path)
            ports = conductor_config.admin_ports(config)
            if opts.admin_port and opts.admin_port not in ports:
                raise ConfigurationError(
                    f"The given admin port ({opts.admin_port}) does not match any from the "
                    f"config file: {', '.join(str(p) for p in ports)}"
                )

        if opts.path:
            self.config_file = Path(opts.path).absolute()
            self.basedir = self.config_file.parent
            logger.debug(f"[Holochain:{self.id}] Config file location: {self.config_file}")

        if config is None:
            if self.basedir is None:
                self.basedir = Path(tempfile.mkdtemp(prefix="conductor-"))
                self._cleanup_basedir = True
                logger.info(f"[Holochain:{self.id}] Using tmp folder as base dir: {self.basedir}")

            config = await conductor_config.generate(self.basedir, opts.admin_port)
            if opts.admin_port is None:
                self._allocated_ports.extend(conductor_config.admin_ports(config))
            logger.info(
                f"[Holochain:{self.id}] Generated a config with admin port "
                f"{conductor_config.admin_ports(config)[0]}"
            )

            if self.config_file is None:
                self.config_file = self.basedir / conductor_config.CONFIG_FILENAME
                self._cleanup_config = True

        self.config = config

        if not conductor_config.admin_ports(config):
            raise ConfigurationError("Config does not declare any admin interface port")

        keystore = conductor_config.keystore_path(config)
        self.keystore_path = Path(keystore) if keystore else self.basedir / conductor_config.KEYSTORE_DIRNAME

        self.basedir.mkdir(parents=True, exist_ok=True)
        self.keystore_path.mkdir(parents=True, exist_ok=True)

        if self.state == LifecycleState.CONFIGURING:
            self.state = LifecycleState.CONFIGURED
        return self.basedir

    def _assert_setup(self) -> None:
        if self.config is None:
            raise ConfigurationError("Not setup")

    def admin_ports(self) -> List[int]:
        self._assert_setup()
        return conductor_config.admin_ports(self.config)

    def app_ports(self) -> List[int]:
        self._assert_setup()
        return list(self._app_ports)

    # =========================================================================
    # Start
    # =========================================================================

    async def start(self, timeout: Optional[float] = None) -> None:
        """
        Launch keystore then conductor within ``timeout`` seconds.

        Raises:
            ControllerStateError: called twice, after destroy, or destroyed
                while starting
            StartupTimeoutError: the overall budget ran out
            ProcessStartError: a daemon failed to spawn, exited early or
                reported a fatal error
            ConfigurationError: setup failed
        """
        if self._start_called:
            raise ControllerStateError("Tried to start Conductor when it was already started")
        if self._destroyed:
            raise ControllerStateError("Tried to start a destroyed Holochain")
        self._start_called = True

        timeouts = get_timeouts()
        timeout = timeouts.validate_timeout(
            timeout if timeout is not None else timeouts.start_timeout, "start timeout"
        )
        loop = asyncio.get_running_loop()
        started_at = loop.time()

        def remaining() -> float:
            return timeout - (loop.time() - started_at)

        # destroy() cancels this task so nothing gets spawned after teardown
        self._start_task = asyncio.ensure_future(self._start(remaining))
        try:
            await self._start_task
        except asyncio.CancelledError:
            if self._destroyed:
                error = ControllerStateError("Holochain was destroyed while starting")
                self._ready.reject(error)
                raise error from None
            self._ready.reject(ControllerStateError("Start was cancelled"))
            raise
        except (StartupTimeoutError, asyncio.TimeoutError) as e:
            error = StartupTimeoutError("start Holochain", timeout)
            logger.error(f"[Holochain:{self.id}] {error} ({e})")
            await self._abort_start(error)
            raise error from e
        except Exception as e:
            logger.error(f"[Holochain:{self.id}] Start failed: {e}")
            await self._abort_start(e)
            raise

        logger.info(f"[Holochain:{self.id}] Conductor is ready ({loop.time() - started_at:.2f}s)")

    async def _start(self, remaining: Callable[[], float]) -> None:
        await asyncio.wait_for(self.setup(), timeout=max(remaining(), 0))
        self.state = LifecycleState.STARTING

        lair_config = self.keystore_path / conductor_config.KEYSTORE_CONFIG_FILENAME
        if not lair_config.exists():
            logger.info(f"[Holochain:{self.id}] Initializing lair-keystore because {lair_config} did not exist")
            await self._init_keystore(remaining)

        connection_url = conductor_config.read_keystore_connection_url(self.keystore_path)
        conductor_config.set_connection_url(self.config, connection_url)

        logger.info(f"[Holochain:{self.id}] Writing config file to {self.config_file}")
        conductor_config.write_config(self.config_file, self.config)

        self._raise_if_destroyed("spawning lair-keystore")
        # Keystore
        logger.info(f"[Holochain:{self.id}] Starting lair-keystore with log level {self.options.lair_log}")
        self.lair = SupervisedProcess(
            "lair",
            [*self.options.lair_command, "-r", str(self.keystore_path), "server", "-p"],
            env={"RUST_LOG": self.options.lair_log},
            stdin_data="\n",
            channels=self.lair_output,
        ).start()

        await self.lair.ready(remaining())
        logger.debug(f"[Holochain:{self.id}] Lair PID {self.lair.pid}")
        await self.lair.output(LAIR_READY_MARKER, remaining())
        logger.info(f"[Holochain:{self.id}] Lair is ready")

        self._raise_if_destroyed("spawning the conductor")
        # Conductor
        logger.info(f"[Holochain:{self.id}] Starting conductor with log level {self.options.conductor_log}")
        fatal: OneShot[str] = OneShot(f"{self.id}:fatal")
        fatal_lines: List[str] = []

        def capture_fatal(record: LogRecord) -> None:
            line = record.text
            if FATAL_MARKER in line or fatal_lines:
                fatal_lines.append(line)
                if line.startswith("}") or FATAL_TERMINATOR in line:
                    fatal.fulfill("\n".join(fatal_lines))

        unsubscribe = self.conductor_output.stderr.subscribe(capture_fatal)
        try:
            self.conductor = SupervisedProcess(
                "conductor",
                [*self.options.holochain_command, "-p", "-c", str(self.config_file)],
                env={"RUST_LOG": self.options.conductor_log},
                stdin_data="\n",
                channels=self.conductor_output,
            ).start()

            await self.conductor.ready(remaining())
            logger.debug(f"[Holochain:{self.id}] Conductor PID {self.conductor.pid}")
            await self._await_conductor_ready(fatal, remaining())
        finally:
            unsubscribe()

        self._raise_if_destroyed("marking the conductor ready")
        self.admin = AdminClient(self.admin_ports()[0], timeout=self.options.timeout)
        self.state = LifecycleState.READY
        self._ready.fulfill(None)

    async def _await_conductor_ready(self, fatal: OneShot[str], timeout: float) -> None:
        """Wait for the ready marker unless a fatal report arrives first."""
        ready_task = asyncio.ensure_future(self.conductor.output(CONDUCTOR_READY_MARKER, timeout))
        fatal_task = asyncio.ensure_future(fatal.wait())

        try:
            done, _ = await asyncio.wait({ready_task, fatal_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            pending = [task for task in (ready_task, fatal_task) if not task.done()]
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        if fatal_task in done:
            output = fatal_task.result()
            if ready_task in done and not ready_task.cancelled():
                ready_task.exception()
            raise ProcessStartError(
                "conductor",
                f"Conductor reported a fatal error:\n{output}",
                output=output,
            )
        ready_task.result()

    async def _init_keystore(self, remaining: Callable[[], float]) -> None:
        """Run ``lair-keystore init`` to completion within the remaining budget."""
        budget = min(remaining(), get_timeouts().keystore_init_timeout)
        command = [*self.options.lair_command, "-r", str(self.keystore_path), "init", "-p"]

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ProcessStartError("lair-init", f"Failed to run {' '.join(command)}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(input=b""), timeout=max(budget, 0))
        except (asyncio.TimeoutError, asyncio.CancelledError):
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        if process.returncode != 0:
            status = ExitStatus.from_returncode(process.returncode)
            output = stderr.decode(errors="replace")
            raise ProcessStartError(
                "lair-init",
                f"lair-keystore init failed with {status}: {output.strip()}",
                code=status.code,
                signal=status.signal,
                output=output,
            )
        logger.debug(f"[Holochain:{self.id}] lair-keystore init: {stdout.decode(errors='replace').strip()}")

    def _raise_if_destroyed(self, step: str) -> None:
        if self._destroyed:
            raise ControllerStateError(f"Holochain was destroyed before {step}")

    async def _abort_start(self, error: BaseException) -> None:
        self._ready.reject(error)
        try:
            await self.stop()
        except Exception as e:
            logger.error(f"[Holochain:{self.id}] Cleanup after failed start also failed: {e}")

    async def ready(self) -> None:
        """Resolves once ``start`` has completed; raises its error if it failed."""
        await self._ready.wait()

    async def ensure_started(self) -> None:
        if not self._start_called:
            await self.start()
        else:
            await self.ready()

    # =========================================================================
    # Stop / destroy
    # =========================================================================

    async def stop(self) -> Tuple[Optional[ExitStatus], Optional[ExitStatus]]:
        """Close the admin client, then stop both daemons concurrently."""
        if self.admin is not None:
            await self.admin.close()

        if self.lair or self.conductor:
            self.state = LifecycleState.STOPPING
        logger.debug(f"[Holochain:{self.id}] Stopping lair ({bool(self.lair)}) and conductor ({bool(self.conductor)})")

        lair_status, conductor_status = await asyncio.gather(
            self._stop_process(self.lair),
            self._stop_process(self.conductor),
        )
        if self.state == LifecycleState.STOPPING:
            self.state = LifecycleState.STOPPED
        return lair_status, conductor_status

    @staticmethod
    async def _stop_process(process: Optional[SupervisedProcess]) -> Optional[ExitStatus]:
        if process is None:
            return None
        return await process.stop()

    async def destroy(self, reason: str = "unspecified") -> None:
        """
        Stop everything and remove auto-generated files, exactly once.

        Never raises: failures are logged so they cannot mask the error
        that triggered teardown.
        """
        if self._destroyed:
            return
        self._destroyed = True
        logger.debug(f"[Holochain:{self.id}] Destroying because of {reason}")

        if self._start_task is not None and not self._start_task.done():
            logger.info(f"[Holochain:{self.id}] Cancelling start that is still in progress")
            self._start_task.cancel()
            await asyncio.gather(self._start_task, return_exceptions=True)
        self._ready.reject(ControllerStateError("Holochain was destroyed"))

        if self._setup_task is not None:
            try:
                await self._setup_task
            except Exception as e:
                logger.debug(f"[Holochain:{self.id}] Setup had failed: {e}")

        try:
            statuses = await self.stop()
            logger.debug(f"[Holochain:{self.id}] Exit statuses: lair={statuses[0]} conductor={statuses[1]}")
        except Exception as e:
            logger.error(f"[Holochain:{self.id}] Error while stopping: {e}")
        self._hooks.unregister()

        for port in self._allocated_ports:
            release_port(port)
        self._allocated_ports.clear()

        if self.options.cleanup:
            self._remove_generated()

        self.lair_output.clear()
        self.conductor_output.clear()
        self.state = LifecycleState.DESTROYED

    def _remove_generated(self) -> None:
        if self._cleanup_config and self.config_file is not None:
            self._cleanup_config = False
            if self.config_file.exists():
                logger.info(f"[Holochain:{self.id}] Removing generated config file {self.config_file}")
                try:
                    self.config_file.unlink()
                except OSError as e:
                    logger.error(f"[Holochain:{self.id}] Could not remove {self.config_file}: {e}")

        if self._cleanup_basedir and self.basedir is not None:
            self._cleanup_basedir = False
            if self.basedir.exists():
                logger.info(f"[Holochain:{self.id}] Removing generated base dir {self.basedir}")
                try:
                    shutil.rmtree(self.basedir)
                except OSError as e:
                    logger.error(f"[Holochain:{self.id}] Could not remove {self.basedir}: {e}")

    def _kill_daemons(self) -> None:
        for process in (self.conductor, self.lair):
            if process is not None:
                process.kill_sync()

    def _exit_cleanup(self) -> None:
        if self._destroyed:
            return
        logger.warning(f"[Holochain:{self.id}] Interpreter exiting without destroy; cleaning up")
        self._destroyed = True
        if self.options.cleanup:
            self._remove_generated()

    # =========================================================================
    # App interfaces & installs
    # =========================================================================

    async def ensure_app_port(self, port: Optional[int] = None) -> int:
        """Attach an app interface (on a free port when none is given)."""
        if self.admin is None:
            raise ControllerStateError("Admin client is not available before the conductor is ready")
        if port is None:
            port = await get_available_port(exclude=self._app_ports + self.admin_ports())
            self._allocated_ports.append(port)

        logger.debug(f"[Holochain:{self.id}] Attaching app interface to port {port}")
        port = await self.admin.attach_app_interface(port)
        self._app_ports.append(port)
        return port

    async def profile(self, name: str) -> bytes:
        return await self._installer.profile(name)

    async def profiles(self, *names: str) -> List[bytes]:
        return await self._installer.profiles(*names)

    async def install_app(self, profile_name: str, app_config: Any) -> InstallationRecord:
        return await self._installer.install_app(profile_name, app_config)

    async def install(
        self,
        profile_names: Union[str, Sequence[str]],
        app_configs: Any,
        defaults: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Dict[str, InstallationRecord]]:
        return await self._installer.install(profile_names, app_configs, defaults)

    async def backdrop(
        self,
        apps: Mapping[str, Any],
        actors: Sequence[str] = ("alice",),
        network_seed: str = "*",
    ) -> Dict[str, Dict[str, InstallationRecord]]:
        return await self._installer.backdrop(apps, actors, network_seed)

    # =========================================================================
    # Default console printers
    # =========================================================================

    def _attach_default_loggers(self) -> None:
        if self.options.default_stdout_loggers:
            logger.debug(f"[Holochain:{self.id}] Adding default stdout printers")
            self.lair_output.stdout.subscribe(self._stdout_printer("     Lair"))
            self.conductor_output.stdout.subscribe(self._stdout_printer("Conductor"))

        if self.options.default_stderr_loggers:
            logger.debug(f"[Holochain:{self.id}] Adding default stderr printers")
            self.lair_output.stderr.subscribe(self._stderr_printer("     Lair"))
            self.conductor_output.stderr.subscribe(
                self._stderr_printer("Conductor", skip="func_translator")
            )

    def _stdout_printer(self, label: str) -> Callable[[LogRecord], None]:
        prefix = f"{Fore.YELLOW}{Style.BRIGHT}[{self.id}] {label} STDOUT:{Style.RESET_ALL}"

        def printer(record: LogRecord) -> None:
            if record.type == RecordType.MULTILINE:
                print(f"{prefix} {record.source}{Style.RESET_ALL}")
            elif record.type == RecordType.PRINT:
                print(f"{prefix}{Fore.WHITE}{Style.NORMAL} {record.message}{Style.RESET_ALL}")
            else:
                print(f"{prefix} {record.formatted}{Style.RESET_ALL}")

        return printer

    def _stderr_printer(self, label: str, skip: Optional[str] = None) -> Callable[[LogRecord], None]:
        prefix = f"{Fore.RED}{Style.BRIGHT}[{self.id}] {label} STDERR:{Style.RESET_ALL}"

        def printer(record: LogRecord) -> None:
            if skip and skip in record.source:
                return
            text = record.source if record.type == RecordType.MULTILINE else record.formatted
            print(f"{prefix} {text}{Style.RESET_ALL}")

        return printer
