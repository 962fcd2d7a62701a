"""
Supervised Daemon Process
=========================

Spawns one named child process, wires its stdout/stderr through
``LineParser`` + ``classify_line`` and exposes readiness, output-marker and
stop/kill primitives.

Lifecycle:

    NOT_STARTED -> STARTING -> RUNNING -> STOPPING -> STOPPED
                       |           |
                       +-> FAILED  +-> STOPPED (exited on its own)

Readiness comes in two flavours:

    await proc.ready(timeout)             # OS process has been spawned
    await proc.output("running", timeout) # a stdout line carried the marker

Both reject with ``ProcessStartError`` (carrying exit code and signal) when
the process cannot be spawned or exits before the marker shows up, and with
``StartupTimeoutError`` when the budget runs out.

Usage:
    proc = SupervisedProcess("lair", ["lair-keystore", "-r", path, "server", "-p"],
                             env={"RUST_LOG": "info"}, stdin_data="\\n")
    proc.channels.stderr.subscribe(print_record)
    proc.start()
    await proc.ready(5.0)
    await proc.output("running", 30.0)
    ...
    status = await proc.stop()
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional, Sequence, Tuple, Union

import psutil

from backdrop.config.startup_timeouts import get_timeouts
from backdrop.core.errors import ControllerStateError, ProcessStartError, StartupTimeoutError
from backdrop.core.line_parser import LineParser
from backdrop.core.log_classifier import LogRecord, classify_line
from backdrop.core.one_shot import OneShot
from backdrop.core.output_channels import OutputChannel, OutputChannels

logger = logging.getLogger(__name__)

Marker = Union[str, Callable[[LogRecord], bool]]

READ_CHUNK_SIZE = 64 * 1024
PIPE_DRAIN_TIMEOUT = 2.0


class ProcessState(str, Enum):
    """Supervised process lifecycle states."""
    NOT_STARTED = "not_started"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass(frozen=True)
class ExitStatus:
    """Terminal status of a child process: an exit code or a signal name."""
    code: Optional[int]
    signal: Optional[str]

    @classmethod
    def from_returncode(cls, returncode: int) -> "ExitStatus":
        if returncode < 0:
            try:
                name = signal.Signals(-returncode).name
            except ValueError:
                name = f"SIG{-returncode}"
            return cls(code=None, signal=name)
        return cls(code=returncode, signal=None)

    @property
    def signaled(self) -> bool:
        return self.signal is not None

    def __str__(self) -> str:
        if self.signal:
            return f"signal {self.signal}"
        return f"code {self.code}"


def _as_predicate(marker: Marker) -> Callable[[LogRecord], bool]:
    if callable(marker):
        return marker
    return lambda record: marker in record.message


def _describe(marker: Marker) -> str:
    if callable(marker):
        return getattr(marker, "__name__", "predicate")
    return repr(marker)


class SupervisedProcess:
    """
    One supervised child process.

    Args:
        name: Label used in logs and errors
        command: Full argument vector; ``command[0]`` is the executable
        env: Variables overlaid on the current environment
        stdin_data: Written to stdin right after spawn, then stdin is closed
        cwd: Working directory
        history_size: How many stdout records ``output`` can look back on
        channels: Subscription channels to emit into; a fresh pair when omitted
    """

    def __init__(
        self,
        name: str,
        command: Sequence[str],
        env: Optional[Dict[str, str]] = None,
        stdin_data: Optional[Union[str, bytes]] = None,
        cwd: Optional[str] = None,
        history_size: int = 500,
        channels: Optional[OutputChannels] = None,
    ):
        if not command:
            raise ValueError("command must not be empty")

        self.name = name
        self.command: List[str] = [str(part) for part in command]
        self.env: Dict[str, str] = dict(env or {})
        self.stdin_data = stdin_data
        self.cwd = cwd
        self.channels = channels if channels is not None else OutputChannels(name)
        self.state = ProcessState.NOT_STARTED

        self._process: Optional[asyncio.subprocess.Process] = None
        self._task: Optional[asyncio.Task] = None
        self._stopping: Optional[asyncio.Future] = None
        self._spawned: OneShot[int] = OneShot(f"{name}:spawned")
        self._exited: OneShot[ExitStatus] = OneShot(f"{name}:exited")
        self._terminal_error: Optional[ProcessStartError] = None

        self._history: Deque[LogRecord] = deque(maxlen=history_size)
        self._recent_stderr: Deque[str] = deque(maxlen=50)
        self._watchers: List[Tuple[Callable[[LogRecord], bool], OneShot[LogRecord]]] = []

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def exit_status(self) -> Optional[ExitStatus]:
        return self._exited.value if self._exited.settled else None

    # =========================================================================
    # Spawn & pump
    # =========================================================================

    def start(self) -> "SupervisedProcess":
        """Schedule the spawn on the running loop. May only be called once."""
        if self._task is not None:
            raise ControllerStateError(f"Process '{self.name}' was already started")

        self.state = ProcessState.STARTING
        self._task = asyncio.ensure_future(self._run())
        self._task.add_done_callback(self._on_run_done)
        return self

    def _on_run_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"[Supervisor:{self.name}] Supervisor task failed: {error}", exc_info=error)
            self._spawned.reject(error)
            self._exited.reject(error)

    async def _run(self) -> None:
        full_env = os.environ.copy()
        full_env.update(self.env)

        logger.info(f"[Supervisor:{self.name}] Starting: {' '.join(self.command)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=full_env,
                cwd=self.cwd,
            )
        except OSError as e:
            error = ProcessStartError(
                self.name,
                f"Failed to spawn {self.name} ({self.command[0]}): {e}",
            )
            logger.error(f"[Supervisor:{self.name}] {error}")
            self.state = ProcessState.FAILED
            self._fail(error)
            self._exited.reject(error)
            return

        self._process = process
        self.state = ProcessState.RUNNING
        self._spawned.fulfill(process.pid)
        logger.info(f"[Supervisor:{self.name}] Started with PID {process.pid}")

        pumps = [
            asyncio.ensure_future(self._pump(process.stdout, self.channels.stdout, is_stdout=True)),
            asyncio.ensure_future(self._pump(process.stderr, self.channels.stderr, is_stdout=False)),
        ]
        await self._write_stdin(process)

        returncode = await process.wait()

        # Let the pumps deliver whatever was still sitting in the pipes
        done, pending = await asyncio.wait(pumps, timeout=PIPE_DRAIN_TIMEOUT)
        for pump in pending:
            pump.cancel()
        for pump in done:
            if not pump.cancelled() and pump.exception() is not None:
                logger.warning(f"[Supervisor:{self.name}] Output reader failed: {pump.exception()}")

        status = ExitStatus.from_returncode(returncode)
        if self.state != ProcessState.STOPPING:
            logger.warning(f"[Supervisor:{self.name}] Exited unexpectedly with {status}")
        else:
            logger.info(f"[Supervisor:{self.name}] Stopped with {status}")
        self.state = ProcessState.STOPPED

        self._fail(ProcessStartError(
            self.name,
            f"{self.name} exited with {status} before it was ready",
            code=status.code,
            signal=status.signal,
            output="\n".join(self._recent_stderr),
        ))
        self._exited.fulfill(status)

    async def _write_stdin(self, process: asyncio.subprocess.Process) -> None:
        if process.stdin is None:
            return
        try:
            if self.stdin_data is not None:
                data = self.stdin_data.encode() if isinstance(self.stdin_data, str) else self.stdin_data
                process.stdin.write(data)
                await process.stdin.drain()
            process.stdin.close()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.debug(f"[Supervisor:{self.name}] stdin closed early: {e}")

    async def _pump(
        self,
        stream: Optional[asyncio.StreamReader],
        channel: OutputChannel,
        is_stdout: bool,
    ) -> None:
        if stream is None:
            return

        parser = LineParser()
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            parser.write(chunk)
            for line in parser.drain():
                self._dispatch(line, channel, is_stdout)

        tail = parser.flush()
        if tail is not None:
            self._dispatch(tail, channel, is_stdout)

    def _dispatch(self, line: str, channel: OutputChannel, is_stdout: bool) -> None:
        record = classify_line(line)
        if is_stdout:
            self._history.append(record)
            self._check_watchers(record)
        else:
            self._recent_stderr.append(record.text)
        channel.emit(record)

    def _check_watchers(self, record: LogRecord) -> None:
        for watcher in list(self._watchers):
            predicate, gate = watcher
            if gate.settled:
                continue
            try:
                matched = predicate(record)
            except Exception as e:
                gate.reject(e)
                continue
            if matched:
                gate.fulfill(record)

    def _fail(self, error: ProcessStartError) -> None:
        """Record the terminal error and hand it to every pending watcher."""
        if self._terminal_error is None:
            self._terminal_error = error
        self._spawned.reject(error)
        for _, gate in self._watchers:
            gate.reject(error)

    # =========================================================================
    # Readiness
    # =========================================================================

    async def ready(self, timeout: Optional[float] = None) -> int:
        """
        Wait until the OS process has been spawned; returns its PID.

        Raises:
            ProcessStartError: if the spawn failed
            StartupTimeoutError: if ``timeout`` elapsed first
        """
        try:
            return await self._spawned.wait(timeout)
        except asyncio.TimeoutError:
            raise StartupTimeoutError(f"spawn {self.name}", timeout) from None

    async def output(self, marker: Marker, timeout: Optional[float] = None) -> LogRecord:
        """
        Wait for a stdout record whose message contains ``marker``
        (or satisfies it, when ``marker`` is a predicate).

        Records seen before the call are considered too.

        Raises:
            ProcessStartError: if the process exits (or never spawns) first
            StartupTimeoutError: if ``timeout`` elapsed first
        """
        predicate = _as_predicate(marker)
        for record in self._history:
            if predicate(record):
                return record

        if self._terminal_error is not None:
            raise self._terminal_error

        gate: OneShot[LogRecord] = OneShot(f"{self.name}:output")
        watcher = (predicate, gate)
        self._watchers.append(watcher)
        try:
            return await gate.wait(timeout)
        except asyncio.TimeoutError:
            raise StartupTimeoutError(
                f"observe {_describe(marker)} from {self.name}", timeout
            ) from None
        finally:
            if watcher in self._watchers:
                self._watchers.remove(watcher)

    async def wait(self) -> ExitStatus:
        """Wait for the process to exit on its own."""
        return await self._exited.wait()

    # =========================================================================
    # Stop
    # =========================================================================

    async def stop(self, grace: Optional[float] = None) -> Optional[ExitStatus]:
        """
        Terminate the process (SIGTERM, then SIGKILL after ``grace`` seconds).

        Idempotent: an already-exited process returns its recorded status.
        Returns None when the process was never spawned.
        """
        if self._task is None:
            return None

        try:
            await self._spawned.wait()
        except ProcessStartError:
            return None

        if self._exited.settled:
            return self._exited.value

        if self._stopping is None:
            grace = grace if grace is not None else get_timeouts().stop_grace
            self._stopping = asyncio.ensure_future(self._terminate(grace))
        return await asyncio.shield(self._stopping)

    async def _terminate(self, grace: float) -> ExitStatus:
        process = self._process
        self.state = ProcessState.STOPPING

        if process.returncode is None:
            logger.debug(f"[Supervisor:{self.name}] Sending SIGTERM to PID {process.pid}")
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), timeout=grace)
            except asyncio.TimeoutError:
                logger.warning(f"[Supervisor:{self.name}] PID {process.pid} didn't exit, escalating to SIGKILL")
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()

        return await self._exited.wait()

    def kill_sync(self, grace: float = 2.0) -> None:
        """Synchronous terminate/kill for interpreter-exit hooks where no loop runs."""
        if not self.running:
            return

        pid = self._process.pid
        try:
            proc = psutil.Process(pid)
            proc.terminate()
            try:
                proc.wait(timeout=grace)
            except psutil.TimeoutExpired:
                logger.warning(f"[Supervisor:{self.name}] PID {pid} ignored SIGTERM, killing")
                proc.kill()
        except psutil.NoSuchProcess:
            return

    def __repr__(self) -> str:
        return f"<SupervisedProcess {self.name} pid={self.pid} state={self.state.value}>"
