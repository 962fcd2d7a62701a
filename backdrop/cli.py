"""
hc-backdrop command line
========================

Starts a keystore + conductor pair and keeps it running until SIGINT/SIGTERM
(or until the conductor exits), then stops and cleans up.

    hc-backdrop                     # temp dir, random admin port
    hc-backdrop -p 45678            # pinned admin port
    hc-backdrop -c ./config.yaml    # config generated there if missing
    hc-backdrop -vv                 # more logging (daemons too)

``main(argv, callback)`` is the programmatic entry point: when ``callback``
is given it is called with the ready controller instead of waiting for a
signal.
"""

from __future__ import annotations

import argparse
import asyncio
import inspect
import logging
import os
import signal
import sys
from typing import Any, Callable, List, Optional

from colorama import Fore, Style

from backdrop import __version__
from backdrop.core.errors import BackdropError
from backdrop.core.holochain import Holochain
from backdrop.core.log_classifier import LogRecord, RecordType
from backdrop.logging_config import DEFAULT_VERBOSITY, configure_logging, get_verbosity_env
from backdrop.utils.env_config import get_env_str

logger = logging.getLogger(__name__)

# Rank at which a daemon record of this level is shown
LEVEL_RANKS = {
    "fatal": 0,
    "error": 1,
    "warn": 2,
    "normal": 3,
    "info": 4,
    "debug": 5,
    "trace": 6,
}

LEVEL_COLORS = {
    "fatal": Fore.RED + Style.BRIGHT,
    "error": Fore.RED,
    "warn": Fore.YELLOW,
    "normal": Fore.WHITE,
    "info": Fore.GREEN,
    "debug": Fore.CYAN,
    "trace": Style.DIM,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hc-backdrop",
        description="Run a Holochain conductor (with lair-keystore) for development and testing",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "-v", "--verbose", action="count", default=None,
        help="increase logging verbosity (repeatable; starts at 'warn')",
    )
    parser.add_argument(
        "-q", "--quiet", action="store_true",
        help="suppress all printing except for final result",
    )
    parser.add_argument(
        "-p", "--admin-port", type=int, default=None,
        help="admin port that will be saved in the conductor's config",
    )
    parser.add_argument(
        "-c", "--config", default=None,
        help="config path (generated if the file does not exist)",
    )
    parser.add_argument(
        "-t", "--timeout", type=float, default=None,
        help="startup timeout in seconds",
    )
    return parser


class ConsoleReporter:
    """Prints CLI progress and daemon output according to verbosity."""

    def __init__(self, verbosity: int, quiet: bool):
        self.verbosity = verbosity
        self.quiet = quiet

    def say(self, message: str) -> None:
        if self.quiet:
            return
        print(f"{Fore.WHITE}{message}{Style.RESET_ALL}", flush=True)

    def should_log(self, level: str) -> bool:
        return self.verbosity >= LEVEL_RANKS.get(level, LEVEL_RANKS["normal"])

    def printer(self, prefix: str) -> Callable[[LogRecord], None]:
        def print_record(record: LogRecord) -> None:
            timestamp = record.timestamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")

            if record.level is None or record.type == RecordType.UNRECOGNIZED:
                print(f"{timestamp} {prefix}{Style.RESET_ALL} {record.message}", file=sys.stderr)
                return

            level = record.level if record.level in LEVEL_RANKS else "normal"
            if not self.should_log(level):
                return

            color = LEVEL_COLORS.get(level, "")
            print(
                f"{timestamp} {prefix}{Style.RESET_ALL} {color}{level.upper():>6}{Style.RESET_ALL} | "
                f"{Fore.CYAN}{record.context:<48}{Fore.RESET} | {color}{record.message}{Style.RESET_ALL}",
                file=sys.stderr,
            )

        return print_record

    def attach(self, holochain: Holochain) -> None:
        if self.quiet:
            return
        holochain.lair_output.stdout.subscribe(self.printer(f"{Style.BRIGHT}     Lair STDOUT:"))
        holochain.lair_output.stderr.subscribe(self.printer(f"{Fore.RED}{Style.BRIGHT}     Lair STDERR:"))
        holochain.conductor_output.stdout.subscribe(self.printer(f"{Style.BRIGHT}Conductor STDOUT:"))
        holochain.conductor_output.stderr.subscribe(self.printer(f"{Fore.RED}{Style.BRIGHT}Conductor STDERR:"))


def _install_signal_handlers(loop: asyncio.AbstractEventLoop, event: asyncio.Event) -> List[int]:
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, event.set)
            installed.append(sig)
        except (NotImplementedError, RuntimeError) as e:
            logger.debug(f"[CLI] Could not register handler for {sig.name}: {e}")
    return installed


async def _wait_for_shutdown(holochain: Holochain, shutdown: asyncio.Event) -> None:
    """Block until a signal arrives or the conductor exits on its own."""
    waiters = [asyncio.ensure_future(shutdown.wait())]
    if holochain.conductor is not None:
        waiters.append(asyncio.ensure_future(holochain.conductor.wait()))

    done, pending = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)
    for task in done:
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"[CLI] Conductor wait failed: {task.exception()}")


async def main(argv: Optional[List[str]] = None, callback: Optional[Callable[[Holochain], Any]] = None) -> int:
    """
    Run the CLI.

    Raises:
        TypeError: ``callback`` is not callable
        BackdropError: setup/start failures, after cleanup has run
    """
    if callback is not None and not callable(callback):
        raise TypeError(f"Callback must be callable; not type '{type(callback).__name__}'")

    args = build_parser().parse_args(argv)

    quiet = args.quiet
    if args.verbose is None:
        verbosity = 1 if quiet else DEFAULT_VERBOSITY
    else:
        verbosity = DEFAULT_VERBOSITY + args.verbose
    configure_logging(verbosity, quiet)
    reporter = ConsoleReporter(verbosity, quiet)

    rust_log = get_verbosity_env(verbosity, quiet, get_env_str("RUST_LOG"))
    holochain = Holochain(
        lair_log=rust_log,
        conductor_log=rust_log,
        config={
            "admin_port": args.admin_port,
            "path": os.path.abspath(args.config) if args.config else None,
        },
    )
    reporter.attach(holochain)

    loop = asyncio.get_running_loop()
    shutdown = asyncio.Event()
    handled = _install_signal_handlers(loop, shutdown)

    try:
        base_dir = await holochain.setup()
        reporter.say(f'Starting Holochain in "{base_dir}"...')
        await holochain.start(args.timeout)

        await holochain.ready()
        reporter.say("Holochain is ready")

        if callback is not None:
            result = callback(holochain)
            if inspect.isawaitable(result):
                await result
        else:
            await _wait_for_shutdown(holochain, shutdown)
    finally:
        reporter.say("Running cleanup...")
        for sig in handled:
            loop.remove_signal_handler(sig)

        reporter.say("\nStopping Holochain...")
        try:
            await holochain.stop()
        except BackdropError as e:
            logger.error(f"[CLI] Holochain stop raised an error: {e}")
        await holochain.destroy("cli exit")

    return 0


def run() -> None:
    """Console-script entry point."""
    try:
        code = asyncio.run(main(sys.argv[1:]))
    except BackdropError as e:
        print(f"{Fore.RED}{e}{Style.RESET_ALL}", file=sys.stderr)
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    run()
