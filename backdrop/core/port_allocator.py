"""
Free Port Allocation
====================

Finds currently-unused local TCP ports for the conductor admin interface and
app interfaces.

The OS picks the port (bind to port 0); the probe runs in the default
executor so the event loop never blocks on socket calls. Ports handed out by
this module are remembered until ``release_port`` is called, so two
controllers started back to back never receive the same port before either
daemon has bound it. ``Holochain.destroy`` releases the ports it allocated.

Usage:
    from backdrop.core.port_allocator import get_available_port

    port = await get_available_port()
"""

from __future__ import annotations

import asyncio
import logging
import socket
from typing import Iterable, Optional, Set

from backdrop.config.startup_timeouts import get_timeouts
from backdrop.core.errors import PortAllocationError
from backdrop.utils.env_config import get_env_int

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
MAX_ATTEMPTS = get_env_int("BACKDROP_PORT_ATTEMPTS", 20, min_val=1)

_handed_out: Set[int] = set()


def _sync_bind_ephemeral(host: str, timeout: float) -> int:
    """Bind to port 0 and return the port the OS assigned."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.settimeout(timeout)
        sock.bind((host, 0))
        return sock.getsockname()[1]


def _sync_bind_test(host: str, port: int, timeout: float) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.settimeout(timeout)
        try:
            sock.bind((host, port))
        except OSError:
            return False
        return True


async def is_port_available(
    port: int,
    host: str = DEFAULT_HOST,
    timeout: Optional[float] = None,
) -> bool:
    """Verify a specific port is bindable right now."""
    timeout = timeout or get_timeouts().port_probe_timeout
    loop = asyncio.get_running_loop()
    try:
        return await asyncio.wait_for(
            loop.run_in_executor(None, _sync_bind_test, host, port, timeout),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        logger.debug(f"[PortAllocator] Bind test timed out for port {port}")
        return False


async def get_available_port(
    host: str = DEFAULT_HOST,
    exclude: Iterable[int] = (),
    timeout: Optional[float] = None,
) -> int:
    """
    Allocate a free TCP port.

    Args:
        host: Interface to probe on
        exclude: Ports the caller already uses and must not receive
        timeout: Per-probe timeout in seconds

    Raises:
        PortAllocationError: if no port could be allocated
    """
    timeout = timeout or get_timeouts().port_probe_timeout
    excluded = set(exclude) | _handed_out
    loop = asyncio.get_running_loop()
    last_error: Optional[BaseException] = None

    for attempt in range(1, MAX_ATTEMPTS + 1):
        try:
            port = await asyncio.wait_for(
                loop.run_in_executor(None, _sync_bind_ephemeral, host, timeout),
                timeout=timeout,
            )
        except (OSError, asyncio.TimeoutError) as e:
            last_error = e
            logger.debug(f"[PortAllocator] Probe attempt {attempt} failed: {e}")
            continue

        if port in excluded:
            logger.debug(f"[PortAllocator] Port {port} already handed out, retrying")
            continue

        _handed_out.add(port)
        logger.debug(f"[PortAllocator] Allocated port {port}")
        return port

    raise PortAllocationError(
        f"Could not allocate a free port on {host} after {MAX_ATTEMPTS} attempts"
        + (f": {last_error}" if last_error else "")
    )


def release_port(port: int) -> None:
    """Forget a previously handed-out port so it may be allocated again."""
    _handed_out.discard(port)
