"""
Conductor Admin RPC Client
==========================

Minimal client for the conductor's admin websocket interface, covering the
calls the install workflow needs:

    attach_app_interface(port)
    generate_agent_pub_key()
    install_app(installed_app_id, agent_key, bundle, network_seed, membrane_proofs)
    enable_app(installed_app_id)
    grant_unrestricted_capability(tag, agent, dna, functions)

Wire format (msgpack over binary websocket frames):

    {"type": "request", "id": <n>, "data": msgpack({"type": <op>, "data": <payload>})}
    {"type": "response", "id": <n>, "data": msgpack({"type": <result>, "data": <value>})}

An inner ``{"type": "error", ...}`` result is an application-level error and
is raised as ``AdminRPCError``; it is not a transport failure.

Usage:
    client = AdminClient(admin_port)
    agent = await client.generate_agent_pub_key()
    ...
    await client.close()
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

import msgpack
import websockets
from websockets.exceptions import ConnectionClosed

from backdrop.config.startup_timeouts import get_timeouts
from backdrop.core.errors import AdminRPCError, StartupTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_ORIGIN = "hc-backdrop"

CellId = Tuple[bytes, bytes]


# =============================================================================
# Response models
# =============================================================================

@dataclass
class CellInfo:
    """A provisioned cell belonging to one app role."""
    role_name: str
    name: str
    cell_id: CellId

    @property
    def dna(self) -> bytes:
        return self.cell_id[0]

    @property
    def agent(self) -> bytes:
        return self.cell_id[1]


@dataclass
class AppInfo:
    """Normalised view of the conductor's ``AppInfo`` structure."""
    installed_app_id: str
    agent_pub_key: Optional[bytes]
    status: Any
    roles: Dict[str, CellInfo] = field(default_factory=dict)
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def app_id(self) -> str:
        return self.installed_app_id

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "AppInfo":
        roles: Dict[str, CellInfo] = {}
        for role_name, cells in (data.get("cell_info") or {}).items():
            for entry in cells or []:
                provisioned = entry.get("provisioned") if isinstance(entry, dict) else None
                if not provisioned:
                    continue
                dna, agent = provisioned["cell_id"]
                roles[role_name] = CellInfo(
                    role_name=role_name,
                    name=provisioned.get("name") or role_name,
                    cell_id=(dna, agent),
                )
                break

        return cls(
            installed_app_id=data.get("installed_app_id", ""),
            agent_pub_key=data.get("agent_pub_key"),
            status=data.get("status"),
            roles=roles,
            raw=data,
        )


@dataclass
class EnabledApp:
    app: AppInfo
    errors: List[Any] = field(default_factory=list)


# =============================================================================
# Client
# =============================================================================

class AdminClient:
    """Request/response client bound to one conductor admin port."""

    def __init__(
        self,
        port: int,
        host: str = "localhost",
        timeout: Optional[float] = None,
        origin: str = DEFAULT_ORIGIN,
    ):
        self.port = port
        self.host = host
        self.timeout = timeout if timeout is not None else get_timeouts().admin_timeout
        self.origin = origin

        self._ws = None
        self._reader_task: Optional[asyncio.Task] = None
        self._pending: Dict[int, asyncio.Future] = {}
        self._ids = itertools.count()
        self._connect_lock: Optional[asyncio.Lock] = None
        self._closed = False

    @property
    def url(self) -> str:
        return f"ws://{self.host}:{self.port}"

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._closed

    # =========================================================================
    # Connection management
    # =========================================================================

    async def connect(self) -> None:
        if self._closed:
            raise AdminRPCError("Admin client is closed")
        if self._connect_lock is None:
            self._connect_lock = asyncio.Lock()

        async with self._connect_lock:
            if self._ws is not None:
                return
            try:
                self._ws = await websockets.connect(
                    self.url,
                    origin=self.origin,
                    max_size=None,
                    ping_interval=20,
                    ping_timeout=10,
                    close_timeout=5,
                    open_timeout=self.timeout,
                )
            except (OSError, asyncio.TimeoutError, websockets.exceptions.InvalidHandshake) as e:
                raise AdminRPCError(f"Could not connect to admin interface {self.url}: {e}") from e

            logger.debug(f"[AdminClient] Connected to {self.url}")
            self._reader_task = asyncio.ensure_future(self._read_loop(self._ws))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        if self._ws is not None:
            await self._ws.close()
        if self._reader_task is not None:
            await asyncio.gather(self._reader_task, return_exceptions=True)
        self._fail_pending(AdminRPCError("Admin client closed"))
        logger.debug(f"[AdminClient] Closed connection to {self.url}")

    async def _read_loop(self, ws) -> None:
        try:
            async for message in ws:
                self._handle_message(message)
        except ConnectionClosed as e:
            logger.debug(f"[AdminClient] Connection closed: {e}")
        finally:
            self._fail_pending(AdminRPCError(f"Admin connection to {self.url} closed"))

    def _handle_message(self, message: Union[bytes, str]) -> None:
        if isinstance(message, str):
            logger.warning(f"[AdminClient] Ignoring text frame: {message[:200]}")
            return

        envelope = msgpack.unpackb(message, raw=False)
        if envelope.get("type") != "response":
            logger.debug(f"[AdminClient] Ignoring {envelope.get('type')} message")
            return

        future = self._pending.pop(envelope.get("id"), None)
        if future is None or future.done():
            logger.debug(f"[AdminClient] No pending request for id {envelope.get('id')}")
            return

        payload = envelope.get("data")
        future.set_result(msgpack.unpackb(payload, raw=False) if payload is not None else None)

    def _fail_pending(self, error: AdminRPCError) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(error)

    # =========================================================================
    # Request plumbing
    # =========================================================================

    async def request(self, op: str, payload: Any = None, timeout: Optional[float] = None) -> Any:
        """
        Send one admin request and return the ``data`` of its response.

        Raises:
            AdminRPCError: error payload from the conductor, or connection failure
            StartupTimeoutError: no response within ``timeout``
        """
        await self.connect()
        timeout = timeout if timeout is not None else self.timeout

        request_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        inner = msgpack.packb({"type": op, "data": payload}, use_bin_type=True)
        envelope = msgpack.packb(
            {"type": "request", "id": request_id, "data": inner},
            use_bin_type=True,
        )

        logger.debug(f"[AdminClient] -> {op} (id={request_id})")
        try:
            await self._ws.send(envelope)
            response = await asyncio.wait_for(future, timeout=timeout)
        except ConnectionClosed as e:
            raise AdminRPCError(f"Admin connection closed during '{op}': {e}") from e
        except asyncio.TimeoutError:
            raise StartupTimeoutError(f"complete admin request '{op}'", timeout) from None
        finally:
            self._pending.pop(request_id, None)

        response = response or {}
        if response.get("type") == "error":
            error = response.get("data") or {}
            if isinstance(error, dict):
                raise AdminRPCError(
                    f"Admin request '{op}' failed: {error.get('data')}",
                    error_type=error.get("type"),
                    data=error.get("data"),
                )
            raise AdminRPCError(f"Admin request '{op}' failed: {error}", data=error)

        logger.debug(f"[AdminClient] <- {response.get('type')} (id={request_id})")
        return response.get("data")

    # =========================================================================
    # Admin API
    # =========================================================================

    async def attach_app_interface(self, port: Optional[int] = None, allowed_origins: str = "*") -> int:
        data = await self.request("attach_app_interface", {
            "port": port,
            "allowed_origins": allowed_origins,
            "installed_app_id": None,
        })
        return int((data or {}).get("port", port))

    async def generate_agent_pub_key(self) -> bytes:
        return await self.request("generate_agent_pub_key")

    async def install_app(
        self,
        installed_app_id: str,
        agent_key: bytes,
        bundle: Union[str, Dict[str, Any]],
        network_seed: Optional[str] = None,
        membrane_proofs: Optional[Dict[str, bytes]] = None,
    ) -> AppInfo:
        """Install from a bundle file path or an in-memory manifest+resources bundle."""
        source = {"path": bundle} if isinstance(bundle, str) else {"bundle": bundle}
        data = await self.request("install_app", {
            "agent_key": agent_key,
            "installed_app_id": installed_app_id,
            "membrane_proofs": membrane_proofs or {},
            "network_seed": network_seed,
            "source": source,
        })
        return AppInfo.from_wire(data or {})

    async def enable_app(self, installed_app_id: str) -> EnabledApp:
        data = await self.request("enable_app", {"installed_app_id": installed_app_id}) or {}
        return EnabledApp(
            app=AppInfo.from_wire(data.get("app") or {}),
            errors=list(data.get("errors") or []),
        )

    async def grant_unrestricted_capability(
        self,
        tag: str,
        agent: bytes,
        dna: bytes,
        functions: Union[str, List[Tuple[str, str]]] = "*",
    ) -> None:
        granted = {"All": None} if functions == "*" else {"Listed": [list(f) for f in functions]}
        await self.request("grant_zome_call_capability", {
            "cell_id": [dna, agent],
            "cap_grant": {
                "tag": tag,
                "functions": granted,
                "access": "Unrestricted",
            },
        })

    def __repr__(self) -> str:
        state = "closed" if self._closed else ("connected" if self._ws else "idle")
        return f"<AdminClient {self.url} {state}>"
