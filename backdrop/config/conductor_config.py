"""
Conductor Configuration Document
================================

Generates, loads and persists the YAML configuration consumed by the
``holochain`` conductor.

The document is kept as a plain nested dict so that keys this module does not
know about survive a load/write round trip untouched.

Generated shape:

    data_root_path: <base>/databases
    keystore:
      type: lair_server
      keystore_path: <base>/lair-keystore
      connection_url: '**will be replaced at runtime**'
      danger_passphrase_insecure_from_config: ''
    dpki: {...}
    admin_interfaces:
    - driver: {type: websocket, port: <admin_port>, allowed_origins: '*'}
    network:
      network_type: quic_bootstrap
      transport_pool:
      - {type: webrtc, signal_url: 'wss://signal.holo.host/'}
    db_sync_strategy: Fast

Usage:
    config = await generate(base_dir)
    write_config(base_dir / "config.yaml", config)
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from backdrop.core.errors import ConfigurationError
from backdrop.core.port_allocator import get_available_port

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]
ConductorConfig = Dict[str, Any]

# =============================================================================
# Constants
# =============================================================================

NETWORK_QUIC_BOOTSTRAP = "quic_bootstrap"
NETWORK_QUIC_MDNS = "quic_mdns"

TRANSPORT_MEM = "mem"
TRANSPORT_WEBRTC = "webrtc"
TRANSPORT_PROXY = "proxy"

DEFAULT_SIGNAL_URL = "wss://signal.holo.host/"
DB_SYNC_STRATEGY = "Fast"

KEYSTORE_DIRNAME = "lair-keystore"
KEYSTORE_CONFIG_FILENAME = "lair-keystore-config.yaml"
DATABASES_DIRNAME = "databases"
CONFIG_FILENAME = "config.yaml"

CONNECTION_URL_PLACEHOLDER = "**will be replaced at runtime**"


# =============================================================================
# Generation
# =============================================================================

def build_config(base_dir: PathLike, admin_port: int) -> ConductorConfig:
    """Build the default document for a known admin port. Pure."""
    base = Path(base_dir)
    return {
        "data_root_path": str(base / DATABASES_DIRNAME),
        "keystore": {
            "type": "lair_server",
            "keystore_path": str(base / KEYSTORE_DIRNAME),
            "connection_url": CONNECTION_URL_PLACEHOLDER,
            "danger_passphrase_insecure_from_config": "",
        },
        "dpki": {
            "dna_path": None,
            "network_seed": "",
            "allow_throwaway_random_dpki_agent_key": False,
            "no_dpki": True,
        },
        "admin_interfaces": [
            {
                "driver": {
                    "type": "websocket",
                    "port": admin_port,
                    "allowed_origins": "*",
                },
            },
        ],
        "network": {
            "network_type": NETWORK_QUIC_BOOTSTRAP,
            "transport_pool": [
                {
                    "type": TRANSPORT_WEBRTC,
                    "signal_url": DEFAULT_SIGNAL_URL,
                },
            ],
        },
        "db_sync_strategy": DB_SYNC_STRATEGY,
    }


async def generate(base_dir: PathLike, admin_port: Optional[int] = None) -> ConductorConfig:
    """
    Produce a conductor configuration rooted under ``base_dir``.

    Allocates a free port when ``admin_port`` is not given. Nothing is
    written to disk.

    Raises:
        PortAllocationError: if no free port can be found
    """
    if admin_port is None:
        admin_port = await get_available_port()
        logger.debug(f"[ConductorConfig] Allocated admin port {admin_port}")

    return build_config(base_dir, admin_port)


# =============================================================================
# Persistence
# =============================================================================

def load_config(path: PathLike) -> ConductorConfig:
    """
    Read a conductor configuration file.

    Raises:
        ConfigurationError: if the file is unreadable or not a YAML mapping
    """
    path = Path(path)
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Could not read config file '{path}': {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Config file '{path}' does not contain a mapping (got {type(data).__name__})"
        )
    return data


def write_config(path: PathLike, config: ConductorConfig) -> None:
    path = Path(path)
    with open(path, "w") as f:
        yaml.safe_dump(config, f, sort_keys=False, default_flow_style=False)
    logger.debug(f"[ConductorConfig] Wrote config to {path}")


# =============================================================================
# Accessors
# =============================================================================

def admin_ports(config: ConductorConfig) -> List[int]:
    """Ports of every admin interface declared in the document."""
    ports = []
    for interface in config.get("admin_interfaces") or []:
        driver = (interface or {}).get("driver") or {}
        port = driver.get("port")
        if port is not None:
            ports.append(int(port))
    return ports


def keystore_path(config: ConductorConfig) -> Optional[str]:
    keystore = config.get("keystore") or {}
    return keystore.get("keystore_path")


def set_connection_url(config: ConductorConfig, url: str) -> None:
    config.setdefault("keystore", {})["connection_url"] = url


def read_keystore_connection_url(keystore_dir: PathLike) -> str:
    """
    Read the connection URL written by ``lair-keystore init``.

    Raises:
        ConfigurationError: if the keystore config is missing or has no URL
    """
    path = Path(keystore_dir) / KEYSTORE_CONFIG_FILENAME
    data = load_config(path)
    url = data.get("connectionUrl")
    if not url:
        raise ConfigurationError(f"Keystore config '{path}' has no connectionUrl")
    return str(url)
