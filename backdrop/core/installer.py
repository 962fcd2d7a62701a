"""
App Install / Backdrop Workflow
===============================

Creates agent identities ("profiles"), installs app bundles for them against
a running conductor, enables the apps and grants an unrestricted test
capability on every resulting cell.

Bundle sources come in three shapes, decided once by ``bundle_source_from``:

    BundlePath      "/path/to/app.happ"
    RoleMap         {"role_name": "/path/to/role.dna", ...}
    BundleManifest  {"manifest": {...}, "resources": {...}}

Usage:
    installer = AppInstaller(holochain)
    record = await installer.install_app("alice", {"bundle": {"role1": dna_path}})
    record.cells["role1"].cell_id
"""

from __future__ import annotations

import asyncio
import copy
import logging
import os
import uuid
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from backdrop.clients.admin_client import AdminClient, AppInfo
from backdrop.core.errors import AppEnableError, BundleSourceError, ConfigurationError

logger = logging.getLogger(__name__)

RANDOM = "*"
CAPABILITY_TAG = "testing"


# =============================================================================
# Bundle sources
# =============================================================================

@dataclass(frozen=True)
class BundlePath:
    """Path to a pre-built app bundle file."""
    path: str


@dataclass(frozen=True)
class RoleMap:
    """Role name -> DNA bundle path; an app manifest is synthesised from it."""
    roles: Mapping[str, str]


@dataclass(frozen=True)
class BundleManifest:
    """A fully formed manifest + resources bundle."""
    manifest: Mapping[str, Any]
    resources: Mapping[str, Any]


BundleSource = Union[BundlePath, RoleMap, BundleManifest]


def bundle_source_from(value: Any) -> BundleSource:
    """
    Decide which bundle-source variant ``value`` is.

    Raises:
        BundleSourceError: for None or an unrecognised shape
    """
    if isinstance(value, (BundlePath, RoleMap, BundleManifest)):
        return value
    if value is None:
        raise BundleSourceError("Bundle source cannot be None")
    if isinstance(value, (str, os.PathLike)):
        return BundlePath(os.fspath(value))
    if not isinstance(value, Mapping):
        raise BundleSourceError(
            f"Expected bundle source to be a path or a mapping; not type '{type(value).__name__}'"
        )

    if isinstance(value.get("manifest"), Mapping) and isinstance(value.get("resources"), Mapping):
        return BundleManifest(manifest=value["manifest"], resources=value["resources"])

    if value and all(isinstance(path, (str, os.PathLike)) for path in value.values()):
        return RoleMap({role: os.fspath(path) for role, path in value.items()})

    raise BundleSourceError(
        "Unknown bundle source format; did not match bundle path, role map, or manifest bundle"
    )


def _inject_network_seed(manifest: Dict[str, Any], network_seed: str) -> None:
    """Set each role's network seed modifier unless one is already present."""
    for role in manifest.get("roles") or []:
        dna = role.setdefault("dna", {})
        modifiers = dna.get("modifiers")
        if modifiers is None:
            modifiers = dna["modifiers"] = {}
        if not modifiers.get("network_seed"):
            modifiers["network_seed"] = network_seed


def build_bundle(
    source: BundleSource,
    app_name: str,
    network_seed: str,
) -> Union[str, Dict[str, Any]]:
    """Turn a bundle source into what the admin ``install_app`` call accepts."""
    if isinstance(source, BundlePath):
        return source.path

    if isinstance(source, RoleMap):
        logger.debug(f"[Installer] Generating app bundle '{app_name}' from {len(source.roles)} DNA(s)")
        manifest = {
            "manifest_version": "1",
            "name": app_name,
            "roles": [
                {"name": role_name, "dna": {"path": dna_path}}
                for role_name, dna_path in source.roles.items()
            ],
        }
        resources: Dict[str, Any] = {}
    else:
        manifest = copy.deepcopy(dict(source.manifest))
        resources = dict(source.resources)

    _inject_network_seed(manifest, network_seed)
    return {"manifest": manifest, "resources": resources}


# =============================================================================
# App configs
# =============================================================================

def random_app_name() -> str:
    return uuid.uuid4().hex[:8]


def random_network_seed() -> str:
    return uuid.uuid4().hex[:12]


@dataclass
class AppConfig:
    """
    Caller-facing app install settings.

    ``None`` means "not given": it is filled from call-level defaults first
    and then from the built-in defaults (random app name, random seed).
    """
    bundle: Any = None
    app_name: Optional[str] = None
    installed_app_id: Optional[str] = None
    network_seed: Optional[str] = None
    membrane_proofs: Optional[Dict[str, bytes]] = None

    @classmethod
    def coerce(cls, value: Union["AppConfig", str, os.PathLike, Mapping[str, Any]]) -> "AppConfig":
        if isinstance(value, AppConfig):
            return copy.copy(value)
        if isinstance(value, (str, os.PathLike)):
            return cls(bundle=value)
        if isinstance(value, Mapping):
            known = {f.name for f in fields(cls)}
            unknown = set(value) - known
            if unknown:
                raise ConfigurationError(f"Unknown app config option(s): {', '.join(sorted(unknown))}")
            return cls(**value)
        raise BundleSourceError(f"Unsupported app config type '{type(value).__name__}'")

    def merged_over(self, defaults: Mapping[str, Any]) -> "AppConfig":
        """Per-app settings win; unset ones are taken from ``defaults``."""
        merged = copy.copy(self)
        known = {f.name for f in fields(self)}
        for key, default in defaults.items():
            if key not in known:
                raise ConfigurationError(f"Unknown app config default '{key}'")
            if key == "bundle":
                continue
            if getattr(merged, key, None) is None:
                setattr(merged, key, default)
        return merged


@dataclass
class ResolvedAppConfig:
    """An app config with every default applied and its bundle built."""
    app_name: str
    installed_app_id: str
    network_seed: str
    membrane_proofs: Dict[str, bytes]
    source: BundleSource
    bundle: Union[str, Dict[str, Any]]


def create_app_config(profile_name: str, app_config: Any) -> ResolvedAppConfig:
    """
    Normalise an app config for ``profile_name``.

    Raises:
        BundleSourceError: missing or malformed bundle
        ConfigurationError: both ``app_name`` and ``installed_app_id`` set explicitly
    """
    config = AppConfig.coerce(app_config)
    if config.bundle is None:
        raise BundleSourceError("Missing 'bundle' in app config")

    explicit_name = config.app_name not in (None, RANDOM)
    if explicit_name and config.installed_app_id:
        raise ConfigurationError(
            "Misconfiguration: 'installed_app_id' will override 'app_name'; "
            "only set 1 in app configurations"
        )

    app_name = config.app_name
    if app_name in (None, RANDOM):
        app_name = config.installed_app_id or random_app_name()

    network_seed = config.network_seed
    if network_seed in (None, RANDOM):
        network_seed = random_network_seed()

    source = bundle_source_from(config.bundle)
    resolved = ResolvedAppConfig(
        app_name=app_name,
        installed_app_id=config.installed_app_id or f"{app_name}-{profile_name}",
        network_seed=network_seed,
        membrane_proofs=dict(config.membrane_proofs or {}),
        source=source,
        bundle=build_bundle(source, app_name, network_seed),
    )
    logger.debug(f"[Installer] Created app config for '{resolved.installed_app_id}'")
    return resolved


# =============================================================================
# Installation records
# =============================================================================

@dataclass
class CellDescriptor:
    name: str
    cell_id: tuple

    @property
    def id(self) -> tuple:
        return self.cell_id

    @property
    def dna(self) -> bytes:
        return self.cell_id[0]

    @property
    def agent(self) -> bytes:
        return self.cell_id[1]


@dataclass
class InstallationRecord:
    """Result of installing one app for one profile. Owned by the caller."""
    app_name: str
    installed_app_id: str
    actor: str
    agent: bytes
    network_seed: str
    status: Any
    source: Union[str, Dict[str, Any]]
    cells: Dict[str, CellDescriptor] = field(default_factory=dict)
    app_info: Optional[AppInfo] = None

    @property
    def id(self) -> str:
        return self.installed_app_id


# =============================================================================
# Installer
# =============================================================================

class AppInstaller:
    """
    Install workflow bound to one controller.

    The controller must provide ``admin`` (an ``AdminClient`` once ready)
    and an async ``ensure_started()``.
    """

    def __init__(self, controller: Any):
        self._controller = controller
        self._profiles: Dict[str, asyncio.Future] = {}

    @property
    def admin(self) -> AdminClient:
        admin = self._controller.admin
        if admin is None:
            raise ConfigurationError("Admin client is not available; start the conductor first")
        return admin

    # =========================================================================
    # Profiles
    # =========================================================================

    async def profile(self, name: str) -> bytes:
        """Agent key for ``name``; generated once per controller."""
        if not isinstance(name, str):
            raise TypeError(f"Profile input expects a 'str'; not type '{type(name).__name__}'")

        task = self._profiles.get(name)
        if task is None:
            logger.debug(f"[Installer] Generating agent key for profile '{name}'")
            task = asyncio.ensure_future(self.admin.generate_agent_pub_key())
            self._profiles[name] = task

        try:
            return await asyncio.shield(task)
        except Exception:
            # Let a later call retry instead of caching the failure
            if self._profiles.get(name) is task:
                del self._profiles[name]
            raise

    async def profiles(self, *names: str) -> List[bytes]:
        return list(await asyncio.gather(*(self.profile(name) for name in names)))

    # =========================================================================
    # Install
    # =========================================================================

    async def install_app(self, profile_name: str, app_config: Any) -> InstallationRecord:
        """
        Install, enable and grant capabilities for one app.

        Raises:
            AppEnableError: enable-app reported errors
            AdminRPCError: any other admin RPC failure
        """
        config = create_app_config(profile_name, app_config)
        app_id = config.installed_app_id
        agent = await self.profile(profile_name)

        logger.debug(f"[Installer] Installing app '{app_id}' (network seed {config.network_seed})")
        installed = await self.admin.install_app(
            app_id,
            agent,
            config.bundle,
            network_seed=config.network_seed,
            membrane_proofs=config.membrane_proofs,
        )

        logger.debug(f"[Installer] Enabling app '{app_id}' for agent {profile_name}")
        enabled = await self.admin.enable_app(app_id)
        if enabled.errors:
            logger.error(f"[Installer] Failed to enable app '{app_id}'")
            for i, error in enumerate(enabled.errors):
                logger.error(f"[Installer]   - {i}: {error}")
            raise AppEnableError(app_id, enabled.errors)

        app_info = enabled.app if enabled.app.roles else installed
        for role_name, cell in app_info.roles.items():
            await self.admin.grant_unrestricted_capability(
                CAPABILITY_TAG, cell.agent, cell.dna, "*"
            )

        return InstallationRecord(
            app_name=config.app_name,
            installed_app_id=app_id,
            actor=profile_name,
            agent=agent,
            network_seed=config.network_seed,
            status=enabled.app.status if enabled.app.status is not None else installed.status,
            source=config.bundle,
            cells={
                role_name: CellDescriptor(name=role_name, cell_id=cell.cell_id)
                for role_name, cell in app_info.roles.items()
            },
            app_info=app_info,
        )

    async def install(
        self,
        profile_names: Union[str, Sequence[str]],
        app_configs: Any,
        defaults: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Dict[str, InstallationRecord]]:
        """
        Install every app config for every profile.

        A random network seed is shared by all installs of this call unless
        ``defaults`` or an individual app config sets one.
        """
        await self._controller.ensure_started()

        call_defaults: Dict[str, Any] = {"network_seed": RANDOM}
        call_defaults.update(defaults or {})
        if call_defaults["network_seed"] == RANDOM:
            call_defaults["network_seed"] = random_network_seed()

        names = [profile_names] if isinstance(profile_names, str) else list(profile_names)
        configs = list(app_configs) if isinstance(app_configs, (list, tuple)) else [app_configs]

        installations: Dict[str, Dict[str, InstallationRecord]] = {}
        for name in names:
            installations[name] = {}
            for app_config in configs:
                settings = AppConfig.coerce(app_config).merged_over(call_defaults)
                record = await self.install_app(name, settings)
                installations[name][record.app_name] = record

        return installations

    async def backdrop(
        self,
        apps: Mapping[str, Any],
        actors: Iterable[str] = ("alice",),
        network_seed: str = RANDOM,
    ) -> Dict[str, Dict[str, InstallationRecord]]:
        """
        Install each named app for each actor.

        ``apps`` maps app name to a bundle source (or a full app config); the
        installed app ids are ``<app_name>-<actor>``.
        """
        configs = []
        for app_name, value in apps.items():
            if isinstance(value, AppConfig):
                config = copy.copy(value)
            elif isinstance(value, Mapping) and "bundle" in value:
                config = AppConfig.coerce(value)
            else:
                config = AppConfig(bundle=value)
            if config.app_name is None and config.installed_app_id is None:
                config.app_name = app_name
            configs.append(config)

        return await self.install(list(actors), configs, {"network_seed": network_seed})
