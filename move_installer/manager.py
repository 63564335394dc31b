"""Installer facade.

Owns the single :class:`DeviceSession` and wires every component to it.
The RPC layer talks only to :class:`Installer`; device-mutating operations
go through its :class:`SingleFlightQueue`.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable

import httpx

from move_installer.catalog import ReleaseChannel
from move_installer.config import InstallerConfig
from move_installer.deploy.operations import DeviceOperations
from move_installer.deploy.queue import SingleFlightQueue
from move_installer.device.keys import KeyManager
from move_installer.device.session import DeviceSession
from move_installer.device.trust import DeviceTrust
from move_installer.diagnostics import LogBuffer, get_diagnostics
from move_installer.models import ModuleDescriptor, RemoteEntry, UploadResult
from move_installer.remote.executor import RemoteExecutor
from move_installer.remote.transport import SSHTransport
from move_installer.versions import reconcile_dicts

logger = logging.getLogger(__name__)


class Installer:
    """Everything the installer UI can ask for, behind one object."""

    def __init__(
        self,
        config: InstallerConfig | None = None,
        transports: list[SSHTransport] | None = None,
        device_http: httpx.AsyncBaseTransport | None = None,
        release_http: httpx.AsyncBaseTransport | None = None,
        log_buffer: LogBuffer | None = None,
        platform: str | None = None,
    ) -> None:
        self.config = config or InstallerConfig.from_env()
        cfg = self.config

        self.session = DeviceSession(hostname=cfg.device_hostname, cookie_path=cfg.cookie_path)
        if self.session.load_cookie():
            logger.info("Loaded saved auth cookie")

        self.keys = KeyManager(cfg.ssh_dir, key_name=cfg.key_name, comment=cfg.key_comment)
        self.executor = RemoteExecutor(
            self.session,
            self.keys,
            transports=transports,
            port=cfg.ssh_port,
            connect_timeout=cfg.connect_timeout,
            probe_timeout=cfg.probe_timeout,
        )
        self.trust = DeviceTrust(
            self.session,
            self.executor,
            timeout=cfg.http_timeout,
            validate_timeout=cfg.validate_timeout,
            poll_interval=cfg.poll_interval,
            transport=device_http,
            platform=platform,
        )
        self.channel = ReleaseChannel(cfg, transport=release_http)
        self.operations = DeviceOperations(
            self.session, self.executor, self.channel, self.keys, cfg, platform=platform
        )
        self.queue = SingleFlightQueue()
        self.log_buffer = log_buffer

    async def aclose(self) -> None:
        await self.queue.close()
        await self.trust.aclose()
        await self.channel.aclose()

    async def queued(self, label: str, op: Callable[[], Awaitable[Any]]) -> Any:
        """Run *op* once every earlier device-mutating operation has settled."""
        return await self.queue.submit(op, label)

    # ── Connection setup ───────────────────────────────────────────

    async def validate_device(self, candidate: str) -> bool:
        return await self.trust.validate_device(candidate)

    async def ensure_device_address(self) -> str | None:
        """Resolved IP, trying SSH-based discovery as a last resort."""
        if self.session.resolved_address:
            return self.session.resolved_address
        return await self.trust.discover_ip_via_ssh()

    def find_existing_ssh_key(self) -> str | None:
        path = self.keys.find_existing_key()
        return str(path) if path else None

    async def generate_new_ssh_key(self) -> str:
        """Generate the keypair off the event loop (ssh-keygen blocks)."""
        loop = asyncio.get_running_loop()
        return str(await loop.run_in_executor(None, self.keys.generate_key))

    async def submit_ssh_key(self, pubkey_path: str | None = None) -> None:
        """Submit the installer's public key (or *pubkey_path*)."""
        path = pubkey_path or self.find_existing_ssh_key() or await self.generate_new_ssh_key()
        await self.trust.submit_public_key(self.keys.read_public_key(path))

    def setup_ssh_config(self, hostname: str | None = None) -> None:
        self.operations.setup_ssh_config(hostname)

    # ── Releases & versions ────────────────────────────────────────

    async def download_release(self, url: str, dest: str) -> str:
        return str(await self.channel.download(url, dest))

    async def compare_versions(
        self,
        installed: dict | None = None,
        latest_release: dict | None = None,
        catalog: list[dict] | None = None,
    ) -> dict:
        """Reconcile; anything not supplied is fetched fresh."""
        if installed is None:
            installed = (await self.operations.check_installed_versions()).to_dict()
        if latest_release is None:
            latest_release = (await self.channel.get_latest_release()).to_dict()
        if catalog is None:
            catalog = [m.to_dict() for m in await self.channel.get_module_catalog()]
        return reconcile_dicts(installed, latest_release, catalog)

    # ── Queued device operations ───────────────────────────────────

    async def install_main(self, tarball_path: str, flags: Iterable[str] = ()) -> None:
        async def _install() -> None:
            await self.ensure_device_address()
            await self.operations.install_core(tarball_path, flags)

        await self.queued("install_main", _install)

    async def install_module_package(
        self, module_id: str, tarball_path: str, component_type: str | None
    ) -> None:
        await self.queued(
            f"install {module_id}",
            lambda: self.operations.install_module(module_id, tarball_path, component_type),
        )

    async def install_catalog_module(self, module: ModuleDescriptor) -> None:
        """Download a catalog module and install it."""
        async def _install() -> None:
            tarball = await self.channel.download(module.download_url, module.asset_name)
            try:
                await self.operations.install_module(module.id, tarball, module.component_type)
            finally:
                Path(tarball).unlink(missing_ok=True)

        await self.queued(f"install {module.id}", _install)

    async def remove_module(self, module_id: str, component_type: str | None) -> None:
        await self.queued(
            f"remove {module_id}",
            lambda: self.operations.remove_module(module_id, component_type),
        )

    async def upload_assets(self, local_paths: list[str], remote_dir: str) -> list[UploadResult]:
        return await self.queued(
            "upload_assets", lambda: self.operations.upload_assets(local_paths, remote_dir)
        )

    async def list_remote_dir(self, path: str) -> list[RemoteEntry]:
        return await self.queued("list_remote_dir", lambda: self.operations.list_remote_dir(path))

    async def create_remote_dir(self, path: str) -> None:
        await self.queued("create_remote_dir", lambda: self.operations.create_remote_dir(path))

    async def delete_remote_path(self, path: str) -> None:
        await self.queued("delete_remote_path", lambda: self.operations.delete_remote_path(path))

    async def uninstall(self) -> dict:
        return await self.queued("uninstall", self.operations.uninstall)

    # ── Diagnostics ────────────────────────────────────────────────

    def get_diagnostics(self, errors: list | None = None) -> str:
        return get_diagnostics(self.session, self.keys, errors)

    def get_logs(self, limit: int | None = None) -> list[str]:
        return self.log_buffer.tail(limit) if self.log_buffer else []
