"""Deployment operations against a trusted device.

Everything here assumes the installer's key is already approved.  Commands
run through :class:`~move_installer.remote.executor.RemoteExecutor`; paths
under the module tree are checked locally before any command is sent.

Device layout::

    /data/UserData/move-anything/
        version.txt
        modules/<category>/<module_id>/module.json
        config/screen_reader_state.txt
"""

from __future__ import annotations

import json
import logging
import os
import posixpath
import re
import shlex
import shutil
import sys
import tempfile
from pathlib import Path
from typing import Callable, Iterable

from move_installer.catalog import ReleaseChannel
from move_installer.config import InstallerConfig
from move_installer.device.keys import KeyManager
from move_installer.device.session import DeviceSession, is_ip_literal
from move_installer.device.ssh_config import write_ssh_config
from move_installer.errors import (
    AddressRequiredError,
    InstallerError,
    InstallScriptError,
    LocalToolMissingError,
    ModuleNotFoundOnDevice,
    PathScopeError,
    RemoteCommandError,
)
from move_installer.models import (
    InstalledModule,
    InstalledState,
    RemoteEntry,
    UploadResult,
    install_subdir,
)
from move_installer.remote.executor import RemoteExecutor
from move_installer.remote.transport import run_process

logger = logging.getLogger(__name__)

INSTALL_ROOT = "/data/UserData/move-anything"
MODULES_ROOT = f"{INSTALL_ROOT}/modules/"
SCREEN_READER_STATE = f"{INSTALL_ROOT}/config/screen_reader_state.txt"

# Stale install artifacts that fill the device's small root partition
DEVICE_CLEANUP_COMMANDS: tuple[str, ...] = (
    "rm -f ~/move-anything.tar.gz",
    "rm -rf /var/volatile/tmp/move-install-* /var/volatile/tmp/move-uninstall-*",
    "rm -rf /tmp/move-install-* /tmp/move-uninstall-*",
    "rm -f /tmp/*.log /tmp/*.json /tmp/*.tar.gz",
)

FREE_SPACE_COMMAND = "df / | tail -1 | awk '{print $4}'"

GIT_BASH_CANDIDATES = (
    r"C:\Program Files\Git\bin\bash.exe",
    r"C:\Program Files (x86)\Git\bin\bash.exe",
)

GIT_BASH_MISSING = (
    "Git Bash is required for installation on Windows.\n\n"
    "Please install Git for Windows from:\n"
    "https://git-scm.com/download/win\n\n"
    "Then restart the installer."
)

UNINSTALL_MESSAGE = (
    "Move Everything has been uninstalled. "
    "Your Move is restarting and will boot to stock firmware."
)

_LS_LINE_RE = re.compile(
    r"^([d\-l])\S+\s+\d+\s+\S+\s+\S+\s+(\d+)\s+\w+\s+\d+\s+[\d:]+\s+(.+)$"
)

ProgressCallback = Callable[[str], None]


# ── Path guard ────────────────────────────────────────────────────


def scoped_module_path(path: str, allow_root: bool = True) -> str:
    """Normalise *path* and require it to live under the module tree.

    Raises :class:`PathScopeError` for relative paths, ``..`` escapes and
    sibling directories.  The module root itself is rejected unless
    *allow_root* is set.
    """
    if not path or not path.startswith("/"):
        raise PathScopeError(f"Path must be within {MODULES_ROOT}: {path!r}")
    if any(c in path for c in "\0\r\n"):
        raise PathScopeError(f"Path contains control characters: {path!r}")
    normalised = posixpath.normpath(path)
    root = MODULES_ROOT.rstrip("/")
    if normalised == root:
        if allow_root:
            return normalised
        raise PathScopeError(f"Refusing to operate on the module root itself: {path!r}")
    if not normalised.startswith(MODULES_ROOT):
        raise PathScopeError(f"Path must be within {MODULES_ROOT}: {path!r}")
    return normalised


def parse_ls_output(output: str) -> list[RemoteEntry]:
    """Parse ``ls -lA``; directories first, then by name."""
    entries = []
    for line in output.strip().splitlines():
        match = _LS_LINE_RE.match(line)
        if match:
            entries.append(RemoteEntry(
                name=match.group(3),
                is_directory=match.group(1) == "d",
                size=int(match.group(2)),
            ))
    entries.sort(key=lambda e: (not e.is_directory, e.name.lower()))
    return entries


def _parse_kb(value: str) -> int | None:
    try:
        return int(value.strip())
    except ValueError:
        return None


class DeviceOperations:
    """Install, inspect and maintain Move Everything on the device."""

    def __init__(
        self,
        session: DeviceSession,
        executor: RemoteExecutor,
        channel: ReleaseChannel,
        keys: KeyManager,
        config: InstallerConfig,
        platform: str | None = None,
    ) -> None:
        self.session = session
        self.executor = executor
        self.channel = channel
        self.keys = keys
        self.config = config
        self.platform = platform or sys.platform

    async def _run(self, command: str, as_root: bool = False, timeout: float | None = None) -> str:
        user = self.config.root_user if as_root else self.config.device_user
        return await self.executor.execute(
            command, user=user, timeout=timeout or self.config.command_timeout
        )

    async def _best_effort(self, command: str, as_root: bool = False) -> bool:
        try:
            await self._run(command, as_root=as_root)
        except InstallerError as exc:
            logger.debug("Best-effort command failed (%s): %s", command, exc)
            return False
        return True

    # ── Local tooling ──────────────────────────────────────────────

    def find_bash(self) -> str | None:
        """Path to a usable bash; on Windows this must be Git Bash."""
        found = shutil.which("bash")
        if found or not self.platform.startswith("win"):
            return found
        candidates = list(GIT_BASH_CANDIDATES)
        for env in ("PROGRAMFILES", "PROGRAMFILES(X86)"):
            base = os.environ.get(env)
            if base:
                candidates.append(os.path.join(base, "Git", "bin", "bash.exe"))
        for candidate in candidates:
            if os.path.exists(candidate):
                logger.debug("Found Git Bash at %s", candidate)
                return candidate
        return None

    def check_git_bash_available(self) -> dict:
        if not self.platform.startswith("win"):
            return {"available": True}
        path = self.find_bash()
        return {"available": path is not None, "path": path}

    def setup_ssh_config(self, hostname: str | None = None) -> None:
        write_ssh_config(
            self.config.ssh_config_path,
            hostname or self.session.hostname,
            self.session.resolved_address,
            self.keys.identity_file_for_config(),
        )

    # ── Core install ───────────────────────────────────────────────

    async def install_core(self, tarball_path: str | Path, flags: Iterable[str] = ()) -> None:
        """Run the upstream install.sh against the device.

        install.sh talks to the ``movedevice`` alias, so the SSH config is
        written first and the device address must already be known.
        """
        if not self.session.resolved_address or not is_ip_literal(self.session.resolved_address):
            raise AddressRequiredError(
                "Cannot install: Device IP address not available.\n"
                "Please enter the device IP address manually."
            )
        bash = self.find_bash()
        if bash is None:
            if self.platform.startswith("win"):
                raise LocalToolMissingError(GIT_BASH_MISSING)
            raise LocalToolMissingError("bash is required to run install.sh")

        flags = list(flags)
        logger.info("Installing core to %s (flags: %s)", self.session.resolved_address, flags)
        self.setup_ssh_config()

        script = (await self.channel.fetch_install_script()).replace("move.local", "movedevice")

        temp_dir = Path(tempfile.mkdtemp(prefix="move-installer-"))
        try:
            scripts_dir = temp_dir / "scripts"
            scripts_dir.mkdir()
            install_sh = scripts_dir / "install.sh"
            install_sh.write_text(script, newline="\n")
            install_sh.chmod(0o755)
            shutil.copyfile(tarball_path, temp_dir / self.config.core_asset_name)

            await self._pre_install_cleanup()

            args = " ".join(shlex.quote(a) for a in
                            ["local", "--skip-confirmation", "--skip-modules", *flags])
            result = await run_process(
                [bash, "-c", f"./install.sh {args} < /dev/null"],
                self.config.install_timeout,
                cwd=str(scripts_dir),
                merge_stderr=True,
            )
            if not result.ok:
                logger.error("install.sh exited %d:\n%s", result.returncode, result.stdout)
                raise InstallScriptError(
                    f"install.sh failed with exit code {result.returncode}\n\n"
                    f"Output:\n{result.stdout}",
                    exit_status=result.returncode,
                    stdout=result.stdout,
                )
            logger.debug("install.sh output:\n%s", result.stdout)
            logger.info("Core installation complete")
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)

    async def _pre_install_cleanup(self) -> None:
        for command in DEVICE_CLEANUP_COMMANDS:
            if not await self._best_effort(command):
                await self._best_effort(command, as_root=True)

    # ── Modules ────────────────────────────────────────────────────

    def module_path(self, module_id: str, component_type: str | None) -> str:
        if not module_id or "/" in module_id or module_id in (".", ".."):
            raise PathScopeError(f"Invalid module id: {module_id!r}")
        return scoped_module_path(
            f"{MODULES_ROOT}{install_subdir(component_type)}/{module_id}", allow_root=False
        )

    async def install_module(
        self, module_id: str, tarball_path: str | Path, component_type: str | None
    ) -> None:
        """Upload a module tarball and unpack it into its category directory."""
        subdir = install_subdir(component_type)
        filename = Path(tarball_path).name
        remote = f"{INSTALL_ROOT}/{filename}"
        logger.info("Installing module %s into modules/%s", module_id, subdir)

        await self.executor.upload_file(
            str(tarball_path), remote, timeout=self.config.upload_timeout
        )
        await self._run(
            f"cd {INSTALL_ROOT} && mkdir -p modules/{subdir} && "
            f"tar -xzf {shlex.quote(filename)} -C modules/{subdir}/ && "
            f"rm {shlex.quote(filename)}"
        )
        logger.info("Module %s installed", module_id)

    async def remove_module(self, module_id: str, component_type: str | None) -> None:
        path = self.module_path(module_id, component_type)
        check = await self._run(f'test -d {shlex.quote(path)} && echo "exists" || echo "not_found"')
        if check.strip() != "exists":
            raise ModuleNotFoundOnDevice(f"Module directory not found: {path}")
        await self._run(f"rm -rf {shlex.quote(path)}")
        logger.info("Removed module %s", module_id)

    # ── Module assets ──────────────────────────────────────────────

    async def list_remote_dir(self, path: str) -> list[RemoteEntry]:
        path = scoped_module_path(path)
        await self._run(f"mkdir -p {shlex.quote(path)}")
        return parse_ls_output(await self._run(f"ls -lA {shlex.quote(path)}"))

    async def create_remote_dir(self, path: str) -> None:
        path = scoped_module_path(path, allow_root=False)
        await self._run(f"mkdir -p {shlex.quote(path)}")

    async def delete_remote_path(self, path: str) -> None:
        path = scoped_module_path(path, allow_root=False)
        await self._run(f"rm -rf {shlex.quote(path)}")
        logger.info("Deleted %s", path)

    async def upload_assets(
        self, local_paths: Iterable[str | Path], remote_dir: str
    ) -> list[UploadResult]:
        """Upload files and folders; per-file failures are reported, not raised."""
        remote_dir = scoped_module_path(remote_dir)
        local_paths = [Path(p) for p in local_paths]
        logger.info("Uploading %d asset(s) to %s", len(local_paths), remote_dir)
        await self._run(f"mkdir -p {shlex.quote(remote_dir)}")

        results: list[UploadResult] = []
        for local in local_paths:
            await self._upload_entry(local, remote_dir, results)
        return results

    async def _upload_entry(self, local: Path, target_dir: str, results: list[UploadResult]) -> None:
        if local.is_dir():
            remote_subdir = f"{target_dir}/{local.name}"
            await self._run(f"mkdir -p {shlex.quote(remote_subdir)}")
            for child in sorted(local.iterdir()):
                await self._upload_entry(child, remote_subdir, results)
            results.append(UploadResult(file=f"{local.name}/", success=True))
            return

        try:
            await self.executor.upload_file(
                str(local), f"{target_dir}/{local.name}", timeout=self.config.upload_timeout
            )
        except InstallerError as exc:
            logger.error("Failed to upload %s: %s", local.name, exc)
            results.append(UploadResult(file=local.name, success=False, error=str(exc)))
        else:
            results.append(UploadResult(file=local.name, success=True))

    # ── Installed state ────────────────────────────────────────────

    async def _core_state(self, progress: ProgressCallback | None = None) -> InstalledState:
        check = await self._run(
            f'test -d {INSTALL_ROOT} && echo "installed" || echo "not_installed"'
        )
        if check.strip() != "installed":
            logger.info("Move Everything not installed")
            return InstalledState(installed=False)

        if progress:
            progress("Checking core version...")
        core = None
        try:
            core = (await self._run(f'cat {INSTALL_ROOT}/version.txt 2>/dev/null || echo ""')).strip() or None
        except RemoteCommandError as exc:
            logger.debug("Could not read core version: %s", exc)
        logger.debug("Core version: %s", core)
        return InstalledState(installed=True, core=core)

    async def check_core_installation(self) -> InstalledState:
        return await self._core_state()

    async def check_installed_versions(
        self, progress: ProgressCallback | None = None
    ) -> InstalledState:
        """Core version plus every parseable module manifest on the device."""
        state = await self._core_state(progress)
        if not state.installed:
            return state

        if progress:
            progress("Finding installed modules...")
        found = await self._run(
            f'find {MODULES_ROOT.rstrip("/")} -name module.json -type f 2>/dev/null || echo ""'
        )
        manifests = [line.strip() for line in found.splitlines() if line.strip()]

        for i, manifest_path in enumerate(manifests, 1):
            if progress:
                progress(f"Checking module {i} of {len(manifests)}...")
            try:
                raw = await self._run(f"cat {shlex.quote(manifest_path)}")
                module = InstalledModule.from_manifest(json.loads(raw))
            except (InstallerError, ValueError) as exc:
                logger.warning("Skipping unreadable manifest %s: %s", manifest_path, exc)
                continue
            if module is None:
                logger.debug("Skipping incomplete manifest %s", manifest_path)
                continue
            state.modules.append(module)

        logger.info("Found %d installed module(s)", len(state.modules))
        return state

    # ── Maintenance ────────────────────────────────────────────────

    async def clean_device_tmp(self) -> dict:
        """Remove stale install artifacts as root; report the space freed."""
        before = await self._free_kb()
        for command in DEVICE_CLEANUP_COMMANDS:
            await self._best_effort(command, as_root=True)
        after = await self._free_kb()

        freed_kb = (after - before) if before is not None and after is not None else 0
        freed_mb = f"{freed_kb / 1024:.1f}" if freed_kb > 0 else "0"
        logger.info("Freed %sMB on root partition", freed_mb)
        return {"success": True, "freed_mb": freed_mb}

    async def _free_kb(self) -> int | None:
        try:
            return _parse_kb(await self._run(FREE_SPACE_COMMAND, as_root=True))
        except InstallerError:
            return None

    async def fix_permissions(self) -> None:
        commands = (
            f"chown -R ableton:ableton {INSTALL_ROOT}/",
            f"chmod u+s {INSTALL_ROOT}/move-anything-shim.so",
            f"chmod +x {INSTALL_ROOT}/move-anything {INSTALL_ROOT}/shim-entrypoint.sh "
            f"{INSTALL_ROOT}/start.sh {INSTALL_ROOT}/stop.sh",
        )
        for command in commands:
            await self._run(command, as_root=True)
        logger.info("Permissions fixed")

    async def get_screen_reader_status(self) -> bool:
        try:
            status = await self._run(f'cat {SCREEN_READER_STATE} 2>/dev/null || echo "0"')
        except InstallerError as exc:
            logger.debug("Could not read screen reader status: %s", exc)
            return False
        return status.strip() == "1"

    async def set_screen_reader_state(self, enabled: bool) -> dict:
        await self._run(f"mkdir -p {posixpath.dirname(SCREEN_READER_STATE)}")
        await self._run(f'echo "{1 if enabled else 0}" > {SCREEN_READER_STATE}')
        await self._run("killall move-anything 2>/dev/null || true", as_root=True)
        state = "enabled" if enabled else "disabled"
        return {
            "enabled": enabled,
            "message": f"Screen reader {state}. Move Everything is restarting.",
        }

    async def uninstall(self) -> dict:
        """Remove Move Everything, restore the stock binary and reboot."""
        logger.info("Uninstalling Move Everything from %s", self.session.host)
        await self._best_effort(
            "systemctl stop move-anything 2>/dev/null || killall move-anything 2>/dev/null || true",
            as_root=True,
        )
        await self._best_effort("rm -f /usr/lib/move-anything-shim.so", as_root=True)
        await self._best_effort(f"rm -rf {INSTALL_ROOT}", as_root=True)

        restored = await self._run(
            "if [ -f /opt/move/MoveOriginal ]; then "
            "mv /opt/move/MoveOriginal /opt/move/Move && echo restored; "
            "else echo no_backup; fi",
            as_root=True,
        )
        if restored.strip() == "no_backup":
            logger.info("No MoveOriginal backup; stock binary assumed in place")

        # The connection usually drops mid-command
        await self._best_effort("reboot", as_root=True)
        return {"success": True, "message": UNINSTALL_MESSAGE}
