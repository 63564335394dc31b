"""Remote command execution against the device.

Each call walks the transport list (native ssh first, asyncssh last) and
returns from the first one that succeeds.  A non-zero exit, an exception or
a timeout on one transport falls through to the next; when all fail the
caller gets a :class:`RemoteCommandError` with the captured output.
"""

from __future__ import annotations

import asyncio
import logging

from move_installer.device.keys import KeyManager
from move_installer.device.session import DeviceSession
from move_installer.errors import KeyNotFoundError, RemoteCommandError, RemoteTimeoutError
from move_installer.remote.transport import (
    CommandResult,
    SSHTarget,
    SSHTransport,
    select_transports,
)

logger = logging.getLogger(__name__)

PROBE_USERS = ("ableton", "root")
PERMISSION_REPAIR = "chmod 600 ~/.ssh/authorized_keys && chmod 700 ~/.ssh"


class RemoteExecutor:
    """Runs commands and uploads files on the session's device."""

    def __init__(
        self,
        session: DeviceSession,
        keys: KeyManager,
        transports: list[SSHTransport] | None = None,
        port: int = 22,
        connect_timeout: float = 5.0,
        probe_timeout: float = 8.0,
    ) -> None:
        self.session = session
        self.keys = keys
        self.transports = transports if transports is not None else select_transports()
        self.port = port
        self.connect_timeout = connect_timeout
        self.probe_timeout = probe_timeout

    def _target(self, user: str, require_key: bool = True) -> SSHTarget:
        key = self.keys.private_key_path()
        if key is None and require_key:
            raise KeyNotFoundError("No SSH key found — set up the device connection first")
        self.session.ssh_key_path = str(key) if key else None
        return SSHTarget(
            host=self.session.ssh_host,
            user=user,
            key_path=str(key) if key else None,
            port=self.port,
            ipv6=self.session.is_ipv6,
            connect_timeout=self.connect_timeout,
        )

    async def execute(self, command: str, user: str = "ableton", timeout: float = 30.0) -> str:
        """Run *command* as *user*; return stdout."""
        target = self._target(user)
        last: CommandResult | None = None
        timed_out = False
        for transport in self.transports:
            try:
                result = await transport.run(target, command, timeout)
            except asyncio.TimeoutError:
                logger.debug("%s: command timed out after %.0fs: %s", transport.name, timeout, command)
                timed_out = True
                continue
            except Exception as exc:
                logger.debug("%s: command failed: %s", transport.name, exc)
                last = CommandResult(stderr=str(exc), returncode=-1)
                continue
            if result.ok:
                return result.stdout
            logger.debug("%s: exit %d for %s", transport.name, result.returncode, command)
            last = result

        if last is None and timed_out:
            raise RemoteTimeoutError(f"Command timed out after {timeout:.0f}s: {command}")
        last = last or CommandResult(stderr="no SSH transport available", returncode=-1)
        raise RemoteCommandError(
            f"Command failed with code {last.returncode}: {last.stderr.strip()}",
            exit_status=last.returncode,
            stdout=last.stdout,
            stderr=last.stderr,
        )

    async def upload_file(
        self,
        local_path: str,
        remote_path: str,
        user: str = "ableton",
        timeout: float = 120.0,
    ) -> None:
        """Copy a local file to *remote_path* on the device."""
        target = self._target(user)
        errors: list[str] = []
        for transport in self.transports:
            try:
                await transport.upload(target, str(local_path), remote_path, timeout)
                return
            except asyncio.TimeoutError:
                errors.append(f"{transport.name}: timed out after {timeout:.0f}s")
            except Exception as exc:
                errors.append(f"{transport.name}: {exc}")
            logger.debug("Upload via %s failed: %s", transport.name, errors[-1])
        raise RemoteCommandError(f"Upload of {local_path} failed: {'; '.join(errors)}")

    async def probe_connectivity(self) -> bool:
        """True once the device accepts our key as ableton or root.

        Never raises: a failed probe just means the key is not approved yet.
        """
        if self.keys.private_key_path() is None:
            logger.debug("No SSH key found for testing")
            return False

        for transport in self.transports:
            for user in PROBE_USERS:
                target = self._target(user)
                try:
                    result = await transport.run(target, "echo test", self.probe_timeout)
                except Exception as exc:
                    logger.debug("%s probe failed for %s: %r", transport.name, user, exc)
                    continue
                if not (result.ok and result.stdout.strip() == "test"):
                    continue

                logger.info("SSH works as %s@%s (%s)", user, target.host, transport.name)
                if user == "ableton":
                    await self._repair_authorized_keys(transport, target)
                return True

        logger.debug("SSH failed for all users")
        return False

    async def _repair_authorized_keys(self, transport: SSHTransport, target: SSHTarget) -> None:
        # The device ships authorized_keys with permissions sshd rejects
        try:
            result = await transport.run(target, PERMISSION_REPAIR, self.connect_timeout)
            if not result.ok:
                logger.warning("authorized_keys permission fix exited %d", result.returncode)
        except Exception as exc:
            logger.warning("authorized_keys permission fix failed: %s", exc)
