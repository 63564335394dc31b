"""SSH transports — native OpenSSH client or embedded asyncssh.

Both transports disable host-key checking (the device gets a new host key on
every reinstall) and force IPv4 unless the target is an IPv6 literal.
:func:`select_transports` decides at runtime which ones are usable, native
first.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import socket
from dataclasses import dataclass
from typing import Protocol

logger = logging.getLogger(__name__)


@dataclass
class SSHTarget:
    host: str
    user: str = "ableton"
    key_path: str | None = None
    port: int = 22
    ipv6: bool = False
    connect_timeout: float = 5.0


@dataclass
class CommandResult:
    stdout: str = ""
    stderr: str = ""
    returncode: int = 0

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class SSHTransport(Protocol):
    """Anything that can run a command and copy a file to the device."""

    name: str

    async def run(self, target: SSHTarget, command: str, timeout: float) -> CommandResult:
        ...

    async def upload(
        self, target: SSHTarget, local_path: str, remote_path: str, timeout: float
    ) -> None:
        ...


# ── Native OpenSSH ────────────────────────────────────────────────


class NativeSSHTransport:
    """Runs the locally installed ``ssh``/``scp`` binaries."""

    name = "native"

    def __init__(self, ssh_binary: str = "ssh", scp_binary: str = "scp") -> None:
        self.ssh_binary = ssh_binary
        self.scp_binary = scp_binary

    @staticmethod
    def common_options(target: SSHTarget) -> list[str]:
        opts = [
            "-o", "StrictHostKeyChecking=no",
            "-o", "UserKnownHostsFile=/dev/null",
            "-o", "BatchMode=yes",
            "-o", f"ConnectTimeout={int(target.connect_timeout)}",
            "-o", "LogLevel=ERROR",
        ]
        if not target.ipv6:
            opts.insert(0, "-4")
        if target.key_path:
            opts = ["-i", target.key_path, *opts]
        return opts

    def ssh_argv(self, target: SSHTarget, command: str) -> list[str]:
        return [
            self.ssh_binary,
            *self.common_options(target),
            "-p", str(target.port),
            f"{target.user}@{target.host}",
            command,
        ]

    def scp_argv(self, target: SSHTarget, local_path: str, remote_path: str) -> list[str]:
        host = f"[{target.host}]" if target.ipv6 else target.host
        return [
            self.scp_binary,
            *self.common_options(target),
            "-P", str(target.port),
            local_path,
            f"{target.user}@{host}:{remote_path}",
        ]

    async def run(self, target: SSHTarget, command: str, timeout: float) -> CommandResult:
        return await run_process(self.ssh_argv(target, command), timeout)

    async def upload(
        self, target: SSHTarget, local_path: str, remote_path: str, timeout: float
    ) -> None:
        result = await run_process(self.scp_argv(target, local_path, remote_path), timeout)
        if not result.ok:
            raise OSError(f"scp exited with {result.returncode}: {result.stderr.strip()}")


async def run_process(
    argv: list[str],
    timeout: float,
    cwd: str | None = None,
    merge_stderr: bool = False,
) -> CommandResult:
    """Run *argv* with stdin closed; kill it on timeout."""
    proc = await asyncio.create_subprocess_exec(
        *argv,
        cwd=cwd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT if merge_stderr else asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise
    return CommandResult(
        stdout=_as_text(stdout),
        stderr=_as_text(stderr),
        returncode=proc.returncode if proc.returncode is not None else -1,
    )


# ── Embedded asyncssh ─────────────────────────────────────────────


class AsyncSSHTransport:
    """Pure-Python SSH via asyncssh, using the same identity file."""

    name = "asyncssh"

    async def _connect(self, target: SSHTarget):
        import asyncssh

        kwargs: dict = {
            "host": target.host,
            "port": target.port,
            "username": target.user,
            "known_hosts": None,  # device host key changes across reinstalls
            "connect_timeout": target.connect_timeout,
            "family": socket.AF_INET6 if target.ipv6 else socket.AF_INET,
        }
        if target.key_path:
            kwargs["client_keys"] = [target.key_path]
        return await asyncssh.connect(**kwargs)

    async def run(self, target: SSHTarget, command: str, timeout: float) -> CommandResult:
        async def _run() -> CommandResult:
            conn = await self._connect(target)
            try:
                result = await conn.run(command, check=False)
            finally:
                conn.close()
                await conn.wait_closed()
            return CommandResult(
                stdout=_as_text(result.stdout),
                stderr=_as_text(result.stderr),
                returncode=result.exit_status if result.exit_status is not None else -1,
            )

        return await asyncio.wait_for(_run(), timeout)

    async def upload(
        self, target: SSHTarget, local_path: str, remote_path: str, timeout: float
    ) -> None:
        async def _upload() -> None:
            conn = await self._connect(target)
            try:
                async with conn.start_sftp_client() as sftp:
                    await sftp.put(local_path, remote_path)
            finally:
                conn.close()
                await conn.wait_closed()

        await asyncio.wait_for(_upload(), timeout)


def _as_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode(errors="replace")
    return str(value)


class MockSSHTransport:
    """Mock transport for testing — returns pre-configured responses.

    Responses are matched exactly first, then by prefix.  A response may be
    an exception instance, which is raised instead.  Users listed in
    *rejected_users* get an SSH authentication failure for every command.
    """

    def __init__(
        self,
        responses: dict[str, CommandResult | Exception] | None = None,
        default: CommandResult | None = None,
        rejected_users: tuple[str, ...] = (),
        upload_error: Exception | None = None,
        name: str = "mock",
    ) -> None:
        self.name = name
        self.responses = responses or {}
        self._default = default if default is not None else CommandResult(returncode=1)
        self.rejected_users = rejected_users
        self.upload_error = upload_error
        self.calls: list[tuple[str, str]] = []
        self.uploads: list[tuple[str, str, str]] = []

    @property
    def commands(self) -> list[str]:
        return [command for _, command in self.calls]

    async def run(self, target: SSHTarget, command: str, timeout: float) -> CommandResult:
        self.calls.append((target.user, command))
        if target.user in self.rejected_users:
            return CommandResult(stderr="Permission denied (publickey).", returncode=255)
        response = self.responses.get(command)
        if response is None:
            for key, value in self.responses.items():
                if command.startswith(key):
                    response = value
                    break
        if isinstance(response, Exception):
            raise response
        return response if response is not None else self._default

    async def upload(
        self, target: SSHTarget, local_path: str, remote_path: str, timeout: float
    ) -> None:
        self.uploads.append((target.user, local_path, remote_path))
        if self.upload_error is not None:
            raise self.upload_error


def select_transports() -> list[SSHTransport]:
    """Capability probe: native client when installed, asyncssh always."""
    transports: list[SSHTransport] = []
    if shutil.which("ssh"):
        transports.append(NativeSSHTransport())
    else:
        logger.info("Native ssh not found — using asyncssh only")
    transports.append(AsyncSSHTransport())
    return transports
