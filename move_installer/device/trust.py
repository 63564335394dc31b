"""Device trust bootstrap.

Gets the installer's SSH public key approved by the device owner:

  1. Resolve the device address (literal IP, system resolver, or the peer
     address of the first HTTP connection)
  2. Validate the device with a plain HTTP GET
  3. Ask the device to show a one-time code            POST /api/v1/challenge
  4. Trade the code the user typed for a session cookie POST /api/v1/challenge-response
  5. Submit the public key with that cookie            POST /api/v1/ssh
  6. Poll SSH until the owner confirms on the device

Each step is a separate call so the UI can drive the sequence and restart it
from step 3 when a code expires.
"""

from __future__ import annotations

import asyncio
import logging
import re
import sys

import httpx

from move_installer.device.keys import strip_key_comment
from move_installer.device.polling import TrustPoller
from move_installer.device.session import DeviceSession, is_ip_literal
from move_installer.errors import (
    AuthenticationError,
    ChallengeError,
    DeviceConnectionError,
    KeySubmissionError,
)
from move_installer.remote.executor import RemoteExecutor
from move_installer.remote.transport import run_process

logger = logging.getLogger(__name__)

_IPV4_RE = re.compile(r"\b(\d{1,3}(?:\.\d{1,3}){3})\b")
_IPV6_BRACKET_RE = re.compile(r"\[([0-9a-f:]+)\]", re.IGNORECASE)
_SSH_CONNECTING_RE = re.compile(r"Connecting to [^\[]+\[(\d+\.\d+\.\d+\.\d+)\]")

_RESOLVE_TIMEOUT = 5.0


# ── Resolver output parsing ───────────────────────────────────────


def parse_ping_output(output: str) -> str | None:
    """Pull the address out of Windows ``ping -n 1`` output.

    IPv4 wins; otherwise a bracketed IPv6 address is returned with brackets.
    """
    match = _IPV4_RE.search(output)
    if match:
        return match.group(1)
    match = _IPV6_BRACKET_RE.search(output)
    if match:
        return f"[{match.group(1)}]"
    return None


def parse_resolver_output(output: str) -> str | None:
    """First IPv4 address in ``getent ahostsv4`` / ``dscacheutil`` output."""
    match = _IPV4_RE.search(output)
    return match.group(1) if match else None


def resolver_command(hostname: str, platform: str | None = None) -> list[str]:
    """Name-resolution command for *platform*.

    Windows uses ping because the standard resolver cannot see mDNS names.
    """
    platform = platform or sys.platform
    if platform.startswith("win"):
        return ["ping", "-n", "1", hostname]
    if platform == "darwin":
        return ["dscacheutil", "-q", "host", "-a", "name", hostname]
    return ["getent", "ahostsv4", hostname]


class DeviceTrust:
    """Talks to the device's HTTP API and drives key approval."""

    def __init__(
        self,
        session: DeviceSession,
        executor: RemoteExecutor,
        timeout: float = 60.0,
        validate_timeout: float = 10.0,
        poll_interval: float = 2.0,
        transport: httpx.AsyncBaseTransport | None = None,
        platform: str | None = None,
    ) -> None:
        self.session = session
        self.executor = executor
        self.validate_timeout = validate_timeout
        self.poll_interval = poll_interval
        self.platform = platform or sys.platform
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)
        self._poller: TrustPoller | None = None

    async def aclose(self) -> None:
        self.cancel_polling()
        await self._client.aclose()

    async def __aenter__(self) -> DeviceTrust:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.aclose()

    # ── Address resolution ─────────────────────────────────────────

    async def resolve_address(self, candidate: str) -> str | None:
        """Turn *candidate* into an IP, caching it on the session.

        Returns None when nothing resolved; callers carry on with the
        hostname and later steps may still succeed directly.
        """
        cached = self.session.offer_candidate(candidate)
        if cached:
            return cached

        hostname = self.session.hostname
        argv = resolver_command(hostname, self.platform)
        try:
            result = await run_process(argv, _RESOLVE_TIMEOUT)
        except (OSError, asyncio.TimeoutError) as exc:
            logger.debug("Name resolution for %s failed: %s", hostname, exc)
            return None

        if self.platform.startswith("win"):
            address = parse_ping_output(result.stdout)
        else:
            address = parse_resolver_output(result.stdout) if result.ok else None
        if address is None:
            logger.debug("Could not resolve %s to an IP address", hostname)
            return None
        return self.session.remember_address(address, "resolver")

    async def discover_ip_via_ssh(self) -> str | None:
        """Last-resort discovery: let ssh resolve the hostname for us."""
        hostname = self.session.hostname
        opts = ["-o", "ConnectTimeout=5", "-o", "StrictHostKeyChecking=no", "-o", "BatchMode=yes"]
        try:
            result = await run_process(
                ["ssh", "-v", *opts, f"ableton@{hostname}", "exit"], 10.0
            )
            match = _SSH_CONNECTING_RE.search(result.stdout + result.stderr)
            if match:
                return self.session.remember_address(match.group(1), "ssh")

            result = await run_process(
                ["ssh", *opts, f"ableton@{hostname}", "hostname -I | awk '{print $1}'"], 10.0
            )
            ip = result.stdout.strip()
            if result.ok and is_ip_literal(ip) and "." in ip:
                return self.session.remember_address(ip, "ssh")
        except (OSError, asyncio.TimeoutError) as exc:
            logger.debug("SSH IP discovery error: %s", exc)
        return None

    # ── HTTP API ───────────────────────────────────────────────────

    async def validate_device(self, candidate: str) -> bool:
        """True if something answers HTTP at the device address.

        When the hostname did not resolve, the peer address of this
        connection becomes the cached device IP.
        """
        await self.resolve_address(candidate)
        url = f"{self.session.base_url}/"
        capture = self.session.resolved_address is None and not is_ip_literal(self.session.hostname)
        logger.debug("Validating via HTTP: %s", url)
        try:
            async with self._client.stream("GET", url, timeout=self.validate_timeout) as response:
                if capture:
                    self._capture_peer_address(response)
        except httpx.HTTPError as exc:
            logger.info("HTTP validation of %s failed: %s", url, exc)
            return False
        return True

    def _capture_peer_address(self, response: httpx.Response) -> None:
        stream = response.extensions.get("network_stream")
        if stream is None:
            return
        server_addr = stream.get_extra_info("server_addr")
        if server_addr:
            self.session.remember_address(str(server_addr[0]), "HTTP connection")

    async def request_challenge(self) -> None:
        """Ask the device to display a one-time code."""
        url = f"{self.session.base_url}/api/v1/challenge"
        response = await self._post(url, "Failed to request challenge", json={})
        if response.status_code != 200:
            raise ChallengeError(f"Challenge request failed: {response.status_code}")

    async def submit_challenge_response(self, code: str) -> str:
        """Exchange the on-screen code for a session cookie."""
        url = f"{self.session.base_url}/api/v1/challenge-response"
        response = await self._post(url, "Failed to submit auth code", json={"secret": code})
        if response.status_code != 200:
            raise AuthenticationError(
                f"Auth failed: {response.status_code} - {response.text}"
            )

        set_cookie = response.headers.get_list("set-cookie")
        if not set_cookie:
            raise AuthenticationError("No cookie returned from auth")
        cookie = set_cookie[0].split(";")[0].strip()
        self.session.save_cookie(cookie)
        return cookie

    async def submit_public_key(self, pubkey: str) -> None:
        """Send the public key (comment stripped) for on-device approval."""
        cookie = self.get_saved_cookie()
        if not cookie:
            raise AuthenticationError("No auth cookie available")

        url = f"{self.session.base_url}/api/v1/ssh"
        response = await self._post(
            url,
            "Failed to submit SSH key",
            content=strip_key_comment(pubkey),
            headers={
                "Cookie": cookie,
                "Content-Type": "application/x-www-form-urlencoded",
            },
        )
        if response.status_code != 200:
            raise KeySubmissionError(
                f"SSH key submission failed: {response.status_code} - {response.text}"
            )

    def get_saved_cookie(self) -> str | None:
        return self.session.auth_cookie or self.session.load_cookie()

    async def _post(self, url: str, what: str, **kwargs) -> httpx.Response:
        try:
            return await self._client.post(url, **kwargs)
        except httpx.HTTPError as exc:
            raise DeviceConnectionError(f"{what}: {exc}") from exc

    # ── Approval polling ───────────────────────────────────────────

    def poll_for_trust(self, interval: float | None = None, on_trusted=None) -> TrustPoller:
        """Start (or return the running) approval poller."""
        if self._poller is not None and self._poller.running:
            return self._poller
        self._poller = TrustPoller(
            self.executor.probe_connectivity,
            interval=self.poll_interval if interval is None else interval,
            on_trusted=on_trusted,
        ).start()
        return self._poller

    def cancel_polling(self) -> None:
        if self._poller is not None:
            self._poller.cancel()

    @property
    def poller(self) -> TrustPoller | None:
        return self._poller
