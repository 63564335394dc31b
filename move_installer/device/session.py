"""Per-process device session — the one place shared device state lives.

Holds the resolved device address and the auth cookie.  The address is
cached for the lifetime of the session once learned (literal entry, DNS, or
an observed socket) and only replaced when the user types a *different*
literal IP.  The cookie is persisted to disk so it survives restarts.
"""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


def is_ip_literal(value: str | None) -> bool:
    """True for ``192.168.1.2``, ``fe80::1`` or ``[fe80::1]``."""
    if not value:
        return False
    try:
        ipaddress.ip_address(value.strip("[]"))
    except ValueError:
        return False
    return True


def normalize_address(value: str) -> str:
    """Strip the IPv4-mapped prefix and bracket IPv6 literals."""
    value = value.strip()
    if value.startswith("::ffff:") and "." in value:
        value = value[len("::ffff:"):]
    bare = value.strip("[]")
    try:
        addr = ipaddress.ip_address(bare)
    except ValueError:
        return value
    return f"[{bare}]" if addr.version == 6 else bare


@dataclass
class DeviceSession:
    """State for the single active device."""

    hostname: str = "move.local"
    resolved_address: str | None = None
    auth_cookie: str | None = None
    ssh_key_path: str | None = None
    cookie_path: Path | None = None

    # ── Address ────────────────────────────────────────────────────

    @property
    def host(self) -> str:
        """Best address to connect to: resolved IP, else the hostname."""
        return self.resolved_address or self.hostname

    @property
    def ssh_host(self) -> str:
        """:attr:`host` without IPv6 brackets, for SSH clients."""
        return self.host.strip("[]")

    @property
    def is_ipv6(self) -> bool:
        return bool(self.resolved_address and ":" in self.resolved_address)

    @property
    def base_url(self) -> str:
        return f"http://{self.host}"

    def remember_address(self, address: str, source: str = "") -> str:
        """Cache a confirmed address; returns the normalised form."""
        address = normalize_address(address)
        if address != self.resolved_address:
            logger.info("Device address %s%s", address, f" (via {source})" if source else "")
        self.resolved_address = address
        return address

    def offer_candidate(self, candidate: str) -> str | None:
        """Apply a user-entered host or IP to the session.

        A literal IP that differs from the cached one resets the cache and
        becomes the new address.  A hostname never overrides a cached IP.
        Returns the cached address after the update (may be None).
        """
        candidate = candidate.strip()
        if is_ip_literal(candidate):
            literal = normalize_address(candidate)
            if self.resolved_address and self.resolved_address != literal:
                logger.debug("Different IP entered, resetting cache (was %s, now %s)",
                             self.resolved_address, literal)
            self.remember_address(literal, "direct entry")
        else:
            self.hostname = candidate
        return self.resolved_address

    def forget_address(self) -> None:
        self.resolved_address = None

    # ── Cookie ─────────────────────────────────────────────────────

    def load_cookie(self) -> str | None:
        """Load the persisted cookie, if any."""
        if self.cookie_path is None:
            return self.auth_cookie
        try:
            if self.cookie_path.exists():
                self.auth_cookie = self.cookie_path.read_text().strip() or None
        except OSError:
            logger.exception("Failed to load saved cookie from %s", self.cookie_path)
        return self.auth_cookie

    def save_cookie(self, cookie: str) -> None:
        """Store the cookie in memory and on disk."""
        self.auth_cookie = cookie
        if self.cookie_path is None:
            return
        self.cookie_path.parent.mkdir(parents=True, exist_ok=True)
        self.cookie_path.write_text(cookie)
