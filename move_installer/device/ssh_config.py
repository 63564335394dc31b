"""~/.ssh/config management.

install.sh connects to ``movedevice``; this module makes that alias (and a
``move.local`` block) point at the resolved device address.  Existing config
is kept; only prior blocks with the same ``Host`` names are replaced.
"""

from __future__ import annotations

import logging
from pathlib import Path

logger = logging.getLogger(__name__)

DEVICE_ALIAS = "movedevice"


def _config_value(value: str) -> str:
    return f'"{value}"' if " " in value else value


def host_block(alias: str, hostname: str, identity_file: str, user: str = "ableton") -> str:
    return (
        f"\nHost {alias}\n"
        f"    HostName {hostname}\n"
        f"    User {user}\n"
        f"    IdentityFile {_config_value(identity_file)}\n"
        f"    StrictHostKeyChecking no\n"
        f"    UserKnownHostsFile /dev/null\n"
    )


def strip_host_blocks(config_text: str, aliases: set[str]) -> str:
    """Remove ``Host`` blocks whose pattern list is exactly one of *aliases*."""
    kept: list[str] = []
    skipping = False
    for line in config_text.splitlines(keepends=True):
        words = line.strip().split()
        if words and words[0].lower() in ("host", "match"):
            skipping = words[0].lower() == "host" and len(words) == 2 and words[1] in aliases
        if not skipping:
            kept.append(line)
    return "".join(kept)


def render_ssh_config(
    existing: str,
    hostname: str,
    device_ip: str | None,
    identity_file: str,
) -> str:
    """Existing config minus stale device blocks, plus fresh ones."""
    text = strip_host_blocks(existing, {hostname, DEVICE_ALIAS}).rstrip("\n")
    if text:
        text += "\n"
    text += host_block(hostname, hostname, identity_file)
    if device_ip:
        text += host_block(DEVICE_ALIAS, device_ip.strip("[]"), identity_file)
    return text


def write_ssh_config(
    config_path: Path,
    hostname: str,
    device_ip: str | None,
    identity_file: str,
) -> None:
    """Augment *config_path* with the device host aliases."""
    config_path = Path(config_path)
    existing = config_path.read_text() if config_path.exists() else ""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(render_ssh_config(existing, hostname, device_ip, identity_file))
    logger.info("SSH config updated for %s and %s -> %s", hostname, DEVICE_ALIAS, device_ip)
