"""Configuration for the Move Everything installer backend.

Defaults are baked in; every field can be overridden with a
``MOVE_INSTALLER_<FIELD>`` environment variable (e.g.
``MOVE_INSTALLER_DEVICE_HOSTNAME=192.168.1.40``) or by the CLI.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path

logger = logging.getLogger(__name__)

ENV_PREFIX = "MOVE_INSTALLER_"

_REPO = "charlesvestal/move-anything"


@dataclass
class InstallerConfig:
    """Installer settings — paths, endpoints and timeouts."""

    # Device
    device_hostname: str = "move.local"
    ssh_port: int = 22
    device_user: str = "ableton"
    root_user: str = "root"

    # Local state
    home_dir: Path = field(default_factory=Path.home)
    ssh_dir: Path | None = None  # default: <home>/.ssh
    cookie_path: Path | None = None  # default: <home>/.move-everything-installer-cookie
    key_name: str = "move_key"
    key_comment: str = "move-everything-installer"

    # Release channel
    catalog_url: str = f"https://raw.githubusercontent.com/{_REPO}/main/module-catalog.json"
    releases_api_url: str = f"https://api.github.com/repos/{_REPO}/releases"
    release_download_base: str = f"https://github.com/{_REPO}/releases"
    install_script_url: str = f"https://raw.githubusercontent.com/{_REPO}/main/scripts/install.sh"
    core_asset_name: str = "move-anything.tar.gz"
    user_agent: str = "MoveEverything-Installer"

    # Timeouts (seconds)
    http_timeout: float = 60.0
    validate_timeout: float = 10.0
    connect_timeout: float = 5.0
    command_timeout: float = 30.0
    probe_timeout: float = 8.0
    upload_timeout: float = 120.0
    install_timeout: float = 300.0
    poll_interval: float = 2.0

    # RPC server
    api_host: str = "127.0.0.1"
    api_port: int = 5180

    def __post_init__(self) -> None:
        self.home_dir = Path(self.home_dir)
        if self.ssh_dir is None:
            self.ssh_dir = self.home_dir / ".ssh"
        self.ssh_dir = Path(self.ssh_dir)
        if self.cookie_path is None:
            self.cookie_path = self.home_dir / ".move-everything-installer-cookie"
        self.cookie_path = Path(self.cookie_path)

    @property
    def ssh_config_path(self) -> Path:
        return self.ssh_dir / "config"

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> InstallerConfig:
        """Build a config from ``MOVE_INSTALLER_*`` environment variables."""
        environ = os.environ if environ is None else environ
        overrides: dict = {}
        for f in fields(cls):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            default = getattr(cls(), f.name)
            try:
                if isinstance(default, bool):
                    overrides[f.name] = raw.lower() in ("1", "true", "yes", "on")
                elif isinstance(default, int):
                    overrides[f.name] = int(raw)
                elif isinstance(default, float):
                    overrides[f.name] = float(raw)
                elif isinstance(default, Path) or f.name in ("ssh_dir", "cookie_path"):
                    overrides[f.name] = Path(raw).expanduser()
                else:
                    overrides[f.name] = raw
            except ValueError:
                logger.warning("Ignoring invalid value for %s%s: %r",
                               ENV_PREFIX, f.name.upper(), raw)
        return cls(**overrides)
