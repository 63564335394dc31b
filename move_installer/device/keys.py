"""SSH identity management.

Finds or creates the keypair the installer uses to talk to the device.  The
private key must load in both the native ``ssh`` binary and asyncssh, so it
is always written in OpenSSH format: ``ssh-keygen`` when available, the
``cryptography`` library otherwise.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from pathlib import Path

from move_installer.errors import KeyGenerationError, KeyNotFoundError

logger = logging.getLogger(__name__)

# Private key names in priority order; the installer's own key always wins
_INSTALLER_KEY = "move_key"
_FALLBACK_KEY = "id_rsa"


def strip_key_comment(pubkey: str) -> str:
    """``"ssh-ed25519 AAAA... user@host"`` → ``"ssh-ed25519 AAAA..."``."""
    return " ".join(pubkey.strip().split()[:2])


class KeyManager:
    """Locates, generates and reads the installer's SSH keypair."""

    def __init__(
        self,
        ssh_dir: str | Path,
        key_name: str = _INSTALLER_KEY,
        comment: str = "move-everything-installer",
    ) -> None:
        self.ssh_dir = Path(ssh_dir)
        self.key_name = key_name
        self.comment = comment

    @property
    def installer_key(self) -> Path:
        return self.ssh_dir / self.key_name

    def find_existing_key(self) -> Path | None:
        """Return the preferred existing public key, or None."""
        for name in (self.key_name, _FALLBACK_KEY):
            candidate = self.ssh_dir / f"{name}.pub"
            if candidate.exists():
                logger.debug("Found %s", candidate.name)
                return candidate
        return None

    def private_key_path(self) -> Path | None:
        """Private key matching :meth:`find_existing_key`'s priority."""
        for name in (self.key_name, _FALLBACK_KEY):
            candidate = self.ssh_dir / name
            if candidate.exists():
                return candidate
        return None

    def identity_file_for_config(self) -> str:
        """``IdentityFile`` value for ~/.ssh/config, inside :attr:`ssh_dir`."""
        for name in (self.key_name, "id_ed25519", _FALLBACK_KEY):
            if (self.ssh_dir / name).exists():
                return (self.ssh_dir / name).as_posix()
        return (self.ssh_dir / "id_ed25519").as_posix()

    def generate_key(self) -> Path:
        """Create an Ed25519 keypair and return the public key path."""
        try:
            self.ssh_dir.mkdir(parents=True, exist_ok=True)
            if shutil.which("ssh-keygen"):
                try:
                    self._generate_with_ssh_keygen()
                except (OSError, subprocess.CalledProcessError) as exc:
                    logger.warning("ssh-keygen failed (%s), using cryptography fallback", exc)
                    self._generate_with_cryptography()
            else:
                logger.info("ssh-keygen not available, using cryptography to generate key")
                self._generate_with_cryptography()
        except KeyGenerationError:
            raise
        except Exception as exc:
            raise KeyGenerationError(f"Failed to generate SSH key: {exc}") from exc
        return self.installer_key.with_suffix(".pub")

    def read_public_key(self, path: str | Path) -> str:
        """Read a public key file."""
        try:
            return Path(path).read_text()
        except OSError as exc:
            raise KeyNotFoundError(f"Failed to read public key: {exc}") from exc

    # ── Generators ─────────────────────────────────────────────────

    def _generate_with_ssh_keygen(self) -> None:
        private = self.installer_key
        for stale in (private, private.with_suffix(".pub")):
            stale.unlink(missing_ok=True)
        subprocess.run(
            ["ssh-keygen", "-t", "ed25519", "-f", str(private), "-N", "", "-C", self.comment],
            check=True,
            capture_output=True,
            timeout=30,
        )
        logger.info("Generated SSH key with ssh-keygen: %s", private)

    def _generate_with_cryptography(self) -> None:
        try:
            from cryptography.hazmat.primitives import serialization
            from cryptography.hazmat.primitives.asymmetric import ed25519
        except ImportError as exc:
            raise KeyGenerationError(
                "Failed to generate SSH key: no ssh-keygen and no cryptography backend"
            ) from exc

        key = ed25519.Ed25519PrivateKey.generate()
        private_text = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.OpenSSH,
            encryption_algorithm=serialization.NoEncryption(),
        )
        public_text = key.public_key().public_bytes(
            encoding=serialization.Encoding.OpenSSH,
            format=serialization.PublicFormat.OpenSSH,
        )

        private = self.installer_key
        public = private.with_suffix(".pub")
        _write_with_mode(private, private_text, 0o600)
        _write_with_mode(public, public_text + f" {self.comment}\n".encode(), 0o644)
        logger.info("Generated SSH key with cryptography: %s", private)


def _write_with_mode(path: Path, data: bytes, mode: int) -> None:
    path.unlink(missing_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "wb") as f:
        f.write(data)
    os.chmod(path, mode)
