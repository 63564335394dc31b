"""Installer error taxonomy and user-facing error categorisation.

Every public operation either returns a typed result or raises a subclass of
:class:`InstallerError`.  The ``category`` attribute tells the caller what kind
of recovery makes sense:

  connectivity    — retry, or enter the device IP manually
  authentication  — restart the bootstrap from the challenge request
  remote          — the current operation failed on the device
  local           — something is missing on this machine

:func:`categorize_error` turns any raw error message into a friendlier report
for display while keeping the raw text for diagnostics export.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field


class InstallerError(Exception):
    """Base error for installer failures."""

    category = "generic"


# ── Connectivity ──────────────────────────────────────────────────


class DeviceConnectionError(InstallerError):
    """Raised when the device is network-unreachable."""

    category = "connectivity"


class RemoteTimeoutError(DeviceConnectionError):
    """Raised when a remote command exceeds its time budget."""


# ── Authentication ────────────────────────────────────────────────


class AuthenticationError(InstallerError):
    """Raised when the device rejects the challenge code or cookie."""

    category = "authentication"


class ChallengeError(AuthenticationError):
    """Raised when the device refuses to display a challenge code."""


class KeySubmissionError(AuthenticationError):
    """Raised when the device API rejects the submitted public key."""


# ── Remote execution ──────────────────────────────────────────────


class RemoteCommandError(InstallerError):
    """Raised when a remote command exits non-zero on every transport."""

    category = "remote"

    def __init__(
        self,
        message: str,
        *,
        exit_status: int | None = None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.exit_status = exit_status
        self.stdout = stdout
        self.stderr = stderr


class InstallScriptError(RemoteCommandError):
    """Raised when install.sh exits non-zero."""


class ModuleNotFoundOnDevice(InstallerError):
    """Raised when removing a module whose directory does not exist."""

    category = "remote"


class PathScopeError(InstallerError):
    """Raised when a remote path escapes the module-assets tree."""

    category = "remote"


# ── Local environment ─────────────────────────────────────────────


class LocalToolMissingError(InstallerError):
    """Raised when a required native tool is not installed."""

    category = "local"


class KeyGenerationError(InstallerError):
    """Raised when no SSH keypair could be generated."""

    category = "local"


class KeyNotFoundError(InstallerError):
    """Raised when the SSH key disappeared or was never created."""

    category = "local"


class AddressRequiredError(InstallerError):
    """Raised when an operation needs a literal device address."""

    category = "local"


class DownloadError(InstallerError):
    """Raised when a release artifact cannot be downloaded."""

    category = "local"


# ── Categorisation for display ────────────────────────────────────


@dataclass
class ErrorReport:
    title: str
    message: str
    suggestions: list[str] = field(default_factory=list)
    can_clean_tmp: bool = False
    category: str = "generic"
    raw: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


# (category, needles, title, message, suggestions, can_clean_tmp); first match wins
_RULES: list[tuple[str, tuple[str, ...], str, str, list[str], bool]] = [
    (
        "connectivity",
        ("timeout", "timed out", "econnrefused", "ehostunreach", "connection refused"),
        "Connection Failed",
        "Could not connect to your Move device.",
        [
            "Check that your Move is powered on",
            "Ensure your Move is connected to the same WiFi network",
            "Try restarting your Move",
            "Check your WiFi connection",
        ],
        False,
    ),
    (
        "connectivity",
        ("dns", "getaddrinfo", "name or service not known", ".local"),
        "Device Not Found",
        "Could not find your Move on the network.",
        [
            "Try entering your Move's IP address manually",
            "Check that your Move is connected to WiFi",
            "Make sure you're on the same WiFi network as your Move",
            "On Windows, install Bonjour service (comes with iTunes/iCloud)",
        ],
        False,
    ),
    (
        "local",
        ("download", "404", "fetch failed"),
        "Download Failed",
        "Could not download required files.",
        [
            "Check your internet connection",
            "Try again in a few moments",
            "Verify GitHub is accessible from your network",
        ],
        False,
    ),
    (
        "authentication",
        ("auth", "unauthorized", "challenge"),
        "Authentication Failed",
        "Could not authenticate with your Move.",
        [
            "The authorization code may have expired",
            "Try restarting the installer",
            "Make sure you entered the correct code from your Move display",
        ],
        False,
    ),
    (
        "remote",
        ("enospc", "no space"),
        "Disk Full",
        "Not enough space on your Move device.",
        [
            'Click "Clean Up & Retry" to remove temp files from your device and try again',
            "Free up space by deleting unused samples or sets",
            "Try installing fewer modules (use Custom mode)",
        ],
        True,
    ),
    (
        "authentication",
        ("key", "permission denied"),
        "Connection Setup Failed",
        "Could not set up secure connection to your Move.",
        [
            'Make sure you confirmed "Yes" on your Move device',
            "Try the setup process again",
            "Restart your Move and try again",
        ],
        False,
    ),
]


def categorize_error(error: BaseException | str) -> ErrorReport:
    """Map a raw error (or message) to a user-facing :class:`ErrorReport`."""
    raw = str(error)
    lowered = raw.lower()
    for category, needles, title, message, suggestions, can_clean in _RULES:
        if any(n in lowered for n in needles):
            return ErrorReport(
                title=title,
                message=message,
                suggestions=list(suggestions),
                can_clean_tmp=can_clean,
                category=category,
                raw=raw,
            )
    category = error.category if isinstance(error, InstallerError) else "generic"
    return ErrorReport(
        title="Installation Error",
        message=raw,
        suggestions=[
            "Try restarting the installer",
            "Check that your Move has the latest firmware",
            "Copy diagnostics and report the issue on GitHub",
        ],
        category=category,
        raw=raw,
    )
