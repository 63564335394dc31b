"""Diagnostics export and in-memory log capture."""

from __future__ import annotations

import json
import logging
import platform
import sys
from collections import deque
from datetime import datetime, timezone

from move_installer.device.keys import KeyManager
from move_installer.device.session import DeviceSession

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class LogBuffer(logging.Handler):
    """Keeps the last *capacity* formatted log lines for the UI."""

    def __init__(self, capacity: int = 1000, level: int = logging.DEBUG) -> None:
        super().__init__(level)
        self.lines: deque[str] = deque(maxlen=capacity)
        self.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt="%H:%M:%S"))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.lines.append(self.format(record))
        except Exception:
            self.handleError(record)

    def tail(self, limit: int | None = None) -> list[str]:
        lines = list(self.lines)
        return lines[-limit:] if limit else lines

    def clear(self) -> None:
        self.lines.clear()


def install_log_buffer(capacity: int = 1000, name: str = "move_installer") -> LogBuffer:
    """Attach a :class:`LogBuffer` to the package logger."""
    buffer = LogBuffer(capacity)
    package_logger = logging.getLogger(name)
    package_logger.addHandler(buffer)
    return buffer


def get_diagnostics(
    session: DeviceSession,
    keys: KeyManager,
    errors: list | None = None,
) -> str:
    """Pretty-printed JSON report for bug reports."""
    report = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "platform": sys.platform,
        "arch": platform.machine(),
        "device_ip": session.resolved_address,
        "device_hostname": session.hostname,
        "errors": errors or [],
        "ssh_key_exists": keys.private_key_path() is not None,
        "has_cookie": bool(session.auth_cookie),
    }
    return json.dumps(report, indent=2)
