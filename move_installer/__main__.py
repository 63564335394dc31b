"""Move Everything installer backend entry point.

Usage:
    python -m move_installer [--host HOST] [--port PORT] [--device HOST] [--debug]
"""

from __future__ import annotations

import argparse
import logging

from move_installer.config import InstallerConfig
from move_installer.diagnostics import install_log_buffer

logger = logging.getLogger(__name__)


def main() -> None:
    parser = argparse.ArgumentParser(description="Move Everything installer backend")
    parser.add_argument("--host", default=None, help="RPC bind address (overrides config)")
    parser.add_argument("--port", type=int, default=None, help="RPC port (overrides config)")
    parser.add_argument(
        "--device",
        default=None,
        help="Device hostname or IP (default: move.local)",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    # Chatty at DEBUG
    logging.getLogger("asyncssh").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    config = InstallerConfig.from_env()
    if args.host:
        config.api_host = args.host
    if args.port:
        config.api_port = args.port
    if args.device:
        config.device_hostname = args.device

    import uvicorn

    from move_installer.api import create_app
    from move_installer.manager import Installer

    installer = Installer(config, log_buffer=install_log_buffer())
    logger.info("Starting installer backend on %s:%d (device %s)",
                config.api_host, config.api_port, config.device_hostname)
    uvicorn.run(create_app(installer), host=config.api_host, port=config.api_port)


if __name__ == "__main__":
    main()
