"""Release channel client for the module catalog and core releases.

Read-only access to the project's GitHub-hosted release channel.  Uses a
single :class:`httpx.AsyncClient`; call :meth:`ReleaseChannel.aclose` (or use
as an async context manager) when done.
"""

from __future__ import annotations

import asyncio
import logging
import re
import tempfile
from pathlib import Path
from typing import Any

import httpx

from move_installer.config import InstallerConfig
from move_installer.errors import DownloadError
from move_installer.models import ModuleDescriptor, ReleaseArtifact

logger = logging.getLogger(__name__)

# Core binaries are tagged v1.2.3; installer releases use installer-v*
_CORE_TAG_RE = re.compile(r"^v\d")


class ReleaseChannel:
    """Fetches catalog metadata and release artifacts."""

    def __init__(
        self,
        config: InstallerConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self._client = httpx.AsyncClient(
            timeout=config.http_timeout,
            follow_redirects=True,
            headers={"User-Agent": config.user_agent},
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> ReleaseChannel:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.aclose()

    # ------------------------------------------------------------------ #
    # Catalog
    # ------------------------------------------------------------------ #

    async def get_module_catalog(self) -> list[ModuleDescriptor]:
        """Catalog entries enriched with version/assets from each module.json."""
        try:
            response = await self._client.get(self.config.catalog_url)
        except httpx.HTTPError as exc:
            raise DownloadError(f"Failed to get module catalog: {exc}") from exc
        if response.status_code != 200:
            raise DownloadError(f"Failed to fetch catalog: {response.status_code}")

        try:
            catalog = response.json()
        except ValueError as exc:
            raise DownloadError(f"Failed to get module catalog: invalid JSON ({exc})") from exc
        entries = catalog.get("modules", []) if isinstance(catalog, dict) else catalog

        return list(await asyncio.gather(*(self._describe(e) for e in entries)))

    async def _describe(self, entry: dict[str, Any]) -> ModuleDescriptor:
        repo = entry.get("github_repo", "")
        module = ModuleDescriptor.from_dict({
            **entry,
            "download_url": (
                f"https://github.com/{repo}/releases/latest/download/{entry.get('asset_name', '')}"
            ),
            "version": None,
            "assets": None,
        })

        url = f"https://raw.githubusercontent.com/{repo}/main/src/module.json"
        try:
            response = await self._client.get(url)
            if response.status_code == 200:
                meta = response.json()
                module.version = meta.get("version") or None
                module.assets = meta.get("assets") or None
                logger.debug("Found version %s for %s", module.version, module.id)
            else:
                logger.debug("module.json for %s returned %d", module.id, response.status_code)
        except (httpx.HTTPError, ValueError, AttributeError) as exc:
            logger.debug("Could not fetch module.json for %s: %s", module.id, exc)
        return module

    # ------------------------------------------------------------------ #
    # Core releases
    # ------------------------------------------------------------------ #

    async def get_latest_release(self) -> ReleaseArtifact:
        """Newest core release; falls back to the ``latest`` download URL."""
        asset = self.config.core_asset_name
        base = self.config.release_download_base
        try:
            response = await self._client.get(self.config.releases_api_url)
            releases = response.json() if response.status_code == 200 else None
            if isinstance(releases, list):
                for release in releases:
                    tag = release.get("tag_name", "")
                    if _CORE_TAG_RE.match(tag):
                        logger.debug("Found binary release %s", tag)
                        return ReleaseArtifact(
                            version=tag[1:],
                            asset_name=asset,
                            download_url=f"{base}/download/{tag}/{asset}",
                        )
            logger.warning("No binary release found (status %d)", response.status_code)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Failed to get version from releases API: %s", exc)

        return ReleaseArtifact(
            version="latest",
            asset_name=asset,
            download_url=f"{base}/latest/download/{asset}",
        )

    # ------------------------------------------------------------------ #
    # Downloads
    # ------------------------------------------------------------------ #

    async def download(self, url: str, dest: str | Path) -> Path:
        """Stream *url* to *dest*; relative or /tmp paths go to the temp dir."""
        dest = Path(dest)
        if not dest.is_absolute() or str(dest).startswith("/tmp/"):
            dest = Path(tempfile.gettempdir()) / dest.name
        dest.parent.mkdir(parents=True, exist_ok=True)

        try:
            async with self._client.stream("GET", url) as response:
                if response.status_code != 200:
                    raise DownloadError(
                        f"Failed to download release: {url} returned {response.status_code}"
                    )
                with open(dest, "wb") as f:
                    async for chunk in response.aiter_bytes():
                        f.write(chunk)
        except httpx.HTTPError as exc:
            dest.unlink(missing_ok=True)
            raise DownloadError(f"Failed to download release: {exc}") from exc
        logger.info("Downloaded %s -> %s", url, dest)
        return dest

    async def fetch_install_script(self) -> str:
        """The core install.sh as text."""
        try:
            response = await self._client.get(self.config.install_script_url)
        except httpx.HTTPError as exc:
            raise DownloadError(f"Failed to download install.sh: {exc}") from exc
        if response.status_code != 200:
            raise DownloadError(f"Failed to download install.sh: {response.status_code}")
        return response.text
