"""Version comparison and installed-vs-catalog reconciliation.

Pure functions, no I/O.  Versions are "semantic-ish": an optional leading
``v`` followed by dot-separated numbers.  Anything non-numeric counts as 0.
"""

from __future__ import annotations

import logging
from itertools import zip_longest

from move_installer.models import (
    CoreUpgrade,
    InstalledState,
    ModuleDescriptor,
    ModuleStatus,
    ReleaseArtifact,
    VersionComparison,
)

logger = logging.getLogger(__name__)


def parse_version(version: str | None) -> list[int]:
    """``"v1.2.x"`` → ``[1, 2, 0]``."""
    text = (version or "").strip()
    if text.startswith("v"):
        text = text[1:]
    parts = []
    for segment in text.split("."):
        try:
            parts.append(int(segment))
        except ValueError:
            parts.append(0)
    return parts


def is_newer(candidate: str | None, current: str | None) -> bool:
    """Return True if *candidate* is strictly newer than *current*."""
    for a, b in zip_longest(parse_version(candidate), parse_version(current), fillvalue=0):
        if a > b:
            return True
        if a < b:
            return False
    return False


def reconcile(
    installed: InstalledState,
    latest_release: ReleaseArtifact | None,
    catalog: list[ModuleDescriptor],
) -> VersionComparison:
    """Diff what is on the device against the release catalog.

    Every catalog module lands in exactly one of upgradable, up-to-date or
    new.  Installed modules that are no longer in the catalog are not
    reported.
    """
    result = VersionComparison()

    available = latest_release.version if latest_release else None
    if installed.core and available and is_newer(available, installed.core):
        result.core_upgrade = CoreUpgrade(current=installed.core, available=available)

    by_id = {m.id: m for m in installed.modules}

    for module in catalog:
        current = by_id.pop(module.id, None)
        if current is None:
            result.new_modules.append(module)
        elif module.version and is_newer(module.version, current.version):
            result.upgradable_modules.append(ModuleStatus(module, current.version))
        else:
            # Unknown catalog version counts as up to date
            result.up_to_date_modules.append(ModuleStatus(module, current.version))

    if by_id:
        logger.debug("Installed modules not in catalog (not reported): %s",
                     ", ".join(sorted(by_id)))

    return result


def reconcile_dicts(installed: dict, latest_release: dict | None, catalog: list[dict]) -> dict:
    """:func:`reconcile` over plain JSON-shaped dicts, for the RPC layer."""
    comparison = reconcile(
        InstalledState.from_dict(installed),
        ReleaseArtifact.from_dict(latest_release) if latest_release else None,
        [ModuleDescriptor.from_dict(m) for m in catalog],
    )
    return comparison.to_dict()
