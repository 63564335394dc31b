"""Data models shared by the installer components."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any

# component_type → install subdirectory under modules/
INSTALL_SUBDIRS: dict[str, str] = {
    "sound_generator": "sound_generators",
    "audio_fx": "audio_fx",
    "midi_fx": "midi_fx",
    "utility": "utilities",
    "overtake": "overtake",
}


def install_subdir(component_type: str | None) -> str:
    """Category directory for a component type; unknown types go to ``other``."""
    return INSTALL_SUBDIRS.get(component_type or "", "other")


@dataclass(frozen=True)
class ReleaseArtifact:
    """A downloadable release: the core firmware or a module package."""

    version: str
    asset_name: str
    download_url: str

    def to_dict(self) -> dict:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> ReleaseArtifact:
        return cls(
            version=data.get("version") or "",
            asset_name=data.get("asset_name") or "",
            download_url=data.get("download_url") or "",
        )


@dataclass
class ModuleDescriptor:
    """A module entry from the release catalog."""

    id: str
    name: str = ""
    github_repo: str = ""
    component_type: str = "utility"  # sound_generator, audio_fx, midi_fx, utility, overtake
    asset_name: str = ""
    version: str | None = None  # None when upstream module.json could not be fetched
    assets: dict | None = None
    download_url: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    _KNOWN = ("id", "name", "github_repo", "component_type", "asset_name",
              "version", "assets", "download_url")

    def to_dict(self) -> dict:
        data = {k: getattr(self, k) for k in self._KNOWN}
        return {**self.extra, **data}

    @classmethod
    def from_dict(cls, data: dict) -> ModuleDescriptor:
        extra = {k: v for k, v in data.items()
                 if k not in cls._KNOWN and k not in ("currentVersion", "current_version")}
        return cls(
            id=data["id"],
            name=data.get("name") or data["id"],
            github_repo=data.get("github_repo", ""),
            component_type=data.get("component_type") or "utility",
            asset_name=data.get("asset_name", ""),
            version=data.get("version") or None,
            assets=data.get("assets"),
            download_url=data.get("download_url", ""),
            extra=extra,
        )


@dataclass
class InstalledModule:
    """A module manifest read from the device."""

    id: str
    name: str
    version: str
    component_type: str = "utility"
    assets: dict | None = None

    def to_dict(self) -> dict:
        data = dataclasses.asdict(self)
        if self.assets is None:
            data.pop("assets")
        return data

    @classmethod
    def from_manifest(cls, manifest: dict) -> InstalledModule | None:
        """Build from a parsed module.json; ``None`` without id and version."""
        if not isinstance(manifest, dict):
            return None
        module_id = manifest.get("id")
        version = manifest.get("version")
        if not module_id or not version:
            return None
        return cls(
            id=module_id,
            name=manifest.get("name") or module_id,
            version=str(version),
            component_type=manifest.get("component_type") or "utility",
            assets=manifest.get("assets") or None,
        )


@dataclass
class InstalledState:
    """What is currently installed on the device."""

    installed: bool = False
    core: str | None = None
    modules: list[InstalledModule] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "installed": self.installed,
            "core": self.core,
            "modules": [m.to_dict() for m in self.modules],
        }

    @classmethod
    def from_dict(cls, data: dict) -> InstalledState:
        modules = []
        for raw in data.get("modules") or []:
            mod = InstalledModule.from_manifest(raw)
            if mod is not None:
                modules.append(mod)
        return cls(
            installed=bool(data.get("installed")),
            core=data.get("core") or None,
            modules=modules,
        )


@dataclass
class CoreUpgrade:
    current: str
    available: str


@dataclass
class ModuleStatus:
    """A catalog module together with the version installed on the device."""

    module: ModuleDescriptor
    current_version: str

    def to_dict(self) -> dict:
        return {**self.module.to_dict(), "current_version": self.current_version}


@dataclass
class VersionComparison:
    core_upgrade: CoreUpgrade | None = None
    upgradable_modules: list[ModuleStatus] = field(default_factory=list)
    up_to_date_modules: list[ModuleStatus] = field(default_factory=list)
    new_modules: list[ModuleDescriptor] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "core_upgrade": dataclasses.asdict(self.core_upgrade) if self.core_upgrade else None,
            "upgradable_modules": [m.to_dict() for m in self.upgradable_modules],
            "up_to_date_modules": [m.to_dict() for m in self.up_to_date_modules],
            "new_modules": [m.to_dict() for m in self.new_modules],
        }


@dataclass
class RemoteEntry:
    """One line of a remote ``ls -lA`` listing."""

    name: str
    is_directory: bool
    size: int = 0


@dataclass
class UploadResult:
    file: str
    success: bool
    error: str = ""
