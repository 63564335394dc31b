"""RPC API for the installer UI.

One ``POST /api/<operation>`` endpoint per installer operation.  Errors come
back as JSON with a display-ready report and the raw message::

    {"error": {"title": ..., "message": ..., "suggestions": [...],
               "can_clean_tmp": false, "category": "remote", "raw": ...},
     "raw": "Command failed with code 1: ..."}

Start with::

    python -m move_installer
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from move_installer import __version__
from move_installer.errors import (
    InstallerError,
    ModuleNotFoundOnDevice,
    PathScopeError,
    categorize_error,
)
from move_installer.manager import Installer
from move_installer.models import ModuleDescriptor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["installer"])

_STATUS_BY_CATEGORY = {
    "local": 400,
    "authentication": 401,
    "remote": 502,
    "connectivity": 503,
}


def get_installer(request: Request) -> Installer:
    return request.app.state.installer


# ── Request models ────────────────────────────────────────────────


class HostRequest(BaseModel):
    host: str = "move.local"


class AuthCodeRequest(BaseModel):
    code: str


class PublicKeyRequest(BaseModel):
    path: str | None = None


class SshConfigRequest(BaseModel):
    hostname: str | None = None


class DownloadRequest(BaseModel):
    url: str
    dest: str


class InstallMainRequest(BaseModel):
    tarball_path: str
    flags: list[str] = Field(default_factory=list)


class InstallModuleRequest(BaseModel):
    module_id: str
    tarball_path: str
    component_type: str | None = None


class CatalogModuleRequest(BaseModel):
    module: dict[str, Any]


class RemoveModuleRequest(BaseModel):
    module_id: str
    component_type: str | None = None


class RemotePathRequest(BaseModel):
    path: str


class UploadAssetsRequest(BaseModel):
    local_paths: list[str]
    remote_dir: str


class CompareVersionsRequest(BaseModel):
    installed: dict[str, Any] | None = None
    latest_release: dict[str, Any] | None = None
    module_catalog: list[dict[str, Any]] | None = None


class DiagnosticsRequest(BaseModel):
    errors: list[Any] = Field(default_factory=list)


class ScreenReaderRequest(BaseModel):
    enabled: bool


class LogsRequest(BaseModel):
    limit: int | None = None


# ══════════════════════════════════════════════════════════════════
# CONNECTION SETUP
# ══════════════════════════════════════════════════════════════════


@router.post("/validate_device")
async def validate_device(req: HostRequest, inst: Installer = Depends(get_installer)):
    valid = await inst.validate_device(req.host)
    return {"valid": valid, "device_ip": inst.session.resolved_address}


@router.post("/request_challenge")
async def request_challenge(inst: Installer = Depends(get_installer)):
    await inst.trust.request_challenge()
    return {"success": True}


@router.post("/submit_auth_code")
async def submit_auth_code(req: AuthCodeRequest, inst: Installer = Depends(get_installer)):
    await inst.trust.submit_challenge_response(req.code)
    return {"success": True}


@router.post("/find_existing_ssh_key")
async def find_existing_ssh_key(inst: Installer = Depends(get_installer)):
    return {"path": inst.find_existing_ssh_key()}


@router.post("/generate_new_ssh_key")
async def generate_new_ssh_key(inst: Installer = Depends(get_installer)):
    return {"path": await inst.generate_new_ssh_key()}


@router.post("/read_public_key")
async def read_public_key(req: PublicKeyRequest, inst: Installer = Depends(get_installer)):
    path = req.path or inst.find_existing_ssh_key()
    if path is None:
        return {"public_key": None}
    return {"public_key": inst.keys.read_public_key(path)}


@router.post("/submit_ssh_key_with_auth")
async def submit_ssh_key_with_auth(req: PublicKeyRequest, inst: Installer = Depends(get_installer)):
    await inst.submit_ssh_key(req.path)
    return {"success": True}


@router.post("/test_ssh")
async def test_ssh(inst: Installer = Depends(get_installer)):
    return {"connected": await inst.executor.probe_connectivity()}


@router.post("/start_trust_polling")
async def start_trust_polling(inst: Installer = Depends(get_installer)):
    poller = inst.trust.poll_for_trust()
    return {"polling": poller.running, "trusted": poller.trusted}


@router.post("/cancel_trust_polling")
async def cancel_trust_polling(inst: Installer = Depends(get_installer)):
    inst.trust.cancel_polling()
    return {"polling": False}


@router.post("/trust_status")
async def trust_status(inst: Installer = Depends(get_installer)):
    poller = inst.trust.poller
    if poller is None:
        return {"polling": False, "trusted": False, "attempts": 0}
    return {"polling": poller.running, "trusted": poller.trusted, "attempts": poller.attempts}


@router.post("/setup_ssh_config")
async def setup_ssh_config(req: SshConfigRequest, inst: Installer = Depends(get_installer)):
    inst.setup_ssh_config(req.hostname)
    return {"success": True}


@router.post("/check_git_bash_available")
async def check_git_bash_available(inst: Installer = Depends(get_installer)):
    return inst.operations.check_git_bash_available()


# ══════════════════════════════════════════════════════════════════
# RELEASES
# ══════════════════════════════════════════════════════════════════


@router.post("/get_module_catalog")
async def get_module_catalog(inst: Installer = Depends(get_installer)):
    modules = await inst.channel.get_module_catalog()
    return {"modules": [m.to_dict() for m in modules]}


@router.post("/get_latest_release")
async def get_latest_release(inst: Installer = Depends(get_installer)):
    return (await inst.channel.get_latest_release()).to_dict()


@router.post("/download_release")
async def download_release(req: DownloadRequest, inst: Installer = Depends(get_installer)):
    return {"path": await inst.download_release(req.url, req.dest)}


# ══════════════════════════════════════════════════════════════════
# INSTALL / REMOVE
# ══════════════════════════════════════════════════════════════════


@router.post("/install_main")
async def install_main(req: InstallMainRequest, inst: Installer = Depends(get_installer)):
    await inst.install_main(req.tarball_path, req.flags)
    return {"success": True}


@router.post("/install_module_package")
async def install_module_package(req: InstallModuleRequest, inst: Installer = Depends(get_installer)):
    await inst.install_module_package(req.module_id, req.tarball_path, req.component_type)
    return {"success": True}


@router.post("/install_catalog_module")
async def install_catalog_module(req: CatalogModuleRequest, inst: Installer = Depends(get_installer)):
    await inst.install_catalog_module(ModuleDescriptor.from_dict(req.module))
    return {"success": True}


@router.post("/remove_module")
async def remove_module(req: RemoveModuleRequest, inst: Installer = Depends(get_installer)):
    await inst.remove_module(req.module_id, req.component_type)
    return {"success": True}


# ══════════════════════════════════════════════════════════════════
# MODULE ASSETS
# ══════════════════════════════════════════════════════════════════


@router.post("/upload_assets")
async def upload_assets(req: UploadAssetsRequest, inst: Installer = Depends(get_installer)):
    results = await inst.upload_assets(req.local_paths, req.remote_dir)
    return {"results": [asdict(r) for r in results]}


@router.post("/list_remote_dir")
async def list_remote_dir(req: RemotePathRequest, inst: Installer = Depends(get_installer)):
    entries = await inst.list_remote_dir(req.path)
    return {"entries": [asdict(e) for e in entries]}


@router.post("/delete_remote_path")
async def delete_remote_path(req: RemotePathRequest, inst: Installer = Depends(get_installer)):
    await inst.delete_remote_path(req.path)
    return {"success": True}


@router.post("/create_remote_dir")
async def create_remote_dir(req: RemotePathRequest, inst: Installer = Depends(get_installer)):
    await inst.create_remote_dir(req.path)
    return {"success": True}


# ══════════════════════════════════════════════════════════════════
# DEVICE STATE
# ══════════════════════════════════════════════════════════════════


@router.post("/check_core_installation")
async def check_core_installation(inst: Installer = Depends(get_installer)):
    return (await inst.operations.check_core_installation()).to_dict()


@router.post("/check_installed_versions")
async def check_installed_versions(inst: Installer = Depends(get_installer)):
    progress: list[str] = []
    state = await inst.operations.check_installed_versions(progress.append)
    return {**state.to_dict(), "progress": progress}


@router.post("/compare_versions")
async def compare_versions(req: CompareVersionsRequest, inst: Installer = Depends(get_installer)):
    return await inst.compare_versions(req.installed, req.latest_release, req.module_catalog)


@router.post("/get_screen_reader_status")
async def get_screen_reader_status(inst: Installer = Depends(get_installer)):
    return {"enabled": await inst.operations.get_screen_reader_status()}


@router.post("/set_screen_reader_state")
async def set_screen_reader_state(req: ScreenReaderRequest, inst: Installer = Depends(get_installer)):
    return await inst.operations.set_screen_reader_state(req.enabled)


# ══════════════════════════════════════════════════════════════════
# MAINTENANCE
# ══════════════════════════════════════════════════════════════════


@router.post("/uninstall_move_everything")
async def uninstall_move_everything(inst: Installer = Depends(get_installer)):
    return await inst.uninstall()


@router.post("/clean_device_tmp")
async def clean_device_tmp(inst: Installer = Depends(get_installer)):
    return await inst.operations.clean_device_tmp()


@router.post("/fix_permissions")
async def fix_permissions(inst: Installer = Depends(get_installer)):
    await inst.operations.fix_permissions()
    return {"success": True}


@router.post("/get_diagnostics")
async def diagnostics(req: DiagnosticsRequest, inst: Installer = Depends(get_installer)):
    return {"diagnostics": inst.get_diagnostics(req.errors)}


@router.post("/get_logs")
async def get_logs(req: LogsRequest, inst: Installer = Depends(get_installer)):
    return {"lines": inst.get_logs(req.limit)}


# ──────────────────────────────────────────────────────────────────
# App factory
# ──────────────────────────────────────────────────────────────────


async def _installer_error(request: Request, exc: InstallerError) -> JSONResponse:
    if isinstance(exc, PathScopeError):
        status = 400
    elif isinstance(exc, ModuleNotFoundOnDevice):
        status = 404
    else:
        status = _STATUS_BY_CATEGORY.get(exc.category, 500)
    logger.error("%s failed: %s", request.url.path, exc)
    return JSONResponse(
        status_code=status,
        content={"error": categorize_error(exc).to_dict(), "raw": str(exc)},
    )


def create_app(installer: Installer | None = None) -> FastAPI:
    """Build the FastAPI app around *installer* (a default one if omitted)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await app.state.installer.aclose()

    app = FastAPI(title="Move Everything Installer", version=__version__, lifespan=lifespan)
    app.state.installer = installer or Installer()
    app.include_router(router)
    app.add_exception_handler(InstallerError, _installer_error)

    @app.get("/health")
    async def health():
        return {"status": "ok", "device": app.state.installer.session.host}

    return app
