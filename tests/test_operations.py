"""Tests for deployment operations against a mocked device."""

from __future__ import annotations

import json
import os
import shlex
from pathlib import Path

import httpx
import pytest

from move_installer.catalog import ReleaseChannel
from move_installer.deploy import operations as operations_module
from move_installer.deploy.operations import (
    DEVICE_CLEANUP_COMMANDS,
    FREE_SPACE_COMMAND,
    INSTALL_ROOT,
    MODULES_ROOT,
    DeviceOperations,
    parse_ls_output,
    scoped_module_path,
)
from move_installer.errors import (
    AddressRequiredError,
    InstallScriptError,
    LocalToolMissingError,
    ModuleNotFoundOnDevice,
    PathScopeError,
)
from move_installer.remote.executor import RemoteExecutor
from move_installer.remote.transport import CommandResult, MockSSHTransport

INSTALL_SH = "#!/bin/sh\nssh ableton@move.local 'echo hi'\nscp x root@move.local:/tmp\n"

LS_OUTPUT = """total 12
-rw-r--r--    1 ableton  users       2048 Jan  5 12:00 b-sample.wav
drwxr-xr-x    2 ableton  users       4096 Jan  5 12:00 presets
-rw-r--r--    1 ableton  users        512 Feb 11 09:30 a sample.wav
drwxr-xr-x    2 ableton  users       4096 Jan  5 12:00 Banks
"""


def _release_handler(request: httpx.Request) -> httpx.Response:
    if request.url.path.endswith("/scripts/install.sh"):
        return httpx.Response(200, text=INSTALL_SH)
    return httpx.Response(404)


@pytest.fixture()
def device():
    return MockSSHTransport(default=CommandResult())


@pytest.fixture()
def ops(session, keys, config, device):
    session.offer_candidate("192.168.1.20")
    executor = RemoteExecutor(session, keys, transports=[device])
    channel = ReleaseChannel(config, transport=httpx.MockTransport(_release_handler))
    return DeviceOperations(session, executor, channel, keys, config, platform="linux")


# ── Path guard ────────────────────────────────────────────────────


class TestPathGuard:
    @pytest.mark.parametrize("path", [
        "/data/UserData/move-anything/modules/sound_generators/braids",
        "/data/UserData/move-anything/modules/sound_generators/braids/../braids/samples",
        "/data/UserData/move-anything/modules/x//y/",
    ])
    def test_inside(self, path):
        assert scoped_module_path(path).startswith(MODULES_ROOT)

    @pytest.mark.parametrize("path", [
        "/data/UserData/move-anything/modules/../../../etc",
        "/data/UserData/move-anything/modules/..",
        "/data/UserData/move-anything/modules-evil/x",
        "/data/UserData/move-anything/version.txt",
        "modules/sound_generators/braids",
        "",
        "/etc/passwd",
    ])
    def test_outside(self, path):
        with pytest.raises(PathScopeError):
            scoped_module_path(path)

    def test_root_only_when_allowed(self):
        assert scoped_module_path(MODULES_ROOT) == MODULES_ROOT.rstrip("/")
        with pytest.raises(PathScopeError):
            scoped_module_path(MODULES_ROOT, allow_root=False)

    @pytest.mark.asyncio
    async def test_rejected_before_any_command(self, ops, device):
        for call in (
            ops.delete_remote_path(f"{MODULES_ROOT}../../"),
            ops.delete_remote_path(MODULES_ROOT),
            ops.create_remote_dir("/data/UserData/move-anything/config"),
            ops.list_remote_dir("/tmp"),
            ops.upload_assets([], "/data/UserData/other"),
        ):
            with pytest.raises(PathScopeError):
                await call
        assert device.calls == []
        assert device.uploads == []

    @pytest.mark.asyncio
    async def test_remove_module_id_traversal(self, ops, device):
        with pytest.raises(PathScopeError):
            await ops.remove_module("../../..", "utility")
        assert device.calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("module_id", ["../audio_fx", "..", ".", "", "a/b"])
    async def test_remove_module_rejects_bad_ids(self, ops, device, module_id):
        with pytest.raises(PathScopeError):
            await ops.remove_module(module_id, "sound_generator")
        assert device.calls == []

    @pytest.mark.parametrize("suffix", ["x\nrm -rf /", "x\0", "x\r"])
    def test_control_characters_rejected(self, suffix):
        with pytest.raises(PathScopeError):
            scoped_module_path(MODULES_ROOT + suffix)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", [
        'x"; rm -rf /data/UserData/UserLibrary; echo "',
        "x; rm -rf /data/UserData/UserLibrary",
        "$(rm -rf /data/UserData/UserLibrary)",
        "`reboot`",
        "it's a sample",
    ])
    async def test_shell_metacharacters_stay_literal(self, ops, device, name):
        path = f"{MODULES_ROOT}sound_generators/{name}"
        await ops.delete_remote_path(path)
        await ops.create_remote_dir(path)

        assert device.commands == [
            f"rm -rf {shlex.quote(path)}",
            f"mkdir -p {shlex.quote(path)}",
        ]
        for command in device.commands:
            # One argument: the whole path, unexpanded
            assert shlex.split(command)[-1] == path


# ── Installed state ───────────────────────────────────────────────


class TestInstalledState:
    @pytest.mark.asyncio
    async def test_fresh_device(self, ops, device):
        device.responses = {"test -d ": CommandResult(stdout="not_installed\n")}
        state = await ops.check_core_installation()
        assert state.installed is False
        assert state.core is None
        assert state.modules == []
        assert len(device.calls) == 1

    @pytest.mark.asyncio
    async def test_core_version(self, ops, device):
        device.responses = {
            "test -d ": CommandResult(stdout="installed\n"),
            f"cat {INSTALL_ROOT}/version.txt": CommandResult(stdout="1.2.0\n"),
        }
        state = await ops.check_core_installation()
        assert state.to_dict() == {"installed": True, "core": "1.2.0", "modules": []}

    @pytest.mark.asyncio
    async def test_empty_version_file(self, ops, device):
        device.responses = {
            "test -d ": CommandResult(stdout="installed\n"),
            f"cat {INSTALL_ROOT}/version.txt": CommandResult(stdout="\n"),
        }
        assert (await ops.check_core_installation()).core is None

    @pytest.mark.asyncio
    async def test_modules_with_bad_manifests_skipped(self, ops, device):
        braids = f"{MODULES_ROOT}sound_generators/braids/module.json"
        broken = f"{MODULES_ROOT}audio_fx/broken/module.json"
        partial = f"{MODULES_ROOT}utilities/partial/module.json"
        arp = f"{MODULES_ROOT}midi_fx/arp/module.json"
        device.responses = {
            "test -d ": CommandResult(stdout="installed\n"),
            f"cat {INSTALL_ROOT}/version.txt": CommandResult(stdout="1.2.0\n"),
            "find ": CommandResult(stdout="\n".join([braids, broken, partial, arp]) + "\n"),
            f"cat {braids}": CommandResult(stdout=json.dumps({
                "id": "braids", "name": "Braids", "version": "0.3.0",
                "component_type": "sound_generator",
            })),
            f"cat {broken}": CommandResult(stdout="{not json"),
            f"cat {partial}": CommandResult(stdout=json.dumps({"id": "partial"})),
            f"cat {arp}": CommandResult(stdout=json.dumps({"id": "arp", "version": "1.0"})),
        }
        progress: list[str] = []
        state = await ops.check_installed_versions(progress.append)

        assert state.installed
        assert state.core == "1.2.0"
        assert [(m.id, m.version) for m in state.modules] == [("braids", "0.3.0"), ("arp", "1.0")]
        arp_module = state.modules[1]
        assert arp_module.name == "arp"
        assert arp_module.component_type == "utility"
        assert progress[0] == "Checking core version..."
        assert progress[-1] == "Checking module 4 of 4..."

    @pytest.mark.asyncio
    async def test_no_modules(self, ops, device):
        device.responses = {
            "test -d ": CommandResult(stdout="installed\n"),
            f"cat {INSTALL_ROOT}/version.txt": CommandResult(stdout="1.0.0\n"),
            "find ": CommandResult(stdout="\n"),
        }
        assert (await ops.check_installed_versions()).modules == []


# ── Modules ───────────────────────────────────────────────────────


class TestModules:
    @pytest.mark.asyncio
    async def test_install_module(self, ops, device, tmp_path):
        tarball = tmp_path / "braids-module.tar.gz"
        tarball.write_bytes(b"\x1f\x8b")
        await ops.install_module("braids", tarball, "sound_generator")

        assert device.uploads == [
            ("ableton", str(tarball), f"{INSTALL_ROOT}/braids-module.tar.gz"),
        ]
        assert device.commands == [
            f"cd {INSTALL_ROOT} && mkdir -p modules/sound_generators && "
            "tar -xzf braids-module.tar.gz -C modules/sound_generators/ && "
            "rm braids-module.tar.gz"
        ]

    @pytest.mark.asyncio
    async def test_install_unknown_type_goes_to_other(self, ops, device, tmp_path):
        await ops.install_module("thing", tmp_path / "thing.tar.gz", "visualizer")
        assert "modules/other/" in device.commands[0]

    @pytest.mark.asyncio
    async def test_remove_module(self, ops, device):
        path = f"{MODULES_ROOT}audio_fx/delay"
        device.responses = {"test -d ": CommandResult(stdout="exists\n")}
        await ops.remove_module("delay", "audio_fx")
        assert device.commands == [
            f'test -d {path} && echo "exists" || echo "not_found"',
            f"rm -rf {path}",
        ]

    @pytest.mark.asyncio
    async def test_remove_missing_module(self, ops, device):
        device.responses = {"test -d ": CommandResult(stdout="not_found\n")}
        with pytest.raises(ModuleNotFoundOnDevice):
            await ops.remove_module("delay", "audio_fx")
        assert not any(c.startswith("rm ") for c in device.commands)


# ── Assets ────────────────────────────────────────────────────────


class TestAssets:
    def test_parse_ls_output(self):
        entries = parse_ls_output(LS_OUTPUT)
        assert [e.name for e in entries] == ["Banks", "presets", "a sample.wav", "b-sample.wav"]
        assert entries[0].is_directory
        assert not entries[2].is_directory
        assert entries[2].size == 512

    @pytest.mark.asyncio
    async def test_list_remote_dir(self, ops, device):
        path = f"{MODULES_ROOT}sound_generators/braids"
        device.responses = {f"ls -lA {path}": CommandResult(stdout=LS_OUTPUT)}
        entries = await ops.list_remote_dir(path + "/")
        assert device.commands[0] == f"mkdir -p {path}"
        assert len(entries) == 4

    @pytest.mark.asyncio
    async def test_create_and_delete(self, ops, device):
        path = f"{MODULES_ROOT}sound_generators/braids/samples"
        await ops.create_remote_dir(path)
        await ops.delete_remote_path(path)
        assert device.commands == [f"mkdir -p {path}", f"rm -rf {path}"]

    @pytest.mark.asyncio
    async def test_upload_assets_recursive(self, ops, device, tmp_path):
        remote = f"{MODULES_ROOT}sound_generators/braids"
        single = tmp_path / "kick.wav"
        single.write_bytes(b"RIFF")
        folder = tmp_path / "kit"
        (folder / "sub").mkdir(parents=True)
        (folder / "snare.wav").write_bytes(b"RIFF")
        (folder / "sub" / "hat.wav").write_bytes(b"RIFF")

        results = await ops.upload_assets([single, folder], remote)

        assert [r.file for r in results] == ["kick.wav", "snare.wav", "hat.wav", "sub/", "kit/"]
        assert all(r.success for r in results)
        assert [u[2] for u in device.uploads] == [
            f"{remote}/kick.wav",
            f"{remote}/kit/snare.wav",
            f"{remote}/kit/sub/hat.wav",
        ]
        assert f"mkdir -p {remote}/kit/sub" in device.commands

    @pytest.mark.asyncio
    async def test_upload_failure_reported_per_file(self, ops, device, tmp_path):
        (tmp_path / "a.wav").write_bytes(b"RIFF")
        device.upload_error = OSError("No space left on device")
        results = await ops.upload_assets([tmp_path / "a.wav"], f"{MODULES_ROOT}x")
        assert results[0].success is False
        assert "No space left" in results[0].error


# ── Maintenance ───────────────────────────────────────────────────


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_clean_device_tmp(self, ops, device):
        free = iter(["1000\n", "11240\n"])

        class DfDevice(MockSSHTransport):
            async def run(self, target, command, timeout):
                if command == FREE_SPACE_COMMAND:
                    self.calls.append((target.user, command))
                    return CommandResult(stdout=next(free))
                return await super().run(target, command, timeout)

        fake = DfDevice(default=CommandResult())
        ops.executor.transports = [fake]
        result = await ops.clean_device_tmp()

        assert result == {"success": True, "freed_mb": "10.0"}
        assert fake.commands == [FREE_SPACE_COMMAND, *DEVICE_CLEANUP_COMMANDS, FREE_SPACE_COMMAND]
        assert {user for user, _ in fake.calls} == {"root"}

    @pytest.mark.asyncio
    async def test_clean_device_tmp_is_best_effort(self, ops):
        ops.executor.transports = [MockSSHTransport()]
        assert await ops.clean_device_tmp() == {"success": True, "freed_mb": "0"}

    @pytest.mark.asyncio
    async def test_fix_permissions(self, ops, device):
        await ops.fix_permissions()
        assert device.calls[0] == ("root", f"chown -R ableton:ableton {INSTALL_ROOT}/")
        assert device.calls[1] == ("root", f"chmod u+s {INSTALL_ROOT}/move-anything-shim.so")
        assert device.calls[2][1].startswith("chmod +x ")
        assert len(device.calls) == 3

    @pytest.mark.asyncio
    async def test_screen_reader(self, ops, device):
        device.responses = {"cat ": CommandResult(stdout="1\n")}
        assert await ops.get_screen_reader_status() is True

        result = await ops.set_screen_reader_state(False)
        assert result["enabled"] is False
        assert "disabled" in result["message"]
        assert f'echo "0" > {INSTALL_ROOT}/config/screen_reader_state.txt' in device.commands
        assert device.calls[-1] == ("root", "killall move-anything 2>/dev/null || true")

    @pytest.mark.asyncio
    async def test_screen_reader_unreadable(self, ops):
        ops.executor.transports = [MockSSHTransport()]
        assert await ops.get_screen_reader_status() is False

    @pytest.mark.asyncio
    async def test_uninstall(self, ops, device):
        device.responses = {
            "if [ -f /opt/move/MoveOriginal ]": CommandResult(stdout="restored\n"),
            "reboot": CommandResult(stderr="Connection closed by remote host", returncode=255),
        }
        result = await ops.uninstall()

        assert result["success"] is True
        assert "uninstalled" in result["message"]
        assert {user for user, _ in device.calls} == {"root"}
        assert device.commands[1] == "rm -f /usr/lib/move-anything-shim.so"
        assert device.commands[2] == f"rm -rf {INSTALL_ROOT}"
        assert device.commands[-1] == "reboot"


# ── Core install ──────────────────────────────────────────────────


class TestInstallCore:
    @pytest.fixture()
    def tarball(self, tmp_path):
        path = tmp_path / "download" / "move-anything.tar.gz"
        path.parent.mkdir()
        path.write_bytes(b"\x1f\x8b core")
        return path

    @pytest.fixture()
    def fake_bash(self, monkeypatch):
        runs = []

        async def _run_process(argv, timeout, cwd=None, merge_stderr=False):
            scripts = Path(cwd)
            runs.append({
                "argv": argv,
                "cwd": scripts,
                "timeout": timeout,
                "merge_stderr": merge_stderr,
                "script": (scripts / "install.sh").read_text(),
                "executable": os.access(scripts / "install.sh", os.X_OK),
                "tarball": (scripts.parent / "move-anything.tar.gz").read_bytes(),
            })
            return CommandResult(stdout="Installed!\n")

        monkeypatch.setattr(operations_module, "run_process", _run_process)
        return runs

    @pytest.mark.asyncio
    async def test_install(self, ops, device, tarball, fake_bash, config):
        ops.find_bash = lambda: "/bin/bash"
        await ops.install_core(tarball, ["--enable-screen-reader"])

        run = fake_bash[0]
        assert run["argv"] == [
            "/bin/bash", "-c",
            "./install.sh local --skip-confirmation --skip-modules --enable-screen-reader < /dev/null",
        ]
        assert run["cwd"].name == "scripts"
        assert run["timeout"] == config.install_timeout
        assert run["merge_stderr"] is True
        assert "move.local" not in run["script"]
        assert run["script"].count("movedevice") == 2
        assert run["tarball"] == b"\x1f\x8b core"
        assert not run["cwd"].parent.exists()

        ssh_config = config.ssh_config_path.read_text()
        assert "Host movedevice" in ssh_config
        assert "HostName 192.168.1.20" in ssh_config
        assert device.commands[:len(DEVICE_CLEANUP_COMMANDS)] == list(DEVICE_CLEANUP_COMMANDS)

    @pytest.mark.asyncio
    async def test_cleanup_retried_as_root(self, ops, tarball, fake_bash):
        ops.find_bash = lambda: "/bin/bash"
        fake = MockSSHTransport(rejected_users=("ableton",))
        ops.executor.transports = [fake]
        await ops.install_core(tarball)
        assert fake.calls[:2] == [
            ("ableton", DEVICE_CLEANUP_COMMANDS[0]),
            ("root", DEVICE_CLEANUP_COMMANDS[0]),
        ]

    @pytest.mark.asyncio
    async def test_script_failure(self, ops, tarball, monkeypatch):
        ops.find_bash = lambda: "/bin/bash"
        staged = []

        async def _failing(argv, timeout, cwd=None, merge_stderr=False):
            staged.append(Path(cwd).parent)
            return CommandResult(stdout="Error: No space left on device\n", returncode=1)

        monkeypatch.setattr(operations_module, "run_process", _failing)
        with pytest.raises(InstallScriptError) as excinfo:
            await ops.install_core(tarball)
        assert excinfo.value.exit_status == 1
        assert "No space left" in str(excinfo.value)
        assert not staged[0].exists()

    @pytest.mark.asyncio
    async def test_requires_address(self, ops, tarball, fake_bash):
        ops.session.forget_address()
        with pytest.raises(AddressRequiredError):
            await ops.install_core(tarball)
        assert fake_bash == []

    @pytest.mark.asyncio
    async def test_windows_requires_git_bash(self, ops, tarball, fake_bash):
        ops.platform = "win32"
        ops.find_bash = lambda: None
        with pytest.raises(LocalToolMissingError, match="Git Bash"):
            await ops.install_core(tarball)
        assert ops.check_git_bash_available() == {"available": False, "path": None}

    def test_git_bash_not_needed_elsewhere(self, ops):
        assert ops.check_git_bash_available() == {"available": True}
