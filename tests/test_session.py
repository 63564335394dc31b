"""Tests for the device session and ~/.ssh/config handling."""

from __future__ import annotations

from move_installer.device.session import DeviceSession, is_ip_literal, normalize_address
from move_installer.device.ssh_config import (
    DEVICE_ALIAS,
    render_ssh_config,
    strip_host_blocks,
    write_ssh_config,
)


class TestAddressHelpers:
    def test_is_ip_literal(self):
        assert is_ip_literal("192.168.1.20")
        assert is_ip_literal("fe80::1")
        assert is_ip_literal("[fe80::1]")
        assert not is_ip_literal("move.local")
        assert not is_ip_literal("")

    def test_normalize_mapped_ipv4(self):
        assert normalize_address("::ffff:192.168.1.20") == "192.168.1.20"

    def test_normalize_brackets_ipv6(self):
        assert normalize_address("fe80::1") == "[fe80::1]"
        assert normalize_address("[fe80::1]") == "[fe80::1]"

    def test_hostname_untouched(self):
        assert normalize_address("move.local") == "move.local"


class TestDeviceSession:
    def test_defaults(self):
        session = DeviceSession()
        assert session.host == "move.local"
        assert session.base_url == "http://move.local"
        assert not session.is_ipv6

    def test_literal_ip_is_cached(self):
        session = DeviceSession()
        assert session.offer_candidate("192.168.1.20") == "192.168.1.20"
        assert session.base_url == "http://192.168.1.20"

    def test_hostname_does_not_override_cache(self):
        session = DeviceSession()
        session.offer_candidate("192.168.1.20")
        assert session.offer_candidate("move.local") == "192.168.1.20"
        assert session.host == "192.168.1.20"

    def test_different_ip_resets_cache(self):
        session = DeviceSession()
        session.offer_candidate("192.168.1.20")
        session.offer_candidate("192.168.1.21")
        assert session.resolved_address == "192.168.1.21"

    def test_ipv6(self):
        session = DeviceSession()
        session.offer_candidate("fe80::1")
        assert session.is_ipv6
        assert session.base_url == "http://[fe80::1]"
        assert session.ssh_host == "fe80::1"

    def test_cookie_persists(self, tmp_path):
        path = tmp_path / "cookie"
        DeviceSession(cookie_path=path).save_cookie("Ableton-Challenge-Response-Token=abc")

        fresh = DeviceSession(cookie_path=path)
        assert fresh.load_cookie() == "Ableton-Challenge-Response-Token=abc"
        assert fresh.auth_cookie == "Ableton-Challenge-Response-Token=abc"

    def test_missing_cookie(self, tmp_path):
        assert DeviceSession(cookie_path=tmp_path / "none").load_cookie() is None


class TestSshConfig:
    EXISTING = (
        "Host github.com\n"
        "    User git\n"
        "\n"
        "Host movedevice\n"
        "    HostName 10.0.0.9\n"
        "    User ableton\n"
        "\n"
        "Host move.local\n"
        "    HostName move.local\n"
        "Host other\n"
        "    HostName 1.2.3.4\n"
    )

    def test_strip_only_device_blocks(self):
        text = strip_host_blocks(self.EXISTING, {"move.local", DEVICE_ALIAS})
        assert "Host github.com" in text
        assert "Host other" in text
        assert "10.0.0.9" not in text
        assert "Host move.local" not in text

    def test_render_adds_fresh_blocks(self):
        text = render_ssh_config(self.EXISTING, "move.local", "192.168.1.20", "~/.ssh/move_key")
        assert text.count("Host movedevice") == 1
        assert text.count("Host move.local") == 1
        assert "HostName 192.168.1.20" in text
        assert "IdentityFile ~/.ssh/move_key" in text
        assert "10.0.0.9" not in text

    def test_ipv6_alias_unbracketed(self):
        text = render_ssh_config("", "move.local", "[fe80::1]", "~/.ssh/move_key")
        assert "HostName fe80::1\n" in text

    def test_no_alias_without_address(self):
        text = render_ssh_config("", "move.local", None, "~/.ssh/move_key")
        assert "Host movedevice" not in text

    def test_write_is_idempotent(self, tmp_path):
        path = tmp_path / ".ssh" / "config"
        write_ssh_config(path, "move.local", "192.168.1.20", "~/.ssh/move_key")
        first = path.read_text()
        write_ssh_config(path, "move.local", "192.168.1.20", "~/.ssh/move_key")
        assert path.read_text().count("Host movedevice") == 1
        assert path.read_text().strip() == first.strip()

    def test_identity_file_with_spaces_is_quoted(self):
        text = render_ssh_config("", "move.local", "192.168.1.20", "C:/Users/Jo Smith/.ssh/move_key")
        assert 'IdentityFile "C:/Users/Jo Smith/.ssh/move_key"\n' in text
