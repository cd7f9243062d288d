"""Tests for the subprocess wrapper and tool checks."""

import sys

import pytest


class TestRunCommand:
    def test_captures_output(self):
        from esxi2pve.utils.subprocess import run_command
        result = run_command([sys.executable, "-c", "print('hello')"])
        assert result.success
        assert result.stdout == "hello\n"

    def test_stdin(self):
        from esxi2pve.utils.subprocess import run_command
        result = run_command([sys.executable, "-c", "import sys; print(sys.stdin.read().upper())"], input="abc")
        assert result.stdout.strip() == "ABC"

    def test_failure_raises(self):
        from esxi2pve.errors import ToolInvocationError
        from esxi2pve.utils.subprocess import run_command
        with pytest.raises(ToolInvocationError) as exc_info:
            run_command([sys.executable, "-c", "import sys; sys.stderr.write('bad disk'); sys.exit(3)"])
        assert exc_info.value.returncode == 3
        assert exc_info.value.stderr == "bad disk"

    def test_failure_unchecked(self):
        from esxi2pve.utils.subprocess import run_command
        result = run_command([sys.executable, "-c", "raise SystemExit(2)"], check=False)
        assert result.returncode == 2
        assert not result.success

    def test_timeout(self):
        from esxi2pve.errors import ToolTimeout
        from esxi2pve.utils.subprocess import run_command
        with pytest.raises(ToolTimeout) as exc_info:
            run_command([sys.executable, "-c", "import time; time.sleep(10)"], timeout=0.5)
        assert exc_info.value.timeout == 0.5

    def test_missing_tool(self):
        from esxi2pve.errors import ToolNotFound
        from esxi2pve.utils.subprocess import run_command
        with pytest.raises(ToolNotFound, match="esxi2pve-no-such-tool"):
            run_command(["esxi2pve-no-such-tool", "--version"])


class TestRedaction:
    def test_key_value(self):
        from esxi2pve.utils.subprocess import redact_sensitive
        assert redact_sensitive(["tool", "--password=hunter2"]) == ["tool", "--password=[REDACTED]"]

    def test_following_arg(self):
        from esxi2pve.utils.subprocess import redact_sensitive
        assert redact_sensitive(["tool", "--token", "abc", "x"]) == ["tool", "--token", "[REDACTED]", "x"]

    def test_url_userinfo(self):
        from esxi2pve.utils.subprocess import redact_sensitive
        out = redact_sensitive(["ovftool", "vi://root:hunter2@esxi.local/web01"])
        assert out == ["ovftool", "vi://root:[REDACTED]@esxi.local/web01"]

    def test_url_without_password_untouched(self):
        from esxi2pve.utils.subprocess import redact_sensitive
        assert redact_sensitive(["vi://root@esxi.local/web01"]) == ["vi://root@esxi.local/web01"]


class TestToolChecks:
    def test_destination_tools_optional(self, monkeypatch):
        from esxi2pve.utils import subprocess as sp
        monkeypatch.setattr(sp, "check_tool_available", lambda tool: tool != "qm")

        remote = sp.verify_required_tools(include_destination=False)
        assert set(remote) == {"ovftool", "qemu-img", "virt-customize"}
        assert all(remote.values())

        local = sp.verify_required_tools()
        assert local["qm"] is False
        assert local["lvcreate"] is True

    def test_preflight_report(self, monkeypatch):
        from esxi2pve.pipeline import validator
        monkeypatch.setattr(
            validator, "verify_required_tools",
            lambda include_destination: {"ovftool": False, "qemu-img": True, "virt-customize": True},
        )
        report = validator.preflight(remote_destination=True)
        assert not report.passed
        assert report.missing == ["ovftool"]
