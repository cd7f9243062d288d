"""Subprocess wrapper with logging, timeouts and secret redaction.

Provides run_command() as the single entry point for calling local
tools like ovftool, qemu-img, virt-customize, qm and lvcreate.
"""

from __future__ import annotations

import os
import shlex
import shutil
import subprocess
from typing import Iterable, Optional

from esxi2pve.errors import ToolInvocationError, ToolNotFound, ToolTimeout
from esxi2pve.utils.logging import get_logger

logger = get_logger(__name__)


class CommandResult:
    """Result of a subprocess execution."""

    def __init__(self, returncode: int, stdout: str = "", stderr: str = ""):
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr

    @property
    def success(self) -> bool:
        return self.returncode == 0

    def __repr__(self) -> str:
        return f"CommandResult(returncode={self.returncode})"


def run_command(
    cmd: list[str],
    check: bool = True,
    timeout: float | None = None,
    input: str | None = None,
    env: dict[str, str] | None = None,
    cwd: str | None = None,
) -> CommandResult:
    """Run a system command, capturing its output.

    Args:
        cmd: Command and arguments as list
        check: Raise on non-zero exit code
        timeout: Command timeout in seconds (None waits forever)
        input: Text fed to the command's stdin (used for secrets)
        env: Additional environment variables (merged with current env)
        cwd: Working directory

    Returns:
        CommandResult with returncode, stdout, stderr

    Raises:
        ToolNotFound: If the executable is not in PATH
        ToolTimeout: If the command exceeds timeout (the process is killed)
        ToolInvocationError: If check=True and the command fails
    """
    full_env = os.environ.copy()
    if env:
        full_env.update(env)

    safe_cmd = " ".join(shlex.quote(a) for a in redact_sensitive(cmd))
    logger.debug(f"Running: {safe_cmd}")

    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            input=input,
            timeout=timeout,
            env=full_env,
            cwd=cwd,
        )
    except subprocess.TimeoutExpired:
        raise ToolTimeout(safe_cmd, timeout or 0)
    except FileNotFoundError:
        raise ToolNotFound(f"Command not found: {cmd[0]}")

    cmd_result = CommandResult(result.returncode, result.stdout or "", result.stderr or "")

    if check and not cmd_result.success:
        detail = cmd_result.stderr.strip() or cmd_result.stdout.strip()
        raise ToolInvocationError(
            f"Command failed with exit code {cmd_result.returncode} ({safe_cmd})",
            returncode=cmd_result.returncode,
            stderr=detail,
        )

    return cmd_result


def check_tool_available(tool: str) -> bool:
    """Check if a system tool is available in PATH."""
    return shutil.which(tool) is not None


REQUIRED_TOOLS = {
    "ovftool": "VM export from ESXi (VMware OVF Tool)",
    "qemu-img": "Disk conversion (VMDK → raw/qcow2)",
    "virt-customize": "Guest agent installation (libguestfs-tools)",
}

DESTINATION_TOOLS = {
    "qm": "Proxmox VM management",
    "pvesh": "Proxmox cluster queries",
    "lvcreate": "EFI volume creation (lvm2)",
}


def verify_required_tools(include_destination: bool = True) -> dict[str, bool]:
    """Verify required system tools are available.

    Destination tools are only checked when the migration runs on the
    Proxmox host itself; a remote destination is checked over SSH instead.

    Returns dict of {tool_name: is_available}.
    """
    tools = dict(REQUIRED_TOOLS)
    if include_destination:
        tools.update(DESTINATION_TOOLS)

    results = {}
    for tool, description in tools.items():
        available = check_tool_available(tool)
        results[tool] = available
        status = "✅" if available else "❌"
        logger.debug(f"  {status} {tool}: {description}")

    return results


def redact_sensitive(cmd: Iterable[str]) -> list[str]:
    """Redact passwords and secrets from command args for logging."""
    sensitive_keys = {"password", "pwd", "secret", "token"}
    cmd = list(cmd)
    redacted = []
    skip_next = False

    for i, arg in enumerate(cmd):
        if skip_next:
            redacted.append("[REDACTED]")
            skip_next = False
            continue

        lower = arg.lower()
        if any(k in lower for k in sensitive_keys) and "=" in arg:
            key, _ = arg.split("=", 1)
            redacted.append(f"{key}=[REDACTED]")
        elif any(k in lower for k in sensitive_keys) and i + 1 < len(cmd):
            redacted.append(arg)
            skip_next = True
        else:
            redacted.append(_redact_url_password(arg))

    return redacted


def _redact_url_password(arg: str) -> str:
    """Mask the password part of user:password@host locators."""
    if "://" not in arg or "@" not in arg:
        return arg
    scheme, rest = arg.split("://", 1)
    userinfo, sep, host = rest.partition("@")
    if ":" in userinfo:
        user = userinfo.split(":", 1)[0]
        return f"{scheme}://{user}:[REDACTED]{sep}{host}"
    return arg
