"""SSH transport for remote ESXi / Proxmox hosts, built on paramiko."""

from __future__ import annotations

import shlex
import socket
from pathlib import Path
from typing import Optional, Sequence, Union

import paramiko

from esxi2pve.errors import RemoteCommandFailed, ToolInvocationError, ToolTimeout
from esxi2pve.utils.logging import get_logger
from esxi2pve.utils.subprocess import CommandResult, redact_sensitive

logger = get_logger(__name__)

Command = Union[str, Sequence[str]]


def _render(command: Command) -> str:
    if isinstance(command, str):
        return command
    return " ".join(shlex.quote(str(a)) for a in command)


class SSHSession:
    """A single authenticated SSH connection.

    Host keys are accepted on first use (paramiko WarningPolicy); this
    mirrors how ESXi and fresh Proxmox nodes are typically reached with
    self-signed identities. Use as a context manager to guarantee close().
    """

    def __init__(
        self,
        host: str,
        username: str,
        password: Optional[str] = None,
        port: int = 22,
        connect_timeout: float = 15,
    ):
        self.host = host
        self.username = username
        self.port = port
        self._password = password
        self._connect_timeout = connect_timeout
        self._client: Optional[paramiko.SSHClient] = None

    def __enter__(self) -> "SSHSession":
        self.connect()
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    @property
    def client(self) -> paramiko.SSHClient:
        if self._client is None:
            self.connect()
        return self._client

    def connect(self) -> None:
        if self._client is not None:
            return
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.WarningPolicy())
        logger.debug(f"SSH connect {self.username}@{self.host}:{self.port}")
        try:
            client.connect(
                self.host,
                port=self.port,
                username=self.username,
                password=self._password,
                timeout=self._connect_timeout,
                allow_agent=True,
                look_for_keys=True,
            )
        except paramiko.AuthenticationException as e:
            client.close()
            raise RemoteCommandFailed(f"SSH authentication failed for {self.username}@{self.host}: {e}")
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise RemoteCommandFailed(f"SSH connection to {self.host} failed: {e}")
        self._client = client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def run(
        self,
        command: Command,
        check: bool = True,
        timeout: float | None = None,
        input: str | None = None,
    ) -> CommandResult:
        """Execute a command on the remote host.

        Raises:
            ToolTimeout: If output is not complete within timeout (channel is closed)
            ToolInvocationError: If check=True and the remote exit status is non-zero
            RemoteCommandFailed: If the SSH transport fails mid-command
        """
        rendered = _render(command)
        safe = rendered if isinstance(command, str) else " ".join(redact_sensitive(command))
        logger.debug(f"[{self.host}] Running: {safe}")

        stdout = None
        try:
            stdin, stdout, stderr = self.client.exec_command(rendered, timeout=timeout)
            if input is not None:
                stdin.write(input)
                stdin.channel.shutdown_write()
            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
            returncode = stdout.channel.recv_exit_status()
        except socket.timeout:
            if stdout is not None:
                stdout.channel.close()
            raise ToolTimeout(f"{self.host}: {safe}", timeout or 0)
        except (paramiko.SSHException, OSError) as e:
            raise RemoteCommandFailed(f"SSH command on {self.host} failed ({safe}): {e}") from e

        result = CommandResult(returncode, out, err)
        if check and not result.success:
            raise ToolInvocationError(
                f"Remote command failed with exit code {returncode} on {self.host} ({safe})",
                returncode=returncode,
                stderr=err.strip() or out.strip(),
            )
        return result

    def read_file(self, path: str) -> str:
        """Read a remote text file over SFTP."""
        try:
            with self.client.open_sftp() as sftp:
                with sftp.open(path, "r") as f:
                    return f.read().decode("utf-8", errors="replace")
        except (IOError, paramiko.SSHException) as e:
            raise RemoteCommandFailed(f"Cannot read {path} on {self.host}: {e}")

    def upload(self, local_path: Path, remote_path: str) -> None:
        """Copy a local file to the remote host over SFTP."""
        logger.info(f"Uploading {local_path.name} → {self.host}:{remote_path}")
        try:
            with self.client.open_sftp() as sftp:
                sftp.put(str(local_path), remote_path)
        except (IOError, paramiko.SSHException) as e:
            raise RemoteCommandFailed(f"Upload of {local_path.name} to {self.host} failed: {e}")
