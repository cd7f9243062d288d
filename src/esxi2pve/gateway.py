"""Execution boundary for every external tool the migration shells out to.

Commands run either locally (subprocess) or on the Proxmox node over SSH.
Both paths share the Executor interface so the stages above never care
where a command actually runs.
"""

from __future__ import annotations

import posixpath
import shlex
from pathlib import Path
from typing import Optional
from urllib.parse import quote

from esxi2pve.config import AppConfig, ESXiConfig, MigrationRequest
from esxi2pve.errors import ExportFailed, RemoteCommandFailed, ToolInvocationError, ToolTimeout
from esxi2pve.models import ExportArtifact
from esxi2pve.remote.ssh import SSHSession
from esxi2pve.utils.logging import get_logger
from esxi2pve.utils.subprocess import CommandResult, run_command

logger = get_logger(__name__)


class Executor:
    """Runs commands somewhere. Subclasses decide where."""

    remote = False

    def __init__(self, timeout: float | None = None):
        self.timeout = timeout

    def run(
        self,
        cmd: list[str],
        check: bool = True,
        timeout: float | None = None,
        input: str | None = None,
    ) -> CommandResult:
        raise NotImplementedError

    def read_file(self, path: str) -> str:
        raise NotImplementedError

    def stage_file(self, local_path: Path) -> str:
        """Make a local file reachable by commands run through this executor."""
        return str(local_path)

    def cleanup_staging(self) -> None:
        pass

    def close(self) -> None:
        pass


class LocalExecutor(Executor):
    """Runs commands on this machine."""

    def run(self, cmd, check=True, timeout=None, input=None) -> CommandResult:
        return run_command(cmd, check=check, timeout=timeout or self.timeout, input=input)

    def read_file(self, path: str) -> str:
        return Path(path).read_text(errors="replace")


class RemoteExecutor(Executor):
    """Runs commands on a remote host through an SSH session.

    Files handed to stage_file() are uploaded into ``staging_dir`` and
    removed again by cleanup_staging().
    """

    remote = True

    def __init__(self, session: SSHSession, staging_dir: str, timeout: float | None = None):
        super().__init__(timeout)
        self.session = session
        self.staging_dir = staging_dir
        self._staged = False

    def run(self, cmd, check=True, timeout=None, input=None) -> CommandResult:
        return self.session.run(cmd, check=check, timeout=timeout or self.timeout, input=input)

    def read_file(self, path: str) -> str:
        return self.session.read_file(path)

    def stage_file(self, local_path: Path) -> str:
        if not self._staged:
            self.run(["mkdir", "-p", self.staging_dir])
            self._staged = True
        remote_path = posixpath.join(self.staging_dir, local_path.name)
        self.session.upload(local_path, remote_path)
        return remote_path

    def cleanup_staging(self) -> None:
        if not self._staged:
            return
        logger.info(f"Cleaning remote staging directory {self.session.host}:{self.staging_dir}")
        self.run(["rm", "-rf", self.staging_dir])
        self._staged = False

    def close(self) -> None:
        self.session.close()


class ExternalToolGateway:
    """Thin wrapper over ovftool and the local/destination executors.

    ``local`` runs export, conversion and guest customisation.
    ``destination`` runs qm/lvcreate: the same local executor when the
    tool runs on the Proxmox node, an SSH executor otherwise.
    """

    def __init__(self, local: Executor, destination: Optional[Executor] = None):
        self.local = local
        self.destination = destination or local

    @classmethod
    def for_request(cls, config: AppConfig, request: MigrationRequest) -> "ExternalToolGateway":
        timeout = config.conversion.tool_timeout_seconds
        local = LocalExecutor(timeout)
        dest = request.destination
        if dest is None:
            return cls(local)
        session = SSHSession(dest.host, dest.username, dest.secret(), port=dest.ssh_port)
        staging = posixpath.join(str(dest.staging_dir), request.vm_name)
        return cls(local, RemoteExecutor(session, staging, timeout))

    @property
    def destination_is_remote(self) -> bool:
        return self.destination.remote

    def export(self, vm_name: str, credentials: ESXiConfig, destination_path: Path) -> ExportArtifact:
        """Export a VM from ESXi into a single OVA with ovftool.

        The password is fed through stdin so it never appears in argv.
        Authentication and network errors are indistinguishable here and
        both surface as ExportFailed.
        """
        destination_path.parent.mkdir(parents=True, exist_ok=True)
        locator = f"vi://{quote(credentials.username, safe='')}@{credentials.host}/{quote(vm_name)}"
        cmd = [
            "ovftool",
            "--sourceType=VI",
            "--acceptAllEulas",
            "--noSSLVerify",
            "--skipManifestCheck",
            "--diskMode=thin",
            f"--name={vm_name}",
            locator,
            str(destination_path),
        ]
        logger.info(f"Exporting '{vm_name}' from {credentials.host} → {destination_path}")
        try:
            self.local.run(cmd, input=credentials.secret() + "\n")
        except ToolTimeout:
            raise
        except ToolInvocationError as e:
            raise ExportFailed.wrap(f"ovftool export of '{vm_name}' failed", e) from e

        if not destination_path.exists():
            raise ExportFailed(f"ovftool reported success but {destination_path} was not created")
        return ExportArtifact(archive=destination_path)

    def run_remote(
        self,
        host: str,
        credentials: ESXiConfig,
        command: list[str] | str,
        timeout: float | None = None,
    ) -> CommandResult:
        """Run a one-off command on another host over SSH."""
        rendered = command if isinstance(command, str) else " ".join(shlex.quote(c) for c in command)
        with SSHSession(host, credentials.username, credentials.secret(), port=credentials.ssh_port) as ssh:
            try:
                return ssh.run(rendered, timeout=timeout or self.local.timeout)
            except ToolTimeout:
                raise
            except ToolInvocationError as e:
                if isinstance(e, RemoteCommandFailed):
                    raise
                raise RemoteCommandFailed.wrap(f"Command on {host} failed", e) from e

    def read_remote_file(self, host: str, credentials: ESXiConfig, path: str) -> str:
        with SSHSession(host, credentials.username, credentials.secret(), port=credentials.ssh_port) as ssh:
            return ssh.read_file(path)

    def close(self) -> None:
        if self.destination is not self.local:
            self.destination.close()
