"""Exception hierarchy for esxi2pve.

Every failure raised inside the pipeline derives from MigrationError.
The orchestrator stamps ``stage`` on the error before handing it back,
so a single exception carries the failing stage, the resource involved
and the underlying tool output.
"""

from __future__ import annotations

from typing import Optional


class MigrationError(Exception):
    """Base class for all migration failures."""

    def __init__(self, message: str, *, stage: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.stage = stage

    def __str__(self) -> str:
        if self.stage:
            return f"[{self.stage}] {self.message}"
        return self.message


# ─── Validation ──────────────────────────────────────────────────────

class ValidationError(MigrationError):
    """Request rejected before any external effect."""


class InvalidIdentifier(ValidationError):
    def __init__(self, vmid: object):
        super().__init__(f"Invalid VM ID '{vmid}': must be a number greater than 99")
        self.vmid = vmid


class IdentifierConflict(ValidationError):
    def __init__(self, vmid: int):
        super().__init__(f"VM with ID '{vmid}' already exists on the destination")
        self.vmid = vmid


class MissingInput(ValidationError):
    def __init__(self, field_name: str):
        super().__init__(f"Required input '{field_name}' is missing")
        self.field_name = field_name


# ─── External tools ──────────────────────────────────────────────────

class ToolInvocationError(MigrationError):
    """An external tool exited non-zero or could not be run."""

    def __init__(
        self,
        message: str,
        *,
        returncode: Optional[int] = None,
        stderr: str = "",
        stage: Optional[str] = None,
    ):
        if stderr:
            message = f"{message}: {stderr.strip()}"
        super().__init__(message, stage=stage)
        self.returncode = returncode
        self.stderr = stderr

    @classmethod
    def wrap(cls, message: str, cause: "ToolInvocationError", **kwargs) -> "ToolInvocationError":
        """Build a more specific error carrying the cause's diagnostics."""
        return cls(message, returncode=cause.returncode, stderr=cause.stderr, **kwargs)


class ToolNotFound(ToolInvocationError):
    pass


class ToolTimeout(ToolInvocationError):
    def __init__(self, command: str, timeout: float):
        super().__init__(f"Command timed out after {timeout:g}s: {command}")
        self.timeout = timeout


class ExportFailed(ToolInvocationError):
    pass


class ExtractionFailed(ToolInvocationError):
    pass


class DiskConversionFailed(ToolInvocationError):
    def __init__(self, message: str, *, disk: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.disk = disk


class GuestAgentInstallFailed(ToolInvocationError):
    pass


class RemoteCommandFailed(ToolInvocationError):
    pass


# ─── Discovery ───────────────────────────────────────────────────────

class DiscoveryError(MigrationError):
    """Expected files missing or ambiguous inside the export artifact."""


class NoDisksFound(DiscoveryError):
    pass


class AmbiguousDiskSet(DiscoveryError):
    pass


class DescriptorNotFound(DiscoveryError):
    pass


class FirmwareDetectionFailed(MigrationError):
    pass


class ArtifactDeclined(MigrationError):
    """Operator refused both overwriting and reusing an existing export."""


# ─── Provisioning ────────────────────────────────────────────────────

class ProvisionError(MigrationError):
    """A destination-side provisioning step failed.

    The VM may already exist at this point; it is not removed
    automatically and must be cleaned up by the operator.
    """

    def __init__(self, message: str, *, vmid: Optional[int] = None, stderr: str = "", **kwargs):
        if stderr:
            message = f"{message}: {stderr.strip()}"
        super().__init__(message, **kwargs)
        self.vmid = vmid
        self.stderr = stderr


class VMCreateFailed(ProvisionError):
    pass


class GuestAgentEnableFailed(ProvisionError):
    pass


class DiskImportFailed(ProvisionError):
    def __init__(self, message: str, *, index: int, **kwargs):
        super().__init__(message, **kwargs)
        self.index = index


class DiskAttachFailed(ProvisionError):
    def __init__(self, message: str, *, index: int, **kwargs):
        super().__init__(message, **kwargs)
        self.index = index


class EfiVolumeCreationFailed(ProvisionError):
    def __init__(self, message: str, *, volume: str, **kwargs):
        super().__init__(message, **kwargs)
        self.volume = volume


class EfiDiskAttachFailed(ProvisionError):
    def __init__(self, message: str, *, volume: str, **kwargs):
        super().__init__(message, **kwargs)
        self.volume = volume
