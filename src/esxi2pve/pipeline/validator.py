"""Pre-migration validation of the request and the local toolchain."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

from esxi2pve.config import RESERVED_VMID_MAX
from esxi2pve.errors import IdentifierConflict, InvalidIdentifier, MissingInput, ValidationError
from esxi2pve.utils.logging import get_logger
from esxi2pve.utils.subprocess import REQUIRED_TOOLS, verify_required_tools

if TYPE_CHECKING:
    from esxi2pve.config import MigrationRequest
    from esxi2pve.proxmox.qm import ProxmoxHost

logger = get_logger(__name__)


def parse_vmid(value: object) -> int:
    """Parse an operator-supplied VM ID; it must be an integer above 99."""
    if isinstance(value, bool):
        raise InvalidIdentifier(value)
    if isinstance(value, int):
        vmid = value
    else:
        text = str(value).strip()
        if not text.isdigit():
            raise InvalidIdentifier(value)
        vmid = int(text)
    if vmid <= RESERVED_VMID_MAX:
        raise InvalidIdentifier(value)
    return vmid


@dataclass
class ValidationCheck:
    """Result of a single validation check."""
    name: str
    passed: bool
    message: str
    error: Optional[ValidationError] = None


@dataclass
class ValidationReport:
    """Complete validation report for a migration request."""
    vm_name: str
    vmid: object
    checks: list[ValidationCheck] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(c.passed for c in self.checks)

    def raise_for_failures(self) -> None:
        """Raise the error of the first failed check, if any."""
        for check in self.checks:
            if not check.passed and check.error is not None:
                raise check.error


class RequestValidator:
    """Validates a request before anything touches ESXi or Proxmox.

    Order matters: the ID is only looked up on the destination once it
    is known to be well-formed.
    """

    def validate(self, request: "MigrationRequest", host: "ProxmoxHost") -> ValidationReport:
        report = ValidationReport(vm_name=request.vm_name, vmid=request.vmid)

        report.checks.append(self._check_required(request))
        id_check = self._check_vmid_format(request)
        report.checks.append(id_check)
        if id_check.passed:
            report.checks.append(self._check_vmid_free(request, host))
        return report

    def _check_required(self, request: "MigrationRequest") -> ValidationCheck:
        for name in ("vm_name", "storage"):
            if not str(getattr(request, name, "") or "").strip():
                return ValidationCheck("Required inputs", False, f"'{name}' is empty", MissingInput(name))
        if not request.source.host:
            return ValidationCheck(
                "Required inputs", False, "ESXi host is not configured", MissingInput("source.host"),
            )
        return ValidationCheck("Required inputs", True, "All required inputs present")

    def _check_vmid_format(self, request: "MigrationRequest") -> ValidationCheck:
        try:
            parse_vmid(request.vmid)
        except InvalidIdentifier as e:
            return ValidationCheck("VM ID", False, e.message, e)
        return ValidationCheck("VM ID", True, f"{request.vmid} is above the reserved range")

    def _check_vmid_free(self, request: "MigrationRequest", host: "ProxmoxHost") -> ValidationCheck:
        if host.vm_exists(request.vmid):
            err = IdentifierConflict(request.vmid)
            return ValidationCheck("VM ID free", False, err.message, err)
        return ValidationCheck("VM ID free", True, f"VM ID {request.vmid} is not in use")


@dataclass
class PreflightReport:
    """Availability of the external tools, by name."""
    tools: dict[str, bool]

    @property
    def missing(self) -> list[str]:
        return [name for name, ok in self.tools.items() if not ok]

    @property
    def passed(self) -> bool:
        return not self.missing


def preflight(remote_destination: bool = False) -> PreflightReport:
    """Check the local toolchain once, before orchestration starts."""
    tools = verify_required_tools(include_destination=not remote_destination)
    report = PreflightReport(tools)
    for name in report.missing:
        hint = REQUIRED_TOOLS.get(name, "Proxmox node tooling")
        logger.warning(f"Required tool '{name}' not found in PATH ({hint})")
    return report
