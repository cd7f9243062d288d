"""Migration pipeline orchestrator: coordinates all migration stages."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from esxi2pve.config import AppConfig, MigrationRequest
from esxi2pve.converter.disk import DiskPipeline, GuestAgentInstaller
from esxi2pve.errors import ArtifactDeclined, FirmwareDetectionFailed, MigrationError
from esxi2pve.gateway import ExternalToolGateway
from esxi2pve.models import DiskSpec, EfiVolumeSpec, ExportArtifact, FirmwareMode, VMSpec
from esxi2pve.pipeline.validator import RequestValidator
from esxi2pve.pipeline.workspace import Workspace
from esxi2pve.proxmox.provisioner import EfiDiskProvisioner, VMProvisioner
from esxi2pve.proxmox.qm import ProxmoxHost
from esxi2pve.utils.logging import get_logger
from esxi2pve.vmware.firmware import FirmwareResolver

logger = get_logger(__name__)


class ArtifactAction(str, Enum):
    OVERWRITE = "overwrite"
    REUSE = "reuse"
    ABORT = "abort"


@dataclass
class MigrationResult:
    """Result of a migration execution."""
    success: bool
    migration_id: str
    vm_name: str
    vmid: int
    duration: str = ""
    failed_stage: Optional[str] = None
    error: Optional[MigrationError] = None
    completed_stages: list[str] = field(default_factory=list)
    firmware: Optional[FirmwareMode] = None
    volumes: list[str] = field(default_factory=list)
    efi_volume: Optional[str] = None


@dataclass
class RunState:
    """Artifacts threaded from one stage to the next."""
    migration_id: str
    workspace: Workspace
    gateway: ExternalToolGateway
    artifact: Optional[ExportArtifact] = None
    disks: list[DiskSpec] = field(default_factory=list)
    firmware: Optional[FirmwareMode] = None
    vm: Optional[VMSpec] = None
    volumes: list[str] = field(default_factory=list)
    efi: Optional[EfiVolumeSpec] = None
    fresh_export: bool = False
    completed_stages: list[str] = field(default_factory=list)


class MigrationPipeline:
    """Orchestrates the full ESXi → Proxmox migration of one VM.

    Stages (executed in order):
    1. validate            — VM ID well-formed, above 99 and unused
    2. export              — ovftool export to <work_dir>/<vm>.ova (or reuse)
    3. extract             — unpack OVA, locate descriptor and disks
    4. convert             — qemu-img VMDK → raw/qcow2, one per disk
    5. resolve_firmware    — BIOS or UEFI from the descriptor / .vmx
    6. install_guest_agent — virt-customize qemu-guest-agent into disk 0
    7. create_vm           — qm create + agent enable
    8. attach_disks        — qm importdisk + attach, disk 0 is the boot disk
    9. provision_efi       — EFI variable-store volume, UEFI only

    A failed stage stops the run. The run directory is removed on every
    exit path once it has been created; nothing on Proxmox is rolled back.
    """

    STAGES = [
        "validate",
        "export",
        "extract",
        "convert",
        "resolve_firmware",
        "install_guest_agent",
        "create_vm",
        "attach_disks",
        "provision_efi",
    ]

    def __init__(
        self,
        config: AppConfig,
        gateway: Optional[ExternalToolGateway] = None,
        choose_artifact_action: Optional[Callable[[Path], ArtifactAction]] = None,
    ):
        self.config = config
        self._gateway = gateway
        self._choose_artifact_action = choose_artifact_action
        self.firmware_resolver = FirmwareResolver()

    def run(self, request: MigrationRequest) -> MigrationResult:
        """Execute a full migration for a single VM."""
        migration_id = str(uuid.uuid4())[:8]
        start_time = time.time()
        gateway = self._gateway or ExternalToolGateway.for_request(self.config, request)
        workspace = Workspace(self.config.conversion.work_dir, request.vm_name, migration_id)
        state = RunState(migration_id=migration_id, workspace=workspace, gateway=gateway)

        logger.info(f"[bold]Starting migration {migration_id}[/bold]: "
                    f"{request.vm_name} → VM {request.vmid} on {request.storage}")

        try:
            # Validation runs before the workspace exists: nothing to clean up.
            error = self._run_stages(["validate"], request, state)
            if error is None:
                with workspace:
                    try:
                        error = self._run_stages(self.STAGES[1:], request, state)
                    finally:
                        self._cleanup(state)
        finally:
            if self._gateway is None:
                gateway.close()

        elapsed = time.time() - start_time
        result = MigrationResult(
            success=error is None,
            migration_id=migration_id,
            vm_name=request.vm_name,
            vmid=request.vmid,
            duration=f"{elapsed:.0f}s",
            failed_stage=error.stage if error else None,
            error=error,
            completed_stages=list(state.completed_stages),
            firmware=state.firmware,
            volumes=list(state.volumes),
            efi_volume=state.efi.name if state.efi else None,
        )
        if result.success:
            logger.info(f"[bold green]Migration {migration_id} complete in {elapsed:.0f}s[/bold green]")
        return result

    def dry_run(self, request: MigrationRequest) -> None:
        """Log what a migration would do without executing any stage."""
        logger.info(f"[yellow]DRY RUN for VM '{request.vm_name}'[/yellow]")
        logger.info(f"Target: VM {request.vmid} on storage {request.storage}, VLAN {request.vlan_tag}")
        where = request.destination.host if request.destination else "this node"
        logger.info(f"Destination: {where}")
        logger.info("Stages that would execute:")
        for i, stage in enumerate(self.STAGES, 1):
            note = " [dim](UEFI only)[/dim]" if stage == "provision_efi" else ""
            logger.info(f"  {i}. {stage}{note}")

    def _run_stages(self, stages: list[str], request: MigrationRequest, state: RunState) -> Optional[MigrationError]:
        for stage_name in stages:
            logger.info(f"[cyan]▶ Stage: {stage_name}[/cyan]")
            try:
                self._execute_stage(stage_name, request, state)
            except MigrationError as e:
                e.stage = stage_name
                logger.error(f"[red]✗ Stage {stage_name} failed: {e.message}[/red]")
                return e
            except Exception as e:
                err = MigrationError(f"Unexpected error: {e}", stage=stage_name)
                err.__cause__ = e
                logger.exception(f"[red]✗ Stage {stage_name} failed unexpectedly[/red]")
                return err
            state.completed_stages.append(stage_name)
            logger.info(f"[green]✓ Stage {stage_name} complete[/green]")
        return None

    def _execute_stage(self, stage: str, request: MigrationRequest, state: RunState) -> None:
        handler = getattr(self, f"_stage_{stage}", None)
        if handler is None:
            raise NotImplementedError(f"Stage '{stage}' not implemented")
        handler(request, state)

    def _cleanup(self, state: RunState) -> None:
        """Remove transient artifacts; runs on success and failure alike."""
        try:
            state.gateway.destination.cleanup_staging()
        except Exception as e:
            logger.warning(f"Remote staging cleanup failed: {e}")
        finally:
            # Only an export started by this run is ours to discard.
            if state.fresh_export and not self.config.migration.keep_artifact:
                state.workspace.discard_artifact()

    def _disk_pipeline(self, state: RunState) -> DiskPipeline:
        return DiskPipeline(state.gateway.local, self.config.conversion, self.config.migration.disk_policy)

    # ─── Stage implementations ───────────────────────────────────────

    def _stage_validate(self, request: MigrationRequest, state: RunState) -> None:
        """Reject bad or taken VM IDs before anything is exported."""
        report = RequestValidator().validate(request, ProxmoxHost(state.gateway.destination))
        for check in report.checks:
            logger.debug(f"  {'✅' if check.passed else '❌'} {check.name}: {check.message}")
        report.raise_for_failures()

    def _stage_export(self, request: MigrationRequest, state: RunState) -> None:
        archive = state.workspace.artifact_path
        if archive.exists():
            action = self._artifact_action(archive)
            if action is ArtifactAction.REUSE:
                logger.info(f"Re-using existing export {archive}")
                state.artifact = ExportArtifact(archive=archive, reused=True)
                return
            if action is ArtifactAction.ABORT:
                raise ArtifactDeclined(f"Export cancelled: {archive} already exists")
            logger.info(f"Overwriting existing export {archive}")
            archive.unlink()

        state.fresh_export = True
        state.artifact = state.gateway.export(request.vm_name, request.source, archive)

    def _artifact_action(self, archive: Path) -> ArtifactAction:
        policy = self.config.migration.existing_artifact
        if policy != "ask":
            return ArtifactAction(policy)
        if self._choose_artifact_action is None:
            return ArtifactAction.OVERWRITE
        return self._choose_artifact_action(archive)

    def _stage_extract(self, request: MigrationRequest, state: RunState) -> None:
        pipeline = self._disk_pipeline(state)
        extract_dir = state.workspace.run_dir / "extract"
        pipeline.extract(state.artifact, extract_dir)
        state.artifact.disk_images = pipeline.discover_disks(extract_dir, request.vm_name)
        state.disks = pipeline.plan(state.artifact.disk_images, state.workspace.run_dir / "converted")

    def _stage_convert(self, request: MigrationRequest, state: RunState) -> None:
        state.disks = self._disk_pipeline(state).convert(state.disks)

    def _stage_resolve_firmware(self, request: MigrationRequest, state: RunState) -> None:
        try:
            if self.config.migration.firmware_source == "vmx":
                state.firmware = self.firmware_resolver.resolve_remote(
                    state.gateway, request.source, request.vm_name,
                )
            else:
                state.firmware = self.firmware_resolver.resolve(state.artifact.descriptor)
        except FirmwareDetectionFailed as e:
            if self.config.migration.strict_firmware:
                raise
            logger.warning(f"{e.message}; assuming BIOS (strict_firmware disabled)")
            state.firmware = FirmwareMode.BIOS

    def _stage_install_guest_agent(self, request: MigrationRequest, state: RunState) -> None:
        installer = GuestAgentInstaller(state.gateway.local, self.config.conversion.guest_agent_package)
        installer.install(state.disks[0].target)

    def _stage_create_vm(self, request: MigrationRequest, state: RunState) -> None:
        state.vm = VMSpec(
            vmid=request.vmid,
            name=request.vm_name,
            storage=request.storage,
            memory_mb=request.memory_mb,
            cores=request.cores,
            bridge=self.config.proxmox.bridge,
            vlan_tag=request.vlan_tag,
            firmware=state.firmware,
            disks=list(state.disks),
        )
        self._vm_provisioner(state).create(state.vm)

    def _stage_attach_disks(self, request: MigrationRequest, state: RunState) -> None:
        state.volumes = self._vm_provisioner(state).attach_disks(state.vm)

    def _stage_provision_efi(self, request: MigrationRequest, state: RunState) -> None:
        provisioner = EfiDiskProvisioner(
            state.gateway.destination,
            self.config.proxmox.volume_group,
            self.config.proxmox.efi_storage,
        )
        state.efi = provisioner.provision_if_needed(state.firmware, state.vm)

    def _vm_provisioner(self, state: RunState) -> VMProvisioner:
        fmt = "qcow2" if self.config.conversion.disk_format == "qcow2" else None
        return VMProvisioner(state.gateway.destination, import_format=fmt)
