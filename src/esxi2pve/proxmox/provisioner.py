"""VM and EFI-disk provisioning on the destination Proxmox node."""

from __future__ import annotations

from typing import Optional

from esxi2pve.errors import (
    DiskAttachFailed,
    DiskImportFailed,
    EfiDiskAttachFailed,
    EfiVolumeCreationFailed,
    GuestAgentEnableFailed,
    ToolInvocationError,
    ToolTimeout,
    VMCreateFailed,
)
from esxi2pve.gateway import Executor
from esxi2pve.models import EfiVolumeSpec, FirmwareMode, VMSpec, validate_disk_order
from esxi2pve.proxmox.qm import ProxmoxHost
from esxi2pve.utils.logging import get_logger

logger = get_logger(__name__)


class VMProvisioner:
    """Creates the VM object and attaches its disks in index order.

    There is no rollback: if an import or attach fails the VM is left
    in place, and the error names the VM ID so the operator can remove it.
    """

    def __init__(self, executor: Executor, import_format: Optional[str] = None):
        self.executor = executor
        self.host = ProxmoxHost(executor)
        self.import_format = import_format

    def create(self, vm: VMSpec) -> None:
        """Create the VM and enable guest-agent integration."""
        try:
            self.host.create_vm(vm)
        except ToolTimeout:
            raise
        except ToolInvocationError as e:
            raise VMCreateFailed(f"qm create {vm.vmid} failed", vmid=vm.vmid, stderr=e.stderr) from e

        if vm.agent:
            try:
                self.host.enable_agent(vm.vmid)
            except ToolTimeout:
                raise
            except ToolInvocationError as e:
                raise GuestAgentEnableFailed(
                    f"Enabling the guest agent on VM {vm.vmid} failed", vmid=vm.vmid, stderr=e.stderr,
                ) from e

    def attach_disks(self, vm: VMSpec) -> list[str]:
        """Import and attach every disk; returns the attached volume IDs."""
        validate_disk_order(vm.disks)
        volumes = []
        for disk in vm.disks:
            logger.info(f"Importing disk {disk.index} to {vm.storage} storage...")
            try:
                image = self.executor.stage_file(disk.target)
                volume = self.host.import_disk(vm.vmid, image, vm.storage, self.import_format)
            except ToolTimeout:
                raise
            except ToolInvocationError as e:
                raise DiskImportFailed(
                    f"Import of disk {disk.index} ({disk.target.name}) into {vm.storage} failed",
                    index=disk.index, vmid=vm.vmid, stderr=e.stderr,
                ) from e
            if volume is None:
                volume = f"{vm.storage}:vm-{vm.vmid}-disk-{disk.index}"
                logger.warning(f"Could not parse imported volume name, assuming {volume}")

            if disk.boot:
                logger.info(f"Attaching disk {disk.index} as {disk.slot} and setting it as the boot device...")
            else:
                logger.info(f"Attaching additional disk {disk.index} as {disk.slot}...")
            try:
                self.host.attach_disk(vm.vmid, disk.slot, volume, boot=disk.boot)
            except ToolTimeout:
                raise
            except ToolInvocationError as e:
                raise DiskAttachFailed(
                    f"Attaching {volume} as {disk.slot} failed",
                    index=disk.index, vmid=vm.vmid, stderr=e.stderr,
                ) from e
            volumes.append(volume)
        return volumes

    def create_and_attach(self, vm: VMSpec) -> list[str]:
        """Create the VM, enable the agent, then import and attach every disk."""
        self.create(vm)
        return self.attach_disks(vm)


class EfiDiskProvisioner:
    """Adds an EFI variable-store disk to UEFI VMs.

    The volume is a fixed 4 MiB logical volume in the configured volume
    group, attached as efidisk0 with pre-enrolled keys.
    """

    def __init__(self, executor: Executor, volume_group: str, storage: Optional[str] = None):
        self.host = ProxmoxHost(executor)
        self.volume_group = volume_group
        self.storage = storage

    def provision_if_needed(self, firmware: FirmwareMode, vm: VMSpec) -> Optional[EfiVolumeSpec]:
        if firmware is not FirmwareMode.UEFI:
            logger.info("Skipping EFI disk creation for non-UEFI firmware type.")
            return None

        efi = EfiVolumeSpec.for_vm(vm, self.volume_group, self.storage)

        logger.info(f"Creating EFI disk as logical volume {efi.name} in volume group {efi.volume_group}...")
        try:
            self.host.create_logical_volume(efi.volume_group, efi.name, efi.size)
        except ToolTimeout:
            raise
        except ToolInvocationError as e:
            raise EfiVolumeCreationFailed(
                f"Failed to create EFI logical volume {efi.volume_group}/{efi.name}",
                volume=efi.name, vmid=vm.vmid, stderr=e.stderr,
            ) from e

        logger.info("Attaching EFI disk to VM...")
        try:
            self.host.attach_efi_disk(vm.vmid, efi.efidisk0)
        except ToolTimeout:
            raise
        except ToolInvocationError as e:
            raise EfiDiskAttachFailed(
                f"Failed to add EFI disk {efi.storage}:{efi.name} to VM {vm.vmid}",
                volume=efi.name, vmid=vm.vmid, stderr=e.stderr,
            ) from e
        return efi
