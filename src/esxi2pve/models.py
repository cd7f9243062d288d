"""Data model shared by the migration stages."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

EFI_VOLUME_SIZE = "4M"
EFI_TYPE = "4m"


class FirmwareMode(str, Enum):
    BIOS = "bios"
    UEFI = "uefi"

    @property
    def proxmox_bios(self) -> str:
        """Value for ``qm create --bios``."""
        return "ovmf" if self is FirmwareMode.UEFI else "seabios"


@dataclass
class ExportArtifact:
    """The OVA pulled off the source host and what was found inside it.

    ``descriptor`` and ``disk_images`` are filled in by the disk pipeline
    once the archive has been extracted.
    """
    archive: Path
    descriptor: Optional[Path] = None
    disk_images: list[Path] = field(default_factory=list)
    reused: bool = False


@dataclass(frozen=True)
class DiskSpec:
    """One disk of the migrated VM, in attachment order."""
    index: int
    source: Path
    target: Path

    @property
    def boot(self) -> bool:
        return self.index == 0

    @property
    def slot(self) -> str:
        return f"scsi{self.index}"


@dataclass
class VMSpec:
    """Everything needed to materialise the VM on Proxmox."""
    vmid: int
    name: str
    storage: str
    memory_mb: int = 2048
    cores: int = 2
    bridge: str = "vmbr0"
    vlan_tag: Optional[int] = None
    scsihw: str = "virtio-scsi-pci"
    agent: bool = True
    firmware: FirmwareMode = FirmwareMode.BIOS
    disks: list[DiskSpec] = field(default_factory=list)

    @property
    def net0(self) -> str:
        net = f"virtio,bridge={self.bridge}"
        if self.vlan_tag is not None:
            net += f",tag={self.vlan_tag}"
        return net


@dataclass(frozen=True)
class EfiVolumeSpec:
    """Logical volume holding the UEFI variable store."""
    volume_group: str
    name: str
    storage: str
    size: str = EFI_VOLUME_SIZE
    efitype: str = EFI_TYPE
    pre_enrolled_keys: bool = True

    @classmethod
    def for_vm(cls, vm: VMSpec, volume_group: str, storage: Optional[str] = None) -> "EfiVolumeSpec":
        # Next disk number after the data disks, so the name never collides
        # with a volume created by qm importdisk.
        return cls(
            volume_group=volume_group,
            name=f"vm-{vm.vmid}-disk-{len(vm.disks)}",
            storage=storage or vm.storage,
        )

    @property
    def efidisk0(self) -> str:
        keys = 1 if self.pre_enrolled_keys else 0
        return f"{self.storage}:{self.name},size={self.size},efitype={self.efitype},pre-enrolled-keys={keys}"


def validate_disk_order(disks: list[DiskSpec]) -> None:
    """Check indices are 0..n-1 in order with exactly one boot disk."""
    if [d.index for d in disks] != list(range(len(disks))):
        raise ValueError(f"Disk indices must be contiguous from 0, got {[d.index for d in disks]}")
    if sum(1 for d in disks if d.boot) != 1:
        raise ValueError("Exactly one boot disk is required")
