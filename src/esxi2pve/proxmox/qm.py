"""Typed wrappers for the Proxmox command-line tools (qm, pvesh, lvcreate).

Every method runs through an Executor, so the same calls work on the
Proxmox node itself or over SSH. Failures surface as ToolInvocationError;
callers decide which provisioning error they map to.
"""

from __future__ import annotations

import json
import re
from typing import Optional

from esxi2pve.config import RESERVED_VMID_MAX
from esxi2pve.errors import ToolInvocationError
from esxi2pve.gateway import Executor
from esxi2pve.models import VMSpec
from esxi2pve.utils.logging import get_logger
from esxi2pve.utils.subprocess import CommandResult

logger = get_logger(__name__)

# qm importdisk prints e.g. "Successfully imported disk as 'unused0:local-lvm:vm-150-disk-0'"
_IMPORTED_VOLUME = re.compile(r"unused\d+:([^'\"\s]+)")


class ProxmoxHost:
    """Commands against one Proxmox VE node."""

    def __init__(self, executor: Executor):
        self.executor = executor

    # ── Queries ──────────────────────────────────────────────────

    def vm_exists(self, vmid: int) -> bool:
        result = self.executor.run(["qm", "status", str(vmid)], check=False)
        return result.success

    def list_vmids(self) -> set[int]:
        """All VM and container IDs known to the cluster."""
        result = self.executor.run(
            ["pvesh", "get", "/cluster/resources", "--type", "vm", "--output-format", "json"]
        )
        try:
            resources = json.loads(result.stdout or "[]")
        except json.JSONDecodeError as e:
            raise ToolInvocationError(
                f"Cannot parse pvesh output: {e}", stderr=result.stdout.strip()[:200],
            ) from e
        return {int(r["vmid"]) for r in resources if isinstance(r, dict) and "vmid" in r}

    def next_free_vmid(self) -> int:
        return max(self.list_vmids() | {RESERVED_VMID_MAX}) + 1

    # ── VM lifecycle ─────────────────────────────────────────────

    def create_vm(self, vm: VMSpec) -> CommandResult:
        logger.info(
            f"Creating VM {vm.vmid} '{vm.name}' with {vm.firmware.proxmox_bios} firmware, "
            f"VLAN tag {vm.vlan_tag} and {vm.scsihw}"
        )
        return self.executor.run([
            "qm", "create", str(vm.vmid),
            "--name", vm.name,
            "--memory", str(vm.memory_mb),
            "--cores", str(vm.cores),
            "--net0", vm.net0,
            "--bios", vm.firmware.proxmox_bios,
            "--scsihw", vm.scsihw,
        ])

    def enable_agent(self, vmid: int) -> CommandResult:
        logger.info("Enabling QEMU Guest Agent...")
        return self.executor.run(["qm", "set", str(vmid), "--agent", "1"])

    # ── Disks ────────────────────────────────────────────────────

    def import_disk(self, vmid: int, image_path: str, storage: str, fmt: Optional[str] = None) -> Optional[str]:
        """Import an image into storage; returns the new volume ID if reported."""
        cmd = ["qm", "importdisk", str(vmid), image_path, storage]
        if fmt:
            cmd += ["--format", fmt]
        result = self.executor.run(cmd)
        match = _IMPORTED_VOLUME.search(result.stdout + "\n" + result.stderr)
        return match.group(1) if match else None

    def attach_disk(self, vmid: int, slot: str, volume: str, boot: bool = False) -> CommandResult:
        cmd = ["qm", "set", str(vmid), f"--{slot}", f"{volume},discard=on"]
        if boot:
            cmd += ["--boot", f"order={slot}"]
        return self.executor.run(cmd)

    def create_logical_volume(self, volume_group: str, name: str, size: str) -> CommandResult:
        return self.executor.run(["lvcreate", "-L", size, "-n", name, volume_group])

    def attach_efi_disk(self, vmid: int, efidisk: str) -> CommandResult:
        return self.executor.run(["qm", "set", str(vmid), "--efidisk0", efidisk])
