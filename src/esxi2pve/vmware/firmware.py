"""Firmware (BIOS / UEFI) detection from VMware configuration text.

Two sources carry the firmware declaration:

- the exported OVF descriptor: ``<vmw:Config vmw:key="firmware" vmw:value="efi"/>``
- the VM's .vmx on the ESXi datastore: ``firmware = "efi"``

Any declared value containing "efi" means UEFI; everything else,
including no declaration at all, is BIOS.
"""

from __future__ import annotations

import re
from pathlib import Path

from esxi2pve.config import ESXiConfig
from esxi2pve.errors import FirmwareDetectionFailed, MigrationError
from esxi2pve.models import FirmwareMode
from esxi2pve.utils.logging import get_logger

logger = get_logger(__name__)

EFI_MARKER = "efi"

_VMX_FIRMWARE = re.compile(r'^\s*firmware\s*=\s*"?([^"\r\n]*)"?', re.IGNORECASE | re.MULTILINE)
_OVF_FIRMWARE_TAG = re.compile(r'<[^>]*\bkey\s*=\s*"firmware"[^>]*>', re.IGNORECASE)
_OVF_VALUE = re.compile(r'\bvalue\s*=\s*"([^"]*)"', re.IGNORECASE)


def firmware_declarations(text: str) -> list[str]:
    """Return every firmware value declared in a .vmx or OVF document."""
    values = [m.group(1).strip() for m in _VMX_FIRMWARE.finditer(text)]
    for tag in _OVF_FIRMWARE_TAG.finditer(text):
        value = _OVF_VALUE.search(tag.group(0))
        if value:
            values.append(value.group(1).strip())
    return values


def classify(text: str) -> FirmwareMode:
    """Classify configuration text as BIOS or UEFI. Pure and total."""
    for value in firmware_declarations(text):
        if EFI_MARKER in value.lower():
            return FirmwareMode.UEFI
    return FirmwareMode.BIOS


class FirmwareResolver:
    """Reads a VM's configuration text and classifies its firmware mode."""

    def resolve(self, descriptor: Path) -> FirmwareMode:
        """Classify the firmware declared in a local descriptor file."""
        try:
            text = Path(descriptor).read_text(errors="replace")
        except OSError as e:
            raise FirmwareDetectionFailed(f"Cannot read descriptor {descriptor}: {e}") from e
        mode = classify(text)
        logger.info(f"Firmware from {Path(descriptor).name}: [bold]{mode.value.upper()}[/bold]")
        return mode

    def resolve_remote(self, gateway, source: ESXiConfig, vm_name: str) -> FirmwareMode:
        """Classify the firmware declared in the source VM's .vmx on ESXi."""
        path = self.vmx_path(source, vm_name)
        try:
            text = gateway.read_remote_file(source.host, source, path)
        except MigrationError as e:
            raise FirmwareDetectionFailed(f"Cannot read {path} on {source.host}: {e.message}") from e
        mode = classify(text)
        logger.info(f"Firmware from {source.host}:{path}: [bold]{mode.value.upper()}[/bold]")
        return mode

    @staticmethod
    def vmx_path(source: ESXiConfig, vm_name: str) -> str:
        return f"/vmfs/volumes/{source.datastore}/{vm_name}/{vm_name}.vmx"
