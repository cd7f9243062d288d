"""Configuration models for esxi2pve using Pydantic v2."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator

RESERVED_VMID_MAX = 99


def _resolve_secret(value: Optional[SecretStr], env_name: Optional[str]) -> Optional[SecretStr]:
    if value is None and env_name:
        env_val = os.environ.get(env_name)
        if env_val:
            return SecretStr(env_val)
    return value


class ESXiConfig(BaseModel):
    """ESXi source host connection configuration."""

    host: str = Field(..., description="ESXi hostname or IP")
    username: str = Field("root", description="ESXi username")
    password: Optional[SecretStr] = Field(None, description="ESXi password (prefer password_env)")
    password_env: Optional[str] = Field("ESXI_PASSWORD", description="Environment variable containing the password")
    datastore: str = Field("datastore", description="Datastore holding the VM's .vmx (remote firmware lookup)")
    ssh_port: int = Field(22, description="SSH port for the remote firmware lookup")

    @model_validator(mode="after")
    def resolve_password(self) -> "ESXiConfig":
        self.password = _resolve_secret(self.password, self.password_env)
        if self.password is None:
            raise ValueError("Either 'password' or 'password_env' (with matching env var) must be provided")
        return self

    def secret(self) -> str:
        return self.password.get_secret_value() if self.password else ""


class ProxmoxConfig(BaseModel):
    """Proxmox VE destination configuration.

    When ``host`` is unset the tool is assumed to run on the Proxmox node
    itself and every destination command is executed locally.
    """

    host: Optional[str] = Field(None, description="Proxmox hostname or IP (unset = local)")
    username: str = Field("root", description="SSH username on the Proxmox node")
    password: Optional[SecretStr] = Field(None)
    password_env: Optional[str] = Field("PVE_PASSWORD")
    ssh_port: int = Field(22)
    bridge: str = Field("vmbr0", description="Network bridge for net0")
    volume_group: str = Field(..., min_length=1, description="LVM volume group backing the EFI volume")
    efi_storage: Optional[str] = Field(None, description="Storage ID for the EFI disk (default: request storage)")
    staging_dir: Path = Field(Path("/var/vm-migration"), description="Remote upload directory for disk images")

    @model_validator(mode="after")
    def resolve_password(self) -> "ProxmoxConfig":
        self.password = _resolve_secret(self.password, self.password_env)
        if self.host and self.password is None:
            raise ValueError("A password is required for a remote Proxmox host (set 'password' or PVE_PASSWORD)")
        return self

    @property
    def is_remote(self) -> bool:
        return bool(self.host)

    def secret(self) -> str:
        return self.password.get_secret_value() if self.password else ""


class ConversionConfig(BaseModel):
    """Disk conversion settings."""

    work_dir: Path = Field(Path("/mnt/vm-migration"), description="Directory for export artifacts and temp files")
    disk_format: Literal["raw", "qcow2"] = Field("raw", description="Import format handed to qm importdisk")
    parallel_conversions: int = Field(1, ge=1, le=8, description="Max concurrent qemu-img conversions")
    tool_timeout_seconds: Optional[float] = Field(None, gt=0, description="Per-command timeout (None = wait)")
    guest_agent_package: str = Field("qemu-guest-agent", description="Package injected with virt-customize")


class MigrationSettings(BaseModel):
    """Global migration behavior settings."""

    disk_policy: Literal["multi", "single"] = Field(
        "multi", description="multi: attach every disk found; single: reject more than one"
    )
    strict_firmware: bool = Field(True, description="Abort when firmware cannot be detected instead of assuming BIOS")
    firmware_source: Literal["descriptor", "vmx"] = Field(
        "descriptor", description="Read firmware from the exported OVF or the source .vmx over SSH"
    )
    existing_artifact: Literal["ask", "overwrite", "reuse", "abort"] = Field(
        "ask", description="What to do when an export for the VM is already present"
    )
    keep_artifact: bool = Field(False, description="Keep the exported OVA after the run")


class AppConfig(BaseModel):
    """Root application configuration."""

    esxi: ESXiConfig
    proxmox: ProxmoxConfig
    conversion: ConversionConfig = ConversionConfig()
    migration: MigrationSettings = MigrationSettings()

    @classmethod
    def from_yaml(cls, path: str | Path) -> "AppConfig":
        """Load configuration from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls(**data)

    @classmethod
    def from_env_and_args(cls, **overrides) -> "AppConfig":
        """Build config from environment variables with CLI overrides."""
        base = {
            "esxi": {
                "host": os.environ.get("ESXI_HOST", ""),
                "username": os.environ.get("ESXI_USERNAME", "root"),
                "password_env": "ESXI_PASSWORD",
                "datastore": os.environ.get("ESXI_DATASTORE", "datastore"),
            },
            "proxmox": {
                "host": os.environ.get("PVE_HOST") or None,
                "username": os.environ.get("PVE_USERNAME", "root"),
                "password_env": "PVE_PASSWORD",
                "bridge": os.environ.get("PVE_BRIDGE", "vmbr0"),
                "volume_group": os.environ.get("PVE_VOLUME_GROUP", ""),
            },
            "conversion": {
                "work_dir": os.environ.get("ESXI2PVE_WORK_DIR", "/mnt/vm-migration"),
            },
            "migration": {},
        }
        # Deep merge overrides
        for key, value in overrides.items():
            if isinstance(value, dict) and key in base:
                base[key].update({k: v for k, v in value.items() if v is not None})
            elif value is not None:
                base[key] = value
        return cls(**base)

    def request_for(
        self,
        vm_name: str,
        vmid: int,
        vlan_tag: int = 80,
        storage: str = "local-lvm",
        memory_mb: int = 2048,
        cores: int = 2,
    ) -> "MigrationRequest":
        """Build a migration request bound to this config's endpoints."""
        return MigrationRequest(
            vm_name=vm_name,
            vmid=vmid,
            vlan_tag=vlan_tag,
            storage=storage,
            memory_mb=memory_mb,
            cores=cores,
            source=self.esxi,
            destination=self.proxmox if self.proxmox.is_remote else None,
        )


# --- Per-VM migration request ---

class MigrationRequest(BaseModel):
    """Immutable input for a single VM migration.

    ``destination`` is None when the tool runs on the Proxmox node.
    """

    model_config = ConfigDict(frozen=True)

    vm_name: str = Field(..., min_length=1, description="Source VM display name")
    vmid: int = Field(..., description="Destination Proxmox VM ID (> 99)")
    vlan_tag: int = Field(80, ge=1, le=4094, description="VLAN tag for net0")
    storage: str = Field("local-lvm", min_length=1, description="Proxmox storage pool for imported disks")
    memory_mb: int = Field(2048, ge=16, description="Memory in MiB")
    cores: int = Field(2, ge=1, description="CPU core count")
    source: ESXiConfig
    destination: Optional[ProxmoxConfig] = None

    @field_validator("vm_name")
    @classmethod
    def no_path_separators(cls, v: str) -> str:
        if "/" in v or v in (".", ".."):
            raise ValueError(f"VM name '{v}' cannot be used as a file name")
        return v
