"""CLI entry point for esxi2pve."""

from __future__ import annotations

import sys
from pathlib import Path

import click
from pydantic import ValidationError as ConfigError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from esxi2pve import __version__
from esxi2pve.config import AppConfig
from esxi2pve.errors import MigrationError, ProvisionError, VMCreateFailed
from esxi2pve.utils.logging import set_log_level

console = Console()


def load_config(config_path: str | None) -> AppConfig:
    """Load configuration from file or environment."""
    try:
        if config_path:
            return AppConfig.from_yaml(config_path)
        for default in ["esxi2pve.yaml", "config.yaml", "/etc/esxi2pve/config.yaml"]:
            if Path(default).exists():
                return AppConfig.from_yaml(default)
        return AppConfig.from_env_and_args()
    except (ConfigError, OSError) as e:
        console.print(f"[red]Error loading config: {escape(str(e))}[/red]")
        console.print("Provide a --config file or set ESXI_HOST / ESXI_PASSWORD / PVE_VOLUME_GROUP.")
        sys.exit(1)


def _prompt_artifact_action(archive: Path):
    from esxi2pve.pipeline.migration import ArtifactAction

    if click.confirm(f"File {archive} already exists. Overwrite?", default=True):
        return ArtifactAction.OVERWRITE
    if click.confirm("Skip fresh export and re-use existing ova file?", default=False):
        return ArtifactAction.REUSE
    return ArtifactAction.ABORT


def _suggest_vmid(config: AppConfig) -> int | None:
    """Next free VM ID on a local Proxmox node, if it can be determined."""
    if config.proxmox.is_remote:
        return None
    from esxi2pve.gateway import LocalExecutor
    from esxi2pve.proxmox.qm import ProxmoxHost

    try:
        return ProxmoxHost(LocalExecutor(timeout=30)).next_free_vmid()
    except MigrationError:
        return None


@click.group()
@click.version_option(version=__version__, prog_name="esxi2pve")
@click.option("--log-level", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
              default="INFO", help="Logging verbosity")
def main(log_level: str):
    """VMware ESXi to Proxmox VE migration tool.

    Exports a VM with ovftool, converts its disks with qemu-img, installs
    the QEMU guest agent and recreates the VM on Proxmox (BIOS or UEFI).
    """
    set_log_level(log_level)


@main.command()
@click.option("--config", "config_path", type=click.Path(exists=True), help="Configuration file")
@click.option("--vm", "vm_name", help="Name of the VM to migrate")
@click.option("--vmid", type=int, help="Proxmox VM ID to use (> 99)")
@click.option("--vlan", "vlan_tag", type=int, help="VLAN tag for net0")
@click.option("--storage", help="Proxmox storage for imported disks (e.g. local-lvm, local-zfs)")
@click.option("--memory", "memory_mb", type=int, default=2048, show_default=True, help="Memory in MiB")
@click.option("--cores", type=int, default=2, show_default=True, help="CPU cores")
@click.option("--existing", type=click.Choice(["ask", "overwrite", "reuse", "abort"]),
              help="Action when an export for this VM already exists")
@click.option("--dry-run", is_flag=True, default=False, help="Show the plan without executing")
def migrate(config_path, vm_name, vmid, vlan_tag, storage, memory_mb, cores, existing, dry_run):
    """Migrate a single VM from ESXi to Proxmox.

    Missing values are prompted for interactively.
    """
    config = load_config(config_path)
    if existing:
        config.migration.existing_artifact = existing

    vm_name = vm_name or click.prompt("Enter the name of the VM to migrate")
    vlan_tag = vlan_tag if vlan_tag is not None else click.prompt("Enter the VLAN tag", default=80, type=int)
    if vmid is None:
        vmid = click.prompt("Enter the VM ID you would like to use in Proxmox",
                            default=_suggest_vmid(config), type=int)
    storage = storage or click.prompt(
        "Enter the storage name (for example local-lvm or local-zfs)", default="local-lvm",
    )

    try:
        request = config.request_for(
            vm_name, vmid, vlan_tag=vlan_tag, storage=storage, memory_mb=memory_mb, cores=cores,
        )
    except ConfigError as e:
        console.print(f"[red]Invalid request: {escape(str(e))}[/red]")
        sys.exit(1)

    from esxi2pve.pipeline.migration import MigrationPipeline
    from esxi2pve.pipeline.validator import preflight as run_preflight

    pipeline = MigrationPipeline(config, choose_artifact_action=_prompt_artifact_action)

    if dry_run:
        console.print("[yellow]DRY RUN — No changes will be made[/yellow]")
        pipeline.dry_run(request)
        return

    report = run_preflight(remote_destination=request.destination is not None)
    if not report.passed:
        console.print(f"[red]Missing required tools: {', '.join(report.missing)}[/red]")
        console.print("Run 'esxi2pve preflight' for details.")
        sys.exit(1)

    result = pipeline.run(request)
    if result.success:
        console.print(f"\n[bold green]✅ Migration complete![/bold green]")
        console.print(f"  Proxmox VM ID: {result.vmid}")
        console.print(f"  Firmware: {result.firmware.value.upper() if result.firmware else '?'}")
        console.print(f"  Disks: {', '.join(result.volumes)}")
        if result.efi_volume:
            console.print(f"  EFI disk: {result.efi_volume}")
        console.print(f"  Duration: {result.duration}")
    else:
        console.print(f"\n[bold red]❌ Migration failed at stage '{result.failed_stage}'[/bold red]")
        console.print(f"  Error: {escape(result.error.message) if result.error else 'unknown'}")
        if isinstance(result.error, ProvisionError) and not isinstance(result.error, VMCreateFailed):
            console.print(f"  VM {result.vmid} was created and must be removed manually: qm destroy {result.vmid}")
        sys.exit(1)


@main.command()
@click.option("--remote-destination", is_flag=True, default=False,
              help="Proxmox is reached over SSH; skip checks for qm/pvesh/lvcreate")
def preflight(remote_destination: bool):
    """Check that the required external tools are installed."""
    from esxi2pve.pipeline.validator import preflight as run_preflight

    report = run_preflight(remote_destination=remote_destination)

    table = Table(title="Required tools")
    table.add_column("Tool", style="cyan", no_wrap=True)
    table.add_column("Available")
    for tool, ok in report.tools.items():
        table.add_row(tool, "[green]yes[/green]" if ok else "[red]no[/red]")
    console.print(table)

    if not report.passed:
        console.print(f"[red]Missing: {', '.join(report.missing)}[/red]")
        sys.exit(1)


@main.command("next-id")
@click.option("--config", "config_path", type=click.Path(exists=True), help="Configuration file")
def next_id(config_path: str | None):
    """Print the next free Proxmox VM ID."""
    config = load_config(config_path)

    from esxi2pve.gateway import ExternalToolGateway
    from esxi2pve.proxmox.qm import ProxmoxHost

    request = config.request_for("next-id", 100)
    gateway = ExternalToolGateway.for_request(config, request)
    try:
        console.print(ProxmoxHost(gateway.destination).next_free_vmid())
    except MigrationError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        sys.exit(1)
    finally:
        gateway.close()


@main.command("detect-firmware")
@click.argument("descriptor", type=click.Path(exists=True, dir_okay=False))
def detect_firmware(descriptor: str):
    """Report BIOS or UEFI for an OVF descriptor or .vmx file."""
    from esxi2pve.vmware.firmware import FirmwareResolver

    try:
        mode = FirmwareResolver().resolve(Path(descriptor))
    except MigrationError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        sys.exit(1)
    console.print(mode.value.upper())


if __name__ == "__main__":
    main()
