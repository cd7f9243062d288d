"""Disk pipeline: OVA extraction, VMDK discovery and conversion with qemu-img."""

from __future__ import annotations

import concurrent.futures
import re
import shutil
import tarfile
from pathlib import Path, PurePosixPath

from esxi2pve.config import ConversionConfig
from esxi2pve.errors import (
    AmbiguousDiskSet,
    DescriptorNotFound,
    DiskConversionFailed,
    ExtractionFailed,
    GuestAgentInstallFailed,
    MigrationError,
    NoDisksFound,
    ToolInvocationError,
    ToolTimeout,
)
from esxi2pve.gateway import Executor
from esxi2pve.models import DiskSpec, ExportArtifact, validate_disk_order
from esxi2pve.utils.logging import get_logger

logger = get_logger(__name__)


def disk_pattern(vm_name: str) -> re.Pattern:
    """Match ``<vm>-disk<N>.vmdk`` as written by ovftool, capturing N."""
    return re.compile(rf"^{re.escape(vm_name)}-disk(\d+)\.vmdk$")


class DiskPipeline:
    """Turns an exported OVA into ordered, import-ready disk images.

    Disk order comes from the numeric suffix in the file name: the lowest
    numbered disk gets index 0 and is the boot disk. Conversions may run
    in parallel, but results are always placed by index so completion
    order has no effect on attachment order.
    """

    def __init__(self, executor: Executor, conversion: ConversionConfig, disk_policy: str = "multi"):
        self.executor = executor
        self.conversion = conversion
        self.disk_policy = disk_policy

    # ─── Extraction / discovery ──────────────────────────────────────

    def extract(self, artifact: ExportArtifact, dest_dir: Path) -> ExportArtifact:
        """Unpack the OVA into dest_dir and locate the descriptor.

        Only regular files are written; links, devices and members with
        absolute or parent-relative paths are skipped.
        """
        dest_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"Extracting {artifact.archive.name} → {dest_dir}")

        try:
            with tarfile.open(artifact.archive, mode="r:*") as tar:
                for member in tar.getmembers():
                    if not member.isreg():
                        continue
                    rel = PurePosixPath(member.name.replace("\\", "/"))
                    if rel.is_absolute() or ".." in rel.parts:
                        logger.warning(f"Skipping unsafe archive member: {member.name!r}")
                        continue
                    target = dest_dir.joinpath(*rel.parts)
                    target.parent.mkdir(parents=True, exist_ok=True)
                    src = tar.extractfile(member)
                    if src is None:
                        continue
                    with src, open(target, "wb") as out:
                        shutil.copyfileobj(src, out, 16 * 1024 * 1024)
        except (tarfile.TarError, OSError) as e:
            raise ExtractionFailed(f"Cannot extract {artifact.archive}: {e}") from e

        descriptors = sorted(dest_dir.rglob("*.ovf"))
        if not descriptors:
            raise DescriptorNotFound(f"No .ovf descriptor found in {artifact.archive.name}")
        if len(descriptors) > 1:
            logger.warning(f"Multiple descriptors found, using {descriptors[0].name}")

        artifact.descriptor = descriptors[0]
        logger.info(f"Found OVF file: {artifact.descriptor.name}")
        return artifact

    def discover_disks(self, directory: Path, vm_name: str) -> list[Path]:
        """Find the VM's disk images, ordered by disk number."""
        pattern = disk_pattern(vm_name)
        found = []
        for path in directory.rglob("*.vmdk"):
            match = pattern.match(path.name)
            if match:
                found.append((int(match.group(1)), path.name, path))
        found.sort()
        images = [path for _, _, path in found]

        if not images:
            raise NoDisksFound(f"No disk images matching '{vm_name}-disk*.vmdk' in {directory}")
        if self.disk_policy == "single" and len(images) > 1:
            names = ", ".join(p.name for p in images)
            raise AmbiguousDiskSet(f"Expected one disk image for '{vm_name}', found {len(images)}: {names}")

        logger.info(f"Found {len(images)} disk image(s): {', '.join(p.name for p in images)}")
        return images

    def plan(self, images: list[Path], output_dir: Path) -> list[DiskSpec]:
        """Assign attachment indices and conversion targets."""
        suffix = self.conversion.disk_format
        disks = [
            DiskSpec(index=i, source=image, target=output_dir / f"{image.stem}.{suffix}")
            for i, image in enumerate(images)
        ]
        validate_disk_order(disks)
        return disks

    # ─── Conversion ──────────────────────────────────────────────────

    def convert_one(self, disk: DiskSpec) -> DiskSpec:
        """Convert a single VMDK with qemu-img."""
        fmt = self.conversion.disk_format
        logger.info(f"Converting {disk.source.name} to {fmt} (index {disk.index})")
        disk.target.parent.mkdir(parents=True, exist_ok=True)
        cmd = [
            "qemu-img", "convert",
            "-f", "vmdk",
            "-O", fmt,
            str(disk.source),
            str(disk.target),
        ]
        try:
            self.executor.run(cmd)
        except ToolTimeout:
            raise
        except ToolInvocationError as e:
            raise DiskConversionFailed.wrap(
                f"Conversion of disk {disk.index} ({disk.source.name}) failed", e, disk=disk.source.name,
            ) from e
        if not disk.target.exists():
            raise DiskConversionFailed(
                f"Conversion produced no output file: {disk.target}", disk=disk.source.name,
            )
        return disk

    def convert(self, disks: list[DiskSpec]) -> list[DiskSpec]:
        """Convert every disk; any single failure aborts the whole set."""
        workers = min(self.conversion.parallel_conversions, len(disks))
        if workers <= 1:
            return [self.convert_one(d) for d in disks]

        logger.info(f"Converting {len(disks)} disks with {workers} workers")
        results: list[DiskSpec | None] = [None] * len(disks)
        failures: dict[int, MigrationError] = {}

        with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {pool.submit(self.convert_one, d): d.index for d in disks}
            for future in concurrent.futures.as_completed(futures):
                idx = futures[future]
                if future.cancelled():
                    continue
                try:
                    results[idx] = future.result()
                except MigrationError as e:
                    failures[idx] = e
                    for pending in futures:
                        pending.cancel()

        if failures:
            # Report the lowest failing index so the outcome is deterministic.
            raise failures[min(failures)]
        return [r for r in results if r is not None]

    def extract_and_convert(self, artifact: ExportArtifact, vm_name: str, work_dir: Path) -> list[DiskSpec]:
        """Extract, discover, convert, then inject the guest agent into disk 0."""
        extract_dir = work_dir / "extract"
        self.extract(artifact, extract_dir)
        artifact.disk_images = self.discover_disks(extract_dir, vm_name)
        disks = self.convert(self.plan(artifact.disk_images, work_dir / "converted"))
        GuestAgentInstaller(self.executor, self.conversion.guest_agent_package).install(disks[0].target)
        return disks


class GuestAgentInstaller:
    """Installs the QEMU guest agent into a boot disk image with virt-customize.

    The image must already be converted; virt-customize cannot write
    into the streamOptimized VMDKs ovftool produces.
    """

    def __init__(self, executor: Executor, package: str = "qemu-guest-agent"):
        self.executor = executor
        self.package = package

    def install(self, image: Path) -> None:
        logger.info(f"Installing {self.package} into {image.name} with virt-customize")
        try:
            self.executor.run(["virt-customize", "-a", str(image), "--install", self.package])
        except ToolTimeout:
            raise
        except ToolInvocationError as e:
            raise GuestAgentInstallFailed.wrap(f"Failed to install {self.package} into {image.name}", e) from e
