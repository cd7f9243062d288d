"""Working-directory lifecycle for a single migration run."""

from __future__ import annotations

import shutil
from pathlib import Path

from esxi2pve.utils.logging import get_logger

logger = get_logger(__name__)


def clean_directory(path: Path, remove_root: bool = False) -> None:
    """Delete everything under path. Missing or empty directories are fine."""
    path = Path(path)
    if not path.exists():
        return
    if remove_root:
        shutil.rmtree(path)
        return
    for child in path.iterdir():
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink()


class Workspace:
    """Scoped directory holding extracted and converted images for one run.

    The export artifact (``<vm>.ova``) lives next to it in ``root`` so it
    can outlive the run when the operator chooses to reuse it. The run
    directory itself is always removed on exit.
    """

    def __init__(self, root: Path, vm_name: str, run_id: str):
        self.root = Path(root)
        self.vm_name = vm_name
        self.run_dir = self.root / f"{vm_name}-{run_id}"

    @property
    def artifact_path(self) -> Path:
        return self.root / f"{self.vm_name}.ova"

    def __enter__(self) -> "Workspace":
        self.run_dir.mkdir(parents=True, exist_ok=True)
        return self

    def __exit__(self, *exc) -> None:
        self.cleanup()

    def cleanup(self) -> None:
        if self.run_dir.exists():
            logger.info(f"Cleaning up {self.run_dir} directory...")
        clean_directory(self.run_dir, remove_root=True)

    def discard_artifact(self) -> None:
        if self.artifact_path.exists():
            logger.info(f"Removing export artifact {self.artifact_path.name}")
            self.artifact_path.unlink()
