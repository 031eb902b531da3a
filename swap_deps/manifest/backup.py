"""Sidecar backups of manifest files.

A backup lives next to its manifest as ``<manifest>.backup`` and is a
byte-for-byte copy taken before the first rewrite of a swap session.  While a
backup exists, the live manifest is expected to be in the swapped state; a
backup next to an unswapped manifest means somebody edited the file by hand or
a previous run was interrupted, and nothing is overwritten until the user
restores.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Protocol

from swap_deps.errors import InconsistentStateError
from swap_deps.utils import print_dry_run

logger = logging.getLogger(__name__)

BACKUP_SUFFIX = ".backup"


class SwapMarkerDetector(Protocol):
    """Anything that can tell whether manifest content is currently swapped."""

    def has_swap_markers(self, content: str) -> bool: ...


class BackupStore:
    """Creates, checks and restores ``.backup`` sidecar files."""

    def __init__(self, dry_run: bool = False) -> None:
        self.dry_run = dry_run

    @staticmethod
    def backup_path(manifest_path: Path) -> Path:
        return manifest_path.with_name(manifest_path.name + BACKUP_SUFFIX)

    def exists(self, manifest_path: Path) -> bool:
        return self.backup_path(manifest_path).exists()

    def list_backups(self, directory: Path) -> list[Path]:
        """All backup files directly inside *directory*, sorted."""
        return sorted(directory.glob(f"*{BACKUP_SUFFIX}"))

    def ensure_consistent(self, manifest_path: Path, detector: SwapMarkerDetector) -> None:
        """Fail if a backup exists but *manifest_path* shows no swapped dependency.

        Raises:
            InconsistentStateError: Naming the manifest and how to recover.
        """
        if not self.exists(manifest_path):
            return
        content = manifest_path.read_text(encoding="utf-8")
        if detector.has_swap_markers(content):
            return
        raise InconsistentStateError(
            f"Backup exists but {manifest_path} appears unswapped. "
            "It may have been edited by hand or a previous run was interrupted. "
            f"Run with --restore, or delete {self.backup_path(manifest_path)} "
            "if the current file is correct.",
            path=manifest_path,
        )

    def backup(self, manifest_path: Path, detector: SwapMarkerDetector) -> bool:
        """Snapshot *manifest_path* unless a consistent backup already exists.

        Returns:
            ``True`` if a new backup was (or in dry-run, would be) created,
            ``False`` if an existing backup is being reused.

        Raises:
            InconsistentStateError: If a backup exists but the manifest is unswapped.
            FileNotFoundError: If the manifest itself does not exist.
        """
        if self.exists(manifest_path):
            self.ensure_consistent(manifest_path, detector)
            logger.debug("Already swapped, reusing backup for %s", manifest_path)
            return False

        if not manifest_path.exists():
            raise FileNotFoundError(manifest_path)

        if self.dry_run:
            print_dry_run(f"Would back up {manifest_path.name}")
        else:
            shutil.copy2(manifest_path, self.backup_path(manifest_path))
            logger.debug("Backed up %s", manifest_path)
        return True

    def restore(self, manifest_path: Path) -> bool:
        """Copy the backup over *manifest_path* and delete the backup.

        Returns:
            ``False`` (and leaves the file untouched) when there is no backup.
        """
        backup_path = self.backup_path(manifest_path)
        if not backup_path.exists():
            return False

        if self.dry_run:
            print_dry_run(f"Would restore {manifest_path.name} from {backup_path.name}")
            return True

        shutil.copyfile(backup_path, manifest_path)
        backup_path.unlink()
        logger.debug("Restored %s from backup", manifest_path)
        return True
