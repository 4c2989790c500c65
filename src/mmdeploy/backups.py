"""Timestamped snapshots of an application directory.

A snapshot is a full copy of the app directory stored as
``<backup_dir>/<YYYYmmdd_HHMMSS>/``. Kept snapshots may be compressed into
``<YYYYmmdd_HHMMSS>.tar.gz`` and are pruned once they are older than the
configured retention.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

from .errors import BackupError, MMDeployError
from .fileops import FileOps
from .runner import CommandRunner, check

logger = logging.getLogger(__name__)

SNAPSHOT_FORMAT = "%Y%m%d_%H%M%S"
ARCHIVE_SUFFIX = ".tar.gz"

_SNAPSHOT_RE = re.compile(r"^(?P<stamp>\d{8}_\d{6})(?:-(?P<seq>\d+))?(?P<archive>\.tar\.gz)?$")


@dataclass(frozen=True, slots=True)
class BackupSnapshot:
    """One snapshot on disk."""

    identifier: str
    path: Path
    created_at: datetime
    compressed: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "id": self.identifier,
            "path": str(self.path),
            "created_at": self.created_at.isoformat(timespec="seconds"),
            "compressed": self.compressed,
        }


def parse_snapshot(path: Path) -> BackupSnapshot | None:
    """Return the snapshot stored at *path*, or None for unrelated entries."""
    match = _SNAPSHOT_RE.match(path.name)
    if match is None:
        return None
    compressed = match.group("archive") is not None
    if compressed != path.is_file():
        return None
    try:
        created = datetime.strptime(match.group("stamp"), SNAPSHOT_FORMAT)
    except ValueError:
        return None
    identifier = path.name[: -len(ARCHIVE_SUFFIX)] if compressed else path.name
    return BackupSnapshot(identifier, path, created, compressed)


@dataclass(slots=True)
class SnapshotStore:
    """Create, restore and expire snapshots under *root*."""

    root: Path
    files: FileOps
    runner: CommandRunner
    root_mode: int = 0o750

    def create(self, source: Path, *, now: datetime | None = None) -> BackupSnapshot:
        """Copy *source* into a fresh snapshot; an empty source yields an empty snapshot."""
        if not source.is_dir():
            raise BackupError(f"Cannot back up {source}: directory does not exist.")
        created = (now or datetime.now()).replace(microsecond=0)
        identifier = self._free_identifier(created.strftime(SNAPSHOT_FORMAT))
        destination = self.root / identifier
        try:
            self.files.mkdir(self.root, mode=self.root_mode)
            self.files.mkdir(destination, mode=self.root_mode)
            self.files.copy_tree(source, destination)
        except (OSError, MMDeployError) as exc:
            raise BackupError(f"Failed to create backup {destination}: {exc}") from exc
        logger.debug("created snapshot %s from %s", destination, source)
        return BackupSnapshot(identifier, destination, created)

    def restore(self, snapshot: BackupSnapshot, target: Path) -> None:
        """Replace the contents of *target* wholesale with *snapshot*."""
        if snapshot.compressed:
            raise BackupError(f"Snapshot {snapshot.identifier} is compressed; extract it first.")
        if not snapshot.path.is_dir():
            raise BackupError(f"Snapshot {snapshot.path} is missing.")
        try:
            if target.exists():
                self.files.clear_dir(target)
            self.files.copy_tree(snapshot.path, target)
        except (OSError, MMDeployError) as exc:
            raise BackupError(f"Failed to restore {target} from {snapshot.path}: {exc}") from exc

    def delete(self, snapshot: BackupSnapshot) -> None:
        """Remove *snapshot* from disk."""
        if snapshot.compressed:
            self.files.remove(snapshot.path)
        else:
            self.files.remove_tree(snapshot.path)

    def compress(self, snapshot: BackupSnapshot) -> BackupSnapshot:
        """Pack *snapshot* into ``<id>.tar.gz`` and drop the directory copy."""
        if snapshot.compressed:
            return snapshot
        archive = self.root / f"{snapshot.identifier}{ARCHIVE_SUFFIX}"
        check(
            self.runner.run(
                ["tar", "-czf", str(archive), "-C", str(self.root), snapshot.identifier],
                sudo=True,
            ),
            summary=f"Failed to compress backup {snapshot.identifier}",
        )
        self.files.remove_tree(snapshot.path)
        return BackupSnapshot(snapshot.identifier, archive, snapshot.created_at, True)

    def list_snapshots(self) -> list[BackupSnapshot]:
        """Return snapshots under :attr:`root`, oldest first."""
        if not self.root.is_dir():
            return []
        snapshots = [
            snapshot
            for snapshot in (parse_snapshot(entry) for entry in self.root.iterdir())
            if snapshot is not None
        ]
        return sorted(snapshots, key=lambda item: (item.created_at, item.identifier))

    def prune_expired(
        self,
        retention_days: int | None,
        *,
        now: datetime | None = None,
    ) -> list[BackupSnapshot]:
        """Delete snapshots older than *retention_days*; return what was removed."""
        if retention_days is None or retention_days <= 0:
            return []
        cutoff = (now or datetime.now()) - timedelta(days=retention_days)
        removed: list[BackupSnapshot] = []
        for snapshot in self.list_snapshots():
            if snapshot.created_at < cutoff:
                self.delete(snapshot)
                removed.append(snapshot)
        return removed

    def _free_identifier(self, stamp: str) -> str:
        candidate = stamp
        sequence = 1
        while (self.root / candidate).exists() or (
            self.root / f"{candidate}{ARCHIVE_SUFFIX}"
        ).exists():
            sequence += 1
            candidate = f"{stamp}-{sequence}"
        return candidate


__all__ = ["ARCHIVE_SUFFIX", "BackupSnapshot", "SNAPSHOT_FORMAT", "SnapshotStore", "parse_snapshot"]
