"""Pre-write snapshots of graph files, with rotation and restore.

Snapshots live in <storage>/.backups/ as
graph-<context>-<YYYY-MM-DDTHH-MM-SS-ffffffZ>.jsonl, so a plain filename sort
is chronological. Callers must hold the storage lock.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
from datetime import UTC, datetime
from pathlib import Path

from uks.errors import NotFoundError, StorageError

logger = logging.getLogger("uks.backup")

_TIMESTAMP_RE = r"\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2}-\d{6}Z"


def graph_filename(context: str) -> str:
    return f"graph-{context}.jsonl"


def _timestamp() -> str:
    return datetime.now(UTC).strftime("%Y-%m-%dT%H-%M-%S-%fZ")


class BackupManager:
    """Snapshot, prune and restore one storage directory's graph files."""

    def __init__(self, base_path: Path | str, max_backups: int = 5) -> None:
        self.base_path = Path(base_path)
        self.backup_dir = self.base_path / ".backups"
        self.max_backups = max_backups

    def ensure_dir(self) -> None:
        self.backup_dir.mkdir(parents=True, exist_ok=True)

    def _pattern(self, context: str) -> re.Pattern[str]:
        return re.compile(rf"^graph-{re.escape(context)}-{_TIMESTAMP_RE}\.jsonl$")

    def list_backups(self, context: str = "default") -> list[Path]:
        """Backups for context, newest first."""
        if not self.backup_dir.exists():
            return []
        pattern = self._pattern(context)
        names = sorted(
            (p.name for p in self.backup_dir.iterdir() if pattern.match(p.name)),
            reverse=True,
        )
        return [self.backup_dir / n for n in names]

    def create_snapshot(self, context: str = "default") -> Path | None:
        """Copy the live graph file into the backup dir, then prune.

        Returns None when there is no graph file yet (first write).
        """
        source = self.base_path / graph_filename(context)
        if not source.exists():
            return None
        self.ensure_dir()
        stamp = _timestamp()
        target = self.backup_dir / f"graph-{context}-{stamp}.jsonl"
        # Same-microsecond collisions: never overwrite an older snapshot
        while target.exists():
            stamp = _timestamp()
            target = self.backup_dir / f"graph-{context}-{stamp}.jsonl"
        try:
            shutil.copyfile(source, target)
        except OSError as exc:
            msg = f"Failed to create snapshot: {exc}"
            raise StorageError(msg, {"context": context, "path": str(target)}) from exc
        logger.debug("snapshot %s", target.name)
        self.prune_backups(context)
        return target

    def prune_backups(self, context: str = "default") -> list[Path]:
        """Keep the newest max_backups snapshots. Failures are logged, never raised."""
        removed: list[Path] = []
        try:
            stale = self.list_backups(context)[self.max_backups:]
        except OSError:
            logger.warning("could not list backups for %s", context, exc_info=True)
            return removed
        for path in stale:
            try:
                path.unlink()
                removed.append(path)
            except OSError:
                logger.warning("could not prune backup %s", path, exc_info=True)
        return removed

    def restore_latest(self, context: str = "default") -> str:
        """Copy the newest snapshot over the live graph file and drop the snapshot.

        Dropping it lets a following restore step one snapshot further back.
        Returns the restored snapshot's filename.
        """
        backups = self.list_backups(context)
        if not backups:
            msg = "No backups found to restore."
            raise NotFoundError(msg, {"context": context})
        latest = backups[0]
        target = self.base_path / graph_filename(context)
        tmp = target.with_suffix(".jsonl.tmp")
        try:
            shutil.copyfile(latest, tmp)
            os.replace(tmp, target)
            latest.unlink()
        except OSError as exc:
            msg = f"Failed to restore backup: {exc}"
            raise StorageError(msg, {"context": context, "backup": latest.name}) from exc
        logger.info("restored %s from %s", target.name, latest.name)
        return latest.name
