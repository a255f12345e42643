"""
Backup store module for ProxyFlare.

This module is responsible for snapshotting the Caddyfile before every mutation,
listing and restoring snapshots, and pruning them according to retention policy.
Backups live beside the source file as `<name>.backup.<YYYYmmdd_HHMMSS>`, so all
operations work from plain file-system metadata.
"""

import logging
import os
import stat
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional, Union

from proxyflare.models.models import Backup
from proxyflare.saga.errors import TransientIOError

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"


@dataclass
class RetentionReport:
    """
    Result of a combined retention pass.

    `deleted_count` is the sum of the per-policy match counts, so a backup
    matched by two policies is counted twice; `removed` lists the distinct files
    actually deleted.
    """

    deleted_count: int = 0
    removed: List[Path] = field(default_factory=list)
    by_age: int = 0
    by_count: int = 0
    by_size: int = 0


class BackupStore:
    """
    Timestamped snapshots of a single configuration file.
    """

    def __init__(self, config_path: Union[str, Path]):
        """
        Initialize a BackupStore.

        Args:
            config_path: Path of the file being backed up
        """
        self.config_path = Path(config_path)
        self.logger = logging.getLogger("proxyflare.backup")

    @property
    def pattern(self) -> str:
        return f"{self.config_path.name}.backup.*"

    def create_backup(self) -> Path:
        """
        Create a timestamped copy of the configuration file.

        The copy keeps the source file's permission bits.

        Returns:
            Path: Path of the new backup

        Raises:
            TransientIOError: If the source cannot be read or the copy written
        """
        try:
            perms = stat.S_IMODE(self.config_path.stat().st_mode)
            content = self.config_path.read_bytes()
        except OSError as e:
            raise TransientIOError(
                f"failed to read {self.config_path} for backup: {e}"
            ) from e

        backup_path = self._next_backup_path()
        try:
            backup_path.write_bytes(content)
            os.chmod(backup_path, perms)
        except OSError as e:
            raise TransientIOError(f"failed to write backup {backup_path}: {e}") from e

        self.logger.info(f"Created backup {backup_path.name} ({len(content)} bytes)")
        return backup_path

    def _next_backup_path(self) -> Path:
        stamp = datetime.now().strftime(TIMESTAMP_FORMAT)
        candidate = self.config_path.with_name(f"{self.config_path.name}.backup.{stamp}")
        suffix = 1
        while candidate.exists():
            candidate = self.config_path.with_name(
                f"{self.config_path.name}.backup.{stamp}_{suffix}"
            )
            suffix += 1
        return candidate

    def list_backups(self) -> List[Backup]:
        """
        List all backups of the configuration file.

        Returns:
            List[Backup]: Backups sorted newest first
        """
        backups = []
        for path in self.config_path.parent.glob(self.pattern):
            try:
                info = path.stat()
            except OSError:
                # Removed between glob and stat
                continue
            if not path.is_file():
                continue
            backups.append(
                Backup(
                    path=path,
                    timestamp=datetime.fromtimestamp(info.st_mtime),
                    size_bytes=info.st_size,
                )
            )

        backups.sort(key=lambda b: (b.timestamp, b.path.name), reverse=True)
        return backups

    def restore_from_backup(self, backup_path: Union[str, Path]) -> None:
        """
        Overwrite the configuration file with the content of a backup.

        The restored file takes the backup's permission bits.

        Args:
            backup_path: Backup to restore

        Raises:
            TransientIOError: If the backup cannot be read or the file written
        """
        backup_path = Path(backup_path)
        try:
            perms = stat.S_IMODE(backup_path.stat().st_mode)
            content = backup_path.read_bytes()
        except OSError as e:
            raise TransientIOError(f"failed to read backup {backup_path}: {e}") from e

        try:
            self.config_path.write_bytes(content)
            os.chmod(self.config_path, perms)
        except OSError as e:
            raise TransientIOError(
                f"failed to restore {self.config_path} from {backup_path.name}: {e}"
            ) from e

        self.logger.info(f"Restored {self.config_path} from {backup_path.name}")

    def is_backup(self, backup_path: Union[str, Path]) -> bool:
        """
        Check that a path names an existing backup of this store's file.

        Args:
            backup_path: Path to check

        Returns:
            bool: True if the path sits next to the file and matches the backup pattern
        """
        backup_path = Path(backup_path)
        return (
            backup_path.parent.resolve() == self.config_path.parent.resolve()
            and backup_path.match(self.pattern)
            and backup_path.is_file()
        )

    def delete_backup(self, backup_path: Union[str, Path]) -> None:
        """
        Delete a single backup belonging to this store.

        Args:
            backup_path: Backup to delete

        Raises:
            ValueError: If the path is not one of this store's backups
            TransientIOError: If the file cannot be removed
        """
        backup_path = Path(backup_path)
        if backup_path.parent != self.config_path.parent or not backup_path.match(
            self.pattern
        ):
            raise ValueError(f"{backup_path} is not a backup of {self.config_path}")
        try:
            backup_path.unlink()
        except OSError as e:
            raise TransientIOError(f"failed to delete backup {backup_path}: {e}") from e
        self.logger.info(f"Deleted backup {backup_path.name}")

    def total_size(self) -> int:
        """Total size of all backups in bytes."""
        return sum(b.size_bytes for b in self.list_backups())

    def get_old_backups(
        self, max_age: timedelta, now: Optional[datetime] = None
    ) -> List[Backup]:
        """
        Backups older than max_age, without deleting them.

        Args:
            max_age: Age threshold; only backups strictly older are returned
            now: Reference time (defaults to the current time)

        Returns:
            List[Backup]: Matching backups, newest first
        """
        return self._select_by_age(self.list_backups(), max_age, now)

    def cleanup_old_backups(self, max_age: timedelta) -> int:
        """
        Delete backups older than max_age.

        Returns:
            int: Number of backups deleted
        """
        return self._remove(self.get_old_backups(max_age))

    def cleanup_by_count(self, max_count: int) -> int:
        """
        Keep the newest max_count backups and delete the rest.

        Returns:
            int: Number of backups deleted (0 if max_count <= 0)
        """
        return self._remove(self._select_by_count(self.list_backups(), max_count))

    def cleanup_by_size(self, max_mb: int) -> int:
        """
        Delete the oldest backups until the total size is at most max_mb.

        Returns:
            int: Number of backups deleted (0 if max_mb <= 0)
        """
        return self._remove(self._select_by_size(self.list_backups(), max_mb))

    def run_retention(
        self,
        retention_days: int = 0,
        max_backups: int = 0,
        max_size_mb: int = 0,
        now: Optional[datetime] = None,
    ) -> RetentionReport:
        """
        Apply the age, count and size policies in one pass.

        Each policy is evaluated independently against the same listing. Every
        matched file is deleted once, but the reported total is the sum of the
        per-policy counts.

        Args:
            retention_days: Delete backups older than this many days (0 = off)
            max_backups: Keep at most this many backups (0 = unlimited)
            max_size_mb: Keep total size under this many MiB (0 = unlimited)
            now: Reference time for the age policy

        Returns:
            RetentionReport: Reported count and removed paths
        """
        backups = self.list_backups()
        report = RetentionReport()

        matched: List[Backup] = []
        if retention_days > 0:
            old = self._select_by_age(backups, timedelta(days=retention_days), now)
            report.by_age = len(old)
            matched.extend(old)
        if max_backups > 0:
            excess = self._select_by_count(backups, max_backups)
            report.by_count = len(excess)
            matched.extend(excess)
        if max_size_mb > 0:
            oversize = self._select_by_size(backups, max_size_mb)
            report.by_size = len(oversize)
            matched.extend(oversize)

        report.deleted_count = report.by_age + report.by_count + report.by_size

        seen = set()
        for backup in matched:
            if backup.path in seen:
                continue
            seen.add(backup.path)
            if self._unlink(backup.path):
                report.removed.append(backup.path)

        self.logger.info(
            f"Retention: {report.deleted_count} matched "
            f"(age={report.by_age}, count={report.by_count}, size={report.by_size}), "
            f"{len(report.removed)} file(s) removed"
        )
        return report

    @staticmethod
    def _select_by_age(
        backups: List[Backup], max_age: timedelta, now: Optional[datetime] = None
    ) -> List[Backup]:
        now = now or datetime.now()
        return [b for b in backups if now - b.timestamp > max_age]

    @staticmethod
    def _select_by_count(backups: List[Backup], max_count: int) -> List[Backup]:
        if max_count <= 0 or len(backups) <= max_count:
            return []
        # Sorted newest first
        return backups[max_count:]

    @staticmethod
    def _select_by_size(backups: List[Backup], max_mb: int) -> List[Backup]:
        if max_mb <= 0:
            return []
        max_bytes = max_mb * 1024 * 1024
        total = sum(b.size_bytes for b in backups)
        selected = []
        for backup in reversed(backups):
            if total <= max_bytes:
                break
            selected.append(backup)
            total -= backup.size_bytes
        return selected

    def _remove(self, backups: List[Backup]) -> int:
        return sum(1 for b in backups if self._unlink(b.path))

    def _unlink(self, path: Path) -> bool:
        try:
            path.unlink()
        except OSError as e:
            self.logger.warning(f"Could not delete backup {path.name}: {e}")
            return False
        self.logger.debug(f"Deleted backup {path.name}")
        return True
