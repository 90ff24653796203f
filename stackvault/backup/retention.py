"""
Retention policy enforcement for backups.

Local items (date partitions and batch archives) expire by modification
time; remote items expire by the date prefix they live under.
"""

import logging
import shutil
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Iterable, List, Optional

from stackvault.exceptions import ConfigurationInvalid
from stackvault.settings import BackupSettings
from .artifacts import DATE_FORMAT
from .storage import LocalStore, RemoteStore


logger = logging.getLogger(__name__)

AGGRESSIVE_RETENTION_DAYS = 7
SCOPES = ('local', 'remote', 'both')


@dataclass
class SweepResult:
    """What a sweep removed and what it left behind."""
    scope: str
    retention_days: int
    local_deleted: List[str] = field(default_factory=list)
    remote_deleted: List[str] = field(default_factory=list)
    remaining_files: int = 0
    logs: List[str] = field(default_factory=list)

    def to_dict(self):
        return {
            'scope': self.scope,
            'retention_days': self.retention_days,
            'local_deleted': self.local_deleted,
            'remote_deleted': self.remote_deleted,
            'remaining_files': self.remaining_files,
        }


def _parse_date(value: str) -> Optional[date]:
    try:
        return datetime.strptime(value, DATE_FORMAT).date()
    except ValueError:
        return None


def select_expired_prefixes(prefixes: Iterable[str], retention_days: int, today: date) -> List[str]:
    """
    Pick the remote date prefixes strictly older than ``today - retention_days``.

    Prefixes that are not ``YYYY-MM-DD`` dates are never selected.

    Args:
        prefixes: Names directly under ``backups/``
        retention_days: Days to keep
        today: Reference date

    Returns:
        Expired prefixes in their input order
    """
    cutoff = today - timedelta(days=retention_days)
    expired = []
    for prefix in prefixes:
        parsed = _parse_date(prefix)
        if parsed is not None and parsed < cutoff:
            expired.append(prefix)
    return expired


class RetentionSweeper:
    """
    Deletes expired local and remote backups.

    ``now`` and ``today`` are injectable so age calculations can be pinned.
    """

    def __init__(self, settings: BackupSettings, local: LocalStore = None, remote: RemoteStore = None,
                 now=time.time, today=date.today):
        self.settings = settings
        self.local = local or LocalStore(settings.backup_root)
        self.remote = remote if remote is not None else RemoteStore(settings.remote)
        self.now = now
        self.today = today
        self.logs = []

    def sweep(self, scope: str = 'both', retention_days: int = None, aggressive: bool = False) -> SweepResult:
        """
        Enforce retention for the given scope.

        Args:
            scope: 'local', 'remote' or 'both'
            retention_days: Override for the configured retention
            aggressive: Keep only the last 7 days (wins over retention_days)

        Returns:
            SweepResult

        Raises:
            ConfigurationInvalid: If the scope or retention is invalid
            StorageError: If a remote operation fails
        """
        if scope not in SCOPES:
            raise ConfigurationInvalid(f"Unknown retention scope: {scope}. Valid options: {', '.join(SCOPES)}")

        if aggressive:
            days = AGGRESSIVE_RETENTION_DAYS
        elif retention_days is not None:
            days = retention_days
        else:
            days = self.settings.retention_days
        if days < 0:
            raise ConfigurationInvalid("Retention days must be >= 0")

        self.logs = []
        result = SweepResult(scope=scope, retention_days=days)
        self._log(f"Starting retention sweep (scope: {scope}, retention: {days} days"
                  f"{', aggressive' if aggressive else ''})")

        if scope in ('local', 'both'):
            result.local_deleted = self._sweep_local(days)

        if scope in ('remote', 'both'):
            if self.remote.enabled:
                result.remote_deleted = self._sweep_remote(days)
            else:
                self._log("Remote sync disabled, skipping remote cleanup")

        result.remaining_files = self.local.file_count()
        self._log(
            f"Retention sweep complete. "
            f"Local deleted: {len(result.local_deleted)}, "
            f"Remote deleted: {len(result.remote_deleted)}, "
            f"Local files remaining: {result.remaining_files}"
        )
        result.logs = list(self.logs)
        return result

    def is_expired(self, path: Path, retention_days: int) -> bool:
        """An item is expired when its age is strictly greater than the retention."""
        age = self.now() - path.stat().st_mtime
        return age > retention_days * 86400

    def _sweep_local(self, retention_days: int) -> List[str]:
        deleted = []

        for partition in self.local.list_partitions():
            if self.is_expired(partition, retention_days):
                shutil.rmtree(partition)
                deleted.append(partition.name)
                self._log(f"Deleted local partition: {partition.name}")

        for archive in self.local.list_archives():
            if self.is_expired(archive, retention_days):
                archive.unlink()
                deleted.append(archive.name)
                self._log(f"Deleted local archive: {archive.name}")

        return deleted

    def _sweep_remote(self, retention_days: int) -> List[str]:
        prefixes = self.remote.list_date_prefixes() or []
        expired = select_expired_prefixes(prefixes, retention_days, self.today())

        for prefix in expired:
            count = self.remote.delete_prefix(prefix)
            self._log(f"Deleted remote prefix: backups/{prefix}/ ({count} object(s))")

        return expired

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(message)
