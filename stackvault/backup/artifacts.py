"""
Backup artifact naming and result types.

Artifact filenames encode both the target kind and the creation timestamp:
``<kind>_backup_<YYYYMMDD_HHMMSS>.<ext>[.gz]``. Batch archives are named
``backup_<YYYYMMDD_HHMMSS>.tar.gz``. Everything downstream (remote keys,
restore lookup, listing) recovers kind and date from the name alone.
"""

import os
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Union

from stackvault.exceptions import ConfigurationInvalid


TIMESTAMP_FORMAT = '%Y%m%d_%H%M%S'
DATE_FORMAT = '%Y-%m-%d'

ARTIFACT_RE = re.compile(
    r'^(?P<kind>mysql|postgres|redis|clickhouse)_backup_'
    r'(?P<timestamp>\d{8}_\d{6})\.(?P<ext>sql|rdb)(?P<gz>\.gz)?$'
)
ARCHIVE_RE = re.compile(r'^backup_(?P<timestamp>\d{8}_\d{6})\.tar\.gz$')
EMBEDDED_TIMESTAMP_RE = re.compile(r'backup_(?P<date>\d{8})_(?P<time>\d{6})')


class TargetKind(str, Enum):
    """Supported data services, in batch order."""
    MYSQL = 'mysql'
    POSTGRES = 'postgres'
    REDIS = 'redis'
    CLICKHOUSE = 'clickhouse'

    @property
    def extension(self) -> str:
        return 'rdb' if self is TargetKind.REDIS else 'sql'

    @classmethod
    def parse(cls, value: Union[str, 'TargetKind']) -> 'TargetKind':
        """
        Coerce a string to a TargetKind.

        Raises:
            ConfigurationInvalid: If the value names no supported target
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            valid = ', '.join(k.value for k in cls)
            raise ConfigurationInvalid(f"Unknown target: {value}. Valid options: {valid}")


class TargetState(str, Enum):
    """Lifecycle of one target inside a run."""
    NOT_ATTEMPTED = 'not_attempted'
    SKIPPED = 'skipped'
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'


def new_timestamp(now: Optional[datetime] = None) -> str:
    """Timestamp used in artifact names (``YYYYMMDD_HHMMSS``)."""
    return (now or datetime.now()).strftime(TIMESTAMP_FORMAT)


def timestamp_to_date(timestamp: str) -> str:
    """Reformat ``YYYYMMDD_HHMMSS`` into the ``YYYY-MM-DD`` partition name."""
    return datetime.strptime(timestamp, TIMESTAMP_FORMAT).strftime(DATE_FORMAT)


def date_from_filename(filename: str) -> Optional[str]:
    """
    Extract the ``YYYY-MM-DD`` date embedded in a backup or archive filename.

    Returns:
        Date string, or None if the name carries no backup timestamp
    """
    match = EMBEDDED_TIMESTAMP_RE.search(os.path.basename(filename))
    if not match:
        return None
    return timestamp_to_date(f"{match.group('date')}_{match.group('time')}")


def artifact_filename(kind: TargetKind, timestamp: str, compressed: bool = False) -> str:
    name = f"{kind.value}_backup_{timestamp}.{kind.extension}"
    return f"{name}.gz" if compressed else name


def archive_filename(timestamp: str) -> str:
    return f"backup_{timestamp}.tar.gz"


def is_archive(filename: str) -> bool:
    return filename.endswith('.tar.gz')


@dataclass
class BackupArtifact:
    """A single produced backup file for one target at one point in time."""
    kind: TargetKind
    timestamp: str
    path: Path
    compressed: bool = False

    @property
    def filename(self) -> str:
        return self.path.name

    @property
    def date(self) -> str:
        return timestamp_to_date(self.timestamp)

    @property
    def size_bytes(self) -> int:
        return self.path.stat().st_size

    @classmethod
    def from_path(cls, path: Union[str, Path]) -> 'BackupArtifact':
        """
        Build an artifact from an existing file, decoding its name.

        Raises:
            ConfigurationInvalid: If the filename does not follow the
                artifact naming scheme
        """
        path = Path(path)
        match = ARTIFACT_RE.match(path.name)
        if not match:
            raise ConfigurationInvalid(f"Not a backup artifact filename: {path.name}")
        return cls(
            kind=TargetKind(match.group('kind')),
            timestamp=match.group('timestamp'),
            path=path,
            compressed=bool(match.group('gz')),
        )


@dataclass
class TargetResult:
    """Outcome of one target within a run."""
    kind: TargetKind
    state: TargetState = TargetState.NOT_ATTEMPTED
    artifact: Optional[BackupArtifact] = None
    remote_key: Optional[str] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.state is TargetState.SUCCEEDED


@dataclass
class BatchResult:
    """Outcome of a full run across all configured targets."""
    timestamp: str
    partition: Path
    targets: Dict[TargetKind, TargetResult] = field(default_factory=dict)
    archive_path: Optional[Path] = None
    remote_key: Optional[str] = None
    total_size_bytes: int = 0
    logs: List[str] = field(default_factory=list)

    def by_state(self, state: TargetState) -> List[TargetKind]:
        return [kind for kind, result in self.targets.items() if result.state is state]

    @property
    def succeeded(self) -> List[TargetKind]:
        return self.by_state(TargetState.SUCCEEDED)

    @property
    def skipped(self) -> List[TargetKind]:
        return self.by_state(TargetState.SKIPPED)

    @property
    def failed(self) -> List[TargetKind]:
        return self.by_state(TargetState.FAILED)

    @property
    def status(self) -> str:
        """'success' when nothing failed, 'failed' when nothing succeeded, else 'partial'."""
        if not self.failed:
            return 'success'
        if not self.succeeded:
            return 'failed'
        return 'partial'
