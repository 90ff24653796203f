"""
Backup coordinator - orchestrates a backup run across the managed targets.

Full run workflow:
1. Acquire the run lock on the backup root
2. Create the date partition for this run
3. Dump each configured target in fixed order (skip stopped containers,
   record failures without aborting the batch)
4. Compress each artifact (if enabled)
5. Archive the partition into backup_<timestamp>.tar.gz (if compression is on)
6. Upload the archive (if remote sync is on)
7. Sweep expired backups, local and remote
8. Release the lock
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from stackvault.exceptions import StackvaultError
from stackvault.settings import BackupSettings
from .adapters import TargetAdapter, create_adapter
from .artifacts import (
    BatchResult, TargetKind, TargetResult, TargetState, new_timestamp, timestamp_to_date
)
from .compression import CompressionError, compress_artifact, create_batch_archive
from .locking import RunLock
from .retention import RetentionSweeper
from .runtime import ContainerRuntime
from .storage import LocalStore, RemoteStore


logger = logging.getLogger(__name__)


class BackupCoordinator:
    """
    Runs full and single-target backups.

    Collaborators are injectable; by default they are built from the settings.
    """

    def __init__(
        self,
        settings: BackupSettings,
        runtime: ContainerRuntime = None,
        local: LocalStore = None,
        remote: RemoteStore = None,
        sweeper: RetentionSweeper = None,
        adapter_factory: Callable[..., TargetAdapter] = create_adapter,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.settings = settings
        self.runtime = runtime or ContainerRuntime(timeout=settings.command_timeout)
        self.local = local or LocalStore(settings.backup_root)
        self.remote = remote if remote is not None else RemoteStore(settings.remote)
        self.sweeper = sweeper or RetentionSweeper(settings, local=self.local, remote=self.remote)
        self.adapter_factory = adapter_factory
        self.clock = clock
        self.timestamp = None
        self.logs = []

    @property
    def targets(self):
        """Configured targets in batch order."""
        return [kind for kind in TargetKind if kind.value in self.settings.targets]

    def run_full(self) -> BatchResult:
        """
        Back up every configured target into one date partition.

        Target failures are recorded on the result, never raised. Archive
        upload and retention failures are logged and do not fail the run.

        Returns:
            BatchResult with per-target outcomes

        Raises:
            LockHeld: If another run holds the backup root
            ConfigurationInvalid: If the backup root cannot be created
        """
        self.logs = []

        with RunLock(self.settings.backup_root):
            timestamp = new_timestamp(self.clock())
            self.timestamp = timestamp
            date = timestamp_to_date(timestamp)
            partition = self.local.ensure_partition(date)
            result = BatchResult(timestamp=timestamp, partition=partition)

            self._log(f"Starting full backup - {timestamp}")

            for kind in self.targets:
                result.targets[kind] = self._backup_target(kind, partition, timestamp)

            if self.settings.compression:
                if result.succeeded:
                    result.archive_path = self._archive(date, timestamp)
                else:
                    self._log("No target succeeded, skipping archive")

            if result.archive_path is not None and self.remote.enabled:
                result.remote_key = self._upload(result.archive_path)

            self._sweep()

            result.total_size_bytes = sum(
                t.artifact.size_bytes for t in result.targets.values()
                if t.artifact is not None and t.artifact.path.exists()
            )
            if result.archive_path is not None:
                result.total_size_bytes += result.archive_path.stat().st_size

            self._log(
                f"Full backup finished ({result.status}). "
                f"Succeeded: {self._names(result.succeeded)}, "
                f"Skipped: {self._names(result.skipped)}, "
                f"Failed: {self._names(result.failed)}"
            )

        result.logs = list(self.logs)
        return result

    def run_single(self, kind) -> TargetResult:
        """
        Back up one target and upload its artifact.

        Args:
            kind: TargetKind or its string value

        Returns:
            TargetResult (failures are recorded, not raised)

        Raises:
            LockHeld: If another run holds the backup root
            ConfigurationInvalid: If the kind is unknown or the root cannot be created
        """
        kind = TargetKind.parse(kind)
        self.logs = []

        with RunLock(self.settings.backup_root):
            timestamp = new_timestamp(self.clock())
            self.timestamp = timestamp
            partition = self.local.ensure_partition(timestamp_to_date(timestamp))

            self._log(f"Starting {kind.value} backup - {timestamp}")
            result = self._backup_target(kind, partition, timestamp)

            if result.succeeded and self.remote.enabled:
                result.remote_key = self._upload(result.artifact.path)

        return result

    def _backup_target(self, kind: TargetKind, partition, timestamp: str) -> TargetResult:
        result = TargetResult(kind=kind)

        try:
            adapter = self.adapter_factory(kind, self.runtime, self.settings)
            if not adapter.is_live():
                result.state = TargetState.SKIPPED
                result.error = f"container '{adapter.container}' not running"
                self._log(f"{kind.value}: container '{adapter.container}' not running, skipping")
                return result

            self._log(f"{kind.value}: dumping")
            artifact = adapter.produce(partition, timestamp)
        except StackvaultError as e:
            result.state = TargetState.FAILED
            result.error = str(e)
            self._log(f"{kind.value}: backup failed: {e}")
            return result
        except Exception as e:
            # Any other failure must not take the rest of the batch down
            logger.exception(f"Unexpected error while backing up {kind.value}")
            result.state = TargetState.FAILED
            result.error = str(e)
            self._log(f"{kind.value}: backup failed: {e}")
            return result

        if self.settings.compression:
            try:
                artifact = compress_artifact(artifact)
            except CompressionError as e:
                self._log(f"{kind.value}: compression failed, keeping uncompressed dump: {e}")

        result.state = TargetState.SUCCEEDED
        result.artifact = artifact
        self._log(f"{kind.value}: {artifact.filename} ({artifact.size_bytes / 1024 / 1024:.2f} MB)")
        return result

    def _archive(self, date: str, timestamp: str):
        self._log(f"Archiving partition {date}")
        try:
            archive_path = create_batch_archive(self.settings.backup_root, date, timestamp)
        except CompressionError as e:
            self._log(f"Archive failed: {e}")
            return None
        self._log(f"Archive created: {archive_path.name}")
        return archive_path

    def _upload(self, path) -> Optional[str]:
        try:
            key = self.remote.upload(path)
        except StackvaultError as e:
            self._log(f"Upload of {path.name} failed: {e}")
            return None
        self._log(f"Uploaded {path.name} to {key}")
        return key

    def _sweep(self):
        try:
            sweep = self.sweeper.sweep('both')
        except StackvaultError as e:
            self._log(f"Retention sweep failed: {e}")
            return
        self.logs.extend(sweep.logs)

    @staticmethod
    def _names(kinds) -> str:
        return ', '.join(k.value for k in kinds) or 'none'

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(message)
