"""
Restore a backup artifact into a live target.

A locator may name a per-target artifact (``redis_backup_<ts>.rdb.gz``) or a
batch archive (``backup_<ts>.tar.gz``); in the second case the matching
target's file is pulled out of the archive first. Everything unpacked goes
into a scratch directory that is removed afterwards, success or not.
"""

import logging
import shutil
import tempfile
from pathlib import Path
from typing import Callable

from stackvault.exceptions import ConfigurationInvalid, ConfirmationRequired, NotFound
from stackvault.settings import BackupSettings
from .adapters import TargetAdapter, create_adapter
from .artifacts import ARCHIVE_RE, ARTIFACT_RE, TargetKind, is_archive, timestamp_to_date
from .compression import decompress_file, extract_archive, strip_compression_suffix
from .runtime import ContainerRuntime
from .storage import LocalStore, RemoteStore


logger = logging.getLogger(__name__)


class RestoreCoordinator:
    """Resolves a locator to a file and replays it into the target."""

    def __init__(
        self,
        settings: BackupSettings,
        runtime: ContainerRuntime = None,
        local: LocalStore = None,
        remote: RemoteStore = None,
        adapter_factory: Callable[..., TargetAdapter] = create_adapter
    ):
        self.settings = settings
        self.runtime = runtime or ContainerRuntime(timeout=settings.command_timeout)
        self.local = local or LocalStore(settings.backup_root)
        self.remote = remote if remote is not None else RemoteStore(settings.remote)
        self.adapter_factory = adapter_factory

    def resolve(self, locator: str) -> Path:
        """
        Find the file a locator refers to.

        Order: ``<root>/<locator>``, the locator as a path, a search by name
        under the root, then a download from remote storage.

        Raises:
            NotFound: If no source has the file
        """
        candidate = self.local.root / locator
        if candidate.is_file():
            return candidate

        candidate = Path(locator)
        if candidate.is_file():
            return candidate

        name = Path(locator).name
        found = self.local.find(name)
        if found is not None:
            return found

        if self.remote.enabled:
            logger.info(f"{name} not found locally, trying remote storage")
            match = ARTIFACT_RE.match(name)
            if match:
                dest_dir = self.local.ensure_partition(timestamp_to_date(match.group('timestamp')))
            else:
                dest_dir = self.local.ensure_root()
            return self.remote.download(name, dest_dir)

        raise NotFound(f"Backup file not found: {locator}")

    def restore(self, kind, locator: str, confirmed: bool = False) -> Path:
        """
        Restore a target from a backup file.

        Args:
            kind: TargetKind or its string value
            locator: Filename or path of an artifact or batch archive
            confirmed: Must be True; the restore overwrites live data

        Returns:
            Path of the file that was resolved from the locator

        Raises:
            ConfirmationRequired: If confirmed is not True
            NotFound: If the file or the target's entry in an archive is missing
            ConfigurationInvalid: If the file belongs to another target
            ServiceUnavailable: If the target container is not running
            ToolInvocationFailure: If the restore client fails
        """
        if confirmed is not True:
            raise ConfirmationRequired(
                f"Restoring {kind} from {locator} overwrites existing data and must be confirmed"
            )

        kind = TargetKind.parse(kind)
        source = self.resolve(locator)
        logger.info(f"Restoring {kind.value} from {source}")

        scratch = Path(tempfile.mkdtemp(prefix='stackvault_restore_'))
        try:
            if is_archive(source.name):
                artifact_path = self._from_archive(kind, source, scratch)
            else:
                artifact_path = self._check_kind(kind, source)

            if artifact_path.name.endswith('.gz'):
                plain = scratch / strip_compression_suffix(artifact_path.name)
                artifact_path = decompress_file(artifact_path, plain)

            adapter = self.adapter_factory(kind, self.runtime, self.settings)
            adapter.restore(artifact_path)
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

        logger.info(f"{kind.value} restored from {source.name}")
        return source

    @staticmethod
    def _check_kind(kind: TargetKind, path: Path) -> Path:
        match = ARTIFACT_RE.match(path.name)
        if match and match.group('kind') != kind.value:
            raise ConfigurationInvalid(
                f"{path.name} is a {match.group('kind')} backup, not {kind.value}"
            )
        return path

    @staticmethod
    def _from_archive(kind: TargetKind, archive: Path, scratch: Path) -> Path:
        extract_dir = scratch / 'archive'
        extract_dir.mkdir()
        extract_archive(archive, extract_dir)

        matches = [p for p in extract_dir.rglob(f"{kind.value}_backup_*") if p.is_file()]
        if not matches:
            raise NotFound(f"No {kind.value} backup found in {archive.name}")

        # The partition may hold earlier runs from the same day: take the file
        # written with the archive, else the newest one
        def timestamp(path):
            match = ARTIFACT_RE.match(path.name)
            return match.group('timestamp') if match else ''

        archive_match = ARCHIVE_RE.match(archive.name)
        if archive_match:
            matches = [p for p in matches if timestamp(p) == archive_match.group('timestamp')] or matches
        chosen = max(matches, key=lambda p: (timestamp(p), p.name))

        logger.info(f"Found {chosen.name} in {archive.name}")
        return chosen
