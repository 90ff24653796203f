"""
Storage handlers for backup artifacts.

Supports:
- LocalStore: date-partitioned backup root on the local filesystem
- RemoteStore: S3 (or S3-compatible) bucket under ``backups/<YYYY-MM-DD>/``
"""

import importlib
import logging
import os
import re
import subprocess
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from stackvault.exceptions import (
    ConfigurationInvalid, DependencyMissing, NotFound, ToolInvocationFailure
)
from stackvault.settings import RemoteSettings
from .artifacts import ARCHIVE_RE, ARTIFACT_RE, BackupArtifact, TargetKind, date_from_filename


logger = logging.getLogger(__name__)

DATE_PARTITION_RE = re.compile(r'^\d{4}-\d{2}-\d{2}$')
REMOTE_ROOT = 'backups'


class StorageError(ToolInvocationFailure):
    """Raised when a storage operation fails."""
    pass


def human_size(size: int) -> str:
    """Format a byte count the way ``ls -h`` does (``512B``, ``1.5K``, ``2.0M``)."""
    value = float(size)
    for unit in ('B', 'K', 'M', 'G', 'T'):
        if value < 1024 or unit == 'T':
            return f"{int(value)}{unit}" if unit == 'B' else f"{value:.1f}{unit}"
        value /= 1024
    return f"{value:.1f}P"


class LocalStore:
    """
    Local backup root.

    Layout::

        <root>/<YYYY-MM-DD>/<kind>_backup_<ts>.<ext>[.gz]
        <root>/backup_<ts>.tar.gz
    """

    def __init__(self, root: Path):
        self.root = Path(root)

    def ensure_root(self) -> Path:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigurationInvalid(f"Cannot create backup directory {self.root}: {e}")
        return self.root

    def ensure_partition(self, date: str) -> Path:
        """
        Create the date partition if needed.

        Args:
            date: Partition name (``YYYY-MM-DD``)

        Returns:
            Path to the partition directory

        Raises:
            ConfigurationInvalid: If the directory cannot be created
        """
        partition = self.root / date
        try:
            partition.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigurationInvalid(f"Cannot create backup directory {partition}: {e}")
        return partition

    def list_partitions(self) -> List[Path]:
        """Date partition directories, oldest first."""
        if not self.root.is_dir():
            return []
        return sorted(p for p in self.root.iterdir() if p.is_dir() and DATE_PARTITION_RE.match(p.name))

    def list_archives(self) -> List[Path]:
        """Batch archives at the root, oldest first."""
        if not self.root.is_dir():
            return []
        return sorted(p for p in self.root.iterdir() if p.is_file() and ARCHIVE_RE.match(p.name))

    def list_artifacts(self, kind: Optional[TargetKind] = None) -> List[BackupArtifact]:
        """
        Per-target artifacts found anywhere under the root.

        Args:
            kind: Optional filter on the target kind

        Returns:
            Artifacts sorted by timestamp, newest last
        """
        if not self.root.is_dir():
            return []

        kind = TargetKind.parse(kind) if kind is not None else None
        artifacts = []
        for path in self.root.rglob('*'):
            if not path.is_file() or not ARTIFACT_RE.match(path.name):
                continue
            artifact = BackupArtifact.from_path(path)
            if kind is None or artifact.kind is kind:
                artifacts.append(artifact)

        return sorted(artifacts, key=lambda a: (a.timestamp, a.kind.value))

    def find(self, filename: str) -> Optional[Path]:
        """Locate a file by name anywhere under the root."""
        if not self.root.is_dir():
            return None
        for path in sorted(self.root.rglob(filename)):
            if path.is_file():
                return path
        return None

    def _files(self):
        if not self.root.is_dir():
            return []
        return [p for p in self.root.rglob('*') if p.is_file() and not p.name.startswith('.')]

    def total_size(self) -> int:
        return sum(p.stat().st_size for p in self._files())

    def file_count(self) -> int:
        return len(self._files())


def load_boto3(installer=None):
    """
    Import boto3, attempting a single ``pip install`` if it is missing.

    Args:
        installer: Callable performing the install; defaults to running
            ``python -m pip install boto3``

    Returns:
        The boto3 module

    Raises:
        DependencyMissing: If boto3 is still unavailable after the attempt
    """
    try:
        return importlib.import_module('boto3')
    except ImportError:
        logger.warning("boto3 not installed, attempting to install it")

    installer = installer or _pip_install
    try:
        installer('boto3')
    except (OSError, subprocess.CalledProcessError) as e:
        raise DependencyMissing(f"boto3 is required for remote sync and could not be installed: {e}")

    importlib.invalidate_caches()
    try:
        return importlib.import_module('boto3')
    except ImportError as e:
        raise DependencyMissing(f"boto3 is required for remote sync: {e}")


def _pip_install(package: str):
    subprocess.run(
        [sys.executable, '-m', 'pip', 'install', '--quiet', package],
        check=True,
        timeout=600
    )


def remote_key(filename: str) -> str:
    """
    Object key for a backup file: ``backups/<YYYY-MM-DD>/<filename>``.

    Raises:
        ConfigurationInvalid: If the filename carries no backup timestamp
    """
    date = date_from_filename(filename)
    if date is None:
        raise ConfigurationInvalid(f"Cannot derive a backup date from filename: {filename}")
    return f"{REMOTE_ROOT}/{date}/{os.path.basename(filename)}"


class RemoteStore:
    """
    Handler for the remote S3 copy of backups.

    Every public operation is a no-op returning None when remote sync is
    disabled. Credentials, region and endpoint are handed to the boto3
    client directly and never written to disk.
    """

    def __init__(self, settings: RemoteSettings, client=None, sts_client=None):
        """
        Args:
            settings: Remote sync settings
            client: Optional pre-built S3 client
            sts_client: Optional pre-built STS client
        """
        self.settings = settings
        self._client = client
        self._sts_client = sts_client

        if settings.enabled and not settings.bucket:
            raise ConfigurationInvalid("S3_BUCKET_NAME is required when S3_BACKUP_ENABLED is true")

    @property
    def enabled(self) -> bool:
        return self.settings.enabled

    @property
    def bucket(self) -> Optional[str]:
        return self.settings.bucket

    def _client_kwargs(self) -> Dict[str, Any]:
        kwargs = {'region_name': self.settings.region}
        if self.settings.access_key_id and self.settings.secret_access_key:
            kwargs['aws_access_key_id'] = self.settings.access_key_id
            kwargs['aws_secret_access_key'] = self.settings.secret_access_key
        return kwargs

    @property
    def client(self):
        if self._client is None:
            boto3 = load_boto3()
            kwargs = self._client_kwargs()
            endpoint = self.settings.effective_endpoint
            if endpoint:
                kwargs['endpoint_url'] = endpoint
            self._client = boto3.client('s3', **kwargs)
        return self._client

    @property
    def sts_client(self):
        if self._sts_client is None:
            boto3 = load_boto3()
            self._sts_client = boto3.client('sts', **self._client_kwargs())
        return self._sts_client

    def _skip(self, operation: str) -> bool:
        if not self.enabled:
            logger.info(f"Remote sync disabled, skipping {operation}")
            return True
        return False

    @staticmethod
    def _wrap(operation: str, e: Exception) -> StorageError:
        error = getattr(e, 'response', None) or {}
        code = error.get('Error', {}).get('Code')
        if code:
            return StorageError(f"S3 {operation} failed ({code}): {e}")
        return StorageError(f"S3 {operation} failed: {e}")

    def upload(self, path: Path) -> Optional[str]:
        """
        Copy a local backup file to the bucket.

        Args:
            path: Local artifact or archive

        Returns:
            Object key, or None when remote sync is disabled

        Raises:
            StorageError: If the upload fails
        """
        if self._skip('upload'):
            return None

        path = Path(path)
        if not path.is_file():
            raise NotFound(f"Local file not found: {path}")

        key = remote_key(path.name)
        logger.info(f"Uploading {path.name} to s3://{self.bucket}/{key}")
        try:
            self.client.upload_file(str(path), self.bucket, key)
        except DependencyMissing:
            raise
        except Exception as e:
            raise self._wrap('upload', e)
        return key

    def download(self, filename: str, dest_dir: Path) -> Optional[Path]:
        """
        Fetch a backup file into a local directory.

        Args:
            filename: Artifact or archive filename
            dest_dir: Directory receiving the file

        Returns:
            Local path, or None when remote sync is disabled

        Raises:
            NotFound: If the object does not exist
            StorageError: If the download fails for another reason
        """
        if self._skip('download'):
            return None

        key = remote_key(filename)
        dest_dir = Path(dest_dir)
        dest_dir.mkdir(parents=True, exist_ok=True)
        dest = dest_dir / os.path.basename(filename)
        partial = dest.with_name(dest.name + '.tmp')

        logger.info(f"Downloading s3://{self.bucket}/{key}")
        try:
            self.client.download_file(self.bucket, key, str(partial))
        except DependencyMissing:
            raise
        except Exception as e:
            if partial.exists():
                partial.unlink()
            code = (getattr(e, 'response', None) or {}).get('Error', {}).get('Code')
            if code in ('404', 'NoSuchKey', 'NotFound'):
                raise NotFound(f"Remote backup not found: {key}")
            raise self._wrap('download', e)

        os.replace(partial, dest)
        return dest

    def list_objects(self) -> Optional[List[Dict[str, Any]]]:
        """
        Every object under ``backups/``.

        Returns:
            List of dicts with 'key', 'size', 'size_human' and 'last_modified',
            or None when remote sync is disabled
        """
        if self._skip('listing'):
            return None

        try:
            objects = []
            paginator = self.client.get_paginator('list_objects_v2')
            for page in paginator.paginate(Bucket=self.bucket, Prefix=f"{REMOTE_ROOT}/"):
                for obj in page.get('Contents', []):
                    objects.append({
                        'key': obj['Key'],
                        'size': obj['Size'],
                        'size_human': human_size(obj['Size']),
                        'last_modified': obj['LastModified'],
                    })
            return objects
        except DependencyMissing:
            raise
        except Exception as e:
            raise self._wrap('list', e)

    def list_date_prefixes(self) -> Optional[List[str]]:
        """
        Names directly under ``backups/`` (normally ``YYYY-MM-DD``), sorted.

        Non-date names are returned as-is; callers decide what to do with them.
        """
        if self._skip('listing'):
            return None

        try:
            prefixes = []
            paginator = self.client.get_paginator('list_objects_v2')
            for page in paginator.paginate(Bucket=self.bucket, Prefix=f"{REMOTE_ROOT}/", Delimiter='/'):
                for entry in page.get('CommonPrefixes', []):
                    name = entry['Prefix'][len(REMOTE_ROOT) + 1:].rstrip('/')
                    if name:
                        prefixes.append(name)
            return sorted(prefixes)
        except DependencyMissing:
            raise
        except Exception as e:
            raise self._wrap('list', e)

    def delete_prefix(self, date: str) -> Optional[int]:
        """
        Delete every object under ``backups/<date>/``.

        Returns:
            Number of objects deleted, or None when remote sync is disabled
        """
        if self._skip('delete'):
            return None

        prefix = f"{REMOTE_ROOT}/{date}/"
        deleted = 0
        try:
            paginator = self.client.get_paginator('list_objects_v2')
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                keys = [{'Key': obj['Key']} for obj in page.get('Contents', [])]
                if not keys:
                    continue
                response = self.client.delete_objects(Bucket=self.bucket, Delete={'Objects': keys, 'Quiet': True})
                errors = response.get('Errors') or []
                if errors:
                    failed = ', '.join(f"{e.get('Key')} ({e.get('Code')})" for e in errors)
                    raise StorageError(
                        f"S3 delete failed for {len(errors)} object(s) under {prefix}: {failed}"
                    )
                deleted += len(keys)
        except (DependencyMissing, StorageError):
            raise
        except Exception as e:
            raise self._wrap('delete', e)

        logger.info(f"Deleted {deleted} object(s) under s3://{self.bucket}/{prefix}")
        return deleted

    def verify_credentials(self) -> Optional[Dict[str, str]]:
        """
        Check the configured credentials.

        Against AWS this asks STS GetCallerIdentity. S3-compatible services
        behind an endpoint override have no STS, so there the credentials are
        checked with HeadBucket on the configured endpoint and bucket.

        Returns:
            Dict with 'account', 'arn', 'user_id' and 'endpoint' (the
            identity fields are None for an endpoint override), or None when
            remote sync is disabled

        Raises:
            StorageError: If the credentials are rejected
        """
        if self._skip('credential check'):
            return None

        endpoint = self.settings.effective_endpoint
        try:
            if endpoint:
                self.client.head_bucket(Bucket=self.bucket)
                identity = {}
            else:
                identity = self.sts_client.get_caller_identity()
        except DependencyMissing:
            raise
        except Exception as e:
            raise self._wrap('credential check', e)

        return {
            'account': identity.get('Account'),
            'arn': identity.get('Arn'),
            'user_id': identity.get('UserId'),
            'endpoint': endpoint,
        }


def describe_local(store: LocalStore) -> Dict[str, Any]:
    """Summary of the local store used by ``backup status`` and the status API."""
    archives = store.list_archives()
    partitions = store.list_partitions()
    latest = archives[-1] if archives else None
    return {
        'root': str(store.root),
        'partitions': len(partitions),
        'archives': len(archives),
        'files': store.file_count(),
        'total_size': store.total_size(),
        'total_size_human': human_size(store.total_size()),
        'latest_archive': latest.name if latest else None,
        'latest_archive_time': (
            datetime.fromtimestamp(latest.stat().st_mtime).isoformat(timespec='seconds') if latest else None
        ),
    }
