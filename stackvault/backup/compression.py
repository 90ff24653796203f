"""
Compression handlers for backup artifacts.

Supports:
- gzip of a single artifact in place (``<name>`` -> ``<name>.gz``)
- tar.gz archive of a whole date partition
- decompression and safe extraction for restore
"""

import gzip
import os
import shutil
import tarfile
from pathlib import Path

from stackvault.exceptions import ToolInvocationFailure
from .artifacts import BackupArtifact, archive_filename


class CompressionError(ToolInvocationFailure):
    """Raised when compression, decompression or archiving fails."""
    pass


def _remove_quietly(path: Path):
    try:
        if path.exists():
            path.unlink()
    except OSError:
        pass


def compress_artifact(artifact: BackupArtifact, compresslevel: int = 6) -> BackupArtifact:
    """
    Gzip an artifact in place.

    The compressed file is written under a temporary name and renamed once
    complete; only then is the uncompressed original removed.

    Args:
        artifact: Uncompressed artifact
        compresslevel: gzip level (1-9)

    Returns:
        A new BackupArtifact pointing at the ``.gz`` file

    Raises:
        CompressionError: If compression fails (the original is kept)
    """
    if artifact.compressed:
        return artifact

    source = artifact.path
    target = source.with_name(source.name + '.gz')
    partial = target.with_name(target.name + '.tmp')

    try:
        with open(source, 'rb') as f_in, open(partial, 'wb') as raw:
            # mtime=0 keeps output deterministic for identical input
            with gzip.GzipFile(filename=source.name, mode='wb', compresslevel=compresslevel,
                               fileobj=raw, mtime=0) as f_out:
                shutil.copyfileobj(f_in, f_out)
        os.replace(partial, target)
    except Exception as e:
        _remove_quietly(partial)
        raise CompressionError(f"Failed to compress {source.name}: {e}")

    source.unlink()
    return BackupArtifact(kind=artifact.kind, timestamp=artifact.timestamp, path=target, compressed=True)


def decompress_file(source_path: Path, dest_path: Path) -> Path:
    """
    Decompress a ``.gz`` file to a destination path.

    Args:
        source_path: Gzip-compressed file
        dest_path: Output file path

    Returns:
        dest_path

    Raises:
        CompressionError: If the input is not valid gzip or cannot be read
    """
    try:
        with gzip.open(source_path, 'rb') as f_in, open(dest_path, 'wb') as f_out:
            shutil.copyfileobj(f_in, f_out)
    except (OSError, EOFError) as e:
        _remove_quietly(Path(dest_path))
        raise CompressionError(f"Failed to decompress {Path(source_path).name}: {e}")
    return Path(dest_path)


def strip_compression_suffix(filename: str) -> str:
    """Filename without a trailing ``.gz``."""
    return filename[:-3] if filename.endswith('.gz') else filename


def create_batch_archive(backup_root: Path, date: str, timestamp: str) -> Path:
    """
    Archive a whole date partition into ``<root>/backup_<timestamp>.tar.gz``.

    The partition directory is left in place.

    Args:
        backup_root: Local store root
        date: Partition name (``YYYY-MM-DD``)
        timestamp: Run timestamp used in the archive name

    Returns:
        Path to the archive

    Raises:
        CompressionError: If archive creation fails
    """
    backup_root = Path(backup_root)
    partition = backup_root / date
    archive_path = backup_root / archive_filename(timestamp)
    partial = archive_path.with_name(archive_path.name + '.tmp')

    if not partition.is_dir():
        raise CompressionError(f"Partition does not exist: {partition}")

    try:
        with tarfile.open(partial, 'w:gz') as tar:
            tar.add(partition, arcname=date, recursive=True)
        os.replace(partial, archive_path)
    except Exception as e:
        # Clean up partial archive on failure
        _remove_quietly(partial)
        raise CompressionError(f"Failed to create archive: {e}")

    return archive_path


def extract_archive(archive_path: Path, dest_dir: Path) -> Path:
    """
    Extract a batch archive into a directory.

    Members with absolute paths, ``..`` components or links are rejected.

    Args:
        archive_path: ``backup_*.tar.gz`` file
        dest_dir: Existing scratch directory

    Returns:
        dest_dir

    Raises:
        CompressionError: If the archive is unreadable or unsafe
    """
    dest_dir = Path(dest_dir).resolve()

    try:
        with tarfile.open(archive_path, 'r:gz') as tar:
            members = tar.getmembers()
            for member in members:
                target = (dest_dir / member.name).resolve()
                if member.issym() or member.islnk() or (target != dest_dir and dest_dir not in target.parents):
                    raise CompressionError(f"Unsafe archive member: {member.name}")
            # tarfile's own member filter where the interpreter has it
            options = {'filter': 'data'} if hasattr(tarfile, 'data_filter') else {}
            tar.extractall(dest_dir, members=members, **options)
    except (tarfile.TarError, OSError) as e:
        raise CompressionError(f"Failed to extract {Path(archive_path).name}: {e}")

    return dest_dir


def get_file_size(path: Path) -> int:
    """
    Get the size of a file in bytes.

    Raises:
        CompressionError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(path)
    except FileNotFoundError:
        raise CompressionError(f"File not found: {path}")
    except OSError as e:
        raise CompressionError(f"Failed to get file size: {e}")
