"""
Unit tests for compression module (stackvault/backup/compression.py).

Tests in-place gzip of artifacts, partition archives and safe extraction.
"""

import gzip
import io
import tarfile
from unittest.mock import patch

import pytest

from stackvault.backup.artifacts import BackupArtifact, TargetKind
from stackvault.backup.compression import (
    CompressionError,
    compress_artifact,
    create_batch_archive,
    decompress_file,
    extract_archive,
    get_file_size,
    strip_compression_suffix,
)


@pytest.fixture
def mysql_artifact(tmp_path):
    path = tmp_path / 'mysql_backup_20240115_020000.sql'
    path.write_bytes(b'CREATE TABLE orders (id INT);\n' * 200)
    return BackupArtifact(kind=TargetKind.MYSQL, timestamp='20240115_020000', path=path)


class TestCompressArtifact:
    """Test compress_artifact function."""

    def test_replaces_original_with_gz(self, mysql_artifact):
        """Test the .gz file replaces the uncompressed artifact."""
        original = mysql_artifact.path

        compressed = compress_artifact(mysql_artifact)

        assert compressed.compressed is True
        assert compressed.path.name == 'mysql_backup_20240115_020000.sql.gz'
        assert compressed.path.exists()
        assert not original.exists()
        assert not compressed.path.with_name(compressed.path.name + '.tmp').exists()

    def test_round_trip_is_byte_exact(self, mysql_artifact, tmp_path):
        expected = mysql_artifact.path.read_bytes()

        compressed = compress_artifact(mysql_artifact)
        restored = decompress_file(compressed.path, tmp_path / 'restored.sql')

        assert restored.read_bytes() == expected

    def test_binary_round_trip(self, tmp_path):
        """Test binary snapshots survive compression unchanged."""
        payload = bytes(range(256)) * 64
        path = tmp_path / 'redis_backup_20240115_020000.rdb'
        path.write_bytes(payload)
        artifact = BackupArtifact(kind=TargetKind.REDIS, timestamp='20240115_020000', path=path)

        compressed = compress_artifact(artifact)

        with gzip.open(compressed.path, 'rb') as f:
            assert f.read() == payload

    def test_already_compressed_is_returned_unchanged(self, tmp_path):
        path = tmp_path / 'mysql_backup_20240115_020000.sql.gz'
        path.write_bytes(gzip.compress(b'x'))
        artifact = BackupArtifact(kind=TargetKind.MYSQL, timestamp='20240115_020000', path=path, compressed=True)

        assert compress_artifact(artifact) is artifact

    def test_failure_keeps_original(self, mysql_artifact):
        """Test a failed compression leaves the original and no partial output."""
        with patch('stackvault.backup.compression.shutil.copyfileobj', side_effect=OSError('disk full')):
            with pytest.raises(CompressionError, match='disk full'):
                compress_artifact(mysql_artifact)

        assert mysql_artifact.path.exists()
        assert list(mysql_artifact.path.parent.glob('*.gz*')) == []


class TestDecompress:
    """Test decompress_file and suffix handling."""

    def test_invalid_gzip_raises(self, tmp_path):
        bogus = tmp_path / 'mysql_backup_20240115_020000.sql.gz'
        bogus.write_bytes(b'not gzip at all')
        dest = tmp_path / 'out.sql'

        with pytest.raises(CompressionError):
            decompress_file(bogus, dest)

        assert not dest.exists()

    @pytest.mark.parametrize('filename,expected', [
        ('redis_backup_20240115_020000.rdb.gz', 'redis_backup_20240115_020000.rdb'),
        ('mysql_backup_20240115_020000.sql', 'mysql_backup_20240115_020000.sql'),
    ])
    def test_strip_compression_suffix(self, filename, expected):
        assert strip_compression_suffix(filename) == expected


class TestBatchArchive:
    """Test create_batch_archive function."""

    def test_archive_contains_partition(self, backup_root):
        """Test the archive holds the date directory and its files."""
        partition = backup_root / '2024-01-15'
        partition.mkdir()
        (partition / 'mysql_backup_20240115_020000.sql.gz').write_bytes(gzip.compress(b'a'))
        (partition / 'redis_backup_20240115_020000.rdb.gz').write_bytes(gzip.compress(b'b'))

        archive = create_batch_archive(backup_root, '2024-01-15', '20240115_020000')

        assert archive == backup_root / 'backup_20240115_020000.tar.gz'
        with tarfile.open(archive, 'r:gz') as tar:
            names = sorted(tar.getnames())
        assert names == [
            '2024-01-15',
            '2024-01-15/mysql_backup_20240115_020000.sql.gz',
            '2024-01-15/redis_backup_20240115_020000.rdb.gz',
        ]
        # Individual files stay in place
        assert len(list(partition.iterdir())) == 2

    def test_missing_partition_raises(self, backup_root):
        with pytest.raises(CompressionError, match='does not exist'):
            create_batch_archive(backup_root, '2024-01-15', '20240115_020000')

    def test_failure_removes_partial(self, backup_root):
        (backup_root / '2024-01-15').mkdir()

        with patch('stackvault.backup.compression.tarfile.open', side_effect=OSError('read-only')):
            with pytest.raises(CompressionError):
                create_batch_archive(backup_root, '2024-01-15', '20240115_020000')

        assert list(backup_root.glob('backup_*')) == []


class TestExtractArchive:
    """Test extract_archive function."""

    def test_extracts_partition(self, sample_archive, tmp_path):
        scratch = tmp_path / 'scratch'
        scratch.mkdir()

        extract_archive(sample_archive, scratch)

        extracted = scratch / '2024-01-15' / 'mysql_backup_20240115_020000.sql.gz'
        with gzip.open(extracted, 'rb') as f:
            assert f.read() == b'CREATE DATABASE shop;\n'

    def test_rejects_path_traversal(self, tmp_path):
        """Test members escaping the destination are refused."""
        archive = tmp_path / 'backup_20240115_020000.tar.gz'
        with tarfile.open(archive, 'w:gz') as tar:
            data = b'owned'
            info = tarfile.TarInfo('../escape.txt')
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
        scratch = tmp_path / 'scratch'
        scratch.mkdir()

        with pytest.raises(CompressionError, match='Unsafe'):
            extract_archive(archive, scratch)

        assert not (tmp_path / 'escape.txt').exists()

    def test_rejects_symlinks(self, tmp_path):
        archive = tmp_path / 'backup_20240115_020000.tar.gz'
        with tarfile.open(archive, 'w:gz') as tar:
            info = tarfile.TarInfo('2024-01-15/link')
            info.type = tarfile.SYMTYPE
            info.linkname = '/etc/passwd'
            tar.addfile(info)
        scratch = tmp_path / 'scratch'
        scratch.mkdir()

        with pytest.raises(CompressionError, match='Unsafe'):
            extract_archive(archive, scratch)

    def test_corrupt_archive_raises(self, tmp_path):
        archive = tmp_path / 'backup_20240115_020000.tar.gz'
        archive.write_bytes(b'garbage')

        with pytest.raises(CompressionError):
            extract_archive(archive, tmp_path)


class TestGetFileSize:

    def test_size(self, tmp_path):
        path = tmp_path / 'file.bin'
        path.write_bytes(b'12345')
        assert get_file_size(path) == 5

    def test_missing_file(self, tmp_path):
        with pytest.raises(CompressionError, match='not found'):
            get_file_size(tmp_path / 'missing.bin')
