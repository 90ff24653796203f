"""
Shared pytest fixtures for stackvault tests.

This module provides fixtures for:
- Flask app, CLI runner and test client
- Database setup with in-memory SQLite
- BackupSettings pointing at temporary directories
- Mock fixtures for external services (S3, Docker, crontab)
- Sample artifacts and batch archives
"""

import gzip
import tarfile
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import boto3
from moto import mock_aws

from stackvault import create_app, db as _db
from stackvault.backup.runtime import ContainerRuntime
from stackvault.settings import BackupSettings, RemoteSettings


class FakeCrontab:
    """In-memory stand-in for CrontabTable."""

    def __init__(self, content=''):
        self.content = content
        self.writes = []

    def read(self):
        return self.content

    def write(self, content):
        if content and not content.endswith('\n'):
            content += '\n'
        self.content = content
        self.writes.append(content)


def make_settings(tmp_path, **overrides):
    """BackupSettings rooted in tmp_path; keyword arguments override config keys."""
    config = {
        'BACKUP_LOCAL_DIR': str(tmp_path / 'backups'),
        'LOG_DIR': str(tmp_path / 'logs'),
        'CRON_DIR': str(tmp_path / 'cron'),
        'SCHEDULE_WORKDIR': str(tmp_path),
        'SCHEDULE_EXECUTABLE': 'stackvault',
        'S3_BACKUP_ENABLED': 'false',
    }
    config.update(overrides)
    return BackupSettings.from_mapping(config)


@pytest.fixture(scope='function')
def app(tmp_path):
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite and temporary backup, log and cron directories.
    """
    app = create_app('testing', overrides={
        'BACKUP_LOCAL_DIR': str(tmp_path / 'backups'),
        'LOG_DIR': str(tmp_path / 'logs'),
        'CRON_DIR': str(tmp_path / 'cron'),
        'SCHEDULE_WORKDIR': str(tmp_path),
    })

    yield app


@pytest.fixture(scope='function')
def db(app):
    """
    Create database with all tables.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def runner(app):
    """Flask CLI test runner."""
    return app.test_cli_runner()


@pytest.fixture
def settings(tmp_path):
    """Local-only settings with compression on and the default 30 day retention."""
    return make_settings(tmp_path)


@pytest.fixture
def remote_settings():
    return RemoteSettings(
        enabled=True,
        bucket='test-bucket',
        region='us-east-1',
        access_key_id='testing',
        secret_access_key='testing'
    )


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.client('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def mock_runtime():
    """
    Mock ContainerRuntime.

    Every container reports as running unless a test changes ``is_running``.
    """
    runtime = MagicMock(spec=ContainerRuntime)
    runtime.is_running.return_value = True
    return runtime


@pytest.fixture
def fake_crontab():
    return FakeCrontab()


@pytest.fixture
def backup_root(settings):
    root = Path(settings.backup_root)
    root.mkdir(parents=True, exist_ok=True)
    return root


@pytest.fixture
def sample_archive(backup_root):
    """
    Create a batch archive holding compressed mysql and redis artifacts.

    The archive is ``backup_20240115_020000.tar.gz`` at the backup root; the
    partition directory itself is not left behind.
    """
    staging = backup_root.parent / 'staging' / '2024-01-15'
    staging.mkdir(parents=True)

    with gzip.open(staging / 'mysql_backup_20240115_020000.sql.gz', 'wb') as f:
        f.write(b'CREATE DATABASE shop;\n')
    with gzip.open(staging / 'redis_backup_20240115_020000.rdb.gz', 'wb') as f:
        f.write(b'REDIS0011-snapshot')

    archive_path = backup_root / 'backup_20240115_020000.tar.gz'
    with tarfile.open(archive_path, 'w:gz') as tar:
        tar.add(staging, arcname='2024-01-15')

    return archive_path


@pytest.fixture
def settings_factory(tmp_path):
    """Build settings rooted in tmp_path with extra config keys."""
    def _make(**overrides):
        return make_settings(tmp_path, **overrides)
    return _make
