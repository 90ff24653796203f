"""
Unit tests for the command line interface (stackvault/cli.py).

Coordinators are patched where the command would touch containers, S3 or
the real crontab.
"""

from pathlib import Path
from unittest.mock import patch

import pytest

from stackvault.backup.artifacts import BackupArtifact, BatchResult, TargetKind, TargetResult, TargetState
from stackvault.backup.retention import SweepResult
from stackvault.cli import cli
from stackvault.exceptions import DependencyMissing, LockHeld
from stackvault.models import BackupRun
from stackvault.scheduler import ScheduleRegistrar


@pytest.fixture
def coordinator_class():
    with patch('stackvault.cli.BackupCoordinator') as mock_class:
        yield mock_class


@pytest.fixture
def registrar_class(fake_crontab):
    """ScheduleRegistrar bound to the in-memory crontab."""
    def _build(settings):
        return ScheduleRegistrar(settings, table=fake_crontab)

    with patch('stackvault.cli.ScheduleRegistrar', side_effect=_build) as mock_class:
        yield mock_class


def batch_result(backup_root):
    partition = backup_root / '2024-01-15'
    partition.mkdir(parents=True, exist_ok=True)
    dump = partition / 'mysql_backup_20240115_020000.sql.gz'
    dump.write_bytes(b'x' * 10)

    result = BatchResult(timestamp='20240115_020000', partition=partition)
    result.targets[TargetKind.MYSQL] = TargetResult(
        kind=TargetKind.MYSQL,
        state=TargetState.SUCCEEDED,
        artifact=BackupArtifact(kind=TargetKind.MYSQL, timestamp='20240115_020000', path=dump, compressed=True)
    )
    result.targets[TargetKind.REDIS] = TargetResult(
        kind=TargetKind.REDIS, state=TargetState.FAILED, error='redis-cli exited with 1'
    )
    result.total_size_bytes = 10
    return result


class TestBackupRun:
    """Test `stackvault backup run`."""

    def test_requires_exactly_one_mode(self, runner):
        result = runner.invoke(cli, ['backup', 'run'])
        assert result.exit_code == 2
        assert 'exactly one of --all or --target' in result.output

        result = runner.invoke(cli, ['backup', 'run', '--all', '--target', 'mysql'])
        assert result.exit_code == 2

    def test_unknown_target(self, runner):
        result = runner.invoke(cli, ['backup', 'run', '--target', 'mongodb'])
        assert result.exit_code == 2

    def test_full_run_partial_exits_zero(self, runner, db, coordinator_class, backup_root):
        """Test a partial batch still exits 0 and is recorded."""
        coordinator_class.return_value.run_full.return_value = batch_result(backup_root)

        result = runner.invoke(cli, ['backup', 'run', '--all'])

        assert result.exit_code == 0, result.output
        assert 'mysql' in result.output
        assert 'redis-cli exited with 1' in result.output
        assert 'Backup partial' in result.output
        run = BackupRun.query.one()
        assert run.mode == 'full'
        assert run.status == 'partial'

    def test_single_run(self, runner, db, coordinator_class, backup_root):
        coordinator = coordinator_class.return_value
        coordinator.timestamp = '20240115_020000'
        coordinator.logs = ['[2024-01-15 02:00:00] Starting redis backup - 20240115_020000']
        coordinator.run_single.return_value = TargetResult(kind=TargetKind.REDIS, state=TargetState.SKIPPED,
                                                           error="container 'redis' not running")

        result = runner.invoke(cli, ['backup', 'run', '--target', 'redis'])

        assert result.exit_code == 0, result.output
        coordinator.run_single.assert_called_once_with('redis')
        assert 'redis: skipped' in result.output
        run = BackupRun.query.one()
        assert run.mode == 'single'
        assert run.logs.startswith('[2024-01-15 02:00:00]')

    def test_lock_held_exits_one(self, runner, coordinator_class):
        coordinator_class.return_value.run_full.side_effect = LockHeld('Another backup run (pid 4242) holds it')

        result = runner.invoke(cli, ['backup', 'run', '--all'])

        assert result.exit_code == 1
        assert 'Error: Another backup run' in result.output


class TestBackupList:

    def test_list(self, runner, sample_archive, backup_root):
        partition = backup_root / '2024-01-16'
        partition.mkdir()
        (partition / 'postgres_backup_20240116_020000.sql.gz').write_bytes(b'p' * 2048)

        result = runner.invoke(cli, ['backup', 'list'])

        assert result.exit_code == 0
        assert '2024-01-16/' in result.output
        assert 'postgres_backup_20240116_020000.sql.gz' in result.output
        assert '2.0K' in result.output
        assert 'backup_20240115_020000.tar.gz' in result.output

    def test_empty(self, runner):
        result = runner.invoke(cli, ['backup', 'list', '--target', 'redis'])

        assert result.exit_code == 0
        assert 'No backups found' in result.output


class TestBackupStatus:

    def test_status(self, runner, registrar_class, fake_crontab, sample_archive):
        fake_crontab.content = ('0 2 * * * cd /srv && stackvault backup run --all >> /srv/logs/x.log 2>&1 '
                                '# stackvault action=backup scope=all aggressive=0 created=2024-05-01T02:00:00\n')

        result = runner.invoke(cli, ['backup', 'status'])

        assert result.exit_code == 0, result.output
        assert 'Total files: 1' in result.output
        assert 'Full backup' in result.output
        assert 'Disabled' in result.output
        assert 'Local backups: 30 days' in result.output

    def test_status_without_crontab(self, runner):
        with patch('stackvault.cli.ScheduleRegistrar') as mock_class:
            mock_class.return_value.list.side_effect = DependencyMissing('crontab executable not found')
            result = runner.invoke(cli, ['backup', 'status'])

        assert result.exit_code == 0
        assert 'Could not read crontab' in result.output


class TestRestore:
    """Test `stackvault restore`."""

    def test_declined_confirmation_changes_nothing(self, runner, sample_archive):
        with patch('stackvault.backup.restore.RestoreCoordinator.resolve') as mock_resolve:
            result = runner.invoke(cli, ['restore', '--target', 'redis', '--file', sample_archive.name],
                                   input='n\n')

        assert result.exit_code == 1
        assert 'OVERWRITE' in result.output
        assert 'must be confirmed' in result.output
        mock_resolve.assert_not_called()

    def test_yes_skips_prompt(self, runner):
        with patch('stackvault.cli.RestoreCoordinator') as mock_class:
            mock_class.return_value.restore.return_value = Path('/b/backup_20240115_020000.tar.gz')
            result = runner.invoke(cli, ['restore', '--target', 'redis', '--file',
                                         'backup_20240115_020000.tar.gz', '--yes'])

        assert result.exit_code == 0, result.output
        assert 'OVERWRITE' not in result.output
        mock_class.return_value.restore.assert_called_once_with(
            'redis', 'backup_20240115_020000.tar.gz', confirmed=True
        )
        assert 'redis restored from backup_20240115_020000.tar.gz' in result.output

    def test_not_found_exits_one(self, runner):
        result = runner.invoke(cli, ['restore', '--target', 'mysql', '--file',
                                     'mysql_backup_20240101_020000.sql.gz', '--yes'])

        assert result.exit_code == 1
        assert 'Backup file not found' in result.output


class TestRetentionSweep:

    def test_sweep(self, runner):
        with patch('stackvault.cli.RetentionSweeper') as mock_class:
            mock_class.return_value.sweep.return_value = SweepResult(
                scope='local', retention_days=7, local_deleted=['2024-01-01'], remaining_files=4
            )
            result = runner.invoke(cli, ['retention', 'sweep', '--scope', 'local', '--aggressive'])

        assert result.exit_code == 0, result.output
        mock_class.return_value.sweep.assert_called_once_with('local', aggressive=True)
        assert 'deleted local  2024-01-01' in result.output
        assert '4 backup files remaining' in result.output

    def test_invalid_scope(self, runner):
        result = runner.invoke(cli, ['retention', 'sweep', '--scope', 'everywhere'])
        assert result.exit_code == 2


class TestSchedule:
    """Test `stackvault schedule` commands."""

    def test_install_full_backup(self, runner, registrar_class, fake_crontab):
        result = runner.invoke(cli, ['schedule', 'install', '--cron', '0 2 * * *', '--all'])

        assert result.exit_code == 0, result.output
        assert 'Installed: Full backup' in result.output
        assert '# stackvault action=backup scope=all aggressive=0' in fake_crontab.content

    def test_install_cleanup(self, runner, registrar_class, fake_crontab):
        result = runner.invoke(cli, ['schedule', 'install', '--cron', '0 3 * * 0', '--cleanup', 'both',
                                     '--aggressive'])

        assert result.exit_code == 0, result.output
        assert 'retention sweep --scope both --aggressive' in fake_crontab.content

    def test_install_invalid_cron(self, runner, registrar_class, fake_crontab):
        result = runner.invoke(cli, ['schedule', 'install', '--cron', '0 2 * *', '--all'])

        assert result.exit_code == 1
        assert '5 fields' in result.output
        assert fake_crontab.writes == []

    def test_install_requires_one_action(self, runner, registrar_class):
        result = runner.invoke(cli, ['schedule', 'install', '--cron', '0 2 * * *', '--all', '--target', 'mysql'])
        assert result.exit_code == 2

    def test_aggressive_needs_cleanup(self, runner, registrar_class):
        result = runner.invoke(cli, ['schedule', 'install', '--cron', '0 2 * * *', '--all', '--aggressive'])
        assert result.exit_code == 2

    def test_list_and_remove(self, runner, registrar_class, fake_crontab):
        fake_crontab.content = "30 1 * * * /usr/local/bin/report.sh\n"
        runner.invoke(cli, ['schedule', 'install', '--cron', '0 2 * * *', '--all'])
        runner.invoke(cli, ['schedule', 'install', '--cron', '0 3 * * *', '--cleanup', 'local'])

        listed = runner.invoke(cli, ['schedule', 'list'])
        assert 'Total jobs: 3' in listed.output
        assert 'Other job' in listed.output

        removed = runner.invoke(cli, ['schedule', 'remove', '--action', 'backup'])
        assert 'Removed 1 cron job(s)' in removed.output

        removed = runner.invoke(cli, ['schedule', 'remove', '--managed'])
        assert 'Removed 1 cron job(s)' in removed.output
        assert fake_crontab.content == "30 1 * * * /usr/local/bin/report.sh\n"

    def test_list_empty(self, runner, registrar_class):
        result = runner.invoke(cli, ['schedule', 'list'])
        assert 'No cron jobs found' in result.output

    def test_export_empty_exits_one(self, runner, registrar_class):
        result = runner.invoke(cli, ['schedule', 'export'])

        assert result.exit_code == 1
        assert 'No cron jobs found to save' in result.output

    def test_export_and_import(self, runner, registrar_class, fake_crontab, tmp_path):
        fake_crontab.content = "30 1 * * * /usr/local/bin/report.sh\n"
        target = tmp_path / 'saved.txt'

        result = runner.invoke(cli, ['schedule', 'export', '--path', str(target)])
        assert result.exit_code == 0, result.output
        assert target.read_text() == fake_crontab.content

        fake_crontab.content = ''
        result = runner.invoke(cli, ['schedule', 'import', str(target), '--yes'])
        assert result.exit_code == 0, result.output
        assert 'Imported 1 cron job(s)' in result.output
        assert fake_crontab.content == "30 1 * * * /usr/local/bin/report.sh\n"

    def test_import_cancelled(self, runner, registrar_class, fake_crontab, tmp_path):
        source = tmp_path / 'saved.txt'
        source.write_text("0 2 * * * /bin/true\n")

        result = runner.invoke(cli, ['schedule', 'import', str(source)], input='n\n')

        assert result.exit_code == 0
        assert 'Import cancelled' in result.output
        assert fake_crontab.writes == []


class TestRemote:

    def test_disabled(self, runner):
        result = runner.invoke(cli, ['remote', 'list'])

        assert result.exit_code == 1
        assert 'Remote sync is disabled' in result.output

    def test_verify(self, runner, app):
        app.config['S3_BACKUP_ENABLED'] = 'true'
        app.config['S3_BUCKET_NAME'] = 'test-bucket'
        app.extensions.pop('stackvault.settings', None)

        with patch('stackvault.cli.RemoteStore') as mock_class:
            mock_class.return_value.verify_credentials.return_value = {
                'account': '123456789012', 'arn': 'arn:aws:iam::123456789012:user/backup', 'user_id': 'AIDA'
            }
            result = runner.invoke(cli, ['remote', 'verify'])

        assert result.exit_code == 0, result.output
        assert 'Credentials valid' in result.output
        assert '123456789012' in result.output

    def test_verify_endpoint_override(self, runner, app):
        app.config['S3_BACKUP_ENABLED'] = 'true'
        app.config['S3_BUCKET_NAME'] = 'test-bucket'
        app.extensions.pop('stackvault.settings', None)

        with patch('stackvault.cli.RemoteStore') as mock_class:
            mock_class.return_value.verify_credentials.return_value = {
                'account': None, 'arn': None, 'user_id': None, 'endpoint': 'https://minio.local:9000'
            }
            result = runner.invoke(cli, ['remote', 'verify'])

        assert result.exit_code == 0, result.output
        assert 'Endpoint: https://minio.local:9000' in result.output
        assert 'Account' not in result.output
