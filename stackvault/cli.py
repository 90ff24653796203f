"""
Command line interface.

``stackvault`` is a Flask CLI group: ``.env`` / ``.flaskenv`` files are loaded
through python-dotenv and every command runs inside an application context.
"""

import functools
from datetime import datetime

import click
from flask.cli import FlaskGroup

from stackvault import create_app, get_backup_settings
from stackvault.backup import BackupCoordinator, LocalStore, RemoteStore, RestoreCoordinator, RetentionSweeper
from stackvault.backup.artifacts import TargetKind, TargetState
from stackvault.backup.retention import SCOPES
from stackvault.backup.storage import describe_local, human_size
from stackvault.exceptions import StackvaultError
from stackvault.history import record_batch, record_single
from stackvault.scheduler import ScheduleAction, ScheduleRegistrar


TARGET_CHOICE = click.Choice([kind.value for kind in TargetKind])
SCOPE_CHOICE = click.Choice(list(SCOPES))

STATE_COLORS = {
    TargetState.SUCCEEDED: 'green',
    TargetState.SKIPPED: 'yellow',
    TargetState.FAILED: 'red',
    TargetState.NOT_ATTEMPTED: None,
}


def handle_errors(f):
    """Turn stackvault errors into a red message and exit status 1."""
    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except StackvaultError as e:
            click.secho(f"Error: {e}", fg='red', err=True)
            raise click.exceptions.Exit(1)
    return wrapper


@click.group(cls=FlaskGroup, create_app=create_app, add_version_option=False)
def cli():
    """Back up, restore and schedule the data services of the stack."""


@cli.group()
def backup():
    """Run and inspect backups."""


@backup.command('run')
@click.option('--all', 'run_all', is_flag=True, help='Back up every configured target.')
@click.option('--target', type=TARGET_CHOICE, help='Back up a single target.')
@handle_errors
def backup_run(run_all, target):
    """Run a full or single-target backup."""
    if run_all == bool(target):
        raise click.UsageError("Pass exactly one of --all or --target.")

    settings = get_backup_settings()
    coordinator = BackupCoordinator(settings)
    started_at = datetime.utcnow()

    if run_all:
        result = coordinator.run_full()
        record_batch(result, started_at)

        for kind, target_result in result.targets.items():
            line = f"  {kind.value:<11} {target_result.state.value}"
            if target_result.artifact is not None:
                line += f"  {target_result.artifact.filename}"
            if target_result.error:
                line += f"  ({target_result.error})"
            click.secho(line, fg=STATE_COLORS[target_result.state])

        if result.archive_path is not None:
            click.echo(f"Archive: {result.archive_path}")
        if result.remote_key:
            click.echo(f"Uploaded: {result.remote_key}")
        click.echo(f"Batch size: {human_size(result.total_size_bytes)}")
        click.secho(f"Backup {result.status}", fg='green' if result.status == 'success' else 'yellow')
        return

    result = coordinator.run_single(target)
    record_single(result, coordinator.timestamp, started_at, coordinator.logs)

    message = f"{target}: {result.state.value}"
    if result.artifact is not None:
        message += f"  {result.artifact.path}"
    if result.error:
        message += f"  ({result.error})"
    click.secho(message, fg=STATE_COLORS[result.state])
    if result.remote_key:
        click.echo(f"Uploaded: {result.remote_key}")


@backup.command('list')
@click.option('--target', type=TARGET_CHOICE, help='Only show this target.')
@handle_errors
def backup_list(target):
    """List local backups."""
    local = LocalStore(get_backup_settings().backup_root)

    artifacts = local.list_artifacts(target)
    if not artifacts:
        click.echo("No backups found")
    current_date = None
    for artifact in artifacts:
        if artifact.date != current_date:
            current_date = artifact.date
            click.secho(f"{current_date}/", bold=True)
        click.echo(f"  {artifact.filename:<45} {human_size(artifact.size_bytes):>8}")

    if target is None:
        archives = local.list_archives()
        if archives:
            click.secho("Archives:", bold=True)
        for archive in archives:
            click.echo(f"  {archive.name:<45} {human_size(archive.stat().st_size):>8}")


@backup.command('status')
@handle_errors
def backup_status():
    """Show backup directory, schedule, remote and retention status."""
    settings = get_backup_settings()
    summary = describe_local(LocalStore(settings.backup_root))

    click.secho("Local store", bold=True)
    click.echo(f"  Directory:   {summary['root']}")
    click.echo(f"  Total size:  {summary['total_size_human']}")
    click.echo(f"  Total files: {summary['files']}")
    click.echo(f"  Latest archive: {summary['latest_archive'] or '-'}")

    click.secho("Automated backups", bold=True)
    try:
        entries = [e for e in ScheduleRegistrar(settings).list() if e.managed]
    except StackvaultError as e:
        click.echo(f"  Could not read crontab: {e}")
    else:
        for entry in entries:
            click.echo(f"  {entry.cron_expression:<15} {entry.action.describe()}")
        if not entries:
            click.echo("  No automated backups configured")

    click.secho("Remote sync", bold=True)
    if settings.remote.enabled:
        click.echo(f"  Bucket: {settings.remote.bucket}")
        click.echo(f"  Region: {settings.remote.region}")
        if settings.remote.endpoint_url:
            click.echo(f"  Endpoint: {settings.remote.endpoint_url}")
    else:
        click.echo("  Disabled")

    click.secho("Retention", bold=True)
    click.echo(f"  Local backups: {settings.retention_days} days")
    click.echo(f"  Compression: {'on' if settings.compression else 'off'}")


@cli.command('restore')
@click.option('--target', required=True, type=TARGET_CHOICE, help='Target to restore into.')
@click.option('--file', 'locator', required=True, help='Artifact or batch archive name or path.')
@click.option('--yes', is_flag=True, help='Do not ask for confirmation.')
@handle_errors
def restore(target, locator, yes):
    """Restore a target from a backup, overwriting its data."""
    confirmed = yes or click.confirm(
        f"This will OVERWRITE the {target} data with {locator}. Continue?", default=False
    )
    source = RestoreCoordinator(get_backup_settings()).restore(target, locator, confirmed=confirmed)
    click.secho(f"{target} restored from {source.name}", fg='green')


@cli.group()
def retention():
    """Reclaim space from expired backups."""


@retention.command('sweep')
@click.option('--scope', type=SCOPE_CHOICE, default='both', show_default=True)
@click.option('--aggressive', is_flag=True, help='Keep only the last 7 days.')
@handle_errors
def retention_sweep(scope, aggressive):
    """Delete backups older than the retention period."""
    result = RetentionSweeper(get_backup_settings()).sweep(scope, aggressive=aggressive)

    for name in result.local_deleted:
        click.echo(f"  deleted local  {name}")
    for prefix in result.remote_deleted:
        click.echo(f"  deleted remote backups/{prefix}/")
    click.secho(
        f"Cleanup completed ({result.retention_days} days). "
        f"{result.remaining_files} backup files remaining.",
        fg='green'
    )


@cli.group()
def schedule():
    """Manage crontab entries for automated runs."""


@schedule.command('install')
@click.option('--cron', 'cron_expression', required=True, help="Five-field schedule, e.g. '0 2 * * *'.")
@click.option('--all', 'run_all', is_flag=True, help='Schedule a full backup.')
@click.option('--target', type=TARGET_CHOICE, help='Schedule a single-target backup.')
@click.option('--cleanup', type=SCOPE_CHOICE, help='Schedule a retention sweep for this scope.')
@click.option('--aggressive', is_flag=True, help='With --cleanup: keep only the last 7 days.')
@handle_errors
def schedule_install(cron_expression, run_all, target, cleanup, aggressive):
    """Add an automated backup or cleanup entry."""
    chosen = [flag for flag in (run_all, target, cleanup) if flag]
    if len(chosen) != 1:
        raise click.UsageError("Pass exactly one of --all, --target or --cleanup.")
    if aggressive and not cleanup:
        raise click.UsageError("--aggressive only applies to --cleanup.")

    if run_all:
        action = ScheduleAction.full_backup()
    elif target:
        action = ScheduleAction.single_backup(target)
    else:
        action = ScheduleAction.cleanup(cleanup, aggressive)

    entry = ScheduleRegistrar(get_backup_settings()).install(cron_expression, action)
    click.secho(f"Installed: {action.describe()}", fg='green')
    click.echo(f"  Schedule: {entry.cron_expression}")
    click.echo(f"  Log:      {entry.log_path}")
    if entry.next_run:
        click.echo(f"  Next run: {entry.next_run.isoformat()}")


@schedule.command('list')
@handle_errors
def schedule_list():
    """List every crontab entry."""
    entries = ScheduleRegistrar(get_backup_settings()).list()
    if not entries:
        click.echo("No cron jobs found")
        return

    click.echo(f"Total jobs: {len(entries)}")
    for number, entry in enumerate(entries, start=1):
        title = entry.action.describe() if entry.managed else 'Other job'
        click.secho(f"{number}. {title}", bold=True)
        click.echo(f"   Schedule: {entry.cron_expression}")
        if entry.log_path:
            click.echo(f"   Log:      {entry.log_path}")
        if entry.next_run:
            click.echo(f"   Next run: {entry.next_run.isoformat()}")
        if not entry.managed:
            click.echo(f"   Command:  {entry.command}")


@schedule.command('remove')
@click.option('--all', 'remove_all', is_flag=True, help='Empty the whole crontab.')
@click.option('--managed', is_flag=True, help='Remove every stackvault entry.')
@click.option('--action', type=click.Choice(['backup', 'cleanup']), help='Remove stackvault entries of one kind.')
@handle_errors
def schedule_remove(remove_all, managed, action):
    """Remove crontab entries."""
    if len([flag for flag in (remove_all, managed, action) if flag]) != 1:
        raise click.UsageError("Pass exactly one of --all, --managed or --action.")

    registrar = ScheduleRegistrar(get_backup_settings())
    if remove_all:
        count = registrar.remove_all()
    elif managed:
        count = registrar.remove(lambda a: True)
    else:
        count = registrar.remove(lambda a: a.action == action)
    click.secho(f"Removed {count} cron job(s)", fg='green')


@schedule.command('export')
@click.option('--path', type=click.Path(dir_okay=False), help='Destination file.')
@handle_errors
def schedule_export(path):
    """Save the crontab to a file."""
    written = ScheduleRegistrar(get_backup_settings()).export(path)
    click.secho(f"Cron jobs saved to {written}", fg='green')


@schedule.command('import')
@click.argument('path', type=click.Path(dir_okay=False))
@click.option('--yes', is_flag=True, help='Do not ask for confirmation.')
@handle_errors
def schedule_import(path, yes):
    """Replace the crontab with the content of a file."""
    if not yes and not click.confirm("This will REPLACE your current cron jobs. Continue?", default=False):
        click.echo("Import cancelled")
        return
    count = ScheduleRegistrar(get_backup_settings()).import_(path)
    click.secho(f"Imported {count} cron job(s) from {path}", fg='green')


@cli.group()
def remote():
    """Inspect remote (S3) storage."""


def _remote_store() -> RemoteStore:
    settings = get_backup_settings()
    if not settings.remote.enabled:
        raise click.ClickException("Remote sync is disabled (S3_BACKUP_ENABLED)")
    return RemoteStore(settings.remote)


@remote.command('list')
@handle_errors
def remote_list():
    """List remote backups."""
    store = _remote_store()
    objects = store.list_objects()
    if not objects:
        click.echo(f"No backups in s3://{store.bucket}/backups/")
        return
    for obj in objects:
        click.echo(f"{obj['last_modified']:%Y-%m-%d %H:%M:%S} {obj['size_human']:>8}  {obj['key']}")
    click.echo(f"Total: {len(objects)} object(s)")


@remote.command('verify')
@handle_errors
def remote_verify():
    """Check the configured S3 credentials."""
    identity = _remote_store().verify_credentials()
    click.secho("Credentials valid", fg='green')
    if identity.get('endpoint'):
        click.echo(f"  Endpoint: {identity['endpoint']}")
        return
    click.echo(f"  Account: {identity['account']}")
    click.echo(f"  ARN:     {identity['arn']}")
    click.echo(f"  User ID: {identity['user_id']}")


def main():
    cli()


if __name__ == '__main__':
    main()
