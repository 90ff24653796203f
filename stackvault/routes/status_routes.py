"""
Status routes - read-only view of backups, history and schedule.
"""

import logging

from flask import Blueprint, jsonify, request

from stackvault import get_backup_settings
from stackvault.backup.storage import LocalStore, describe_local, human_size
from stackvault.exceptions import ConfigurationInvalid, StackvaultError
from stackvault.history import last_run, recent_runs
from stackvault.scheduler import ScheduleRegistrar


logger = logging.getLogger(__name__)

bp = Blueprint('status', __name__, url_prefix='/api')


@bp.route('/status', methods=['GET'])
def get_status():
    """
    Get backup system status.

    Returns:
        JSON with local store summary, remote and retention settings,
        the last run and the managed cron entries
    """
    settings = get_backup_settings()
    local = LocalStore(settings.backup_root)

    schedule = None
    try:
        entries = ScheduleRegistrar(settings).list()
        schedule = [entry.to_dict() for entry in entries if entry.managed]
    except StackvaultError as e:
        # crontab may be unavailable where the API runs
        logger.warning(f"Could not read crontab: {e}")

    run = last_run()

    return jsonify({
        'local': describe_local(local),
        'remote': {
            'enabled': settings.remote.enabled,
            'bucket': settings.remote.bucket,
            'region': settings.remote.region,
            'endpoint_url': settings.remote.effective_endpoint,
        },
        'retention_days': settings.retention_days,
        'compression': settings.compression,
        'targets': list(settings.targets),
        'last_run': run.to_dict() if run else None,
        'schedule': schedule,
    })


@bp.route('/backups', methods=['GET'])
def list_backups():
    """
    List local artifacts and batch archives.

    Query params:
        - target: Only artifacts for this target kind

    Returns:
        JSON with artifacts (newest first) and archives
    """
    settings = get_backup_settings()
    local = LocalStore(settings.backup_root)
    target = request.args.get('target')

    try:
        artifacts = local.list_artifacts(target)
    except ConfigurationInvalid as e:
        return jsonify({'error': str(e)}), 400

    artifact_data = []
    for artifact in reversed(artifacts):
        size = artifact.size_bytes
        artifact_data.append({
            'target': artifact.kind.value,
            'filename': artifact.filename,
            'date': artifact.date,
            'timestamp': artifact.timestamp,
            'compressed': artifact.compressed,
            'size_bytes': size,
            'size_human': human_size(size),
        })

    archive_data = []
    if target is None:
        for archive in reversed(local.list_archives()):
            size = archive.stat().st_size
            archive_data.append({
                'filename': archive.name,
                'size_bytes': size,
                'size_human': human_size(size),
            })

    return jsonify({
        'artifacts': artifact_data,
        'archives': archive_data,
    })


@bp.route('/history', methods=['GET'])
def list_history():
    """
    Get recent runs.

    Query params:
        - limit: Max number of records (default: 20, max: 200)
    """
    limit = request.args.get('limit', 20, type=int)

    # Enforce limits
    if limit > 200:
        limit = 200
    if limit < 1:
        limit = 1

    runs = recent_runs(limit=limit)
    return jsonify({
        'runs': [run.to_dict() for run in runs],
        'count': len(runs),
    })
