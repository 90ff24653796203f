"""
Run history persistence.

Coordinators stay free of the database; the CLI hands their results to
these functions once a run is over.
"""

import logging
from datetime import datetime
from typing import List, Optional

from stackvault import db
from stackvault.backup.artifacts import BatchResult, TargetResult, TargetState
from stackvault.models import BackupRun, TargetRun


logger = logging.getLogger(__name__)


def _target_row(result: TargetResult) -> TargetRun:
    artifact = result.artifact
    exists = artifact is not None and artifact.path.exists()
    return TargetRun(
        target=result.kind.value,
        state=result.state.value,
        artifact_path=str(artifact.path) if artifact is not None else None,
        size_bytes=artifact.size_bytes if exists else None,
        remote_key=result.remote_key,
        error_message=result.error,
    )


def record_batch(result: BatchResult, started_at: datetime) -> BackupRun:
    """
    Store a full run.

    Args:
        result: Result returned by BackupCoordinator.run_full
        started_at: When the run started (UTC)

    Returns:
        The committed BackupRun
    """
    run = BackupRun(
        mode='full',
        timestamp=result.timestamp,
        status=result.status,
        started_at=started_at,
        completed_at=datetime.utcnow(),
        total_size_bytes=result.total_size_bytes,
        archive_path=str(result.archive_path) if result.archive_path else None,
        remote_key=result.remote_key,
        logs='\n'.join(result.logs),
    )
    for target in result.targets.values():
        run.targets.append(_target_row(target))

    db.session.add(run)
    db.session.commit()
    logger.debug(f"Recorded run {run.id} ({run.status})")
    return run


def record_single(result: TargetResult, timestamp: str, started_at: datetime, logs: List[str]) -> BackupRun:
    """Store a single-target run."""
    if result.state is TargetState.FAILED:
        status = 'failed'
    else:
        status = 'success'

    row = _target_row(result)
    run = BackupRun(
        mode='single',
        timestamp=timestamp,
        status=status,
        started_at=started_at,
        completed_at=datetime.utcnow(),
        total_size_bytes=row.size_bytes,
        remote_key=result.remote_key,
        logs='\n'.join(logs),
    )
    run.targets.append(row)

    db.session.add(run)
    db.session.commit()
    return run


def recent_runs(limit: int = 20) -> List[BackupRun]:
    return BackupRun.query.order_by(BackupRun.started_at.desc(), BackupRun.id.desc()).limit(limit).all()


def last_run() -> Optional[BackupRun]:
    runs = recent_runs(limit=1)
    return runs[0] if runs else None
