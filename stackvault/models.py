from datetime import datetime
from stackvault import db


class BackupRun(db.Model):
    """One coordinator invocation (full batch or single target)"""
    __tablename__ = 'backup_runs'

    id = db.Column(db.Integer, primary_key=True)
    mode = db.Column(db.String(20), nullable=False)  # full, single
    timestamp = db.Column(db.String(15), nullable=False)  # YYYYMMDD_HHMMSS
    status = db.Column(db.String(20), nullable=False)  # success, partial, failed
    started_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    completed_at = db.Column(db.DateTime)
    total_size_bytes = db.Column(db.BigInteger)
    archive_path = db.Column(db.String(500))
    remote_key = db.Column(db.String(500))
    logs = db.Column(db.Text)  # Detailed execution logs

    # Relationship
    targets = db.relationship('TargetRun', back_populates='run', cascade='all, delete-orphan',
                              order_by='TargetRun.id')

    def to_dict(self):
        return {
            'id': self.id,
            'mode': self.mode,
            'timestamp': self.timestamp,
            'status': self.status,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'total_size_bytes': self.total_size_bytes,
            'archive_path': self.archive_path,
            'remote_key': self.remote_key,
            'targets': [t.to_dict() for t in self.targets],
        }

    def __repr__(self):
        return f'<BackupRun {self.timestamp} mode={self.mode} status={self.status}>'


class TargetRun(db.Model):
    """Outcome for one target within a run"""
    __tablename__ = 'target_runs'

    id = db.Column(db.Integer, primary_key=True)
    run_id = db.Column(db.Integer, db.ForeignKey('backup_runs.id'), nullable=False)
    target = db.Column(db.String(20), nullable=False)  # mysql, postgres, redis, clickhouse
    state = db.Column(db.String(20), nullable=False)  # not_attempted, skipped, succeeded, failed
    artifact_path = db.Column(db.String(500))
    size_bytes = db.Column(db.BigInteger)
    remote_key = db.Column(db.String(500))
    error_message = db.Column(db.Text)

    # Relationship
    run = db.relationship('BackupRun', back_populates='targets')

    def to_dict(self):
        return {
            'target': self.target,
            'state': self.state,
            'artifact_path': self.artifact_path,
            'size_bytes': self.size_bytes,
            'remote_key': self.remote_key,
            'error_message': self.error_message,
        }

    def __repr__(self):
        return f'<TargetRun {self.target} state={self.state}>'
