"""
Backup module for stackvault.

This module handles the core backup functionality including:
- Target adapters (mysql, postgres, redis, clickhouse)
- Compression and batch archives
- Storage (local backup root and S3)
- Backup and restore orchestration
- Retention policy enforcement
"""

from .adapters import create_adapter
from .artifacts import BackupArtifact, BatchResult, TargetKind, TargetResult, TargetState
from .executor import BackupCoordinator
from .restore import RestoreCoordinator
from .retention import RetentionSweeper, SweepResult
from .runtime import ContainerRuntime
from .storage import LocalStore, RemoteStore

__all__ = [
    'create_adapter',
    'BackupArtifact',
    'BatchResult',
    'TargetKind',
    'TargetResult',
    'TargetState',
    'BackupCoordinator',
    'RestoreCoordinator',
    'RetentionSweeper',
    'SweepResult',
    'ContainerRuntime',
    'LocalStore',
    'RemoteStore'
]
