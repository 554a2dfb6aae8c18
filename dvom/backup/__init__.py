"""
Backup module for DVOM.

This module handles the core volume backup functionality including:
- Storage backends (local, S3, GCS)
- Snapshot versioning
- Docker volume access through a sandbox container
- Container stop/restart safety
- Execution orchestration
"""

from .executor import BackupExecutor, OperationCancelled, deadline_check
from .storage import (
    BaseStorage, LocalStorage, S3Storage, GCSStorage, create_storage,
    StorageError, BackupNotFoundError
)
from .snapshots import SnapshotStorage, SnapshotNotFoundError, parse_snapshot_ref
from .compression import CompressionError, ResourceLimitError
from .volumes import DockerEngine, EngineError, VolumeNotFoundError, ContainerNotFoundError
from .containers import ContainerSafetyManager, ContainerRestartError

__all__ = [
    'BackupExecutor',
    'OperationCancelled',
    'deadline_check',
    'BaseStorage',
    'LocalStorage',
    'S3Storage',
    'GCSStorage',
    'create_storage',
    'StorageError',
    'BackupNotFoundError',
    'SnapshotStorage',
    'SnapshotNotFoundError',
    'parse_snapshot_ref',
    'CompressionError',
    'ResourceLimitError',
    'DockerEngine',
    'EngineError',
    'VolumeNotFoundError',
    'ContainerNotFoundError',
    'ContainerSafetyManager',
    'ContainerRestartError',
]
