"""
Backup module for cos-backup.

This module handles the core backup pipeline:
- Directory traversal with symlink-loop protection
- Streaming compression
- Upload to object storage with retry and progress
- Retention policy enforcement
- Run guard and execution orchestration
"""

from .executor import BackupExecutor, run_backup
from .compression import create_archive, CompressionError, EmptySourceError
from .storage import S3Storage, StorageError
from .uploader import Uploader, UploadError
from .retention import RetentionManager
from .guard import PipelineRunGuard, GuardBusyError
from .walker import calculate_dir_size

__all__ = [
    'BackupExecutor',
    'run_backup',
    'create_archive',
    'CompressionError',
    'EmptySourceError',
    'S3Storage',
    'StorageError',
    'Uploader',
    'UploadError',
    'RetentionManager',
    'PipelineRunGuard',
    'GuardBusyError',
    'calculate_dir_size'
]
