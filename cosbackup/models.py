"""
Data model for cos-backup.

Configuration snapshots are frozen dataclasses: the scheduler swaps the whole
BackupConfig on reload and never mutates one in place. Run-scoped records
(ArchiveTask, RetentionResult, BackupRun) live only for the duration of a run.
"""

import itertools
import os
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional


DEFAULT_KEEP_DAYS = 30
DEFAULT_COMPRESSION_FORMAT = 'tar.zst'

_task_sequence = itertools.count(1)


@dataclass(frozen=True)
class ScheduleConfig:
    """Daily wall-clock schedule."""
    enabled: bool = False
    hour: int = 2
    minute: int = 0
    timezone: str = ''


@dataclass(frozen=True)
class StorageConfig:
    """Object storage bucket, credentials and retention window."""
    access_key: str = ''
    secret_key: str = ''
    bucket: str = ''
    region: str = 'us-east-1'
    prefix: str = 'backup/'
    endpoint_url: Optional[str] = None
    keep_days: int = DEFAULT_KEEP_DAYS

    @property
    def normalized_prefix(self) -> str:
        """Prefix with a trailing slash, or empty string for the bucket root."""
        if self.prefix and not self.prefix.endswith('/'):
            return self.prefix + '/'
        return self.prefix


@dataclass(frozen=True)
class BackupConfig:
    """Immutable configuration snapshot used for one pipeline run."""
    storage: StorageConfig = field(default_factory=StorageConfig)
    source_dir: str = './data'
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    compression_format: str = DEFAULT_COMPRESSION_FORMAT

    @property
    def retention_days(self) -> int:
        return self.storage.keep_days


@dataclass
class ArchiveTask:
    """
    One archive operation: source, private temp dir and artifact path.

    The task id combines a nanosecond clock with a process-wide sequence so
    that rapid manual and scheduled runs never share a temp directory.
    """
    source_dir: str
    temp_dir: str
    archive_path: str
    task_id: str

    @classmethod
    def create(cls, source_dir: str, temp_root: str, archive_name: str) -> 'ArchiveTask':
        task_id = f"run-{time.time_ns()}-{next(_task_sequence)}"
        temp_dir = os.path.join(temp_root, task_id)
        return cls(
            source_dir=source_dir,
            temp_dir=temp_dir,
            archive_path=os.path.join(temp_dir, archive_name),
            task_id=task_id
        )


@dataclass(frozen=True)
class RemoteObject:
    """Entry returned by a bucket listing page."""
    key: str
    size: int = 0
    last_modified: Optional[datetime] = None

    @property
    def is_placeholder(self) -> bool:
        # Zero-byte "directory" markers created by consoles and sync tools
        return self.key.endswith('/')


@dataclass
class RetentionResult:
    """Counters for one retention pass."""
    listed_raw: int = 0
    listed_files: int = 0
    matched: int = 0
    to_delete: int = 0
    deleted: int = 0
    failed: int = 0
    skipped: bool = False

    def to_dict(self) -> dict:
        return {
            'listed_raw': self.listed_raw,
            'listed_files': self.listed_files,
            'matched': self.matched,
            'to_delete': self.to_delete,
            'deleted': self.deleted,
            'failed': self.failed,
            'skipped': self.skipped
        }


@dataclass
class BackupRun:
    """Outcome of one pipeline execution."""
    task_id: Optional[str] = None
    status: str = 'running'
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    original_size: Optional[int] = None
    compressed_size: Optional[int] = None
    remote_key: Optional[str] = None
    error_message: Optional[str] = None
    retention: Optional[RetentionResult] = None
    logs: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status in ('success', 'skipped')

    def to_dict(self) -> dict:
        return {
            'task_id': self.task_id,
            'status': self.status,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'original_size': self.original_size,
            'compressed_size': self.compressed_size,
            'remote_key': self.remote_key,
            'error_message': self.error_message,
            'retention': self.retention.to_dict() if self.retention else None
        }
