"""
Backup executor - orchestrates the complete backup workflow.

Workflow:
1. Create a private temporary directory for the run
2. Create compressed archive of the source directory
3. Upload archive to object storage (with retry)
4. Delete expired archives (retention policy)
5. Cleanup temporary files (always)
"""

import logging
import os
import shutil
from datetime import datetime
from typing import Optional

from cosbackup.models import ArchiveTask, BackupConfig, BackupRun
from cosbackup.utils.formatting import format_bytes
from .compression import create_archive, generate_archive_filename, EmptySourceError
from .guard import PipelineRunGuard
from .progress import DEFAULT_INTERVAL
from .retention import RetentionManager
from .storage import S3Storage
from .uploader import Uploader


logger = logging.getLogger(__name__)


class BackupExecutor:
    """
    Orchestrates the complete backup workflow for one configuration snapshot.
    """

    def __init__(
        self,
        config: BackupConfig,
        temp_root: str = 'tmp',
        storage=None,
        progress_interval: float = DEFAULT_INTERVAL
    ):
        """
        Initialize backup executor.

        Args:
            config: Configuration snapshot, fixed for the whole run
            temp_root: Directory under which the run's temp directory is created
            storage: Object store client (created from config when omitted)
            progress_interval: Seconds between upload progress events
        """
        self.config = config
        self.temp_root = temp_root
        self.storage = storage
        self.progress_interval = progress_interval
        self.run_record = None
        self.task = None
        self.logs = []

    def execute(self) -> BackupRun:
        """
        Execute the backup.

        Never raises: failures are recorded on the returned BackupRun. An
        empty source directory yields status 'skipped'.

        Returns:
            BackupRun with execution results
        """
        self.run_record = BackupRun(status='running', started_at=datetime.now())

        self._log(f"Starting backup of {self.config.source_dir}")

        try:
            self._execute_workflow()

            self.run_record.status = 'success'
            self._log("Backup completed successfully")

        except EmptySourceError as e:
            self.run_record.status = 'skipped'
            self._log(f"Backup skipped: {e}", logging.WARNING)

        except Exception as e:
            self.run_record.status = 'failed'
            self.run_record.error_message = str(e)
            self._log(f"Backup failed: {e}", logging.ERROR)

        finally:
            self.run_record.completed_at = datetime.now()
            self._cleanup()
            self.run_record.logs = list(self.logs)

        return self.run_record

    def _execute_workflow(self):
        """Execute the main backup workflow steps."""
        # Step 1: Create temporary directory
        archive_name = generate_archive_filename(self.config.compression_format)
        self.task = ArchiveTask.create(self.config.source_dir, self.temp_root, archive_name)
        self.run_record.task_id = self.task.task_id
        os.makedirs(self.task.temp_dir)
        self._log(f"Temporary directory: {self.task.temp_dir}")

        # Step 2: Create archive
        self._log(f"Creating archive (format: {self.config.compression_format})")
        original_size, compressed_size = create_archive(
            self.task.source_dir,
            self.task.archive_path,
            self.config.compression_format
        )
        self.run_record.original_size = original_size
        self.run_record.compressed_size = compressed_size
        self._log(
            f"Archive created: {archive_name} "
            f"({format_bytes(original_size)} -> {format_bytes(compressed_size)})"
        )

        # Step 3: Upload
        storage = self._get_storage()
        remote_key = self.config.storage.normalized_prefix + archive_name
        self._log(f"Uploading to bucket {self.config.storage.bucket}: {remote_key}")
        Uploader(storage, progress_interval=self.progress_interval).upload(
            self.task.archive_path,
            remote_key
        )
        self.run_record.remote_key = remote_key
        self._log(f"Uploaded: {remote_key}")

        # Step 4: Retention (failure does not fail the backup)
        try:
            self.run_record.retention = RetentionManager(storage).prune_expired(
                self.config.storage.normalized_prefix,
                self.config.retention_days
            )
        except Exception as e:
            self._log(f"Cleanup of expired backups failed: {e}", logging.WARNING)

    def _get_storage(self):
        if self.storage is None:
            self.storage = S3Storage.from_config(self.config.storage)
        return self.storage

    def _cleanup(self):
        """Remove temporary directory and files."""
        if self.task and os.path.exists(self.task.temp_dir):
            try:
                shutil.rmtree(self.task.temp_dir)
                self._log("Cleaned up temporary directory")
            except OSError as e:
                self._log(f"Failed to cleanup temp directory: {e}", logging.WARNING)

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp to the run log.

        Args:
            message: Log message
            level: Logging level for the module logger
        """
        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
        self.logs.append(f"[{timestamp}] [{logging.getLevelName(level).lower()}] {message}")
        logger.log(level, message)


def run_backup(
    config: BackupConfig,
    temp_root: str = 'tmp',
    guard: Optional[PipelineRunGuard] = None,
    storage=None,
    progress_interval: float = DEFAULT_INTERVAL
) -> BackupRun:
    """
    Execute one backup run, under the run guard when one is given.

    Args:
        config: Configuration snapshot for this run
        temp_root: Root for per-run temp directories
        guard: Run guard; the run is refused if another run holds it
        storage: Object store client (created from config when omitted)
        progress_interval: Seconds between upload progress events

    Returns:
        BackupRun with execution results

    Raises:
        GuardBusyError: If another run is in progress
    """
    executor = BackupExecutor(config, temp_root, storage, progress_interval)

    if guard is None:
        return executor.execute()

    with guard.acquire():
        return executor.execute()
