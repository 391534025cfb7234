"""
Retention policy enforcement for backups.

Deletes archives older than the retention window from object storage. The
age of an archive comes only from the timestamp in its name; objects that do
not follow the backup naming convention are never touched.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Optional, Tuple

from cosbackup.models import BackupConfig, RetentionResult
from .compression import is_backup_object, parse_archive_timestamp
from .storage import S3Storage, StorageError


logger = logging.getLogger(__name__)

DELETE_WORKERS = 5
PAGE_SIZE = 1000


class RetentionManager:
    """
    Manages retention policy enforcement for a bucket prefix.

    Listing and deletion overlap: qualifying keys are handed to a fixed pool
    of delete workers while later pages are still being listed.
    """

    def __init__(self, storage, workers: int = DELETE_WORKERS, page_size: int = PAGE_SIZE):
        """
        Args:
            storage: Object store client providing list_objects_page and delete_object
            workers: Number of concurrent delete workers
            page_size: Keys requested per listing call
        """
        self.storage = storage
        self.workers = workers
        self.page_size = page_size
        self._lock = threading.Lock()

    def prune_expired(self, prefix: str, retention_days: int, now: Optional[datetime] = None) -> RetentionResult:
        """
        Delete archives under prefix older than retention_days.

        Args:
            prefix: Key prefix to scan
            retention_days: Retention window; zero or negative disables pruning
            now: Reference time (default: current local time)

        Returns:
            RetentionResult with listing and deletion counters

        Raises:
            StorageError: If a listing call fails
        """
        result = RetentionResult()

        if retention_days <= 0:
            logger.info("Retention days is zero or negative, skipping cleanup of expired backups")
            result.skipped = True
            return result

        if now is None:
            now = datetime.now()
        expire_before = now - timedelta(days=retention_days)

        logger.info(f"Cleaning up backups created before {expire_before:%Y-%m-%d %H:%M:%S} under '{prefix}'")

        pool = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix='retention')
        try:
            self._scan(prefix, expire_before, result, pool)
        except StorageError:
            # Deletes already submitted still run to completion and are counted
            pool.shutdown(wait=True)
            logger.error(
                f"Cleanup aborted after listing failure; "
                f"deleted {result.deleted}, failed {result.failed} of {result.to_delete} submitted"
            )
            raise
        finally:
            # Closes the queue; workers drain what was submitted
            pool.shutdown(wait=True)

        logger.info(
            f"Listed {result.listed_raw} objects ({result.listed_files} files), "
            f"{result.matched} match the backup naming, {result.to_delete} expired; "
            f"deleted {result.deleted}, failed {result.failed}"
        )
        return result

    def _scan(self, prefix: str, expire_before: datetime, result: RetentionResult, pool: ThreadPoolExecutor):
        marker = None
        while True:
            try:
                entries, marker, has_more = self.storage.list_objects_page(prefix, marker, self.page_size)
            except StorageError as e:
                logger.error(f"Listing objects failed, aborting cleanup: {e}")
                raise

            for obj in entries:
                result.listed_raw += 1
                if obj.is_placeholder:
                    continue
                result.listed_files += 1

                if not is_backup_object(obj.key):
                    continue
                result.matched += 1

                created = parse_archive_timestamp(obj.key)
                if created is None:
                    logger.debug(f"Skipping object with invalid timestamp: {obj.key}")
                    continue

                if created < expire_before:
                    result.to_delete += 1
                    pool.submit(self._delete, obj.key, result)

            if not has_more:
                break
            if marker is None:
                raise StorageError("Listing reported more objects but returned no continuation marker")

    def _delete(self, key: str, result: RetentionResult):
        try:
            self.storage.delete_object(key)
        except Exception as e:
            logger.error(f"Failed to delete object {key}: {e}")
            with self._lock:
                result.failed += 1
            return

        with self._lock:
            result.deleted += 1
        logger.info(f"Deleted: {key}")


def find_latest_backup(storage, prefix: str, page_size: int = PAGE_SIZE) -> Optional[Tuple[str, datetime]]:
    """
    Find the newest archive under prefix.

    The timestamp in the archive name is the only record of past runs, so
    this lists the whole prefix and keeps the latest parsable name.

    Returns:
        Tuple of (key, created) or None when no archive exists

    Raises:
        StorageError: If a listing call fails
    """
    latest = None
    marker = None
    while True:
        entries, marker, has_more = storage.list_objects_page(prefix, marker, page_size)
        for obj in entries:
            if obj.is_placeholder or not is_backup_object(obj.key):
                continue
            created = parse_archive_timestamp(obj.key)
            if created is not None and (latest is None or created > latest[1]):
                latest = (obj.key, created)

        if not has_more:
            return latest
        if marker is None:
            raise StorageError("Listing reported more objects but returned no continuation marker")


def enforce_retention_policy(config: BackupConfig, storage: Optional[S3Storage] = None) -> RetentionResult:
    """
    Enforce the retention policy of a configuration snapshot.

    Args:
        config: Backup configuration
        storage: Storage client (created from config when omitted)

    Returns:
        RetentionResult from RetentionManager.prune_expired()
    """
    # Pruning disabled: no client, no listing call
    if storage is None and config.retention_days > 0:
        storage = S3Storage.from_config(config.storage)

    manager = RetentionManager(storage)
    return manager.prune_expired(config.storage.normalized_prefix, config.retention_days)
