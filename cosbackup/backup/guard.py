"""
Mutual exclusion for pipeline runs.

Within a process a non-blocking lock serializes runs. Across processes an
advisory lock file holds the owner's PID; a lock file whose PID is no longer
alive is stale and is replaced. File age is never used to detect staleness.
"""

import logging
import os
import threading
from contextlib import contextmanager
from typing import Optional

import psutil


logger = logging.getLogger(__name__)

LOCK_FILE_NAME = 'backup.pid'


class GuardBusyError(Exception):
    """Raised when another pipeline run is already in progress."""

    def __init__(self, message: str, owner_pid: Optional[int] = None):
        super().__init__(message)
        self.owner_pid = owner_pid


class PipelineRunGuard:
    """
    At most one pipeline run at a time, per process and per lock directory.

    A second acquire while a run is active fails immediately with
    GuardBusyError; callers skip the run rather than wait for it.
    """

    def __init__(self, lock_dir: str, lock_name: str = LOCK_FILE_NAME):
        self.lock_dir = lock_dir
        self.lock_path = os.path.join(lock_dir, lock_name)
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        """True if a run holds the guard in this process or in another live process."""
        if self._lock.locked():
            return True
        pid = self.read_owner()
        return pid is not None and pid != os.getpid() and psutil.pid_exists(pid)

    def read_owner(self) -> Optional[int]:
        """PID recorded in the lock file, or None if absent or unreadable."""
        try:
            with open(self.lock_path, 'r') as f:
                pid = int(f.read().strip())
        except (OSError, ValueError):
            return None
        return pid if pid > 0 else None

    @contextmanager
    def acquire(self):
        """
        Hold the guard for the duration of a with-block.

        The lock file is removed when the block exits, whether the run
        succeeded or raised.

        Raises:
            GuardBusyError: If another run holds the guard
        """
        if not self._lock.acquire(blocking=False):
            raise GuardBusyError("A backup run is already in progress in this process", os.getpid())

        try:
            self._claim_lock_file()
            try:
                yield self
            finally:
                self._release_lock_file()
        finally:
            self._lock.release()

    def _claim_lock_file(self):
        os.makedirs(self.lock_dir, exist_ok=True)
        pid = os.getpid()

        for _ in range(2):
            try:
                fd = os.open(self.lock_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
            except FileExistsError:
                owner = self.read_owner()
                if owner is not None and owner != pid and psutil.pid_exists(owner):
                    raise GuardBusyError(f"A backup run is already in progress (PID: {owner})", owner)
                logger.warning(f"Removing stale lock file {self.lock_path} (PID: {owner})")
                try:
                    os.remove(self.lock_path)
                except FileNotFoundError:
                    pass
                continue

            with os.fdopen(fd, 'w') as f:
                f.write(str(pid))
            return

        raise GuardBusyError(f"Could not claim lock file {self.lock_path}")

    def _release_lock_file(self):
        try:
            os.remove(self.lock_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove lock file {self.lock_path}: {e}")
