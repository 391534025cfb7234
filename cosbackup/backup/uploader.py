"""
Archive upload with retry and progress logging.
"""

import logging
import os
import time
from typing import Callable, Optional

from cosbackup.utils.formatting import format_bytes, friendly_duration
from .progress import DEFAULT_INTERVAL, ProgressEvent, ProgressReader
from .storage import StorageError


logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
BACKOFF_BASE = 0.5


class UploadError(StorageError):
    """Raised when every upload attempt failed."""
    pass


def backoff_delay(attempt: int) -> float:
    """Seconds to wait after a failed attempt: 0.5s, 1s, 2s, ..."""
    return BACKOFF_BASE * (2 ** (attempt - 1))


def log_progress(event: ProgressEvent):
    logger.info(
        f"Progress: {event.percent:3d}% "
        f"({format_bytes(event.read)}/{format_bytes(event.total)}) "
        f"{format_bytes(event.rate)}/s ETA {friendly_duration(event.eta)}"
    )


class Uploader:
    """
    Uploads a local archive as a single object.

    Each attempt re-opens the file, since a failed attempt may have
    consumed part of the previous stream.
    """

    def __init__(
        self,
        storage,
        progress_interval: float = DEFAULT_INTERVAL,
        on_progress: Optional[Callable[[ProgressEvent], None]] = log_progress,
        sleep: Optional[Callable[[float], None]] = None
    ):
        """
        Args:
            storage: Object store client providing put_object(key, stream, size)
            progress_interval: Seconds between progress events
            on_progress: Progress callback (default logs a progress line)
            sleep: Backoff sleep function (default: time.sleep)
        """
        self.storage = storage
        self.progress_interval = progress_interval
        self.on_progress = on_progress
        self.sleep = sleep or time.sleep
        self.attempts = 0

    def upload(self, local_path: str, remote_key: str):
        """
        Upload a file, retrying with exponential backoff.

        Args:
            local_path: Archive file to upload
            remote_key: Destination object key

        Raises:
            StorageError: If the local file cannot be read
            UploadError: If all attempts failed
        """
        try:
            size = os.path.getsize(local_path)
        except OSError as e:
            raise StorageError(f"Local file not found: {local_path} ({e})")

        logger.info(f"Uploading {local_path} -> {remote_key} ({format_bytes(size)})")

        last_error = None
        for attempt in range(1, MAX_ATTEMPTS + 1):
            self.attempts = attempt
            try:
                f = open(local_path, 'rb')
            except OSError as e:
                raise StorageError(f"Failed to open {local_path}: {e}")

            try:
                with f:
                    reader = ProgressReader(
                        f,
                        total=size,
                        interval=self.progress_interval,
                        on_progress=self.on_progress
                    )
                    self.storage.put_object(remote_key, reader, size)
                logger.info(f"Upload complete: {remote_key}")
                return
            except (StorageError, OSError) as e:
                last_error = e

            if attempt < MAX_ATTEMPTS:
                delay = backoff_delay(attempt)
                logger.warning(
                    f"Upload failed (attempt {attempt}/{MAX_ATTEMPTS}), "
                    f"retrying in {delay:g}s: {last_error}"
                )
                self.sleep(delay)

        raise UploadError(
            f"Upload of {remote_key} failed after {MAX_ATTEMPTS} attempts: {last_error}"
        ) from last_error
