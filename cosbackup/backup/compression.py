"""
Archive creation for backup sources.

The source tree is walked twice: once to size it, once to stream every entry
into a tar container piped through a streaming compressor.

Supported formats:
- tar.zst: Zstandard compressed tar (default)
- tar.gz: Gzip compressed tar
- tar.bz2: Bzip2 compressed tar
- tar.xz: LZMA compressed tar
- none: No compression (tar only)
"""

import logging
import os
import posixpath
import re
import stat
import tarfile
from datetime import datetime
from typing import Optional, Tuple

import zstandard

from cosbackup.utils.formatting import format_bytes
from .walker import (
    DIRECTORY,
    REGULAR,
    SYMLINK,
    SymlinkLoopError,
    TreeEntry,
    calculate_dir_size,
    walk_tree
)


logger = logging.getLogger(__name__)

ZSTD_LEVEL = 11

# format -> (extension, tarfile stream mode)
FORMAT_MAP = {
    'tar.zst': ('tar.zst', 'w|'),
    'tar.gz': ('tar.gz', 'w|gz'),
    'tar.bz2': ('tar.bz2', 'w|bz2'),
    'tar.xz': ('tar.xz', 'w|xz'),
    'none': ('tar', 'w|')
}

ARCHIVE_TIMESTAMP_FORMAT = '%Y%m%d-%H%M%S'

BACKUP_NAME_RE = re.compile(r'^backup-(\d{8}-\d{6})\.(tar\.zst|tar\.gz|tar\.bz2|tar\.xz|tar)$')


class CompressionError(Exception):
    """Raised when archive creation fails."""
    pass


class EmptySourceError(CompressionError):
    """Raised when the source tree holds no regular file content."""
    pass


class ArchiveStats:
    """Per-entry counters for one archive pass."""

    def __init__(self):
        self.processed = 0
        self.skipped = 0


def create_archive(
    source_dir: str,
    archive_path: str,
    compression_format: str = 'tar.zst'
) -> Tuple[int, int]:
    """
    Create a compressed archive of a directory tree.

    Args:
        source_dir: Directory to archive; entry names are relative to it
        archive_path: Destination artifact file
        compression_format: Format to use ('tar.zst', 'tar.gz', 'tar.bz2', 'tar.xz', 'none')

    Returns:
        Tuple of (original_size, compressed_size) in bytes

    Raises:
        EmptySourceError: If the source holds no regular file content
        CompressionError: If sizing the source or writing the archive fails
        ValueError: If compression_format is invalid
    """
    if compression_format not in FORMAT_MAP:
        raise ValueError(
            f"Invalid compression format: {compression_format}. "
            f"Valid options: {list(FORMAT_MAP.keys())}"
        )

    logger.info(f"Calculating source size: {source_dir}")
    try:
        original_size = calculate_dir_size(source_dir)
    except OSError as e:
        raise CompressionError(f"Failed to calculate source size: {e}") from e

    if original_size == 0:
        raise EmptySourceError(f"Source directory {source_dir} is empty, skipping backup")

    logger.info(f"Source size: {format_bytes(original_size)} ({original_size} bytes)")
    logger.info(f"Creating archive ({compression_format}) {source_dir} -> {archive_path}")

    stats = ArchiveStats()
    try:
        _write_archive(source_dir, archive_path, compression_format, stats)
        # Size is read only after tar and compressor are closed
        compressed_size = os.path.getsize(archive_path)
    except Exception as e:
        _remove_partial(archive_path)
        raise CompressionError(f"Failed to create archive: {e}") from e

    logger.info(f"Entries archived: {stats.processed}, skipped: {stats.skipped}")
    if stats.skipped > 0:
        logger.warning(f"Skipped {stats.skipped} problematic entries, see warnings above")

    ratio = compressed_size / original_size * 100
    logger.info(
        f"Archive complete: {format_bytes(original_size)} -> "
        f"{format_bytes(compressed_size)} ({ratio:.2f}%)"
    )
    return original_size, compressed_size


def _write_archive(source_dir: str, archive_path: str, compression_format: str, stats: ArchiveStats):
    _, mode = FORMAT_MAP[compression_format]

    with open(archive_path, 'wb') as raw:
        if compression_format == 'tar.zst':
            compressor = zstandard.ZstdCompressor(level=ZSTD_LEVEL)
            with compressor.stream_writer(raw, closefd=False) as writer:
                with tarfile.open(fileobj=writer, mode=mode) as tar:
                    _add_tree(tar, source_dir, archive_path, stats)
        else:
            with tarfile.open(fileobj=raw, mode=mode) as tar:
                _add_tree(tar, source_dir, archive_path, stats)


def _add_tree(tar: tarfile.TarFile, source_dir: str, archive_path: str, stats: ArchiveStats):
    artifact = os.path.abspath(archive_path)

    def onerror(path, error):
        if isinstance(error, SymlinkLoopError):
            logger.warning(f"Skipping looping symlink: {error.path} -> {error.target}")
        else:
            logger.warning(f"Skipping unreadable entry: {path} ({error})")
        stats.skipped += 1

    for entry in walk_tree(source_dir, onerror=onerror):
        if entry.path == artifact:
            continue
        if _add_entry(tar, entry):
            stats.processed += 1
        else:
            stats.skipped += 1


def _add_entry(tar: tarfile.TarFile, entry: TreeEntry) -> bool:
    """
    Write one entry. Returns False when the entry was skipped.

    Errors writing to the archive itself propagate.
    """
    if entry.kind == SYMLINK:
        if not _symlink_is_safe(entry):
            return False
        info = tarfile.TarInfo(entry.name)
        info.type = tarfile.SYMTYPE
        info.linkname = entry.link_target.replace(os.sep, '/')
        info.mode = stat.S_IMODE(entry.stat.st_mode)
        info.mtime = int(entry.stat.st_mtime)
        tar.addfile(info)
        return True

    if entry.kind == DIRECTORY:
        info = tarfile.TarInfo(entry.name.rstrip('/') + '/')
        info.type = tarfile.DIRTYPE
        info.mode = stat.S_IMODE(entry.stat.st_mode)
        info.mtime = int(entry.stat.st_mtime)
        tar.addfile(info)
        return True

    if entry.kind == REGULAR:
        return _add_regular_file(tar, entry)

    # FIFO, device or socket: header only
    try:
        info = tar.gettarinfo(entry.path, arcname=entry.name)
    except OSError as e:
        logger.warning(f"Skipping special file: {entry.path} ({e})")
        return False
    if info is None:
        logger.warning(f"Skipping unsupported file type: {entry.path}")
        return False
    tar.addfile(info)
    return True


def _symlink_is_safe(entry: TreeEntry) -> bool:
    target = entry.link_target
    segments = target.replace('\\', '/').split('/')

    if '..' in segments:
        logger.warning(f"Skipping unsafe symlink: {entry.path} -> {target} (contains '..')")
        return False

    if os.path.isabs(target):
        logger.warning(f"Skipping absolute symlink: {entry.path} -> {target}")
        return False

    if not os.path.exists(os.path.join(os.path.dirname(entry.path), target)):
        logger.warning(f"Skipping dangling symlink: {entry.path} -> {target}")
        return False

    return True


def _add_regular_file(tar: tarfile.TarFile, entry: TreeEntry) -> bool:
    try:
        f = open(entry.path, 'rb')
    except OSError as e:
        logger.warning(f"Skipping unreadable file: {entry.path} ({e})")
        return False

    with f:
        try:
            size = os.fstat(f.fileno()).st_size
        except OSError as e:
            logger.warning(f"Skipping unreadable file: {entry.path} ({e})")
            return False

        info = tarfile.TarInfo(entry.name)
        info.size = size
        info.mode = stat.S_IMODE(entry.stat.st_mode)
        info.mtime = int(entry.stat.st_mtime)

        reader = _SizedReader(f, size, entry.path)
        tar.addfile(info, reader)

    return not reader.truncated


class _SizedReader:
    """
    Yields exactly `size` bytes from a file.

    A file that shrinks or fails mid-read is padded with NUL bytes so the tar
    stream stays well formed; the entry is then reported as skipped.
    """

    def __init__(self, f, size: int, path: str):
        self._f = f
        self._remaining = size
        self._path = path
        self.truncated = False

    def read(self, n: int = -1) -> bytes:
        if self._remaining <= 0:
            return b''
        if n is None or n < 0 or n > self._remaining:
            n = self._remaining

        data = b''
        if not self.truncated:
            try:
                data = self._f.read(n)
            except OSError as e:
                logger.warning(f"Read error, entry content padded: {self._path} ({e})")
                self.truncated = True
                data = b''
            if len(data) < n and not self.truncated:
                logger.warning(f"File shrank while archiving, entry content padded: {self._path}")
                self.truncated = True

        if len(data) < n:
            data += b'\0' * (n - len(data))

        self._remaining -= n
        return data


def _remove_partial(archive_path: str):
    if os.path.exists(archive_path):
        try:
            os.remove(archive_path)
        except OSError as e:
            logger.warning(f"Failed to remove partial archive {archive_path}: {e}")


def generate_archive_filename(compression_format: str = 'tar.zst', now: Optional[datetime] = None) -> str:
    """
    Generate a standardized archive filename.

    Format: backup-{YYYYMMDD-HHMMSS}.{ext}

    The name is the only record of an artifact's age, so retention relies
    on this exact format.

    Args:
        compression_format: Compression format
        now: Timestamp to embed (default: current local time)

    Returns:
        Filename (without path)
    """
    if now is None:
        now = datetime.now()

    extension, _ = FORMAT_MAP.get(compression_format, FORMAT_MAP['tar.zst'])
    return f"backup-{now.strftime(ARCHIVE_TIMESTAMP_FORMAT)}.{extension}"


def is_backup_object(key: str) -> bool:
    """Check whether an object key's base name follows the archive naming convention."""
    return BACKUP_NAME_RE.match(posixpath.basename(key)) is not None


def parse_archive_timestamp(key: str) -> Optional[datetime]:
    """
    Extract the creation time embedded in an archive key.

    Returns:
        Naive local datetime, or None if the name does not match or the
        timestamp is not a valid date
    """
    match = BACKUP_NAME_RE.match(posixpath.basename(key))
    if not match:
        return None
    try:
        return datetime.strptime(match.group(1), ARCHIVE_TIMESTAMP_FORMAT)
    except ValueError:
        return None
