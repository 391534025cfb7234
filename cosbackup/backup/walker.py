"""
Directory traversal shared by the size pass and the archive pass.

Symbolic links are never followed. Each visited entry is recorded by absolute
path, and a symlink whose resolved target was already visited is skipped, so a
tree full of cyclic links is still walked in time proportional to the number
of entries on disk.
"""

import os
import stat
from dataclasses import dataclass
from typing import Callable, Iterator, Optional, Set


DIRECTORY = 'dir'
SYMLINK = 'symlink'
REGULAR = 'file'
OTHER = 'other'


class SymlinkLoopError(Exception):
    """A symlink whose target was already visited during this walk."""

    def __init__(self, path: str, target: str):
        super().__init__(f"symlink target already visited: {path} -> {target}")
        self.path = path
        self.target = target


@dataclass
class TreeEntry:
    """A filesystem entry below the walk root."""
    path: str
    name: str           # relative to root, '/' separated
    kind: str
    stat: os.stat_result
    link_target: Optional[str] = None


def _kind(st: os.stat_result) -> str:
    if stat.S_ISLNK(st.st_mode):
        return SYMLINK
    if stat.S_ISDIR(st.st_mode):
        return DIRECTORY
    if stat.S_ISREG(st.st_mode):
        return REGULAR
    return OTHER


def walk_tree(
    root: str,
    onerror: Optional[Callable[[str, Exception], None]] = None
) -> Iterator[TreeEntry]:
    """
    Walk a directory tree depth-first in lexical order.

    The root itself is not yielded. Directories are yielded before their
    contents.

    Args:
        root: Directory to walk
        onerror: Called with (path, error) for entries that cannot be read or
            symlinks that cannot be resolved; when None the error is raised

    Yields:
        TreeEntry for every entry that was not skipped
    """
    root = os.path.abspath(root)
    root_stat = os.stat(root)
    if not stat.S_ISDIR(root_stat.st_mode):
        raise NotADirectoryError(f"Not a directory: {root}")

    visited: Set[str] = {root}
    yield from _walk_dir(root, root, visited, onerror)


def _walk_dir(root, directory, visited, onerror) -> Iterator[TreeEntry]:
    try:
        names = sorted(os.listdir(directory))
    except OSError as e:
        if onerror is None:
            raise
        onerror(directory, e)
        return

    for name in names:
        path = os.path.join(directory, name)

        try:
            st = os.lstat(path)
        except OSError as e:
            if onerror is None:
                raise
            onerror(path, e)
            continue

        kind = _kind(st)
        link_target = None

        if kind == SYMLINK:
            try:
                link_target = os.readlink(path)
            except OSError as e:
                if onerror is None:
                    raise
                onerror(path, e)
                continue

            resolved = os.path.abspath(os.path.join(directory, link_target))
            if resolved in visited:
                if onerror is not None:
                    onerror(path, SymlinkLoopError(path, link_target))
                continue

        visited.add(path)

        yield TreeEntry(
            path=path,
            name=os.path.relpath(path, root).replace(os.sep, '/'),
            kind=kind,
            stat=st,
            link_target=link_target
        )

        if kind == DIRECTORY:
            yield from _walk_dir(root, path, visited, onerror)


def calculate_dir_size(root: str) -> int:
    """
    Sum the sizes of regular files below root.

    Symlinks, directories and special files do not count.

    Raises:
        OSError: If any part of the tree cannot be read
    """
    total = 0
    for entry in walk_tree(root, onerror=_skip_unreadable_links):
        if entry.kind == REGULAR:
            total += entry.stat.st_size
    return total


def _skip_unreadable_links(path: str, error: Exception):
    # Looping or unreadable links are skipped; any other error aborts the size pass
    if isinstance(error, SymlinkLoopError):
        return
    if os.path.islink(path):
        return
    raise error
