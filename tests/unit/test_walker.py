"""
Unit tests for directory traversal (cosbackup/backup/walker.py).

Tests walk_tree and calculate_dir_size, including symlink loops.
"""

import os

import pytest

from cosbackup.backup.walker import (
    DIRECTORY,
    REGULAR,
    SYMLINK,
    SymlinkLoopError,
    calculate_dir_size,
    walk_tree
)


class TestWalkTree:
    """Test walk_tree ordering and entry kinds."""

    def test_walk_yields_all_entries_depth_first(self, source_tree):
        """Test entries come in lexical depth-first order, root excluded."""
        names = [entry.name for entry in walk_tree(str(source_tree))]

        assert names == [
            'file1.txt',
            'file2.log',
            'nested',
            'nested/deeper',
            'nested/deeper/file4.bin',
            'nested/file3.txt',
        ]

    def test_walk_reports_kinds(self, source_tree):
        """Test directories and regular files are classified."""
        kinds = {entry.name: entry.kind for entry in walk_tree(str(source_tree))}

        assert kinds['nested'] == DIRECTORY
        assert kinds['file1.txt'] == REGULAR

    def test_walk_does_not_follow_symlinks(self, tmp_path, source_tree):
        """Test a symlink to a directory is yielded but not descended into."""
        outside = tmp_path / 'outside'
        outside.mkdir()
        (outside / 'secret.txt').write_text('x')
        os.symlink(str(outside), source_tree / 'zlink')

        entries = {entry.name: entry for entry in walk_tree(str(source_tree))}

        assert entries['zlink'].kind == SYMLINK
        assert entries['zlink'].link_target == str(outside)
        assert not any(name.startswith('zlink/') for name in entries)

    def test_walk_skips_symlink_to_visited_entry(self, source_tree):
        """Test a symlink whose target was already walked is skipped."""
        os.symlink('nested', source_tree / 'zlink')

        names = [entry.name for entry in walk_tree(str(source_tree), onerror=lambda p, e: None)]

        assert 'zlink' not in names

    def test_walk_skips_symlink_to_visited_directory(self, tmp_path):
        """Test a symlink pointing back at an ancestor is reported and skipped."""
        root = tmp_path / 'root'
        (root / 'a').mkdir(parents=True)
        (root / 'a' / 'data.txt').write_text('x')
        os.symlink('..', root / 'a' / 'loop')

        errors = []
        names = [e.name for e in walk_tree(str(root), onerror=lambda p, err: errors.append(err))]

        assert 'a/loop' not in names
        assert len(errors) == 1
        assert isinstance(errors[0], SymlinkLoopError)

    def test_walk_terminates_on_many_cyclic_links(self, tmp_path):
        """Test every link in a directory of self-referencing links is skipped."""
        root = tmp_path / 'root'
        root.mkdir()
        (root / 'real.txt').write_text('data')
        for i in range(50):
            os.symlink('.', root / f'self{i:02d}')

        skipped = []
        names = [e.name for e in walk_tree(str(root), onerror=lambda p, err: skipped.append(p))]

        assert names == ['real.txt']
        assert len(skipped) == 50

    def test_walk_root_not_directory(self, tmp_path):
        """Test walking a file raises NotADirectoryError."""
        f = tmp_path / 'file.txt'
        f.write_text('x')

        with pytest.raises(NotADirectoryError):
            list(walk_tree(str(f)))

    def test_walk_missing_root(self, tmp_path):
        """Test walking a missing directory raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            list(walk_tree(str(tmp_path / 'missing')))


class TestCalculateDirSize:
    """Test calculate_dir_size."""

    def test_size_counts_regular_files_only(self, source_tree):
        """Test size is the sum of regular file sizes."""
        expected = (
            len('Test content 1')
            + len('Test log content')
            + len('Nested test content')
            + 2048
        )

        os.symlink('file1.txt', source_tree / 'link.txt')

        assert calculate_dir_size(str(source_tree)) == expected

    def test_size_empty_directory(self, tmp_path):
        """Test an empty directory has size zero."""
        empty = tmp_path / 'empty'
        (empty / 'sub').mkdir(parents=True)

        assert calculate_dir_size(str(empty)) == 0

    def test_size_with_symlink_loop(self, tmp_path):
        """Test looping links do not affect the size."""
        root = tmp_path / 'root'
        root.mkdir()
        (root / 'f.bin').write_bytes(b'x' * 100)
        os.symlink('.', root / 'loop')

        assert calculate_dir_size(str(root)) == 100
