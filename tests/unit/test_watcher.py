"""
Unit tests for configuration change detection (cosbackup/watcher.py).
"""

import os
import queue
import time
from unittest.mock import MagicMock

import pytest
from watchdog.events import FileModifiedEvent, FileMovedEvent, DirModifiedEvent

from cosbackup.watcher import ConfigWatcher, _ConfigFileHandler


class TestConfigWatcher:
    """Test notification queueing."""

    def test_notify_enqueues_once(self, config_file):
        """Test a burst of changes leaves a single pending reload."""
        notify_queue = queue.Queue(maxsize=1)
        watcher = ConfigWatcher(str(config_file), notify_queue)

        assert watcher.notify() is True
        assert watcher.notify() is False
        assert watcher.notify() is False

        assert notify_queue.qsize() == 1

    def test_notify_after_drain(self, config_file):
        notify_queue = queue.Queue(maxsize=1)
        watcher = ConfigWatcher(str(config_file), notify_queue)

        watcher.notify()
        notify_queue.get_nowait()

        assert watcher.notify() is True

    def test_handler_filters_other_files(self, config_file):
        """Test only events for the watched file are forwarded."""
        watcher = MagicMock()
        watcher.path = os.path.abspath(str(config_file))
        handler = _ConfigFileHandler(watcher)

        handler.on_modified(FileModifiedEvent(str(config_file.parent / 'other.toml')))
        handler.on_modified(DirModifiedEvent(str(config_file.parent)))
        watcher.notify.assert_not_called()

        handler.on_modified(FileModifiedEvent(str(config_file)))
        watcher.notify.assert_called_once()

    def test_handler_atomic_replace(self, config_file):
        """Test a rename onto the config file counts as a change."""
        watcher = MagicMock()
        watcher.path = os.path.abspath(str(config_file))
        handler = _ConfigFileHandler(watcher)

        handler.on_moved(FileMovedEvent(str(config_file) + '.tmp', str(config_file)))

        watcher.notify.assert_called_once()

    def test_observer_detects_write(self, config_file):
        """Test writing the file through the real observer queues a reload."""
        notify_queue = queue.Queue(maxsize=1)
        watcher = ConfigWatcher(str(config_file), notify_queue)
        watcher.start()
        try:
            # Give the observer a moment to register the watch
            time.sleep(0.2)
            with open(config_file, 'a') as f:
                f.write('\n# touched\n')

            assert notify_queue.get(timeout=5) is True
        finally:
            watcher.stop()

        assert watcher.observer is None
