"""
Configuration file change detection.

The watcher only forwards change notifications into a single-slot queue.
While a reload is pending, further events are dropped, so a burst of writes
results in one reload.
"""

import logging
import os
import queue

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer


logger = logging.getLogger(__name__)


class _ConfigFileHandler(FileSystemEventHandler):
    """Filters directory events down to the watched config file."""

    def __init__(self, watcher: 'ConfigWatcher'):
        super().__init__()
        self.watcher = watcher

    def on_modified(self, event):
        self._check(event, event.src_path)

    def on_created(self, event):
        self._check(event, event.src_path)

    def on_moved(self, event):
        # Editors commonly save by writing a temp file and renaming it over
        self._check(event, event.dest_path)

    def _check(self, event, path):
        if event.is_directory:
            return
        if os.path.abspath(os.fsdecode(path)) == self.watcher.path:
            self.watcher.notify()


class ConfigWatcher:
    """
    Watches one configuration file and signals changes through a queue.

    The parent directory is observed rather than the file itself so that
    atomic replace-on-save keeps being detected.
    """

    def __init__(self, path: str, notify_queue: queue.Queue):
        """
        Args:
            path: Configuration file to watch
            notify_queue: Queue receiving True per change; should have maxsize=1
        """
        self.path = os.path.abspath(path)
        self.notify_queue = notify_queue
        self.observer = None

    def notify(self) -> bool:
        """
        Signal a change. Returns False if a reload was already pending.
        """
        try:
            self.notify_queue.put_nowait(True)
        except queue.Full:
            logger.debug("Config reload already pending, dropping change event")
            return False
        logger.info("Configuration file changed, reloading...")
        return True

    def start(self):
        """Start the observer thread."""
        if self.observer is not None:
            return

        self.observer = Observer()
        self.observer.daemon = True
        self.observer.schedule(_ConfigFileHandler(self), os.path.dirname(self.path), recursive=False)
        self.observer.start()
        logger.info(f"Watching configuration file: {self.path}")

    def stop(self):
        """Stop the observer thread."""
        if self.observer is None:
            return

        self.observer.stop()
        self.observer.join(timeout=5)
        self.observer = None
