"""
Backup daemon scheduling for cos-backup.

Manages:
- Daily backup runs at a wall-clock time (APScheduler CronTrigger computes
  the next fire time, including time zone and DST handling)
- Hot reload of the configuration file
- Manual triggers
- Graceful shutdown (stops new triggers, never interrupts a running backup)

The loop has two steady states. Armed: waits for the timer, a config change
or shutdown. Idle (schedule disabled): waits for a config change or shutdown.
"""

import logging
import queue
import signal
import threading
from datetime import datetime, timedelta
from typing import Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.triggers.cron import CronTrigger

from cosbackup.backup.executor import BackupExecutor
from cosbackup.backup.guard import PipelineRunGuard, GuardBusyError
from cosbackup.backup.progress import DEFAULT_INTERVAL, parse_progress_interval
from cosbackup.config import load_config
from cosbackup.models import BackupConfig, BackupRun, ScheduleConfig
from cosbackup.utils.formatting import friendly_duration
from cosbackup.watcher import ConfigWatcher


logger = logging.getLogger(__name__)

STATE_STOPPED = 'stopped'
STATE_ARMED = 'armed'
STATE_IDLE = 'idle'

EVENT_TIMER = 'timer'
EVENT_RELOAD = 'reload'
EVENT_SHUTDOWN = 'shutdown'

# Upper bound on a single blocking wait, so wall-clock jumps are noticed
MAX_WAIT_SECONDS = 60.0


def resolve_timezone(name: str):
    """
    Resolve an IANA time zone name.

    Returns:
        tzinfo, or None (local time zone) if the name is empty or unknown
    """
    if not name:
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        logger.warning(f"Failed to load timezone '{name}', using local time zone: {e}")
        return None


def compute_next_run(schedule: ScheduleConfig, now: Optional[datetime] = None) -> datetime:
    """
    Compute the next run time for a daily schedule.

    If the scheduled time of day has already passed today (in the schedule's
    time zone), the next run is tomorrow at the same time. A run time equal
    to now counts as today.

    Args:
        schedule: Schedule with hour, minute and timezone
        now: Reference time (default: current time); naive values are local time

    Returns:
        Time zone aware datetime of the next run
    """
    trigger = CronTrigger(
        hour=schedule.hour,
        minute=schedule.minute,
        second=0,
        timezone=resolve_timezone(schedule.timezone)
    )

    if now is None:
        now = datetime.now(trigger.timezone)
    else:
        now = now.astimezone(trigger.timezone)

    return trigger.get_next_fire_time(None, now)


def _local_now() -> datetime:
    return datetime.now().astimezone()


class Scheduler:
    """
    Long-running backup daemon loop.

    The current BackupConfig is only replaced by this loop, wholesale; each
    pipeline run captures the reference at its start.
    """

    def __init__(
        self,
        config_path: str,
        config: Optional[BackupConfig] = None,
        loader: Callable[[str], BackupConfig] = load_config,
        pipeline: Optional[Callable[[BackupConfig], BackupRun]] = None,
        temp_dir: str = 'tmp',
        guard: Optional[PipelineRunGuard] = None,
        progress_interval: float = DEFAULT_INTERVAL,
        watch: bool = True,
        clock: Callable[[], datetime] = _local_now,
        max_wait: float = MAX_WAIT_SECONDS
    ):
        """
        Args:
            config_path: Configuration file, watched for changes
            config: Initial configuration (loaded from config_path when omitted)
            loader: Configuration loader used at reload
            pipeline: Callable running one backup for a config snapshot
                (default: BackupExecutor)
            temp_dir: Root for per-run temp directories and the lock file
            guard: Run guard (default: lock file in temp_dir)
            progress_interval: Seconds between upload progress events
            watch: Start a filesystem watcher on config_path
            clock: Returns the current time zone aware datetime
            max_wait: Longest single blocking wait in seconds

        Raises:
            ConfigError: If no config is given and config_path cannot be loaded
        """
        self.config_path = config_path
        self._loader = loader
        self._config = config if config is not None else loader(config_path)
        self.temp_dir = temp_dir
        self.progress_interval = progress_interval
        self.pipeline = pipeline or self._execute_backup
        self.guard = guard or PipelineRunGuard(temp_dir)
        self._clock = clock
        self._max_wait = max_wait

        # Single slot: a pending reload absorbs further change events
        self.reload_requests = queue.Queue(maxsize=1)
        self._stop = threading.Event()
        self._thread = None
        self._last_fire = None

        self.watcher = ConfigWatcher(config_path, self.reload_requests) if watch else None

        self.state = STATE_STOPPED
        self.next_run = None
        self.last_run = None
        self.pipeline_invocations = 0

    @property
    def config(self) -> BackupConfig:
        return self._config

    @property
    def running(self) -> bool:
        return self.state != STATE_STOPPED

    def _execute_backup(self, config: BackupConfig) -> BackupRun:
        executor = BackupExecutor(config, self.temp_dir, progress_interval=self.progress_interval)
        return executor.execute()

    # Loop

    def run(self):
        """Run the daemon loop until shutdown is requested. Blocks."""
        self.state = STATE_IDLE

        schedule = self._config.schedule
        logger.info("=== Backup daemon started ===")
        logger.info(f"Schedule: daily at {schedule.hour:02d}:{schedule.minute:02d} "
                    f"(timezone: {schedule.timezone or 'local'}, enabled: {schedule.enabled})")

        if self.watcher is not None:
            try:
                self.watcher.start()
            except OSError as e:
                logger.error(f"Failed to watch configuration file, hot reload disabled: {e}")
                self.watcher = None

        try:
            while self._step():
                pass
        finally:
            if self.watcher is not None:
                self.watcher.stop()
            self.state = STATE_STOPPED
            self.next_run = None
            logger.info("Backup daemon stopped")

    def _step(self) -> bool:
        """One loop iteration. Returns False when the loop should exit."""
        config = self._config
        schedule = config.schedule

        if schedule.enabled:
            now = self._clock()
            if self._last_fire is not None and now < self._last_fire + timedelta(seconds=1):
                now = self._last_fire + timedelta(seconds=1)
            self.next_run = compute_next_run(schedule, now)
            self.state = STATE_ARMED
            wait = (self.next_run - self._clock()).total_seconds()
            logger.info(f"Next run: {self.next_run:%Y-%m-%d %H:%M:%S %Z} (in {friendly_duration(wait)})")
        else:
            self.next_run = None
            self.state = STATE_IDLE
            logger.info("Schedule disabled, waiting for configuration changes...")

        event = self._wait_for_event(self.next_run)

        if event == EVENT_SHUTDOWN:
            logger.info("Shutdown requested, exiting...")
            return False

        if event == EVENT_RELOAD:
            self.reload_config()
            return True

        self._last_fire = self.next_run
        logger.info("Starting scheduled backup...")
        self.run_pipeline(config, trigger='scheduled')
        return True

    def _wait_for_event(self, next_run: Optional[datetime]) -> str:
        """Block until the timer is due, a reload is requested, or shutdown."""
        while True:
            if self._stop.is_set():
                return EVENT_SHUTDOWN

            if next_run is None:
                timeout = self._max_wait
            else:
                remaining = (next_run - self._clock()).total_seconds()
                if remaining <= 0:
                    return EVENT_TIMER
                timeout = min(remaining, self._max_wait)

            try:
                self.reload_requests.get(timeout=timeout)
            except queue.Empty:
                continue

            if self._stop.is_set():
                return EVENT_SHUTDOWN
            return EVENT_RELOAD

    # Actions

    def reload_config(self) -> bool:
        """
        Reload the configuration file.

        On failure the previous configuration stays in effect.

        Returns:
            True if the new configuration was applied
        """
        try:
            new_config = self._loader(self.config_path)
        except Exception as e:
            logger.error(f"Config reload failed, keeping previous configuration: {e}")
            return False

        self._config = new_config
        schedule = new_config.schedule
        logger.info(f"Config reloaded: daily at {schedule.hour:02d}:{schedule.minute:02d} "
                    f"(timezone: {schedule.timezone or 'local'}, enabled: {schedule.enabled})")
        return True

    def run_pipeline(self, config: Optional[BackupConfig] = None, trigger: str = 'scheduled') -> Optional[BackupRun]:
        """
        Run one backup under the run guard.

        A run that finds the guard held is skipped, not queued.

        Returns:
            BackupRun, or None if the run was skipped or crashed
        """
        if config is None:
            config = self._config

        try:
            with self.guard.acquire():
                self.pipeline_invocations += 1
                run = self.pipeline(config)
        except GuardBusyError as e:
            logger.warning(f"Skipping {trigger} backup: {e}")
            return None
        except Exception as e:
            logger.error(f"{trigger.capitalize()} backup crashed: {e}")
            return None

        self.last_run = run
        if run.status == 'failed':
            logger.error(f"{trigger.capitalize()} backup failed: {run.error_message}")
        else:
            logger.info(f"{trigger.capitalize()} backup finished with status: {run.status}")
        return run

    def trigger_now(self) -> bool:
        """
        Start a manual backup in a background thread.

        Returns:
            False if a backup is already running (nothing is started)
        """
        if self.guard.running:
            logger.warning("Manual backup requested while a backup is running, skipping")
            return False

        config = self._config
        thread = threading.Thread(
            target=self.run_pipeline,
            args=(config, 'manual'),
            name='backup-manual',
            daemon=True
        )
        thread.start()
        logger.info("Manually triggered backup")
        return True

    def request_reload(self) -> bool:
        """Ask the loop to reload; dropped if a reload is already pending."""
        try:
            self.reload_requests.put_nowait(True)
            return True
        except queue.Full:
            return False

    def request_shutdown(self):
        """Ask the loop to exit. Safe to call from signal handlers and other threads."""
        self._stop.set()
        try:
            self.reload_requests.put_nowait(False)
        except queue.Full:
            # Loop wakes on the pending item and sees the stop flag
            pass

    # Thread helpers

    def start(self) -> threading.Thread:
        """Run the loop in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return self._thread
        # A previous stop may have left its wake-up sentinel in the queue
        try:
            pending = self.reload_requests.get_nowait()
        except queue.Empty:
            pending = None
        if pending:
            try:
                self.reload_requests.put_nowait(pending)
            except queue.Full:
                pass
        self._stop.clear()
        self._thread = threading.Thread(target=self.run, name='backup-scheduler', daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout: Optional[float] = 10):
        """Request shutdown and wait for the loop thread."""
        self.request_shutdown()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def install_signal_handlers(self):
        """Route SIGINT and SIGTERM to request_shutdown. Main thread only."""
        def handler(signum, frame):
            logger.info(f"Received signal {signal.Signals(signum).name}")
            self.request_shutdown()

        signal.signal(signal.SIGINT, handler)
        signal.signal(signal.SIGTERM, handler)


# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None


def init_scheduler(app) -> Scheduler:
    """
    Initialize the backup daemon for a Flask app.

    Args:
        app: Flask app instance

    Raises:
        ConfigError: If the backup configuration cannot be loaded
    """
    global scheduler, flask_app

    if scheduler is not None:
        return scheduler

    flask_app = app

    scheduler = Scheduler(
        config_path=app.config['CONFIG_PATH'],
        temp_dir=app.config['TEMP_DIR'],
        progress_interval=parse_progress_interval(app.config.get('PROGRESS_INTERVAL'))
    )
    return scheduler


def start_scheduler():
    """
    Start the backup daemon thread.

    Should be called after the Flask app is initialized.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if not scheduler.running:
        scheduler.start()
        logger.info("Backup scheduler thread started")
    else:
        logger.info(f"Scheduler already running (state={scheduler.state})")


def stop_scheduler():
    """Stop the backup daemon thread."""
    if scheduler and scheduler.running:
        scheduler.stop()
        logger.info("Backup scheduler stopped")


def trigger_backup_now() -> bool:
    """
    Manually trigger a backup immediately.

    Returns:
        False if a backup is already in progress

    Raises:
        RuntimeError: If the scheduler is not initialized
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    return scheduler.trigger_now()


def is_scheduler_running() -> bool:
    """Check if the scheduler loop is running."""
    return scheduler is not None and scheduler.running


def get_scheduler_diagnostics() -> dict:
    """
    Get scheduler diagnostics for status reporting.

    Returns:
        Dict with scheduler state, schedule, next run and last run
    """
    if scheduler is None:
        return {
            'initialized': False,
            'running': False,
            'state': 'NOT_INITIALIZED'
        }

    schedule = scheduler.config.schedule
    last_run = scheduler.last_run

    return {
        'initialized': True,
        'running': scheduler.running,
        'state': scheduler.state,
        'schedule': {
            'enabled': schedule.enabled,
            'hour': schedule.hour,
            'minute': schedule.minute,
            'timezone': schedule.timezone or 'local'
        },
        'next_run': scheduler.next_run.isoformat() if scheduler.next_run else None,
        'backup_in_progress': scheduler.guard.running,
        'last_run': last_run.to_dict() if last_run else None
    }
