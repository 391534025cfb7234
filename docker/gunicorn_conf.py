# Gunicorn configuration for cos-backup
# Keeps the backup scheduler in exactly one worker

import os
import logging

logger = logging.getLogger('gunicorn.error')

bind = os.environ.get('BIND', '0.0.0.0:8080')
workers = int(os.environ.get('WEB_CONCURRENCY', 2))

# The scheduler thread must start after fork, inside the designated worker
preload_app = False


def post_fork(server, worker):
    """
    Called in the worker process right after fork, before the app is loaded.

    Designates the first worker (worker.age == 1) as the scheduler owner.
    Other workers only serve the status API. The run lock file still
    prevents overlapping backups if two schedulers ever run on one host.

    Args:
        server: Gunicorn arbiter
        worker: Gunicorn worker instance (uses 'age' attribute: 1, 2, 3, ...)
    """
    if worker.age == 1:
        os.environ['SCHEDULER_WORKER'] = 'true'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): Designated as SCHEDULER OWNER")
    else:
        os.environ['SCHEDULER_WORKER'] = 'false'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): Status API worker (scheduler disabled)")
