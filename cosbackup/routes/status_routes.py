"""
Status routes - daemon state, source size and manual backup trigger.
"""

from flask import Blueprint, jsonify, current_app

from cosbackup import scheduler as backup_scheduler
from cosbackup.backup.walker import calculate_dir_size
from cosbackup.config import load_config, ConfigError
from cosbackup.utils.formatting import format_bytes


bp = Blueprint('status', __name__, url_prefix='/api')


def _current_config():
    """Config in effect: the scheduler's snapshot, or the file on disk."""
    if backup_scheduler.scheduler is not None:
        return backup_scheduler.scheduler.config
    return load_config(current_app.config['CONFIG_PATH'])


@bp.route('/status', methods=['GET'])
def get_status():
    """
    Get backup daemon status.

    Returns:
        JSON with scheduler state, schedule, next run and last run
    """
    return jsonify(backup_scheduler.get_scheduler_diagnostics())


@bp.route('/status/source', methods=['GET'])
def get_source_size():
    """
    Get the current size of the backup source directory.

    Returns:
        JSON with source_dir, size_bytes and a human readable size
    """
    try:
        config = _current_config()
    except ConfigError as e:
        return jsonify({'error': str(e)}), 500

    try:
        size = calculate_dir_size(config.source_dir)
    except OSError as e:
        return jsonify({'error': f"Failed to read source directory: {e}"}), 500

    return jsonify({
        'source_dir': config.source_dir,
        'size_bytes': size,
        'size': format_bytes(size)
    })


@bp.route('/backup/run', methods=['POST'])
def run_backup_now():
    """
    Manually trigger a backup to run immediately.

    Returns:
        202 when started, 409 if a backup is already running,
        503 if the scheduler is not running in this process
    """
    if backup_scheduler.scheduler is None:
        return jsonify({'error': 'Scheduler not initialized in this process'}), 503

    try:
        started = backup_scheduler.trigger_backup_now()
    except Exception as e:
        return jsonify({'error': str(e)}), 500

    if not started:
        return jsonify({'error': 'A backup is already in progress'}), 409

    return jsonify({'message': 'Backup has been started'}), 202
