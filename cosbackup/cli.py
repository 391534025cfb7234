"""Command line entry point - one-shot runs, the daemon and maintenance commands."""

import logging
import os
import sys
import threading
from datetime import datetime

import click

from cosbackup import setup_logging
from cosbackup.backup.executor import run_backup
from cosbackup.backup.guard import PipelineRunGuard, GuardBusyError
from cosbackup.backup.progress import parse_progress_interval
from cosbackup.backup.retention import enforce_retention_policy, find_latest_backup
from cosbackup.backup.storage import S3Storage, StorageError
from cosbackup.backup.walker import calculate_dir_size
from cosbackup.config import Config, ConfigError, load_config, generate_default_config
from cosbackup.scheduler import Scheduler, compute_next_run
from cosbackup.utils.formatting import format_bytes, friendly_duration


def _load_or_exit(config_path):
    try:
        return load_config(config_path)
    except ConfigError as e:
        click.echo(f"✗ {e}", err=True)
        click.echo("Run 'cosbackup init' to create a default configuration.", err=True)
        sys.exit(1)


@click.group()
@click.option('--config', '-c', 'config_path', default=Config.CONFIG_PATH, show_default=True,
              help='Backup configuration file (TOML)')
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
@click.pass_context
def cli(ctx, config_path, verbose):
    """cos-backup - scheduled backups of a directory to object storage.

    Archives the source directory, uploads it to an S3-compatible bucket
    and deletes archives older than the retention window.

    Examples:
        # Create a default configuration
        cosbackup init

        # Run one backup now
        cosbackup run

        # Run the scheduler in the foreground
        cosbackup daemon
    """
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config_path
    ctx.obj['verbose'] = verbose


def _setup_logging(ctx):
    level = logging.DEBUG if ctx.obj['verbose'] else logging.INFO
    setup_logging(Config.LOG_DIR, level)


@cli.command('init')
@click.option('--force', is_flag=True, help='Overwrite an existing configuration file')
@click.pass_context
def init_config(ctx, force):
    """Create a default configuration file."""
    config_path = ctx.obj['config_path']

    if os.path.exists(config_path) and not force:
        click.echo(f"Configuration file already exists: {config_path}")
        if not click.confirm("Overwrite existing configuration?"):
            return

    generate_default_config(config_path)
    click.echo(f"✓ Created configuration file: {config_path}")
    click.echo("\nNext steps:")
    click.echo("  1. Fill in the [storage] credentials and bucket")
    click.echo("  2. Set [backup] data_dir to the directory to back up")
    click.echo("  3. Enable [backup.schedule] and run 'cosbackup daemon'")


@cli.command('run')
@click.pass_context
def run_once(ctx):
    """Run one backup now (archive, upload, prune)."""
    _setup_logging(ctx)
    config = _load_or_exit(ctx.obj['config_path'])

    guard = PipelineRunGuard(Config.TEMP_DIR)
    try:
        run = run_backup(
            config,
            temp_root=Config.TEMP_DIR,
            guard=guard,
            progress_interval=parse_progress_interval(Config.PROGRESS_INTERVAL)
        )
    except GuardBusyError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)

    if run.status == 'failed':
        click.echo(f"✗ Backup failed: {run.error_message}", err=True)
        sys.exit(1)

    if run.status == 'skipped':
        click.echo("Backup skipped (source directory is empty)")
        return

    ratio = ''
    if run.original_size:
        ratio = f", {run.compressed_size / run.original_size * 100:.1f}%"
    click.echo(f"✓ Uploaded {run.remote_key} "
               f"({format_bytes(run.original_size)} -> {format_bytes(run.compressed_size)}{ratio})")
    if run.retention is not None and not run.retention.skipped:
        click.echo(f"  Expired archives deleted: {run.retention.deleted}, failed: {run.retention.failed}")


@cli.command('daemon')
@click.pass_context
def daemon(ctx):
    """Run the backup scheduler in the foreground.

    Reloads the configuration file when it changes. SIGINT or SIGTERM stops
    the scheduler after any backup in progress has finished.
    """
    _setup_logging(ctx)
    config_path = ctx.obj['config_path']
    config = _load_or_exit(config_path)

    scheduler = Scheduler(
        config_path,
        config=config,
        temp_dir=Config.TEMP_DIR,
        progress_interval=parse_progress_interval(Config.PROGRESS_INTERVAL)
    )
    if threading.current_thread() is threading.main_thread():
        scheduler.install_signal_handlers()
    scheduler.run()


@cli.command('status')
@click.pass_context
def status(ctx):
    """Show configuration summary, last and next run, and source size."""
    config = _load_or_exit(ctx.obj['config_path'])
    schedule = config.schedule

    click.echo(f"Bucket:      {config.storage.bucket} ({config.storage.region})")
    if config.storage.endpoint_url:
        click.echo(f"Endpoint:    {config.storage.endpoint_url}")
    click.echo(f"Prefix:      {config.storage.normalized_prefix or '/'}")
    click.echo(f"Retention:   {config.retention_days} days" if config.retention_days > 0 else "Retention:   disabled")
    click.echo(f"Compression: {config.compression_format}")

    try:
        size = calculate_dir_size(config.source_dir)
        click.echo(f"Source:      {config.source_dir} ({format_bytes(size)})")
    except OSError as e:
        click.echo(f"Source:      {config.source_dir} (unreadable: {e})")

    try:
        latest = find_latest_backup(S3Storage.from_config(config.storage), config.storage.normalized_prefix)
    except StorageError as e:
        click.echo(f"Last backup: unknown ({e})")
    else:
        if latest is None:
            click.echo("Last backup: none found")
        else:
            key, created = latest
            age = (datetime.now() - created).total_seconds()
            click.echo(f"Last backup: {created:%Y-%m-%d %H:%M:%S} ({friendly_duration(age)} ago) {key}")

    if schedule.enabled:
        next_run = compute_next_run(schedule)
        wait = (next_run - datetime.now(next_run.tzinfo)).total_seconds()
        click.echo(f"Schedule:    daily at {schedule.hour:02d}:{schedule.minute:02d} "
                   f"({schedule.timezone or 'local'})")
        click.echo(f"Next run:    {next_run:%Y-%m-%d %H:%M:%S %Z} (in {friendly_duration(wait)})")
    else:
        click.echo("Schedule:    disabled")

    guard = PipelineRunGuard(Config.TEMP_DIR)
    if guard.running:
        click.echo(f"Backup:      in progress (PID: {guard.read_owner()})")
    else:
        click.echo("Backup:      idle")


@cli.command('check')
@click.pass_context
def check(ctx):
    """Check connectivity and access to the configured bucket."""
    config = _load_or_exit(ctx.obj['config_path'])

    try:
        S3Storage.from_config(config.storage).test_connection()
    except StorageError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)

    click.echo(f"✓ Bucket reachable: {config.storage.bucket}")


@cli.command('prune')
@click.pass_context
def prune(ctx):
    """Delete expired archives without running a backup."""
    _setup_logging(ctx)
    config = _load_or_exit(ctx.obj['config_path'])

    try:
        result = enforce_retention_policy(config)
    except StorageError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)

    if result.skipped:
        click.echo("Retention disabled (keep_days <= 0)")
        return

    click.echo(f"Listed: {result.listed_files}, expired: {result.to_delete}, "
               f"deleted: {result.deleted}, failed: {result.failed}")
    if result.failed:
        sys.exit(1)


if __name__ == '__main__':
    cli()
