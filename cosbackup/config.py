import os
import tomllib
from typing import Any, Dict

from cosbackup.models import (
    BackupConfig,
    ScheduleConfig,
    StorageConfig,
    DEFAULT_COMPRESSION_FORMAT,
    DEFAULT_KEEP_DAYS
)


class Config:
    """Base configuration"""

    # Backup configuration file (hot-reloaded by the daemon)
    CONFIG_PATH = os.environ.get('COSBACKUP_CONFIG') or os.path.join('config', 'config.toml')

    # Per-run temp directories and the run lock file live here
    TEMP_DIR = os.environ.get('TEMP_DIR') or 'tmp'

    # Logging
    LOG_DIR = os.environ.get('LOG_DIR') or 'logs'

    # Upload progress reporting interval, e.g. "500ms", "2s"
    PROGRESS_INTERVAL = os.environ.get('PROGRESS_INTERVAL')

    # Scheduler
    SCHEDULER_ENABLED = True


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    TEMP_DIR = os.path.join(DATA_DIR, 'tmp')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


class TestingConfig(Config):
    """Testing configuration"""
    DEBUG = False
    TESTING = True
    SCHEDULER_ENABLED = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}


VALID_COMPRESSION_FORMATS = ('tar.zst', 'tar.gz', 'tar.bz2', 'tar.xz', 'none')


class ConfigError(Exception):
    """Raised when the backup configuration is invalid."""
    pass


class ConfigNotFoundError(ConfigError):
    """Raised when the configuration file does not exist."""
    pass


class ConfigParseError(ConfigError):
    """Raised when the configuration file is not valid TOML."""
    pass


DEFAULT_CONFIG_TEMPLATE = """\
# Object storage (any S3-compatible service)
[storage]
access_key  = "AKIDxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxx"   # access key id
secret_key  = "xxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxx"       # secret access key
bucket      = "your-bucket-name"                       # bucket name (COS: name-appid)
region      = "ap-shanghai"                            # region
endpoint    = ""                                       # e.g. https://cos.ap-shanghai.myqcloud.com, empty for AWS
prefix      = "backup/"                                # key prefix for uploaded archives
keep_days   = 30                                       # days to keep archives, 0 disables cleanup

# Local backup source
[backup]
data_dir    = "./data"                                 # directory to back up (relative or absolute)
compression = "tar.zst"                                # tar.zst, tar.gz, tar.bz2, tar.xz or none

# Daily schedule
[backup.schedule]
enabled  = false                                       # run from the daemon
hour     = 2                                           # 0-23
minute   = 0                                           # 0-59
timezone = "Asia/Shanghai"                             # IANA zone, empty for local time
"""


def load_config(path: str) -> BackupConfig:
    """
    Load a backup configuration snapshot from a TOML file.

    Args:
        path: Path to the configuration file

    Returns:
        BackupConfig snapshot

    Raises:
        ConfigNotFoundError: If the file does not exist
        ConfigParseError: If the file is not valid TOML
        ConfigError: If a value is missing or out of range
    """
    try:
        with open(path, 'rb') as f:
            data = tomllib.load(f)
    except FileNotFoundError:
        raise ConfigNotFoundError(f"Configuration file not found: {path}")
    except tomllib.TOMLDecodeError as e:
        raise ConfigParseError(f"Failed to parse configuration file {path}: {e}")
    except OSError as e:
        raise ConfigError(f"Failed to read configuration file {path}: {e}")

    return config_from_dict(data)


def config_from_dict(data: Dict[str, Any]) -> BackupConfig:
    """
    Build a validated BackupConfig from parsed TOML data.

    Raises:
        ConfigError: If a value has the wrong type or is out of range
    """
    storage_data = data.get('storage', {})
    backup_data = data.get('backup', {})
    schedule_data = backup_data.get('schedule', {})

    if not isinstance(storage_data, dict) or not isinstance(backup_data, dict) \
            or not isinstance(schedule_data, dict):
        raise ConfigError("Sections [storage], [backup] and [backup.schedule] must be tables")

    storage = StorageConfig(
        access_key=_get(storage_data, 'access_key', str, ''),
        secret_key=_get(storage_data, 'secret_key', str, ''),
        bucket=_get(storage_data, 'bucket', str, ''),
        region=_get(storage_data, 'region', str, 'us-east-1'),
        prefix=_get(storage_data, 'prefix', str, 'backup/'),
        endpoint_url=_get(storage_data, 'endpoint', str, '') or None,
        keep_days=_get(storage_data, 'keep_days', int, DEFAULT_KEEP_DAYS)
    )

    schedule = ScheduleConfig(
        enabled=_get(schedule_data, 'enabled', bool, False),
        hour=_get(schedule_data, 'hour', int, 2),
        minute=_get(schedule_data, 'minute', int, 0),
        timezone=_get(schedule_data, 'timezone', str, '')
    )

    if not 0 <= schedule.hour <= 23:
        raise ConfigError(f"Invalid schedule hour: {schedule.hour} (expected 0-23)")
    if not 0 <= schedule.minute <= 59:
        raise ConfigError(f"Invalid schedule minute: {schedule.minute} (expected 0-59)")

    compression_format = _get(backup_data, 'compression', str, DEFAULT_COMPRESSION_FORMAT)
    if compression_format not in VALID_COMPRESSION_FORMATS:
        raise ConfigError(
            f"Invalid compression format: {compression_format}. "
            f"Valid options: {list(VALID_COMPRESSION_FORMATS)}"
        )

    return BackupConfig(
        storage=storage,
        source_dir=_get(backup_data, 'data_dir', str, './data'),
        schedule=schedule,
        compression_format=compression_format
    )


def _get(section: Dict[str, Any], key: str, expected_type: type, default: Any) -> Any:
    value = section.get(key, default)
    # bool is a subclass of int; reject true/false for numeric fields
    if expected_type is int and isinstance(value, bool):
        raise ConfigError(f"Invalid value for '{key}': expected integer, got boolean")
    if not isinstance(value, expected_type):
        raise ConfigError(
            f"Invalid value for '{key}': expected {expected_type.__name__}, "
            f"got {type(value).__name__}"
        )
    return value


def generate_default_config(path: str) -> str:
    """
    Write a commented default configuration file.

    The file is created with mode 0600 since it holds credentials.

    Args:
        path: Destination path (parent directories are created)

    Returns:
        The path written
    """
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)

    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, 'w', encoding='utf-8') as f:
        f.write(DEFAULT_CONFIG_TEMPLATE)

    return path
