"""
Shared pytest fixtures for cos-backup tests.

This module provides fixtures for:
- Flask app and test client
- Backup configuration snapshots and config files
- Mock S3 bucket (moto) and an in-memory storage double
- Temporary source trees
"""

import os
import threading

import pytest
import boto3
from moto import mock_aws

from cosbackup.models import BackupConfig, ScheduleConfig, StorageConfig, RemoteObject
from cosbackup.backup.storage import StorageError


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    """Fake credentials so boto3 never looks at the real environment."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture(autouse=True)
def reset_scheduler_globals():
    """Module-level scheduler state must not leak between tests."""
    from cosbackup import scheduler as backup_scheduler

    yield

    if backup_scheduler.scheduler is not None:
        backup_scheduler.scheduler.stop(timeout=5)
    backup_scheduler.scheduler = None
    backup_scheduler.flask_app = None


@pytest.fixture(scope='function')
def app(tmp_path, config_file, monkeypatch):
    """
    Create Flask app with test configuration.

    The testing config never starts the scheduler thread.
    """
    from cosbackup import create_app
    from cosbackup.config import TestingConfig

    monkeypatch.setattr(TestingConfig, 'CONFIG_PATH', str(config_file))
    monkeypatch.setattr(TestingConfig, 'TEMP_DIR', str(tmp_path / 'temp'))
    monkeypatch.setattr(TestingConfig, 'LOG_DIR', str(tmp_path / 'logs'))

    app = create_app('testing')
    yield app


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture
def source_tree(tmp_path):
    """
    Create a small source directory.

    Creates:
    - file1.txt
    - file2.log
    - nested/file3.txt
    - nested/deeper/file4.bin
    """
    source = tmp_path / 'source'
    source.mkdir()
    (source / 'file1.txt').write_text('Test content 1')
    (source / 'file2.log').write_text('Test log content')

    nested = source / 'nested'
    nested.mkdir()
    (nested / 'file3.txt').write_text('Nested test content')

    deeper = nested / 'deeper'
    deeper.mkdir()
    (deeper / 'file4.bin').write_bytes(os.urandom(2048))

    return source


@pytest.fixture
def backup_config(source_tree):
    """Configuration snapshot pointing at source_tree and 'test-bucket'."""
    return BackupConfig(
        storage=StorageConfig(
            access_key='test_access_key',
            secret_key='test_secret_key',
            bucket='test-bucket',
            region='us-east-1',
            prefix='backup/',
            keep_days=7
        ),
        source_dir=str(source_tree),
        schedule=ScheduleConfig(enabled=True, hour=2, minute=0, timezone='UTC')
    )


CONFIG_TOML = """\
[storage]
access_key = "test_access_key"
secret_key = "test_secret_key"
bucket = "test-bucket"
region = "us-east-1"
prefix = "backup"
keep_days = 7

[backup]
data_dir = "{source_dir}"
compression = "tar.zst"

[backup.schedule]
enabled = true
hour = 2
minute = 30
timezone = "UTC"
"""


@pytest.fixture
def config_file(tmp_path, source_tree):
    """Valid TOML configuration file pointing at source_tree."""
    path = tmp_path / 'config' / 'config.toml'
    path.parent.mkdir()
    path.write_text(CONFIG_TOML.format(source_dir=source_tree))
    return path


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


class FakeStorage:
    """
    In-memory object store with the S3Storage interface.

    put_failures: number of put_object calls that fail before one succeeds.
    delete_failures: keys whose deletion fails.
    """

    def __init__(self, objects=None, put_failures=0, delete_failures=(), list_error=None):
        self.objects = dict(objects or {})
        self.put_failures = put_failures
        self.delete_failures = set(delete_failures)
        self.list_error = list_error
        self.put_calls = 0
        self.list_calls = 0
        self.deleted = []
        self._lock = threading.Lock()

    def put_object(self, key, stream, size):
        self.put_calls += 1
        data = stream.read()
        if self.put_calls <= self.put_failures:
            raise StorageError(f"Simulated upload failure #{self.put_calls}")
        with self._lock:
            self.objects[key] = data

    def list_objects_page(self, prefix, marker=None, page_size=1000):
        self.list_calls += 1
        if self.list_error is not None:
            raise self.list_error
        # Delete workers mutate objects concurrently with listing
        with self._lock:
            snapshot = {k: len(v or b'') for k, v in self.objects.items() if k.startswith(prefix)}
        keys = sorted(snapshot)
        if marker is not None:
            keys = [k for k in keys if k > marker]
        page = keys[:page_size]
        has_more = len(keys) > page_size
        entries = [RemoteObject(key=k, size=snapshot[k]) for k in page]
        return entries, (page[-1] if page else None), has_more

    def delete_object(self, key):
        if key in self.delete_failures:
            raise StorageError(f"Simulated delete failure: {key}")
        with self._lock:
            self.objects.pop(key, None)
            self.deleted.append(key)


@pytest.fixture
def fake_storage():
    return FakeStorage()


@pytest.fixture
def storage_factory():
    """FakeStorage class, for tests that need custom failure settings."""
    return FakeStorage
