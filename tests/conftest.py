"""
Shared pytest fixtures for Backup Courier tests.

This module provides fixtures for:
- Source folders with nested files
- Pipeline configurations built from plain dicts
- A recording deliverer that keeps a copy of whatever it was sent
- Mocked AWS S3 (moto)
"""

import shutil
from datetime import datetime
from pathlib import Path

import pytest
import boto3
from moto import mock_aws

from backup_courier.backup.delivery import DeliveryReceipt
from backup_courier.config import config_from_dict


FIXED_START = datetime(2024, 1, 15, 12, 0, 0)
FIXED_RUN_ID = '2024-01-15_12-00-00'

# Low iteration count keeps key derivation fast in tests
TEST_KDF_ITERATIONS = 1000


class RecordingDeliverer:
    """Deliverer that copies each delivered file aside before staging is removed."""

    use_html = True

    def __init__(self, inbox: Path, fail_with=None):
        self.inbox = Path(inbox)
        self.inbox.mkdir(parents=True, exist_ok=True)
        self.fail_with = fail_with
        self.calls = []

    def deliver(self, artifact_path, caption, metadata=None):
        if self.fail_with is not None:
            raise self.fail_with
        artifact_path = Path(artifact_path)
        copy = self.inbox / artifact_path.name
        shutil.copy2(artifact_path, copy)
        self.calls.append({'path': copy, 'caption': caption, 'metadata': dict(metadata or {})})
        return DeliveryReceipt(success=True, reference=f"msg-{len(self.calls)}", caption=caption)

    @property
    def delivered(self):
        return self.calls[-1]['path'] if self.calls else None


@pytest.fixture
def temp_files(tmp_path):
    """
    Create temporary test files and directories.

    Creates:
    - test_file1.txt
    - test_file2.log
    - nested/test_file3.txt
    - test_file.pyc (excluded in some tests)
    """
    root = tmp_path / 'files'
    root.mkdir()
    (root / 'test_file1.txt').write_text('Test content 1')
    (root / 'test_file2.log').write_text('Test log content')

    nested_dir = root / 'nested'
    nested_dir.mkdir()
    (nested_dir / 'test_file3.txt').write_text('Nested test content')

    (root / 'test_file.pyc').write_bytes(b'compiled python')

    return root


@pytest.fixture
def app_source(tmp_path):
    """A /data/app style folder with a couple of files."""
    app_dir = tmp_path / 'data' / 'app'
    app_dir.mkdir(parents=True)
    (app_dir / 'db.sqlite3').write_bytes(b'\x00SQLite format 3\x00' + bytes(range(256)))
    (app_dir / 'conf').mkdir()
    (app_dir / 'conf' / 'xray.json').write_text('{"inbounds": []}')
    return app_dir


@pytest.fixture
def staging_root(tmp_path):
    return tmp_path / 'staging'


@pytest.fixture
def base_config_dict(staging_root):
    """Minimal valid configuration without sources or database."""
    return {
        'staging_dir': str(staging_root),
        'host_name': 'test-host',
        'kdf_iterations': TEST_KDF_ITERATIONS,
        'remote_endpoint': {
            'type': 'telegram',
            'bot_token': '123456:TEST-TOKEN',
            'chat_id': '-1000000000001',
        },
    }


@pytest.fixture
def make_config(base_config_dict):
    """Factory building a PipelineConfig from the base dict plus overrides."""
    def _make(**overrides):
        data = dict(base_config_dict)
        data.update(overrides)
        return config_from_dict(data)
    return _make


@pytest.fixture
def deliverer(tmp_path):
    return RecordingDeliverer(tmp_path / 'inbox')


@pytest.fixture
def fixed_clock():
    return lambda: FIXED_START


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


@pytest.fixture
def run_id():
    return FIXED_RUN_ID


@pytest.fixture
def make_deliverer(tmp_path):
    """Factory for recording deliverers, optionally raising on deliver()."""
    def _make(fail_with=None):
        return RecordingDeliverer(tmp_path / 'inbox', fail_with=fail_with)
    return _make
