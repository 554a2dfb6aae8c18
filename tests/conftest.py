"""
Shared pytest fixtures for DVOM tests.

This module provides fixtures for:
- An in-memory Docker engine whose volumes are temporary directories
- Storage backends (local directory, mocked S3)
- Snapshot storage with a controllable clock
- Run configuration and canned prompts
- Logging isolation
"""

import os
import logging
import tarfile
from datetime import datetime, timedelta, timezone

import pytest
import boto3
from moto import mock_aws

from dvom.config import Config, RunConfig, StorageConfig, StorageKind
from dvom.models import ContainerInfo, VolumeInfo
from dvom.backup.compression import ResourceLimitError
from dvom.backup.snapshots import SnapshotStorage
from dvom.backup.storage import LocalStorage
from dvom.backup.volumes import ContainerNotFoundError, EngineError, VolumeNotFoundError
from dvom.utils.prompt import CannedPrompter


class FakeEngine:
    """
    Stand-in for DockerEngine.

    Volumes are directories under a temp root; containers are plain records.
    Every call is appended to self.calls so tests can assert ordering.
    """

    def __init__(self, root, max_copy_size=Config.MAX_COPY_SIZE):
        self.root = root
        self.max_copy_size = max_copy_size
        self.volumes = {}
        self.containers = {}
        self.fail_start = set()
        self.calls = []

    def add_volume(self, name, files=None):
        path = self.root / 'volumes' / name
        path.mkdir(parents=True)
        for rel, content in (files or {}).items():
            target = path / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content if isinstance(content, bytes) else content.encode())
        self.volumes[name] = path
        return path

    def add_container(self, container_id, name, running=True):
        self.containers[container_id] = {'name': name, 'running': running}

    def read_volume(self, name):
        path = self.volumes[name]
        return {
            str(p.relative_to(path)): p.read_bytes()
            for p in sorted(path.rglob('*')) if p.is_file()
        }

    # DockerEngine interface

    def list_volumes(self):
        return [VolumeInfo(name=name, driver='local', mountpoint=str(path))
                for name, path in sorted(self.volumes.items())]

    def get_volume(self, name):
        if name not in self.volumes:
            raise VolumeNotFoundError(f"Volume not found: {name}")
        return VolumeInfo(name=name, driver='local', mountpoint=str(self.volumes[name]))

    def get_container(self, name_or_id):
        for cid, c in self.containers.items():
            if cid == name_or_id or cid.startswith(name_or_id) or c['name'] == name_or_id:
                return ContainerInfo(id=cid, name=c['name'], running=c['running'])
        raise ContainerNotFoundError(f"Container not found: {name_or_id}")

    def stop_container(self, container_id, timeout=30):
        self.calls.append(('stop', container_id))
        was_running = self.containers[container_id]['running']
        self.containers[container_id]['running'] = False
        return was_running

    def start_container(self, container_id):
        self.calls.append(('start', container_id))
        if container_id in self.fail_start:
            raise EngineError(f"cannot start {container_id}")
        self.containers[container_id]['running'] = True

    def archive_volume(self, volume_name, output_path, cancellation_check=None, limit=None):
        self.get_volume(volume_name)
        self.calls.append(('archive', volume_name))
        if cancellation_check:
            cancellation_check()
        with tarfile.open(output_path, 'w:gz') as tar:
            tar.add(self.volumes[volume_name], arcname='.')
        size = os.path.getsize(output_path)
        if size > (limit or self.max_copy_size):
            raise ResourceLimitError("Volume archive exceeds limit")
        return size

    def restore_volume(self, volume_name, archive_path):
        self.get_volume(volume_name)
        self.calls.append(('restore', volume_name))
        path = self.volumes[volume_name]
        for child in sorted(path.rglob('*'), reverse=True):
            if child.is_dir():
                child.rmdir()
            else:
                child.unlink()
        with tarfile.open(archive_path, 'r:gz') as tar:
            tar.extractall(path, filter='data')


class StepClock:
    """UTC clock that advances one minute on every call."""

    def __init__(self, start=datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self):
        current = self.now
        self.now += timedelta(minutes=1)
        return current


@pytest.fixture(autouse=True)
def isolated_logging(tmp_path, monkeypatch):
    """Keep log files out of the home directory and reset handlers after each test."""
    monkeypatch.setattr(Config, 'LOG_DIR', str(tmp_path / 'logs'))
    yield
    logger = logging.getLogger('dvom')
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def engine(tmp_path):
    """
    Fake engine with one populated volume and two containers.

    Volume 'app_data' holds a few files including a dotfile.
    Containers: 'web' (running), 'worker' (stopped).
    """
    eng = FakeEngine(tmp_path / 'engine')
    eng.add_volume('app_data', {
        'config.yml': 'key: value\n',
        'data/records.db': b'\x00\x01\x02' * 1000,
        '.hidden': 'secret',
    })
    eng.add_container('a1b2c3d4e5f6a1b2c3d4', 'web', running=True)
    eng.add_container('f6e5d4c3b2a1f6e5d4c3', 'worker', running=False)
    return eng


@pytest.fixture
def local_storage(tmp_path):
    """LocalStorage rooted in a temp directory."""
    return LocalStorage(str(tmp_path / 'backups'))


@pytest.fixture
def clock():
    return StepClock()


@pytest.fixture
def snapshots(local_storage, clock):
    """SnapshotStorage over local storage with a one-minute step clock."""
    return SnapshotStorage(local_storage, clock=clock)


@pytest.fixture
def run_config(tmp_path):
    """RunConfig writing temporary files under tmp_path."""
    temp_dir = tmp_path / 'temp'
    temp_dir.mkdir()
    return RunConfig(
        storage=StorageConfig(kind=StorageKind.LOCAL, base_path=str(tmp_path / 'backups')),
        temp_dir=str(temp_dir),
    )


@pytest.fixture
def prompter():
    """Prompter that confirms once and has no passwords."""
    return CannedPrompter(confirmations=[True])


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
def sample_archive(tmp_path):
    """Create a small .tar.gz with two files."""
    test_dir = tmp_path / 'test_data'
    test_dir.mkdir()
    (test_dir / 'file1.txt').write_text('Content 1')
    (test_dir / 'file2.txt').write_text('Content 2')

    archive_path = tmp_path / 'test_archive.tar.gz'
    with tarfile.open(archive_path, 'w:gz') as tar:
        tar.add(test_dir, arcname='test_data')

    return archive_path
