"""Shared pytest fixtures for all tests."""

import io
import threading

import httpx
import pytest

from common.exceptions import StorageError
from common.storage import ObjectStore
from coordinator.config import CacheConfig
from coordinator.transfer_client import CoordinatorState, TransferCoordinator
from worker.rpc_server import create_app
from worker.service import S3Service


class InMemoryObjectStore(ObjectStore):
    """ObjectStore keeping objects in a dict, shared by every bucket."""

    def __init__(self):
        self.objects = {}
        self.fail_with = None
        self._lock = threading.Lock()

    def put(self, key, stream, progress=None):
        if self.fail_with is not None:
            raise self.fail_with
        data = bytearray()
        while True:
            piece = stream.read(64 * 1024)
            if not piece:
                break
            data.extend(piece)
            if progress is not None:
                progress(len(data))
        with self._lock:
            self.objects[key] = bytes(data)

    def get(self, key):
        if self.fail_with is not None:
            raise self.fail_with
        with self._lock:
            data = self.objects.get(key)
        return io.BytesIO(data) if data is not None else None

    def head(self, key):
        if self.fail_with is not None:
            raise self.fail_with
        with self._lock:
            data = self.objects.get(key)
        return len(data) if data is not None else None

    def delete(self, key):
        if self.fail_with is not None:
            raise self.fail_with
        with self._lock:
            self.objects.pop(key, None)


@pytest.fixture
def memory_store():
    """
    Create an empty in-memory object store.

    Returns:
        InMemoryObjectStore instance; set fail_with to make every call raise
    """
    return InMemoryObjectStore()


@pytest.fixture
def failing_store():
    """In-memory store whose every call raises StorageError."""
    store = InMemoryObjectStore()
    store.fail_with = StorageError("Failed to download key: AccessDenied")
    return store


@pytest.fixture
def service(memory_store):
    """
    Create S3Service over the in-memory store.

    Returns:
        S3Service with small concurrency limits
    """
    svc = S3Service(
        store_factory=lambda bucket: memory_store,
        default_bucket='cache-bucket',
        max_download_concurrency=4,
        max_upload_concurrency=4
    )
    yield svc
    svc.close()


@pytest.fixture
def cache_config(tmp_path):
    """
    Create cache configuration for tests.

    Args:
        tmp_path: pytest tmp_path fixture

    Returns:
        CacheConfig with a bulk archive directory and cache key
    """
    return CacheConfig(
        bucket='cache-bucket',
        region='us-east-1',
        archives_dir=str(tmp_path / 'archives'),
        cache_key_parts=['my-project', '0'],
        chunk_count=3
    )


@pytest.fixture
def ready_coordinator(cache_config, service):
    """
    Create a READY TransferCoordinator talking to the worker app in-process.

    The RPC channel goes through httpx.ASGITransport instead of a spawned
    process and unix socket.
    """
    coordinator = TransferCoordinator(cache_config)
    coordinator.session = httpx.AsyncClient(
        transport=httpx.ASGITransport(app=create_app(service)),
        base_url='http://worker'
    )
    coordinator.state = CoordinatorState.READY
    return coordinator


@pytest.fixture
def sample_file(tmp_path):
    """
    Create a sample file for testing uploads.

    Args:
        tmp_path: pytest tmp_path fixture

    Returns:
        Path to sample file
    """
    file_path = tmp_path / 'input' / 'package.zip'
    file_path.parent.mkdir(parents=True)
    file_path.write_bytes(b'PK\x03\x04' + b'sample package content ' * 100)
    return file_path


@pytest.fixture
def sample_tree(tmp_path):
    """
    Create a directory tree for testing tar uploads.

    Returns:
        Path to directory containing files at two levels
    """
    root = tmp_path / 'build-output'
    (root / 'lib').mkdir(parents=True)
    (root / 'index.js').write_text('module.exports = 42;\n')
    (root / 'lib' / 'native.node').write_bytes(bytes(range(256)) * 8)
    return root
