"""Unit tests for the transfer worker service and its RPC app."""

import asyncio
import hashlib
import threading
import time

import pytest
from fastapi.testclient import TestClient

from common.exceptions import StorageError
from common.protocol import RpcRequest
from worker.rpc_server import create_app
from worker.service import S3Service


def rpc(client, method, params=None, request_id=1):
    response = client.post('/rpc', json={
        'jsonrpc': '2.0',
        'method': method,
        'params': [params or {}],
        'id': request_id
    })
    assert response.status_code == 200
    return response.json()


@pytest.fixture
def client(service):
    return TestClient(create_app(service))


class TestRpcEnvelope:
    """Test JSON-RPC dispatch."""

    def test_ping(self, client):
        body = rpc(client, 'S3Service.Ping', request_id=7)

        assert body == {'result': {'message': 'Pong'}, 'error': None, 'id': 7}

    def test_unknown_method(self, client):
        body = rpc(client, 'S3Service.Delete', request_id=3)

        assert body['result'] is None
        assert body['error'] == 'rpc: can\'t find method "S3Service.Delete"'
        assert body['id'] == 3

    def test_malformed_request(self, client):
        response = client.post('/rpc', content=b'{"method": "S3Service.Ping"}')

        assert response.status_code == 200
        assert response.json()['id'] is None
        assert response.json()['error'].startswith('invalid request')

    def test_missing_params_field(self, client):
        body = rpc(client, 'S3Service.Download', {'objectPath': 'abc.zip'})

        assert 'outputPath' in body['error']


class TestDownloadUpload:
    """Test Download/Upload semantics."""

    def test_miss_then_upload_then_hit(self, client, sample_file, tmp_path):
        output = tmp_path / 'cache' / 'abc.zip'
        download = {'objectPath': 's3://cache-bucket/abc.zip', 'outputPath': str(output)}

        assert rpc(client, 'S3Service.Download', download)['result'] == {'downloaded': False}
        assert not output.exists()

        upload = rpc(client, 'S3Service.Upload', {
            'objectPath': 's3://cache-bucket/abc.zip',
            'inputPath': str(sample_file)
        })
        assert upload['result'] == {'uploaded': True}

        assert rpc(client, 'S3Service.Download', download, request_id=2)['result'] == {'downloaded': True}
        assert output.read_bytes() == sample_file.read_bytes()

    def test_upload_of_existing_key_is_skipped(self, client, sample_file, memory_store):
        memory_store.objects['abc.zip'] = b'original'

        body = rpc(client, 'S3Service.Upload', {'objectPath': 'abc.zip', 'inputPath': str(sample_file)})

        assert body['result'] == {'uploaded': False}
        assert memory_store.objects['abc.zip'] == b'original'

    def test_checksum_match(self, client, memory_store, tmp_path):
        payload = b'zip bytes'
        memory_store.objects['abc.zip'] = payload
        output = tmp_path / 'abc.zip'

        body = rpc(client, 'S3Service.Download', {
            'objectPath': 'abc.zip',
            'outputPath': str(output),
            'expectedChecksum': hashlib.sha512(payload).hexdigest()
        })

        assert body['result'] == {'downloaded': True}
        assert output.read_bytes() == payload

    def test_checksum_mismatch_is_a_miss(self, client, memory_store, tmp_path):
        memory_store.objects['abc.zip'] = b'corrupted'
        output = tmp_path / 'abc.zip'

        body = rpc(client, 'S3Service.Download', {
            'objectPath': 'abc.zip',
            'outputPath': str(output),
            'expectedChecksum': hashlib.sha512(b'expected').hexdigest()
        })

        assert body['result'] == {'downloaded': False}
        assert not output.exists()
        assert list(tmp_path.iterdir()) == []
        assert 'abc.zip' not in memory_store.objects

    def test_corrupt_object_can_be_replaced(self, client, memory_store, sample_file, tmp_path):
        memory_store.objects['abc.zip'] = b'corrupted'
        download = {
            'objectPath': 'abc.zip',
            'outputPath': str(tmp_path / 'out' / 'abc.zip'),
            'expectedChecksum': hashlib.sha512(sample_file.read_bytes()).hexdigest()
        }

        assert rpc(client, 'S3Service.Download', download)['result'] == {'downloaded': False}
        upload = rpc(client, 'S3Service.Upload', {'objectPath': 'abc.zip', 'inputPath': str(sample_file)})

        assert upload['result'] == {'uploaded': True}
        assert memory_store.objects['abc.zip'] == sample_file.read_bytes()
        assert rpc(client, 'S3Service.Download', download, request_id=2)['result'] == {'downloaded': True}

    def test_compressed_tar_round_trip_replaces_destination(self, client, sample_tree, tmp_path):
        upload = rpc(client, 'S3Service.Upload', {
            'objectPath': 'build.tar.gz',
            'inputPath': str(sample_tree),
            'compress': True,
            'createTar': True
        })
        assert upload['result'] == {'uploaded': True}

        destination = tmp_path / 'installed'
        destination.mkdir()
        (destination / 'stale.txt').write_text('from a previous install')

        body = rpc(client, 'S3Service.Download', {
            'objectPath': 'build.tar.gz',
            'outputPath': str(destination),
            'decompress': True,
            'untar': True
        })

        assert body['result'] == {'downloaded': True}
        assert not (destination / 'stale.txt').exists()
        assert (destination / 'index.js').read_text() == 'module.exports = 42;\n'
        assert sorted(p.name for p in tmp_path.iterdir()) == ['build-output', 'installed']

    def test_storage_error_becomes_error_response(self, failing_store, tmp_path):
        service = S3Service(lambda bucket: failing_store, 'cache-bucket', 2, 2)
        client = TestClient(create_app(service))

        body = rpc(client, 'S3Service.Download', {'objectPath': 'abc.zip', 'outputPath': str(tmp_path / 'x')})

        assert body['result'] is None
        assert 'AccessDenied' in body['error']
        service.close()

    def test_failed_call_does_not_affect_next_call(self, client, tmp_path):
        bad = rpc(client, 'S3Service.Upload', {'objectPath': 'a.zip', 'inputPath': str(tmp_path / 'missing')})
        good = rpc(client, 'S3Service.Ping', request_id=2)

        assert bad['error'] is not None
        assert good['result'] == {'message': 'Pong'}


class SlowStore:
    """Store whose calls block briefly and record peak concurrency per direction."""

    def __init__(self):
        self.active = {'get': 0, 'put': 0}
        self.peak = {'get': 0, 'put': 0}
        self._lock = threading.Lock()

    def _enter(self, kind):
        with self._lock:
            self.active[kind] += 1
            self.peak[kind] = max(self.peak[kind], self.active[kind])
        time.sleep(0.05)
        with self._lock:
            self.active[kind] -= 1

    def get(self, key):
        self._enter('get')
        return None

    def head(self, key):
        return None

    def put(self, key, stream, progress=None):
        self._enter('put')
        stream.read()

    def delete(self, key):
        pass


@pytest.mark.asyncio
async def test_download_admission_control(tmp_path):
    store = SlowStore()
    service = S3Service(lambda bucket: store, 'cache-bucket', max_download_concurrency=2, max_upload_concurrency=2)

    results = await asyncio.gather(*[
        service.Download({'objectPath': f'{i}.zip', 'outputPath': str(tmp_path / f'{i}.zip')})
        for i in range(8)
    ])

    assert results == [{'downloaded': False}] * 8
    assert store.peak['get'] == 2
    assert service.active_downloads == 0
    service.close()


@pytest.mark.asyncio
async def test_upload_admission_control(sample_file):
    store = SlowStore()
    service = S3Service(lambda bucket: store, 'cache-bucket', max_download_concurrency=4, max_upload_concurrency=2)

    results = await asyncio.gather(*[
        service.Upload({'objectPath': f'{i}.zip', 'inputPath': str(sample_file)})
        for i in range(8)
    ])

    assert results == [{'uploaded': True}] * 8
    assert store.peak['put'] == 2
    assert service.active_uploads == 0
    service.close()


class BlockedDownloadStore(SlowStore):
    """SlowStore whose get() waits until released."""

    def __init__(self):
        super().__init__()
        self.release = threading.Event()

    def get(self, key):
        self.release.wait(5)
        return None


@pytest.mark.asyncio
async def test_full_download_pool_does_not_block_uploads(sample_file, tmp_path):
    store = BlockedDownloadStore()
    service = S3Service(lambda bucket: store, 'cache-bucket', max_download_concurrency=2, max_upload_concurrency=1)

    downloads = [
        asyncio.ensure_future(service.Download({'objectPath': f'{i}.zip', 'outputPath': str(tmp_path / f'{i}.zip')}))
        for i in range(3)
    ]
    while service.active_downloads < 2:
        await asyncio.sleep(0.01)

    try:
        upload = await asyncio.wait_for(
            service.Upload({'objectPath': 'up.zip', 'inputPath': str(sample_file)}),
            timeout=2
        )
        assert upload == {'uploaded': True}
        assert service.active_downloads == 2
    finally:
        store.release.set()

    assert await asyncio.gather(*downloads) == [{'downloaded': False}] * 3
    service.close()


@pytest.mark.asyncio
async def test_handle_keeps_request_id(service):
    response = await service.handle(RpcRequest(method='S3Service.Ping', id=41))

    assert response.id == 41
    assert response.result == {'message': 'Pong'}
    assert response.error is None


@pytest.mark.asyncio
async def test_handle_reports_storage_errors(memory_store, tmp_path):
    memory_store.fail_with = StorageError("Failed to inspect abc.zip: 403")
    service = S3Service(lambda bucket: memory_store, 'cache-bucket', 1, 1)

    response = await service.handle(RpcRequest(
        method='S3Service.Upload',
        id=5,
        params=[{'objectPath': 'abc.zip', 'inputPath': str(tmp_path)}]
    ))

    assert response.result is None
    assert '403' in response.error
    service.close()
