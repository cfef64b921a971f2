"""Unit tests for bulk mode (chunked archive directory upload/restore)."""

import shutil
from pathlib import Path

import pytest

from common.exceptions import StorageError
from coordinator.bulk_cache import BulkCache
from coordinator.config import CacheConfig
from coordinator.metadata_store import MetadataStore


@pytest.fixture
def archives(cache_config):
    """
    Populate the archive directory.

    Returns:
        Dict of relative path -> content
    """
    contents = {
        'lodash-npm-4.17.21-6382451519.zip': b'L' * 5000,
        'react-npm-18.2.0-1a2b3c4d5e.zip': b'R' * 4000,
        'typescript-npm-5.3.3-aa11bb22.zip': b'T' * 9000,
        'scoped/@babel-core-npm-7.23.0-ff00.zip': b'B' * 3000,
        'tiny-npm-1.0.0-0000.zip': b't' * 10,
    }
    root = Path(cache_config.archives_dir)
    for relative, data in contents.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
    return contents


def archive_paths(cache_config, archives):
    return [str(Path(cache_config.archives_dir) / relative) for relative in archives]


@pytest.mark.asyncio
async def test_upload_then_download_restores_directory(cache_config, memory_store, archives):
    cache = BulkCache(cache_config, memory_store)

    manifest = await cache.upload(archive_paths(cache_config, archives))

    assert manifest is not None
    assert 1 <= len(manifest.all_files) <= cache_config.chunk_count
    assert all(entry.key.startswith(f'archives/my-project-0/{manifest.uploaded}/') for entry in manifest.all_files)
    assert all(entry.size == len(memory_store.objects[entry.key]) for entry in manifest.all_files)
    assert MetadataStore(memory_store).get('my-project-0') == manifest

    shutil.rmtree(cache_config.archives_dir)

    assert await cache.download() is True
    for relative, data in archives.items():
        assert (Path(cache_config.archives_dir) / relative).read_bytes() == data


@pytest.mark.asyncio
async def test_generation_keys_are_timestamped(cache_config, memory_store, archives):
    manifest = await BulkCache(cache_config, memory_store).upload(archive_paths(cache_config, archives))

    assert manifest.uploaded.endswith('Z')
    assert [entry.key.rsplit('/', 1)[1] for entry in manifest.all_files] == [
        f'{i}.tar' for i in range(len(manifest.all_files))
    ]


@pytest.mark.asyncio
async def test_download_without_manifest(cache_config, memory_store):
    assert await BulkCache(cache_config, memory_store).download() is False


@pytest.mark.asyncio
async def test_missing_chunk_fails_download(cache_config, memory_store, archives):
    cache = BulkCache(cache_config, memory_store)
    manifest = await cache.upload(archive_paths(cache_config, archives))
    del memory_store.objects[manifest.all_files[0].key]

    with pytest.raises(StorageError):
        await cache.download()


@pytest.mark.asyncio
async def test_failed_upload_keeps_previous_manifest(cache_config, memory_store, archives):
    cache = BulkCache(cache_config, memory_store)
    previous = await cache.upload(archive_paths(cache_config, archives))

    memory_store.fail_with = StorageError("Failed to upload: SlowDown")
    with pytest.raises(StorageError):
        await cache.upload(archive_paths(cache_config, archives))

    memory_store.fail_with = None
    assert MetadataStore(memory_store).get('my-project-0') == previous


@pytest.mark.asyncio
async def test_missing_files_are_skipped(cache_config, memory_store, archives):
    paths = archive_paths(cache_config, archives) + [str(Path(cache_config.archives_dir) / 'optional-dep.zip')]

    manifest = await BulkCache(cache_config, memory_store).upload(paths)

    assert manifest is not None


@pytest.mark.asyncio
async def test_nothing_to_upload(cache_config, memory_store):
    assert await BulkCache(cache_config, memory_store).upload([]) is None
    assert memory_store.objects == {}


@pytest.mark.asyncio
async def test_file_outside_archives_dir_rejected(cache_config, memory_store, sample_file):
    with pytest.raises(ValueError):
        await BulkCache(cache_config, memory_store).upload([str(sample_file)])


@pytest.mark.asyncio
async def test_progress_reports_totals(cache_config, memory_store, archives):
    calls = []
    cache = BulkCache(cache_config, memory_store, on_progress=lambda done, total: calls.append((done, total)))

    manifest = await cache.upload(archive_paths(cache_config, archives))

    expected_total = int(sum(len(data) for data in archives.values()) * 1.02)
    assert calls[-1][1] == expected_total
    assert calls[-1][0] == manifest.total_size

    calls.clear()
    await cache.download()

    assert calls[-1] == (manifest.total_size, manifest.total_size)


def test_requires_archives_dir_and_key():
    with pytest.raises(ValueError):
        BulkCache(CacheConfig(bucket='b', cache_key_parts=['k']), store=None)
    with pytest.raises(ValueError):
        BulkCache(CacheConfig(bucket='b', archives_dir='/tmp/archives'), store=None)
