"""Bulk mode: whole archive directory stored as balanced tar chunks plus a manifest."""

import asyncio
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional

from common.archive_streams import CountingReader, extract_tar_stream, open_tar_members_stream
from common.constants import ARCHIVES_PREFIX, TAR_OVERHEAD_FACTOR
from common.exceptions import StorageError
from common.logging_config import get_logger
from common.storage import ObjectStore, S3ObjectStore, create_s3_client
from common.types import Chunk, FileEntry, Manifest, ManifestEntry
from coordinator.chunk_planner import plan_chunks
from coordinator.config import CacheConfig
from coordinator.metadata_store import MetadataStore
from coordinator.progress import ProgressListener, ThrottledProgress, log_progress

logger = get_logger(__name__)


class BulkCache:
    """
    Uploads and restores the archive directory as one generation.

    Each generation lives under archives/<cacheKey>/<uploaded>/<i>.tar and is
    published by overwriting metadata/<cacheKey>. Older generations are never
    deleted here: another run may still be downloading them.
    """

    def __init__(
        self,
        config: CacheConfig,
        store: ObjectStore,
        metadata_store: Optional[MetadataStore] = None,
        on_progress: Optional[ProgressListener] = None
    ):
        """
        Initialize bulk cache.

        Args:
            config: Cache configuration; archives_dir and cache_key_parts are required
            store: Object store of the cache bucket
            metadata_store: Manifest store, defaults to one over store
            on_progress: Listener for aggregated (done, total) byte counts
        """
        if not config.archives_dir:
            raise ValueError("archives_dir is required for bulk mode")
        if not config.cache_key():
            raise ValueError("cache_key_parts are required for bulk mode")
        self.config = config
        self.store = store
        self.metadata_store = metadata_store or MetadataStore(store)
        self.on_progress = on_progress
        self.archives_dir = Path(config.archives_dir).resolve()
        self._slots = asyncio.Semaphore(config.chunk_count)

    @classmethod
    def from_config(cls, config: CacheConfig, on_progress: Optional[ProgressListener] = None) -> 'BulkCache':
        """Bulk cache talking to S3 directly from the control process."""
        credentials = config.credentials_provider() if config.credentials_provider else None
        client = create_s3_client(
            region=config.region,
            profile=config.profile,
            endpoint_url=config.endpoint_url,
            max_pool_connections=config.chunk_count * 2,
            credentials=credentials
        )
        return cls(config, S3ObjectStore(client, config.bucket), on_progress=on_progress)

    def _collect(self, paths: Iterable[str]) -> List[FileEntry]:
        entries = []
        for p in paths:
            path = Path(p)
            if not path.is_file():
                # Conditional packages are not always installed.
                continue
            resolved = path.resolve()
            if self.archives_dir not in resolved.parents:
                raise ValueError(f"File {p} is not in {self.archives_dir}")
            entries.append(FileEntry(path=str(resolved), size=resolved.stat().st_size))
        return entries

    async def upload(self, paths: Iterable[str]) -> Optional[Manifest]:
        """
        Archive files into balanced chunks, upload them in parallel, then
        publish the manifest.

        Args:
            paths: Archive files to store, all inside archives_dir

        Returns:
            The published manifest, or None when there was nothing to upload

        Raises:
            ValueError: If a file lies outside archives_dir
            StorageError: If a chunk or the manifest cannot be stored; the
                previous manifest then stays current
        """
        entries = self._collect(paths)
        if not entries:
            logger.info("No archives to upload")
            return None

        chunks = plan_chunks(entries, self.config.chunk_count)
        uploaded = datetime.now(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')
        total = int(sum(entry.size for entry in entries) * TAR_OVERHEAD_FACTOR)
        progress = ThrottledProgress(total, self.on_progress or log_progress("Uploading cache"))

        logger.info(f"Uploading {len(entries)} archives in {len(chunks)} chunks (generation {uploaded})")
        all_files = await asyncio.gather(*[
            self._upload_chunk(index, chunk, uploaded, progress)
            for index, chunk in enumerate(chunks)
        ])

        manifest = Manifest(all_files=list(all_files), uploaded=uploaded)
        await asyncio.to_thread(self.metadata_store.save, self.config.cache_key(), manifest)
        progress.finish()
        return manifest

    async def _upload_chunk(self, index: int, chunk: Chunk, uploaded: str, progress: ThrottledProgress) -> ManifestEntry:
        key = f"{ARCHIVES_PREFIX}/{self.config.cache_key()}/{uploaded}/{index}.tar"
        members = [os.path.relpath(entry.path, self.archives_dir) for entry in chunk.files]

        def transfer() -> ManifestEntry:
            with open_tar_members_stream(str(self.archives_dir), members) as stream:
                self.store.put(key, stream, progress=lambda loaded: progress.update(index, loaded))
            size = self.store.head(key)
            if size is None:
                logger.warning(f"No content length for {key}")
                size = 0
            return ManifestEntry(key=key, size=size)

        async with self._slots:
            entry = await asyncio.to_thread(transfer)
        logger.debug(f"Uploaded chunk {index}: {len(members)} files, {entry.size} bytes")
        return entry

    async def download(self) -> bool:
        """
        Restore the current generation into archives_dir.

        Returns:
            False when no manifest exists (upload first), True once every
            chunk has been extracted

        Raises:
            StorageError: If the manifest or a listed chunk cannot be fetched
            ArchiveError: If a chunk is not a valid tar archive
        """
        cache_key = self.config.cache_key()
        manifest = await asyncio.to_thread(self.metadata_store.get, cache_key)
        if manifest is None:
            logger.warning(f"No manifest for {cache_key}, should upload first")
            return False

        self.archives_dir.mkdir(parents=True, exist_ok=True)
        progress = ThrottledProgress(manifest.total_size, self.on_progress or log_progress("Downloading cache"))

        logger.info(f"Downloading {len(manifest.all_files)} chunks (generation {manifest.uploaded})")
        await asyncio.gather(*[
            self._download_chunk(index, entry, progress)
            for index, entry in enumerate(manifest.all_files)
        ])
        progress.finish()
        return True

    async def _download_chunk(self, index: int, entry: ManifestEntry, progress: ThrottledProgress) -> None:
        def transfer() -> None:
            body = self.store.get(entry.key)
            if body is None:
                raise StorageError(f"Archive {entry.key} listed in manifest is missing")
            try:
                reader = CountingReader(body, lambda loaded: progress.update(index, loaded))
                extract_tar_stream(reader, str(self.archives_dir))
            finally:
                body.close()

        async with self._slots:
            await asyncio.to_thread(transfer)
